"""Test doubles for registries, image clients and progress output."""
from .fake_images import FakeImageClient, RecordingProgress
from .fake_registry import FakeRegistry
from .fake_resolver import FakeResolver

__all__ = ["FakeRegistry", "FakeResolver", "FakeImageClient", "RecordingProgress"]
