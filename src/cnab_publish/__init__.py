"""Publish CNAB bundles to OCI registries."""
from .errors import PublishError
from .publisher import BundlePublisher, PublishOptions, PublishResult, publish_bundle

__version__ = "0.1.0"

__all__ = ["BundlePublisher", "PublishError", "PublishOptions", "PublishResult", "publish_bundle"]
