"""Root pytest configuration for cnab-publish tests."""
import pytest

from cnab_publish.settings import Settings
from cnab_publish.storage.credentials import StaticCredentials

from .storage.fakes import FakeImageClient, FakeRegistry, FakeResolver, RecordingProgress


# Set up test environment variables
@pytest.fixture(autouse=True)
def test_env(monkeypatch, tmp_path):
    """Keep tests away from the real Docker config and CNAB_* variables."""
    for key in ("CNAB_REGISTRY_INSECURE", "CNAB_HTTP_TIMEOUT", "CNAB_HTTP_RETRY",
                "CNAB_MANIFEST", "CNAB_BUNDLE_FILE"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("DOCKER_CONFIG", str(tmp_path / "docker-config"))


# Standardized test fixtures
@pytest.fixture
def settings():
    """Standard test settings."""
    return Settings(http_timeout_s=5.0)


@pytest.fixture
def credentials():
    return StaticCredentials()


@pytest.fixture
def registries():
    """Fake registries by domain, shared with every resolver a test creates."""
    return {"localhost:5000": FakeRegistry("localhost:5000")}


@pytest.fixture
def registry(registries):
    """The bundle's registry."""
    return registries["localhost:5000"]


@pytest.fixture
def resolver(registries):
    return FakeResolver(registries=registries)


@pytest.fixture
def images():
    return FakeImageClient()


@pytest.fixture
def progress():
    return RecordingProgress()
