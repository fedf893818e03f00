"""
Operations Facade - Application service layer.

Provides a clean interface between CLI and the publisher, centralizing
command orchestration, configuration, and policy decisions while keeping
CLI commands thin and testable.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Type

from ..publisher import BundlePublisher, PublishOptions, PublishResult
from ..reference import parse_normalized
from ..runtime_types import CancelToken, ImageClient, ProgressSink
from ..settings import Settings
from ..storage.credentials import CredentialProvider
from ..storage.registry_http import ManifestDescriptor
from ..storage.resolver import RegistryResolver


@dataclass(frozen=True)
class OpsConfig:
    """
    Configuration for Operations facade.

    Per-invocation overrides from the command line; anything left as None
    falls back to Settings.
    """
    insecure: bool = False                # Bundle tag's registry is insecure
    timeout_s: Optional[float] = None     # Override Settings.http_timeout_s
    bundle_file: Optional[str] = None     # Override Settings.bundle_file
    verbose: bool = False                 # Show detailed output


class Operations:
    """
    Application service facade for CLI operations.

    One method per CLI verb. Collaborators are injected so tests can run
    every command against fakes; exceptions bubble up for central mapping
    in ``run_and_exit``.
    """

    def __init__(self, config: OpsConfig, *,
                 settings: Optional[Settings] = None,
                 images: Optional[ImageClient] = None,
                 credentials: Optional[CredentialProvider] = None,
                 progress: Optional[ProgressSink] = None,
                 resolver_factory: Type[RegistryResolver] = RegistryResolver,
                 cancel: Optional[CancelToken] = None):
        """
        Initialize Operations facade.

        Args:
            config: Per-invocation overrides
            settings: Optional settings (if None, loaded from environment)
            images: Invocation image client (Docker daemon if None)
            credentials: Credential provider (Docker config.json if None)
            progress: Progress sink (stdout if None)
            resolver_factory: Registry client pool factory
            cancel: Cancellation token shared with the caller
        """
        self.cfg = config

        if settings is None:
            from ..settings import create_settings_from_env
            settings = create_settings_from_env()
        self.settings = self._apply_overrides(settings, config)

        if credentials is None:
            from ..storage.credentials import DockerConfigCredentials
            credentials = DockerConfigCredentials.from_directory(self.settings.docker_config)
        self.credentials = credentials

        if progress is None:
            from .printers import EchoProgress
            progress = EchoProgress()
        self.progress = progress

        self._images = images
        self.resolver_factory = resolver_factory
        self.cancel = cancel

    @staticmethod
    def _apply_overrides(settings: Settings, config: OpsConfig) -> Settings:
        overrides = {}
        if config.timeout_s is not None:
            overrides["http_timeout_s"] = config.timeout_s
        if config.bundle_file is not None:
            overrides["bundle_file"] = config.bundle_file
        return replace(settings, **overrides) if overrides else settings

    @property
    def images(self) -> ImageClient:
        """Docker daemon client, created on first use."""
        if self._images is None:
            from ..storage.docker_images import DockerImageClient
            self._images = DockerImageClient(self.settings)
        return self._images

    @property
    def insecure(self) -> bool:
        return self.cfg.insecure or self.settings.registry_insecure

    def publish(self, file: Optional[Path] = None, *,
                working_dir: Optional[Path] = None) -> PublishResult:
        """
        Publish the bundle described by a manifest.

        Args:
            file: Manifest path (None = default manifest in working_dir)
            working_dir: Project directory (cwd if None)

        Returns:
            PublishResult with the bundle tag and manifest digest
        """
        publisher = BundlePublisher(
            self.settings,
            images=self.images,
            credentials=self.credentials,
            progress=self.progress,
            resolver_factory=self.resolver_factory,
            working_dir=working_dir,
            cancel=self.cancel,
        )
        return publisher.publish(PublishOptions(file=file, insecure_registry=self.insecure))

    def inspect(self, image: str) -> ManifestDescriptor:
        """
        Look up the remote manifest of an image.

        Args:
            image: Image reference (tag or digest)

        Returns:
            Digest, media type and size of the remote manifest
        """
        ref = parse_normalized(image)
        insecure_registries = [ref.domain] if self.insecure else []
        with self.resolver_factory(self.settings, self.credentials, insecure_registries,
                                   cancel=self.cancel) as resolver:
            return resolver.client(ref.domain).head_manifest(ref.path, ref.ref)
