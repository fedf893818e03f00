"""
Bundle publishing.

Main entry point for publishing CNAB bundles to OCI registries. Orchestrates
the invocation image push, digest pinning, descriptor generation, image
relocation and the final manifest push.

The pipeline is linear::

    start -> manifest-loaded -> invocation-image-pushed
          -> invocation-reference-pinned -> bundle-descriptor-read
          -> bundle-tag-validated -> relocation-complete -> published

Any failure ends the run (aborted) with a PublishError naming the stage.
Nothing is rolled back: every push is content addressed, so a retry of the
same publish simply finds the content already in place.
"""
from __future__ import annotations

import io
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Iterator, Optional, Type

from .builder import DescriptorFileBuilder
from .converter import to_oci_artifact
from .errors import ConfigurationError, InvocationPushError, PublishError
from .manifest import load_manifest
from .models import BundleDescriptor
from .reference import ImageReference, parse_normalized, pin
from .relocation import RelocationSummary, display_event, fixup_bundle
from .runtime_types import (
    BundleBuilder,
    CancelToken,
    ImageClient,
    ManifestLoader,
    ProgressSink,
    check_cancelled,
)
from .settings import Settings
from .storage.credentials import CredentialProvider, Credentials
from .storage.registry_http import RegistryHTTP
from .storage.resolver import RegistryResolver

logger = logging.getLogger(__name__)

__all__ = [
    "PublishStage",
    "PublishOptions",
    "PublishResult",
    "BundlePublisher",
    "validate_bundle_tag",
    "push_bundle_descriptor",
    "publish_bundle",
]


class PublishStage(str, Enum):
    START = "start"
    MANIFEST_LOADED = "manifest-loaded"
    INVOCATION_IMAGE_PUSHED = "invocation-image-pushed"
    INVOCATION_REFERENCE_PINNED = "invocation-reference-pinned"
    BUNDLE_DESCRIPTOR_READ = "bundle-descriptor-read"
    BUNDLE_TAG_VALIDATED = "bundle-tag-validated"
    RELOCATION_COMPLETE = "relocation-complete"
    PUBLISHED = "published"
    ABORTED = "aborted"


@dataclass(frozen=True)
class PublishOptions:
    """
    Options for one publish run.

    Attributes:
        file: Explicit manifest path (None = look in the working directory)
        insecure_registry: Treat the bundle tag's registry as insecure
    """
    file: Optional[Path] = None
    insecure_registry: bool = False


@dataclass(frozen=True)
class PublishResult:
    """Confirmation of a published bundle."""
    tag: str
    digest: str
    invocation_image: str
    relocation: RelocationSummary = field(default_factory=RelocationSummary)


def validate_bundle_tag(tag: Optional[str]) -> ImageReference:
    """
    Check the manifest's bundle tag.

    Raises:
        ConfigurationError: If the tag is missing, malformed or a digest
    """
    if not tag or not tag.strip():
        raise ConfigurationError("the manifest must specify a `tag` value for this bundle")

    try:
        ref = parse_normalized(tag)
    except ConfigurationError as e:
        raise ConfigurationError(
            "invalid bundle tag reference. expected value is REGISTRY/bundle:tag",
            subject=tag,
        ) from e

    if ref.digest:
        raise ConfigurationError(
            "bundle tag must be a tag, not a digest. expected value is REGISTRY/bundle:tag",
            subject=tag,
        )
    return ref


def push_bundle_descriptor(bundle: BundleDescriptor, target: ImageReference,
                           client: RegistryHTTP) -> str:
    """
    Push the descriptor as an OCI manifest tagged ``target.tag``.

    Returns:
        Canonical manifest digest confirmed by the registry
    """
    artifact = to_oci_artifact(bundle)
    if not client.blob_exists(target.path, artifact.config_digest):
        client.upload_blob(target.path, artifact.config_digest,
                           io.BytesIO(artifact.config), len(artifact.config))
    return client.put_manifest(target.path, target.ref, artifact.media_type, artifact.manifest)


class BundlePublisher:
    """
    Publish pipeline for one bundle.

    All collaborators are injected so tests can substitute fakes. A publisher
    instance is meant for a single run; ``stage`` records how far it got.
    """

    def __init__(self, settings: Settings, *,
                 images: ImageClient,
                 credentials: CredentialProvider,
                 progress: ProgressSink,
                 builder: Optional[BundleBuilder] = None,
                 manifest_loader: Optional[ManifestLoader] = None,
                 resolver_factory: Type[RegistryResolver] = RegistryResolver,
                 working_dir: Optional[Path] = None,
                 cancel: Optional[CancelToken] = None):
        working_dir = Path(working_dir) if working_dir else Path.cwd()
        self.settings = settings
        self.images = images
        self.credentials = credentials
        self.progress = progress
        self.builder = builder or DescriptorFileBuilder(Path(settings.bundle_file), working_dir)
        self.manifest_loader = manifest_loader or partial(
            load_manifest, working_dir=working_dir, default_name=settings.manifest_file
        )
        self.resolver_factory = resolver_factory
        self.cancel = cancel
        self.stage = PublishStage.START

    def publish(self, opts: PublishOptions) -> PublishResult:
        """
        Run the pipeline.

        Returns:
            PublishResult with the bundle tag and the pushed manifest digest

        Raises:
            PublishError: Stage-annotated failure; the original error is the cause
        """
        try:
            return self._publish(opts)
        except BaseException:
            logger.info(f"Publish aborted after stage {self.stage.value}")
            self.stage = PublishStage.ABORTED
            raise

    def _publish(self, opts: PublishOptions) -> PublishResult:
        check_cancelled(self.cancel)

        with self._stage(PublishStage.MANIFEST_LOADED, subject=str(opts.file) if opts.file else None):
            manifest = self.manifest_loader(opts.file)

        with self._stage(PublishStage.INVOCATION_IMAGE_PUSHED, subject=manifest.image,
                         wrap=InvocationPushError, message="unable to push CNAB invocation image"):
            self.progress.write("Pushing CNAB invocation image...")
            digest = self.images.push(manifest.image, self._credentials_for(manifest.image),
                                      progress=self.progress, cancel=self.cancel)

        with self._stage(PublishStage.INVOCATION_REFERENCE_PINNED, subject=manifest.image,
                         message="unable to update invocation image reference"):
            invocation_image = pin(manifest.image, digest)

        with self._stage(PublishStage.BUNDLE_DESCRIPTOR_READ,
                         message="unable to generate CNAB bundle.json"):
            self.progress.write("Generating CNAB bundle.json...")
            bundle = self.builder.build(manifest, invocation_image, digest)

        with self._stage(PublishStage.BUNDLE_TAG_VALIDATED, subject=manifest.tag):
            target = validate_bundle_tag(manifest.tag)

        # The bundle tag's registry is the only one the insecure flag applies to
        insecure_registries = [target.domain] if opts.insecure_registry else []

        with self.resolver_factory(self.settings, self.credentials, insecure_registries,
                                   cancel=self.cancel) as resolver:
            with self._stage(PublishStage.RELOCATION_COMPLETE, subject=str(target),
                             message="unable to relocate bundle images"):
                relocation = fixup_bundle(bundle, target, resolver,
                                          event_sink=display_event(self.progress),
                                          cancel=self.cancel)

            with self._stage(PublishStage.PUBLISHED, subject=str(target),
                             message="unable to push CNAB bundle"):
                check_cancelled(self.cancel)
                bundle_digest = push_bundle_descriptor(bundle, target, resolver.client(target.domain))

        self.progress.write(f'Bundle tag {target} pushed successfully, with digest "{bundle_digest}"')
        return PublishResult(tag=str(target), digest=bundle_digest,
                             invocation_image=invocation_image, relocation=relocation)

    def _credentials_for(self, image: str) -> Optional[Credentials]:
        return self.credentials.get_credentials(parse_normalized(image).domain)

    @contextmanager
    def _stage(self, stage: PublishStage, *, subject: Optional[str] = None,
               wrap: Type[PublishError] = PublishError,
               message: Optional[str] = None) -> Iterator[None]:
        """
        Run one stage, annotating any failure with the stage and subject.

        PublishErrors keep their type; anything else is wrapped in ``wrap``
        with the original error as the cause.
        """
        logger.debug(f"Stage {stage.value} starting")
        try:
            yield
        except PublishError as e:
            if e.stage is None:
                e.stage = stage.value
            if e.subject is None:
                e.subject = subject
            raise
        except Exception as e:
            raise wrap(message or f"{stage.value} failed", stage=stage.value, subject=subject) from e
        self.stage = stage
        logger.debug(f"Stage {stage.value} complete")


def publish_bundle(file: Optional[str | Path] = None, *,
                   insecure_registry: bool = False,
                   settings: Optional[Settings] = None,
                   images: Optional[ImageClient] = None,
                   credentials: Optional[CredentialProvider] = None,
                   progress: Optional[ProgressSink] = None,
                   working_dir: Optional[str | Path] = None,
                   cancel: Optional[CancelToken] = None) -> PublishResult:
    """
    Publish the bundle described by a manifest.

    This is the main public interface for bundle publishing. Collaborators
    not supplied are created from settings: the Docker daemon for the
    invocation image push, Docker's config.json for credentials, and
    ``cnab/bundle.json`` as the descriptor.

    Args:
        file: Manifest path (porter.yaml in ``working_dir`` if None)
        insecure_registry: Allow plain HTTP to the bundle tag's registry
        settings: Settings (loaded from env if None)
        images: Invocation image client
        credentials: Credential provider
        progress: Progress sink (stdout if None)
        working_dir: Project directory (cwd if None)
        cancel: Cancellation token

    Returns:
        PublishResult with the bundle tag and manifest digest

    Raises:
        PublishError: If any stage fails
    """
    if settings is None:
        from .settings import create_settings_from_env
        settings = create_settings_from_env()

    if images is None:
        from .storage.docker_images import DockerImageClient
        images = DockerImageClient(settings)

    if credentials is None:
        from .storage.credentials import DockerConfigCredentials
        credentials = DockerConfigCredentials.from_directory(settings.docker_config)

    if progress is None:
        from .operations.printers import EchoProgress
        progress = EchoProgress()

    publisher = BundlePublisher(
        settings,
        images=images,
        credentials=credentials,
        progress=progress,
        working_dir=Path(working_dir) if working_dir else None,
        cancel=cancel,
    )
    return publisher.publish(PublishOptions(
        file=Path(file) if file else None,
        insecure_registry=insecure_registry or settings.registry_insecure,
    ))
