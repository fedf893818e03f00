"""
Image relocation ("fixup").

Makes every auxiliary image of a bundle resolvable from the bundle's own
repository: each image is copied into the target repository when it is not
already there, and its descriptor entry is rewritten to the digest-pinned
destination reference. A consumer can then pull everything from the one
registry the bundle came from, even if the source registries disappear.

Images are processed one at a time in declaration order. The first failure
aborts the whole run.
"""
from __future__ import annotations

import json
import logging
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .errors import PublishError, RelocationError
from .models import BundleDescriptor, Image
from .reference import ImageReference, parse_normalized
from .runtime_types import CancelToken, EventSink, ProgressSink, check_cancelled
from .storage.oci_media_types import (
    DOCKER_MANIFEST_V1,
    DOCKER_MANIFEST_V1_SIGNED,
    INDEX_MEDIA_TYPES,
)
from .storage.registry_errors import (
    DigestMismatchError,
    NotFoundError,
    RegistryError,
    UnsupportedMediaTypeError,
)
from .storage.registry_http import ManifestDescriptor, RegistryHTTP
from .storage.resolver import RegistryResolver

logger = logging.getLogger(__name__)

__all__ = [
    "FixupEventType",
    "FixupEvent",
    "RelocationSummary",
    "fixup_bundle",
    "copy_image",
    "display_event",
]

# Blobs above this size spill from memory to disk while in transit
SPOOL_MAX_SIZE = 32 * 1024 * 1024


class FixupEventType(str, Enum):
    COPY_IMAGE_START = "copy-image-start"
    COPY_IMAGE_END = "copy-image-end"


@dataclass(frozen=True)
class FixupEvent:
    """Progress notification for one image; never persisted."""
    event_type: FixupEventType
    source_image: str
    destination: str
    error: Optional[BaseException] = None


@dataclass
class RelocationSummary:
    """Which images were copied and which were already in place."""
    copied: List[str] = field(default_factory=list)
    present: List[str] = field(default_factory=list)


def fixup_bundle(bundle: BundleDescriptor, target: ImageReference,
                 resolver: RegistryResolver, *,
                 event_sink: Optional[EventSink] = None,
                 cancel: Optional[CancelToken] = None) -> RelocationSummary:
    """
    Relocate the bundle's auxiliary images into ``target``'s repository.

    The descriptor is rewritten in place. The invocation image is left alone;
    it was pinned when it was pushed.

    Args:
        bundle: Descriptor to rewrite
        target: Bundle tag; its domain and path name the destination repository
        resolver: Registry clients with the run's security policy
        event_sink: Receives a COPY_IMAGE_START/COPY_IMAGE_END pair for every
            image that needs copying
        cancel: Cancellation token

    Returns:
        RelocationSummary

    Raises:
        RelocationError: On the first image that cannot be relocated
        CancelledError: If the run is cancelled
    """
    summary = RelocationSummary()
    for name, image in bundle.images.items():
        check_cancelled(cancel, "relocation")
        copied = _fixup_image(name, image, target, resolver, event_sink)
        (summary.copied if copied else summary.present).append(name)

    logger.info(f"Relocation into {target.name}: {len(summary.copied)} copied, "
                f"{len(summary.present)} already present")
    return summary


def _fixup_image(name: str, image: Image, target: ImageReference,
                 resolver: RegistryResolver, event_sink: Optional[EventSink]) -> bool:
    """Relocate one image entry. Returns True if a copy was made."""
    try:
        source = parse_normalized(image.image)
    except PublishError as e:
        raise RelocationError(f"invalid reference for image {name!r}: {image.image}",
                              image=image.image) from e

    dest_client = resolver.client(target.domain)

    try:
        digest = _source_digest(name, image, source, resolver)
        try:
            descriptor = dest_client.head_manifest(target.path, digest)
        except NotFoundError:
            descriptor = None
    except RegistryError as e:
        raise RelocationError(f"unable to resolve image {name!r} ({image.image})",
                              image=image.image) from e

    destination = target.with_digest(digest)
    copied = False

    if descriptor is None:
        _notify(event_sink, FixupEvent(FixupEventType.COPY_IMAGE_START, image.image, str(destination)))
        try:
            descriptor = copy_image(resolver.client(source.domain), source.path,
                                    dest_client, target.path, digest)
        except Exception as e:
            _notify(event_sink, FixupEvent(FixupEventType.COPY_IMAGE_END, image.image,
                                           str(destination), error=e))
            if isinstance(e, PublishError):
                raise
            raise RelocationError(f"unable to copy image {name!r} ({image.image}) to {destination}",
                                  image=image.image) from e
        _notify(event_sink, FixupEvent(FixupEventType.COPY_IMAGE_END, image.image, str(destination)))
        copied = True
    else:
        logger.debug(f"Image {name!r} already present at {destination}")

    image.image = str(destination)
    image.content_digest = descriptor.digest
    image.media_type = descriptor.media_type
    image.size = descriptor.size
    return copied


def _source_digest(name: str, image: Image, source: ImageReference,
                   resolver: RegistryResolver) -> str:
    """Digest the image must have, from the reference or the source registry."""
    if source.digest:
        digest = source.digest
    else:
        digest = resolver.client(source.domain).head_manifest(source.path, source.ref).digest

    if image.content_digest and image.content_digest != digest:
        raise DigestMismatchError(
            f"image {name!r} declares contentDigest {image.content_digest} "
            f"but {source} resolves to {digest}",
            expected=image.content_digest, actual=digest,
        )
    return digest


def copy_image(src: RegistryHTTP, src_repo: str, dest: RegistryHTTP, dest_repo: str,
               digest: str) -> ManifestDescriptor:
    """
    Copy a manifest and everything it references between repositories.

    Image indexes are copied child by child. Blobs already present at the
    destination are skipped; blobs on the same registry are mounted.

    Returns:
        Descriptor of the manifest as pushed to the destination
    """
    descriptor, payload = src.get_manifest(src_repo, digest)
    if descriptor.media_type in (DOCKER_MANIFEST_V1, DOCKER_MANIFEST_V1_SIGNED):
        raise UnsupportedMediaTypeError(
            f"{src_repo}@{digest} is a Docker schema 1 manifest, which cannot be relocated"
        )

    manifest = json.loads(payload)
    if descriptor.media_type in INDEX_MEDIA_TYPES:
        for child in manifest.get("manifests", []):
            if not _manifest_exists(dest, dest_repo, child["digest"]):
                copy_image(src, src_repo, dest, dest_repo, child["digest"])
    else:
        blobs = [manifest["config"]] if manifest.get("config") else []
        blobs.extend(manifest.get("layers", []))
        for blob in blobs:
            if blob.get("urls"):
                # Foreign layers are pulled from their own URLs
                continue
            _copy_blob(src, src_repo, dest, dest_repo, blob["digest"])

    pushed = dest.put_manifest(dest_repo, digest, descriptor.media_type, payload)
    if pushed != digest:
        raise DigestMismatchError(f"{dest_repo}@{digest} was stored as {pushed}",
                                  expected=digest, actual=pushed)
    return ManifestDescriptor(digest=digest, media_type=descriptor.media_type, size=len(payload))


def _manifest_exists(client: RegistryHTTP, repo: str, digest: str) -> bool:
    try:
        client.head_manifest(repo, digest)
    except NotFoundError:
        return False
    return True


def _copy_blob(src: RegistryHTTP, src_repo: str, dest: RegistryHTTP, dest_repo: str,
               digest: str) -> None:
    if dest.blob_exists(dest_repo, digest):
        logger.debug(f"Blob {digest} already in {dest_repo}")
        return

    if src.domain == dest.domain and dest.mount_blob(dest_repo, digest, src_repo):
        return

    with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE) as spool:
        size = src.download_blob(src_repo, digest, spool)
        dest.upload_blob(dest_repo, digest, spool, size)


def _notify(event_sink: Optional[EventSink], event: FixupEvent) -> None:
    if event_sink is not None:
        event_sink(event)


def display_event(progress: ProgressSink) -> EventSink:
    """Adapt relocation events to progress lines."""
    def _display(event: FixupEvent) -> None:
        if event.event_type is FixupEventType.COPY_IMAGE_START:
            progress.write(f"Starting to copy image {event.source_image}...")
        elif event.event_type is FixupEventType.COPY_IMAGE_END:
            if event.error is not None:
                progress.write(f"Failed to copy image {event.source_image}: {event.error}")
            else:
                progress.write(f"Completed image {event.source_image} copy")
    return _display
