"""
Runtime types for the publish pipeline.

These types define the seams between the publisher and its collaborators,
enabling dependency injection for the manifest source, the bundle builder,
the image pusher, credentials and progress output (and their test doubles).
"""
from __future__ import annotations

import threading
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from .errors import CancelledError

if TYPE_CHECKING:
    from .models import BundleDescriptor, Manifest
    from .relocation import FixupEvent
    from .storage.credentials import Credentials

__all__ = [
    "CancelToken",
    "ProgressSink",
    "EventSink",
    "ManifestLoader",
    "BundleBuilder",
    "ImageClient",
]


class CancelToken:
    """
    Cooperative cancellation signal for one publish run.

    Checked before every registry request and between streamed chunks, so
    a cancelled run stops at the next I/O boundary.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "publish") -> None:
        """
        Raises:
            CancelledError: If the token has been cancelled
        """
        if self._event.is_set():
            raise CancelledError(f"{what} cancelled")


def check_cancelled(cancel: Optional[CancelToken], what: str = "publish") -> None:
    """``raise_if_cancelled`` that tolerates a missing token."""
    if cancel is not None:
        cancel.raise_if_cancelled(what)


class ProgressSink(Protocol):
    """Receives human-readable progress lines."""

    def write(self, line: str) -> None:
        ...


# Relocation observers receive each FixupEvent as it happens
EventSink = Callable[["FixupEvent"], None]


class ManifestLoader(Protocol):
    """Loads the bundle manifest from an explicit path or the default location."""

    def __call__(self, path: Optional[Path] = None) -> "Manifest":
        ...


class BundleBuilder(Protocol):
    """
    Produces the bundle descriptor for the current manifest state.

    Called after the invocation image reference has been pinned, so the
    returned descriptor must reference ``invocation_image``.
    """

    def build(self, manifest: "Manifest", invocation_image: str,
              digest: str) -> "BundleDescriptor":
        ...


class ImageClient(Protocol):
    """Pushes locally built images and inspects remote digests."""

    def push(self, image: str, credentials: Optional["Credentials"], *,
             progress: Optional[ProgressSink] = None,
             cancel: Optional[CancelToken] = None) -> str:
        """Push ``image`` and return the registry-confirmed manifest digest."""
        ...

    def inspect(self, image: str, credentials: Optional["Credentials"]) -> str:
        """Return the remote manifest digest of ``image``."""
        ...
