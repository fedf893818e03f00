"""
Registry error classes.

Provides a clear taxonomy of errors that can occur while talking to a
registry, either through the distribution API or through the Docker daemon.
HTTP status codes and SDK exceptions are mapped onto these classes so callers
see the same interface regardless of the transport underneath.
"""
from __future__ import annotations


class RegistryError(Exception):
    """Base class for all registry errors."""
    pass


class AuthenticationError(RegistryError):
    """
    The registry rejected our credentials.

    Raised when:
    - HTTP 401 Unauthorized / 403 Forbidden
    - A Docker push stream reports a "denied" error
    - Token exchange with the registry's auth realm fails
    """
    pass


class TransportError(RegistryError):
    """
    Network or protocol failure.

    Safe to retry from the caller's side: nothing we push is destructive.
    """
    pass


class StreamError(TransportError):
    """A progress stream could not be consumed to completion."""
    pass


class NotFoundError(RegistryError):
    """
    Manifest, blob or repository does not exist remotely.

    Raised on HTTP 404 or when the daemon cannot find the reference.
    """
    pass


class DigestMismatchError(RegistryError):
    """
    Content digest validation failed.

    Raised when:
    - put_manifest: server digest != locally computed digest
    - download_blob: blob content doesn't match the requested digest
    - a descriptor declares a contentDigest the registry disagrees with
    """

    def __init__(self, message: str, expected: str | None = None, actual: str | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class UnsupportedMediaTypeError(RegistryError):
    """Manifest media type we cannot copy (e.g. Docker schema 1)."""
    pass


__all__ = [
    "RegistryError",
    "AuthenticationError",
    "TransportError",
    "StreamError",
    "NotFoundError",
    "DigestMismatchError",
    "UnsupportedMediaTypeError",
]
