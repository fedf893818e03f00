"""
Publish pipeline errors.

Every failure that leaves the publisher is a ``PublishError`` that names the
stage it happened in and the reference involved. The underlying registry or
I/O error is kept as ``__cause__`` so nothing is lost on the way up.
"""
from __future__ import annotations

from typing import Optional

__all__ = [
    "PublishError",
    "ConfigurationError",
    "ManifestNotFoundError",
    "InvalidReferenceError",
    "UnnamedReferenceError",
    "InvocationPushError",
    "RelocationError",
    "CancelledError",
]


class PublishError(Exception):
    """
    Base class for publish pipeline errors.

    Attributes:
        stage: Pipeline stage that failed (set by the publisher if not known
            at raise time)
        subject: Reference or path the failing stage was working on
    """

    def __init__(self, message: str, *, stage: Optional[str] = None,
                 subject: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.subject = subject

    @property
    def cause(self) -> Optional[BaseException]:
        """Underlying error, if this error wraps one."""
        return self.__cause__

    @property
    def root_cause(self) -> BaseException:
        """Innermost error of the cause chain."""
        exc: BaseException = self
        while exc.__cause__ is not None:
            exc = exc.__cause__
        return exc

    def __str__(self) -> str:
        parts = []
        if self.stage:
            parts.append(f"[{self.stage}]")
        parts.append(self.message)
        if self.__cause__ is not None:
            parts.append(f"({self.__cause__})")
        return " ".join(parts)


class ConfigurationError(PublishError):
    """
    User-fixable configuration problem.

    Always fatal, never retried. The message tells the user what to change.
    """
    pass


class ManifestNotFoundError(ConfigurationError):
    """No manifest at the explicit path or the default location."""
    pass


class InvalidReferenceError(ConfigurationError):
    """Malformed image or bundle reference."""
    pass


class UnnamedReferenceError(PublishError):
    """A reference has no repository name to pin a digest onto."""
    pass


class InvocationPushError(PublishError):
    """Pushing the invocation image failed."""
    pass


class RelocationError(PublishError):
    """Copying an auxiliary image into the bundle repository failed."""

    def __init__(self, message: str, *, image: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.image = image


class CancelledError(PublishError):
    """The publish run was cancelled from outside."""
    pass
