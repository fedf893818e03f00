"""
Image reference parsing and digest pinning.

Implements the Docker/OCI reference grammar (``[domain/]path[:tag][@digest]``)
without any I/O. Two flavours are offered:

- ``parse_reference`` checks the grammar and keeps the name exactly as
  written ("myapp" stays "myapp").
- ``parse_normalized`` returns a fully qualified ``ImageReference``
  ("myapp" becomes "docker.io/library/myapp:latest").

``pin`` rewrites a reference to its immutable ``name@digest`` form.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Optional

from .errors import InvalidReferenceError, UnnamedReferenceError

__all__ = [
    "DEFAULT_DOMAIN",
    "DEFAULT_TAG",
    "Reference",
    "ImageReference",
    "parse_reference",
    "parse_normalized",
    "pin",
    "validate_digest",
]

DEFAULT_DOMAIN = "docker.io"
LEGACY_DEFAULT_DOMAIN = "index.docker.io"
OFFICIAL_REPO_PREFIX = "library/"
DEFAULT_TAG = "latest"
NAME_TOTAL_LENGTH_MAX = 255

_ALNUM = r"[a-z0-9]+"
_SEPARATOR = r"(?:[._]|__|[-]+)"
_PATH_COMPONENT = rf"{_ALNUM}(?:{_SEPARATOR}{_ALNUM})*"
_DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
_DOMAIN = rf"{_DOMAIN_COMPONENT}(?:\.{_DOMAIN_COMPONENT})*(?::[0-9]+)?"
_TAG = r"[\w][\w.-]{0,127}"
_DIGEST = r"[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}"
_NAME = rf"(?:{_DOMAIN}/)?{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*"

_REFERENCE_RE = re.compile(
    rf"(?P<name>{_NAME})?(?::(?P<tag>{_TAG}))?(?:@(?P<digest>{_DIGEST}))?",
    re.ASCII,
)
_DIGEST_RE = re.compile(_DIGEST, re.ASCII)

# Known algorithms and their hex lengths
_DIGEST_HEX_LENGTHS = {"sha256": 64, "sha384": 96, "sha512": 128}


@dataclass(frozen=True)
class Reference:
    """
    Reference as written by the user.

    ``name`` is None for a digest-only reference such as ``@sha256:...``.
    """
    name: Optional[str]
    tag: Optional[str] = None
    digest: Optional[str] = None

    def __str__(self) -> str:
        out = self.name or ""
        if self.tag:
            out += f":{self.tag}"
        if self.digest:
            out += f"@{self.digest}"
        return out


@dataclass(frozen=True)
class ImageReference:
    """
    Canonical, registry-qualified image reference.

    Carries either a tag or a digest, never both: a digest always wins
    because it is the immutable identity of the content.
    """
    domain: str
    path: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    def __post_init__(self) -> None:
        if self.tag and self.digest:
            object.__setattr__(self, "tag", None)

    @property
    def name(self) -> str:
        """Fully qualified repository name, e.g. ``docker.io/library/nginx``."""
        return f"{self.domain}/{self.path}"

    @property
    def ref(self) -> str:
        """The tag or digest part, suitable for a /manifests/<ref> URL."""
        return self.digest or self.tag or DEFAULT_TAG

    def with_digest(self, digest: str) -> ImageReference:
        """Return the digest-pinned form of this reference (tag dropped)."""
        validate_digest(digest)
        return replace(self, tag=None, digest=digest)

    def __str__(self) -> str:
        if self.digest:
            return f"{self.name}@{self.digest}"
        return f"{self.name}:{self.tag or DEFAULT_TAG}"


def validate_digest(digest: str) -> str:
    """
    Check an ``algorithm:hex`` digest string.

    Raises:
        InvalidReferenceError: If the digest is malformed
    """
    if not digest or not _DIGEST_RE.fullmatch(digest):
        raise InvalidReferenceError(f"invalid digest format: {digest!r}")
    algorithm, hex_part = digest.split(":", 1)
    expected = _DIGEST_HEX_LENGTHS.get(algorithm)
    if expected is not None and len(hex_part) != expected:
        raise InvalidReferenceError(
            f"invalid {algorithm} digest length: {digest!r} (expected {expected} hex characters)"
        )
    return digest


def parse_reference(raw: str) -> Reference:
    """
    Parse a reference string without normalizing it.

    Args:
        raw: Reference string, e.g. "myapp:v1", "ghcr.io/org/app@sha256:..."

    Returns:
        Reference with the name exactly as written

    Raises:
        InvalidReferenceError: If the string does not match the grammar
    """
    if raw is None or not raw.strip():
        raise InvalidReferenceError("invalid reference format: repository name must have at least one component")

    raw = raw.strip()
    match = _REFERENCE_RE.fullmatch(raw)
    if match is None:
        if _REFERENCE_RE.fullmatch(raw.lower()):
            raise InvalidReferenceError(f"invalid reference format: repository name must be lowercase: {raw!r}")
        raise InvalidReferenceError(f"invalid reference format: {raw!r}")

    name, tag, digest = match.group("name"), match.group("tag"), match.group("digest")
    if name is None and (tag is not None or digest is None):
        raise InvalidReferenceError(f"invalid reference format: {raw!r}")
    if name is not None and len(name) > NAME_TOTAL_LENGTH_MAX:
        raise InvalidReferenceError(
            f"repository name must not be more than {NAME_TOTAL_LENGTH_MAX} characters: {raw!r}"
        )
    if digest is not None:
        validate_digest(digest)

    return Reference(name=name, tag=tag, digest=digest)


def _split_domain(name: str) -> tuple[str, str]:
    i = name.find("/")
    if i == -1:
        domain, remainder = DEFAULT_DOMAIN, name
    else:
        head = name[:i]
        if "." not in head and ":" not in head and head != "localhost" and head.lower() == head:
            domain, remainder = DEFAULT_DOMAIN, name
        else:
            domain, remainder = head, name[i + 1:]

    if domain == LEGACY_DEFAULT_DOMAIN:
        domain = DEFAULT_DOMAIN
    if domain == DEFAULT_DOMAIN and "/" not in remainder:
        remainder = OFFICIAL_REPO_PREFIX + remainder
    return domain, remainder


def parse_normalized(raw: str) -> ImageReference:
    """
    Parse and normalize a reference into its fully qualified form.

    Examples:
        >>> str(parse_normalized("myapp:v1"))
        'docker.io/library/myapp:v1'
        >>> str(parse_normalized("localhost:5000/bundles/app"))
        'localhost:5000/bundles/app:latest'

    Raises:
        InvalidReferenceError: For malformed input or digest-only references
    """
    parsed = parse_reference(raw)
    if parsed.name is None:
        raise InvalidReferenceError(f"invalid reference format: {raw!r} has no repository name")

    domain, path = _split_domain(parsed.name)
    if not path:
        raise InvalidReferenceError(f"invalid reference format: empty repository path in {raw!r}")

    tag = parsed.tag
    if tag is None and parsed.digest is None:
        tag = DEFAULT_TAG
    return ImageReference(domain=domain, path=path, tag=tag, digest=parsed.digest)


def pin(original: str, digest: str) -> str:
    """
    Rewrite a reference to ``name@digest``, discarding any tag.

    The name is kept as written so ``myapp:v1`` becomes ``myapp@sha256:...``.

    Raises:
        UnnamedReferenceError: If the reference has no repository name
        InvalidReferenceError: If the reference or digest is malformed
    """
    parsed = parse_reference(original)
    if parsed.name is None:
        raise UnnamedReferenceError(f"unable to pin {original!r}: reference has no repository name",
                                    subject=original)
    validate_digest(digest)
    return f"{parsed.name}@{digest}"
