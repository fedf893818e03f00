"""
Registry HTTP Client for the OCI Distribution API.

Provides HTTP-based registry operations with the Docker Registry v2 auth flow:
manifest HEAD/GET/PUT, blob existence checks, cross-repository mounts and
streamed, digest-verified blob transfer. One client talks to exactly one
registry domain.
"""
from __future__ import annotations

import base64
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import IO, Dict, Iterator, Optional, Tuple
from urllib.parse import urljoin

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..runtime_types import CancelToken, check_cancelled
from .credentials import AnonymousCredentials, CredentialProvider
from .oci_media_types import ACCEPTED_MANIFEST_TYPES, DEFAULT_MANIFEST_MEDIA_TYPE
from .registry_errors import (
    AuthenticationError,
    DigestMismatchError,
    NotFoundError,
    TransportError,
)

logger = logging.getLogger(__name__)

__all__ = ["ManifestDescriptor", "RegistryHTTP", "compute_digest", "digest_algorithm", "CHUNK_SIZE"]

CHUNK_SIZE = 1024 * 1024  # 1 MiB
DEFAULT_DIGEST_ALGORITHM = "sha256"


def digest_algorithm(ref: str) -> Optional[str]:
    """Algorithm named by a digest reference, or None for a tag."""
    algorithm, sep, _ = ref.partition(":")
    return algorithm if sep else None


def compute_digest(payload: bytes, algorithm: str = DEFAULT_DIGEST_ALGORITHM) -> str:
    return f"{algorithm}:{hashlib.new(algorithm, payload).hexdigest()}"


def _verifiable_algorithm(ref: str) -> Optional[str]:
    """Algorithm of a digest reference we can hash locally, else None."""
    algorithm = digest_algorithm(ref)
    return algorithm if algorithm in hashlib.algorithms_available else None


@dataclass(frozen=True)
class ManifestDescriptor:
    """Identity of a remote manifest."""
    digest: str
    media_type: str
    size: int


class RegistryHTTP:
    """
    HTTP client for OCI Distribution API operations on one registry.

    Implements Docker Registry v2 Bearer token and Basic auth challenges,
    caching tokens per service/scope and remembering the Authorization header
    that worked for each repository.
    """

    def __init__(self, domain: str, *,
                 credentials: Optional[CredentialProvider] = None,
                 insecure: bool = False,
                 endpoint: Optional[str] = None,
                 timeout_s: float = 30.0,
                 retries: int = 0,
                 user_agent: str = "cnab-publish/0.1.0",
                 cancel: Optional[CancelToken] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        """
        Initialize registry HTTP client.

        Args:
            domain: Registry domain as it appears in references (e.g. "ghcr.io")
            credentials: Credential provider (anonymous if None)
            insecure: Use plain HTTP and skip TLS verification
            endpoint: API host if it differs from ``domain`` (Docker Hub)
            timeout_s: Per-request timeout
            retries: Retries for timed out requests
            user_agent: User-Agent header
            cancel: Cancellation token checked before each request
            transport: Custom httpx transport (tests)
        """
        self.domain = domain
        self.credentials = credentials or AnonymousCredentials()
        self.insecure = insecure
        self.cancel = cancel

        host = endpoint or domain
        scheme = "http" if insecure else "https"
        self.base_url = f"{scheme}://{host}"

        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout_s),
            follow_redirects=True,
            verify=not insecure,
            headers={"User-Agent": user_agent},
            transport=transport,
        )

        self._retrying = Retrying(
            stop=stop_after_attempt(retries + 1),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(httpx.TimeoutException),
            reraise=True,
        )

        # Token cache: {service:scope: (token, expiry_timestamp)}
        self._token_cache: Dict[str, Tuple[str, float]] = {}
        # Authorization header that last worked for a repository
        self._repo_auth: Dict[str, str] = {}

    # Manifests

    def head_manifest(self, repo: str, ref: str) -> ManifestDescriptor:
        """
        Get manifest digest, media type and size without downloading content.

        Raises:
            NotFoundError: If the manifest doesn't exist
            AuthenticationError: If the registry rejects our credentials
            TransportError: For other registry or network errors
        """
        what = _describe(repo, ref)
        response = self._request("HEAD", repo, f"/v2/{repo}/manifests/{ref}",
                                 headers={"Accept": ", ".join(ACCEPTED_MANIFEST_TYPES)})
        self._raise_for_status(response, what)

        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            # Some registries only send the digest on GET
            descriptor, _ = self.get_manifest(repo, ref)
            return descriptor

        return ManifestDescriptor(
            digest=digest,
            media_type=_media_type(response.headers.get("Content-Type")) or DEFAULT_MANIFEST_MEDIA_TYPE,
            size=int(response.headers.get("Content-Length") or 0),
        )

    def get_manifest(self, repo: str, ref: str) -> Tuple[ManifestDescriptor, bytes]:
        """
        GET manifest content.

        Returns:
            (descriptor, raw manifest bytes)

        Raises:
            NotFoundError: If the manifest doesn't exist
            DigestMismatchError: If ``ref`` is a digest the content doesn't match
            AuthenticationError / TransportError: As for head_manifest
        """
        what = _describe(repo, ref)
        response = self._request("GET", repo, f"/v2/{repo}/manifests/{ref}",
                                 headers={"Accept": ", ".join(ACCEPTED_MANIFEST_TYPES)})
        self._raise_for_status(response, what)

        payload = response.content
        algorithm = _verifiable_algorithm(ref)
        computed = compute_digest(payload, algorithm or DEFAULT_DIGEST_ALGORITHM)
        if algorithm and computed != ref:
            raise DigestMismatchError(
                f"Manifest {what} content does not match its digest",
                expected=ref, actual=computed,
            )

        media_type = _media_type(response.headers.get("Content-Type"))
        if not media_type or media_type == "application/json":
            try:
                media_type = json.loads(payload).get("mediaType") or DEFAULT_MANIFEST_MEDIA_TYPE
            except (json.JSONDecodeError, AttributeError):
                media_type = DEFAULT_MANIFEST_MEDIA_TYPE

        digest = computed if algorithm else (response.headers.get("Docker-Content-Digest") or computed)
        return ManifestDescriptor(digest=digest, media_type=media_type, size=len(payload)), payload

    def put_manifest(self, repo: str, ref: str, media_type: str, payload: bytes) -> str:
        """
        PUT manifest with explicit media type under a tag or digest.

        Returns:
            Canonical digest, validated against the local computation

        Raises:
            DigestMismatchError: If the server digest != local digest
            AuthenticationError / TransportError: On registry errors
        """
        what = _describe(repo, ref)
        response = self._request("PUT", repo, f"/v2/{repo}/manifests/{ref}",
                                 headers={"Content-Type": media_type}, content=payload)
        self._raise_for_status(response, what)

        # A digest ref names the algorithm the caller compares against
        local_digest = compute_digest(payload, _verifiable_algorithm(ref) or DEFAULT_DIGEST_ALGORITHM)
        server_digest = response.headers.get("Docker-Content-Digest")
        if server_digest:
            server_algorithm = _verifiable_algorithm(server_digest)
            if server_algorithm and server_digest != compute_digest(payload, server_algorithm):
                raise DigestMismatchError(
                    f"Registry digest for {what} does not match the pushed content",
                    expected=compute_digest(payload, server_algorithm), actual=server_digest,
                )
        logger.debug(f"Pushed manifest {what} ({media_type}) -> {local_digest}")
        return local_digest

    # Blobs

    def blob_exists(self, repo: str, digest: str) -> bool:
        """
        Check if a blob exists in the repository.

        Raises:
            AuthenticationError / TransportError: Anything other than found / 404
        """
        response = self._request("HEAD", repo, f"/v2/{repo}/blobs/{digest}")
        if response.status_code == 404:
            return False
        self._raise_for_status(response, f"{repo}@{digest}")
        return True

    def mount_blob(self, repo: str, digest: str, from_repo: str) -> bool:
        """
        Cross-repository mount of a blob already on this registry.

        Returns:
            True if mounted, False if the registry declined (caller uploads)
        """
        response = self._request("POST", repo, f"/v2/{repo}/blobs/uploads/",
                                 params={"mount": digest, "from": from_repo})
        if response.status_code == 201:
            logger.debug(f"Mounted {digest} from {from_repo} into {repo}")
            return True
        self._raise_for_status(response, f"mount {from_repo}@{digest} into {repo}")
        return False

    def download_blob(self, repo: str, digest: str, out: IO[bytes]) -> int:
        """
        Stream a blob into ``out``, verifying its digest.

        Returns:
            Number of bytes written

        Raises:
            DigestMismatchError: If the content doesn't hash to ``digest``
            NotFoundError / AuthenticationError / TransportError
        """
        what = f"{repo}@{digest}"
        response = self._request("GET", repo, f"/v2/{repo}/blobs/{digest}", stream=True)
        try:
            self._raise_for_status(response, what)
            algorithm = _verifiable_algorithm(digest)
            hasher = hashlib.new(algorithm or DEFAULT_DIGEST_ALGORITHM)
            written = 0
            try:
                for chunk in response.iter_bytes(CHUNK_SIZE):
                    check_cancelled(self.cancel, f"download of {what}")
                    hasher.update(chunk)
                    out.write(chunk)
                    written += len(chunk)
            except httpx.RequestError as e:
                raise TransportError(f"Network error downloading {what}: {e}") from e
        finally:
            response.close()

        actual = f"{hasher.name}:{hasher.hexdigest()}"
        if algorithm and actual != digest:
            raise DigestMismatchError(f"Blob {what} content does not match its digest",
                                      expected=digest, actual=actual)
        return written

    def upload_blob(self, repo: str, digest: str, data: IO[bytes], size: int) -> None:
        """
        Upload a blob with a POST + monolithic PUT.

        Args:
            repo: Repository path
            digest: Content digest the registry must verify
            data: Seekable file-like object holding the content
            size: Content length in bytes
        """
        what = f"{repo}@{digest}"
        response = self._request("POST", repo, f"/v2/{repo}/blobs/uploads/")
        self._raise_for_status(response, f"upload session for {what}")

        location = response.headers.get("Location")
        if not location:
            raise TransportError(f"Registry did not return an upload location for {what}")

        upload_url = httpx.URL(urljoin(self.base_url, location)).copy_merge_params({"digest": digest})
        response = self._request(
            "PUT", repo, str(upload_url),
            headers={"Content-Type": "application/octet-stream", "Content-Length": str(size)},
            body=data,
        )
        self._raise_for_status(response, what)
        logger.debug(f"Uploaded blob {what} ({size} bytes)")

    # Transport

    def _request(self, method: str, repo: str, path: str, *,
                 headers: Optional[dict] = None,
                 stream: bool = False,
                 body: Optional[IO[bytes]] = None,
                 **kwargs) -> httpx.Response:
        """
        Make HTTP request with transparent auth challenge handling.

        Handles 401 responses by:
        1. Parsing the WWW-Authenticate header (Bearer or Basic)
        2. Looking up credentials for this registry
        3. Exchanging credentials for a Bearer token when asked to
        4. Retrying the original request with an Authorization header
        5. Remembering the header for later requests to the same repo
        """
        check_cancelled(self.cancel, f"{method} {path}")

        url = path if path.startswith(("http://", "https://")) else urljoin(self.base_url, path)
        request_headers = dict(headers or {})
        if repo in self._repo_auth:
            request_headers.setdefault("Authorization", self._repo_auth[repo])

        logger.debug(f"{method} {url}")
        try:
            response = self._retrying.copy()(self._send, method, url, request_headers,
                                             stream, body, **kwargs)

            if response.status_code == 401:
                authorization = self._authorize(response.headers.get("WWW-Authenticate", ""))
                if authorization:
                    response.close()
                    request_headers["Authorization"] = authorization
                    response = self._retrying.copy()(self._send, method, url, request_headers,
                                                     stream, body, **kwargs)
                    if response.status_code != 401:
                        self._repo_auth[repo] = authorization
        except httpx.TimeoutException as e:
            raise TransportError(f"Timed out: {method} {url}") from e
        except httpx.RequestError as e:
            raise TransportError(f"Network error: {method} {url}: {e}") from e

        return response

    def _send(self, method: str, url: str, headers: dict, stream: bool,
              body: Optional[IO[bytes]], **kwargs) -> httpx.Response:
        if body is not None:
            body.seek(0)
            kwargs["content"] = self._iter_body(body)
        request = self.client.build_request(method, url, headers=headers, **kwargs)
        return self.client.send(request, stream=stream)

    def _iter_body(self, body: IO[bytes]) -> Iterator[bytes]:
        while True:
            check_cancelled(self.cancel, "upload")
            chunk = body.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk

    def _authorize(self, www_authenticate: str) -> Optional[str]:
        """Turn an auth challenge into an Authorization header value."""
        scheme = www_authenticate.split(" ", 1)[0].lower()
        if scheme == "bearer":
            token = self._handle_bearer_auth(www_authenticate)
            return f"Bearer {token}" if token else None
        if scheme == "basic":
            creds = self.credentials.get_credentials(self.domain)
            if not creds or not creds.username:
                return None
            encoded = base64.b64encode(f"{creds.username}:{creds.password or ''}".encode()).decode()
            return f"Basic {encoded}"
        return None

    def _handle_bearer_auth(self, www_authenticate: str) -> Optional[str]:
        """
        Handle Bearer token authentication flow.

        Parses WWW-Authenticate header, gets credentials, exchanges for token.
        Anonymous token requests are made when no credentials are configured.
        """
        # Format: Bearer realm="...",service="...",scope="..."
        bearer_params = {}
        for match in re.finditer(r'(\w+)="([^"]*)"', www_authenticate):
            bearer_params[match.group(1)] = match.group(2)

        realm = bearer_params.get("realm")
        service = bearer_params.get("service")
        scope = bearer_params.get("scope")

        if not realm:
            return None

        cache_key = f"{service or ''}:{scope or ''}"
        if cache_key in self._token_cache:
            token, expiry = self._token_cache[cache_key]
            if time.time() < expiry - 30:  # 30s buffer before expiry
                return token

        params = {}
        if service:
            params["service"] = service
        if scope:
            params["scope"] = scope

        creds = self.credentials.get_credentials(self.domain)
        check_cancelled(self.cancel, "token exchange")
        logger.debug(f"Requesting token from {realm} for scope {scope!r}")
        try:
            if creds and creds.identity_token:
                form = {"grant_type": "refresh_token", "refresh_token": creds.identity_token,
                        "client_id": "cnab-publish", **params}
                auth_response = self.client.post(realm, data=form)
            elif creds and creds.username:
                auth_response = self.client.get(realm, params=params,
                                                auth=(creds.username, creds.password or ""))
            else:
                auth_response = self.client.get(realm, params=params)
        except httpx.RequestError as e:
            raise TransportError(f"Token exchange with {realm} failed: {e}") from e

        if auth_response.status_code in (401, 403):
            raise AuthenticationError(
                f"Registry {self.domain} rejected credentials (HTTP {auth_response.status_code})"
            )
        if not auth_response.is_success:
            raise TransportError(f"Token exchange with {realm} failed: HTTP {auth_response.status_code}")

        try:
            token_data = auth_response.json()
        except json.JSONDecodeError as e:
            raise TransportError(f"Token endpoint {realm} returned invalid JSON") from e

        token = token_data.get("token") or token_data.get("access_token")
        if not token:
            return None

        # Default 60s if the server doesn't say
        expires_in = token_data.get("expires_in", 60)
        self._token_cache[cache_key] = (token, time.time() + expires_in)
        return token

    def _raise_for_status(self, response: httpx.Response, what: str) -> None:
        """Map HTTP failures onto the registry error taxonomy."""
        if response.is_success:
            return

        if not response.is_stream_consumed:
            response.read()
        status = response.status_code
        detail = _error_detail(response)

        if status in (401, 403):
            raise AuthenticationError(f"Authentication failed for {what} on {self.domain} (HTTP {status}){detail}")
        if status == 404:
            raise NotFoundError(f"Not found: {what} on {self.domain}{detail}")
        raise TransportError(f"Registry error {status} for {what} on {self.domain}{detail}")

    def close(self):
        """Close HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _describe(repo: str, ref: str) -> str:
    separator = "@" if ":" in ref else ":"
    return f"{repo}{separator}{ref}"


def _media_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    return content_type.split(";", 1)[0].strip() or None


def _error_detail(response: httpx.Response) -> str:
    """Pull the first error message out of a distribution API error body."""
    try:
        errors = response.json().get("errors") or []
    except (json.JSONDecodeError, AttributeError, UnicodeDecodeError):
        return ""
    if not errors:
        return ""
    first = errors[0]
    code = first.get("code", "")
    message = first.get("message", "")
    return f": {code} {message}".rstrip()
