"""
Tests for the distribution API client.

Uses httpx.MockTransport so every request can be inspected without a
registry.
"""
from __future__ import annotations

import hashlib
import io
import json

import httpx
import pytest

from cnab_publish.errors import CancelledError
from cnab_publish.runtime_types import CancelToken
from cnab_publish.storage.credentials import Credentials, StaticCredentials
from cnab_publish.storage.oci_media_types import OCI_IMAGE_MANIFEST
from cnab_publish.storage.registry_errors import (
    AuthenticationError,
    DigestMismatchError,
    NotFoundError,
    TransportError,
)
from cnab_publish.storage.registry_http import RegistryHTTP

MANIFEST = json.dumps({"schemaVersion": 2, "mediaType": OCI_IMAGE_MANIFEST}).encode()
MANIFEST_DIGEST = f"sha256:{hashlib.sha256(MANIFEST).hexdigest()}"
BLOB = b"hello layer"
MANIFEST_SHA512 = f"sha512:{hashlib.sha512(MANIFEST).hexdigest()}"
BLOB_DIGEST = f"sha256:{hashlib.sha256(BLOB).hexdigest()}"
BLOB_SHA512 = f"sha512:{hashlib.sha512(BLOB).hexdigest()}"

BEARER_CHALLENGE = ('Bearer realm="https://auth.example.com/token",'
                    'service="registry.example.com",scope="repository:bundles/app:pull,push"')


class Recorder:
    """MockTransport handler that records requests and delegates to a route function."""

    def __init__(self, route):
        self.route = route
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.route(request)


def make_client(route, **kwargs):
    recorder = Recorder(route)
    client = RegistryHTTP("registry.example.com", transport=httpx.MockTransport(recorder), **kwargs)
    return client, recorder


class TestManifests:

    def test_head_manifest(self):
        def route(request):
            assert request.method == "HEAD"
            assert request.url.path == "/v2/bundles/app/manifests/v1"
            assert OCI_IMAGE_MANIFEST in request.headers["Accept"]
            return httpx.Response(200, headers={
                "Docker-Content-Digest": MANIFEST_DIGEST,
                "Content-Type": OCI_IMAGE_MANIFEST,
                "Content-Length": str(len(MANIFEST)),
            })

        client, _ = make_client(route)
        descriptor = client.head_manifest("bundles/app", "v1")

        assert descriptor.digest == MANIFEST_DIGEST
        assert descriptor.media_type == OCI_IMAGE_MANIFEST
        assert descriptor.size == len(MANIFEST)

    def test_head_manifest_not_found(self):
        client, _ = make_client(lambda request: httpx.Response(404, json={
            "errors": [{"code": "MANIFEST_UNKNOWN", "message": "manifest unknown"}]
        }))

        with pytest.raises(NotFoundError, match="MANIFEST_UNKNOWN"):
            client.head_manifest("bundles/app", "v1")

    def test_head_without_digest_falls_back_to_get(self):
        def route(request):
            if request.method == "HEAD":
                return httpx.Response(200, headers={"Content-Type": OCI_IMAGE_MANIFEST})
            return httpx.Response(200, content=MANIFEST, headers={"Content-Type": OCI_IMAGE_MANIFEST})

        client, recorder = make_client(route)
        descriptor = client.head_manifest("bundles/app", "v1")

        assert descriptor.digest == MANIFEST_DIGEST
        assert [r.method for r in recorder.requests] == ["HEAD", "GET"]

    def test_get_manifest_media_type_from_body(self):
        client, _ = make_client(lambda request: httpx.Response(
            200, content=MANIFEST, headers={"Content-Type": "application/json"}))

        descriptor, payload = client.get_manifest("bundles/app", MANIFEST_DIGEST)

        assert payload == MANIFEST
        assert descriptor.media_type == OCI_IMAGE_MANIFEST
        assert descriptor.size == len(MANIFEST)

    def test_get_manifest_digest_mismatch(self):
        client, _ = make_client(lambda request: httpx.Response(200, content=b'{"tampered":true}'))

        with pytest.raises(DigestMismatchError) as exc_info:
            client.get_manifest("bundles/app", MANIFEST_DIGEST)
        assert exc_info.value.expected == MANIFEST_DIGEST

    def test_put_manifest(self):
        def route(request):
            assert request.method == "PUT"
            assert request.headers["Content-Type"] == OCI_IMAGE_MANIFEST
            assert request.content == MANIFEST
            return httpx.Response(201, headers={"Docker-Content-Digest": MANIFEST_DIGEST})

        client, _ = make_client(route)
        assert client.put_manifest("bundles/app", "v1", OCI_IMAGE_MANIFEST, MANIFEST) == MANIFEST_DIGEST

    def test_get_manifest_by_sha512_digest(self):
        client, _ = make_client(lambda request: httpx.Response(
            200, content=MANIFEST, headers={"Content-Type": OCI_IMAGE_MANIFEST,
                                             "Docker-Content-Digest": MANIFEST_DIGEST}))

        descriptor, payload = client.get_manifest("bundles/app", MANIFEST_SHA512)

        assert payload == MANIFEST
        assert descriptor.digest == MANIFEST_SHA512

    def test_get_manifest_sha512_mismatch(self):
        client, _ = make_client(lambda request: httpx.Response(200, content=b'{"tampered":true}'))

        with pytest.raises(DigestMismatchError):
            client.get_manifest("bundles/app", MANIFEST_SHA512)

    def test_put_manifest_by_sha512_digest(self):
        # Registries report sha256 whatever algorithm the reference uses
        client, _ = make_client(lambda request: httpx.Response(
            201, headers={"Docker-Content-Digest": MANIFEST_DIGEST}))

        pushed = client.put_manifest("bundles/app", MANIFEST_SHA512, OCI_IMAGE_MANIFEST, MANIFEST)

        assert pushed == MANIFEST_SHA512

    def test_put_manifest_server_digest_mismatch(self):
        client, _ = make_client(lambda request: httpx.Response(
            201, headers={"Docker-Content-Digest": "sha256:" + "0" * 64}))

        with pytest.raises(DigestMismatchError):
            client.put_manifest("bundles/app", "v1", OCI_IMAGE_MANIFEST, MANIFEST)


class TestBlobs:

    def test_blob_exists(self):
        client, _ = make_client(lambda request: httpx.Response(
            200 if request.url.path.endswith(BLOB_DIGEST) else 404))

        assert client.blob_exists("bundles/app", BLOB_DIGEST)
        assert not client.blob_exists("bundles/app", "sha256:" + "0" * 64)

    def test_blob_exists_raises_on_server_error(self):
        client, _ = make_client(lambda request: httpx.Response(500))

        with pytest.raises(TransportError):
            client.blob_exists("bundles/app", BLOB_DIGEST)

    @pytest.mark.parametrize("status, mounted", [(201, True), (202, False)])
    def test_mount_blob(self, status, mounted):
        def route(request):
            assert request.method == "POST"
            assert request.url.params["mount"] == BLOB_DIGEST
            assert request.url.params["from"] == "library/web"
            return httpx.Response(status, headers={"Location": "/v2/bundles/app/blobs/uploads/abc"})

        client, _ = make_client(route)
        assert client.mount_blob("bundles/app", BLOB_DIGEST, "library/web") is mounted

    def test_download_blob(self):
        client, _ = make_client(lambda request: httpx.Response(200, content=BLOB))
        out = io.BytesIO()

        assert client.download_blob("bundles/app", BLOB_DIGEST, out) == len(BLOB)
        assert out.getvalue() == BLOB

    def test_download_blob_digest_mismatch(self):
        client, _ = make_client(lambda request: httpx.Response(200, content=b"something else"))

        with pytest.raises(DigestMismatchError):
            client.download_blob("bundles/app", BLOB_DIGEST, io.BytesIO())

    def test_download_blob_verifies_sha512(self):
        client, _ = make_client(lambda request: httpx.Response(200, content=BLOB))
        assert client.download_blob("bundles/app", BLOB_SHA512, io.BytesIO()) == len(BLOB)

        client, _ = make_client(lambda request: httpx.Response(200, content=b"something else"))
        with pytest.raises(DigestMismatchError):
            client.download_blob("bundles/app", BLOB_SHA512, io.BytesIO())

    def test_upload_blob(self):
        received = {}

        def route(request):
            if request.method == "POST":
                return httpx.Response(202, headers={"Location": "/v2/bundles/app/blobs/uploads/abc?state=xyz"})
            received["params"] = dict(request.url.params)
            received["content"] = request.content
            received["length"] = request.headers["Content-Length"]
            return httpx.Response(201)

        client, _ = make_client(route)
        client.upload_blob("bundles/app", BLOB_DIGEST, io.BytesIO(BLOB), len(BLOB))

        assert received["params"] == {"state": "xyz", "digest": BLOB_DIGEST}
        assert received["content"] == BLOB
        assert received["length"] == str(len(BLOB))

    def test_upload_without_location(self):
        client, _ = make_client(lambda request: httpx.Response(202))

        with pytest.raises(TransportError, match="upload location"):
            client.upload_blob("bundles/app", BLOB_DIGEST, io.BytesIO(BLOB), len(BLOB))


class TestAuth:

    def _bearer_route(self, token_status=200):
        def route(request):
            if request.url.host == "auth.example.com":
                if token_status != 200:
                    return httpx.Response(token_status)
                return httpx.Response(200, json={"token": "secret-token", "expires_in": 300})
            if request.headers.get("Authorization") == "Bearer secret-token":
                return httpx.Response(200, headers={"Docker-Content-Digest": MANIFEST_DIGEST,
                                                    "Content-Type": OCI_IMAGE_MANIFEST})
            return httpx.Response(401, headers={"WWW-Authenticate": BEARER_CHALLENGE})
        return route

    def test_bearer_challenge_with_credentials(self):
        credentials = StaticCredentials({"registry.example.com": Credentials("me", "pw")})
        client, recorder = make_client(self._bearer_route(), credentials=credentials)

        assert client.head_manifest("bundles/app", "v1").digest == MANIFEST_DIGEST

        token_request = recorder.requests[1]
        assert token_request.url.params["scope"] == "repository:bundles/app:pull,push"
        assert token_request.url.params["service"] == "registry.example.com"
        assert token_request.headers["Authorization"].startswith("Basic ")

    def test_authorization_is_remembered_per_repository(self):
        client, recorder = make_client(self._bearer_route())

        client.head_manifest("bundles/app", "v1")
        count = len(recorder.requests)
        client.head_manifest("bundles/app", "v2")

        assert len(recorder.requests) == count + 1

    def test_identity_token_exchange(self):
        credentials = StaticCredentials({"registry.example.com": Credentials(identity_token="refresh")})
        client, recorder = make_client(self._bearer_route(), credentials=credentials)

        client.head_manifest("bundles/app", "v1")

        token_request = recorder.requests[1]
        assert token_request.method == "POST"
        assert b"refresh_token=refresh" in token_request.content

    @pytest.mark.parametrize("status", [401, 403])
    def test_token_endpoint_rejects_credentials(self, status):
        client, _ = make_client(self._bearer_route(token_status=status))

        with pytest.raises(AuthenticationError):
            client.head_manifest("bundles/app", "v1")

    def test_basic_challenge(self):
        def route(request):
            if request.headers.get("Authorization", "").startswith("Basic "):
                return httpx.Response(200, headers={"Docker-Content-Digest": MANIFEST_DIGEST})
            return httpx.Response(401, headers={"WWW-Authenticate": 'Basic realm="registry"'})

        credentials = StaticCredentials({"registry.example.com": Credentials("me", "pw")})
        client, _ = make_client(route, credentials=credentials)

        assert client.head_manifest("bundles/app", "v1").digest == MANIFEST_DIGEST

    def test_basic_challenge_without_credentials(self):
        client, _ = make_client(lambda request: httpx.Response(
            401, headers={"WWW-Authenticate": 'Basic realm="registry"'}))

        with pytest.raises(AuthenticationError):
            client.head_manifest("bundles/app", "v1")

    def test_forbidden(self):
        client, _ = make_client(lambda request: httpx.Response(403))

        with pytest.raises(AuthenticationError, match="HTTP 403"):
            client.put_manifest("bundles/app", "v1", OCI_IMAGE_MANIFEST, MANIFEST)


class TestTransport:

    def test_insecure_uses_plain_http(self):
        client, recorder = make_client(lambda request: httpx.Response(
            200, headers={"Docker-Content-Digest": MANIFEST_DIGEST}), insecure=True)

        client.head_manifest("bundles/app", "v1")

        assert recorder.requests[0].url.scheme == "http"

    def test_secure_by_default(self):
        client, recorder = make_client(lambda request: httpx.Response(
            200, headers={"Docker-Content-Digest": MANIFEST_DIGEST}))

        client.head_manifest("bundles/app", "v1")

        assert recorder.requests[0].url.scheme == "https"

    def test_endpoint_override(self):
        recorder = Recorder(lambda request: httpx.Response(200, headers={"Docker-Content-Digest": MANIFEST_DIGEST}))
        client = RegistryHTTP("docker.io", endpoint="registry-1.docker.io",
                              transport=httpx.MockTransport(recorder))

        client.head_manifest("library/nginx", "latest")

        assert recorder.requests[0].url.host == "registry-1.docker.io"

    def test_network_error(self):
        def route(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = make_client(route)

        with pytest.raises(TransportError, match="Network error"):
            client.head_manifest("bundles/app", "v1")

    def test_timeout_is_retried(self):
        attempts = []

        def route(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, headers={"Docker-Content-Digest": MANIFEST_DIGEST})

        client, _ = make_client(route, retries=1)

        assert client.head_manifest("bundles/app", "v1").digest == MANIFEST_DIGEST
        assert len(attempts) == 2

    def test_timeout_without_retry(self):
        def route(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client, _ = make_client(route)

        with pytest.raises(TransportError, match="Timed out"):
            client.head_manifest("bundles/app", "v1")

    def test_cancelled_client_sends_nothing(self):
        cancel = CancelToken()
        cancel.cancel()
        client, recorder = make_client(lambda request: httpx.Response(200), cancel=cancel)

        with pytest.raises(CancelledError):
            client.head_manifest("bundles/app", "v1")
        assert recorder.requests == []
