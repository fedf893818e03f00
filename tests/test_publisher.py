"""
End-to-end tests for the publish pipeline.

Every collaborator is a fake: the invocation image push, the registries and
the progress output. The manifest and bundle.json are real files.
"""
from __future__ import annotations

import json

import pytest

from cnab_publish.errors import (
    CancelledError,
    ConfigurationError,
    InvocationPushError,
    ManifestNotFoundError,
    PublishError,
    RelocationError,
)
from cnab_publish.operations.mappers import exit_code_for
from cnab_publish.publisher import (
    BundlePublisher,
    PublishOptions,
    PublishStage,
    push_bundle_descriptor,
    validate_bundle_tag,
)
from cnab_publish.models import BundleDescriptor
from cnab_publish.reference import parse_normalized
from cnab_publish.runtime_types import CancelToken
from cnab_publish.storage.credentials import Credentials, StaticCredentials
from cnab_publish.storage.oci_media_types import CNAB_ARTIFACT_TYPE, CNAB_CONFIG_MEDIA_TYPE
from cnab_publish.storage.registry_errors import AuthenticationError, TransportError
from tests.helpers.oci_helpers import bundle_json, seed_image, write_project
from tests.storage.fakes import FakeImageClient, FakeRegistry, FakeResolver

INVOCATION_DIGEST = "sha256:" + "1" * 64
BUNDLE_REPO = "bundles/myapp"


def manifest(**overrides):
    data = {
        "name": "myapp",
        "version": "0.1.0",
        "invocationImage": "myapp:v1",
        "tag": "localhost:5000/bundles/myapp:v1",
    }
    data.update(overrides)
    return {k: v for k, v in data.items() if v is not None}


@pytest.fixture
def ghcr(registries):
    registries["ghcr.io"] = FakeRegistry("ghcr.io")
    return registries["ghcr.io"]


@pytest.fixture
def web_digest(ghcr):
    return seed_image(ghcr, "org/web", tag="1.0", layers=(b"web-layer",))


@pytest.fixture
def project(tmp_path, web_digest):
    write_project(tmp_path, manifest(), bundle_json(images={"web": {"image": "ghcr.io/org/web:1.0"}}))
    return tmp_path


@pytest.fixture
def images():
    return FakeImageClient(digests={"myapp:v1": INVOCATION_DIGEST})


@pytest.fixture
def resolvers():
    return []


@pytest.fixture
def make_publisher(settings, images, credentials, progress, registries, resolvers, tmp_path):
    def _make(**overrides):
        kwargs = dict(
            images=images,
            credentials=credentials,
            progress=progress,
            resolver_factory=FakeResolver.factory(registries, resolvers),
            working_dir=tmp_path,
        )
        kwargs.update(overrides)
        return BundlePublisher(settings, **kwargs)
    return _make


class TestPublish:

    def test_publish_end_to_end(self, project, make_publisher, registry, progress, web_digest):
        publisher = make_publisher()

        result = publisher.publish(PublishOptions())

        assert publisher.stage is PublishStage.PUBLISHED
        assert result.tag == "localhost:5000/bundles/myapp:v1"
        assert result.invocation_image == f"myapp@{INVOCATION_DIGEST}"
        assert result.relocation.copied == ["web"]
        assert registry.tags(BUNDLE_REPO) == {"v1": result.digest}

        oci_manifest = json.loads(registry.manifest_bytes(BUNDLE_REPO, "v1"))
        assert oci_manifest["artifactType"] == CNAB_ARTIFACT_TYPE
        assert oci_manifest["config"]["mediaType"] == CNAB_CONFIG_MEDIA_TYPE

        config_digest = oci_manifest["config"]["digest"]
        assert registry.has_blob(BUNDLE_REPO, config_digest)
        published = json.loads(registry.snapshot()["blobs"][BUNDLE_REPO][config_digest])
        assert published["invocationImages"][0]["image"] == f"myapp@{INVOCATION_DIGEST}"
        assert published["invocationImages"][0]["contentDigest"] == INVOCATION_DIGEST
        assert published["images"]["web"]["image"] == f"localhost:5000/bundles/myapp@{web_digest}"
        assert published["actions"] == {"logs": {"modifies": False}}

        assert progress.lines[0] == "Pushing CNAB invocation image..."
        assert "Generating CNAB bundle.json..." in progress.lines
        assert "Starting to copy image ghcr.io/org/web:1.0..." in progress.lines
        assert "Completed image ghcr.io/org/web:1.0 copy" in progress.lines
        assert progress.lines[-1] == (
            f'Bundle tag localhost:5000/bundles/myapp:v1 pushed successfully, '
            f'with digest "{result.digest}"'
        )

    def test_bundle_file_on_disk_is_not_modified(self, project, make_publisher):
        before = (project / "cnab" / "bundle.json").read_bytes()
        make_publisher().publish(PublishOptions())
        assert (project / "cnab" / "bundle.json").read_bytes() == before

    def test_republish_is_idempotent(self, project, make_publisher, registry, progress):
        first = make_publisher().publish(PublishOptions())
        progress.lines.clear()

        second = make_publisher().publish(PublishOptions())

        assert second.digest == first.digest
        assert second.relocation.present == ["web"]
        assert not any(line.startswith("Starting to copy") for line in progress.lines)
        assert registry.tags(BUNDLE_REPO) == {"v1": first.digest}

    def test_explicit_manifest_path(self, tmp_path, make_publisher, web_digest):
        other = tmp_path / "other"
        other.mkdir()
        manifest_path = write_project(other, manifest())
        write_project(tmp_path, manifest(tag=None), bundle_json())

        result = make_publisher().publish(PublishOptions(file=manifest_path))

        assert result.tag == "localhost:5000/bundles/myapp:v1"

    def test_credentials_for_invocation_image_registry(self, project, make_publisher, images):
        creds = Credentials(username="me", password="secret")
        make_publisher(credentials=StaticCredentials({"docker.io": creds})).publish(PublishOptions())
        assert images.pushed == [("myapp:v1", creds)]

    def test_insecure_applies_to_bundle_registry_only(self, project, make_publisher, resolvers):
        make_publisher().publish(PublishOptions(insecure_registry=True))
        assert resolvers[0].insecure_registries == frozenset({"localhost:5000"})

    def test_secure_by_default(self, project, make_publisher, resolvers):
        make_publisher().publish(PublishOptions())
        assert resolvers[0].insecure_registries == frozenset()


class TestPublishFailures:

    def test_missing_manifest(self, tmp_path, make_publisher, images):
        publisher = make_publisher()

        with pytest.raises(ManifestNotFoundError) as exc_info:
            publisher.publish(PublishOptions())

        assert exc_info.value.stage == "manifest-loaded"
        assert publisher.stage is PublishStage.ABORTED
        assert images.pushed == []

    def test_empty_tag_fails_before_any_registry_call(self, tmp_path, make_publisher,
                                                      registries, resolvers):
        write_project(tmp_path, manifest(tag=None), bundle_json())
        publisher = make_publisher()

        with pytest.raises(ConfigurationError, match="must specify a `tag`") as exc_info:
            publisher.publish(PublishOptions())

        assert exc_info.value.stage == "bundle-tag-validated"
        assert publisher.stage is PublishStage.ABORTED
        assert resolvers == []
        assert all(r.calls == [] for r in registries.values())
        assert exit_code_for(exc_info.value) == 2

    @pytest.mark.parametrize("tag", ["Not A Tag", f"localhost:5000/bundles/myapp@sha256:{'2' * 64}"])
    def test_invalid_tag(self, tmp_path, make_publisher, resolvers, tag):
        write_project(tmp_path, manifest(tag=tag), bundle_json())

        with pytest.raises(ConfigurationError) as exc_info:
            make_publisher().publish(PublishOptions())

        assert exc_info.value.stage == "bundle-tag-validated"
        assert resolvers == []

    def test_push_denied_aborts_before_relocation(self, project, make_publisher, resolvers, progress):
        images = FakeImageClient(error=AuthenticationError("denied: requested access to the resource is denied"))
        publisher = make_publisher(images=images)

        with pytest.raises(InvocationPushError) as exc_info:
            publisher.publish(PublishOptions())

        error = exc_info.value
        assert error.stage == "invocation-image-pushed"
        assert error.subject == "myapp:v1"
        assert isinstance(error.cause, AuthenticationError)
        assert exit_code_for(error) == 4
        assert resolvers == []
        assert "Generating CNAB bundle.json..." not in progress.lines

    def test_missing_bundle_file(self, tmp_path, make_publisher):
        write_project(tmp_path, manifest())

        with pytest.raises(ConfigurationError, match="build the bundle first") as exc_info:
            make_publisher().publish(PublishOptions())

        assert exc_info.value.stage == "bundle-descriptor-read"

    def test_bundle_name_mismatch(self, tmp_path, make_publisher):
        write_project(tmp_path, manifest(), bundle_json(name="otherapp"))

        with pytest.raises(ConfigurationError, match="rebuild the bundle"):
            make_publisher().publish(PublishOptions())

    def test_relocation_failure_leaves_tag_unpublished(self, project, make_publisher, registry):
        registry.fail["upload_blob"] = TransportError("connection reset")
        publisher = make_publisher()

        with pytest.raises(RelocationError) as exc_info:
            publisher.publish(PublishOptions())

        assert exc_info.value.stage == "relocation-complete"
        assert exit_code_for(exc_info.value) == 3
        assert registry.tags(BUNDLE_REPO) == {}

    def test_final_push_failure(self, project, make_publisher, registry):
        publisher = make_publisher()
        original_put = registry.put_manifest

        def put_manifest(repo, ref, media_type, payload):
            if ref == "v1":
                raise AuthenticationError("HTTP 403")
            return original_put(repo, ref, media_type, payload)

        registry.put_manifest = put_manifest

        with pytest.raises(PublishError) as exc_info:
            publisher.publish(PublishOptions())

        assert exc_info.value.stage == "published"
        assert "unable to push CNAB bundle" in str(exc_info.value)
        assert exit_code_for(exc_info.value) == 4

    def test_cancelled_before_start(self, project, make_publisher, images):
        cancel = CancelToken()
        cancel.cancel()
        publisher = make_publisher(cancel=cancel)

        with pytest.raises(CancelledError):
            publisher.publish(PublishOptions())

        assert images.pushed == []
        assert publisher.stage is PublishStage.ABORTED

    def test_cancelled_during_push_stops_before_relocation(self, project, make_publisher, ghcr):
        cancel = CancelToken()

        class CancellingImages(FakeImageClient):
            def push(self, image, credentials, *, progress=None, cancel=None):
                digest = super().push(image, credentials, progress=progress, cancel=cancel)
                cancel.cancel()
                return digest

        publisher = make_publisher(images=CancellingImages(), cancel=cancel)

        with pytest.raises(CancelledError) as exc_info:
            publisher.publish(PublishOptions())

        assert exc_info.value.stage == "relocation-complete"
        assert exit_code_for(exc_info.value) == 130
        assert ghcr.calls == []


class TestValidateBundleTag:

    def test_normalizes(self):
        ref = validate_bundle_tag("myorg/mybundle:v1")
        assert str(ref) == "docker.io/myorg/mybundle:v1"

    @pytest.mark.parametrize("tag", [None, "", "  "])
    def test_empty(self, tag):
        with pytest.raises(ConfigurationError, match="must specify a `tag`"):
            validate_bundle_tag(tag)

    def test_malformed(self):
        with pytest.raises(ConfigurationError, match="REGISTRY/bundle:tag"):
            validate_bundle_tag("bundles/MyApp:v1")


def test_push_bundle_descriptor_reuses_existing_config_blob(registry):
    bundle = BundleDescriptor.model_validate(bundle_json())
    target = parse_normalized("localhost:5000/bundles/myapp:v1")
    first = push_bundle_descriptor(bundle, target, registry)
    uploads = len(registry.calls_to("upload_blob"))

    second = push_bundle_descriptor(bundle, target, registry)

    assert second == first
    assert len(registry.calls_to("upload_blob")) == uploads == 1
