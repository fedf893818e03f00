"""
Bundle descriptor to OCI artifact conversion.

The finished bundle.json is published as an OCI image manifest whose config
blob is the canonical descriptor. The same blob is listed as the single layer
so registries that require at least one layer accept the artifact.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Dict

from .models import BundleDescriptor
from .storage.oci_media_types import (
    ARTIFACT_TYPE_ANNOTATION,
    AUTHORS_ANNOTATION,
    CNAB_ARTIFACT_TYPE,
    CNAB_CONFIG_MEDIA_TYPE,
    CNAB_KEYWORDS_ANNOTATION,
    CNAB_RUNTIME_VERSION,
    CNAB_RUNTIME_VERSION_ANNOTATION,
    DESCRIPTION_ANNOTATION,
    OCI_IMAGE_MANIFEST,
    TITLE_ANNOTATION,
    VERSION_ANNOTATION,
)
from .storage.registry_http import compute_digest

__all__ = ["OciArtifact", "BUNDLE_TITLE", "to_oci_artifact"]

BUNDLE_TITLE = "bundle.json"


@dataclass(frozen=True)
class OciArtifact:
    """Everything needed to push a bundle: one blob and one manifest."""
    config: bytes
    config_digest: str
    manifest: bytes
    media_type: str = OCI_IMAGE_MANIFEST


def bundle_annotations(bundle: BundleDescriptor) -> Dict[str, str]:
    annotations = {
        ARTIFACT_TYPE_ANNOTATION: CNAB_ARTIFACT_TYPE,
        CNAB_RUNTIME_VERSION_ANNOTATION: CNAB_RUNTIME_VERSION,
        TITLE_ANNOTATION: bundle.name,
        VERSION_ANNOTATION: bundle.version,
    }
    if bundle.description:
        annotations[DESCRIPTION_ANNOTATION] = bundle.description
    if bundle.maintainers:
        annotations[AUTHORS_ANNOTATION] = ", ".join(m.name for m in bundle.maintainers)
    if bundle.keywords:
        annotations[CNAB_KEYWORDS_ANNOTATION] = json.dumps(bundle.keywords, separators=(',', ':'))
    return annotations


def to_oci_artifact(bundle: BundleDescriptor) -> OciArtifact:
    """
    Build the OCI manifest for a bundle descriptor.

    Returns:
        OciArtifact with the canonical bundle.json and the manifest bytes
    """
    config = bundle.to_canonical_json()
    config_digest = compute_digest(config)
    config_descriptor = {
        "mediaType": CNAB_CONFIG_MEDIA_TYPE,
        "digest": config_digest,
        "size": len(config),
    }

    manifest = {
        "schemaVersion": 2,
        "mediaType": OCI_IMAGE_MANIFEST,
        "artifactType": CNAB_ARTIFACT_TYPE,
        "config": config_descriptor,
        "layers": [
            {**config_descriptor, "annotations": {TITLE_ANNOTATION: BUNDLE_TITLE}},
        ],
        "annotations": bundle_annotations(bundle),
    }

    manifest_bytes = json.dumps(
        manifest,
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=True,
    ).encode('utf-8')

    return OciArtifact(config=config, config_digest=config_digest, manifest=manifest_bytes)
