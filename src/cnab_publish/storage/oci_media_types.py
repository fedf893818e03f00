"""
OCI media types and CNAB annotations.

Single source of truth for all registry-related media types and constants.
"""
from __future__ import annotations

# OCI manifest types
OCI_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"

# Docker manifest types
DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_MANIFEST_V1 = "application/vnd.docker.distribution.manifest.v1+json"
DOCKER_MANIFEST_V1_SIGNED = "application/vnd.docker.distribution.manifest.v1+prettyjws"

# Manifests we accept, in order of preference
ACCEPTED_MANIFEST_TYPES = [
    OCI_IMAGE_MANIFEST,
    OCI_IMAGE_INDEX,
    DOCKER_MANIFEST_V2,
    DOCKER_MANIFEST_LIST,
]

# Manifests that point at other manifests rather than at blobs
INDEX_MEDIA_TYPES = frozenset({OCI_IMAGE_INDEX, DOCKER_MANIFEST_LIST})

# CNAB artifact types
CNAB_CONFIG_MEDIA_TYPE = "application/vnd.cnab.config.v1+json"
CNAB_ARTIFACT_TYPE = "application/vnd.cnab.manifest.v1"

# Annotations on the published bundle manifest
ARTIFACT_TYPE_ANNOTATION = "org.opencontainers.artifactType"
TITLE_ANNOTATION = "org.opencontainers.image.title"
VERSION_ANNOTATION = "org.opencontainers.image.version"
DESCRIPTION_ANNOTATION = "org.opencontainers.image.description"
AUTHORS_ANNOTATION = "org.opencontainers.image.authors"
CNAB_RUNTIME_VERSION_ANNOTATION = "io.cnab.runtime_version"
CNAB_KEYWORDS_ANNOTATION = "io.cnab.keywords"

CNAB_RUNTIME_VERSION = "v1.0.0"

# Fallback for registries that omit Content-Type on manifest responses
DEFAULT_MANIFEST_MEDIA_TYPE = DOCKER_MANIFEST_V2


__all__ = [
    "OCI_IMAGE_MANIFEST",
    "OCI_IMAGE_INDEX",
    "DOCKER_MANIFEST_V2",
    "DOCKER_MANIFEST_LIST",
    "DOCKER_MANIFEST_V1",
    "DOCKER_MANIFEST_V1_SIGNED",
    "ACCEPTED_MANIFEST_TYPES",
    "INDEX_MEDIA_TYPES",
    "CNAB_CONFIG_MEDIA_TYPE",
    "CNAB_ARTIFACT_TYPE",
    "ARTIFACT_TYPE_ANNOTATION",
    "TITLE_ANNOTATION",
    "VERSION_ANNOTATION",
    "DESCRIPTION_ANNOTATION",
    "AUTHORS_ANNOTATION",
    "CNAB_RUNTIME_VERSION_ANNOTATION",
    "CNAB_KEYWORDS_ANNOTATION",
    "CNAB_RUNTIME_VERSION",
    "DEFAULT_MANIFEST_MEDIA_TYPE",
]
