"""
Data models for bundle publishing.

These Pydantic models provide type safety and validation for the publish
workflow, from parsing porter.yaml to serializing the CNAB bundle.json that
gets pushed to the registry.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Manifest(BaseModel):
    """
    Bundle manifest (porter.yaml).

    Only the fields the publisher needs are modelled; everything else is
    kept as extra metadata.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str = Field(..., description="Bundle name")
    version: str = Field(..., description="Bundle version")
    description: Optional[str] = Field(default=None, description="Bundle description")
    image: str = Field(..., alias="invocationImage", description="Invocation image reference")
    tag: Optional[str] = Field(default=None, description="Bundle tag (REGISTRY/bundle:tag)")

    @classmethod
    def from_yaml_file(cls, path: Path) -> Manifest:
        """Load a Manifest from a YAML file."""
        import yaml

        if not path.exists():
            raise FileNotFoundError(f"Manifest not found: {path}")

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Manifest {path} must be a mapping, got {type(data).__name__}")
        return cls.model_validate(data)


class BaseImage(BaseModel):
    """Fields shared by invocation images and auxiliary images in bundle.json."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    image_type: str = Field(default="oci", alias="imageType")
    image: str = Field(..., description="Image reference")
    content_digest: Optional[str] = Field(default=None, alias="contentDigest")
    media_type: Optional[str] = Field(default=None, alias="mediaType")
    size: Optional[int] = Field(default=None)
    labels: Optional[Dict[str, str]] = Field(default=None)


class InvocationImage(BaseImage):
    """Image that runs the bundle's install/upgrade/uninstall logic."""
    pass


class Image(BaseImage):
    """Auxiliary image used by the application at runtime."""
    description: Optional[str] = Field(default=None)


class Maintainer(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    email: Optional[str] = None
    url: Optional[str] = None


class BundleDescriptor(BaseModel):
    """
    CNAB bundle descriptor (bundle.json).

    ``images`` keeps insertion order, which is the declaration order the
    relocation engine walks. Keys this model doesn't know about (actions,
    parameters, credentials, ...) are preserved verbatim.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    schema_version: str = Field(default="v1.0.0", alias="schemaVersion")
    name: str
    version: str
    description: Optional[str] = None
    keywords: Optional[List[str]] = None
    maintainers: Optional[List[Maintainer]] = None
    invocation_images: List[InvocationImage] = Field(default_factory=list, alias="invocationImages")
    images: Dict[str, Image] = Field(default_factory=dict)

    @classmethod
    def from_file(cls, path: Path) -> BundleDescriptor:
        """Load a BundleDescriptor from bundle.json."""
        if not path.exists():
            raise FileNotFoundError(f"Bundle descriptor not found: {path}")
        return cls.model_validate_json(path.read_bytes())

    def to_canonical_json(self) -> bytes:
        """Serialize with sorted keys and no whitespace."""
        return json.dumps(
            self.model_dump(by_alias=True, exclude_none=True, mode="json"),
            sort_keys=True,
            separators=(',', ':'),
            ensure_ascii=True,
        ).encode('utf-8')


__all__ = [
    "Manifest",
    "BaseImage",
    "InvocationImage",
    "Image",
    "Maintainer",
    "BundleDescriptor",
]
