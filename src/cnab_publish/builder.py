"""
Bundle descriptor builder.

Generating bundle.json from manifest source is the build step's job. This
builder picks up the descriptor that step produced and points its invocation
image at the freshly pinned reference. The file on disk is never rewritten.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .errors import ConfigurationError
from .models import BundleDescriptor, InvocationImage, Manifest

logger = logging.getLogger(__name__)

__all__ = ["DescriptorFileBuilder"]


class DescriptorFileBuilder:
    """Reads ``cnab/bundle.json`` and applies the pinned invocation image in memory."""

    def __init__(self, bundle_file: Path, working_dir: Optional[Path] = None):
        bundle_file = Path(bundle_file)
        if not bundle_file.is_absolute() and working_dir is not None:
            bundle_file = Path(working_dir) / bundle_file
        self.bundle_file = bundle_file

    def build(self, manifest: Manifest, invocation_image: str, digest: str) -> BundleDescriptor:
        """
        Load the descriptor and set the invocation image.

        Raises:
            ConfigurationError: If the descriptor is missing, invalid, declares
                more than one invocation image, or describes a different
                bundle than the manifest
        """
        try:
            bundle = BundleDescriptor.from_file(self.bundle_file)
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"bundle descriptor {self.bundle_file} not found, build the bundle first",
                subject=str(self.bundle_file),
            ) from e
        except ValidationError as e:
            raise ConfigurationError(f"invalid bundle descriptor {self.bundle_file}: {e}",
                                     subject=str(self.bundle_file)) from e

        if bundle.name != manifest.name:
            raise ConfigurationError(
                f"bundle descriptor {self.bundle_file} is for {bundle.name!r}, "
                f"manifest is for {manifest.name!r}; rebuild the bundle",
                subject=str(self.bundle_file),
            )

        # Only one image is pushed and pinned per publish
        if len(bundle.invocation_images) > 1:
            raise ConfigurationError(
                f"bundle descriptor {self.bundle_file} declares {len(bundle.invocation_images)} "
                f"invocation images; exactly one invocation image is supported",
                subject=str(self.bundle_file),
            )

        if bundle.invocation_images:
            bundle.invocation_images[0].image = invocation_image
            bundle.invocation_images[0].content_digest = digest
        else:
            bundle.invocation_images.append(
                InvocationImage(image=invocation_image, content_digest=digest)
            )

        logger.debug(f"Bundle {bundle.name}:{bundle.version} invocation image set to {invocation_image}")
        return bundle
