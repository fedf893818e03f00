"""
Manifest loading.

The manifest is looked up at an explicit path when one is given, otherwise
at the conventional location in the working directory.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .errors import ConfigurationError, ManifestNotFoundError
from .models import Manifest

logger = logging.getLogger(__name__)

__all__ = ["DEFAULT_MANIFEST", "find_manifest", "load_manifest"]

DEFAULT_MANIFEST = "porter.yaml"


def find_manifest(path: Optional[Path] = None, *, working_dir: Optional[Path] = None,
                  default_name: str = DEFAULT_MANIFEST) -> Path:
    """
    Resolve the manifest location.

    Raises:
        ManifestNotFoundError: If neither the explicit path nor the default exists
    """
    if path is not None:
        path = Path(path)
        if not path.is_file():
            raise ManifestNotFoundError(
                f"could not find the manifest at {path}, check the path passed with --file",
                subject=str(path),
            )
        return path

    candidate = Path(working_dir or Path.cwd()) / default_name
    if not candidate.is_file():
        raise ManifestNotFoundError(
            f"could not find {default_name} in the current directory, make sure you are in "
            f"the right directory or specify the manifest with --file",
            subject=str(candidate),
        )
    return candidate


def load_manifest(path: Optional[Path] = None, *, working_dir: Optional[Path] = None,
                  default_name: str = DEFAULT_MANIFEST) -> Manifest:
    """
    Load the bundle manifest.

    Args:
        path: Explicit manifest path (takes precedence)
        working_dir: Directory searched for ``default_name`` (cwd if None)
        default_name: Conventional manifest file name

    Raises:
        ManifestNotFoundError: If no manifest can be found
        ConfigurationError: If the manifest is not valid
    """
    manifest_path = find_manifest(path, working_dir=working_dir, default_name=default_name)
    logger.debug(f"Loading manifest from {manifest_path}")

    import yaml

    try:
        return Manifest.from_yaml_file(manifest_path)
    except (ValidationError, ValueError, yaml.YAMLError) as e:
        raise ConfigurationError(f"invalid manifest {manifest_path}: {e}",
                                 subject=str(manifest_path)) from e
