"""
Settings and configuration for cnab-publish.

Centralizes configuration values and provides validation with fail-fast behavior.
Loads settings from environment variables; CLI flags override per invocation.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

__all__ = ["Settings", "create_settings_from_env"]


@dataclass(frozen=True)
class Settings:
    """
    Configuration settings for a publish run.

    Registry Settings:
        registry_insecure: Mark the bundle tag's registry insecure (plain HTTP,
            no TLS verification)
        http_timeout_s: Per-request transport timeout in seconds
        http_retry: Transport-level retries of timed out requests (0=no retry)
        docker_config: Directory holding Docker's config.json (None = default)
        user_agent: User-Agent header sent to registries

    Project Settings:
        manifest_file: Manifest looked up in the working directory when no
            explicit path is given
        bundle_file: Bundle descriptor produced by the build step
    """
    # Registry settings
    registry_insecure: bool = False
    http_timeout_s: float = 30.0
    http_retry: int = 0
    docker_config: Optional[str] = None
    user_agent: str = "cnab-publish/0.1.0"

    # Project settings
    manifest_file: str = "porter.yaml"
    bundle_file: str = "cnab/bundle.json"

    def __post_init__(self):
        """Validate settings on construction."""
        if self.http_timeout_s is None or self.http_timeout_s <= 0:
            raise ValueError(f"http_timeout_s must be positive, got {self.http_timeout_s}")

        if self.http_retry < 0:
            raise ValueError(f"http_retry must be non-negative, got {self.http_retry}")

        if not self.manifest_file:
            raise ValueError("manifest_file is required")

        if not self.bundle_file:
            raise ValueError("bundle_file is required")


def create_settings_from_env() -> Settings:
    """
    Load settings from environment variables.

    Environment Variables:
        - CNAB_REGISTRY_INSECURE (default: false)
        - CNAB_HTTP_TIMEOUT (default: 30.0)
        - CNAB_HTTP_RETRY (default: 0)
        - DOCKER_CONFIG (optional, directory containing config.json)
        - CNAB_MANIFEST (default: porter.yaml)
        - CNAB_BUNDLE_FILE (default: cnab/bundle.json)

    Returns:
        Settings object with validated configuration

    Raises:
        ValueError: If configuration is invalid

    Note:
        Creates a fresh Settings instance every time (no caching).
    """
    def str_to_bool(value: str) -> bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    def get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        try:
            return float(value) if value else default
        except ValueError as e:
            raise ValueError(f"{key} must be a number, got {value!r}") from e

    def get_int(key: str, default: int) -> int:
        value = os.getenv(key)
        try:
            return int(value) if value else default
        except ValueError as e:
            raise ValueError(f"{key} must be an integer, got {value!r}") from e

    return Settings(
        registry_insecure=str_to_bool(os.getenv("CNAB_REGISTRY_INSECURE", "false")),
        http_timeout_s=get_float("CNAB_HTTP_TIMEOUT", 30.0),
        http_retry=get_int("CNAB_HTTP_RETRY", 0),
        docker_config=os.getenv("DOCKER_CONFIG") or None,
        manifest_file=os.getenv("CNAB_MANIFEST") or "porter.yaml",
        bundle_file=os.getenv("CNAB_BUNDLE_FILE") or "cnab/bundle.json",
    )
