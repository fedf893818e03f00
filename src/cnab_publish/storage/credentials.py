"""
Registry credentials.

Credentials are resolved per registry domain through a ``CredentialProvider``
that is injected into every component that talks to a registry. Nothing here
logs secret material.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol, runtime_checkable

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    "Credentials",
    "CredentialProvider",
    "DockerConfigCredentials",
    "StaticCredentials",
    "AnonymousCredentials",
]

# Docker Hub is stored under several keys in config.json
_DOCKER_HUB_KEYS = (
    "https://index.docker.io/v1/",
    "index.docker.io",
    "registry-1.docker.io",
    "docker.io",
)


@dataclass(frozen=True)
class Credentials:
    """Username/password or identity token for one registry."""
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    identity_token: Optional[str] = field(default=None, repr=False)

    def as_docker_auth(self, domain: Optional[str] = None) -> Dict[str, str]:
        """Render as the auth_config dict the Docker Engine API expects."""
        auth: Dict[str, str] = {}
        if self.username:
            auth["username"] = self.username
        if self.password:
            auth["password"] = self.password
        if self.identity_token:
            auth["identitytoken"] = self.identity_token
        if domain:
            auth["serveraddress"] = domain
        return auth


@runtime_checkable
class CredentialProvider(Protocol):
    """Resolves credentials for a registry domain."""

    def get_credentials(self, domain: str) -> Optional[Credentials]:
        """
        Look up credentials for ``domain`` (e.g. "ghcr.io", "localhost:5000").

        Returns:
            Credentials, or None for anonymous access
        """
        ...


class AnonymousCredentials:
    """Provider that never has credentials."""

    def get_credentials(self, domain: str) -> Optional[Credentials]:
        return None


class StaticCredentials:
    """Fixed domain -> credentials mapping."""

    def __init__(self, credentials: Optional[Mapping[str, Credentials]] = None):
        self._credentials = dict(credentials or {})

    def get_credentials(self, domain: str) -> Optional[Credentials]:
        return self._credentials.get(domain)


class DockerConfigCredentials:
    """Handle registry authentication from Docker config files."""

    def __init__(self, config_path: Optional[Path] = None):
        if config_path is None:
            config_dir = os.getenv("DOCKER_CONFIG")
            base = Path(config_dir) if config_dir else Path.home() / ".docker"
            config_path = base / "config.json"
        self.config_path = Path(config_path)
        self._config_cache: Optional[dict] = None
        self._config_mtime: Optional[float] = None

    @classmethod
    def from_directory(cls, config_dir: Optional[str]) -> DockerConfigCredentials:
        """Build from a DOCKER_CONFIG style directory (None = default)."""
        if config_dir:
            return cls(Path(config_dir) / "config.json")
        return cls()

    def get_credentials(self, domain: str) -> Optional[Credentials]:
        """
        Get credentials for a registry from the Docker config.

        Returns: Credentials or None if the config has no entry for ``domain``
        """
        config = self._load_config()
        if not config:
            return None

        auths = config.get("auths", {})
        entry = None
        for key in self._candidate_keys(domain):
            if key in auths:
                entry = auths[key]
                break
        if entry is None:
            logger.debug(f"No credentials for {domain} in {self.config_path}")
            return None

        identity_token = entry.get("identitytoken")

        # base64 "user:password"
        if entry.get("auth"):
            try:
                decoded = base64.b64decode(entry["auth"]).decode()
            except (binascii.Error, UnicodeDecodeError) as e:
                raise ConfigurationError(
                    f"Malformed auth entry for {domain} in {self.config_path}",
                    subject=str(self.config_path),
                ) from e
            if ":" in decoded:
                username, password = decoded.split(":", 1)
                return Credentials(username=username, password=password,
                                   identity_token=identity_token)

        if "username" in entry and "password" in entry:
            return Credentials(username=entry["username"], password=entry["password"],
                               identity_token=identity_token)

        if identity_token:
            return Credentials(identity_token=identity_token)

        return None

    @staticmethod
    def _candidate_keys(domain: str) -> list[str]:
        if domain in _DOCKER_HUB_KEYS:
            return list(_DOCKER_HUB_KEYS)
        return [domain, f"https://{domain}", f"http://{domain}", f"https://{domain}/v1/"]

    def _load_config(self) -> Optional[dict]:
        """Load Docker config with caching and mtime checking."""
        if not self.config_path.exists():
            return None

        current_mtime = self.config_path.stat().st_mtime

        # Use cached version if file hasn't changed
        if (self._config_cache is not None and
                self._config_mtime is not None and
                current_mtime == self._config_mtime):
            return self._config_cache

        try:
            with open(self.config_path, 'r') as f:
                config = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Docker config {self.config_path} is not valid JSON",
                subject=str(self.config_path),
            ) from e

        self._config_cache = config
        self._config_mtime = current_mtime
        return config
