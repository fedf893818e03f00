"""
Registry resolver with security policy.

Hands out one ``RegistryHTTP`` client per registry domain for the lifetime of
a publish run. The set of insecure domains is fixed at construction, so every
registry operation in one run sees the same policy.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

import httpx

from ..reference import DEFAULT_DOMAIN
from ..runtime_types import CancelToken
from ..settings import Settings
from .credentials import CredentialProvider
from .registry_http import RegistryHTTP

logger = logging.getLogger(__name__)

__all__ = ["RegistryResolver", "api_host"]

# Docker Hub serves the distribution API from a different host
_API_HOSTS = {
    DEFAULT_DOMAIN: "registry-1.docker.io",
    "index.docker.io": "registry-1.docker.io",
}


def api_host(domain: str) -> str:
    """Map a reference domain to the host serving its distribution API."""
    return _API_HOSTS.get(domain, domain)


class RegistryResolver:
    """
    Per-run pool of registry clients.

    Examples:
        >>> with RegistryResolver(settings, credentials, ["localhost:5000"]) as resolver:
        ...     resolver.client("localhost:5000").head_manifest("bundles/app", "v1")
    """

    def __init__(self, settings: Settings, credentials: CredentialProvider,
                 insecure_registries: Iterable[str] = (), *,
                 cancel: Optional[CancelToken] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        self.settings = settings
        self.credentials = credentials
        self.insecure_registries = frozenset(insecure_registries)
        self.cancel = cancel
        self._transport = transport
        self._clients: Dict[str, RegistryHTTP] = {}

    def is_insecure(self, domain: str) -> bool:
        return domain in self.insecure_registries

    def client(self, domain: str) -> RegistryHTTP:
        """Get or create the client for ``domain``."""
        if domain not in self._clients:
            insecure = self.is_insecure(domain)
            if insecure:
                logger.info(f"Using plain HTTP for insecure registry {domain}")
            self._clients[domain] = RegistryHTTP(
                domain,
                credentials=self.credentials,
                insecure=insecure,
                endpoint=api_host(domain),
                timeout_s=self.settings.http_timeout_s,
                retries=self.settings.http_retry,
                user_agent=self.settings.user_agent,
                cancel=self.cancel,
                transport=self._transport,
            )
        return self._clients[domain]

    def close(self) -> None:
        for client in self._clients.values():
            client.close()
        self._clients.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
