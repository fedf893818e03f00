"""
CLI Context for managing application dependencies.

Provides a clean way to manage CLI-level dependencies like settings,
credentials and the run's cancellation token, avoiding global state and
enabling proper dependency injection.
"""
from __future__ import annotations

import logging
import signal
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

from .runtime_types import CancelToken
from .settings import Settings, create_settings_from_env
from .storage.credentials import CredentialProvider, DockerConfigCredentials

logger = logging.getLogger(__name__)


@dataclass
class CLIContext:
    """
    Shared context for CLI commands.

    Manages application-level dependencies (settings, credentials,
    cancellation) that are initialized once and shared across a CLI command
    execution.
    """
    settings: Settings
    cancel: CancelToken = field(default_factory=CancelToken)
    _credentials: Optional[CredentialProvider] = None

    @classmethod
    def from_env(cls) -> CLIContext:
        """
        Create CLI context from environment variables.

        Returns:
            CLIContext with settings loaded from environment
        """
        settings = create_settings_from_env()
        return cls(settings=settings)

    @property
    def credentials(self) -> CredentialProvider:
        """
        Get or create the credential provider (lazy initialization).

        Returns:
            DockerConfigCredentials reading Docker's config.json
        """
        if self._credentials is None:
            self._credentials = DockerConfigCredentials.from_directory(self.settings.docker_config)
        return self._credentials

    @contextmanager
    def interruptible(self) -> Iterator[CancelToken]:
        """
        Turn SIGINT into a cancellation of this context's token.

        The run then stops at its next I/O boundary with CancelledError
        instead of dying mid-request. The previous handler is restored on exit.
        """
        def _on_sigint(signum, frame):
            logger.info("Interrupt received, cancelling")
            self.cancel.cancel()

        previous = signal.signal(signal.SIGINT, _on_sigint)
        try:
            yield self.cancel
        finally:
            signal.signal(signal.SIGINT, previous)
