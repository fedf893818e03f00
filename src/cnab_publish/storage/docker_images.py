"""
Docker daemon adapter for the invocation image.

Pushes a locally built image through the Docker Engine API and asks the
daemon for the registry-side digest afterwards. Uses the docker SDK.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import docker
from docker.errors import APIError, DockerException, NotFound

from ..reference import DEFAULT_TAG, parse_reference
from ..runtime_types import CancelToken, ProgressSink, check_cancelled
from ..settings import Settings
from .credentials import Credentials
from .registry_errors import (
    AuthenticationError,
    DigestMismatchError,
    NotFoundError,
    StreamError,
    TransportError,
)

logger = logging.getLogger(__name__)

__all__ = ["DockerImageClient"]

_AUTH_ERROR_PREFIXES = ("denied", "unauthorized")


class DockerImageClient:
    """
    Registry client backed by the local Docker daemon.

    The daemon already holds the locally built invocation image, so pushing
    through it avoids re-reading layers from disk ourselves.
    """

    def __init__(self, settings: Settings, client: Optional[docker.DockerClient] = None):
        self.settings = settings
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialize the docker client."""
        if self._client is None:
            try:
                self._client = docker.from_env(timeout=int(self.settings.http_timeout_s))
            except DockerException as e:
                raise TransportError(f"Could not create docker client: {e}") from e
        return self._client

    def push(self, image: str, credentials: Optional[Credentials], *,
             progress: Optional[ProgressSink] = None,
             cancel: Optional[CancelToken] = None) -> str:
        """
        Push a local image and return its registry digest.

        Args:
            image: Local image reference, e.g. "localhost:5000/myapp:v1"
            credentials: Credentials for the image's registry (None = anonymous)
            progress: Sink for push progress lines
            cancel: Cancellation token checked between stream messages

        Returns:
            Manifest digest confirmed by the registry (sha256:...)

        Raises:
            AuthenticationError: If the registry denies the push
            StreamError: If the push stream reports an error or breaks off
            TransportError: If the daemon or network fails
            DigestMismatchError: If inspect disagrees with the push stream
        """
        ref = parse_reference(image)
        tag = ref.tag or DEFAULT_TAG
        auth_config = credentials.as_docker_auth() if credentials else None

        logger.info(f"Pushing {ref.name}:{tag} through the docker daemon")
        pushed_digest = None
        try:
            stream = self.client.api.push(ref.name, tag=tag, stream=True, decode=True,
                                          auth_config=auth_config)
            for message in stream:
                check_cancelled(cancel, f"push of {image}")
                pushed_digest = self._handle_message(message, image, progress) or pushed_digest
        except APIError as e:
            raise self._map_api_error(e, f"docker push of {image} failed") from e
        except json.JSONDecodeError as e:
            raise StreamError(f"Failed to read docker push output for {image}: {e}") from e
        except (DockerException, OSError) as e:
            raise TransportError(f"docker push of {image} failed: {e}") from e

        digest = self.inspect(image, credentials)
        if pushed_digest and pushed_digest != digest:
            raise DigestMismatchError(
                f"Registry reports {digest} for {image} but the push produced {pushed_digest}",
                expected=pushed_digest, actual=digest,
            )
        return digest

    def inspect(self, image: str, credentials: Optional[Credentials]) -> str:
        """
        Query the registry (through the daemon) for the current digest of ``image``.

        Raises:
            NotFoundError: If the reference does not exist remotely
            AuthenticationError: If the registry rejects our credentials
            TransportError: For other failures
        """
        auth_config = credentials.as_docker_auth() if credentials else None
        try:
            distribution = self.client.api.inspect_distribution(image, auth_config=auth_config)
        except NotFound as e:
            raise NotFoundError(f"Image {image} not found in its registry") from e
        except APIError as e:
            raise self._map_api_error(e, f"unable to inspect docker image {image}") from e
        except (DockerException, OSError) as e:
            raise TransportError(f"unable to inspect docker image {image}: {e}") from e

        digest = (distribution.get("Descriptor") or {}).get("digest")
        if not digest:
            raise TransportError(f"Daemon returned no digest for {image}")
        return digest

    @staticmethod
    def _handle_message(message: Dict[str, Any], image: str,
                        progress: Optional[ProgressSink]) -> Optional[str]:
        """Report one push stream message; return the digest if it carries one."""
        error = message.get("error") or (message.get("errorDetail") or {}).get("message")
        if error:
            if error.lower().startswith(_AUTH_ERROR_PREFIXES):
                raise AuthenticationError(f"docker push authentication failed for {image}: {error}")
            raise StreamError(f"failed to stream docker push output for {image}: {error}")

        aux = message.get("aux")
        if aux and aux.get("Digest"):
            return aux["Digest"]

        status = message.get("status")
        if status and progress is not None and not message.get("progressDetail"):
            layer = message.get("id")
            progress.write(f"{layer}: {status}" if layer else status)
        return None

    @staticmethod
    def _map_api_error(error: APIError, message: str) -> Exception:
        explanation = str(error.explanation or error)
        if error.status_code in (401, 403) or explanation.lower().startswith(_AUTH_ERROR_PREFIXES):
            return AuthenticationError(f"{message}: authentication failed: {explanation}")
        return TransportError(f"{message}: {explanation}")
