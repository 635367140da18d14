"""
Sandbox image management through the Docker SDK.
Pulls every language image once at worker start-up so the first task for a
language does not spend its time budget on a pull.
"""
import asyncio
import logging
from typing import Iterable, Optional

import docker
from docker.errors import DockerException, ImageNotFound

from .models import LanguageProfile

logger = logging.getLogger(__name__)


class SandboxImages:
    def __init__(self, profiles: Iterable[LanguageProfile]):
        self.images = sorted({profile.image for profile in profiles})
        self._client: Optional[docker.DockerClient] = None

    def _get_client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _ensure_image(self, image: str) -> None:
        client = self._get_client()
        try:
            client.images.get(image)
            logger.info(f"Sandbox image '{image}' already present")
        except ImageNotFound:
            logger.info(f"Pulling sandbox image '{image}'...")
            client.images.pull(image)
            logger.info(f"Sandbox image '{image}' pulled successfully")

    async def ensure_all(self) -> None:
        """Make sure every image is available locally. Failures are logged, not raised."""
        loop = asyncio.get_event_loop()
        for image in self.images:
            try:
                await loop.run_in_executor(None, self._ensure_image, image)
            except DockerException as e:
                logger.warning(f"Could not prepare sandbox image '{image}': {e}")

    async def runtime_available(self) -> bool:
        """Ping the container runtime."""
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, lambda: self._get_client().ping())
        except DockerException as e:
            logger.warning(f"Container runtime unavailable: {e}")
            return False

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
