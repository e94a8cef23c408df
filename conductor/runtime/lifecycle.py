"""
Service lifecycle.

Long-lived collaborators (caches, knowledge stores, model pools) are
constructed explicitly and handed to the IterationController, which starts
them before the first iteration and stops them when the session ends.
Nothing is looked up from module-level state.
"""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class ManagedService(ABC):
    """A service with an explicit start/stop lifecycle."""

    name: str = "service"

    def __init__(self) -> None:
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        await self.on_start()
        self._running = True
        logger.debug(f"Service {self.name} started")

    async def stop(self) -> None:
        if not self._running:
            return
        try:
            await self.on_stop()
        finally:
            self._running = False
            logger.debug(f"Service {self.name} stopped")

    @abstractmethod
    async def on_start(self) -> None:
        """Acquire resources."""

    @abstractmethod
    async def on_stop(self) -> None:
        """Release resources."""


class ServiceGroup:
    """
    Starts services in registration order and stops them in reverse.

    Example:
        services = ServiceGroup([knowledge_cache, model_pool])
        async with services:
            await controller_body()
    """

    def __init__(self, services: list[ManagedService] | None = None):
        self._services: list[ManagedService] = list(services or [])
        self._started: list[ManagedService] = []

    def add(self, service: ManagedService) -> None:
        self._services.append(service)

    def __len__(self) -> int:
        return len(self._services)

    async def start(self) -> None:
        for service in self._services:
            try:
                await service.start()
            except Exception:
                await self.stop()
                raise
            self._started.append(service)

    async def stop(self) -> None:
        """Stop every started service; one failing stop does not skip the rest."""
        while self._started:
            service = self._started.pop()
            try:
                await service.stop()
            except Exception as e:
                logger.error(f"Failed to stop service {service.name}: {e}")

    async def __aenter__(self) -> "ServiceGroup":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
