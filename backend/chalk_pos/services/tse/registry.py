"""Process-wide cache of TSE managers, keyed by organization."""

import logging
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request

from chalk_pos.services.tse.config_store import TseConfigStore
from chalk_pos.services.tse.fiskaly_client import FiskalyClient
from chalk_pos.services.tse.manager import ClientFactory, TseManager

logger = logging.getLogger(__name__)


class TseManagerRegistry:
    """Hands out initialized managers and forgets them on configuration change.

    Only enabled managers are cached, so an organization whose TSE is down
    or unconfigured is retried on every ``get``. Concurrent ``get`` calls for
    one organization may both initialize; the last one wins. A manager that
    leaves the cache, by invalidation or by age, is retired: it finishes the
    calls it is serving and then closes its client.
    """

    def __init__(
        self,
        config_store: TseConfigStore,
        client_factory: ClientFactory = FiskalyClient,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config_store = config_store
        self._client_factory = client_factory
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._managers: Dict[str, Tuple[TseManager, float]] = {}

    @property
    def client_factory(self) -> ClientFactory:
        return self._client_factory

    @property
    def config_store(self) -> TseConfigStore:
        return self._config_store

    def _is_fresh(self, cached_at: float) -> bool:
        if self._ttl_seconds is None:
            return True
        return self._clock() - cached_at < self._ttl_seconds

    def create_manager(self, organization_id: str) -> TseManager:
        return TseManager(organization_id, self._config_store, self._client_factory)

    async def get(self, organization_id: str) -> TseManager:
        cached = self._managers.get(organization_id)
        if cached is not None:
            manager, cached_at = cached
            if manager.is_enabled() and self._is_fresh(cached_at):
                return manager
            self._managers.pop(organization_id, None)
            await manager.retire()

        manager = self.create_manager(organization_id)
        if await manager.initialize():
            self._managers[organization_id] = (manager, self._clock())
        return manager

    async def invalidate(self, organization_id: str) -> None:
        entry = self._managers.pop(organization_id, None)
        if entry is None:
            return
        await entry[0].retire()
        logger.info(f"TSE manager invalidated for organization {organization_id}")

    def cached(self, organization_id: str) -> Optional[TseManager]:
        entry = self._managers.get(organization_id)
        return entry[0] if entry else None

    async def aclose(self) -> None:
        managers = [manager for manager, _ in self._managers.values()]
        self._managers.clear()
        for manager in managers:
            await manager.aclose()


def get_tse_registry(request: Request) -> TseManagerRegistry:
    """FastAPI dependency returning the registry created at startup."""
    return request.app.state.tse_registry
