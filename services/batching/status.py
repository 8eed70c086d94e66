# services/batching/status.py
from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Optional

from services.batching.accountant import AnonymityAccountant, BatchStatus

LOG = logging.getLogger("batch_status")
LOG.addHandler(logging.NullHandler())

StatusSource = Callable[[], Awaitable[BatchStatus]]


class BatchStatusService:
    """
    Serves batch status with a short TTL cache. The source is any coroutine
    returning a BatchStatus (local accountant, ledger reader, ...). Instances
    are injected where needed; nothing is cached at module level.
    """

    def __init__(
        self,
        source: StatusSource,
        ttl_seconds: float = 5.0,
        just_settled_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.source = source
        self.ttl_seconds = ttl_seconds
        self.just_settled_seconds = just_settled_seconds
        self.clock = clock
        self.wall_clock = wall_clock
        self._cached: Optional[BatchStatus] = None
        self._fetched_at = 0.0

    @classmethod
    def for_accountant(cls, accountant: AnonymityAccountant, **kwargs) -> "BatchStatusService":
        async def _source() -> BatchStatus:
            return accountant.status()

        return cls(_source, **kwargs)

    async def get(self, force_refresh: bool = False) -> BatchStatus:
        now = self.clock()
        if force_refresh or self._cached is None or now - self._fetched_at >= self.ttl_seconds:
            self._cached = await self.source()
            self._fetched_at = now
            LOG.debug(f"batch status refreshed: batch {self._cached.batch_id}")
        return self._cached

    def invalidate(self) -> None:
        self._cached = None

    def just_settled(self, status: BatchStatus) -> bool:
        if status.last_settled_at is None:
            return False
        return self.wall_clock() - status.last_settled_at < self.just_settled_seconds


__all__ = ["BatchStatusService", "StatusSource"]
