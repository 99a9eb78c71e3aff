"""Bounded client pool for the external document-AI service.

Two separate limits:
- clients: up to ceil(max_clients / 4) clients per processor type are created lazily;
  beyond that, the least-used client of that type is reused. Clients past their TTL
  (idle) or request cap are retired by sweep().
- admission: at most max_concurrent_requests calls are in flight. Extra callers wait
  in a FIFO; release() hands the slot directly to the oldest waiter, so a newcomer can
  never overtake a queued caller.

Every acquire must be paired with exactly one release; use ``async with pool.client(...)``
or ``execute(...)`` which release on every exit path (success, error, cancellation).
"""
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar
import asyncio
import logging
import math
import time

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class PoolClosedError(RuntimeError):
    """Raised by acquire() after shutdown() has started."""


@dataclass(frozen=True)
class PoolConfig:
    max_clients: int = 10
    max_requests_per_client: int = 1000
    client_ttl_seconds: float = 300.0
    cleanup_interval_seconds: float = 60.0
    max_concurrent_requests: int = 50


@dataclass
class PooledClient:
    key: str
    client: Any
    processor_type: str
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    request_count: int = 0


def load_pool_config() -> PoolConfig:
    """PoolConfig from docmind.config (environment)."""
    from docmind.config import (
        POOL_MAX_CLIENTS,
        POOL_MAX_REQUESTS_PER_CLIENT,
        POOL_CLIENT_TTL_SECONDS,
        POOL_CLEANUP_INTERVAL_SECONDS,
        POOL_MAX_CONCURRENT_REQUESTS,
    )
    return PoolConfig(
        max_clients=POOL_MAX_CLIENTS,
        max_requests_per_client=POOL_MAX_REQUESTS_PER_CLIENT,
        client_ttl_seconds=POOL_CLIENT_TTL_SECONDS,
        cleanup_interval_seconds=POOL_CLEANUP_INTERVAL_SECONDS,
        max_concurrent_requests=POOL_MAX_CONCURRENT_REQUESTS,
    )


class ConnectionPool:
    def __init__(self, client_factory: Callable[[str], Any], config: PoolConfig | None = None):
        self.config = config or PoolConfig()
        self._client_factory = client_factory
        self._clients: dict[str, PooledClient] = {}
        self._key_counters: dict[str, int] = {}
        self._active = 0
        self._waiters: deque[asyncio.Future] = deque()
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self._sweeper: asyncio.Task | None = None

    @property
    def per_type_limit(self) -> int:
        return max(1, math.ceil(self.config.max_clients / 4))

    @property
    def active_requests(self) -> int:
        return self._active

    @property
    def queued_requests(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def _admit(self) -> None:
        if self._active < self.config.max_concurrent_requests and not self._waiters:
            self._active += 1
            self._idle.clear()
            return
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was handed to us just as we were cancelled: pass it on
                self._release_slot()
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise
        # Slot transferred by _release_slot; _active already accounts for it

    def _release_slot(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._active -= 1
        if self._active <= 0:
            self._active = 0
            self._idle.set()

    # ------------------------------------------------------------------
    # Client selection
    # ------------------------------------------------------------------

    def _checkout(self, processor_type: str) -> PooledClient:
        of_type = [c for c in self._clients.values() if c.processor_type == processor_type]
        if len(of_type) < self.per_type_limit:
            n = self._key_counters.get(processor_type, 0)
            self._key_counters[processor_type] = n + 1
            key = f"{processor_type}_{n}"
            pooled = PooledClient(key=key, client=self._client_factory(processor_type), processor_type=processor_type)
            self._clients[key] = pooled
            logger.info("Created new client in pool: %s", key)
        else:
            pooled = min(of_type, key=lambda c: c.request_count)
        pooled.last_used = time.monotonic()
        pooled.request_count += 1
        return pooled

    async def acquire(self, processor_type: str = "default") -> Any:
        """Wait for an admission slot and return a client for processor_type."""
        if self._closed:
            raise PoolClosedError("Connection pool is shut down")
        await self._admit()
        try:
            return self._checkout(processor_type).client
        except BaseException:
            self._release_slot()
            raise

    def release(self) -> None:
        """Return one admission slot (to the oldest waiter when there is one)."""
        self._release_slot()

    @asynccontextmanager
    async def client(self, processor_type: str = "default"):
        c = await self.acquire(processor_type)
        try:
            yield c
        finally:
            self.release()

    async def execute(self, processor_type: str, operation: Callable[[Any], Awaitable[R]]) -> R:
        async with self.client(processor_type) as c:
            return await operation(c)

    async def execute_batch(
        self,
        items: list[T],
        processor_type: str,
        operation: Callable[[Any, T], Awaitable[R]],
        max_concurrency: int = 5,
    ) -> list[R]:
        """Run operation over items, at most max_concurrency at a time. Results keep input order."""
        sem = asyncio.Semaphore(max(1, max_concurrency))

        async def _one(item: T) -> R:
            async with sem:
                async with self.client(processor_type) as c:
                    return await operation(c, item)

        return list(await asyncio.gather(*(_one(i) for i in items)))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Retire idle-expired and over-used clients. Returns the number removed."""
        now = time.monotonic()
        expired = [
            key for key, c in self._clients.items()
            if now - c.last_used > self.config.client_ttl_seconds
            or c.request_count >= self.config.max_requests_per_client
        ]
        for key in expired:
            del self._clients[key]
            logger.info("Removed expired client from pool: %s", key)
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval_seconds)
            self.sweep()

    def start(self) -> None:
        """Start the periodic sweep task (requires a running loop)."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    def stats(self) -> dict:
        now = time.monotonic()
        return {
            "total_clients": len(self._clients),
            "active_requests": self._active,
            "queued_requests": self.queued_requests,
            "client_stats": [
                {
                    "key": c.key,
                    "processor_type": c.processor_type,
                    "request_count": c.request_count,
                    "idle_seconds": round(now - c.last_used, 3),
                    "age_seconds": round(now - c.created_at, 3),
                }
                for c in self._clients.values()
            ],
        }

    async def shutdown(self) -> None:
        """Stop admitting, wait for in-flight calls to drain, drop all clients."""
        self._closed = True
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self._idle.wait()
        self._clients.clear()
        logger.info("Connection pool shut down")
