"""
Queue worker entry-point.

Thin shell: main() -> worker_loop() -> ProcessingQueue.run_forever(), with a
maintenance task alongside (stale-item recovery, queue cleanup, webhook outbox drain).
Business logic lives in ``docmind.services``; DB helpers in ``docmind.worker.db``.
"""
import asyncio
import logging
import os
import sys
import time

from docmind.database import AsyncSessionLocal
from docmind.services.webhooks import WebhookDispatcher
from docmind.services.wiring import Services, build_services
from docmind.worker.config import WorkerConfig, load_worker_config
from docmind.worker.db import _utc_now_naive, recover_stale_items

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
_cfg = load_worker_config()
logging.basicConfig(level=_cfg.log_level, format=_cfg.log_format)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

WORKER_ID = f"worker-{os.getpid()}-{_utc_now_naive().isoformat()}"


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

class Every:
    """due() is True at most once per *interval* seconds; the first call is always due."""

    def __init__(self, interval: float, clock=time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last: float | None = None

    def due(self) -> bool:
        now = self._clock()
        if self._last is None or now - self._last >= self.interval:
            self._last = now
            return True
        return False


async def run_maintenance(
    services: Services,
    cfg: WorkerConfig,
    dispatcher: WebhookDispatcher | None,
    *,
    cleanup: bool,
    drain: bool,
    session_factory=AsyncSessionLocal,
) -> None:
    async with session_factory() as db:
        if cleanup:
            recovered = await recover_stale_items(db, cfg.stale_timeout_minutes, WORKER_ID)
            if recovered:
                logger.warning("Recovered %d stale queue items", recovered)
            await services.queue.cleanup(db, cfg.cleanup_days_old)
        if drain and dispatcher is not None:
            sent = await dispatcher.drain(db, cfg.webhook_drain_batch)
            if sent:
                logger.info("Webhook outbox: processed %d events", sent)


async def maintenance_loop(services: Services, cfg: WorkerConfig, dispatcher: WebhookDispatcher | None):
    cleanup_timer = Every(cfg.cleanup_interval_seconds)
    drain_timer = Every(cfg.webhook_drain_interval_seconds)
    while True:
        try:
            await run_maintenance(
                services, cfg, dispatcher,
                cleanup=cleanup_timer.due(),
                drain=drain_timer.due(),
            )
            await asyncio.sleep(cfg.webhook_drain_interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Error in maintenance loop: %s", e, exc_info=True)
            await asyncio.sleep(cfg.error_sleep_seconds)


# ---------------------------------------------------------------------------
# worker_loop
# ---------------------------------------------------------------------------

async def worker_loop(cfg: WorkerConfig | None = None):
    """Run the queue until cancelled, keeping up to max_concurrent items in flight."""
    cfg = cfg or _cfg
    services = build_services(AsyncSessionLocal, max_concurrent=cfg.max_concurrent)
    services.pool.start()
    dispatcher = WebhookDispatcher() if cfg.webhooks_enabled else None
    logger.info("Worker %s starting (max_concurrent=%d)...", WORKER_ID, cfg.max_concurrent)

    maintenance = asyncio.create_task(maintenance_loop(services, cfg, dispatcher))
    try:
        await services.queue.run_forever(cfg.poll_interval_seconds, cfg.error_sleep_seconds)
    finally:
        maintenance.cancel()
        await asyncio.gather(maintenance, return_exceptions=True)
        await services.queue.drain()
        await services.shutdown()
        if dispatcher is not None:
            await dispatcher.aclose()


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------

def main():
    """Entry point for worker process."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
    except Exception as e:
        logger.error("Fatal error in worker: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
