import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from recruit_billing.store.ledger import init_db, purge_old_webhook_events

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app):
    init_db()
    purge_old_webhook_events()

    stop_event = asyncio.Event()

    async def periodic_purge() -> None:
        while not stop_event.is_set():
            try:
                deleted = purge_old_webhook_events()
                if deleted:
                    logger.info("webhook_event_retention_purge deleted=%s", deleted)
            except Exception as exc:  # pragma: no cover
                logger.warning("webhook_event_retention_purge_failed: %s", exc)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=3600)
            except asyncio.TimeoutError:
                continue

    purge_task = asyncio.create_task(periodic_purge())
    yield
    stop_event.set()
    if not purge_task.done():
        purge_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await purge_task
