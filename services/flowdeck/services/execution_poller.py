"""Background task that mirrors remote executions locally.

Every poll_interval_seconds (default 60s) the poller sweeps all configured
instances one at a time: acquire the instance's tunnel pool, fetch remote
execution rows created since the last successful sync (minus a clock-skew
margin), upsert them into the local cache in batches, then record the
outcome in sync_status.

The cursor only advances when a sync completes. A failed sync records the
error and leaves last_synced_at alone, so the next attempt re-reads the
same window.

Sweeps never overlap: a tick that arrives while a sweep is still running is
dropped. Manual syncs for the same instance share one in-flight task.
"""

import asyncio
import uuid
from collections.abc import Mapping
from datetime import datetime, timedelta
from functools import partial
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from flowdeck.config import SyncConfig, settings
from flowdeck.db.models import Instance, utc_now
from flowdeck.db.session import get_db_session
from flowdeck.logging_config import get_logger
from flowdeck.services import execution_cache, instance_service
from flowdeck.services.instance_service import InstanceNotFoundError
from flowdeck.tunnels import acquire_connection

logger = get_logger(__name__)


def compute_lower_bound(
    last_synced_at: datetime | None, now: datetime, config: SyncConfig
) -> datetime:
    """Earliest remote created_at to fetch.

    Never synced: the initial backfill window. Otherwise the last successful
    sync minus the clock-skew margin.
    """
    if last_synced_at is None:
        return now - timedelta(days=config.initial_lookback_days)
    return last_synced_at - timedelta(minutes=config.clock_skew_minutes)


async def fetch_remote_executions(
    engine: AsyncEngine, table: str, since: datetime
) -> list[Mapping[str, Any]]:
    """All remote execution rows created at or after `since`, oldest first."""
    query = text(
        f"SELECT * FROM {table} "
        "WHERE created_at >= CAST(:since AS timestamptz) "
        "ORDER BY created_at ASC"
    )
    async with engine.connect() as conn:
        result = await conn.execute(query, {"since": since})
        return [dict(row) for row in result.mappings().all()]


class ExecutionPoller:
    """Scheduled and on-demand execution sync across all instances."""

    def __init__(self, config: SyncConfig) -> None:
        self.config = config
        self._polling = False
        self._ticker: asyncio.Task | None = None
        self._cycles: set[asyncio.Task] = set()
        self._pending_syncs: dict[uuid.UUID, asyncio.Task[int]] = {}

    @property
    def is_polling(self) -> bool:
        """True while a sweep is in progress."""
        return self._polling

    @property
    def is_running(self) -> bool:
        """True while the schedule is active."""
        return self._ticker is not None and not self._ticker.done()

    def start(self) -> None:
        """Run a sweep now, then every poll_interval_seconds until stop()."""
        if self.is_running:
            return
        self._ticker = asyncio.create_task(self._run(), name="execution-poller")
        logger.info(
            "Execution poller started", interval_seconds=self.config.poll_interval_seconds
        )

    async def stop(self) -> None:
        """Cancel the schedule, then give an in-flight sweep time to finish.

        A sweep still running after `shutdown_grace_seconds` is cancelled.
        """
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None

        if self._cycles:
            logger.info("Waiting for in-flight poll cycle")
            _, pending = await asyncio.wait(
                set(self._cycles), timeout=self.config.shutdown_grace_seconds
            )
            if pending:
                logger.warning(
                    "Poll cycle still running after grace period, cancelling",
                    grace_seconds=self.config.shutdown_grace_seconds,
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Execution poller stopped")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.poll_interval_seconds
        next_tick = loop.time()
        while True:
            task = asyncio.create_task(self.poll_all_instances(), name="execution-poll-cycle")
            self._cycles.add(task)
            task.add_done_callback(self._cycles.discard)

            next_tick += interval
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

    async def poll_all_instances(self) -> None:
        """Sync every instance in turn. One instance failing does not stop the sweep."""
        if self._polling:
            logger.info("Poll cycle already in progress, skipping")
            return

        self._polling = True
        try:
            async with get_db_session() as db:
                instances = await instance_service.list_instances(db)

            logger.debug("Execution poll cycle", instance_count=len(instances))

            for instance in instances:
                try:
                    await self.sync_instance(instance)
                except Exception as e:
                    logger.error(
                        "Sync failed",
                        instance_id=str(instance.id),
                        instance=instance.name,
                        error=str(e),
                    )
        except Exception as e:
            logger.error("Execution poll cycle failed", error=str(e), exc_info=e)
        finally:
            self._polling = False

    async def sync_instance(self, instance: Instance) -> int:
        """Sync one instance. Returns the number of rows upserted.

        On failure the error is recorded in sync_status and re-raised.
        """
        log = logger.bind(instance_id=str(instance.id), instance=instance.name)
        try:
            return await self._sync(instance, log)
        except Exception as e:
            await self._record_failure(instance.id, str(e) or type(e).__name__, log)
            raise

    async def trigger_sync_for_instance(self, instance_id: uuid.UUID) -> int:
        """Sync one instance now; concurrent callers share the same run.

        Raises:
            InstanceNotFoundError: no instance with this ID.
            ConnectionFailedError: the tunnel could not be opened.
        """
        task = self._pending_syncs.get(instance_id)
        if task is None:
            task = asyncio.create_task(
                self._manual_sync(instance_id), name=f"manual-sync-{instance_id}"
            )
            self._pending_syncs[instance_id] = task
            task.add_done_callback(partial(self._clear_pending_sync, instance_id))
        else:
            logger.info("Manual sync already in progress, joining", instance_id=str(instance_id))
        return await asyncio.shield(task)

    # --- internals ---

    async def _sync(self, instance: Instance, log: Any) -> int:
        engine = await acquire_connection(instance)

        async with get_db_session() as db:
            status = await execution_cache.get_sync_status(db, instance.id)
        last_synced_at = status.last_synced_at if status is not None else None
        since = compute_lower_bound(last_synced_at, utc_now(), self.config)

        rows = await fetch_remote_executions(engine, self.config.remote_table, since)

        total = 0
        size = self.config.batch_size
        for start in range(0, len(rows), size):
            async with get_db_session() as db:
                total += await execution_cache.upsert_executions(
                    db, instance.id, rows[start : start + size]
                )

        async with get_db_session() as db:
            await execution_cache.record_sync_success(db, instance.id, utc_now(), total)

        log.info("Synced executions", record_count=total, since=since.isoformat())
        return total

    async def _record_failure(self, instance_id: uuid.UUID, message: str, log: Any) -> None:
        try:
            async with get_db_session() as db:
                await execution_cache.record_sync_failure(db, instance_id, message)
        except Exception as e:
            log.error("Failed to record sync failure", error=str(e), sync_error=message)

    async def _manual_sync(self, instance_id: uuid.UUID) -> int:
        async with get_db_session() as db:
            instance = await instance_service.get_instance(db, instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)

        logger.info("Manual sync started", instance_id=str(instance_id), instance=instance.name)
        return await self.sync_instance(instance)

    def _clear_pending_sync(self, instance_id: uuid.UUID, task: asyncio.Task) -> None:
        if self._pending_syncs.get(instance_id) is task:
            del self._pending_syncs[instance_id]
        if not task.cancelled():
            # Waiters re-raise the exception; this only marks it retrieved
            task.exception()


# --- Process lifecycle ---

_poller: ExecutionPoller | None = None


def get_poller() -> ExecutionPoller:
    """Return the process-wide poller, creating it on first use."""
    global _poller  # noqa: PLW0603
    if _poller is None:
        _poller = ExecutionPoller(settings.sync)
    return _poller


def start_polling() -> None:
    get_poller().start()


async def stop_polling() -> None:
    if _poller is not None:
        await _poller.stop()


async def trigger_manual_sync(instance_id: uuid.UUID) -> int:
    return await get_poller().trigger_sync_for_instance(instance_id)
