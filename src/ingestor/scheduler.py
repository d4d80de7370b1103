"""Multi-cadence collection scheduler.

Runs one independent timer per enabled cadence (1m, 5m, 15m, 1h, 4h, 1d).
Each timer fires immediately on start and then every ``interval_minutes`` at
a fixed rate. If the event loop stalls past a whole period the missed fires
are dropped rather than replayed back to back. Every fire spawns its own
collection task and the timer does not wait for it, so a slow cycle never
delays the next fire. Two cycles of the same cadence can overlap when a
cycle outlasts the interval; that is allowed.

A cycle builds the window ``[now - lookback_minutes, now]``, opens a fresh
unit-of-work scope, and hands the window to the Collector. Any error a cycle
raises is logged and dropped inside that cycle's task. It never reaches the
timer, other cadences, or the hosting task.

One ``asyncio.Event`` is the shutdown signal for the whole process. The idle
loop, every cycle and every RateLimiter wait observe it.

Lifecycle per cadence:
    Idle -> Firing -> Collecting -> Idle ... -> Disposed (on stop())
"""

import asyncio
import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timedelta, timezone

import structlog

from ingestor.collector import Collector
from ingestor.config import CadenceDefinition, CollectionSettings, ScheduleSettings
from ingestor.exceptions import OperationCancelled
from ingestor.logging import get_logger
from ingestor.models import CadenceStats, CollectionCycle

logger = get_logger(__name__)

# Patched in tests to run cadences in milliseconds instead of minutes.
_SECONDS_PER_MINUTE = 60.0

CollectorScope = Callable[[], AbstractAsyncContextManager[Collector]]


class CollectionScheduler:
    """Owns the per-cadence timers and the collection cycles they spawn.

    Args:
        schedule: Cadence definitions plus idle-poll and shutdown-grace timing.
        collection: Symbols and exchanges requested on every cycle.
        collector_scope: Factory returning an async context manager that
            yields a Collector. Entered once per cycle; its exit ends the
            cycle's unit of work (e.g. closes its database connection).
        cancel_event: Process-wide shutdown signal. Created when omitted.
    """

    def __init__(
        self,
        schedule: ScheduleSettings,
        collection: CollectionSettings,
        collector_scope: CollectorScope,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._schedule = schedule
        self._collection = collection
        self._collector_scope = collector_scope
        self._cancel_event = cancel_event if cancel_event is not None else asyncio.Event()
        self._timers: dict[str, asyncio.Task] = {}  # type: ignore[type-arg]
        self._in_flight: set[asyncio.Task] = set()  # type: ignore[type-arg]
        self._stats: dict[str, CadenceStats] = {}
        self._running = False

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def timers(self) -> dict[str, asyncio.Task]:  # type: ignore[type-arg]
        """Active timer tasks keyed by timeframe (read-only view)."""
        return dict(self._timers)

    def stats(self) -> list[CadenceStats]:
        """Per-cadence counters, in firing-frequency order."""
        return list(self._stats.values())

    async def start(self) -> None:
        """Create one timer task per enabled cadence."""
        if self._running:
            logger.warning("scheduler_already_running")
            return
        self._running = True

        for timeframe, cadence in self._schedule.cadences().items():
            if not cadence.enabled:
                logger.info("cadence_disabled", timeframe=timeframe)
                continue
            self._stats[timeframe] = CadenceStats(
                timeframe=timeframe,
                interval_minutes=cadence.interval_minutes,
                lookback_minutes=cadence.lookback_minutes,
            )
            self._timers[timeframe] = asyncio.create_task(
                self._timer_loop(timeframe, cadence),
                name=f"cadence-timer-{timeframe}",
            )
            logger.info(
                "cadence_scheduled",
                timeframe=timeframe,
                interval_minutes=cadence.interval_minutes,
                lookback_minutes=cadence.lookback_minutes,
            )

        logger.info("scheduler_started", timers=len(self._timers))

    async def stop(self) -> None:
        """Dispose every timer, then let in-flight cycles wind down.

        Setting the shutdown signal stops new fires at once. Cycles already
        running get ``shutdown_grace_seconds`` to finish or notice the signal;
        whatever is left after that is cancelled.
        """
        if not self._running:
            return
        self._running = False
        logger.info("scheduler_stopping", in_flight=len(self._in_flight))
        self._cancel_event.set()

        timers = list(self._timers.values())
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        self._timers.clear()

        if self._in_flight:
            pending = list(self._in_flight)
            _, still_running = await asyncio.wait(
                pending, timeout=self._schedule.shutdown_grace_seconds
            )
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning("collection_cycles_cancelled", count=len(still_running))
                await asyncio.gather(*still_running, return_exceptions=True)

        logger.info("scheduler_stopped")

    async def run(self) -> None:
        """Hosting task: start the timers, idle until shutdown, then stop."""
        await self.start()
        try:
            while not self._cancel_event.is_set():
                try:
                    await asyncio.wait_for(
                        self._cancel_event.wait(),
                        timeout=self._schedule.idle_poll_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            await self.stop()

    async def _timer_loop(self, timeframe: str, cadence: CadenceDefinition) -> None:
        """Fire now, then every interval, until the shutdown signal is set."""
        loop = asyncio.get_running_loop()
        period = cadence.interval_minutes * _SECONDS_PER_MINUTE
        next_fire = loop.time()

        while not self._cancel_event.is_set():
            self._fire(timeframe, cadence)
            next_fire += period
            now = loop.time()
            if next_fire <= now:
                # loop stalled past a whole period; drop the missed fires
                logger.warning(
                    "cadence_fires_skipped",
                    timeframe=timeframe,
                    skipped=int((now - next_fire) // period) + 1,
                )
                next_fire = now + period
            delay = max(0.0, next_fire - now)
            try:
                await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

    def _fire(self, timeframe: str, cadence: CadenceDefinition) -> None:
        task = asyncio.create_task(
            self._run_cycle(timeframe, cadence),
            name=f"collection-cycle-{timeframe}",
        )
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run_cycle(self, timeframe: str, cadence: CadenceDefinition) -> None:
        """One collection cycle. Never raises (except on task cancellation)."""
        if self._cancel_event.is_set():
            return

        stats = self._stats[timeframe]
        cycle_id = uuid.uuid4().hex[:12]
        structlog.contextvars.bind_contextvars(timeframe=timeframe, cycle_id=cycle_id)

        stats.fires += 1
        stats.in_flight += 1
        started_at = datetime.now(timezone.utc)
        stats.last_started_at = started_at
        try:
            if not self._collection.symbols or not self._collection.exchanges:
                logger.warning(
                    "collection_cycle_skipped",
                    reason="no symbols or exchanges configured",
                )
                return

            async with self._collector_scope() as collector:
                end_time = datetime.now(timezone.utc)
                cycle = CollectionCycle(
                    cycle_id=cycle_id,
                    symbols=tuple(self._collection.symbols),
                    exchanges=tuple(self._collection.exchanges),
                    timeframe=timeframe,
                    start_time=end_time - timedelta(minutes=cadence.lookback_minutes),
                    end_time=end_time,
                )
                logger.info(
                    "collection_cycle_started",
                    start_time=cycle.start_time.isoformat(),
                    end_time=cycle.end_time.isoformat(),
                )
                await collector.collect_recent_data(
                    cycle.symbols,
                    cycle.exchanges,
                    [cycle.timeframe],
                    cycle.start_time,
                    cycle.end_time,
                    self._cancel_event,
                )

            stats.succeeded += 1
            logger.info(
                "collection_cycle_completed",
                duration_s=round(
                    (datetime.now(timezone.utc) - started_at).total_seconds(), 3
                ),
            )
        except OperationCancelled:
            logger.info("collection_cycle_cancelled")
        except Exception as e:
            stats.failed += 1
            stats.last_error = f"{type(e).__name__}: {e}"
            logger.error("collection_cycle_failed", error=str(e), exc_info=True)
        finally:
            stats.in_flight -= 1
            stats.last_finished_at = datetime.now(timezone.utc)
