"""
Timers and the reconciliation monitor.

``PeriodicJob`` fires a coroutine as a new task on every interval tick,
without waiting for the previous run. Overlap is prevented by the monitor,
which skips a tick while the previous cycle is still in flight.

``ReconciliationMonitor`` wraps the engine with the operational policy:

  - no cycles outside the operating window (09:00-24:00 bank time by default)
  - a failed cycle increments a consecutive-failure counter, a successful
    one resets it
  - a session-expiry failure forces a re-login; if that works the counter
    resets as well
  - at the failure limit the monitor pauses and alerts the admin. Only an
    operator can resume it.
"""

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from p2p_settlement.audit.logger import format_error
from p2p_settlement.bank.client import SESSION_EXPIRED, BankSessionClient
from p2p_settlement.engine.reconciler import ReconciliationEngine
from p2p_settlement.exceptions import AuthError, RequestError, SessionExpiredError
from p2p_settlement.models.audit import CycleRun
from p2p_settlement.models.payment import utcnow
from p2p_settlement.notifications import templates
from p2p_settlement.notifications.notifier import Notifier

logger = logging.getLogger("p2p_settlement.scheduler")


def is_within_operating_hours(
    now: datetime,
    start_hour: int = 9,
    end_hour: int = 24,
    utc_offset_hours: int = 7,
) -> bool:
    """
    True if ``now`` falls in [start_hour, end_hour) at the given UTC offset.

    A window with start_hour > end_hour wraps past midnight.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    hour = now.astimezone(timezone(timedelta(hours=utc_offset_hours))).hour
    if start_hour <= end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour


def is_session_expiry(error: BaseException) -> bool:
    if isinstance(error, SessionExpiredError):
        return True
    return isinstance(error, (AuthError, RequestError)) and error.code == SESSION_EXPIRED


class ReconciliationMonitor:
    """Runs reconciliation cycles under the operating policy."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        client: BankSessionClient,
        notifier: Notifier,
        admin_chat_id: Optional[str] = None,
        max_consecutive_failures: int = 5,
        operating_hours: tuple[int, int] = (9, 24),
        utc_offset_hours: int = 7,
    ):
        self.engine = engine
        self.client = client
        self.notifier = notifier
        self.admin_chat_id = admin_chat_id
        self.max_consecutive_failures = max_consecutive_failures
        self.operating_hours = operating_hours
        self.utc_offset_hours = utc_offset_hours

        self.paused = False
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self.last_cycle_id: Optional[str] = None
        self.last_run_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def within_operating_hours(self, now: datetime) -> bool:
        start, end = self.operating_hours
        return is_within_operating_hours(now, start, end, self.utc_offset_hours)

    async def tick(self, now: Optional[datetime] = None, force: bool = False) -> Optional[CycleRun]:
        """
        Run one cycle unless the monitor should stay idle.

        ``force`` (operator-triggered runs) ignores the pause flag and the
        operating window but never overlaps a running cycle.

        Returns:
            The finished CycleRun, or None if the tick was skipped or failed.
        """
        now = now or utcnow()
        if not force:
            if self.paused:
                logger.debug("Monitor paused, skipping cycle")
                return None
            if not self.within_operating_hours(now):
                logger.info("Skipping transaction check outside operating hours")
                return None
        if self.busy:
            logger.info("Previous cycle still running, skipping tick")
            return None

        async with self._lock:
            self.last_run_at = now
            try:
                cycle = await self.engine.run_cycle(now)
            except Exception as e:
                await self._record_failure(e)
                return None

        self.consecutive_failures = 0
        self.last_error = None
        self.last_cycle_id = cycle.id
        return cycle

    async def _record_failure(self, error: Exception) -> None:
        self.consecutive_failures += 1
        self.last_error = format_error(error)
        logger.error(
            "Error in reconciliation cycle (%d/%d): %s",
            self.consecutive_failures,
            self.max_consecutive_failures,
            self.last_error,
        )

        if is_session_expiry(error):
            try:
                await self.client.relogin()
                logger.info("Re-logged in to the bank after session expiry")
                self.consecutive_failures = 0
            except Exception as login_error:
                logger.error("Failed to re-login to the bank: %s", login_error)

        if self.consecutive_failures >= self.max_consecutive_failures and not self.paused:
            self.paused = True
            logger.error("Too many consecutive errors, pausing transaction monitoring")
            await self.notifier.send_safely(
                self.admin_chat_id,
                templates.admin_monitor_paused(self.consecutive_failures, self.last_error),
            )

    def resume(self) -> None:
        """Operator action: clear the pause and the failure counter."""
        self.paused = False
        self.consecutive_failures = 0
        self.last_error = None
        logger.info("Transaction monitoring resumed by operator")

    def status(self, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or utcnow()
        return {
            "paused": self.paused,
            "busy": self.busy,
            "within_operating_hours": self.within_operating_hours(now),
            "consecutive_failures": self.consecutive_failures,
            "max_consecutive_failures": self.max_consecutive_failures,
            "last_error": self.last_error,
            "last_cycle_id": self.last_cycle_id,
            "last_run_at": self.last_run_at,
        }


class PeriodicJob:
    """Fixed-interval timer that starts ``func`` as a task on every tick."""

    def __init__(self, name: str, interval: float, func: Callable[[], Awaitable[Any]]):
        if interval <= 0:
            raise ValueError(f"Interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self._func = func
        self._timer: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> None:
        if self.running:
            return
        self._timer = asyncio.create_task(self._loop(), name=f"{self.name}-timer")
        logger.info("%s started (every %.0f seconds)", self.name, self.interval)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            task = asyncio.create_task(self._run_once(), name=f"{self.name}-run")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _run_once(self) -> None:
        try:
            await self._func()
        except Exception:
            logger.exception("%s run failed", self.name)

    async def stop(self, timeout: float = 10.0) -> None:
        """Cancel the timer, then give in-flight runs ``timeout`` seconds to finish."""
        if self._timer is not None:
            self._timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer
            self._timer = None

        if self._inflight:
            done, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("%s: cancelled %d unfinished runs", self.name, len(pending))
        logger.info("%s stopped", self.name)
