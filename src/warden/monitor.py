"""Background health monitoring with bounded automatic recovery."""

import asyncio
import contextlib
import logging
from dataclasses import dataclass

from warden.errors import RecoveryExhausted
from warden.health import HealthChecker
from warden.recovery import RecoveryEngine
from warden.types import HealthCheckState

logger = logging.getLogger(__name__)


class MonitorHandle:
    """Owns one monitoring task and its stop event."""

    def __init__(
        self,
        user_id: str,
        health: HealthChecker,
        recovery: RecoveryEngine,
        interval: float,
        max_retries: int,
        failure_threshold: int = 2,
        retry_delay: float = 5.0,
    ):
        self.user_id = user_id
        self.health = health
        self.recovery = recovery
        self.interval = interval
        self.max_retries = max_retries
        self.failure_threshold = failure_threshold
        self.retry_delay = retry_delay
        self.state = HealthCheckState()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"warden-monitor-{self.user_id}")

    def stop(self) -> None:
        """No health check starts after this returns; an in-flight cycle may finish."""
        if not self._stop_event.is_set():
            logger.info(f"Stopping worker monitoring for user {self.user_id}")
            self._stop_event.set()

    async def wait(self) -> None:
        """Wait for the task to exit (after ``stop``)."""
        if self._task is not None:
            await self._task

    async def aclose(self) -> None:
        self.stop()
        await self.wait()

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception:
                logger.exception(f"Error in monitoring cycle for user {self.user_id}")

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)

    async def run_cycle(self) -> None:
        """One health check, followed by bounded recovery when the threshold is hit."""
        if self._stop_event.is_set():
            return

        self.state.check_count += 1
        check = self.state.check_count
        result = await self.health.check_health(self.user_id)

        if result.healthy:
            logger.info(f"Health check #{check} for user {self.user_id} successful")
            self.state.consecutive_failures = 0
            return

        self.state.consecutive_failures += 1
        logger.warning(
            f"Health check #{check} for user {self.user_id} failed "
            f"({self.state.consecutive_failures} consecutive): {result.message}"
        )
        if result.logs:
            logger.debug(f"Worker log excerpt:\n{result.logs}")

        if self.state.consecutive_failures < self.failure_threshold:
            return

        for attempt in range(1, self.max_retries + 1):
            if self._stop_event.is_set():
                return
            logger.info(f"Recovery attempt {attempt}/{self.max_retries} for user {self.user_id}")
            if await self.recovery.recover(self.user_id):
                logger.info(f"Recovery successful on attempt {attempt}")
                self.state.consecutive_failures = 0
                return
            if attempt < self.max_retries:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.retry_delay)

        error = RecoveryExhausted(self.user_id, self.max_retries)
        logger.error(str(error))
        record = self.recovery.supervisor.get(self.user_id)
        if record is not None:
            record.last_error = str(error)


@dataclass
class MonitorResult:
    """Outcome of a monitoring request."""

    monitoring_started: bool
    message: str
    handle: MonitorHandle | None = None

    def stop(self) -> None:
        if self.handle is not None:
            self.handle.stop()
