from __future__ import annotations

import asyncio
import inspect
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union

from staffauth.config import Settings
from staffauth.logging import get_logger
from staffauth.storage.models import utcnow

logger = get_logger(__name__)

SweepFn = Callable[[datetime], Union[int, Awaitable[int]]]


class RetentionSweep:
    """Periodically purge records older than ``retention``.

    Each pass calls ``sweep(now - retention)``. A failed pass is logged and
    retried after ``retry_interval``; successful passes wait ``interval``.
    """

    def __init__(
        self,
        name: str,
        sweep: SweepFn,
        *,
        interval: timedelta,
        retention: timedelta,
        retry_interval: timedelta = timedelta(minutes=5),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.name = name
        self.sweep = sweep
        self.interval = interval
        self.retention = retention
        self.retry_interval = retry_interval
        self._clock = clock or utcnow
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.consecutive_failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        threshold = self._clock() - self.retention
        result: Any = self.sweep(threshold)
        if inspect.isawaitable(result):
            result = await result
        removed = int(result or 0)
        logger.info(
            "retention_sweep_completed",
            sweep=self.name,
            removed=removed,
            threshold=threshold.isoformat(),
        )
        return removed

    async def start(self) -> None:
        if self.running:
            logger.warning("retention_sweep_already_running", sweep=self.name)
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "retention_sweep_started",
            sweep=self.name,
            interval_seconds=self.interval.total_seconds(),
            retention_days=self.retention.days,
        )

    async def stop(self) -> None:
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.error("retention_sweep_stop_failed", sweep=self.name, error=str(exc))
        logger.info("retention_sweep_stopped", sweep=self.name)

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
                self.consecutive_failures = 0
                delay = self.interval
            except Exception as exc:
                self.consecutive_failures += 1
                logger.error(
                    "retention_sweep_failed",
                    sweep=self.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_failures=self.consecutive_failures,
                )
                delay = self.retry_interval
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay.total_seconds())
            except asyncio.TimeoutError:
                continue


def _threaded(fn: Callable[[datetime], int]) -> SweepFn:
    async def _call(threshold: datetime) -> int:
        return await asyncio.to_thread(fn, threshold)

    return _call


def build_token_sweep(store: Any, settings: Settings) -> RetentionSweep:
    return RetentionSweep(
        "tokens",
        _threaded(store.cleanup_expired_tokens),
        interval=timedelta(hours=settings.token_cleanup_interval_hours),
        retention=timedelta(days=settings.token_retention_days),
        retry_interval=timedelta(minutes=settings.cleanup_retry_minutes),
    )


def build_session_sweep(store: Any, settings: Settings) -> RetentionSweep:
    return RetentionSweep(
        "sessions",
        _threaded(store.cleanup_expired_sessions),
        interval=timedelta(hours=settings.session_cleanup_interval_hours),
        retention=timedelta(days=settings.session_retention_days),
        retry_interval=timedelta(minutes=settings.cleanup_retry_minutes),
    )


def build_auth_log_sweep(store: Any, settings: Settings) -> RetentionSweep:
    return RetentionSweep(
        "auth_log",
        _threaded(store.purge_auth_events),
        interval=timedelta(hours=settings.auth_log_cleanup_interval_hours),
        retention=timedelta(days=settings.auth_log_retention_days),
        retry_interval=timedelta(minutes=settings.cleanup_retry_minutes),
    )
