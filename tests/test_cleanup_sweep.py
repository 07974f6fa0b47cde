"""Tests for the periodic token/session retention sweeps."""

import asyncio
from datetime import timedelta

from staffauth.service.cleanup import (
    RetentionSweep,
    build_session_sweep,
    build_token_sweep,
)
from staffauth.storage.models import IssuedToken, new_id, utcnow


class _Recorder:
    def __init__(self, failures=0, result=0):
        self.thresholds = []
        self.failures = failures
        self.result = result

    def __call__(self, threshold):
        self.thresholds.append(threshold)
        if len(self.thresholds) <= self.failures:
            raise RuntimeError("database unavailable")
        return self.result


class TestRunOnce:
    async def test_threshold_is_now_minus_retention(self):
        now = utcnow()
        recorder = _Recorder(result=4)
        sweep = RetentionSweep(
            "tokens",
            recorder,
            interval=timedelta(hours=24),
            retention=timedelta(days=30),
            clock=lambda: now,
        )
        assert await sweep.run_once() == 4
        assert recorder.thresholds == [now - timedelta(days=30)]

    async def test_async_sweep_function_is_awaited(self):
        seen = []

        async def sweep_fn(threshold):
            seen.append(threshold)
            return 2

        sweep = RetentionSweep(
            "sessions", sweep_fn, interval=timedelta(hours=6), retention=timedelta(days=7)
        )
        assert await sweep.run_once() == 2
        assert len(seen) == 1


class TestLoop:
    async def test_failure_retries_after_retry_interval(self):
        recorder = _Recorder(failures=2)
        sweep = RetentionSweep(
            "tokens",
            recorder,
            interval=timedelta(hours=24),
            retention=timedelta(days=30),
            retry_interval=timedelta(milliseconds=10),
        )
        await sweep.start()
        for _ in range(100):
            if len(recorder.thresholds) >= 3:
                break
            await asyncio.sleep(0.01)
        await sweep.stop()

        # two failed passes retried quickly, then the third succeeds and waits a day
        assert len(recorder.thresholds) == 3
        assert sweep.consecutive_failures == 0

    async def test_stop_is_prompt_during_long_interval(self):
        recorder = _Recorder()
        sweep = RetentionSweep(
            "sessions", recorder, interval=timedelta(hours=6), retention=timedelta(days=7)
        )
        await sweep.start()
        await asyncio.sleep(0.01)
        assert sweep.running

        await asyncio.wait_for(sweep.stop(), timeout=1)

        assert not sweep.running
        assert len(recorder.thresholds) == 1

    async def test_stop_without_start_is_harmless(self):
        sweep = RetentionSweep(
            "tokens", _Recorder(), interval=timedelta(hours=1), retention=timedelta(days=1)
        )
        await sweep.stop()
        assert not sweep.running


class TestFactories:
    async def test_token_sweep_purges_old_tokens(self, memory_store, account, settings):
        now = utcnow()
        memory_store.create_token(
            IssuedToken(
                id=new_id(),
                user_id=account.id,
                access_token="old-access",
                refresh_token="old-refresh",
                expires_at=now - timedelta(days=31),
                refresh_expires_at=now - timedelta(days=25),
            )
        )
        sweep = build_token_sweep(memory_store, settings)

        assert sweep.interval == timedelta(hours=24)
        assert sweep.retention == timedelta(days=30)
        assert sweep.retry_interval == timedelta(minutes=5)
        assert await sweep.run_once() == 1
        assert memory_store.get_token_by_access("old-access") is None

    async def test_session_sweep_defaults(self, memory_store, settings):
        sweep = build_session_sweep(memory_store, settings)
        assert sweep.interval == timedelta(hours=6)
        assert sweep.retention == timedelta(days=7)
        assert await sweep.run_once() == 0
