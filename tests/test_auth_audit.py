"""Auth event log: failed-attempt counters, lockout events and retention."""

from datetime import timedelta

import pytest

from staffauth.service.cleanup import build_auth_log_sweep
from staffauth.service.errors import AuthenticationError
from staffauth.storage.models import utcnow

PASSWORD = "CorrectHorse42!"


def _failed(store, *, ip="10.0.0.5", username="jdoe", age=timedelta(0)):
    event = store.record_auth_event(
        "login",
        False,
        username_attempted=username,
        ip_address=ip,
        failure_reason="invalid_password",
    )
    event.timestamp = utcnow() - age
    return event


class TestFailedAttemptCounts:
    def test_counts_by_ip_since(self, memory_store):
        _failed(memory_store)
        _failed(memory_store)
        _failed(memory_store, age=timedelta(hours=2))
        _failed(memory_store, ip="10.0.0.9")
        memory_store.record_auth_event("login", True, ip_address="10.0.0.5")

        since = utcnow() - timedelta(hours=1)
        assert memory_store.count_failed_attempts_by_ip("10.0.0.5", since) == 2
        assert memory_store.count_failed_attempts_by_ip("10.0.0.9", since) == 1
        assert memory_store.count_failed_attempts_by_ip("192.0.2.1", since) == 0

    def test_counts_by_username_ignore_case(self, memory_store):
        _failed(memory_store, username="JDoe")
        _failed(memory_store, username="jdoe")
        _failed(memory_store, username="someone")
        memory_store.record_auth_event(
            "refresh", False, username_attempted="jdoe", failure_reason="invalid_refresh_token"
        )

        since = utcnow() - timedelta(minutes=5)
        assert memory_store.count_failed_attempts_by_username("jdoe", since) == 2

    async def test_login_failures_are_countable_by_username(self, auth_service, memory_store, account):
        with pytest.raises(AuthenticationError):
            await auth_service.login("jdoe", "bad-password", ip_address="10.4.4.4")
        with pytest.raises(AuthenticationError):
            await auth_service.login("ghost", "bad-password", ip_address="10.4.4.4")

        since = utcnow() - timedelta(minutes=1)
        assert memory_store.count_failed_attempts_by_username("jdoe", since) == 1
        assert memory_store.count_failed_attempts_by_ip("10.4.4.4", since) == 2


class TestLockoutEvent:
    async def test_lockout_recorded_once_threshold_reached(
        self, auth_service, memory_store, account, settings
    ):
        for _ in range(settings.max_failed_login_attempts - 1):
            with pytest.raises(AuthenticationError):
                await auth_service.login("jdoe", "bad-password")
        assert not [e for e in memory_store.list_auth_events(account.id) if e.action == "account_lockout"]

        with pytest.raises(AuthenticationError):
            await auth_service.login("jdoe", "bad-password", ip_address="10.7.7.7")

        lockouts = [e for e in memory_store.list_auth_events(account.id) if e.action == "account_lockout"]
        assert len(lockouts) == 1
        assert lockouts[0].ip_address == "10.7.7.7"
        assert lockouts[0].details.startswith("lockout_end=")


class TestPurge:
    def test_purge_removes_only_events_before_threshold(self, memory_store):
        old = _failed(memory_store, age=timedelta(days=100))
        recent = _failed(memory_store, age=timedelta(days=10))

        assert memory_store.purge_auth_events(utcnow() - timedelta(days=90)) == 1
        remaining = [e.id for e in memory_store.list_auth_events()]
        assert remaining == [recent.id]
        assert old.id not in remaining

    async def test_auth_log_sweep_uses_retention(self, memory_store, settings):
        _failed(memory_store, age=timedelta(days=91))
        _failed(memory_store, age=timedelta(days=1))
        sweep = build_auth_log_sweep(memory_store, settings)

        assert sweep.name == "auth_log"
        assert sweep.interval == timedelta(hours=24)
        assert sweep.retention == timedelta(days=90)
        assert await sweep.run_once() == 1
        assert len(memory_store.list_auth_events()) == 1
