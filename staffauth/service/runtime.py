from __future__ import annotations

import threading
from typing import List, Optional, Union
from urllib.parse import urlparse, urlunparse

from staffauth.config import get_settings, reset_settings_cache
from staffauth.logging import get_logger
from staffauth.service.auth import AuthService, ensure_default_roles
from staffauth.service.cleanup import (
    RetentionSweep,
    build_auth_log_sweep,
    build_session_sweep,
    build_token_sweep,
)
from staffauth.service.tokens import TokenIssuer
from staffauth.storage.memory import MemoryStore
from staffauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.issuer = TokenIssuer(self.settings)
        self.auth = AuthService(self.store, self.settings, issuer=self.issuer)
        if isinstance(self.store, MemoryStore):
            ensure_default_roles(self.store)
        self.sweeps: List[RetentionSweep] = [
            build_token_sweep(self.store, self.settings),
            build_session_sweep(self.store, self.settings),
            build_auth_log_sweep(self.store, self.settings),
        ]

    async def start_background(self) -> None:
        if not self.settings.cleanup_enabled:
            logger.info("retention_sweeps_disabled")
            return
        for sweep in self.sweeps:
            await sweep.start()

    async def close(self) -> None:
        for sweep in self.sweeps:
            await sweep.stop()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
