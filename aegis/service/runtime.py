from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from aegis.config import Settings, get_settings, reset_settings_cache
from aegis.logging import get_logger
from aegis.service.accounts import AccountService
from aegis.service.auth import AuthService
from aegis.service.events import LoggingEventSink
from aegis.service.rbac import RBACService
from aegis.service.refresh_tokens import RefreshTokenLedger
from aegis.service.token_purger import TokenPurgeWorker
from aegis.service.tokens import TokenConfig, TokenIssuer
from aegis.storage.memory import MemoryStore
from aegis.storage.postgres import PostgresStore

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

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.sink = LoggingEventSink()
        self.token_config = TokenConfig.from_settings(self.settings)
        self.issuer = TokenIssuer(self.token_config)
        self.ledger = RefreshTokenLedger(self.store, self.token_config.refresh_ttl)
        self.auth = AuthService(self.store, self.issuer, self.ledger, sink=self.sink)
        self.accounts = AccountService(
            self.store,
            ledger=self.ledger,
            sink=self.sink,
            default_role=self.settings.default_role,
        )
        self.rbac = RBACService(self.store, sink=self.sink)
        self.token_purger: Optional[TokenPurgeWorker] = None
        if self.settings.token_purge_enabled:
            self.token_purger = TokenPurgeWorker(
                self.auth,
                interval=self.settings.token_purge_interval_seconds,
                retention=timedelta(days=self.settings.token_purge_retention_days),
            )
        logger.info("runtime_init_completed", store_type=store_type)

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked fast path serves the common
    case, the locked re-check prevents two threads building it at once.
    """
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
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
