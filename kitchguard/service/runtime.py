from __future__ import annotations

from typing import Optional, Sequence, Union
from urllib.parse import urlparse, urlunparse

from fastapi import Request

from kitchguard.config import Settings, get_settings
from kitchguard.logging import get_logger
from kitchguard.service.audit import AuditLog, AuditSink
from kitchguard.service.auth import AuthService
from kitchguard.service.authz import AuthorizationEngine
from kitchguard.service.branches import BranchAdminService
from kitchguard.service.passwords import PasswordManager
from kitchguard.service.tenants import TenantAdminService
from kitchguard.service.tokens import TokenService
from kitchguard.service.users import UserAdminService
from kitchguard.storage.memory import MemoryStore
from kitchguard.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging.

    Example: postgresql://app:secret@db:5432/kg -> postgresql://app:***@db:5432/kg
    """
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
    """Service graph for one application instance.

    Built by ``create_app`` and kept on ``app.state``; nothing here is a
    module-level singleton, so tests construct as many as they need.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        audit_sinks: Sequence[AuditSink] = (),
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store: Union[MemoryStore, PostgresStore]
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore()
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
        )

        self.audit = AuditLog(*audit_sinks)
        self.passwords = PasswordManager(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
        )
        self.tokens = TokenService(self.settings)
        self.authz = AuthorizationEngine(self.store, self.audit)
        self.auth = AuthService(self.store, self.tokens, self.passwords, self.audit, self.settings)
        self.users = UserAdminService(
            self.store, self.passwords, self.authz, self.auth, self.audit, self.settings
        )
        self.tenants = TenantAdminService(self.store, self.authz, self.auth, self.audit, self.settings)
        self.branches = BranchAdminService(self.store, self.authz, self.auth, self.audit, self.settings)

    def close(self) -> None:
        self.store.close()
        logger.info("runtime_closed")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime
