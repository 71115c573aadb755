from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from psycopg import Connection, OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from kitchguard.logging import get_logger
from kitchguard.storage.errors import ConstraintViolation, StoreUnavailable
from kitchguard.storage.models import (
    BRANCH_MUTABLE_FIELDS,
    PRINCIPAL_MUTABLE_FIELDS,
    TENANT_MUTABLE_FIELDS,
    Branch,
    Principal,
    RefreshToken,
    Role,
    SubscriptionStatus,
    Tenant,
    TenantType,
    utcnow,
)

T = TypeVar("T")

# Connection bound by run_in_transaction; store methods reuse it when set.
_active_conn: ContextVar[Optional[Connection]] = ContextVar(
    "kitchguard_active_conn", default=None
)

# Soft-delete predicates, one per table, shared by every listing query.
_PRINCIPAL_NOT_DELETED = "deleted_at IS NULL"
_TENANT_NOT_DELETED = "deleted_at IS NULL"
_BRANCH_NOT_DELETED = "deleted_at IS NULL"

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS tenants (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        type TEXT NOT NULL CHECK (type IN ('restaurant', 'hotel')),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        subscription_status TEXT NOT NULL DEFAULT 'trial'
            CHECK (subscription_status IN ('trial', 'active', 'suspended', 'cancelled')),
        subscription_end_date TIMESTAMP,
        settings JSONB NOT NULL DEFAULT '{}'::jsonb,
        deleted_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS branches (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES tenants (id),
        name TEXT NOT NULL,
        address TEXT NOT NULL DEFAULT '',
        city TEXT NOT NULL DEFAULT '',
        state TEXT NOT NULL DEFAULT '',
        zip_code TEXT NOT NULL DEFAULT '',
        country TEXT NOT NULL DEFAULT '',
        phone TEXT,
        email TEXT,
        settings JSONB NOT NULL DEFAULT '{}'::jsonb,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        deleted_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL,
        tenant_id TEXT REFERENCES tenants (id),
        branch_id TEXT REFERENCES branches (id),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        must_change_password BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        lock_until TIMESTAMP,
        last_login_at TIMESTAMP,
        deleted_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        CONSTRAINT users_role_scope CHECK (
            (role = 'super_admin' AND tenant_id IS NULL AND branch_id IS NULL)
            OR (role = 'tenant_admin' AND tenant_id IS NOT NULL)
            OR (role = 'branch_admin' AND tenant_id IS NOT NULL AND branch_id IS NOT NULL)
        )
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users (id),
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMP NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_tokens_user_live_idx ON refresh_tokens (user_id) WHERE NOT revoked",
    "CREATE INDEX IF NOT EXISTS branches_tenant_idx ON branches (tenant_id)",
    "CREATE INDEX IF NOT EXISTS users_tenant_idx ON users (tenant_id)",
)

_PRINCIPAL_COLUMNS = (
    "id, username, email, password_hash, role, tenant_id, branch_id, is_active, "
    "must_change_password, failed_login_attempts, lock_until, last_login_at, "
    "deleted_at, created_at, updated_at"
)


def _principal_from_row(row: Dict[str, Any]) -> Principal:
    return Principal(
        id=row["id"],
        username=row["username"],
        email=row.get("email"),
        password_hash=row["password_hash"],
        role=Role(row["role"]),
        tenant_id=row.get("tenant_id"),
        branch_id=row.get("branch_id"),
        is_active=row["is_active"],
        must_change_password=row["must_change_password"],
        failed_login_attempts=row["failed_login_attempts"],
        lock_until=row.get("lock_until"),
        last_login_at=row.get("last_login_at"),
        deleted_at=row.get("deleted_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
    settings = row.get("settings") or {}
    if isinstance(settings, str):
        settings = json.loads(settings)
    return Tenant(
        id=row["id"],
        name=row["name"],
        slug=row["slug"],
        type=TenantType(row["type"]),
        is_active=row["is_active"],
        subscription_status=SubscriptionStatus(row["subscription_status"]),
        subscription_end_date=row.get("subscription_end_date"),
        settings=settings,
        deleted_at=row.get("deleted_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _branch_from_row(row: Dict[str, Any]) -> Branch:
    settings = row.get("settings") or {}
    if isinstance(settings, str):
        settings = json.loads(settings)
    return Branch(
        id=row["id"],
        tenant_id=row["tenant_id"],
        name=row["name"],
        address=row.get("address") or "",
        city=row.get("city") or "",
        state=row.get("state") or "",
        zip_code=row.get("zip_code") or "",
        country=row.get("country") or "",
        phone=row.get("phone"),
        email=row.get("email"),
        settings=settings,
        is_active=row["is_active"],
        deleted_at=row.get("deleted_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _refresh_token_from_row(row: Dict[str, Any]) -> RefreshToken:
    return RefreshToken(
        id=row["id"],
        principal_id=row["user_id"],
        token=row["token"],
        expires_at=row["expires_at"],
        revoked=row["revoked"],
        revoked_at=row.get("revoked_at"),
        created_at=row["created_at"],
    )


def _db_value(name: str, value: Any) -> Any:
    if name == "settings":
        return json.dumps(value or {})
    if isinstance(value, (Role, SubscriptionStatus, TenantType)):
        return value.value
    return value


def _translate_integrity_error(exc: Exception) -> ConstraintViolation:
    diag = getattr(exc, "diag", None)
    constraint = getattr(diag, "constraint_name", None)
    detail = {"constraint": constraint} if constraint else {}
    if isinstance(exc, errors.UniqueViolation):
        field = None
        if constraint and constraint.endswith("_key"):
            # Postgres names unique constraints <table>_<column>_key
            for table in ("refresh_tokens", "users", "tenants", "branches"):
                if constraint.startswith(f"{table}_"):
                    field = constraint[len(table) + 1 : -len("_key")]
                    break
        if field:
            detail["field"] = field
        return ConstraintViolation(
            f"{field or 'value'} already exists", detail, kind="unique"
        )
    if isinstance(exc, errors.ForeignKeyViolation):
        return ConstraintViolation("referenced row does not exist", detail, kind="foreign_key")
    return ConstraintViolation("row violates a check constraint", detail, kind="check")


_INTEGRITY_ERRORS = (errors.UniqueViolation, errors.ForeignKeyViolation, errors.CheckViolation)


class PostgresStore:
    """Postgres-backed credential, tenant and refresh-token store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        active = _active_conn.get()
        if active is not None:
            yield active
            return
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error_type=type(exc).__name__)
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def run_in_transaction(self, fn: Callable[[], T]) -> T:
        if _active_conn.get() is not None:
            return fn()
        with self._connect() as conn:
            token = _active_conn.set(conn)
            try:
                with conn.transaction():
                    return fn()
            finally:
                _active_conn.reset(token)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()
        self.logger.info("postgres_pool_closed")

    def _fetch_one(self, query: str, params: tuple) -> Optional[Dict[str, Any]]:
        try:
            with self._connect() as conn:
                return conn.execute(query, params).fetchone()
        except _INTEGRITY_ERRORS as exc:
            raise _translate_integrity_error(exc) from exc

    def _fetch_all(self, query: str, params: tuple) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            return conn.execute(query, params).fetchall()

    def _execute(self, query: str, params: tuple) -> int:
        try:
            with self._connect() as conn:
                return conn.execute(query, params).rowcount
        except _INTEGRITY_ERRORS as exc:
            raise _translate_integrity_error(exc) from exc

    def _page(
        self, table: str, where: str, params: tuple, limit: int, offset: int
    ) -> Tuple[List[Dict[str, Any]], int]:
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM {table} WHERE {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE {where} ORDER BY created_at, id LIMIT %s OFFSET %s",
                params + (limit, offset),
            ).fetchall()
        return rows, int(total_row["total"]) if total_row else 0

    @staticmethod
    def _set_clause(changes: Dict[str, Any], allowed: frozenset) -> Tuple[str, tuple]:
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"unsupported fields: {sorted(unknown)}")
        # Column names come from the fixed allow-list above, never from input.
        names = sorted(changes)
        assignments = [f"{name} = %s" for name in names] + ["updated_at = %s"]
        values = tuple(_db_value(name, changes[name]) for name in names) + (utcnow(),)
        return ", ".join(assignments), values

    # -- principals -------------------------------------------------------

    def create_principal(
        self,
        username: str,
        password_hash: str,
        role: Role,
        *,
        email: Optional[str] = None,
        tenant_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        is_active: bool = True,
        must_change_password: bool = False,
    ) -> Principal:
        now = utcnow()
        row = self._fetch_one(
            f"""
            INSERT INTO users (id, username, email, password_hash, role, tenant_id, branch_id,
                               is_active, must_change_password, failed_login_attempts,
                               created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, 0, %s, %s)
            RETURNING {_PRINCIPAL_COLUMNS}
            """,
            (
                str(uuid.uuid4()),
                username,
                email,
                password_hash,
                Role(role).value,
                tenant_id,
                branch_id,
                is_active,
                must_change_password,
                now,
                now,
            ),
        )
        return _principal_from_row(row)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        row = self._fetch_one(
            f"SELECT {_PRINCIPAL_COLUMNS} FROM users WHERE id = %s", (principal_id,)
        )
        return _principal_from_row(row) if row else None

    def get_principal_by_username(self, username: str) -> Optional[Principal]:
        row = self._fetch_one(
            f"SELECT {_PRINCIPAL_COLUMNS} FROM users WHERE username = %s", (username,)
        )
        return _principal_from_row(row) if row else None

    def get_principal_by_identifier(self, identifier: str) -> Optional[Principal]:
        row = self._fetch_one(
            f"""
            SELECT {_PRINCIPAL_COLUMNS} FROM users
            WHERE username = %s OR email = %s
            ORDER BY (username = %s) DESC
            LIMIT 1
            """,
            (identifier, identifier, identifier),
        )
        return _principal_from_row(row) if row else None

    def update_principal_login_state(
        self,
        principal_id: str,
        *,
        failed_attempts: int,
        lock_until: Optional[datetime],
        last_login_at: Optional[datetime] = None,
    ) -> None:
        updated = self._execute(
            """
            UPDATE users
            SET failed_login_attempts = %s,
                lock_until = %s,
                last_login_at = COALESCE(%s, last_login_at),
                updated_at = %s
            WHERE id = %s
            """,
            (failed_attempts, lock_until, last_login_at, utcnow(), principal_id),
        )
        if not updated:
            raise ConstraintViolation("principal not found", {"principal_id": principal_id})

    def increment_failed_login(
        self, principal_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[Principal]:
        row = self._fetch_one(
            f"""
            UPDATE users
            SET failed_login_attempts = failed_login_attempts + 1,
                lock_until = CASE
                    WHEN failed_login_attempts + 1 >= %s THEN %s
                    ELSE lock_until
                END,
                updated_at = %s
            WHERE id = %s
            RETURNING {_PRINCIPAL_COLUMNS}
            """,
            (max_attempts, lock_until, utcnow(), principal_id),
        )
        return _principal_from_row(row) if row else None

    def update_principal_credentials(
        self,
        principal_id: str,
        *,
        password_hash: str,
        username: Optional[str] = None,
        must_change_password: bool = False,
    ) -> Optional[Principal]:
        row = self._fetch_one(
            f"""
            UPDATE users
            SET password_hash = %s,
                username = COALESCE(%s, username),
                must_change_password = %s,
                updated_at = %s
            WHERE id = %s
            RETURNING {_PRINCIPAL_COLUMNS}
            """,
            (password_hash, username, must_change_password, utcnow(), principal_id),
        )
        return _principal_from_row(row) if row else None

    def update_principal(self, principal_id: str, changes: Dict[str, Any]) -> Optional[Principal]:
        clause, values = self._set_clause(changes, PRINCIPAL_MUTABLE_FIELDS)
        row = self._fetch_one(
            f"UPDATE users SET {clause} WHERE id = %s RETURNING {_PRINCIPAL_COLUMNS}",
            values + (principal_id,),
        )
        return _principal_from_row(row) if row else None

    def soft_delete_principal(self, principal_id: str) -> bool:
        now = utcnow()
        return bool(
            self._execute(
                f"""
                UPDATE users SET deleted_at = %s, is_active = FALSE, updated_at = %s
                WHERE id = %s AND {_PRINCIPAL_NOT_DELETED}
                """,
                (now, now, principal_id),
            )
        )

    def soft_delete_principals(
        self, *, tenant_id: Optional[str] = None, branch_id: Optional[str] = None
    ) -> List[str]:
        if tenant_id is None and branch_id is None:
            raise ValueError("tenant_id or branch_id is required")
        column, value = ("branch_id", branch_id) if branch_id is not None else ("tenant_id", tenant_id)
        now = utcnow()
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                UPDATE users SET deleted_at = %s, is_active = FALSE, updated_at = %s
                WHERE {column} = %s AND {_PRINCIPAL_NOT_DELETED}
                RETURNING id
                """,
                (now, now, value),
            ).fetchall()
        return [row["id"] for row in rows]

    def list_principals(
        self,
        *,
        tenant_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Principal], int]:
        clauses = [_PRINCIPAL_NOT_DELETED]
        params: list = []
        if tenant_id is not None:
            clauses.append("tenant_id = %s")
            params.append(tenant_id)
        if branch_id is not None:
            clauses.append("branch_id = %s")
            params.append(branch_id)
        rows, total = self._page("users", " AND ".join(clauses), tuple(params), limit, offset)
        return [_principal_from_row(row) for row in rows], total

    # -- tenants ----------------------------------------------------------

    def create_tenant(
        self,
        name: str,
        slug: str,
        type: TenantType,
        *,
        settings: Optional[Dict] = None,
    ) -> Tenant:
        now = utcnow()
        row = self._fetch_one(
            """
            INSERT INTO tenants (id, name, slug, type, is_active, subscription_status,
                                 settings, created_at, updated_at)
            VALUES (%s, %s, %s, %s, TRUE, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                str(uuid.uuid4()),
                name,
                slug,
                TenantType(type).value,
                SubscriptionStatus.TRIAL.value,
                json.dumps(settings or {}),
                now,
                now,
            ),
        )
        return _tenant_from_row(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        row = self._fetch_one("SELECT * FROM tenants WHERE id = %s", (tenant_id,))
        return _tenant_from_row(row) if row else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        row = self._fetch_one("SELECT * FROM tenants WHERE slug = %s", (slug,))
        return _tenant_from_row(row) if row else None

    def update_tenant(self, tenant_id: str, changes: Dict[str, Any]) -> Optional[Tenant]:
        clause, values = self._set_clause(changes, TENANT_MUTABLE_FIELDS)
        row = self._fetch_one(
            f"UPDATE tenants SET {clause} WHERE id = %s RETURNING *",
            values + (tenant_id,),
        )
        return _tenant_from_row(row) if row else None

    def soft_delete_tenant(self, tenant_id: str) -> bool:
        now = utcnow()
        return bool(
            self._execute(
                f"""
                UPDATE tenants SET deleted_at = %s, is_active = FALSE, updated_at = %s
                WHERE id = %s AND {_TENANT_NOT_DELETED}
                """,
                (now, now, tenant_id),
            )
        )

    def list_tenants(self, *, limit: int = 20, offset: int = 0) -> Tuple[List[Tenant], int]:
        rows, total = self._page("tenants", _TENANT_NOT_DELETED, (), limit, offset)
        return [_tenant_from_row(row) for row in rows], total

    # -- branches ---------------------------------------------------------

    def create_branch(self, tenant_id: str, name: str, **fields: Any) -> Branch:
        unknown = set(fields) - BRANCH_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported branch fields: {sorted(unknown)}")
        now = utcnow()
        columns = ["id", "tenant_id", "name"] + sorted(fields) + ["created_at", "updated_at"]
        values = (
            (str(uuid.uuid4()), tenant_id, name)
            + tuple(_db_value(key, fields[key]) for key in sorted(fields))
            + (now, now)
        )
        placeholders = ", ".join(["%s"] * len(columns))
        row = self._fetch_one(
            f"INSERT INTO branches ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *",
            values,
        )
        return _branch_from_row(row)

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        row = self._fetch_one("SELECT * FROM branches WHERE id = %s", (branch_id,))
        return _branch_from_row(row) if row else None

    def update_branch(self, branch_id: str, changes: Dict[str, Any]) -> Optional[Branch]:
        clause, values = self._set_clause(changes, BRANCH_MUTABLE_FIELDS)
        row = self._fetch_one(
            f"UPDATE branches SET {clause} WHERE id = %s RETURNING *",
            values + (branch_id,),
        )
        return _branch_from_row(row) if row else None

    def soft_delete_branch(self, branch_id: str) -> bool:
        now = utcnow()
        return bool(
            self._execute(
                f"""
                UPDATE branches SET deleted_at = %s, is_active = FALSE, updated_at = %s
                WHERE id = %s AND {_BRANCH_NOT_DELETED}
                """,
                (now, now, branch_id),
            )
        )

    def soft_delete_branches(self, *, tenant_id: str) -> List[str]:
        now = utcnow()
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                UPDATE branches SET deleted_at = %s, is_active = FALSE, updated_at = %s
                WHERE tenant_id = %s AND {_BRANCH_NOT_DELETED}
                RETURNING id
                """,
                (now, now, tenant_id),
            ).fetchall()
        return [row["id"] for row in rows]

    def list_branches(
        self, *, tenant_id: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> Tuple[List[Branch], int]:
        where = _BRANCH_NOT_DELETED
        params: tuple = ()
        if tenant_id is not None:
            where = f"{where} AND tenant_id = %s"
            params = (tenant_id,)
        rows, total = self._page("branches", where, params, limit, offset)
        return [_branch_from_row(row) for row in rows], total

    # -- refresh tokens ---------------------------------------------------

    def insert_refresh_token(
        self, principal_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        record = RefreshToken.new(principal_id, token, expires_at)
        self._execute(
            """
            INSERT INTO refresh_tokens (id, user_id, token, expires_at, revoked, created_at)
            VALUES (%s, %s, %s, %s, FALSE, %s)
            """,
            (record.id, principal_id, token, expires_at, record.created_at),
        )
        return record

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]:
        row = self._fetch_one("SELECT * FROM refresh_tokens WHERE token = %s", (token,))
        return _refresh_token_from_row(row) if row else None

    def revoke_refresh_token(self, token: str, principal_id: str) -> bool:
        return bool(
            self._execute(
                """
                UPDATE refresh_tokens SET revoked = TRUE, revoked_at = %s
                WHERE token = %s AND user_id = %s AND NOT revoked
                """,
                (utcnow(), token, principal_id),
            )
        )

    def revoke_all_refresh_tokens(self, principal_id: str) -> int:
        return self._execute(
            """
            UPDATE refresh_tokens SET revoked = TRUE, revoked_at = %s
            WHERE user_id = %s AND NOT revoked
            """,
            (utcnow(), principal_id),
        )
