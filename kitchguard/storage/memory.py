from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from kitchguard.logging import get_logger
from kitchguard.storage.errors import ConstraintViolation
from kitchguard.storage.models import (
    BRANCH_MUTABLE_FIELDS,
    PRINCIPAL_MUTABLE_FIELDS,
    TENANT_MUTABLE_FIELDS,
    Branch,
    Principal,
    RefreshToken,
    Role,
    Tenant,
    TenantType,
    utcnow,
)

T = TypeVar("T")


class MemoryStore:
    """In-process store used by tests and single-node development.

    Every read returns a copy so callers only ever hold request-scoped views.
    ``run_in_transaction`` snapshots all tables and restores them if the
    unit of work raises.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.branches: Dict[str, Branch] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so store methods can be called from inside run_in_transaction
        self._data_lock = threading.RLock()
        self._tx_depth = 0

    # -- transactions -----------------------------------------------------

    def _snapshot(self) -> tuple:
        return (
            copy.deepcopy(self.principals),
            copy.deepcopy(self.tenants),
            copy.deepcopy(self.branches),
            copy.deepcopy(self.refresh_tokens),
        )

    def _restore(self, snapshot: tuple) -> None:
        self.principals, self.tenants, self.branches, self.refresh_tokens = snapshot

    def run_in_transaction(self, fn: Callable[[], T]) -> T:
        with self._data_lock:
            if self._tx_depth:
                return fn()
            snapshot = self._snapshot()
            self._tx_depth += 1
            try:
                result = fn()
            except BaseException:
                self._restore(snapshot)
                self.logger.debug("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth -= 1
            return result

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # -- principals -------------------------------------------------------

    def _check_principal_unique(
        self, *, username: Optional[str], email: Optional[str], exclude_id: Optional[str] = None
    ) -> None:
        for existing in self.principals.values():
            if existing.id == exclude_id:
                continue
            if username is not None and existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if email is not None and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})

    def _check_principal_refs(self, tenant_id: Optional[str], branch_id: Optional[str]) -> None:
        if tenant_id is not None and tenant_id not in self.tenants:
            raise ConstraintViolation(
                "tenant does not exist", {"field": "tenant_id"}, kind="foreign_key"
            )
        if branch_id is not None and branch_id not in self.branches:
            raise ConstraintViolation(
                "branch does not exist", {"field": "branch_id"}, kind="foreign_key"
            )

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
        with self._data_lock:
            self._check_principal_unique(username=username, email=email)
            self._check_principal_refs(tenant_id, branch_id)
            principal = Principal(
                id=str(uuid.uuid4()),
                username=username,
                password_hash=password_hash,
                role=Role(role),
                email=email,
                tenant_id=tenant_id,
                branch_id=branch_id,
                is_active=is_active,
                must_change_password=must_change_password,
            )
            self.principals[principal.id] = principal
            return replace(principal)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal) if principal else None

    def get_principal_by_username(self, username: str) -> Optional[Principal]:
        with self._data_lock:
            principal = next(
                (p for p in self.principals.values() if p.username == username), None
            )
            return replace(principal) if principal else None

    def get_principal_by_identifier(self, identifier: str) -> Optional[Principal]:
        with self._data_lock:
            by_username = next(
                (p for p in self.principals.values() if p.username == identifier), None
            )
            principal = by_username or next(
                (p for p in self.principals.values() if p.email == identifier), None
            )
            return replace(principal) if principal else None

    def update_principal_login_state(
        self,
        principal_id: str,
        *,
        failed_attempts: int,
        lock_until: Optional[datetime],
        last_login_at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                raise ConstraintViolation("principal not found", {"principal_id": principal_id})
            principal.failed_login_attempts = failed_attempts
            principal.lock_until = lock_until
            if last_login_at is not None:
                principal.last_login_at = last_login_at
            principal.updated_at = utcnow()

    def increment_failed_login(
        self, principal_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.failed_login_attempts += 1
            if principal.failed_login_attempts >= max_attempts:
                principal.lock_until = lock_until
            principal.updated_at = utcnow()
            return replace(principal)

    def update_principal_credentials(
        self,
        principal_id: str,
        *,
        password_hash: str,
        username: Optional[str] = None,
        must_change_password: bool = False,
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            if username is not None and username != principal.username:
                self._check_principal_unique(username=username, email=None, exclude_id=principal_id)
                principal.username = username
            principal.password_hash = password_hash
            principal.must_change_password = must_change_password
            principal.updated_at = utcnow()
            return replace(principal)

    def update_principal(self, principal_id: str, changes: Dict[str, Any]) -> Optional[Principal]:
        unknown = set(changes) - PRINCIPAL_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported principal fields: {sorted(unknown)}")
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            if "email" in changes and changes["email"] is not None:
                self._check_principal_unique(
                    username=None, email=changes["email"], exclude_id=principal_id
                )
            self._check_principal_refs(changes.get("tenant_id"), changes.get("branch_id"))
            for name, value in changes.items():
                setattr(principal, name, Role(value) if name == "role" else value)
            principal.updated_at = utcnow()
            return replace(principal)

    def _soft_delete_principal(self, principal: Principal, now: datetime) -> None:
        principal.deleted_at = now
        principal.is_active = False
        principal.updated_at = now

    def soft_delete_principal(self, principal_id: str) -> bool:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or principal.deleted_at is not None:
                return False
            self._soft_delete_principal(principal, utcnow())
            return True

    def soft_delete_principals(
        self, *, tenant_id: Optional[str] = None, branch_id: Optional[str] = None
    ) -> List[str]:
        if tenant_id is None and branch_id is None:
            raise ValueError("tenant_id or branch_id is required")
        now = utcnow()
        affected: List[str] = []
        with self._data_lock:
            for principal in self.principals.values():
                if principal.deleted_at is not None:
                    continue
                if tenant_id is not None and principal.tenant_id != tenant_id:
                    continue
                if branch_id is not None and principal.branch_id != branch_id:
                    continue
                self._soft_delete_principal(principal, now)
                affected.append(principal.id)
        return affected

    def list_principals(
        self,
        *,
        tenant_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Principal], int]:
        with self._data_lock:
            rows = [
                p
                for p in self.principals.values()
                if p.deleted_at is None
                and (tenant_id is None or p.tenant_id == tenant_id)
                and (branch_id is None or p.branch_id == branch_id)
            ]
            return self._page(rows, limit, offset)

    # -- tenants ----------------------------------------------------------

    def create_tenant(
        self,
        name: str,
        slug: str,
        type: TenantType,
        *,
        settings: Optional[Dict] = None,
    ) -> Tenant:
        with self._data_lock:
            if any(t.slug == slug for t in self.tenants.values()):
                raise ConstraintViolation("slug already exists", {"field": "slug"})
            tenant = Tenant(
                id=str(uuid.uuid4()),
                name=name,
                slug=slug,
                type=TenantType(type),
                settings=dict(settings or {}),
            )
            self.tenants[tenant.id] = tenant
            return copy.deepcopy(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return copy.deepcopy(tenant) if tenant else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = next((t for t in self.tenants.values() if t.slug == slug), None)
            return copy.deepcopy(tenant) if tenant else None

    def update_tenant(self, tenant_id: str, changes: Dict[str, Any]) -> Optional[Tenant]:
        unknown = set(changes) - TENANT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported tenant fields: {sorted(unknown)}")
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            for name, value in changes.items():
                setattr(tenant, name, copy.deepcopy(value))
            tenant.updated_at = utcnow()
            return copy.deepcopy(tenant)

    def soft_delete_tenant(self, tenant_id: str) -> bool:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant or tenant.deleted_at is not None:
                return False
            now = utcnow()
            tenant.deleted_at = now
            tenant.is_active = False
            tenant.updated_at = now
            return True

    def list_tenants(self, *, limit: int = 20, offset: int = 0) -> Tuple[List[Tenant], int]:
        with self._data_lock:
            rows = [t for t in self.tenants.values() if t.deleted_at is None]
            return self._page(rows, limit, offset)

    # -- branches ---------------------------------------------------------

    def create_branch(self, tenant_id: str, name: str, **fields: Any) -> Branch:
        unknown = set(fields) - BRANCH_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported branch fields: {sorted(unknown)}")
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation(
                    "tenant does not exist", {"field": "tenant_id"}, kind="foreign_key"
                )
            branch = Branch(id=str(uuid.uuid4()), tenant_id=tenant_id, name=name, **fields)
            self.branches[branch.id] = branch
            return copy.deepcopy(branch)

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        with self._data_lock:
            branch = self.branches.get(branch_id)
            return copy.deepcopy(branch) if branch else None

    def update_branch(self, branch_id: str, changes: Dict[str, Any]) -> Optional[Branch]:
        unknown = set(changes) - BRANCH_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported branch fields: {sorted(unknown)}")
        with self._data_lock:
            branch = self.branches.get(branch_id)
            if not branch:
                return None
            for name, value in changes.items():
                setattr(branch, name, copy.deepcopy(value))
            branch.updated_at = utcnow()
            return copy.deepcopy(branch)

    def soft_delete_branch(self, branch_id: str) -> bool:
        with self._data_lock:
            branch = self.branches.get(branch_id)
            if not branch or branch.deleted_at is not None:
                return False
            now = utcnow()
            branch.deleted_at = now
            branch.is_active = False
            branch.updated_at = now
            return True

    def soft_delete_branches(self, *, tenant_id: str) -> List[str]:
        now = utcnow()
        affected: List[str] = []
        with self._data_lock:
            for branch in self.branches.values():
                if branch.tenant_id != tenant_id or branch.deleted_at is not None:
                    continue
                branch.deleted_at = now
                branch.is_active = False
                branch.updated_at = now
                affected.append(branch.id)
        return affected

    def list_branches(
        self, *, tenant_id: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> Tuple[List[Branch], int]:
        with self._data_lock:
            rows = [
                b
                for b in self.branches.values()
                if b.deleted_at is None and (tenant_id is None or b.tenant_id == tenant_id)
            ]
            return self._page(rows, limit, offset)

    # -- refresh tokens ---------------------------------------------------

    def insert_refresh_token(
        self, principal_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal does not exist", {"field": "principal_id"}, kind="foreign_key"
                )
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshToken.new(principal_id, token, expires_at)
            self.refresh_tokens[token] = record
            return replace(record)

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def revoke_refresh_token(self, token: str, principal_id: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.principal_id != principal_id or record.revoked:
                return False
            record.revoked = True
            record.revoked_at = utcnow()
            return True

    def revoke_all_refresh_tokens(self, principal_id: str) -> int:
        now = utcnow()
        count = 0
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.principal_id == principal_id and not record.revoked:
                    record.revoked = True
                    record.revoked_at = now
                    count += 1
        return count

    # -- helpers ----------------------------------------------------------

    @staticmethod
    def _page(rows: Iterable[Any], limit: int, offset: int) -> Tuple[List[Any], int]:
        ordered = sorted(rows, key=lambda row: (row.created_at, row.id))
        return [copy.deepcopy(row) for row in ordered[offset : offset + limit]], len(ordered)
