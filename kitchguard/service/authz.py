from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Protocol, Tuple

from kitchguard.logging import get_logger
from kitchguard.service.audit import AuditLog
from kitchguard.service.errors import ForbiddenError, NotFoundError, ValidationError
from kitchguard.storage.models import Branch, Role

logger = get_logger(__name__)

_TENANT_KEYS = ("tenant_id", "tenantId")
_BRANCH_KEYS = ("branch_id", "branchId")


@dataclass(frozen=True)
class AuthenticatedContext:
    """Request-scoped view of the caller, rebuilt from the store on every request."""

    principal_id: str
    username: str
    role: Role
    tenant_id: Optional[str] = None
    branch_id: Optional[str] = None
    must_change_password: bool = False

    @property
    def is_super_admin(self) -> bool:
        return self.role is Role.SUPER_ADMIN


def _scope_rules(role: Role) -> Tuple[bool, bool]:
    """Return (tenant_scoped, branch_scoped) for a role."""
    if role is Role.SUPER_ADMIN:
        return False, False
    if role is Role.TENANT_ADMIN:
        return True, False
    if role is Role.BRANCH_ADMIN:
        return True, True
    raise ValueError(f"unhandled role: {role!r}")


def resolve_scope_value(*candidates: Optional[Any]) -> Optional[str]:
    """First non-empty candidate wins; pass sources in precedence order."""
    for candidate in candidates:
        if candidate is None:
            continue
        value = str(candidate).strip()
        if value:
            return value
    return None


def _lookup(source: Optional[Mapping[str, Any]], keys: Iterable[str]) -> Optional[Any]:
    if not isinstance(source, Mapping):
        return None
    return resolve_scope_value(*(source.get(key) for key in keys))


@dataclass(frozen=True)
class RequestScope:
    """Tenant/branch a request declares it targets."""

    tenant_id: Optional[str] = None
    branch_id: Optional[str] = None

    @classmethod
    def from_sources(
        cls,
        path: Optional[Mapping[str, Any]] = None,
        body: Optional[Mapping[str, Any]] = None,
        query: Optional[Mapping[str, Any]] = None,
    ) -> "RequestScope":
        """Resolve declared ids with precedence path > body > query."""
        return cls(
            tenant_id=resolve_scope_value(
                _lookup(path, _TENANT_KEYS), _lookup(body, _TENANT_KEYS), _lookup(query, _TENANT_KEYS)
            ),
            branch_id=resolve_scope_value(
                _lookup(path, _BRANCH_KEYS), _lookup(body, _BRANCH_KEYS), _lookup(query, _BRANCH_KEYS)
            ),
        )


class BranchLookup(Protocol):
    def get_branch(self, branch_id: str) -> Optional[Branch]: ...


class AuthorizationEngine:
    """Role-set and tenant/branch scope checks for authenticated callers.

    ``authorize`` validates only the scope a request declares. Services that
    mutate stored rows must also call ``ensure_row_in_scope`` with the ids read
    back from storage.
    """

    def __init__(self, store: BranchLookup, audit: AuditLog) -> None:
        self.store = store
        self.audit = audit

    def _deny(
        self,
        ctx: AuthenticatedContext,
        required_roles: Iterable[Role],
        *,
        reason: str,
        message: str,
        path: Optional[str],
    ) -> ForbiddenError:
        self.audit.record(
            "authorization_denied",
            actor_id=ctx.principal_id,
            role=ctx.role.value,
            required_roles=sorted(role.value for role in required_roles),
            reason=reason,
            path=path,
        )
        logger.warning(
            "authorization_denied",
            principal_id=ctx.principal_id,
            role=ctx.role.value,
            reason=reason,
            path=path,
        )
        return ForbiddenError(message)

    def authorize(
        self,
        ctx: AuthenticatedContext,
        required_roles: Iterable[Role],
        requested_tenant_id: Optional[str] = None,
        requested_branch_id: Optional[str] = None,
        *,
        path: Optional[str] = None,
    ) -> None:
        required = frozenset(Role(role) for role in required_roles)
        if ctx.role not in required:
            raise self._deny(
                ctx, required, reason="role_not_permitted", message="Insufficient permissions", path=path
            )
        tenant_scoped, branch_scoped = _scope_rules(ctx.role)
        if tenant_scoped and requested_tenant_id and requested_tenant_id != ctx.tenant_id:
            raise self._deny(
                ctx,
                required,
                reason="tenant_mismatch",
                message="Access denied: tenant isolation violation",
                path=path,
            )
        if branch_scoped and requested_branch_id and requested_branch_id != ctx.branch_id:
            raise self._deny(
                ctx,
                required,
                reason="branch_mismatch",
                message="Access denied to this branch",
                path=path,
            )
        logger.debug(
            "authorization_granted", principal_id=ctx.principal_id, role=ctx.role.value, path=path
        )

    def scoped_tenant_id(
        self, ctx: AuthenticatedContext, requested_tenant_id: Optional[str]
    ) -> Optional[str]:
        """Tenant a write should target; a scoped caller that omits it gets its own."""
        tenant_scoped, _ = _scope_rules(ctx.role)
        if tenant_scoped:
            return requested_tenant_id or ctx.tenant_id
        return requested_tenant_id

    def resolve_write_scope(
        self,
        ctx: AuthenticatedContext,
        tenant_id: Optional[str],
        branch_id: Optional[str],
    ) -> RequestScope:
        """Resolve the tenant/branch a write lands in.

        A branch supplied alongside a tenant must belong to that tenant;
        mismatches are rejected rather than silently rewritten.
        """
        tenant = self.scoped_tenant_id(ctx, tenant_id)
        _, branch_scoped = _scope_rules(ctx.role)
        if branch_scoped and not branch_id:
            branch_id = ctx.branch_id
        if not branch_id:
            return RequestScope(tenant_id=tenant)
        branch = self.store.get_branch(branch_id)
        if branch is None or not branch.is_usable() or (tenant and branch.tenant_id != tenant):
            raise ValidationError(
                "branch not found for tenant", detail={"branch_id": branch_id}
            )
        return RequestScope(tenant_id=branch.tenant_id, branch_id=branch.id)

    def ensure_row_in_scope(
        self,
        ctx: AuthenticatedContext,
        *,
        tenant_id: Optional[str],
        branch_id: Optional[str] = None,
        resource: str,
        resource_id: str,
    ) -> None:
        """Compare stored ownership with the caller's scope.

        Out-of-scope rows are reported as missing so their existence never leaks.
        """
        tenant_scoped, branch_scoped = _scope_rules(ctx.role)
        in_scope = True
        if tenant_scoped and tenant_id != ctx.tenant_id:
            in_scope = False
        if branch_scoped and branch_id != ctx.branch_id:
            in_scope = False
        if in_scope:
            return
        self.audit.record(
            "row_scope_denied",
            actor_id=ctx.principal_id,
            role=ctx.role.value,
            resource=resource,
            resource_id=resource_id,
        )
        raise NotFoundError(f"{resource} not found")
