from __future__ import annotations

from typing import Any, Dict, Optional

from kitchguard.config import Settings
from kitchguard.logging import get_logger
from kitchguard.service.audit import AuditLog
from kitchguard.service.auth import AuthService
from kitchguard.service.authz import AuthenticatedContext, AuthorizationEngine
from kitchguard.service.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from kitchguard.service.pagination import Page, page_bounds
from kitchguard.service.passwords import PasswordManager, generate_temporary_password
from kitchguard.service.transactions import run_unit_of_work
from kitchguard.storage.models import PRINCIPAL_MUTABLE_FIELDS, Principal, Role

logger = get_logger(__name__)

ADMIN_ROLES = (Role.SUPER_ADMIN, Role.TENANT_ADMIN)
# SuperAdmins are only created out of band (scripts/bootstrap_admin.py)
ASSIGNABLE_ROLES = frozenset({Role.TENANT_ADMIN, Role.BRANCH_ADMIN})
_SCOPE_FIELDS = {"role", "tenant_id", "branch_id"}


def parse_role(value: Any) -> Role:
    try:
        return Role(value)
    except ValueError:
        raise ValidationError("invalid role", detail={"field": "role", "value": str(value)})


class UserAdminService:
    """User administration with tenant-aware guards.

    Route authorization only checks the scope a request declares; every method
    here re-reads the target row and applies the admin rules against it.
    """

    def __init__(
        self,
        store,
        passwords: PasswordManager,
        authz: AuthorizationEngine,
        auth: AuthService,
        audit: AuditLog,
        settings: Settings,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.authz = authz
        self.auth = auth
        self.audit = audit
        self.settings = settings

    # -- helpers ----------------------------------------------------------

    def _load_in_scope(self, ctx: AuthenticatedContext, user_id: str) -> Principal:
        principal = self.store.get_principal(user_id)
        if principal is None or principal.deleted_at is not None:
            raise NotFoundError("user not found")
        self.authz.ensure_row_in_scope(
            ctx, tenant_id=principal.tenant_id, resource="user", resource_id=user_id
        )
        return principal

    def _guard_peer_admin(self, ctx: AuthenticatedContext, target: Principal, action: str) -> None:
        if ctx.role is not Role.TENANT_ADMIN:
            return
        if target.role is Role.TENANT_ADMIN and target.id != ctx.principal_id:
            self.audit.record(
                "user_admin_denied",
                actor_id=ctx.principal_id,
                reason="peer_tenant_admin",
                action=action,
                target_id=target.id,
            )
            raise ForbiddenError("Tenant admins cannot manage other tenant admins")
        if target.role is Role.SUPER_ADMIN:
            raise NotFoundError("user not found")

    def _check_scope_shape(
        self, role: Role, tenant_id: Optional[str], branch_id: Optional[str]
    ) -> None:
        """Validate the tenant/branch references a role requires."""
        if role is Role.SUPER_ADMIN:
            if tenant_id or branch_id:
                raise ValidationError("super admins cannot belong to a tenant or branch")
            return
        if role not in ASSIGNABLE_ROLES:
            raise ValueError(f"unhandled role: {role!r}")
        if not tenant_id:
            raise ValidationError("tenant_id is required for this role", detail={"field": "tenant_id"})
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None or not tenant.is_usable():
            raise ValidationError("tenant not found or inactive", detail={"field": "tenant_id"})
        if role is Role.BRANCH_ADMIN and not branch_id:
            raise ValidationError("branch_id is required for branch admins", detail={"field": "branch_id"})
        if branch_id:
            branch = self.store.get_branch(branch_id)
            if branch is None or not branch.is_usable() or branch.tenant_id != tenant_id:
                raise ValidationError("branch not found for tenant", detail={"branch_id": branch_id})

    # -- operations -------------------------------------------------------

    def create_user(
        self,
        ctx: AuthenticatedContext,
        *,
        username: str,
        password: str,
        role: Any,
        email: Optional[str] = None,
        tenant_id: Optional[str] = None,
        branch_id: Optional[str] = None,
    ) -> Principal:
        def _create() -> Principal:
            self.authz.authorize(ctx, ADMIN_ROLES, tenant_id, branch_id)
            target_role = parse_role(role)
            if target_role not in ASSIGNABLE_ROLES:
                raise ValidationError("role must be tenant_admin or branch_admin", detail={"field": "role"})
            if ctx.role is Role.TENANT_ADMIN and target_role is not Role.BRANCH_ADMIN:
                self.audit.record(
                    "user_admin_denied",
                    actor_id=ctx.principal_id,
                    reason="role_escalation",
                    action="create",
                    requested_role=target_role.value,
                )
                raise ForbiddenError("Tenant admins can only create branch admins")
            scope = self.authz.resolve_write_scope(ctx, tenant_id, branch_id)
            self._check_scope_shape(target_role, scope.tenant_id, scope.branch_id)
            if self.store.get_principal_by_username(username) is not None:
                raise ConflictError("Username already exists", detail={"field": "username"})
            password_hash = self.passwords.hash(password)
            principal = self.store.create_principal(
                username,
                password_hash,
                target_role,
                email=email,
                tenant_id=scope.tenant_id,
                branch_id=scope.branch_id,
                must_change_password=True,
            )
            self.audit.record(
                "user_created",
                actor_id=ctx.principal_id,
                target_id=principal.id,
                role=principal.role.value,
                tenant_id=principal.tenant_id,
                branch_id=principal.branch_id,
            )
            return principal

        return run_unit_of_work(self.store, _create)

    def get_user(self, ctx: AuthenticatedContext, user_id: str) -> Principal:
        self.authz.authorize(ctx, ADMIN_ROLES)
        return run_unit_of_work(self.store, lambda: self._load_in_scope(ctx, user_id))

    def list_users(
        self,
        ctx: AuthenticatedContext,
        *,
        tenant_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> Page[Principal]:
        self.authz.authorize(ctx, ADMIN_ROLES, tenant_id)
        limit, offset = page_bounds(self.settings, limit, offset)
        scoped_tenant = self.authz.scoped_tenant_id(ctx, tenant_id)
        items, total = run_unit_of_work(
            self.store,
            lambda: self.store.list_principals(
                tenant_id=scoped_tenant, branch_id=branch_id, limit=limit, offset=offset
            ),
        )
        return Page(items=items, total=total, limit=limit, offset=offset)

    def update_user(
        self, ctx: AuthenticatedContext, user_id: str, changes: Dict[str, Any]
    ) -> Principal:
        unknown = set(changes) - PRINCIPAL_MUTABLE_FIELDS
        if unknown:
            raise ValidationError("unsupported fields", detail={"fields": sorted(unknown)})
        if not changes:
            raise ValidationError("no fields to update")

        def _update() -> Principal:
            self.authz.authorize(ctx, ADMIN_ROLES, changes.get("tenant_id"), changes.get("branch_id"))
            target = self._load_in_scope(ctx, user_id)
            self._guard_peer_admin(ctx, target, "update")
            updates = dict(changes)
            if "role" in updates:
                updates["role"] = parse_role(updates["role"])
            if updates.get("role", target.role) is not target.role:
                if target.id == ctx.principal_id:
                    raise ForbiddenError("You cannot change your own role")
                if updates["role"] not in ASSIGNABLE_ROLES or target.role is Role.SUPER_ADMIN:
                    raise ValidationError("role must be tenant_admin or branch_admin", detail={"field": "role"})
                if ctx.role is Role.TENANT_ADMIN and updates["role"] is Role.TENANT_ADMIN:
                    self.audit.record(
                        "user_admin_denied",
                        actor_id=ctx.principal_id,
                        reason="role_escalation",
                        action="update",
                        target_id=target.id,
                    )
                    raise ForbiddenError("Tenant admins cannot grant the tenant admin role")
            if updates.get("is_active") is False and target.id == ctx.principal_id:
                raise ForbiddenError("You cannot deactivate your own account")

            scope_changed = bool(_SCOPE_FIELDS & set(updates))
            if scope_changed:
                new_role = updates.get("role", target.role)
                new_tenant = updates.get("tenant_id", target.tenant_id)
                new_branch = updates.get("branch_id", target.branch_id)
                if ctx.role is Role.TENANT_ADMIN:
                    new_tenant = ctx.tenant_id
                    updates["tenant_id"] = new_tenant
                self._check_scope_shape(new_role, new_tenant, new_branch)

            updated = self.store.update_principal(user_id, updates)
            if updated is None:
                raise NotFoundError("user not found")
            revoked = 0
            if scope_changed or updates.get("is_active") is False:
                revoked = self.auth.revoke_all(user_id)
            self.audit.record(
                "user_updated",
                actor_id=ctx.principal_id,
                target_id=user_id,
                fields=sorted(updates),
                revoked_tokens=revoked,
            )
            return updated

        return run_unit_of_work(self.store, _update)

    def delete_user(self, ctx: AuthenticatedContext, user_id: str) -> None:
        def _delete() -> None:
            self.authz.authorize(ctx, ADMIN_ROLES)
            if user_id == ctx.principal_id:
                self.audit.record(
                    "user_admin_denied", actor_id=ctx.principal_id, reason="self_delete", action="delete"
                )
                raise ForbiddenError("You cannot delete your own account")
            target = self._load_in_scope(ctx, user_id)
            self._guard_peer_admin(ctx, target, "delete")
            self.store.soft_delete_principal(user_id)
            revoked = self.auth.revoke_all(user_id)
            self.audit.record(
                "user_deleted", actor_id=ctx.principal_id, target_id=user_id, revoked_tokens=revoked
            )

        run_unit_of_work(self.store, _delete)

    def reset_password(self, ctx: AuthenticatedContext, user_id: str) -> str:
        """Replace the user's password with a generated one and return it once."""

        def _reset() -> str:
            self.authz.authorize(ctx, ADMIN_ROLES)
            target = self._load_in_scope(ctx, user_id)
            self._guard_peer_admin(ctx, target, "reset_password")
            temporary = generate_temporary_password()
            self.store.update_principal_credentials(
                user_id,
                password_hash=self.passwords.hash(temporary),
                must_change_password=True,
            )
            revoked = self.auth.revoke_all(user_id)
            self.audit.record(
                "user_password_reset", actor_id=ctx.principal_id, target_id=user_id, revoked_tokens=revoked
            )
            return temporary

        return run_unit_of_work(self.store, _reset)
