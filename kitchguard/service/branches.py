from __future__ import annotations

from typing import Any, Dict, Optional

from kitchguard.config import Settings
from kitchguard.logging import get_logger
from kitchguard.service.audit import AuditLog
from kitchguard.service.auth import AuthService
from kitchguard.service.authz import AuthenticatedContext, AuthorizationEngine
from kitchguard.service.errors import NotFoundError, ValidationError
from kitchguard.service.pagination import Page, page_bounds
from kitchguard.service.transactions import run_unit_of_work
from kitchguard.storage.models import BRANCH_MUTABLE_FIELDS, Branch, Role

logger = get_logger(__name__)

_MANAGERS = (Role.SUPER_ADMIN, Role.TENANT_ADMIN)
_ALL_ROLES = (Role.SUPER_ADMIN, Role.TENANT_ADMIN, Role.BRANCH_ADMIN)


class BranchAdminService:
    def __init__(
        self,
        store,
        authz: AuthorizationEngine,
        auth: AuthService,
        audit: AuditLog,
        settings: Settings,
    ) -> None:
        self.store = store
        self.authz = authz
        self.auth = auth
        self.audit = audit
        self.settings = settings

    def _load_in_scope(self, ctx: AuthenticatedContext, branch_id: str) -> Branch:
        branch = self.store.get_branch(branch_id)
        if branch is None or branch.deleted_at is not None:
            raise NotFoundError("branch not found")
        self.authz.ensure_row_in_scope(
            ctx,
            tenant_id=branch.tenant_id,
            branch_id=branch.id,
            resource="branch",
            resource_id=branch_id,
        )
        return branch

    def create_branch(
        self,
        ctx: AuthenticatedContext,
        *,
        name: str,
        tenant_id: Optional[str] = None,
        **fields: Any,
    ) -> Branch:
        self.authz.authorize(ctx, _MANAGERS, tenant_id)
        unknown = set(fields) - BRANCH_MUTABLE_FIELDS
        if unknown:
            raise ValidationError("unsupported fields", detail={"fields": sorted(unknown)})
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required", detail={"field": "name"})
        target_tenant = self.authz.scoped_tenant_id(ctx, tenant_id)
        if not target_tenant:
            raise ValidationError("tenant_id is required", detail={"field": "tenant_id"})

        def _create() -> Branch:
            tenant = self.store.get_tenant(target_tenant)
            if tenant is None or not tenant.is_usable():
                raise ValidationError("tenant not found or inactive", detail={"field": "tenant_id"})
            branch = self.store.create_branch(target_tenant, name, **fields)
            self.audit.record(
                "branch_created", actor_id=ctx.principal_id, tenant_id=target_tenant, branch_id=branch.id
            )
            return branch

        return run_unit_of_work(self.store, _create)

    def list_branches(
        self,
        ctx: AuthenticatedContext,
        *,
        tenant_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> Page[Branch]:
        self.authz.authorize(ctx, _ALL_ROLES, tenant_id)
        limit, offset = page_bounds(self.settings, limit, offset)
        if ctx.role is Role.BRANCH_ADMIN:
            branch = self.store.get_branch(ctx.branch_id) if ctx.branch_id else None
            items = [branch] if branch is not None and branch.deleted_at is None else []
            return Page(items=items[offset : offset + limit], total=len(items), limit=limit, offset=offset)
        scoped_tenant = self.authz.scoped_tenant_id(ctx, tenant_id)
        items, total = run_unit_of_work(
            self.store,
            lambda: self.store.list_branches(tenant_id=scoped_tenant, limit=limit, offset=offset),
        )
        return Page(items=items, total=total, limit=limit, offset=offset)

    def get_branch(self, ctx: AuthenticatedContext, branch_id: str) -> Branch:
        self.authz.authorize(ctx, _ALL_ROLES, requested_branch_id=branch_id)
        return run_unit_of_work(self.store, lambda: self._load_in_scope(ctx, branch_id))

    def update_branch(
        self, ctx: AuthenticatedContext, branch_id: str, changes: Dict[str, Any]
    ) -> Branch:
        self.authz.authorize(ctx, _MANAGERS)
        if "tenant_id" in changes:
            raise ValidationError("a branch cannot move to another tenant", detail={"field": "tenant_id"})
        unknown = set(changes) - BRANCH_MUTABLE_FIELDS
        if unknown:
            raise ValidationError("unsupported fields", detail={"fields": sorted(unknown)})
        if not changes:
            raise ValidationError("no fields to update")
        if "name" in changes and not (changes["name"] or "").strip():
            raise ValidationError("name cannot be empty", detail={"field": "name"})

        def _update() -> Branch:
            self._load_in_scope(ctx, branch_id)
            branch = self.store.update_branch(branch_id, changes)
            if branch is None:
                raise NotFoundError("branch not found")
            self.audit.record(
                "branch_updated", actor_id=ctx.principal_id, branch_id=branch_id, fields=sorted(changes)
            )
            return branch

        return run_unit_of_work(self.store, _update)

    def delete_branch(self, ctx: AuthenticatedContext, branch_id: str) -> None:
        """Soft delete a branch and the principals assigned to it."""
        self.authz.authorize(ctx, _MANAGERS)

        def _delete() -> None:
            self._load_in_scope(ctx, branch_id)
            principal_ids = self.store.soft_delete_principals(branch_id=branch_id)
            revoked = sum(self.auth.revoke_all(pid) for pid in principal_ids)
            self.store.soft_delete_branch(branch_id)
            self.audit.record(
                "branch_deleted",
                actor_id=ctx.principal_id,
                branch_id=branch_id,
                principals=len(principal_ids),
                revoked_tokens=revoked,
            )

        run_unit_of_work(self.store, _delete)
