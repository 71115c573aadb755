from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, Optional

from kitchguard.config import Settings
from kitchguard.logging import get_logger
from kitchguard.service.audit import AuditLog
from kitchguard.service.auth import AuthService
from kitchguard.service.authz import AuthenticatedContext, AuthorizationEngine
from kitchguard.service.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from kitchguard.service.pagination import Page, page_bounds
from kitchguard.service.transactions import run_unit_of_work
from kitchguard.storage.models import (
    TENANT_MUTABLE_FIELDS,
    Role,
    SubscriptionStatus,
    Tenant,
    TenantType,
)

logger = get_logger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")
# Fields a tenant admin may change on its own tenant
SELF_SERVICE_FIELDS = frozenset({"name", "settings"})


def validate_slug(slug: str) -> str:
    slug = (slug or "").strip()
    if not slug or len(slug) > 100 or not SLUG_PATTERN.match(slug):
        raise ValidationError(
            "slug must contain only lowercase letters, numbers, and hyphens",
            detail={"field": "slug"},
        )
    return slug


def _coerce_tenant_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    updates = dict(changes)
    if "name" in updates:
        name = (updates["name"] or "").strip()
        if not name:
            raise ValidationError("name cannot be empty", detail={"field": "name"})
        updates["name"] = name
    if "subscription_status" in updates:
        try:
            updates["subscription_status"] = SubscriptionStatus(updates["subscription_status"])
        except ValueError:
            raise ValidationError("invalid subscription status", detail={"field": "subscription_status"})
    end_date = updates.get("subscription_end_date")
    if end_date is not None and not isinstance(end_date, datetime):
        raise ValidationError("invalid subscription end date", detail={"field": "subscription_end_date"})
    if "settings" in updates and not isinstance(updates["settings"], dict):
        raise ValidationError("settings must be an object", detail={"field": "settings"})
    return updates


class TenantAdminService:
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

    def _load(self, tenant_id: str) -> Tenant:
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None or tenant.deleted_at is not None:
            raise NotFoundError("tenant not found")
        return tenant

    def create_tenant(
        self,
        ctx: AuthenticatedContext,
        *,
        name: str,
        slug: str,
        type: Any,
        settings: Optional[Dict[str, Any]] = None,
    ) -> Tenant:
        self.authz.authorize(ctx, (Role.SUPER_ADMIN,))
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required", detail={"field": "name"})
        slug = validate_slug(slug)
        try:
            tenant_type = TenantType(type)
        except ValueError:
            raise ValidationError("type must be restaurant or hotel", detail={"field": "type"})

        def _create() -> Tenant:
            if self.store.get_tenant_by_slug(slug) is not None:
                raise ConflictError("Tenant slug already exists", detail={"field": "slug"})
            tenant = self.store.create_tenant(name, slug, tenant_type, settings=settings)
            self.audit.record(
                "tenant_created", actor_id=ctx.principal_id, tenant_id=tenant.id, slug=slug
            )
            return tenant

        return run_unit_of_work(self.store, _create)

    def list_tenants(
        self, ctx: AuthenticatedContext, *, limit: Optional[int] = None, offset: Optional[int] = None
    ) -> Page[Tenant]:
        self.authz.authorize(ctx, (Role.SUPER_ADMIN,))
        limit, offset = page_bounds(self.settings, limit, offset)
        items, total = run_unit_of_work(
            self.store, lambda: self.store.list_tenants(limit=limit, offset=offset)
        )
        return Page(items=items, total=total, limit=limit, offset=offset)

    def get_tenant(self, ctx: AuthenticatedContext, tenant_id: str) -> Tenant:
        self.authz.authorize(ctx, (Role.SUPER_ADMIN, Role.TENANT_ADMIN), tenant_id)
        return run_unit_of_work(self.store, lambda: self._load(tenant_id))

    def update_tenant(
        self, ctx: AuthenticatedContext, tenant_id: str, changes: Dict[str, Any]
    ) -> Tenant:
        self.authz.authorize(ctx, (Role.SUPER_ADMIN, Role.TENANT_ADMIN), tenant_id)
        unknown = set(changes) - TENANT_MUTABLE_FIELDS
        if unknown:
            raise ValidationError("unsupported fields", detail={"fields": sorted(unknown)})
        if not changes:
            raise ValidationError("no fields to update")
        if ctx.role is Role.TENANT_ADMIN and not set(changes) <= SELF_SERVICE_FIELDS:
            raise ForbiddenError("Tenant admins may only change the tenant name and settings")
        updates = _coerce_tenant_changes(changes)

        def _update() -> Tenant:
            self._load(tenant_id)
            tenant = self.store.update_tenant(tenant_id, updates)
            if tenant is None:
                raise NotFoundError("tenant not found")
            self.audit.record(
                "tenant_updated", actor_id=ctx.principal_id, tenant_id=tenant_id, fields=sorted(updates)
            )
            return tenant

        return run_unit_of_work(self.store, _update)

    def delete_tenant(self, ctx: AuthenticatedContext, tenant_id: str) -> None:
        """Soft delete a tenant together with its branches and principals."""
        self.authz.authorize(ctx, (Role.SUPER_ADMIN,))

        def _delete() -> None:
            self._load(tenant_id)
            branch_ids = self.store.soft_delete_branches(tenant_id=tenant_id)
            principal_ids = self.store.soft_delete_principals(tenant_id=tenant_id)
            revoked = sum(self.auth.revoke_all(pid) for pid in principal_ids)
            self.store.soft_delete_tenant(tenant_id)
            self.audit.record(
                "tenant_deleted",
                actor_id=ctx.principal_id,
                tenant_id=tenant_id,
                branches=len(branch_ids),
                principals=len(principal_ids),
                revoked_tokens=revoked,
            )
            logger.info(
                "tenant_soft_deleted",
                tenant_id=tenant_id,
                branches=len(branch_ids),
                principals=len(principal_ids),
            )

        run_unit_of_work(self.store, _delete)
