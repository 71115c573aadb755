from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Iterable, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request
from pydantic import BaseModel

from kitchguard.api.schemas import (
    AccessTokenResponse,
    AdminCreateUserRequest,
    AdminUpdateUserRequest,
    BranchCreateRequest,
    BranchListResponse,
    BranchResponse,
    BranchUpdateRequest,
    CredentialsChangeRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    PasswordChangeRequest,
    PasswordResetResponse,
    PrincipalResponse,
    TenantCreateRequest,
    TenantListResponse,
    TenantResponse,
    TenantUpdateRequest,
    TokenRefreshRequest,
    UserListResponse,
)
from kitchguard.logging import get_logger
from kitchguard.service.authz import AuthenticatedContext, RequestScope
from kitchguard.service.runtime import Runtime, get_runtime
from kitchguard.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_ADMINS = (Role.SUPER_ADMIN, Role.TENANT_ADMIN)
_ALL_ROLES = (Role.SUPER_ADMIN, Role.TENANT_ADMIN, Role.BRANCH_ADMIN)


def _changes(body: BaseModel, nullable: Iterable[str] = ()) -> Dict[str, Any]:
    """Fields the client actually sent; explicit nulls only where clearing is allowed."""
    allowed_null = set(nullable)
    return {
        key: value
        for key, value in body.model_dump(exclude_unset=True).items()
        if value is not None or key in allowed_null
    }


async def get_context(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthenticatedContext:
    return await runtime.auth.authenticate_request(authorization)


async def _declared_scope(request: Request) -> RequestScope:
    body: Any = {}
    raw = await request.body()
    if raw:
        try:
            body = json.loads(raw)
        except ValueError:
            body = {}
    return RequestScope.from_sources(
        dict(request.path_params), body if isinstance(body, dict) else {}, dict(request.query_params)
    )


def require_roles(*roles: Role):
    """Dependency authorizing the caller's role and declared tenant/branch scope."""

    async def _authorize(
        request: Request,
        ctx: AuthenticatedContext = Depends(get_context),
        runtime: Runtime = Depends(get_runtime),
    ) -> AuthenticatedContext:
        scope = await _declared_scope(request)
        runtime.authz.authorize(
            ctx, roles, scope.tenant_id, scope.branch_id, path=request.url.path
        )
        return ctx

    return _authorize


# -- auth -------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate with username or email and password.

    Raises:
        401: invalid credentials or inactive account
        403: tenant inactive or suspended
        423: account locked after repeated failures
    """
    result = await runtime.auth.login(
        body.identifier,
        body.password,
        client_ip=request.client.host if request.client else None,
        user_agent=user_agent,
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=PrincipalResponse.from_principal(result.principal),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
            must_change_password=result.must_change_password,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, runtime: Runtime = Depends(get_runtime)):
    token = await runtime.auth.refresh_access_token(body.refresh_token)
    return Envelope(
        status="ok",
        data=AccessTokenResponse(
            access_token=token.access_token,
            token_type=token.token_type,
            expires_in=token.expires_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    ctx: AuthenticatedContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    """Revoke one refresh token when given, otherwise every token of the caller."""
    await runtime.auth.logout(ctx, body.refresh_token if body else None)
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: AuthenticatedContext = Depends(get_context)):
    return Envelope(
        status="ok",
        data=MeResponse(
            id=ctx.principal_id,
            username=ctx.username,
            role=ctx.role.value,
            tenant_id=ctx.tenant_id,
            branch_id=ctx.branch_id,
            must_change_password=ctx.must_change_password,
        ),
    )


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    ctx: AuthenticatedContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    """Change the caller's password; every refresh token is revoked."""
    await runtime.auth.change_password(ctx.principal_id, body.current_password, body.new_password)
    return Envelope(
        status="ok",
        data={"message": "Password changed successfully. Please log in again."},
    )


@router.post("/auth/credentials/change", response_model=Envelope, tags=["auth"])
async def change_credentials(
    body: CredentialsChangeRequest,
    ctx: AuthenticatedContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    principal = await runtime.auth.change_credentials(
        ctx.principal_id, body.current_password, body.new_username, body.new_password
    )
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


# -- tenants ----------------------------------------------------------------


@router.post("/admin/tenants", response_model=Envelope, status_code=201, tags=["tenants"])
async def create_tenant(
    body: TenantCreateRequest,
    ctx: AuthenticatedContext = Depends(require_roles(Role.SUPER_ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    tenant = await asyncio.to_thread(
        runtime.tenants.create_tenant,
        ctx,
        name=body.name,
        slug=body.slug,
        type=body.type,
        settings=body.settings,
    )
    return Envelope(status="ok", data=TenantResponse.from_tenant(tenant))


@router.get("/admin/tenants", response_model=Envelope, tags=["tenants"])
async def list_tenants(
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    ctx: AuthenticatedContext = Depends(require_roles(Role.SUPER_ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    page = await asyncio.to_thread(runtime.tenants.list_tenants, ctx, limit=limit, offset=offset)
    return Envelope(
        status="ok",
        data=TenantListResponse(
            items=[TenantResponse.from_tenant(t) for t in page.items],
            total=page.total,
            limit=page.limit,
            offset=page.offset,
        ),
    )


@router.get("/admin/tenants/{tenant_id}", response_model=Envelope, tags=["tenants"])
async def get_tenant(
    tenant_id: str = Path(..., max_length=128),
    ctx: AuthenticatedContext = Depends(require_roles(*_ADMINS)),
    runtime: Runtime = Depends(get_runtime),
):
    tenant = await asyncio.to_thread(runtime.tenants.get_tenant, ctx, tenant_id)
    return Envelope(status="ok", data=TenantResponse.from_tenant(tenant))


@router.patch("/admin/tenants/{tenant_id}", response_model=Envelope, tags=["tenants"])
async def update_tenant(
    body: TenantUpdateRequest,
    tenant_id: str = Path(..., max_length=128),
    ctx: AuthenticatedContext = Depends(require_roles(*_ADMINS)),
    runtime: Runtime = Depends(get_runtime),
):
    changes = _changes(body, nullable=("subscription_end_date",))
    tenant = await asyncio.to_thread(runtime.tenants.update_tenant, ctx, tenant_id, changes)
    return Envelope(status="ok", data=TenantResponse.from_tenant(tenant))


@router.delete("/admin/tenants/{tenant_id}", response_model=Envelope, tags=["tenants"])
async def delete_tenant(
    tenant_id: str = Path(..., max_length=128),
    ctx: AuthenticatedContext = Depends(require_roles(Role.SUPER_ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    await asyncio.to_thread(runtime.tenants.delete_tenant, ctx, tenant_id)
    return Envelope(status="ok", data={"deleted": True, "tenant_id": tenant_id})


# -- branches ---------------------------------------------------------------


@router.post("/branches", response_model=Envelope, status_code=201, tags=["branches"])
async def create_branch(
    body: BranchCreateRequest,
    ctx: AuthenticatedContext = Depends(require_roles(*_ADMINS)),
    runtime: Runtime = Depends(get_runtime),
):
    fields = _changes(body)
    name = fields.pop("name")
    tenant_id = fields.pop("tenant_id", None)
    branch = await asyncio.to_thread(
        runtime.branches.create_branch, ctx, name=name, tenant_id=tenant_id, **fields
    )
    return Envelope(status="ok", data=BranchResponse.from_branch(branch))


@router.get("/branches", response_model=Envelope, tags=["branches"])
async def list_branches(
    tenant_id: Optional[str] = Query(None, max_length=128),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    ctx: AuthenticatedContext = Depends(require_roles(*_ALL_ROLES)),
    runtime: Runtime = Depends(get_runtime),
):
    page = await asyncio.to_thread(
        runtime.branches.list_branches, ctx, tenant_id=tenant_id, limit=limit, offset=offset
    )
    return Envelope(
        status="ok",
        data=BranchListResponse(
            items=[BranchResponse.from_branch(b) for b in page.items],
            total=page.total,
            limit=page.limit,
            offset=page.offset,
        ),
    )


@router.get("/branches/{branch_id}", response_model=Envelope, tags=["branches"])
async def get_branch(
    branch_id: str = Path(..., max_length=128),
    ctx: AuthenticatedContext = Depends(require_roles(*_ALL_ROLES)),
    runtime: Runtime = Depends(get_runtime),
):
    branch = await asyncio.to_thread(runtime.branches.get_branch, ctx, branch_id)
    return Envelope(status="ok", data=BranchResponse.from_branch(branch))


@router.patch("/branches/{branch_id}", response_model=Envelope, tags=["branches"])
async def update_branch(
    body: BranchUpdateRequest,
    branch_id: str = Path(..., max_length=128),
    ctx: AuthenticatedContext = Depends(require_roles(*_ADMINS)),
    runtime: Runtime = Depends(get_runtime),
):
    changes = _changes(body, nullable=("phone", "email"))
    branch = await asyncio.to_thread(runtime.branches.update_branch, ctx, branch_id, changes)
    return Envelope(status="ok", data=BranchResponse.from_branch(branch))


@router.delete("/branches/{branch_id}", response_model=Envelope, tags=["branches"])
async def delete_branch(
    branch_id: str = Path(..., max_length=128),
    ctx: AuthenticatedContext = Depends(require_roles(*_ADMINS)),
    runtime: Runtime = Depends(get_runtime),
):
    await asyncio.to_thread(runtime.branches.delete_branch, ctx, branch_id)
    return Envelope(status="ok", data={"deleted": True, "branch_id": branch_id})


# -- users ------------------------------------------------------------------


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest,
    ctx: AuthenticatedContext = Depends(require_roles(*_ADMINS)),
    runtime: Runtime = Depends(get_runtime),
):
    """Create a tenant or branch admin.

    Tenant admins may only create branch admins inside their own tenant; the
    new account must change its password on first login.
    """
    principal = await asyncio.to_thread(
        runtime.users.create_user,
        ctx,
        username=body.username,
        password=body.password,
        role=body.role,
        email=body.email,
        tenant_id=body.tenant_id,
        branch_id=body.branch_id,
    )
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    tenant_id: Optional[str] = Query(None, max_length=128),
    branch_id: Optional[str] = Query(None, max_length=128),
    limit: Optional[int] = Query(None, ge=1, description="Maximum users to return"),
    offset: int = Query(0, ge=0),
    ctx: AuthenticatedContext = Depends(require_roles(*_ADMINS)),
    runtime: Runtime = Depends(get_runtime),
):
    page = await asyncio.to_thread(
        runtime.users.list_users,
        ctx,
        tenant_id=tenant_id,
        branch_id=branch_id,
        limit=limit,
        offset=offset,
    )
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[PrincipalResponse.from_principal(p) for p in page.items],
            total=page.total,
            limit=page.limit,
            offset=page.offset,
        ),
    )


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    user_id: str = Path(..., max_length=128),
    ctx: AuthenticatedContext = Depends(require_roles(*_ADMINS)),
    runtime: Runtime = Depends(get_runtime),
):
    principal = await asyncio.to_thread(runtime.users.get_user, ctx, user_id)
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.patch("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    body: AdminUpdateUserRequest,
    user_id: str = Path(..., max_length=128),
    ctx: AuthenticatedContext = Depends(require_roles(*_ADMINS)),
    runtime: Runtime = Depends(get_runtime),
):
    changes = _changes(body, nullable=("email", "branch_id"))
    principal = await asyncio.to_thread(runtime.users.update_user, ctx, user_id, changes)
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str = Path(..., max_length=128),
    ctx: AuthenticatedContext = Depends(require_roles(*_ADMINS)),
    runtime: Runtime = Depends(get_runtime),
):
    await asyncio.to_thread(runtime.users.delete_user, ctx, user_id)
    return Envelope(status="ok", data={"deleted": True, "user_id": user_id})


@router.post("/admin/users/{user_id}/password/reset", response_model=Envelope, tags=["admin"])
async def admin_reset_password(
    user_id: str = Path(..., max_length=128),
    ctx: AuthenticatedContext = Depends(require_roles(*_ADMINS)),
    runtime: Runtime = Depends(get_runtime),
):
    """Issue a temporary password; it is returned exactly once."""
    temporary = await asyncio.to_thread(runtime.users.reset_password, ctx, user_id)
    return Envelope(
        status="ok",
        data=PasswordResetResponse(user_id=user_id, temporary_password=temporary),
    )
