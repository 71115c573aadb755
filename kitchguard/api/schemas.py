from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from kitchguard.logging import get_correlation_id
from kitchguard.storage.models import Branch, Principal, Tenant

# Maximum nested JSON depth accepted in free-form settings objects
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _validate_settings_dict(value: Optional[dict]) -> Optional[dict]:
    if value is None:
        return None
    _validate_json_depth(value)
    return value


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "account_inactive",
    "account_locked",
    "tenant_inactive",
    "invalid_token",
    "token_revoked",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "service_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(value) > 50:
        raise ValueError("username must be at most 50 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may contain only letters, numbers, dots, underscores, and hyphens")
    return value


# -- auth -------------------------------------------------------------------


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254, description="Username or email")
    password: str = Field(..., min_length=1, max_length=256)

    @model_validator(mode="before")
    @classmethod
    def _accept_username_or_email(cls, data: Any) -> Any:
        if isinstance(data, dict) and "identifier" not in data:
            alias = data.get("username") or data.get("email")
            if alias is not None:
                data = {**data, "identifier": alias}
        return data


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=256)


class CredentialsChangeRequest(PasswordChangeRequest):
    new_username: str

    @field_validator("new_username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)


class PrincipalResponse(BaseModel):
    id: str
    username: str
    email: Optional[str] = None
    role: str
    tenant_id: Optional[str] = None
    branch_id: Optional[str] = None
    is_active: bool = True
    must_change_password: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            id=principal.id,
            username=principal.username,
            email=principal.email,
            role=principal.role.value,
            tenant_id=principal.tenant_id,
            branch_id=principal.branch_id,
            is_active=principal.is_active,
            must_change_password=principal.must_change_password,
            last_login_at=principal.last_login_at,
            created_at=principal.created_at,
        )


class LoginResponse(BaseModel):
    user: PrincipalResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    must_change_password: bool = False


class AccessTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class MeResponse(BaseModel):
    id: str
    username: str
    role: str
    tenant_id: Optional[str] = None
    branch_id: Optional[str] = None
    must_change_password: bool = False


# -- tenants ----------------------------------------------------------------


class TenantCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=100)
    type: Literal["restaurant", "hotel"]
    settings: Optional[Dict[str, Any]] = None

    @field_validator("settings")
    @classmethod
    def _check_settings(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_settings_dict(value)


class TenantUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    settings: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None
    subscription_status: Optional[Literal["trial", "active", "suspended", "cancelled"]] = None
    subscription_end_date: Optional[datetime] = None

    @field_validator("settings")
    @classmethod
    def _check_settings(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_settings_dict(value)

    @field_validator("subscription_end_date")
    @classmethod
    def _to_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class TenantResponse(BaseModel):
    id: str
    name: str
    slug: str
    type: str
    is_active: bool
    subscription_status: str
    subscription_end_date: Optional[datetime] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantResponse":
        return cls(
            id=tenant.id,
            name=tenant.name,
            slug=tenant.slug,
            type=tenant.type.value,
            is_active=tenant.is_active,
            subscription_status=tenant.subscription_status.value,
            subscription_end_date=tenant.subscription_end_date,
            settings=tenant.settings,
            created_at=tenant.created_at,
        )


class TenantListResponse(BaseModel):
    items: List[TenantResponse]
    total: int
    limit: int
    offset: int


# -- branches ---------------------------------------------------------------


class _BranchFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    address: Optional[str] = Field(default=None, max_length=500)
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    zip_code: Optional[str] = Field(default=None, max_length=20)
    country: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=50)
    email: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("settings")
    @classmethod
    def _check_settings(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_settings_dict(value)


class BranchCreateRequest(_BranchFields):
    name: str = Field(..., min_length=1, max_length=255)
    tenant_id: Optional[str] = Field(default=None, max_length=128)


class BranchUpdateRequest(_BranchFields):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    is_active: Optional[bool] = None
    tenant_id: Optional[str] = Field(default=None, max_length=128)


class BranchResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_at: datetime

    @classmethod
    def from_branch(cls, branch: Branch) -> "BranchResponse":
        return cls(
            id=branch.id,
            tenant_id=branch.tenant_id,
            name=branch.name,
            address=branch.address,
            city=branch.city,
            state=branch.state,
            zip_code=branch.zip_code,
            country=branch.country,
            phone=branch.phone,
            email=branch.email,
            settings=branch.settings,
            is_active=branch.is_active,
            created_at=branch.created_at,
        )


class BranchListResponse(BaseModel):
    items: List[BranchResponse]
    total: int
    limit: int
    offset: int


# -- users ------------------------------------------------------------------


class AdminCreateUserRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str
    password: str = Field(..., min_length=1, max_length=256)
    email: Optional[str] = None
    role: Literal["tenant_admin", "branch_admin"]
    tenant_id: Optional[str] = Field(default=None, max_length=128)
    branch_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class AdminUpdateUserRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: Optional[str] = None
    is_active: Optional[bool] = None
    role: Optional[Literal["tenant_admin", "branch_admin"]] = None
    tenant_id: Optional[str] = Field(default=None, max_length=128)
    branch_id: Optional[str] = Field(default=None, max_length=128)
    must_change_password: Optional[bool] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class UserListResponse(BaseModel):
    items: List[PrincipalResponse]
    total: int
    limit: int
    offset: int


class PasswordResetResponse(BaseModel):
    user_id: str
    temporary_password: str
    must_change_password: bool = True
