from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used for every stored datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role(str, Enum):
    """Closed set of principal roles."""

    SUPER_ADMIN = "super_admin"
    TENANT_ADMIN = "tenant_admin"
    BRANCH_ADMIN = "branch_admin"


class TenantType(str, Enum):
    RESTAURANT = "restaurant"
    HOTEL = "hotel"


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


_BLOCKED_SUBSCRIPTIONS = {SubscriptionStatus.SUSPENDED, SubscriptionStatus.CANCELLED}


@dataclass
class Principal:
    id: str
    username: str
    password_hash: str
    role: Role
    email: Optional[str] = None
    tenant_id: Optional[str] = None
    branch_id: Optional[str] = None
    is_active: bool = True
    must_change_password: bool = False
    failed_login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_usable(self) -> bool:
        """Active and not soft-deleted; the only check callers should use."""
        return self.is_active and self.deleted_at is None

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.lock_until is None:
            return False
        return self.lock_until > (now or utcnow())


@dataclass
class Tenant:
    id: str
    name: str
    slug: str
    type: TenantType
    is_active: bool = True
    subscription_status: SubscriptionStatus = SubscriptionStatus.TRIAL
    subscription_end_date: Optional[datetime] = None
    settings: Dict = field(default_factory=dict)
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_usable(self) -> bool:
        return self.is_active and self.deleted_at is None

    def allows_login(self) -> bool:
        """Whether members of this tenant may authenticate."""
        return self.is_usable() and self.subscription_status not in _BLOCKED_SUBSCRIPTIONS


@dataclass
class Branch:
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
    settings: Dict = field(default_factory=dict)
    is_active: bool = True
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_usable(self) -> bool:
        return self.is_active and self.deleted_at is None


@dataclass
class RefreshToken:
    id: str
    principal_id: str
    token: str
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, principal_id: str, token: str, expires_at: datetime) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            principal_id=principal_id,
            token=token,
            expires_at=expires_at,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and not self.is_expired(now)


# Columns an administrator may change through the update operations.
PRINCIPAL_MUTABLE_FIELDS = frozenset(
    {"email", "is_active", "role", "tenant_id", "branch_id", "must_change_password"}
)
TENANT_MUTABLE_FIELDS = frozenset(
    {"name", "settings", "is_active", "subscription_status", "subscription_end_date"}
)
BRANCH_MUTABLE_FIELDS = frozenset(
    {
        "name",
        "address",
        "city",
        "state",
        "zip_code",
        "country",
        "phone",
        "email",
        "settings",
        "is_active",
    }
)
