from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, TypeVar, Union

from kitchguard.config import Settings
from kitchguard.logging import get_logger, hash_for_logging
from kitchguard.service.audit import AuditLog
from kitchguard.service.authz import AuthenticatedContext
from kitchguard.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ServiceError,
    TenantInactiveError,
    TokenRevokedError,
    ValidationError,
)
from kitchguard.service.passwords import PasswordManager
from kitchguard.service.tokens import TokenClaims, TokenService
from kitchguard.service.transactions import run_unit_of_work
from kitchguard.storage.models import Principal, RefreshToken, Role, Tenant, utcnow

logger = get_logger(__name__)

T = TypeVar("T")

_INVALID_CREDENTIALS = "Invalid credentials"


class AuthStore(Protocol):
    def run_in_transaction(self, fn: Callable[[], T]) -> T: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_username(self, username: str) -> Optional[Principal]: ...

    def get_principal_by_identifier(self, identifier: str) -> Optional[Principal]: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def update_principal_login_state(
        self,
        principal_id: str,
        *,
        failed_attempts: int,
        lock_until: Optional[datetime],
        last_login_at: Optional[datetime] = None,
    ) -> None: ...

    def increment_failed_login(
        self, principal_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[Principal]: ...

    def update_principal_credentials(
        self,
        principal_id: str,
        *,
        password_hash: str,
        username: Optional[str] = None,
        must_change_password: bool = False,
    ) -> Optional[Principal]: ...

    def insert_refresh_token(
        self, principal_id: str, token: str, expires_at: datetime
    ) -> RefreshToken: ...

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token: str, principal_id: str) -> bool: ...

    def revoke_all_refresh_tokens(self, principal_id: str) -> int: ...


@dataclass(frozen=True)
class LoginResult:
    principal: Principal
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    @property
    def must_change_password(self) -> bool:
        return self.principal.must_change_password


@dataclass(frozen=True)
class AccessToken:
    access_token: str
    expires_in: int
    token_type: str = "bearer"


class AuthService:
    """Credential checks, lockout, refresh-token bookkeeping and request authentication.

    Every public coroutine hands one unit of work to a worker thread, which runs
    it inside ``store.run_in_transaction``. A client that disconnects mid-request
    cancels only the awaiting coroutine; the transaction still commits or rolls
    back as a whole.

    Failed logins must persist their counter updates, so the login body returns
    its error instead of raising it and the caller raises after commit.
    """

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        passwords: PasswordManager,
        audit: AuditLog,
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.tokens = tokens
        self.passwords = passwords
        self.audit = audit
        self.settings = settings
        self.logger = logger
        self._lockout = timedelta(minutes=settings.lockout_minutes)

    def _now(self) -> datetime:
        return utcnow()

    async def _run(self, fn: Callable[[], T]) -> T:
        return await asyncio.to_thread(run_unit_of_work, self.store, fn)

    # -- login ------------------------------------------------------------

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        outcome = await self._run(
            lambda: self._login(identifier, password, client_ip=client_ip, user_agent=user_agent)
        )
        if isinstance(outcome, ServiceError):
            raise outcome
        return outcome

    def _login(
        self,
        identifier: str,
        password: str,
        *,
        client_ip: Optional[str],
        user_agent: Optional[str],
    ) -> Union[LoginResult, ServiceError]:
        context = {
            "identifier_fingerprint": hash_for_logging(identifier),
            "client_ip": client_ip,
            "user_agent": user_agent,
        }
        principal = self.store.get_principal_by_identifier(identifier)
        if principal is None:
            # Spend the same argon2 work as a real verify
            self.passwords.burn(password)
            self.audit.record("login_failed", reason="unknown_identifier", **context)
            return InvalidCredentialsError(_INVALID_CREDENTIALS)

        if not principal.is_usable():
            self.audit.record(
                "login_rejected", actor_id=principal.id, reason="account_inactive", **context
            )
            return AccountInactiveError("Account is inactive")

        now = self._now()
        if principal.is_locked(now):
            self.audit.record(
                "login_rejected", actor_id=principal.id, reason="account_locked", **context
            )
            return AccountLockedError("Account is locked due to too many failed login attempts")

        if not self.passwords.verify(principal.password_hash, password):
            updated = self.store.increment_failed_login(
                principal.id,
                max_attempts=self.settings.max_login_attempts,
                lock_until=now + self._lockout,
            )
            self.audit.record(
                "login_failed",
                actor_id=principal.id,
                reason="bad_password",
                failed_attempts=updated.failed_login_attempts if updated else None,
                locked=bool(updated and updated.is_locked(now)),
                **context,
            )
            return InvalidCredentialsError(_INVALID_CREDENTIALS)

        if principal.role is not Role.SUPER_ADMIN and not self._tenant_allows_login(principal):
            self.audit.record(
                "login_rejected",
                actor_id=principal.id,
                reason="tenant_inactive",
                tenant_id=principal.tenant_id,
                **context,
            )
            return TenantInactiveError("Tenant is inactive or suspended")

        self.store.update_principal_login_state(
            principal.id, failed_attempts=0, lock_until=None, last_login_at=now
        )
        pair = self.tokens.issue(TokenClaims.for_principal(principal))
        self.store.insert_refresh_token(principal.id, pair.refresh_token, pair.refresh_expires_at)
        principal.failed_login_attempts = 0
        principal.lock_until = None
        principal.last_login_at = now
        self.audit.record(
            "login_succeeded",
            actor_id=principal.id,
            role=principal.role.value,
            tenant_id=principal.tenant_id,
            branch_id=principal.branch_id,
            **context,
        )
        return LoginResult(
            principal=principal,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )

    def _tenant_allows_login(self, principal: Principal) -> bool:
        if not principal.tenant_id:
            return False
        tenant = self.store.get_tenant(principal.tenant_id)
        return tenant is not None and tenant.allows_login()

    # -- refresh ----------------------------------------------------------

    async def refresh_access_token(self, refresh_token: str) -> AccessToken:
        return await self._run(lambda: self._refresh(refresh_token))

    def _refresh(self, refresh_token: str) -> AccessToken:
        fingerprint = hash_for_logging(refresh_token)
        try:
            claims = self.tokens.verify_refresh(refresh_token)
        except InvalidTokenError:
            self.audit.record("refresh_rejected", reason="invalid_token", token_fingerprint=fingerprint)
            raise
        record = self.store.find_refresh_token(refresh_token)
        if record is None or record.principal_id != claims.principal_id:
            self.audit.record("refresh_rejected", reason="unknown_token", token_fingerprint=fingerprint)
            raise InvalidTokenError("invalid or expired token")
        if record.revoked:
            self.audit.record(
                "refresh_rejected",
                actor_id=record.principal_id,
                reason="revoked",
                token_fingerprint=fingerprint,
            )
            raise TokenRevokedError("Refresh token has been revoked")
        if record.is_expired(self._now()):
            self.audit.record(
                "refresh_rejected",
                actor_id=record.principal_id,
                reason="expired",
                token_fingerprint=fingerprint,
            )
            raise InvalidTokenError("invalid or expired token")

        principal = self.store.get_principal(record.principal_id)
        if principal is None or not principal.is_usable() or (
            principal.role is not Role.SUPER_ADMIN and not self._tenant_allows_login(principal)
        ):
            self.audit.record(
                "refresh_rejected",
                actor_id=record.principal_id,
                reason="principal_unusable",
                token_fingerprint=fingerprint,
            )
            raise InvalidTokenError("invalid or expired token")

        access_token, expires_in = self.tokens.mint_access(TokenClaims.for_principal(principal))
        self.audit.record("access_token_refreshed", actor_id=principal.id, token_fingerprint=fingerprint)
        return AccessToken(access_token=access_token, expires_in=expires_in)

    # -- revocation -------------------------------------------------------

    def revoke_all(self, principal_id: str) -> int:
        """Revoke every live refresh token of a principal; safe to repeat."""
        count = self.store.revoke_all_refresh_tokens(principal_id)
        self.logger.info("refresh_tokens_revoked", principal_id=principal_id, count=count)
        return count

    def revoke_one(self, refresh_token: str, principal_id: str) -> None:
        """Revoke one token owned by ``principal_id``.

        Foreign, unknown and already revoked tokens are ignored so the caller
        cannot learn whether the token exists.
        """
        revoked = self.store.revoke_refresh_token(refresh_token, principal_id)
        self.logger.info(
            "refresh_token_revoke_requested",
            principal_id=principal_id,
            token_fingerprint=hash_for_logging(refresh_token),
            revoked=revoked,
        )

    async def logout(self, ctx: AuthenticatedContext, refresh_token: Optional[str] = None) -> None:
        def _logout() -> None:
            if refresh_token:
                self.revoke_one(refresh_token, ctx.principal_id)
                self.audit.record(
                    "logout",
                    actor_id=ctx.principal_id,
                    token_fingerprint=hash_for_logging(refresh_token),
                )
                return
            count = self.revoke_all(ctx.principal_id)
            self.audit.record("logout_all", actor_id=ctx.principal_id, revoked_tokens=count)

        await self._run(_logout)

    # -- credential changes -----------------------------------------------

    async def change_password(
        self, principal_id: str, current_password: str, new_password: str
    ) -> Principal:
        return await self._run(
            lambda: self._change_credentials(principal_id, current_password, new_password, None)
        )

    async def change_credentials(
        self,
        principal_id: str,
        current_password: str,
        new_username: str,
        new_password: str,
    ) -> Principal:
        return await self._run(
            lambda: self._change_credentials(
                principal_id, current_password, new_password, new_username
            )
        )

    def _change_credentials(
        self,
        principal_id: str,
        current_password: str,
        new_password: str,
        new_username: Optional[str],
    ) -> Principal:
        principal = self.store.get_principal(principal_id)
        if principal is None or not principal.is_usable():
            raise NotFoundError("user not found")
        if not self.passwords.verify(principal.password_hash, current_password):
            self.audit.record(
                "credential_change_failed", actor_id=principal_id, reason="bad_password"
            )
            raise InvalidCredentialsError("Current password is incorrect")
        if new_password == current_password:
            raise ValidationError("New password must differ from the current password")
        if new_username is not None:
            new_username = new_username.strip()
            if not new_username:
                raise ValidationError("username is required")
            existing = self.store.get_principal_by_username(new_username)
            if existing is not None and existing.id != principal_id:
                raise ConflictError("Username already exists", detail={"field": "username"})

        password_hash = self.passwords.hash(new_password)
        updated = self.store.update_principal_credentials(
            principal_id,
            password_hash=password_hash,
            username=new_username,
            must_change_password=False,
        )
        if updated is None:
            raise NotFoundError("user not found")
        revoked = self.revoke_all(principal_id)
        self.audit.record(
            "credentials_changed" if new_username is not None else "password_changed",
            actor_id=principal_id,
            username_changed=new_username is not None and new_username != principal.username,
            revoked_tokens=revoked,
        )
        return updated

    # -- request authentication -------------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def authenticate_request(self, authorization: Optional[str]) -> AuthenticatedContext:
        token = self._extract_bearer(authorization)
        if token is None:
            self.audit.record("request_authentication_failed", reason="missing_token")
            raise AuthenticationError("Access token required")
        try:
            claims = self.tokens.verify_access(token)
        except InvalidTokenError:
            self.audit.record(
                "request_authentication_failed",
                reason="invalid_token",
                token_fingerprint=hash_for_logging(token),
            )
            raise
        return await self._run(lambda: self._authenticate_claims(claims))

    def _authenticate_claims(self, claims: TokenClaims) -> AuthenticatedContext:
        principal = self.store.get_principal(claims.principal_id)
        if principal is None or not principal.is_usable():
            self.audit.record(
                "request_authentication_failed",
                actor_id=claims.principal_id,
                reason="principal_unusable",
            )
            raise InvalidTokenError("invalid or expired token")
        if not claims.matches(principal):
            self.audit.record(
                "request_authentication_failed",
                actor_id=claims.principal_id,
                reason="claims_stale",
            )
            raise InvalidTokenError("invalid or expired token")
        if principal.role is not Role.SUPER_ADMIN and not self._tenant_allows_login(principal):
            self.audit.record(
                "request_authentication_failed",
                actor_id=claims.principal_id,
                reason="tenant_inactive",
                tenant_id=principal.tenant_id,
            )
            raise TenantInactiveError("Tenant is inactive or suspended")
        return AuthenticatedContext(
            principal_id=principal.id,
            username=principal.username,
            role=principal.role,
            tenant_id=principal.tenant_id,
            branch_id=principal.branch_id,
            must_change_password=principal.must_change_password,
        )
