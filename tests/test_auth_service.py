"""Unit tests for the authentication service.

Tests for:
- Login by username or email, generic failures and lockout
- Tenant status checks at login
- Refresh token validation and revocation
- Password and credential changes
- Bearer authentication of requests
"""

from datetime import timedelta

import pytest

from kitchguard.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    TenantInactiveError,
    TokenRevokedError,
    ValidationError,
)
from kitchguard.service.tokens import TokenClaims
from kitchguard.storage.models import Role, SubscriptionStatus, utcnow

NEW_PASSWORD = "N3w!Secure-Passw0rd"


@pytest.fixture
def auth(runtime):
    return runtime.auth


@pytest.fixture
def store(runtime):
    return runtime.store


class TestLogin:
    """Tests for the login flow."""

    @pytest.mark.asyncio
    async def test_login_by_username(self, auth, seed, password, audit_sink):
        """A successful login returns both tokens and persists the refresh token."""
        result = await auth.login("alpha-admin", password, client_ip="10.0.0.1")

        assert result.principal.id == seed.admin_a.id
        assert result.token_type == "bearer"
        assert result.expires_in == 15 * 60
        assert auth.store.find_refresh_token(result.refresh_token) is not None
        assert audit_sink.actions()[-1] == "login_succeeded"

    @pytest.mark.asyncio
    async def test_login_by_email(self, auth, seed, password):
        result = await auth.login("admin@alpha.example.com", password)
        assert result.principal.id == seed.admin_a.id

    @pytest.mark.asyncio
    async def test_login_records_last_login(self, auth, store, seed, password):
        await auth.login("alpha-admin", password)
        assert store.get_principal(seed.admin_a.id).last_login_at is not None

    @pytest.mark.asyncio
    async def test_unknown_identifier_is_generic(self, auth, seed, audit_sink):
        """Unknown users get the same error as a wrong password."""
        with pytest.raises(InvalidCredentialsError) as exc_info:
            await auth.login("nobody", "Whatever!Passw0rd")
        assert exc_info.value.message == "Invalid credentials"
        event = audit_sink.events[-1]
        assert event.action == "login_failed"
        assert event.detail["reason"] == "unknown_identifier"
        assert "nobody" not in str(event.detail)

    @pytest.mark.asyncio
    async def test_wrong_password_is_generic(self, auth, seed):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            await auth.login("alpha-admin", "Wr0ng!Password")
        assert exc_info.value.message == "Invalid credentials"

    @pytest.mark.asyncio
    async def test_login_against_empty_store(self, auth):
        with pytest.raises(InvalidCredentialsError):
            await auth.login("root", "Str0ng!Passw0rd")

    @pytest.mark.asyncio
    async def test_super_admin_login_needs_no_tenant(self, auth, seed, password):
        result = await auth.login("root", password)
        assert result.principal.role is Role.SUPER_ADMIN
        assert result.principal.tenant_id is None

    @pytest.mark.asyncio
    async def test_inactive_account_rejected(self, auth, store, seed, password):
        store.update_principal(seed.admin_a.id, {"is_active": False})
        with pytest.raises(AccountInactiveError):
            await auth.login("alpha-admin", password)

    @pytest.mark.asyncio
    async def test_deleted_account_rejected(self, auth, store, seed, password):
        store.soft_delete_principal(seed.branch_admin_a1.id)
        with pytest.raises(AccountInactiveError):
            await auth.login("alpha-downtown", password)

    @pytest.mark.asyncio
    async def test_must_change_password_surfaces(self, auth, store, seed, password):
        store.update_principal(seed.admin_a.id, {"must_change_password": True})
        result = await auth.login("alpha-admin", password)
        assert result.must_change_password is True


class TestLockout:
    """Tests for failed-attempt counting and account lockout."""

    @pytest.mark.asyncio
    async def test_failures_accumulate_and_lock(self, auth, store, seed):
        """The fifth failure locks the account; failures persist across calls."""
        for attempt in range(1, 5):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("alpha-admin", "Wr0ng!Password")
            stored = store.get_principal(seed.admin_a.id)
            assert stored.failed_login_attempts == attempt
            assert stored.lock_until is None

        with pytest.raises(InvalidCredentialsError):
            await auth.login("alpha-admin", "Wr0ng!Password")
        stored = store.get_principal(seed.admin_a.id)
        assert stored.failed_login_attempts == 5
        assert stored.is_locked()

    @pytest.mark.asyncio
    async def test_locked_account_rejects_correct_password(self, auth, seed, password):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("alpha-admin", "Wr0ng!Password")
        with pytest.raises(AccountLockedError) as exc_info:
            await auth.login("alpha-admin", password)
        assert exc_info.value.status_code == 423

    @pytest.mark.asyncio
    async def test_success_resets_counter(self, auth, store, seed, password):
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("alpha-admin", "Wr0ng!Password")
        await auth.login("alpha-admin", password)
        stored = store.get_principal(seed.admin_a.id)
        assert stored.failed_login_attempts == 0
        assert stored.lock_until is None

    @pytest.mark.asyncio
    async def test_expired_lock_allows_login(self, auth, store, seed, password):
        store.update_principal_login_state(
            seed.admin_a.id, failed_attempts=5, lock_until=utcnow() - timedelta(minutes=1)
        )
        result = await auth.login("alpha-admin", password)
        assert result.principal.id == seed.admin_a.id
        assert store.get_principal(seed.admin_a.id).failed_login_attempts == 0

    @pytest.mark.asyncio
    async def test_failure_after_expired_lock_relocks(self, auth, store, seed):
        """The counter is not reset by expiry, so one more failure locks again."""
        store.update_principal_login_state(
            seed.admin_a.id, failed_attempts=5, lock_until=utcnow() - timedelta(minutes=1)
        )
        with pytest.raises(InvalidCredentialsError):
            await auth.login("alpha-admin", "Wr0ng!Password")
        assert store.get_principal(seed.admin_a.id).is_locked()


class TestTenantStatusAtLogin:
    """Tests for tenant checks during login."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "changes",
        [
            {"is_active": False},
            {"subscription_status": SubscriptionStatus.SUSPENDED},
            {"subscription_status": SubscriptionStatus.CANCELLED},
        ],
    )
    async def test_blocked_tenant_rejects_members(self, auth, store, seed, password, changes):
        store.update_tenant(seed.tenant_a.id, changes)
        with pytest.raises(TenantInactiveError) as exc_info:
            await auth.login("alpha-admin", password)
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_bad_password_on_suspended_tenant_stays_generic(self, auth, store, seed):
        """Tenant status is only revealed after the password checks out."""
        store.update_tenant(seed.tenant_a.id, {"subscription_status": SubscriptionStatus.SUSPENDED})
        with pytest.raises(InvalidCredentialsError):
            await auth.login("alpha-admin", "Wr0ng!Password")

    @pytest.mark.asyncio
    async def test_other_tenant_unaffected(self, auth, store, seed, password):
        store.update_tenant(seed.tenant_a.id, {"is_active": False})
        result = await auth.login("beta-admin", password)
        assert result.principal.tenant_id == seed.tenant_b.id


class TestRefresh:
    """Tests for refresh token exchange."""

    @pytest.mark.asyncio
    async def test_refresh_returns_new_access_token(self, auth, seed, password):
        login = await auth.login("alpha-admin", password)
        refreshed = await auth.refresh_access_token(login.refresh_token)

        claims = auth.tokens.verify_access(refreshed.access_token)
        assert claims.principal_id == seed.admin_a.id
        assert refreshed.expires_in == login.expires_in

    @pytest.mark.asyncio
    async def test_refresh_token_reusable_until_revoked(self, auth, seed, password):
        login = await auth.login("alpha-admin", password)
        await auth.refresh_access_token(login.refresh_token)
        await auth.refresh_access_token(login.refresh_token)

    @pytest.mark.asyncio
    async def test_revoked_token_rejected(self, auth, seed, password, audit_sink):
        login = await auth.login("alpha-admin", password)
        auth.revoke_all(seed.admin_a.id)
        with pytest.raises(TokenRevokedError):
            await auth.refresh_access_token(login.refresh_token)
        assert audit_sink.events[-1].detail["reason"] == "revoked"

    @pytest.mark.asyncio
    async def test_access_token_is_not_a_refresh_token(self, auth, seed, password):
        login = await auth.login("alpha-admin", password)
        with pytest.raises(InvalidTokenError):
            await auth.refresh_access_token(login.access_token)

    @pytest.mark.asyncio
    async def test_unpersisted_token_rejected(self, auth, seed):
        """A correctly signed token that was never stored is refused."""
        pair = auth.tokens.issue(TokenClaims.for_principal(seed.admin_a))
        with pytest.raises(InvalidTokenError):
            await auth.refresh_access_token(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_expired_record_rejected(self, auth, store, seed, password):
        login = await auth.login("alpha-admin", password)
        store.refresh_tokens[login.refresh_token].expires_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(InvalidTokenError):
            await auth.refresh_access_token(login.refresh_token)

    @pytest.mark.asyncio
    async def test_deactivated_principal_cannot_refresh(self, auth, store, seed, password):
        login = await auth.login("alpha-admin", password)
        store.update_principal(seed.admin_a.id, {"is_active": False})
        with pytest.raises(InvalidTokenError):
            await auth.refresh_access_token(login.refresh_token)

    @pytest.mark.asyncio
    async def test_suspended_tenant_cannot_refresh(self, auth, store, seed, password):
        login = await auth.login("alpha-admin", password)
        store.update_tenant(seed.tenant_a.id, {"subscription_status": SubscriptionStatus.SUSPENDED})
        with pytest.raises(InvalidTokenError):
            await auth.refresh_access_token(login.refresh_token)

    @pytest.mark.asyncio
    async def test_refresh_uses_current_scope(self, auth, store, seed, password):
        """The new access token reflects the stored principal, not the old claims."""
        login = await auth.login("alpha-downtown", password)
        store.update_principal(seed.branch_admin_a1.id, {"branch_id": seed.branch_a2.id})
        refreshed = await auth.refresh_access_token(login.refresh_token)
        assert auth.tokens.verify_access(refreshed.access_token).branch_id == seed.branch_a2.id


class TestRevocation:
    """Tests for logout and revocation."""

    @pytest.mark.asyncio
    async def test_revoke_all_is_idempotent(self, auth, seed, password):
        await auth.login("alpha-admin", password)
        await auth.login("alpha-admin", password)
        assert auth.revoke_all(seed.admin_a.id) == 2
        assert auth.revoke_all(seed.admin_a.id) == 0

    @pytest.mark.asyncio
    async def test_revoke_one_ignores_foreign_token(self, auth, store, seed, password):
        """Revoking someone else's token is a silent no-op."""
        theirs = await auth.login("beta-admin", password)
        auth.revoke_one(theirs.refresh_token, seed.admin_a.id)
        assert store.find_refresh_token(theirs.refresh_token).revoked is False
        auth.revoke_one("never-issued", seed.admin_a.id)

    @pytest.mark.asyncio
    async def test_logout_single_token(self, auth, store, seed, password, ctx_for, audit_sink):
        first = await auth.login("alpha-admin", password)
        second = await auth.login("alpha-admin", password)

        await auth.logout(ctx_for(seed.admin_a), first.refresh_token)

        assert store.find_refresh_token(first.refresh_token).revoked is True
        assert store.find_refresh_token(second.refresh_token).revoked is False
        assert audit_sink.actions()[-1] == "logout"

    @pytest.mark.asyncio
    async def test_repeated_logout_of_same_token(self, auth, store, seed, password, ctx_for):
        """A second revocation of an already revoked token succeeds and changes nothing."""
        login = await auth.login("alpha-admin", password)
        ctx = ctx_for(seed.admin_a)

        await auth.logout(ctx, login.refresh_token)
        first = store.find_refresh_token(login.refresh_token)
        await auth.logout(ctx, login.refresh_token)
        second = store.find_refresh_token(login.refresh_token)

        assert first.revoked is True and second.revoked is True
        assert second.revoked_at == first.revoked_at
        assert store.revoke_refresh_token(login.refresh_token, seed.admin_a.id) is False

    @pytest.mark.asyncio
    async def test_logout_everywhere(self, auth, store, seed, password, ctx_for, audit_sink):
        first = await auth.login("alpha-admin", password)
        second = await auth.login("alpha-admin", password)

        await auth.logout(ctx_for(seed.admin_a))

        assert store.find_refresh_token(first.refresh_token).revoked is True
        assert store.find_refresh_token(second.refresh_token).revoked is True
        assert audit_sink.events[-1].detail["revoked_tokens"] == 2


class TestCredentialChanges:
    """Tests for password and username changes."""

    @pytest.mark.asyncio
    async def test_change_password_revokes_sessions(self, auth, store, seed, password):
        login = await auth.login("alpha-admin", password)

        updated = await auth.change_password(seed.admin_a.id, password, NEW_PASSWORD)

        assert updated.must_change_password is False
        assert store.find_refresh_token(login.refresh_token).revoked is True
        await auth.login("alpha-admin", NEW_PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await auth.login("alpha-admin", password)

    @pytest.mark.asyncio
    async def test_change_password_clears_must_change_flag(self, auth, store, seed, password):
        store.update_principal(seed.admin_a.id, {"must_change_password": True})
        updated = await auth.change_password(seed.admin_a.id, password, NEW_PASSWORD)
        assert updated.must_change_password is False

    @pytest.mark.asyncio
    async def test_wrong_current_password(self, auth, seed):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            await auth.change_password(seed.admin_a.id, "Wr0ng!Password", NEW_PASSWORD)
        assert exc_info.value.message == "Current password is incorrect"

    @pytest.mark.asyncio
    async def test_weak_new_password(self, auth, seed, password):
        with pytest.raises(ValidationError) as exc_info:
            await auth.change_password(seed.admin_a.id, password, "weak")
        assert exc_info.value.detail["violations"]

    @pytest.mark.asyncio
    async def test_new_password_must_differ(self, auth, seed, password):
        with pytest.raises(ValidationError):
            await auth.change_password(seed.admin_a.id, password, password)

    @pytest.mark.asyncio
    async def test_change_credentials_renames(self, auth, store, seed, password):
        updated = await auth.change_credentials(
            seed.admin_a.id, password, "alpha-owner", NEW_PASSWORD
        )
        assert updated.username == "alpha-owner"
        result = await auth.login("alpha-owner", NEW_PASSWORD)
        assert result.principal.id == seed.admin_a.id

    @pytest.mark.asyncio
    async def test_change_credentials_taken_username(self, auth, store, seed, password):
        with pytest.raises(ConflictError):
            await auth.change_credentials(seed.admin_a.id, password, "beta-admin", NEW_PASSWORD)
        assert store.get_principal(seed.admin_a.id).username == "alpha-admin"


class TestAuthenticateRequest:
    """Tests for bearer authentication of API requests."""

    @pytest.mark.asyncio
    async def test_valid_bearer_token(self, auth, seed, password):
        login = await auth.login("alpha-downtown", password)
        ctx = await auth.authenticate_request(f"Bearer {login.access_token}")
        assert ctx.principal_id == seed.branch_admin_a1.id
        assert ctx.role is Role.BRANCH_ADMIN
        assert ctx.tenant_id == seed.tenant_a.id
        assert ctx.branch_id == seed.branch_a1.id

    @pytest.mark.asyncio
    async def test_scheme_is_case_insensitive(self, auth, seed, password):
        login = await auth.login("root", password)
        ctx = await auth.authenticate_request(f"bearer {login.access_token}")
        assert ctx.is_super_admin

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Token xyz"])
    async def test_missing_token(self, auth, header):
        with pytest.raises(AuthenticationError) as exc_info:
            await auth.authenticate_request(header)
        assert exc_info.value.error_code == "unauthorized"

    @pytest.mark.asyncio
    async def test_refresh_token_not_accepted_as_access(self, auth, seed, password):
        login = await auth.login("alpha-admin", password)
        with pytest.raises(InvalidTokenError):
            await auth.authenticate_request(f"Bearer {login.refresh_token}")

    @pytest.mark.asyncio
    async def test_deleted_principal_rejected(self, auth, store, seed, password):
        login = await auth.login("alpha-admin", password)
        store.soft_delete_principal(seed.admin_a.id)
        with pytest.raises(InvalidTokenError):
            await auth.authenticate_request(f"Bearer {login.access_token}")

    @pytest.mark.asyncio
    async def test_stale_scope_rejected(self, auth, store, seed, password, audit_sink):
        """A token minted before a scope change no longer authenticates."""
        login = await auth.login("alpha-downtown", password)
        store.update_principal(seed.branch_admin_a1.id, {"branch_id": seed.branch_a2.id})
        with pytest.raises(InvalidTokenError):
            await auth.authenticate_request(f"Bearer {login.access_token}")
        assert audit_sink.events[-1].detail["reason"] == "claims_stale"

    @pytest.mark.asyncio
    async def test_inactive_tenant_rejected(self, auth, store, seed, password):
        login = await auth.login("alpha-admin", password)
        store.update_tenant(seed.tenant_a.id, {"is_active": False})
        with pytest.raises(TenantInactiveError):
            await auth.authenticate_request(f"Bearer {login.access_token}")
