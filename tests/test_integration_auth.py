"""End-to-end tests for the authentication endpoints."""

from kitchguard.storage.models import SubscriptionStatus

NEW_PASSWORD = "N3w!Secure-Passw0rd"


def _login(client, identifier, password):
    return client.post("/v1/auth/login", json={"identifier": identifier, "password": password})


class TestLoginEndpoint:
    def test_login_returns_tokens_and_user(self, client, seed, password):
        response = _login(client, "alpha-downtown", password)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["request_id"]
        data = body["data"]
        assert data["token_type"] == "bearer"
        assert data["access_token"] and data["refresh_token"]
        assert data["user"]["role"] == "branch_admin"
        assert data["user"]["branch_id"] == seed.branch_a1.id
        assert "password_hash" not in data["user"]

    def test_login_accepts_username_field(self, client, seed, password):
        response = client.post("/v1/auth/login", json={"username": "root", "password": password})
        assert response.status_code == 200

    def test_bad_credentials(self, client, seed):
        """Unknown user and wrong password produce identical responses."""
        unknown = _login(client, "nobody", "Wr0ng!Password")
        wrong = _login(client, "alpha-admin", "Wr0ng!Password")

        for response in (unknown, wrong):
            assert response.status_code == 401
            assert response.headers["WWW-Authenticate"] == "Bearer"
            assert response.json()["error"]["code"] == "invalid_credentials"
        assert unknown.json()["error"]["message"] == wrong.json()["error"]["message"]

    def test_lockout(self, client, seed, password):
        for _ in range(5):
            assert _login(client, "alpha-admin", "Wr0ng!Password").status_code == 401
        response = _login(client, "alpha-admin", password)
        assert response.status_code == 423
        assert response.json()["error"]["code"] == "account_locked"

    def test_suspended_tenant(self, client, runtime, seed, password):
        runtime.store.update_tenant(
            seed.tenant_b.id, {"subscription_status": SubscriptionStatus.SUSPENDED}
        )
        response = _login(client, "beta-main", password)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "tenant_inactive"

    def test_missing_password_is_validation_error(self, client, seed):
        response = client.post("/v1/auth/login", json={"identifier": "root"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestSessionEndpoints:
    def test_me(self, client, seed, auth_headers):
        response = client.get("/v1/auth/me", headers=auth_headers("alpha-admin"))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == seed.admin_a.id
        assert data["role"] == "tenant_admin"
        assert data["tenant_id"] == seed.tenant_a.id

    def test_me_requires_token(self, client, seed):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_rejects_garbage_token(self, client, seed):
        response = client.get("/v1/auth/me", headers={"Authorization": "Bearer not.a.token"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_non_ascii_signature_is_invalid_token(self, client, seed, password):
        login = _login(client, "alpha-admin", password).json()["data"]
        head, body, _ = login["access_token"].split(".")
        header_value = f"Bearer {head}.{body}.é".encode("utf-8")
        me = client.get("/v1/auth/me", headers={"Authorization": header_value})
        assert me.status_code == 401
        assert me.json()["error"]["code"] == "invalid_token"

        head, body, _ = login["refresh_token"].split(".")
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": f"{head}.{body}.é"})
        assert refresh.status_code == 401
        assert refresh.json()["error"]["code"] == "invalid_token"

    def test_refresh_then_logout(self, client, seed, password):
        login = _login(client, "alpha-admin", password).json()["data"]
        headers = {"Authorization": f"Bearer {login['access_token']}"}

        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": login["refresh_token"]})
        assert refreshed.status_code == 200
        assert refreshed.json()["data"]["access_token"]

        logout = client.post(
            "/v1/auth/logout", json={"refresh_token": login["refresh_token"]}, headers=headers
        )
        assert logout.status_code == 200

        again = client.post("/v1/auth/refresh", json={"refresh_token": login["refresh_token"]})
        assert again.status_code == 401
        assert again.json()["error"]["code"] == "token_revoked"

    def test_logout_twice_with_same_token(self, client, runtime, seed, password):
        login = _login(client, "alpha-admin", password).json()["data"]
        headers = {"Authorization": f"Bearer {login['access_token']}"}
        body = {"refresh_token": login["refresh_token"]}

        first = client.post("/v1/auth/logout", json=body, headers=headers)
        revoked_at = runtime.store.find_refresh_token(login["refresh_token"]).revoked_at
        second = client.post("/v1/auth/logout", json=body, headers=headers)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["data"] == first.json()["data"]
        assert runtime.store.find_refresh_token(login["refresh_token"]).revoked_at == revoked_at

    def test_logout_without_body_revokes_everything(self, client, runtime, seed, password):
        first = _login(client, "alpha-admin", password).json()["data"]
        second = _login(client, "alpha-admin", password).json()["data"]

        response = client.post(
            "/v1/auth/logout", headers={"Authorization": f"Bearer {first['access_token']}"}
        )

        assert response.status_code == 200
        assert runtime.store.find_refresh_token(second["refresh_token"]).revoked is True

    def test_deactivated_user_token_stops_working(self, client, runtime, seed, auth_headers):
        headers = auth_headers("alpha-downtown")
        runtime.store.update_principal(seed.branch_admin_a1.id, {"is_active": False})
        response = client.get("/v1/auth/me", headers=headers)
        assert response.status_code == 401


class TestCredentialEndpoints:
    def test_password_change(self, client, seed, password):
        login = _login(client, "alpha-admin", password).json()["data"]
        headers = {"Authorization": f"Bearer {login['access_token']}"}

        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": password, "new_password": NEW_PASSWORD},
            headers=headers,
        )

        assert response.status_code == 200
        stale = client.post("/v1/auth/refresh", json={"refresh_token": login["refresh_token"]})
        assert stale.status_code == 401
        assert _login(client, "alpha-admin", NEW_PASSWORD).status_code == 200

    def test_weak_new_password_lists_violations(self, client, seed, password, auth_headers):
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": password, "new_password": "short"},
            headers=auth_headers("alpha-admin"),
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert {v["rule"] for v in error["details"]["violations"]} >= {"min_length", "digit"}

    def test_wrong_current_password(self, client, seed, auth_headers):
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": "Wr0ng!Password", "new_password": NEW_PASSWORD},
            headers=auth_headers("alpha-admin"),
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_credentials_change(self, client, seed, password, auth_headers):
        response = client.post(
            "/v1/auth/credentials/change",
            json={
                "current_password": password,
                "new_username": "alpha-owner",
                "new_password": NEW_PASSWORD,
            },
            headers=auth_headers("alpha-admin"),
        )
        assert response.status_code == 200
        assert response.json()["data"]["username"] == "alpha-owner"
        assert _login(client, "alpha-owner", NEW_PASSWORD).status_code == 200

    def test_credentials_change_to_taken_username(self, client, seed, password, auth_headers):
        response = client.post(
            "/v1/auth/credentials/change",
            json={
                "current_password": password,
                "new_username": "beta-admin",
                "new_password": NEW_PASSWORD,
            },
            headers=auth_headers("alpha-admin"),
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"
