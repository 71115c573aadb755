"""End-to-end tests for tenant, branch and user administration."""

from kitchguard.storage.models import SubscriptionStatus

NEW_USER_PASSWORD = "Fresh!Passw0rd-1"


class TestTenantEndpoints:
    def test_super_admin_creates_tenant(self, client, seed, auth_headers):
        response = client.post(
            "/v1/admin/tenants",
            json={"name": "Gamma Grill", "slug": "gamma-grill", "type": "restaurant"},
            headers=auth_headers("root"),
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["slug"] == "gamma-grill"
        assert data["subscription_status"] == "trial"

    def test_tenant_admin_cannot_create_tenant(self, client, seed, auth_headers):
        response = client.post(
            "/v1/admin/tenants",
            json={"name": "Gamma Grill", "slug": "gamma-grill", "type": "restaurant"},
            headers=auth_headers("alpha-admin"),
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_unknown_tenant_type_rejected(self, client, seed, auth_headers):
        response = client.post(
            "/v1/admin/tenants",
            json={"name": "Bar", "slug": "bar", "type": "bar"},
            headers=auth_headers("root"),
        )
        assert response.status_code == 400

    def test_tenant_admin_reads_only_own_tenant(self, client, seed, auth_headers):
        headers = auth_headers("alpha-admin")
        assert client.get(f"/v1/admin/tenants/{seed.tenant_a.id}", headers=headers).status_code == 200
        response = client.get(f"/v1/admin/tenants/{seed.tenant_b.id}", headers=headers)
        assert response.status_code == 403

    def test_suspending_tenant_cuts_off_members(self, client, seed, auth_headers):
        member = auth_headers("beta-admin")
        response = client.patch(
            f"/v1/admin/tenants/{seed.tenant_b.id}",
            json={"subscription_status": "suspended"},
            headers=auth_headers("root"),
        )
        assert response.status_code == 200
        denied = client.get("/v1/auth/me", headers=member)
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "tenant_inactive"

    def test_deleting_tenant_removes_access(self, client, runtime, seed, auth_headers):
        member = auth_headers("alpha-downtown")
        response = client.delete(f"/v1/admin/tenants/{seed.tenant_a.id}", headers=auth_headers("root"))
        assert response.status_code == 200
        assert client.get("/v1/auth/me", headers=member).status_code == 401
        listing = client.get("/v1/admin/tenants", headers=auth_headers("root")).json()["data"]
        assert [t["id"] for t in listing["items"]] == [seed.tenant_b.id]

    def test_tenant_admin_updates_settings(self, client, runtime, seed, auth_headers):
        response = client.patch(
            f"/v1/admin/tenants/{seed.tenant_a.id}",
            json={"settings": {"currency": "EUR"}},
            headers=auth_headers("alpha-admin"),
        )
        assert response.status_code == 200
        assert runtime.store.get_tenant(seed.tenant_a.id).settings == {"currency": "EUR"}

    def test_tenant_admin_cannot_reactivate_subscription(self, client, runtime, seed, auth_headers):
        response = client.patch(
            f"/v1/admin/tenants/{seed.tenant_a.id}",
            json={"subscription_status": "active"},
            headers=auth_headers("alpha-admin"),
        )
        assert response.status_code == 403
        stored = runtime.store.get_tenant(seed.tenant_a.id)
        assert stored.subscription_status is SubscriptionStatus.TRIAL


class TestBranchEndpoints:
    def test_branch_admin_reads_own_branch(self, client, seed, auth_headers):
        response = client.get(f"/v1/branches/{seed.branch_a1.id}", headers=auth_headers("alpha-downtown"))
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Alpha Downtown"

    def test_branch_admin_cannot_read_sibling_branch(self, client, seed, auth_headers):
        response = client.get(f"/v1/branches/{seed.branch_a2.id}", headers=auth_headers("alpha-downtown"))
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Access denied to this branch"

    def test_audit_events_record_client_ip(self, client, seed, audit_sink, auth_headers):
        denied = client.get(f"/v1/branches/{seed.branch_a2.id}", headers=auth_headers("alpha-downtown"))
        assert denied.status_code == 403
        denial = [e for e in audit_sink.events if e.action == "authorization_denied"][-1]
        assert denial.detail["client_ip"] == "testclient"

        created = client.post("/v1/branches", json={"name": "Alpha Marina"}, headers=auth_headers("alpha-admin"))
        assert created.status_code == 201
        creation = [e for e in audit_sink.events if e.action == "branch_created"][-1]
        assert creation.detail["client_ip"] == "testclient"

    def test_tenant_admin_foreign_branch_not_found(self, client, seed, auth_headers):
        response = client.get(f"/v1/branches/{seed.branch_b1.id}", headers=auth_headers("alpha-admin"))
        assert response.status_code == 404

    def test_branch_listing_is_scoped(self, client, seed, auth_headers):
        own = client.get("/v1/branches", headers=auth_headers("alpha-downtown")).json()["data"]
        assert [b["id"] for b in own["items"]] == [seed.branch_a1.id]

        tenant = client.get("/v1/branches", headers=auth_headers("alpha-admin")).json()["data"]
        assert tenant["total"] == 2

    def test_branch_listing_foreign_tenant_query_denied(self, client, seed, auth_headers):
        response = client.get(
            "/v1/branches",
            params={"tenant_id": seed.tenant_b.id},
            headers=auth_headers("alpha-admin"),
        )
        assert response.status_code == 403

    def test_create_branch_in_other_tenant_denied(self, client, runtime, seed, auth_headers):
        response = client.post(
            "/v1/branches",
            json={"name": "Sneaky", "tenant_id": seed.tenant_b.id},
            headers=auth_headers("alpha-admin"),
        )
        assert response.status_code == 403
        assert runtime.store.list_branches(tenant_id=seed.tenant_b.id)[1] == 1

    def test_create_and_update_branch(self, client, seed, auth_headers):
        headers = auth_headers("alpha-admin")
        created = client.post(
            "/v1/branches", json={"name": "Alpha Harbour", "city": "Lisbon"}, headers=headers
        )
        assert created.status_code == 201
        branch_id = created.json()["data"]["id"]

        updated = client.patch(
            f"/v1/branches/{branch_id}", json={"phone": "+351 21 000 0000"}, headers=headers
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["phone"] == "+351 21 000 0000"

    def test_branch_admin_cannot_delete_branch(self, client, seed, auth_headers):
        response = client.delete(f"/v1/branches/{seed.branch_a1.id}", headers=auth_headers("alpha-downtown"))
        assert response.status_code == 403


class TestUserEndpoints:
    def test_tenant_admin_creates_branch_admin(self, client, seed, auth_headers):
        response = client.post(
            "/v1/admin/users",
            json={
                "username": "alpha-airport",
                "password": NEW_USER_PASSWORD,
                "role": "branch_admin",
                "branch_id": seed.branch_a2.id,
            },
            headers=auth_headers("alpha-admin"),
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["tenant_id"] == seed.tenant_a.id
        assert data["must_change_password"] is True

        login = client.post(
            "/v1/auth/login", json={"identifier": "alpha-airport", "password": NEW_USER_PASSWORD}
        )
        assert login.json()["data"]["must_change_password"] is True

    def test_cross_tenant_create_denied_without_write(self, client, runtime, seed, auth_headers):
        response = client.post(
            "/v1/admin/users",
            json={
                "username": "intruder",
                "password": NEW_USER_PASSWORD,
                "role": "branch_admin",
                "tenant_id": seed.tenant_b.id,
                "branch_id": seed.branch_b1.id,
            },
            headers=auth_headers("alpha-admin"),
        )
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Access denied: tenant isolation violation"
        assert runtime.store.get_principal_by_username("intruder") is None

    def test_super_admin_role_not_accepted(self, client, seed, auth_headers):
        response = client.post(
            "/v1/admin/users",
            json={"username": "root2", "password": NEW_USER_PASSWORD, "role": "super_admin"},
            headers=auth_headers("root"),
        )
        assert response.status_code == 400

    def test_branch_admin_cannot_list_users(self, client, seed, auth_headers):
        response = client.get("/v1/admin/users", headers=auth_headers("alpha-downtown"))
        assert response.status_code == 403

    def test_tenant_admin_lists_own_users(self, client, seed, auth_headers):
        data = client.get("/v1/admin/users", headers=auth_headers("alpha-admin")).json()["data"]
        assert {u["username"] for u in data["items"]} == {"alpha-admin", "alpha-downtown"}

    def test_user_listing_paged(self, client, seed, auth_headers):
        data = client.get(
            "/v1/admin/users", params={"limit": 2, "offset": 1}, headers=auth_headers("root")
        ).json()["data"]
        assert data["total"] == 5
        assert data["limit"] == 2
        assert len(data["items"]) == 2

    def test_foreign_user_not_found(self, client, seed, auth_headers):
        response = client.get(
            f"/v1/admin/users/{seed.branch_admin_b1.id}", headers=auth_headers("alpha-admin")
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_deactivate_user(self, client, seed, auth_headers):
        victim = auth_headers("alpha-downtown")
        response = client.patch(
            f"/v1/admin/users/{seed.branch_admin_a1.id}",
            json={"is_active": False},
            headers=auth_headers("alpha-admin"),
        )
        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False
        assert client.get("/v1/auth/me", headers=victim).status_code == 401

    def test_unknown_update_field_rejected(self, client, seed, auth_headers):
        response = client.patch(
            f"/v1/admin/users/{seed.branch_admin_a1.id}",
            json={"password_hash": "x"},
            headers=auth_headers("root"),
        )
        assert response.status_code == 400

    def test_delete_self_forbidden(self, client, seed, auth_headers):
        response = client.delete(f"/v1/admin/users/{seed.admin_a.id}", headers=auth_headers("alpha-admin"))
        assert response.status_code == 403

    def test_reset_password(self, client, seed, auth_headers):
        response = client.post(
            f"/v1/admin/users/{seed.branch_admin_a1.id}/password/reset",
            headers=auth_headers("alpha-admin"),
        )
        assert response.status_code == 200
        temporary = response.json()["data"]["temporary_password"]
        login = client.post(
            "/v1/auth/login", json={"identifier": "alpha-downtown", "password": temporary}
        )
        assert login.status_code == 200
        assert login.json()["data"]["must_change_password"] is True
