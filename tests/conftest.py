import asyncio
import inspect
import os
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path

# Environment for anything that falls back to Settings.from_env()
_test_tmp_dir = tempfile.mkdtemp(prefix="kitchguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
import structlog  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from kitchguard.app import create_app  # noqa: E402
from kitchguard.config import Settings, reset_settings_cache  # noqa: E402
from kitchguard.service.audit import MemoryAuditSink  # noqa: E402
from kitchguard.service.authz import AuthenticatedContext  # noqa: E402
from kitchguard.service.runtime import Runtime  # noqa: E402
from kitchguard.storage.models import Branch, Principal, Role, Tenant, TenantType  # noqa: E402

PASSWORD = "Str0ng!Passw0rd"


@dataclass
class Seed:
    tenant_a: Tenant
    tenant_b: Tenant
    branch_a1: Branch
    branch_a2: Branch
    branch_b1: Branch
    super_admin: Principal
    admin_a: Principal
    admin_b: Principal
    branch_admin_a1: Principal
    branch_admin_b1: Principal


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def password():
    return PASSWORD


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        jwt_access_secret="access-secret-0123456789-abcdefghijklmnop",
        jwt_refresh_secret="refresh-secret-0123456789-abcdefghijklmnop",
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
    )


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def runtime(settings, audit_sink):
    rt = Runtime(settings, audit_sinks=[audit_sink])
    yield rt
    rt.close()


@pytest.fixture
def seed(runtime):
    store = runtime.store
    password_hash = runtime.passwords.hash(PASSWORD)
    tenant_a = store.create_tenant("Alpha Bistro", "alpha-bistro", TenantType.RESTAURANT)
    tenant_b = store.create_tenant("Beta Hotel", "beta-hotel", TenantType.HOTEL)
    branch_a1 = store.create_branch(tenant_a.id, "Alpha Downtown", city="Lisbon")
    branch_a2 = store.create_branch(tenant_a.id, "Alpha Airport", city="Lisbon")
    branch_b1 = store.create_branch(tenant_b.id, "Beta Main", city="Porto")
    return Seed(
        tenant_a=tenant_a,
        tenant_b=tenant_b,
        branch_a1=branch_a1,
        branch_a2=branch_a2,
        branch_b1=branch_b1,
        super_admin=store.create_principal(
            "root", password_hash, Role.SUPER_ADMIN, email="root@example.com"
        ),
        admin_a=store.create_principal(
            "alpha-admin", password_hash, Role.TENANT_ADMIN,
            email="admin@alpha.example.com", tenant_id=tenant_a.id,
        ),
        admin_b=store.create_principal(
            "beta-admin", password_hash, Role.TENANT_ADMIN, tenant_id=tenant_b.id
        ),
        branch_admin_a1=store.create_principal(
            "alpha-downtown", password_hash, Role.BRANCH_ADMIN,
            tenant_id=tenant_a.id, branch_id=branch_a1.id,
        ),
        branch_admin_b1=store.create_principal(
            "beta-main", password_hash, Role.BRANCH_ADMIN,
            tenant_id=tenant_b.id, branch_id=branch_b1.id,
        ),
    )


@pytest.fixture
def ctx_for():
    def _ctx(principal: Principal) -> AuthenticatedContext:
        return AuthenticatedContext(
            principal_id=principal.id,
            username=principal.username,
            role=principal.role,
            tenant_id=principal.tenant_id,
            branch_id=principal.branch_id,
            must_change_password=principal.must_change_password,
        )

    return _ctx


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime=runtime))


@pytest.fixture
def auth_headers(client):
    def _headers(username: str, password: str = PASSWORD) -> dict:
        response = client.post(
            "/v1/auth/login", json={"identifier": username, "password": password}
        )
        assert response.status_code == 200, response.text
        token = response.json()["data"]["access_token"]
        return {"Authorization": f"Bearer {token}"}

    return _headers


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
