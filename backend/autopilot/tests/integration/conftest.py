"""
Fixtures for API integration tests.

The app under test wires every governance router behind the real JWT
middleware. The database session and executor dependencies are overridden
with the per-test session and the in-memory FakeExecutor.
"""

import jwt
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from autopilot.api.dependencies import get_action_executor
from autopilot.api.routes import (
    automation_settings,
    autonomous_actions,
    health,
    pending_approvals,
    proposals,
)
from autopilot.database.session import get_db_session
from autopilot.platform.tenant_context import TenantContextMiddleware

JWT_SECRET = "integration-test-secret-0123456789abcdef"


@pytest.fixture
def app(db_session, fake_executor):
    app = FastAPI()
    app.middleware("http")(TenantContextMiddleware(secret=JWT_SECRET))

    app.include_router(health.router)
    app.include_router(automation_settings.router)
    app.include_router(pending_approvals.router)
    app.include_router(autonomous_actions.router)
    app.include_router(proposals.router)

    async def override_db_session():
        yield db_session

    app.dependency_overrides[get_db_session] = override_db_session
    app.dependency_overrides[get_action_executor] = lambda: fake_executor
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def make_headers(tenant_id, user_id):
    """Authorization headers for a user of the test tenant."""
    def _make(roles=("merchant_admin",), tenant=None, sub=None):
        token = jwt.encode(
            {"sub": sub or user_id, "tenant_id": tenant or tenant_id, "roles": list(roles)},
            JWT_SECRET,
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}"}
    return _make


@pytest.fixture
def admin_headers(make_headers):
    return make_headers()


@pytest.fixture
def viewer_headers(make_headers):
    return make_headers(roles=("merchant_viewer",))


@pytest.fixture
def agent_headers(make_headers):
    return make_headers(roles=("automation_agent",), sub="agent-service")
