"""
App fixture with the database, gateway and cache dependencies overridden.

Route tests run as if behind the authenticating proxy, so the caller is
named with the X-User-Id header.
"""

import pytest
from fastapi.testclient import TestClient

from coursegate.api.dependencies import get_entitlement_cache, get_gateway, get_request_db_session
from coursegate.api.main import create_app
from coursegate.config import reset_settings


@pytest.fixture(autouse=True)
def trusted_proxy(billing_env, monkeypatch):
    monkeypatch.setenv("TRUST_USER_ID_HEADER", "true")
    reset_settings()


@pytest.fixture
def app(db_session, gateway):
    app = create_app()

    def override_db():
        yield db_session

    async def override_gateway():
        yield gateway

    app.dependency_overrides[get_request_db_session] = override_db
    app.dependency_overrides[get_gateway] = override_gateway
    app.dependency_overrides[get_entitlement_cache] = lambda: None
    return app


@pytest.fixture
def client(app):
    return TestClient(app)
