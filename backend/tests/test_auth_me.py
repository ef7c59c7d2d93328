from __future__ import annotations

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import get_current_user
from app.core.dependencies import get_db
from app.main import app
from app.models.service_request import Base, User
from tests.conftest import ADMIN_SUB


@pytest.fixture(autouse=True)
def sqlite_db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield SessionLocal
    app.dependency_overrides.clear()
    engine.dispose()


@pytest.mark.asyncio
async def test_auth_me_returns_current_admin_user(client):
    response = await client.get("/api/v1/auth/me")
    assert response.status_code == 200, response.text

    payload = response.json()
    assert payload["role"] == "admin"
    assert payload["user_id"]


@pytest.mark.asyncio
async def test_auth_me_prefers_stored_full_name(client, sqlite_db):
    db = sqlite_db()
    db.add(User(id=ADMIN_SUB, email="tests@example.com", role="admin", full_name="Priya Desk"))
    db.commit()
    db.close()

    response = await client.get("/api/v1/auth/me")
    assert response.json()["full_name"] == "Priya Desk"


@pytest.mark.asyncio
async def test_auth_me_requires_bearer_token():
    app.dependency_overrides.pop(get_current_user, None)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as anonymous_client:
        response = await anonymous_client.get("/api/v1/auth/me")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_auth_me_returns_customer_role(customer_client):
    response = await customer_client.get("/api/v1/auth/me")
    assert response.status_code == 200, response.text
    assert response.json()["role"] == "customer"
