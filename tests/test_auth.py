# tests/test_auth.py
import pytest
from httpx import AsyncClient

from dentalcrm import models

TEST_PASSWORD = "Sup3rSecret!"


@pytest.mark.asyncio
async def test_login_returns_token_and_profile(async_client: AsyncClient, admin, db):
    response = await async_client.post(
        "/api/v1/auth/token", data={"username": admin.email, "password": TEST_PASSWORD}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["role"] == "practice_admin"

    me = await async_client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.json()["email"] == admin.email

    db.refresh(admin)
    assert admin.last_login is not None

@pytest.mark.asyncio
async def test_failed_login_is_high_risk(async_client: AsyncClient, admin, db):
    response = await async_client.post(
        "/api/v1/auth/token", data={"username": admin.email, "password": "wrong-password"}
    )
    assert response.status_code == 401
    event = db.query(models.AuditLog).filter(models.AuditLog.action == "failed_login").one()
    assert event.risk_level == models.RiskLevel.high
    assert event.user_email == admin.email

@pytest.mark.asyncio
async def test_inactive_user_cannot_log_in(async_client: AsyncClient, make_user, practice):
    user = make_user("dentist", practice.id, is_active=False)
    response = await async_client.post("/api/v1/auth/token", data={"username": user.email, "password": TEST_PASSWORD})
    assert response.status_code == 403

@pytest.mark.asyncio
async def test_inactive_user_token_rejected(async_client: AsyncClient, make_user, headers_for, practice):
    user = make_user("dentist", practice.id, is_active=False)
    response = await async_client.get("/api/v1/auth/me", headers=headers_for(user))
    assert response.status_code == 403

@pytest.mark.asyncio
async def test_garbage_token(async_client: AsyncClient):
    response = await async_client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401

@pytest.mark.asyncio
async def test_root_token_redirects(async_client: AsyncClient):
    response = await async_client.post("/token")
    assert response.status_code == 307
    assert response.headers["location"] == "/api/v1/auth/token"

@pytest.mark.asyncio
async def test_signup(async_client: AsyncClient):
    response = await async_client.post(
        "/api/v1/auth/signup", json={"email": "newhire@smileclinic.co.uk", "password": "Welcome123!"}
    )
    assert response.status_code == 201
    user = response.json()["user"]
    assert user["role"] == "receptionist"
    assert user["full_name"] == "newhire"

    response = await async_client.post(
        "/api/v1/auth/signup", json={"email": "newhire@smileclinic.co.uk", "password": "Welcome123!"}
    )
    assert response.status_code == 409

@pytest.mark.asyncio
@pytest.mark.parametrize("role", ["super_admin", "practice_admin"])
async def test_signup_cannot_claim_admin_role(async_client: AsyncClient, role):
    response = await async_client.post(
        "/api/v1/auth/signup", json={"email": "sneaky@smileclinic.co.uk", "password": "Welcome123!", "role": role}
    )
    assert response.status_code == 422

@pytest.mark.asyncio
async def test_short_password_rejected(async_client: AsyncClient):
    response = await async_client.post("/api/v1/auth/signup", json={"email": "a@smileclinic.co.uk", "password": "short"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_practice_admin_manages_own_practice(async_client: AsyncClient, admin_headers, practice):
    response = await async_client.post("/api/v1/users", json={
        "email": "hygienist@smileclinic.co.uk", "full_name": "Hana Hygienist", "password": "Welcome123!",
        "role": "hygienist", "client_organization_id": 999,
    }, headers=admin_headers)
    assert response.status_code == 201
    assert response.json()["client_organization_id"] == practice.id

    users = (await async_client.get("/api/v1/users", headers=admin_headers)).json()
    assert {u["email"] for u in users} >= {"hygienist@smileclinic.co.uk"}

@pytest.mark.asyncio
async def test_practice_admin_cannot_create_super_admin(async_client: AsyncClient, admin_headers):
    response = await async_client.post("/api/v1/users", json={
        "email": "boss@smileclinic.co.uk", "full_name": "Boss", "password": "Welcome123!", "role": "super_admin",
    }, headers=admin_headers)
    assert response.status_code == 403

@pytest.mark.asyncio
async def test_users_in_other_practices_are_hidden(async_client: AsyncClient, admin_headers, make_user):
    outsider = make_user("dentist")
    response = await async_client.get(f"/api/v1/users/{outsider.id}", headers=admin_headers)
    assert response.status_code == 404

@pytest.mark.asyncio
async def test_dentist_cannot_list_users(async_client: AsyncClient, dentist, headers_for):
    response = await async_client.get("/api/v1/users", headers=headers_for(dentist))
    assert response.status_code == 403
