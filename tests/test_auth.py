import pytest


REGISTER_PAYLOAD = {
    "email": "Jane.Doe@Example.com",
    "password": "Password123!",
    "first_name": "Jane",
    "last_name": "Doe",
    "user_type": "patient",
}


@pytest.mark.asyncio
async def test_health(async_client):
    resp = await async_client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_register_login_me_logout(async_client):
    resp = await async_client.post("/auth/register", json=REGISTER_PAYLOAD)
    assert resp.status_code == 201
    assert resp.json()["data"]["email"] == "jane.doe@example.com"

    resp = await async_client.post("/auth/login", json={"email": "jane.doe@example.com", "password": "Password123!"})
    assert resp.status_code == 200
    tokens = resp.json()["data"]
    headers = {"Authorization": f"Bearer {tokens['access_token']}"}

    resp = await async_client.get("/auth/me", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["first_name"] == "Jane"

    resp = await async_client.post("/auth/logout", headers=headers)
    assert resp.status_code == 200

    # revoked access token is refused by the JWT middleware
    resp = await async_client.get("/auth/me", headers=headers)
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_register_duplicate_email(async_client):
    await async_client.post("/auth/register", json=REGISTER_PAYLOAD)
    resp = await async_client.post("/auth/register", json=REGISTER_PAYLOAD)
    assert resp.status_code == 409
    assert resp.json() == {"detail": "Email already registered"}


@pytest.mark.asyncio
async def test_register_weak_password_is_422(async_client):
    resp = await async_client.post("/auth/register", json={**REGISTER_PAYLOAD, "password": "password"})
    assert resp.status_code == 422
    assert "detail" in resp.json()


@pytest.mark.asyncio
async def test_login_wrong_password(async_client):
    await async_client.post("/auth/register", json=REGISTER_PAYLOAD)
    resp = await async_client.post("/auth/login", json={"email": REGISTER_PAYLOAD["email"], "password": "Wrong123!"})
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid email or password"


@pytest.mark.asyncio
async def test_refresh_rotates_tokens(async_client):
    await async_client.post("/auth/register", json=REGISTER_PAYLOAD)
    resp = await async_client.post("/auth/login", json={"email": REGISTER_PAYLOAD["email"], "password": "Password123!"})
    refresh_token = resp.json()["data"]["refresh_token"]

    resp = await async_client.post("/auth/refresh", json={"refresh_token": refresh_token})
    assert resp.status_code == 200
    assert resp.json()["data"]["refresh_token"] != refresh_token

    # the old refresh token no longer matches the session
    resp = await async_client.post("/auth/refresh", json={"refresh_token": refresh_token})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_specialist_registration_creates_pending_profile(async_client, db_session):
    from medmarket.models.specialist import Specialist

    payload = {**REGISTER_PAYLOAD, "email": "doc@example.com", "user_type": "specialist", "specialties": ["cardiology"]}
    resp = await async_client.post("/auth/register", json=payload)
    assert resp.status_code == 201

    specialist = db_session.query(Specialist).filter(Specialist.user_id == resp.json()["data"]["user_id"]).first()
    assert specialist.verification_status == "pending"
    assert specialist.specialties == ["cardiology"]


@pytest.mark.asyncio
async def test_protected_route_requires_token(async_client):
    resp = await async_client.get("/auth/me")
    assert resp.status_code in (401, 403)

    resp = await async_client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json() == {"detail": "Invalid token"}


@pytest.mark.asyncio
async def test_login_is_rate_limited(async_client, monkeypatch):
    from medmarket.core.config import settings
    from medmarket.dependencies.rate_limit import reset_buckets

    reset_buckets()
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(settings, "RATE_LIMIT_REQUESTS", 2)

    body = {"email": "nobody@example.com", "password": "Password123!"}
    for _ in range(2):
        resp = await async_client.post("/auth/login", json=body)
        assert resp.status_code == 401

    resp = await async_client.post("/auth/login", json=body)
    assert resp.status_code == 429
    assert resp.json() == {"detail": "Too many requests. Please slow down."}
    reset_buckets()


@pytest.mark.asyncio
async def test_suspended_account_is_turned_away(async_client, db_session, builders):
    user = builders.user(db_session)
    headers = builders.headers(db_session, user)
    user.status = "suspended"
    db_session.commit()

    resp = await async_client.get("/auth/me", headers=headers)
    assert resp.status_code == 403
    assert resp.json() == {"detail": "Account suspended"}
