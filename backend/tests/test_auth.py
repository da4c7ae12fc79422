from datetime import datetime, timedelta, timezone

import jwt
import pytest

from forum import repositories, services
from forum.config import settings
from forum.errors import CodeExpired, InvalidCode
from forum.main import _auth_rate_limiter
from forum.utils.rate_limit import InMemoryRateLimiter


def test_login_requires_activation(api):
    api.register("alice")
    r = api.client.post("/api/auth/login", json={"username": "alice", "password": "pw"})
    assert r.status_code == 400
    assert r.json()["message"] == "The user alice isn't validated yet"
    api.activate("alice")
    token = api.login("alice")
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    assert payload["sub"] == "alice"
    assert payload["roles"] == ["USER"]


def test_login_unknown_user_and_wrong_password(api):
    r = api.client.post("/api/auth/login", json={"username": "nobody", "password": "pw"})
    assert r.status_code == 400
    assert r.json()["message"] == "The user nobody doesn't exist"
    api.member("bob")
    r = api.client.post("/api/auth/login", json={"username": "bob", "password": "nope"})
    assert r.status_code == 400


def test_remember_me_extends_token(api):
    api.member("carl")
    short = api.client.post("/api/auth/login", json={"username": "carl", "password": "pw"}).json()
    long = api.client.post(
        "/api/auth/login", json={"username": "carl", "password": "pw", "remember_me": True}
    ).json()
    decode = lambda t: jwt.decode(t["access_token"], settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    assert decode(long)["exp"] > decode(short)["exp"]


def test_protected_endpoint_rejects_missing_or_bad_token(client):
    r = client.get("/api/user/1")
    assert r.status_code in (401, 403)
    r = client.get("/api/user/1", headers={"Authorization": "Bearer invalid.token.here"})
    assert r.status_code == 401


def test_expired_token_rejected(api):
    user_id, _ = api.member("dora")
    expired = jwt.encode(
        {"user_id": user_id, "sub": "dora", "exp": int((datetime.now(timezone.utc) - timedelta(hours=1)).timestamp())},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    r = api.client.get(f"/api/user/{user_id}", headers={"Authorization": f"Bearer {expired}"})
    assert r.status_code == 401
    assert r.json()["detail"] == "token expired"


def test_forgot_and_save_password(api, outbox):
    api.member("erin")
    r = api.client.post("/api/auth/forgot-pass", json={"email": "ERIN@example.com"})
    assert r.status_code == 200
    assert outbox[-1]["subject"] == "Reset your password"
    code = api.code_for("erin")
    assert str(code) in outbox[-1]["text"]
    r = api.client.post(
        "/api/auth/save-pass", json={"username": "erin", "new_pass": "s3cret", "validation_code": code}
    )
    assert r.status_code == 200
    assert api.login("erin", "s3cret")
    r = api.client.post("/api/auth/login", json={"username": "erin", "password": "pw"})
    assert r.status_code == 400
    # the code is single use
    r = api.client.post(
        "/api/auth/save-pass", json={"username": "erin", "new_pass": "again", "validation_code": code}
    )
    assert r.status_code == 400


def test_forgot_pass_unknown_email(client):
    r = client.post("/api/auth/forgot-pass", json={"email": "nobody@example.com"})
    assert r.status_code == 400
    assert r.json() == {"message": "The email nobody@example.com isn't registered"}


def test_save_pass_missing_parameters(client):
    r = client.post("/api/auth/save-pass", json={"username": "x"})
    assert r.status_code == 400
    assert r.json() == {"message": "Missing parameters"}


def test_reset_code_expiry(session, api):
    api.member("fred")
    svc = services.AuthService(session)
    user = svc.ask_new_password("fred@example.com")
    code = user.activation_code
    with pytest.raises(InvalidCode):
        svc.save_new_password("fred", "x", code + 1 if code < 9999 else code - 1)
    user.code_issued_at = datetime.now(timezone.utc) - timedelta(seconds=settings.PASSWORD_RESET_TTL_SECONDS + 1)
    session.add(user)
    session.commit()
    with pytest.raises(CodeExpired):
        svc.save_new_password("fred", "x", code)
    assert services.PWD_CTX.verify("pw", repositories.UserRepository(session).find_by_username("fred").password_hash)


def test_login_rate_limited(api, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_RATE_LIMIT_PER_MIN", 2)
    for _ in range(2):
        api.client.post("/api/auth/login", json={"username": "x", "password": "y"})
    r = api.client.post("/api/auth/login", json={"username": "x", "password": "y"})
    assert r.status_code == 429
    assert "Retry-After" in r.headers
    _auth_rate_limiter.reset()


def test_rate_limiter_window():
    limiter = InMemoryRateLimiter()
    assert limiter.allow("k", 1, 60) == (True, 0)
    allowed, retry_after = limiter.allow("k", 1, 60)
    assert allowed is False
    assert retry_after >= 1
    assert limiter.allow("other", 1, 60)[0] is True


def test_request_id_header(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert "X-Request-ID" in r.headers


def test_rate_limiter_drops_idle_keys():
    clock = [1000.0]
    limiter = InMemoryRateLimiter(clock=lambda: clock[0])
    for i in range(50):
        limiter.allow(f"10.0.0.{i}:/api/auth/login", 5, 60)
    assert limiter.tracked_keys() == 50
    clock[0] += 61
    assert limiter.allow("10.0.0.99:/api/auth/login", 5, 60) == (True, 0)
    assert limiter.tracked_keys() == 1
    # an active key keeps its history across a sweep
    for _ in range(4):
        limiter.allow("10.0.0.99:/api/auth/login", 5, 60)
    clock[0] += 30
    assert limiter.allow("10.0.0.99:/api/auth/login", 5, 60)[0] is False
