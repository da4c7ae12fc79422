from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session

from forum import database, repositories, services
from forum.config import settings
from forum.errors import CodeExpired, DuplicateEmail, DuplicateUsername, InvalidCode, UploadFailed
from forum.media import ImageUpload
from forum.notifications import Notifier
from conftest import make_png


def test_register_resolves_known_subjects_only(api, outbox):
    api.subject("math")
    r = api.register("alice", "a@x.com", "pw", has_access=["math", "history"])
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["has_access"] == ["math"]
    assert body["roles"] == ["USER"]
    assert body["is_activated"] is False
    assert body["message"] == "Check your email account"
    assert outbox and outbox[0]["to"] == "a@x.com"
    assert str(api.code_for("alice")) in outbox[0]["text"]


def test_register_admin_tier_gets_both_roles(api):
    r = api.register("root", admin=True)
    assert r.status_code == 200
    assert r.json()["roles"] == ["ADMIN", "USER"]


def test_duplicate_username_wins_regardless_of_email(api):
    assert api.register("bob", "bob@x.com").status_code == 200
    r = api.register("BOB", "other@x.com")
    assert r.status_code == 400
    assert r.json() == {"message": "The username BOB is already being used"}
    r = api.register("bob", "bob@x.com")
    assert "username" in r.json()["message"]


def test_duplicate_email_is_case_insensitive(api):
    assert api.register("carol", "Carol@X.com").status_code == 200
    r = api.register("caroline", "carol@x.com")
    assert r.status_code == 400
    assert "email" in r.json()["message"]


def test_missing_parameters(client):
    r = client.post("/api/auth/new-user", data={"username": "x"})
    assert r.status_code == 400
    assert r.json() == {"message": "Missing parameters"}


def test_register_with_avatar_stores_image(api, client):
    r = api.register("dave", avatar=make_png())
    assert r.status_code == 200, r.text
    url = r.json()["avatar"]
    assert url.startswith("/media/")
    assert client.get(url).status_code == 200


def test_register_upload_failure_persists_nothing(session, media):
    media.fail_upload = True
    svc = services.UserService(session, media=media, notifier=Notifier())
    with pytest.raises(UploadFailed):
        svc.register("erin", "erin@x.com", "pw", avatar=ImageUpload(make_png(), "a.png"))
    assert repositories.UserRepository(session).find_by_username("erin") is None


def test_register_rejects_non_image_avatar(api):
    r = api.register("frank", avatar=b"not an image")
    assert r.status_code == 400
    assert r.json() == {"message": "Upload failed"}
    assert api.register("frank").status_code == 200


def test_notification_failure_does_not_fail_registration(api, monkeypatch):
    import smtplib
    from forum import notifications

    def _boom(*_args, **_kwargs):
        raise smtplib.SMTPException("relay down")

    monkeypatch.setattr(notifications, "send_email", _boom)
    r = api.register("gina")
    assert r.status_code == 200


def test_activation_succeeds_once(api, outbox):
    api.register("alice")
    code = api.code_for("alice")
    r = api.client.post("/api/auth/activate-user", json={"username": "alice", "activation_code": code})
    assert r.status_code == 200
    assert r.json()["message"] == "Your account has been activated with success"
    assert any(m["subject"] == "Welcome to the forum" for m in outbox)
    again = api.client.post("/api/auth/activate-user", json={"username": "alice", "activation_code": code})
    assert again.status_code == 400


def test_activation_wrong_code(api):
    api.register("hank")
    wrong = 1000 if api.code_for("hank") != 1000 else 1001
    r = api.client.post("/api/auth/activate-user", json={"username": "hank", "activation_code": wrong})
    assert r.status_code == 400
    assert r.json()["message"] == "The code is wrong"


def test_activation_unknown_user(client):
    r = client.post("/api/auth/activate-user", json={"username": "ghost", "activation_code": 1234})
    assert r.status_code == 400


def test_activation_with_specific_code_inside_window(session, outbox):
    svc = services.UserService(session)
    user = svc.register("ivy", "ivy@x.com", "pw")
    user.activation_code = 4821
    user.code_issued_at = datetime.now(timezone.utc) - timedelta(seconds=10)
    session.add(user)
    session.commit()
    activated = svc.activate("ivy", 4821)
    assert activated.is_activated is True
    assert activated.activation_code is None
    assert outbox[-1]["subject"] == "Welcome to the forum"
    with pytest.raises(InvalidCode):
        svc.activate("ivy", 4821)


def test_activation_code_expires_after_window(session):
    svc = services.UserService(session)
    user = svc.register("jack", "jack@x.com", "pw")
    code = user.activation_code
    user.code_issued_at = datetime.now(timezone.utc) - timedelta(seconds=settings.ACTIVATION_CODE_TTL_SECONDS + 5)
    session.add(user)
    session.commit()
    with pytest.raises(CodeExpired):
        svc.activate("jack", code)
    assert repositories.UserRepository(session).find_by_username("jack").is_activated is False


def test_service_duplicate_errors(session):
    svc = services.UserService(session)
    svc.register("kim", "kim@x.com", "pw")
    with pytest.raises(DuplicateUsername):
        svc.register("Kim", "new@x.com", "pw")
    with pytest.raises(DuplicateEmail):
        svc.register("kimberly", "KIM@x.com", "pw")


def test_check_code_reads_naive_timestamps_as_utc():
    naive = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(seconds=30)
    age = services.code_age_seconds(naive)
    assert 29 <= age <= 60


def test_expired_activation_can_be_recovered_through_forgot_pass(api, outbox):
    api.register("zed")
    with Session(database.engine) as s:
        user = repositories.UserRepository(s).find_by_username("zed")
        stale = user.activation_code
        user.code_issued_at = datetime.now(timezone.utc) - timedelta(seconds=settings.ACTIVATION_CODE_TTL_SECONDS + 5)
        s.add(user)
        s.commit()
    r = api.client.post("/api/auth/activate-user", json={"username": "zed", "activation_code": stale})
    assert r.json() == {"message": "The code has expired"}

    r = api.client.post("/api/auth/forgot-pass", json={"email": "zed@example.com"})
    assert r.status_code == 200, r.text
    assert outbox[-1]["subject"] == "Activate your forum account"
    fresh = api.code_for("zed")
    assert str(fresh) in outbox[-1]["text"]

    assert api.activate("zed").status_code == 200
    assert api.login("zed")


def test_storage_race_on_username_maps_to_duplicate_and_drops_avatar(session, media, monkeypatch):
    svc = services.UserService(session, media=media)
    svc.register("bob", "bob@x.com", "pw")
    monkeypatch.setattr(repositories.UserRepository, "exists_by_username", lambda self, *a, **k: False)
    monkeypatch.setattr(repositories.UserRepository, "exists_by_email", lambda self, *a, **k: False)

    with pytest.raises(DuplicateUsername):
        svc.register("BOB", "new@x.com", "pw", avatar=ImageUpload(make_png(), "a.png"))
    assert media.objects == {}
    with pytest.raises(DuplicateEmail):
        svc.register("robert", "BOB@x.com", "pw")
    assert [u.username for u in repositories.UserRepository(session).find_all()] == ["bob"]
