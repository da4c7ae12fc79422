import io
import os
import tempfile
from pathlib import Path

# Point the app at a throwaway database and media folder before it is imported.
_TMP = Path(tempfile.mkdtemp(prefix="forum-tests-"))
os.environ["FORUM_DATABASE_URL"] = f"sqlite:///{_TMP / 'test.db'}"
os.environ["MEDIA_ROOT"] = str(_TMP / "media")
os.environ["SMTP_HOST"] = ""

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlmodel import SQLModel, Session

from forum import database, notifications, repositories, services
from forum.main import app, _auth_rate_limiter
from forum.media import MediaStore, MediaStoreError, UploadedFile


def make_png(color="white") -> bytes:
    img = Image.new("RGB", (16, 16), color)
    bio = io.BytesIO()
    img.save(bio, format="PNG")
    return bio.getvalue()


class FakeMediaStore(MediaStore):
    """In-memory store whose uploads and deletions can be told to fail."""

    def __init__(self):
        self.objects = {}
        self.fail_upload = False
        self.fail_delete = False
        self._n = 0

    def upload_image(self, data, filename=""):
        if self.fail_upload:
            raise MediaStoreError("store unavailable")
        self._n += 1
        handle = f"fake-{self._n}"
        self.objects[handle] = data
        return UploadedFile(url=f"https://media.test/{handle}", deletion_handle=handle)

    def delete_file(self, deletion_handle):
        if self.fail_delete:
            raise MediaStoreError("store unavailable")
        return self.objects.pop(deletion_handle, None) is not None


@pytest.fixture(autouse=True)
def reset_db():
    """Recreate all tables (and the base roles) for every test."""
    SQLModel.metadata.drop_all(database.engine)
    database.create_db_and_tables()
    _auth_rate_limiter.reset()
    app.dependency_overrides.clear()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def outbox(monkeypatch):
    """Capture outgoing email instead of talking SMTP."""
    sent = []

    def _fake_send(subject, to_email, html_body, text_body=None):
        sent.append({"subject": subject, "to": to_email, "text": text_body or html_body})
        return True

    monkeypatch.setattr(notifications, "send_email", _fake_send)
    return sent


@pytest.fixture
def session():
    with Session(database.engine) as s:
        yield s


@pytest.fixture
def media():
    return FakeMediaStore()


class ForumApi:
    """Thin helpers over the HTTP API for test setup."""

    def __init__(self, client: TestClient):
        self.client = client

    def register(self, username, email=None, password="pw", has_access=(), admin=False, avatar=None):
        path = "/api/auth/new-user-admin" if admin else "/api/auth/new-user"
        data = {"username": username, "email": email or f"{username}@example.com", "password": password}
        if has_access:
            data["has_access"] = list(has_access)
        files = {"avatar": ("avatar.png", avatar, "image/png")} if avatar is not None else None
        return self.client.post(path, data=data, files=files)

    def code_for(self, username):
        with Session(database.engine) as s:
            return repositories.UserRepository(s).find_by_username(username).activation_code

    def activate(self, username):
        return self.client.post(
            "/api/auth/activate-user",
            json={"username": username, "activation_code": self.code_for(username)},
        )

    def login(self, username, password="pw"):
        r = self.client.post("/api/auth/login", json={"username": username, "password": password})
        assert r.status_code == 200, r.text
        return r.json()["access_token"]

    def member(self, username, admin=False, has_access=()):
        """Register, activate and log in; returns (user_id, auth headers)."""
        r = self.register(username, admin=admin, has_access=has_access)
        assert r.status_code == 200, r.text
        assert self.activate(username).status_code == 200
        token = self.login(username)
        return r.json()["id"], {"Authorization": f"Bearer {token}"}

    def subject(self, name, modules=()):
        """Create a subject (and modules) directly; returns (subject_id, [module_ids])."""
        with Session(database.engine) as s:
            svc = services.SubjectService(s)
            subject = svc.create_subject(name)
            module_ids = [svc.add_module(subject.id, m).id for m in modules]
            return subject.id, module_ids


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def api(client, outbox):
    return ForumApi(client)
