"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the forum backend. Controllers
are intentionally thin: they validate the request shape, delegate to
services, and return JSON responses. Any `ForumError` raised by a
service becomes a 400 response with a `{"message": ...}` body.

Endpoints implemented (all under /api):
- POST auth/login, auth/new-user, auth/new-user-admin, auth/activate-user,
  auth/forgot-pass, auth/save-pass
- GET/PUT/DELETE user/{id}, GET user/all, PUT user/add-access/{id},
  user/remove-access/{id}, user/follow_subject/{id}, user/unfollow_subject/{id}
- POST image/user, image/subject/{id}
- GET subject/all, GET subject/{id}, POST subject, POST subject/{id}/module
- POST post/{module_id}, GET/PUT/DELETE post/{id}, PUT post/like/{id},
  post/dislike/{id}, post/fix/{id}, post/follow/{id}, post/unfollow/{id}
"""

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from sqlmodel import Session
from typing import List, Optional
import json
import logging
import os
import time
import uuid

from .config import settings
from .database import create_db_and_tables, get_session
from .errors import ForumError, InvalidRequest
from .auth import get_current_user, require_role
from .media import ImageUpload, MediaStore, get_media_store
from .notifications import Notifier, get_notifier
from .utils.rate_limit import InMemoryRateLimiter, client_key
from . import models, services
from .schemas import (
    ActivateIn,
    ForgotPassIn,
    LoginIn,
    MessageOut,
    ModuleIn,
    ModuleOut,
    NewPassIn,
    PostOut,
    SubjectNameIn,
    SubjectOut,
    TokenOut,
    UpdateUserIn,
    UrlOut,
    UserOut,
)

app = FastAPI(title="Forum API")
logger = logging.getLogger("forum.api")
if not logger.handlers:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
_auth_rate_limiter = InMemoryRateLimiter()

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()
settings.MEDIA_ROOT.mkdir(parents=True, exist_ok=True)
app.mount(settings.MEDIA_BASE_URL, StaticFiles(directory=settings.MEDIA_ROOT), name="media")


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    info = {
        "request_id": req_id,
        "path": request.url.path,
        "method": request.method,
        "client": request.client.host if request.client else "unknown",
    }
    try:
        response = await call_next(request)
    except Exception:
        info["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception("request_failed %s", json.dumps(info, ensure_ascii=True))
        raise
    response.headers["X-Request-ID"] = req_id
    if request.url.path.startswith("/api"):
        info["status_code"] = response.status_code
        info["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
        logger.info("request_done %s", json.dumps(info, ensure_ascii=True))
    return response


@app.exception_handler(ForumError)
async def forum_error_handler(request: Request, exc: ForumError):
    logger.info("request_rejected path=%s error=%s message=%s", request.url.path, type(exc).__name__, exc)
    return JSONResponse(status_code=400, content={"message": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    missing = any(err.get("type") == "missing" for err in exc.errors())
    return JSONResponse(status_code=400, content={"message": "Missing parameters" if missing else "Invalid parameters"})


def _enforce_auth_rate_limit(request: Request) -> None:
    allowed, retry_after = _auth_rate_limiter.allow(
        client_key(request), settings.AUTH_RATE_LIMIT_PER_MIN, settings.AUTH_RATE_LIMIT_WINDOW_SECONDS
    )
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"rate limit exceeded; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )


def _read_image(upload: UploadFile) -> ImageUpload:
    """Read an uploaded file, enforcing the configured size limit."""
    if not upload.filename:
        raise InvalidRequest("Missing file")
    data = upload.file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise InvalidRequest("file too large")
    return ImageUpload(data=data, filename=upload.filename)


def _service_kwargs(background_tasks: BackgroundTasks, media: MediaStore, notifier: Notifier) -> dict:
    return {"media": media, "notifier": notifier, "defer": background_tasks.add_task}


def get_user_service(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_session),
    media: MediaStore = Depends(get_media_store),
    notifier: Notifier = Depends(get_notifier),
) -> services.UserService:
    return services.UserService(db, **_service_kwargs(background_tasks, media, notifier))


def get_auth_service(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_session),
    media: MediaStore = Depends(get_media_store),
    notifier: Notifier = Depends(get_notifier),
) -> services.AuthService:
    return services.AuthService(db, **_service_kwargs(background_tasks, media, notifier))


def get_subject_service(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_session),
    media: MediaStore = Depends(get_media_store),
    notifier: Notifier = Depends(get_notifier),
) -> services.SubjectService:
    return services.SubjectService(db, **_service_kwargs(background_tasks, media, notifier))


def get_post_service(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_session),
    media: MediaStore = Depends(get_media_store),
    notifier: Notifier = Depends(get_notifier),
) -> services.PostService:
    return services.PostService(db, **_service_kwargs(background_tasks, media, notifier))


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}


# --- auth -------------------------------------------------------------------

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_router.post("/login", response_model=TokenOut)
def login(payload: LoginIn, request: Request, svc: services.AuthService = Depends(get_auth_service)):
    """Authenticate an activated user and return a JWT.

    `remember_me` extends the token lifetime.
    """
    _enforce_auth_rate_limit(request)
    token = svc.authenticate(payload.username, payload.password, payload.remember_me)
    return TokenOut(access_token=token)


def _register(svc: services.UserService, role_name: str, username, email, password, has_access, avatar):
    if not username or not email or not password:
        raise InvalidRequest("Missing parameters")
    image = _read_image(avatar) if avatar is not None and avatar.filename else None
    user = svc.register(username, email, password, has_access=has_access, avatar=image, role_name=role_name)
    return UserOut.from_user(user, "Check your email account")


@auth_router.post("/new-user", response_model=UserOut)
def new_user(
    username: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    has_access: List[str] = Form(default=[]),
    avatar: Optional[UploadFile] = File(None),
    svc: services.UserService = Depends(get_user_service),
):
    """Register a USER account; the activation code is sent by email."""
    return _register(svc, "USER", username, email, password, has_access, avatar)


@auth_router.post("/new-user-admin", response_model=UserOut)
def new_user_admin(
    username: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    has_access: List[str] = Form(default=[]),
    avatar: Optional[UploadFile] = File(None),
    svc: services.UserService = Depends(get_user_service),
):
    """Register an account holding both USER and ADMIN roles."""
    return _register(svc, "ADMIN", username, email, password, has_access, avatar)


@auth_router.post("/activate-user", response_model=MessageOut)
def activate_user(payload: ActivateIn, svc: services.UserService = Depends(get_user_service)):
    """Activate a pending account. The user can't log in before this."""
    svc.activate(payload.username, payload.activation_code)
    return MessageOut(message="Your account has been activated with success")


@auth_router.post("/forgot-pass", response_model=MessageOut)
def forgot_pass(payload: ForgotPassIn, request: Request, svc: services.AuthService = Depends(get_auth_service)):
    _enforce_auth_rate_limit(request)
    svc.ask_new_password(payload.email)
    return MessageOut(message="Check your email account")


@auth_router.post("/save-pass", response_model=MessageOut)
def save_pass(payload: NewPassIn, svc: services.AuthService = Depends(get_auth_service)):
    svc.save_new_password(payload.username, payload.new_pass, payload.validation_code)
    return MessageOut(message="Your password has been changed")


# --- users ------------------------------------------------------------------

user_router = APIRouter(prefix="/api/user", tags=["user"])


@user_router.get("/all", response_model=List[UserOut])
def get_all_users(
    svc: services.UserService = Depends(get_user_service),
    _admin: models.User = Depends(require_role("ADMIN")),
):
    return [UserOut.from_user(u) for u in svc.get_all_users()]


@user_router.get("/{user_id}", response_model=UserOut)
def get_user(
    user_id: int,
    svc: services.UserService = Depends(get_user_service),
    _user: models.User = Depends(require_role("USER")),
):
    return UserOut.from_user(svc.get_user(user_id))


@user_router.put("/{user_id}", response_model=UserOut)
def update_user(
    user_id: int,
    payload: UpdateUserIn,
    svc: services.UserService = Depends(get_user_service),
    user: models.User = Depends(require_role("USER")),
):
    """Update username, email, activation flag and subject access.

    Only the user itself or an admin may do this.
    """
    updated = svc.update_user(
        user_id,
        payload.username,
        payload.email,
        acting_username=user.username,
        is_activated=payload.is_activated,
        has_access=payload.has_access,
    )
    return UserOut.from_user(updated, "Your account has been updated")


@user_router.delete("/{user_id}", response_model=MessageOut)
def delete_user(
    user_id: int,
    svc: services.UserService = Depends(get_user_service),
    user: models.User = Depends(require_role("USER")),
):
    svc.delete_user(user_id, acting_username=user.username)
    return MessageOut(message=f"User {user_id} deleted with success")


@user_router.put("/add-access/{user_id}", response_model=UserOut)
def add_access(
    user_id: int,
    payload: SubjectNameIn,
    svc: services.UserService = Depends(get_user_service),
    _admin: models.User = Depends(require_role("ADMIN")),
):
    user = svc.add_access(user_id, payload.name)
    return UserOut.from_user(user, f"Added access to the subject {payload.name}")


@user_router.put("/remove-access/{user_id}", response_model=UserOut)
def remove_access(
    user_id: int,
    payload: SubjectNameIn,
    svc: services.UserService = Depends(get_user_service),
    _admin: models.User = Depends(require_role("ADMIN")),
):
    user = svc.remove_access(user_id, payload.name)
    return UserOut.from_user(user, f"Removed access from subject {payload.name}")


@user_router.put("/follow_subject/{user_id}", response_model=UserOut)
def follow_subject(
    user_id: int,
    payload: SubjectNameIn,
    svc: services.UserService = Depends(get_user_service),
    user: models.User = Depends(require_role("USER")),
):
    followed = svc.follow_subject(user_id, payload.name, acting_username=user.username)
    return UserOut.from_user(followed, f"The user {user_id} now follows the subject {payload.name}")


@user_router.put("/unfollow_subject/{user_id}", response_model=UserOut)
def unfollow_subject(
    user_id: int,
    payload: SubjectNameIn,
    svc: services.UserService = Depends(get_user_service),
    user: models.User = Depends(require_role("USER")),
):
    unfollowed = svc.unfollow_subject(user_id, payload.name, acting_username=user.username)
    return UserOut.from_user(unfollowed, f"The user {user_id} unfollowed the subject {payload.name}")


# --- images -----------------------------------------------------------------

image_router = APIRouter(prefix="/api/image", tags=["image"])


@image_router.post("/user", response_model=UrlOut)
def upload_user_avatar(
    avatar: Optional[UploadFile] = File(None),
    svc: services.UserService = Depends(get_user_service),
    user: models.User = Depends(require_role("USER")),
):
    """Upload (or replace) the caller's avatar."""
    if avatar is None:
        raise InvalidRequest("Missing file")
    stored = svc.add_avatar(user.username, _read_image(avatar))
    return UrlOut(url=stored.url, message="Avatar updated")


@image_router.post("/subject/{subject_id}", response_model=UrlOut)
def upload_subject_avatar(
    subject_id: int,
    avatar: Optional[UploadFile] = File(None),
    svc: services.SubjectService = Depends(get_subject_service),
    _admin: models.User = Depends(require_role("ADMIN")),
):
    if avatar is None:
        raise InvalidRequest("Missing file")
    stored = svc.add_avatar(subject_id, _read_image(avatar))
    return UrlOut(url=stored.url, message="Avatar updated")


# --- subjects ---------------------------------------------------------------

subject_router = APIRouter(prefix="/api/subject", tags=["subject"])


@subject_router.get("/all", response_model=List[SubjectOut])
def list_subjects(
    svc: services.SubjectService = Depends(get_subject_service),
    _user: models.User = Depends(require_role("USER")),
):
    return [SubjectOut.from_subject(s) for s in svc.list_subjects()]


@subject_router.get("/{subject_id}", response_model=SubjectOut)
def get_subject(
    subject_id: int,
    svc: services.SubjectService = Depends(get_subject_service),
    _user: models.User = Depends(require_role("USER")),
):
    return SubjectOut.from_subject(svc.get_subject(subject_id))


@subject_router.post("", response_model=SubjectOut)
def create_subject(
    payload: SubjectNameIn,
    svc: services.SubjectService = Depends(get_subject_service),
    _admin: models.User = Depends(require_role("ADMIN")),
):
    return SubjectOut.from_subject(svc.create_subject(payload.name), "Subject created")


@subject_router.post("/{subject_id}/module", response_model=ModuleOut)
def add_module(
    subject_id: int,
    payload: ModuleIn,
    svc: services.SubjectService = Depends(get_subject_service),
    _admin: models.User = Depends(require_role("ADMIN")),
):
    return ModuleOut.from_module(svc.add_module(subject_id, payload.name, payload.description))


# --- posts ------------------------------------------------------------------

post_router = APIRouter(prefix="/api/post", tags=["post"])


def _read_images(files: Optional[List[UploadFile]]) -> List[ImageUpload]:
    return [_read_image(f) for f in (files or []) if f.filename]


@post_router.post("/{module_id}", response_model=PostOut)
def new_post(
    module_id: int,
    title: Optional[str] = Form(None),
    content: Optional[str] = Form(None),
    files: Optional[List[UploadFile]] = File(None),
    svc: services.PostService = Depends(get_post_service),
    user: models.User = Depends(require_role("USER")),
):
    """Create a post in a module. At most 5 image files may be attached."""
    post = svc.create_post(module_id, title, content, user.username, files=_read_images(files))
    return PostOut.from_post(post, viewer=user, message="Post created")


@post_router.get("/{post_id}", response_model=PostOut)
def get_post(
    post_id: int,
    svc: services.PostService = Depends(get_post_service),
    user: models.User = Depends(require_role("USER")),
):
    return PostOut.from_post(svc.get_post(post_id), viewer=user)


@post_router.put("/{post_id}", response_model=PostOut)
def update_post(
    post_id: int,
    title: Optional[str] = Form(None),
    content: Optional[str] = Form(None),
    files: Optional[List[UploadFile]] = File(None),
    svc: services.PostService = Depends(get_post_service),
    user: models.User = Depends(require_role("USER")),
):
    """Update a post (author or admin). New files replace the old ones."""
    post = svc.update_post(post_id, user.username, title=title, content=content, files=_read_images(files))
    return PostOut.from_post(post, viewer=user, message="Post updated")


@post_router.delete("/{post_id}", response_model=MessageOut)
def delete_post(
    post_id: int,
    svc: services.PostService = Depends(get_post_service),
    user: models.User = Depends(require_role("USER")),
):
    svc.delete_post(post_id, user.username)
    return MessageOut(message=f"Post {post_id} deleted with success")


@post_router.put("/like/{post_id}", response_model=PostOut)
def like(
    post_id: int,
    svc: services.PostService = Depends(get_post_service),
    user: models.User = Depends(require_role("USER")),
):
    """Add or remove the caller's like, depending on the previous state."""
    return PostOut.from_post(svc.like(post_id, user.username), viewer=user)


@post_router.put("/dislike/{post_id}", response_model=PostOut)
def dislike(
    post_id: int,
    svc: services.PostService = Depends(get_post_service),
    user: models.User = Depends(require_role("USER")),
):
    return PostOut.from_post(svc.dislike(post_id, user.username), viewer=user)


@post_router.put("/fix/{post_id}", response_model=PostOut)
def fix(
    post_id: int,
    svc: services.PostService = Depends(get_post_service),
    admin: models.User = Depends(require_role("ADMIN")),
):
    """Pin or unpin a post. ADMIN only."""
    post = svc.fix(post_id)
    return PostOut.from_post(post, viewer=admin, message="Post fixed" if post.is_fixed else "Post unfixed")


@post_router.put("/follow/{post_id}", response_model=PostOut)
def follow_post(
    post_id: int,
    svc: services.PostService = Depends(get_post_service),
    user: models.User = Depends(require_role("USER")),
):
    return PostOut.from_post(svc.follow(post_id, user.username), viewer=user)


@post_router.put("/unfollow/{post_id}", response_model=PostOut)
def unfollow_post(
    post_id: int,
    svc: services.PostService = Depends(get_post_service),
    user: models.User = Depends(require_role("USER")),
):
    return PostOut.from_post(svc.unfollow(post_id, user.username), viewer=user)


app.include_router(auth_router)
app.include_router(user_router)
app.include_router(image_router)
app.include_router(subject_router)
app.include_router(post_router)
