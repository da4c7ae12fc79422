"""Business logic services used by HTTP controllers.

This module holds the service classes that coordinate repositories,
the media store and the notifier. Services validate input, enforce the
authorization rules, persist through repositories and raise
`forum.errors` exceptions; they never build HTTP responses.

Side effects that must not block the primary write (emails) are handed
to `defer` after the commit. Controllers pass
`BackgroundTasks.add_task`; scripts and tests get the inline default.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .errors import (
    AccessRequired,
    CodeExpired,
    DuplicateEmail,
    DuplicateSubject,
    DuplicateUsername,
    EmailTaken,
    Forbidden,
    InvalidCode,
    InvalidCredentials,
    InvalidRequest,
    NotActivated,
    NotFound,
    UnknownSubject,
    UploadFailed,
    UsernameTaken,
)
from .media import ImageUpload, MediaStore, MediaStoreError, get_media_store
from .notifications import Notifier, Recipient, get_notifier

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
MAX_POST_FILES = 5

logger = logging.getLogger("forum.services")


def _run_now(fn: Callable, *args, **kwargs) -> None:
    fn(*args, **kwargs)


def new_code() -> int:
    """Return a fresh four digit numeric code."""
    return 1000 + secrets.randbelow(9000)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def code_age_seconds(issued_at: Optional[datetime], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds elapsed since `issued_at`; naive timestamps are read as UTC."""
    if issued_at is None:
        return None
    if issued_at.tzinfo is None:
        issued_at = issued_at.replace(tzinfo=timezone.utc)
    return ((now or _utcnow()) - issued_at).total_seconds()


def check_code(user: models.User, submitted: int, ttl_seconds: int) -> None:
    """Validate a submitted activation/reset code against the stored one.

    A code is expired once more than `ttl_seconds` have passed since it
    was issued.
    """
    if user.activation_code is None or int(submitted) != user.activation_code:
        raise InvalidCode()
    age = code_age_seconds(user.code_issued_at)
    if age is None or age > ttl_seconds:
        raise CodeExpired()


class _Service:
    def __init__(
        self,
        session: Session,
        media: Optional[MediaStore] = None,
        notifier: Optional[Notifier] = None,
        defer: Optional[Callable] = None,
    ):
        self.session = session
        self.media = media or get_media_store()
        self.notifier = notifier or get_notifier()
        self.defer = defer or _run_now
        self.user_repo = repositories.UserRepository(session)
        self.subject_repo = repositories.SubjectRepository(session)

    def _get_user(self, user_id: int) -> models.User:
        user = self.user_repo.find_by_id(user_id)
        if user is None:
            raise NotFound(f"The user id {user_id} doesn't exist!")
        return user

    def _get_user_by_username(self, username: str) -> models.User:
        user = self.user_repo.find_by_username(username)
        if user is None:
            raise NotFound(f"The user {username} doesn't exist")
        return user

    def _authorize(self, target_owner_id: Optional[int], acting_username: str, action: str) -> models.User:
        """Allow the owner of a resource or any admin; raise `Forbidden` otherwise."""
        actor = self.user_repo.find_by_username(acting_username)
        if actor is None:
            raise Forbidden(f"The user {acting_username} is not allowed to {action}")
        if actor.id == target_owner_id or actor.is_admin():
            return actor
        raise Forbidden(f"The user {acting_username} is not allowed to {action}")

    def _upload(self, upload: ImageUpload) -> models.File:
        try:
            stored = self.media.upload_image(upload.data, upload.filename)
        except MediaStoreError as exc:
            logger.warning("upload_failed filename=%s error=%s", upload.filename, exc)
            raise UploadFailed(str(exc)) from exc
        return models.File(url=stored.url, deletion_handle=stored.deletion_handle)

    def _delete_media(self, deletion_handle: str) -> bool:
        """Best-effort removal from the media store; failures are logged."""
        try:
            deleted = bool(self.media.delete_file(deletion_handle))
        except MediaStoreError as exc:
            logger.warning("media_delete_failed handle=%s error=%s", deletion_handle, exc)
            return False
        if not deleted:
            logger.warning("media_delete_failed handle=%s error=not found", deletion_handle)
        return deleted

    def _replace_avatar(self, owner, upload: ImageUpload) -> models.File:
        """Swap the avatar of a user or subject.

        The old image is deleted from the store first. If the new upload
        fails, the stored reference is cleared when the old image is gone
        and kept when its deletion failed. On success the new image wins;
        an old image that could not be deleted is logged as orphaned.
        """
        old = owner.avatar
        old_deleted = self._delete_media(old.deletion_handle) if old is not None else False
        try:
            new_file = self._upload(upload)
        except UploadFailed:
            if old is not None and old_deleted:
                owner.avatar = None
                self.session.add(owner)
                self.session.flush()
                self.session.delete(old)
                self.session.commit()
            raise
        owner.avatar = new_file
        self.session.add(owner)
        if old is not None:
            if not old_deleted:
                logger.warning("media_orphaned handle=%s", old.deletion_handle)
            self.session.flush()
            self.session.delete(old)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            self._delete_media(new_file.deletion_handle)
            raise
        self.session.refresh(owner)
        return owner.avatar


class AuthService(_Service):
    """Credential checks, token issuance and password reset codes."""

    def create_access_token(self, user: models.User, remember_me: bool = False) -> str:
        hours = settings.JWT_REMEMBER_ME_HOURS if remember_me else settings.JWT_EXPIRE_HOURS
        expire = _utcnow() + timedelta(hours=hours)
        payload = {
            "user_id": user.id,
            "sub": user.username,
            "roles": user.role_names(),
            "exp": int(expire.timestamp()),
        }
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    def authenticate(self, username: str, password: str, remember_me: bool = False) -> str:
        """Verify credentials and return a signed JWT token.

        Pending accounts cannot log in until they are activated.
        """
        user = self._get_user_by_username(username)
        if not user.is_activated:
            raise NotActivated(user.username)
        if not PWD_CTX.verify(password, user.password_hash):
            raise InvalidCredentials()
        return self.create_access_token(user, remember_me)

    def ask_new_password(self, email: str) -> models.User:
        """Issue a fresh code and mail it to the account owner.

        Active accounts get a password reset code. A pending account gets
        a new activation code instead, so a missed activation window can
        be recovered.
        """
        user = self.user_repo.find_by_email(email)
        if user is None:
            raise NotFound(f"The email {email} isn't registered")
        user.activation_code = new_code()
        user.code_issued_at = _utcnow()
        self.user_repo.save(user)
        if not user.is_activated:
            logger.info("activation_code_reissued user_id=%s", user.id)
            self.defer(self.notifier.send_activation_message, Recipient.from_user(user))
            return user
        logger.info("password_reset_requested user_id=%s", user.id)
        self.defer(self.notifier.send_new_password_message, Recipient.from_user(user))
        return user

    def save_new_password(self, username: str, new_password: str, code: int) -> models.User:
        user = self._get_user_by_username(username)
        if not new_password:
            raise InvalidRequest("Missing parameters")
        if not user.is_activated:
            raise NotActivated(user.username)
        check_code(user, code, settings.PASSWORD_RESET_TTL_SECONDS)
        user.password_hash = PWD_CTX.hash(new_password)
        user.activation_code = None
        user.code_issued_at = None
        self.user_repo.save(user)
        logger.info("password_reset_done user_id=%s", user.id)
        return user


class UserService(_Service):
    """User lifecycle: registration, activation, update, deletion, subject graph."""

    def __init__(self, session: Session, **kwargs):
        super().__init__(session, **kwargs)
        self.role_repo = repositories.RoleRepository(session)

    def _role(self, name: str) -> models.Role:
        role = self.role_repo.find_by_name(name)
        if role is None:
            raise RuntimeError(f"role {name} is not seeded")
        return role

    def _duplicate_error(self, username: str, email: str, exclude_id: Optional[int] = None):
        by_name = self.user_repo.find_by_username(username)
        if by_name is not None and by_name.id != exclude_id:
            return UsernameTaken(username) if exclude_id else DuplicateUsername(username)
        return EmailTaken(email) if exclude_id else DuplicateEmail(email)

    def register(
        self,
        username: str,
        email: str,
        password: str,
        has_access: Optional[List[str]] = None,
        avatar: Optional[ImageUpload] = None,
        role_name: str = "USER",
    ) -> models.User:
        """Create a pending user and send the activation code.

        Unknown subject names are skipped. If an avatar is supplied it is
        uploaded before anything is written; an upload failure aborts the
        registration with `UploadFailed`.
        """
        username = (username or "").strip()
        email = (email or "").strip().lower()
        if not username or not email or not password:
            raise InvalidRequest("Missing parameters")
        if self.user_repo.exists_by_username(username):
            raise DuplicateUsername(username)
        if self.user_repo.exists_by_email(email):
            raise DuplicateEmail(email)

        roles = [self._role("USER")]
        if role_name.upper() == "ADMIN":
            roles.append(self._role("ADMIN"))
        user = models.User(
            username=username,
            email=email,
            password_hash=PWD_CTX.hash(password),
            roles=roles,
            has_access=self.subject_repo.resolve_names(has_access or []),
        )
        if avatar is not None:
            user.avatar = self._upload(avatar)
        user.activation_code = new_code()
        user.code_issued_at = _utcnow()
        try:
            self.user_repo.save(user)
        except IntegrityError as exc:
            if user.avatar is not None:
                self._delete_media(user.avatar.deletion_handle)
            raise self._duplicate_error(username, email) from exc
        logger.info("user_registered user_id=%s roles=%s", user.id, ",".join(user.role_names()))
        self.defer(self.notifier.send_activation_message, Recipient.from_user(user))
        return user

    def activate(self, username: str, code: int) -> models.User:
        """Move a pending user to active when the code matches and is fresh."""
        user = self._get_user_by_username(username)
        if user.is_activated:
            raise InvalidCode()
        check_code(user, code, settings.ACTIVATION_CODE_TTL_SECONDS)
        user.is_activated = True
        user.activation_code = None
        user.code_issued_at = None
        self.user_repo.save(user)
        logger.info("user_activated user_id=%s", user.id)
        self.defer(self.notifier.send_welcome_message, Recipient.from_user(user))
        return user

    def get_user(self, user_id: int) -> models.User:
        return self._get_user(user_id)

    def get_all_users(self) -> List[models.User]:
        return self.user_repo.find_all()

    def update_user(
        self,
        user_id: int,
        username: str,
        email: str,
        acting_username: str,
        is_activated: Optional[bool] = None,
        has_access: Optional[List[str]] = None,
    ) -> models.User:
        """Update username, email, activation flag and access list.

        Only the user itself or an admin may update. `has_access`, when
        given, replaces the whole access set.
        """
        user = self._get_user(user_id)
        self._authorize(user.id, acting_username, f"update the user {user.username}")
        username = (username or "").strip()
        email = (email or "").strip().lower()
        if not username or not email:
            raise InvalidRequest("Missing parameters")
        if self.user_repo.exists_by_username(username, exclude_id=user.id):
            raise UsernameTaken(username)
        if self.user_repo.exists_by_email(email, exclude_id=user.id):
            raise EmailTaken(email)

        user.username = username
        user.email = email
        if is_activated is not None:
            user.is_activated = is_activated
        if has_access is not None:
            user.has_access = self.subject_repo.resolve_names(has_access)
        try:
            self.user_repo.save(user)
        except IntegrityError as exc:
            raise self._duplicate_error(username, email, exclude_id=user_id) from exc
        logger.info("user_updated user_id=%s by=%s", user.id, acting_username)
        self.defer(self.notifier.send_user_updated_message, Recipient.from_user(user))
        return user

    def delete_user(self, user_id: int, acting_username: str) -> None:
        user = self._get_user(user_id)
        self._authorize(user.id, acting_username, f"delete the user {user.username}")
        recipient = Recipient.from_user(user)
        if user.avatar is not None:
            self._delete_media(user.avatar.deletion_handle)
        self.user_repo.delete(user)
        logger.info("user_deleted user_id=%s by=%s", user_id, acting_username)
        self.defer(self.notifier.send_user_removed_message, recipient)

    def add_avatar(self, username: str, avatar: ImageUpload) -> models.File:
        user = self._get_user_by_username(username)
        return self._replace_avatar(user, avatar)

    def _user_and_subject(self, user_id: int, subject_name: str, acting_username: Optional[str], action: str):
        user = self._get_user(user_id)
        if acting_username is not None:
            self._authorize(user.id, acting_username, action)
        subject = self.subject_repo.find_by_name(subject_name or "")
        if subject is None:
            raise UnknownSubject(subject_name)
        return user, subject

    def add_access(self, user_id: int, subject_name: str) -> models.User:
        user, subject = self._user_and_subject(user_id, subject_name, None, "")
        if self.subject_repo.add_edge(models.SubjectAccess, user.id, subject.id):
            logger.info("access_granted user_id=%s subject=%s", user.id, subject.name)
        return user

    def remove_access(self, user_id: int, subject_name: str) -> models.User:
        """Revoke access; an existing follow of the subject is left in place."""
        user, subject = self._user_and_subject(user_id, subject_name, None, "")
        if self.subject_repo.remove_edge(models.SubjectAccess, user.id, subject.id):
            logger.info("access_revoked user_id=%s subject=%s", user.id, subject.name)
        return user

    def follow_subject(self, user_id: int, subject_name: str, acting_username: Optional[str] = None) -> models.User:
        user, subject = self._user_and_subject(user_id, subject_name, acting_username, "change these follows")
        if not self.subject_repo.has_access(user.id, subject.id):
            raise AccessRequired(subject.name)
        self.subject_repo.add_edge(models.SubjectFollow, user.id, subject.id)
        return user

    def unfollow_subject(self, user_id: int, subject_name: str, acting_username: Optional[str] = None) -> models.User:
        user, subject = self._user_and_subject(user_id, subject_name, acting_username, "change these follows")
        self.subject_repo.remove_edge(models.SubjectFollow, user.id, subject.id)
        return user


class SubjectService(_Service):
    """Subjects, their modules and subject avatars."""

    def get_subject(self, subject_id: int) -> models.Subject:
        subject = self.subject_repo.find_by_id(subject_id)
        if subject is None:
            raise NotFound(f"The subject id {subject_id} doesn't exist!")
        return subject

    def list_subjects(self) -> List[models.Subject]:
        return self.subject_repo.find_all()

    def create_subject(self, name: str) -> models.Subject:
        name = (name or "").strip()
        if not name:
            raise InvalidRequest("Missing parameters")
        if self.subject_repo.find_by_name(name) is not None:
            raise DuplicateSubject(name)
        try:
            return self.subject_repo.save(models.Subject(name=name))
        except IntegrityError as exc:
            raise DuplicateSubject(name) from exc

    def add_module(self, subject_id: int, name: str, description: Optional[str] = None) -> models.Module:
        subject = self.get_subject(subject_id)
        name = (name or "").strip()
        if not name:
            raise InvalidRequest("Missing parameters")
        module = models.Module(name=name, description=description, subject_id=subject.id)
        return repositories.ModuleRepository(self.session).save(module)

    def add_avatar(self, subject_id: int, avatar: ImageUpload) -> models.File:
        subject = self.get_subject(subject_id)
        return self._replace_avatar(subject, avatar)


class PostService(_Service):
    """Posts inside modules and the reactions users leave on them."""

    def __init__(self, session: Session, **kwargs):
        super().__init__(session, **kwargs)
        self.post_repo = repositories.PostRepository(session)
        self.module_repo = repositories.ModuleRepository(session)

    def _get_post(self, post_id: int) -> models.Post:
        post = self.post_repo.find_by_id(post_id)
        if post is None:
            raise NotFound("Wrong id")
        return post

    def _upload_all(self, uploads: List[ImageUpload]) -> List[models.File]:
        if len(uploads) > MAX_POST_FILES:
            raise InvalidRequest(f"Max {MAX_POST_FILES} files are allowed")
        stored = []
        try:
            for upload in uploads:
                stored.append(self._upload(upload))
        except UploadFailed:
            for f in stored:
                self._delete_media(f.deletion_handle)
            raise
        return stored

    def create_post(
        self,
        module_id: int,
        title: str,
        content: str,
        username: str,
        files: Optional[List[ImageUpload]] = None,
    ) -> models.Post:
        """Create a post; the author needs access to the module's subject."""
        module = self.module_repo.find_by_id(module_id)
        if module is None:
            raise NotFound("Wrong id")
        if not title or not content:
            raise InvalidRequest("Missing parameters")
        author = self._get_user_by_username(username)
        if not author.is_admin() and not self.subject_repo.has_access(author.id, module.subject_id):
            raise AccessRequired(module.subject.name)
        post = models.Post(title=title, content=content, author_id=author.id, module_id=module.id)
        post.files = self._upload_all(files or [])
        self.post_repo.save(post)
        logger.info("post_created post_id=%s module_id=%s author_id=%s", post.id, module.id, author.id)
        return post

    def get_post(self, post_id: int) -> models.Post:
        return self._get_post(post_id)

    def update_post(
        self,
        post_id: int,
        username: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        files: Optional[List[ImageUpload]] = None,
    ) -> models.Post:
        """Edit a post (author or admin). New files replace the old ones."""
        if not title and not content:
            raise InvalidRequest("Missing parameters")
        post = self._get_post(post_id)
        self._authorize(post.author_id, username, f"update the post {post_id}")
        if title:
            post.title = title
        if content:
            post.content = content
        old_files = []
        if files:
            new_files = self._upload_all(files)
            old_files = list(post.files)
            post.files = new_files
        post.updated_at = _utcnow()
        self.session.add(post)
        self.session.flush()
        for f in old_files:
            self._delete_media(f.deletion_handle)
            self.session.delete(f)
        self.post_repo.commit()
        self.session.refresh(post)
        return post

    def delete_post(self, post_id: int, username: str) -> None:
        post = self._get_post(post_id)
        self._authorize(post.author_id, username, f"delete the post {post_id}")
        for f in post.files:
            self._delete_media(f.deletion_handle)
        self.post_repo.delete(post)
        logger.info("post_deleted post_id=%s by=%s", post_id, username)

    def _toggle(self, post_id: int, username: str, link, opposite) -> models.Post:
        post = self._get_post(post_id)
        user = self._get_user_by_username(username)
        present = self.post_repo.has_edge(link, user.id, post.id)
        self.post_repo.set_edge(link, user.id, post.id, not present)
        if not present:
            self.post_repo.set_edge(opposite, user.id, post.id, False)
        self.post_repo.commit()
        return post

    def like(self, post_id: int, username: str) -> models.Post:
        """Add or remove the user's like; a like replaces a dislike."""
        return self._toggle(post_id, username, models.PostLike, models.PostDislike)

    def dislike(self, post_id: int, username: str) -> models.Post:
        return self._toggle(post_id, username, models.PostDislike, models.PostLike)

    def fix(self, post_id: int) -> models.Post:
        """Pin or unpin a post."""
        post = self._get_post(post_id)
        post.is_fixed = not post.is_fixed
        return self.post_repo.save(post)

    def follow(self, post_id: int, username: str) -> models.Post:
        post = self._get_post(post_id)
        user = self._get_user_by_username(username)
        self.post_repo.set_edge(models.PostFollow, user.id, post.id, True)
        self.post_repo.commit()
        return post

    def unfollow(self, post_id: int, username: str) -> models.Post:
        post = self._get_post(post_id)
        user = self._get_user_by_username(username)
        self.post_repo.set_edge(models.PostFollow, user.id, post.id, False)
        self.post_repo.commit()
        return post
