"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
roles, subjects, modules, posts). Repositories return SQLModel objects;
`save` and `delete` commit, and roll the session back before re-raising
when the store rejects the write.
"""

from typing import List, Optional
from sqlmodel import Session, select
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from . import models


class _Repository:
    def __init__(self, session: Session):
        self.session = session

    def _commit(self):
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def save(self, obj):
        """Persist `obj` (new or changed) and return the refreshed instance."""
        self.session.add(obj)
        self._commit()
        self.session.refresh(obj)
        return obj


class UserRepository(_Repository):
    """CRUD operations for `User` objects."""

    def find_by_id(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)

    def find_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username (case-insensitive) or `None`."""
        stmt = select(models.User).where(func.lower(models.User.username) == username.strip().lower())
        return self.session.exec(stmt).first()

    def find_by_email(self, email: str) -> Optional[models.User]:
        """Return a `User` by email (case-insensitive) or `None`."""
        stmt = select(models.User).where(func.lower(models.User.email) == email.strip().lower())
        return self.session.exec(stmt).first()

    def exists_by_username(self, username: str, exclude_id: Optional[int] = None) -> bool:
        """True if another user (not `exclude_id`) holds `username`."""
        user = self.find_by_username(username)
        return user is not None and user.id != exclude_id

    def exists_by_email(self, email: str, exclude_id: Optional[int] = None) -> bool:
        user = self.find_by_email(email)
        return user is not None and user.id != exclude_id

    def find_all(self) -> List[models.User]:
        return self.session.exec(select(models.User).order_by(models.User.id)).all()

    def delete(self, user: models.User) -> None:
        """Remove a user, its reaction edges and its avatar row.

        Posts written by the user stay in place without an author.
        """
        avatar = user.avatar
        for link in (models.PostLike, models.PostDislike, models.PostFollow):
            for edge in self.session.exec(select(link).where(link.user_id == user.id)).all():
                self.session.delete(edge)
        for post in self.session.exec(select(models.Post).where(models.Post.author_id == user.id)).all():
            post.author_id = None
            self.session.add(post)
        self.session.flush()
        self.session.delete(user)
        if avatar is not None:
            self.session.flush()
            self.session.delete(avatar)
        self._commit()


class RoleRepository(_Repository):
    def find_by_name(self, name: str) -> Optional[models.Role]:
        stmt = select(models.Role).where(models.Role.name == name.upper())
        return self.session.exec(stmt).first()


class SubjectRepository(_Repository):
    """Lookups for `Subject` records and their access/follow edges."""

    def find_by_id(self, subject_id: int) -> Optional[models.Subject]:
        return self.session.get(models.Subject, subject_id)

    def find_by_name(self, name: str) -> Optional[models.Subject]:
        stmt = select(models.Subject).where(models.Subject.name == name.strip())
        return self.session.exec(stmt).first()

    def find_all(self) -> List[models.Subject]:
        return self.session.exec(select(models.Subject).order_by(models.Subject.name)).all()

    def resolve_names(self, names: List[str]) -> List[models.Subject]:
        """Return the subjects matching `names`, skipping unknown or repeated names."""
        found = []
        for name in names or []:
            if not name or not name.strip():
                continue
            subject = self.find_by_name(name)
            if subject is not None and subject not in found:
                found.append(subject)
        return found

    def has_access(self, user_id: int, subject_id: int) -> bool:
        return self.session.get(models.SubjectAccess, (user_id, subject_id)) is not None

    def is_following(self, user_id: int, subject_id: int) -> bool:
        return self.session.get(models.SubjectFollow, (user_id, subject_id)) is not None

    def add_edge(self, link, user_id: int, subject_id: int) -> bool:
        """Insert a single access/follow edge; returns False if it already existed."""
        if self.session.get(link, (user_id, subject_id)) is not None:
            return False
        self.session.add(link(user_id=user_id, subject_id=subject_id))
        self._commit()
        return True

    def remove_edge(self, link, user_id: int, subject_id: int) -> bool:
        edge = self.session.get(link, (user_id, subject_id))
        if edge is None:
            return False
        self.session.delete(edge)
        self._commit()
        return True


class ModuleRepository(_Repository):
    def find_by_id(self, module_id: int) -> Optional[models.Module]:
        return self.session.get(models.Module, module_id)


class PostRepository(_Repository):
    """CRUD operations for `Post` records and reaction edges."""

    def find_by_id(self, post_id: int) -> Optional[models.Post]:
        return self.session.get(models.Post, post_id)

    def exists_by_id(self, post_id: int) -> bool:
        return self.find_by_id(post_id) is not None

    def has_edge(self, link, user_id: int, post_id: int) -> bool:
        return self.session.get(link, (user_id, post_id)) is not None

    def set_edge(self, link, user_id: int, post_id: int, present: bool) -> None:
        """Add or remove a like/dislike/follow edge without committing."""
        edge = self.session.get(link, (user_id, post_id))
        if present and edge is None:
            self.session.add(link(user_id=user_id, post_id=post_id))
        elif not present and edge is not None:
            self.session.delete(edge)

    def commit(self) -> None:
        self._commit()

    def delete(self, post: models.Post) -> None:
        """Remove a post; reaction and attachment edges go with it."""
        files = list(post.files)
        self.session.delete(post)
        self.session.flush()
        for f in files:
            self.session.delete(f)
        self._commit()
