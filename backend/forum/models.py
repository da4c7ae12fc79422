"""SQLModel data models.

This module defines the forum's database tables using SQLModel. Each
many-to-many relationship (roles, subject access, subject follows, post
reactions) is backed by exactly one link table; the collections exposed
on both sides are views over the same rows, so a single insert or
delete keeps both sides consistent.
"""

from typing import Optional
from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import Index, func
from datetime import datetime, timezone
from typing import List


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRoleLink(SQLModel, table=True):
    user_id: Optional[int] = Field(default=None, foreign_key='user.id', primary_key=True)
    role_id: Optional[int] = Field(default=None, foreign_key='role.id', primary_key=True)


class SubjectAccess(SQLModel, table=True):
    """Edge granting a user access to a subject."""
    user_id: Optional[int] = Field(default=None, foreign_key='user.id', primary_key=True)
    subject_id: Optional[int] = Field(default=None, foreign_key='subject.id', primary_key=True)


class SubjectFollow(SQLModel, table=True):
    """Edge recording that a user follows a subject."""
    user_id: Optional[int] = Field(default=None, foreign_key='user.id', primary_key=True)
    subject_id: Optional[int] = Field(default=None, foreign_key='subject.id', primary_key=True)


class PostLike(SQLModel, table=True):
    user_id: Optional[int] = Field(default=None, foreign_key='user.id', primary_key=True)
    post_id: Optional[int] = Field(default=None, foreign_key='post.id', primary_key=True)


class PostDislike(SQLModel, table=True):
    user_id: Optional[int] = Field(default=None, foreign_key='user.id', primary_key=True)
    post_id: Optional[int] = Field(default=None, foreign_key='post.id', primary_key=True)


class PostFollow(SQLModel, table=True):
    user_id: Optional[int] = Field(default=None, foreign_key='user.id', primary_key=True)
    post_id: Optional[int] = Field(default=None, foreign_key='post.id', primary_key=True)


class PostFile(SQLModel, table=True):
    post_id: Optional[int] = Field(default=None, foreign_key='post.id', primary_key=True)
    file_id: Optional[int] = Field(default=None, foreign_key='file.id', primary_key=True, unique=True)


class File(SQLModel, table=True):
    """External media reference.

    `deletion_handle` is the identifier the media store needs to remove
    the object again. A file belongs to exactly one user, subject or post.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    url: str
    deletion_handle: str


class Role(SQLModel, table=True):
    """A named authority such as `USER` or `ADMIN`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    users: List['User'] = Relationship(back_populates='roles', link_model=UserRoleLink)


class User(SQLModel, table=True):
    """A registered forum member.

    Fields:
    - `username`/`email`: unique, compared case-insensitively
    - `password_hash`: hashed password string (never store plaintext)
    - `activation_code`/`code_issued_at`: pending activation or password
      reset code; cleared once consumed
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    email: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    is_activated: bool = False
    activation_code: Optional[int] = None
    code_issued_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    avatar_id: Optional[int] = Field(default=None, foreign_key='file.id', unique=True)

    avatar: Optional[File] = Relationship(sa_relationship_kwargs={'foreign_keys': '[User.avatar_id]'})
    roles: List[Role] = Relationship(back_populates='users', link_model=UserRoleLink)
    has_access: List['Subject'] = Relationship(back_populates='users_with_access', link_model=SubjectAccess)
    follows_subjects: List['Subject'] = Relationship(back_populates='users_following', link_model=SubjectFollow)

    def role_names(self) -> List[str]:
        return sorted(r.name for r in self.roles)

    def is_admin(self) -> bool:
        return any(r.name.upper() == 'ADMIN' for r in self.roles)


class Subject(SQLModel, table=True):
    """A forum area grouping modules; access to it is granted per user."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    avatar_id: Optional[int] = Field(default=None, foreign_key='file.id', unique=True)

    avatar: Optional[File] = Relationship(sa_relationship_kwargs={'foreign_keys': '[Subject.avatar_id]'})
    modules: List['Module'] = Relationship(
        back_populates='subject', sa_relationship_kwargs={'cascade': 'all, delete-orphan'}
    )
    users_with_access: List[User] = Relationship(back_populates='has_access', link_model=SubjectAccess)
    users_following: List[User] = Relationship(back_populates='follows_subjects', link_model=SubjectFollow)

    @property
    def total_modules(self) -> int:
        return len(self.modules)


class Module(SQLModel, table=True):
    """A topic inside a subject; posts are created in modules."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    description: Optional[str] = None
    subject_id: int = Field(foreign_key='subject.id', index=True)
    subject: Optional[Subject] = Relationship(back_populates='modules')
    posts: List['Post'] = Relationship(
        back_populates='module', sa_relationship_kwargs={'cascade': 'all, delete-orphan'}
    )

    @property
    def total_posts(self) -> int:
        return len(self.posts)


class Post(SQLModel, table=True):
    """A message posted by a user inside a module."""
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    content: str
    is_fixed: bool = False
    author_id: Optional[int] = Field(default=None, foreign_key='user.id', index=True)
    module_id: int = Field(foreign_key='module.id', index=True)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    author: Optional[User] = Relationship()
    module: Optional[Module] = Relationship(back_populates='posts')
    files: List[File] = Relationship(link_model=PostFile)
    liked_by: List[User] = Relationship(link_model=PostLike)
    disliked_by: List[User] = Relationship(link_model=PostDislike)
    followers: List[User] = Relationship(link_model=PostFollow)


# case-insensitive uniqueness is enforced by the store, not only by lookups
Index('uq_user_username_lower', func.lower(User.__table__.c.username), unique=True)
Index('uq_user_email_lower', func.lower(User.__table__.c.email), unique=True)
