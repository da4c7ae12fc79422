"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests. Output schemas are built from the
SQLModel rows with the `from_*` helpers.
"""

from datetime import datetime
from pydantic import BaseModel
from typing import List, Optional

from . import models


class LoginIn(BaseModel):
    username: str
    password: str
    remember_me: bool = False


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str
    token_type: str = "Bearer"


class ActivateIn(BaseModel):
    username: str
    activation_code: int


class ForgotPassIn(BaseModel):
    email: str


class NewPassIn(BaseModel):
    username: str
    new_pass: str
    validation_code: int


class UpdateUserIn(BaseModel):
    """Payload for `PUT /api/user/{id}`.

    `is_activated` and `has_access` are only applied when present.
    """
    username: str
    email: str
    is_activated: Optional[bool] = None
    has_access: Optional[List[str]] = None


class SubjectNameIn(BaseModel):
    name: str


class ModuleIn(BaseModel):
    name: str
    description: Optional[str] = None


class MessageOut(BaseModel):
    message: str


class UrlOut(BaseModel):
    url: str
    message: Optional[str] = None


class UserOut(BaseModel):
    id: int
    username: str
    email: str
    is_activated: bool
    roles: List[str]
    has_access: List[str]
    follows_subjects: List[str]
    avatar: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_user(cls, user: models.User, message: Optional[str] = None) -> "UserOut":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            is_activated=user.is_activated,
            roles=user.role_names(),
            has_access=sorted(s.name for s in user.has_access),
            follows_subjects=sorted(s.name for s in user.follows_subjects),
            avatar=user.avatar.url if user.avatar else None,
            message=message,
        )


class ModuleOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    total_posts: int

    @classmethod
    def from_module(cls, module: models.Module) -> "ModuleOut":
        return cls(id=module.id, name=module.name, description=module.description, total_posts=module.total_posts)


class SubjectOut(BaseModel):
    id: int
    name: str
    avatar: Optional[str] = None
    total_modules: int
    modules: List[ModuleOut]
    message: Optional[str] = None

    @classmethod
    def from_subject(cls, subject: models.Subject, message: Optional[str] = None) -> "SubjectOut":
        return cls(
            id=subject.id,
            name=subject.name,
            avatar=subject.avatar.url if subject.avatar else None,
            total_modules=subject.total_modules,
            modules=[ModuleOut.from_module(m) for m in sorted(subject.modules, key=lambda m: m.id)],
            message=message,
        )


class PostOut(BaseModel):
    id: int
    title: str
    content: str
    is_fixed: bool
    module_id: int
    author_id: Optional[int] = None
    author: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    total_likes: int
    total_dislikes: int
    total_followers: int
    files: List[str]
    liked: bool = False
    disliked: bool = False
    following: bool = False
    message: Optional[str] = None

    @classmethod
    def from_post(cls, post: models.Post, viewer: Optional[models.User] = None,
                  message: Optional[str] = None) -> "PostOut":
        """Build the representation; `viewer` fills the caller's reaction flags."""
        viewer_id = viewer.id if viewer is not None else None
        return cls(
            id=post.id,
            title=post.title,
            content=post.content,
            is_fixed=post.is_fixed,
            module_id=post.module_id,
            author_id=post.author_id,
            author=post.author.username if post.author else None,
            created_at=post.created_at,
            updated_at=post.updated_at,
            total_likes=len(post.liked_by),
            total_dislikes=len(post.disliked_by),
            total_followers=len(post.followers),
            files=[f.url for f in post.files],
            liked=any(u.id == viewer_id for u in post.liked_by),
            disliked=any(u.id == viewer_id for u in post.disliked_by),
            following=any(u.id == viewer_id for u in post.followers),
            message=message,
        )
