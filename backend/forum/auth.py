"""Authentication helpers and FastAPI security dependencies.

This module decodes the bearer JWT issued by `AuthService`, provides
`get_current_user`, which returns the authenticated `User` row, and
`require_role`, which additionally checks the user's authorities.

Token problems raise HTTPException(401) and missing authorities
HTTPException(403) so they can be used directly inside route
dependencies.
"""

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from sqlmodel import Session

from .config import settings
from .database import get_session
from . import models, repositories

bearer_scheme = HTTPBearer()


def decode_token(token: str):
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired')
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail='invalid token')


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(bearer_scheme),
    db: Session = Depends(get_session),
) -> models.User:
    """FastAPI dependency that returns the authenticated user.

    Roles are read from the database rather than from the token claims,
    so revoking ADMIN takes effect immediately.
    """
    payload = decode_token(credentials.credentials)
    user_id = payload.get('user_id')
    if not user_id:
        raise HTTPException(status_code=401, detail='invalid token payload')
    user = repositories.UserRepository(db).find_by_id(user_id)
    if not user:
        raise HTTPException(status_code=401, detail='user not found')
    # deactivation revokes tokens issued earlier
    if not user.is_activated:
        raise HTTPException(status_code=401, detail='user not activated')
    return user


def require_role(name: str):
    """Build a dependency that only lets through users holding role `name`."""
    def _dependency(user: models.User = Depends(get_current_user)) -> models.User:
        if name.upper() not in user.role_names():
            raise HTTPException(status_code=403, detail=f'{name.upper()} authority required')
        return user
    return _dependency
