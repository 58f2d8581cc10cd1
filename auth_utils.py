from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
import logging
from passlib.context import CryptContext
from sqlalchemy.orm import Session

import models
from config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, BCRYPT_ROUNDS, SECRET_KEY, TOKEN_COOKIE_NAME
from database import get_db

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="api/auth/login",
    # Do not automatically return a 401 when no header is provided;
    # the token may also arrive in a cookie.
    auto_error=False,
)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash."""
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password: str) -> str:
    """Generate a password hash."""
    return pwd_context.hash(password)

def create_access_token(user: models.User, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT carrying the user's id, email and role."""
    expire = models.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user.id),
        "email": user.email,
        "role": models.UserRole(user.role).value,
        "exp": expire,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Return the token claims; raises JWTError when the signature or expiry is bad."""
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])


def _credentials_exception(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> models.User:
    """Resolve the caller from the bearer header, falling back to the token cookie."""
    if not token:
        token = request.cookies.get(TOKEN_COOKIE_NAME)
    if not token:
        raise _credentials_exception("Authentication required")

    try:
        payload = decode_access_token(token)
        user_id = int(payload.get("sub"))
    except (JWTError, TypeError, ValueError):
        raise _credentials_exception()

    user = db.get(models.User, user_id)
    if user is None:
        raise _credentials_exception()
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")
    # the stored role is authoritative; the token's copy may predate a role change
    return user


def require_role(required: models.UserRole):
    """Build a dependency that admits callers whose role is at least `required`."""

    def dependency(current_user: models.User = Depends(get_current_user)) -> models.User:
        if not current_user.role.at_least(required):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not enough permissions")
        return current_user

    return dependency


get_librarian_user = require_role(models.UserRole.LIBRARIAN)
get_admin_user = require_role(models.UserRole.ADMIN)
