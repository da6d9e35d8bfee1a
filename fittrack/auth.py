import logging
from typing import Optional

from fastapi import Depends, Request
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .audit import EventType
from .config import settings
from .database import get_db
from .exceptions import AuthenticationError, AuthorizationError
from .models import User
from .security.sessions import current_session_user, destroy_session

logger = logging.getLogger(__name__)

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.bcrypt_rounds,
)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def authenticate(db: Session, username: str, password: str) -> Optional[User]:
    """Look a user up by username (or email) and check the password."""
    identifier = username.strip()
    user = db.query(User).filter(User.username == identifier).first()
    if user is None and "@" in identifier:
        user = db.query(User).filter(User.email == identifier.lower()).first()
    if user is None:
        # Keep the response time similar for unknown usernames
        pwd_context.dummy_verify()
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def bearer_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def get_session_user(request: Request, db: Session = Depends(get_db)) -> Optional[User]:
    snapshot = current_session_user(request)
    if snapshot is None:
        return None
    user = db.get(User, snapshot.id)
    if user is None:
        logger.info("Session refers to deleted user %s, clearing it", snapshot.id)
        destroy_session(request)
    return user


def get_current_user(request: Request, db: Session = Depends(get_db)) -> Optional[User]:
    """Session user, or the bearer token's user when an Authorization header is sent."""
    token = bearer_token(request)
    if token is None:
        return get_session_user(request, db)

    user_id = request.app.state.tokens.user_id(token)
    user = db.get(User, user_id) if user_id is not None else None
    if user is None:
        raise AuthenticationError("Invalid or expired token")
    request.state.auth_via = "bearer"
    return user


def require_user(current_user: Optional[User] = Depends(get_current_user)) -> User:
    if not current_user:
        raise AuthenticationError("Please log in to continue.")
    return current_user


def require_session_user(current_user: Optional[User] = Depends(get_session_user)) -> User:
    if not current_user:
        raise AuthenticationError("Please log in to continue.")
    return current_user


def require_admin(request: Request, current_user: User = Depends(require_session_user)) -> User:
    if not current_user.is_admin:
        request.app.state.audit.log_security_event(
            EventType.UNAUTHORIZED_ACCESS,
            request,
            {"required": "admin"},
        )
        raise AuthorizationError("Administrator access is required.")
    return current_user
