import logging
import time
from typing import Optional

from jose import JWTError, jwt

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


class TokenService:
    """HS256 bearer tokens for the JSON API."""

    def __init__(self, secret: str, expires_seconds: int = 3600, clock=time.time):
        self.secret = secret
        self.expires_seconds = expires_seconds
        self.clock = clock

    def create(self, user) -> str:
        now = int(self.clock())
        payload = {
            "sub": str(user.id),
            "username": user.username,
            "iat": now,
            "exp": now + self.expires_seconds,
        }
        return jwt.encode(payload, self.secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> Optional[dict]:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[ALGORITHM])
        except JWTError as exc:
            logger.debug("Rejected bearer token: %s", exc)
            return None
        if payload.get("sub") is None:
            return None
        return payload

    def user_id(self, token: str) -> Optional[int]:
        payload = self.verify(token)
        if payload is None:
            return None
        try:
            return int(payload["sub"])
        except (TypeError, ValueError):
            return None
