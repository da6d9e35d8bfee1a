"""
Server-side sessions.

The cookie only carries a signed, opaque session id; the session dict lives
in a ``SessionStore``. ``ServerSessionMiddleware`` exposes it at
``scope["session"]`` so ``request.session`` behaves exactly like Starlette's
cookie sessions.

The authentication part of a session is a tagged state stored under
``session["auth"]``; use ``read_state`` / ``write_state`` instead of poking at
the dict so illegal combinations cannot be represented.
"""

import logging
import secrets
import time
from typing import Annotated, Literal, Optional, Union

import itsdangerous
from itsdangerous.exc import BadSignature
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from starlette.datastructures import MutableHeaders
from starlette.requests import HTTPConnection
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .backends import Clock, KeyValueBackend

logger = logging.getLogger(__name__)

AUTH_KEY = "auth"
CSRF_KEY = "_csrf"
LAST_ACTIVITY_KEY = "last_activity"

SESSION_ID_SCOPE_KEY = "fittrack.session_id"
REGENERATE_SCOPE_KEY = "fittrack.session_regenerate"


class SessionStore:
    prefix = "session:"

    def __init__(self, backend: KeyValueBackend, ttl_seconds: int, clock: Clock = time.time):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def new_id(self) -> str:
        return secrets.token_urlsafe(32)

    def load(self, session_id: str) -> Optional[dict]:
        return self.backend.get(self.prefix + session_id)

    def save(self, session_id: str, data: dict) -> None:
        self.backend.set(self.prefix + session_id, data, ttl=self.ttl_seconds)

    def destroy(self, session_id: str) -> None:
        self.backend.delete(self.prefix + session_id)

    def purge_expired(self) -> int:
        purge = getattr(self.backend, "purge_expired", None)
        return purge() if purge else 0


class ServerSessionMiddleware:
    def __init__(
        self,
        app: ASGIApp,
        store: SessionStore,
        secret_key: str,
        session_cookie: str = "session",
        max_age: int = 24 * 60 * 60,
        path: str = "/",
        same_site: str = "strict",
        https_only: bool = False,
    ) -> None:
        self.app = app
        self.store = store
        self.signer = itsdangerous.TimestampSigner(str(secret_key))
        self.session_cookie = session_cookie
        self.max_age = max_age
        self.path = path
        self.security_flags = "httponly; samesite=" + same_site
        if https_only:
            self.security_flags += "; secure"

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        connection = HTTPConnection(scope)
        cookie = connection.cookies.get(self.session_cookie)
        session_id = self._unsign(cookie) if cookie else None
        data = self.store.load(session_id) if session_id else None
        if data is None:
            session_id = None

        scope["session"] = data or {}
        scope[SESSION_ID_SCOPE_KEY] = session_id
        scope[REGENERATE_SCOPE_KEY] = False

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                current_id = scope.get(SESSION_ID_SCOPE_KEY)
                if scope["session"]:
                    if current_id is None or scope.get(REGENERATE_SCOPE_KEY):
                        if current_id:
                            self.store.destroy(current_id)
                        current_id = self.store.new_id()
                        scope[SESSION_ID_SCOPE_KEY] = current_id
                    self.store.save(current_id, dict(scope["session"]))
                    signed = self.signer.sign(current_id.encode("utf-8")).decode("utf-8")
                    headers.append("Set-Cookie", self._cookie(signed, f"Max-Age={self.max_age}; "))
                elif current_id or cookie:
                    if current_id:
                        self.store.destroy(current_id)
                    headers.append(
                        "Set-Cookie",
                        self._cookie("null", "expires=Thu, 01 Jan 1970 00:00:00 GMT; "),
                    )
            await send(message)

        await self.app(scope, receive, send_wrapper)

    def _unsign(self, cookie: str) -> Optional[str]:
        try:
            return self.signer.unsign(cookie.encode("utf-8"), max_age=self.max_age).decode("utf-8")
        except BadSignature:
            logger.debug("Discarding session cookie with a bad signature")
            return None

    def _cookie(self, value: str, lifetime: str) -> str:
        return f"{self.session_cookie}={value}; path={self.path}; {lifetime}{self.security_flags}"


def regenerate_session(request) -> None:
    """Move the session data to a fresh id when the response is sent."""
    request.scope[REGENERATE_SCOPE_KEY] = True


def destroy_session(request) -> None:
    request.session.clear()
    regenerate_session(request)


class SessionUser(BaseModel):
    """Snapshot of the authenticated user kept in the session."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    first_name: str = ""
    last_name: str = ""
    is_admin: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Anonymous(BaseModel):
    kind: Literal["anonymous"] = "anonymous"


class Authenticated(BaseModel):
    kind: Literal["authenticated"] = "authenticated"
    user: SessionUser


class PasswordResetPending(BaseModel):
    """Code verified; the visitor may now choose a new password for user_id."""

    kind: Literal["password_reset_pending"] = "password_reset_pending"
    user_id: int


class AccountDeletionPending(BaseModel):
    kind: Literal["account_deletion_pending"] = "account_deletion_pending"
    user: SessionUser
    verification_id: int


SessionState = Annotated[
    Union[Anonymous, Authenticated, PasswordResetPending, AccountDeletionPending],
    Field(discriminator="kind"),
]

_state_adapter = TypeAdapter(SessionState)


def read_state(session: dict):
    raw = session.get(AUTH_KEY)
    if not raw:
        return Anonymous()
    try:
        return _state_adapter.validate_python(raw)
    except PydanticValidationError:
        logger.warning("Discarding malformed session state")
        return Anonymous()


def write_state(session: dict, state) -> None:
    if isinstance(state, Anonymous):
        session.pop(AUTH_KEY, None)
    else:
        session[AUTH_KEY] = state.model_dump()


def session_user(state) -> Optional[SessionUser]:
    if isinstance(state, (Authenticated, AccountDeletionPending)):
        return state.user
    return None


def current_session_user(request) -> Optional[SessionUser]:
    return session_user(read_state(request.session))


def login_session(request, user) -> SessionUser:
    """Store an Authenticated state for ``user`` under a fresh session id."""
    snapshot = SessionUser.model_validate(user)
    write_state(request.session, Authenticated(user=snapshot))
    clock = getattr(request.app.state, "clock", time.time)
    request.session[LAST_ACTIVITY_KEY] = clock()
    regenerate_session(request)
    return snapshot


def generate_token(session: dict) -> str:
    """Return the session's CSRF token, creating one on first use."""
    token = session.get(CSRF_KEY)
    if not token:
        token = secrets.token_hex(32)
        session[CSRF_KEY] = token
    return token


def rotate_token(session: dict) -> str:
    session[CSRF_KEY] = secrets.token_hex(32)
    return session[CSRF_KEY]


def csrf_token_for(request) -> str:
    session = request.scope.setdefault("session", {})
    return generate_token(session)


def refresh_session_user(request, user) -> None:
    """Update the user snapshot after profile changes, keeping the state kind."""
    state = read_state(request.session)
    if isinstance(state, (Authenticated, AccountDeletionPending)):
        write_state(request.session, state.model_copy(update={"user": SessionUser.model_validate(user)}))
