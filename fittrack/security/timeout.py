import logging
import math
import time

from starlette.requests import Request
from starlette.responses import RedirectResponse

from ..audit import AuditLogger, EventType
from ..responses import json_error
from .backends import Clock
from .client import wants_json
from .pipeline import Guard, GuardResult, proceed, stop
from .sessions import LAST_ACTIVITY_KEY, destroy_session, read_state, session_user

logger = logging.getLogger(__name__)

WARNING_HEADER = "X-Session-Timeout-Warning"
LOGIN_URL = "/auth/login?timeout=1"


class SessionTimeoutGuard(Guard):
    """Sliding idle expiry for authenticated sessions."""

    name = "session_timeout"

    def __init__(
        self,
        audit: AuditLogger,
        idle_timeout: int = 30 * 60,
        warning_after: int = 25 * 60,
        clock: Clock = time.time,
    ):
        self.audit = audit
        self.idle_timeout = idle_timeout
        self.warning_after = warning_after
        self.clock = clock

    async def check(self, request: Request) -> GuardResult:
        session = request.scope.get("session")
        if not session:
            return proceed()
        user = session_user(read_state(session))
        if user is None:
            return proceed()

        now = self.clock()
        elapsed = now - session.get(LAST_ACTIVITY_KEY, now)

        if elapsed > self.idle_timeout:
            logger.info("Session for %s expired after %d idle seconds", user.username, elapsed)
            self.audit.log_auth(
                EventType.SESSION_TIMEOUT,
                request,
                user_id=user.id,
                username=user.username,
                reason="idle timeout",
            )
            destroy_session(request)
            if wants_json(request):
                return stop(
                    json_error(
                        request,
                        "Your session has expired due to inactivity. Please log in again.",
                        401,
                        {"timeout": True},
                    )
                )
            return stop(RedirectResponse(LOGIN_URL, status_code=303))

        headers = {}
        if elapsed > self.warning_after:
            remaining = max(0, math.ceil(self.idle_timeout - elapsed))
            request.state.session_warning = True
            request.state.session_time_remaining = remaining
            headers[WARNING_HEADER] = str(remaining)

        session[LAST_ACTIVITY_KEY] = now
        return proceed(headers)
