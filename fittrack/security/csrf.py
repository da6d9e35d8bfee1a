"""
CSRF protection with per-session double-submit tokens.

The token lives in the server-side session and must be echoed back on every
state-changing request. It is rotated after each successful check, so a token
is only good for a single mutation.
"""

import json
import logging
import secrets
from typing import Iterable, Optional

from starlette.requests import Request

from ..audit import AuditLogger, EventType
from ..exceptions import CsrfError
from ..responses import error_response
from .pipeline import Guard, GuardResult, proceed, stop
from .sessions import CSRF_KEY, generate_token, rotate_token

logger = logging.getLogger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
HEADER_NAME = "X-CSRF-Token"
FIELD_NAME = "_csrf"


async def extract_submitted_token(request: Request) -> Optional[str]:
    """Body field first, then the header, then the query string."""
    content_type = request.headers.get("content-type", "")
    token = None
    if "application/json" in content_type:
        try:
            payload = json.loads(await request.body() or b"null")
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            token = payload.get(FIELD_NAME)
    elif content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        token = form.get(FIELD_NAME)

    if not token:
        token = request.headers.get(HEADER_NAME)
    if not token:
        token = request.query_params.get(FIELD_NAME)
    return token if isinstance(token, str) else None


class CsrfGuard(Guard):
    name = "csrf"

    def __init__(self, audit: AuditLogger, tokens, exempt_paths: Iterable[str] = ("/api/auth/token",)):
        self.audit = audit
        self.tokens = tokens
        self.exempt_paths = frozenset(exempt_paths)

    def _has_valid_bearer(self, request: Request) -> bool:
        authorization = request.headers.get("authorization", "")
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() != "bearer" or not credentials:
            return False
        return self.tokens.verify(credentials.strip()) is not None

    async def check(self, request: Request) -> GuardResult:
        if request.method in SAFE_METHODS or request.url.path in self.exempt_paths:
            return proceed()
        if self._has_valid_bearer(request):
            return proceed()

        session = request.scope.setdefault("session", {})
        expected = session.get(CSRF_KEY)
        submitted = await extract_submitted_token(request)

        if not submitted or not expected or not secrets.compare_digest(submitted.encode(), expected.encode()):
            reason = "missing" if not submitted else "mismatch"
            logger.warning("CSRF token %s for %s %s", reason, request.method, request.url.path)
            self.audit.log_security_event(
                EventType.CSRF_VIOLATION,
                request,
                {"reason": reason},
            )
            # make sure the error response can hand out a usable token
            generate_token(session)
            exc = CsrfError("Invalid or missing CSRF token. Please refresh the page and try again.")
            return stop(error_response(request, exc))

        rotate_token(session)
        return proceed()
