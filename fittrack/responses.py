"""Error responses shared by the exception handlers and the request guards."""

from typing import Any, Dict, Optional

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .exceptions import CsrfError, FitTrackError, RateLimitError, ValidationError
from .security.client import wants_json
from .security.sessions import csrf_token_for
from .templating import render

ERROR_TEMPLATES = {
    404: "errors/404.html",
    429: "errors/rate_limited.html",
}


def json_error(
    request: Request,
    message: str,
    status_code: int,
    extra: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "error": message}
    if "session" in request.scope:
        body["csrfToken"] = csrf_token_for(request)
    body.update(extra or {})
    return JSONResponse(body, status_code=status_code, headers=headers)


def error_response(request: Request, exc: FitTrackError) -> Response:
    headers = None
    if isinstance(exc, RateLimitError) and exc.retry_after:
        headers = {"Retry-After": str(exc.retry_after)}

    if wants_json(request):
        extra = {}
        if isinstance(exc, ValidationError) and exc.errors:
            extra["errors"] = exc.errors
        if isinstance(exc, RateLimitError):
            extra["retryAfter"] = exc.retry_after
        return json_error(request, exc.message, exc.status_code, extra, headers)

    if isinstance(exc, CsrfError):
        template = "errors/csrf.html"
    else:
        template = ERROR_TEMPLATES.get(exc.status_code, "errors/generic.html")
    context = {
        "detail": exc.message,
        "status_code": exc.status_code,
        "errors": getattr(exc, "errors", []),
        "retry_after": getattr(exc, "retry_after", None),
        "page_title": "Error",
    }
    return render(request, template, context, status_code=exc.status_code, headers=headers)
