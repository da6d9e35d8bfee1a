from pathlib import Path
from typing import Optional

from fastapi.templating import Jinja2Templates
from starlette.requests import Request
from starlette.responses import Response

from .config import settings
from .security.sessions import csrf_token_for, current_session_user

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))
templates.env.globals["app_name"] = settings.app_name
templates.env.globals["csrf_token"] = csrf_token_for


def render(
    request: Request,
    template: str,
    context: Optional[dict] = None,
    status_code: int = 200,
    headers: Optional[dict] = None,
) -> Response:
    base_context = {
        "current_user": current_session_user(request) if "session" in request.scope else None,
        "session_warning": getattr(request.state, "session_warning", False),
        "session_time_remaining": getattr(request.state, "session_time_remaining", None),
    }
    base_context.update(context or {})
    return templates.TemplateResponse(
        request, template, base_context, status_code=status_code, headers=headers
    )
