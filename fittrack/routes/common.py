"""Small helpers shared by the routers."""

from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ValidationError
from ..schemas import error_messages
from ..security.sessions import csrf_token_for

ModelT = TypeVar("ModelT", bound=BaseModel)


async def read_payload(request: Request) -> Dict[str, Any]:
    """Request body as a dict, from JSON or from a submitted form."""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            payload = await request.json()
        except ValueError:
            raise ValidationError("Request body is not valid JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        return payload
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def parse(model: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(errors=error_messages(exc))


def try_parse(model: Type[ModelT], data: Dict[str, Any]):
    """Like ``parse`` but returns ``(instance, errors)`` for re-rendering forms."""
    try:
        return model.model_validate(data), []
    except PydanticValidationError as exc:
        return None, error_messages(exc)


def json_ok(request: Request, data: Optional[Dict[str, Any]] = None, status_code: int = 200) -> JSONResponse:
    body: Dict[str, Any] = {"success": True}
    body.update(data or {})
    body["csrfToken"] = csrf_token_for(request)
    return JSONResponse(body, status_code=status_code)


def form_values(data: Dict[str, Any]) -> Dict[str, Any]:
    """Submitted values safe to echo back into a form."""
    return {
        key: value
        for key, value in data.items()
        if not key.startswith("_") and "password" not in key
    }
