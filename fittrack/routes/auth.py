import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models, verification
from ..audit import EventType
from ..auth import authenticate, get_session_user, hash_password, require_session_user, verify_password
from ..database import get_db
from ..exceptions import AuthenticationError, ValidationError
from ..password_policy import validate_password
from ..schemas import (
    ForgotPasswordRequest,
    LoginForm,
    PasswordChangeForm,
    PasswordResetForm,
    PasswordResetVerify,
    RegisterForm,
)
from ..security.client import wants_json
from ..security.rate_limit import get_ticket
from ..security.sessions import (
    Anonymous,
    PasswordResetPending,
    csrf_token_for,
    current_session_user,
    destroy_session,
    login_session,
    read_state,
    regenerate_session,
    write_state,
)
from ..templating import render
from .common import form_values, json_ok, parse, read_payload, try_parse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

DEFAULT_REDIRECT = "/my-activities"


def _safe_next(target: Optional[str]) -> str:
    if target and target.startswith("/") and not target.startswith("//"):
        return target
    return DEFAULT_REDIRECT


def _new_password_errors(new_password: str, confirm_password: str) -> List[str]:
    _, errors = validate_password(new_password)
    if new_password != confirm_password:
        errors.append("Passwords do not match")
    return errors


def _form_error(request: Request, template: str, context: dict, errors: List[str], status_code: int):
    if wants_json(request):
        return JSONResponse(
            {
                "success": False,
                "error": errors[0] if errors else "Invalid input",
                "errors": errors,
                "csrfToken": csrf_token_for(request),
            },
            status_code=status_code,
        )
    context = dict(context, errors=errors)
    return render(request, template, context, status_code=status_code)


@router.get("/auth/csrf-token")
def csrf_token(request: Request):
    return {"csrfToken": csrf_token_for(request)}


@router.get("/auth/register", response_class=HTMLResponse)
def register_form(request: Request, current_user=Depends(get_session_user)):
    if current_user:
        return RedirectResponse(url=DEFAULT_REDIRECT, status_code=status.HTTP_303_SEE_OTHER)
    return render(
        request,
        "auth/register.html",
        {"errors": [], "form_values": {}, "page_title": "Create account"},
    )


@router.post("/auth/register")
async def register(request: Request, db: Session = Depends(get_db)):
    ticket = get_ticket(request)
    data = await read_payload(request)
    context = {"form_values": form_values(data), "page_title": "Create account"}

    form, errors = try_parse(RegisterForm, data)
    if form is not None:
        errors = _new_password_errors(form.password, form.confirm_password)
        if db.query(models.User).filter(models.User.username == form.username).first():
            errors.append("Username is already taken")
        if db.query(models.User).filter(models.User.email == form.email).first():
            errors.append("Email is already registered")

    if errors:
        if ticket:
            ticket.record_increment()
        return _form_error(request, "auth/register.html", context, errors, status.HTTP_400_BAD_REQUEST)

    user = models.User(
        username=form.username,
        email=form.email,
        first_name=form.first_name,
        last_name=form.last_name,
        password_hash=hash_password(form.password),
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if ticket:
            ticket.record_increment()
        return _form_error(
            request,
            "auth/register.html",
            context,
            ["Username or email is already registered"],
            status.HTTP_400_BAD_REQUEST,
        )
    db.refresh(user)

    if ticket:
        ticket.record_success()
    snapshot = login_session(request, user)
    request.app.state.audit.log_auth(EventType.REGISTER, request, user.id, user.username)
    logger.info("Registered user %s", user.username)

    if wants_json(request):
        return json_ok(
            request,
            {"user": snapshot.model_dump(), "redirect": DEFAULT_REDIRECT},
            status_code=status.HTTP_201_CREATED,
        )
    return RedirectResponse(url=DEFAULT_REDIRECT, status_code=status.HTTP_303_SEE_OTHER)


@router.get("/auth/login", response_class=HTMLResponse)
def login_form(request: Request, current_user=Depends(get_session_user)):
    if current_user:
        return RedirectResponse(url=DEFAULT_REDIRECT, status_code=status.HTTP_303_SEE_OTHER)
    return render(
        request,
        "auth/login.html",
        {
            "errors": [],
            "form_values": {},
            "timed_out": request.query_params.get("timeout") == "1",
            "next": request.query_params.get("next", ""),
            "page_title": "Login",
        },
    )


@router.post("/auth/login")
async def login(request: Request, db: Session = Depends(get_db)):
    ticket = get_ticket(request)
    data = await read_payload(request)
    context = {
        "form_values": form_values(data),
        "next": data.get("next", ""),
        "page_title": "Login",
    }

    form, errors = try_parse(LoginForm, data)
    if form is None:
        if ticket:
            ticket.record_increment()
        return _form_error(request, "auth/login.html", context, errors, status.HTTP_400_BAD_REQUEST)

    user = authenticate(db, form.username, form.password)
    if user is None:
        locked = ticket.record_increment() if ticket else False
        request.app.state.audit.log_auth(
            EventType.LOGIN_FAILURE, request, username=form.username[:50], reason="invalid credentials"
        )
        message = "Invalid username or password"
        if locked:
            message += ". Too many failed attempts, please try again later"
        return _form_error(request, "auth/login.html", context, [message], status.HTTP_401_UNAUTHORIZED)

    if ticket:
        ticket.record_success()
    snapshot = login_session(request, user)
    request.app.state.audit.log_auth(EventType.LOGIN_SUCCESS, request, user.id, user.username)

    redirect_to = _safe_next(data.get("next"))
    if wants_json(request):
        return json_ok(request, {"user": snapshot.model_dump(), "redirect": redirect_to})
    return RedirectResponse(url=redirect_to, status_code=status.HTTP_303_SEE_OTHER)


@router.post("/auth/logout")
def logout(request: Request):
    user = current_session_user(request)
    if user:
        request.app.state.audit.log_auth(EventType.LOGOUT, request, user.id, user.username)
    destroy_session(request)
    if wants_json(request):
        return JSONResponse({"success": True, "redirect": "/auth/login"})
    return RedirectResponse(url="/auth/login", status_code=status.HTTP_303_SEE_OTHER)


@router.get("/auth/change-password", response_class=HTMLResponse)
def change_password_form(request: Request, current_user=Depends(require_session_user)):
    return render(
        request,
        "auth/change_password.html",
        {"errors": [], "message": None, "page_title": "Change password"},
    )


@router.post("/auth/change-password")
async def change_password(
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    data = await read_payload(request)
    context = {"message": None, "page_title": "Change password"}

    form, errors = try_parse(PasswordChangeForm, data)
    if form is not None:
        if not verify_password(form.current_password, current_user.password_hash):
            errors = ["Current password is incorrect"]
        else:
            errors = _new_password_errors(form.new_password, form.confirm_password)
            if form.new_password == form.current_password:
                errors.append("New password must be different from the current password")
    if errors:
        return _form_error(request, "auth/change_password.html", context, errors, status.HTTP_400_BAD_REQUEST)

    current_user.password_hash = hash_password(form.new_password)
    db.commit()
    regenerate_session(request)
    request.app.state.audit.log_auth(
        EventType.PASSWORD_CHANGE, request, current_user.id, current_user.username
    )

    message = "Your password has been changed"
    if wants_json(request):
        return json_ok(request, {"message": message})
    return render(
        request,
        "auth/change_password.html",
        dict(context, errors=[], message=message),
    )


@router.get("/auth/forgot-password", response_class=HTMLResponse)
def forgot_password_form(request: Request):
    return render(request, "auth/forgot_password.html", {"page_title": "Reset password"})


@router.post("/auth/forgot-password")
async def forgot_password(request: Request, db: Session = Depends(get_db)):
    form = parse(ForgotPasswordRequest, await read_payload(request))
    user = db.query(models.User).filter(models.User.email == form.email).first()
    if user:
        code = verification.create_verification(
            db,
            user,
            verification.PASSWORD_RESET,
            ttl_minutes=request.app.state.settings.verification_code_ttl_minutes,
        )
        request.app.state.email.send_verification_code(user.email, code.verification_code, code.purpose)
        request.app.state.audit.log_auth(
            EventType.EMAIL_VERIFICATION_REQUESTED,
            request,
            user.id,
            user.username,
            reason=verification.PASSWORD_RESET,
        )
    else:
        logger.info("Password reset requested for unknown email")

    # Same answer whether or not the account exists
    return json_ok(
        request,
        {"message": "If an account exists for that email, a verification code has been sent."},
    )


@router.post("/auth/verify-password-reset")
async def verify_password_reset(request: Request, db: Session = Depends(get_db)):
    form = parse(PasswordResetVerify, await read_payload(request))
    user = db.query(models.User).filter(models.User.email == form.email).first()
    consumed = None
    if user:
        consumed = verification.consume_verification(db, user.id, verification.PASSWORD_RESET, form.code)
    if consumed is None:
        raise ValidationError("Invalid or expired verification code")

    write_state(request.session, PasswordResetPending(user_id=user.id))
    regenerate_session(request)
    return json_ok(request, {"message": "Code verified. Choose a new password."})


@router.post("/auth/reset-password")
async def reset_password(request: Request, db: Session = Depends(get_db)):
    state = read_state(request.session)
    if not isinstance(state, PasswordResetPending):
        raise AuthenticationError("Your password reset session has expired. Please request a new code.")

    form = parse(PasswordResetForm, await read_payload(request))
    errors = _new_password_errors(form.new_password, form.confirm_password)
    if errors:
        raise ValidationError(errors=errors)

    user = db.get(models.User, state.user_id)
    if user is None:
        write_state(request.session, Anonymous())
        raise AuthenticationError("Your password reset session has expired. Please request a new code.")

    user.password_hash = hash_password(form.new_password)
    db.commit()
    write_state(request.session, Anonymous())
    regenerate_session(request)
    request.app.state.audit.log_auth(EventType.PASSWORD_RESET, request, user.id, user.username)
    return json_ok(request, {"message": "Your password has been reset. Please log in.", "redirect": "/auth/login"})
