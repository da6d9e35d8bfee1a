import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from .. import activities, models, verification
from ..audit import EventType
from ..auth import require_session_user, verify_password
from ..database import get_db
from ..exceptions import ValidationError
from ..schemas import AccountDeletionRequest, CodeSubmission, EmailChangeRequest, ProfileUpdate
from ..security.sessions import (
    AccountDeletionPending,
    SessionUser,
    destroy_session,
    read_state,
    refresh_session_user,
    write_state,
)
from ..templating import render
from .common import json_ok, parse, read_payload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["account"])


def _send_code(request: Request, user: models.User, code: models.EmailVerification, to_email: str) -> None:
    request.app.state.email.send_verification_code(to_email, code.verification_code, code.purpose)
    request.app.state.audit.log_auth(
        EventType.EMAIL_VERIFICATION_REQUESTED, request, user.id, user.username, reason=code.purpose
    )


def _ttl(request: Request) -> int:
    return request.app.state.settings.verification_code_ttl_minutes


@router.get("/profile", response_class=HTMLResponse)
def profile(
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    return render(
        request,
        "account/profile.html",
        {
            "user": current_user,
            "stats": activities.user_stats(db, current_user.id),
            "deletion_pending": isinstance(read_state(request.session), AccountDeletionPending),
            "page_title": "Profile",
        },
    )


@router.post("/profile")
async def update_profile(
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    form = parse(ProfileUpdate, await read_payload(request))
    changes = {}
    for field in ("first_name", "last_name"):
        old, new = getattr(current_user, field), getattr(form, field)
        if old != new:
            changes[field] = {"old": old, "new": new}
            setattr(current_user, field, new)
    db.commit()

    refresh_session_user(request, current_user)
    if changes:
        request.app.state.audit.log_data_change(
            EventType.ACCOUNT_UPDATE, request, "user", current_user.id, changes, actor=current_user
        )
    return json_ok(
        request,
        {"message": "Profile updated", "user": SessionUser.model_validate(current_user).model_dump()},
    )


@router.post("/email/request-verification")
async def request_email_change(
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    form = parse(EmailChangeRequest, await read_payload(request))
    if form.new_email == current_user.email:
        raise ValidationError("New email must be different from the current email")
    if db.query(models.User).filter(models.User.email == form.new_email).first():
        raise ValidationError("Email is already in use")

    code = verification.create_verification(
        db, current_user, verification.EMAIL_CHANGE, new_email=form.new_email, ttl_minutes=_ttl(request)
    )
    _send_code(request, current_user, code, form.new_email)
    return json_ok(request, {"message": f"A verification code has been sent to {form.new_email}"})


@router.post("/email/verify-code")
async def verify_email_change(
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    form = parse(CodeSubmission, await read_payload(request))
    consumed = verification.consume_verification(db, current_user.id, verification.EMAIL_CHANGE, form.code)
    if consumed is None:
        raise ValidationError("Invalid or expired verification code")
    if db.query(models.User).filter(models.User.email == consumed.new_email).first():
        raise ValidationError("Email is already in use")

    old_email = current_user.email
    current_user.email = consumed.new_email
    db.commit()

    refresh_session_user(request, current_user)
    request.app.state.audit.log_data_change(
        EventType.ACCOUNT_UPDATE,
        request,
        "user",
        current_user.id,
        {"email": {"old": old_email, "new": current_user.email}},
        actor=current_user,
    )
    return json_ok(request, {"message": "Email address updated", "email": current_user.email})


@router.post("/account/delete/request-code")
async def request_account_deletion(
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    form = parse(AccountDeletionRequest, await read_payload(request))
    if not verify_password(form.password, current_user.password_hash):
        raise ValidationError("Password is incorrect")

    code = verification.create_verification(
        db, current_user, verification.ACCOUNT_DELETION, ttl_minutes=_ttl(request)
    )
    write_state(
        request.session,
        AccountDeletionPending(user=SessionUser.model_validate(current_user), verification_id=code.id),
    )
    _send_code(request, current_user, code, current_user.email)
    return json_ok(request, {"message": "A confirmation code has been sent to your email"})


@router.post("/account/delete")
async def delete_account(
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    state = read_state(request.session)
    if not isinstance(state, AccountDeletionPending) or state.user.id != current_user.id:
        raise ValidationError("Please request a deletion code first")

    form = parse(CodeSubmission, await read_payload(request))
    consumed = verification.consume_verification(
        db,
        current_user.id,
        verification.ACCOUNT_DELETION,
        form.code,
        verification_id=state.verification_id,
    )
    if consumed is None:
        raise ValidationError("Invalid or expired verification code")

    # Written before the delete so the entry still names the user
    request.app.state.audit.log_data_change(
        EventType.ACCOUNT_DELETE,
        request,
        "user",
        current_user.id,
        {"username": current_user.username, "email": current_user.email},
        actor=current_user,
    )
    username = current_user.username
    db.delete(current_user)
    db.commit()
    destroy_session(request)
    logger.info("Deleted account %s", username)
    return json_ok(request, {"message": "Your account has been deleted", "redirect": "/"})
