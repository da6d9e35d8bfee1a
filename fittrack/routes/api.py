"""JSON API. Authenticates with a bearer token or the browser session."""

from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from .. import activities, models
from ..audit import EventType
from ..auth import authenticate, get_current_user, require_user
from ..database import get_db
from ..exceptions import AuthenticationError, NotFoundError, ValidationError
from ..schemas import ActivityCreate, ActivityFilters, ActivityUpdate, TokenRequest
from ..security.rate_limit import get_ticket
from .common import json_ok, parse, read_payload, try_parse

router = APIRouter(prefix="/api", tags=["api"])


def _visible_activity(db: Session, activity_id: int, user: Optional[models.User]) -> models.FitnessActivity:
    if user is not None and user.is_admin:
        activity = db.get(models.FitnessActivity, activity_id)
    else:
        activity = activities.get_visible(db, activity_id, user.id if user else None)
    if activity is None:
        raise NotFoundError("Activity not found")
    return activity


@router.post("/auth/token")
async def issue_token(request: Request, db: Session = Depends(get_db)):
    ticket = get_ticket(request)
    data = await read_payload(request)
    form, errors = try_parse(TokenRequest, data)
    if form is None:
        if ticket:
            ticket.record_increment()
        raise ValidationError(errors=errors)

    user = authenticate(db, form.username, form.password)
    if user is None:
        if ticket:
            ticket.record_increment()
        request.app.state.audit.log_auth(
            EventType.LOGIN_FAILURE, request, username=form.username[:50], reason="token request"
        )
        raise AuthenticationError("Invalid username or password")

    if ticket:
        ticket.record_success()
    tokens = request.app.state.tokens
    access_token = tokens.create(user)
    request.app.state.audit.log_auth(EventType.API_TOKEN_ISSUED, request, user.id, user.username)
    return {
        "success": True,
        "access_token": access_token,
        "token_type": "bearer",
        "expires_in": tokens.expires_seconds,
    }


@router.get("/activities")
def list_activities(
    request: Request,
    db: Session = Depends(get_db),
    current_user: Optional[models.User] = Depends(get_current_user),
):
    filters = parse(ActivityFilters, dict(request.query_params))
    items, pagination = activities.search_activities(db, current_user.id if current_user else None, filters)
    return {
        "success": True,
        "activities": [activity.to_dict() for activity in items],
        "pagination": pagination,
    }


@router.post("/activities", status_code=status.HTTP_201_CREATED)
async def create_activity_api(
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_user),
):
    payload = parse(ActivityCreate, await read_payload(request))
    activity = activities.create_activity(db, current_user, payload)
    request.app.state.audit.log_data_change(
        EventType.ACTIVITY_CREATE,
        request,
        "fitness_activity",
        activity.id,
        {"activity_type": activity.activity_type, "is_public": activity.is_public},
        actor=current_user,
    )
    return json_ok(request, {"activity": activity.to_dict()}, status_code=status.HTTP_201_CREATED)


@router.get("/activities/{activity_id}")
def get_activity(
    activity_id: int,
    db: Session = Depends(get_db),
    current_user: Optional[models.User] = Depends(get_current_user),
):
    activity = _visible_activity(db, activity_id, current_user)
    return {"success": True, "activity": activity.to_dict()}


@router.patch("/activities/{activity_id}")
async def update_activity_api(
    activity_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_user),
):
    _visible_activity(db, activity_id, current_user)
    activity = activities.owned_activity(db, activity_id, current_user)
    payload = parse(ActivityUpdate, await read_payload(request))
    diff = activities.update_activity(db, activity, payload.changes())
    request.app.state.audit.log_data_change(
        EventType.ACTIVITY_UPDATE, request, "fitness_activity", activity.id, diff, actor=current_user
    )
    return json_ok(request, {"activity": activity.to_dict()})


@router.delete("/activities/{activity_id}")
def delete_activity_api(
    activity_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_user),
):
    _visible_activity(db, activity_id, current_user)
    activity = activities.owned_activity(db, activity_id, current_user)
    snapshot = {"activity_type": activity.activity_type, "owner_id": activity.user_id}
    db.delete(activity)
    db.commit()
    request.app.state.audit.log_data_change(
        EventType.ACTIVITY_DELETE, request, "fitness_activity", activity_id, snapshot, actor=current_user
    )
    return json_ok(request, {"message": "Activity deleted"})
