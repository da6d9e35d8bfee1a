import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

from .. import activities, models
from ..audit import EventType
from ..auth import get_session_user, require_session_user
from ..database import get_db
from ..exceptions import ValidationError
from ..models import ACTIVITY_TYPES
from ..schemas import ActivityCreate, ActivityFilters, ActivityUpdate
from ..security.client import wants_json
from ..templating import render
from .common import form_values, json_ok, parse, read_payload, try_parse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["pages"])


def _filters(request: Request) -> ActivityFilters:
    return parse(ActivityFilters, dict(request.query_params))


@router.get("/", response_class=HTMLResponse)
def index(request: Request, db: Session = Depends(get_db), current_user=Depends(get_session_user)):
    filters = ActivityFilters(page_size=5)
    recent, _ = activities.search_activities(db, None, filters)
    stats = activities.user_stats(db, current_user.id) if current_user else None
    return render(
        request,
        "index.html",
        {"recent_activities": recent, "stats": stats, "page_title": "Home"},
    )


@router.get("/about", response_class=HTMLResponse)
def about(request: Request):
    return render(request, "about.html", {"page_title": "About"})


@router.get("/search")
def search(request: Request, db: Session = Depends(get_db), current_user=Depends(get_session_user)):
    filters = _filters(request)
    actor_id = current_user.id if current_user else None
    items, pagination = activities.search_activities(db, actor_id, filters)
    if wants_json(request):
        return {
            "success": True,
            "activities": [activity.to_dict() for activity in items],
            "pagination": pagination,
        }
    return render(
        request,
        "search.html",
        {
            "activities": items,
            "pagination": pagination,
            "filters": filters,
            "query_params": filters.query_params(),
            "activity_types": ACTIVITY_TYPES,
            "page_title": "Search activities",
        },
    )


@router.get("/add-activity", response_class=HTMLResponse)
def add_activity_form(request: Request, current_user=Depends(require_session_user)):
    return render(
        request,
        "activities/form.html",
        {
            "errors": [],
            "form_values": {},
            "activity_types": ACTIVITY_TYPES,
            "page_title": "Add activity",
        },
    )


@router.post("/add-activity")
async def add_activity(
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    data = await read_payload(request)
    payload, errors = try_parse(ActivityCreate, data)
    if errors:
        if wants_json(request):
            raise ValidationError(errors=errors)
        return render(
            request,
            "activities/form.html",
            {
                "errors": errors,
                "form_values": form_values(data),
                "activity_types": ACTIVITY_TYPES,
                "page_title": "Add activity",
            },
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    activity = activities.create_activity(db, current_user, payload)
    request.app.state.audit.log_data_change(
        EventType.ACTIVITY_CREATE,
        request,
        "fitness_activity",
        activity.id,
        {"activity_type": activity.activity_type, "is_public": activity.is_public},
        actor=current_user,
    )
    if wants_json(request):
        return json_ok(request, {"activity": activity.to_dict()}, status_code=status.HTTP_201_CREATED)
    return RedirectResponse(url="/my-activities", status_code=status.HTTP_303_SEE_OTHER)


@router.get("/my-activities")
def my_activities(
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    filters = _filters(request)
    items, pagination = activities.own_activities(db, current_user.id, filters)
    if wants_json(request):
        return {
            "success": True,
            "activities": [activity.to_dict() for activity in items],
            "pagination": pagination,
        }
    return render(
        request,
        "activities/list.html",
        {
            "activities": items,
            "pagination": pagination,
            "filters": filters,
            "query_params": filters.query_params(),
            "activity_types": ACTIVITY_TYPES,
            "stats": activities.user_stats(db, current_user.id),
            "page_title": "My activities",
        },
    )


@router.get("/my-activities/{activity_id}/edit", response_class=HTMLResponse)
def edit_activity_form(
    activity_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    activity = activities.owned_activity(db, activity_id, current_user)
    return render(
        request,
        "activities/edit.html",
        {
            "activity": activity,
            "activity_types": ACTIVITY_TYPES,
            "page_title": "Edit activity",
        },
    )


@router.patch("/my-activities/{activity_id}/edit")
async def edit_activity(
    activity_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    activity = activities.owned_activity(db, activity_id, current_user)
    payload = parse(ActivityUpdate, await read_payload(request))
    diff = activities.update_activity(db, activity, payload.changes())
    request.app.state.audit.log_data_change(
        EventType.ACTIVITY_UPDATE, request, "fitness_activity", activity.id, diff, actor=current_user
    )
    return json_ok(request, {"activity": activity.to_dict(), "message": "Activity updated"})


@router.delete("/my-activities/{activity_id}")
def delete_activity(
    activity_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    activity = activities.owned_activity(db, activity_id, current_user)
    snapshot = {"activity_type": activity.activity_type, "owner_id": activity.user_id}
    db.delete(activity)
    db.commit()
    request.app.state.audit.log_data_change(
        EventType.ACTIVITY_DELETE, request, "fitness_activity", activity_id, snapshot, actor=current_user
    )
    return json_ok(request, {"message": "Activity deleted"})
