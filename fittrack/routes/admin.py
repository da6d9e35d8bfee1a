import logging
from datetime import datetime, time

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models
from ..audit import AuditQuery, EventType
from ..auth import require_admin
from ..database import get_db
from ..exceptions import NotFoundError, ValidationError
from ..schemas import AuditLogFilters, PurgeForm
from ..security.client import wants_json
from ..templating import render
from .common import json_ok, parse, read_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def _target_user(db: Session, user_id: int, admin: models.User) -> models.User:
    user = db.get(models.User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    if user.id == admin.id:
        raise ValidationError("You cannot perform this action on your own account")
    return user


def _done(request: Request, message: str, redirect_to: str):
    if wants_json(request):
        return json_ok(request, {"message": message})
    return RedirectResponse(url=redirect_to, status_code=status.HTTP_303_SEE_OTHER)


@router.get("/audit-logs")
def audit_logs(request: Request, admin: models.User = Depends(require_admin)):
    filters = parse(AuditLogFilters, dict(request.query_params))
    query = AuditQuery(
        username=filters.username,
        event_type=filters.event_type,
        date_from=datetime.combine(filters.date_from, time.min) if filters.date_from else None,
        date_to=datetime.combine(filters.date_to, time.max) if filters.date_to else None,
        page=filters.page,
    )
    result = request.app.state.audit.search(query)
    if wants_json(request):
        return {"success": True, **result}
    return render(
        request,
        "admin/audit_logs.html",
        {
            "result": result,
            "filters": filters,
            "event_types": [event.value for event in EventType],
            "retention_days": request.app.state.settings.audit_retention_days,
            "page_title": "Audit log",
        },
    )


@router.post("/audit-logs/purge")
async def purge_audit_logs(request: Request, admin: models.User = Depends(require_admin)):
    data = await read_payload(request)
    data.setdefault("days", request.app.state.settings.audit_retention_days)
    form = parse(PurgeForm, data)
    audit = request.app.state.audit
    deleted = audit.purge_older_than(form.days)
    audit.log_data_change(
        EventType.AUDIT_PURGE,
        request,
        "audit_log",
        None,
        {"days": form.days, "deleted": deleted},
        actor=admin,
    )
    return _done(request, f"Removed {deleted} audit entries", "/admin/audit-logs")


@router.get("/users")
def users(request: Request, db: Session = Depends(get_db), admin: models.User = Depends(require_admin)):
    rows = (
        db.query(models.User, func.count(models.FitnessActivity.id))
        .outerjoin(models.FitnessActivity, models.FitnessActivity.user_id == models.User.id)
        .group_by(models.User.id)
        .order_by(models.User.created_at.desc(), models.User.id.desc())
        .all()
    )
    if wants_json(request):
        return {
            "success": True,
            "users": [
                {
                    "id": user.id,
                    "username": user.username,
                    "email": user.email,
                    "is_admin": user.is_admin,
                    "activity_count": count,
                    "created_at": user.created_at.isoformat(),
                }
                for user, count in rows
            ],
        }
    return render(request, "admin/users.html", {"rows": rows, "page_title": "Users"})


@router.post("/users/{user_id}/toggle-admin")
def toggle_admin(
    user_id: int,
    request: Request,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    user = _target_user(db, user_id, admin)
    user.is_admin = not user.is_admin
    db.commit()
    request.app.state.audit.log_data_change(
        EventType.ADMIN_ACTION,
        request,
        "user",
        user.id,
        {"action": "toggle_admin", "is_admin": user.is_admin, "username": user.username},
        actor=admin,
    )
    logger.info("Admin %s set is_admin=%s for %s", admin.username, user.is_admin, user.username)
    return _done(request, f"Updated {user.username}", "/admin/users")


@router.post("/users/{user_id}/delete")
def delete_user(
    user_id: int,
    request: Request,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    user = _target_user(db, user_id, admin)
    request.app.state.audit.log_data_change(
        EventType.ADMIN_ACTION,
        request,
        "user",
        user.id,
        {"action": "delete_user", "username": user.username},
        actor=admin,
    )
    username = user.username
    db.delete(user)
    db.commit()
    logger.info("Admin %s deleted user %s", admin.username, username)
    return _done(request, f"Deleted {username}", "/admin/users")
