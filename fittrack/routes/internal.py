"""Session-only JSON endpoints behind the dashboard charts and CSV export."""

from datetime import date

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from .. import activities, models
from ..auth import require_session_user
from ..database import get_db
from ..schemas import ActivityFilters
from .common import parse

router = APIRouter(prefix="/internal/activities", tags=["internal"])


@router.get("/stats")
def stats(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    return {"success": True, "stats": activities.user_stats(db, current_user.id)}


@router.get("/charts/type-distribution")
def type_distribution(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    return {"success": True, "data": activities.type_distribution(db, current_user.id)}


@router.get("/charts/daily-trend")
def daily_trend(
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    return {"success": True, "days": days, "data": activities.daily_trend(db, current_user.id, days)}


@router.get("/export")
def export(
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_session_user),
):
    filters = parse(ActivityFilters, dict(request.query_params))
    content = activities.export_csv(activities.filtered_own(db, current_user.id, filters))
    filename = f"fittrack-activities-{date.today().isoformat()}.csv"
    return Response(
        content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
