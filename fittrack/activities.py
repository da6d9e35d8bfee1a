"""
Activity queries: visibility, filtering, sorting, pagination and the
aggregates behind the dashboard charts.
"""

import csv
import io
import logging
import math
from collections import OrderedDict
from datetime import datetime, time, timedelta
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Query, Session, joinedload

from .exceptions import AuthorizationError, NotFoundError
from .models import FitnessActivity, User, utcnow
from .schemas import ActivityCreate, ActivityFilters

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "date_desc": (FitnessActivity.activity_time.desc(), FitnessActivity.id.desc()),
    "date_asc": (FitnessActivity.activity_time.asc(), FitnessActivity.id.asc()),
    "calories_desc": (FitnessActivity.calories_burned.desc(), FitnessActivity.id.desc()),
    "calories_asc": (FitnessActivity.calories_burned.asc(), FitnessActivity.id.asc()),
    "duration_desc": (FitnessActivity.duration_minutes.desc(), FitnessActivity.id.desc()),
    "duration_asc": (FitnessActivity.duration_minutes.asc(), FitnessActivity.id.asc()),
}

CSV_COLUMNS = [
    "id",
    "activity_type",
    "activity_time",
    "duration_minutes",
    "distance_km",
    "calories_burned",
    "notes",
    "is_public",
]


def visible_to(query: Query, actor_id: Optional[int]) -> Query:
    """Public activities, plus the actor's own ones when authenticated."""
    if actor_id is None:
        return query.filter(FitnessActivity.is_public.is_(True))
    return query.filter(
        or_(FitnessActivity.is_public.is_(True), FitnessActivity.user_id == actor_id)
    )


def apply_filters(query: Query, filters: ActivityFilters) -> Query:
    if filters.activity_type:
        query = query.filter(FitnessActivity.activity_type == filters.activity_type)
    if filters.date_from:
        query = query.filter(FitnessActivity.activity_time >= datetime.combine(filters.date_from, time.min))
    if filters.date_to:
        # inclusive of the whole end day
        query = query.filter(
            FitnessActivity.activity_time < datetime.combine(filters.date_to + timedelta(days=1), time.min)
        )
    if filters.duration_min is not None:
        query = query.filter(FitnessActivity.duration_minutes >= filters.duration_min)
    if filters.duration_max is not None:
        query = query.filter(FitnessActivity.duration_minutes <= filters.duration_max)
    if filters.calories_min is not None:
        query = query.filter(FitnessActivity.calories_burned >= filters.calories_min)
    if filters.calories_max is not None:
        query = query.filter(FitnessActivity.calories_burned <= filters.calories_max)
    return query


def apply_sort(query: Query, sort: str) -> Query:
    return query.order_by(*SORT_COLUMNS.get(sort, SORT_COLUMNS["date_desc"]))


def paginate(query: Query, page: int, page_size: int) -> Tuple[List[FitnessActivity], dict]:
    total_items = query.order_by(None).count()
    total_pages = max(1, math.ceil(total_items / page_size))
    items = query.offset((page - 1) * page_size).limit(page_size).all()
    pagination = {
        "page": page,
        "pageSize": page_size,
        "totalItems": total_items,
        "totalPages": total_pages,
        "hasNextPage": page < total_pages,
        "hasPreviousPage": page > 1,
    }
    return items, pagination


def _base(db: Session) -> Query:
    return db.query(FitnessActivity).options(joinedload(FitnessActivity.user))


def search_activities(
    db: Session, actor_id: Optional[int], filters: ActivityFilters
) -> Tuple[List[FitnessActivity], dict]:
    query = apply_filters(visible_to(_base(db), actor_id), filters)
    return paginate(apply_sort(query, filters.sort), filters.page, filters.page_size)


def own_activities(
    db: Session, user_id: int, filters: ActivityFilters
) -> Tuple[List[FitnessActivity], dict]:
    query = apply_filters(_base(db).filter(FitnessActivity.user_id == user_id), filters)
    return paginate(apply_sort(query, filters.sort), filters.page, filters.page_size)


def get_visible(db: Session, activity_id: int, actor_id: Optional[int]) -> Optional[FitnessActivity]:
    return visible_to(_base(db), actor_id).filter(FitnessActivity.id == activity_id).first()


def user_stats(db: Session, user_id: int) -> dict:
    count, duration, calories, distance = (
        db.query(
            func.count(FitnessActivity.id),
            func.coalesce(func.sum(FitnessActivity.duration_minutes), 0),
            func.coalesce(func.sum(FitnessActivity.calories_burned), 0),
            func.coalesce(func.sum(FitnessActivity.distance_km), 0.0),
        )
        .filter(FitnessActivity.user_id == user_id)
        .one()
    )
    return {
        "totalActivities": count,
        "totalDuration": int(duration),
        "totalCalories": int(calories),
        "totalDistance": round(float(distance), 2),
        "averageDuration": round(duration / count, 1) if count else 0,
        "averageCalories": round(calories / count, 1) if count else 0,
    }


def type_distribution(db: Session, user_id: int) -> List[dict]:
    rows = (
        db.query(
            FitnessActivity.activity_type,
            func.count(FitnessActivity.id),
            func.coalesce(func.sum(FitnessActivity.duration_minutes), 0),
            func.coalesce(func.sum(FitnessActivity.calories_burned), 0),
        )
        .filter(FitnessActivity.user_id == user_id)
        .group_by(FitnessActivity.activity_type)
        .order_by(func.count(FitnessActivity.id).desc(), FitnessActivity.activity_type)
        .all()
    )
    return [
        {
            "activity_type": activity_type,
            "count": count,
            "totalDuration": int(duration),
            "totalCalories": int(calories),
        }
        for activity_type, count, duration, calories in rows
    ]


def daily_trend(db: Session, user_id: int, days: int, today: Optional[datetime] = None) -> List[dict]:
    """Per-day totals for the last ``days`` days, including empty days."""
    today = (today or utcnow()).date()
    start = today - timedelta(days=days - 1)

    buckets = OrderedDict()
    for offset in range(days):
        day = start + timedelta(days=offset)
        buckets[day] = {"date": day.isoformat(), "count": 0, "duration": 0, "calories": 0}

    rows = (
        db.query(
            FitnessActivity.activity_time,
            FitnessActivity.duration_minutes,
            FitnessActivity.calories_burned,
        )
        .filter(
            FitnessActivity.user_id == user_id,
            FitnessActivity.activity_time >= datetime.combine(start, time.min),
            FitnessActivity.activity_time < datetime.combine(today + timedelta(days=1), time.min),
        )
        .all()
    )
    for activity_time, duration, calories in rows:
        bucket = buckets.get(activity_time.date())
        if bucket is None:
            continue
        bucket["count"] += 1
        bucket["duration"] += duration
        bucket["calories"] += calories
    return list(buckets.values())


def filtered_own(db: Session, user_id: int, filters: ActivityFilters) -> List[FitnessActivity]:
    query = apply_filters(db.query(FitnessActivity).filter(FitnessActivity.user_id == user_id), filters)
    return apply_sort(query, filters.sort).all()


def export_csv(activities: Iterable[FitnessActivity]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_COLUMNS)
    for activity in activities:
        writer.writerow(
            [
                activity.id,
                activity.activity_type,
                activity.activity_time.isoformat() if activity.activity_time else "",
                activity.duration_minutes,
                "" if activity.distance_km is None else activity.distance_km,
                activity.calories_burned,
                activity.notes or "",
                "yes" if activity.is_public else "no",
            ]
        )
    return buffer.getvalue()


def owned_activity(db: Session, activity_id: int, user: User) -> FitnessActivity:
    """Fetch an activity the user may modify: owner or admin."""
    activity = db.get(FitnessActivity, activity_id)
    if activity is None:
        raise NotFoundError("Activity not found")
    if activity.user_id != user.id and not user.is_admin:
        logger.warning("User %s tried to modify activity %s owned by %s", user.id, activity.id, activity.user_id)
        raise AuthorizationError("You can only modify your own activities")
    return activity


def create_activity(db: Session, owner: User, payload: ActivityCreate) -> FitnessActivity:
    activity = FitnessActivity(user_id=owner.id, **payload.model_dump())
    db.add(activity)
    db.commit()
    db.refresh(activity)
    return activity


def update_activity(db: Session, activity: FitnessActivity, changes: dict) -> dict:
    """Apply changes and return the old and new value of each changed field."""
    diff = {}
    for field, value in changes.items():
        old = getattr(activity, field)
        if old != value:
            diff[field] = {"old": _jsonable(old), "new": _jsonable(value)}
            setattr(activity, field, value)
    db.commit()
    db.refresh(activity)
    return diff


def _jsonable(value):
    return value.isoformat() if hasattr(value, "isoformat") else value
