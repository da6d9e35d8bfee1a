"""
Audit trail of security-relevant actions.

Entries are append-only rows in ``audit_logs``. Writing an entry must never
break the request that triggered it, so every write runs in its own database
session and failures are only logged.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker
from starlette.requests import Request

from .models import AuditLog, utcnow
from .security.client import get_client_ip
from .security.sessions import current_session_user

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    LOGOUT = "LOGOUT"
    REGISTER = "REGISTER"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET = "PASSWORD_RESET"
    ACCOUNT_UPDATE = "ACCOUNT_UPDATE"
    ACCOUNT_DELETE = "ACCOUNT_DELETE"
    ACTIVITY_CREATE = "ACTIVITY_CREATE"
    ACTIVITY_UPDATE = "ACTIVITY_UPDATE"
    ACTIVITY_DELETE = "ACTIVITY_DELETE"
    SESSION_TIMEOUT = "SESSION_TIMEOUT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CSRF_VIOLATION = "CSRF_VIOLATION"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    EMAIL_VERIFICATION_REQUESTED = "EMAIL_VERIFICATION_REQUESTED"
    API_TOKEN_ISSUED = "API_TOKEN_ISSUED"
    ADMIN_ACTION = "ADMIN_ACTION"
    AUDIT_PURGE = "AUDIT_PURGE"


@dataclass
class AuditQuery:
    username: Optional[str] = None
    event_type: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    resource_type: Optional[str] = None
    resource_id: Optional[int] = None
    page: int = 1
    page_size: int = 50


def _value(event) -> str:
    return event.value if isinstance(event, EventType) else str(event)


class AuditLogger:
    def __init__(self, session_factory: sessionmaker, trust_proxy: bool = False):
        self.session_factory = session_factory
        self.trust_proxy = trust_proxy

    # ------------------------------------------------------------------ write

    def _request_fields(self, request: Optional[Request]) -> Dict[str, Any]:
        if request is None:
            return {}
        return {
            "ip_address": get_client_ip(request, self.trust_proxy),
            "user_agent": request.headers.get("user-agent"),
            "path": request.url.path,
            "method": request.method,
        }

    def _request_actor(self, request: Optional[Request]):
        if request is None or "session" not in request.scope:
            return None
        return current_session_user(request)

    def _write(self, **fields) -> None:
        db = self.session_factory()
        try:
            db.add(AuditLog(**fields))
            db.commit()
        except Exception:
            db.rollback()
            logger.warning("Failed to write audit entry %s", fields.get("event_type"), exc_info=True)
        finally:
            db.close()

    def log_auth(
        self,
        event,
        request: Optional[Request],
        user_id: Optional[int] = None,
        username: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        try:
            changes = {"reason": reason} if reason else None
            self._write(
                user_id=user_id,
                username=username,
                event_type=_value(event),
                changes=changes,
                **self._request_fields(request),
            )
        except Exception:
            logger.warning("Audit logging failed for %s", _value(event), exc_info=True)

    def log_data_change(
        self,
        event,
        request: Optional[Request],
        resource_type: str,
        resource_id: Optional[int],
        changes: Optional[Dict[str, Any]] = None,
        actor=None,
    ) -> None:
        try:
            actor = actor or self._request_actor(request)
            self._write(
                user_id=getattr(actor, "id", None),
                username=getattr(actor, "username", None),
                event_type=_value(event),
                resource_type=resource_type,
                resource_id=resource_id,
                changes=changes,
                **self._request_fields(request),
            )
        except Exception:
            logger.warning("Audit logging failed for %s", _value(event), exc_info=True)

    def log_security_event(
        self,
        event,
        request: Optional[Request],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            actor = self._request_actor(request)
            self._write(
                user_id=getattr(actor, "id", None),
                username=getattr(actor, "username", None),
                event_type=_value(event),
                changes=details,
                **self._request_fields(request),
            )
        except Exception:
            logger.warning("Audit logging failed for %s", _value(event), exc_info=True)

    # ------------------------------------------------------------------- read

    def _fetch(self, build, limit: Optional[int] = None) -> List[dict]:
        db = self.session_factory()
        try:
            query = build(db.query(AuditLog)).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            if limit is not None:
                query = query.limit(limit)
            return [row.to_dict() for row in query]
        finally:
            db.close()

    def recent(self, limit: int = 100) -> List[dict]:
        return self._fetch(lambda q: q, limit)

    def by_user(self, username: str, limit: int = 100) -> List[dict]:
        return self._fetch(lambda q: q.filter(AuditLog.username == username), limit)

    def by_event_type(self, event, limit: int = 100) -> List[dict]:
        return self._fetch(lambda q: q.filter(AuditLog.event_type == _value(event)), limit)

    def by_date_range(self, start: datetime, end: datetime) -> List[dict]:
        return self._fetch(
            lambda q: q.filter(AuditLog.created_at >= start, AuditLog.created_at <= end)
        )

    def by_resource(self, resource_type: str, resource_id: int) -> List[dict]:
        return self._fetch(
            lambda q: q.filter(
                AuditLog.resource_type == resource_type,
                AuditLog.resource_id == resource_id,
            )
        )

    def search(self, criteria: AuditQuery) -> Dict[str, Any]:
        """Combined filter used by the admin audit page."""
        page = max(1, criteria.page)
        page_size = min(max(1, criteria.page_size), 200)

        db = self.session_factory()
        try:
            query = db.query(AuditLog)
            if criteria.username:
                query = query.filter(AuditLog.username == criteria.username)
            if criteria.event_type:
                query = query.filter(AuditLog.event_type == criteria.event_type)
            if criteria.date_from:
                query = query.filter(AuditLog.created_at >= criteria.date_from)
            if criteria.date_to:
                query = query.filter(AuditLog.created_at <= criteria.date_to)
            if criteria.resource_type:
                query = query.filter(AuditLog.resource_type == criteria.resource_type)
            if criteria.resource_id is not None:
                query = query.filter(AuditLog.resource_id == criteria.resource_id)

            total = query.count()
            rows = (
                query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return {
                "items": [row.to_dict() for row in rows],
                "total": total,
                "page": page,
                "page_size": page_size,
                "total_pages": max(1, -(-total // page_size)),
            }
        finally:
            db.close()

    def purge_older_than(self, days: int = 90) -> int:
        cutoff = utcnow() - timedelta(days=days)
        db = self.session_factory()
        try:
            deleted = (
                db.query(AuditLog)
                .filter(AuditLog.created_at < cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info("Purged %d audit entries older than %d days", deleted, days)
        return deleted
