"""One-time 6-digit codes for email change, password reset and account deletion."""

import logging
import secrets
from datetime import timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .models import EmailVerification, User, utcnow

logger = logging.getLogger(__name__)

EMAIL_CHANGE = "email_change"
PASSWORD_RESET = "password_reset"
ACCOUNT_DELETION = "account_deletion"

PURPOSES = (EMAIL_CHANGE, PASSWORD_RESET, ACCOUNT_DELETION)

USED_RETENTION = timedelta(days=7)


def generate_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def create_verification(
    db: Session,
    user: User,
    purpose: str,
    new_email: Optional[str] = None,
    ttl_minutes: int = 60,
) -> EmailVerification:
    """Issue a fresh code, invalidating earlier unused codes for the same purpose."""
    if purpose not in PURPOSES:
        raise ValueError(f"Unknown verification purpose: {purpose}")

    now = utcnow()
    (
        db.query(EmailVerification)
        .filter(
            EmailVerification.user_id == user.id,
            EmailVerification.purpose == purpose,
            EmailVerification.used_at.is_(None),
        )
        .update({EmailVerification.used_at: now}, synchronize_session=False)
    )

    verification = EmailVerification(
        user_id=user.id,
        purpose=purpose,
        new_email=new_email,
        verification_code=generate_code(),
        expires_at=now + timedelta(minutes=ttl_minutes),
        created_at=now,
    )
    db.add(verification)
    db.commit()
    db.refresh(verification)
    return verification


def consume_verification(
    db: Session,
    user_id: int,
    purpose: str,
    code: str,
    verification_id: Optional[int] = None,
) -> Optional[EmailVerification]:
    """Mark a matching, unused, unexpired code as used. Returns None otherwise."""
    code = (code or "").strip()
    if len(code) != 6 or not code.isdigit():
        return None

    now = utcnow()
    query = db.query(EmailVerification).filter(
        EmailVerification.user_id == user_id,
        EmailVerification.purpose == purpose,
        EmailVerification.verification_code == code,
        EmailVerification.used_at.is_(None),
        EmailVerification.expires_at > now,
    )
    if verification_id is not None:
        query = query.filter(EmailVerification.id == verification_id)

    verification = query.order_by(EmailVerification.id.desc()).first()
    if verification is None:
        return None

    verification.used_at = now
    db.commit()
    return verification


def cleanup_verifications(db: Session) -> int:
    """Delete expired codes and used codes older than a week."""
    now = utcnow()
    deleted = (
        db.query(EmailVerification)
        .filter(
            or_(
                EmailVerification.expires_at < now,
                EmailVerification.used_at < now - USED_RETENTION,
            )
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("Removed %d expired or used verification codes", deleted)
    return deleted
