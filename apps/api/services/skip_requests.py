"""
Skip Request Workflow

Intercessors who need longer than the default grace ask for a skip of
1..MAX_SKIP_DAYS days. An admin approves or rejects; approval performs the
ordinary skip transition with the requested length.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import InvalidStateError, NotFoundError, ValidationError
from models import SkipRequest
from services.slot_service import grant_skip, held_slots

logger = logging.getLogger(__name__)

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"


def submit_skip_request(
    db: Session,
    user_id: UUID,
    skip_days: int,
    reason: str,
    slot_id: Optional[int] = None,
) -> SkipRequest:
    if not 1 <= skip_days <= settings.MAX_SKIP_DAYS:
        raise ValidationError(
            f"skip_days must be between 1 and {settings.MAX_SKIP_DAYS}", field="skip_days"
        )
    if not (reason or "").strip():
        raise ValidationError("A reason is required", field="reason")

    slots = held_slots(db, user_id)
    if slot_id is None:
        if not slots:
            raise NotFoundError("Held slot for intercessor", user_id)
        slot_id = slots[0].id
    elif slot_id not in {s.id for s in slots}:
        raise NotFoundError("Held slot for intercessor", slot_id)

    request = SkipRequest(
        user_id=user_id,
        slot_id=slot_id,
        skip_days=skip_days,
        reason=reason.strip(),
        status=PENDING,
    )
    db.add(request)
    db.flush()
    logger.info(f"Skip request {request.id}: {skip_days} day(s) for slot {slot_id}")
    return request


def list_skip_requests(db: Session, user_id: Optional[UUID] = None, status: Optional[str] = None) -> List[SkipRequest]:
    query = db.query(SkipRequest)
    if user_id is not None:
        query = query.filter(SkipRequest.user_id == user_id)
    if status is not None:
        query = query.filter(SkipRequest.status == status)
    return query.order_by(SkipRequest.created_at.desc()).all()


def decide_skip_request(
    db: Session,
    request_id: int,
    approve: bool,
    admin_comment: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SkipRequest:
    """
    Approve or reject a pending request.

    Approval skips the slot from `now` for the requested days, or stretches
    a skip already running to that length from its start. If the slot can no
    longer be skipped (missed or released) the InvalidStateError propagates
    and the request stays pending.
    """
    now = now or datetime.now(timezone.utc)
    request = db.query(SkipRequest).filter(SkipRequest.id == request_id).with_for_update().first()
    if not request:
        raise NotFoundError("Skip request", request_id)
    if request.status != PENDING:
        raise InvalidStateError(f"Skip request already {request.status}")

    if approve:
        grant_skip(db, request.slot_id, request.user_id, request.skip_days, now=now)

    request.status = APPROVED if approve else REJECTED
    request.admin_comment = admin_comment
    request.processed_at = now
    db.flush()
    logger.info(f"Skip request {request.id} {request.status}")
    return request
