"""
Slot Lifecycle Tasks

Periodic jobs driven by Celery Beat (see celerybeat_schedule.py):
- evaluate_slot_triggers: reminder offsets + fallback transitions -> outbox
- sweep_missed_sessions: record misses for windows that ended unattended
- expire_lapsed_skips: skipped slots back to active at expiry
- release_exhausted_slots: free windows after consecutive misses

Each task opens its own session and commits per slot; one slot's failure is
logged and does not stop the run.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from core.database import get_db_sync
from core.logging import slot_context
from models import PrayerSlot
from services import slot_service
from services.reminder_trigger import (
    FallbackMonitor,
    LoggingNotificationSink,
    NotificationEvent,
    OutboxReminderTracker,
    deliver_pending,
    last_fallback_states,
    publish,
    reminder_due,
)
from tasks import celery_app

logger = logging.getLogger(__name__)


def _evaluate_triggers(db: Session, now: datetime) -> Dict:
    """
    One evaluation pass over every slot.

    Reminders are claimed in the outbox by OutboxReminderTracker; fallback
    transitions are published against the last recorded level per slot.
    Undelivered outbox rows are then handed to the notification sink.
    """
    tracker = OutboxReminderTracker(db)
    monitor = FallbackMonitor(last_fallback_states(db))
    slots = db.query(PrayerSlot).options(joinedload(PrayerSlot.owner)).all()

    reminders: List[NotificationEvent] = []
    fallbacks: List[NotificationEvent] = []
    errors = 0
    for slot in slots:
        with slot_context(slot_id=slot.id, job="triggers"):
            try:
                due = reminder_due(slot, now, tracker=tracker)
                change = monitor.observe(slot, now)
                if change is not None:
                    publish(db, [change], now)
                    fallbacks.append(change)
                db.commit()
                reminders.extend(due)
            except SQLAlchemyError as e:
                db.rollback()
                errors += 1
                logger.warning(f"Trigger evaluation failed for slot {slot.id}: {e}")

    delivered = deliver_pending(db, LoggingNotificationSink(), now)
    db.commit()
    return {
        "slots": len(slots),
        "reminders": len(reminders),
        "fallback_transitions": len(fallbacks),
        "delivered": delivered,
        "errors": errors,
    }


def _run(job, now: Optional[datetime] = None) -> Dict:
    db = get_db_sync()
    try:
        result = job(db, now or datetime.now(timezone.utc))
        return {"status": "success", **result}
    except Exception as e:
        db.rollback()
        logger.exception(f"{job.__name__} failed")
        return {"status": "error", "message": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.evaluate_slot_triggers")
def evaluate_slot_triggers_task() -> Dict:
    return _run(_evaluate_triggers)


@celery_app.task(name="tasks.sweep_missed_sessions")
def sweep_missed_sessions_task() -> Dict:
    return _run(slot_service.sweep_missed_sessions)


@celery_app.task(name="tasks.expire_lapsed_skips")
def expire_lapsed_skips_task() -> Dict:
    return _run(slot_service.expire_lapsed_skips)


@celery_app.task(name="tasks.release_exhausted_slots")
def release_exhausted_slots_task() -> Dict:
    """
    Idempotent: every candidate is re-checked under its row lock, so a crash
    and restart mid-scan cannot double-release or override a reactivation.
    """
    return _run(slot_service.release_exhausted_slots)
