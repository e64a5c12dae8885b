"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule. Every job is idempotent, so
overlapping or repeated runs are harmless.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Reminder offsets and fallback transitions, once a minute.
    'evaluate-slot-triggers': {
        'task': 'tasks.evaluate_slot_triggers',
        'schedule': crontab(minute='*'),
    },
    # Record misses for windows that ended without attendance.
    'sweep-missed-sessions': {
        'task': 'tasks.sweep_missed_sessions',
        'schedule': crontab(minute='*/5'),
    },
    # Skipped slots whose grace period has lapsed go back to active.
    'expire-lapsed-skips': {
        'task': 'tasks.expire_lapsed_skips',
        'schedule': crontab(minute='*/15'),
    },
    # Release slots that hit the consecutive-miss threshold.
    'release-exhausted-slots': {
        'task': 'tasks.release_exhausted_slots',
        'schedule': crontab(minute=5),
    },
}
