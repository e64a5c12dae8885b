"""
Tests for slot assignment, attendance accounting and the batch jobs

All mutations go through services.slot_service; assertions read the row back
from the database.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Query

from core.exceptions import (
    ConflictError,
    DuplicateRecordError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from models import AttendanceRecord, Intercessor, PrayerSlot
from services import slot_service
from services.slot_state_machine import SlotState, SlotStatus


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


ASSIGNED_AT = utc(2026, 3, 1, 10, 0)


def reload(db, slot_id) -> PrayerSlot:
    db.expire_all()
    return db.query(PrayerSlot).filter(PrayerSlot.id == slot_id).one()


class TestAssign:
    def test_assign_free_slot(self, db_session, slot, intercessor):
        slot_service.assign_slot(db_session, slot.id, intercessor.id, now=ASSIGNED_AT)
        db_session.commit()

        row = reload(db_session, slot.id)
        assert row.status == "active"
        assert row.user_id == intercessor.id
        assert row.missed_count == 0
        assert row.assigned_at == ASSIGNED_AT
        assert row.active_since == ASSIGNED_AT
        assert row.version == 2

    def test_assign_held_slot_conflicts(self, db_session, active_slot, other_intercessor):
        with pytest.raises(ConflictError):
            slot_service.assign_slot(db_session, active_slot.id, other_intercessor.id, now=ASSIGNED_AT)

    def test_reassign_to_same_owner_is_a_no_op(self, db_session, active_slot, intercessor):
        slot = slot_service.assign_slot(db_session, active_slot.id, intercessor.id, now=ASSIGNED_AT)
        assert slot.version == 2

    def test_one_slot_per_intercessor(self, db_session, make_slot, active_slot, intercessor):
        second = make_slot("08:00–08:30")
        with pytest.raises(ConflictError):
            slot_service.assign_slot(db_session, second.id, intercessor.id, now=ASSIGNED_AT)

    def test_claim_locks_intercessor_before_slot(self, db_session, slot, intercessor, monkeypatch):
        locked = []
        original = Query.with_for_update

        def recording(query, *args, **kwargs):
            locked.append(query.column_descriptions[0]["entity"])
            return original(query, *args, **kwargs)

        monkeypatch.setattr(Query, "with_for_update", recording)
        slot_service.assign_slot(db_session, slot.id, intercessor.id, now=ASSIGNED_AT)
        assert locked[:2] == [Intercessor, PrayerSlot]

    def test_unknown_intercessor(self, db_session, slot):
        with pytest.raises(NotFoundError):
            slot_service.assign_slot(db_session, slot.id, uuid4(), now=ASSIGNED_AT)

    def test_unknown_slot(self, db_session, intercessor):
        with pytest.raises(NotFoundError):
            slot_service.assign_slot(db_session, 9999, intercessor.id, now=ASSIGNED_AT)


class TestChangeSlot:
    MOVED_AT = utc(2026, 3, 3, 9, 0)

    def test_moves_intercessor_to_new_window(self, db_session, make_slot, active_slot, intercessor):
        morning = make_slot("08:00–08:30")
        slot = slot_service.change_slot(db_session, intercessor.id, morning.id, now=self.MOVED_AT)
        db_session.commit()
        assert slot.id == morning.id

        old = reload(db_session, active_slot.id)
        assert old.status == "released"
        assert old.user_id is None
        assert old.released_at == self.MOVED_AT

        new = reload(db_session, morning.id)
        assert new.status == "active"
        assert new.user_id == intercessor.id
        assert new.active_since == self.MOVED_AT

    def test_held_window_conflicts_and_keeps_current(self, db_session, make_slot, active_slot, intercessor, other_intercessor):
        morning = make_slot("08:00–08:30")
        slot_service.assign_slot(db_session, morning.id, other_intercessor.id, now=ASSIGNED_AT)
        db_session.commit()

        with pytest.raises(ConflictError):
            slot_service.change_slot(db_session, intercessor.id, morning.id, now=self.MOVED_AT)
        db_session.rollback()
        assert reload(db_session, active_slot.id).status == "active"
        assert reload(db_session, morning.id).user_id == other_intercessor.id

    def test_without_a_held_window_it_assigns(self, db_session, slot, intercessor):
        moved = slot_service.change_slot(db_session, intercessor.id, slot.id, now=self.MOVED_AT)
        assert moved.status == "active"
        assert moved.user_id == intercessor.id

    def test_cannot_give_up_someone_elses_window(self, db_session, make_slot, active_slot, other_intercessor):
        morning = make_slot("08:00–08:30")
        with pytest.raises(ForbiddenError):
            slot_service.change_slot(
                db_session, other_intercessor.id, morning.id, from_slot_id=active_slot.id, now=self.MOVED_AT
            )

    def test_same_window_is_a_no_op(self, db_session, active_slot, intercessor):
        slot = slot_service.change_slot(db_session, intercessor.id, active_slot.id, now=self.MOVED_AT)
        assert slot.status == "active"
        assert slot.version == 2


class TestRelinquish:
    def test_window_becomes_claimable(self, db_session, active_slot, intercessor, other_intercessor):
        slot = slot_service.relinquish_slot(db_session, active_slot.id, intercessor.id, now=utc(2026, 3, 3, 9, 0))
        assert slot.status == "released"
        claimed = slot_service.assign_slot(db_session, active_slot.id, other_intercessor.id, now=utc(2026, 3, 3, 9, 5))
        assert claimed.user_id == other_intercessor.id

    def test_only_the_owner(self, db_session, active_slot, other_intercessor):
        with pytest.raises(ForbiddenError):
            slot_service.relinquish_slot(db_session, active_slot.id, other_intercessor.id)


class TestRecordSession:
    def test_release_after_exactly_five_misses(self, db_session, active_slot, intercessor):
        for n in range(1, 5):
            slot_service.record_session(
                db_session, active_slot.id, date(2026, 3, n), attended=False, now=utc(2026, 3, n, 23, 0)
            )
            db_session.commit()
            row = reload(db_session, active_slot.id)
            assert row.status == "missed"
            assert row.missed_count == n

        _, slot = slot_service.record_session(
            db_session, active_slot.id, date(2026, 3, 5), attended=False, now=utc(2026, 3, 5, 23, 0)
        )
        db_session.commit()

        row = reload(db_session, active_slot.id)
        assert row.status == "released"
        assert row.user_id is None
        assert row.released_at == utc(2026, 3, 5, 23, 0)
        records = db_session.query(AttendanceRecord).filter(AttendanceRecord.slot_id == active_slot.id).all()
        assert len(records) == 5
        assert all(r.user_id == intercessor.id for r in records)

    def test_attendance_resets_counter(self, db_session, active_slot):
        for n in range(1, 4):
            slot_service.record_session(db_session, active_slot.id, date(2026, 3, n), attended=False)
        record, slot = slot_service.record_session(
            db_session, active_slot.id, date(2026, 3, 4), attended=True, duration_minutes=30
        )
        assert record.attended is True
        assert record.duration_minutes == 30
        assert slot.status == "active"
        assert slot.missed_count == 0

    def test_unassigned_slot_rejected(self, db_session, slot):
        with pytest.raises(InvalidStateError):
            slot_service.record_session(db_session, slot.id, date(2026, 3, 1), attended=True)
        assert db_session.query(AttendanceRecord).count() == 0

    def test_duplicate_occurrence(self, db_session, active_slot):
        slot_service.record_session(db_session, active_slot.id, date(2026, 3, 1), attended=False)
        with pytest.raises(DuplicateRecordError):
            slot_service.record_session(db_session, active_slot.id, date(2026, 3, 1), attended=True)
        assert reload(db_session, active_slot.id).missed_count == 1

    def test_attendance_while_skipped_is_recorded_only(self, db_session, active_slot, intercessor):
        now = utc(2026, 3, 2, 12, 0)
        slot_service.request_skip(db_session, active_slot.id, intercessor.id, now=now)
        record, slot = slot_service.record_session(
            db_session, active_slot.id, date(2026, 3, 2), attended=False, now=now + timedelta(hours=11)
        )
        assert record.user_id == intercessor.id
        assert slot.status == "skipped"
        assert slot.missed_count == 0


class TestSkip:
    def test_skip_and_auto_reactivate(self, db_session, active_slot, intercessor):
        now = utc(2026, 3, 2, 12, 0)
        slot = slot_service.request_skip(db_session, active_slot.id, intercessor.id, now=now)
        db_session.commit()
        assert slot.status == "skipped"
        assert slot.skip_expires_at == now + timedelta(days=5)

        early = slot_service.expire_lapsed_skips(db_session, now=now + timedelta(days=4))
        assert early["processed"] == 0

        expiry = now + timedelta(days=5)
        result = slot_service.expire_lapsed_skips(db_session, now=expiry + timedelta(hours=3))
        assert result == {"processed": 1, "changed": 1, "skipped": 0}

        row = reload(db_session, active_slot.id)
        assert row.status == "active"
        assert row.missed_count == 0
        assert row.skip_expires_at is None
        assert row.active_since == expiry

    def test_skip_by_someone_else(self, db_session, active_slot, other_intercessor):
        with pytest.raises(ForbiddenError):
            slot_service.request_skip(db_session, active_slot.id, other_intercessor.id)

    def test_self_service_skip_uses_grace_period(self, db_session, active_slot, intercessor):
        now = utc(2026, 3, 2, 12, 0)
        slot = slot_service.request_skip(db_session, active_slot.id, intercessor.id, now=now)
        assert slot.skip_expires_at - now == timedelta(days=5)

    @pytest.mark.parametrize("days", [0, 31])
    def test_granted_skip_length_bounds(self, db_session, active_slot, intercessor, days):
        with pytest.raises(ValidationError):
            slot_service.grant_skip(db_session, active_slot.id, intercessor.id, days)

    def test_granted_skip_stretches_running_skip(self, db_session, active_slot, intercessor):
        now = utc(2026, 3, 2, 12, 0)
        slot_service.request_skip(db_session, active_slot.id, intercessor.id, now=now)
        slot = slot_service.grant_skip(db_session, active_slot.id, intercessor.id, 20, now=now + timedelta(hours=1))
        db_session.commit()
        row = reload(db_session, slot.id)
        assert row.skip_started_at == now
        assert row.skip_expires_at == now + timedelta(days=20)

    def test_reactivate(self, db_session, active_slot, intercessor):
        now = utc(2026, 3, 2, 12, 0)
        slot_service.request_skip(db_session, active_slot.id, intercessor.id, now=now)
        slot = slot_service.reactivate(db_session, active_slot.id, intercessor.id, now=now + timedelta(hours=1))
        assert slot.status == "active"
        assert slot.active_since == now + timedelta(hours=1)

    def test_refresh_persists_lapsed_skip(self, db_session, active_slot, intercessor):
        now = utc(2026, 3, 2, 12, 0)
        slot = slot_service.request_skip(db_session, active_slot.id, intercessor.id, now=now)
        slot = slot_service.refresh_slot(db_session, slot, now + timedelta(days=6))
        assert slot.status == "active"


class TestOptimisticSave:
    def test_stale_version_conflicts(self, db_session, active_slot):
        slot = slot_service.load_slot(db_session, active_slot.id)
        stale_version = slot.version
        db_session.execute(
            update(PrayerSlot)
            .where(PrayerSlot.id == slot.id)
            .values(version=PrayerSlot.version + 1)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(ConflictError):
            slot_service.save_slot(db_session, slot, SlotState.of(slot), stale_version)


class TestSweep:
    def test_records_miss_for_ended_window(self, db_session, active_slot):
        result = slot_service.sweep_missed_sessions(db_session, now=utc(2026, 3, 1, 22, 31))
        assert result["changed"] == 1

        row = reload(db_session, active_slot.id)
        assert row.status == "missed"
        assert row.missed_count == 1
        record = db_session.query(AttendanceRecord).one()
        assert record.date == date(2026, 3, 1)
        assert record.attended is False
        assert record.source == "sweep"

        again = slot_service.sweep_missed_sessions(db_session, now=utc(2026, 3, 1, 22, 40))
        assert again["changed"] == 0
        assert reload(db_session, active_slot.id).missed_count == 1

    def test_attended_window_not_swept(self, db_session, active_slot):
        slot_service.record_session(db_session, active_slot.id, date(2026, 3, 1), attended=True)
        db_session.commit()
        result = slot_service.sweep_missed_sessions(db_session, now=utc(2026, 3, 1, 22, 31))
        assert result["changed"] == 0
        assert reload(db_session, active_slot.id).status == "active"

    def test_window_before_assignment_not_owed(self, db_session, slot, intercessor):
        slot_service.assign_slot(db_session, slot.id, intercessor.id, now=utc(2026, 3, 1, 22, 40))
        db_session.commit()
        result = slot_service.sweep_missed_sessions(db_session, now=utc(2026, 3, 1, 22, 45))
        assert result["changed"] == 0

    def test_skipped_slot_not_swept(self, db_session, active_slot, intercessor):
        slot_service.request_skip(db_session, active_slot.id, intercessor.id, now=utc(2026, 3, 1, 12, 0))
        db_session.commit()
        result = slot_service.sweep_missed_sessions(db_session, now=utc(2026, 3, 1, 22, 31))
        assert result["changed"] == 0


class TestRelease:
    def test_releases_exhausted_slot(self, db_session, active_slot):
        row = reload(db_session, active_slot.id)
        row.status = "missed"
        row.missed_count = 5
        db_session.commit()

        result = slot_service.release_exhausted_slots(db_session, now=utc(2026, 3, 6, 0, 0))
        assert result["changed"] == 1
        row = reload(db_session, active_slot.id)
        assert row.status == "released"
        assert row.user_id is None

        again = slot_service.release_exhausted_slots(db_session, now=utc(2026, 3, 6, 1, 0))
        assert again["processed"] == 0

    def test_below_threshold_untouched(self, db_session, active_slot):
        row = reload(db_session, active_slot.id)
        row.status = "missed"
        row.missed_count = 4
        db_session.commit()

        result = slot_service.release_exhausted_slots(db_session, now=utc(2026, 3, 6, 0, 0))
        assert result["processed"] == 0
        assert reload(db_session, active_slot.id).status == "missed"

    def test_released_slot_can_be_claimed_again(self, db_session, active_slot, other_intercessor):
        for n in range(1, 6):
            slot_service.record_session(db_session, active_slot.id, date(2026, 3, n), attended=False)
        slot = slot_service.assign_slot(db_session, active_slot.id, other_intercessor.id, now=utc(2026, 3, 6))
        assert slot.status == "active"
        assert slot.user_id == other_intercessor.id
        assert slot.released_at is None


class TestBatchRunner:
    def test_failed_slot_is_logged_and_skipped(self, db_session, caplog):
        def job(slot_id):
            if slot_id == 2:
                raise ConflictError("modified concurrently")
            return True

        with caplog.at_level(logging.WARNING):
            result = slot_service._run_per_slot(db_session, [1, 2, 3], "test-job", job)

        assert result == {"processed": 3, "changed": 2, "skipped": 1}
        assert "skipping slot 2" in caplog.text


class TestRecordJoin:
    def test_join_inside_window(self, db_session, active_slot, intercessor):
        record = slot_service.record_join(
            db_session,
            intercessor.id,
            joined_at=utc(2026, 3, 2, 22, 5),
            left_at=utc(2026, 3, 2, 22, 25),
        )
        assert record.date == date(2026, 3, 2)
        assert record.attended is True
        assert record.duration_minutes == 20
        assert record.source == "zoom"

        assert slot_service.record_join(db_session, intercessor.id, utc(2026, 3, 2, 22, 10)) is None

    def test_join_outside_window(self, db_session, active_slot, intercessor):
        assert slot_service.record_join(db_session, intercessor.id, utc(2026, 3, 2, 10, 0)) is None
        assert db_session.query(AttendanceRecord).count() == 0

    def test_overnight_join_belongs_to_previous_day(self, db_session, make_slot, intercessor):
        overnight = make_slot("23:45–00:15")
        slot_service.assign_slot(db_session, overnight.id, intercessor.id, now=ASSIGNED_AT)
        record = slot_service.record_join(db_session, intercessor.id, utc(2026, 3, 2, 0, 5))
        assert record.date == date(2026, 3, 1)
        assert record.duration_minutes == 10


class TestCatalog:
    def test_seed_is_idempotent(self, db_session):
        assert slot_service.seed_slot_catalog(db_session, length_minutes=30, tz_name="UTC") == 48
        db_session.commit()
        assert slot_service.seed_slot_catalog(db_session, length_minutes=30, tz_name="UTC") == 0
        assert db_session.query(PrayerSlot).filter(PrayerSlot.status == SlotStatus.UNASSIGNED.value).count() == 48
