"""
Tests for the prayer slot and skip request API endpoints
"""
from datetime import date, timedelta

from fastapi.testclient import TestClient

from main import app
from models import PrayerSlot
from services.slot_service import record_session

client = TestClient(app)


def slot_row(db, slot_id) -> PrayerSlot:
    db.expire_all()
    return db.query(PrayerSlot).filter(PrayerSlot.id == slot_id).one()


class TestAuth:
    def test_health(self, db_session):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_requires_token(self, db_session):
        response = client.get("/v1/slots")
        assert response.status_code == 401

    def test_rejects_bad_token(self, db_session):
        response = client.get("/v1/slots", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401


class TestCatalog:
    def test_list_slots(self, make_slot, active_slot, auth_headers):
        make_slot("08:00–08:30")
        response = client.get("/v1/slots", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert [row["slot_time"] for row in data] == ["08:00–08:30", "22:00–22:30"]
        assert [row["is_available"] for row in data] == [True, False]

    def test_available_only(self, make_slot, active_slot, auth_headers):
        make_slot("08:00–08:30")
        response = client.get("/v1/slots?available_only=true", headers=auth_headers)
        assert [row["slot_time"] for row in response.json()] == ["08:00–08:30"]

    def test_network_coverage(self, make_slot, active_slot, auth_headers):
        make_slot("08:00–08:30")
        response = client.get("/v1/slots/coverage", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {
            "total_windows": 2,
            "held_windows": 1,
            "active_windows": 1,
            "coverage_percent": 50,
        }


class TestAssignment:
    def test_claim_free_slot(self, db_session, slot, intercessor, auth_headers):
        response = client.post(f"/v1/slots/{slot.id}/assign", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "active"
        assert data["user_id"] == str(intercessor.id)
        assert slot_row(db_session, slot.id).status == "active"

    def test_claim_held_slot(self, active_slot, other_headers):
        response = client.post(f"/v1/slots/{active_slot.id}/assign", headers=other_headers)
        assert response.status_code == 409
        assert response.json()["error_code"] == "CONFLICT"

    def test_claim_unknown_slot(self, db_session, auth_headers):
        response = client.post("/v1/slots/9999/assign", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"


class TestSkip:
    def test_skip_and_reactivate(self, db_session, active_slot, auth_headers):
        response = client.post(f"/v1/slots/{active_slot.id}/skip", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "skipped"
        assert response.json()["skip_expires_at"] is not None

        response = client.post(f"/v1/slots/{active_slot.id}/reactivate", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "active"
        assert slot_row(db_session, active_slot.id).skip_expires_at is None

    def test_skip_length_is_not_self_service(self, db_session, active_slot, auth_headers):
        response = client.post(
            f"/v1/slots/{active_slot.id}/skip",
            headers=auth_headers,
            json={"skip_days": 30},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "skipped"
        row = slot_row(db_session, active_slot.id)
        assert row.skip_expires_at - row.skip_started_at == timedelta(days=5)

    def test_skip_someone_elses_slot(self, active_slot, other_headers):
        response = client.post(f"/v1/slots/{active_slot.id}/skip", headers=other_headers)
        assert response.status_code == 403
        assert response.json()["error_code"] == "FORBIDDEN"

    def test_reactivate_active_slot_is_a_no_op(self, active_slot, auth_headers):
        response = client.post(f"/v1/slots/{active_slot.id}/reactivate", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "active"


class TestAttendance:
    def test_admin_records_attendance(self, db_session, active_slot, admin_headers):
        response = client.post(
            f"/v1/slots/{active_slot.id}/attendance",
            headers=admin_headers,
            json={"date": "2026-03-01", "attended": False},
        )
        assert response.status_code == 201
        assert response.json()["attended"] is False

        row = slot_row(db_session, active_slot.id)
        assert row.status == "missed"
        assert row.missed_count == 1

    def test_duplicate_attendance(self, active_slot, admin_headers):
        body = {"date": "2026-03-01", "attended": True, "duration_minutes": 30}
        assert client.post(f"/v1/slots/{active_slot.id}/attendance", headers=admin_headers, json=body).status_code == 201
        response = client.post(f"/v1/slots/{active_slot.id}/attendance", headers=admin_headers, json=body)
        assert response.status_code == 409
        assert response.json()["error_code"] == "DUPLICATE_RECORD"

    def test_attendance_on_free_slot(self, slot, admin_headers):
        response = client.post(
            f"/v1/slots/{slot.id}/attendance",
            headers=admin_headers,
            json={"date": "2026-03-01", "attended": True},
        )
        assert response.status_code == 409
        assert response.json()["error_code"] == "INVALID_STATE"

    def test_intercessors_cannot_record(self, active_slot, auth_headers):
        response = client.post(
            f"/v1/slots/{active_slot.id}/attendance",
            headers=auth_headers,
            json={"date": "2026-03-01", "attended": True},
        )
        assert response.status_code == 403

    def test_join_outside_any_window(self, active_slot, intercessor, admin_headers):
        response = client.post(
            "/v1/slots/attendance/join",
            headers=admin_headers,
            json={"user_id": str(intercessor.id), "joined_at": "2026-03-01T10:00:00Z"},
        )
        assert response.status_code == 200
        assert response.json() is None

    def test_join_inside_window(self, active_slot, intercessor, admin_headers):
        response = client.post(
            "/v1/slots/attendance/join",
            headers=admin_headers,
            json={
                "user_id": str(intercessor.id),
                "joined_at": "2026-03-01T22:02:00Z",
                "left_at": "2026-03-01T22:30:00Z",
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["date"] == "2026-03-01"
        assert data["duration_minutes"] == 28
        assert data["source"] == "zoom"


class TestChangeSlot:
    def test_change_to_free_window(self, db_session, make_slot, active_slot, intercessor, auth_headers):
        morning = make_slot("08:00–08:30")
        response = client.post(f"/v1/slots/{morning.id}/change", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["id"] == morning.id
        assert response.json()["user_id"] == str(intercessor.id)
        assert slot_row(db_session, active_slot.id).status == "released"

    def test_change_to_held_window(self, db_session, make_slot, active_slot, other_headers):
        morning = make_slot("08:00–08:30")
        assert client.post(f"/v1/slots/{morning.id}/assign", headers=other_headers).status_code == 200

        response = client.post(f"/v1/slots/{active_slot.id}/change", headers=other_headers)
        assert response.status_code == 409
        assert slot_row(db_session, morning.id).status == "active"
        assert slot_row(db_session, active_slot.id).status == "active"

    def test_release_own_window(self, db_session, active_slot, auth_headers, other_headers):
        response = client.post(f"/v1/slots/{active_slot.id}/release", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "released"
        assert response.json()["user_id"] is None

        response = client.post(f"/v1/slots/{active_slot.id}/assign", headers=other_headers)
        assert response.status_code == 200

    def test_release_someone_elses_window(self, active_slot, other_headers):
        response = client.post(f"/v1/slots/{active_slot.id}/release", headers=other_headers)
        assert response.status_code == 403


class TestAttendanceHistory:
    def _history(self, db, slot):
        for n, attended in enumerate([True, False, True]):
            record_session(db, slot.id, date(2026, 3, 1) + timedelta(days=n), attended=attended)
        db.commit()

    def test_own_history_newest_first(self, db_session, active_slot, intercessor, auth_headers):
        self._history(db_session, active_slot)
        response = client.get(f"/v1/slots/attendance/{intercessor.id}", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert [r["date"] for r in data] == ["2026-03-03", "2026-03-02", "2026-03-01"]
        assert [r["attended"] for r in data] == [True, False, True]

    def test_history_limit_and_range(self, db_session, active_slot, intercessor, auth_headers):
        self._history(db_session, active_slot)
        response = client.get(
            f"/v1/slots/attendance/{intercessor.id}?start_date=2026-03-02&limit=1",
            headers=auth_headers,
        )
        assert [r["date"] for r in response.json()] == ["2026-03-03"]

    def test_others_history_is_private(self, active_slot, intercessor, other_headers):
        response = client.get(f"/v1/slots/attendance/{intercessor.id}", headers=other_headers)
        assert response.status_code == 403

    def test_admin_reads_any_history(self, db_session, active_slot, intercessor, admin_headers):
        self._history(db_session, active_slot)
        response = client.get(f"/v1/slots/attendance/{intercessor.id}", headers=admin_headers)
        assert response.status_code == 200
        assert len(response.json()) == 3


class TestAttendanceStats:
    def test_admin_stats(self, db_session, active_slot, admin_headers):
        for n, attended in enumerate([True, True, False, True]):
            record_session(db_session, active_slot.id, date(2026, 3, 1) + timedelta(days=n), attended=attended)
        db_session.commit()

        response = client.get("/v1/slots/admin/attendance-stats", headers=admin_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["total_sessions"] == 4
        assert data["attended_sessions"] == 3
        assert data["missed_sessions"] == 1
        assert data["attendance_rate"] == 75.0
        assert data["active_intercessors"] == 1
        assert data["last_updated"]

    def test_intercessors_cannot_read_stats(self, db_session, auth_headers):
        response = client.get("/v1/slots/admin/attendance-stats", headers=auth_headers)
        assert response.status_code == 403


class TestDashboard:
    def test_my_slot(self, active_slot, auth_headers):
        response = client.get("/v1/slots/me", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["slot_id"] == active_slot.id
        assert data["status"] == "active"
        assert set(data["countdown"]) == {"hours", "minutes", "seconds"}

    def test_my_slot_without_assignment(self, db_session, auth_headers):
        data = client.get("/v1/slots/me", headers=auth_headers).json()
        assert data["slot_id"] is None
        assert data["status"] == "unassigned"
        assert data["countdown"] is None

    def test_my_progress(self, active_slot, auth_headers):
        response = client.get("/v1/slots/me/progress", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["day_streak"] == 0
        assert data["total_days"] == 0
        assert data["attendance_rate"] == 0.0

    def test_slot_coverage(self, active_slot, auth_headers):
        response = client.get(f"/v1/slots/{active_slot.id}/coverage?lookback_days=7", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["lookback_days"] == 7
        assert data["scheduled"] == 0
        assert data["coverage_percent"] == 0

    def test_slot_coverage_bad_lookback(self, active_slot, auth_headers):
        response = client.get(f"/v1/slots/{active_slot.id}/coverage?lookback_days=0", headers=auth_headers)
        assert response.status_code == 422


class TestSkipRequests:
    def test_request_and_approve(self, db_session, active_slot, auth_headers, admin_headers):
        response = client.post(
            "/v1/skip-requests",
            headers=auth_headers,
            json={"skip_days": 10, "reason": "Mission trip"},
        )
        assert response.status_code == 201
        request_id = response.json()["id"]
        assert response.json()["status"] == "pending"

        response = client.post(
            f"/v1/skip-requests/{request_id}/decision",
            headers=admin_headers,
            json={"approve": True, "admin_comment": "Go well"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "approved"
        assert slot_row(db_session, active_slot.id).status == "skipped"

    def test_only_admins_decide(self, active_slot, auth_headers):
        created = client.post(
            "/v1/skip-requests",
            headers=auth_headers,
            json={"skip_days": 10, "reason": "Mission trip"},
        ).json()
        response = client.post(
            f"/v1/skip-requests/{created['id']}/decision",
            headers=auth_headers,
            json={"approve": True},
        )
        assert response.status_code == 403

    def test_listing_scoped_to_requester(self, active_slot, auth_headers, other_headers, admin_headers):
        client.post("/v1/skip-requests", headers=auth_headers, json={"skip_days": 3, "reason": "Exams"})

        assert len(client.get("/v1/skip-requests", headers=auth_headers).json()) == 1
        assert client.get("/v1/skip-requests", headers=other_headers).json() == []
        assert len(client.get("/v1/skip-requests?status_filter=pending", headers=admin_headers).json()) == 1


class TestErrorTracking:
    def test_sensitive_headers_are_scrubbed(self):
        from main import _filter_sensitive_data

        event = {"request": {"headers": {"authorization": "Bearer x", "cookie": "c", "accept": "*/*"}}}
        assert _filter_sensitive_data(event, None)["request"]["headers"] == {"accept": "*/*"}
