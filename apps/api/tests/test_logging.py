"""
Tests for the JSON formatter and per-slot log context
"""
import json
import logging

from core.logging import JSONFormatter, SlotContextFilter, slot_context


def make_record(message="Slot released", **extra) -> logging.LogRecord:
    record = logging.LogRecord("services.slot_service", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestSlotContext:
    def test_fields_attached_inside_block(self):
        record = make_record()
        with slot_context(slot_id=7, job="auto-release"):
            SlotContextFilter().filter(record)
        assert record.slot_fields == {"slot_id": 7, "job": "auto-release"}
        assert record.slot == " [slot_id=7] [job=auto-release]"

    def test_nested_blocks_merge_and_unwind(self):
        with slot_context(job="missed-sweep"):
            with slot_context(slot_id=3):
                inner = make_record()
                SlotContextFilter().filter(inner)
            outer = make_record()
            SlotContextFilter().filter(outer)
        after = make_record()
        SlotContextFilter().filter(after)

        assert inner.slot_fields == {"job": "missed-sweep", "slot_id": 3}
        assert outer.slot_fields == {"job": "missed-sweep"}
        assert after.slot_fields == {}
        assert after.slot == ""


class TestJSONFormatter:
    def test_slot_and_extra_fields(self):
        record = make_record(extra_fields={"to_status": "released"})
        with slot_context(slot_id=7):
            SlotContextFilter().filter(record)
        data = json.loads(JSONFormatter().format(record))
        assert data["message"] == "Slot released"
        assert data["level"] == "INFO"
        assert data["slot_id"] == 7
        assert data["to_status"] == "released"

    def test_record_without_filter(self):
        data = json.loads(JSONFormatter().format(make_record()))
        assert "slot_id" not in data
        assert data["logger"] == "services.slot_service"
