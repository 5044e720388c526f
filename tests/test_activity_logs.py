from __future__ import annotations

from datetime import UTC, datetime

import pytest

from batchqa.errors import ApiError
from conftest import CHECKER, MAKER, batch_payload


@pytest.fixture
def dated_history(store, monkeypatch):
    clock = {"now": datetime(2026, 3, 1, 10, 0, tzinfo=UTC)}
    monkeypatch.setattr(store, "_utcnow", lambda: clock["now"])

    batch = store.create_batch(actor=MAKER, payload=batch_payload())
    clock["now"] = datetime(2026, 3, 2, 23, 59, tzinfo=UTC)
    store.submit_batch(actor=MAKER, batch_id=batch["batch_id"])
    clock["now"] = datetime(2026, 3, 3, 0, 0, tzinfo=UTC)
    store.approve_batch(actor=CHECKER, batch_id=batch["batch_id"])
    clock["now"] = datetime(2026, 3, 4, 8, 0, tzinfo=UTC)
    other = store.create_batch(actor=MAKER, payload=batch_payload(batch_number="B-002"))
    return batch, other


def _actions(rows):
    return [x["action"] for x in rows]


def test_activity_logs_newest_first(store, dated_history):
    rows = store.list_activity_logs()
    assert _actions(rows) == ["CREATE_BATCH", "APPROVE_BATCH", "SUBMIT_BATCH", "CREATE_BATCH"]
    assert rows[1]["user_name"] == "Cara Checker"
    assert rows[1]["details"]["batch_number"] == "B-001"


def test_activity_logs_end_date_is_inclusive(store, dated_history):
    rows = store.list_activity_logs(start_date="2026-03-02", end_date="2026-03-02")
    assert _actions(rows) == ["SUBMIT_BATCH"]

    rows = store.list_activity_logs(start_date="2026-03-03")
    assert _actions(rows) == ["CREATE_BATCH", "APPROVE_BATCH"]

    rows = store.list_activity_logs(end_date="2026-03-01")
    assert _actions(rows) == ["CREATE_BATCH"]


def test_activity_logs_filter_by_user_and_batch(store, dated_history):
    batch, other = dated_history

    assert _actions(store.list_activity_logs(user_name="cara")) == ["APPROVE_BATCH"]
    assert _actions(store.list_activity_logs(batch_id=other["batch_id"])) == ["CREATE_BATCH"]
    assert _actions(store.list_activity_logs(batch_id=batch["batch_id"], user_name="MIA")) == [
        "SUBMIT_BATCH",
        "CREATE_BATCH",
    ]
    assert store.list_activity_logs(user_name="nobody") == []


@pytest.mark.parametrize(
    ("start_date", "end_date"),
    [("2026-03-05", "2026-03-01"), ("03/01/2026", None), (None, "soon")],
)
def test_activity_logs_reject_bad_ranges(store, start_date, end_date):
    with pytest.raises(ApiError) as exc:
        store.list_activity_logs(start_date=start_date, end_date=end_date)
    assert exc.value.code == "VALIDATION_ERROR"


def test_audit_chain_is_valid_and_detects_tampering(store, dated_history):
    report = store.verify_audit_integrity()
    assert report["valid"] is True
    assert report["checked_count"] == 4
    assert report["last_hash"] == store.audit_logs[-1]["audit_hash"]
    assert store.audit_logs[0]["prev_hash"] == ""
    assert store.audit_logs[1]["prev_hash"] == store.audit_logs[0]["audit_hash"]

    store.audit_logs[1]["details"]["batch_number"] = "B-999"
    report = store.verify_audit_integrity()
    assert report == {
        "valid": False,
        "checked_count": 2,
        "reason": "audit_hash_mismatch",
        "audit_id": store.audit_logs[1]["audit_id"],
    }


def test_audit_chain_detects_broken_link(store, dated_history):
    store.audit_logs[2]["prev_hash"] = "0" * 64
    report = store.verify_audit_integrity()
    assert report["valid"] is False
    assert report["reason"] == "prev_hash_mismatch"
    assert report["checked_count"] == 3


def test_empty_audit_chain_is_valid(store):
    assert store.verify_audit_integrity() == {"valid": True, "checked_count": 0, "last_hash": ""}
