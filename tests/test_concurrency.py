from __future__ import annotations

import threading

import pytest

from batchqa.errors import ApiError
from conftest import CHECKER, CHECKER_2, MAKER


def test_two_checkers_racing_on_one_batch_yield_one_winner(store, submitted_batch):
    batch_id = submitted_batch["batch_id"]
    original_get = store.batches_repository.get
    first_read = threading.Event()
    second_started = threading.Event()
    seen_statuses: list[str] = []

    def _slow_get(*, batch_id, for_update=False):
        row = original_get(batch_id=batch_id, for_update=for_update)
        seen_statuses.append(row["status"])
        if not first_read.is_set():
            first_read.set()
            second_started.wait(timeout=5)
        return row

    store.batches_repository.get = _slow_get
    outcomes: dict[str, object] = {}

    def _approve(name, actor):
        if name == "second":
            second_started.set()
        try:
            outcomes[name] = store.approve_batch(actor=actor, batch_id=batch_id)
        except ApiError as exc:
            outcomes[name] = exc

    first = threading.Thread(target=_approve, args=("first", CHECKER))
    second = threading.Thread(target=_approve, args=("second", CHECKER_2))
    first.start()
    assert first_read.wait(timeout=5)
    second.start()
    first.join(timeout=5)
    second.join(timeout=5)

    successes = [x for x in outcomes.values() if isinstance(x, dict)]
    failures = [x for x in outcomes.values() if isinstance(x, ApiError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert failures[0].code == "INVALID_STATE"
    assert seen_statuses == ["SUBMITTED", "APPROVED"]
    assert store.batches[batch_id]["checker_id"] == CHECKER.user_id
    assert [x["action"] for x in store.audit_logs].count("APPROVE_BATCH") == 1


def test_stale_read_loses_compare_and_set(store, sink, submitted_batch):
    batch_id = submitted_batch["batch_id"]
    stale = store.batches_repository.get(batch_id=batch_id)
    store.approve_batch(actor=CHECKER, batch_id=batch_id)
    audit_count = len(store.audit_logs)
    sink.calls.clear()

    store.batches_repository.get = lambda *, batch_id, for_update=False: dict(stale)

    with pytest.raises(ApiError) as exc:
        store.reject_batch(actor=CHECKER_2, batch_id=batch_id, remarks="late reject")
    assert exc.value.code == "INVALID_STATE"

    assert store.batches[batch_id]["status"] == "APPROVED"
    assert store.batches[batch_id]["checker_id"] == CHECKER.user_id
    assert store.batches[batch_id]["rejection_remarks"] is None
    assert len(store.audit_logs) == audit_count
    assert sink.calls == []


def test_repository_transition_only_applies_from_expected_status(store, submitted_batch):
    repo = store.batches_repository
    batch_id = submitted_batch["batch_id"]

    assert repo.transition(batch_id=batch_id, expected_status="DRAFT", changes={"status": "SUBMITTED"}) is None
    saved = repo.transition(
        batch_id=batch_id,
        expected_status="SUBMITTED",
        changes={"status": "APPROVED", "checker_id": CHECKER.user_id},
    )
    assert saved["status"] == "APPROVED"
    assert repo.transition(batch_id=batch_id, expected_status="SUBMITTED", changes={"status": "REJECTED"}) is None
    assert repo.transition(batch_id="bat_missing", expected_status="SUBMITTED", changes={}) is None


def test_failed_rival_transaction_keeps_committed_notification(store, submitted_batch):
    batch_id = submitted_batch["batch_id"]
    delegate = store.notification_sink
    original_snapshot = store._snapshot
    winner_in_hook = threading.Event()
    rival_snapshotted = threading.Event()
    notification_written = threading.Event()

    class _GatedSink:
        def notify(self, **kwargs):
            winner_in_hook.set()
            rival_snapshotted.wait(timeout=5)
            delegate.notify(**kwargs)
            notification_written.set()

    def _gated_snapshot():
        snapshot = original_snapshot()
        if winner_in_hook.is_set() and not rival_snapshotted.is_set():
            rival_snapshotted.set()
            notification_written.wait(timeout=5)
        return snapshot

    store.notification_sink = _GatedSink()
    store._snapshot = _gated_snapshot
    errors: list[str] = []

    def _reject():
        assert winner_in_hook.wait(timeout=5)
        try:
            store.reject_batch(actor=CHECKER_2, batch_id=batch_id, remarks="late reject")
        except ApiError as exc:
            errors.append(exc.code)

    rival = threading.Thread(target=_reject)
    rival.start()
    store.approve_batch(actor=CHECKER, batch_id=batch_id)
    rival.join(timeout=5)

    assert errors == ["INVALID_STATE"]
    assert store.batches[batch_id]["status"] == "APPROVED"
    inbox = store.list_notifications_for_user(user_id=MAKER.user_id)
    assert [x["type"] for x in inbox] == ["BATCH_APPROVED"]
