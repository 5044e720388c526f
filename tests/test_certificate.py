from __future__ import annotations

from datetime import UTC, datetime

import pytest

from batchqa.errors import ApiError
from conftest import CHECKER, MAKER, batch_payload


def _rows(certificate):
    return {row["parameter_id"]: row for group in certificate["categories"] for row in group["parameters"]}


def _approved(store, **overrides):
    batch = store.create_batch(actor=MAKER, payload=batch_payload(initial_status="SUBMITTED", **overrides))
    store.approve_batch(actor=CHECKER, batch_id=batch["batch_id"])
    return batch


def test_certificate_for_approved_batch(store, monkeypatch):
    batch = _approved(store)
    monkeypatch.setattr(store, "_utcnow", lambda: datetime(2027, 1, 2, 9, 30, tzinfo=UTC))

    certificate = store.build_certificate(actor=CHECKER, batch_id=batch["batch_id"])

    assert certificate["certificate_number"] == "COA/B-001/2027"
    assert certificate["issued_at"] == "2027-01-02T09:30:00+00:00"
    assert certificate["status"] == "APPROVED"
    assert certificate["product"]["name"] == "Mango Juice"
    assert certificate["product"]["batch_number"] == "B-001"
    assert certificate["sample_analysis"]["status"] == "PENDING"
    assert certificate["tested_by"] == "Mia Maker"
    assert certificate["approved_by"] == "Cara Checker"

    ph = _rows(certificate)["par_ph"]
    assert ph["standard_value"] == "5.5-7.5"
    assert ph["standard_unit"] == "pH"
    assert ph["actual_value"] == "6.8"
    assert ph["actual_unit"] == "pH"
    assert ph["test_methodology"] == "pH Meter"
    assert ph["compliance_status"] == "COMPLIANT"
    assert "has_standard" not in ph
    assert certificate["compliance_summary"] == {
        "total_parameters": 1,
        "compliant_parameters": 1,
        "non_compliant_parameters": 0,
        "parameters_without_standards": 0,
        "overall_verdict": "COMPLIANT",
    }
    assert store.audit_logs[-1]["action"] == "GENERATE_CERTIFICATE"
    assert store.audit_logs[-1]["details"]["certificate_number"] == "COA/B-001/2027"


def test_certificate_prefers_value_methodology_over_standard(store):
    batch = _approved(
        store,
        parameter_values=[
            {"parameter_id": "par_ph", "value": "6.8", "unit_id": "unit_ph", "methodology_id": "met_titration"},
        ],
    )
    row = _rows(store.build_certificate(actor=CHECKER, batch_id=batch["batch_id"]))["par_ph"]
    assert row["test_methodology"] == "Titration"


def test_certificate_mixed_summary_is_consistent(store):
    batch = _approved(
        store,
        parameter_values=[
            {"parameter_id": "par_ph", "value": "6.8", "unit_id": "unit_ph"},
            {"parameter_id": "par_color", "value": "Golden"},
            {"parameter_id": "par_brix", "value": "11", "unit_id": "unit_brix"},
            {"parameter_id": "par_moisture", "value": "6%"},
            {"parameter_id": "par_odor", "value": "Fruity"},
        ],
    )

    certificate = store.build_certificate(actor=CHECKER, batch_id=batch["batch_id"])

    summary = certificate["compliance_summary"]
    assert summary == {
        "total_parameters": 5,
        "compliant_parameters": 2,
        "non_compliant_parameters": 2,
        "parameters_without_standards": 1,
        "overall_verdict": "NON_COMPLIANT",
    }
    assert summary["total_parameters"] == (
        summary["compliant_parameters"]
        + summary["non_compliant_parameters"]
        + summary["parameters_without_standards"]
    )
    rows = _rows(certificate)
    assert rows["par_odor"]["standard_value"] == "Not defined"
    assert rows["par_odor"]["standard_unit"] == "Not defined"
    assert rows["par_odor"]["compliance_status"] == "NOT_APPLICABLE"
    assert rows["par_moisture"]["actual_unit"] == ""
    assert rows["par_color"]["standard_unit"] == "Not defined"
    assert [x["category_name"] for x in certificate["categories"]] == ["Chemical", "Physical", "Sensory"]
    assert [x["parameter_name"] for x in certificate["categories"][2]["parameters"]] == ["Color", "Odor"]


def test_blank_standard_value_counts_as_missing(store):
    store.seed_reference_data(
        {
            "standard_definitions": [
                {
                    "definition_id": "def_odor",
                    "parameter_id": "par_odor",
                    "standard_value": "   ",
                    "unit_id": None,
                    "methodology_id": None,
                    "status": "ACTIVE",
                    "updated_at": "2026-01-01T00:00:00+00:00",
                }
            ]
        }
    )
    batch = _approved(store, parameter_values=[{"parameter_id": "par_odor", "value": "Fruity"}])

    certificate = store.build_certificate(actor=CHECKER, batch_id=batch["batch_id"])

    row = _rows(certificate)["par_odor"]
    assert row["standard_value"] == "Not defined"
    assert row["compliance_status"] == "NOT_APPLICABLE"
    assert certificate["compliance_summary"]["parameters_without_standards"] == 1
    assert certificate["compliance_summary"]["overall_verdict"] == "NOT_APPLICABLE"


def test_certificate_is_deterministic_apart_from_issue_time(store):
    batch = _approved(store)
    first = store.build_certificate(actor=CHECKER, batch_id=batch["batch_id"])
    second = store.build_certificate(actor=CHECKER, batch_id=batch["batch_id"])
    first.pop("issued_at")
    second.pop("issued_at")
    assert first == second


def test_certificate_of_submitted_batch_is_pending_approval(store, submitted_batch):
    certificate = store.build_certificate(actor=MAKER, batch_id=submitted_batch["batch_id"])
    assert certificate["status"] == "SUBMITTED"
    assert certificate["approved_by"] == "Pending Approval"


def test_certificate_of_rejected_batch_names_checker(store, submitted_batch):
    store.reject_batch(actor=CHECKER, batch_id=submitted_batch["batch_id"], remarks="pH drift")
    certificate = store.build_certificate(actor=MAKER, batch_id=submitted_batch["batch_id"])
    assert certificate["status"] == "REJECTED"
    assert certificate["approved_by"] == "Cara Checker"


def test_certificate_unavailable_for_draft_or_missing_batch(store, draft_batch):
    with pytest.raises(ApiError) as exc:
        store.build_certificate(actor=MAKER, batch_id=draft_batch["batch_id"])
    assert exc.value.code == "INVALID_STATE"

    with pytest.raises(ApiError) as exc:
        store.build_certificate(actor=MAKER, batch_id="bat_missing")
    assert exc.value.code == "NOT_FOUND"
    assert [x["action"] for x in store.audit_logs] == ["CREATE_BATCH"]
