from __future__ import annotations

import logging
from typing import Any

from batchqa.errors import invalid_state, not_found, validation_error
from batchqa.rule_evaluator import VERDICTS, evaluate
from batchqa.security import Actor

logger = logging.getLogger(__name__)

VERIFICATION_STATUSES = ["SUBMITTED", "APPROVED", "REJECTED"]
COMPLETE_ACTIONS = ("APPROVE", "REJECT")


def _normalize_verifications(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, (list, tuple)) or not raw:
        raise validation_error("verifications must be a non-empty list")
    out: list[dict[str, Any]] = []
    seen: set[str] = set()
    duplicates: set[str] = set()
    for item in raw:
        if not isinstance(item, dict):
            raise validation_error("verification entries must be objects")
        value_id = str(item.get("parameter_value_id") or "").strip()
        if not value_id:
            raise validation_error("parameter_value_id is required")
        result = str(item.get("verification_result") or "").strip().upper()
        if not result:
            raise validation_error(f"verification_result is required for {value_id}")
        if result not in VERDICTS:
            raise validation_error(f"unknown verification_result: {result}")
        if value_id in seen:
            duplicates.add(value_id)
        seen.add(value_id)
        remark = item.get("verification_remark")
        out.append(
            {
                "parameter_value_id": value_id,
                "verification_result": result,
                "verification_remark": None if remark is None else str(remark),
            }
        )
    if duplicates:
        raise validation_error("parameter_value_id repeated in verifications", invalid_ids=sorted(duplicates))
    return out


class StoreVerificationMixin:
    def record_parameter_verification(
        self,
        *,
        actor: Actor,
        batch_id: str,
        verifications: list[dict[str, Any]],
    ) -> dict[str, Any]:
        entries = _normalize_verifications(verifications)
        with self._transaction():
            batch = self._load_batch_for_update(batch_id)
            if batch.get("status") != "SUBMITTED":
                raise invalid_state("parameters can only be verified while the batch is SUBMITTED")

            rows: list[dict[str, Any]] = []
            missing: list[str] = []
            for entry in entries:
                row = self.parameter_values_repository.get(value_id=entry["parameter_value_id"])
                if row is None or row.get("batch_id") != batch_id:
                    missing.append(entry["parameter_value_id"])
                    continue
                rows.append(row)
            if missing:
                raise not_found(f"parameter values not found in batch: {', '.join(sorted(missing))}")

            now = self._utcnow_iso()
            saved: list[dict[str, Any]] = []
            for entry, row in zip(entries, rows):
                saved.append(
                    self.parameter_values_repository.upsert(
                        value={
                            **row,
                            "verification_result": entry["verification_result"],
                            "verification_remark": entry["verification_remark"],
                            "verified_by": actor.user_id,
                            "verified_at": now,
                            "updated_at": now,
                        }
                    )
                )
            self._append_audit_log(
                actor=actor,
                action="VERIFY_PARAMETERS",
                batch_id=batch_id,
                details={"verified_count": len(saved)},
            )
            logger.info(
                "parameters_verified batch_id=%s count=%s actor_id=%s",
                batch_id,
                len(saved),
                actor.user_id,
            )
            return {
                "batch_id": batch_id,
                "verified_count": len(saved),
                "parameter_values": saved,
            }

    def complete_verification(
        self,
        *,
        actor: Actor,
        batch_id: str,
        action: str,
        remarks: str | None = None,
    ) -> dict[str, Any]:
        normalized = str(action or "").strip().upper()
        if normalized not in COMPLETE_ACTIONS:
            raise validation_error("action must be APPROVE or REJECT")
        cleaned = (remarks or "").strip()
        if normalized == "REJECT" and not cleaned:
            raise validation_error("rejection remarks are required")
        with self._transaction() as hooks:
            if normalized == "APPROVE":
                return self._approve_in_tx(hooks, actor=actor, batch_id=batch_id, after_verification=True)
            return self._reject_in_tx(
                hooks,
                actor=actor,
                batch_id=batch_id,
                remarks=cleaned,
                after_verification=True,
            )

    def list_batches_for_verification(self) -> list[dict[str, Any]]:
        with self._reading():
            batches = self.batches_repository.list(statuses=list(VERIFICATION_STATUSES))
            out: list[dict[str, Any]] = []
            for batch in batches:
                values = self._enrich_values(
                    self.parameter_values_repository.list_for_batch(batch_id=batch["batch_id"])
                )
                category_counts: dict[str, int] = {}
                for value in values:
                    name = str(value["category_name"])
                    category_counts[name] = category_counts.get(name, 0) + 1
                maker = self.reference_repository.get(kind="users", ref_id=str(batch.get("maker_id") or ""))
                out.append(
                    {
                        **batch,
                        "product_name": self._product_name(batch),
                        "maker_name": (maker or {}).get("name"),
                        "parameter_count": len(values),
                        "verified_count": sum(1 for x in values if x.get("verification_result")),
                        "category_counts": dict(sorted(category_counts.items())),
                    }
                )
            return out

    def get_batch_parameters_for_verification(self, *, batch_id: str) -> dict[str, Any]:
        with self._reading():
            batch = self.batches_repository.get(batch_id=batch_id)
            if batch is None:
                raise not_found("batch not found")
            if batch.get("status") == "DRAFT":
                raise invalid_state("DRAFT batches are not available for verification")
            values = self._enrich_values(self.parameter_values_repository.list_for_batch(batch_id=batch_id))
            rows: list[dict[str, Any]] = []
            for value in values:
                definition = self.reference_repository.latest_active_standard_definition(
                    parameter_id=value["parameter_id"]
                )
                standard = None
                target = None
                if definition is not None:
                    target = definition.get("standard_value")
                    unit = self.reference_repository.get(
                        kind="units", ref_id=str(definition.get("unit_id") or "")
                    )
                    methodology = self.reference_repository.get(
                        kind="methodologies", ref_id=str(definition.get("methodology_id") or "")
                    )
                    standard = {
                        "definition_id": definition.get("definition_id"),
                        "standard_value": target,
                        "unit_symbol": (unit or {}).get("symbol"),
                        "methodology_name": (methodology or {}).get("name"),
                    }
                rows.append(
                    {
                        **value,
                        "standard": standard,
                        "suggested_verdict": evaluate(value.get("data_type"), target, value.get("value")),
                    }
                )
            return {
                "batch": {**batch, "product_name": self._product_name(batch)},
                "categories": self._group_by_category(rows),
            }
