"""Certificate of Analysis assembly.

Every parameter value is evaluated exactly once; the grouped table and the compliance
summary are both derived from that single pass, so
``total_parameters == parameters_without_standards + compliant + non_compliant``.
"""

from __future__ import annotations

import logging
from typing import Any

from batchqa.errors import invalid_state, not_found
from batchqa.rule_evaluator import COMPLIANT, NON_COMPLIANT, NOT_APPLICABLE, evaluate_detailed
from batchqa.security import Actor

logger = logging.getLogger(__name__)

NOT_DEFINED = "Not defined"
PENDING_APPROVAL = "Pending Approval"
UNKNOWN_USER = "Unknown"


def _summarize(rows: list[dict[str, Any]]) -> dict[str, Any]:
    compliant = sum(1 for x in rows if x["compliance_status"] == COMPLIANT)
    non_compliant = sum(1 for x in rows if x["compliance_status"] == NON_COMPLIANT)
    if non_compliant:
        overall = NON_COMPLIANT
    elif compliant:
        overall = COMPLIANT
    else:
        overall = NOT_APPLICABLE
    return {
        "total_parameters": len(rows),
        "compliant_parameters": compliant,
        "non_compliant_parameters": non_compliant,
        "parameters_without_standards": sum(1 for x in rows if not x["has_standard"]),
        "overall_verdict": overall,
    }


class StoreCertificateMixin:
    def _certificate_row(self, value: dict[str, Any]) -> dict[str, Any]:
        definition = self.reference_repository.latest_active_standard_definition(
            parameter_id=value["parameter_id"]
        )
        target = str((definition or {}).get("standard_value") or "")
        has_standard = bool(target.strip())
        standard_unit = None
        standard_methodology = None
        if definition is not None:
            unit = self.reference_repository.get(kind="units", ref_id=str(definition.get("unit_id") or ""))
            methodology = self.reference_repository.get(
                kind="methodologies", ref_id=str(definition.get("methodology_id") or "")
            )
            standard_unit = (unit or {}).get("symbol")
            standard_methodology = (methodology or {}).get("name")

        evaluation = evaluate_detailed(value.get("data_type"), target if has_standard else None, value.get("value"))
        return {
            "value_id": value["value_id"],
            "parameter_id": value["parameter_id"],
            "parameter_name": value["parameter_name"],
            "category_name": value["category_name"],
            "standard_value": target if has_standard else NOT_DEFINED,
            "standard_unit": standard_unit if has_standard and standard_unit else NOT_DEFINED,
            "actual_value": value.get("value"),
            "actual_unit": value.get("unit_symbol") or "",
            "test_methodology": value.get("methodology_name") or standard_methodology or "",
            "compliance_status": evaluation.verdict,
            "rule": evaluation.rule,
            "verification_result": value.get("verification_result"),
            "has_standard": has_standard,
        }

    def build_certificate(self, *, actor: Actor, batch_id: str) -> dict[str, Any]:
        with self._transaction():
            batch = self.batches_repository.get(batch_id=batch_id)
            if batch is None:
                raise not_found("batch not found")
            if batch.get("status") == "DRAFT":
                raise invalid_state("certificates are not available for DRAFT batches")

            values = self._enrich_values(self.parameter_values_repository.list_for_batch(batch_id=batch_id))
            rows = [self._certificate_row(value) for value in values]
            summary = _summarize(rows)

            product = self.reference_repository.get(kind="products", ref_id=str(batch.get("product_id") or "")) or {}
            maker = self.reference_repository.get(kind="users", ref_id=str(batch.get("maker_id") or ""))
            checker = None
            if batch.get("checker_id"):
                checker = self.reference_repository.get(kind="users", ref_id=str(batch["checker_id"]))

            issued_at = self._utcnow()
            certificate_number = f"COA/{batch['batch_number']}/{issued_at.year}"
            certificate = {
                "certificate_number": certificate_number,
                "issued_at": issued_at.isoformat(),
                "batch_id": batch_id,
                "status": batch.get("status"),
                "product": {
                    "product_id": product.get("product_id"),
                    "name": product.get("name"),
                    "code": product.get("code"),
                    "batch_number": batch["batch_number"],
                    "date_of_production": batch.get("date_of_production"),
                    "best_before_date": batch.get("best_before_date"),
                },
                "sample_analysis": {
                    "started_at": batch.get("sample_analysis_started_at"),
                    "ended_at": batch.get("sample_analysis_ended_at"),
                    "status": batch.get("sample_analysis_status"),
                },
                "categories": [
                    {
                        "category_name": group["category_name"],
                        "parameters": [
                            {k: v for k, v in row.items() if k not in {"category_name", "has_standard"}}
                            for row in group["parameters"]
                        ],
                    }
                    for group in self._group_by_category(rows)
                ],
                "tested_by": (maker or {}).get("name") or UNKNOWN_USER,
                "approved_by": (checker or {}).get("name") or PENDING_APPROVAL,
                "compliance_summary": summary,
            }
            self._append_audit_log(
                actor=actor,
                action="GENERATE_CERTIFICATE",
                batch_id=batch_id,
                details={
                    "certificate_number": certificate_number,
                    "overall_verdict": summary["overall_verdict"],
                },
            )
            logger.info(
                "certificate_generated batch_id=%s certificate_number=%s overall=%s",
                batch_id,
                certificate_number,
                summary["overall_verdict"],
            )
            return certificate
