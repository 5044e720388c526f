from __future__ import annotations

import logging
import math
from datetime import UTC, date, datetime
from typing import Any

from batchqa.errors import conflict, forbidden, invalid_state, not_found, validation_error
from batchqa.notifications import BATCH_APPROVED, BATCH_REJECTED, BATCH_SUBMITTED
from batchqa.security import Actor

logger = logging.getLogger(__name__)

BATCH_STATUSES = ("DRAFT", "SUBMITTED", "APPROVED", "REJECTED")
INITIAL_STATUSES = ("DRAFT", "SUBMITTED")
SAMPLE_ANALYSIS_STATUSES = ("PENDING", "IN_PROGRESS", "COMPLETED")
MAX_PAGE_SIZE = 100

_TAG_FIELDS = ("standard_ids", "methodology_ids", "unit_ids")


def _parse_date(value: Any, *, field: str) -> str:
    raw = str(value or "").strip()
    if not raw:
        raise validation_error(f"{field} is required")
    try:
        return date.fromisoformat(raw).isoformat()
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(raw).date().isoformat()
    except ValueError:
        raise validation_error(f"{field} must be an ISO-8601 date") from None


def _parse_timestamp(value: Any, *, field: str) -> str | None:
    if value is None or not str(value).strip():
        return None
    try:
        parsed = datetime.fromisoformat(str(value).strip())
    except ValueError:
        raise validation_error(f"{field} must be an ISO-8601 timestamp") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.isoformat()


def _check_date_order(production: str, best_before: str) -> None:
    if best_before < production:
        raise validation_error("best_before_date must not be earlier than date_of_production")


def _id_list(value: Any, *, field: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise validation_error(f"{field} must be a list of ids")
    out: list[str] = []
    for item in value:
        text = str(item or "").strip()
        if text and text not in out:
            out.append(text)
    return out


def _normalize_parameter_values(raw: Any) -> list[dict[str, Any]]:
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise validation_error("parameter_values must be a list")
    out: list[dict[str, Any]] = []
    seen: set[str] = set()
    duplicates: set[str] = set()
    for item in raw:
        if not isinstance(item, dict):
            raise validation_error("parameter_values entries must be objects")
        parameter_id = str(item.get("parameter_id") or "").strip()
        if not parameter_id:
            raise validation_error("parameter_id is required for every parameter value")
        if parameter_id in seen:
            duplicates.add(parameter_id)
        seen.add(parameter_id)
        value = item.get("value")
        out.append(
            {
                "parameter_id": parameter_id,
                "value": "" if value is None else str(value),
                "unit_id": str(item.get("unit_id") or "").strip() or None,
                "methodology_id": str(item.get("methodology_id") or "").strip() or None,
            }
        )
    if duplicates:
        raise validation_error("parameter_id repeated in parameter_values", invalid_ids=sorted(duplicates))
    return out


class StoreBatchesMixin:
    # -- reference checks --------------------------------------------------

    def _require_existing(self, *, kind: str, ref_ids: list[str], message: str, active_only: bool = False) -> None:
        if not ref_ids:
            return
        found = self.reference_repository.get_many(kind=kind, ref_ids=ref_ids)
        invalid = [
            x
            for x in ref_ids
            if x not in found or (active_only and str(found[x].get("status") or "").upper() != "ACTIVE")
        ]
        if invalid:
            raise validation_error(message, invalid_ids=invalid)

    def _validate_tags(self, tags: dict[str, list[str]]) -> None:
        self._require_existing(
            kind="standards",
            ref_ids=tags.get("standard_ids", []),
            message="one or more selected standards are invalid or inactive",
            active_only=True,
        )
        self._require_existing(
            kind="methodologies",
            ref_ids=tags.get("methodology_ids", []),
            message="one or more selected methodologies are invalid",
        )
        self._require_existing(
            kind="units",
            ref_ids=tags.get("unit_ids", []),
            message="one or more selected units of measurement are invalid",
        )

    def _validate_parameter_values(self, values: list[dict[str, Any]]) -> None:
        self._require_existing(
            kind="parameters",
            ref_ids=[x["parameter_id"] for x in values],
            message="one or more parameters are invalid",
        )
        self._require_existing(
            kind="units",
            ref_ids=sorted({x["unit_id"] for x in values if x["unit_id"]}),
            message="one or more parameter value units are invalid",
        )
        self._require_existing(
            kind="methodologies",
            ref_ids=sorted({x["methodology_id"] for x in values if x["methodology_id"]}),
            message="one or more parameter value methodologies are invalid",
        )

    def _resolve_product(self, payload: dict[str, Any]) -> dict[str, Any]:
        product_id = str(payload.get("product_id") or "").strip()
        if product_id:
            product = self.reference_repository.get(kind="products", ref_id=product_id)
            if product is not None:
                return product
        new_product = payload.get("new_product")
        if isinstance(new_product, dict) and str(new_product.get("name") or "").strip():
            now = self._utcnow_iso()
            product = self.reference_repository.upsert(
                kind="products",
                row={
                    "product_id": self._new_id("prd"),
                    "name": str(new_product["name"]).strip(),
                    "code": str(new_product.get("code") or "").strip() or None,
                    "created_at": now,
                    "updated_at": now,
                },
            )
            logger.info("product_created_inline product_id=%s", product["product_id"])
            return product
        if product_id:
            raise validation_error("product not found", invalid_ids=[product_id])
        raise validation_error("product_id or new_product is required")

    def _product_name(self, batch: dict[str, Any]) -> str:
        product = self.reference_repository.get(kind="products", ref_id=str(batch.get("product_id") or ""))
        if product is None:
            return "Unknown Product"
        return str(product.get("name") or "Unknown Product")

    # -- read helpers --------------------------------------------------------

    def _enrich_values(self, values: list[dict[str, Any]]) -> list[dict[str, Any]]:
        repo = self.reference_repository
        parameters = repo.get_many(kind="parameters", ref_ids=[x["parameter_id"] for x in values])
        categories = repo.get_many(
            kind="categories",
            ref_ids=[str(p.get("category_id")) for p in parameters.values() if p.get("category_id")],
        )
        units = repo.get_many(kind="units", ref_ids=[x["unit_id"] for x in values if x.get("unit_id")])
        methodologies = repo.get_many(
            kind="methodologies",
            ref_ids=[x["methodology_id"] for x in values if x.get("methodology_id")],
        )
        out: list[dict[str, Any]] = []
        for value in values:
            parameter = parameters.get(value["parameter_id"], {})
            category = categories.get(str(parameter.get("category_id") or ""), {})
            unit = units.get(str(value.get("unit_id") or ""), {})
            methodology = methodologies.get(str(value.get("methodology_id") or ""), {})
            out.append(
                {
                    **value,
                    "parameter_name": parameter.get("name") or value["parameter_id"],
                    "data_type": parameter.get("data_type"),
                    "category_id": parameter.get("category_id"),
                    "category_name": category.get("name") or "Uncategorized",
                    "unit_symbol": unit.get("symbol"),
                    "methodology_name": methodology.get("name"),
                }
            )
        return out

    @staticmethod
    def _group_by_category(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        grouped: dict[str, list[dict[str, Any]]] = {}
        for row in rows:
            grouped.setdefault(str(row["category_name"]), []).append(row)
        return [
            {
                "category_name": name,
                "parameters": sorted(
                    grouped[name],
                    key=lambda x: (str(x.get("parameter_name")), str(x.get("value_id"))),
                ),
            }
            for name in sorted(grouped)
        ]

    def _batch_detail(self, batch: dict[str, Any]) -> dict[str, Any]:
        values = self._enrich_values(self.parameter_values_repository.list_for_batch(batch_id=batch["batch_id"]))
        product = self.reference_repository.get(kind="products", ref_id=str(batch.get("product_id") or ""))
        return {
            **batch,
            "product": product,
            "parameter_values": values,
            "categories": self._group_by_category(values),
        }

    def get_batch(self, *, batch_id: str) -> dict[str, Any]:
        with self._reading():
            batch = self.batches_repository.get(batch_id=batch_id)
            if batch is None:
                raise not_found("batch not found")
            return self._batch_detail(batch)

    def list_batches(
        self,
        *,
        status: str | None = None,
        product_id: str | None = None,
        batch_number: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> dict[str, Any]:
        statuses = None
        if status:
            wanted = status.strip().upper()
            if wanted not in BATCH_STATUSES:
                raise validation_error(f"unknown batch status: {status}")
            statuses = [wanted]
        if page < 1:
            raise validation_error("page must be >= 1")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise validation_error(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        start = _parse_date(date_from, field="date_from") if date_from else None
        end = _parse_date(date_to, field="date_to") if date_to else None
        with self._reading():
            rows = self.batches_repository.list(
                statuses=statuses,
                product_id=(product_id or "").strip() or None,
                batch_number=(batch_number or "").strip() or None,
                date_from=start,
                date_to=end,
            )
            total = len(rows)
            offset = (page - 1) * limit
            items = rows[offset : offset + limit]
            for item in items:
                item["product_name"] = self._product_name(item)
        return {
            "items": items,
            "pagination": {
                "page": page,
                "limit": limit,
                "total_count": total,
                "total_pages": math.ceil(total / limit),
            },
        }

    # -- lifecycle -------------------------------------------------------------

    def _load_batch_for_update(self, batch_id: str) -> dict[str, Any]:
        batch = self.batches_repository.get(batch_id=batch_id, for_update=True)
        if batch is None:
            raise not_found("batch not found")
        return batch

    def _transition_batch(
        self,
        *,
        batch: dict[str, Any],
        to_status: str,
        actor: Actor,
        changes: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        from_status = str(batch.get("status"))
        if to_status not in self.ALLOWED_TRANSITIONS.get(from_status, set()):
            raise invalid_state(f"batch cannot move from {from_status} to {to_status}")
        update = dict(changes or {})
        update["status"] = to_status
        update["updated_at"] = self._utcnow_iso()
        saved = self.batches_repository.transition(
            batch_id=batch["batch_id"],
            expected_status=from_status,
            changes=update,
        )
        if saved is None:
            raise invalid_state(f"batch is no longer {from_status}")
        logger.info(
            "batch_transition batch_id=%s from=%s to=%s actor_id=%s",
            batch["batch_id"],
            from_status,
            to_status,
            actor.user_id,
        )
        return saved

    def _notify_reviewers(self, hooks: list, *, batch: dict[str, Any], product_name: str) -> None:
        reviewers = self.reference_repository.list_users_by_role(role=self.settings.reviewer_role)
        for reviewer in reviewers:
            self._schedule_notification(
                hooks,
                user_id=str(reviewer["user_id"]),
                batch_id=batch["batch_id"],
                message=f"New batch {batch['batch_number']} ({product_name}) submitted for review",
                notification_type=BATCH_SUBMITTED,
            )

    def create_batch(self, *, actor: Actor, payload: dict[str, Any]) -> dict[str, Any]:
        batch_number = str(payload.get("batch_number") or "").strip()
        if not batch_number:
            raise validation_error("batch_number is required")
        initial_status = str(payload.get("initial_status") or "").strip().upper()
        if initial_status not in INITIAL_STATUSES:
            raise validation_error("initial_status must be DRAFT or SUBMITTED")
        production = _parse_date(payload.get("date_of_production"), field="date_of_production")
        best_before = _parse_date(payload.get("best_before_date"), field="best_before_date")
        _check_date_order(production, best_before)
        sample_status = str(payload.get("sample_analysis_status") or "PENDING").strip().upper()
        if sample_status not in SAMPLE_ANALYSIS_STATUSES:
            raise validation_error(f"unknown sample_analysis_status: {sample_status}")
        started_at = _parse_timestamp(payload.get("sample_analysis_started_at"), field="sample_analysis_started_at")
        ended_at = _parse_timestamp(payload.get("sample_analysis_ended_at"), field="sample_analysis_ended_at")
        tags = {field: _id_list(payload.get(field), field=field) for field in _TAG_FIELDS}
        values = _normalize_parameter_values(payload.get("parameter_values"))

        with self._transaction() as hooks:
            if self.batches_repository.get_by_number(batch_number=batch_number) is not None:
                raise conflict(f"batch number {batch_number} already exists")
            product = self._resolve_product(payload)
            self._validate_tags(tags)
            self._validate_parameter_values(values)

            now = self._utcnow_iso()
            batch = {
                "batch_id": self._new_id("bat"),
                "batch_number": batch_number,
                "product_id": product["product_id"],
                "date_of_production": production,
                "best_before_date": best_before,
                "sample_analysis_started_at": started_at,
                "sample_analysis_ended_at": ended_at,
                "sample_analysis_status": sample_status,
                "status": initial_status,
                "maker_id": actor.user_id,
                "checker_id": None,
                "rejection_remarks": None,
                **tags,
                "created_at": now,
                "updated_at": now,
            }
            batch = self.batches_repository.upsert(batch=batch)
            for value in values:
                self.parameter_values_repository.upsert(value=self._new_parameter_value(batch["batch_id"], value, now))
            self._append_audit_log(
                actor=actor,
                action="CREATE_BATCH",
                batch_id=batch["batch_id"],
                details={
                    "batch_number": batch_number,
                    "initial_status": initial_status,
                    "parameter_count": len(values),
                },
            )
            if initial_status == "SUBMITTED":
                self._notify_reviewers(hooks, batch=batch, product_name=str(product.get("name") or ""))
            logger.info(
                "batch_created batch_id=%s batch_number=%s status=%s maker_id=%s",
                batch["batch_id"],
                batch_number,
                initial_status,
                actor.user_id,
            )
            return self._batch_detail(batch)

    def _new_parameter_value(self, batch_id: str, value: dict[str, Any], now: str) -> dict[str, Any]:
        return {
            "value_id": self._new_id("pv"),
            "batch_id": batch_id,
            "parameter_id": value["parameter_id"],
            "value": value["value"],
            "unit_id": value["unit_id"],
            "methodology_id": value["methodology_id"],
            "verification_result": None,
            "verification_remark": None,
            "verified_by": None,
            "verified_at": None,
            "created_at": now,
            "updated_at": now,
        }

    def update_batch(self, *, actor: Actor, batch_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        values = None
        if payload.get("parameter_values") is not None:
            values = _normalize_parameter_values(payload.get("parameter_values"))
        delete_others = bool(payload.get("delete_other_parameters", False))
        if delete_others and values is None:
            raise validation_error("delete_other_parameters requires parameter_values")
        tags = {
            field: _id_list(payload[field], field=field)
            for field in _TAG_FIELDS
            if payload.get(field) is not None
        }

        with self._transaction():
            batch = self._load_batch_for_update(batch_id)
            if batch.get("status") != "DRAFT":
                raise invalid_state("only DRAFT batches can be updated")
            if batch.get("maker_id") != actor.user_id:
                raise forbidden("only the batch maker can update this batch")

            changed: dict[str, Any] = {}
            batch_number = payload.get("batch_number")
            if batch_number is not None:
                batch_number = str(batch_number).strip()
                if not batch_number:
                    raise validation_error("batch_number must not be empty")
                if batch_number != batch["batch_number"]:
                    existing = self.batches_repository.get_by_number(batch_number=batch_number)
                    if existing is not None and existing["batch_id"] != batch_id:
                        raise conflict(f"batch number {batch_number} already exists")
                    changed["batch_number"] = batch_number
            if payload.get("product_id") is not None:
                product_id = str(payload["product_id"]).strip()
                if self.reference_repository.get(kind="products", ref_id=product_id) is None:
                    raise validation_error("product not found", invalid_ids=[product_id])
                changed["product_id"] = product_id
            for field in ("date_of_production", "best_before_date"):
                if payload.get(field) is not None:
                    changed[field] = _parse_date(payload[field], field=field)
            _check_date_order(
                changed.get("date_of_production", batch["date_of_production"]),
                changed.get("best_before_date", batch["best_before_date"]),
            )
            for field in ("sample_analysis_started_at", "sample_analysis_ended_at"):
                if field in payload:
                    changed[field] = _parse_timestamp(payload[field], field=field)
            if payload.get("sample_analysis_status") is not None:
                sample_status = str(payload["sample_analysis_status"]).strip().upper()
                if sample_status not in SAMPLE_ANALYSIS_STATUSES:
                    raise validation_error(f"unknown sample_analysis_status: {sample_status}")
                changed["sample_analysis_status"] = sample_status
            self._validate_tags(tags)
            changed.update(tags)
            if values is not None:
                self._validate_parameter_values(values)

            now = self._utcnow_iso()
            upserted = 0
            deleted = 0
            if values is not None:
                for value in values:
                    existing_value = self.parameter_values_repository.get_by_parameter(
                        batch_id=batch_id,
                        parameter_id=value["parameter_id"],
                    )
                    if existing_value is None:
                        row = self._new_parameter_value(batch_id, value, now)
                    else:
                        row = {
                            **existing_value,
                            "value": value["value"],
                            "unit_id": value["unit_id"],
                            "methodology_id": value["methodology_id"],
                            "updated_at": now,
                        }
                    self.parameter_values_repository.upsert(value=row)
                    upserted += 1
                if delete_others:
                    deleted = self.parameter_values_repository.delete_for_batch_except(
                        batch_id=batch_id,
                        keep_parameter_ids={x["parameter_id"] for x in values},
                    )

            saved = self.batches_repository.upsert(batch={**batch, **changed, "updated_at": now})
            self._append_audit_log(
                actor=actor,
                action="UPDATE_BATCH",
                batch_id=batch_id,
                details={
                    "changed_fields": sorted(changed),
                    "parameter_values_upserted": upserted,
                    "parameter_values_deleted": deleted,
                },
            )
            logger.info(
                "batch_updated batch_id=%s changed=%s upserted=%s deleted=%s",
                batch_id,
                ",".join(sorted(changed)),
                upserted,
                deleted,
            )
            return self._batch_detail(saved)

    def submit_batch(self, *, actor: Actor, batch_id: str) -> dict[str, Any]:
        with self._transaction() as hooks:
            batch = self._load_batch_for_update(batch_id)
            if batch.get("status") != "DRAFT":
                raise invalid_state("only DRAFT batches can be submitted")
            if batch.get("maker_id") != actor.user_id:
                raise forbidden("only the batch maker can submit this batch")
            saved = self._transition_batch(batch=batch, to_status="SUBMITTED", actor=actor)
            self._append_audit_log(
                actor=actor,
                action="SUBMIT_BATCH",
                batch_id=batch_id,
                details={"batch_number": saved["batch_number"]},
            )
            self._notify_reviewers(hooks, batch=saved, product_name=self._product_name(saved))
            return saved

    def _approve_in_tx(
        self,
        hooks: list,
        *,
        actor: Actor,
        batch_id: str,
        after_verification: bool = False,
    ) -> dict[str, Any]:
        batch = self._load_batch_for_update(batch_id)
        if batch.get("status") != "SUBMITTED":
            raise invalid_state("only SUBMITTED batches can be approved")
        saved = self._transition_batch(
            batch=batch,
            to_status="APPROVED",
            actor=actor,
            changes={"checker_id": actor.user_id, "reviewed_at": self._utcnow_iso()},
        )
        self._append_audit_log(
            actor=actor,
            action="APPROVE_BATCH",
            batch_id=batch_id,
            details={"batch_number": saved["batch_number"], "after_verification": after_verification},
        )
        suffix = " after verification" if after_verification else ""
        self._schedule_notification(
            hooks,
            user_id=str(saved["maker_id"]),
            batch_id=batch_id,
            message=f"Your batch {saved['batch_number']} ({self._product_name(saved)}) has been approved{suffix}",
            notification_type=BATCH_APPROVED,
        )
        return saved

    def _reject_in_tx(
        self,
        hooks: list,
        *,
        actor: Actor,
        batch_id: str,
        remarks: str,
        after_verification: bool = False,
    ) -> dict[str, Any]:
        batch = self._load_batch_for_update(batch_id)
        if batch.get("status") != "SUBMITTED":
            raise invalid_state("only SUBMITTED batches can be rejected")
        saved = self._transition_batch(
            batch=batch,
            to_status="REJECTED",
            actor=actor,
            changes={
                "checker_id": actor.user_id,
                "rejection_remarks": remarks,
                "reviewed_at": self._utcnow_iso(),
            },
        )
        self._append_audit_log(
            actor=actor,
            action="REJECT_BATCH",
            batch_id=batch_id,
            details={
                "batch_number": saved["batch_number"],
                "remarks": remarks,
                "after_verification": after_verification,
            },
        )
        suffix = " after verification" if after_verification else ""
        self._schedule_notification(
            hooks,
            user_id=str(saved["maker_id"]),
            batch_id=batch_id,
            message=(
                f"Your batch {saved['batch_number']} ({self._product_name(saved)}) "
                f"has been rejected{suffix}: {remarks}"
            ),
            notification_type=BATCH_REJECTED,
        )
        return saved

    def approve_batch(self, *, actor: Actor, batch_id: str) -> dict[str, Any]:
        with self._transaction() as hooks:
            return self._approve_in_tx(hooks, actor=actor, batch_id=batch_id)

    def reject_batch(self, *, actor: Actor, batch_id: str, remarks: str | None) -> dict[str, Any]:
        cleaned = (remarks or "").strip()
        if not cleaned:
            raise validation_error("rejection remarks are required")
        with self._transaction() as hooks:
            return self._reject_in_tx(hooks, actor=actor, batch_id=batch_id, remarks=cleaned)
