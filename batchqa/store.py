from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import threading
import uuid
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from batchqa.errors import ApiError, internal_error, validation_error
from batchqa.notifications import NotificationSink, RepositoryNotificationSink
from batchqa.repositories import (
    REFERENCE_KINDS,
    InMemoryAuditLogsRepository,
    InMemoryBatchesRepository,
    InMemoryNotificationsRepository,
    InMemoryParameterValuesRepository,
    InMemoryReferenceDataRepository,
)
from batchqa.security import Actor
from batchqa.settings import WorkflowSettings
from batchqa.store_batches import StoreBatchesMixin
from batchqa.store_certificate import StoreCertificateMixin
from batchqa.store_verification import StoreVerificationMixin

logger = logging.getLogger(__name__)

PostCommitHook = Callable[[], None]


class InMemoryStore(StoreBatchesMixin, StoreVerificationMixin, StoreCertificateMixin):
    ALLOWED_TRANSITIONS: dict[str, set[str]] = {
        "DRAFT": {"SUBMITTED"},
        "SUBMITTED": {"APPROVED", "REJECTED"},
        "APPROVED": set(),
        "REJECTED": set(),
    }

    def __init__(
        self,
        *,
        settings: WorkflowSettings | None = None,
        notification_sink: NotificationSink | None = None,
    ) -> None:
        self.settings = settings or WorkflowSettings.from_env()
        self._lock = threading.RLock()
        self.batches: dict[str, dict[str, Any]] = {}
        self.parameter_values: dict[str, dict[str, Any]] = {}
        self.reference_data: dict[str, dict[str, dict[str, Any]]] = {kind: {} for kind in REFERENCE_KINDS}
        self.audit_logs: list[dict[str, Any]] = []
        self.notifications: list[dict[str, Any]] = []
        self._bind_repositories()
        self.notification_sink: NotificationSink = notification_sink or RepositoryNotificationSink(
            self.notifications_repository
        )

    def _bind_repositories(self) -> None:
        self.batches_repository = InMemoryBatchesRepository(self.batches)
        self.parameter_values_repository = InMemoryParameterValuesRepository(self.parameter_values)
        self.reference_repository = InMemoryReferenceDataRepository(self.reference_data)
        self.audit_repository = InMemoryAuditLogsRepository(self.audit_logs)
        self.notifications_repository = InMemoryNotificationsRepository(self.notifications)

    def reset(self) -> None:
        with self._lock:
            self.batches.clear()
            self.parameter_values.clear()
            for table in self.reference_data.values():
                table.clear()
            self.audit_logs.clear()
            self.notifications.clear()

    @staticmethod
    def _utcnow() -> datetime:
        return datetime.now(UTC)

    def _utcnow_iso(self) -> str:
        return self._utcnow().isoformat()

    @staticmethod
    def _new_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:12]}"

    # -- unit of work -----------------------------------------------------

    def _snapshot(self) -> dict[str, Any]:
        # notifications are written by post-commit hooks only, outside any snapshot
        return copy.deepcopy(
            {
                "batches": self.batches,
                "parameter_values": self.parameter_values,
                "reference_data": self.reference_data,
                "audit_logs": self.audit_logs,
            }
        )

    def _restore(self, snapshot: dict[str, Any]) -> None:
        self.batches.clear()
        self.batches.update(snapshot["batches"])
        self.parameter_values.clear()
        self.parameter_values.update(snapshot["parameter_values"])
        for kind, table in self.reference_data.items():
            table.clear()
            table.update(snapshot["reference_data"].get(kind, {}))
        self.audit_logs[:] = snapshot["audit_logs"]

    @contextmanager
    def _transaction(self) -> Iterator[list[PostCommitHook]]:
        """Run the block atomically; yields a list of hooks executed after commit."""
        hooks: list[PostCommitHook] = []
        with self._lock:
            snapshot = self._snapshot()
            try:
                yield hooks
            except ApiError:
                self._restore(snapshot)
                raise
            except Exception as exc:
                self._restore(snapshot)
                logger.exception("store_transaction_failed backend=memory")
                raise internal_error() from exc
        self._run_post_commit(hooks)

    @contextmanager
    def _reading(self) -> Iterator[None]:
        with self._lock:
            yield

    def _run_post_commit(self, hooks: list[PostCommitHook]) -> None:
        for hook in hooks:
            try:
                hook()
            except Exception:
                logger.warning("post_commit_hook_failed hook=%r", hook, exc_info=True)

    def _schedule_notification(
        self,
        hooks: list[PostCommitHook],
        *,
        user_id: str,
        batch_id: str,
        message: str,
        notification_type: str,
    ) -> None:
        def _send() -> None:
            self.notification_sink.notify(
                user_id=user_id,
                batch_id=batch_id,
                message=message,
                notification_type=notification_type,
            )

        hooks.append(_send)

    # -- audit log --------------------------------------------------------

    @staticmethod
    def _compute_audit_hash(*, log: dict[str, Any], prev_hash: str) -> str:
        material = {
            key: value
            for key, value in log.items()
            if key not in {"audit_hash", "prev_hash"}
        }
        material["prev_hash"] = prev_hash
        blob = json.dumps(material, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    def _actor_name(self, actor: Actor) -> str:
        if actor.name:
            return actor.name
        user = self.reference_repository.get(kind="users", ref_id=actor.user_id)
        if user is not None and user.get("name"):
            return str(user["name"])
        return actor.user_id

    def _append_audit_log(
        self,
        *,
        actor: Actor,
        action: str,
        batch_id: str | None,
        details: dict[str, Any],
    ) -> dict[str, Any]:
        entry = {
            "audit_id": self._new_id("audit"),
            "user_id": actor.user_id,
            "user_name": self._actor_name(actor),
            "batch_id": batch_id,
            "action": action,
            "details": details,
            "occurred_at": self._utcnow_iso(),
        }
        prev_hash = self.audit_repository.last_hash()
        entry["prev_hash"] = prev_hash
        entry["audit_hash"] = self._compute_audit_hash(log=entry, prev_hash=prev_hash)
        return self.audit_repository.append(log=entry)

    def verify_audit_integrity(self) -> dict[str, Any]:
        with self._reading():
            rows = self.audit_repository.list_chain()
        prev_hash = ""
        for idx, row in enumerate(rows):
            stored_prev = str(row.get("prev_hash") or "")
            if stored_prev != prev_hash:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "prev_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            expected = self._compute_audit_hash(log=row, prev_hash=stored_prev)
            actual = str(row.get("audit_hash") or "")
            if actual != expected:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "audit_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            prev_hash = actual
        return {
            "valid": True,
            "checked_count": len(rows),
            "last_hash": prev_hash,
        }

    def list_activity_logs(
        self,
        *,
        start_date: str | None = None,
        end_date: str | None = None,
        user_name: str | None = None,
        batch_id: str | None = None,
    ) -> list[dict[str, Any]]:
        start = _parse_filter_date(start_date, field="start_date")
        end = _parse_filter_date(end_date, field="end_date")
        if start is not None and end is not None and end < start:
            raise validation_error("end_date must not be earlier than start_date")
        occurred_from = None
        occurred_before = None
        if start is not None:
            occurred_from = datetime.combine(start, time.min, tzinfo=UTC).isoformat()
        if end is not None:
            # end date is inclusive: the whole day is covered
            occurred_before = datetime.combine(end + timedelta(days=1), time.min, tzinfo=UTC).isoformat()
        with self._reading():
            return self.audit_repository.list(
                occurred_from=occurred_from,
                occurred_before=occurred_before,
                user_name=(user_name or "").strip() or None,
                batch_id=batch_id or None,
            )

    # -- reference data & notifications ------------------------------------

    def seed_reference_data(self, data: Mapping[str, list[dict[str, Any]]]) -> None:
        with self._transaction():
            for kind, rows in data.items():
                for row in rows:
                    self.reference_repository.upsert(kind=kind, row=row)

    def list_notifications_for_user(self, *, user_id: str) -> list[dict[str, Any]]:
        with self._reading():
            return self.notifications_repository.list_for_user(user_id=user_id)


def _parse_filter_date(value: str | None, *, field: str) -> date | None:
    if value is None or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        raise validation_error(f"{field} must be an ISO-8601 date") from None


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    settings = WorkflowSettings.from_env(env)
    backend = env.get("BQA_STORE_BACKEND", "memory").strip().lower()
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when BQA_STORE_BACKEND=postgres")
        from batchqa.store_backends import PostgresBackedStore

        return PostgresBackedStore(dsn=dsn, settings=settings)
    if backend != "memory":
        raise ValueError(f"unsupported BQA_STORE_BACKEND: {backend}")
    return InMemoryStore(settings=settings)
