from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from batchqa.db.postgres import PostgresTxRunner
from batchqa.errors import ApiError, conflict, internal_error
from batchqa.notifications import NotificationSink
from batchqa.repositories import (
    PostgresAuditLogsRepository,
    PostgresBatchesRepository,
    PostgresNotificationsRepository,
    PostgresParameterValuesRepository,
    PostgresReferenceDataRepository,
)
from batchqa.settings import WorkflowSettings
from batchqa.store import InMemoryStore, PostCommitHook

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS batches (
      batch_id TEXT PRIMARY KEY,
      batch_number TEXT NOT NULL UNIQUE,
      product_id TEXT NOT NULL,
      status TEXT NOT NULL,
      date_of_production TEXT NOT NULL,
      created_at TEXT NOT NULL,
      payload JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS parameter_values (
      value_id TEXT PRIMARY KEY,
      batch_id TEXT NOT NULL REFERENCES batches(batch_id) ON DELETE CASCADE,
      parameter_id TEXT NOT NULL,
      created_at TEXT NOT NULL,
      payload JSONB NOT NULL,
      UNIQUE (batch_id, parameter_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reference_data (
      kind TEXT NOT NULL,
      ref_id TEXT NOT NULL,
      updated_at TEXT,
      payload JSONB NOT NULL,
      PRIMARY KEY (kind, ref_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
      seq BIGSERIAL UNIQUE,
      audit_id TEXT PRIMARY KEY,
      batch_id TEXT,
      user_id TEXT,
      action TEXT NOT NULL,
      occurred_at TEXT NOT NULL,
      payload JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
      notification_id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      batch_id TEXT,
      created_at TEXT NOT NULL,
      payload JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_batch ON audit_logs (batch_id)",
)


class PostgresBackedStore(InMemoryStore):
    """Store backend that keeps every table in PostgreSQL.

    Each lifecycle operation runs in one database transaction; the batch row is locked
    with ``SELECT ... FOR UPDATE`` before its status is checked.
    """

    def __init__(
        self,
        *,
        dsn: str,
        settings: WorkflowSettings | None = None,
        notification_sink: NotificationSink | None = None,
        tx_runner: PostgresTxRunner | Any | None = None,
        initialize_schema: bool = True,
    ) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._dsn = dsn.strip()
        self._tx_runner = tx_runner or PostgresTxRunner(self._dsn)
        super().__init__(settings=settings, notification_sink=notification_sink)
        if initialize_schema:
            self._initialize_database()

    def _bind_repositories(self) -> None:
        self.batches_repository = PostgresBatchesRepository(tx_runner=self._tx_runner)
        self.parameter_values_repository = PostgresParameterValuesRepository(tx_runner=self._tx_runner)
        self.reference_repository = PostgresReferenceDataRepository(tx_runner=self._tx_runner)
        self.audit_repository = PostgresAuditLogsRepository(tx_runner=self._tx_runner)
        self.notifications_repository = PostgresNotificationsRepository(tx_runner=self._tx_runner)

    def _initialize_database(self) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)

        self._tx_runner.run_in_tx(fn=_op)

    @contextmanager
    def _transaction(self) -> Iterator[list[PostCommitHook]]:
        hooks: list[PostCommitHook] = []
        try:
            with self._tx_runner.transaction():
                yield hooks
        except ApiError:
            raise
        except Exception as exc:
            if getattr(exc, "sqlstate", None) == UNIQUE_VIOLATION:
                raise _unique_violation_conflict(exc) from exc
            logger.exception("store_transaction_failed backend=postgres")
            raise internal_error() from exc
        self._run_post_commit(hooks)

    @contextmanager
    def _reading(self) -> Iterator[None]:
        with self._tx_runner.transaction():
            yield

    def reset(self) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(
                    "TRUNCATE parameter_values, batches, reference_data, audit_logs, notifications"
                )

        self._tx_runner.run_in_tx(fn=_op)


def _unique_violation_conflict(exc: Exception) -> ApiError:
    # concurrent writers both passed the pre-insert lookup; the loser hits the constraint
    diag = getattr(exc, "diag", None)
    constraint = str(getattr(diag, "constraint_name", None) or "")
    logger.warning("store_unique_violation backend=postgres constraint=%s", constraint or "unknown")
    if "batch_number" in constraint:
        return conflict("batch number already exists")
    return conflict("record already exists")
