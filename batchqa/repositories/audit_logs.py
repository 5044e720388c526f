from __future__ import annotations

import json
import re
from typing import Any

from batchqa.db.postgres import PostgresTxRunner

# Serializes hash-chain appends across concurrent PostgreSQL transactions.
_AUDIT_CHAIN_LOCK_KEY = 7_204_913


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _contains_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _matches(
    row: dict[str, Any],
    *,
    occurred_from: str | None,
    occurred_before: str | None,
    user_name: str | None,
    batch_id: str | None,
) -> bool:
    occurred_at = str(row.get("occurred_at") or "")
    if occurred_from and occurred_at < occurred_from:
        return False
    if occurred_before and occurred_at >= occurred_before:
        return False
    if user_name and user_name.lower() not in str(row.get("user_name") or "").lower():
        return False
    if batch_id and row.get("batch_id") != batch_id:
        return False
    return True


class InMemoryAuditLogsRepository:
    def __init__(self, audit_logs: list[dict[str, Any]]) -> None:
        self._audit_logs = audit_logs

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        self._audit_logs.append(item)
        return item

    def last_hash(self) -> str:
        if not self._audit_logs:
            return ""
        return str(self._audit_logs[-1].get("audit_hash") or "")

    def list_chain(self) -> list[dict[str, Any]]:
        return [dict(x) for x in self._audit_logs]

    def list(
        self,
        *,
        occurred_from: str | None = None,
        occurred_before: str | None = None,
        user_name: str | None = None,
        batch_id: str | None = None,
    ) -> list[dict[str, Any]]:
        return [
            dict(x)
            for x in reversed(self._audit_logs)
            if _matches(
                x,
                occurred_from=occurred_from,
                occurred_before=occurred_before,
                user_name=user_name,
                batch_id=batch_id,
            )
        ]


class PostgresAuditLogsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "audit_logs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        sql = f"""
            INSERT INTO {self._table_name} (
                audit_id, batch_id, user_id, action, occurred_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["audit_id"],
                        item.get("batch_id"),
                        item.get("user_id"),
                        item.get("action"),
                        item.get("occurred_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def last_hash(self) -> str:
        """Return the newest chain hash, holding the chain lock until the transaction ends."""
        sql = f"""
            SELECT payload->>'audit_hash'
            FROM {self._table_name}
            ORDER BY seq DESC
            LIMIT 1
        """

        def _op(conn: Any) -> str:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_xact_lock(%s)", (_AUDIT_CHAIN_LOCK_KEY,))
                cur.execute(sql)
                row = cur.fetchone()
            if row is None:
                return ""
            return str(row[0] or "")

        return self._tx_runner.run_in_tx(fn=_op)

    def list_chain(self) -> list[dict[str, Any]]:
        sql = f"SELECT payload FROM {self._table_name} ORDER BY seq ASC"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)

    def list(
        self,
        *,
        occurred_from: str | None = None,
        occurred_before: str | None = None,
        user_name: str | None = None,
        batch_id: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if occurred_from:
            clauses.append("occurred_at >= %s")
            params.append(occurred_from)
        if occurred_before:
            clauses.append("occurred_at < %s")
            params.append(occurred_before)
        if user_name:
            clauses.append("payload->>'user_name' ILIKE %s ESCAPE '\\'")
            params.append(_contains_pattern(user_name))
        if batch_id:
            clauses.append("batch_id = %s")
            params.append(batch_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            {where}
            ORDER BY seq DESC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)
