from __future__ import annotations

import json
import re
from typing import Any

from batchqa.db.postgres import PostgresTxRunner


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
    statuses: list[str] | None,
    product_id: str | None,
    batch_number: str | None,
    date_from: str | None,
    date_to: str | None,
) -> bool:
    if statuses and row.get("status") not in statuses:
        return False
    if product_id and row.get("product_id") != product_id:
        return False
    if batch_number and batch_number.lower() not in str(row.get("batch_number") or "").lower():
        return False
    produced = str(row.get("date_of_production") or "")
    if date_from and produced < date_from:
        return False
    if date_to and produced > date_to:
        return False
    return True


class InMemoryBatchesRepository:
    def __init__(self, batches: dict[str, dict[str, Any]]) -> None:
        self._batches = batches

    def upsert(self, *, batch: dict[str, Any]) -> dict[str, Any]:
        item = dict(batch)
        self._batches[str(item["batch_id"])] = item
        return dict(item)

    def get(self, *, batch_id: str, for_update: bool = False) -> dict[str, Any] | None:
        row = self._batches.get(batch_id)
        return None if row is None else dict(row)

    def get_by_number(self, *, batch_number: str) -> dict[str, Any] | None:
        for row in self._batches.values():
            if row.get("batch_number") == batch_number:
                return dict(row)
        return None

    def list(
        self,
        *,
        statuses: list[str] | None = None,
        product_id: str | None = None,
        batch_number: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
    ) -> list[dict[str, Any]]:
        rows = [
            dict(x)
            for x in reversed(list(self._batches.values()))
            if _matches(
                x,
                statuses=statuses,
                product_id=product_id,
                batch_number=batch_number,
                date_from=date_from,
                date_to=date_to,
            )
        ]
        rows.sort(key=lambda x: str(x.get("created_at") or ""), reverse=True)
        return rows

    def transition(
        self,
        *,
        batch_id: str,
        expected_status: str,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Apply ``changes`` only if the stored status still equals ``expected_status``."""
        row = self._batches.get(batch_id)
        if row is None or row.get("status") != expected_status:
            return None
        row.update(changes)
        return dict(row)


class PostgresBatchesRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "batches") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def upsert(self, *, batch: dict[str, Any]) -> dict[str, Any]:
        item = dict(batch)
        sql = f"""
            INSERT INTO {self._table_name} (
                batch_id, batch_number, product_id, status, date_of_production, created_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(batch_id) DO UPDATE SET
                batch_number = EXCLUDED.batch_number,
                product_id = EXCLUDED.product_id,
                status = EXCLUDED.status,
                date_of_production = EXCLUDED.date_of_production,
                payload = EXCLUDED.payload
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["batch_id"],
                        item.get("batch_number"),
                        item.get("product_id"),
                        item.get("status"),
                        item.get("date_of_production"),
                        item.get("created_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, batch_id: str, for_update: bool = False) -> dict[str, Any] | None:
        sql = f"SELECT payload FROM {self._table_name} WHERE batch_id = %s"
        if for_update:
            sql += " FOR UPDATE"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (batch_id,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(fn=_op)

    def get_by_number(self, *, batch_number: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE batch_number = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (batch_number,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(fn=_op)

    def list(
        self,
        *,
        statuses: list[str] | None = None,
        product_id: str | None = None,
        batch_number: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if statuses:
            clauses.append("status = ANY(%s)")
            params.append(list(statuses))
        if product_id:
            clauses.append("product_id = %s")
            params.append(product_id)
        if batch_number:
            clauses.append("batch_number ILIKE %s ESCAPE '\\'")
            params.append(_contains_pattern(batch_number))
        if date_from:
            clauses.append("date_of_production >= %s")
            params.append(date_from)
        if date_to:
            clauses.append("date_of_production <= %s")
            params.append(date_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            {where}
            ORDER BY created_at DESC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)

    def transition(
        self,
        *,
        batch_id: str,
        expected_status: str,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        new_status = str(changes.get("status") or expected_status)
        sql = f"""
            UPDATE {self._table_name}
            SET status = %s,
                payload = payload || %s::jsonb
            WHERE batch_id = %s AND status = %s
            RETURNING payload
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        new_status,
                        json.dumps(changes, ensure_ascii=True, sort_keys=True),
                        batch_id,
                        expected_status,
                    ),
                )
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(fn=_op)
