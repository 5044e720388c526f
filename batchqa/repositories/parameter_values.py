from __future__ import annotations

import json
import re
from typing import Any

from batchqa.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryParameterValuesRepository:
    def __init__(self, parameter_values: dict[str, dict[str, Any]]) -> None:
        self._values = parameter_values

    def upsert(self, *, value: dict[str, Any]) -> dict[str, Any]:
        item = dict(value)
        self._values[str(item["value_id"])] = item
        return dict(item)

    def get(self, *, value_id: str) -> dict[str, Any] | None:
        row = self._values.get(value_id)
        return None if row is None else dict(row)

    def get_by_parameter(self, *, batch_id: str, parameter_id: str) -> dict[str, Any] | None:
        for row in self._values.values():
            if row.get("batch_id") == batch_id and row.get("parameter_id") == parameter_id:
                return dict(row)
        return None

    def list_for_batch(self, *, batch_id: str) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._values.values() if x.get("batch_id") == batch_id]
        rows.sort(key=lambda x: (str(x.get("created_at") or ""), str(x.get("value_id"))))
        return rows

    def delete_for_batch_except(self, *, batch_id: str, keep_parameter_ids: set[str]) -> int:
        doomed = [
            value_id
            for value_id, row in self._values.items()
            if row.get("batch_id") == batch_id and row.get("parameter_id") not in keep_parameter_ids
        ]
        for value_id in doomed:
            del self._values[value_id]
        return len(doomed)


class PostgresParameterValuesRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "parameter_values") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def upsert(self, *, value: dict[str, Any]) -> dict[str, Any]:
        item = dict(value)
        sql = f"""
            INSERT INTO {self._table_name} (
                value_id, batch_id, parameter_id, created_at, payload
            ) VALUES (%s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(value_id) DO UPDATE SET
                batch_id = EXCLUDED.batch_id,
                parameter_id = EXCLUDED.parameter_id,
                payload = EXCLUDED.payload
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["value_id"],
                        item.get("batch_id"),
                        item.get("parameter_id"),
                        item.get("created_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, value_id: str) -> dict[str, Any] | None:
        return self._fetch_one(
            f"SELECT payload FROM {self._table_name} WHERE value_id = %s",
            (value_id,),
        )

    def get_by_parameter(self, *, batch_id: str, parameter_id: str) -> dict[str, Any] | None:
        return self._fetch_one(
            f"SELECT payload FROM {self._table_name} WHERE batch_id = %s AND parameter_id = %s",
            (batch_id, parameter_id),
        )

    def list_for_batch(self, *, batch_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE batch_id = %s
            ORDER BY created_at ASC, value_id ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (batch_id,))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)

    def delete_for_batch_except(self, *, batch_id: str, keep_parameter_ids: set[str]) -> int:
        sql = f"""
            DELETE FROM {self._table_name}
            WHERE batch_id = %s AND NOT (parameter_id = ANY(%s))
        """

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (batch_id, sorted(keep_parameter_ids)))
                return int(cur.rowcount or 0)

        return self._tx_runner.run_in_tx(fn=_op)
