from __future__ import annotations

import json
import re
from typing import Any

from batchqa.db.postgres import PostgresTxRunner

# kind -> primary key field of its rows
REFERENCE_KINDS: dict[str, str] = {
    "products": "product_id",
    "categories": "category_id",
    "parameters": "parameter_id",
    "standards": "standard_id",
    "standard_definitions": "definition_id",
    "methodologies": "methodology_id",
    "units": "unit_id",
    "users": "user_id",
}


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _key_field(kind: str) -> str:
    try:
        return REFERENCE_KINDS[kind]
    except KeyError:
        raise ValueError(f"unknown reference kind: {kind}") from None


def _latest_active(rows: list[dict[str, Any]]) -> dict[str, Any] | None:
    active = [x for x in rows if str(x.get("status") or "").upper() == "ACTIVE"]
    if not active:
        return None
    active.sort(
        key=lambda x: (str(x.get("updated_at") or ""), str(x.get("definition_id") or "")),
        reverse=True,
    )
    return dict(active[0])


class InMemoryReferenceDataRepository:
    """Read-mostly lookups for products, parameters, standards, units, methodologies and users."""

    def __init__(self, tables: dict[str, dict[str, dict[str, Any]]]) -> None:
        self._tables = tables
        for kind in REFERENCE_KINDS:
            self._tables.setdefault(kind, {})

    def upsert(self, *, kind: str, row: dict[str, Any]) -> dict[str, Any]:
        item = dict(row)
        self._tables[kind][str(item[_key_field(kind)])] = item
        return dict(item)

    def get(self, *, kind: str, ref_id: str) -> dict[str, Any] | None:
        _key_field(kind)
        row = self._tables[kind].get(ref_id)
        return None if row is None else dict(row)

    def get_many(self, *, kind: str, ref_ids: list[str]) -> dict[str, dict[str, Any]]:
        _key_field(kind)
        table = self._tables[kind]
        return {x: dict(table[x]) for x in set(ref_ids) if x in table}

    def list_users_by_role(self, *, role: str) -> list[dict[str, Any]]:
        wanted = role.upper()
        rows = [dict(x) for x in self._tables["users"].values() if str(x.get("role") or "").upper() == wanted]
        rows.sort(key=lambda x: str(x.get("user_id")))
        return rows

    def latest_active_standard_definition(self, *, parameter_id: str) -> dict[str, Any] | None:
        return _latest_active(
            [x for x in self._tables["standard_definitions"].values() if x.get("parameter_id") == parameter_id]
        )


class PostgresReferenceDataRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "reference_data") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def upsert(self, *, kind: str, row: dict[str, Any]) -> dict[str, Any]:
        item = dict(row)
        ref_id = str(item[_key_field(kind)])
        sql = f"""
            INSERT INTO {self._table_name} (kind, ref_id, updated_at, payload)
            VALUES (%s, %s, %s, %s::jsonb)
            ON CONFLICT(kind, ref_id) DO UPDATE SET
                updated_at = EXCLUDED.updated_at,
                payload = EXCLUDED.payload
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        kind,
                        ref_id,
                        item.get("updated_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, kind: str, ref_id: str) -> dict[str, Any] | None:
        _key_field(kind)
        sql = f"SELECT payload FROM {self._table_name} WHERE kind = %s AND ref_id = %s"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (kind, ref_id))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(fn=_op)

    def get_many(self, *, kind: str, ref_ids: list[str]) -> dict[str, dict[str, Any]]:
        key = _key_field(kind)
        if not ref_ids:
            return {}
        sql = f"SELECT payload FROM {self._table_name} WHERE kind = %s AND ref_id = ANY(%s)"

        def _op(conn: Any) -> dict[str, dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (kind, sorted(set(ref_ids))))
                rows = cur.fetchall() or []
            return {str(row[0][key]): row[0] for row in rows if isinstance(row[0], dict)}

        return self._tx_runner.run_in_tx(fn=_op)

    def list_users_by_role(self, *, role: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE kind = 'users' AND upper(payload->>'role') = %s
            ORDER BY ref_id ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (role.upper(),))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)

    def latest_active_standard_definition(self, *, parameter_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE kind = 'standard_definitions'
              AND payload->>'parameter_id' = %s
              AND upper(payload->>'status') = 'ACTIVE'
            ORDER BY updated_at DESC, ref_id DESC
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (parameter_id,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(fn=_op)
