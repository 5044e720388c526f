from __future__ import annotations

import json
import re
from typing import Any

from batchqa.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryNotificationsRepository:
    def __init__(self, notifications: list[dict[str, Any]]) -> None:
        self._notifications = notifications

    def append(self, *, notification: dict[str, Any]) -> dict[str, Any]:
        item = dict(notification)
        self._notifications.append(item)
        return dict(item)

    def list_for_user(self, *, user_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in reversed(self._notifications) if x.get("user_id") == user_id]


class PostgresNotificationsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "notifications") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def append(self, *, notification: dict[str, Any]) -> dict[str, Any]:
        item = dict(notification)
        sql = f"""
            INSERT INTO {self._table_name} (
                notification_id, user_id, batch_id, created_at, payload
            ) VALUES (%s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["notification_id"],
                        item.get("user_id"),
                        item.get("batch_id"),
                        item.get("created_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def list_for_user(self, *, user_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE user_id = %s
            ORDER BY created_at DESC, notification_id DESC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (user_id,))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)
