from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

_current_conn: ContextVar[Any | None] = ContextVar("batchqa_pg_conn", default=None)


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction.

    Calls made while a ``transaction()`` block is open on the current thread/task reuse
    its connection, so a whole lifecycle operation commits or rolls back as one unit.
    """

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        existing = _current_conn.get()
        if existing is not None:
            yield existing
            return

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            token = _current_conn.set(conn)
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()
            finally:
                _current_conn.reset(token)

    def run_in_tx(self, *, fn: Callable[[Any], Any]) -> Any:
        with self.transaction() as conn:
            return fn(conn)
