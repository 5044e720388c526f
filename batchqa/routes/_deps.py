from __future__ import annotations

import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from batchqa.errors import forbidden, unauthorized
from batchqa.schemas import error_envelope
from batchqa.security import Actor
from batchqa.store import InMemoryStore


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def store_from_request(request: Request) -> InMemoryStore:
    return request.app.state.store


def actor_from_request(request: Request) -> Actor:
    actor = getattr(request.state, "actor", None)
    if actor is None:
        raise unauthorized("actor not resolved")
    return actor


def require_maker(request: Request) -> Actor:
    actor = actor_from_request(request)
    if actor.role not in request.app.state.settings.maker_roles:
        raise forbidden("maker role required")
    return actor


def require_checker(request: Request) -> Actor:
    actor = actor_from_request(request)
    if actor.role not in request.app.state.settings.checker_roles:
        raise forbidden("checker role required")
    return actor


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )
