from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from batchqa.routes._deps import (
    actor_from_request,
    require_checker,
    require_maker,
    store_from_request,
    trace_id_from_request,
)
from batchqa.schemas import BatchCreateRequest, BatchUpdateRequest, RejectRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["batches"])


@router.post("/batches")
def create_batch(payload: BatchCreateRequest, request: Request):
    actor = require_maker(request)
    data = store_from_request(request).create_batch(
        actor=actor,
        payload=payload.model_dump(mode="json"),
    )
    return JSONResponse(
        status_code=201,
        content=success_envelope(data, trace_id_from_request(request), "batch created"),
    )


@router.get("/batches")
def list_batches(
    request: Request,
    status: str | None = None,
    product_id: str | None = None,
    batch_number: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    page: int = 1,
    limit: int = 10,
):
    actor_from_request(request)
    result = store_from_request(request).list_batches(
        status=status,
        product_id=product_id,
        batch_number=batch_number,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )
    return success_envelope(
        result["items"],
        trace_id_from_request(request),
        pagination=result["pagination"],
    )


@router.get("/batches/{batch_id}")
def get_batch(batch_id: str, request: Request):
    actor_from_request(request)
    data = store_from_request(request).get_batch(batch_id=batch_id)
    return success_envelope(data, trace_id_from_request(request))


@router.put("/batches/{batch_id}")
def update_batch(batch_id: str, payload: BatchUpdateRequest, request: Request):
    actor = require_maker(request)
    data = store_from_request(request).update_batch(
        actor=actor,
        batch_id=batch_id,
        payload=payload.model_dump(mode="json", exclude_unset=True),
    )
    return success_envelope(data, trace_id_from_request(request), "batch updated")


@router.post("/batches/{batch_id}/submit")
def submit_batch(batch_id: str, request: Request):
    actor = require_maker(request)
    data = store_from_request(request).submit_batch(actor=actor, batch_id=batch_id)
    return success_envelope(data, trace_id_from_request(request), "batch submitted")


@router.post("/batches/{batch_id}/approve")
def approve_batch(batch_id: str, request: Request):
    actor = require_checker(request)
    data = store_from_request(request).approve_batch(actor=actor, batch_id=batch_id)
    return success_envelope(data, trace_id_from_request(request), "batch approved")


@router.post("/batches/{batch_id}/reject")
def reject_batch(batch_id: str, payload: RejectRequest, request: Request):
    actor = require_checker(request)
    data = store_from_request(request).reject_batch(
        actor=actor,
        batch_id=batch_id,
        remarks=payload.rejection_remarks,
    )
    return success_envelope(data, trace_id_from_request(request), "batch rejected")


@router.get("/batches/{batch_id}/certificate")
def get_certificate(batch_id: str, request: Request):
    actor = actor_from_request(request)
    data = store_from_request(request).build_certificate(actor=actor, batch_id=batch_id)
    return success_envelope(data, trace_id_from_request(request))
