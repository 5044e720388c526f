from __future__ import annotations

from fastapi import APIRouter, Request

from batchqa.routes._deps import require_checker, store_from_request, trace_id_from_request
from batchqa.schemas import CompleteVerificationRequest, RecordVerificationRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["verification"])


@router.get("/verification/batches")
def list_batches_for_verification(request: Request):
    require_checker(request)
    data = store_from_request(request).list_batches_for_verification()
    return success_envelope(data, trace_id_from_request(request))


@router.get("/verification/batches/{batch_id}/parameters")
def get_batch_parameters(batch_id: str, request: Request):
    require_checker(request)
    data = store_from_request(request).get_batch_parameters_for_verification(batch_id=batch_id)
    return success_envelope(data, trace_id_from_request(request))


@router.put("/verification/batches/{batch_id}/parameters")
def record_parameter_verification(batch_id: str, payload: RecordVerificationRequest, request: Request):
    actor = require_checker(request)
    data = store_from_request(request).record_parameter_verification(
        actor=actor,
        batch_id=batch_id,
        verifications=[x.model_dump(mode="json") for x in payload.verifications],
    )
    return success_envelope(data, trace_id_from_request(request), "parameters verified")


@router.post("/verification/batches/{batch_id}/complete")
def complete_verification(batch_id: str, payload: CompleteVerificationRequest, request: Request):
    actor = require_checker(request)
    data = store_from_request(request).complete_verification(
        actor=actor,
        batch_id=batch_id,
        action=payload.action,
        remarks=payload.remarks,
    )
    return success_envelope(data, trace_id_from_request(request), "verification completed")
