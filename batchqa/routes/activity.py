from __future__ import annotations

from fastapi import APIRouter, Request

from batchqa.routes._deps import actor_from_request, store_from_request, trace_id_from_request
from batchqa.schemas import success_envelope

router = APIRouter(prefix="/api/v1", tags=["activity"])


@router.get("/activity-logs")
def list_activity_logs(
    request: Request,
    start_date: str | None = None,
    end_date: str | None = None,
    user_name: str | None = None,
    batch_id: str | None = None,
):
    actor_from_request(request)
    data = store_from_request(request).list_activity_logs(
        start_date=start_date,
        end_date=end_date,
        user_name=user_name,
        batch_id=batch_id,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/notifications")
def list_notifications(request: Request):
    actor = actor_from_request(request)
    data = store_from_request(request).list_notifications_for_user(user_id=actor.user_id)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/activity-logs/integrity")
def verify_activity_log_integrity(request: Request):
    actor_from_request(request)
    data = store_from_request(request).verify_audit_integrity()
    return success_envelope(data, trace_id_from_request(request))
