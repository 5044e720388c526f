from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ParameterValueInput(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    parameter_id: str = Field(min_length=1)
    value: str
    unit_id: str | None = None
    methodology_id: str | None = None


class NewProductInput(BaseModel):
    name: str = Field(min_length=1)
    code: str | None = None


class BatchCreateRequest(BaseModel):
    batch_number: str = Field(min_length=1)
    initial_status: Literal["DRAFT", "SUBMITTED"]
    product_id: str | None = None
    new_product: NewProductInput | None = None
    date_of_production: str
    best_before_date: str
    sample_analysis_started_at: str | None = None
    sample_analysis_ended_at: str | None = None
    sample_analysis_status: Literal["PENDING", "IN_PROGRESS", "COMPLETED"] = "PENDING"
    standard_ids: list[str] = Field(default_factory=list)
    methodology_ids: list[str] = Field(default_factory=list)
    unit_ids: list[str] = Field(default_factory=list)
    parameter_values: list[ParameterValueInput] = Field(default_factory=list)


class BatchUpdateRequest(BaseModel):
    batch_number: str | None = Field(default=None, min_length=1)
    product_id: str | None = None
    date_of_production: str | None = None
    best_before_date: str | None = None
    sample_analysis_started_at: str | None = None
    sample_analysis_ended_at: str | None = None
    sample_analysis_status: Literal["PENDING", "IN_PROGRESS", "COMPLETED"] | None = None
    # None leaves the relation untouched; a list replaces it.
    standard_ids: list[str] | None = None
    methodology_ids: list[str] | None = None
    unit_ids: list[str] | None = None
    parameter_values: list[ParameterValueInput] | None = None
    delete_other_parameters: bool = False


class RejectRequest(BaseModel):
    rejection_remarks: str = ""


class ParameterVerificationInput(BaseModel):
    parameter_value_id: str = Field(min_length=1)
    verification_result: Literal["COMPLIANT", "NON_COMPLIANT", "NOT_APPLICABLE"]
    verification_remark: str | None = None


class RecordVerificationRequest(BaseModel):
    verifications: list[ParameterVerificationInput] = Field(min_length=1)


class CompleteVerificationRequest(BaseModel):
    action: Literal["APPROVE", "REJECT"]
    remarks: str | None = None


def success_envelope(
    data: Any,
    trace_id: str,
    message: str = "ok",
    *,
    pagination: dict[str, Any] | None = None,
) -> dict[str, Any]:
    meta: dict[str, Any] = {"trace_id": trace_id}
    if pagination is not None:
        meta["pagination"] = pagination
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": meta,
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
