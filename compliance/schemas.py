from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class NonCompliance(BaseModel):
    issue: str = Field(min_length=1)
    severity: Literal["low", "medium", "high"] = "medium"
    reference: str = ""


class ComplianceVerdict(BaseModel):
    compliant: bool
    summary: str = ""
    non_compliances: list[NonCompliance] = Field(default_factory=list)

    @model_validator(mode="after")
    def _flagged_issues_mean_non_compliant(self) -> "ComplianceVerdict":
        if self.non_compliances:
            self.compliant = False
        return self

    def analysis_result(self) -> dict[str, Any]:
        return {"compliant": self.compliant, "summary": self.summary}

    def non_compliance_items(self) -> list[dict[str, Any]]:
        return [item.model_dump(mode="json") for item in self.non_compliances]


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
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
