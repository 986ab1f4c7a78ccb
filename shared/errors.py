"""
Shared error handling for the Plan Approvals core.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class ApprovalLayerException(Exception):
    """Base exception for the approvals core."""

    retryable = False

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class InvalidRuleDefinition(ApprovalLayerException):
    """Rule description is missing fields or has out-of-domain values."""

    def __init__(self, message: str = "Invalid rule definition", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_RULE_DEFINITION", message, details)


class ValidationFailed(ApprovalLayerException):
    """Decision document failed structural validation."""

    def __init__(self, message: str = "Decision table validation failed", errors: Optional[list] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if errors is not None:
            details["errors"] = list(errors)
        super().__init__("VALIDATION_FAILED", message, details)

    @property
    def errors(self) -> list:
        return self.details.get("errors", [])


class ExternalServiceError(ApprovalLayerException):
    """External system could not be reached after retries."""

    retryable = True

    def __init__(self, code: str, service: str, message: str = "External service error",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(code, f"{service}: {message}", details)
        self.service = service


class EngineUnavailable(ExternalServiceError):
    """Workflow engine is unreachable or returned an unexpected response."""

    def __init__(self, message: str = "Workflow engine unavailable, try again shortly",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("ENGINE_UNAVAILABLE", "workflow_engine", message, details)


class StoreUnavailable(ExternalServiceError):
    """Draft store or golden record store is unreachable."""

    def __init__(self, service: str = "store", message: str = "Store unavailable, try again shortly",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", service, message, details)


class AlreadySubmitted(ApprovalLayerException):
    """Draft already has a live approval workflow."""

    def __init__(self, draft_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "ALREADY_SUBMITTED",
            f"Draft {draft_id} is already submitted for approval",
            {"draft_id": draft_id, **(details or {})}
        )


class DraftNotFound(ApprovalLayerException):
    """Draft id does not resolve in the draft store."""

    def __init__(self, draft_id: str):
        super().__init__("DRAFT_NOT_FOUND", f"Draft {draft_id} not found", {"draft_id": draft_id})


class TaskNotFound(ApprovalLayerException):
    """Task id does not resolve in the workflow engine (unknown or already completed)."""

    def __init__(self, task_id: str, message: Optional[str] = None):
        super().__init__(
            "TASK_NOT_FOUND",
            message or f"Task {task_id} not found or already completed",
            {"task_id": task_id}
        )


class InvalidDraftState(ApprovalLayerException):
    """Draft status does not allow the requested transition."""

    def __init__(self, draft_id: str, status: str, message: Optional[str] = None):
        super().__init__(
            "INVALID_DRAFT_STATE",
            message or f"Draft {draft_id} cannot be processed in status '{status}'",
            {"draft_id": draft_id, "status": status}
        )


class NotInConflict(ApprovalLayerException):
    """Resubmission requested for a draft that was not rejected by a version conflict."""

    def __init__(self, draft_id: str):
        super().__init__(
            "NOT_IN_CONFLICT",
            "Draft was not rejected due to a version conflict",
            {"draft_id": draft_id}
        )


class RecordDeleted(ApprovalLayerException):
    """Golden record referenced by a draft no longer exists."""

    def __init__(self, draft_id: str, record_id: str):
        super().__init__(
            "RECORD_DELETED",
            "The original record no longer exists. Please create a new draft.",
            {"draft_id": draft_id, "golden_record_id": record_id}
        )
