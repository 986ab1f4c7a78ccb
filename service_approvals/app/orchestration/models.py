"""
Tagged results returned by the approval orchestrator.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from shared.errors import ApprovalLayerException


class ResultStatus(str, Enum):
    """Successful (or designed) outcomes of an orchestrator operation."""
    SUBMITTED = "submitted"
    TASK_COMPLETED = "task_completed"
    APPROVED_AND_PUBLISHED = "approved_and_published"
    REJECTED = "rejected"
    ALREADY_COMPLETED = "already_completed"
    VERSION_CONFLICT = "version_conflict"


class ErrorKind(str, Enum):
    """Named failure kinds surfaced to callers."""
    DRAFT_NOT_FOUND = "DRAFT_NOT_FOUND"
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    ALREADY_SUBMITTED = "ALREADY_SUBMITTED"
    INVALID_DRAFT_STATE = "INVALID_DRAFT_STATE"
    NOT_IN_CONFLICT = "NOT_IN_CONFLICT"
    RECORD_DELETED = "RECORD_DELETED"
    ENGINE_UNAVAILABLE = "ENGINE_UNAVAILABLE"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


class ConflictInfo(BaseModel):
    """What changed under an approval, and what the caller should do next."""
    conflict_type: str
    base_version: Optional[str] = None
    current_version: Optional[str] = None
    message: str
    action_required: str = "resubmit"


class ApprovalResult(BaseModel):
    """Either a success payload, a version conflict, or a named error."""

    success: bool
    status: Optional[ResultStatus] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    conflict: Optional[ConflictInfo] = None
    reconciliation_required: bool = False
    retryable: bool = False
    trace_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, status: Optional[ResultStatus] = None, message: Optional[str] = None,
           reconciliation_required: bool = False, **data) -> "ApprovalResult":
        return cls(
            success=True,
            status=status,
            message=message,
            reconciliation_required=reconciliation_required,
            data=data
        )

    @classmethod
    def version_conflict(cls, conflict: ConflictInfo, **data) -> "ApprovalResult":
        return cls(
            success=False,
            status=ResultStatus.VERSION_CONFLICT,
            message=conflict.message,
            conflict=conflict,
            data=data
        )

    @classmethod
    def from_exception(cls, exc: ApprovalLayerException,
                       reconciliation_required: bool = False) -> "ApprovalResult":
        """Convert a domain exception into an error result."""
        response = exc.to_response()
        return cls(
            success=False,
            error=ErrorKind(response.code),
            message=response.message,
            reconciliation_required=reconciliation_required,
            retryable=exc.retryable,
            trace_id=response.trace_id,
            data=response.details
        )

    @property
    def is_conflict(self) -> bool:
        return self.status == ResultStatus.VERSION_CONFLICT
