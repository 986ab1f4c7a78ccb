"""
Data model shared by the adapters and the approval orchestrator.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


NEW_RECORD = "new"


@dataclass(frozen=True, order=False)
class VersionToken:
    """Opaque golden-record version.

    Tokens compare for equality only; ordering them raises ``TypeError`` so
    version ids are never treated as numbers in business logic.
    """
    value: str

    @classmethod
    def parse(cls, raw: Optional[Any]) -> Optional["VersionToken"]:
        if raw is None or raw == "":
            return None
        return cls(str(raw))

    @property
    def is_new(self) -> bool:
        return self.value == NEW_RECORD

    def __str__(self) -> str:
        return self.value


VersionToken.NEW = VersionToken(NEW_RECORD)


class DraftStatus(str, Enum):
    """Lifecycle of a draft in the draft store."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class ConflictType(str, Enum):
    """Why an approval was voided."""
    VERSION_MISMATCH = "VERSION_MISMATCH"
    DELETED = "DELETED"


class InstanceState(str, Enum):
    """Liveness of a workflow instance as observed by probing it."""
    ACTIVE = "active"
    COMPLETED = "completed"
    UNKNOWN = "unknown"


CONFLICT_MESSAGES = {
    ConflictType.VERSION_MISMATCH: "The record was modified by another user during the approval process",
    ConflictType.DELETED: "The record was deleted during the approval process",
}


@dataclass
class ConflictMetadata:
    """Conflict details stored on a rejected draft."""
    conflict_type: ConflictType
    base_version: Optional[str] = None
    current_version: Optional[str] = None
    detected_at: Optional[str] = None
    message: Optional[str] = None
    previous_conflicts: List[Dict[str, Any]] = field(default_factory=list)
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "conflictType": self.conflict_type.value,
            "baseVersion": self.base_version,
            "currentVersion": self.current_version,
            "conflictDetectedAt": self.detected_at,
            "message": self.message or CONFLICT_MESSAGES[self.conflict_type],
        }
        if self.previous_conflicts:
            data["previousConflicts"] = list(self.previous_conflicts)
        if self.resolved_by:
            data["resolvedBy"] = self.resolved_by
            data["resolvedAt"] = self.resolved_at
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ConflictMetadata"]:
        """Decode the stored JSON; ``None`` unless a conflict type is present."""
        if not data or not data.get("conflictType"):
            return None
        return cls(
            conflict_type=ConflictType(data["conflictType"]),
            base_version=data.get("baseVersion"),
            current_version=data.get("currentVersion"),
            detected_at=data.get("conflictDetectedAt"),
            message=data.get("message"),
            previous_conflicts=list(data.get("previousConflicts") or []),
            resolved_by=data.get("resolvedBy"),
            resolved_at=data.get("resolvedAt"),
        )


@dataclass
class Draft:
    """Working copy of a plan, owned by the draft store."""
    id: str
    content: Dict[str, Any]
    status: DraftStatus = DraftStatus.DRAFT
    golden_record_id: Optional[str] = None
    submission_id: Optional[str] = None
    conflict_metadata: Optional[Dict[str, Any]] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_new_record(self) -> bool:
        return not self.golden_record_id or self.golden_record_id == NEW_RECORD

    @property
    def display_name(self) -> str:
        return str((self.content or {}).get("name") or "Unknown")

    @property
    def conflict(self) -> Optional[ConflictMetadata]:
        return ConflictMetadata.from_dict(self.conflict_metadata)


@dataclass
class GoldenRecord:
    """Authoritative, versioned resource."""
    id: str
    content: Dict[str, Any]
    version: VersionToken
    status: Optional[str] = None
    last_updated: Optional[str] = None


@dataclass
class ApprovalTask:
    """Workflow task as seen through the engine's task API."""
    task_id: str
    process_instance_id: Optional[str] = None
    name: Optional[str] = None
    assignee: Optional[str] = None
    created: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)

    @property
    def draft_id(self) -> Optional[str]:
        return self.variables.get("draftId")

    @property
    def base_version(self) -> Optional[VersionToken]:
        return VersionToken.parse(self.variables.get("baseVersion"))
