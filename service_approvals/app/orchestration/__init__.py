"""
Approval orchestration: the stateless coordinator and its result types.
"""

from .models import ApprovalResult, ConflictInfo, ErrorKind, ResultStatus
from .orchestrator import ApprovalOrchestrator

__all__ = ["ApprovalOrchestrator", "ApprovalResult", "ConflictInfo", "ErrorKind", "ResultStatus"]
