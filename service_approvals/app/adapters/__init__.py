"""
Clients for the three external systems the approval flow coordinates:
the workflow engine, the draft store and the golden record store.
"""

from .draft_repository import DraftRepository
from .golden_record_client import GoldenRecordClient
from .workflow_client import WorkflowEngineClient

__all__ = ["DraftRepository", "GoldenRecordClient", "WorkflowEngineClient"]
