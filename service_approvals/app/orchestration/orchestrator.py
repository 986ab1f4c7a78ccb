"""
Approval orchestrator.

Coordinates the draft store, the workflow engine and the golden record store
without keeping any state of its own: every decision is recomputed from what
those three systems report at the time of the call.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.errors import (
    AlreadySubmitted, ApprovalLayerException, DraftNotFound, EngineUnavailable,
    ExternalServiceError, InvalidDraftState, NotInConflict, RecordDeleted, TaskNotFound
)
from shared.logging import get_logger, set_approval_context
from shared.metrics import MetricsCollector
from ..adapters import DraftRepository, GoldenRecordClient, WorkflowEngineClient
from ..models import (
    CONFLICT_MESSAGES, ApprovalTask, ConflictMetadata, ConflictType, Draft, DraftStatus,
    GoldenRecord, InstanceState, VersionToken
)
from .models import ApprovalResult, ConflictInfo, ResultStatus


DRAFT_SOURCE = "draft_store"

RESUBMIT_ACTIONS = {
    ConflictType.VERSION_MISMATCH: "Please resubmit with the updated version.",
    ConflictType.DELETED: "Please create a new draft.",
}


class _PartialFailure(Exception):
    """A write failed after the workflow task was already completed."""

    def __init__(self, cause: ApprovalLayerException):
        super().__init__(cause.message)
        self.cause = cause


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _record_ref(value: Optional[str]) -> Optional[str]:
    if not value or value == VersionToken.NEW.value:
        return None
    return value


class ApprovalOrchestrator:
    """Stateless coordinator for the draft approval lifecycle.

    Draft states: ``draft -> submitted -> approved | rejected``. A draft
    rejected because of a version conflict only returns to ``draft`` through
    ``resubmit_with_updated_version``.

    Every public operation returns an ``ApprovalResult``; domain exceptions
    never escape.
    """

    def __init__(self,
                 workflow: WorkflowEngineClient,
                 drafts: DraftRepository,
                 golden_records: GoldenRecordClient,
                 process_key: str = "benefit-plan-approval",
                 metrics: Optional[MetricsCollector] = None):
        self.workflow = workflow
        self.drafts = drafts
        self.golden_records = golden_records
        self.process_key = process_key
        self.metrics = metrics
        self.logger = get_logger("approvals.orchestrator")

    # Public surface

    async def submit_for_approval(self, draft_id: str, user_id: str) -> ApprovalResult:
        """Start an approval workflow for a draft."""
        set_approval_context(user_id=user_id, draft_id=draft_id)
        return await self._execute("submit", self._submit, draft_id, user_id)

    async def get_pending_tasks(self, user_id: str) -> ApprovalResult:
        """Open approval tasks assigned to a user, with the plan name attached."""
        set_approval_context(user_id=user_id)
        return await self._execute("get_pending_tasks", self._pending_tasks, user_id)

    async def complete_approval_task(self, task_id: str, approved: bool,
                                     comments: Optional[str], user_id: str) -> ApprovalResult:
        """Approve or reject one workflow task.

        Ordering within the call is fixed: task variables are read first, the
        golden record version is checked next, and only then is the task
        completion written. Publishing happens once the instance has ended.
        A task the engine no longer has is reported as already completed.
        """
        set_approval_context(user_id=user_id)
        return await self._execute(
            "complete_task", self._complete_task, task_id, approved, comments or "", user_id
        )

    async def get_approval_status(self, draft_id: str) -> ApprovalResult:
        set_approval_context(draft_id=draft_id)
        return await self._execute("get_status", self._approval_status, draft_id)

    async def check_version_conflict(self, draft_id: str) -> ApprovalResult:
        """Read-only pre-flight check of a draft against its golden record."""
        set_approval_context(draft_id=draft_id)
        return await self._execute("check_conflict", self._check_conflict, draft_id)

    async def resubmit_with_updated_version(self, draft_id: str, user_id: str) -> ApprovalResult:
        """Recover a conflict-rejected draft by resubmitting it on the current version."""
        set_approval_context(user_id=user_id, draft_id=draft_id)
        return await self._execute("resubmit", self._resubmit, draft_id, user_id)

    async def list_drafts_with_status(self, user_id: Optional[str] = None) -> ApprovalResult:
        return await self._execute("list_drafts", self._list_drafts, user_id)

    # Operations

    async def _submit(self, draft_id: str, user_id: str) -> ApprovalResult:
        draft = await self._load_draft(draft_id)

        if draft.status == DraftStatus.SUBMITTED:
            raise AlreadySubmitted(draft.id, {"submission_id": draft.submission_id})
        if draft.status == DraftStatus.APPROVED:
            raise InvalidDraftState(draft.id, draft.status.value, "Draft has already been approved")
        if draft.status == DraftStatus.REJECTED and draft.conflict is not None:
            raise InvalidDraftState(
                draft.id, draft.status.value,
                "Draft was rejected by a version conflict; resubmit it with the updated version"
            )

        record_id = None if draft.is_new_record else draft.golden_record_id
        base_version = VersionToken.NEW
        if record_id:
            current = await self.golden_records.get(record_id)
            if current is None:
                raise RecordDeleted(draft.id, record_id)
            base_version = current.version

        variables = {
            "draftId": draft.id,
            "draftSource": DRAFT_SOURCE,
            "baseVersion": str(base_version),
            "goldenRecordId": record_id or VersionToken.NEW.value,
            "submittedBy": user_id,
            "planName": draft.display_name,
            "submittedAt": _now(),
        }
        instance_id = await self.workflow.start_instance(self.process_key, variables, business_key=draft.id)

        try:
            await self.drafts.update(
                draft.id,
                status=DraftStatus.SUBMITTED,
                submission_id=instance_id,
                updated_by=user_id
            )
        except ExternalServiceError as e:
            # instance is running but the draft does not point at it
            self.logger.error(
                "Workflow started but draft was not marked submitted",
                draft_id=draft.id,
                instance_id=instance_id,
                error=e.message
            )
            e.details["instance_id"] = instance_id
            raise _PartialFailure(e)

        self.logger.info(
            "Draft submitted for approval",
            draft_id=draft.id,
            instance_id=instance_id,
            base_version=str(base_version)
        )
        return ApprovalResult.ok(
            ResultStatus.SUBMITTED,
            draftId=draft.id,
            processInstanceId=instance_id,
            baseVersion=str(base_version),
            goldenRecordId=record_id,
        )

    async def _pending_tasks(self, user_id: str) -> ApprovalResult:
        tasks = await self.workflow.list_tasks(assignee=user_id, process_definition_key=self.process_key)
        drafts = await asyncio.gather(*(self._find_draft(task.draft_id) for task in tasks))

        entries = []
        for task, draft in zip(tasks, drafts):
            entries.append({
                "taskId": task.task_id,
                "taskName": task.name,
                "created": task.created,
                "processInstanceId": task.process_instance_id,
                "draftId": task.draft_id,
                "planName": draft.display_name if draft else task.variables.get("planName", "Unknown"),
                "submittedBy": task.variables.get("submittedBy"),
                "submittedAt": task.variables.get("submittedAt"),
                "baseVersion": task.variables.get("baseVersion"),
            })
        return ApprovalResult.ok(tasks=entries, count=len(entries))

    async def _complete_task(self, task_id: str, approved: bool, comments: str,
                             user_id: str) -> ApprovalResult:
        # a task the engine no longer knows was completed by an earlier call
        task = await self.workflow.get_task(task_id)
        variables = await self.workflow.get_task_variables(task_id) if task is not None else None
        if task is None or variables is None:
            self.logger.info("Task no longer open, treating as completed", task_id=task_id)
            return ApprovalResult.ok(ResultStatus.ALREADY_COMPLETED, "Task was already completed", taskId=task_id)
        task.variables = variables

        if not task.draft_id:
            raise TaskNotFound(task_id, f"Task {task_id} does not belong to a draft approval")
        set_approval_context(user_id=user_id, draft_id=task.draft_id)

        draft = await self._load_draft(task.draft_id)
        if draft.status != DraftStatus.SUBMITTED:
            raise InvalidDraftState(draft.id, draft.status.value)

        if not approved:
            return await self._reject(task, draft, comments, user_id)

        record_id = _record_ref(variables.get("goldenRecordId"))
        if record_id is None and not draft.is_new_record:
            record_id = draft.golden_record_id
        base_version = task.base_version or VersionToken.NEW

        if record_id:
            current = await self.golden_records.get(record_id)
            if current is None:
                return await self._void(task, draft, ConflictType.DELETED, base_version, None, user_id)
            if current.version != base_version:
                return await self._void(
                    task, draft, ConflictType.VERSION_MISMATCH, base_version, current.version, user_id
                )
            self.logger.info("Version check passed", record_id=record_id, version=str(current.version))

        completed = await self.workflow.complete_task(task_id, {
            "approved": True,
            "approverComments": comments,
            "approvedBy": user_id,
            "approvedAt": _now(),
        })
        if not completed:
            return ApprovalResult.ok(ResultStatus.ALREADY_COMPLETED, "Task was already completed", taskId=task_id)

        instance_id = task.process_instance_id or draft.submission_id
        state = await self.workflow.get_instance_state(instance_id)
        if state == InstanceState.ACTIVE:
            return ApprovalResult.ok(
                ResultStatus.TASK_COMPLETED,
                "Approval recorded, waiting for other approvers",
                taskId=task_id,
                draftId=draft.id,
                instanceState=state.value,
            )
        if state == InstanceState.UNKNOWN:
            self.logger.error(
                "Task completed but instance state is unknown; publish deferred",
                task_id=task_id,
                instance_id=instance_id,
                draft_id=draft.id
            )
            return ApprovalResult.ok(
                ResultStatus.TASK_COMPLETED,
                "Approval recorded; workflow state could not be confirmed",
                reconciliation_required=True,
                taskId=task_id,
                draftId=draft.id,
                instanceState=state.value,
            )

        record = await self._after_completion("publish", draft, task_id, self._publish(draft, record_id))
        await self._after_completion("mark_approved", draft, task_id, self.drafts.update(
            draft.id,
            status=DraftStatus.APPROVED,
            golden_record_id=record.id,
            submission_id=None,
            content=self._published_content(draft, record),
            updated_by=user_id
        ))

        if self.metrics:
            self.metrics.record_business_event("plan_published")
        self.logger.info(
            "Draft approved and published",
            draft_id=draft.id,
            record_id=record.id,
            version=str(record.version)
        )
        return ApprovalResult.ok(
            ResultStatus.APPROVED_AND_PUBLISHED,
            draftId=draft.id,
            goldenRecordId=record.id,
            version=str(record.version),
        )

    async def _reject(self, task: ApprovalTask, draft: Draft, comments: str,
                      user_id: str) -> ApprovalResult:
        completed = await self.workflow.complete_task(task.task_id, {
            "approved": False,
            "rejectionReason": comments,
            "rejectedBy": user_id,
            "rejectedAt": _now(),
        })
        if not completed:
            return ApprovalResult.ok(ResultStatus.ALREADY_COMPLETED, "Task was already completed",
                                     taskId=task.task_id)

        await self._after_completion("mark_rejected", draft, task.task_id, self.drafts.update(
            draft.id,
            status=DraftStatus.REJECTED,
            submission_id=None,
            updated_by=user_id
        ))
        if comments:
            await self._after_completion(
                "record_comment", draft, task.task_id, self.drafts.add_comment(draft.id, user_id, comments)
            )

        self.logger.info("Draft rejected", draft_id=draft.id, task_id=task.task_id)
        return ApprovalResult.ok(
            ResultStatus.REJECTED,
            "Plan has been rejected",
            draftId=draft.id,
            taskId=task.task_id,
            comments=comments,
        )

    async def _void(self, task: ApprovalTask, draft: Draft, conflict_type: ConflictType,
                    base_version: VersionToken, current_version: Optional[VersionToken],
                    user_id: str) -> ApprovalResult:
        """Reject the task because the golden record moved under it."""
        voided_at = _now()
        message = CONFLICT_MESSAGES[conflict_type]
        self.logger.warning(
            "Version conflict detected, voiding approval",
            draft_id=draft.id,
            task_id=task.task_id,
            conflict_type=conflict_type.value,
            base_version=str(base_version),
            current_version=str(current_version) if current_version else None
        )

        task_variables = {
            "approved": False,
            "rejectionReason": message,
            "conflictDetected": True,
            "conflictType": conflict_type.value,
            "baseVersion": str(base_version),
            "voidedAt": voided_at,
            "voidedBy": user_id,
        }
        if current_version is not None:
            task_variables["currentVersion"] = str(current_version)
        completed = await self.workflow.complete_task(task.task_id, task_variables)
        if not completed:
            return ApprovalResult.ok(ResultStatus.ALREADY_COMPLETED, "Task was already completed",
                                     taskId=task.task_id)

        metadata = ConflictMetadata(
            conflict_type=conflict_type,
            base_version=str(base_version),
            current_version=str(current_version) if current_version else None,
            detected_at=voided_at,
            message=message,
            previous_conflicts=list((draft.conflict_metadata or {}).get("previousConflicts") or []),
        )
        await self._after_completion("mark_conflict", draft, task.task_id, self.drafts.update(
            draft.id,
            status=DraftStatus.REJECTED,
            submission_id=None,
            conflict_metadata=metadata.to_dict(),
            updated_by=user_id
        ))

        if self.metrics:
            self.metrics.record_conflict(conflict_type.value)
        return ApprovalResult.version_conflict(
            ConflictInfo(
                conflict_type=conflict_type.value,
                base_version=metadata.base_version,
                current_version=metadata.current_version,
                message=f"{message}. {RESUBMIT_ACTIONS[conflict_type]}",
            ),
            draftId=draft.id,
            taskId=task.task_id,
            goldenRecordId=draft.golden_record_id,
            voidedAt=voided_at,
        )

    async def _approval_status(self, draft_id: str) -> ApprovalResult:
        draft = await self._load_draft(draft_id)
        data: Dict[str, Any] = {
            "draftId": draft.id,
            "draftStatus": draft.status.value,
            "submissionId": draft.submission_id,
            "processActive": False,
        }
        conflict = draft.conflict
        if conflict is not None:
            data["conflict"] = conflict.to_dict()

        if draft.status != DraftStatus.SUBMITTED or not draft.submission_id:
            return ApprovalResult.ok(**data)

        state = await self.workflow.get_instance_state(draft.submission_id, settle=False)
        if state == InstanceState.UNKNOWN:
            raise EngineUnavailable("Could not determine workflow state", {"draft_id": draft.id})
        if state == InstanceState.ACTIVE:
            data["processActive"] = True
            data["currentActivities"] = await self.workflow.get_activity_names(draft.submission_id)
            return ApprovalResult.ok(**data)

        self.logger.error(
            "Workflow ended but draft is still submitted; manual reconciliation required",
            draft_id=draft.id,
            instance_id=draft.submission_id
        )
        return ApprovalResult.ok(
            message="Approval process ended but the draft was never updated",
            reconciliation_required=True,
            **data
        )

    async def _check_conflict(self, draft_id: str) -> ApprovalResult:
        draft = await self._load_draft(draft_id)
        if draft.is_new_record:
            return ApprovalResult.ok(
                message="No conflict - this is a new record",
                hasConflict=False,
                isNewRecord=True,
            )

        current = await self.golden_records.get(draft.golden_record_id)
        if current is None:
            return ApprovalResult.ok(
                message=CONFLICT_MESSAGES[ConflictType.DELETED],
                hasConflict=True,
                conflictType=ConflictType.DELETED.value,
            )

        base_version = await self._recorded_base_version(draft)
        if base_version is not None and base_version != current.version:
            return ApprovalResult.ok(
                message="The record has been modified since this draft was based on it",
                hasConflict=True,
                conflictType=ConflictType.VERSION_MISMATCH.value,
                baseVersion=str(base_version),
                currentVersion=str(current.version),
                lastModified=current.last_updated,
            )

        return ApprovalResult.ok(
            message="No version conflict detected",
            hasConflict=False,
            currentVersion=str(current.version),
        )

    async def _resubmit(self, draft_id: str, user_id: str) -> ApprovalResult:
        draft = await self._load_draft(draft_id)
        conflict = draft.conflict
        if draft.status != DraftStatus.REJECTED or conflict is None:
            raise NotInConflict(draft.id)

        new_base = VersionToken.NEW
        if not draft.is_new_record:
            current = await self.golden_records.get(draft.golden_record_id)
            if current is None:
                raise RecordDeleted(draft.id, draft.golden_record_id)
            new_base = current.version

        previous = conflict.to_dict()
        history = list(previous.pop("previousConflicts", []))
        history.append(previous)
        await self.drafts.update(
            draft.id,
            status=DraftStatus.DRAFT,
            conflict_metadata={
                "baseVersion": str(new_base),
                "previousConflicts": history,
                "resolvedBy": user_id,
                "resolvedAt": _now(),
            },
            updated_by=user_id
        )
        self.logger.info(
            "Conflict resolved, resubmitting draft",
            draft_id=draft.id,
            previous_base=conflict.base_version,
            new_base=str(new_base)
        )

        result = await self._submit(draft.id, user_id)
        result.message = "Draft resubmitted with updated base version"
        result.data["previousConflict"] = previous
        return result

    async def _list_drafts(self, user_id: Optional[str]) -> ApprovalResult:
        drafts = await self.drafts.list(created_by=user_id)
        states = await asyncio.gather(*(self._workflow_state(draft) for draft in drafts))

        entries = []
        for draft, state in zip(drafts, states):
            entries.append({
                "id": draft.id,
                "name": draft.display_name,
                "status": draft.status.value,
                "workflowStatus": state.value if state else None,
                "reconciliationRequired": state == InstanceState.COMPLETED,
                "createdBy": draft.created_by,
                "updatedAt": draft.updated_at.isoformat() if draft.updated_at else None,
            })
        return ApprovalResult.ok(drafts=entries, count=len(entries))

    # Helpers

    async def _execute(self, operation: str, func: Callable[..., Awaitable[ApprovalResult]],
                       *args) -> ApprovalResult:
        try:
            result = await func(*args)
        except _PartialFailure as e:
            self.logger.error(
                "Partial failure, manual reconciliation required",
                operation=operation,
                code=e.cause.code,
                error=e.cause.message
            )
            result = ApprovalResult.from_exception(e.cause, reconciliation_required=True)
        except ApprovalLayerException as e:
            log = self.logger.error if e.retryable else self.logger.warning
            log("Approval operation failed", operation=operation, code=e.code, error=e.message)
            result = ApprovalResult.from_exception(e)

        if self.metrics:
            outcome = result.status.value if result.status else (result.error.value if result.error else "ok")
            self.metrics.record_operation(operation, outcome)
            if result.error:
                self.metrics.record_error(result.error.value)
        return result

    async def _after_completion(self, step: str, draft: Draft, task_id: str, pending: Awaitable[Any]) -> Any:
        """Await a write that follows the task completion.

        Failure here cannot be rolled back by retrying the whole operation
        (the task is gone), so it is surfaced as needing reconciliation.
        """
        try:
            return await pending
        except ExternalServiceError as e:
            self.logger.error(
                "Write after task completion failed",
                step=step,
                draft_id=draft.id,
                task_id=task_id,
                error=e.message
            )
            e.details.setdefault("step", step)
            e.details.setdefault("task_id", task_id)
            raise _PartialFailure(e)

    async def _publish(self, draft: Draft, record_id: Optional[str]) -> GoldenRecord:
        content = {key: value for key, value in (draft.content or {}).items() if key != "meta"}
        content["status"] = "active"
        if record_id:
            return await self.golden_records.update(record_id, content)
        return await self.golden_records.create(content)

    @staticmethod
    def _published_content(draft: Draft, record: GoldenRecord) -> Dict[str, Any]:
        content = dict(draft.content or {})
        content["status"] = record.status or "active"
        content["meta"] = {
            **(content.get("meta") or {}),
            "versionId": str(record.version),
            "lastUpdated": record.last_updated,
        }
        return content

    async def _load_draft(self, draft_id: Optional[str]) -> Draft:
        draft = await self._find_draft(draft_id)
        if draft is None:
            raise DraftNotFound(str(draft_id))
        return draft

    async def _find_draft(self, draft_id: Optional[str]) -> Optional[Draft]:
        if not draft_id:
            return None
        return await self.drafts.get(draft_id)

    async def _recorded_base_version(self, draft: Draft) -> Optional[VersionToken]:
        """Base version the draft is currently judged against.

        While submitted it lives in the workflow instance; after a conflict or
        a resubmission it is kept in the draft's conflict metadata.
        """
        if draft.status == DraftStatus.SUBMITTED and draft.submission_id:
            variables = await self.workflow.get_instance_variables(draft.submission_id)
            if variables:
                return VersionToken.parse(variables.get("baseVersion"))
        return VersionToken.parse((draft.conflict_metadata or {}).get("baseVersion"))

    async def _workflow_state(self, draft: Draft) -> Optional[InstanceState]:
        if draft.status != DraftStatus.SUBMITTED or not draft.submission_id:
            return None
        return await self.workflow.get_instance_state(draft.submission_id, settle=False)

