"""
Workflow engine client (Camunda-style REST API).
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from shared.circuit_breaker import CircuitBreaker
from shared.errors import EngineUnavailable, ExternalServiceError
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig
from .base_client import BaseHTTPClient
from ..models import ApprovalTask, InstanceState


_INT32_MIN, _INT32_MAX = -2 ** 31, 2 ** 31 - 1


def encode_variable(value: Any) -> Dict[str, Any]:
    """Encode one value in the engine's ``{value, type}`` shape."""
    if value is None:
        return {"value": None, "type": "Null"}
    if isinstance(value, bool):
        return {"value": value, "type": "Boolean"}
    if isinstance(value, int):
        return {"value": value, "type": "Integer" if _INT32_MIN <= value <= _INT32_MAX else "Long"}
    if isinstance(value, float):
        return {"value": value, "type": "Double"}
    if isinstance(value, datetime):
        return {"value": value.isoformat(), "type": "String"}
    if isinstance(value, (dict, list, tuple)):
        return {"value": json.dumps(value, default=str), "type": "Json"}
    return {"value": str(value), "type": "String"}


def encode_variables(variables: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    return {name: encode_variable(value) for name, value in variables.items()}


def decode_variables(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten ``{name: {value, type}}`` into ``{name: value}``."""
    decoded = {}
    for name, entry in (raw or {}).items():
        if not isinstance(entry, dict):
            decoded[name] = entry
            continue
        value = entry.get("value")
        if entry.get("type") == "Json" and isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                pass
        decoded[name] = value
    return decoded


class WorkflowEngineClient(BaseHTTPClient):
    """Client for process instances and user tasks.

    Holds no cached state: every answer comes from the engine.
    """

    system = "workflow_engine"

    def __init__(self,
                 base_url: str,
                 timeout: float = 10.0,
                 retry_config: Optional[RetryConfig] = None,
                 circuit_breaker: Optional[CircuitBreaker] = None,
                 metrics: Optional[MetricsCollector] = None,
                 settle_delay: float = 0.5,
                 probe_attempts: int = 2,
                 probe_interval: float = 0.5):
        super().__init__(
            base_url,
            timeout=timeout,
            retry_config=retry_config,
            circuit_breaker=circuit_breaker,
            metrics=metrics,
            logger_name="approvals.workflow_client"
        )
        self.settle_delay = settle_delay
        self.probe_attempts = max(1, probe_attempts)
        self.probe_interval = probe_interval

    @classmethod
    def from_settings(cls, settings, metrics: Optional[MetricsCollector] = None) -> "WorkflowEngineClient":
        return cls(
            settings.engine_url,
            timeout=settings.request_timeout_seconds,
            retry_config=RetryConfig.from_settings(settings),
            circuit_breaker=cls.build_breaker(
                settings.breaker_failure_threshold, settings.breaker_recovery_timeout
            ),
            metrics=metrics,
            settle_delay=settings.completion_settle_delay,
            probe_attempts=settings.completion_probe_attempts,
            probe_interval=settings.completion_probe_interval,
        )

    def _unavailable(self, message: str, details: Optional[Dict[str, Any]] = None) -> ExternalServiceError:
        return EngineUnavailable(message, details)

    async def start_instance(self, process_key: str, variables: Dict[str, Any],
                             business_key: Optional[str] = None) -> str:
        """Start a process instance and return its id."""
        body: Dict[str, Any] = {"variables": encode_variables(variables)}
        if business_key:
            body["businessKey"] = business_key

        response = await self._request(
            "POST",
            f"/process-definition/key/{process_key}/start",
            operation="start_instance",
            idempotent=False,
            json=body
        )
        instance_id = self._decode(response, "start_instance", lambda data: data.get("id"))
        if not instance_id:
            raise EngineUnavailable("Engine did not return a process instance id",
                                    {"process_key": process_key})

        self.logger.info("Process instance started", process_key=process_key, instance_id=instance_id)
        return instance_id

    async def list_tasks(self, assignee: Optional[str] = None,
                         process_definition_key: Optional[str] = None) -> List[ApprovalTask]:
        """List open tasks, each with its variables."""
        params = {}
        if assignee:
            params["assignee"] = assignee
        if process_definition_key:
            params["processDefinitionKey"] = process_definition_key

        response = await self._request("GET", "/task", operation="list_tasks", params=params)
        tasks = self._decode(
            response, "list_tasks", lambda data: [self._task_from_json(item) for item in data]
        )

        variables = await asyncio.gather(*(self.get_task_variables(task.task_id) for task in tasks))
        for task, task_variables in zip(tasks, variables):
            task.variables = task_variables or {}

        self.logger.debug("Tasks listed", count=len(tasks), assignee=assignee)
        return tasks

    async def get_task(self, task_id: str) -> Optional[ApprovalTask]:
        """Fetch one task, or ``None`` when it no longer exists."""
        response = await self._request("GET", f"/task/{task_id}", operation="get_task", allow_not_found=True)
        if response is None:
            return None
        return self._decode(response, "get_task", self._task_from_json)

    async def get_task_variables(self, task_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request(
            "GET", f"/task/{task_id}/variables", operation="get_task_variables", allow_not_found=True
        )
        if response is None:
            return None
        return self._decode(response, "get_task_variables", decode_variables)

    async def complete_task(self, task_id: str, variables: Dict[str, Any]) -> bool:
        """Complete a task with the given variables.

        Returns ``False`` when the task is already gone, which callers treat
        as a repeated completion rather than a failure.
        """
        response = await self._request(
            "POST",
            f"/task/{task_id}/complete",
            operation="complete_task",
            idempotent=False,
            allow_not_found=True,
            json={"variables": encode_variables(variables)}
        )
        if response is None:
            self.logger.warning("Task already completed or unknown", task_id=task_id)
            return False

        self.logger.info("Task completed", task_id=task_id, variables=sorted(variables))
        return True

    async def get_instance_state(self, instance_id: str, settle: bool = True) -> InstanceState:
        """Probe whether an instance is still running.

        A missing instance means it finished. Right after a task completion
        (``settle=True``) the engine may lag, so the probe waits first and a
        live instance is re-probed a few times. Plain status reads probe once.
        """
        attempts = self.probe_attempts if settle else 1
        if settle and self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)

        for probe in range(1, attempts + 1):
            try:
                response = await self._request(
                    "GET", f"/process-instance/{instance_id}",
                    operation="get_instance", allow_not_found=True
                )
            except EngineUnavailable as e:
                self.logger.warning("Instance state could not be determined",
                                    instance_id=instance_id, error=e.message)
                return InstanceState.UNKNOWN

            if response is None:
                self.logger.info("Process instance completed", instance_id=instance_id, probe=probe)
                return InstanceState.COMPLETED

            if probe < attempts:
                await asyncio.sleep(self.probe_interval)

        return InstanceState.ACTIVE

    async def instance_is_active(self, instance_id: str, settle: bool = True) -> bool:
        state = await self.get_instance_state(instance_id, settle=settle)
        if state == InstanceState.UNKNOWN:
            raise EngineUnavailable("Could not determine process instance state",
                                    {"instance_id": instance_id})
        return state == InstanceState.ACTIVE

    async def get_instance_variables(self, instance_id: str) -> Optional[Dict[str, Any]]:
        """Variables of a running instance; ``None`` once it has ended."""
        response = await self._request(
            "GET", f"/process-instance/{instance_id}/variables",
            operation="get_instance_variables", allow_not_found=True
        )
        if response is None:
            return None
        return self._decode(response, "get_instance_variables", decode_variables)

    async def get_activity_names(self, instance_id: str) -> List[str]:
        """Names of the activities an instance is currently waiting in."""
        response = await self._request(
            "GET", f"/process-instance/{instance_id}/activity-instances",
            operation="get_activity_instances", allow_not_found=True
        )
        if response is None:
            return []
        return self._decode(response, "get_activity_instances", self._activity_names)

    @staticmethod
    def _activity_names(data: Dict[str, Any]) -> List[str]:
        names = []
        for child in data.get("childActivityInstances") or []:
            name = child.get("activityName") or child.get("activityId")
            if name:
                names.append(name)
        return names

    @staticmethod
    def _task_from_json(data: Dict[str, Any]) -> ApprovalTask:
        return ApprovalTask(
            task_id=data["id"],
            process_instance_id=data.get("processInstanceId"),
            name=data.get("name"),
            assignee=data.get("assignee"),
            created=data.get("created"),
        )
