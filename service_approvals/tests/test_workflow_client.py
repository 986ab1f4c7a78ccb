"""
Unit tests for the workflow engine client.
"""

import pytest
import httpx
from unittest.mock import AsyncMock, patch
import json

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_approvals.app.adapters.base_client import BaseHTTPClient
from service_approvals.app.adapters.workflow_client import (
    WorkflowEngineClient, decode_variables, encode_variable, encode_variables
)
from service_approvals.app.models import InstanceState
from shared.errors import EngineUnavailable
from shared.retry import RetryConfig

BASE_URL = "http://localhost:8080/engine-rest"


def response(status_code, body=None, method="GET", path="/"):
    """Build an httpx response for a mocked request."""
    return httpx.Response(
        status_code=status_code,
        content=json.dumps(body) if body is not None else b"",
        request=httpx.Request(method, f"{BASE_URL}{path}")
    )


def routed(routes):
    """Side effect answering by (method, path); values may be lists consumed in order."""
    async def _request(method, url, **kwargs):
        key = (method, url[len(BASE_URL):])
        answer = routes[key]
        if isinstance(answer, list):
            answer = answer.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer
    return _request


class TestVariableCodec:
    """Test cases for the {value, type} encoding."""

    @pytest.mark.parametrize("value,expected_type", [
        (None, "Null"),
        (True, "Boolean"),
        (42, "Integer"),
        (2 ** 40, "Long"),
        (1.5, "Double"),
        ("text", "String"),
        ({"a": 1}, "Json"),
        ([1, 2], "Json"),
    ])
    def test_inferred_types(self, value, expected_type):
        """Test types are inferred from Python values."""
        assert encode_variable(value)["type"] == expected_type

    def test_json_values_are_serialized(self):
        """Test structured values travel as JSON text."""
        encoded = encode_variables({"meta": {"a": [1, 2]}})

        assert encoded["meta"] == {"value": '{"a": [1, 2]}', "type": "Json"}

    def test_decode(self):
        """Test decoding flattens and parses JSON variables."""
        decoded = decode_variables({
            "draftId": {"value": "d-1", "type": "String"},
            "approved": {"value": True, "type": "Boolean"},
            "meta": {"value": '{"k": "v"}', "type": "Json"},
        })

        assert decoded == {"draftId": "d-1", "approved": True, "meta": {"k": "v"}}


class TestWorkflowEngineClient:
    """Test cases for WorkflowEngineClient."""

    @pytest.fixture
    def client(self):
        """Create a client with no backoff delays."""
        return WorkflowEngineClient(
            BASE_URL,
            timeout=1.0,
            retry_config=RetryConfig(max_attempts=3, base_delay=0, jitter=False),
            settle_delay=0,
            probe_attempts=2,
            probe_interval=0
        )

    @pytest.mark.asyncio
    async def test_start_instance(self, client):
        """Test starting an instance posts encoded variables."""
        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(return_value=response(200, {"id": "pi-1"}, "POST"))
            mock_client.return_value.__aenter__.return_value.request = request

            instance_id = await client.start_instance(
                "benefit-plan-approval", {"draftId": "d-1", "baseVersion": "3"}, business_key="d-1"
            )

            assert instance_id == "pi-1"
            args, kwargs = request.call_args
            assert args == ("POST", f"{BASE_URL}/process-definition/key/benefit-plan-approval/start")
            assert kwargs["json"]["variables"]["draftId"] == {"value": "d-1", "type": "String"}
            assert kwargs["json"]["businessKey"] == "d-1"

    @pytest.mark.asyncio
    async def test_start_instance_not_retried_after_timeout(self, client):
        """Test a start whose outcome is unknown is not repeated."""
        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))
            mock_client.return_value.__aenter__.return_value.request = request

            with pytest.raises(EngineUnavailable) as exc_info:
                await client.start_instance("benefit-plan-approval", {"draftId": "d-1"})

            assert request.call_count == 1
            assert exc_info.value.details["outcome_unknown"] is True

    @pytest.mark.asyncio
    async def test_start_instance_retried_on_connect_error(self, client):
        """Test a start that never reached the engine is retried."""
        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(side_effect=[
                httpx.ConnectError("refused"),
                response(200, {"id": "pi-2"}, "POST"),
            ])
            mock_client.return_value.__aenter__.return_value.request = request

            assert await client.start_instance("benefit-plan-approval", {}) == "pi-2"
            assert request.call_count == 2

    @pytest.mark.asyncio
    async def test_list_tasks_with_variables(self, client):
        """Test tasks are listed and enriched with their variables."""
        routes = {
            ("GET", "/task"): response(200, [
                {"id": "t-1", "name": "Review", "processInstanceId": "pi-1", "assignee": "alice"},
                {"id": "t-2", "name": "Review", "processInstanceId": "pi-2", "assignee": "alice"},
            ]),
            ("GET", "/task/t-1/variables"): response(200, {"draftId": {"value": "d-1", "type": "String"}}),
            ("GET", "/task/t-2/variables"): response(404, {"message": "gone"}),
        }
        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(side_effect=routed(routes))
            mock_client.return_value.__aenter__.return_value.request = request

            tasks = await client.list_tasks(assignee="alice", process_definition_key="benefit-plan-approval")

            assert [task.task_id for task in tasks] == ["t-1", "t-2"]
            assert tasks[0].draft_id == "d-1"
            assert tasks[1].variables == {}
            first_call = request.call_args_list[0]
            assert first_call.kwargs["params"] == {
                "assignee": "alice", "processDefinitionKey": "benefit-plan-approval"
            }

    @pytest.mark.asyncio
    async def test_get_task_not_found(self, client):
        """Test a missing task is None rather than an error."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(
                return_value=response(404, {"type": "RestException"})
            )

            assert await client.get_task("t-404") is None
            assert await client.get_task_variables("t-404") is None

    @pytest.mark.asyncio
    async def test_get_task_retries_transient_failures(self, client):
        """Test reads are retried on gateway errors."""
        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(side_effect=[
                response(503),
                httpx.ReadTimeout("slow"),
                response(200, {"id": "t-1", "processInstanceId": "pi-1"}),
            ])
            mock_client.return_value.__aenter__.return_value.request = request

            task = await client.get_task("t-1")

            assert task.process_instance_id == "pi-1"
            assert request.call_count == 3

    @pytest.mark.asyncio
    async def test_get_task_exhausts_retries(self, client):
        """Test EngineUnavailable after the last attempt."""
        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(side_effect=httpx.ConnectError("refused"))
            mock_client.return_value.__aenter__.return_value.request = request

            with pytest.raises(EngineUnavailable) as exc_info:
                await client.get_task("t-1")

            assert request.call_count == 3
            assert exc_info.value.code == "ENGINE_UNAVAILABLE"
            assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_unexpected_status(self, client):
        """Test non-retryable error statuses surface immediately."""
        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(return_value=response(500, {"message": "boom"}))
            mock_client.return_value.__aenter__.return_value.request = request

            with pytest.raises(EngineUnavailable) as exc_info:
                await client.get_task("t-1")

            assert request.call_count == 1
            assert exc_info.value.details["status_code"] == 500

    @pytest.mark.asyncio
    async def test_non_json_body(self, client):
        """Test an HTML page in place of JSON is reported as unavailable."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(return_value=httpx.Response(
                status_code=200,
                content=b"<html>proxy error</html>",
                request=httpx.Request("GET", f"{BASE_URL}/task/t-1")
            ))

            with pytest.raises(EngineUnavailable) as exc_info:
                await client.get_task("t-1")

            assert exc_info.value.details["operation"] == "get_task"
            assert "proxy error" in exc_info.value.details["body"]

    @pytest.mark.asyncio
    async def test_task_without_id(self, client):
        """Test a task listing missing required fields is reported as unavailable."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(
                return_value=response(200, [{"name": "Review"}])
            )

            with pytest.raises(EngineUnavailable) as exc_info:
                await client.list_tasks()

            assert exc_info.value.details["operation"] == "list_tasks"

    @pytest.mark.asyncio
    async def test_malformed_variables(self, client):
        """Test variables that are not an object are reported as unavailable."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(
                return_value=response(200, ["not", "a", "map"])
            )

            with pytest.raises(EngineUnavailable):
                await client.get_task_variables("t-1")
            with pytest.raises(EngineUnavailable):
                await client.get_instance_variables("pi-1")

    @pytest.mark.asyncio
    async def test_start_instance_non_json_body(self, client):
        """Test a started instance whose reply cannot be read is unavailable."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(return_value=httpx.Response(
                status_code=200,
                content=b"OK",
                request=httpx.Request("POST", f"{BASE_URL}/process-definition/key/p/start")
            ))

            with pytest.raises(EngineUnavailable) as exc_info:
                await client.start_instance("p", {"draftId": "d-1"})

            assert exc_info.value.details["operation"] == "start_instance"

    @pytest.mark.asyncio
    async def test_complete_task(self, client):
        """Test completion posts encoded variables."""
        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(return_value=response(204, method="POST"))
            mock_client.return_value.__aenter__.return_value.request = request

            completed = await client.complete_task("t-1", {"approved": True, "approvedBy": "bob"})

            assert completed is True
            args, kwargs = request.call_args
            assert args == ("POST", f"{BASE_URL}/task/t-1/complete")
            assert kwargs["json"]["variables"]["approved"] == {"value": True, "type": "Boolean"}

    @pytest.mark.asyncio
    async def test_complete_task_already_gone(self, client):
        """Test completing a missing task reports False."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(
                return_value=response(404, {"message": "Cannot find task"}, "POST")
            )

            assert await client.complete_task("t-1", {"approved": True}) is False

    @pytest.mark.asyncio
    async def test_instance_completed(self, client):
        """Test a 404 instance is reported as completed."""
        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(return_value=response(404))
            mock_client.return_value.__aenter__.return_value.request = request

            assert await client.get_instance_state("pi-1") == InstanceState.COMPLETED
            assert request.call_count == 1

    @pytest.mark.asyncio
    async def test_instance_active_after_reprobe(self, client):
        """Test a live instance is probed again before being called active."""
        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(return_value=response(200, {"id": "pi-1"}))
            mock_client.return_value.__aenter__.return_value.request = request

            assert await client.get_instance_state("pi-1") == InstanceState.ACTIVE
            assert request.call_count == 2

    @pytest.mark.asyncio
    async def test_instance_completion_seen_on_second_probe(self, client):
        """Test propagation lag is absorbed by the second probe."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(
                side_effect=[response(200, {"id": "pi-1"}), response(404)]
            )

            assert await client.get_instance_state("pi-1") == InstanceState.COMPLETED

    @pytest.mark.asyncio
    async def test_status_read_probes_once(self, client):
        """Test settle=False skips the re-probe."""
        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(return_value=response(200, {"id": "pi-1"}))
            mock_client.return_value.__aenter__.return_value.request = request

            assert await client.get_instance_state("pi-1", settle=False) == InstanceState.ACTIVE
            assert request.call_count == 1

    @pytest.mark.asyncio
    async def test_instance_unknown(self, client):
        """Test exhausted probes give UNKNOWN, and instance_is_active raises."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(
                side_effect=httpx.ConnectError("refused")
            )

            assert await client.get_instance_state("pi-1") == InstanceState.UNKNOWN
            with pytest.raises(EngineUnavailable):
                await client.instance_is_active("pi-1")

    @pytest.mark.asyncio
    async def test_activity_names(self, client):
        """Test current activity names are extracted."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(
                return_value=response(200, {
                    "id": "pi-1",
                    "childActivityInstances": [
                        {"activityId": "legalReview", "activityName": "Legal review"},
                        {"activityId": "financeReview", "activityName": None},
                    ]
                })
            )

            assert await client.get_activity_names("pi-1") == ["Legal review", "financeReview"]

    @pytest.mark.asyncio
    async def test_instance_variables(self, client):
        """Test instance variables are decoded, and None once the instance ended."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(side_effect=[
                response(200, {"baseVersion": {"value": "4", "type": "String"}}),
                response(404),
            ])

            assert await client.get_instance_variables("pi-1") == {"baseVersion": "4"}
            assert await client.get_instance_variables("pi-1") is None

    @pytest.mark.asyncio
    async def test_circuit_breaker_opens(self):
        """Test an open breaker fails fast without calling the engine."""
        client = WorkflowEngineClient(
            BASE_URL,
            retry_config=RetryConfig(max_attempts=1, base_delay=0, jitter=False),
            circuit_breaker=WorkflowEngineClient.build_breaker(failure_threshold=1, recovery_timeout=60),
            settle_delay=0
        )
        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(side_effect=httpx.ConnectError("refused"))
            mock_client.return_value.__aenter__.return_value.request = request

            with pytest.raises(EngineUnavailable):
                await client.get_task("t-1")
            with pytest.raises(EngineUnavailable) as exc_info:
                await client.get_task("t-1")

            assert request.call_count == 1
            assert exc_info.value.details["circuit_breaker"] == "open"

    @pytest.mark.asyncio
    async def test_not_found_does_not_trip_breaker(self):
        """Test 404 answers are not failures."""
        client = WorkflowEngineClient(
            BASE_URL,
            circuit_breaker=WorkflowEngineClient.build_breaker(failure_threshold=1),
            settle_delay=0
        )
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(return_value=response(404))

            assert await client.get_task("t-1") is None
            assert await client.get_task("t-1") is None
            assert not client.circuit_breaker.is_open()


class TestBaseHTTPClient:
    """Test cases for BaseHTTPClient."""

    def test_requires_unavailable_error(self):
        """Test adapters must name the error used when their system is down."""
        class Incomplete(BaseHTTPClient):
            system = "incomplete"

        with pytest.raises(TypeError):
            BaseHTTPClient(BASE_URL)
        with pytest.raises(TypeError):
            Incomplete(BASE_URL)

    def test_concrete_adapter(self):
        """Test an adapter that supplies its error can be built."""
        client = WorkflowEngineClient(BASE_URL, settle_delay=0)

        error = client._unavailable("down", {"operation": "get_task"})

        assert isinstance(error, EngineUnavailable)
        assert error.details == {"operation": "get_task"}
