"""
Glass - Issues API Tests
========================

HTTP endpoints against the real workflow service with fake agents.
"""

import asyncio
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient
from starlette.websockets import WebSocketDisconnect

from glass.api.deps import get_workflow_service
from glass.api.main import app
from glass.core.agent.event_buffer import EventSubscription
from glass.core.agent.session import AgentEvent, AgentEventType
from glass.core.errors import IssueNotFoundError, SourceError, SourceErrorKind
from glass.core.models import Issue
from glass.core.workflow.service import WorkflowService

from conftest import FakeAgentFactory, FakeSource


API = "/api/v1/issues"


async def analyze(client: AsyncClient, service: WorkflowService, issue_id: str = "1001") -> dict:
    response = await client.post(f"{API}/{issue_id}/analyze")
    assert response.status_code == 200
    await service.drain()
    return (await client.get(f"{API}/{issue_id}")).json()


# ==========================================================================
# Health
# ==========================================================================

class TestHealth:
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"
        assert data["active_sessions"] == 0

    async def test_versioned_health(self, client: AsyncClient):
        response = await client.get("/api/v1/health")
        assert response.status_code == 200


# ==========================================================================
# Listing and Refresh
# ==========================================================================

class TestListIssues:
    async def test_list_empty(self, client: AsyncClient):
        response = await client.get(API)

        assert response.status_code == 200
        data = response.json()
        assert data["items"] == []
        assert data["total"] == 0

    async def test_refresh_then_list(self, client: AsyncClient):
        response = await client.post(f"{API}/refresh")

        assert response.status_code == 200
        assert response.json() == {"fetched": 2, "upserted": 2, "failed": []}

        data = (await client.get(API)).json()
        assert data["total"] == 2
        item = data["items"][0]
        assert item["phase"]["kind"] == "pending"
        assert item["allowed_actions"] == ["start_analysis", "reset"]

    async def test_pagination(self, client: AsyncClient):
        await client.post(f"{API}/refresh")

        data = (await client.get(API, params={"limit": 1, "offset": 1})).json()

        assert len(data["items"]) == 1
        assert data["total"] == 2
        assert data["limit"] == 1
        assert data["offset"] == 1

    async def test_invalid_limit(self, client: AsyncClient):
        response = await client.get(API, params={"limit": 0})
        assert response.status_code == 422

    async def test_refresh_source_error(self, client: AsyncClient, fake_source: FakeSource):
        fake_source.error = SourceError(SourceErrorKind.RATE_LIMIT, "Sentry rate limit exceeded", 429)

        response = await client.post(f"{API}/refresh")

        assert response.status_code == 502
        assert response.json()["code"] == "SOURCE_ERROR"
        assert response.json()["detail"] == "Sentry rate limit exceeded"

    async def test_refresh_single_issue(self, client: AsyncClient, pending_issue: Issue):
        response = await client.post(f"{API}/1001/refresh")

        assert response.status_code == 200
        assert response.json()["source_data"]["environment"] == "production"


class TestGetIssue:
    async def test_get(self, client: AsyncClient, pending_issue: Issue):
        response = await client.get(f"{API}/1001")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == "1001"
        assert data["title"] == "TypeError: user is undefined"
        assert data["source_project"] == "web-app"
        assert data["phase_version"] == 0

    async def test_not_found(self, client: AsyncClient):
        response = await client.get(f"{API}/missing")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


# ==========================================================================
# Workflow
# ==========================================================================

class TestWorkflowEndpoints:
    async def test_analyze_to_proposal(self, client: AsyncClient, service: WorkflowService, pending_issue: Issue):
        data = await analyze(client, service)

        assert data["phase"]["kind"] == "proposed"
        assert data["phase"]["session_id"].startswith("analysis-")
        assert "approve" in data["allowed_actions"]

        proposal = (await client.get(f"{API}/1001/proposal")).json()
        assert proposal["id"] == data["phase"]["proposal_ref"]

        conversation = (await client.get(f"{API}/1001/conversation", params={"phase": "analysis"})).json()
        assert [m["role"] for m in conversation] == ["user", "assistant"]

    async def test_analyze_twice_conflicts(self, client: AsyncClient, service: WorkflowService, pending_issue: Issue):
        await analyze(client, service)

        response = await client.post(f"{API}/1001/analyze")

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"

    async def test_session_creation_failure(
        self, client: AsyncClient, pending_issue: Issue, agent_factory: FakeAgentFactory
    ):
        agent_factory.create_error = "claude not installed"

        response = await client.post(f"{API}/1001/analyze")

        assert response.status_code == 502
        assert response.json()["code"] == "AGENT_ERROR"
        assert (await client.get(f"{API}/1001")).json()["phase"]["kind"] == "pending"

    async def test_approve_and_fix(self, client: AsyncClient, service: WorkflowService, pending_issue: Issue):
        await analyze(client, service)

        response = await client.post(f"{API}/1001/approve")

        assert response.status_code == 200
        assert response.json()["phase"]["kind"] == "fixing"
        assert response.json()["phase"]["branch_ref"] == "glass/1001"
        await service.drain()
        assert (await client.get(f"{API}/1001")).json()["phase"]["kind"] == "fixed"

    async def test_revise(
        self, client: AsyncClient, service: WorkflowService, pending_issue: Issue, agent_factory: FakeAgentFactory
    ):
        proposed = await analyze(client, service)
        agent_factory.gate = asyncio.Event()

        response = await client.post(f"{API}/1001/revise", json={"feedback": "Cover the null case"})

        assert response.status_code == 200
        phase = response.json()["phase"]
        assert phase["kind"] == "analyzing"
        assert phase["session_id"] == proposed["phase"]["session_id"]
        agent_factory.gate.set()

    async def test_revise_requires_feedback(self, client: AsyncClient, pending_issue: Issue):
        response = await client.post(f"{API}/1001/revise", json={"feedback": ""})
        assert response.status_code == 422

    async def test_reject(self, client: AsyncClient, service: WorkflowService, pending_issue: Issue):
        await analyze(client, service)

        response = await client.post(f"{API}/1001/reject")

        assert response.status_code == 200
        assert response.json()["phase"] == {
            "kind": "pending",
            "session_id": None,
            "proposal_ref": None,
            "analysis_session_id": None,
            "fix_session_id": None,
            "workspace_ref": None,
            "branch_ref": None,
            "previous_phase_kind": None,
            "error_message": None,
        }
        assert (await client.get(f"{API}/1001/proposal")).status_code == 404

    async def test_retry_after_failure(
        self, client: AsyncClient, service: WorkflowService, pending_issue: Issue, agent_factory: FakeAgentFactory
    ):
        agent_factory.prompt_error = "overloaded"
        failed = await analyze(client, service)
        assert failed["phase"]["kind"] == "failed"
        assert failed["phase"]["previous_phase_kind"] == "analyzing"
        assert failed["allowed_actions"] == ["start_analysis", "reset", "reject"]

        agent_factory.prompt_error = None
        response = await client.post(f"{API}/1001/retry")

        assert response.status_code == 200
        assert response.json()["phase"]["kind"] == "analyzing"

    async def test_reset(self, client: AsyncClient, service: WorkflowService, pending_issue: Issue):
        await analyze(client, service)

        response = await client.post(f"{API}/1001/reset")

        assert response.status_code == 200
        assert response.json()["phase"]["kind"] == "pending"
        assert (await client.get(f"{API}/1001/conversation")).json() == []


class TestTransitions:
    async def test_manual_fail(
        self, client: AsyncClient, pending_issue: Issue, agent_factory: FakeAgentFactory
    ):
        agent_factory.gate = asyncio.Event()
        await client.post(f"{API}/1001/analyze")

        response = await client.post(
            f"{API}/1001/transitions",
            json={"action": "fail", "payload": {"error_message": "stopped"}},
        )

        assert response.status_code == 200
        assert response.json()["phase"]["error_message"] == "stopped"
        agent_factory.gate.set()

    @pytest.mark.parametrize("action", ["start_analysis", "complete_analysis", "start_fix", "approve", "request_changes"])
    async def test_session_actions_rejected(self, client: AsyncClient, pending_issue: Issue, action: str):
        response = await client.post(f"{API}/1001/transitions", json={"action": action})
        assert response.status_code == 422

    async def test_bad_payload(self, client: AsyncClient, pending_issue: Issue):
        response = await client.post(f"{API}/1001/transitions", json={"action": "fail", "payload": {}})
        assert response.status_code == 422

    async def test_unknown_action(self, client: AsyncClient, pending_issue: Issue):
        response = await client.post(f"{API}/1001/transitions", json={"action": "archive"})
        assert response.status_code == 422

    async def test_illegal_transition(self, client: AsyncClient, pending_issue: Issue):
        response = await client.post(f"{API}/1001/transitions", json={"action": "complete_fix"})

        assert response.status_code == 409
        assert response.json()["detail"] == "Cannot perform 'complete_fix' from 'pending' phase"

    async def test_transition_unknown_issue(self, client: AsyncClient):
        response = await client.post(f"{API}/missing/transitions", json={"action": "reset"})
        assert response.status_code == 404


# ==========================================================================
# Streaming
# ==========================================================================

class StubStreamService:
    """Just enough of WorkflowService for the stream endpoint."""

    def __init__(self, session_id: Optional[str], subscription: Optional[EventSubscription] = None):
        self.session_id = session_id
        self.subscription = subscription
        self.event_buffer = self
        self.unsubscribed = []

    async def stream_session_id(self, issue_id: str) -> Optional[str]:
        if issue_id == "missing":
            raise IssueNotFoundError(issue_id)
        return self.session_id

    def subscribe(self, session_id: str) -> Optional[EventSubscription]:
        return self.subscription

    def unsubscribe(self, session_id: str, queue) -> None:
        self.unsubscribed.append(session_id)


@pytest.fixture
def stream_client():
    def make(stub: StubStreamService) -> TestClient:
        app.dependency_overrides[get_workflow_service] = lambda: stub
        return TestClient(app)

    yield make
    app.dependency_overrides.clear()


class TestStream:
    def test_unknown_issue_closes_with_4404(self, stream_client):
        client = stream_client(StubStreamService(session_id=None))

        with client.websocket_connect(f"{API}/missing/stream") as websocket:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_json()

        assert exc_info.value.code == 4404

    def test_no_live_session(self, stream_client):
        client = stream_client(StubStreamService(session_id=None))

        with client.websocket_connect(f"{API}/1001/stream") as websocket:
            assert websocket.receive_json() == {"type": "backfill", "session_id": None, "events": []}
            assert websocket.receive_json() == {"type": "end"}

    def test_backfill_then_live_events(self, stream_client):
        queue = asyncio.Queue()
        queue.put_nowait(AgentEvent(AgentEventType.MESSAGE, text="live"))
        queue.put_nowait(None)
        subscription = EventSubscription(
            backfill=[AgentEvent(AgentEventType.TEXT, text="early")],
            queue=queue,
            completed=False,
        )
        stub = StubStreamService(session_id="analysis-1", subscription=subscription)
        client = stream_client(stub)

        with client.websocket_connect(f"{API}/1001/stream") as websocket:
            backfill = websocket.receive_json()
            live = websocket.receive_json()
            end = websocket.receive_json()

        assert backfill["session_id"] == "analysis-1"
        assert [e["text"] for e in backfill["events"]] == ["early"]
        assert live["type"] == "event"
        assert live["event"]["type"] == "message"
        assert live["event"]["text"] == "live"
        assert end == {"type": "end"}
        assert stub.unsubscribed == ["analysis-1"]

    def test_completed_run_sends_backfill_only(self, stream_client):
        subscription = EventSubscription(
            backfill=[AgentEvent(AgentEventType.RESULT, text="done")],
            queue=asyncio.Queue(),
            completed=True,
        )
        client = stream_client(StubStreamService(session_id="analysis-1", subscription=subscription))

        with client.websocket_connect(f"{API}/1001/stream") as websocket:
            backfill = websocket.receive_json()
            end = websocket.receive_json()

        assert backfill["events"][0]["type"] == "result"
        assert end == {"type": "end"}
