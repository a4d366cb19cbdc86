"""
Glass - Test Fixtures
=====================

Shared pytest fixtures for all tests.

Agent sessions, the issue source and git worktrees are replaced with
in-process fakes; the database is a real SQLite file per test.
"""

import asyncio
import os

# Must be set before glass.core.config is imported
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from collections.abc import AsyncGenerator  # noqa: E402
from pathlib import Path  # noqa: E402
from typing import List, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from glass.core import models  # noqa: E402,F401
from glass.core.agent.event_buffer import EventBuffer  # noqa: E402
from glass.core.agent.orchestrator import AgentSessionOrchestrator  # noqa: E402
from glass.core.agent.session import (  # noqa: E402
    AgentEvent,
    AgentEventType,
    AgentSession,
    AgentSessionFactory,
    CapabilityTier,
)
from glass.core.database import Base  # noqa: E402
from glass.core.errors import AgentError, SourceError, SourceErrorKind  # noqa: E402
from glass.core.sources.base import IssueSource, SourceIssue  # noqa: E402
from glass.core.store.conversations import ConversationLog  # noqa: E402
from glass.core.store.issues import IssueStore  # noqa: E402
from glass.core.workflow.service import WorkflowService  # noqa: E402
from glass.core.workspace import Workspace, WorkspaceManager  # noqa: E402


DEFAULT_PROPOSAL = "#### Root Cause\nNull user.\n\n#### Proposed Fix\nGuard the lookup."


# ==========================================================================
# Fake Agent
# ==========================================================================

class FakeAgentSession(AgentSession):
    """Agent session whose replies are scripted by its factory."""

    def __init__(self, factory: "FakeAgentFactory", working_dir: str, tier: CapabilityTier, model: str):
        self.factory = factory
        self.working_dir = working_dir
        self.tier = tier
        self.model = model
        self.prompts: List[str] = []
        self.listeners: list = []
        self.aborted = False
        self.disposed = False

    def subscribe(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def _emit(self, event: AgentEvent) -> None:
        for listener in list(self.listeners):
            listener(event)

    async def prompt(self, text: str) -> None:
        self.prompts.append(text)
        self._emit(AgentEvent(AgentEventType.TEXT, text="Looking"))
        if self.factory.gate is not None:
            await self.factory.gate.wait()
        if self.factory.prompt_error is not None:
            raise AgentError("prompt", self.factory.prompt_error)
        if self.factory.reply:
            self._emit(AgentEvent(AgentEventType.MESSAGE, text=self.factory.reply))
        self._emit(AgentEvent(AgentEventType.RESULT, text=self.factory.reply))

    async def abort(self) -> None:
        self.aborted = True

    async def dispose(self) -> None:
        if self.factory.dispose_error is not None:
            raise RuntimeError(self.factory.dispose_error)
        self.disposed = True


class FakeAgentFactory(AgentSessionFactory):
    """
    Records every created session.

    Attributes tune behaviour of sessions at prompt time:
    - reply: text of the final assistant message and result
    - prompt_error: raise AgentError from prompt
    - gate: asyncio.Event a prompt waits on before replying
    """

    def __init__(self):
        self.sessions: List[FakeAgentSession] = []
        self.reply: str = DEFAULT_PROPOSAL
        self.prompt_error: Optional[str] = None
        self.create_error: Optional[str] = None
        self.dispose_error: Optional[str] = None
        self.gate: Optional[asyncio.Event] = None

    async def create(self, working_dir: str, tier: CapabilityTier, model: str) -> AgentSession:
        if self.create_error is not None:
            raise RuntimeError(self.create_error)
        session = FakeAgentSession(self, working_dir, tier, model)
        self.sessions.append(session)
        return session


# ==========================================================================
# Fake Source and Workspaces
# ==========================================================================

class FakeSource(IssueSource):
    def __init__(self, issues: Optional[List[SourceIssue]] = None):
        self.issues: List[SourceIssue] = list(issues or [])
        self.error: Optional[SourceError] = None
        self.closed = False

    async def list_issues(self) -> List[SourceIssue]:
        if self.error is not None:
            raise self.error
        return list(self.issues)

    async def get_issue_detail(self, issue_id: str) -> SourceIssue:
        if self.error is not None:
            raise self.error
        for issue in self.issues:
            if issue.id == issue_id:
                return SourceIssue(
                    id=issue.id,
                    project=issue.project,
                    data={**issue.data, "environment": "production"},
                )
        raise SourceError(SourceErrorKind.NOT_FOUND, f"Sentry resource not found: {issue_id}", 404)

    async def close(self) -> None:
        self.closed = True


class FakeWorkspaceManager(WorkspaceManager):
    """Creates plain directories instead of git worktrees."""

    def __init__(self, project_path: str):
        super().__init__(project_path=project_path, parent_directory="worktrees", branch_prefix="glass/")
        self.created: List[Workspace] = []
        self.removed: List[Workspace] = []

    async def create(self, issue_id: str) -> Workspace:
        workspace = self.workspace_for(issue_id)
        Path(workspace.path).mkdir(parents=True, exist_ok=True)
        self.created.append(workspace)
        return workspace

    async def remove(self, workspace: Workspace) -> None:
        self.removed.append(workspace)


def make_source_issue(issue_id: str = "1001", title: str = "TypeError: user is undefined") -> SourceIssue:
    return SourceIssue(
        id=issue_id,
        project="web-app",
        data={
            "sentryId": issue_id,
            "title": title,
            "shortId": f"WEB-{issue_id}",
            "culprit": "src/users.ts in loadUser",
            "count": 12,
            "userCount": 3,
            "metadata": {"type": "TypeError", "value": "user is undefined"},
        },
    )


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """File-backed SQLite database with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'glass.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    await engine.dispose()


@pytest.fixture
def issue_store(session_factory) -> IssueStore:
    return IssueStore(session_factory)


@pytest.fixture
def conversation_log(session_factory) -> ConversationLog:
    return ConversationLog(session_factory)


# ==========================================================================
# Service Fixtures
# ==========================================================================

@pytest.fixture
def agent_factory() -> FakeAgentFactory:
    return FakeAgentFactory()


@pytest.fixture
def orchestrator(agent_factory: FakeAgentFactory, tmp_path: Path) -> AgentSessionOrchestrator:
    return AgentSessionOrchestrator(
        agent_factory,
        project_path=str(tmp_path),
        analyze_model="analyze-model",
        fix_model="fix-model",
        dispose_timeout=1.0,
    )


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource([make_source_issue("1001"), make_source_issue("1002", "ValueError: bad id")])


@pytest.fixture
def workspaces(tmp_path: Path) -> FakeWorkspaceManager:
    return FakeWorkspaceManager(str(tmp_path))


@pytest_asyncio.fixture
async def service(
    issue_store: IssueStore,
    conversation_log: ConversationLog,
    orchestrator: AgentSessionOrchestrator,
    workspaces: FakeWorkspaceManager,
    fake_source: FakeSource,
) -> AsyncGenerator[WorkflowService, None]:
    workflow = WorkflowService(
        issues=issue_store,
        conversations=conversation_log,
        orchestrator=orchestrator,
        workspaces=workspaces,
        event_buffer=EventBuffer(grace_seconds=5.0),
        source=fake_source,
    )
    yield workflow
    await workflow.shutdown()


@pytest_asyncio.fixture
async def pending_issue(issue_store: IssueStore) -> models.Issue:
    source_issue = make_source_issue("1001")
    return await issue_store.upsert(source_issue.id, source_issue.project, source_issue.data)


# ==========================================================================
# HTTP Client
# ==========================================================================

@pytest_asyncio.fixture
async def client(service: WorkflowService) -> AsyncGenerator[AsyncClient, None]:
    """Test HTTP client with the workflow service overridden."""
    from glass.api.deps import get_workflow_service
    from glass.api.main import app

    app.dependency_overrides[get_workflow_service] = lambda: service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()

