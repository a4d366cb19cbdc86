"""
Glass - API Dependencies
========================

Shared dependencies for FastAPI endpoints.

The WorkflowService and everything it owns (agent orchestrator, event
buffer, issue source) are process-wide singletons built on first use.
"""

from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from glass.core.agent.claude_code import ClaudeCodeSessionFactory
from glass.core.agent.event_buffer import EventBuffer
from glass.core.agent.orchestrator import AgentSessionOrchestrator
from glass.core.agent.session import AgentSessionFactory
from glass.core.config import settings
from glass.core.database import AsyncSessionLocal
from glass.core.sources.base import IssueSource
from glass.core.sources.sentry import SentryClient
from glass.core.store.conversations import ConversationLog
from glass.core.store.issues import IssueStore
from glass.core.workflow.service import WorkflowService
from glass.core.workspace import WorkspaceManager

logger = structlog.get_logger()


# ==========================================================================
# Service Wiring
# ==========================================================================

def build_workflow_service(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    agent_factory: Optional[AgentSessionFactory] = None,
    source: Optional[IssueSource] = None,
    workspaces: Optional[WorkspaceManager] = None,
) -> WorkflowService:
    """Assemble a WorkflowService from settings, with optional overrides."""
    if source is None and settings.sentry_enabled:
        source = SentryClient()
    if source is None:
        logger.warning("issue_source_not_configured")

    return WorkflowService(
        issues=IssueStore(session_factory),
        conversations=ConversationLog(session_factory),
        orchestrator=AgentSessionOrchestrator(
            agent_factory or ClaudeCodeSessionFactory(settings.CLAUDE_BINARY)
        ),
        workspaces=workspaces or WorkspaceManager(),
        event_buffer=EventBuffer(),
        source=source,
    )


# ==========================================================================
# Singleton
# ==========================================================================

_workflow_service: Optional[WorkflowService] = None


def get_workflow_service() -> WorkflowService:
    """Get or create the WorkflowService singleton."""
    global _workflow_service

    if _workflow_service is None:
        _workflow_service = build_workflow_service()
    return _workflow_service


async def close_workflow_service() -> None:
    global _workflow_service

    if _workflow_service is not None:
        await _workflow_service.shutdown()
        _workflow_service = None
