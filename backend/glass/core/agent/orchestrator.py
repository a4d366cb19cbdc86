"""
Agent Session Orchestrator
==========================

Creates, tracks and tears down agent sessions.

Sessions live in an in-memory table keyed by a process-local session id.
The table is guarded by an asyncio.Lock held only for insert, lookup and
removal; prompting and event streaming never hold it.

Session kinds:
- analysis: read-only tools, project directory, analysis model
- fix: read-write tools, worktree directory, fix model
"""

import asyncio
import itertools
import time
from typing import Dict, List, Optional

import structlog

from glass.core.agent.session import (
    AgentSessionFactory,
    AgentSessionHandle,
    CapabilityTier,
    SessionPurpose,
)
from glass.core.config import settings
from glass.core.errors import AgentError

logger = structlog.get_logger()


class AgentSessionOrchestrator:
    """Owns every live AgentSessionHandle in the process."""

    def __init__(
        self,
        factory: AgentSessionFactory,
        project_path: str = None,
        analyze_model: str = None,
        fix_model: str = None,
        dispose_timeout: float = None,
    ):
        self.factory = factory
        self.project_path = project_path or settings.PROJECT_PATH
        self.analyze_model = analyze_model or settings.ANALYZE_MODEL
        self.fix_model = fix_model or settings.FIX_MODEL
        self.dispose_timeout = (
            settings.AGENT_DISPOSE_TIMEOUT_SECONDS if dispose_timeout is None else dispose_timeout
        )

        self.sessions: Dict[str, AgentSessionHandle] = {}
        self._lock = asyncio.Lock()
        self._counter = itertools.count(1)

    def _next_session_id(self, purpose: SessionPurpose) -> str:
        return f"{purpose.value}-{int(time.time() * 1000)}-{next(self._counter)}"

    async def _create(
        self,
        purpose: SessionPurpose,
        working_dir: str,
        tier: CapabilityTier,
        model: str,
    ) -> AgentSessionHandle:
        try:
            session = await self.factory.create(working_dir, tier, model)
        except AgentError:
            raise
        except Exception as e:
            raise AgentError(
                "create_session",
                f"Failed to create {purpose.value} session: {e}",
                e,
            ) from e

        handle = AgentSessionHandle(
            session_id=self._next_session_id(purpose),
            purpose=purpose,
            workspace=working_dir,
            session=session,
        )
        async with self._lock:
            self.sessions[handle.session_id] = handle

        logger.info(
            "agent_session_created",
            session_id=handle.session_id,
            purpose=purpose.value,
            workspace=working_dir,
            model=model,
        )
        return handle

    async def create_analysis_session(self) -> AgentSessionHandle:
        """New read-only session in the project directory."""
        return await self._create(
            SessionPurpose.ANALYSIS,
            self.project_path,
            CapabilityTier.READ_ONLY,
            self.analyze_model,
        )

    async def create_fix_session(self, workspace_ref: str) -> AgentSessionHandle:
        """New read-write session in the given worktree."""
        return await self._create(
            SessionPurpose.FIX,
            workspace_ref,
            CapabilityTier.READ_WRITE,
            self.fix_model,
        )

    async def get_session(self, session_id: str) -> Optional[AgentSessionHandle]:
        async with self._lock:
            return self.sessions.get(session_id)

    async def dispose_session(self, session_id: str) -> None:
        """
        Remove and dispose a session.

        Unknown or already disposed ids are a no-op.

        Raises:
            AgentError: the session's own teardown failed; it is no longer tracked.
        """
        async with self._lock:
            handle = self.sessions.pop(session_id, None)
        if handle is None:
            return

        await handle.dispose()
        logger.info("agent_session_disposed", session_id=session_id)

    async def dispose_all(self) -> None:
        """Dispose every tracked session; failures and timeouts are logged and skipped."""
        async with self._lock:
            handles = list(self.sessions.values())
            self.sessions.clear()

        for handle in handles:
            try:
                await asyncio.wait_for(handle.dispose(), timeout=self.dispose_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "agent_session_dispose_timeout",
                    session_id=handle.session_id,
                    timeout=self.dispose_timeout,
                )
            except AgentError as e:
                logger.warning(
                    "agent_session_dispose_failed",
                    session_id=handle.session_id,
                    error=e.message,
                )

        if handles:
            logger.info("agent_sessions_disposed", count=len(handles))

    def active_session_ids(self) -> List[str]:
        return list(self.sessions)

    def __len__(self) -> int:
        return len(self.sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self.sessions
