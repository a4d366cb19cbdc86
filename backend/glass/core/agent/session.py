"""
Agent Session Interface
=======================

Capability surface of an external coding agent session:
prompt, subscribe, abort, dispose.

``AgentSessionHandle`` wraps a concrete session with the identity the
orchestrator assigns to it and converts every underlying failure into
AgentError.
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from glass.core.errors import AgentError

logger = structlog.get_logger()


# ==========================================================================
# Types
# ==========================================================================

class CapabilityTier(str, enum.Enum):
    """Tool access granted to an agent session."""
    READ_ONLY = "read_only"
    READ_WRITE = "read_write"


class SessionPurpose(str, enum.Enum):
    ANALYSIS = "analysis"
    FIX = "fix"


class AgentEventType(str, enum.Enum):
    """Kinds of events streamed from an agent session."""
    TEXT = "text"              # Incremental assistant text
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    MESSAGE = "message"        # A complete assistant message
    RESULT = "result"          # The turn finished
    ERROR = "error"


@dataclass
class AgentEvent:
    """A single streamed event from an agent session."""
    type: AgentEventType
    text: str = ""
    tool: Optional[str] = None
    is_error: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "text": self.text,
            "tool": self.tool,
            "is_error": self.is_error,
            "timestamp": self.timestamp.isoformat(),
        }


AgentEventListener = Callable[[AgentEvent], None]
Unsubscribe = Callable[[], None]


# ==========================================================================
# Session Interface
# ==========================================================================

class AgentSession(ABC):
    """Abstract interface for a long-lived agent conversation."""

    @abstractmethod
    async def prompt(self, text: str) -> None:
        """
        Send a prompt and wait until the agent finishes its turn.

        Progress is reported to subscribers as AgentEvents.
        """
        pass

    @abstractmethod
    def subscribe(self, listener: AgentEventListener) -> Unsubscribe:
        """Register a listener; returns a callable that removes it."""
        pass

    @abstractmethod
    async def abort(self) -> None:
        """Cancel the turn in progress, if any."""
        pass

    @abstractmethod
    async def dispose(self) -> None:
        """Release every resource held by the session."""
        pass


class AgentSessionFactory(ABC):
    """Creates concrete AgentSessions."""

    @abstractmethod
    async def create(
        self,
        working_dir: str,
        tier: CapabilityTier,
        model: str,
    ) -> AgentSession:
        pass


# ==========================================================================
# Handle
# ==========================================================================

class AgentSessionHandle:
    """An agent session registered in the orchestrator's table."""

    def __init__(
        self,
        session_id: str,
        purpose: SessionPurpose,
        workspace: str,
        session: AgentSession,
    ):
        self.session_id = session_id
        self.purpose = purpose
        self.workspace = workspace
        self.session = session
        self.created_at = datetime.now(timezone.utc)

    async def prompt(self, text: str) -> None:
        try:
            await self.session.prompt(text)
        except AgentError:
            raise
        except Exception as e:
            raise AgentError("prompt", str(e) or type(e).__name__, e) from e

    def subscribe(self, listener: AgentEventListener) -> Unsubscribe:
        try:
            return self.session.subscribe(listener)
        except Exception as e:
            raise AgentError("subscribe", str(e) or type(e).__name__, e) from e

    async def abort(self) -> None:
        try:
            await self.session.abort()
        except Exception as e:
            raise AgentError("abort", str(e) or type(e).__name__, e) from e

    async def dispose(self) -> None:
        try:
            await self.session.dispose()
        except Exception as e:
            raise AgentError("dispose", str(e) or type(e).__name__, e) from e

    def __repr__(self) -> str:
        return f"<AgentSessionHandle {self.session_id} ({self.purpose.value})>"
