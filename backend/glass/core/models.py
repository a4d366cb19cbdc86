"""
Glass - Database Models
=======================

SQLAlchemy models for issues, their agent conversations and the latest
proposal per issue.

Timestamps are assigned in Python through ``utc_now()`` rather than by the
database, so ``updated_at`` is strictly increasing within the process even
when two writes land in the same clock tick.
"""

import enum
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from glass.core.database import Base
from glass.core.workflow.phases import (
    PHASE_COLUMNS,
    PhaseKind,
    WorkflowPhase,
    phase_from_columns,
)


# ==========================================================================
# Enums
# ==========================================================================

class SourceType(str, enum.Enum):
    """Origin of an issue record."""
    SENTRY = "sentry"


class ConversationPhase(str, enum.Enum):
    """Which agent session a conversation message belongs to."""
    ANALYSIS = "analysis"
    FIX = "fix"


class MessageRole(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"


# ==========================================================================
# Timestamps
# ==========================================================================

_clock_lock = threading.Lock()
_last_timestamp: Optional[datetime] = None


def utc_now() -> datetime:
    """Naive UTC timestamp, strictly greater than any previously returned one."""
    global _last_timestamp
    with _clock_lock:
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        if _last_timestamp is not None and now <= _last_timestamp:
            now = _last_timestamp + timedelta(microseconds=1)
        _last_timestamp = now
        return now


# ==========================================================================
# Models
# ==========================================================================

class Issue(Base):
    """
    An externally sourced issue and its current workflow phase.

    The phase is flattened into nullable payload columns; ``phase_version``
    is bumped on every phase write and serves as the compare-and-swap token.
    """

    __tablename__ = "issues"

    id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    source_type: Mapped[str] = mapped_column(
        String(50),
        default=SourceType.SENTRY.value,
        nullable=False,
    )
    source_project: Mapped[str] = mapped_column(
        String(255),
        default="",
        nullable=False,
    )
    source_data: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )

    # Workflow phase
    phase: Mapped[str] = mapped_column(
        String(20),
        default=PhaseKind.PENDING.value,
        index=True,
        nullable=False,
    )
    analysis_session_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    fix_session_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    proposal_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    workspace_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    workspace_branch: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_previous_phase: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    phase_version: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        index=True,
        nullable=False,
    )

    @property
    def workflow_phase(self) -> WorkflowPhase:
        row = {name: getattr(self, name) for name in PHASE_COLUMNS}
        row["phase"] = self.phase
        return phase_from_columns(row)

    @property
    def title(self) -> str:
        data = self.source_data or {}
        return str(data.get("title") or data.get("shortId") or self.id)

    def __repr__(self) -> str:
        return f"<Issue {self.id} ({self.phase})>"


class ConversationMessage(Base):
    """
    One message exchanged with an agent session.

    Append-only; ``id`` gives the creation order.
    """

    __tablename__ = "conversation_messages"
    __table_args__ = (
        Index("ix_conversation_issue_phase_created", "issue_id", "phase", "created_at"),
    )

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    issue_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("issues.id", ondelete="CASCADE"),
        nullable=False,
    )
    session_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    phase: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ConversationMessage {self.id} {self.issue_id}/{self.phase} {self.role}>"


class Proposal(Base):
    """Latest fix proposal for an issue; one row per issue, replaced on save."""

    __tablename__ = "proposals"

    issue_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("issues.id", ondelete="CASCADE"),
        primary_key=True,
    )
    id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Proposal {self.id} for {self.issue_id}>"
