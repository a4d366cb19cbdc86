"""
Glass - Pydantic Schemas
========================

Request and response schemas for API validation.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from glass.core.models import ConversationPhase, Issue, MessageRole
from glass.core.workflow.phases import ActionKind, PhaseKind, describe_phase
from glass.core.workflow.state_machine import allowed_actions


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Issue Schemas
# ==========================================================================

class PhaseSchema(BaseSchema):
    """Workflow phase: its kind plus whichever payload fields that kind carries."""

    kind: PhaseKind
    session_id: Optional[str] = None
    proposal_ref: Optional[str] = None
    analysis_session_id: Optional[str] = None
    fix_session_id: Optional[str] = None
    workspace_ref: Optional[str] = None
    branch_ref: Optional[str] = None
    previous_phase_kind: Optional[PhaseKind] = None
    error_message: Optional[str] = None


class IssueResponse(TimestampSchema):
    """Schema for an issue in responses."""

    id: str
    source_type: str
    source_project: str
    title: str
    source_data: dict[str, Any]
    phase: PhaseSchema
    phase_version: int
    allowed_actions: list[ActionKind]

    @classmethod
    def from_issue(cls, issue: Issue) -> "IssueResponse":
        phase = issue.workflow_phase
        return cls(
            id=issue.id,
            source_type=issue.source_type,
            source_project=issue.source_project,
            title=issue.title,
            source_data=issue.source_data or {},
            phase=PhaseSchema(**describe_phase(phase)),
            phase_version=issue.phase_version,
            allowed_actions=allowed_actions(phase),
            created_at=issue.created_at,
            updated_at=issue.updated_at,
        )


class IssueListResponse(BaseSchema):
    """Schema for paginated issue list."""

    items: list[IssueResponse]
    total: int
    limit: int
    offset: int


class RefreshResponse(BaseSchema):
    fetched: int
    upserted: int
    failed: list[str] = Field(default_factory=list)


# ==========================================================================
# Workflow Schemas
# ==========================================================================

class TransitionRequest(BaseSchema):
    """Raw state machine action."""

    action: ActionKind
    payload: dict[str, Any] = Field(default_factory=dict)


class RevisionRequest(BaseSchema):
    """Reviewer feedback on a proposal."""

    feedback: str = Field(min_length=1, max_length=20000)


class ConversationMessageResponse(BaseSchema):
    id: int
    issue_id: str
    session_id: str
    phase: ConversationPhase
    role: MessageRole
    content: str
    created_at: datetime


class ProposalResponse(TimestampSchema):
    id: str
    issue_id: str
    content: str


# ==========================================================================
# Common Schemas
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    active_sessions: int
