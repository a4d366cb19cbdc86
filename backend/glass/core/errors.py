"""
Glass - Error Taxonomy
======================

Every failure the core can surface derives from GlassError. The API layer
maps each class to a status code and an ErrorResponse ``code``.
"""

import enum
from typing import Optional


class GlassError(Exception):
    """Base class for all Glass errors."""

    code = "GLASS_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class StorageError(GlassError):
    """I/O or serialization failure against the persisted store."""

    code = "STORAGE_ERROR"

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(f"Storage operation '{operation}' failed: {cause}")
        self.operation = operation
        self.cause = cause


class IssueNotFoundError(GlassError):
    code = "NOT_FOUND"

    def __init__(self, issue_id: str):
        super().__init__(f"Issue not found: {issue_id}")
        self.issue_id = issue_id


class InvalidTransitionError(GlassError):
    """An action was requested from a phase where it is not legal."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_phase: str, action: str, reason: Optional[str] = None):
        message = f"Cannot perform '{action}' from '{from_phase}' phase"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.from_phase = from_phase
        self.action = action
        self.reason = reason


class PhaseConflictError(GlassError):
    """The stored phase changed between read and conditional write."""

    code = "PHASE_CONFLICT"

    def __init__(self, issue_id: str, expected_version: int):
        super().__init__(
            f"Phase of issue {issue_id} changed concurrently "
            f"(expected version {expected_version})"
        )
        self.issue_id = issue_id
        self.expected_version = expected_version


class AgentError(GlassError):
    """Agent session creation, prompt or teardown failed."""

    code = "AGENT_ERROR"

    def __init__(
        self,
        operation: str,
        message: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.cause = cause


class WorkspaceError(GlassError):
    code = "WORKSPACE_ERROR"


class SourceErrorKind(str, enum.Enum):
    """Failure categories reported by issue sources."""
    AUTH = "auth"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    API = "api"


class SourceError(GlassError):
    """Fetching from the issue source failed; store state is kept as is."""

    code = "SOURCE_ERROR"

    def __init__(
        self,
        kind: SourceErrorKind,
        message: str,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
