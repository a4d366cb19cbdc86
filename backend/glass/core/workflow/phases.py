"""
Workflow Phases and Actions
===========================

Closed sum types for the remediation workflow.

Each phase is a frozen dataclass carrying exactly the payload of that phase;
``WorkflowPhase`` is the union of all of them. Consumers dispatch on
``PhaseKind`` through tables built with ``exhaustive()``, which refuses to
build a table that misses a kind - adding a phase breaks every consumer at
import time until it handles the new kind.

Phases:
    Pending    -> no active session
    Analyzing  -> read-only analysis session open
    Proposed   -> analysis finished, proposal awaiting approval
    Fixing     -> fix session open against an isolated worktree
    Fixed      -> fix finished, awaiting human review
    Failed     -> an Analyzing/Fixing operation failed
"""

import enum
from dataclasses import dataclass, field
from typing import Callable, ClassVar, Mapping, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E", bound=enum.Enum)


class PhaseKind(str, enum.Enum):
    """Discriminator of WorkflowPhase, also the persisted ``phase`` value."""
    PENDING = "pending"
    ANALYZING = "analyzing"
    PROPOSED = "proposed"
    FIXING = "fixing"
    FIXED = "fixed"
    FAILED = "failed"


# Kinds from which a Fail action is reachable
FAILABLE_KINDS = frozenset({PhaseKind.ANALYZING, PhaseKind.FIXING})


def exhaustive(enum_cls: type[E], table: Mapping[E, T]) -> dict[E, T]:
    """Return ``table`` as a dict, raising if any member of ``enum_cls`` is missing."""
    missing = [member.value for member in enum_cls if member not in table]
    if missing:
        raise TypeError(f"Unhandled {enum_cls.__name__} members: {', '.join(missing)}")
    return dict(table)


# ==========================================================================
# Phases
# ==========================================================================

@dataclass(frozen=True)
class Pending:
    kind: ClassVar[PhaseKind] = PhaseKind.PENDING


@dataclass(frozen=True)
class Analyzing:
    session_id: str
    kind: ClassVar[PhaseKind] = PhaseKind.ANALYZING


@dataclass(frozen=True)
class Proposed:
    session_id: str
    proposal_ref: str
    kind: ClassVar[PhaseKind] = PhaseKind.PROPOSED


@dataclass(frozen=True)
class Fixing:
    analysis_session_id: str
    fix_session_id: str
    workspace_ref: str
    branch_ref: str
    kind: ClassVar[PhaseKind] = PhaseKind.FIXING


@dataclass(frozen=True)
class Fixed:
    analysis_session_id: str
    fix_session_id: str
    workspace_ref: str
    branch_ref: str
    kind: ClassVar[PhaseKind] = PhaseKind.FIXED


@dataclass(frozen=True)
class Failed:
    previous_phase_kind: PhaseKind
    session_id: str
    error_message: str
    kind: ClassVar[PhaseKind] = PhaseKind.FAILED

    def __post_init__(self) -> None:
        previous = PhaseKind(self.previous_phase_kind)
        if previous not in FAILABLE_KINDS:
            raise ValueError(
                f"Failed.previous_phase_kind must be analyzing or fixing, got {previous.value}"
            )
        object.__setattr__(self, "previous_phase_kind", previous)


WorkflowPhase = Union[Pending, Analyzing, Proposed, Fixing, Fixed, Failed]


def live_session_ids(phase: WorkflowPhase) -> frozenset[str]:
    """Session ids whose handles must stay open while the issue is in ``phase``."""
    return _LIVE_SESSIONS[phase.kind](phase)


_LIVE_SESSIONS: dict[PhaseKind, Callable[..., frozenset[str]]] = exhaustive(PhaseKind, {
    PhaseKind.PENDING: lambda p: frozenset(),
    PhaseKind.ANALYZING: lambda p: frozenset({p.session_id}),
    PhaseKind.PROPOSED: lambda p: frozenset({p.session_id}),
    PhaseKind.FIXING: lambda p: frozenset({p.fix_session_id}),
    PhaseKind.FIXED: lambda p: frozenset(),
    PhaseKind.FAILED: lambda p: frozenset(),
})


# ==========================================================================
# Actions
# ==========================================================================

class ActionKind(str, enum.Enum):
    START_ANALYSIS = "start_analysis"
    COMPLETE_ANALYSIS = "complete_analysis"
    APPROVE = "approve"
    START_FIX = "start_fix"
    COMPLETE_FIX = "complete_fix"
    FAIL = "fail"
    RESET = "reset"
    REQUEST_CHANGES = "request_changes"
    REJECT = "reject"


@dataclass(frozen=True)
class StartAnalysis:
    session_id: str
    kind: ClassVar[ActionKind] = ActionKind.START_ANALYSIS


@dataclass(frozen=True)
class CompleteAnalysis:
    proposal_ref: str
    kind: ClassVar[ActionKind] = ActionKind.COMPLETE_ANALYSIS


@dataclass(frozen=True)
class Approve:
    kind: ClassVar[ActionKind] = ActionKind.APPROVE


@dataclass(frozen=True)
class StartFix:
    fix_session_id: str
    workspace_ref: str
    branch_ref: str
    kind: ClassVar[ActionKind] = ActionKind.START_FIX


@dataclass(frozen=True)
class CompleteFix:
    kind: ClassVar[ActionKind] = ActionKind.COMPLETE_FIX


@dataclass(frozen=True)
class Fail:
    error_message: str
    kind: ClassVar[ActionKind] = ActionKind.FAIL


@dataclass(frozen=True)
class Reset:
    kind: ClassVar[ActionKind] = ActionKind.RESET


@dataclass(frozen=True)
class RequestChanges:
    feedback: str = field(default="")
    kind: ClassVar[ActionKind] = ActionKind.REQUEST_CHANGES


@dataclass(frozen=True)
class Reject:
    kind: ClassVar[ActionKind] = ActionKind.REJECT


WorkflowAction = Union[
    StartAnalysis,
    CompleteAnalysis,
    Approve,
    StartFix,
    CompleteFix,
    Fail,
    Reset,
    RequestChanges,
    Reject,
]

ACTION_TYPES: dict[ActionKind, type] = exhaustive(ActionKind, {
    ActionKind.START_ANALYSIS: StartAnalysis,
    ActionKind.COMPLETE_ANALYSIS: CompleteAnalysis,
    ActionKind.APPROVE: Approve,
    ActionKind.START_FIX: StartFix,
    ActionKind.COMPLETE_FIX: CompleteFix,
    ActionKind.FAIL: Fail,
    ActionKind.RESET: Reset,
    ActionKind.REQUEST_CHANGES: RequestChanges,
    ActionKind.REJECT: Reject,
})


def build_action(kind: ActionKind, payload: Mapping[str, object] | None = None) -> WorkflowAction:
    """Construct an action from its kind and a keyword payload.

    Raises TypeError when the payload does not match the action's fields.
    """
    return ACTION_TYPES[ActionKind(kind)](**dict(payload or {}))


# ==========================================================================
# Column Encoding
# ==========================================================================

PHASE_COLUMNS = (
    "analysis_session_id",
    "fix_session_id",
    "proposal_ref",
    "workspace_path",
    "workspace_branch",
    "error_message",
    "error_previous_phase",
)


def _failed_columns(phase: Failed) -> dict[str, object]:
    session_column = (
        "analysis_session_id"
        if phase.previous_phase_kind == PhaseKind.ANALYZING
        else "fix_session_id"
    )
    return {
        session_column: phase.session_id,
        "error_message": phase.error_message,
        "error_previous_phase": phase.previous_phase_kind.value,
    }


_ENCODERS: dict[PhaseKind, Callable[..., dict[str, object]]] = exhaustive(PhaseKind, {
    PhaseKind.PENDING: lambda p: {},
    PhaseKind.ANALYZING: lambda p: {"analysis_session_id": p.session_id},
    PhaseKind.PROPOSED: lambda p: {
        "analysis_session_id": p.session_id,
        "proposal_ref": p.proposal_ref,
    },
    PhaseKind.FIXING: lambda p: {
        "analysis_session_id": p.analysis_session_id,
        "fix_session_id": p.fix_session_id,
        "workspace_path": p.workspace_ref,
        "workspace_branch": p.branch_ref,
    },
    PhaseKind.FIXED: lambda p: {
        "analysis_session_id": p.analysis_session_id,
        "fix_session_id": p.fix_session_id,
        "workspace_path": p.workspace_ref,
        "workspace_branch": p.branch_ref,
    },
    PhaseKind.FAILED: _failed_columns,
})


def _decode_failed(row: Mapping[str, object]) -> Failed:
    previous = PhaseKind(row["error_previous_phase"])
    session_id = (
        row["analysis_session_id"]
        if previous == PhaseKind.ANALYZING
        else row["fix_session_id"]
    )
    return Failed(
        previous_phase_kind=previous,
        session_id=session_id,
        error_message=row["error_message"] or "",
    )


_DECODERS: dict[PhaseKind, Callable[[Mapping[str, object]], WorkflowPhase]] = exhaustive(PhaseKind, {
    PhaseKind.PENDING: lambda r: Pending(),
    PhaseKind.ANALYZING: lambda r: Analyzing(session_id=r["analysis_session_id"]),
    PhaseKind.PROPOSED: lambda r: Proposed(
        session_id=r["analysis_session_id"],
        proposal_ref=r["proposal_ref"],
    ),
    PhaseKind.FIXING: lambda r: Fixing(
        analysis_session_id=r["analysis_session_id"],
        fix_session_id=r["fix_session_id"],
        workspace_ref=r["workspace_path"],
        branch_ref=r["workspace_branch"],
    ),
    PhaseKind.FIXED: lambda r: Fixed(
        analysis_session_id=r["analysis_session_id"],
        fix_session_id=r["fix_session_id"],
        workspace_ref=r["workspace_path"],
        branch_ref=r["workspace_branch"],
    ),
    PhaseKind.FAILED: _decode_failed,
})


def phase_to_columns(phase: WorkflowPhase) -> dict[str, object]:
    """Flatten a phase into the ``issues`` phase columns.

    Every payload column is present in the result; columns the phase does not
    use are None, so a write replaces the previous phase wholesale.
    """
    columns: dict[str, object] = dict.fromkeys(PHASE_COLUMNS)
    columns.update(_ENCODERS[phase.kind](phase))
    columns["phase"] = phase.kind.value
    return columns


def phase_from_columns(row: Mapping[str, object]) -> WorkflowPhase:
    """Rebuild a phase from the ``issues`` phase columns."""
    return _DECODERS[PhaseKind(row["phase"])](row)


def describe_phase(phase: WorkflowPhase) -> dict[str, object]:
    """JSON-friendly view of a phase: its kind plus its payload fields."""
    payload = {
        name: (value.value if isinstance(value, enum.Enum) else value)
        for name, value in vars(phase).items()
    }
    return {"kind": phase.kind.value, **payload}
