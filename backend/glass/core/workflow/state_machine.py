"""
Workflow State Machine
======================

Pure transition function over (phase, action). No I/O, no clock.

Legal transitions:
    StartAnalysis    Pending | Failed       -> Analyzing
    CompleteAnalysis Analyzing              -> Proposed
    Approve          Proposed               -> Proposed (unchanged)
    StartFix         Proposed               -> Fixing
    CompleteFix      Fixing                 -> Fixed
    Fail             Analyzing | Fixing     -> Failed
    RequestChanges   Proposed               -> Analyzing (same session)
    Reject           Proposed | Failed      -> Pending
    Reset            any                    -> Pending

Anything else raises InvalidTransitionError.
"""

from typing import Callable

from glass.core.errors import InvalidTransitionError
from glass.core.workflow.phases import (
    ActionKind,
    Analyzing,
    Failed,
    Fixed,
    Fixing,
    Pending,
    PhaseKind,
    Proposed,
    WorkflowAction,
    WorkflowPhase,
    exhaustive,
)


def _start_analysis(phase, action) -> WorkflowPhase:
    return Analyzing(session_id=action.session_id)


def _complete_analysis(phase: Analyzing, action) -> WorkflowPhase:
    return Proposed(session_id=phase.session_id, proposal_ref=action.proposal_ref)


def _approve(phase: Proposed, action) -> WorkflowPhase:
    return phase


def _start_fix(phase: Proposed, action) -> WorkflowPhase:
    return Fixing(
        analysis_session_id=phase.session_id,
        fix_session_id=action.fix_session_id,
        workspace_ref=action.workspace_ref,
        branch_ref=action.branch_ref,
    )


def _complete_fix(phase: Fixing, action) -> WorkflowPhase:
    return Fixed(
        analysis_session_id=phase.analysis_session_id,
        fix_session_id=phase.fix_session_id,
        workspace_ref=phase.workspace_ref,
        branch_ref=phase.branch_ref,
    )


def _fail(phase, action) -> WorkflowPhase:
    if phase.kind == PhaseKind.FIXING:
        session_id = phase.fix_session_id
    else:
        session_id = phase.session_id
    return Failed(
        previous_phase_kind=phase.kind,
        session_id=session_id,
        error_message=action.error_message,
    )


def _request_changes(phase: Proposed, action) -> WorkflowPhase:
    return Analyzing(session_id=phase.session_id)


def _to_pending(phase, action) -> WorkflowPhase:
    return Pending()


ALL_KINDS = frozenset(PhaseKind)

# action kind -> (phase kinds it is legal from, handler)
_RULES: dict[ActionKind, tuple[frozenset[PhaseKind], Callable[..., WorkflowPhase]]] = exhaustive(ActionKind, {
    ActionKind.START_ANALYSIS: (frozenset({PhaseKind.PENDING, PhaseKind.FAILED}), _start_analysis),
    ActionKind.COMPLETE_ANALYSIS: (frozenset({PhaseKind.ANALYZING}), _complete_analysis),
    ActionKind.APPROVE: (frozenset({PhaseKind.PROPOSED}), _approve),
    ActionKind.START_FIX: (frozenset({PhaseKind.PROPOSED}), _start_fix),
    ActionKind.COMPLETE_FIX: (frozenset({PhaseKind.FIXING}), _complete_fix),
    ActionKind.FAIL: (frozenset({PhaseKind.ANALYZING, PhaseKind.FIXING}), _fail),
    ActionKind.RESET: (ALL_KINDS, _to_pending),
    ActionKind.REQUEST_CHANGES: (frozenset({PhaseKind.PROPOSED}), _request_changes),
    ActionKind.REJECT: (frozenset({PhaseKind.PROPOSED, PhaseKind.FAILED}), _to_pending),
})


def transition(phase: WorkflowPhase, action: WorkflowAction) -> WorkflowPhase:
    """
    Apply ``action`` to ``phase``.

    Returns:
        The resulting phase.

    Raises:
        InvalidTransitionError: the action is not legal from this phase.
    """
    legal_from, handler = _RULES[action.kind]
    if phase.kind not in legal_from:
        raise InvalidTransitionError(phase.kind.value, action.kind.value)
    return handler(phase, action)


def is_allowed(phase: WorkflowPhase, action_kind: ActionKind) -> bool:
    return phase.kind in _RULES[ActionKind(action_kind)][0]


def allowed_actions(phase: WorkflowPhase) -> list[ActionKind]:
    """Action kinds legal from ``phase``, in declaration order."""
    return [kind for kind in ActionKind if phase.kind in _RULES[kind][0]]
