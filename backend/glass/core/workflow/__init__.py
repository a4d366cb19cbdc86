"""
Glass Workflow
==============

Phase and action types, the pure transition function, prompt builders and
the WorkflowService that ties the store, the agent orchestrator and issue
sources together.

WorkflowService lives in ``glass.core.workflow.service`` and is not
re-exported here, since the models import the phase types from this package.
"""

from glass.core.workflow.phases import (
    ActionKind,
    PhaseKind,
    WorkflowAction,
    WorkflowPhase,
)
from glass.core.workflow.state_machine import allowed_actions, transition

__all__ = [
    "ActionKind",
    "PhaseKind",
    "WorkflowAction",
    "WorkflowPhase",
    "allowed_actions",
    "transition",
]
