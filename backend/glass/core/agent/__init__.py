"""
Glass Agent Sessions
====================

Components:
- AgentSession / AgentSessionHandle: capability surface of one agent conversation
- ClaudeCodeSession: implementation on top of the ``claude`` CLI
- AgentSessionOrchestrator: lock-guarded table of live sessions
- EventBuffer: per-session replay buffer for streaming clients
"""

from glass.core.agent.claude_code import ClaudeCodeSession, ClaudeCodeSessionFactory
from glass.core.agent.event_buffer import EventBuffer
from glass.core.agent.orchestrator import AgentSessionOrchestrator
from glass.core.agent.session import (
    AgentEvent,
    AgentEventType,
    AgentSession,
    AgentSessionFactory,
    AgentSessionHandle,
    CapabilityTier,
    SessionPurpose,
)

__all__ = [
    "AgentEvent",
    "AgentEventType",
    "AgentSession",
    "AgentSessionFactory",
    "AgentSessionHandle",
    "AgentSessionOrchestrator",
    "CapabilityTier",
    "ClaudeCodeSession",
    "ClaudeCodeSessionFactory",
    "EventBuffer",
    "SessionPurpose",
]
