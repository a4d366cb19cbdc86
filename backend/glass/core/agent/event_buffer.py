"""
Agent Event Buffer
==================

In-memory replay buffer of streamed agent events, one per session.

Clients that connect while a session is running receive a backfill of every
event so far, then live events through an asyncio.Queue. When a run
finishes the buffer is marked complete, subscribers receive ``None`` and the
buffer is dropped after a grace period so late joiners still see the tail.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import structlog

from glass.core.agent.session import AgentEvent
from glass.core.config import settings

logger = structlog.get_logger()


@dataclass
class SessionBuffer:
    events: List[AgentEvent] = field(default_factory=list)
    subscribers: Set[asyncio.Queue] = field(default_factory=set)
    completed: bool = False
    cleanup: Optional[asyncio.TimerHandle] = None


@dataclass
class EventSubscription:
    """Backfill plus a queue of live events; ``None`` on the queue ends the stream."""
    backfill: List[AgentEvent]
    queue: asyncio.Queue
    completed: bool


class EventBuffer:
    """Per-session event history with live fan-out."""

    def __init__(self, grace_seconds: float = None):
        self.grace_seconds = (
            settings.EVENT_BUFFER_GRACE_SECONDS if grace_seconds is None else grace_seconds
        )
        self._buffers: Dict[str, SessionBuffer] = {}

    def create(self, session_id: str) -> None:
        """Start a fresh buffer for a run, replacing any finished one."""
        previous = self._buffers.get(session_id)
        if previous is not None:
            self._close(previous)
        self._buffers[session_id] = SessionBuffer()

    def append(self, session_id: str, event: AgentEvent) -> None:
        buffer = self._buffers.get(session_id)
        if buffer is None or buffer.completed:
            return
        buffer.events.append(event)
        for queue in list(buffer.subscribers):
            queue.put_nowait(event)

    def complete(self, session_id: str) -> None:
        """Mark the run finished and schedule removal of its buffer."""
        buffer = self._buffers.get(session_id)
        if buffer is None or buffer.completed:
            return
        buffer.completed = True
        for queue in list(buffer.subscribers):
            queue.put_nowait(None)
        buffer.subscribers.clear()

        loop = asyncio.get_running_loop()
        buffer.cleanup = loop.call_later(self.grace_seconds, self._expire, session_id, buffer)

    def _expire(self, session_id: str, buffer: SessionBuffer) -> None:
        if self._buffers.get(session_id) is buffer:
            del self._buffers[session_id]
            logger.debug("event_buffer_expired", session_id=session_id)

    def _close(self, buffer: SessionBuffer) -> None:
        if buffer.cleanup is not None:
            buffer.cleanup.cancel()
        for queue in list(buffer.subscribers):
            queue.put_nowait(None)
        buffer.subscribers.clear()

    def subscribe(self, session_id: str) -> Optional[EventSubscription]:
        """Returns None when no buffer exists for the session."""
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return None
        queue: asyncio.Queue = asyncio.Queue()
        if not buffer.completed:
            buffer.subscribers.add(queue)
        return EventSubscription(
            backfill=list(buffer.events),
            queue=queue,
            completed=buffer.completed,
        )

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        buffer = self._buffers.get(session_id)
        if buffer is not None:
            buffer.subscribers.discard(queue)

    def is_active(self, session_id: str) -> bool:
        buffer = self._buffers.get(session_id)
        return buffer is not None and not buffer.completed

    def remove(self, session_id: str) -> None:
        buffer = self._buffers.pop(session_id, None)
        if buffer is not None:
            self._close(buffer)

    def clear(self) -> None:
        for session_id in list(self._buffers):
            self.remove(session_id)
