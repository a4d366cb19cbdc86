"""
Claude Code Agent Session
=========================

AgentSession implementation that drives the ``claude`` CLI in print mode.

Each prompt spawns one ``claude -p --output-format stream-json`` process
with the prompt on stdin. The CLI's own session id, reported in the stream,
is passed back with ``--resume`` on the next prompt so the conversation
keeps its context across turns.

Tool access follows the capability tier:
- READ_ONLY: Read, Grep, Glob, LS; edits and shell are disallowed
- READ_WRITE: adds Edit, MultiEdit, Write and Bash with accept-edits mode
"""

import asyncio
import json
import os
import shutil
from typing import Any, Dict, List, Optional

import structlog

from glass.core.agent.session import (
    AgentEvent,
    AgentEventListener,
    AgentEventType,
    AgentSession,
    AgentSessionFactory,
    CapabilityTier,
    Unsubscribe,
)
from glass.core.errors import AgentError

logger = structlog.get_logger()


READ_ONLY_TOOLS = ["Read", "Grep", "Glob", "LS"]
WRITE_TOOLS = ["Edit", "MultiEdit", "Write", "NotebookEdit", "Bash"]

# Environment variables never passed to the agent process
SENSITIVE_ENV_PREFIXES = ("SENTRY_", "GLASS_")


def build_command(
    binary: str,
    tier: CapabilityTier,
    model: str,
    resume_id: Optional[str] = None,
) -> List[str]:
    """Build the CLI invocation for one prompt."""
    cmd = [
        binary,
        "-p",
        "--output-format",
        "stream-json",
        "--verbose",
        "--include-partial-messages",
        "--model",
        model,
    ]
    if tier == CapabilityTier.READ_ONLY:
        cmd.extend(["--allowedTools", ",".join(READ_ONLY_TOOLS)])
        cmd.extend(["--disallowedTools", ",".join(WRITE_TOOLS)])
        cmd.extend(["--permission-mode", "default"])
    else:
        cmd.extend(["--allowedTools", ",".join(READ_ONLY_TOOLS + WRITE_TOOLS)])
        cmd.extend(["--permission-mode", "acceptEdits"])
    if resume_id:
        cmd.extend(["--resume", resume_id])
    return cmd


def parse_stream_line(data: Dict[str, Any]) -> List[AgentEvent]:
    """Translate one stream-json object into AgentEvents."""
    msg_type = data.get("type")
    events: List[AgentEvent] = []

    if msg_type == "stream_event":
        event = data.get("event") or {}
        delta = event.get("delta") or {}
        if event.get("type") == "content_block_delta" and delta.get("type") == "text_delta":
            events.append(AgentEvent(AgentEventType.TEXT, text=delta.get("text", "")))

    elif msg_type == "assistant":
        texts = []
        for block in (data.get("message") or {}).get("content") or []:
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                texts.append(block["text"])
            elif block_type == "tool_use":
                events.append(AgentEvent(AgentEventType.TOOL_START, tool=block.get("name")))
        if texts:
            events.append(AgentEvent(AgentEventType.MESSAGE, text="\n".join(texts)))

    elif msg_type == "user":
        for block in (data.get("message") or {}).get("content") or []:
            if isinstance(block, dict) and block.get("type") == "tool_result":
                events.append(AgentEvent(
                    AgentEventType.TOOL_END,
                    tool=block.get("tool_use_id"),
                    is_error=bool(block.get("is_error")),
                ))

    elif msg_type == "result":
        is_error = bool(data.get("is_error"))
        text = data.get("result") or ""
        if is_error and not text:
            text = data.get("subtype", "unknown error")
        events.append(AgentEvent(AgentEventType.RESULT, text=text, is_error=is_error))

    return events


class ClaudeCodeSession(AgentSession):
    """One multi-turn Claude Code conversation in a fixed working directory."""

    def __init__(
        self,
        working_dir: str,
        tier: CapabilityTier,
        model: str,
        binary: str = "claude",
    ):
        self.working_dir = working_dir
        self.tier = tier
        self.model = model
        self.binary = binary

        self.claude_session_id: Optional[str] = None
        self._listeners: List[AgentEventListener] = []
        self._process: Optional[asyncio.subprocess.Process] = None
        self._prompt_lock = asyncio.Lock()
        self._aborted = False
        self._disposed = False

    # ======================================================================
    # Events
    # ======================================================================

    def subscribe(self, listener: AgentEventListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: AgentEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("agent_listener_failed", error=str(e), event_type=event.type.value)

    # ======================================================================
    # Prompting
    # ======================================================================

    def _environment(self) -> Dict[str, str]:
        return {
            key: value
            for key, value in os.environ.items()
            if not key.startswith(SENSITIVE_ENV_PREFIXES)
        }

    async def prompt(self, text: str) -> None:
        if self._disposed:
            raise AgentError("prompt", "Session has been disposed")
        if self._prompt_lock.locked():
            raise AgentError("prompt", "A prompt is already running in this session")

        async with self._prompt_lock:
            self._aborted = False
            cmd = build_command(self.binary, self.tier, self.model, self.claude_session_id)
            try:
                self._process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self.working_dir,
                    env=self._environment(),
                )
            except OSError as e:
                raise AgentError("prompt", f"Failed to start {self.binary}: {e}", e) from e

            process = self._process
            try:
                process.stdin.write(text.encode())
                await process.stdin.drain()
                process.stdin.close()

                error_text = await self._read_stream(process)
                await process.wait()
            finally:
                self._process = None

            if self._aborted:
                raise AgentError("prompt", "Prompt was aborted")
            if error_text is not None:
                raise AgentError("prompt", error_text)
            if process.returncode != 0:
                stderr = (await process.stderr.read()).decode(errors="replace")[:500]
                message = f"{self.binary} exited with code {process.returncode}"
                if stderr:
                    message += f": {stderr.strip()}"
                raise AgentError("prompt", message)

    async def _read_stream(self, process: asyncio.subprocess.Process) -> Optional[str]:
        """Consume stdout, emitting events. Returns the error text of a failed turn."""
        error_text = None
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            line_str = line.decode(errors="replace").strip()
            if not line_str:
                continue
            try:
                data = json.loads(line_str)
            except json.JSONDecodeError:
                logger.debug("agent_stream_unparsed_line", line=line_str[:200])
                continue

            if data.get("session_id"):
                self.claude_session_id = data["session_id"]

            for event in parse_stream_line(data):
                if event.type == AgentEventType.RESULT and event.is_error:
                    error_text = event.text
                self._emit(event)
        return error_text

    # ======================================================================
    # Lifecycle
    # ======================================================================

    async def abort(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        self._aborted = True
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
        logger.info("agent_prompt_aborted", working_dir=self.working_dir)

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        await self.abort()
        self._listeners.clear()


class ClaudeCodeSessionFactory(AgentSessionFactory):
    """Creates ClaudeCodeSessions after checking the CLI and directory exist."""

    def __init__(self, binary: str = "claude"):
        self.binary = binary

    async def create(
        self,
        working_dir: str,
        tier: CapabilityTier,
        model: str,
    ) -> AgentSession:
        if shutil.which(self.binary) is None:
            raise AgentError("create_session", f"Agent binary not found: {self.binary}")
        if not os.path.isdir(working_dir):
            raise AgentError("create_session", f"Working directory does not exist: {working_dir}")
        return ClaudeCodeSession(working_dir, tier, model, binary=self.binary)
