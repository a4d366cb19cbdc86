"""
Workflow Service
================

Caller-facing operations of the remediation workflow.

Every phase write goes through the state machine and a compare-and-swap on
``phase_version``. When a CAS misses, the fresh phase is re-validated, so a
caller that lost a race sees InvalidTransitionError rather than clobbering
the winner. After each successful write, sessions that were live in the old
phase but not in the new one are disposed.

Analysis and fix prompts run as background tasks. A run that finds its issue
has moved on (reset, failed, or restarted under a different session) logs
and stops without writing.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Coroutine, Dict, List, Optional, Set, Tuple

import structlog

from glass.core.agent.event_buffer import EventBuffer
from glass.core.agent.orchestrator import AgentSessionOrchestrator
from glass.core.agent.session import AgentEvent, AgentEventType, AgentSessionHandle
from glass.core.errors import (
    AgentError,
    InvalidTransitionError,
    IssueNotFoundError,
    PhaseConflictError,
    SourceError,
    SourceErrorKind,
    StorageError,
    WorkspaceError,
)
from glass.core.models import (
    ConversationMessage,
    ConversationPhase,
    Issue,
    MessageRole,
    Proposal,
)
from glass.core.sources.base import IssueSource
from glass.core.store.conversations import ConversationLog
from glass.core.store.issues import IssueStore
from glass.core.workflow import prompts
from glass.core.workflow.phases import (
    ActionKind,
    Approve,
    CompleteAnalysis,
    CompleteFix,
    Fail,
    PhaseKind,
    Reject,
    RequestChanges,
    Reset,
    StartAnalysis,
    StartFix,
    WorkflowAction,
    WorkflowPhase,
    live_session_ids,
)
from glass.core.workflow.state_machine import is_allowed, transition
from glass.core.workspace import WorkspaceManager

logger = structlog.get_logger()


LOST_SESSION_MESSAGE = "Session {session_id} was lost when the server restarted"

# Actions the raw transition endpoint accepts; the rest need the session,
# workspace or proposal that the dedicated operations create.
MANUAL_ACTIONS = frozenset({
    ActionKind.FAIL,
    ActionKind.RESET,
    ActionKind.REJECT,
    ActionKind.COMPLETE_FIX,
})


@dataclass
class RefreshResult:
    fetched: int = 0
    upserted: int = 0
    failed: List[str] = field(default_factory=list)


class WorkflowService:
    """Glue between the issue store, the agent orchestrator and issue sources."""

    def __init__(
        self,
        issues: IssueStore,
        conversations: ConversationLog,
        orchestrator: AgentSessionOrchestrator,
        workspaces: WorkspaceManager,
        event_buffer: EventBuffer,
        source: Optional[IssueSource] = None,
    ):
        self.issues = issues
        self.conversations = conversations
        self.orchestrator = orchestrator
        self.workspaces = workspaces
        self.event_buffer = event_buffer
        self.source = source

        # Latest run per issue; _tasks also holds superseded runs until they exit
        self._runs: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()
        # Issues with an approve between its phase check and its StartFix write
        self._approving: Set[str] = set()
        self._refresh_task: Optional[asyncio.Task] = None

    # ======================================================================
    # Refresh
    # ======================================================================

    def _require_source(self) -> IssueSource:
        if self.source is None:
            raise SourceError(SourceErrorKind.API, "No issue source is configured")
        return self.source

    async def refresh(self) -> RefreshResult:
        """
        Pull every issue from the source and upsert it.

        A source failure raises before anything is written. A storage failure
        on one record is logged and counted; the next refresh retries it.
        """
        source_issues = await self._require_source().list_issues()
        result = RefreshResult(fetched=len(source_issues))

        for source_issue in source_issues:
            try:
                await self.issues.upsert(
                    source_issue.id,
                    source_issue.project,
                    source_issue.data,
                    source_type=source_issue.source_type,
                )
                result.upserted += 1
            except StorageError as e:
                logger.error("issue_upsert_failed", issue_id=source_issue.id, error=str(e))
                result.failed.append(source_issue.id)

        logger.info(
            "issues_refreshed",
            fetched=result.fetched,
            upserted=result.upserted,
            failed=len(result.failed),
        )
        return result

    async def refresh_issue(self, issue_id: str) -> Issue:
        """Re-fetch one issue with its latest event and upsert it."""
        await self.get_issue(issue_id)
        detail = await self._require_source().get_issue_detail(issue_id)
        return await self.issues.upsert(
            detail.id,
            detail.project,
            detail.data,
            source_type=detail.source_type,
        )

    async def _refresh_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.refresh()
            except SourceError as e:
                logger.warning("periodic_refresh_failed", kind=e.kind.value, error=e.message)
            except StorageError as e:
                logger.error("periodic_refresh_failed", error=str(e))

    def start_refresh_loop(self, interval: float) -> None:
        if self._refresh_task is None and interval > 0:
            self._refresh_task = asyncio.create_task(self._refresh_loop(interval))
            logger.info("refresh_loop_started", interval=interval)

    # ======================================================================
    # Reads
    # ======================================================================

    async def get_issue(self, issue_id: str) -> Issue:
        issue = await self.issues.get_by_id(issue_id)
        if issue is None:
            raise IssueNotFoundError(issue_id)
        return issue

    async def list_issues(self, limit: int = 100, offset: int = 0) -> Tuple[List[Issue], int]:
        items = await self.issues.list_all(limit=limit, offset=offset)
        total = await self.issues.count()
        return items, total

    async def get_conversation(
        self,
        issue_id: str,
        phase: Optional[ConversationPhase] = None,
    ) -> List[ConversationMessage]:
        await self.get_issue(issue_id)
        return await self.conversations.get_messages(issue_id, phase)

    async def get_proposal(self, issue_id: str) -> Optional[Proposal]:
        await self.get_issue(issue_id)
        return await self.conversations.get_proposal(issue_id)

    async def stream_session_id(self, issue_id: str) -> Optional[str]:
        """The session whose events a streaming client should follow, if any."""
        issue = await self.get_issue(issue_id)
        live = live_session_ids(issue.workflow_phase)
        return next(iter(live), None)

    # ======================================================================
    # Transitions
    # ======================================================================

    async def _apply(self, issue: Issue, action: WorkflowAction) -> Issue:
        """Validate and CAS-write ``action``, re-validating after every conflict."""
        while True:
            current = issue.workflow_phase
            new_phase = transition(current, action)
            try:
                updated = await self.issues.compare_and_set_phase(
                    issue.id, issue.phase_version, new_phase
                )
            except PhaseConflictError:
                logger.info("phase_conflict", issue_id=issue.id, action=action.kind.value)
                issue = await self.get_issue(issue.id)
                continue

            await self._dispose_stale_sessions(issue.id, current, new_phase)
            return updated

    async def _dispose_stale_sessions(
        self,
        issue_id: str,
        old_phase: WorkflowPhase,
        new_phase: WorkflowPhase,
    ) -> None:
        for session_id in live_session_ids(old_phase) - live_session_ids(new_phase):
            try:
                await self.orchestrator.dispose_session(session_id)
            except AgentError as e:
                logger.warning(
                    "stale_session_dispose_failed",
                    issue_id=issue_id,
                    session_id=session_id,
                    error=e.message,
                )

    async def request_transition(self, issue_id: str, action: WorkflowAction) -> Issue:
        """Apply an action through the state machine with a compare-and-swap write."""
        issue = await self.get_issue(issue_id)
        if action.kind == ActionKind.APPROVE:
            # Approve does not change the phase; validate only
            transition(issue.workflow_phase, action)
            return issue
        updated = await self._apply(issue, action)
        if updated.phase == PhaseKind.PENDING.value:
            await self._clear_history(issue_id)
        return updated

    async def _clear_history(self, issue_id: str) -> None:
        await self.conversations.delete_messages(issue_id)
        await self.conversations.delete_proposal(issue_id)
        try:
            await self.workspaces.remove(self.workspaces.workspace_for(issue_id))
        except WorkspaceError as e:
            logger.warning("workspace_cleanup_failed", issue_id=issue_id, error=e.message)

    async def reset(self, issue_id: str) -> Issue:
        return await self.request_transition(issue_id, Reset())

    async def reject(self, issue_id: str) -> Issue:
        return await self.request_transition(issue_id, Reject())

    # ======================================================================
    # Analysis
    # ======================================================================

    async def start_analysis(self, issue_id: str) -> Issue:
        """
        Open a read-only analysis session and move the issue to Analyzing.

        The session is created before the write; if the write loses a race
        the session is disposed and InvalidTransitionError is raised.
        """
        issue = await self.get_issue(issue_id)
        if not is_allowed(issue.workflow_phase, ActionKind.START_ANALYSIS):
            raise InvalidTransitionError(issue.phase, ActionKind.START_ANALYSIS.value)

        handle = await self.orchestrator.create_analysis_session()
        try:
            updated = await self._apply(issue, StartAnalysis(session_id=handle.session_id))
        except Exception:
            await self._discard_session(handle)
            raise

        prompt = prompts.build_analysis_prompt(updated.source_project, updated.source_data or {})
        self._start_run(issue_id, handle, prompt, ConversationPhase.ANALYSIS, PhaseKind.ANALYZING)
        logger.info("analysis_started", issue_id=issue_id, session_id=handle.session_id)
        return updated

    async def retry(self, issue_id: str) -> Issue:
        """Start a new analysis for an issue in Failed."""
        issue = await self.get_issue(issue_id)
        if issue.phase != PhaseKind.FAILED.value:
            raise InvalidTransitionError(issue.phase, "retry")
        return await self.start_analysis(issue_id)

    async def request_changes(self, issue_id: str, feedback: str) -> Issue:
        """Send reviewer feedback to the live analysis session for a revised proposal."""
        issue = await self.get_issue(issue_id)
        current = issue.workflow_phase
        action = RequestChanges(feedback=feedback)
        transition(current, action)

        handle = await self.orchestrator.get_session(current.session_id)
        if handle is None:
            raise AgentError(
                "request_changes",
                f"Analysis session {current.session_id} is no longer available; reset the issue to start over",
            )

        updated = await self._apply(issue, action)
        if updated.analysis_session_id != handle.session_id:
            return updated
        self._start_run(
            issue_id,
            handle,
            prompts.build_revision_prompt(feedback),
            ConversationPhase.ANALYSIS,
            PhaseKind.ANALYZING,
        )
        return updated

    # ======================================================================
    # Fix
    # ======================================================================

    async def approve(self, issue_id: str) -> Issue:
        """
        Approve the proposal, open a worktree and fix session, and move to Fixing.

        Every attempt for an issue uses the same worktree path, so a second
        approve while one is in flight is refused instead of racing it for
        the directory.
        """
        if issue_id in self._approving:
            raise InvalidTransitionError(
                PhaseKind.PROPOSED.value,
                ActionKind.APPROVE.value,
                "an approval for this issue is already in progress",
            )
        self._approving.add(issue_id)
        try:
            return await self._approve(issue_id)
        finally:
            self._approving.discard(issue_id)

    async def _approve(self, issue_id: str) -> Issue:
        issue = await self.get_issue(issue_id)
        transition(issue.workflow_phase, Approve())

        proposal = await self.conversations.get_proposal(issue_id)
        if proposal is None:
            raise InvalidTransitionError(
                issue.phase,
                ActionKind.APPROVE.value,
                "no proposal has been saved for this issue",
            )

        workspace = await self.workspaces.create(issue_id)
        try:
            handle = await self.orchestrator.create_fix_session(workspace.path)
        except AgentError:
            await self._discard_workspace(issue_id, workspace)
            raise

        action = StartFix(
            fix_session_id=handle.session_id,
            workspace_ref=workspace.path,
            branch_ref=workspace.branch,
        )
        try:
            updated = await self._apply(issue, action)
        except Exception:
            await self._discard_session(handle)
            await self._discard_workspace(issue_id, workspace)
            raise

        prompt = prompts.build_fix_prompt(
            updated.source_project,
            updated.source_data or {},
            proposal.content,
            branch=workspace.branch,
        )
        self._start_run(issue_id, handle, prompt, ConversationPhase.FIX, PhaseKind.FIXING)
        logger.info(
            "fix_started",
            issue_id=issue_id,
            session_id=handle.session_id,
            workspace=workspace.path,
        )
        return updated

    # ======================================================================
    # Background runs
    # ======================================================================

    def _start_run(
        self,
        issue_id: str,
        handle: AgentSessionHandle,
        prompt: str,
        conversation_phase: ConversationPhase,
        expected_kind: PhaseKind,
    ) -> None:
        # Buffer exists before the response returns so a client can attach at once
        self.event_buffer.create(handle.session_id)
        self._launch(issue_id, self._run_session(
            issue_id, handle, prompt, conversation_phase, expected_kind,
        ))

    def _launch(self, issue_id: str, coro: Coroutine[Any, Any, None]) -> None:
        previous = self._runs.get(issue_id)
        if previous is not None and not previous.done():
            # Superseded by a reset and restart, or by a revision
            previous.cancel()
            logger.info("agent_run_cancelled", issue_id=issue_id)

        task = asyncio.create_task(coro)
        self._runs[issue_id] = task
        self._tasks.add(task)

        def _forget(done: asyncio.Task) -> None:
            self._tasks.discard(done)
            if self._runs.get(issue_id) is done:
                del self._runs[issue_id]

        task.add_done_callback(_forget)

    async def drain(self) -> None:
        """Wait for every background run to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_session(
        self,
        issue_id: str,
        handle: AgentSessionHandle,
        prompt: str,
        conversation_phase: ConversationPhase,
        expected_kind: PhaseKind,
    ) -> None:
        session_id = handle.session_id
        messages: List[str] = []
        result_text: List[str] = []

        def on_event(event: AgentEvent) -> None:
            self.event_buffer.append(session_id, event)
            if event.type == AgentEventType.MESSAGE and event.text:
                messages.append(event.text)
            elif event.type == AgentEventType.RESULT and not event.is_error and event.text:
                result_text.append(event.text)

        failure: Optional[str] = None
        try:
            unsubscribe = handle.subscribe(on_event)
            try:
                await self.conversations.append_message(
                    issue_id, session_id, conversation_phase, MessageRole.USER, prompt
                )
                await handle.prompt(prompt)
            finally:
                unsubscribe()
        except AgentError as e:
            failure = e.message
            self.event_buffer.append(
                session_id, AgentEvent(AgentEventType.ERROR, text=e.message, is_error=True)
            )
        except StorageError as e:
            logger.error("agent_run_storage_failed", issue_id=issue_id, session_id=session_id, error=str(e))
            failure = str(e)
        finally:
            self.event_buffer.complete(session_id)

        try:
            if failure is not None:
                await self._finish(issue_id, session_id, expected_kind, Fail(error_message=failure))
                return
            # Reset or restarted while the prompt ran; its history is gone
            if await self._still_current(issue_id, session_id, expected_kind) is None:
                return

            try:
                for text in messages or result_text:
                    await self.conversations.append_message(
                        issue_id, session_id, conversation_phase, MessageRole.ASSISTANT, text
                    )
            except StorageError as e:
                await self._finish(issue_id, session_id, expected_kind, Fail(error_message=str(e)))
                return

            if expected_kind == PhaseKind.ANALYZING:
                output = result_text[-1] if result_text else "\n\n".join(messages)
                await self._complete_analysis(issue_id, session_id, output)
            else:
                await self._finish(issue_id, session_id, expected_kind, CompleteFix())
        except StorageError as e:
            logger.error("agent_run_finish_failed", issue_id=issue_id, session_id=session_id, error=str(e))

    async def _still_current(
        self,
        issue_id: str,
        session_id: str,
        expected_kind: PhaseKind,
    ) -> Optional[Issue]:
        issue = await self.issues.get_by_id(issue_id)
        if issue is None:
            return None
        phase = issue.workflow_phase
        if phase.kind != expected_kind or session_id not in live_session_ids(phase):
            logger.info(
                "agent_run_superseded",
                issue_id=issue_id,
                session_id=session_id,
                phase=phase.kind.value,
            )
            return None
        return issue

    async def _finish(
        self,
        issue_id: str,
        session_id: str,
        expected_kind: PhaseKind,
        action: WorkflowAction,
    ) -> None:
        issue = await self._still_current(issue_id, session_id, expected_kind)
        if issue is None:
            return
        try:
            updated = await self._apply(issue, action)
        except InvalidTransitionError as e:
            logger.info("agent_run_superseded", issue_id=issue_id, session_id=session_id, error=e.message)
            return
        logger.info(
            "agent_run_finished",
            issue_id=issue_id,
            session_id=session_id,
            phase=updated.phase,
        )

    async def _complete_analysis(self, issue_id: str, session_id: str, output: str) -> None:
        if not output.strip():
            await self._finish(
                issue_id, session_id, PhaseKind.ANALYZING,
                Fail(error_message="Agent finished without producing a proposal"),
            )
            return
        if await self._still_current(issue_id, session_id, PhaseKind.ANALYZING) is None:
            return
        proposal = await self.conversations.save_proposal(issue_id, output)
        await self._finish(
            issue_id, session_id, PhaseKind.ANALYZING, CompleteAnalysis(proposal_ref=proposal.id)
        )

    async def _discard_session(self, handle: AgentSessionHandle) -> None:
        try:
            await self.orchestrator.dispose_session(handle.session_id)
        except AgentError as e:
            logger.warning("session_discard_failed", session_id=handle.session_id, error=e.message)

    async def _discard_workspace(self, issue_id: str, workspace) -> None:
        try:
            await self.workspaces.remove(workspace)
        except WorkspaceError as e:
            logger.warning("workspace_discard_failed", issue_id=issue_id, error=e.message)

    # ======================================================================
    # Lifecycle
    # ======================================================================

    async def recover_orphaned_sessions(self) -> int:
        """
        Fail every Analyzing/Fixing issue whose session is not in the orchestrator.

        Run once at startup, before serving requests. Returns the number of
        issues moved to Failed.
        """
        recovered = 0
        candidates = await self.issues.list_by_phase_kinds(
            [PhaseKind.ANALYZING, PhaseKind.FIXING]
        )
        for issue in candidates:
            for session_id in live_session_ids(issue.workflow_phase):
                if session_id in self.orchestrator:
                    continue
                action = Fail(error_message=LOST_SESSION_MESSAGE.format(session_id=session_id))
                try:
                    await self._apply(issue, action)
                except InvalidTransitionError:
                    continue
                recovered += 1
                logger.warning("orphaned_session_recovered", issue_id=issue.id, session_id=session_id)
                break

        logger.info("recovery_sweep_complete", checked=len(candidates), recovered=recovered)
        return recovered

    async def shutdown(self) -> None:
        """Cancel background work and dispose every agent session."""
        tasks = list(self._tasks)
        if self._refresh_task is not None:
            tasks.append(self._refresh_task)
            self._refresh_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()
        self._tasks.clear()

        await self.orchestrator.dispose_all()
        self.event_buffer.clear()
        if self.source is not None:
            await self.source.close()
        logger.info("workflow_service_stopped")
