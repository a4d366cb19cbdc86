"""
Glass - Orphaned Session Recovery Tests
=======================================

At startup, issues left in Analyzing or Fixing whose sessions are not in
the orchestrator (the process restarted) are moved to Failed.
"""

from glass.core.store.issues import IssueStore
from glass.core.workflow.phases import (
    Analyzing,
    Failed,
    Fixing,
    PhaseKind,
    Proposed,
)
from glass.core.workflow.service import LOST_SESSION_MESSAGE, WorkflowService


class TestRecoverySweep:
    async def test_lost_sessions_fail(self, service: WorkflowService, issue_store: IssueStore):
        for issue_id in ("a", "b", "c"):
            await issue_store.upsert(issue_id, "web-app", {})
        await issue_store.set_phase("a", Analyzing(session_id="analysis-lost"))
        await issue_store.set_phase("b", Fixing(
            analysis_session_id="analysis-old",
            fix_session_id="fix-lost",
            workspace_ref="/work/b",
            branch_ref="glass/b",
        ))
        await issue_store.set_phase("c", Proposed(session_id="analysis-gone", proposal_ref="p"))

        recovered = await service.recover_orphaned_sessions()

        assert recovered == 2
        a = (await issue_store.get_by_id("a")).workflow_phase
        assert a == Failed(
            previous_phase_kind=PhaseKind.ANALYZING,
            session_id="analysis-lost",
            error_message=LOST_SESSION_MESSAGE.format(session_id="analysis-lost"),
        )
        b = (await issue_store.get_by_id("b")).workflow_phase
        assert b.previous_phase_kind == PhaseKind.FIXING
        assert b.session_id == "fix-lost"
        # Proposed is not swept; a revision reports the lost session instead
        c = (await issue_store.get_by_id("c")).workflow_phase
        assert c.kind == PhaseKind.PROPOSED

    async def test_live_session_untouched(self, service: WorkflowService, issue_store: IssueStore):
        await issue_store.upsert("a", "web-app", {})
        handle = await service.orchestrator.create_analysis_session()
        written = await issue_store.set_phase("a", Analyzing(session_id=handle.session_id))

        recovered = await service.recover_orphaned_sessions()

        assert recovered == 0
        stored = await issue_store.get_by_id("a")
        assert stored.phase_version == written.phase_version
        assert handle.session_id in service.orchestrator

    async def test_sweep_is_idempotent(self, service: WorkflowService, issue_store: IssueStore):
        await issue_store.upsert("a", "web-app", {})
        await issue_store.set_phase("a", Analyzing(session_id="analysis-lost"))

        assert await service.recover_orphaned_sessions() == 1
        assert await service.recover_orphaned_sessions() == 0

    async def test_failed_issue_can_restart(self, service: WorkflowService, issue_store: IssueStore):
        await issue_store.upsert("a", "web-app", {"title": "Boom"})
        await issue_store.set_phase("a", Analyzing(session_id="analysis-lost"))
        await service.recover_orphaned_sessions()

        issue = await service.start_analysis("a")
        await service.drain()

        assert issue.workflow_phase.kind == PhaseKind.ANALYZING
        stored = await issue_store.get_by_id("a")
        assert stored.workflow_phase.kind == PhaseKind.PROPOSED
