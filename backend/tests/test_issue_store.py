"""
Glass - Issue Store Tests
=========================
"""

import asyncio
import random

import pytest

from glass.core.errors import IssueNotFoundError, PhaseConflictError
from glass.core.store.issues import IssueStore
from glass.core.workflow.phases import (
    Analyzing,
    Failed,
    Fixing,
    Pending,
    PhaseKind,
    Proposed,
)


FIXING = Fixing(
    analysis_session_id="analysis-1",
    fix_session_id="fix-1",
    workspace_ref="/work/1001",
    branch_ref="glass/1001",
)


# ==========================================================================
# Upsert
# ==========================================================================

class TestUpsert:
    """Tests for inserting and refreshing source data."""

    async def test_insert_starts_pending(self, issue_store: IssueStore):
        issue = await issue_store.upsert("1001", "web-app", {"title": "Boom"})

        assert issue.id == "1001"
        assert issue.workflow_phase == Pending()
        assert issue.phase_version == 0
        assert issue.source_data == {"title": "Boom"}
        assert issue.title == "Boom"

    async def test_refresh_replaces_source_data(self, issue_store: IssueStore):
        first = await issue_store.upsert("1001", "web-app", {"title": "Boom", "count": 1})
        second = await issue_store.upsert("1001", "web-app", {"title": "Boom", "count": 7})

        assert second.source_data == {"title": "Boom", "count": 7}
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at
        assert await issue_store.count() == 1

    async def test_refresh_preserves_fixing_phase(self, issue_store: IssueStore):
        await issue_store.upsert("1001", "web-app", {"title": "Boom"})
        written = await issue_store.set_phase("1001", FIXING)

        refreshed = await issue_store.upsert("1001", "web-app", {"title": "Boom again"})

        assert refreshed.workflow_phase == FIXING
        assert refreshed.phase_version == written.phase_version
        assert refreshed.source_data["title"] == "Boom again"

    async def test_refresh_preserves_failed_error(self, issue_store: IssueStore):
        await issue_store.upsert("1001", "web-app", {})
        failed = Failed(previous_phase_kind=PhaseKind.ANALYZING, session_id="a", error_message="crash")
        await issue_store.set_phase("1001", failed)

        refreshed = await issue_store.upsert("1001", "web-app", {"title": "x"})
        assert refreshed.workflow_phase == failed


# ==========================================================================
# Reads
# ==========================================================================

class TestReads:
    async def test_get_missing_returns_none(self, issue_store: IssueStore):
        assert await issue_store.get_by_id("nope") is None

    async def test_list_orders_by_most_recent_update(self, issue_store: IssueStore):
        await issue_store.upsert("a", "web-app", {})
        await issue_store.upsert("b", "web-app", {})
        await issue_store.upsert("c", "web-app", {})
        await issue_store.set_phase("a", Analyzing(session_id="s"))

        issues = await issue_store.list_all()
        assert [issue.id for issue in issues] == ["a", "c", "b"]

    async def test_list_pagination(self, issue_store: IssueStore):
        for index in range(5):
            await issue_store.upsert(f"issue-{index}", "web-app", {})

        page = await issue_store.list_all(limit=2, offset=1)
        assert [issue.id for issue in page] == ["issue-3", "issue-2"]
        assert await issue_store.count() == 5

    async def test_list_by_phase_kinds(self, issue_store: IssueStore):
        await issue_store.upsert("a", "web-app", {})
        await issue_store.upsert("b", "web-app", {})
        await issue_store.upsert("c", "web-app", {})
        await issue_store.set_phase("a", Analyzing(session_id="s1"))
        await issue_store.set_phase("c", FIXING)

        found = await issue_store.list_by_phase_kinds([PhaseKind.ANALYZING, PhaseKind.FIXING])
        assert {issue.id for issue in found} == {"a", "c"}
        assert await issue_store.list_by_phase_kinds([]) == []


# ==========================================================================
# Phase Writes
# ==========================================================================

class TestPhaseWrites:
    async def test_set_phase_bumps_version(self, issue_store: IssueStore):
        await issue_store.upsert("1001", "web-app", {})

        first = await issue_store.set_phase("1001", Analyzing(session_id="s1"))
        second = await issue_store.set_phase("1001", Proposed(session_id="s1", proposal_ref="p1"))

        assert first.phase_version == 1
        assert second.phase_version == 2
        assert second.workflow_phase == Proposed(session_id="s1", proposal_ref="p1")

    async def test_set_phase_replaces_payload_wholesale(self, issue_store: IssueStore):
        await issue_store.upsert("1001", "web-app", {})
        await issue_store.set_phase("1001", FIXING)

        issue = await issue_store.set_phase("1001", Pending())

        assert issue.workflow_phase == Pending()
        assert issue.fix_session_id is None
        assert issue.workspace_path is None

    async def test_set_phase_missing_issue(self, issue_store: IssueStore):
        with pytest.raises(IssueNotFoundError):
            await issue_store.set_phase("nope", Pending())

    async def test_compare_and_set_succeeds_on_matching_version(self, issue_store: IssueStore):
        issue = await issue_store.upsert("1001", "web-app", {})

        updated = await issue_store.compare_and_set_phase("1001", issue.phase_version, Analyzing(session_id="s1"))

        assert updated.phase_version == issue.phase_version + 1
        assert updated.updated_at > issue.updated_at

    async def test_compare_and_set_conflict_leaves_phase(self, issue_store: IssueStore):
        issue = await issue_store.upsert("1001", "web-app", {})
        await issue_store.compare_and_set_phase("1001", issue.phase_version, Analyzing(session_id="s1"))

        with pytest.raises(PhaseConflictError) as exc_info:
            await issue_store.compare_and_set_phase("1001", issue.phase_version, Analyzing(session_id="s2"))

        assert exc_info.value.expected_version == issue.phase_version
        stored = await issue_store.get_by_id("1001")
        assert stored.workflow_phase == Analyzing(session_id="s1")

    async def test_compare_and_set_missing_issue(self, issue_store: IssueStore):
        with pytest.raises(IssueNotFoundError):
            await issue_store.compare_and_set_phase("nope", 0, Pending())

    async def test_upsert_does_not_invalidate_version(self, issue_store: IssueStore):
        issue = await issue_store.upsert("1001", "web-app", {})
        await issue_store.upsert("1001", "web-app", {"title": "changed"})

        updated = await issue_store.compare_and_set_phase("1001", issue.phase_version, Analyzing(session_id="s1"))
        assert updated.workflow_phase == Analyzing(session_id="s1")


# ==========================================================================
# Concurrency
# ==========================================================================

class TestConcurrentWrites:
    """Racing compare-and-set writers from the same version: exactly one wins."""

    @pytest.mark.parametrize("seed", [1, 7, 42])
    async def test_random_interleaving_single_winner(self, issue_store: IssueStore, seed: int):
        rng = random.Random(seed)
        issue = await issue_store.upsert("1001", "web-app", {})

        async def writer(index: int):
            await asyncio.sleep(rng.random() / 100)
            return await issue_store.compare_and_set_phase(
                "1001", issue.phase_version, Analyzing(session_id=f"s{index}")
            )

        results = await asyncio.gather(*(writer(i) for i in range(8)), return_exceptions=True)

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(r, PhaseConflictError) for r in losers)

        stored = await issue_store.get_by_id("1001")
        assert stored.phase_version == issue.phase_version + 1
        assert stored.workflow_phase == winners[0].workflow_phase

    async def test_upserts_interleaved_with_phase_writes(self, issue_store: IssueStore):
        await issue_store.upsert("1001", "web-app", {"count": 0})

        async def refresher():
            for count in range(1, 6):
                await issue_store.upsert("1001", "web-app", {"count": count})

        async def phase_writer():
            await issue_store.set_phase("1001", Analyzing(session_id="s1"))
            await issue_store.set_phase("1001", Proposed(session_id="s1", proposal_ref="p1"))

        await asyncio.gather(refresher(), phase_writer())

        stored = await issue_store.get_by_id("1001")
        assert stored.workflow_phase == Proposed(session_id="s1", proposal_ref="p1")
        assert stored.source_data == {"count": 5}
        assert stored.phase_version == 2
