"""
Issue Store
===========

Durable record of every issue and its workflow phase.

Source data and phase are written through separate operations:
- ``upsert`` replaces source fields only and never touches phase columns
- ``set_phase`` / ``compare_and_set_phase`` replace the phase wholesale

``compare_and_set_phase`` is the per-issue atomic check-and-set: a single
``UPDATE ... WHERE id = ? AND phase_version = ?``.
"""

from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from glass.core.database import upsert_insert
from glass.core.errors import IssueNotFoundError, PhaseConflictError, StorageError
from glass.core.models import Issue, utc_now
from glass.core.workflow.phases import Pending, PhaseKind, WorkflowPhase, phase_to_columns

logger = structlog.get_logger()


class IssueStore:
    """Issue persistence on top of an async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def upsert(
        self,
        issue_id: str,
        source_project: str,
        source_data: Dict[str, Any],
        source_type: str = "sentry",
    ) -> Issue:
        """
        Insert a new issue in Pending, or refresh an existing issue's source data.

        The phase of an existing issue is left exactly as it was.
        """
        now = utc_now()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    stmt = upsert_insert(session, Issue).values(
                        id=issue_id,
                        source_type=source_type,
                        source_project=source_project,
                        source_data=source_data,
                        phase_version=0,
                        created_at=now,
                        updated_at=now,
                        **phase_to_columns(Pending()),
                    )
                    # Conflict path rewrites source fields only
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["id"],
                        set_={
                            "source_type": stmt.excluded.source_type,
                            "source_project": stmt.excluded.source_project,
                            "source_data": stmt.excluded.source_data,
                            "updated_at": stmt.excluded.updated_at,
                        },
                    )
                    await session.execute(stmt)
                    issue = await session.get(Issue, issue_id, populate_existing=True)
                return issue
        except SQLAlchemyError as e:
            raise StorageError("upsert", e) from e

    async def get_by_id(self, issue_id: str) -> Optional[Issue]:
        try:
            async with self.session_factory() as session:
                return await session.get(Issue, issue_id)
        except SQLAlchemyError as e:
            raise StorageError("get_by_id", e) from e

    async def list_all(self, limit: int = 100, offset: int = 0) -> List[Issue]:
        """Issues ordered by most recently updated first."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Issue)
                    .order_by(Issue.updated_at.desc(), Issue.id)
                    .limit(limit)
                    .offset(offset)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageError("list_all", e) from e

    async def count(self) -> int:
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(func.count()).select_from(Issue))
                return result.scalar_one()
        except SQLAlchemyError as e:
            raise StorageError("count", e) from e

    async def list_by_phase_kinds(self, kinds: Iterable[PhaseKind]) -> List[Issue]:
        values = [PhaseKind(kind).value for kind in kinds]
        if not values:
            return []
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Issue)
                    .where(Issue.phase.in_(values))
                    .order_by(Issue.updated_at.desc(), Issue.id)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageError("list_by_phase_kinds", e) from e

    async def set_phase(self, issue_id: str, phase: WorkflowPhase) -> Issue:
        """Overwrite the phase unconditionally. No legality checks."""
        return await self._write_phase("set_phase", issue_id, phase, expected_version=None)

    async def compare_and_set_phase(
        self,
        issue_id: str,
        expected_version: int,
        phase: WorkflowPhase,
    ) -> Issue:
        """
        Overwrite the phase only if ``phase_version`` still equals ``expected_version``.

        Raises:
            IssueNotFoundError: no issue with this id.
            PhaseConflictError: the phase was written by someone else meanwhile.
        """
        return await self._write_phase("compare_and_set_phase", issue_id, phase, expected_version)

    async def _write_phase(
        self,
        operation: str,
        issue_id: str,
        phase: WorkflowPhase,
        expected_version: Optional[int],
    ) -> Issue:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    stmt = (
                        update(Issue)
                        .where(Issue.id == issue_id)
                        .values(
                            **phase_to_columns(phase),
                            phase_version=Issue.phase_version + 1,
                            updated_at=utc_now(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if expected_version is not None:
                        stmt = stmt.where(Issue.phase_version == expected_version)

                    result = await session.execute(stmt)
                    if result.rowcount == 0:
                        exists = await session.scalar(
                            select(func.count()).select_from(Issue).where(Issue.id == issue_id)
                        )
                        if not exists:
                            raise IssueNotFoundError(issue_id)
                        raise PhaseConflictError(issue_id, expected_version)

                    issue = await session.get(Issue, issue_id, populate_existing=True)
                logger.info(
                    "issue_phase_written",
                    issue_id=issue_id,
                    phase=phase.kind.value,
                    phase_version=issue.phase_version,
                )
                return issue
        except SQLAlchemyError as e:
            raise StorageError(operation, e) from e

