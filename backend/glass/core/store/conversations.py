"""
Conversation and Proposal Log
=============================

Append-only transcript of agent conversations per issue and phase, plus a
single latest-proposal slot per issue.
"""

from typing import List, Optional
from uuid import uuid4

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from glass.core.database import upsert_insert
from glass.core.errors import StorageError
from glass.core.models import (
    ConversationMessage,
    ConversationPhase,
    MessageRole,
    Proposal,
    utc_now,
)

logger = structlog.get_logger()


class ConversationLog:
    """Conversation and proposal persistence."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ======================================================================
    # Messages
    # ======================================================================

    async def append_message(
        self,
        issue_id: str,
        session_id: str,
        phase: ConversationPhase,
        role: MessageRole,
        content: str,
    ) -> ConversationMessage:
        message = ConversationMessage(
            issue_id=issue_id,
            session_id=session_id,
            phase=ConversationPhase(phase).value,
            role=MessageRole(role).value,
            content=content,
            created_at=utc_now(),
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(message)
                return message
        except SQLAlchemyError as e:
            raise StorageError("append_message", e) from e

    async def get_messages(
        self,
        issue_id: str,
        phase: Optional[ConversationPhase] = None,
    ) -> List[ConversationMessage]:
        """Messages for an issue in creation order, optionally for one phase."""
        stmt = select(ConversationMessage).where(ConversationMessage.issue_id == issue_id)
        if phase is not None:
            stmt = stmt.where(ConversationMessage.phase == ConversationPhase(phase).value)
        stmt = stmt.order_by(ConversationMessage.id)
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageError("get_messages", e) from e

    async def delete_messages(self, issue_id: str) -> int:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(ConversationMessage).where(ConversationMessage.issue_id == issue_id)
                    )
                return result.rowcount
        except SQLAlchemyError as e:
            raise StorageError("delete_messages", e) from e

    # ======================================================================
    # Proposals
    # ======================================================================

    async def save_proposal(self, issue_id: str, content: str) -> Proposal:
        """Create or replace the issue's proposal; every save gets a new id."""
        now = utc_now()
        proposal_id = uuid4().hex
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    stmt = upsert_insert(session, Proposal).values(
                        issue_id=issue_id,
                        id=proposal_id,
                        content=content,
                        created_at=now,
                        updated_at=now,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["issue_id"],
                        set_={
                            "id": stmt.excluded.id,
                            "content": stmt.excluded.content,
                            "updated_at": stmt.excluded.updated_at,
                        },
                    )
                    await session.execute(stmt)
                    proposal = await session.get(Proposal, issue_id, populate_existing=True)
            logger.info("proposal_saved", issue_id=issue_id, proposal_id=proposal_id)
            return proposal
        except SQLAlchemyError as e:
            raise StorageError("save_proposal", e) from e

    async def get_proposal(self, issue_id: str) -> Optional[Proposal]:
        try:
            async with self.session_factory() as session:
                return await session.get(Proposal, issue_id)
        except SQLAlchemyError as e:
            raise StorageError("get_proposal", e) from e

    async def delete_proposal(self, issue_id: str) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(delete(Proposal).where(Proposal.issue_id == issue_id))
        except SQLAlchemyError as e:
            raise StorageError("delete_proposal", e) from e
