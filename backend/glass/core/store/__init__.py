"""
Glass Persistence
=================

Components:
- IssueStore: issues and their workflow phase
- ConversationLog: agent transcripts and the latest proposal per issue
"""

from glass.core.store.conversations import ConversationLog
from glass.core.store.issues import IssueStore

__all__ = ["ConversationLog", "IssueStore"]
