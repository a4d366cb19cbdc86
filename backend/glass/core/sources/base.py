"""
Issue Source Interface
======================

Where issues come from. Sources hand the store a stable id, the project the
issue belongs to and an opaque JSON-serializable payload.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class SourceIssue:
    """One issue as reported by a source."""
    id: str
    project: str
    data: Dict[str, Any] = field(default_factory=dict)
    source_type: str = "sentry"


class IssueSource(ABC):
    """Abstract interface for issue trackers."""

    @abstractmethod
    async def list_issues(self) -> List[SourceIssue]:
        """
        Fetch every issue currently visible to Glass.

        Raises:
            SourceError: on any fetch failure.
        """
        pass

    @abstractmethod
    async def get_issue_detail(self, issue_id: str) -> SourceIssue:
        """
        Fetch one issue with the full context needed to analyze it.

        Raises:
            SourceError: on any fetch failure.
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None
