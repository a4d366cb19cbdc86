"""
Issue Sources
=============

Components:
- IssueSource: interface every issue tracker implements
- SourceIssue: one issue as reported by a source
- SentryClient: Sentry REST API implementation
"""

from glass.core.sources.base import IssueSource, SourceIssue
from glass.core.sources.sentry import SentryClient

__all__ = ["IssueSource", "SourceIssue", "SentryClient"]
