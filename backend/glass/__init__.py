"""
Glass
=====

Issue remediation orchestrator: pulls issues from Sentry, has an agent
analyze them, and on approval lets a second agent fix them in an isolated
git worktree.
"""

__version__ = "0.1.0"
