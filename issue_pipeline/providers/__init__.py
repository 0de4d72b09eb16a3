"""External collaborators: Tracker, Board, Drafter and Deployer."""

from issue_pipeline.providers.base import Board, Deployer, Drafter, TrackedIssue, Tracker

__all__ = ["Board", "Deployer", "Drafter", "TrackedIssue", "Tracker"]
