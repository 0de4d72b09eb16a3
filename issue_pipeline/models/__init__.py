"""Domain models for the issue pipeline.

Key Models:
    - IssueRecord: One tracked issue as persisted by the State Store
    - Worker: A pool member with derived load
    - Delivery: Outcome of one Board side effect
    - CommandResult: What every pipeline command returns
"""

from issue_pipeline.models.domain import (
    CommandResult,
    Delivery,
    DeployResult,
    Draft,
    IssueRecord,
    Worker,
)

__all__ = [
    "CommandResult",
    "Delivery",
    "DeployResult",
    "Draft",
    "IssueRecord",
    "Worker",
]
