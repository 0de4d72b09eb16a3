"""Core lifecycle engine.

Key Components:
    - StateStore: Durable per-project issue records with atomic updates
    - lifecycle: Transition table and guards
    - WorkerPool: Least-loaded worker allocation with pause/resume
    - NotificationRouter: Board messages per lifecycle event
    - Pipeline: The command surface tying them together
"""

from issue_pipeline.engine.pipeline import Pipeline
from issue_pipeline.engine.state_store import StateStore

__all__ = ["Pipeline", "StateStore"]
