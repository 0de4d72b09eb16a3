"""
Worker pool allocation: least-loaded worker, idle-longest on ties.

Load is derived, never stored. Each ``assign`` scans the State Store once
and counts, per roster worker, the issues it holds in an active state
(assigned, in-review, changes-requested). The only worker attribute the
pool persists is the ``paused`` flag.

Selection:
    1. Drop paused workers; none left raises ``NoAvailableWorkers``.
    2. Pick the minimum ``active_count``.
    3. Ties go to the worker whose latest assignment is oldest; a worker
       never assigned anything counts as oldest. Remaining ties follow
       roster order.

With no roster configured the pool degenerates to the single default
worker from ``workers.default_worker``.
"""

from collections.abc import Iterable, Sequence

import structlog

from issue_pipeline.config.settings import WorkersConfig
from issue_pipeline.engine.state_store import StateStore
from issue_pipeline.exceptions import NoAvailableWorkers, NotFoundError, UsageError
from issue_pipeline.models.domain import IssueRecord, Worker

log = structlog.get_logger(__name__)


def compute_workers(
    config: WorkersConfig, records: Iterable[IssueRecord], paused_ids: set[str] | frozenset[str] = frozenset()
) -> list[Worker]:
    """Build the roster view with derived load from a store snapshot.

    Args:
        config: Roster configuration
        records: Every issue record of the project
        paused_ids: Worker ids whose pause flag is set

    Returns:
        Workers in roster order, or the single default worker when the
        roster is empty
    """
    if config.roster:
        workers = [Worker(id=entry.id, name=entry.name, paused=entry.id in paused_ids) for entry in config.roster]
    else:
        workers = [Worker(id=config.default_worker, name=config.default_worker, is_default=True)]

    by_id = {w.id: w for w in workers}
    for record in records:
        worker = by_id.get(record.assigned_worker or "")
        if worker is None:
            continue
        if record.is_active:
            worker.active_count += 1
        if record.assigned and (worker.last_assigned is None or record.assigned > worker.last_assigned):
            worker.last_assigned = record.assigned

    return workers


def select_worker(workers: Sequence[Worker]) -> Worker:
    """Choose the worker for the next assignment.

    Raises:
        NoAvailableWorkers: If every worker is paused
    """
    candidates = [(index, w) for index, w in enumerate(workers) if not w.paused]
    if not candidates:
        raise NoAvailableWorkers(f"All {len(workers)} workers are paused; resume one before assigning")

    _, chosen = min(
        candidates,
        key=lambda item: (
            item[1].active_count,
            item[1].last_assigned is not None,
            item[1].last_assigned or "",
            item[0],
        ),
    )
    return chosen


class WorkerPool:
    """Roster plus persisted pause flags for one project."""

    def __init__(self, config: WorkersConfig, store: StateStore) -> None:
        self.config = config
        self.store = store

    async def workers(self) -> list[Worker]:
        """Current roster with load, pause state and last assignment."""
        snapshot = await self.store.snapshot()
        return compute_workers(self.config, snapshot.records, snapshot.paused_workers)

    async def choose(self) -> Worker:
        """Select a worker for an assignment without recording anything."""
        workers = await self.workers()
        chosen = select_worker(workers)
        log.info(
            "worker_selected",
            worker=chosen.id,
            active_count=chosen.active_count,
            candidates=sum(1 for w in workers if not w.paused),
        )
        return chosen

    def _require_member(self, worker_id: str) -> None:
        if not self.config.roster:
            if worker_id == self.config.default_worker:
                raise UsageError(
                    f"'{worker_id}' is the default worker and cannot be paused; configure workers.roster first"
                )
            raise NotFoundError(f"Worker '{worker_id}' is not in the roster")
        if worker_id not in {entry.id for entry in self.config.roster}:
            raise NotFoundError(f"Worker '{worker_id}' is not in the roster")

    async def pause(self, worker_id: str) -> bool:
        """Stop routing new assignments to a worker. Idempotent.

        Issues already assigned to the worker are unaffected.

        Returns:
            True if the worker was not paused before
        """
        self._require_member(worker_id)
        return await self.store.set_worker_paused(worker_id, True)

    async def resume(self, worker_id: str) -> bool:
        """Make a paused worker eligible again. Idempotent."""
        self._require_member(worker_id)
        return await self.store.set_worker_paused(worker_id, False)
