"""
Command surface of the issue pipeline.

``Pipeline`` wires the four core components (State Store, lifecycle state
machine, Worker Pool Allocator and Notification Router) to the external
collaborators. Each public method is one command.

Every state-changing command follows the same order:

1. Read the record and validate the trigger. Usage, not-found, precondition
   and no-worker errors surface here, before anything is touched.
2. Make the collaborator calls the transition depends on (create the issue,
   submit a review, fetch the issue body). A failure here is a
   ``CollaboratorFailure`` with ``committed=False``.
3. Apply the transition through ``StateStore.apply``, re-checking the guard
   under the store lock.
4. Hand the applied record to the Notification Router. Board failures come
   back as failed deliveries and never undo step 3.

Merging is the one dependent call that happens after a commit: ``approve``
records ``approved`` first and only then merges, so a failed merge leaves
the issue retryable through ``complete-merge``.

Example:
    >>> pipeline = Pipeline(settings, store, tracker=tracker, board=board)
    >>> result = await pipeline.assign(42)
    >>> result.state
    <LifecycleState.ASSIGNED: 'assigned'>
"""

import asyncio
from collections.abc import Callable
from typing import Literal

import structlog

from issue_pipeline.config.settings import ProjectSettings
from issue_pipeline.engine import lifecycle
from issue_pipeline.engine.allocator import WorkerPool
from issue_pipeline.engine.notifications import NotificationRouter
from issue_pipeline.engine.state_store import StateStore
from issue_pipeline.enums import IssueType, LifecycleState, Trigger
from issue_pipeline.exceptions import CollaboratorFailure, UsageError
from issue_pipeline.models.domain import CommandResult, Delivery, Draft, IssueRecord
from issue_pipeline.providers.base import Board, Deployer, Drafter, Tracker
from issue_pipeline.rendering.engine import TemplateEngine, truncate_title

log = structlog.get_logger(__name__)

TYPE_PREFIXES = {t.value: t for t in IssueType}


def parse_description(text: str) -> tuple[IssueType, str]:
    """Split ``"bug: login fails"`` into its type and description.

    No recognised prefix means a task. The prefix is case-insensitive.

    Raises:
        UsageError: If the description is empty
    """
    text = (text or "").strip()
    kind = IssueType.TASK

    prefix, sep, rest = text.partition(":")
    if sep and prefix.strip().lower() in TYPE_PREFIXES:
        kind = TYPE_PREFIXES[prefix.strip().lower()]
        text = rest.strip()

    if not text:
        raise UsageError("Issue description must not be empty")
    return kind, text


def thread_title(number: int, title: str) -> str:
    """Board thread title, ``#<number>: <title>`` within the Board's limit."""
    return truncate_title(f"#{number}: {title}")


class Pipeline:
    """Issue lifecycle commands for one project.

    Attributes:
        settings: Resolved project configuration, read once per invocation
        store: The project's State Store
        pool: Worker Pool Allocator over the store
        router: Notification Router over the Board
    """

    def __init__(
        self,
        settings: ProjectSettings,
        store: StateStore,
        tracker: Tracker,
        board: Board,
        drafter: Drafter | None = None,
        deployer: Deployer | None = None,
        templates: TemplateEngine | None = None,
        clock: Callable[[], str] = lifecycle.utcnow,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Resolved project configuration
            store: State Store for this project
            tracker: Tracker collaborator
            board: Board collaborator
            drafter: Drafter collaborator; None always uses the template
            deployer: Deployer collaborator; None skips deploy steps
            templates: Template engine, shared with the router
            clock: Source of ISO-8601 timestamps
        """
        self.settings = settings
        self.store = store
        self.tracker = tracker
        self.board = board
        self.drafter = drafter
        self.deployer = deployer
        self.templates = templates or TemplateEngine()
        self.clock = clock
        self.pool = WorkerPool(settings.workers, store)
        self.router = NotificationRouter(board, settings, self.templates)

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    async def create(self, description: str, auto_merge: bool | None = None) -> CommandResult:
        """Open an issue on the Tracker, record it and open its Board thread.

        Args:
            description: Typed description, e.g. ``"bug: login fails"``
            auto_merge: Whether ``approve`` merges immediately. Defaults to
                the project's ``auto_merge`` setting.

        Raises:
            UsageError: If the description is empty
            StoreCorrupt: If the State Store is unreadable; checked before
                anything is created on the Tracker
            CollaboratorFailure: Tracker failure (not committed) or thread
                creation failure (committed, the issue is recorded)
        """
        kind, text = parse_description(description)
        repo = self.settings.require_repo()
        self.settings.require_board("forum_channel", "bot_token")
        if auto_merge is None:
            auto_merge = self.settings.auto_merge

        # Fail on a corrupt store now rather than after creating a Tracker issue
        await self.store.list()

        draft = await self._draft(kind, text, repo)
        labels = [kind.tracker_label] if kind.tracker_label else []
        tracked = await self.tracker.create_issue(draft.title, draft.body, labels)
        log.info("tracker_issue_created", issue=tracked.number, type=kind.value, drafted=draft.drafted)

        record = await self.store.apply(
            tracked.number,
            lifecycle.creation_fields(
                tracked.number,
                title=draft.title,
                url=tracked.url,
                issue_type=kind,
                auto_merge=auto_merge,
                project=self.settings.name,
                now=self.clock(),
            ),
            guard=lifecycle.creation_guard(tracked.number),
        )

        tag = self.settings.board.tags.for_type(kind)
        opening = self.templates.render(
            "messages/thread_opened.md.j2", {"issue": record, "project": self.settings.name}
        )
        try:
            thread = await self.board.create_thread(
                thread_title(record.number, record.title), opening, [tag] if tag else []
            )
        except CollaboratorFailure as e:
            raise e.after_commit(record.state.value) from e

        record = await self.store.apply(record.number, {"thread": thread})
        log.info("issue_created", issue=record.number, thread=thread, auto_merge=auto_merge)

        return CommandResult(
            command="create",
            summary=f"Created issue #{record.number}: {record.title}",
            issue=record.number,
            state=record.state,
            record=record,
            data={"drafted": draft.drafted, "thread": thread},
        )

    def template_draft(self, kind: IssueType, description: str) -> Draft:
        """Deterministic issue text used when no agent draft is available."""
        title = description[0].upper() + description[1:]
        body = self.templates.render(f"issues/{kind.value}.md.j2", {"description": description})
        return Draft(title=title, body=body, drafted=False)

    async def _draft(self, kind: IssueType, description: str, repo: str) -> Draft:
        fallback = self.template_draft(kind, description)
        if self.drafter is None or not self.settings.drafter.enabled:
            return fallback

        timeout = self.settings.drafter.timeout
        task = asyncio.create_task(self.drafter.draft(kind, description, repo))
        try:
            draft = await asyncio.wait_for(task, timeout=timeout)
        except TimeoutError:
            log.warning("draft_timed_out", timeout=timeout)
            return fallback
        except CollaboratorFailure as e:
            log.warning("draft_failed", error=e.message)
            return fallback

        if not draft.title.strip() or not draft.body.strip():
            log.warning("draft_empty")
            return fallback
        return draft

    # ------------------------------------------------------------------
    # assign / request-review
    # ------------------------------------------------------------------

    async def assign(self, number: int) -> CommandResult:
        """Give a created issue to the least-loaded unpaused worker.

        Not idempotent: a second ``assign`` fails with PreconditionFailed.

        Raises:
            NotFoundError: If the issue is not tracked
            PreconditionFailed: If the issue is not in ``created``
            NoAvailableWorkers: If every roster worker is paused
            CollaboratorFailure: If the issue body cannot be fetched
        """
        record = await self.store.get(number)
        lifecycle.check(Trigger.ASSIGN, record)
        worker = await self.pool.choose()
        issue_body = await self.tracker.fetch_issue_body(number)

        record = await self.store.apply(
            number,
            lifecycle.transition_fields(Trigger.ASSIGN, record, self.clock(), assigned_worker=worker.id),
            guard=lifecycle.guard(Trigger.ASSIGN, number),
        )
        log.info("issue_assigned", issue=number, worker=worker.id, active_count=worker.active_count)

        deliveries = await self.router.dispatch("assigned", record, worker=worker, issue_body=issue_body)
        return self._result(
            "assign", record, f"Assigned issue #{number} to {worker.display_name}", deliveries, data=worker
        )

    async def request_review(self, number: int, pr: int | None) -> CommandResult:
        """Mark a PR for an issue as ready for review.

        Accepted while ``in-review`` too: the new PR supersedes the old one.

        Raises:
            UsageError: If no valid PR number is given
        """
        if pr is None or pr <= 0:
            raise UsageError("A pull request number is required (--pr <number>)")

        record = await self.store.get(number)
        lifecycle.check(Trigger.REQUEST_REVIEW, record)
        pr_url = self.settings.tracker.pr_url(pr) if self.settings.tracker.repo else None
        superseded = record.pr if record.state is LifecycleState.IN_REVIEW and record.pr != pr else None

        record = await self.store.apply(
            number,
            lifecycle.transition_fields(Trigger.REQUEST_REVIEW, record, self.clock(), pr=pr, pr_url=pr_url),
            guard=lifecycle.guard(Trigger.REQUEST_REVIEW, number),
        )
        log.info("review_requested", issue=number, pr=pr, superseded=superseded)

        deliveries = await self.router.dispatch("review_requested", record)
        summary = f"Issue #{number} in review with PR #{pr}"
        if superseded:
            summary += f" (supersedes PR #{superseded})"
        return self._result("request-review", record, summary, deliveries)

    # ------------------------------------------------------------------
    # approve / complete-merge / reject / close
    # ------------------------------------------------------------------

    async def approve(self, number: int) -> CommandResult:
        """Approve the PR under review.

        With auto-merge on, the PR is merged right away; otherwise the
        issue waits in ``approved`` for ``complete-merge``.

        Raises:
            PreconditionFailed: If the issue is not in ``in-review``
            CollaboratorFailure: A failed review submission (not committed),
                or a failed merge, close or deploy (committed)
        """
        record = await self.store.get(number)
        lifecycle.check(Trigger.APPROVE, record)

        if self.settings.tracker.submit_reviews and record.pr:
            await self.tracker.review_pr(record.pr, "APPROVE", "Approved via pipeline.")

        record = await self.store.apply(
            number,
            lifecycle.transition_fields(Trigger.APPROVE, record, self.clock()),
            guard=lifecycle.guard(Trigger.APPROVE, number),
        )
        log.info("issue_approved", issue=number, pr=record.pr, auto_merge=record.auto_merge)

        if record.auto_merge:
            return await self._merge(record, "approve", announce_approval=True)

        deliveries = await self.router.dispatch("approved", record)
        return self._result(
            "approve", record, f"Approved PR #{record.pr} for issue #{number}; awaiting manual merge", deliveries
        )

    async def complete_merge(self, number: int) -> CommandResult:
        """Merge an approved PR that was deferred or whose merge failed.

        Raises:
            PreconditionFailed: If the issue is not in ``approved``
        """
        record = await self.store.get(number)
        lifecycle.check(Trigger.COMPLETE_MERGE, record)
        return await self._merge(record, "complete-merge")

    async def _merge(self, record: IssueRecord, command: str, announce_approval: bool = False) -> CommandResult:
        """Merge the PR, then close the Tracker issue and run the deploy.

        Once the merge is recorded, a failed close or deploy no longer stops
        the remaining steps. The failure is raised at the end, carrying the
        deliveries already made.
        """
        number = record.number
        if record.pr is None:
            raise UsageError(f"Issue #{number} has no pull request to merge")

        try:
            await self.tracker.merge_pr(record.pr, self.settings.tracker.merge_strategy)
        except CollaboratorFailure as e:
            log.error("merge_failed", issue=number, pr=record.pr, error=e.message)
            # The approval is committed even though the merge is not.
            deliveries = await self.router.dispatch("approved", record) if announce_approval else []
            raise e.after_commit(record.state.value, deliveries) from e

        record = await self.store.apply(
            number,
            lifecycle.transition_fields(Trigger.COMPLETE_MERGE, record, self.clock()),
            guard=lifecycle.guard(Trigger.COMPLETE_MERGE, number),
        )
        log.info("issue_merged", issue=number, pr=record.pr)

        deliveries = await self.router.dispatch("merged", record)

        close_failure: CollaboratorFailure | None = None
        try:
            await self.tracker.close_issue(number, "completed")
        except CollaboratorFailure as e:
            log.error("issue_close_failed", issue=number, error=e.message)
            close_failure = e

        failure = await self._deploy(record, deliveries) or close_failure
        if failure is not None:
            raise failure.after_commit(record.state.value, deliveries)

        return self._result(command, record, f"Merged PR #{record.pr}; issue #{number} complete", deliveries)

    async def _deploy(self, record: IssueRecord, deliveries: list[Delivery]) -> CollaboratorFailure | None:
        """Run the deploy steps and announce the outcome.

        Returns:
            The failure to report if a step failed, else None
        """
        steps = self.settings.deploy.steps
        if not steps or self.deployer is None:
            return None

        result = await self.deployer.run(steps)
        deliveries.extend(await self.router.dispatch("deployed", record, result=result))
        if not result.ok:
            log.error("deploy_failed", issue=record.number, step=result.failed_step, exit_code=result.exit_code)
            return CollaboratorFailure(
                f"deploy step failed: {result.failed_step}",
                collaborator="deployer",
                status_code=result.exit_code,
            )

        log.info("deploy_succeeded", issue=record.number, steps=len(steps))
        return None

    async def reject(self, number: int, reason: str) -> CommandResult:
        """Send the PR back to its worker with review feedback.

        The same worker keeps the issue for the next review round.

        Raises:
            UsageError: If the reason is empty
            PreconditionFailed: If the issue is not in ``in-review``
        """
        reason = (reason or "").strip()
        if not reason:
            raise UsageError("A rejection reason is required")

        record = await self.store.get(number)
        lifecycle.check(Trigger.REJECT, record)

        if self.settings.tracker.submit_reviews and record.pr:
            await self.tracker.review_pr(record.pr, "REQUEST_CHANGES", reason)
        issue_body = await self.tracker.fetch_issue_body(number)

        record = await self.store.apply(
            number,
            lifecycle.transition_fields(Trigger.REJECT, record, self.clock(), rejection_reason=reason),
            guard=lifecycle.guard(Trigger.REJECT, number),
        )
        log.info("issue_rejected", issue=number, pr=record.pr, worker=record.assigned_worker)

        deliveries = await self.router.dispatch("changes_requested", record, issue_body=issue_body)
        return self._result("reject", record, f"Requested changes on PR #{record.pr} for issue #{number}", deliveries)

    async def close(self, number: int, reason: str | None = None) -> CommandResult:
        """Close an issue without merging (duplicate, won't fix, ...).

        Raises:
            PreconditionFailed: If the issue is already merged or closed
            CollaboratorFailure: If the Tracker refuses to close the issue
        """
        reason = (reason or "").strip() or None
        record = await self.store.get(number)
        lifecycle.check(Trigger.CLOSE, record)

        await self.tracker.close_issue(number, reason or "not_planned")

        record = await self.store.apply(
            number,
            lifecycle.transition_fields(Trigger.CLOSE, record, self.clock(), close_reason=reason),
            guard=lifecycle.guard(Trigger.CLOSE, number),
        )
        log.info("issue_closed", issue=number, reason=reason)

        deliveries = await self.router.dispatch("closed", record)
        summary = f"Closed issue #{number}" + (f": {reason}" if reason else "")
        return self._result("close", record, summary, deliveries)

    # ------------------------------------------------------------------
    # Reporting and worker administration; these never change issue state
    # ------------------------------------------------------------------

    async def status(self, number: int | None = None) -> CommandResult:
        """Report one issue, or every tracked issue."""
        if number is not None:
            record = await self.store.get(number)
            return self._result("status", record, record.summary_line(), [], data=record)

        records = await self.store.list()
        return CommandResult(
            command="status",
            summary=f"{len(records)} tracked issues",
            data=records,
        )

    async def list_issues(self, scope: Literal["open", "all"] = "open") -> CommandResult:
        """One line per tracked issue; ``open`` hides merged and closed."""
        if scope not in ("open", "all"):
            raise UsageError(f"List scope must be 'open' or 'all', got: {scope}")

        records = await self.store.list()
        if scope == "open":
            records = [r for r in records if not r.state.is_terminal]
        return CommandResult(command="list", summary=f"{len(records)} {scope} issues", data=records)

    async def list_workers(self) -> CommandResult:
        workers = await self.pool.workers()
        available = sum(1 for w in workers if not w.paused)
        return CommandResult(
            command="workers",
            summary=f"{available} of {len(workers)} workers available",
            data=workers,
        )

    async def pause_worker(self, worker_id: str) -> CommandResult:
        changed = await self.pool.pause(worker_id)
        summary = f"Paused worker {worker_id}" if changed else f"Worker {worker_id} is already paused"
        return CommandResult(command="pause", summary=summary, data={"worker": worker_id, "changed": changed})

    async def resume_worker(self, worker_id: str) -> CommandResult:
        changed = await self.pool.resume(worker_id)
        summary = f"Resumed worker {worker_id}" if changed else f"Worker {worker_id} is not paused"
        return CommandResult(command="resume", summary=summary, data={"worker": worker_id, "changed": changed})

    def _result(
        self,
        command: str,
        record: IssueRecord,
        summary: str,
        deliveries: list[Delivery],
        data: object = None,
    ) -> CommandResult:
        return CommandResult(
            command=command,
            summary=summary,
            issue=record.number,
            state=record.state,
            record=record,
            deliveries=deliveries,
            data=data,
        )
