"""
Notification routing for lifecycle events.

The router maps each lifecycle event to the messages it produces, the
surface each message goes to and the sender identity it is posted under:

==================  ===================  =====================
Event               Issue thread         Reviews / deploy
==================  ===================  =====================
assigned            ACTION (worker)      -
review_requested    ACTION (reviewer)    reviews, INFO
changes_requested   ACTION (worker)      reviews, INFO
approved            INFO                 reviews, INFO
merged              INFO, tag, archive   reviews, INFO
closed              INFO, tag, archive   reviews, INFO
deployed            -                    deploy, INFO
==================  ===================  =====================

ACTION messages ask a worker or reviewer agent to do something. Everything
that only reports goes out as INFO so an agent's own completion never
re-triggers it.

The router runs only after the transition it announces has been applied to
the State Store. Delivery is best effort: a failed post becomes a failed
``Delivery`` in the result and never undoes the transition.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from issue_pipeline.config.settings import ProjectSettings
from issue_pipeline.enums import Destination, SenderIdentity
from issue_pipeline.exceptions import CollaboratorFailure, ConfigurationError
from issue_pipeline.models.domain import Delivery, IssueRecord
from issue_pipeline.providers.base import Board
from issue_pipeline.rendering.engine import TemplateEngine

log = structlog.get_logger(__name__)

ACTION = SenderIdentity.ACTION
INFO = SenderIdentity.INFO

ROUTES: dict[str, list[tuple[Destination, SenderIdentity]]] = {
    "assigned": [(Destination.THREAD, ACTION)],
    "review_requested": [(Destination.THREAD, ACTION), (Destination.REVIEWS, INFO)],
    "changes_requested": [(Destination.THREAD, ACTION), (Destination.REVIEWS, INFO)],
    "approved": [(Destination.THREAD, INFO), (Destination.REVIEWS, INFO)],
    "merged": [(Destination.THREAD, INFO), (Destination.REVIEWS, INFO)],
    "closed": [(Destination.THREAD, INFO), (Destination.REVIEWS, INFO)],
    "deployed": [(Destination.DEPLOY, INFO)],
}

# The only events allowed to touch thread lifecycle (tag and archive).
THREAD_CLOSING_EVENTS = frozenset({"merged", "closed"})

OPTIONAL_DESTINATIONS = frozenset({Destination.DEPLOY})


@dataclass
class Message:
    destination: Destination
    identity: SenderIdentity
    body: str


class NotificationRouter:
    """Builds and dispatches the Board side effects of lifecycle events.

    Attributes:
        board: Board collaborator
        settings: Resolved project configuration
        templates: Renderer for ``messages/<event>.<destination>.md.j2``
    """

    def __init__(self, board: Board, settings: ProjectSettings, templates: TemplateEngine | None = None) -> None:
        self.board = board
        self.settings = settings
        self.templates = templates or TemplateEngine()

    def build_messages(self, event: str, record: IssueRecord, **context: Any) -> list[Message]:
        """Render the message set for an event without sending anything.

        Args:
            event: Key of ``ROUTES``
            record: Issue record after the transition was applied
            **context: Event-specific template values (worker, issue_body,
                result)

        Raises:
            KeyError: If ``event`` has no route
            ConfigurationError: If a template is missing or incomplete
        """
        values = {
            "issue": record,
            "project": self.settings.name,
            "repo": self.settings.tracker.repo or "",
            "reviewer": self.settings.identities.reviewer,
            **context,
        }
        return [
            Message(destination, identity, self.templates.render(f"messages/{event}.{destination.value}.md.j2", values))
            for destination, identity in ROUTES[event]
        ]

    async def dispatch(self, event: str, record: IssueRecord, **context: Any) -> list[Delivery]:
        """Send every message for ``event``, then close the thread if the event ends the issue.

        Never raises for Board failures; they are returned as failed
        deliveries. Thread side effects run post, then tag, then archive,
        because an archived thread accepts no further edits.

        Returns:
            One ``Delivery`` per attempted side effect
        """
        deliveries: list[Delivery] = []

        try:
            messages = self.build_messages(event, record, **context)
        except ConfigurationError as e:
            log.error("notification_render_failed", notification_event=event, issue=record.number, error=e.message)
            return [
                Delivery(destination=d, identity=i, action="post", ok=False, error=e.message) for d, i in ROUTES[event]
            ]

        for message in messages:
            if message.destination in OPTIONAL_DESTINATIONS and not self.board.has_destination(message.destination):
                log.debug("notification_skipped", destination=message.destination.value, issue=record.number)
                continue
            deliveries.append(await self._post(message, record))

        if event in THREAD_CLOSING_EVENTS and record.thread:
            tag = self.settings.board.tags.resolved
            if tag:
                deliveries.append(
                    await self._thread_action("tag", record, lambda: self.board.apply_tag(record.thread, tag))
                )
            deliveries.append(
                await self._thread_action("archive", record, lambda: self.board.archive_thread(record.thread))
            )

        return deliveries

    async def _post(self, message: Message, record: IssueRecord) -> Delivery:
        delivery = Delivery(destination=message.destination, identity=message.identity, action="post", ok=True)

        if message.destination is Destination.THREAD and not record.thread:
            delivery.ok = False
            delivery.error = "issue has no thread"
        else:
            thread = record.thread if message.destination is Destination.THREAD else None
            try:
                await self.board.post_message(message.destination, message.body, message.identity, thread=thread)
            except CollaboratorFailure as e:
                delivery.ok = False
                delivery.status_code = e.status_code
                delivery.error = e.message
            except ConfigurationError as e:
                delivery.ok = False
                delivery.error = e.message

        self._log_delivery(delivery, record)
        return delivery

    async def _thread_action(self, action: str, record: IssueRecord, call: Callable[[], Awaitable[None]]) -> Delivery:
        delivery = Delivery(destination=Destination.THREAD, identity=None, action=action, ok=True)
        try:
            await call()
        except CollaboratorFailure as e:
            delivery.ok = False
            delivery.status_code = e.status_code
            delivery.error = e.message
        except ConfigurationError as e:
            delivery.ok = False
            delivery.error = e.message

        self._log_delivery(delivery, record)
        return delivery

    def _log_delivery(self, delivery: Delivery, record: IssueRecord) -> None:
        if delivery.ok:
            log.info(
                "notification_delivered",
                issue=record.number,
                destination=delivery.destination.value,
                action=delivery.action,
                identity=delivery.identity.value if delivery.identity else None,
            )
        else:
            log.warning(
                "notification_failed",
                issue=record.number,
                destination=delivery.destination.value,
                action=delivery.action,
                status_code=delivery.status_code,
                error=delivery.error,
            )
