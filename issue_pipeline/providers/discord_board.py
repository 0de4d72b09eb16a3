"""
Discord Board implementation using the REST API and channel webhooks.

Threads live in a forum channel. Creating, tagging and archiving a thread go
through the bot API (``Authorization: Bot <token>``); messages are posted
through webhooks so each sender identity appears under its own name.

Webhook routing:
    THREAD   forum webhook, ``?thread_id=<thread>``
    REVIEWS  reviews webhook
    DEPLOY   deploy webhook (optional)

INFO messages are sent with mention parsing disabled so a status broadcast
never pings the agent it mentions.
"""

from typing import Any

import httpx
import structlog

from issue_pipeline.config.settings import BoardConfig, IdentityConfig, is_set
from issue_pipeline.enums import Destination, SenderIdentity
from issue_pipeline.exceptions import CollaboratorFailure, ConfigurationError
from issue_pipeline.providers.base import Board

log = structlog.get_logger(__name__)

MESSAGE_LIMIT = 2000


class DiscordBoard(Board):
    """Board backed by a Discord guild."""

    def __init__(
        self,
        config: BoardConfig,
        identities: IdentityConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the Discord board.

        Args:
            config: Board section of the project configuration
            identities: Sender names for ACTION and INFO messages
            transport: Optional httpx transport, used by tests
        """
        self.config = config
        self.identities = identities
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout),
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _bot_headers(self) -> dict[str, str]:
        if self.config.bot_token is None or not is_set(self.config.bot_token):
            raise ConfigurationError("board.bot_token is required to manage threads")
        return {"Authorization": f"Bot {self.config.bot_token.get_secret_value().strip()}"}

    def _webhook(self, destination: Destination) -> str | None:
        secret = {
            Destination.THREAD: self.config.forum_webhook,
            Destination.REVIEWS: self.config.reviews_webhook,
            Destination.DEPLOY: self.config.deploy_webhook,
        }[destination]
        value = secret.get_secret_value().strip() if secret else ""
        return value or None

    def has_destination(self, destination: Destination) -> bool:
        return self._webhook(destination) is not None

    async def _send(self, action: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http().request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise CollaboratorFailure(f"{action} timed out", collaborator="board") from e
        except httpx.HTTPError as e:
            raise CollaboratorFailure(f"{action} failed: {e}", collaborator="board") from e

        if response.status_code >= 400:
            raise CollaboratorFailure(
                f"{action} rejected: {response.text[:200]}",
                collaborator="board",
                status_code=response.status_code,
            )
        return response

    async def create_thread(self, title: str, body: str, tags: list[str]) -> str:
        if not self.config.forum_channel:
            raise ConfigurationError("board.forum_channel is required to create threads")

        payload: dict[str, Any] = {"name": title, "message": {"content": body[:MESSAGE_LIMIT]}}
        if tags:
            payload["applied_tags"] = tags

        url = f"{self.config.api_base_url.rstrip('/')}/channels/{self.config.forum_channel}/threads"
        response = await self._send("create thread", "POST", url, json=payload, headers=self._bot_headers())

        thread_id = response.json().get("id")
        if not thread_id:
            raise CollaboratorFailure("create thread returned no id", collaborator="board")
        log.info("thread_created", thread=thread_id, tags=tags)
        return str(thread_id)

    async def post_message(
        self,
        destination: Destination,
        body: str,
        identity: SenderIdentity,
        thread: str | None = None,
    ) -> None:
        url = self._webhook(destination)
        if url is None:
            raise ConfigurationError(f"No webhook configured for the {destination.value} surface")

        params: dict[str, str] = {}
        if destination is Destination.THREAD:
            if not thread:
                raise ConfigurationError("Posting to an issue thread requires a thread id")
            params["thread_id"] = thread

        username = self.identities.action if identity is SenderIdentity.ACTION else self.identities.info
        payload: dict[str, Any] = {"content": body[:MESSAGE_LIMIT], "username": username}
        if identity is SenderIdentity.INFO:
            payload["allowed_mentions"] = {"parse": []}

        await self._send(f"post to {destination.value}", "POST", url, params=params, json=payload)
        log.debug("message_posted", destination=destination.value, identity=identity.value, thread=thread)

    async def archive_thread(self, thread: str) -> None:
        url = f"{self.config.api_base_url.rstrip('/')}/channels/{thread}"
        await self._send("archive thread", "PATCH", url, json={"archived": True}, headers=self._bot_headers())
        log.info("thread_archived", thread=thread)

    async def apply_tag(self, thread: str, tag: str) -> None:
        url = f"{self.config.api_base_url.rstrip('/')}/channels/{thread}"
        await self._send("tag thread", "PATCH", url, json={"applied_tags": [tag]}, headers=self._bot_headers())
        log.info("thread_tagged", thread=thread, tag=tag)
