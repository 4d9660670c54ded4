"""Slack source.

Channels are Slack conversations the user belongs to. Messages are grouped
into threads (a parent plus its replies) and each thread becomes one Plot
thread with a note per message.

Slack's Events API is configured once per app, so the webhook URL created
on enable has to be entered as the app's request URL; deliveries are
verified with the app's signing secret from the source config.
"""

from __future__ import annotations

import re
import time
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar

from twister.constants import (
    SLACK_API_BASE_URL,
    SLACK_SIGNATURE_HEADER,
    SLACK_SKIPPED_SUBTYPES,
    SLACK_TIMESTAMP_HEADER,
    SLACK_TITLE_LENGTH,
    SOURCE_SLACK,
)
from twister.exceptions import AuthUnavailableError, SourceError, WebhookVerificationError
from twister.logging import get_logger
from twister.models import (
    AuthProvider,
    Channel,
    NewContact,
    NewLinkWithNotes,
    NewNote,
    SlackConfig,
    SyncPage,
    WebhookResponse,
)
from twister.plugins.base import Source, is_local_url
from twister.webhooks import verify_signature

if TYPE_CHECKING:
    import httpx

    from twister.host.base import Tools
    from twister.models import AuthToken, SyncState, WebhookRequest

logger = get_logger(__name__)

AUTH_ERRORS = frozenset({"not_authed", "invalid_auth", "token_revoked", "account_inactive"})

_USER_MENTION = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]*)?>")

# Order matters: links before emphasis, since URLs may contain _ and ~
_FORMAT_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (_USER_MENTION, r"@\1"),
    (re.compile(r"<#[A-Z0-9]+\|([^>]+)>"), r"#\1"),
    (re.compile(r"<(https?://[^|>]+)\|([^>]+)>"), r"[\2](\1)"),
    (re.compile(r"<(https?://[^>]+)>"), r"\1"),
    (re.compile(r"(?<![*\w])\*([^*\n]+)\*(?![*\w])"), r"**\1**"),
    (re.compile(r"(?<![_\w])_([^_\n]+)_(?![_\w])"), r"*\1*"),
    (re.compile(r"(?<![~\w])~([^~\n]+)~(?![~\w])"), r"~~\1~~"),
)


def format_slack_text(text: str | None) -> str:
    """Convert Slack mrkdwn to markdown."""
    result = text or ""
    for pattern, replacement in _FORMAT_RULES:
        result = pattern.sub(replacement, result)
    return result


def mentioned_user_ids(text: str | None) -> list[str]:
    return _USER_MENTION.findall(text or "")


def thread_ts(message: dict[str, Any]) -> str:
    return message.get("thread_ts") or message["ts"]


def group_threads(messages: list[dict[str, Any]]) -> list[list[dict[str, Any]]]:
    """Group history messages by thread, dropping join/leave noise."""
    groups: dict[str, list[dict[str, Any]]] = {}
    for message in messages:
        if message.get("subtype") in SLACK_SKIPPED_SUBTYPES:
            continue
        groups.setdefault(thread_ts(message), []).append(message)
    return list(groups.values())


def ts_to_datetime(ts: str) -> datetime:
    return datetime.fromtimestamp(float(ts), UTC)


class SlackSource(Source):
    """Message threads from Slack channels."""

    name: ClassVar[str] = SOURCE_SLACK
    provider: ClassVar[AuthProvider] = AuthProvider.SLACK
    scopes: ClassVar[tuple[str, ...]] = (
        "channels:history",
        "channels:read",
        "groups:history",
        "groups:read",
        "users:read",
        "users:read.email",
    )
    link_types: ClassVar[tuple[str, ...]] = ("message",)
    config_schema: ClassVar[type[SlackConfig]] = SlackConfig
    base_url: ClassVar[str] = SLACK_API_BASE_URL

    def __init__(self, tools: Tools, config: SlackConfig | None = None) -> None:
        super().__init__(tools, config)
        self._contacts: dict[str, NewContact] = {}

    @property
    def config(self) -> SlackConfig:
        return self._config  # type: ignore[return-value]

    async def _call(self, client: httpx.AsyncClient, method: str, **params: Any) -> dict[str, Any]:
        """Call a Web API method; Slack reports failures in the body.

        Raises:
            AuthUnavailableError: For token errors.
            SourceError: For any other `ok: false` response.
        """
        result = await self._request(client, "GET", f"/{method}", params=params) or {}
        if not result.get("ok"):
            error = result.get("error", "unknown_error")
            if error in AUTH_ERRORS:
                raise AuthUnavailableError("Slack rejected the token", self.name, {"error": error})
            raise SourceError(f"Slack API error: {error}", self.name, {"method": method, "error": error})
        return result

    async def get_channels(self, token: AuthToken) -> list[Channel]:
        channels: list[Channel] = []
        async with self.client(token) as client:
            cursor = None
            while True:
                params: dict[str, Any] = {
                    "types": "public_channel,private_channel",
                    "exclude_archived": "true",
                    "limit": 200,
                }
                if cursor:
                    params["cursor"] = cursor
                result = await self._call(client, "conversations.list", **params)
                channels.extend(
                    Channel(id=c["id"], title=c.get("name"))
                    for c in result.get("channels") or []
                    if c.get("is_member", True)
                )
                cursor = (result.get("response_metadata") or {}).get("next_cursor")
                if not cursor:
                    break
        return channels

    # =========================================================================
    # SYNC
    # =========================================================================

    async def fetch_page(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        state: SyncState,
    ) -> SyncPage:
        params: dict[str, Any] = {"channel": channel_id, "limit": self.config.page_size}
        if state.cursor:
            params["cursor"] = state.cursor
        if state.time_min is not None:
            params["oldest"] = f"{state.time_min.timestamp():.6f}"
        if state.time_max is not None:
            params["latest"] = f"{state.time_max.timestamp():.6f}"

        result = await self._call(client, "conversations.history", **params)
        next_cursor = (result.get("response_metadata") or {}).get("next_cursor") or None
        return SyncPage(
            items=group_threads(result.get("messages") or []),
            has_more=bool(result.get("has_more") and next_cursor),
            cursor=next_cursor,
        )

    async def transform(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        item: list[dict[str, Any]],
        state: SyncState,
    ) -> NewLinkWithNotes | None:
        if not item:
            return None

        root_ts = thread_ts(item[0])
        parent = next((m for m in item if m["ts"] == root_ts), None)
        messages = item
        if parent is not None and parent.get("reply_count"):
            replies = await self._call(client, "conversations.replies", channel=channel_id, ts=root_ts)
            # The first reply is the parent itself
            messages = [parent, *(replies.get("messages") or [])[1:]]

        return await self.thread_to_link(client, channel_id, messages)

    async def thread_to_link(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        messages: list[dict[str, Any]],
    ) -> NewLinkWithNotes:
        first = messages[0]
        root_ts = thread_ts(first)
        first_text = format_slack_text(first.get("text"))

        notes: list[NewNote] = []
        for message in messages:
            author_id = message.get("user") or message.get("bot_id")
            if not author_id:
                continue
            mentions = [await self.contact(client, uid) for uid in mentioned_user_ids(message.get("text"))]
            notes.append(
                NewNote(
                    key=message["ts"],
                    content=format_slack_text(message.get("text")),
                    content_type="markdown",
                    created=ts_to_datetime(message["ts"]),
                    author=await self.contact(client, author_id),
                    mentions=mentions or None,
                )
            )

        url = f"https://slack.com/app_redirect?channel={channel_id}&message_ts={root_ts}"
        return NewLinkWithNotes(
            source=f"slack:thread:{channel_id}:{root_ts}",
            type="message",
            title=first_text[:SLACK_TITLE_LENGTH] or "Slack message",
            created=ts_to_datetime(first["ts"]),
            meta={"channelId": channel_id, "threadTs": root_ts},
            source_url=url,
            notes=notes,
            preview=first_text or None,
        )

    async def contact(self, client: httpx.AsyncClient, user_id: str) -> NewContact:
        """Resolve a user id to a contact, falling back to the bare id."""
        if user_id in self._contacts:
            return self._contacts[user_id]

        fallback = NewContact(external_id=f"slack:{user_id}")
        if not user_id.startswith(("U", "W")):
            return fallback

        try:
            result = await self._call(client, "users.info", user=user_id)
        except AuthUnavailableError:
            raise
        except SourceError as e:
            logger.debug("Could not resolve Slack user", extra={"user_id": user_id, "error": str(e)})
            return fallback

        user = result.get("user") or {}
        profile = user.get("profile") or {}
        contact = NewContact(
            email=profile.get("email"),
            name=profile.get("real_name") or user.get("real_name") or user.get("name"),
            avatar=profile.get("image_72"),
            external_id=None if profile.get("email") else f"slack:{user_id}",
        )
        self._contacts[user_id] = contact
        return contact

    # =========================================================================
    # EVENTS API
    # =========================================================================

    async def setup_webhook(self, channel_id: str) -> None:
        url = await self.create_webhook_url(channel_id)
        if is_local_url(url):
            logger.info(
                "Skipping Slack events URL for local host",
                extra={"source": self.name, "channel_id": channel_id},
            )
            return
        logger.info(
            "Configure this URL as the Slack app's event request URL",
            extra={"channel_id": channel_id, "url": url},
        )

    async def handshake(self, channel_id: str, request: WebhookRequest) -> WebhookResponse | None:
        payload = self.payload(request)
        if payload.get("type") != "url_verification":
            return None
        return WebhookResponse(status=200, body={"challenge": payload.get("challenge")})

    async def verify_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        secret = self.config.signing_secret
        if not secret:
            raise WebhookVerificationError("No Slack signing secret configured", self.name)

        body = self.require_raw_body(request)
        timestamp = request.header(SLACK_TIMESTAMP_HEADER)
        if not timestamp or not timestamp.isdigit():
            raise WebhookVerificationError("Request timestamp missing", self.name)
        if abs(time.time() - int(timestamp)) > self.config.signature_tolerance_seconds:
            raise WebhookVerificationError("Request timestamp outside tolerance", self.name)

        if not verify_signature(
            secret,
            f"v0:{timestamp}:{body}",
            request.header(SLACK_SIGNATURE_HEADER),
            prefix="v0=",
        ):
            raise WebhookVerificationError("Signature missing or invalid", self.name)

    async def route_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        event = self.payload(request).get("event") or {}
        if event.get("type") != "message" or event.get("channel") != channel_id:
            return
        if event.get("subtype"):
            return

        now = datetime.now(UTC)
        await self.start_incremental_sync(
            channel_id,
            time_min=now - timedelta(hours=1),
            time_max=now,
        )
