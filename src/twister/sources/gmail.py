"""Gmail source.

Channels are labels, or saved searches given as "search:<query>". A full
sync pages through the label's threads; push notifications arrive through
a Cloud Pub/Sub topic and trigger an incremental sync over the mailbox
history since the last known history id.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, ClassVar

from twister.constants import (
    GMAIL_API_BASE_URL,
    GMAIL_LIST_PHASE,
    GMAIL_SEARCH_PREFIX,
    GMAIL_VISIBLE_SYSTEM_LABELS,
    GMAIL_WEB_URL,
    INCREMENTAL_PHASE,
    KEY_LAST_SYNC_TOKEN,
    KEY_WATCH,
    SOURCE_GMAIL,
)
from twister.exceptions import SetupError, SourceError, WebhookVerificationError
from twister.logging import get_logger
from twister.models import (
    AuthProvider,
    Channel,
    GmailConfig,
    NewContact,
    NewLinkWithNotes,
    NewNote,
    SyncPage,
    WatchRegistration,
)
from twister.plugins.base import Source

if TYPE_CHECKING:
    import httpx

    from twister.models import AuthToken, SyncState, WebhookRequest

logger = get_logger(__name__)

_ADDRESS_PATTERN = re.compile(r'^(?:"?([^"]*)"?\s)?<?([^@<>\s]+@[^>\s]+)>?$')
_STYLE_PATTERN = re.compile(r"<(style|script)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_PATTERN = re.compile(r"<[^>]+>")
_SPACE_PATTERN = re.compile(r"\s+")


# =============================================================================
# MESSAGE PARSING
# =============================================================================


def parse_address(value: str) -> NewContact:
    """Parse "Name <user@host>" or a bare address."""
    value = value.strip()
    match = _ADDRESS_PATTERN.match(value)
    if match:
        return NewContact(email=match.group(2).strip(), name=(match.group(1) or "").strip() or None)
    return NewContact(email=value)


def parse_address_list(value: str | None) -> list[NewContact]:
    if not value:
        return []
    return [parse_address(part) for part in value.split(",") if part.strip()]


def get_header(message: dict[str, Any], name: str) -> str | None:
    for header in (message.get("payload") or {}).get("headers") or []:
        if header.get("name", "").lower() == name.lower():
            return header.get("value")
    return None


def decode_base64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def strip_html(html: str) -> str:
    text = _STYLE_PATTERN.sub("", html)
    text = _TAG_PATTERN.sub(" ", text)
    return _SPACE_PATTERN.sub(" ", text).strip()


def extract_body(part: dict[str, Any]) -> str:
    """Extract a message body, preferring text/plain over stripped HTML."""
    data = (part.get("body") or {}).get("data")
    if data:
        text = decode_base64url(data)
        return strip_html(text) if part.get("mimeType") == "text/html" else text

    parts = part.get("parts") or []
    for mime_type in ("text/plain", "text/html"):
        for sub in parts:
            if sub.get("mimeType") == mime_type:
                return extract_body(sub)
    for sub in parts:
        body = extract_body(sub)
        if body:
            return body
    return ""


def thread_url(thread_id: str) -> str:
    return f"{GMAIL_WEB_URL}/{thread_id}"


def thread_to_link(thread: dict[str, Any]) -> NewLinkWithNotes | None:
    """Map a full-format Gmail thread to a thread; None if it has no messages.

    Every message becomes a note keyed by its message id, with To and Cc
    recipients as mentions. Messages without a sender are skipped.
    """
    messages = thread.get("messages") or []
    if not messages:
        return None

    first = messages[0]
    first_body = extract_body(first.get("payload") or {})
    internal_date = first.get("internalDate")

    notes: list[NewNote] = []
    for message in messages:
        sender = get_header(message, "From")
        if not sender:
            continue
        mentions = [
            *parse_address_list(get_header(message, "To")),
            *parse_address_list(get_header(message, "Cc")),
        ]
        message_date = message.get("internalDate")
        notes.append(
            NewNote(
                key=message["id"],
                content=extract_body(message.get("payload") or {}) or message.get("snippet"),
                created=(
                    datetime.fromtimestamp(int(message_date) / 1000, UTC) if message_date else None
                ),
                author=parse_address(sender),
                mentions=mentions or None,
            )
        )

    url = thread_url(thread["id"])
    return NewLinkWithNotes(
        source=f"gmail:thread:{thread['id']}",
        type="email",
        title=get_header(first, "Subject") or "Email",
        created=datetime.fromtimestamp(int(internal_date) / 1000, UTC) if internal_date else None,
        meta={"threadId": thread["id"], "historyId": thread.get("historyId")},
        source_url=url,
        notes=notes,
        preview=first_body or first.get("snippet") or None,
    )


def decode_push_message(payload: dict[str, Any]) -> dict[str, Any]:
    """Decode the JSON carried in a Pub/Sub push message's `data`."""
    data = (payload.get("message") or {}).get("data")
    if not data:
        return {}
    try:
        decoded = json.loads(base64.b64decode(data))
    except (binascii.Error, ValueError):
        logger.warning("Undecodable Gmail push message")
        return {}
    return decoded if isinstance(decoded, dict) else {}


# =============================================================================
# SOURCE
# =============================================================================


class GmailSource(Source):
    """Email threads from Gmail labels and searches."""

    name: ClassVar[str] = SOURCE_GMAIL
    provider: ClassVar[AuthProvider] = AuthProvider.GOOGLE
    scopes: ClassVar[tuple[str, ...]] = (
        "https://www.googleapis.com/auth/gmail.readonly",
        "https://www.googleapis.com/auth/gmail.modify",
    )
    link_types: ClassVar[tuple[str, ...]] = ("email",)
    config_schema: ClassVar[type[GmailConfig]] = GmailConfig
    base_url: ClassVar[str] = GMAIL_API_BASE_URL

    @staticmethod
    def label_and_query(channel_id: str) -> tuple[str, str | None]:
        """Split a channel id into (label id, search query)."""
        if channel_id.startswith(GMAIL_SEARCH_PREFIX):
            return "INBOX", channel_id[len(GMAIL_SEARCH_PREFIX) :]
        return channel_id, None

    async def get_channels(self, token: AuthToken) -> list[Channel]:
        async with self.client(token) as client:
            result = await self._request(client, "GET", "/labels") or {}
        return [
            Channel(id=label["id"], title=label.get("name"))
            for label in result.get("labels") or []
            if label.get("type") != "system" or label["id"] in GMAIL_VISIBLE_SYSTEM_LABELS
        ]

    async def fetch_page(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        state: SyncState,
    ) -> SyncPage:
        if state.phase == INCREMENTAL_PHASE and state.sync_token:
            try:
                return await self._fetch_history(client, channel_id, state)
            except SourceError as e:
                if e.details.get("status_code") != 404:
                    raise
            return await self._restart_as_listing(client, channel_id)

        page = await self._list_threads(client, channel_id, state.cursor)
        if state.phase == GMAIL_LIST_PHASE:
            page.sync_token = state.sync_token
        return page

    async def _restart_as_listing(self, client: httpx.AsyncClient, channel_id: str) -> SyncPage:
        """Replace an expired history run with a listing of the label.

        The stored history id is dropped and the mailbox's current one is
        carried through the listing, so the next push syncs from there.
        """
        logger.info("Gmail history expired, listing threads instead", extra={"channel_id": channel_id})
        await self.clear(KEY_LAST_SYNC_TOKEN + channel_id)
        profile = await self._request(client, "GET", "/profile") or {}
        history_id = profile.get("historyId")

        page = await self._list_threads(client, channel_id, None)
        page.phase = GMAIL_LIST_PHASE
        page.sync_token = str(history_id) if history_id else None
        return page

    async def _list_threads(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        cursor: str | None,
    ) -> SyncPage:
        label_id, query = self.label_and_query(channel_id)
        params: dict[str, Any] = {"labelIds": label_id, "maxResults": self.config.page_size}
        if cursor:
            params["pageToken"] = cursor
        if query:
            params["q"] = query

        result = await self._request(client, "GET", "/threads", params=params) or {}
        next_token = result.get("nextPageToken")
        return SyncPage(
            items=result.get("threads") or [],
            has_more=bool(next_token),
            cursor=next_token,
        )

    async def _fetch_history(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        state: SyncState,
    ) -> SyncPage:
        label_id, query = self.label_and_query(channel_id)
        params: dict[str, Any] = {
            "startHistoryId": state.sync_token,
            "historyTypes": "messageAdded",
            "maxResults": self.config.page_size,
        }
        if query is None:
            params["labelId"] = label_id
        if state.cursor:
            params["pageToken"] = state.cursor

        result = await self._request(client, "GET", "/history", params=params) or {}

        thread_ids: list[str] = []
        for record in result.get("history") or []:
            for added in record.get("messagesAdded") or []:
                thread_id = (added.get("message") or {}).get("threadId")
                if thread_id and thread_id not in thread_ids:
                    thread_ids.append(thread_id)

        next_token = result.get("nextPageToken")
        return SyncPage(
            items=[{"id": thread_id} for thread_id in thread_ids],
            has_more=bool(next_token),
            cursor=next_token,
            sync_token=result.get("historyId"),
        )

    async def transform(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        item: dict[str, Any],
        state: SyncState,
    ) -> NewLinkWithNotes | None:
        thread = await self._request(
            client,
            "GET",
            f"/threads/{item['id']}",
            params={"format": "full"},
        )
        return thread_to_link(thread)

    # =========================================================================
    # PUSH NOTIFICATIONS
    # =========================================================================

    async def setup_webhook(self, channel_id: str) -> None:
        topic = await self.create_webhook_url(channel_id)
        if not topic.startswith("projects/"):
            raise SetupError(
                "Gmail push needs a Pub/Sub topic name",
                self.name,
                {"channel_id": channel_id, "topic": topic},
            )

        label_id, _ = self.label_and_query(channel_id)
        token = await self.get_token(channel_id)
        async with self.client(token) as client:
            result = await self._request(
                client,
                "POST",
                "/watch",
                json={"labelIds": [label_id], "topicName": topic},
            )

        watch = WatchRegistration(
            topic=topic,
            history_id=str(result["historyId"]),
            expiry=datetime.fromtimestamp(int(result["expiration"]) / 1000, UTC),
        )
        await self.set(KEY_WATCH + channel_id, watch.model_dump(mode="json"))
        logger.info(
            "Gmail watch registered",
            extra={"channel_id": channel_id, "expiry": watch.expiry.isoformat() if watch.expiry else None},
        )

    async def teardown_webhook(self, channel_id: str) -> None:
        if not await self.get(KEY_WATCH + channel_id):
            return
        token = await self.get_token(channel_id)
        async with self.client(token) as client:
            await self._request(client, "POST", "/stop")

    async def load_watch(self, channel_id: str) -> WatchRegistration | None:
        raw = await self.get(KEY_WATCH + channel_id)
        return None if raw is None else WatchRegistration.model_validate(raw)

    async def verify_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        if await self.load_watch(channel_id) is None:
            raise WebhookVerificationError(
                "No Gmail watch registered for channel",
                self.name,
                {"channel_id": channel_id},
            )
        if not self.payload(request).get("message"):
            raise WebhookVerificationError("Push body carries no Pub/Sub message", self.name)

    async def route_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        data = decode_push_message(self.payload(request))
        if not data.get("historyId"):
            return

        watch = await self.load_watch(channel_id)
        if watch is not None and watch.expiry is not None and watch.expiry < datetime.now(UTC):
            await self._setup_webhook_safely(channel_id)

        start = await self.get(KEY_LAST_SYNC_TOKEN + channel_id)
        if not start and watch is not None:
            start = watch.history_id
        if not start:
            logger.warning("No history id to sync from", extra={"channel_id": channel_id})
            return

        await self.start_incremental_sync(channel_id, sync_token=str(start))
