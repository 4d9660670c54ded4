"""Base source interface and the batch sync engine.

A source connects one provider (GitHub, Linear, Gmail, ...) to Plot. It
lists the user's channels, keeps enabled channels in sync through resumable
batches, and ingests webhooks. Everything provider-specific lives in a few
hooks; the lifecycle lives here:

- Channel enablement: lock, webhook setup (best-effort), seed SyncState,
  schedule the first batch.
- Batch sync: load state, fetch one page, transform and upsert each item,
  then persist the advanced cursor and reschedule, or finish and clean up.
- Webhook ingest: handshake, verify, route. Verification failures are
  logged and dropped; they never propagate to the caller.
- Channel disablement: cancel renewals, tear down webhooks, clear state,
  and archive the channel's threads.

Design Principles:
- All I/O is async and goes through the host primitives in `Tools`
- Tokens are resolved per batch or per webhook; clients are never cached
- State is JSON in the store so any process can pick up the next batch
- One bad item never aborts a batch; a failed fetch does

Example Source:
    class TrackerSource(Source):
        name = "tracker"
        provider = AuthProvider.ATLASSIAN
        base_url = "https://tracker.example.com/api"

        async def get_channels(self, token):
            ...

        async def fetch_page(self, client, channel_id, state):
            data = await self._request(client, "GET", "/items", params={"page": state.page})
            return SyncPage(items=data, has_more=len(data) == self.config.page_size)

        async def transform(self, client, channel_id, item, state):
            return NewLinkWithNotes(source=f"tracker:item:{item['id']}", type="item")
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Coroutine
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar
from urllib.parse import urlparse

import httpx

from twister.constants import (
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_USER_AGENT,
    INCREMENTAL_PHASE,
    KEY_LAST_SYNC_TOKEN,
    KEY_SYNC_ENABLED,
    KEY_SYNC_LOCK,
    KEY_SYNC_STATE,
    KEY_WATCH,
    KEY_WATCH_RENEWAL_TASK,
    KEY_WEBHOOK_HANDSHAKE,
    KEY_WEBHOOK_ID,
    KEY_WEBHOOK_SECRET,
    KEY_WEBHOOK_URL,
)
from twister.exceptions import (
    AuthUnavailableError,
    CallbackError,
    SourceError,
    TransientProviderError,
    WebhookVerificationError,
)
from twister.logging import LogContext, get_logger
from twister.models import (
    SourceConfig,
    SyncState,
    WebhookRequest,
)
from twister.webhooks import parse_body

if TYPE_CHECKING:
    from datetime import datetime

    from twister.host.base import Tools
    from twister.models import (
        AuthProvider,
        AuthToken,
        Callback,
        Channel,
        NewLinkWithNotes,
        SyncPage,
        WebhookResponse,
    )

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0", "::1"})


def callback_handler(func: F) -> F:
    """Mark a source method as a valid target for persisted callbacks."""
    func.__callback_handler__ = True  # type: ignore[attr-defined]
    return func


def is_local_url(url: str) -> bool:
    """True for URLs a provider cannot reach (localhost and friends)."""
    return (urlparse(url).hostname or "") in LOCAL_HOSTS


class Source(ABC):
    """Abstract base class for provider sources.

    Class Attributes:
        name: Unique identifier (e.g., "github", "google-calendar").
        provider: Auth provider whose tokens this source uses.
        scopes: OAuth scopes the source needs.
        link_types: Thread types the source produces.
        config_schema: Pydantic model for the source's configuration.
        base_url: Provider API base URL for HTTP clients.
        first_phase: Phase a fresh sync starts in, for multi-phase sources.

    Subclasses implement `get_channels`, `fetch_page` and `transform`, and
    override the webhook hooks if the provider can push changes.
    """

    name: ClassVar[str]
    provider: ClassVar[AuthProvider]
    scopes: ClassVar[tuple[str, ...]] = ()
    link_types: ClassVar[tuple[str, ...]] = ()
    config_schema: ClassVar[type[SourceConfig]] = SourceConfig
    base_url: ClassVar[str] = ""
    first_phase: ClassVar[str | None] = None

    def __init__(self, tools: Tools, config: SourceConfig | None = None) -> None:
        """Initialize the source.

        Args:
            tools: Host primitives scoped to this source.
            config: Source configuration; defaults to `config_schema()`.
        """
        self.tools = tools
        self._config = config if config is not None else self.config_schema()
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def config(self) -> SourceConfig:
        return self._config

    # =========================================================================
    # STORE HELPERS
    # =========================================================================

    async def get(self, key: str) -> Any | None:
        return await self.tools.store.get(key)

    async def set(self, key: str, value: Any) -> None:
        await self.tools.store.set(key, value)

    async def clear(self, key: str) -> None:
        await self.tools.store.clear(key)

    async def load_state(self, channel_id: str) -> SyncState | None:
        raw = await self.get(KEY_SYNC_STATE + channel_id)
        return None if raw is None else SyncState.model_validate(raw)

    async def save_state(self, channel_id: str, state: SyncState) -> None:
        await self.set(KEY_SYNC_STATE + channel_id, state.model_dump(mode="json"))

    async def clear_state(self, channel_id: str) -> None:
        await self.clear(KEY_SYNC_STATE + channel_id)

    def channel_keys(self, channel_id: str) -> list[str]:
        """Store keys owned by a channel, all cleared on disable."""
        prefixes = (
            KEY_SYNC_STATE,
            KEY_WEBHOOK_ID,
            KEY_WEBHOOK_SECRET,
            KEY_WEBHOOK_URL,
            KEY_WEBHOOK_HANDSHAKE,
            KEY_WATCH,
            KEY_WATCH_RENEWAL_TASK,
            KEY_SYNC_LOCK,
            KEY_LAST_SYNC_TOKEN,
            KEY_SYNC_ENABLED,
        )
        return [prefix + channel_id for prefix in prefixes]

    # =========================================================================
    # CALLBACKS AND TASKS
    # =========================================================================

    async def callback(self, handler_name: str, *args: Any) -> str:
        """Persist a callback to one of this source's handlers.

        Raises:
            CallbackError: If `handler_name` is not a @callback_handler method.
        """
        handler = getattr(type(self), handler_name, None)
        if not getattr(handler, "__callback_handler__", False):
            raise CallbackError(
                "Not a callback handler",
                {"source": self.name, "handler": handler_name},
            )
        return await self.tools.callbacks.create(handler_name, *args)

    async def run_task(
        self,
        handler_name: str,
        *args: Any,
        run_at: datetime | None = None,
    ) -> str:
        """Schedule a handler through the task queue; return the task id."""
        token = await self.callback(handler_name, *args)
        return await self.tools.tasks.run_task(token, run_at)

    async def dispatch(self, callback: Callback, extra: tuple[Any, ...]) -> Any:
        """Run a persisted callback on this source.

        Raises:
            CallbackError: If the callback names an unknown handler.
        """
        handler = getattr(self, callback.handler_name, None)
        if handler is None or not getattr(handler, "__callback_handler__", False):
            raise CallbackError(
                "Unknown callback handler",
                {"source": self.name, "handler": callback.handler_name},
            )
        return await handler(*callback.args, *extra)

    async def on_task_abandoned(self, callback: Callback, extra: tuple[Any, ...]) -> None:
        """End a sync run whose batch task the host gave up on.

        Clears the sync state and lock so the channel can be enabled or
        synced again.
        """
        if callback.handler_name != "sync_batch" or not callback.args:
            return
        channel_id = str(callback.args[0])
        error = extra[0] if extra else None
        await self.clear_state(channel_id)
        await self.clear(KEY_SYNC_LOCK + channel_id)
        logger.error(
            "Sync abandoned after repeated failures",
            extra={"source": self.name, "channel_id": channel_id, "error": str(error)},
        )

    def spawn(self, coro: Coroutine[Any, Any, Any], description: str) -> asyncio.Task[Any]:
        """Run `coro` in the background; failures are logged, never raised."""
        task = asyncio.create_task(coro)
        self._background.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    "Background task failed",
                    extra={"source": self.name, "task": description, "error": str(t.exception())},
                )

        task.add_done_callback(_done)
        return task

    # =========================================================================
    # AUTH AND HTTP
    # =========================================================================

    async def get_token(self, channel_id: str) -> AuthToken:
        """Resolve the channel's token.

        Raises:
            AuthUnavailableError: If the host has no token for the channel.
        """
        token = await self.tools.integrations.get(self.provider, channel_id)
        if token is None:
            raise AuthUnavailableError(
                "No authorization available for channel",
                self.name,
                {"channel_id": channel_id},
            )
        return token

    def client_headers(self, token: AuthToken) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token.token}",
            "Accept": "application/json",
            "User-Agent": DEFAULT_USER_AGENT,
        }

    @asynccontextmanager
    async def client(self, token: AuthToken) -> AsyncIterator[httpx.AsyncClient]:
        """HTTP client for one operation, closed when the block exits."""
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.client_headers(token),
            timeout=DEFAULT_HTTP_TIMEOUT_SECONDS,
        ) as client:
            yield client

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> Any:
        """Make a provider API call and decode the JSON response.

        Returns:
            Decoded JSON, or None for empty responses.

        Raises:
            AuthUnavailableError: On 401.
            TransientProviderError: On 429, 5xx, or network errors.
            SourceError: On any other error status (details carry status_code).
        """
        try:
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            details: dict[str, Any] = {"status_code": status, "url": str(e.request.url)}
            if status == 401:
                raise AuthUnavailableError("Provider rejected the token", self.name, details) from e
            if status == 429 or status >= 500:
                if "Retry-After" in e.response.headers:
                    details["retry_after"] = e.response.headers["Retry-After"]
                raise TransientProviderError(
                    "Provider temporarily unavailable", self.name, details
                ) from e
            details["body"] = e.response.text[:500]
            raise SourceError(f"Provider returned HTTP {status}", self.name, details) from e
        except httpx.RequestError as e:
            raise TransientProviderError(
                "Provider request failed",
                self.name,
                {"url": url, "error": str(e)},
            ) from e

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # =========================================================================
    # CHANNEL LIFECYCLE
    # =========================================================================

    @abstractmethod
    async def get_channels(self, token: AuthToken) -> list[Channel]:
        """List the channels the user can enable."""
        ...

    async def resolve_channel_id(self, channel_id: str, *, enabling: bool) -> str:
        """Map an alias channel id (e.g. "primary") to the real one."""
        return channel_id

    async def on_channel_enabled(self, channel: Channel) -> None:
        """Start syncing a channel.

        A held sync lock means enablement is already underway, so the call
        returns without doing anything.
        """
        channel_id = await self.resolve_channel_id(channel.id, enabling=True)

        if await self.get(KEY_SYNC_LOCK + channel_id):
            logger.info(
                "Sync already in progress, ignoring enable",
                extra={"source": self.name, "channel_id": channel_id},
            )
            return

        await self.set(KEY_SYNC_ENABLED + channel_id, True)
        await self.prepare_channel(channel_id, channel)
        await self.start_sync(channel_id)

    async def prepare_channel(self, channel_id: str, channel: Channel) -> None:  # noqa: B027
        """Persist per-channel data needed before the first batch."""
        pass

    async def start_sync(self, channel_id: str, *, time_min: datetime | None = None) -> None:
        """Set up push delivery (best-effort) and start a full batch sync."""
        await self.set(KEY_SYNC_LOCK + channel_id, True)
        await self._setup_webhook_safely(channel_id)
        await self.start_batch_sync(channel_id, initial_sync=True, time_min=time_min)

    async def on_channel_disabled(self, channel: Channel) -> None:
        """Stop syncing a channel and archive what it produced."""
        channel_id = await self.resolve_channel_id(channel.id, enabling=False)
        await self.stop_sync(channel_id)
        await self.tools.integrations.archive_links(
            {"syncProvider": self.name, "syncableId": channel_id}
        )
        logger.info(
            "Channel disabled",
            extra={"source": self.name, "channel_id": channel_id},
        )

    async def stop_sync(self, channel_id: str) -> None:
        """Cancel renewals, tear down push delivery, and clear channel state."""
        renewal_task = await self.get(KEY_WATCH_RENEWAL_TASK + channel_id)
        if renewal_task:
            await self.tools.tasks.cancel_task(renewal_task)

        await self._teardown_webhook_safely(channel_id)

        for key in self.channel_keys(channel_id):
            await self.clear(key)

    # =========================================================================
    # WEBHOOK PROVISIONING
    # =========================================================================

    async def setup_webhook(self, channel_id: str) -> None:  # noqa: B027
        """Register push delivery with the provider. Default: none."""
        pass

    async def teardown_webhook(self, channel_id: str) -> None:  # noqa: B027
        """Remove push delivery from the provider. Default: none."""
        pass

    async def create_webhook_url(self, channel_id: str) -> str:
        """Ask the host for an endpoint routed to `on_webhook(channel_id, ...)`."""
        url = await self.tools.network.create_webhook("on_webhook", channel_id)
        await self.set(KEY_WEBHOOK_URL + channel_id, url)
        return url

    async def _setup_webhook_safely(self, channel_id: str) -> None:
        try:
            await self.setup_webhook(channel_id)
        except Exception as e:
            logger.error(
                "Webhook setup failed, continuing with sync",
                extra={"source": self.name, "channel_id": channel_id, "error": str(e)},
            )

    async def _teardown_webhook_safely(self, channel_id: str) -> None:
        try:
            await self.teardown_webhook(channel_id)
        except Exception as e:
            logger.warning(
                "Webhook teardown failed",
                extra={"source": self.name, "channel_id": channel_id, "error": str(e)},
            )

        url = await self.get(KEY_WEBHOOK_URL + channel_id)
        if url:
            try:
                await self.tools.network.delete_webhook(url)
            except Exception as e:
                logger.warning(
                    "Failed to delete host webhook",
                    extra={"source": self.name, "channel_id": channel_id, "error": str(e)},
                )

    # =========================================================================
    # BATCH SYNC ENGINE
    # =========================================================================

    @abstractmethod
    async def fetch_page(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        state: SyncState,
    ) -> SyncPage:
        """Fetch the page of items that `state` points at."""
        ...

    @abstractmethod
    async def transform(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        item: Any,
        state: SyncState,
    ) -> NewLinkWithNotes | None:
        """Map one provider item to a thread, or None to skip it."""
        ...

    async def start_batch_sync(
        self,
        channel_id: str,
        *,
        initial_sync: bool = True,
        **fields: Any,
    ) -> None:
        """Seed a fresh SyncState and schedule the first batch."""
        fields.setdefault("phase", self.first_phase)
        state = SyncState(initial_sync=initial_sync, **fields)

        await self.set(KEY_SYNC_LOCK + channel_id, True)
        await self.save_state(channel_id, state)
        await self.run_task("sync_batch", channel_id)

        logger.info(
            "Sync started",
            extra={
                "source": self.name,
                "channel_id": channel_id,
                "initial_sync": initial_sync,
                "phase": state.phase,
            },
        )

    async def start_incremental_sync(self, channel_id: str, **fields: Any) -> bool:
        """Start a delta sync unless a sync already holds the lock.

        Returns:
            True if a sync was scheduled.
        """
        if await self.get(KEY_SYNC_LOCK + channel_id):
            logger.info(
                "Sync in progress, skipping incremental sync",
                extra={"source": self.name, "channel_id": channel_id},
            )
            return False

        fields.setdefault("phase", INCREMENTAL_PHASE)
        await self.start_batch_sync(channel_id, initial_sync=False, **fields)
        return True

    @callback_handler
    async def sync_batch(self, channel_id: str) -> None:
        """Process one page of a sync run and schedule the next one."""
        state = await self.load_state(channel_id)
        if state is None:
            if await self.get(KEY_SYNC_LOCK + channel_id):
                await self.clear(KEY_SYNC_LOCK + channel_id)
                logger.warning(
                    "Cleared stale sync lock",
                    extra={"source": self.name, "channel_id": channel_id},
                )
            return

        with LogContext(
            logger,
            sync_source=self.name,
            sync_channel=channel_id,
            sync_batch=state.batch_number,
        ):
            try:
                token = await self.get_token(channel_id)
                async with self.client(token) as client:
                    page = await self.fetch_page(client, channel_id, state)
                    for item in page.items:
                        link = await self._transform_item(client, channel_id, item, state)
                        if link is not None:
                            await self.save_link(link, channel_id, initial_sync=state.initial_sync)
            except AuthUnavailableError:
                logger.warning("Authorization unavailable, abandoning sync")
                await self.clear_state(channel_id)
                await self.clear(KEY_SYNC_LOCK + channel_id)
                raise

            await self._advance(channel_id, state, page)

    async def _transform_item(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        item: Any,
        state: SyncState,
    ) -> NewLinkWithNotes | None:
        try:
            return await self.transform(client, channel_id, item, state)
        except AuthUnavailableError:
            raise
        except Exception as e:
            item_id = item.get("id") if isinstance(item, dict) else None
            logger.warning(
                "Skipping item that failed to transform",
                extra={"item_id": item_id, "error": str(e)},
            )
            return None

    async def _advance(self, channel_id: str, state: SyncState, page: SyncPage) -> None:
        if page.phase and page.phase != state.phase:
            state = state.model_copy(update={"phase": page.phase, "sync_token": page.sync_token})

        count = len(page.items)
        processed = state.items_processed + count

        if page.has_more:
            next_state = state.model_copy(
                update={
                    "page": state.page + 1,
                    "offset": state.offset + count,
                    "cursor": page.cursor,
                    "batch_number": state.batch_number + 1,
                    "items_processed": processed,
                }
            )
        elif page.next_phase:
            next_state = state.model_copy(
                update={
                    "phase": page.next_phase,
                    "page": 1,
                    "offset": 0,
                    "cursor": None,
                    "batch_number": state.batch_number + 1,
                    "items_processed": processed,
                }
            )
        else:
            try:
                await self.clear_state(channel_id)
                if page.sync_token:
                    await self.set(KEY_LAST_SYNC_TOKEN + channel_id, page.sync_token)
            finally:
                await self.clear(KEY_SYNC_LOCK + channel_id)
            logger.info(
                "Sync complete",
                extra={"items_processed": processed, "batches": state.batch_number},
            )
            return

        await self.save_state(channel_id, next_state)
        await self.run_task("sync_batch", channel_id)
        logger.debug(
            "Batch complete, continuing",
            extra={"items_processed": processed, "phase": next_state.phase},
        )

    async def save_link(
        self,
        link: NewLinkWithNotes,
        channel_id: str,
        *,
        initial_sync: bool | None = None,
    ) -> None:
        """Stamp sync metadata on a thread and upsert it.

        An initial sync marks threads read and unarchived; other upserts leave
        both flags to whatever the transformer set. Upserts that only carry
        schedule occurrences never touch the parent thread's flags.
        """
        occurrences_only = bool(link.schedule_occurrences) and link.model_fields_set <= {
            "source",
            "type",
            "schedule_occurrences",
        }
        link.meta = {**link.meta, "syncProvider": self.name, "syncableId": channel_id}
        link.channel_id = channel_id
        if initial_sync and not occurrences_only:
            link.unread = False
            link.archived = False
        await self.tools.integrations.save_link(link)

    # =========================================================================
    # WEBHOOK INGEST
    # =========================================================================

    @callback_handler
    async def on_webhook(
        self,
        channel_id: str,
        request: WebhookRequest | dict[str, Any],
    ) -> WebhookResponse | None:
        """Entry point for inbound webhooks: handshake, verify, route."""
        if isinstance(request, dict):
            request = WebhookRequest.model_validate(request)

        response = await self.handshake(channel_id, request)
        if response is not None:
            return response

        try:
            await self.verify_webhook(channel_id, request)
        except WebhookVerificationError as e:
            logger.warning(
                "Dropping unverified webhook",
                extra={"source": self.name, "channel_id": channel_id, "reason": e.message},
            )
            return None

        await self.route_webhook(channel_id, request)
        return None

    async def handshake(self, channel_id: str, request: WebhookRequest) -> WebhookResponse | None:
        """Answer provider handshakes; None means a regular delivery."""
        return None

    async def verify_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        """Authenticate a delivery.

        Raises:
            WebhookVerificationError: If the request must be dropped.
        """
        raise WebhookVerificationError("Source does not accept webhooks", self.name)

    async def route_webhook(self, channel_id: str, request: WebhookRequest) -> None:  # noqa: B027
        """Act on a verified delivery."""
        pass

    async def require_secret(self, channel_id: str) -> str:
        secret = await self.get(KEY_WEBHOOK_SECRET + channel_id)
        if not secret:
            raise WebhookVerificationError(
                "No webhook secret stored for channel",
                self.name,
                {"channel_id": channel_id},
            )
        return str(secret)

    def require_raw_body(self, request: WebhookRequest) -> str:
        if not request.raw_body:
            raise WebhookVerificationError("Request has no raw body to verify", self.name)
        return request.raw_body

    @staticmethod
    def payload(request: WebhookRequest) -> dict[str, Any]:
        return parse_body(request.body, request.raw_body)
