"""Shared fixtures: a local host with tokens for every provider, and a fake source."""

from __future__ import annotations

from typing import Any, ClassVar

import httpx
import pytest

from twister.constants import KEY_WEBHOOK_SECRET
from twister.exceptions import WebhookVerificationError
from twister.host import LocalHost
from twister.models import (
    AuthProvider,
    AuthToken,
    Channel,
    NewLinkWithNotes,
    NewNote,
    StoreConfig,
    SyncPage,
    SyncState,
    TasksConfig,
    TwisterConfig,
    WebhookRequest,
    WebhooksConfig,
)
from twister.plugins.base import Source
from twister.webhooks import verify_signature

HOOK_SECRET = "s3cret"


class FakeSource(Source):
    """Serves `items` from memory in pages of `config.page_size`."""

    name: ClassVar[str] = "fake"
    provider: ClassVar[AuthProvider] = AuthProvider.GITHUB
    link_types: ClassVar[tuple[str, ...]] = ("item",)
    base_url: ClassVar[str] = "https://fake.example.com"

    def __init__(self, tools: Any, config: Any = None) -> None:
        super().__init__(tools, config)
        self.items: list[dict[str, Any]] = []
        self.fail_ids: set[str] = set()
        self.phases: dict[str, list[dict[str, Any]]] = {}
        self.routed: list[dict[str, Any]] = []
        self.seen_states: list[SyncState] = []
        self.fetch_error: Exception | None = None

    async def get_channels(self, token: AuthToken) -> list[Channel]:
        return [Channel(id="c1", title="Channel 1")]

    async def fetch_page(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        state: SyncState,
    ) -> SyncPage:
        self.seen_states.append(state)
        if self.fetch_error is not None:
            raise self.fetch_error
        if state.phase in self.phases:
            phase_names = list(self.phases)
            index = phase_names.index(state.phase)
            next_phase = phase_names[index + 1] if index + 1 < len(phase_names) else None
            return SyncPage(items=self.phases[state.phase], next_phase=next_phase)

        size = self.config.page_size
        chunk = self.items[state.offset : state.offset + size]
        return SyncPage(
            items=chunk,
            has_more=state.offset + size < len(self.items),
            sync_token="token-1",
        )

    async def transform(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        item: dict[str, Any],
        state: SyncState,
    ) -> NewLinkWithNotes | None:
        if item["id"] in self.fail_ids:
            raise ValueError("malformed item")
        if item.get("skip"):
            return None
        return NewLinkWithNotes(
            source=f"fake:item:{item['id']}",
            type="item",
            title=item.get("title", item["id"]),
            notes=[NewNote(key="description", content=item.get("body", ""))],
        )

    async def setup_webhook(self, channel_id: str) -> None:
        await self.create_webhook_url(channel_id)
        await self.set(KEY_WEBHOOK_SECRET + channel_id, HOOK_SECRET)

    async def verify_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        secret = await self.require_secret(channel_id)
        if not verify_signature(
            secret,
            self.require_raw_body(request),
            request.header("x-signature"),
            prefix="sha256=",
        ):
            raise WebhookVerificationError("Signature missing or invalid", self.name)

    async def route_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        self.routed.append(self.payload(request))
        await self.start_incremental_sync(channel_id)


def make_items(count: int) -> list[dict[str, Any]]:
    return [{"id": f"item-{i}", "title": f"Item {i}", "body": f"Body {i}"} for i in range(count)]


@pytest.fixture
def host_config() -> TwisterConfig:
    """Create an in-memory host configuration with tokens for every provider."""
    return TwisterConfig(
        store=StoreConfig(path=":memory:"),
        webhooks=WebhooksConfig(base_url="https://hooks.example.com"),
        tasks=TasksConfig(max_attempts=3, backoff_seconds=30),
        tokens={
            "github": "gh-token",
            "linear": "lin-token",
            "asana": "asana-token",
            "google": "google-token",
            "slack": "xoxb-token",
        },
    )


@pytest.fixture
def host(host_config: TwisterConfig) -> LocalHost:
    """Create a local host with the built-in sources plus FakeSource."""
    local = LocalHost(host_config)
    local.registry.register_source(FakeSource)
    return local


@pytest.fixture
async def fake_source(host: LocalHost) -> FakeSource:
    """Attach a FakeSource to the host."""
    source = await host.attach("fake")
    assert isinstance(source, FakeSource)
    return source
