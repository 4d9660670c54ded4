"""A single-process host for running sources locally.

LocalHost wires the in-memory primitives (and optionally the SQLite store)
together from a TwisterConfig, attaches sources through the registry, and
lets callers drive the task queue and deliver webhooks by hand.

Example:
    async with LocalHost(load_config()) as host:
        github = await host.attach("github")
        await github.on_channel_enabled(Channel(id="acme/api"))
        await host.tasks.drain()
        print(len(host.integrations.links))
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from twister.exceptions import CallbackError
from twister.host.base import Store, Tools
from twister.host.memory import (
    CallbackRegistry,
    MemoryIntegrations,
    MemoryNetwork,
    MemoryStore,
    ScopedCallbacks,
    TaskQueue,
)
from twister.host.sqlite import SqliteStore
from twister.logging import get_logger
from twister.models import TwisterConfig
from twister.plugins.registry import SourceRegistry

if TYPE_CHECKING:
    from twister.models import WebhookRequest
    from twister.plugins.base import Source

logger = get_logger(__name__)


class LocalHost:
    """Hosts any number of sources in one process.

    Args:
        config: Host configuration; defaults to an in-memory setup.
        registry: Source registry; defaults to one with the built-in sources.
        integrations: Integrations backend; defaults to MemoryIntegrations
            seeded with `config.tokens`.
    """

    def __init__(
        self,
        config: TwisterConfig | None = None,
        *,
        registry: SourceRegistry | None = None,
        integrations: MemoryIntegrations | None = None,
    ) -> None:
        self.config = config or TwisterConfig(store={"path": ":memory:"})
        self.callbacks = CallbackRegistry()
        self.tasks = TaskQueue(
            self.callbacks,
            max_attempts=self.config.tasks.max_attempts,
            backoff_seconds=self.config.tasks.backoff_seconds,
        )
        self.integrations = integrations or MemoryIntegrations(self.config.tokens)
        self.routes: dict[str, str] = {}

        if registry is None:
            registry = SourceRegistry()
            registry.register_builtin_sources()
        self.registry = registry

        self._db: SqliteStore | None = None

    async def start(self) -> None:
        """Open the persistent store when one is configured."""
        if self.config.store.path != ":memory:" and self._db is None:
            self._db = SqliteStore(self.config.store.path)
            await self._db.initialize()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> LocalHost:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def tools_for(self, name: str) -> Tools:
        """Build the primitives for one source."""
        store: Store = self._db.scoped(name) if self._db is not None else MemoryStore()
        network = MemoryNetwork(self.callbacks, name, self.config.webhooks.base_url, self.routes)
        return Tools(
            store=store,
            tasks=self.tasks,
            callbacks=ScopedCallbacks(self.callbacks, name),
            network=network,
            integrations=self.integrations,
        )

    async def attach(self, name: str) -> Source:
        """Instantiate a source and register it as a callback target."""
        existing = self.registry.get_source(name)
        if existing is not None:
            return existing

        source = self.registry.create_source(
            name,
            self.tools_for(name),
            self.config.sources.for_source(name),
        )
        self.callbacks.register_target(name, source.dispatch, source.on_task_abandoned)
        logger.info("Attached source", extra={"source_name": name})
        return source

    async def deliver_webhook(self, url: str, request: WebhookRequest) -> Any:
        """Simulate an inbound webhook on an endpoint created by a source.

        Raises:
            CallbackError: If no source created an endpoint at `url`.
        """
        token = self.routes.get(url)
        if token is None:
            raise CallbackError("No webhook registered at URL", {"url": url})
        return await self.callbacks.run(token, request)
