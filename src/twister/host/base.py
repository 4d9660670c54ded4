"""Host primitive interfaces.

Sources never talk to a database, a scheduler or an HTTP server directly.
The host hands each source a `Tools` bundle of five narrow primitives:

- Store: per-source key/value persistence (JSON-serializable values)
- Tasks: deferred, at-least-once execution of callbacks
- Callbacks: persisted references to a source's handler plus bound arguments
- Network: provisioning of inbound webhook URLs (or Pub/Sub topics)
- Integrations: token lookup, thread upserts, and the disable notification

`twister.host.memory` and `twister.host.sqlite` provide local
implementations; a hosted runtime provides its own.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime  # noqa: TC003 - used in signatures at runtime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from twister.models import AuthProvider, AuthToken, NewLinkWithNotes


class Store(ABC):
    """Key/value store scoped to one source."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value for `key`, or None if it is not set."""
        ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Set `key` to a JSON-serializable value."""
        ...

    @abstractmethod
    async def clear(self, key: str) -> None:
        """Remove `key`. Clearing a missing key is not an error."""
        ...

    @abstractmethod
    async def list(self, prefix: str = "") -> list[str]:
        """List keys starting with `prefix`."""
        ...

    @abstractmethod
    async def clear_all(self) -> None:
        """Remove every key."""
        ...


class Callbacks(ABC):
    """Creates and runs persisted callbacks for one source."""

    @abstractmethod
    async def create(self, handler_name: str, *args: Any) -> str:
        """Persist a callback to `handler_name` with bound `args`; return its token."""
        ...

    @abstractmethod
    async def run(self, token: str, *extra: Any) -> Any:
        """Run a callback, appending `extra` after the bound arguments."""
        ...

    @abstractmethod
    async def delete(self, token: str) -> None:
        """Forget a callback."""
        ...


class Tasks(ABC):
    """Deferred execution of callbacks. Delivery is at least once.

    A host that stops retrying a task must pass the callback and the last
    error to the owning source's `on_task_abandoned`.
    """

    @abstractmethod
    async def run_task(self, token: str, run_at: datetime | None = None) -> str:
        """Queue a callback to run at `run_at` (immediately if None); return a task id."""
        ...

    @abstractmethod
    async def cancel_task(self, task_id: str) -> None:
        """Cancel a queued task. Cancelling an unknown task is not an error."""
        ...


class Network(ABC):
    """Provisioning of inbound webhook endpoints."""

    @abstractmethod
    async def create_webhook(self, handler_name: str, *args: Any) -> str:
        """Create an endpoint that invokes `handler_name(*args, request)`; return its URL."""
        ...

    @abstractmethod
    async def delete_webhook(self, url: str) -> None:
        """Tear down an endpoint created by create_webhook."""
        ...


class Integrations(ABC):
    """Access to the user's provider connections and to the thread store."""

    @abstractmethod
    async def get(self, provider: AuthProvider, channel_id: str) -> AuthToken | None:
        """Return the token for a channel, or None when authorization is gone."""
        ...

    @abstractmethod
    async def save_link(self, link: NewLinkWithNotes) -> None:
        """Upsert a thread by its `source`, merging notes by key."""
        ...

    @abstractmethod
    async def archive_links(self, meta_filter: dict[str, Any]) -> None:
        """Archive every thread whose meta matches all pairs in `meta_filter`."""
        ...


@dataclass
class Tools:
    """The primitives a source is constructed with."""

    store: Store
    tasks: Tasks
    callbacks: Callbacks
    network: Network
    integrations: Integrations
