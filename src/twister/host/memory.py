"""In-memory host primitives for local runs and tests.

The callback registry, task queue and integrations here are shared by all
sources attached to a host; stores, callbacks and networks are handed out
per source so that keys and handler names stay scoped.
"""

from __future__ import annotations

import copy
import json
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from twister.exceptions import CallbackError
from twister.host.base import Callbacks, Integrations, Network, Store, Tasks
from twister.logging import get_logger
from twister.models import AuthToken, Callback

if TYPE_CHECKING:
    from twister.models import AuthProvider, NewLinkWithNotes, WebhookRequest

logger = get_logger(__name__)

Dispatcher = Callable[[Callback, tuple[Any, ...]], Awaitable[Any]]


def _json_copy(value: Any) -> Any:
    """Round-trip through JSON so stored values behave like persisted ones."""
    return json.loads(json.dumps(value))


# =============================================================================
# STORE
# =============================================================================


class MemoryStore(Store):
    """Dict-backed store. Values are copied in and out as JSON."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    async def clear(self, key: str) -> None:
        self._data.pop(key, None)

    async def list(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    async def clear_all(self) -> None:
        self._data.clear()


# =============================================================================
# CALLBACKS
# =============================================================================


class CallbackRegistry:
    """Shared table of callback tokens and the sources that handle them.

    A callback is stored as a `Callback` command object. Running it looks up
    the dispatcher registered for its target and hands over the callback
    plus any extra arguments supplied at run time.
    """

    def __init__(self) -> None:
        self._callbacks: dict[str, Callback] = {}
        self._targets: dict[str, Dispatcher] = {}
        self._abandon_handlers: dict[str, Dispatcher] = {}

    def register_target(
        self,
        name: str,
        dispatcher: Dispatcher,
        on_abandon: Dispatcher | None = None,
    ) -> None:
        """Route callbacks for `name` to `dispatcher`.

        `on_abandon` is told about tasks the queue gave up on, with the last
        error as the only extra argument.
        """
        self._targets[name] = dispatcher
        if on_abandon is not None:
            self._abandon_handlers[name] = on_abandon

    def create(self, target: str, handler_name: str, args: tuple[Any, ...]) -> str:
        token = uuid.uuid4().hex
        self._callbacks[token] = Callback(
            target=target,
            handler_name=handler_name,
            args=_json_copy(list(args)),
        )
        return token

    def get(self, token: str) -> Callback | None:
        return self._callbacks.get(token)

    async def run(self, token: str, *extra: Any) -> Any:
        callback = self._callbacks.get(token)
        if callback is None:
            raise CallbackError("Unknown callback token", {"token": token})

        dispatcher = self._targets.get(callback.target)
        if dispatcher is None:
            raise CallbackError(
                "No source registered for callback target",
                {"target": callback.target, "handler": callback.handler_name},
            )

        return await dispatcher(callback, extra)

    async def abandon(self, token: str, error: Exception) -> None:
        """Notify the callback's source that its task will not run again."""
        callback = self._callbacks.get(token)
        if callback is None:
            return
        handler = self._abandon_handlers.get(callback.target)
        if handler is None:
            return
        try:
            await handler(callback, (error,))
        except Exception as e:
            logger.error(
                "Abandon handler failed",
                extra={"target": callback.target, "handler": callback.handler_name, "error": str(e)},
            )

    def delete(self, token: str) -> None:
        self._callbacks.pop(token, None)

    def __len__(self) -> int:
        return len(self._callbacks)


class ScopedCallbacks(Callbacks):
    """The `Callbacks` primitive for one source, backed by a shared registry."""

    def __init__(self, registry: CallbackRegistry, target: str) -> None:
        self._registry = registry
        self._target = target

    async def create(self, handler_name: str, *args: Any) -> str:
        return self._registry.create(self._target, handler_name, args)

    async def run(self, token: str, *extra: Any) -> Any:
        return await self._registry.run(token, *extra)

    async def delete(self, token: str) -> None:
        self._registry.delete(token)


# =============================================================================
# TASKS
# =============================================================================


@dataclass
class QueuedTask:
    """A callback waiting to run."""

    task_id: str
    token: str
    run_at: datetime
    attempts: int = 0


class TaskQueue(Tasks):
    """Single-process task queue with a bounded retry policy.

    Tasks that raise are re-queued `backoff_seconds * attempts` later, up to
    `max_attempts` attempts in total. `max_attempts=None` retries forever.
    A task that runs out of attempts is reported to its source through
    `CallbackRegistry.abandon`.

    Args:
        callbacks: Registry used to run task callbacks.
        max_attempts: Attempts per task before it is dropped.
        backoff_seconds: Base delay between attempts.
    """

    def __init__(
        self,
        callbacks: CallbackRegistry,
        *,
        max_attempts: int | None = 5,
        backoff_seconds: float = 30.0,
    ) -> None:
        self._callbacks = callbacks
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._queue: dict[str, QueuedTask] = {}
        self.dropped: list[QueuedTask] = []

    async def run_task(self, token: str, run_at: datetime | None = None) -> str:
        task_id = uuid.uuid4().hex
        self._queue[task_id] = QueuedTask(
            task_id=task_id,
            token=token,
            run_at=run_at or datetime.now(UTC),
        )
        return task_id

    async def cancel_task(self, task_id: str) -> None:
        self._queue.pop(task_id, None)

    def pending(self) -> list[QueuedTask]:
        """Queued tasks ordered by when they are due."""
        return sorted(self._queue.values(), key=lambda t: t.run_at)

    def get(self, task_id: str) -> QueuedTask | None:
        return self._queue.get(task_id)

    async def run_pending(self, until: datetime | None = None) -> int:
        """Run every task due by `until` (default: now) once.

        Returns:
            Number of tasks attempted.
        """
        cutoff = until or datetime.now(UTC)
        due = [t for t in self.pending() if t.run_at <= cutoff]

        for task in due:
            if self._queue.pop(task.task_id, None) is None:
                continue  # cancelled by an earlier task in this pass
            await self._attempt(task)

        return len(due)

    async def drain(self, until: datetime | None = None, *, max_runs: int = 10_000) -> int:
        """Run tasks until nothing is due by `until`, including ones queued meanwhile.

        Returns:
            Total number of task attempts.
        """
        total = 0
        while total < max_runs:
            ran = await self.run_pending(until)
            if ran == 0:
                break
            total += ran
        return total

    async def _attempt(self, task: QueuedTask) -> None:
        task.attempts += 1
        try:
            await self._callbacks.run(task.token)
        except Exception as e:
            if self._max_attempts is not None and task.attempts >= self._max_attempts:
                logger.error(
                    "Task failed permanently",
                    extra={"task_id": task.task_id, "attempts": task.attempts, "error": str(e)},
                )
                self.dropped.append(task)
                await self._callbacks.abandon(task.token, e)
                return

            delay = timedelta(seconds=self._backoff_seconds * task.attempts)
            task.run_at = datetime.now(UTC) + delay
            self._queue[task.task_id] = task
            logger.warning(
                "Task failed, will retry",
                extra={"task_id": task.task_id, "attempts": task.attempts, "error": str(e)},
            )

    def __len__(self) -> int:
        return len(self._queue)


# =============================================================================
# NETWORK
# =============================================================================


class MemoryNetwork(Network):
    """Webhook endpoints for one source, routed through a shared table.

    A base URL starting with ``projects/`` is treated as a Pub/Sub topic
    prefix, producing topic names instead of URLs.
    """

    def __init__(
        self,
        registry: CallbackRegistry,
        target: str,
        base_url: str,
        routes: dict[str, str] | None = None,
    ) -> None:
        self._registry = registry
        self._target = target
        self._base_url = base_url.rstrip("/")
        self.routes = routes if routes is not None else {}

    async def create_webhook(self, handler_name: str, *args: Any) -> str:
        token = self._registry.create(self._target, handler_name, args)
        if self._base_url.startswith("projects/"):
            url = f"{self._base_url}-{self._target}-{token}"
        else:
            url = f"{self._base_url}/{self._target}/{token}"
        self.routes[url] = token
        return url

    async def delete_webhook(self, url: str) -> None:
        token = self.routes.pop(url, None)
        if token is not None:
            self._registry.delete(token)

    async def deliver(self, url: str, request: WebhookRequest) -> Any:
        """Simulate an inbound request on `url`."""
        token = self.routes.get(url)
        if token is None:
            raise CallbackError("No webhook registered at URL", {"url": url})
        return await self._registry.run(token, request)


# =============================================================================
# INTEGRATIONS
# =============================================================================


class MemoryIntegrations(Integrations):
    """Token table plus an in-memory thread store with upsert semantics.

    Upserts merge only the fields present in the incoming link. Notes merge by
    key (an empty notes list leaves existing notes alone) and schedule
    occurrences merge by their occurrence date.

    Args:
        tokens: Provider name to token, used for every channel of that provider.
    """

    def __init__(self, tokens: dict[str, str] | None = None) -> None:
        self._tokens: dict[tuple[str, str | None], str] = {
            (provider, None): token for provider, token in (tokens or {}).items()
        }
        self.links: dict[str, dict[str, Any]] = {}
        self.saves: list[dict[str, Any]] = []
        self.archive_calls: list[dict[str, Any]] = []

    def set_token(self, provider: str, token: str, channel_id: str | None = None) -> None:
        self._tokens[(provider, channel_id)] = token

    def revoke(self, provider: str, channel_id: str | None = None) -> None:
        self._tokens.pop((provider, channel_id), None)

    async def get(self, provider: AuthProvider, channel_id: str) -> AuthToken | None:
        name = provider.value
        token = self._tokens.get((name, channel_id)) or self._tokens.get((name, None))
        if token is None:
            return None
        return AuthToken(token=token, provider=provider)

    async def save_link(self, link: NewLinkWithNotes) -> None:
        incoming = link.to_upsert()
        self.saves.append(copy.deepcopy(incoming))

        existing = self.links.get(link.source)
        if existing is None:
            self.links[link.source] = incoming
            return

        for field, value in incoming.items():
            if field == "notes":
                _merge_notes(existing.setdefault("notes", []), value)
            elif field == "schedule_occurrences" and value is not None:
                _merge_occurrences(existing, value)
            elif field == "meta":
                existing.setdefault("meta", {}).update(value)
            else:
                existing[field] = value

    async def archive_links(self, meta_filter: dict[str, Any]) -> None:
        self.archive_calls.append(dict(meta_filter))
        for link in self.links.values():
            meta = link.get("meta", {})
            if all(meta.get(k) == v for k, v in meta_filter.items()):
                link["archived"] = True


def _merge_notes(existing: list[dict[str, Any]], incoming: list[dict[str, Any]]) -> None:
    by_key = {note["key"]: note for note in existing if note.get("key")}
    for note in incoming:
        key = note.get("key")
        if key and key in by_key:
            by_key[key].update(note)
        else:
            existing.append(note)
            if key:
                by_key[key] = note


def _merge_occurrences(existing: dict[str, Any], incoming: list[dict[str, Any]]) -> None:
    current = existing.get("schedule_occurrences") or []
    by_date = {occ["occurrence"]: occ for occ in current}
    for occ in incoming:
        if occ["occurrence"] in by_date:
            by_date[occ["occurrence"]].update(occ)
        else:
            current.append(occ)
            by_date[occ["occurrence"]] = occ
    existing["schedule_occurrences"] = current
