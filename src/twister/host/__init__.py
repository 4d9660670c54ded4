"""Host primitives and local implementations."""

from twister.host.base import Callbacks, Integrations, Network, Store, Tasks, Tools
from twister.host.local import LocalHost
from twister.host.memory import (
    CallbackRegistry,
    MemoryIntegrations,
    MemoryNetwork,
    MemoryStore,
    ScopedCallbacks,
    TaskQueue,
)
from twister.host.sqlite import SqliteStore

__all__ = [
    "CallbackRegistry",
    "Callbacks",
    "Integrations",
    "LocalHost",
    "MemoryIntegrations",
    "MemoryNetwork",
    "MemoryStore",
    "Network",
    "ScopedCallbacks",
    "SqliteStore",
    "Store",
    "Tasks",
    "TaskQueue",
    "Tools",
]
