"""Source plugin system: the Source base class and the SourceRegistry."""

from twister.plugins.base import Source, callback_handler
from twister.plugins.registry import SourceRegistry

__all__ = ["Source", "SourceRegistry", "callback_handler"]
