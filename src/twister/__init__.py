"""twister: sync connectors that turn provider data into Plot threads."""

from twister.constants import VERSION

__version__ = VERSION

__all__ = ["__version__"]
