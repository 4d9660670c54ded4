"""Source registry for discovering and instantiating sources.

This module provides the SourceRegistry class that handles:
- Registration of the built-in sources
- Discovery of third-party sources via Python entry points
- Source instantiation with host tools and configuration

Entry Points:
    Third-party packages can register sources via entry points in pyproject.toml:

    [project.entry-points."twister.sources"]
    jira = "mypackage.jira:JiraSource"

Example Usage:
    registry = SourceRegistry()
    registry.register_builtin_sources()
    registry.discover_sources()

    github = registry.create_source("github", tools, GitHubConfig())
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from twister.logging import get_logger
from twister.plugins.base import Source  # noqa: TC001 - used at runtime

if TYPE_CHECKING:
    from twister.host.base import Tools
    from twister.models import SourceConfig

logger = get_logger(__name__)

SOURCE_ENTRY_POINT = "twister.sources"


class SourceRegistry:
    """Central registry of source classes and their live instances."""

    def __init__(self) -> None:
        self._source_classes: dict[str, type[Source]] = {}
        self._source_instances: dict[str, Source] = {}

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register_builtin_sources(self) -> None:
        """Register the seven built-in sources."""
        # Import here to avoid circular imports
        from twister.sources.asana import AsanaSource
        from twister.sources.github import GitHubSource
        from twister.sources.github_issues import GitHubIssuesSource
        from twister.sources.gmail import GmailSource
        from twister.sources.google_calendar import GoogleCalendarSource
        from twister.sources.linear import LinearSource
        from twister.sources.slack import SlackSource

        for source_class in (
            GitHubSource,
            GitHubIssuesSource,
            LinearSource,
            AsanaSource,
            GmailSource,
            GoogleCalendarSource,
            SlackSource,
        ):
            self.register_source(source_class)

        logger.debug("Registered all built-in sources")

    def register_source(self, source_class: type[Source]) -> None:
        """Register a source class.

        Args:
            source_class: The Source subclass to register.

        Raises:
            ValueError: If the name is already taken by a different class.
        """
        name = source_class.name
        if name in self._source_classes:
            existing = self._source_classes[name]
            if existing is not source_class:
                raise ValueError(f"Source '{name}' already registered by {existing.__module__}")
            return

        self._source_classes[name] = source_class
        logger.debug(f"Registered source: {name} ({source_class.__module__})")

    # =========================================================================
    # DISCOVERY
    # =========================================================================

    def discover_sources(self) -> None:
        """Discover and register sources from the twister.sources entry points.

        Errors during discovery are logged but don't stop the process.
        """
        from importlib.metadata import entry_points

        for ep in entry_points(group=SOURCE_ENTRY_POINT):
            try:
                self.register_source(ep.load())
                logger.info(f"Discovered source via entry point: {ep.name}")
            except Exception as e:
                logger.warning(
                    f"Failed to load source from entry point {ep.name}: {e}",
                    extra={"entry_point": ep.name, "group": SOURCE_ENTRY_POINT},
                )

    # =========================================================================
    # INSTANTIATION
    # =========================================================================

    def create_source(
        self,
        name: str,
        tools: Tools,
        config: SourceConfig | None = None,
    ) -> Source:
        """Create and return a source instance.

        If an instance already exists for this name, returns the existing one.

        Args:
            name: The source name (e.g., "github").
            tools: Host primitives scoped to the source.
            config: Configuration matching the source's config_schema.

        Returns:
            The source instance.

        Raises:
            KeyError: If no source is registered with this name.
            TypeError: If config doesn't match the source's config_schema.
        """
        if name in self._source_instances:
            return self._source_instances[name]

        if name not in self._source_classes:
            raise KeyError(f"No source registered with name '{name}'")

        source_class = self._source_classes[name]

        expected_schema = source_class.config_schema
        if config is not None and not isinstance(config, expected_schema):
            raise TypeError(
                f"Source '{name}' expects config of type {expected_schema.__name__}, "
                f"got {type(config).__name__}"
            )

        instance = source_class(tools, config)
        self._source_instances[name] = instance
        logger.debug(f"Created source instance: {name}")

        return instance

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_source(self, name: str) -> Source | None:
        """Get an existing source instance, or None if not instantiated."""
        return self._source_instances.get(name)

    def get_source_class(self, name: str) -> type[Source]:
        """Get a registered source class.

        Raises:
            KeyError: If no source is registered with this name.
        """
        if name not in self._source_classes:
            raise KeyError(f"No source registered with name '{name}'")
        return self._source_classes[name]

    def list_sources(self) -> list[str]:
        """List all registered source names."""
        return list(self._source_classes.keys())

    def get_config_schema(self, name: str) -> type[SourceConfig]:
        """Get the configuration schema for a source.

        Raises:
            KeyError: If no source is registered with this name.
        """
        return self.get_source_class(name).config_schema
