"""Custom exceptions for twister.

This module defines the exceptions raised by sources, the host primitives,
and the CLI. All exceptions inherit from TwisterError, so callers can catch
everything twister raises with a single except clause.

Exception Hierarchy:
    TwisterError (base)
    ├── ConfigError - Configuration or manifest loading/validation failures
    ├── SourceError (base for provider failures)
    │   ├── AuthUnavailableError - No token for (provider, channel)
    │   ├── TransientProviderError - Network error, rate limit, 5xx
    │   ├── WebhookVerificationError - Bad or missing webhook signature
    │   └── SetupError - Webhook or watch provisioning failed
    ├── StateNotFoundError - Sync state missing where one is required
    ├── CallbackError - Unknown callback token or handler
    └── CliError - Plot API or CLI usage failures
"""

from typing import Any


class TwisterError(Exception):
    """Base exception for all twister errors.

    Args:
        message: Human-readable error message.
        details: Optional dictionary with additional error context.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigError(TwisterError):
    """Raised when configuration loading or validation fails.

    Examples:
        - Invalid YAML syntax in .twister.yaml
        - A twist.yaml manifest that fails validation
        - Malformed ~/.plot/config.json
    """


class SourceError(TwisterError):
    """Base exception for source (provider) errors.

    Args:
        message: Human-readable error message.
        source_name: Name of the source that raised the error.
        details: Optional dictionary with additional error context.
    """

    def __init__(
        self,
        message: str,
        source_name: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.source_name = source_name

    def __str__(self) -> str:
        base = f"[{self.source_name}] {self.message}"
        if self.details:
            return f"{base} | Details: {self.details}"
        return base


class AuthUnavailableError(SourceError):
    """Raised when no token is available for a channel.

    Examples:
        - The user revoked the integration
        - The provider rejected the token with 401
    """


class TransientProviderError(SourceError):
    """Raised when a provider call fails in a way worth retrying.

    Examples:
        - Connection reset or timeout
        - HTTP 429 rate limit
        - HTTP 5xx from the provider
    """


class WebhookVerificationError(SourceError):
    """Raised when an inbound webhook fails verification.

    This never escapes a webhook handler: the request is logged and dropped.

    Examples:
        - Signature header missing or not matching the stored secret
        - No secret stored for the channel
        - Calendar channel id not matching the active watch
    """


class SetupError(SourceError):
    """Raised when webhook or watch provisioning fails.

    Channel enablement logs this and continues with the initial sync.
    """


class StateNotFoundError(TwisterError):
    """Raised when sync state is required but absent."""


class CallbackError(TwisterError):
    """Raised for unknown callback tokens or unregistered handler names."""


class CliError(TwisterError):
    """Raised when a CLI command cannot complete.

    Examples:
        - No deploy token could be resolved
        - The Plot API answered with an error status
    """
