"""Configuration loading for twister.

Two kinds of configuration exist:

- `.twister.yaml`, the runtime config of a local host (store path, webhook
  base URL, task retry policy, tokens, per-source settings). Environment
  variables written as ${VAR_NAME} or $VAR_NAME are expanded.
- `~/.plot/config.json`, where the `plot` CLI keeps its API URL and tokens.

Example:
    config = load_config()
    print(config.tasks.max_attempts, config.sources.github.page_size)
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from twister.constants import (
    CONFIG_FILE_NAME,
    PLOT_CONFIG_DIR_NAME,
    PLOT_CONFIG_FILE_NAME,
    TWIST_MANIFEST_FILE_NAME,
)
from twister.exceptions import ConfigError
from twister.models import CliConfig, TwisterConfig, TwistManifest

# Pattern to match ${VAR_NAME} or $VAR_NAME
ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def expand_env_vars(value: Any) -> Any:
    """Recursively expand environment variables in config values.

    If the env var is not set, the placeholder is left unchanged.

    Args:
        value: The value to expand (can be str, dict, list, or primitive).

    Returns:
        The value with environment variables expanded.
    """
    if isinstance(value, str):

        def replace_env_var(match: re.Match[str]) -> str:
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        return ENV_VAR_PATTERN.sub(replace_env_var, value)

    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]

    else:
        return value


def find_config_file() -> Path | None:
    """Search for .twister.yaml in the current and parent directories.

    Returns:
        Path to the config file if found, None otherwise.
    """
    current = Path.cwd()

    for directory in [current, *current.parents]:
        config_file = directory / CONFIG_FILE_NAME
        if config_file.exists():
            return config_file

    return None


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}", {"error": str(e)}) from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")
    return data


def load_config(config_path: Path | None = None) -> TwisterConfig:
    """Load the local host configuration.

    Args:
        config_path: Path to config file. If None, searches for .twister.yaml
                    in the current directory and parent directories.

    Returns:
        Loaded configuration with env vars expanded. Defaults when no file exists.

    Raises:
        ConfigError: If the file is not valid YAML or fails validation.
    """
    if config_path is None:
        config_path = find_config_file()

    if config_path is None or not config_path.exists():
        return TwisterConfig()

    data = expand_env_vars(_read_yaml(config_path))

    try:
        return TwisterConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}", {"errors": e.errors()}) from e


# =============================================================================
# CLI CONFIG
# =============================================================================


def cli_config_path() -> Path:
    """Location of the CLI config file (~/.plot/config.json)."""
    return Path.home() / PLOT_CONFIG_DIR_NAME / PLOT_CONFIG_FILE_NAME


def load_cli_config(path: Path | None = None) -> CliConfig:
    """Load the CLI config, returning defaults when the file is absent.

    Raises:
        ConfigError: If the file exists but is not valid JSON.
    """
    path = path or cli_config_path()
    if not path.exists():
        return CliConfig()

    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}", {"error": str(e)}) from e

    return CliConfig.model_validate(data)


def save_cli_config(config: CliConfig, path: Path | None = None) -> Path:
    """Write the CLI config, creating ~/.plot if needed."""
    path = path or cli_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.model_dump(by_alias=True, exclude_none=True), indent=2))
    return path


# =============================================================================
# TWIST MANIFEST
# =============================================================================


def load_manifest(directory: Path) -> TwistManifest:
    """Load and validate the twist.yaml manifest in a twist directory.

    Raises:
        ConfigError: If the manifest is missing, not YAML, or invalid.
    """
    path = directory / TWIST_MANIFEST_FILE_NAME
    if not path.exists():
        raise ConfigError(f"No {TWIST_MANIFEST_FILE_NAME} found in {directory}")

    try:
        return TwistManifest.model_validate(_read_yaml(path))
    except ValidationError as e:
        raise ConfigError(f"Invalid manifest {path}", {"errors": e.errors()}) from e


def save_manifest(directory: Path, manifest: TwistManifest) -> Path:
    """Write a twist.yaml manifest, omitting unset optional fields."""
    path = directory / TWIST_MANIFEST_FILE_NAME
    with open(path, "w") as f:
        yaml.safe_dump(manifest.model_dump(exclude_none=True), f, sort_keys=False)
    return path
