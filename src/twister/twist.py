"""Twist project helpers used by the `plot` CLI.

A twist directory holds a `twist.yaml` manifest, an entry module named by
the manifest's `entry` ("module:ClassName"), and a `plot-twist.md` spec.
This module scaffolds such directories, checks them before deploy, and
bundles them for upload.
"""

from __future__ import annotations

import ast
import base64
import io
import re
import zipfile
from pathlib import Path
from string import Template

from twister.config import load_manifest, save_manifest
from twister.constants import TWIST_MANIFEST_FILE_NAME, TWIST_SPEC_FILE_NAME
from twister.exceptions import CliError, ConfigError
from twister.logging import get_logger
from twister.models import TwistManifest

logger = get_logger(__name__)

# Never shipped in a bundle
EXCLUDED_DIRS = frozenset(
    {".git", ".venv", "venv", "__pycache__", ".pytest_cache", ".mypy_cache", "dist", "build"}
)
EXCLUDED_SUFFIXES = frozenset({".pyc", ".pyo"})

TWIST_TEMPLATE = Template('''"""$display_name."""

from twister.host import LocalHost
from twister.models import Channel


class $class_name:
    """$description"""

    def __init__(self, host: LocalHost) -> None:
        self.host = host

    async def activate(self, channels: dict[str, str]) -> None:
        """Enable one channel per source, e.g. {"github": "acme/api"}."""
        for source_name, channel_id in channels.items():
            source = await self.host.attach(source_name)
            await source.on_channel_enabled(Channel(id=channel_id))
''')

SOURCE_TEMPLATE = Template('''"""$display_name source."""

from __future__ import annotations

from typing import Any, ClassVar

import httpx

from twister.models import (
    AuthProvider,
    AuthToken,
    Channel,
    NewLinkWithNotes,
    SyncPage,
    SyncState,
)
from twister.plugins.base import Source


class $class_name(Source):
    """$description"""

    name: ClassVar[str] = "$name"
    provider: ClassVar[AuthProvider] = AuthProvider.GITHUB
    link_types: ClassVar[tuple[str, ...]] = ("item",)
    base_url: ClassVar[str] = "https://api.example.com"

    async def get_channels(self, token: AuthToken) -> list[Channel]:
        async with self.client(token) as client:
            data = await self._request(client, "GET", "/channels") or []
        return [Channel(id=str(c["id"]), title=c.get("name")) for c in data]

    async def fetch_page(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        state: SyncState,
    ) -> SyncPage:
        params = {"page": state.page, "per_page": self.config.page_size}
        data = await self._request(client, "GET", f"/channels/{channel_id}/items", params=params) or []
        return SyncPage(items=data, has_more=len(data) == self.config.page_size)

    async def transform(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        item: dict[str, Any],
        state: SyncState,
    ) -> NewLinkWithNotes | None:
        return NewLinkWithNotes(
            source=f"$name:item:{item['id']}",
            type="item",
            title=item.get("title"),
            channel_id=channel_id,
        )
''')

SPEC_TEMPLATE = Template("""# $display_name

$description

## Behaviour

Describe what this $kind should do, which providers it reads from, and
what it should create in Plot.
""")


def class_name_for(name: str, suffix: str) -> str:
    """Turn a package name like "my-twist" into "MyTwist"."""
    parts = [p for p in re.split(r"[^A-Za-z0-9]+", name) if p]
    base = "".join(p[:1].upper() + p[1:] for p in parts) or suffix
    if base[0].isdigit():
        base = f"{suffix}{base}"
    return base if base.endswith(suffix) else f"{base}{suffix}"


def scaffold_twist(
    directory: Path,
    *,
    name: str,
    display_name: str | None = None,
    description: str | None = None,
    kind: str = "twist",
) -> list[Path]:
    """Create a new twist (or source) project.

    Args:
        directory: Target directory; created if missing.
        name: Package name stored in the manifest.
        display_name: Human-readable name; defaults to `name`.
        description: One-line description for the manifest and spec.
        kind: "twist" or "source".

    Returns:
        The files written.

    Raises:
        CliError: If the directory already holds a manifest.
    """
    if (directory / TWIST_MANIFEST_FILE_NAME).exists():
        raise CliError(
            f"{TWIST_MANIFEST_FILE_NAME} already exists",
            {"directory": str(directory)},
        )

    module = "source" if kind == "source" else "twist"
    class_name = class_name_for(name, "Source" if kind == "source" else "Twist")
    display_name = display_name or name
    description = description or f"A Plot {kind}."

    directory.mkdir(parents=True, exist_ok=True)
    manifest = TwistManifest(
        name=name,
        display_name=display_name,
        description=description,
        kind=kind,
        entry=f"{module}:{class_name}",
    )
    fields = {
        "name": name,
        "display_name": display_name,
        "description": description,
        "class_name": class_name,
        "kind": kind,
    }
    template = SOURCE_TEMPLATE if kind == "source" else TWIST_TEMPLATE

    entry_path = directory / f"{module}.py"
    entry_path.write_text(template.substitute(fields))
    spec_path = directory / TWIST_SPEC_FILE_NAME
    spec_path.write_text(SPEC_TEMPLATE.substitute(fields))

    return [save_manifest(directory, manifest), entry_path, spec_path]


# =============================================================================
# LINT
# =============================================================================


def iter_project_files(directory: Path) -> list[Path]:
    """Files that belong to the project, skipping caches and virtualenvs."""
    files = []
    for path in sorted(directory.rglob("*")):
        relative = path.relative_to(directory)
        if any(part in EXCLUDED_DIRS for part in relative.parts):
            continue
        if path.is_file() and path.suffix not in EXCLUDED_SUFFIXES:
            files.append(path)
    return files


def entry_module_path(directory: Path, module: str) -> Path | None:
    base = directory.joinpath(*module.split("."))
    for candidate in (base.with_suffix(".py"), base / "__init__.py"):
        if candidate.exists():
            return candidate
    return None


def lint_twist(directory: Path) -> list[str]:
    """Check a twist directory before deploy.

    Validates the manifest, parses every Python file, and checks that the
    manifest's entry class is defined in its module.

    Returns:
        Human-readable problems; empty when the twist is valid.
    """
    errors: list[str] = []

    try:
        manifest: TwistManifest | None = load_manifest(directory)
    except ConfigError as e:
        errors.append(e.message)
        manifest = None

    trees: dict[Path, ast.Module] = {}
    for path in iter_project_files(directory):
        if path.suffix != ".py":
            continue
        relative = path.relative_to(directory)
        try:
            trees[path] = ast.parse(path.read_text(), filename=str(relative))
        except SyntaxError as e:
            errors.append(f"{relative}:{e.lineno}: {e.msg}")

    if manifest is not None:
        module_path = entry_module_path(directory, manifest.entry_module)
        if module_path is None:
            errors.append(f"Entry module '{manifest.entry_module}' not found")
        elif module_path in trees:
            class_names = {
                node.name for node in ast.walk(trees[module_path]) if isinstance(node, ast.ClassDef)
            }
            if manifest.entry_class not in class_names:
                errors.append(
                    f"Entry class '{manifest.entry_class}' not defined in "
                    f"{module_path.relative_to(directory)}"
                )

    logger.debug("Linted twist", extra={"directory": str(directory), "errors": len(errors)})
    return errors


# =============================================================================
# BUNDLE
# =============================================================================


def bundle_twist(directory: Path) -> str:
    """Zip the project files and return the archive base64-encoded."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for path in iter_project_files(directory):
            archive.write(path, path.relative_to(directory).as_posix())
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def write_generated_files(directory: Path, files: dict[str, str]) -> list[Path]:
    """Write files returned by the generate endpoint, refusing paths outside `directory`.

    Raises:
        CliError: If a returned path escapes the directory.
    """
    root = directory.resolve()
    written = []
    for relative, content in files.items():
        target = (root / relative).resolve()
        if not target.is_relative_to(root):
            raise CliError("Generated file path escapes the twist directory", {"path": relative})
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        written.append(target)
    return written
