"""CLI entry point for plot-twister.

This module provides the `plot` command-line interface for building,
deploying and inspecting twists, managing priorities, and running sources
against a local host.

Commands:
    create: Scaffold a new twist or source
    generate: Generate twist code from plot-twist.md
    lint: Check a twist before deploy
    deploy: Upload a twist to Plot
    logs: Stream a deployed twist's logs
    priority: List and create priorities
    sources: List the registered sources
    sync: Enable a channel on a local host and run its sync

Example:
    plot create --name standup-notes
    plot deploy --environment private --description "Daily standup digest"
    plot sync github acme/api
"""

from __future__ import annotations

import os
import sys
import uuid
from pathlib import Path
from typing import Any, NoReturn

import click

from twister import __version__
from twister.constants import (
    PLOT_DEFAULT_API_URL,
    TWIST_ENVIRONMENTS,
    TWIST_SPEC_FILE_NAME,
)
from twister.exceptions import CliError, ConfigError
from twister.models import CliConfig, LogEntry

SEVERITY_COLORS = {
    "error": "red",
    "warn": "yellow",
    "warning": "yellow",
    "info": "cyan",
}


def _success(msg: str) -> str:
    """Format success message with green checkmark."""
    return click.style("✓", fg="green") + " " + msg


def _error(msg: str) -> str:
    """Format error message with red X."""
    return click.style("✗", fg="red") + " " + msg


def _info(msg: str) -> str:
    """Format info message with blue arrow."""
    return click.style("→", fg="blue") + " " + msg


def _fail(ctx: click.Context, msg: str) -> NoReturn:
    """Print an error (with traceback when verbose) and exit 1."""
    if ctx.obj.get("verbose") and sys.exc_info()[0] is not None:
        import traceback

        click.echo(traceback.format_exc(), err=True)
    click.echo(_error(msg), err=True)
    sys.exit(1)


def _cli_config(ctx: click.Context) -> CliConfig:
    from twister.config import load_cli_config

    if "cli_config" not in ctx.obj:
        try:
            ctx.obj["cli_config"] = load_cli_config()
        except ConfigError as e:
            _fail(ctx, str(e))
    return ctx.obj["cli_config"]


def _api_url(ctx: click.Context) -> str:
    return ctx.obj.get("api_url") or _cli_config(ctx).api_url or PLOT_DEFAULT_API_URL


def _deploy_token(ctx: click.Context, flag: str | None) -> str:
    """Token for deploy, generate and logs: flag/env, then the config file."""
    token = flag or _cli_config(ctx).deploy_token
    if not token:
        click.echo(_error("No deploy token found."), err=True)
        click.echo(_info("Pass --deploy-token or set PLOT_DEPLOY_TOKEN"), err=True)
        sys.exit(1)
    return token


def _api_token(ctx: click.Context) -> str:
    """Token for priority commands: PLOT_API_TOKEN, apiToken, then the deploy token."""
    config = _cli_config(ctx)
    token = (
        os.environ.get("PLOT_API_TOKEN")
        or config.api_token
        or os.environ.get("PLOT_DEPLOY_TOKEN")
        or config.deploy_token
    )
    if not token:
        click.echo(_error("No API token found."), err=True)
        click.echo(_info("Set PLOT_API_TOKEN or add apiToken to ~/.plot/config.json"), err=True)
        sys.exit(1)
    return token


def _format_log(entry: LogEntry) -> str:
    timestamp = entry.timestamp.strftime("%H:%M:%S") if entry.timestamp else "--:--:--"
    color = SEVERITY_COLORS.get(entry.severity.lower(), "white")
    return (
        click.style(timestamp, dim=True)
        + " "
        + click.style(f"{entry.severity.upper():<5}", fg=color)
        + " "
        + entry.message
    )


directory_option = click.option(
    "--dir",
    "directory",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Twist directory",
)
deploy_token_option = click.option(
    "--deploy-token",
    envvar="PLOT_DEPLOY_TOKEN",
    default=None,
    help="Deploy token (default: PLOT_DEPLOY_TOKEN, then ~/.plot/config.json)",
)


@click.group()
@click.version_option(version=__version__, prog_name="plot")
@click.option(
    "--api-url",
    envvar="PLOT_API_URL",
    default=None,
    help=f"Plot API URL (default: {PLOT_DEFAULT_API_URL})",
)
@click.option("--verbose", "-v", is_flag=True, help="Show detailed output")
@click.pass_context
def cli(ctx: click.Context, api_url: str | None, verbose: bool) -> None:
    """Plot - build, deploy and run twists.

    Twists connect Plot to the tools you already use. Sources sync threads
    from GitHub, Linear, Asana, Gmail, Google Calendar and Slack.
    """
    import logging

    from twister.logging import setup_logging

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["api_url"] = api_url

    setup_logging(logging.DEBUG if verbose else logging.WARNING)


# =============================================================================
# TWIST COMMANDS
# =============================================================================


@cli.command()
@directory_option
@click.option("--name", default=None, help="Package name (prompted if missing)")
@click.option("--display-name", default=None, help="Human-readable name")
@click.option("--description", default=None, help="One-line description")
@click.option("--source", "as_source", is_flag=True, help="Scaffold a source instead of a twist")
@click.pass_context
def create(
    ctx: click.Context,
    directory: Path,
    name: str | None,
    display_name: str | None,
    description: str | None,
    as_source: bool,
) -> None:
    """Scaffold a new twist in a directory."""
    from twister.twist import scaffold_twist

    if name is None:
        name = click.prompt("Twist name", default=directory.resolve().name)

    try:
        written = scaffold_twist(
            directory,
            name=name,
            display_name=display_name,
            description=description,
            kind="source" if as_source else "twist",
        )
    except (CliError, ValueError) as e:
        _fail(ctx, f"Could not create twist: {e}")

    for path in written:
        click.echo(_success(f"Created {path}"))

    click.echo()
    click.echo(click.style("Next steps:", bold=True))
    click.echo(f"  Describe your twist in {TWIST_SPEC_FILE_NAME}")
    click.echo("  plot lint")
    click.echo("  plot deploy")


@cli.command()
@directory_option
@click.option(
    "--spec",
    "spec_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"Spec file (default: <dir>/{TWIST_SPEC_FILE_NAME})",
)
@click.option("--id", "twist_id", default=None, help="Twist id to record in the manifest")
@deploy_token_option
@click.pass_context
def generate(
    ctx: click.Context,
    directory: Path,
    spec_path: Path | None,
    twist_id: str | None,
    deploy_token: str | None,
) -> None:
    """Generate twist code from a plain-language spec."""
    import asyncio

    from twister.api import PlotApi
    from twister.config import load_manifest, save_manifest
    from twister.models import TwistManifest
    from twister.twist import write_generated_files

    spec_path = spec_path or directory / TWIST_SPEC_FILE_NAME
    if not spec_path.exists():
        _fail(ctx, f"Spec file not found: {spec_path}")

    token = _deploy_token(ctx, deploy_token)
    spec = spec_path.read_text()

    async def run_generate() -> dict[str, Any]:
        async with PlotApi(_api_url(ctx), token) as api:
            return await api.generate(spec)

    click.echo(_info("Generating twist..."))
    try:
        result = asyncio.run(run_generate())
        written = write_generated_files(directory, result.get("files") or {})
    except CliError as e:
        _fail(ctx, f"Generate failed: {e}")

    for path in written:
        click.echo(_success(f"Wrote {path}"))

    try:
        manifest = load_manifest(directory)
    except ConfigError:
        manifest = TwistManifest(
            name=directory.resolve().name,
            entry=result.get("entry") or "twist:Twist",
        )
    new_id = twist_id or result.get("twistId") or result.get("id")
    if new_id:
        manifest = manifest.model_copy(update={"twist_id": new_id})
    save_manifest(directory, manifest)
    click.echo(_success("Updated manifest"))


@cli.command()
@directory_option
@click.pass_context
def lint(ctx: click.Context, directory: Path) -> None:
    """Check the manifest and code of a twist."""
    from twister.twist import lint_twist

    errors = lint_twist(directory)
    if errors:
        for error in errors:
            click.echo(_error(error))
        sys.exit(1)

    click.echo(_success("No problems found"))


@cli.command()
@directory_option
@click.option("--id", "twist_id", default=None, help="Twist id (default: from manifest)")
@deploy_token_option
@click.option("--name", default=None, help="Name shown in Plot")
@click.option("--description", default=None, help="Description shown in Plot")
@click.option(
    "--environment",
    type=click.Choice(TWIST_ENVIRONMENTS),
    default="personal",
    show_default=True,
)
@click.option("--dry-run", is_flag=True, help="Validate without uploading")
@click.pass_context
def deploy(
    ctx: click.Context,
    directory: Path,
    twist_id: str | None,
    deploy_token: str | None,
    name: str | None,
    description: str | None,
    environment: str,
    dry_run: bool,
) -> None:
    """Bundle a twist and deploy it to Plot."""
    import asyncio

    from twister.api import PlotApi
    from twister.config import load_manifest, save_manifest
    from twister.twist import bundle_twist, lint_twist

    try:
        manifest = load_manifest(directory)
    except ConfigError as e:
        _fail(ctx, str(e))

    name = name or manifest.display_name or manifest.name
    description = description or manifest.description
    twist_id = twist_id or manifest.twist_id

    errors = lint_twist(directory)
    if environment != "personal" and not description:
        errors.append(f"A description is required to deploy to '{environment}'")

    if errors:
        for error in errors:
            click.echo(_error(error), err=True)
        sys.exit(1)

    if dry_run:
        click.echo(_success("Validation passed"))
        return

    token = _deploy_token(ctx, deploy_token)
    body = {
        "module": bundle_twist(directory),
        "entry": manifest.entry,
        "name": name,
        "description": description,
        "environment": environment,
    }

    async def run_deploy() -> dict[str, Any]:
        async with PlotApi(_api_url(ctx), token) as api:
            return await api.deploy(twist_id, body)

    click.echo(_info(f"Deploying {name} to {environment}..."))
    try:
        result = asyncio.run(run_deploy())
    except CliError as e:
        if e.details.get("status_code") == 401:
            click.echo(_error("Authentication failed."), err=True)
            click.echo(
                _info("Your deploy token is invalid or expired. Log in to Plot for a new one."),
                err=True,
            )
            sys.exit(1)
        _fail(ctx, f"Deploy failed: {e}")

    deployed_id = result.get("id") or twist_id
    if deployed_id and manifest.twist_id != deployed_id:
        save_manifest(directory, manifest.model_copy(update={"twist_id": deployed_id}))

    click.echo(_success(f"Deployed {name}"))
    if deployed_id:
        click.echo(_info(f"Twist id: {deployed_id}"))
    if result.get("version"):
        click.echo(_info(f"Version: {result['version']}"))


@cli.command()
@click.argument("twist_id_arg", metavar="[TWIST_ID]", required=False)
@directory_option
@click.option("--id", "twist_id", default=None, help="Twist id (default: from manifest)")
@click.option(
    "--environment",
    type=click.Choice(TWIST_ENVIRONMENTS),
    default="personal",
    show_default=True,
)
@deploy_token_option
@click.pass_context
def logs(
    ctx: click.Context,
    twist_id_arg: str | None,
    directory: Path,
    twist_id: str | None,
    environment: str,
    deploy_token: str | None,
) -> None:
    """Stream the logs of a deployed twist. Press Ctrl+C to stop."""
    import asyncio

    from twister.api import PlotApi, to_log_entry
    from twister.config import load_manifest

    twist_id = twist_id_arg or twist_id
    if twist_id is None:
        try:
            twist_id = load_manifest(directory).twist_id
        except ConfigError:
            twist_id = None
    if not twist_id:
        _fail(ctx, "No twist id. Pass one or deploy the twist first.")

    token = _deploy_token(ctx, deploy_token)

    async def stream() -> None:
        async with PlotApi(_api_url(ctx), token) as api:
            async for event, data in api.stream_logs(twist_id, environment=environment):
                if event == "log":
                    click.echo(_format_log(to_log_entry(data)))
                elif event == "error":
                    message = data.get("message") if isinstance(data, dict) else data
                    raise CliError(str(message))

    click.echo(_info(f"Streaming logs for {twist_id} ({environment})"))
    try:
        asyncio.run(stream())
    except KeyboardInterrupt:
        click.echo()
        click.echo(_info("Stopped."))
    except CliError as e:
        _fail(ctx, f"Log stream failed: {e}")


# =============================================================================
# PRIORITY COMMANDS
# =============================================================================


@cli.group()
@click.pass_context
def priority(ctx: click.Context) -> None:
    """Manage Plot priorities.

    Commands:
        list: Show all priorities
        create: Create a priority, optionally under a parent
    """
    pass


@priority.command("list")
@click.pass_context
def list_priorities(ctx: click.Context) -> None:
    """Show all priorities."""
    import asyncio

    from twister.api import PlotApi
    from twister.models import Priority

    token = _api_token(ctx)

    async def fetch() -> list[Priority]:
        async with PlotApi(_api_url(ctx), token) as api:
            return await api.list_priorities()

    try:
        priorities = asyncio.run(fetch())
    except CliError as e:
        _fail(ctx, f"Failed to list priorities: {e}")

    if not priorities:
        click.echo(_info("No priorities yet."))
        return

    click.echo(click.style(f"{'ID':<36}  {'TITLE':<30}  PARENT", bold=True))
    for p in priorities:
        click.echo(f"{p.id:<36}  {p.title:<30}  {p.parent_id or '-'}")


@priority.command("create")
@click.option("--name", default=None, help="Priority title (prompted if missing)")
@click.option("--parent-id", default=None, help="Parent priority UUID (prompted if missing)")
@click.pass_context
def create_priority(ctx: click.Context, name: str | None, parent_id: str | None) -> None:
    """Create a priority."""
    import asyncio

    from twister.api import PlotApi
    from twister.models import Priority

    if name is None:
        name = click.prompt("Priority name")
    if parent_id is None:
        parent_id = click.prompt("Parent priority id (blank for none)", default="", show_default=False)

    name = name.strip()
    if not name:
        _fail(ctx, "Priority name cannot be empty")

    parent_id = parent_id.strip() or None
    if parent_id is not None:
        try:
            uuid.UUID(parent_id)
        except ValueError:
            _fail(ctx, f"Invalid parent id '{parent_id}': expected a UUID")

    token = _api_token(ctx)

    async def run_create() -> Priority:
        async with PlotApi(_api_url(ctx), token) as api:
            return await api.create_priority(name, parent_id)

    try:
        created = asyncio.run(run_create())
    except CliError as e:
        _fail(ctx, f"Failed to create priority: {e}")

    click.echo(_success(f"Created priority '{created.title}'"))
    click.echo(_info(f"ID: {created.id}"))


# =============================================================================
# LOCAL HOST COMMANDS
# =============================================================================


@cli.command()
@click.pass_context
def sources(ctx: click.Context) -> None:
    """List the registered sources."""
    from twister.plugins.registry import SourceRegistry

    registry = SourceRegistry()
    registry.register_builtin_sources()
    registry.discover_sources()

    click.echo(click.style(f"{'SOURCE':<16}  {'PROVIDER':<10}  LINK TYPES", bold=True))
    for name in sorted(registry.list_sources()):
        source_class = registry.get_source_class(name)
        link_types = ", ".join(source_class.link_types)
        click.echo(f"{name:<16}  {source_class.provider.value:<10}  {link_types}")


@cli.command()
@click.argument("source_name", metavar="SOURCE")
@click.argument("channel_id", metavar="CHANNEL")
@click.option("--title", default=None, help="Channel title")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: nearest .twister.yaml)",
)
@click.pass_context
def sync(
    ctx: click.Context,
    source_name: str,
    channel_id: str,
    title: str | None,
    config_path: Path | None,
) -> None:
    """Enable CHANNEL on SOURCE using a local host and run the sync.

    Tokens come from the `tokens` section of .twister.yaml.
    """
    import asyncio

    from twister.config import load_config
    from twister.host import LocalHost
    from twister.models import Channel

    try:
        config = load_config(config_path)
    except ConfigError as e:
        _fail(ctx, str(e))

    async def run_sync() -> dict[str, int]:
        async with LocalHost(config) as host:
            host.registry.discover_sources()
            source = await host.attach(source_name)
            await source.on_channel_enabled(Channel(id=channel_id, title=title))
            runs = await host.tasks.drain()
            return {
                "links": len(host.integrations.links),
                "saves": len(host.integrations.saves),
                "runs": runs,
                "dropped": len(host.tasks.dropped),
            }

    click.echo(_info(f"Syncing {source_name} channel {channel_id}..."))
    try:
        stats = asyncio.run(run_sync())
    except KeyError:
        _fail(ctx, f"Unknown source '{source_name}'. Run 'plot sources' to list them.")
    except Exception as e:
        _fail(ctx, f"Sync failed: {e}")

    click.echo(_success(f"Upserted {stats['links']} links ({stats['saves']} saves)"))
    click.echo(_info(f"Ran {stats['runs']} tasks"))
    if stats["dropped"]:
        click.echo(_error(f"{stats['dropped']} tasks failed permanently"))
        sys.exit(1)


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
