"""Command-line interface for Selfcast.

Commands operate on the project in the current directory (``selfcast.yaml``,
``data/``, ``output/``) and act with the system administrator identity.

Commands:
- serve: Run the API and public site.
- build: Render project pages into the output directory.
- create-project: Create a project.
- set: Save content fields and publish the project page.
- show: Print a project's content.
- fingerprint: Print the current and last revalidated fingerprints.
- revalidate: Trigger revalidation of a public path.
- issue-token: Mint a signed API token.
- watch: Republish projects whose documents change on disk.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any

import click

from . import __version__
from .auth import SYSTEM_IDENTITY, Identity, TokenSigner
from .config import get_secret, load_config, resolve_dir
from .editor import ContentEditor
from .errors import RegenerationFailure, SelfcastError
from .fingerprint import fingerprint_items
from .log import setup_logging
from .render import LocalRenderBoundary, create_render_boundary
from .revalidation import create_trigger
from .store import YamlContentStore
from .utils import titleize
from .validation import normalize_items


class _Services:
    """Store, boundary and trigger wired from the project's configuration."""

    def __init__(self, config: dict[str, Any]):
        self.config = config
        self.store = YamlContentStore(resolve_dir(config, "data_dir"))
        self.boundary = create_render_boundary(config, self.store)
        self.trigger = create_trigger(config, self.store, self.boundary)


def _services(ctx: click.Context) -> _Services:
    config = ctx.obj["config"]
    try:
        return _Services(config)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from None


def _parse_pairs(pairs: tuple[str, ...]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got {pair!r}")
        parsed[key.strip()] = value
    return parsed


@click.group()
@click.version_option(version=__version__, prog_name="selfcast")
@click.option("--log-level", default=None, help="Logging level (overrides selfcast.yaml)")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None):
    """Selfcast personal brand sites."""
    try:
        config = load_config(Path.cwd())
    except SelfcastError as exc:
        raise click.ClickException(exc.message) from None
    setup_logging(log_level or config.get("log_level", "INFO"))
    ctx.obj = {"config": config}


@cli.command()
@click.option("--port", type=int, required=False, help="HTTP port (overrides selfcast.yaml)")
@click.option(
    "--ws-port",
    type=int,
    required=False,
    help="Port for the live reload websocket server (overrides selfcast.yaml ws_port)",
)
@click.option("--live-reload", is_flag=True, help="Reload preview pages after regeneration")
@click.pass_context
def serve(ctx: click.Context, port: int | None, ws_port: int | None, live_reload: bool):
    """Run the API and the public site."""
    from .server import SelfcastServer

    try:
        server = SelfcastServer(
            ctx.obj["config"], http_port=port, ws_port=ws_port, live_reload=live_reload
        )
    except (SelfcastError, ValueError) as exc:
        raise click.ClickException(str(exc)) from None
    server.start()


@cli.command()
@click.argument("project_ids", nargs=-1)
@click.option("--clean", is_flag=True, help="Empty the output directory first")
@click.pass_context
def build(ctx: click.Context, project_ids: tuple[str, ...], clean: bool):
    """Render project pages into the output directory."""
    services = _services(ctx)
    if not isinstance(services.boundary, LocalRenderBoundary):
        raise click.ClickException("build requires render_mode: local")
    try:
        results = services.boundary.build_all(project_ids or None, clean=clean)
    except SelfcastError as exc:
        raise click.ClickException(exc.message) from None
    for result in results:
        if result.fingerprint:
            services.trigger.ledger.record(result.path, result.fingerprint)
    click.echo(f"Built {len(results)} pages into {services.boundary.output_dir}")


@cli.command("create-project")
@click.argument("project_id")
@click.argument("name")
@click.option("--content", "pairs", multiple=True, metavar="KEY=VALUE", help="Initial content")
@click.pass_context
def create_project(ctx: click.Context, project_id: str, name: str, pairs: tuple[str, ...]):
    """Create a project."""
    services = _services(ctx)
    try:
        project = services.store.create_project(
            project_id, name, content=normalize_items(_parse_pairs(pairs))
        )
    except SelfcastError as exc:
        raise click.ClickException(exc.message) from None
    click.echo(f"Created project {project.project_id} ({project.name})")


@cli.command("set")
@click.argument("project_id")
@click.argument("pairs", nargs=-1, required=True, metavar="KEY=VALUE...")
@click.option("--no-publish", is_flag=True, help="Save without revalidating the page")
@click.pass_context
def set_content(ctx: click.Context, project_id: str, pairs: tuple[str, ...], no_publish: bool):
    """Save content fields and publish the project page."""
    services = _services(ctx)
    editor = ContentEditor(services.store, services.trigger)
    try:
        result = asyncio.run(
            editor.save(SYSTEM_IDENTITY, project_id, _parse_pairs(pairs), publish=not no_publish)
        )
    except SelfcastError as exc:
        raise click.ClickException(exc.message) from None
    click.echo(f"Saved {project_id} (fingerprint {result.fingerprint})")
    if no_publish:
        return
    if result.publish_error:
        click.echo(click.style(f"Not published: {result.publish_error}", fg="red"), err=True)
        raise SystemExit(1)
    if result.outcome is not None and result.outcome.skipped:
        click.echo("Unchanged; already published")
    else:
        click.echo("Published")


@cli.command()
@click.argument("project_id")
@click.pass_context
def show(ctx: click.Context, project_id: str):
    """Print a project's content."""
    services = _services(ctx)
    try:
        project = services.store.get_project(project_id)
    except SelfcastError as exc:
        raise click.ClickException(exc.message) from None
    click.echo(click.style(f"{project.name} ({project.path})", bold=True))
    for item in project.content:
        click.echo(f"  {titleize(item.key)}: {item.value}")


@cli.command()
@click.argument("project_id")
@click.pass_context
def fingerprint(ctx: click.Context, project_id: str):
    """Print the current and last revalidated fingerprints."""
    services = _services(ctx)
    try:
        project = services.store.get_project(project_id)
    except SelfcastError as exc:
        raise click.ClickException(exc.message) from None
    current = fingerprint_items(project.content)
    last = project.last_revalidated_fingerprint
    click.echo(f"current:     {current}")
    click.echo(f"revalidated: {last or '-'}")
    if current != last:
        click.echo(click.style("stale: next save will republish", fg="yellow"))


@cli.command()
@click.argument("path")
@click.option("--fingerprint", "content_fingerprint", default=None, help="Fingerprint to publish")
@click.pass_context
def revalidate(ctx: click.Context, path: str, content_fingerprint: str | None):
    """Trigger revalidation of a public path."""
    services = _services(ctx)
    try:
        outcome = asyncio.run(
            services.trigger.revalidate(SYSTEM_IDENTITY, path, fingerprint=content_fingerprint)
        )
    except RegenerationFailure as exc:
        click.echo(click.style(f"Revalidation failed: {exc.message}", fg="red"), err=True)
        raise SystemExit(1) from None
    except SelfcastError as exc:
        raise click.ClickException(exc.message) from None
    click.echo(f"{outcome.path}: {outcome.state.value}")


@cli.command("issue-token")
@click.option("--role", type=click.Choice(["admin", "client"]), required=True)
@click.option("--project", "project_id", default=None, help="Project owned by a client")
@click.option("--user", "user_id", default="cli", show_default=True)
@click.pass_context
def issue_token(ctx: click.Context, role: str, project_id: str | None, user_id: str):
    """Mint a signed API token."""
    if role == "client" and not project_id:
        raise click.UsageError("--project is required for client tokens")
    config = ctx.obj["config"]
    try:
        signer = TokenSigner(get_secret(config), max_age=int(config.get("token_max_age", 86400)))
        token = signer.issue(Identity(user_id=user_id, role=role, project_id=project_id))
    except SelfcastError as exc:
        raise click.ClickException(exc.message) from None
    click.echo(token)


@cli.command()
@click.pass_context
def watch(ctx: click.Context):
    """Republish projects whose documents change on disk."""
    from .server import ProjectWatcher

    services = _services(ctx)
    watcher = ProjectWatcher(services.store, services.trigger)
    watcher.start()
    click.echo(f"Watching {services.store.projects_dir} (Ctrl+C to stop)")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        watcher.stop()


def main():
    """Entry point for the CLI application."""
    cli()
