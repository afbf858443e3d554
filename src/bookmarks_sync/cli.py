"""CLI interface for x-bookmarks-sync.

Commands:
    setup       - Configure the X app credentials
    connect     - Authorize access to your X bookmarks
    sync        - Sync bookmarks (or one mapped folder) into the local store
    folders     - List X bookmark folders and their collections
    map-folder  - Map an X folder to a local collection
    status      - Show connection and last sync
    disconnect  - Forget the stored X credential
    serve       - Run the HTTP API
"""

import getpass
import sys
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import click

from .config import (
    CONFIG_FILE,
    DEFAULT_REDIRECT_URI,
    AppConfig,
    XAppConfig,
    config_exists,
    load_config,
    save_config,
)
from .errors import ConfigurationError, SyncError
from .logging_config import setup_logging


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--config", type=click.Path(), default=None, help="Config file path")
@click.option(
    "--user",
    "user_id",
    envvar="X_BOOKMARKS_USER",
    default=None,
    help="Local user id to act for (defaults to the login name)",
)
@click.pass_context
def main(ctx, verbose, config, user_id):
    """X Bookmarks Sync: mirror your X bookmarks into a local store."""
    setup_logging(debug=verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else CONFIG_FILE
    ctx.obj["user_id"] = user_id or getpass.getuser()


def _load(ctx) -> AppConfig:
    config_path = ctx.obj["config_path"]
    if not config_exists(config_path):
        click.echo("Error: No config found. Run 'x-bookmarks setup' first.", err=True)
        sys.exit(1)
    try:
        return load_config(config_path)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _services(ctx):
    # Lazy import so --help stays fast
    from .services import build_services

    try:
        return build_services(_load(ctx))
    except ConfigurationError as e:
        _fail(e)


def _fail(error: SyncError) -> None:
    click.echo(f"Error: {error.message}", err=True)
    if error.action_required == "reconnect":
        click.echo("Run 'x-bookmarks connect' to reconnect your X account.", err=True)
    sys.exit(1)


def parse_callback(value: str) -> tuple[str, str | None]:
    """Extract (code, state) from a pasted redirect URL, or accept a bare code."""
    value = value.strip()
    if "?" not in value:
        return value, None
    params = parse_qs(urlsplit(value).query)
    code = params.get("code", [""])[0]
    state = params.get("state", [None])[0]
    return code, state


@main.command()
@click.pass_context
def setup(ctx):
    """Configure the X developer app credentials."""
    config_path = ctx.obj["config_path"]

    click.echo("X Bookmarks Sync: Setup")
    click.echo("=" * 40)
    click.echo()
    click.echo("You need an OAuth 2.0 app from the X developer portal.")
    click.echo("  1. Open developer.x.com -> Projects & Apps -> your app")
    click.echo("  2. Under 'User authentication settings' enable OAuth 2.0")
    click.echo("  3. Add the callback URL below and copy the Client ID")
    click.echo()

    client_id = click.prompt("client_id")
    client_secret = click.prompt(
        "client_secret (Enter for a public client)",
        default="",
        show_default=False,
        hide_input=True,
    )
    redirect_uri = click.prompt("redirect_uri", default=DEFAULT_REDIRECT_URI)

    config = load_config(config_path) if config_exists(config_path) else None
    x_app = XAppConfig(
        client_id=client_id,
        client_secret=client_secret or None,
        redirect_uri=redirect_uri,
    )
    if config is None:
        config = AppConfig(x=x_app)
    else:
        x_app.api_base = config.x.api_base
        x_app.authorize_url = config.x.authorize_url
        config.x = x_app

    save_config(config, config_path)
    click.echo(f"\nConfig saved to {config_path}")
    click.echo("Run 'x-bookmarks connect' to authorize access to your bookmarks.")


@main.command()
@click.pass_context
def connect(ctx):
    """Authorize access to your X bookmarks."""
    user_id = ctx.obj["user_id"]
    services = _services(ctx)
    try:
        pending = services.authenticator.start_authorization(user_id)
        click.echo("Open this URL in your browser and approve access:")
        click.echo()
        click.echo(pending.url)
        click.echo()
        click.echo("After approving, X redirects to your callback URL.")
        redirected = click.prompt("Paste the full redirect URL (or just the code)")

        code, state = parse_callback(redirected)
        if not code:
            click.echo("Error: No authorization code found.", err=True)
            sys.exit(1)
        username = services.authenticator.complete_authorization(
            code, state or pending.state, pending.session_handle
        )
    except SyncError as e:
        _fail(e)
    finally:
        services.close()

    click.echo(f"\nConnected as @{username}.")
    click.echo("Run 'x-bookmarks sync' to import your bookmarks.")


@main.command()
@click.option("--folder", "folder_id", default=None, help="Sync only this mapped X folder")
@click.pass_context
def sync(ctx, folder_id):
    """Sync bookmarks into the local store."""
    user_id = ctx.obj["user_id"]
    services = _services(ctx)

    click.echo(f"Syncing {'folder ' + folder_id if folder_id else 'bookmarks'} from X...")
    try:
        result = services.orchestrator.run_sync(user_id, folder_id=folder_id)
    except SyncError as e:
        _fail(e)
    finally:
        services.close()

    click.echo(f"Added: {result.added}")
    click.echo(f"Updated: {result.updated}")
    if result.skipped:
        click.echo(f"Skipped: {result.skipped}")
    click.echo(f"Errors: {result.errors}")
    click.echo(f"Pages: {result.pages}")

    if result.rate_limited:
        wait = f" Retry in {result.retry_after:.0f}s." if result.retry_after else ""
        click.echo(f"\nStopped early: rate limited by X.{wait}")
    if result.auth_expired:
        click.echo("\nStopped early: X authorization expired.")
        click.echo("Run 'x-bookmarks connect' to reconnect your X account.")
        sys.exit(1)


@main.command()
@click.pass_context
def folders(ctx):
    """List your X bookmark folders."""
    user_id = ctx.obj["user_id"]
    services = _services(ctx)
    try:
        views = services.orchestrator.list_folders(user_id)
    except SyncError as e:
        _fail(e)
    finally:
        services.close()

    if not views:
        click.echo("No bookmark folders on X.")
        return

    for view in views:
        target = f"collection {view.collection_id}" if view.mapped else "not mapped"
        click.echo(f"{view.id}  {view.name}  ({target})")


@main.command("map-folder")
@click.argument("folder_id")
@click.argument("name")
@click.option("--collection", "collection_id", type=int, default=None, help="Existing collection id")
@click.option("--create-new", is_flag=True, help="Create a collection named after the folder")
@click.pass_context
def map_folder(ctx, folder_id, name, collection_id, create_new):
    """Map X folder FOLDER_ID (called NAME) to a local collection."""
    if (collection_id is None) == (not create_new):
        click.echo("Error: Pass exactly one of --collection or --create-new.", err=True)
        sys.exit(1)

    user_id = ctx.obj["user_id"]
    services = _services(ctx)
    try:
        mapping = services.folder_mapper.map_folder(
            user_id, folder_id, name, collection_id=collection_id, create_new=create_new
        )
    except SyncError as e:
        _fail(e)
    finally:
        services.close()

    click.echo(f"Folder '{name}' mapped to collection {mapping.collection_id}.")


@main.command()
@click.pass_context
def status(ctx):
    """Show connection and last sync."""
    config_path = ctx.obj["config_path"]
    has_config = config_exists(config_path)

    click.echo("X Bookmarks Sync: Status")
    click.echo("=" * 40)
    click.echo(f"Config: {'Found' if has_config else 'Not configured'} ({config_path})")

    if not has_config:
        click.echo("\nRun 'x-bookmarks setup' to get started.")
        return

    services = _services(ctx)
    try:
        state = services.authenticator.status(ctx.obj["user_id"])
        mappings = services.folder_mapper.list_mappings(ctx.obj["user_id"])
        click.echo(f"Database: {services.config.storage.database_url}")
    finally:
        services.close()

    if state.username is None:
        click.echo("X account: Not connected")
        click.echo("\nRun 'x-bookmarks connect' to authorize access.")
        return

    connection = "Connected" if state.connected else "Reconnect required"
    click.echo(f"X account: @{state.username} ({connection})")
    last_sync = state.last_sync.strftime("%Y-%m-%d %H:%M UTC") if state.last_sync else "Never"
    click.echo(f"Last sync: {last_sync}")
    click.echo(f"Mapped folders: {len(mappings)}")


@main.command()
@click.pass_context
def disconnect(ctx):
    """Forget the stored X credential."""
    services = _services(ctx)
    try:
        services.authenticator.disconnect(ctx.obj["user_id"])
    finally:
        services.close()
    click.echo("Disconnected from X.")


@main.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Port (default from config)")
@click.pass_context
def serve(ctx, host, port):
    """Run the HTTP API."""
    import uvicorn

    from .api import create_app

    config = _load(ctx)
    app = create_app(config)
    uvicorn.run(
        app,
        host=host or config.server.host,
        port=port or config.server.port,
        log_level="debug" if ctx.find_root().params.get("verbose") else "info",
    )
