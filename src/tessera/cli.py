"""Command-line interface for Tessera (tessera)."""

import logging
import sys
from pathlib import Path
from typing import Optional

import click

from tessera import __version__
from tessera.config.loader import Settings
from tessera.storage.credentials import CredentialStore

DEFAULT_CONFIG = Path.home() / ".config" / "tessera" / "config.yaml"


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_settings(config: str) -> Settings:
    from tessera.config.loader import load_config, settings_from_config, validate_config

    path = Path(config)
    if not path.exists():
        click.echo(f"Config file not found: {path} (run 'tessera init')", err=True)
        sys.exit(1)
    raw = load_config(path)
    if not raw:
        click.echo("Config file is empty.", err=True)
        sys.exit(1)
    errors = validate_config(raw)
    if errors:
        click.echo("Config validation errors:", err=True)
        for e in errors:
            click.echo(f"  • {e}", err=True)
        sys.exit(1)
    return settings_from_config(raw)


def _credential_store(settings: Settings) -> CredentialStore:
    from tessera.storage.kv import KeyValueStore

    return CredentialStore(KeyValueStore(settings.storage_path / "users"))


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=__version__, prog_name="tessera")
@click.option(
    "--config",
    "-c",
    default=str(DEFAULT_CONFIG),
    envvar="TESSERA_CONFIG",
    show_default=True,
    help="Path to tessera config.yaml",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config: str, verbose: bool) -> None:
    """Tessera: passkey relying party."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# ── init command ──────────────────────────────────────────────────────────────


@main.command()
@click.option("--rp-id", default="localhost", show_default=True, help="Relying party id (hostname)")
@click.option("--origin", default=None, help="Expected browser origin (default derived from rp id)")
@click.option("--storage", default=None, help="Directory for user and session records")
@click.option("--force", is_flag=True, help="Overwrite an existing config")
@click.pass_context
def init(
    ctx: click.Context,
    rp_id: str,
    origin: Optional[str],
    storage: Optional[str],
    force: bool,
) -> None:
    """Write a default config with a fresh session secret."""
    from tessera.config.writer import build_config_dict, write_config

    path = Path(ctx.obj["config"])
    if path.exists() and not force:
        click.echo(f"Config already exists at {path} (use --force to overwrite).", err=True)
        sys.exit(1)
    write_config(path, build_config_dict(rp_id=rp_id, origin=origin, storage_path=storage))
    click.echo(f"Wrote {path}")


# ── users group ───────────────────────────────────────────────────────────────


@main.group()
def users() -> None:
    """Inspect registered users."""


@users.command("list")
@click.pass_context
def users_list(ctx: click.Context) -> None:
    """List registered user handles."""
    settings = _load_settings(ctx.obj["config"])
    store = _credential_store(settings)
    handles = store.handles()
    if not handles:
        click.echo("No users registered.")
        return
    click.echo(f"{'HANDLE':<32} {'AUTHENTICATORS':<16} {'CREATED'}")
    click.echo("─" * 70)
    for handle in handles:
        record = store.get(handle)
        if record is None:
            continue
        click.echo(
            f"{handle:<32} {len(record.authenticators):<16} "
            f"{record.created_at.strftime('%Y-%m-%d %H:%M')}"
        )


@users.command("show")
@click.argument("handle")
@click.pass_context
def users_show(ctx: click.Context, handle: str) -> None:
    """Show a user's authenticators and signature counters."""
    from tessera.storage.kv import b64url_encode

    settings = _load_settings(ctx.obj["config"])
    record = _credential_store(settings).get(handle)
    if record is None:
        click.echo(f"User '{handle}' not found.", err=True)
        sys.exit(1)
    click.echo(f"Handle:   {record.handle}")
    click.echo(f"User id:  {b64url_encode(record.user_id)}")
    click.echo(f"Created:  {record.created_at.isoformat()}")
    for a in record.authenticators:
        transports = ", ".join(a.transports) or "-"
        click.echo(
            f"  • {b64url_encode(a.credential_id)}  counter={a.sign_count}  "
            f"transports={transports}"
        )


# ── sessions group ────────────────────────────────────────────────────────────


@main.group()
def sessions() -> None:
    """Maintain the session store."""


@sessions.command("purge")
@click.pass_context
def sessions_purge(ctx: click.Context) -> None:
    """Delete expired sessions."""
    from tessera.storage.kv import KeyValueStore
    from tessera.storage.sessions import SessionStore

    settings = _load_settings(ctx.obj["config"])
    store = SessionStore(
        KeyValueStore(settings.storage_path / "sessions"),
        settings.session_ttl,
        settings.session_login_ttl,
    )
    removed = store.purge_expired()
    click.echo(f"Removed {removed} expired session(s).")


# ── serve command ─────────────────────────────────────────────────────────────


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind host")
@click.option("--port", default=8000, show_default=True, help="Bind port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """
    Start the Tessera web server.

    \b
    Expired sessions are purged once at startup and then every
    session.purge_interval seconds. With purge_interval set to 0,
    run 'tessera sessions purge' from cron instead.
    """
    import uvicorn

    from tessera.api.routes import create_app
    from tessera.config.loader import ConfigError
    from tessera.scheduler.runner import SessionPurger

    try:
        app = create_app(config_path=ctx.obj["config"])
    except ConfigError as exc:
        click.echo(f"Config validation errors: {exc}", err=True)
        sys.exit(1)

    purger = None
    interval = app.state.settings.session_purge_interval
    if interval:
        purger = SessionPurger(app.state.orchestrator.sessions, interval)
        purger.run_now()
        purger.start()
    click.echo(f"Starting Tessera at http://{host}:{port}")
    try:
        uvicorn.run(app, host=host, port=port)
    finally:
        if purger is not None:
            purger.stop(wait=False)


if __name__ == "__main__":
    main()
