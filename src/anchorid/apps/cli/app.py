"""Operator CLI for the trust control plane."""

from __future__ import annotations

import json
import os
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Optional

import typer
import uvicorn

from anchorid.services.logging import setup_logging
from anchorid.services.trust import (
    ConfigError,
    IdentityContext,
    TrustControlPlane,
    TrustError,
)
from anchorid.services.trust.settings import CONFIG_ENV

app = typer.Typer(help="anchorid: device-anchored identity control plane.")
admin_app = typer.Typer(help="Inspect and bootstrap administrator grants.")
device_app = typer.Typer(help="List linked devices; revoke, restore or clear them (admin only).")
security_app = typer.Typer(help="Read the security event log.")
profile_app = typer.Typer(help="Profile onboarding.")

app.add_typer(admin_app, name="admin")
app.add_typer(device_app, name="device")
app.add_typer(security_app, name="security")
app.add_typer(profile_app, name="profile")

_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a YAML/JSON config file.")
_DB_OPTION = typer.Option(None, "--db", help="SQLite database path (overrides the config).")
_ACTOR_OPTION = typer.Option(..., "--device", "-d", help="Device id acting for this command.")


def _print_error(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)


@contextmanager
def _plane(config: Optional[Path], db: Optional[Path]) -> Iterator[TrustControlPlane]:
    try:
        plane = TrustControlPlane(config_path=config, db_path=db)
    except (ConfigError, OSError) as exc:
        _print_error(f"configuration error: {exc}")
        raise typer.Exit(code=2)
    setup_logging(plane.settings.logging.level, plane.settings.logging.file)
    try:
        yield plane
    except TrustError as exc:
        _print_error(f"{exc.envelope.code}: {exc.envelope.message}")
        raise typer.Exit(code=1)
    finally:
        plane.close()


def _actor(plane: TrustControlPlane, device: str) -> IdentityContext:
    ctx = plane.resolve_context(device, user_agent="anchorid-cli")
    if ctx.is_anonymous:
        _print_error("the --device value does not identify a device")
        raise typer.Exit(code=2)
    return ctx


def _echo_json(payload) -> None:
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@profile_app.command("onboard")
def profile_onboard(
    handle: str = typer.Argument(..., help="Public handle of the new profile."),
    device: str = _ACTOR_OPTION,
    avatar: Optional[str] = typer.Option(None, "--avatar"),
    config: Optional[Path] = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
):
    """Create a profile and bind it to DEVICE."""
    with _plane(config, db) as plane:
        profile = plane.onboard(_actor(plane, device), handle, avatar=avatar)
        _echo_json(profile.as_dict())


@admin_app.command("bootstrap")
def admin_bootstrap(
    device: str = _ACTOR_OPTION,
    config: Optional[Path] = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
):
    """Make the profile bound to DEVICE the first administrator."""
    with _plane(config, db) as plane:
        grant = plane.bootstrap_admin(_actor(plane, device))
        typer.secho(f"administrator bootstrapped: {grant.profile_id}", fg=typer.colors.GREEN)


@admin_app.command("list")
def admin_list(
    json_output: bool = typer.Option(False, "--json"),
    config: Optional[Path] = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
):
    with _plane(config, db) as plane:
        grants = plane.list_admins()
        if json_output:
            _echo_json([grant.as_dict() for grant in grants])
            return
        if not grants:
            typer.echo("No administrators.")
        for grant in grants:
            typer.echo(f"{grant.profile_id}  {grant.role.value}  {grant.created_at.isoformat()}")
        typer.echo(f"capacity: {plane.admins.capacity}, remaining: {plane.admins.remaining_capacity()}")


@device_app.command("list")
def device_list(
    device: str = _ACTOR_OPTION,
    config: Optional[Path] = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
):
    """Show the devices linked to DEVICE's profile."""
    with _plane(config, db) as plane:
        for linked in plane.my_devices(_actor(plane, device)):
            flags = [name for name, on in (("suspicious", linked.is_suspicious), ("revoked", linked.is_revoked)) if on]
            typer.echo(f"{linked.device_id}  {linked.last_seen_at.isoformat()}  {','.join(flags) or 'ok'}")


@device_app.command("revoke")
def device_revoke(
    target: str = typer.Argument(..., help="Device id to revoke."),
    reason: str = typer.Option(..., "--reason", "-r"),
    device: str = _ACTOR_OPTION,
    config: Optional[Path] = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
):
    with _plane(config, db) as plane:
        result = plane.revoke_device(_actor(plane, device), target, reason)
        typer.echo(f"revoked: {result.device_id}")


@device_app.command("restore")
def device_restore(
    target: str = typer.Argument(..., help="Device id to restore."),
    device: str = _ACTOR_OPTION,
    config: Optional[Path] = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
):
    with _plane(config, db) as plane:
        result = plane.restore_device(_actor(plane, device), target)
        typer.echo(f"restored: {result.device_id}")


@device_app.command("clear-suspicious")
def device_clear_suspicious(
    target: str = typer.Argument(..., help="Device id to clear."),
    device: str = _ACTOR_OPTION,
    config: Optional[Path] = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
):
    with _plane(config, db) as plane:
        result = plane.clear_suspicious(_actor(plane, device), target)
        typer.echo(f"cleared: {result.device_id}")


@security_app.command("summary")
def security_summary(
    hours: int = typer.Option(24, "--hours", min=1),
    config: Optional[Path] = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
):
    with _plane(config, db) as plane:
        _echo_json(plane.summarize(timedelta(hours=hours)).as_dict())


@security_app.command("events")
def security_events(
    limit: int = typer.Option(50, "--limit", "-n", min=1, max=1000),
    severity: Optional[str] = typer.Option(None, "--severity"),
    kind: Optional[str] = typer.Option(None, "--kind"),
    target: Optional[str] = typer.Option(None, "--device-id"),
    config: Optional[Path] = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
):
    with _plane(config, db) as plane:
        try:
            events = plane.recent_events(limit, severity=severity, kind=kind, device_id=target)
        except ValueError as exc:
            raise typer.BadParameter(str(exc))
        for event in events:
            typer.echo(json.dumps(event.as_dict(), ensure_ascii=False))


@security_app.command("export")
def security_export(
    since_hours: Optional[int] = typer.Option(None, "--since-hours", min=1),
    verify: bool = typer.Option(False, "--verify", help="Check record signatures before printing."),
    config: Optional[Path] = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
):
    with _plane(config, db) as plane:
        since = None
        if since_hours is not None:
            since = datetime.now(tz=timezone.utc) - timedelta(hours=since_hours)
        export = plane.export_events(since)
        if verify and not export.verify(plane.audit_key):
            _print_error("signature verification failed")
            raise typer.Exit(code=1)
        if export.records:
            typer.echo(export.as_ndjson())


@security_app.command("purge-pins")
def security_purge_pins(
    config: Optional[Path] = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
):
    """Delete old link PINs and closed rate-limit windows."""
    with _plane(config, db) as plane:
        pins = plane.purge_expired_pins()
        counters = plane.purge_rate_counters()
        typer.echo(f"purged: {pins} pins, {counters} rate counters")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8780, "--port"),
    reload: bool = typer.Option(False, "--reload"),
    config: Optional[Path] = _CONFIG_OPTION,
):
    """Run the HTTP API (FastAPI)."""
    if config is not None:
        os.environ[CONFIG_ENV] = str(config)
    uvicorn.run("anchorid.apps.api.server:serve_app", host=host, port=port, reload=reload, factory=True)


if __name__ == "__main__":
    app()
