"""CLI entry point for the pairlink broker."""

import time
from pathlib import Path
from typing import Any

import click

from pairlink import __version__
from pairlink.config import Config, load_config
from pairlink.formatting import format_remaining, format_time_ago
from pairlink.logging import setup_logging


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None) -> None:
    """pairlink - Pair phones with this machine by PIN."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


def _base_url(config: Config) -> str:
    return f"http://127.0.0.1:{config.control_port}"


def _call_daemon(config: Config, method: str, path: str) -> tuple[int, Any] | None:
    """Send one request to the control API.

    Returns:
        (status, json body), or None if the daemon is not reachable.
    """
    import asyncio

    import aiohttp

    async def _call():
        try:
            async with aiohttp.ClientSession() as http:
                async with http.request(method, f"{_base_url(config)}{path}") as resp:
                    return resp.status, await resp.json()
        except aiohttp.ClientConnectorError:
            click.echo("Error: Cannot connect to daemon. Is it running?", err=True)
            click.echo("Start the daemon with: pairlink daemon start", err=True)
            return None

    return asyncio.run(_call())


def _print_state(state: dict[str, Any]) -> None:
    now = time.time()
    click.echo(f"Device:  {state['deviceName']} ({state['deviceId']})")
    status = state["status"]
    if state.get("error"):
        status = f"{status} ({state['error']})"
    click.echo(f"Status:  {status}")
    if state.get("pinExpiresAt"):
        remaining = format_remaining(state["pinExpiresAt"] / 1000, now)
        click.echo(f"PIN:     active, expires in {remaining}")
    click.echo(f"Mobiles: {state['mobileCount']}")

    for mobile in state["connectedMobiles"]:
        last = format_time_ago(mobile["lastActivity"] / 1000, now)
        click.echo(f"  {mobile['mobileId'][:8]}  last active {last}")

    if state["activeSessions"]:
        click.echo("Sessions:")
        for session in state["activeSessions"]:
            click.echo(
                f"  {session['id'][:8]}  {session['workspaceName']:<20} "
                f"mobile {session['mobileId'][:8]}"
            )


@main.group()
def daemon() -> None:
    """Daemon control commands."""
    pass


@daemon.command()
@click.pass_context
def start(ctx: click.Context) -> None:
    """Start the daemon."""
    import asyncio

    from pairlink.daemon import Daemon, StartupError

    config = ctx.obj["config"]

    async def _start():
        daemon = Daemon(config=config)

        try:
            await daemon.start()
            click.echo(f"Daemon started (control API on port {config.control_port})")
            click.echo("Press Ctrl+C to stop")
            await daemon.run_forever()
        except StartupError as e:
            click.echo(f"Startup error: {e}", err=True)
            raise SystemExit(1)
        finally:
            await daemon.stop()

    try:
        asyncio.run(_start())
    except KeyboardInterrupt:
        pass


@main.command()
@click.pass_context
def state(ctx: click.Context) -> None:
    """Show broker state."""
    result = _call_daemon(ctx.obj["config"], "GET", "/api/state")
    if result is None:
        raise SystemExit(1)
    _, body = result
    _print_state(body)


@main.command()
@click.pass_context
def connect(ctx: click.Context) -> None:
    """Arm the mobile endpoint."""
    result = _call_daemon(ctx.obj["config"], "POST", "/api/connect")
    if result is None:
        raise SystemExit(1)
    _, body = result
    if body.get("success"):
        click.echo("Connected")
    else:
        click.echo("Error: Failed to connect (see 'pairlink state')", err=True)
        raise SystemExit(1)


@main.command()
@click.pass_context
def disconnect(ctx: click.Context) -> None:
    """Disconnect all mobiles and close the endpoint."""
    result = _call_daemon(ctx.obj["config"], "POST", "/api/disconnect")
    if result is None:
        raise SystemExit(1)
    click.echo("Disconnected")


@main.command()
@click.option("--qr", is_flag=True, help="Show QR code in the terminal.")
@click.option(
    "--browser",
    "-b",
    is_flag=True,
    help="Open QR code in browser.",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default=None,
    help="Save QR code to file.",
)
@click.pass_context
def pin(ctx: click.Context, qr: bool, browser: bool, output: str | None) -> None:
    """Create a pairing PIN (connects first if needed)."""
    result = _call_daemon(ctx.obj["config"], "POST", "/api/pin")
    if result is None:
        raise SystemExit(1)
    status, body = result
    if status != 200:
        click.echo(f"Error: {body.get('error', f'HTTP {status}')}", err=True)
        raise SystemExit(1)

    remaining = format_remaining(body["expiresAt"] / 1000, time.time())
    click.echo(f"PIN: {body['pin']}  (expires in {remaining})")

    if not (qr or browser or output):
        return

    from pairlink.pairing.qr import QrGenerator

    qr_gen = QrGenerator(body["qrData"])
    if browser:
        import tempfile
        import webbrowser

        html = qr_gen.to_html()
        with tempfile.NamedTemporaryFile(suffix=".html", delete=False, mode="w") as f:
            f.write(html)
            webbrowser.open(f"file://{f.name}")
        click.echo("QR code opened in browser")
    elif output:
        qr_gen.to_png(output)
        click.echo(f"QR code saved to: {output}")
    else:
        click.echo(qr_gen.to_terminal())
        click.echo("Scan this QR code with the mobile app")


@main.command()
@click.pass_context
def watch(ctx: click.Context) -> None:
    """Stream state changes until interrupted."""
    import asyncio

    import aiohttp

    config = ctx.obj["config"]

    async def _watch():
        try:
            async with aiohttp.ClientSession() as http:
                async with http.ws_connect(f"{_base_url(config)}/api/state/ws") as ws:
                    async for msg in ws:
                        if msg.type != aiohttp.WSMsgType.TEXT:
                            break
                        _print_state(msg.json())
                        click.echo("")
        except aiohttp.ClientConnectorError:
            click.echo("Error: Cannot connect to daemon. Is it running?", err=True)
            raise SystemExit(1)

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        pass


@main.group()
def identity() -> None:
    """Device identity commands."""
    pass


def _identity_store(ctx: click.Context):
    from pairlink.identity import IdentityStore

    return IdentityStore(Path(ctx.obj["config"].identity_file))


@identity.command("show")
@click.pass_context
def identity_show(ctx: click.Context) -> None:
    """Show this device's id and name."""
    from pairlink.errors import StorageError

    try:
        ident = _identity_store(ctx).load_or_create()
    except StorageError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"Device ID:   {ident.device_id}")
    click.echo(f"Device name: {ident.device_name}")


@identity.command("rename")
@click.argument("name")
@click.pass_context
def identity_rename(ctx: click.Context, name: str) -> None:
    """Set a custom device name."""
    from pairlink.errors import StorageError

    try:
        ident = _identity_store(ctx).rename(name)
    except (StorageError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"Device renamed to: {ident.device_name}")
    click.echo("Restart the daemon for the new name to take effect.")


@identity.command("reset")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
@click.pass_context
def identity_reset(ctx: click.Context, force: bool) -> None:
    """Generate a new device id."""
    from pairlink.errors import StorageError

    if not force:
        if not click.confirm("Mobiles paired with the old id will not find this device. Continue?"):
            click.echo("Aborted.")
            return

    try:
        ident = _identity_store(ctx).reset()
    except StorageError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"New device ID: {ident.device_id}")


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"pairlink version {__version__}")
