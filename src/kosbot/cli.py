# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Coroutine
from typing import Any

import click

from kosbot.core.connection import list_cpus as fetch_cpus
from kosbot.daemon.client import DaemonClient
from kosbot.daemon.protocol import DaemonResponse
from kosbot.daemon.server import KosDaemon
from kosbot.errors import KosError
from kosbot.logging import configure_logging
from kosbot.settings import Settings


def _settings(ctx: click.Context) -> Settings:
    return ctx.ensure_object(dict)["settings"]


def _run(coro: Coroutine[Any, Any, DaemonResponse]) -> DaemonResponse:
    try:
        return asyncio.run(coro)
    except KosError as e:
        raise click.ClickException(str(e)) from e


def _report(response: DaemonResponse, *, show_data: bool = False) -> None:
    if response.output:
        click.echo(response.output)
    if show_data and response.data is not None:
        click.echo(json.dumps(response.data, indent=2))
    if not response.success:
        raise click.ClickException(response.error or "unknown error")


def _describe_state(response: DaemonResponse) -> str:
    if not response.connected:
        return "Not connected"
    return f"Connected to {response.vessel} (CPU {response.cpu_id}, tag {response.cpu_tag or 'none'})"


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--host", default=None, help="kOS telnet host (overrides KOS_HOST).")
@click.option("--port", type=int, default=None, help="kOS telnet port (overrides KOS_PORT).")
@click.pass_context
def cli(ctx: click.Context, host: str | None, port: int | None) -> None:
    """kosbot command line interface."""
    overrides = {k: v for k, v in {"host": host, "port": port}.items() if v is not None}
    settings = Settings(**overrides)
    configure_logging(settings)
    ctx.ensure_object(dict)["settings"] = settings


@cli.group("daemon")
def daemon_group() -> None:
    """Manage the connection daemon."""


@daemon_group.command("run")
@click.pass_context
def daemon_run(ctx: click.Context) -> None:
    """Run the daemon in the foreground."""
    code = asyncio.run(KosDaemon(_settings(ctx)).run())
    if code:
        click.echo("Error: another daemon is already running", err=True)
    ctx.exit(code)


@daemon_group.command("status")
@click.pass_context
def daemon_status(ctx: click.Context) -> None:
    """Show whether the daemon runs and what it is attached to."""
    client = DaemonClient(_settings(ctx))
    response = _run(client.status())
    if response.output:
        click.echo(response.output)
        return
    click.echo(_describe_state(response))
    data = response.data or {}
    if data.get("monitor"):
        click.echo(data["monitor"])
    if data.get("lastError"):
        click.echo(f"Last error: {data['lastError']}")


@daemon_group.command("ping")
@click.pass_context
def daemon_ping(ctx: click.Context) -> None:
    """Check that the daemon answers."""
    client = DaemonClient(_settings(ctx))
    if not client.is_running():
        raise click.ClickException("daemon not running")
    _report(_run(client.ping()))


@daemon_group.command("shutdown")
@click.pass_context
def daemon_shutdown(ctx: click.Context) -> None:
    """Ask the daemon to disconnect and exit."""
    _report(_run(DaemonClient(_settings(ctx)).shutdown()))


@cli.command("connect")
@click.argument("label", required=False)
@click.option("--cpu-id", type=int, default=None, help="Menu number of the CPU to attach to.")
@click.pass_context
def connect(ctx: click.Context, label: str | None, cpu_id: int | None) -> None:
    """Attach the daemon to a CPU (by tag, id, or the first one listed)."""
    response = _run(DaemonClient(_settings(ctx)).connect(cpu_id=cpu_id, cpu_label=label))
    _report(response)
    if response.success:
        click.echo(_describe_state(response))


@cli.command("disconnect")
@click.pass_context
def disconnect(ctx: click.Context) -> None:
    """Detach the daemon from kOS."""
    _report(_run(DaemonClient(_settings(ctx)).disconnect()))


@cli.command("exec")
@click.argument("script")
@click.option("--timeout", type=int, default=None, help="Command timeout in milliseconds.")
@click.option("--cpu-id", type=int, default=None)
@click.option("--cpu-label", default=None)
@click.pass_context
def exec_script(
    ctx: click.Context, script: str, timeout: int | None, cpu_id: int | None, cpu_label: str | None
) -> None:
    """Run a kerboscript command through the daemon.

    Pass "-" to read the script from stdin.
    """
    if script == "-":
        script = sys.stdin.read()
    if not script.strip():
        raise click.BadParameter("script is empty", param_hint="SCRIPT")
    client = DaemonClient(_settings(ctx))
    _report(_run(client.execute(script, timeout, cpu_id=cpu_id, cpu_label=cpu_label)))


@cli.command("call")
@click.argument("handler")
@click.option("--args", "args_json", default="{}", show_default=True, help="Handler arguments as a JSON object.")
@click.pass_context
def call(ctx: click.Context, handler: str, args_json: str) -> None:
    """Invoke a named daemon handler."""
    try:
        args = json.loads(args_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--args") from e
    if not isinstance(args, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--args")
    _report(_run(DaemonClient(_settings(ctx)).call(handler, args)), show_data=True)


@cli.command("list-cpus")
@click.pass_context
def list_cpus(ctx: click.Context) -> None:
    """List the CPUs kOS offers, without involving the daemon."""
    settings = _settings(ctx)
    try:
        cpus = asyncio.run(fetch_cpus(settings))
    except (KosError, OSError) as e:
        raise click.ClickException(str(e)) from e
    if not cpus:
        click.echo("  (no CPUs found)")
    for cpu in cpus:
        gui = "gui" if cpu.gui_open else "no gui"
        click.echo(f"  [{cpu.id}] {cpu.vessel}: {cpu.part_name}({cpu.display_tag}) {gui}, {cpu.telnets} telnet(s)")


if __name__ == "__main__":
    cli()
