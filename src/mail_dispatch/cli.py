# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for mail-dispatch.

This module provides a CLI for running the dispatcher and for inspecting or
exercising its providers without going through the HTTP API.

Usage:
    mail-dispatch serve --port 8000
    mail-dispatch config
    mail-dispatch providers
    mail-dispatch check
    mail-dispatch send --from noreply@example.com --to user@example.com \\
        --subject "Hello" --text "Hi there"

Every command accepts ``--config`` to point at an INI file; otherwise
``MDS_CONFIG`` or ``./config.ini`` is used when present.
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import asdict
from typing import Any, Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from mail_dispatch.config_loader import DispatchSettings, build_registry, load_settings
from mail_dispatch.core import MailDispatchCore
from mail_dispatch.logger import configure_logging
from mail_dispatch.models import AUTO_PROVIDER, EmailPayload
from mail_dispatch.sender import NoProviderAvailableError

console = Console()
err_console = Console(stderr=True)

config_option = click.option(
    "--config", "-c", "config_path", default=None, help="Path to the INI configuration file."
)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _load(config_path: Optional[str]) -> DispatchSettings:
    try:
        return load_settings(config_path)
    except (FileNotFoundError, ValueError) as exc:
        print_error(str(exc))
        raise SystemExit(1)


def _mask(value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    return f"{value[:4]}..." if len(value) > 8 else "****"


@click.group()
@click.version_option(package_name="mail-dispatch")
@click.option("--log-level", default=None, help="Logging level (default: MDS_LOG_LEVEL or INFO).")
def main(log_level: Optional[str]) -> None:
    """mail-dispatch: queued multi-provider email delivery."""
    configure_logging(log_level)


@main.command("serve")
@config_option
@click.option("--host", "-h", default=None, help="Host to bind to (default from config: 0.0.0.0).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from config: 8000).")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development.")
def serve(config_path: Optional[str], host: Optional[str], port: Optional[int], reload: bool) -> None:
    """Run the HTTP service with uvicorn."""
    import uvicorn

    settings = _load(config_path)
    if config_path:
        os.environ["MDS_CONFIG"] = config_path
    host = host or settings.host
    port = port or settings.port

    console.print("\n[bold cyan]Starting mail-dispatch[/bold cyan]")
    console.print(f"  Config:    {config_path or os.environ.get('MDS_CONFIG', 'config.ini')}")
    console.print(f"  Listen:    {host}:{port}")
    console.print(f"  Providers: {', '.join(p.id for p in settings.providers) or '-'}")
    console.print()

    uvicorn.run(
        "mail_dispatch.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


@main.command("config")
@config_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def show_config(config_path: Optional[str], as_json: bool) -> None:
    """Show the effective settings (secrets masked)."""
    settings = _load(config_path)
    data = asdict(settings)
    data["api_token"] = _mask(settings.api_token)
    for provider in data["providers"]:
        for key in ("api_key", "password"):
            if provider["options"].get(key):
                provider["options"][key] = _mask(provider["options"][key])

    if as_json:
        print_json(data)
        return

    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        if key != "providers":
            table.add_row(key, "[dim]-[/dim]" if value is None else str(value))
    console.print(table)


@main.command("providers")
@config_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def list_providers(config_path: Optional[str], as_json: bool) -> None:
    """List configured providers in selection order."""
    registry = build_registry(_load(config_path))
    status = sorted(registry.get_providers_status(), key=lambda item: item["priority"])

    if as_json:
        print_json(status)
        return

    if not status:
        console.print("[dim]No providers configured.[/dim]")
        return

    table = Table(title="Email Providers")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Priority", justify="right")
    table.add_column("Daily limit", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Active")

    for item in status:
        table.add_row(
            item["id"],
            item["name"],
            item["type"],
            str(item["priority"]),
            str(item["daily_limit"] or "-"),
            "-" if item["remaining_capacity"] is None else str(item["remaining_capacity"]),
            "[green]yes[/green]" if item["is_active"] else "[dim]no[/dim]",
        )
    console.print(table)


@main.command("check")
@config_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def check_providers(config_path: Optional[str], as_json: bool) -> None:
    """Run a health check against every configured provider."""
    registry = build_registry(_load(config_path))
    results = [result.to_dict() for result in run_async(registry.perform_health_checks())]

    if as_json:
        print_json(results)
        return

    colors = {"healthy": "green", "degraded": "yellow", "down": "red"}
    table = Table(title="Provider Health")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Response", justify="right")
    table.add_column("Error")
    for result in results:
        color = colors.get(result["status"], "white")
        table.add_row(
            result["provider_id"],
            f"[{color}]{result['status']}[/{color}]",
            f"{result['response_time'] * 1000:.0f}ms",
            result["error_message"] or "",
        )
    console.print(table)

    if any(result["status"] == "down" for result in results):
        raise SystemExit(1)


@main.command("send")
@config_option
@click.option("--from", "from_addr", required=True, help="Sender address.")
@click.option("--to", "to", multiple=True, required=True, help="Recipient address (repeatable).")
@click.option("--subject", required=True, help="Subject line.")
@click.option("--text", default=None, help="Plain-text body.")
@click.option("--html", default=None, help="HTML body.")
@click.option("--provider", "provider_id", default=AUTO_PROVIDER, help="Provider id (default: auto).")
@click.option("--user-id", type=int, default=0, help="User on whose behalf the message is sent.")
def send(
    config_path: Optional[str],
    from_addr: str,
    to: tuple[str, ...],
    subject: str,
    text: Optional[str],
    html: Optional[str],
    provider_id: str,
    user_id: int,
) -> None:
    """Send one message immediately, bypassing the queue."""
    try:
        payload = EmailPayload(to=list(to), subject=subject, text=text, html=html, **{"from": from_addr})
    except ValidationError as exc:
        print_error(str(exc))
        raise SystemExit(1)

    core = MailDispatchCore(registry=build_registry(_load(config_path)), start_active=False)
    try:
        result = run_async(core.send_email_direct(payload, user_id, provider_id))
    except NoProviderAvailableError as exc:
        print_error(str(exc))
        raise SystemExit(1)

    if result.success:
        print_success(f"Sent via {result.provider_id} (message id: {result.message_id or '-'})")
        return
    error = result.error
    print_error(f"{result.provider_id}: {error.code} {error.message}" if error else "send failed")
    raise SystemExit(1)


if __name__ == "__main__":
    main()
