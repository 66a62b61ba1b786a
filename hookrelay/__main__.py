"""Entry point: python -m hookrelay."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from hookrelay.config import HookrelayConfig, load_config, resolve_base_path, resolve_home
from hookrelay.errors import ConfigError
from hookrelay.logging_config import setup_logging
from hookrelay.webhooks.crypto import canonical_json, sign_payload
from hookrelay.webhooks.manager import WebhooksManager
from hookrelay.webhooks.models import (
    CreateWebhookInput,
    UpdateWebhookInput,
    WebhookEvent,
    WebhookOperationResult,
    utc_now_iso,
)
from hookrelay.webhooks.server import (
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    WebhookServer,
)

logger = logging.getLogger(__name__)

_console = Console()

_STATUS_STYLE = {
    "active": "green",
    "paused": "yellow",
    "deleted": "red",
    "pending": "cyan",
    "injected": "green",
    "processed": "dim",
    "failed": "red",
}

Command = Callable[[WebhooksManager, HookrelayConfig, argparse.Namespace], Awaitable[int]]


def _styled(status: str) -> str:
    style = _STATUS_STYLE.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _split_events(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


def _print_result(result: WebhookOperationResult) -> int:
    if result.success:
        _console.print(f"[bold green]{result.message}[/bold green]")
        return 0
    _console.print(f"[bold red]{result.message}[/bold red]")
    return 1


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _cmd_create(manager: WebhooksManager, _cfg: HookrelayConfig, args: argparse.Namespace) -> int:
    result = await manager.create(
        CreateWebhookInput(
            name=args.name,
            source=args.source,
            description=args.description,
            events_filter=_split_events(args.events),
        )
    )
    code = _print_result(result)
    if result.success:
        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column(style="bold")
        table.add_column()
        table.add_row("ID", str(result.webhook_id))
        table.add_row("Secret", str(result.secret))
        table.add_row("URL", str(result.url))
        _console.print(
            Panel(table, title="[bold]Webhook[/bold]", border_style="green", padding=(1, 1)),
        )
        _console.print("[dim]Store the secret now; the sender signs with it.[/dim]")
    return code


async def _cmd_list(manager: WebhooksManager, _cfg: HookrelayConfig, _args: argparse.Namespace) -> int:
    webhooks = await manager.list()
    if not webhooks:
        _console.print("[dim]No webhooks registered.[/dim]")
        return 0
    table = Table(title="Webhooks")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Source", style="cyan")
    table.add_column("Status")
    table.add_column("Deliveries", justify="right")
    table.add_column("Last delivery")
    for item in webhooks:
        table.add_row(
            item.id,
            item.name,
            item.source,
            _styled(item.status),
            str(item.delivery_count),
            item.last_delivery_at or "-",
        )
    _console.print(table)
    return 0


async def _cmd_show(manager: WebhooksManager, _cfg: HookrelayConfig, args: argparse.Namespace) -> int:
    registration = await manager.get(args.webhook_id)
    if registration is None:
        _console.print(f"[bold red]Webhook {args.webhook_id} not found.[/bold red]")
        return 1
    lines = [
        f"Name:        {registration.name}",
        f"Source:      [cyan]{registration.source}[/cyan]",
        f"Status:      {_styled(registration.status)}",
        f"Description: {registration.description or '-'}",
        f"Events:      {', '.join(registration.events_filter) or 'all'}",
        f"Deliveries:  {registration.delivery_count}",
        f"Created:     {registration.created_at}",
        f"Updated:     {registration.updated_at}",
        f"Last:        {registration.last_delivery_at or '-'}",
    ]
    if args.secret:
        lines.append(f"Secret:      {registration.secret}")
    _console.print(
        Panel(
            "\n".join(lines),
            title=f"[bold]{registration.id}[/bold]",
            border_style="blue",
            padding=(1, 2),
        ),
    )
    return 0


async def _cmd_update(manager: WebhooksManager, _cfg: HookrelayConfig, args: argparse.Namespace) -> int:
    result = await manager.update(
        UpdateWebhookInput(
            id=args.webhook_id,
            name=args.name,
            description=args.description,
            events_filter=_split_events(args.events),
            status=args.status,
        )
    )
    return _print_result(result)


async def _cmd_delete(manager: WebhooksManager, _cfg: HookrelayConfig, args: argparse.Namespace) -> int:
    return _print_result(await manager.delete(args.webhook_id))


async def _cmd_test(manager: WebhooksManager, _cfg: HookrelayConfig, args: argparse.Namespace) -> int:
    result = await manager.send_test_event(args.webhook_id)
    code = _print_result(result)
    if result.success:
        _console.print(f"Event:    [cyan]{result.event_id}[/cyan]")
        _console.print(f"Delivery: [cyan]{result.delivery_id}[/cyan]")
    return code


async def _cmd_events(manager: WebhooksManager, _cfg: HookrelayConfig, args: argparse.Namespace) -> int:
    events = await manager.list_events(args.webhook_id, limit=args.limit, pending_only=args.pending)
    if not events:
        _console.print("[dim]No events.[/dim]")
        return 0
    table = Table(title=f"Events for {args.webhook_id}")
    table.add_column("ID", style="bold")
    table.add_column("Type", style="cyan")
    table.add_column("Status")
    table.add_column("Timestamp")
    table.add_column("Preview", overflow="fold")
    for item in events:
        table.add_row(item.id, item.event_type, _styled(item.status), item.timestamp, item.preview)
    _console.print(table)
    return 0


async def _cmd_deliveries(
    manager: WebhooksManager, _cfg: HookrelayConfig, args: argparse.Namespace
) -> int:
    deliveries = await manager.list_deliveries(args.webhook_id, limit=args.limit)
    if not deliveries:
        _console.print("[dim]No deliveries.[/dim]")
        return 0
    table = Table(title=f"Deliveries for {args.webhook_id}")
    table.add_column("ID", style="bold")
    table.add_column("Event")
    table.add_column("Received")
    table.add_column("Status")
    table.add_column("HTTP", justify="right")
    table.add_column("Remote")
    for delivery in deliveries:
        table.add_row(
            delivery.id,
            delivery.event_id,
            delivery.received_at,
            delivery.status,
            str(delivery.http_status),
            delivery.remote_ip or "-",
        )
    _console.print(table)
    return 0


async def _cmd_pending(manager: WebhooksManager, _cfg: HookrelayConfig, args: argparse.Namespace) -> int:
    events = await manager.get_pending_for_injection()
    if not events:
        _console.print("[dim]No pending events.[/dim]")
        return 0
    _console.print(manager.build_injection_context(events), markup=False, highlight=False)
    if args.mark:
        return _print_result(await manager.mark_injected(events))
    return 0


async def _cmd_cleanup(manager: WebhooksManager, _cfg: HookrelayConfig, _args: argparse.Namespace) -> int:
    removed = await manager.cleanup()
    _console.print(f"Removed [bold]{removed}[/bold] event(s).")
    return 0


async def _cmd_sign(manager: WebhooksManager, _cfg: HookrelayConfig, args: argparse.Namespace) -> int:
    registration = await manager.get(args.webhook_id)
    if registration is None:
        _console.print(f"[bold red]Webhook {args.webhook_id} not found.[/bold red]")
        return 1
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as exc:
        _console.print(f"[bold red]Payload is not valid JSON: {exc}[/bold red]")
        return 1
    body = canonical_json(payload)
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold")
    table.add_column(overflow="fold")
    table.add_row(SIGNATURE_HEADER, sign_payload(body, registration.secret))
    table.add_row(TIMESTAMP_HEADER, utc_now_iso())
    table.add_row(EVENT_HEADER, args.event)
    table.add_row("Body", body)
    _console.print(table)
    return 0


async def _serve(manager: WebhooksManager, cfg: HookrelayConfig, stop: asyncio.Event) -> None:
    """Run the ingress until *stop* is set. Watching and retention follow ``webhooks.enabled``."""

    async def _announce(event: WebhookEvent) -> None:
        _console.print(
            f"[green]New event[/green] {event.id} "
            f"[cyan]{event.source}:{event.event_type}[/cyan] ({event.webhook_id})"
        )

    server = WebhookServer(cfg.server, manager)
    if cfg.webhooks.enabled:
        manager.on_event(_announce)
    else:
        _console.print("[yellow]Webhooks disabled in config: watcher and retention are off.[/yellow]")
    await manager.start()
    await server.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        await server.stop()
        await manager.stop()


async def _cmd_serve(manager: WebhooksManager, cfg: HookrelayConfig, _args: argparse.Namespace) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    await _serve(manager, cfg, stop)
    return 0


_COMMANDS: dict[str, Command] = {
    "create": _cmd_create,
    "list": _cmd_list,
    "show": _cmd_show,
    "update": _cmd_update,
    "delete": _cmd_delete,
    "test": _cmd_test,
    "events": _cmd_events,
    "deliveries": _cmd_deliveries,
    "pending": _cmd_pending,
    "cleanup": _cmd_cleanup,
    "sign": _cmd_sign,
    "serve": _cmd_serve,
}


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hookrelay",
        description="Receive signed webhooks and queue them for the assistant.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to config.json")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging output")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Register a new webhook")
    create.add_argument("name")
    create.add_argument("source")
    create.add_argument("--description")
    create.add_argument("--events", help="Comma-separated event types to accept")

    sub.add_parser("list", help="List registered webhooks")

    show = sub.add_parser("show", help="Show one webhook")
    show.add_argument("webhook_id")
    show.add_argument("--secret", action="store_true", help="Include the signing secret")

    update = sub.add_parser("update", help="Change name, description, filter or status")
    update.add_argument("webhook_id")
    update.add_argument("--name")
    update.add_argument("--description")
    update.add_argument("--events", help="Comma-separated event types; empty accepts all")
    update.add_argument("--status", choices=["active", "paused"])

    delete = sub.add_parser("delete", help="Delete a webhook and its events")
    delete.add_argument("webhook_id")

    test = sub.add_parser("test", help="Send a signed test event")
    test.add_argument("webhook_id")

    events = sub.add_parser("events", help="List stored events")
    events.add_argument("webhook_id")
    events.add_argument("--limit", type=int)
    events.add_argument("--pending", action="store_true", help="Only pending events")

    deliveries = sub.add_parser("deliveries", help="List delivery records")
    deliveries.add_argument("webhook_id")
    deliveries.add_argument("--limit", type=int)

    pending = sub.add_parser("pending", help="Show the next injection batch")
    pending.add_argument("--mark", action="store_true", help="Mark the batch as injected")

    sub.add_parser("cleanup", help="Apply retention limits now")

    sign = sub.add_parser("sign", help="Print headers for sending a signed payload")
    sign.add_argument("webhook_id")
    sign.add_argument("payload", help="JSON object")
    sign.add_argument("--event", default="custom", help="Event type header value")

    sub.add_parser("serve", help="Run the HTTP ingress until interrupted")
    return parser


async def _run(command: Command, config: HookrelayConfig, args: argparse.Namespace) -> int:
    manager = WebhooksManager(
        config.webhooks,
        base_path=resolve_base_path(config.webhooks, config.home),
    )
    await manager.initialize()
    return await command(manager, config, args)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    config_path = args.config or resolve_home() / "config.json"

    setup_logging(verbose=args.verbose)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        _console.print(f"[bold red]{exc}[/bold red]")
        return 2

    log_dir = resolve_home(config.home) / "logs"
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    setup_logging(level=level, verbose=args.verbose, log_dir=log_dir)

    try:
        return asyncio.run(_run(_COMMANDS[args.command], config, args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
