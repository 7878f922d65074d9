#!/usr/bin/env python3
"""
Autoheal CLI

Usage:
    autoheal run                 - Run the control loop until SIGINT/SIGTERM
    autoheal serve               - Run the control loop with the status API
    autoheal scan [--apply]      - One collect + diagnose cycle
    autoheal diagnose FILE       - Diagnose a saved log file offline
    autoheal signatures          - List registered failure signatures
    autoheal status              - Show the last persisted report
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from autoheal import __version__
from autoheal.config import AutohealConfig, set_config
from autoheal.diagnoser import Diagnoser
from autoheal.errors import InitializationError
from autoheal.logging_config import setup_logging
from autoheal.models import Severity
from autoheal.signatures import build_registry

console = Console()
logger = logging.getLogger(__name__)

SEVERITY_STYLE = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "dim",
}


def load_config(path: Optional[str]) -> AutohealConfig:
    if path:
        config = AutohealConfig.from_yaml(path)
    else:
        config = AutohealConfig()
    set_config(config)
    return config


# === RUN / SERVE ===

async def cmd_run(args: argparse.Namespace, config: AutohealConfig) -> int:
    """Run all loops until a shutdown signal."""
    from autoheal.orchestrator import Orchestrator

    orchestrator = Orchestrator.from_config(config)
    await orchestrator.run()
    return 0


async def cmd_serve(args: argparse.Namespace, config: AutohealConfig) -> int:
    """Run all loops and the status API in one event loop."""
    import uvicorn

    from autoheal.logging_config import get_uvicorn_log_config
    from autoheal.orchestrator import Orchestrator
    from autoheal.server import create_app

    orchestrator = Orchestrator.from_config(config)
    app = create_app(orchestrator)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=args.host or config.server_host,
            port=args.port or config.server_port,
            log_config=get_uvicorn_log_config(args.json_logs),
        )
    )
    # uvicorn owns SIGINT/SIGTERM; stop the loops once it exits
    server_task = asyncio.create_task(server.serve())
    loop_task = asyncio.create_task(orchestrator.run(install_signal_handlers=False))

    try:
        await server_task
    finally:
        orchestrator.stop()
        await loop_task
    return 0


# === SCAN ===

async def cmd_scan(args: argparse.Namespace, config: AutohealConfig) -> int:
    """One collector + diagnose cycle, optionally dispatching the result."""
    from autoheal.orchestrator import Orchestrator

    orchestrator = Orchestrator.from_config(config)
    try:
        entries = await orchestrator.scan_once()
        if args.health:
            entries += await orchestrator.health_once()

        table = Table(title="Queued Issues", box=box.ROUNDED)
        table.add_column("Signature", style="cyan")
        table.add_column("Severity")
        table.add_column("Band")
        table.add_column("Source")
        table.add_column("Excerpt", overflow="fold")
        for entry in entries:
            issue = entry.issue
            style = SEVERITY_STYLE.get(issue.severity, "")
            table.add_row(
                issue.signature_id,
                f"[{style}]{issue.severity.value}[/{style}]",
                entry.band.value,
                issue.source,
                issue.raw_excerpt[:120],
            )
        console.print(table)

        if not entries:
            console.print("[green]✓ No actionable issues[/green]")
            return 0

        if not args.apply:
            console.print(f"[dim]{len(entries)} issue(s) queued; re-run with --apply to fix[/dim]")
            return 0

        results = await orchestrator.drain()
        for result in results:
            icon = "[green]✓[/green]" if result.success else "[red]✗[/red]"
            console.print(f"  {icon} {result.signature_id}: {result.message}")
        return 0 if all(r.success for r in results) else 1
    finally:
        await orchestrator.reporter.flush()
        await orchestrator.collaborators.close()


# === DIAGNOSE ===

def cmd_diagnose(args: argparse.Namespace, config: AutohealConfig) -> int:
    """Diagnose a log file without dispatching anything."""
    path = Path(args.file)
    if not path.exists():
        console.print(f"[red]Error: file not found: {path}[/red]")
        return 1

    registry = build_registry()
    diagnoser = Diagnoser(registry, config.scan_max_lines, config.scan_max_bytes)
    issues = diagnoser.diagnose(path.read_text(errors="replace"), source=f"file:{path.name}")

    if args.format == "json":
        print(json.dumps([i.to_dict() for i in issues], indent=2))
        return 1 if issues else 0

    if not issues:
        console.print("[green]✓ No known failure signatures found[/green]")
        return 0

    table = Table(title=f"Diagnosis of {path}", box=box.ROUNDED)
    table.add_column("Signature", style="cyan")
    table.add_column("Severity")
    table.add_column("Handler")
    table.add_column("Excerpt", overflow="fold")
    for issue in issues:
        signature = registry.lookup(issue.signature_id)
        style = SEVERITY_STYLE.get(issue.severity, "")
        table.add_row(
            issue.signature_id,
            f"[{style}]{issue.severity.value}[/{style}]",
            signature.handler_id if signature else "-",
            issue.raw_excerpt,
        )
    console.print(table)
    return 1


# === SIGNATURES ===

def cmd_signatures(args: argparse.Namespace, config: AutohealConfig) -> int:
    """List the signature registry."""
    registry = build_registry(
        {sid: config.service_severity(sid) for sid in config.services}
    )

    if args.format == "json":
        print(json.dumps([s.to_dict() for s in registry.all()], indent=2))
        return 0

    table = Table(title="Failure Signatures", box=box.ROUNDED)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Category", style="dim")
    table.add_column("Severity")
    table.add_column("Handler")
    table.add_column("Cooldown")
    for sig in registry.all():
        style = SEVERITY_STYLE.get(sig.severity, "")
        table.add_row(
            sig.id,
            sig.display_name,
            sig.category,
            f"[{style}]{sig.severity.value}[/{style}]",
            sig.handler_id,
            f"{config.cooldown_for(sig.severity):.0f}s",
        )
    console.print(table)
    return 0


# === STATUS ===

def cmd_status(args: argparse.Namespace, config: AutohealConfig) -> int:
    """Show the last persisted report."""
    report_path = Path(config.data_dir) / "report.json"
    if not report_path.exists():
        console.print(f"[yellow]No report found at {report_path}[/yellow]")
        return 1

    report = json.loads(report_path.read_text())
    if args.format == "json":
        print(json.dumps(report, indent=2))
        return 0

    totals = report.get("totals", {})
    restarts = report.get("restarts", {})
    console.print(
        Panel.fit(
            f"[bold blue]Autoheal Report[/bold blue]\n"
            f"Generated: {report.get('generated_at', '-')}\n"
            f"Diagnosed: {totals.get('diagnosed', 0)}  "
            f"Suppressed: {totals.get('suppressed', 0)}  "
            f"Duplicates: {totals.get('duplicates', 0)}\n"
            f"Fixed: [green]{totals.get('fixed', 0)}[/green]  "
            f"Failed: [red]{totals.get('failed', 0)}[/red]  "
            f"Reruns: {restarts.get('triggered', 0)} ok / {restarts.get('failed', 0)} failed"
        )
    )

    table = Table(title="Per Signature", box=box.SIMPLE)
    table.add_column("Signature", style="cyan")
    table.add_column("Fixed", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Suppressed", justify="right")
    for sid, counts in sorted(report.get("per_signature", {}).items()):
        table.add_row(
            sid,
            str(counts.get("fixed", 0)),
            str(counts.get("failed", 0)),
            str(counts.get("suppressed", 0)),
        )
    console.print(table)

    health = report.get("last_health", [])
    if health:
        table = Table(title="Last Health Check", box=box.SIMPLE)
        table.add_column("Service", style="cyan")
        table.add_column("Status")
        table.add_column("Detail", style="dim")
        for item in health:
            status = "[green]● healthy[/green]" if item.get("healthy") else "[red]● unhealthy[/red]"
            table.add_row(item.get("service_id", "?"), status, item.get("detail", ""))
        console.print(table)
    return 0


ASYNC_COMMANDS = {"run": cmd_run, "serve": cmd_serve, "scan": cmd_scan}
SYNC_COMMANDS = {"diagnose": cmd_diagnose, "signatures": cmd_signatures, "status": cmd_status}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autoheal",
        description="Self-healing control loop for CI pipelines",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  autoheal run -c autoheal.yaml         # Run all loops
  autoheal scan --apply                 # Diagnose once and apply fixes
  autoheal diagnose build.log           # Offline diagnosis of a saved log
  autoheal status                       # Last persisted report
        """,
    )
    parser.add_argument("--version", action="version", version=f"autoheal {__version__}")
    parser.add_argument("-c", "--config", help="Path to YAML config file")
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO)")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument(
        "--format", "-f", choices=["text", "json"], default="text", help="Output format"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run the control loop")

    serve_parser = subparsers.add_parser("serve", help="Run the control loop with the status API")
    serve_parser.add_argument("--host", help="Bind address (default from config)")
    serve_parser.add_argument("--port", type=int, help="Port (default from config)")

    scan_parser = subparsers.add_parser("scan", help="One collect + diagnose cycle")
    scan_parser.add_argument("--apply", action="store_true", help="Dispatch fixes for queued issues")
    scan_parser.add_argument("--health", action="store_true", help="Also run the health probes")

    diagnose_parser = subparsers.add_parser("diagnose", help="Diagnose a log file offline")
    diagnose_parser.add_argument("file", help="Path to the log file")

    subparsers.add_parser("signatures", help="List failure signatures")
    subparsers.add_parser("status", help="Show the last persisted report")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level or "INFO", json_format=args.json_logs)

    try:
        config = load_config(args.config)
        if args.command in ASYNC_COMMANDS:
            return asyncio.run(ASYNC_COMMANDS[args.command](args, config))
        return SYNC_COMMANDS[args.command](args, config)
    except InitializationError as e:
        console.print(f"[red]Refusing to start: {e}[/red]")
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
