#!/usr/bin/env python3
"""
ToolOS - Deterministic Tool Execution Core
==========================================

Operator CLI for specs and runs.

Usage:
    python main.py validate spec.yaml                          # Advisory clarifications
    python main.py compile spec.yaml --catalog caps.yaml       # Hard compile gate + spec hash
    python main.py diff old.yaml new.yaml                      # Added/removed ids
    python main.py runs --db toolos.db --tool <tool-id>        # Recent runs
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

# Ensure project root is in path
sys.path.insert(0, str(Path(__file__).parent))

import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from core.errors import ErrorHandler, ToolOSError
from infra.database import DatabaseManager
from infra.logging import configure_logging
from tools.compiler import ToolCompiler, parse_spec, validate_spec_advisory
from tools.registry import CapabilityRegistry
from tools.spec import ToolSystemSpec, diff_specs, spec_hash


# Setup rich console
console = Console()


def load_spec_file(path: str) -> ToolSystemSpec:
    """Load a spec from a YAML or JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return parse_spec(data)


def load_registry(catalog: Optional[str]) -> CapabilityRegistry:
    registry = CapabilityRegistry()
    if catalog:
        registry.load_from_yaml(catalog)
    return registry


def cmd_validate(args: argparse.Namespace) -> int:
    spec = load_spec_file(args.spec)
    clarifications = validate_spec_advisory(spec, load_registry(args.catalog))
    if not clarifications:
        console.print(f"[green]✓ {spec.id}: no clarifications needed[/green]")
        return 0

    table = Table(title=f"Clarifications for {spec.id}")
    table.add_column("Field", style="cyan")
    table.add_column("Message")
    table.add_column("Ref", style="dim")
    for item in clarifications:
        table.add_row(item.field, item.message, item.ref or "")
    console.print(table)
    return 1


def cmd_compile(args: argparse.Namespace) -> int:
    spec = load_spec_file(args.spec)
    compiled = ToolCompiler(load_registry(args.catalog)).compile(spec)
    console.print(Panel(
        f"[bold]{spec.name}[/bold] ({spec.id})\n"
        f"Actions: {len(compiled.actions)}  Workflows: {len(compiled.workflows)}  "
        f"Triggers: {len(compiled.triggers)}  Views: {len(compiled.views)}\n"
        f"[dim]spec hash {compiled.spec_hash}[/dim]",
        title="[green]Compiled[/green]",
        border_style="green",
    ))
    return 0


def cmd_diff(args: argparse.Namespace) -> int:
    base = load_spec_file(args.old)
    nxt = load_spec_file(args.new)
    diff = diff_specs(base, nxt)
    if diff.is_empty:
        console.print("[dim]No structural changes[/dim]")
        return 0

    table = Table(title=f"{spec_hash(base)[:12]} → {spec_hash(nxt)[:12]}")
    table.add_column("Change", style="cyan")
    table.add_column("Ids")
    for name, ids in diff.to_dict().items():
        if ids:
            style = "green" if name.endswith("added") else "red"
            table.add_row(f"[{style}]{name}[/{style}]", ", ".join(ids))
    console.print(table)
    return 0


def cmd_runs(args: argparse.Namespace) -> int:
    db = DatabaseManager(args.db)
    db.initialize()
    try:
        runs = db.list_runs(args.tool, limit=args.limit)
    finally:
        db.close()

    if not runs:
        console.print(f"[dim]No runs recorded for {args.tool}[/dim]")
        return 0

    table = Table(title=f"Recent runs for {args.tool}")
    table.add_column("Run", style="dim")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Created")
    table.add_column("Error", style="red")
    colors = {"completed": "green", "failed": "red", "blocked": "yellow"}
    for run in runs:
        status = run.status.value
        color = colors.get(status, "white")
        table.add_row(
            run.id[:8],
            run.workflow_id or run.action_id or "",
            f"[{color}]{status}[/{color}]",
            str(run.retries),
            run.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            run.error or "",
        )
    console.print(table)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ToolOS - Deterministic Tool Execution Core"
    )
    parser.add_argument(
        "--log-level", "-l",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="List clarifications for a spec")
    validate.add_argument("spec", help="Spec file (YAML or JSON)")
    validate.add_argument("--catalog", help="Capability catalog YAML")
    validate.set_defaults(handler=cmd_validate)

    compile_ = sub.add_parser("compile", help="Run the hard compile gate")
    compile_.add_argument("spec", help="Spec file (YAML or JSON)")
    compile_.add_argument("--catalog", required=True, help="Capability catalog YAML")
    compile_.set_defaults(handler=cmd_compile)

    diff = sub.add_parser("diff", help="Compare two spec revisions")
    diff.add_argument("old")
    diff.add_argument("new")
    diff.set_defaults(handler=cmd_diff)

    runs = sub.add_parser("runs", help="Show recent runs of a tool")
    runs.add_argument("--db", default="toolos.db", help="SQLite database path")
    runs.add_argument("--tool", required=True, help="Tool id")
    runs.add_argument("--limit", type=int, default=20)
    runs.set_defaults(handler=cmd_runs)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(level=getattr(logging, args.log_level), file=False)
    logger = logging.getLogger("toolos.main")

    try:
        return args.handler(args)
    except ToolOSError as e:
        report = ErrorHandler().handle(e)
        console.print(f"[bold red]Error:[/bold red] {report.reason}")
        console.print(f"[yellow]→ {report.remediation}[/yellow]")
        return 2
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130
    except Exception as e:
        logger.exception("Fatal error")
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
