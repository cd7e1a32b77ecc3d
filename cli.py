#!/usr/bin/env python3
"""
Concept Alignment - CLI Entry Point

Runs the audit pipeline over two element files and prints the Venn result.

Usage:
    python cli.py run d1.json d2.json                 # Full audit
    python cli.py run d1.json d2.json -m openai/gpt-4o
    python cli.py run d1.json d2.json --no-tesseract  # Skip alignment scoring
    python cli.py show SESSION_ID                     # Print a stored Venn result
    python cli.py tools                               # List agent tools
"""

import asyncio
import json
import sys
import uuid
from pathlib import Path

from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich import box

from audit import ORCHESTRATOR_TOOLS, AuditPipeline, RunContext
from config import AuditSettings, load_settings, setup_logging
from models import Element, PipelinePhase, ProgressEvent, VennResult
from repositories import configure_backend, get_repository

console = Console()

CRITICALITY_STYLE = {
    "critical": "bold red",
    "major": "red",
    "minor": "yellow",
    "info": "dim",
}


def load_elements(path: Path) -> list[Element]:
    """Elements from a JSON file: either a list or {"elements": [...]}."""
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("elements", [])
    return [Element.model_validate(item) for item in data]


def print_event(event: ProgressEvent):
    """One progress line."""
    if event.phase is PipelinePhase.ERROR:
        console.print(f"[red]✗ {event.message}[/red]")
        return
    counts = []
    if event.d1_concept_count is not None:
        counts.append(f"D1 {event.d1_concept_count}")
    if event.d2_concept_count is not None:
        counts.append(f"D2 {event.d2_concept_count}")
    if event.merged_count is not None:
        counts.append(f"merged {event.merged_count}")
    if event.tesseract_current is not None:
        counts.append(f"{event.tesseract_current}/{event.tesseract_total}")
    suffix = f" [dim]({', '.join(counts)})[/dim]" if counts else ""
    console.print(f"[cyan]{event.progress:>3}%[/cyan] [bold]{event.phase.value}[/bold] {event.message}{suffix}")


def print_venn(result: VennResult, limit: int = 15):
    """Summary panel plus one table per bucket."""
    summary = result.summary
    console.print(Panel.fit(
        f"D1 coverage: [bold]{summary.total_d1_coverage:.1f}%[/bold]\n"
        f"D2 coverage: [bold]{summary.total_d2_coverage:.1f}%[/bold]\n"
        f"Alignment score: [bold]{summary.alignment_score:.1f}[/bold]",
        title="Venn Summary"
    ))

    buckets = [
        ("Unique to D1 (gaps)", result.unique_to_d1, "red"),
        ("Aligned", result.aligned, "green"),
        ("Unique to D2 (orphans)", result.unique_to_d2, "yellow"),
    ]
    for title, items, color in buckets:
        table = Table(title=f"[{color}]{title}[/{color}] ({len(items)})", box=box.SIMPLE)
        table.add_column("ID", style="dim")
        table.add_column("Label")
        table.add_column("Criticality")
        table.add_column("Evidence")
        for item in items[:limit]:
            style = CRITICALITY_STYLE.get(item.criticality.value, "")
            table.add_row(
                item.id[:12],
                item.label[:40],
                f"[{style}]{item.criticality.value}[/{style}]",
                item.evidence[:60],
            )
        if len(items) > limit:
            table.add_row("...", f"+{len(items) - limit} more", "", "")
        console.print(table)


def cmd_run(args) -> int:
    overrides = {}
    if args.model:
        overrides["model"] = args.model
    if args.rounds:
        overrides["merge_rounds"] = args.rounds
    if args.no_tesseract:
        overrides["enable_tesseract"] = False
    try:
        settings = AuditSettings.model_validate({**load_settings().model_dump(), **overrides})
    except ValidationError as e:
        console.print(f"[red]Invalid settings: {e}[/red]")
        return 2

    try:
        d1_elements = load_elements(Path(args.d1))
        d2_elements = load_elements(Path(args.d2))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        console.print(f"[red]Could not load elements: {e}[/red]")
        return 2

    configure_backend(settings.backend, **({"base_path": settings.sessions_dir} if settings.backend == "json" else {}))
    repo = get_repository()
    pipeline = AuditPipeline.from_settings(settings, repo=repo)
    ctx = RunContext(session_id=args.session or str(uuid.uuid4()), progress_sink=print_event)

    console.print(Panel.fit(
        f"[bold]{len(d1_elements)}[/bold] D1 elements vs [bold]{len(d2_elements)}[/bold] D2 elements\n"
        f"[dim]Model: {settings.model} | Session: {ctx.session_id}[/dim]",
        title="Concept Alignment Audit"
    ))

    try:
        outcome = asyncio.run(pipeline.run(ctx, d1_elements, d2_elements))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        return 130

    if not outcome.ok:
        console.print(f"[red]Audit {outcome.status.value}: {outcome.error}[/red]")
        return 1

    if not outcome.graph_report.ok:
        console.print(f"[yellow]{len(outcome.graph_report.errors)} graph write(s) failed[/yellow]")
    print_venn(outcome.result)
    console.print(f"\n[dim]Saved under session {ctx.session_id}[/dim]")
    return 0


def cmd_show(args) -> int:
    settings = load_settings()
    configure_backend(settings.backend, **({"base_path": settings.sessions_dir} if settings.backend == "json" else {}))
    repo = get_repository()
    try:
        result = repo.trail.get_venn_result(args.session, args.token or "")
    except (KeyError, PermissionError) as e:
        console.print(f"[red]{e}[/red]")
        return 1
    if result is None:
        console.print(f"[yellow]No Venn result for session {args.session}[/yellow]")
        return 1
    print_venn(result, limit=args.limit)
    return 0


def cmd_tools(args) -> int:
    table = Table(title="Agent Tools", box=box.SIMPLE)
    table.add_column("Name", style="cyan")
    table.add_column("Required")
    table.add_column("Description")
    for tool in ORCHESTRATOR_TOOLS:
        table.add_row(
            tool["name"],
            ", ".join(tool["parameters"].get("required", [])),
            tool["description"][:70],
        )
    console.print(table)
    return 0


def cli(argv=None) -> int:
    """Main CLI entry point"""
    import argparse

    parser = argparse.ArgumentParser(
        description="Cross-dataset concept alignment audit",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show pipeline logs")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Run a full audit")
    run_p.add_argument("d1", help="D1 (requirements) elements JSON")
    run_p.add_argument("d2", help="D2 (implementation) elements JSON")
    run_p.add_argument("-m", "--model", help="Model key, e.g. groq/llama-3.3-70b-versatile")
    run_p.add_argument("-s", "--session", help="Session id (default: new uuid)")
    run_p.add_argument("--rounds", help="Merge rounds, e.g. 1,2,3")
    run_p.add_argument("--no-tesseract", action="store_true", help="Skip alignment scoring")
    run_p.set_defaults(func=cmd_run)

    show_p = sub.add_parser("show", help="Print a stored Venn result")
    show_p.add_argument("session", help="Session id")
    show_p.add_argument("--token", help="Share token")
    show_p.add_argument("--limit", type=int, default=15, help="Rows per bucket")
    show_p.set_defaults(func=cmd_show)

    tools_p = sub.add_parser("tools", help="List agent tools")
    tools_p.set_defaults(func=cmd_tools)

    args = parser.parse_args(argv)
    if args.verbose:
        setup_logging()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(cli())
