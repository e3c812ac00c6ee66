"""Horae CLI entry point."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .config import Config
from .core.delta import cell_key
from .core.host import InMemoryChatHost
from .core.prompt_builder import LEVEL_MARKS
from .core.session import HoraeSession
from .logging_config import setup_logging
from .settings import SettingsStore, get_settings_store

console = Console()


def print_banner():
    """Print the Horae banner."""
    banner = Text()
    banner.append("Horae", style="bold cyan")
    banner.append(" - world state for long conversations", style="cyan")
    console.print(Panel(banner, border_style="cyan", padding=(0, 2)))


def load_session(args: argparse.Namespace) -> HoraeSession:
    """Open the chat file named on the command line as a session."""
    host = InMemoryChatHost.from_file(Path(args.chat))
    store = SettingsStore(Path(args.settings)) if args.settings else get_settings_store()
    session = HoraeSession(host, settings_store=store)
    if args.import_file:
        payload = json.loads(Path(args.import_file).read_text(encoding="utf-8"))
        written = asyncio.run(session.import_state(payload))
        console.print(f"[dim]Imported {written} deltas from {args.import_file}[/dim]")
    return session


# ── Commands ───────────────────────────────────────────────────────────

def cmd_state(session: HoraeSession, args: argparse.Namespace) -> None:
    state = session.state()
    stamp = state.timestamp
    overview = Table(show_header=False, border_style="dim")
    overview.add_row("Date", " ".join(p for p in (stamp.story_date, stamp.story_time) if p) or "-")
    overview.add_row("Location", escape(state.scene.location or "-"))
    overview.add_row("Atmosphere", escape(state.scene.atmosphere or "-"))
    overview.add_row("Present", escape(", ".join(state.scene.characters_present) or "-"))
    console.print(Panel(overview, title="[dim]Scene[/dim]", border_style="dim"))

    if state.items:
        items = Table("#", "Item", "Holder", "Location", "Description", border_style="dim")
        for name, item in state.items.items():
            items.add_row(*(escape(v) for v in (
                item.item_id, f"{item.icon or ''}{name}", item.holder or "", item.location, item.description or "",
            )))
        console.print(items)

    if state.npcs:
        npcs = Table("#", "NPC", "Appearance", "Personality", "Relationship", "Affection", border_style="dim")
        for name, npc in state.npcs.items():
            affection = state.affection.get(name)
            npcs.add_row(
                *(escape(v) for v in (npc.npc_id, name, npc.appearance, npc.personality, npc.relationship)),
                "" if affection is None else f"{affection:g}",
            )
        console.print(npcs)

    if state.mood:
        console.print("[bold]Mood:[/bold] " + escape(", ".join(f"{k}: {v}" for k, v in state.mood.items())))
    if state.relationships:
        console.print("[bold]Relationships:[/bold]")
        for rel in state.relationships:
            console.print(escape(f"  {rel.from_name} → {rel.to_name}: {rel.type}" + (f" ({rel.note})" if rel.note else "")))
    if state.agenda:
        console.print("[bold]Agenda:[/bold]")
        for item in state.agenda:
            mark = "[green]✓[/green]" if item.done else "·"
            console.print(f"  {mark} " + escape(f"{item.date + ' ' if item.date else ''}{item.text}"))


def cmd_timeline(session: HoraeSession, args: argparse.Namespace) -> None:
    events = session.state().events
    if not events:
        console.print("[dim]No events recorded[/dim]")
        return
    timeline = Table("", "Msg", "When", "Event", border_style="dim")
    for entry in events:
        stamp = entry.timestamp
        timeline.add_row(
            LEVEL_MARKS.get(entry.event.level, ""),
            str(entry.message_index),
            " ".join(p for p in (stamp.story_date, stamp.story_time) if p),
            escape(entry.event.summary),
        )
    console.print(timeline)


def cmd_prompt(session: HoraeSession, args: argparse.Namespace) -> None:
    skip_tail = 1 if args.regenerate else 0
    console.print(Panel(
        Text(session.compactor.generate_compact_prompt(skip_tail=skip_tail)),
        title="[dim]State block[/dim]", border_style="dim",
    ))
    console.print(Panel(
        Text(session.compactor.generate_system_prompt_addition()),
        title="[dim]System addition[/dim]", border_style="dim",
    ))


def cmd_tables(session: HoraeSession, args: argparse.Namespace) -> None:
    tables = session.tables.tables()
    if not tables:
        console.print("[dim]No custom tables[/dim]")
        return
    for table in tables:
        grid = Table(title=escape(f"{table.name} ({table.scope.value})"), border_style="dim")
        for col in range(table.cols):
            label = escape(table.data.get(cell_key(0, col), ""))
            grid.add_column(f"{label}🔒" if col in table.locked_cols else label)
        for row in range(1, table.rows):
            grid.add_row(*(escape(table.data.get(cell_key(row, col), "")) for col in range(table.cols)))
        console.print(grid)
        if args.json:
            console.print_json(json.dumps(session.tables.export_table(table.name), ensure_ascii=False))


def cmd_summaries(session: HoraeSession, args: argparse.Namespace) -> None:
    summaries = session.store.summaries()
    if not summaries:
        console.print("[dim]No summaries[/dim]")
        return
    listing = Table("Id", "Messages", "Active", "Auto", "Events", "Summary", border_style="dim")
    for entry in summaries:
        listing.add_row(
            entry.id,
            f"{entry.range[0]}-{entry.range[1]}",
            "yes" if entry.active else "no",
            "yes" if entry.auto else "",
            str(len(entry.original_events)),
            escape(entry.summary_text),
        )
    console.print(listing)


def cmd_scan(session: HoraeSession, args: argparse.Namespace) -> None:
    result = asyncio.run(session.scan_history(analyze=args.analyze))
    console.print(
        f"[green]Parsed {result.processed}[/green], analyzed {result.analyzed}, "
        f"skipped {result.skipped}, failed {result.failed}"
    )
    output = Path(args.output)
    output.write_text(json.dumps(session.export_state(), ensure_ascii=False, indent=2), encoding="utf-8")
    console.print(f"[dim]Export written to {output}[/dim]")


COMMANDS = {
    "state": cmd_state,
    "timeline": cmd_timeline,
    "prompt": cmd_prompt,
    "tables": cmd_tables,
    "summaries": cmd_summaries,
    "scan": cmd_scan,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="horae", description="Inspect Horae state stored in a chat file.")
    parser.add_argument("chat", help='Chat JSON file ({"messages": [...]})')
    parser.add_argument("--settings", help="Settings JSON (default: HORAE_SETTINGS_PATH)")
    parser.add_argument("--import", dest="import_file", help="Replay a state export onto the chat first")
    parser.add_argument("--log-level", default=Config.LOG_LEVEL)

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("state", help="Current aggregate state")
    sub.add_parser("timeline", help="Visible timeline events")
    prompt = sub.add_parser("prompt", help="Text injected into the next generation")
    prompt.add_argument("--regenerate", action="store_true", help="Exclude the last message's delta")
    tables = sub.add_parser("tables", help="Custom tables")
    tables.add_argument("--json", action="store_true", help="Also print each table's export JSON")
    sub.add_parser("summaries", help="Summary entries")
    scan = sub.add_parser("scan", help="Parse every message and write a state export")
    scan.add_argument("--analyze", action="store_true", help="Annotate untagged messages with the model")
    scan.add_argument("--output", default="horae_export.json")
    return parser


def main(argv=None):
    """Entry point for the CLI."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    print_banner()

    issues = Config.validate()
    if issues:
        console.print("[red]Configuration issues:[/red]")
        for issue in issues:
            console.print(f"  [red]• {issue}[/red]")
        console.print("\n[dim]Fix the HORAE_* variables in your environment or .env file.[/dim]")
        sys.exit(1)

    try:
        session = load_session(args)
        COMMANDS[args.command](session, args)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
