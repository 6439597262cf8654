"""Mentor command line."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from mentor.app import AppContext, build_context
from mentor.config import Settings, get_settings
from mentor.errors import MentorError
from mentor.logging_utils import configure_logging

app = typer.Typer(name="mentor", help="Serialized tutor backend broker", add_completion=False)
memory_app = typer.Typer(help="Inspect or edit learner memory", add_completion=False)
app.add_typer(memory_app, name="memory")

console = Console()


def _load_settings(home: Path | None) -> Settings:
    overrides: dict[str, object] = {}
    if home is not None:
        overrides["home"] = home
    settings = get_settings(**overrides)
    configure_logging(profile="cli", level=settings.log_level)
    return settings


HomeOption = Annotated[Path | None, typer.Option("--home", help="Data directory")]


@app.command()
def chat(
    message: Annotated[str, typer.Argument(help="Message to send")],
    session: Annotated[str | None, typer.Option("--session", "-s", help="Session id to resume")] = None,
    topic: Annotated[str | None, typer.Option("--topic", "-t", help="Conversation topic")] = None,
    home: HomeOption = None,
) -> None:
    """Send one message and print the reply."""
    context = build_context(_load_settings(home))

    async def _run() -> None:
        async with context:
            response = await context.converse(message, session, topic)
        typer.echo(response.text)
        typer.echo(f"session: {response.session_id or '-'}", err=True)
        if response.is_error:
            raise typer.Exit(2)

    try:
        asyncio.run(_run())
    except MentorError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1) from exc


@app.command()
def health(home: HomeOption = None) -> None:
    """Print broker health as JSON."""
    context = build_context(_load_settings(home))
    typer.echo(json.dumps(context.health()))


@app.command()
def topics(home: HomeOption = None) -> None:
    """List topics with a prompt file."""
    context = build_context(_load_settings(home))
    for topic in context.prompts.topics():
        typer.echo(topic)


@memory_app.command("show")
def memory_show(home: HomeOption = None) -> None:
    """Show remembered facts."""
    context = build_context(_load_settings(home))
    stats = context.memory.stats()
    table = Table(title=f"memory ({stats.key_count} keys, {stats.value_count} values)")
    table.add_column("key")
    table.add_column("value")
    for key, value in context.memory.data.items():
        table.add_row(key, ", ".join(value) if isinstance(value, list) else value)
    console.print(table)
    if stats.needs_compaction:
        typer.echo("compaction suggested", err=True)


@memory_app.command("set")
def memory_set(
    key: Annotated[str, typer.Argument(help="Memory key")],
    values: Annotated[list[str], typer.Argument(help="One value, or several to store a list")],
    home: HomeOption = None,
) -> None:
    """Set a key, replacing whatever it held."""
    context = build_context(_load_settings(home))
    context.memory.update({key: values[0] if len(values) == 1 else values})
    typer.echo(f"{key} saved")


@memory_app.command("delete")
def memory_delete(
    key: Annotated[str, typer.Argument(help="Memory key")],
    home: HomeOption = None,
) -> None:
    """Forget one key."""
    context = build_context(_load_settings(home))
    if key not in context.memory.data:
        typer.echo(f"no such key: {key}", err=True)
        raise typer.Exit(1)
    context.memory.delete_key(key)
    typer.echo(f"{key} deleted")


@memory_app.command("clear")
def memory_clear(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
    home: HomeOption = None,
) -> None:
    """Forget everything."""
    if not yes:
        typer.confirm("Clear all learner memory?", abort=True)
    context = build_context(_load_settings(home))
    context.memory.clear()
    typer.echo("memory cleared")


@memory_app.command("compact")
def memory_compact(home: HomeOption = None) -> None:
    """Ask the backend to merge duplicate memory entries."""
    context = build_context(_load_settings(home))

    async def _run(ctx: AppContext) -> bool:
        async with ctx:
            return await ctx.broker.compact_memory()

    before = context.memory.stats()
    compacted = asyncio.run(_run(context))
    after = context.memory.stats()
    typer.echo(
        json.dumps(
            {
                "status": "compacted" if compacted else "skipped",
                "before": before.model_dump(),
                "after": after.model_dump(),
            }
        )
    )
