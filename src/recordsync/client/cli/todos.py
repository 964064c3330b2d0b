"""Todo commands for the recordsync CLI.

Commands:
- todos list: Show todos (all/active/completed)
- todos add: Create a todo, optionally with an attached image
- todos toggle: Flip a todo's completed flag
- todos delete: Delete a todo and its attachment
- todos watch: Follow the live todo list
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from recordsync.client.api import TODOS, Todo
from recordsync.client.cli.config import require_settings
from recordsync.client.cli.runtime import open_clients, run_async
from recordsync.client.sync.store import RecordStore
from recordsync.client.sync.types import SourceFile
from recordsync.core.types import TodoFilter


def format_todo(todo: Todo) -> str:
    """One line per todo: checkbox, text, id."""
    mark = "x" if todo.completed else " "
    line = f"[{mark}] {todo.text}  ({todo.id})"
    if todo.image_url:
        line += f"  {todo.image_url}"
    return line


def echo_todos(todos: tuple[Todo, ...], total: int) -> None:
    if not todos:
        click.echo("No todos found")
    for todo in todos:
        click.echo(format_todo(todo))
    click.echo(f"{len(todos)} of {total} todos")


@click.group()
def todos() -> None:
    """Manage the todo list."""


@todos.command("list")
@click.option(
    "--filter",
    "todo_filter",
    type=click.Choice([f.value for f in TodoFilter]),
    default=TodoFilter.ALL.value,
    show_default=True,
    help="Which todos to show.",
)
@click.pass_context
def list_todos(ctx: click.Context, todo_filter: str) -> None:
    """List todos, newest first."""
    settings = require_settings(ctx)

    async def _run() -> None:
        async with open_clients(settings) as clients:
            store = RecordStore(TODOS, clients.gateway, config=settings.store)
            await store.load()
            echo_todos(store.filtered(TodoFilter(todo_filter)), len(store.get_view()))

    run_async(_run())


@todos.command("add")
@click.argument("text")
@click.option(
    "--image",
    "image_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Attach an image file (stored with the todo).",
)
@click.pass_context
def add_todo(ctx: click.Context, text: str, image_path: Path | None) -> None:
    """Add a todo."""
    settings = require_settings(ctx)
    text = text.strip()
    if not text:
        raise click.BadParameter("Text must not be empty", param_hint="TEXT")
    source = SourceFile.from_path(image_path) if image_path else None
    if source is not None and not source.is_image:
        raise click.BadParameter(f"{source.name} is not an image", param_hint="--image")

    async def _run() -> Todo:
        async with open_clients(settings) as clients:
            store = RecordStore(
                TODOS, clients.gateway, clients.attachments, config=settings.store
            )
            if source is None:
                return await store.add(text=text, completed=False)
            return await store.add_with_attachment(source, text=text, completed=False)

    todo = run_async(_run())
    click.echo(f"Added: {format_todo(todo)}")


@todos.command("toggle")
@click.argument("todo_id")
@click.pass_context
def toggle_todo(ctx: click.Context, todo_id: str) -> None:
    """Mark a todo completed or active."""
    settings = require_settings(ctx)

    async def _run() -> Todo:
        async with open_clients(settings) as clients:
            store = RecordStore(TODOS, clients.gateway, config=settings.store)
            await store.load()
            return await store.toggle(todo_id)

    todo = run_async(_run())
    click.echo(format_todo(todo))


@todos.command("delete")
@click.argument("todo_id")
@click.pass_context
def delete_todo(ctx: click.Context, todo_id: str) -> None:
    """Delete a todo (and its attached image)."""
    settings = require_settings(ctx)

    async def _run() -> None:
        async with open_clients(settings) as clients:
            store = RecordStore(
                TODOS, clients.gateway, clients.attachments, config=settings.store
            )
            await store.load()
            await store.delete(todo_id)

    run_async(_run())
    click.echo(f"Deleted {todo_id}")


@todos.command("watch")
@click.pass_context
def watch_todos(ctx: click.Context) -> None:
    """Show the todo list and reprint it on every change (Ctrl+C to stop)."""
    settings = require_settings(ctx)

    async def _run() -> None:
        async with open_clients(settings) as clients:
            store = RecordStore(
                TODOS, clients.gateway, clients.attachments, clients.feed, settings.store
            )

            def render(view: tuple[Todo, ...]) -> None:
                click.echo("")
                echo_todos(view, len(view))

            store.subscribe(render)  # type: ignore[arg-type]
            async with store.session():
                click.echo("Watching for changes...")
                await asyncio.Event().wait()

    try:
        run_async(_run())
    except KeyboardInterrupt:
        click.echo("\nStopped.")
