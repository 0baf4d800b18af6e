"""
CLI interface for dbmanager.

Usage:
    dbmanager insert '{"name": "a"}'
    dbmanager get 65f1c0ffee0000000000abcd
    dbmanager list --find '{"name": "a"}' --sort name --limit 10
    dbmanager set 65f1c0ffee0000000000abcd profile.age 42
"""

import asyncio
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
from bson import json_util
from bson.errors import InvalidId
from typing_extensions import Annotated

from .api import DBManager
from .backend import close_database, create_manager
from .config import get_config_dir, load_or_create_config
from .errors import DBManagerError, log_exception
from .logging_config import configure_ops_log, enable_debug_mode

T = TypeVar("T")

# Set DBMANAGER_VERBOSE=1 to enable debug mode via environment
if os.environ.get("DBMANAGER_VERBOSE") == "1":
    enable_debug_mode()


@dataclass
class CliState:
    """Global options shared by all commands."""
    store: Optional[Path] = None
    collection: Optional[str] = None


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


app = typer.Typer(
    name="dbmanager",
    help="CRUD access to a document store.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="DBMANAGER_STORE_PATH",
        help="Store directory (default: ~/.dbmanager)",
    )] = None,
    collection: Annotated[Optional[str], typer.Option(
        "--collection", "-c",
        help="Collection to operate on (default: from config)",
    )] = None,
):
    """CRUD access to a document store."""
    ctx.obj = CliState(store=store, collection=collection)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _parse_json(value: Optional[str], option: str) -> Any:
    """Parse extended JSON given on the command line."""
    if value is None:
        return None
    try:
        return json_util.loads(value)
    except (ValueError, TypeError, InvalidId) as e:
        raise typer.BadParameter(f"{option} is not valid JSON: {e}")


def _parse_value(value: str) -> Any:
    """JSON if it parses, the plain string otherwise."""
    try:
        return json_util.loads(value)
    except (ValueError, TypeError, InvalidId):
        return value


def _dumps(value: Any) -> str:
    return json_util.dumps(value, json_options=json_util.RELAXED_JSON_OPTIONS, indent=2)


def _run(ctx: typer.Context, command: str, op: Callable[[DBManager], Awaitable[T]]) -> T:
    """Open the configured store, run ``op`` against a bound manager, close the store."""
    state: CliState = ctx.obj or CliState()
    try:
        config = load_or_create_config(get_config_dir(state.store))
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if state.collection:
        config = replace(config, collection=state.collection)

    ops_handler = configure_ops_log(config.path)

    async def _session() -> T:
        manager = create_manager(config)
        try:
            return await op(manager)
        finally:
            await close_database(manager.db)

    try:
        return asyncio.run(_session())
    except (DBManagerError, ValueError, TypeError) as e:
        log_exception(e, command)
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    finally:
        logging.getLogger("dbmanager").removeHandler(ops_handler)
        ops_handler.close()


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def get(
    ctx: typer.Context,
    id: Annotated[str, typer.Argument(help="Document ID")],
    path: Annotated[Optional[str], typer.Option(
        "--path", "-p",
        help="Dot-separated field path to print instead of the whole document",
    )] = None,
):
    """Print a single document (or one of its fields)."""
    if path:
        value = _run(ctx, "get", lambda m: m.get_path(path, id=id))
        typer.echo(_dumps(value))
        return

    item = _run(ctx, "get", lambda m: m.get_one(id=id))
    if item is None:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    typer.echo(_dumps(item))


@app.command("list")
def list_items(
    ctx: typer.Context,
    find: Annotated[Optional[str], typer.Option(
        "--find", "-f",
        help="Filter as JSON, e.g. '{\"name\": \"a\"}'",
    )] = None,
    sort: Annotated[Optional[str], typer.Option(
        "--sort",
        help="Field to sort by",
    )] = None,
    desc: Annotated[bool, typer.Option(
        "--desc",
        help="Sort descending",
    )] = False,
    limit: Annotated[Optional[int], typer.Option(
        "--limit", "-n",
        help="Maximum number of documents",
    )] = None,
):
    """Print matching documents as a JSON array."""
    filter = _parse_json(find, "--find")
    sort_spec = [(sort, -1 if desc else 1)] if sort else None
    items = _run(ctx, "list", lambda m: m.get_many(find=filter, sort=sort_spec, limit=limit))
    typer.echo(_dumps(items))


@app.command()
def insert(
    ctx: typer.Context,
    document: Annotated[str, typer.Argument(help="Document as JSON")],
):
    """Insert a document and print its ID."""
    payload = _parse_json(document, "document")
    if not isinstance(payload, dict):
        raise typer.BadParameter("document must be a JSON object")
    inserted_id = _run(ctx, "insert", lambda m: m.insert_one(payload))
    typer.echo(str(inserted_id))


@app.command()
def update(
    ctx: typer.Context,
    id: Annotated[str, typer.Argument(help="Document ID")],
    set_json: Annotated[Optional[str], typer.Option(
        "--set",
        help="Fields to set, as JSON",
    )] = None,
    unset: Annotated[Optional[list[str]], typer.Option(
        "--unset",
        help="Field to remove (repeatable)",
    )] = None,
    upsert: Annotated[bool, typer.Option(
        "--upsert",
        help="Create the document if it does not exist",
    )] = False,
):
    """Set and/or remove fields of a document."""
    set_fields = _parse_json(set_json, "--set")
    if set_fields is None and not unset:
        typer.echo("Error: Specify at least one --set or --unset", err=True)
        raise typer.Exit(1)
    result = _run(ctx, "update", lambda m: m.update(
        id=id,
        set_fields=set_fields,
        unset_fields=unset or None,
        auto_insert=True if upsert else None,
    ))
    typer.echo(f"matched={result.matched_count} modified={result.modified_count}")


@app.command("set")
def set_value(
    ctx: typer.Context,
    id: Annotated[str, typer.Argument(help="Document ID")],
    path: Annotated[str, typer.Argument(help="Dot-separated field path")],
    value: Annotated[str, typer.Argument(help="Value (JSON, or a plain string)")],
):
    """Set a single field of a document."""
    _run(ctx, "set", lambda m: m.set_path(path, _parse_value(value), id=id))
    typer.echo(f"Set {path} on {id}")


@app.command()
def delete(
    ctx: typer.Context,
    id: Annotated[str, typer.Argument(help="Document ID")],
):
    """Delete a document."""
    result = _run(ctx, "delete", lambda m: m.delete_one(id=id))
    if not result.deleted_count:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted: {id}")


@app.command()
def distinct(
    ctx: typer.Context,
    field: Annotated[str, typer.Argument(help="Field name")],
    find: Annotated[Optional[str], typer.Option(
        "--find", "-f",
        help="Filter as JSON",
    )] = None,
):
    """Print the distinct values of a field."""
    filter = _parse_json(find, "--find")
    values = _run(ctx, "distinct", lambda m: m.distinct(field, find=filter))
    typer.echo(_dumps(values))


@app.command()
def index(
    ctx: typer.Context,
    fields: Annotated[list[str], typer.Argument(help="Field names, in key order")],
    unique: Annotated[bool, typer.Option(
        "--unique",
        help="Reject duplicate values",
    )] = False,
):
    """Ensure an index exists and print its name."""
    keys = [(name, 1) for name in fields]
    name = _run(ctx, "index", lambda m: m.create_index(keys, unique=unique))
    typer.echo(name)


def main():
    app()


if __name__ == "__main__":
    main()
