"""CLI interface for hypermaps."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import signal
import sys

import click

from . import __version__, config
from .config import DATA_DIR


@click.group()
@click.version_option(version=__version__, prog_name="hypermaps")
@click.option(
    "--backend",
    type=click.Choice(["space", "relational"]),
    default=config.STORE_BACKEND,
    show_default=True,
    help="Where messages are stored",
)
@click.pass_context
def cli(ctx: click.Context, backend: str):
    """hypermaps: branch AI chat conversations as a node graph.

    Messages live in a private space (or a SQLite database) and every reply
    hangs off the message it answers, so a conversation can fork anywhere.
    """
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.obj = {"backend": backend}


def _open_store(ctx: click.Context):
    from .storage import open_store

    return open_store(ctx.obj["backend"])


@cli.command()
@click.argument("conversation_id")
@click.option("--parent", "parent_id", default="", help="Branch from this message id")
@click.pass_context
def chat(ctx: click.Context, conversation_id: str, parent_id: str):
    """Chat in a conversation, streaming each reply.

    Every exchange continues from the previous reply. Press Ctrl-C while a
    reply streams to cancel it. Type /retry to regenerate the last reply,
    /dismiss to clear the error banner (this re-arms retries once the retry
    limit is reached) and /quit to leave.
    """
    store = _open_store(ctx)
    try:
        asyncio.run(_chat(store, conversation_id, parent_id))
    finally:
        store.close()


async def _chat(store, conversation_id: str, parent_id: str):
    from .completion import CompletionClient
    from .errors import RetryLimitError
    from .session import ConversationView, SessionState

    printed = 0

    def on_change(session):
        nonlocal printed
        if session.state is SessionState.STREAMING:
            click.echo(session.buffer[printed:], nl=False)
            printed = len(session.buffer)

    client = CompletionClient()
    view = ConversationView(store, client, conversation_id, listener=on_change)
    loop = asyncio.get_running_loop()

    try:
        while True:
            text = await asyncio.to_thread(click.prompt, click.style("you", fg="blue", bold=True))
            text = text.strip()
            if text == "/quit":
                break

            if text == "/dismiss":
                view.dismiss_error()
                click.echo(click.style("Error dismissed.", fg="yellow"))
                continue

            printed = 0
            if text == "/retry":
                session = await view.retry()
            else:
                session = await view.submit(text, parent_message_id=parent_id)

            if session is None:
                click.echo(click.style(view.error_message or "Nothing to retry.", fg="yellow"))
                if isinstance(view.error, RetryLimitError):
                    click.echo("Type /dismiss to re-arm retries.")
                continue

            click.echo(click.style("assistant: ", fg="green", bold=True), nl=False)
            try:
                loop.add_signal_handler(signal.SIGINT, view.cancel)
            except NotImplementedError:
                pass
            try:
                await view.join()
            finally:
                try:
                    loop.remove_signal_handler(signal.SIGINT)
                except NotImplementedError:
                    pass
            click.echo()

            if session.state is SessionState.COMPLETED:
                parent_id = session.message_id
            elif session.state is SessionState.IDLE:
                click.echo(click.style("Generation cancelled.", fg="yellow"))
            elif view.error is not None:
                click.echo(click.style(view.error_message, fg="red"))
                if view.can_retry:
                    click.echo("Type /retry to try again.")
    finally:
        await client.aclose()


@cli.command()
@click.argument("conversation_id")
@click.pass_context
def graph(ctx: click.Context, conversation_id: str):
    """Print the nodes and edges of a conversation as JSON."""
    from .projection import project

    store = _open_store(ctx)
    try:
        result = project(
            store.messages.query_by_conversation(conversation_id),
            store.comments.query_by_conversation(conversation_id),
        )
    finally:
        store.close()
    click.echo(result.model_dump_json(indent=2))


@cli.command()
@click.argument("payload", type=click.File("r"))
@click.pass_context
def comment(ctx: click.Context, payload):
    """Add a canvas comment from a JSON payload file ('-' for stdin).

    The payload holds id, content, createdAt (ISO string), conversationId,
    position, x and y.
    """
    from .errors import ValidationError
    from .ingest import ingest_comment

    try:
        data = json.load(payload)
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Payload is not valid JSON: {exc}")

    store = _open_store(ctx)
    try:
        result = ingest_comment(data, store)
    except ValidationError as exc:
        click.echo(json.dumps({"error": "Invalid payload", "details": exc.issues}, indent=2), err=True)
        sys.exit(1)
    finally:
        store.close()
    click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("message_id")
@click.option("--space", "space_id", default=config.PUBLIC_SPACE_ID, show_default=True)
def publish(message_id: str, space_id: str):
    """Publish a message from the private space into a public space."""
    from .storage import open_store

    store = open_store("space")
    try:
        message = store.messages.get(message_id)
        if message is None:
            raise click.ClickException(f"Message not found: {message_id}")
        store.publish(message, space_id)
    finally:
        store.close()
    click.echo(f"Published {message_id} to space '{space_id}'.")


@cli.command()
@click.argument("query")
@click.option("--limit", default=10, show_default=True)
@click.pass_context
def search(ctx: click.Context, query: str, limit: int):
    """Search stored messages."""
    store = _open_store(ctx)
    try:
        hits = store.search(query, limit=limit)
    finally:
        store.close()

    if not hits:
        click.echo(f"No messages found matching '{query}'.")
        return
    for hit in hits:
        m = hit.message
        click.echo(f"{hit.score:6.2f}  {m.conversation_id}  {m.role:<9}  {m.id}")
        preview = hit.snippet.replace("\n", " ")[:120]
        click.echo(f"        {preview}")


@cli.command()
@click.pass_context
def serve(ctx: click.Context):
    """Start the MCP server (stdio transport)."""
    from .server import mcp, set_store

    set_store(_open_store(ctx))
    mcp.run(transport="stdio")


@cli.command("config")
def config_cmd():
    """Print the current configuration and an MCP client snippet."""
    click.echo()
    click.echo(click.style("Configuration", bold=True))
    click.echo(f"  Store backend:   {config.STORE_BACKEND}")
    click.echo(f"  Space:           {config.SPACE_ID} (public: {config.PUBLIC_SPACE_ID})")
    click.echo(f"  Completion URL:  {config.COMPLETION_URL}")
    click.echo(f"  Data directory:  {DATA_DIR}")
    click.echo()

    hypermaps_path = shutil.which("hypermaps")
    server_config = {
        "mcpServers": {
            "hypermaps": {
                "command": hypermaps_path or "uvx",
                "args": ["serve"] if hypermaps_path else ["hypermaps", "serve"],
            }
        }
    }
    click.echo(click.style("MCP client", bold=True))
    click.echo(json.dumps(server_config, indent=2))
    click.echo()


@cli.command()
@click.confirmation_option(prompt="This will delete all stored conversations. Are you sure?")
def reset():
    """Delete all stored data and start fresh."""
    if DATA_DIR.exists():
        shutil.rmtree(DATA_DIR)
        click.echo(f"Deleted {DATA_DIR}")
    else:
        click.echo("No data to delete.")
