"""FastMCP server exposing conversation graph tools."""

from __future__ import annotations

import json
import logging
import sys

from mcp.server.fastmcp import FastMCP

from . import config
from .completion import CompletionClient
from .errors import HypermapsError
from .ingest import ingest_comment
from .session import ConversationView
from .storage import Store, open_store

# Logging to stderr only; stdout is the MCP JSON-RPC transport
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "hypermaps",
    instructions=(
        "Compose and branch AI chat conversations as a node graph. "
        "Use send_message to ask a question and get the assistant reply. "
        "Use get_graph to read the nodes and edges of a conversation. "
        "Use connect_nodes, move_node, edit_message and delete_message to reshape it. "
        "Use add_comment to annotate the canvas and publish_message to share a message."
    ),
)

# Singletons: one store and one view per conversation, reused across tool calls
_store: Store | None = None
_client: CompletionClient | None = None
_views: dict[str, ConversationView] = {}


def set_store(store: Store):
    """Use an already opened store instead of the configured one."""
    global _store
    _store = store


def _get_store() -> Store:
    global _store
    if _store is None:
        _store = open_store()
    return _store


def _get_client() -> CompletionClient:
    global _client
    if _client is None:
        _client = CompletionClient()
    return _client


def _get_view(conversation_id: str) -> ConversationView:
    if conversation_id not in _views:
        _views[conversation_id] = ConversationView(_get_store(), _get_client(), conversation_id)
    return _views[conversation_id]


def _error_text(exc: HypermapsError) -> str:
    issues = getattr(exc, "issues", None)
    if issues:
        return f"Error: {exc}\n" + json.dumps(issues, indent=2)
    return f"Error: {exc}"


async def _finish(view: ConversationView, started: bool) -> str:
    if not started:
        if view.error_message:
            return view.error_message
        return "A response is already being generated for this conversation."

    session = await view.join()
    if view.error is not None:
        hint = " Use retry_last_message to try again." if view.can_retry else ""
        return f"{view.error_message}{hint}"

    message = view.store.messages.get(session.message_id)
    if message is None:
        return "Generation was cancelled."
    return f"Assistant (`{message.id}`):\n\n{message.content}"


@mcp.tool()
async def send_message(conversation_id: str, content: str, parent_message_id: str = "") -> str:
    """Add a user message to a conversation and generate the assistant reply.

    Args:
        conversation_id: The conversation to add the message to
        content: The user message text
        parent_message_id: Optional message to branch from (empty for a new root)
    """
    view = _get_view(conversation_id)
    try:
        session = await view.submit(content, parent_message_id=parent_message_id)
    except HypermapsError as exc:
        return _error_text(exc)
    return await _finish(view, session is not None)


@mcp.tool()
async def generate_response(conversation_id: str, message_id: str) -> str:
    """Generate an assistant reply to an existing user message.

    Args:
        conversation_id: The conversation holding the message
        message_id: The user message to answer
    """
    view = _get_view(conversation_id)
    try:
        session = await view.generate(message_id)
    except HypermapsError as exc:
        return _error_text(exc)
    return await _finish(view, session is not None)


@mcp.tool()
async def retry_last_message(conversation_id: str) -> str:
    """Retry generating a reply to the last user message (at most 3 times).

    Args:
        conversation_id: The conversation to retry in
    """
    view = _get_view(conversation_id)
    session = await view.retry()
    return await _finish(view, session is not None)


@mcp.tool()
def get_graph(conversation_id: str) -> str:
    """Get the nodes and edges of a conversation graph as JSON.

    Args:
        conversation_id: The conversation to project
    """
    return _get_view(conversation_id).graph().model_dump_json(indent=2)


@mcp.tool()
def list_messages(conversation_id: str) -> str:
    """List the messages of a conversation in order.

    Args:
        conversation_id: The conversation to list
    """
    messages = _get_view(conversation_id).messages()
    if not messages:
        return f"No messages in conversation '{conversation_id}'."

    lines = [f"Conversation '{conversation_id}' ({len(messages)} messages):\n"]
    for m in messages:
        parent = f" ← `{m.parent_message_id}`" if m.parent_message_id else ""
        preview = m.content.replace("\n", " ")[:150]
        lines.append(f"{m.position}. **{m.role}** `{m.id}`{parent}")
        lines.append(f"   {preview}")
    return "\n".join(lines)


@mcp.tool()
def move_node(conversation_id: str, node_id: str, x: float, y: float) -> str:
    """Store new canvas coordinates for a message or comment node.

    Args:
        conversation_id: The conversation holding the node
        node_id: The message or comment id
        x: Canvas x coordinate
        y: Canvas y coordinate
    """
    try:
        _get_view(conversation_id).move_node(node_id, x, y)
    except HypermapsError as exc:
        return _error_text(exc)
    return f"Moved `{node_id}` to ({x:g}, {y:g})."


@mcp.tool()
def connect_nodes(conversation_id: str, source_id: str, target_id: str) -> str:
    """Connect a user message to an assistant message, making it the reply's parent.

    Args:
        conversation_id: The conversation holding both messages
        source_id: The user message id
        target_id: The assistant message id
    """
    try:
        connected = _get_view(conversation_id).connect(source_id, target_id)
    except HypermapsError as exc:
        return _error_text(exc)
    if connected is None:
        return "Connection rejected: only user → assistant connections are allowed."
    return f"Connected `{source_id}` → `{target_id}`."


@mcp.tool()
def edit_message(conversation_id: str, message_id: str, content: str, role: str | None = None) -> str:
    """Edit the content (and optionally the role) of a message.

    Args:
        conversation_id: The conversation holding the message
        message_id: The message to edit
        content: New message text
        role: Optional new role, "user" or "assistant"
    """
    try:
        _get_view(conversation_id).edit_message(message_id, content, role)
    except HypermapsError as exc:
        return _error_text(exc)
    return f"Updated `{message_id}`."


@mcp.tool()
def delete_message(conversation_id: str, message_id: str) -> str:
    """Delete a message from a conversation.

    Args:
        conversation_id: The conversation holding the message
        message_id: The message to delete
    """
    try:
        _get_view(conversation_id).delete_message(message_id)
    except HypermapsError as exc:
        return _error_text(exc)
    return f"Deleted `{message_id}`."


@mcp.tool()
def add_comment(payload: dict) -> str:
    """Add a canvas comment.

    Args:
        payload: {id, content, createdAt (ISO string), conversationId, position, x, y}
    """
    try:
        result = ingest_comment(payload, _get_store())
    except HypermapsError as exc:
        return _error_text(exc)
    return json.dumps(result, indent=2)


@mcp.tool()
def publish_message(message_id: str, space_id: str = config.PUBLIC_SPACE_ID) -> str:
    """Publish a message into a public space.

    Args:
        message_id: The message to publish
        space_id: The public space to publish into
    """
    from .spacestore import SpaceStore

    store = _get_store()
    if not isinstance(store, SpaceStore):
        return "Publishing requires the space store backend (HYPERMAPS_STORE_BACKEND=space)."

    message = store.messages.get(message_id)
    if message is None:
        return f"Message not found: {message_id}"

    try:
        store.publish(message, space_id)
    except HypermapsError as exc:
        return _error_text(exc)
    return f"Published `{message_id}` to space '{space_id}'."


@mcp.tool()
def search_messages(query: str, limit: int = 10) -> str:
    """Search stored messages.

    Args:
        query: What to search for
        limit: Maximum number of results (default 10)
    """
    hits = _get_store().search(query, limit=limit)
    if not hits:
        return f"No messages found matching '{query}'."

    lines = [f"Found {len(hits)} messages matching '{query}':\n"]
    for i, hit in enumerate(hits, 1):
        m = hit.message
        lines.append(f"{i}. **{m.role}** in `{m.conversation_id}` (score {hit.score:.2f})")
        lines.append(f"   ID: `{m.id}`")
        preview = hit.snippet.replace("\n", " ")[:150]
        lines.append(f"   Preview: {preview}")
        lines.append("")
    return "\n".join(lines)
