"""Project persisted messages and the in-flight response onto graph nodes and edges."""

from __future__ import annotations

import hashlib
import logging

from . import config
from .models import (
    Comment,
    Graph,
    GraphEdge,
    GraphNode,
    Message,
    NodeType,
    StreamingSnapshot,
)

logger = logging.getLogger(__name__)

_COLUMNS: dict[str, int] = {
    "user": config.USER_COLUMN_X,
    "assistant": config.ASSISTANT_COLUMN_X,
    "comment": config.COMMENT_COLUMN_X,
}


def jitter(entity_id: str) -> int:
    """Stable offset in [-JITTER_RANGE, JITTER_RANGE] derived from the id."""
    digest = hashlib.sha1(entity_id.encode("utf-8")).digest()
    span = 2 * config.JITTER_RANGE + 1
    return int.from_bytes(digest[:4], "big") % span - config.JITTER_RANGE


def edge_id(source: str, target: str) -> str:
    return f"edge-{source}-{target}"


def can_connect(source: GraphNode, target: GraphNode) -> bool:
    """Manual connections only run from a user node to an assistant node."""
    return source.type == "user" and target.type == "assistant"


class _Layout:
    """Resolves canvas positions, memoized per projection pass."""

    def __init__(self, messages: list[Message], comments: list[Comment]):
        self.by_id = {m.id: m for m in messages}
        ordered = sorted(messages, key=lambda m: (m.position, m.id))
        self.rows = {m.id: row for row, m in enumerate(ordered)}
        ordered_comments = sorted(comments, key=lambda c: (c.position, c.id))
        self.comment_rows = {c.id: row for row, c in enumerate(ordered_comments)}
        self.resolved: dict[str, tuple[float, float]] = {}

    def message(self, message: Message) -> tuple[float, float]:
        if message.id in self.resolved:
            return self.resolved[message.id]

        # Climb to the first pinned, placed or root ancestor, then lay out back down
        chain = [message]
        on_chain = {message.id}
        while True:
            top = chain[-1]
            if top.has_position:
                pos = (top.x, top.y)
                break
            parent = self.by_id.get(top.parent_message_id)
            if parent is None:
                pos = self.root(top.id, top.role, self.rows[top.id])
                break
            if parent.id in self.resolved:
                pos = self._offset(self.resolved[parent.id], top.id)
                break
            if parent.id in on_chain:
                logger.warning("Parent cycle at message %s; laying out as root", top.id)
                pos = self.root(top.id, top.role, self.rows[top.id])
                break
            chain.append(parent)
            on_chain.add(parent.id)

        self.resolved[top.id] = pos
        for child in reversed(chain[:-1]):
            pos = self._offset(pos, child.id)
            self.resolved[child.id] = pos
        return self.resolved[message.id]

    def child_of(self, parent: Message, child_id: str) -> tuple[float, float]:
        return self._offset(self.message(parent), child_id)

    def _offset(self, parent_pos: tuple[float, float], child_id: str) -> tuple[float, float]:
        px, py = parent_pos
        offset = jitter(child_id)
        return (px + config.CHILD_OFFSET_X + offset, py + offset)

    def root(self, entity_id: str, node_type: NodeType, row: int) -> tuple[float, float]:
        offset = jitter(entity_id)
        return (_COLUMNS[node_type] + offset, row * config.ROW_SPACING + offset)

    def comment(self, comment: Comment) -> tuple[float, float]:
        if comment.has_position:
            return (comment.x, comment.y)
        return self.root(comment.id, "comment", self.comment_rows[comment.id])


def project(
    messages: list[Message],
    comments: list[Comment],
    streaming: StreamingSnapshot | None = None,
) -> Graph:
    """Build the graph for one render pass.

    A persisted message always wins over the streaming snapshot carrying the
    same id, so the provisional node is dropped in the very pass where the
    real message first appears.
    """
    layout = _Layout(messages, comments)
    nodes: list[GraphNode] = []
    edges: list[GraphEdge] = []

    for message in messages:
        x, y = layout.message(message)
        nodes.append(
            GraphNode(
                id=message.id,
                type=message.role,
                x=x,
                y=y,
                content=message.content,
                created_at=message.created_at,
            )
        )
        if message.parent_message_id:
            edges.append(
                GraphEdge(
                    id=edge_id(message.parent_message_id, message.id),
                    source=message.parent_message_id,
                    target=message.id,
                )
            )

    for comment in comments:
        x, y = layout.comment(comment)
        nodes.append(
            GraphNode(
                id=comment.id,
                type="comment",
                x=x,
                y=y,
                content=comment.content,
                created_at=comment.created_at,
            )
        )

    if streaming is not None and streaming.message_id not in layout.by_id:
        parent = layout.by_id.get(streaming.user_message_id)
        if parent is not None:
            x, y = layout.child_of(parent, streaming.message_id)
        else:
            x, y = layout.root(streaming.message_id, "assistant", len(messages))
        nodes.append(
            GraphNode(
                id=streaming.message_id,
                type="assistant",
                x=x,
                y=y,
                content=streaming.content,
                streaming=True,
            )
        )
        edges.append(
            GraphEdge(
                id=edge_id(streaming.user_message_id, streaming.message_id),
                source=streaming.user_message_id,
                target=streaming.message_id,
            )
        )

    return Graph(nodes=nodes, edges=edges)
