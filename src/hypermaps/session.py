"""Streaming session state machine and the conversation view that drives it."""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable

from . import config
from .completion import CompletionClient
from .decoder import StreamDecoder
from .errors import (
    GenerationEmptyError,
    GenerationError,
    HypermapsError,
    InvalidTransitionError,
    NetworkError,
    PersistenceError,
    RetryLimitError,
    StoreError,
    UnknownError,
    ValidationError,
    classify_error,
)
from .models import ChatTurn, Comment, Graph, Message, StreamEvent, StreamingSnapshot, new_id
from .projection import can_connect, project
from .storage import Store

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionEvent(str, enum.Enum):
    SUBMIT = "submit"
    CONNECTION_OPENED = "connection_opened"
    CONNECTION_FAILED = "connection_failed"
    CHUNK = "chunk"
    STREAM_ERROR = "stream_error"
    STREAM_END = "stream_end"
    PERSISTED = "persisted"
    EMPTY_BUFFER = "empty_buffer"
    PERSIST_ERROR = "persist_error"
    CANCEL = "cancel"


S, E = SessionState, SessionEvent

TRANSITIONS: dict[tuple[SessionState, SessionEvent], SessionState] = {
    (S.IDLE, E.SUBMIT): S.REQUESTING,
    (S.REQUESTING, E.CONNECTION_OPENED): S.STREAMING,
    (S.REQUESTING, E.CONNECTION_FAILED): S.FAILED,
    (S.STREAMING, E.CHUNK): S.STREAMING,
    (S.STREAMING, E.STREAM_ERROR): S.FAILED,
    (S.STREAMING, E.STREAM_END): S.FINALIZING,
    (S.FINALIZING, E.PERSISTED): S.COMPLETED,
    (S.FINALIZING, E.EMPTY_BUFFER): S.FAILED,
    (S.FINALIZING, E.PERSIST_ERROR): S.FAILED,
}

TERMINAL_STATES = {S.COMPLETED, S.FAILED}
ACTIVE_STATES = {S.REQUESTING, S.STREAMING, S.FINALIZING}


class StreamingSession:
    """One in-flight assistant response.

    All state changes go through `dispatch`. The provisional message id is
    assigned up front and becomes the persisted message id on success.
    """

    def __init__(self, conversation_id: str, user_message_id: str):
        self.conversation_id = conversation_id
        self.user_message_id = user_message_id
        self.message_id = new_id()
        self.state = SessionState.IDLE
        self.buffer = ""
        self.error: HypermapsError | None = None

    def __repr__(self):
        return f"<StreamingSession {self.message_id} {self.state.value}>"

    @property
    def active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def dispatch(
        self,
        event: SessionEvent,
        delta: str = "",
        error: HypermapsError | None = None,
    ) -> SessionState:
        if event is SessionEvent.CANCEL:
            if self.terminal:
                raise InvalidTransitionError(f"Cannot cancel a {self.state.value} session")
            target = SessionState.IDLE
        else:
            target = TRANSITIONS.get((self.state, event))
            if target is None:
                raise InvalidTransitionError(
                    f"Event {event.value} not accepted in state {self.state.value}"
                )

        if event is SessionEvent.CHUNK:
            self.buffer += delta
        elif target in (SessionState.FAILED, SessionState.IDLE):
            self.buffer = ""

        if error is not None:
            self.error = error

        logger.debug("Session %s: %s --%s--> %s", self.message_id, self.state.value, event.value, target.value)
        self.state = target
        return target

    def snapshot(self) -> StreamingSnapshot | None:
        if not self.active:
            return None
        return StreamingSnapshot(
            message_id=self.message_id,
            user_message_id=self.user_message_id,
            conversation_id=self.conversation_id,
            content=self.buffer,
            state=self.state.value,
        )


def lineage(messages: list[Message], message: Message) -> list[Message]:
    """Walk from message back to its root via parent ids, return root-first."""
    by_id = {m.id: m for m in messages}
    by_id[message.id] = message
    path: list[Message] = []
    visited: set[str] = set()
    current: Message | None = message

    while current is not None:
        if current.id in visited:
            logger.warning("Circular parent reference detected at message %s", current.id)
            break
        visited.add(current.id)
        path.append(current)
        current = by_id.get(current.parent_message_id) if current.parent_message_id else None

    path.reverse()
    return path


class ConversationView:
    """Owns one conversation canvas: its store, gestures and active generation.

    At most one session generates at a time; submissions made meanwhile are
    ignored. `listener` is called after every session transition so a
    renderer can re-project.
    """

    def __init__(
        self,
        store: Store,
        client: CompletionClient,
        conversation_id: str,
        *,
        max_retries: int = config.MAX_RETRIES,
        listener: Callable[[StreamingSession], None] | None = None,
    ):
        self.store = store
        self.client = client
        self.conversation_id = conversation_id
        self.max_retries = max_retries
        self.listener = listener
        self.session: StreamingSession | None = None
        self.last_session: StreamingSession | None = None
        self.last_user_message: Message | None = None
        self.error: HypermapsError | None = None
        self.retry_count = 0
        self._task: asyncio.Task | None = None

    # --- State ---------------------------------------------------------

    @property
    def active(self) -> bool:
        return self.session is not None and self.session.active

    @property
    def error_message(self) -> str | None:
        return self.error.user_message if self.error else None

    @property
    def can_retry(self) -> bool:
        if self.active or self.last_user_message is None:
            return False
        if self.error is not None and not isinstance(self.error, GenerationError):
            return False
        return self.retry_count < self.max_retries

    def dismiss_error(self):
        """Clear the banner; acknowledging the retry limit re-arms retries."""
        if isinstance(self.error, RetryLimitError):
            self.retry_count = 0
        self.error = None

    def messages(self) -> list[Message]:
        return self.store.messages.query_by_conversation(self.conversation_id)

    def comments(self) -> list[Comment]:
        return self.store.comments.query_by_conversation(self.conversation_id)

    def graph(self) -> Graph:
        snapshot = self.session.snapshot() if self.session else None
        return project(self.messages(), self.comments(), snapshot)

    # --- Generation ----------------------------------------------------

    async def submit(
        self,
        content: str,
        parent_message_id: str = "",
        x: float | None = None,
        y: float | None = None,
    ) -> StreamingSession | None:
        """Persist a user message and start generating its reply."""
        if self.active:
            logger.info("Generation already active in %s; ignoring submit", self.conversation_id)
            return None

        message = self.create_message(content, parent_message_id=parent_message_id, x=x, y=y)
        return self._start(message)

    async def generate(self, message_id: str) -> StreamingSession | None:
        """Start generating a reply to an already persisted user message."""
        if self.active:
            logger.info("Generation already active in %s; ignoring generate", self.conversation_id)
            return None

        message = self.store.messages.get(message_id)
        if message is None or message.role != "user":
            raise ValidationError(f"Not a user message: {message_id}")
        return self._start(message)

    async def retry(self) -> StreamingSession | None:
        """Regenerate the reply to the last user message, up to the retry cap."""
        if self.active or self.last_user_message is None:
            return None
        if self.error is not None and not isinstance(self.error, GenerationError):
            logger.info("Retry not offered after %s", type(self.error).__name__)
            return None
        if self.retry_count >= self.max_retries:
            self.error = RetryLimitError()
            return None

        self.retry_count += 1
        logger.info("Retry %d/%d in %s", self.retry_count, self.max_retries, self.conversation_id)
        return self._start(self.last_user_message)

    async def join(self) -> StreamingSession | None:
        """Wait for the running generation (if any) and return its session."""
        if self._task is not None:
            await asyncio.wait([self._task])
            if not self._task.cancelled() and self._task.exception() is not None:
                raise self._task.exception()
        return self.last_session

    def cancel(self) -> bool:
        """Abort the active generation; nothing is persisted."""
        session = self.session
        if session is None or session.terminal:
            return False

        session.dispatch(SessionEvent.CANCEL)
        self._notify(session)
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.session = None
        logger.info("Generation %s cancelled", session.message_id)
        return True

    def _start(self, user_message: Message) -> StreamingSession:
        session = StreamingSession(self.conversation_id, user_message.id)
        self.session = session
        self.last_session = session
        self.last_user_message = user_message
        self.error = None
        turns = [
            ChatTurn(role=m.role, content=m.content)
            for m in lineage(self.messages(), user_message)
            if m.content.strip()
        ]
        self._dispatch(session, SessionEvent.SUBMIT)
        self._task = asyncio.create_task(self._generate(session, turns))
        return session

    def _dispatch(self, session: StreamingSession, event: SessionEvent, **kwargs):
        session.dispatch(event, **kwargs)
        self._notify(session)

    def _notify(self, session: StreamingSession):
        if self.listener is not None:
            self.listener(session)

    async def _generate(self, session: StreamingSession, turns: list[ChatTurn]):
        decoder = StreamDecoder()
        try:
            async with self.client.stream(turns) as body:
                async for text in body:
                    if not text:
                        continue
                    if session.state is SessionState.REQUESTING:
                        self._dispatch(session, SessionEvent.CONNECTION_OPENED)
                    if self._apply(session, decoder.feed(text)):
                        break
                else:
                    if not self._apply(session, decoder.close()):
                        self._end_of_body(session)
        except GenerationError as exc:
            self._fail(session, exc)
        except asyncio.CancelledError:
            logger.debug("Generation task for %s cancelled", session.message_id)
            raise
        except Exception as exc:
            logger.exception("Unexpected error while streaming %s", session.message_id)
            self._fail(session, UnknownError(str(exc)))

        try:
            if session.state is SessionState.FINALIZING:
                self._finalize(session)
        finally:
            if self.session is session:
                self.session = None

    def _apply(self, session: StreamingSession, events: list[StreamEvent]) -> bool:
        """Apply decoded events in order; True once the stream has ended or failed."""
        for event in events:
            if not session.active:
                return True
            if event.kind == "chunk":
                self._dispatch(session, SessionEvent.CHUNK, delta=event.text)
            elif event.kind == "error":
                error = classify_error(event.text)
                logger.warning("Provider reported an error: %s", event.text)
                self._fail(session, error)
                return True
            elif event.kind == "end":
                logger.debug("Stream finished: %s", event.payload)
                self._dispatch(session, SessionEvent.STREAM_END)
                return True
            else:
                logger.debug("Ignoring data record: %s", event.payload)
        return False

    def _end_of_body(self, session: StreamingSession):
        # A body that closes cleanly without a finish record still ends the stream
        if session.state is SessionState.REQUESTING:
            self._fail(session, NetworkError("Empty response from completion endpoint"))
        elif session.state is SessionState.STREAMING:
            self._dispatch(session, SessionEvent.STREAM_END)

    def _fail(self, session: StreamingSession, error: GenerationError):
        if session.state is SessionState.REQUESTING:
            event = SessionEvent.CONNECTION_FAILED
        elif session.state is SessionState.STREAMING:
            event = SessionEvent.STREAM_ERROR
        else:
            return
        logger.warning("Generation %s failed: %s", session.message_id, error)
        self._dispatch(session, event, error=error)
        self.error = error

    def _finalize(self, session: StreamingSession):
        content = session.buffer
        if not content.strip():
            error = GenerationEmptyError()
            self._dispatch(session, SessionEvent.EMPTY_BUFFER, error=error)
            self.error = error
            return

        try:
            message = Message(
                id=session.message_id,
                role="assistant",
                content=content,
                conversation_id=session.conversation_id,
                parent_message_id=session.user_message_id,
                position=len(self.messages()),
            )
            self.store.messages.create(message)
        except Exception as exc:
            if isinstance(exc, StoreError):
                logger.error("Could not persist generated message %s: %s", session.message_id, exc)
            else:
                logger.exception("Unexpected error persisting generated message %s", session.message_id)
            error = PersistenceError(str(exc))
            self._dispatch(session, SessionEvent.PERSIST_ERROR, error=error)
            self.error = error
            return

        self._dispatch(session, SessionEvent.PERSISTED)
        self.retry_count = 0

    # --- Canvas gestures -----------------------------------------------

    def create_message(
        self,
        content: str,
        role: str = "user",
        parent_message_id: str = "",
        x: float | None = None,
        y: float | None = None,
    ) -> Message:
        """Persist a new message at the end of the conversation (double-click create)."""
        message = Message(
            role=role,
            content=content,
            conversation_id=self.conversation_id,
            parent_message_id=parent_message_id,
            position=len(self.messages()),
            x=x,
            y=y,
        )
        return self.store.messages.create(message)

    def move_node(self, node_id: str, x: float, y: float) -> Message | Comment:
        if self.store.messages.get(node_id) is not None:
            return self.store.messages.update(node_id, x=x, y=y)
        return self.store.comments.update(node_id, x=x, y=y)

    def connect(self, source_id: str, target_id: str) -> Message | None:
        """Link a user node to an assistant node; other pairings are rejected."""
        graph = self.graph()
        source, target = graph.node(source_id), graph.node(target_id)
        if source is None or target is None or target.streaming or not can_connect(source, target):
            logger.info("Rejected connection %s -> %s", source_id, target_id)
            return None
        return self.store.messages.update(target_id, parent_message_id=source_id)

    def edit_message(self, message_id: str, content: str, role: str | None = None) -> Message:
        fields: dict = {"content": content}
        if role is not None:
            fields["role"] = role
        return self.store.messages.update(message_id, **fields)

    def delete_message(self, message_id: str):
        self.store.messages.delete(message_id)

    def create_comment(self, content: str, x: float, y: float) -> Comment:
        comment = Comment(
            content=content,
            conversation_id=self.conversation_id,
            position=len(self.comments()),
            x=x,
            y=y,
        )
        return self.store.comments.create(comment)

    def edit_comment(self, comment_id: str, content: str) -> Comment:
        return self.store.comments.update(comment_id, content=content)

    def delete_comment(self, comment_id: str):
        self.store.comments.delete(comment_id)
