"""Message stores: the repository interface and its SQLite implementation."""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, TypeVar

import pydantic

from . import config
from .errors import EntityNotFound, StoreError, ValidationError
from .models import Comment, CommentPayload, Entity, Message, SearchHit

logger = logging.getLogger(__name__)

EntityT = TypeVar("EntityT", bound=Entity)


class EntityStore(ABC, Generic[EntityT]):
    """Repository for one entity kind (messages or comments)."""

    model: type[EntityT]

    @abstractmethod
    def create(self, entity: EntityT) -> EntityT: ...

    @abstractmethod
    def get(self, entity_id: str) -> EntityT | None: ...

    @abstractmethod
    def _write(self, entity: EntityT) -> None: ...

    @abstractmethod
    def delete(self, entity_id: str) -> None: ...

    @abstractmethod
    def query_by_conversation(self, conversation_id: str) -> list[EntityT]: ...

    def update(self, entity_id: str, **fields: Any) -> EntityT:
        """Apply a partial update and return the stored result."""
        unknown = set(fields) - (set(self.model.model_fields) - {"id"})
        if unknown:
            raise ValidationError(
                f"Unknown fields: {', '.join(sorted(unknown))}",
                [{"path": [name], "message": "Unknown field", "code": "unknown_field"}
                 for name in sorted(unknown)],
            )

        current = self.get(entity_id)
        if current is None:
            raise EntityNotFound(f"{self.model.__name__} not found: {entity_id}")

        try:
            updated = self.model.model_validate({**current.model_dump(), **fields})
        except pydantic.ValidationError as exc:
            raise ValidationError.from_pydantic(exc) from exc

        self._write(updated)
        return updated


class Store(ABC):
    """A backend: one repository per entity kind plus search."""

    messages: EntityStore[Message]
    comments: EntityStore[Comment]

    @abstractmethod
    def search(self, query: str, limit: int = 10) -> list[SearchHit]: ...

    def close(self):
        pass


@dataclass(frozen=True)
class Table:
    name: str
    model: type[Entity]
    # Extra schema every row must satisfy before it is written
    payload_model: type[pydantic.BaseModel] | None = None

    @property
    def columns(self) -> list[str]:
        return list(self.model.model_fields)


MESSAGES_TABLE = Table("chat_messages", Message)
COMMENTS_TABLE = Table("comments", Comment, payload_model=CommentPayload)


class SqliteEntityStore(EntityStore[EntityT]):
    """One SQLite table holding one entity kind."""

    def __init__(self, conn: sqlite3.Connection, table: Table):
        self.conn = conn
        self.table = table
        self.model = table.model

    def _validate(self, entity: EntityT):
        if self.table.payload_model is None:
            return
        try:
            self.table.payload_model.model_validate(entity.model_dump())
        except pydantic.ValidationError as exc:
            raise ValidationError.from_pydantic(exc) from exc

    def _row(self, entity: EntityT) -> tuple:
        data = entity.model_dump()
        data["created_at"] = entity.created_at.isoformat()
        return tuple(data[col] for col in self.table.columns)

    def create(self, entity: EntityT) -> EntityT:
        self._validate(entity)
        columns = self.table.columns
        try:
            self.conn.execute(
                f"INSERT INTO {self.table.name} ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                self._row(entity),
            )
            self.conn.commit()
        except sqlite3.IntegrityError as exc:
            raise StoreError(f"{self.model.__name__} already exists: {entity.id}") from exc
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return entity

    def get(self, entity_id: str) -> EntityT | None:
        try:
            row = self.conn.execute(
                f"SELECT * FROM {self.table.name} WHERE id = ?", (entity_id,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        if not row:
            return None
        return self.model.model_validate(dict(row))

    def _write(self, entity: EntityT) -> None:
        self._validate(entity)
        columns = [col for col in self.table.columns if col != "id"]
        values = self._row(entity)
        try:
            self.conn.execute(
                f"UPDATE {self.table.name} SET {', '.join(f'{c} = ?' for c in columns)} "
                "WHERE id = ?",
                (*values[1:], entity.id),
            )
            self.conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    def delete(self, entity_id: str) -> None:
        try:
            self.conn.execute(f"DELETE FROM {self.table.name} WHERE id = ?", (entity_id,))
            self.conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    def query_by_conversation(self, conversation_id: str) -> list[EntityT]:
        try:
            rows = self.conn.execute(
                f"SELECT * FROM {self.table.name} WHERE conversation_id = ? "
                "ORDER BY position, created_at, id",
                (conversation_id,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return [self.model.model_validate(dict(r)) for r in rows]


class RelationalStore(Store):
    """SQLite-backed store with FTS5 full-text search over message content."""

    def __init__(self, db_path: Path):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()
        self.messages = SqliteEntityStore(self.conn, MESSAGES_TABLE)
        self.comments = SqliteEntityStore(self.conn, COMMENTS_TABLE)

    def _migrate(self):
        # Column order must match the model field order
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                id TEXT PRIMARY KEY,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                x REAL,
                y REAL,
                role TEXT NOT NULL,
                parent_message_id TEXT NOT NULL DEFAULT ''
            );

            CREATE INDEX IF NOT EXISTS idx_chat_messages_conv
                ON chat_messages(conversation_id);

            CREATE TABLE IF NOT EXISTS comments (
                id TEXT PRIMARY KEY,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                x REAL NOT NULL,
                y REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_comments_conv
                ON comments(conversation_id);

            CREATE VIRTUAL TABLE IF NOT EXISTS chat_messages_fts USING fts5(
                content,
                content='chat_messages',
                content_rowid='rowid',
                tokenize='porter unicode61'
            );

            CREATE TRIGGER IF NOT EXISTS chat_messages_ai
                AFTER INSERT ON chat_messages BEGIN
                    INSERT INTO chat_messages_fts(rowid, content)
                    VALUES (new.rowid, new.content);
                END;

            CREATE TRIGGER IF NOT EXISTS chat_messages_ad
                AFTER DELETE ON chat_messages BEGIN
                    INSERT INTO chat_messages_fts(chat_messages_fts, rowid, content)
                    VALUES ('delete', old.rowid, old.content);
                END;

            CREATE TRIGGER IF NOT EXISTS chat_messages_au
                AFTER UPDATE ON chat_messages BEGIN
                    INSERT INTO chat_messages_fts(chat_messages_fts, rowid, content)
                    VALUES ('delete', old.rowid, old.content);
                    INSERT INTO chat_messages_fts(rowid, content)
                    VALUES (new.rowid, new.content);
                END;
        """)
        self.conn.commit()

    def search(self, query: str, limit: int = 10) -> list[SearchHit]:
        """Full-text search using FTS5 MATCH; each term is matched literally."""
        terms = [t.replace('"', '""') for t in query.split()]
        if not terms:
            return []
        match = " ".join(f'"{t}"' for t in terms)

        rows = self.conn.execute(
            """SELECT m.*,
                      snippet(chat_messages_fts, 0, '>>>', '<<<', '...', 40) AS snippet,
                      rank
               FROM chat_messages_fts fts
               JOIN chat_messages m ON m.rowid = fts.rowid
               WHERE chat_messages_fts MATCH ?
               ORDER BY rank
               LIMIT ?""",
            (match, limit),
        ).fetchall()

        hits = []
        for r in rows:
            data = dict(r)
            snippet = data.pop("snippet")
            rank = data.pop("rank")
            hits.append(
                SearchHit(
                    message=Message.model_validate(data),
                    score=round(-rank, 4),
                    snippet=snippet,
                )
            )
        return hits

    def close(self):
        self.conn.close()


def open_store(backend: str = config.STORE_BACKEND, space_id: str = config.SPACE_ID) -> Store:
    """Build the configured backend; call once at startup and inject the result."""
    if backend == "relational":
        logger.info("Using relational store at %s", config.SQLITE_PATH)
        return RelationalStore(config.SQLITE_PATH)
    if backend == "space":
        from .spacestore import SpaceStore

        logger.info("Using space store %r at %s", space_id, config.CHROMA_PATH)
        return SpaceStore.persistent(config.CHROMA_PATH, space_id)
    raise ValueError(f"Unknown store backend: {backend!r} (expected 'space' or 'relational')")
