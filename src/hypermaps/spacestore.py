"""ChromaDB-backed entity spaces: the graph-store backend."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import chromadb
from chromadb.errors import ChromaError

from .errors import StoreError
from .models import Comment, Message, SearchHit
from .storage import EntityStore, EntityT, Store

logger = logging.getLogger(__name__)


class ChromaEntityStore(EntityStore[EntityT]):
    """One collection holding one entity kind.

    Content is the document; every other field lives in the metadata, with
    unset coordinates omitted.
    """

    def __init__(self, collection: Any, model: type[EntityT]):
        self.collection = collection
        self.model = model

    def _metadata(self, entity: EntityT) -> dict:
        data = entity.model_dump(exclude={"id", "content"})
        data["created_at"] = entity.created_at.isoformat()
        return {key: value for key, value in data.items() if value is not None}

    def _entity(self, entity_id: str, document: str | None, metadata: dict | None) -> EntityT:
        return self.model.model_validate({**(metadata or {}), "id": entity_id, "content": document or ""})

    def _records(self, result: dict) -> list[EntityT]:
        return [
            self._entity(entity_id, result["documents"][i], result["metadatas"][i])
            for i, entity_id in enumerate(result["ids"])
        ]

    def create(self, entity: EntityT) -> EntityT:
        if self.get(entity.id) is not None:
            raise StoreError(f"{self.model.__name__} already exists: {entity.id}")
        try:
            self.collection.add(
                ids=[entity.id],
                documents=[entity.content],
                metadatas=[self._metadata(entity)],
            )
        except (ChromaError, ValueError) as exc:
            raise StoreError(str(exc)) from exc
        return entity

    def get(self, entity_id: str) -> EntityT | None:
        try:
            result = self.collection.get(ids=[entity_id], include=["documents", "metadatas"])
        except (ChromaError, ValueError) as exc:
            raise StoreError(str(exc)) from exc
        records = self._records(result)
        return records[0] if records else None

    def _write(self, entity: EntityT) -> None:
        try:
            self.collection.upsert(
                ids=[entity.id],
                documents=[entity.content],
                metadatas=[self._metadata(entity)],
            )
        except (ChromaError, ValueError) as exc:
            raise StoreError(str(exc)) from exc

    def delete(self, entity_id: str) -> None:
        try:
            self.collection.delete(ids=[entity_id])
        except (ChromaError, ValueError) as exc:
            raise StoreError(str(exc)) from exc

    def query_by_conversation(self, conversation_id: str) -> list[EntityT]:
        try:
            result = self.collection.get(
                where={"conversation_id": conversation_id},
                include=["documents", "metadatas"],
            )
        except (ChromaError, ValueError) as exc:
            raise StoreError(str(exc)) from exc
        records = self._records(result)
        records.sort(key=lambda e: (e.position, e.created_at, e.id))
        return records


class SpaceStore(Store):
    """Messages and comments of one space, one collection per entity kind."""

    def __init__(self, client: Any, space_id: str, embedding_function: Any = None):
        self.client = client
        self.space_id = space_id
        self.embedding_function = embedding_function
        self.messages = ChromaEntityStore(self._collection("messages"), Message)
        self.comments = ChromaEntityStore(self._collection("comments"), Comment)

    @classmethod
    def persistent(cls, persist_path: Path, space_id: str, embedding_function: Any = None) -> SpaceStore:
        persist_path.mkdir(parents=True, exist_ok=True)
        client = chromadb.PersistentClient(path=str(persist_path))
        return cls(client, space_id, embedding_function)

    def _collection(self, kind: str):
        kwargs: dict[str, Any] = {
            "name": f"{self.space_id}-{kind}",
            "metadata": {"hnsw:space": "cosine"},
        }
        if self.embedding_function is not None:
            kwargs["embedding_function"] = self.embedding_function
        return self.client.get_or_create_collection(**kwargs)

    def space(self, space_id: str) -> SpaceStore:
        """Another space on the same client."""
        return SpaceStore(self.client, space_id, self.embedding_function)

    def publish(self, message: Message, public_space_id: str) -> Message:
        """Copy a message into a public space, replacing an earlier copy."""
        public = self.space(public_space_id)
        if public.messages.get(message.id) is None:
            public.messages.create(message)
        else:
            public.messages.update(message.id, **message.model_dump(exclude={"id"}))
        logger.info("Published message %s to space %s", message.id, public_space_id)
        return message

    def search(self, query: str, limit: int = 10) -> list[SearchHit]:
        """Semantic search across the space's messages."""
        collection = self.messages.collection
        count = collection.count()
        if count == 0:
            return []

        results = collection.query(
            query_texts=[query],
            n_results=min(limit, count),
            include=["documents", "metadatas", "distances"],
        )

        if not results["ids"] or not results["ids"][0]:
            return []

        hits = []
        for i, message_id in enumerate(results["ids"][0]):
            document = results["documents"][0][i] or ""
            message = self.messages._entity(message_id, document, results["metadatas"][0][i])
            # Cosine distance → similarity score (0 = identical, 2 = opposite)
            score = 1.0 - results["distances"][0][i]
            hits.append(
                SearchHit(
                    message=message,
                    score=round(score, 4),
                    snippet=document[:200] + "..." if len(document) > 200 else document,
                )
            )
        return hits
