"""Comment ingestion: validate an incoming payload and store it."""

from __future__ import annotations

import logging
from typing import Any

import pydantic

from .errors import ValidationError
from .models import CommentPayload
from .storage import Store

logger = logging.getLogger(__name__)


def parse_comment_payload(payload: Any) -> CommentPayload:
    """Validate a raw payload, raising ValidationError with every issue found."""
    try:
        return CommentPayload.model_validate(payload)
    except pydantic.ValidationError as exc:
        error = ValidationError.from_pydantic(exc)
        logger.warning("Invalid comment payload: %s", error.issues)
        raise error from exc


def ingest_comment(payload: Any, store: Store) -> dict:
    """Store a comment from a `{id, content, createdAt, conversationId, position, x, y}` payload.

    Returns `{"status": "ok", "data": ...}` echoing the accepted payload.
    Store failures propagate as StoreError.
    """
    parsed = parse_comment_payload(payload)
    store.comments.create(parsed.to_comment())
    return {"status": "ok", "data": parsed.model_dump(mode="json", by_alias=True)}
