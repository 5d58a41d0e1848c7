"""HTTP client for the streaming completion endpoint."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

from . import config
from .errors import NetworkError, classify_error
from .models import ChatTurn, CompletionRequest

logger = logging.getLogger(__name__)


class CompletionClient:
    """POSTs chat turns to the completion endpoint and streams the body back."""

    def __init__(
        self,
        url: str = config.COMPLETION_URL,
        *,
        model: str | None = config.MODEL,
        temperature: float | None = config.TEMPERATURE,
        max_tokens: int | None = config.MAX_TOKENS,
        system_prompt: str | None = config.SYSTEM_PROMPT,
        timeout: float = config.REQUEST_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    def build_request(self, turns: list[ChatTurn]) -> dict:
        request = CompletionRequest(
            messages=turns,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            system=self.system_prompt,
        )
        return request.model_dump(by_alias=True, exclude_none=True)

    @asynccontextmanager
    async def stream(self, turns: list[ChatTurn]) -> AsyncIterator[AsyncIterator[str]]:
        """Open the response and yield an iterator over its decoded text.

        Leaving the context closes the response, including on cancellation.
        Non-2xx responses and transport failures raise a GenerationError.
        """
        payload = self.build_request(turns)
        logger.debug("Requesting completion for %d turns", len(turns))
        try:
            async with self._client.stream("POST", self.url, json=payload) as response:
                if not response.is_success:
                    await response.aread()
                    raise _error_from_response(response)
                yield response.aiter_text()
        except httpx.TransportError as exc:
            raise NetworkError(f"{type(exc).__name__}: {exc}") from exc

    async def aclose(self):
        await self._client.aclose()


def _error_from_response(response: httpx.Response):
    """Build an error from a `{error, details}` body, falling back to raw text."""
    text = response.text
    try:
        body = json.loads(text)
    except json.JSONDecodeError:
        body = None

    if isinstance(body, dict):
        parts = [str(body[key]) for key in ("error", "details", "message") if body.get(key)]
        if parts:
            text = ": ".join(parts)

    logger.warning("Completion request failed with HTTP %s: %s", response.status_code, text)
    return classify_error(text or f"HTTP {response.status_code}", response.status_code)
