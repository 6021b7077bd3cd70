"""Language-generation collaborator used for interpretations.

Failures are split into transient ones (worth retrying) and permanent ones
(bad request, auth). The enricher relies on that split for its retry policy.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class GenerationError(Exception):
    pass


class TransientGenerationError(GenerationError):
    pass


class GenerationTimeout(TransientGenerationError):
    pass


class RateLimited(TransientGenerationError):
    pass


class ServiceUnavailable(TransientGenerationError):
    pass


class EmptyResponse(TransientGenerationError):
    pass


class PermanentGenerationError(GenerationError):
    pass


_UNAVAILABLE_STATUSES = {500, 502, 503, 504}


class LanguageGenerator(ABC):
    model_name: str = "unknown"

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        """Return the completion text for ``prompt``."""


class GeminiClient(LanguageGenerator):
    """Minimal client for the Gemini ``generateContent`` REST endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-1.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.model_name = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _endpoint(self) -> str:
        return f"{self._base_url}/models/{self.model_name}:generateContent"

    async def generate(self, prompt: str) -> str:
        payload = {"contents": [{"parts": [{"text": prompt}]}]}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._endpoint(), params={"key": self._api_key}, json=payload)
        except httpx.TimeoutException as exc:
            raise GenerationTimeout(f"Gemini request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise ServiceUnavailable(f"Gemini transport error: {exc}") from exc

        if response.status_code == 429:
            raise RateLimited(f"Gemini rate limit or quota exceeded: {response.text[:200]}")
        if response.status_code in _UNAVAILABLE_STATUSES:
            raise ServiceUnavailable(f"Gemini unavailable ({response.status_code})")
        if response.status_code >= 400:
            raise PermanentGenerationError(f"Gemini rejected the request ({response.status_code}): {response.text[:200]}")

        try:
            text = _extract_text(response.json())
        except (ValueError, KeyError, AttributeError, TypeError, IndexError) as exc:
            raise ServiceUnavailable(f"Malformed Gemini response: {exc}") from exc
        if not text.strip():
            raise EmptyResponse("Empty response from Gemini")
        return text


def _extract_text(body: Dict[str, Any]) -> str:
    candidates = body.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts)
