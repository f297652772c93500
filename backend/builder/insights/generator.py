"""
Text generation backends for match insights.
The default backend talks to an OpenAI-compatible chat completions endpoint.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class GenerationError(Exception):
    """The text backend failed or returned an unusable response."""


@dataclass(frozen=True)
class GeneratedText:
    content: str
    tokens_used: int = 0


class TextGenerator(Protocol):
    async def generate(
        self,
        system: str,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
    ) -> GeneratedText: ...


class OpenAIChatGenerator:
    """Chat completions over plain httpx; one request per insight."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._settings.ai_base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {self._settings.ai_api_key}"},
            timeout=httpx.Timeout(self._settings.ai_request_timeout_s, connect=5.0),
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def generate(
        self,
        system: str,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
    ) -> GeneratedText:
        if not self._client:
            raise RuntimeError("OpenAIChatGenerator not started. Call start() first.")

        body = {
            "model": self._settings.ai_model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        try:
            resp = await self._client.post("/chat/completions", json=body)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            logger.error("insight_generation_failed", model=self._settings.ai_model, error=str(exc))
            raise GenerationError(str(exc)) from exc

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationError("malformed completion response") from exc

        tokens = (data.get("usage") or {}).get("total_tokens") or 0
        return GeneratedText(content=content.strip(), tokens_used=tokens)
