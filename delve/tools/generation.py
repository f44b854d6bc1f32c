"""Async client for the external generation API (OpenAI-compatible).

This is the one place Delve talks to a language model.  The orchestrator
treats it as a fallible async function: build a :class:`GenerationRequest`,
``await client.generate(request)``, get a :class:`GenerationResult` back or
an exception from the :mod:`delve.engine.errors` taxonomy.

Failure mapping:
    no API key configured       → ConfigurationError (before any I/O)
    HTTP 401 / 403              → ConfigurationError
    timeout / connection error  → TransientCallError
    HTTP 408 / 429 / 5xx        → TransientCallError
    other HTTP 4xx              → TransientCallError (with status_code)
    body without message text   → MalformedResponseError
"""

from __future__ import annotations

from typing import Any, Literal

import httpx
import structlog
from pydantic import BaseModel, Field

from delve.config import settings
from delve.engine.errors import ConfigurationError, MalformedResponseError, TransientCallError
from delve.models.research import Source

logger = structlog.get_logger().bind(component="generation")

_RETRYABLE_STATUS = {408, 409, 425, 429}


class GenerationRequest(BaseModel):
    """One call to the external model."""

    model: str
    prompt: str
    max_tokens: int = 2048
    temperature: float = 0.7
    response_format: Literal["text", "json"] = "text"
    system: str = ""


class GenerationResult(BaseModel):
    """Raw text plus any citations the API attached to it."""

    text: str
    model: str = ""
    sources: list[Source] = Field(default_factory=list)
    usage: dict[str, Any] = Field(default_factory=dict)


class GenerationClient:
    """Async client for an OpenAI-compatible ``/v1/chat/completions`` API.

    Args:
        base_url: API base URL.  Falls back to ``settings.generation_url``.
        api_key:  Bearer token.  Falls back to ``settings.generation_api_key``.
        timeout:  HTTP timeout in seconds — the only per-call timeout Delve has.
        transport: Optional ``httpx`` transport (inject ``httpx.MockTransport``
                   in tests).
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.generation_url).rstrip("/")
        self.api_key = settings.generation_api_key if api_key is None else api_key
        self.timeout = timeout or settings.generation_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Send *request* and return the generated text.

        Raises:
            ConfigurationError:     No API key, or the API rejected it.
            TransientCallError:     Timeout, network error, rate limit, 5xx.
            MalformedResponseError: The response carried no message text.
        """
        if not self.configured:
            raise ConfigurationError(
                "Generation API key is not configured (set DELVE_GENERATION_API_KEY)"
            )

        messages: list[dict[str, str]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.response_format == "json":
            payload["response_format"] = {"type": "json_object"}

        client = await self._get_client()
        try:
            response = await client.post("/v1/chat/completions", json=payload)
        except httpx.TimeoutException as e:
            raise TransientCallError(f"Generation call timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientCallError(f"Generation transport error: {e}") from e

        self._raise_for_status(response)
        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError("Generation response is not JSON") from e

        try:
            text = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedResponseError("Generation response has no message content") from e
        if not isinstance(text, str):
            raise MalformedResponseError("Generation response content is not text")

        logger.debug(
            "generation_complete",
            model=request.model,
            chars=len(text),
            usage=body.get("usage"),
        )
        return GenerationResult(
            text=text,
            model=body.get("model", request.model),
            sources=_extract_sources(body),
            usage=body.get("usage") or {},
        )

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        detail = response.text[:200]
        if status in (401, 403):
            raise ConfigurationError(f"Generation API rejected credentials ({status}): {detail}")
        if status >= 500 or status in _RETRYABLE_STATUS:
            raise TransientCallError(f"Generation API returned {status}: {detail}", status)
        raise TransientCallError(f"Generation API request failed ({status}): {detail}", status)


def _extract_sources(body: dict[str, Any]) -> list[Source]:
    """Pull citations out of a completion body.

    Accepts either a top-level ``citations`` list of URLs / ``{url,title}``
    dicts, or ``message.annotations`` entries of type ``url_citation``.
    Duplicate uris are dropped.
    """
    raw: list[Any] = list(body.get("citations") or body.get("sources") or [])
    try:
        annotations = body["choices"][0]["message"].get("annotations") or []
    except (KeyError, IndexError, TypeError, AttributeError):
        annotations = []
    for ann in annotations:
        if isinstance(ann, dict) and ann.get("type") == "url_citation":
            raw.append(ann.get("url_citation") or {})

    sources: list[Source] = []
    seen: set[str] = set()
    for item in raw:
        if isinstance(item, str):
            uri, title = item, item
        elif isinstance(item, dict):
            uri = item.get("url") or item.get("uri") or ""
            title = item.get("title") or uri
        else:
            continue
        if uri and uri not in seen:
            seen.add(uri)
            sources.append(Source(uri=uri, title=title))
    return sources
