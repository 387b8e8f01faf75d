"""
Completion client: one streaming chat completion against a ready backend.

Speaks the OpenAI-compatible /v1/chat/completions SSE protocol that
llama-server implements. Each parsed frame is yielded as soon as it
arrives; nothing is buffered beyond the current line.

Errors are translated at this boundary:
- ConnectionFailedError: endpoint unreachable or connection dropped
- ProtocolError: a frame that is not valid SSE/JSON, or JSON of the wrong shape
- RemoteError: the backend reported a failure (HTTP error or error frame)
- GenerationCancelledError: reading a stream the consumer already closed
"""

import json
import logging
from typing import Any, AsyncGenerator, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from localchat.config import DEFAULT_CONNECT_TIMEOUT_SECONDS, DEFAULT_TIMEOUT_SECONDS, GenerationParams
from localchat.errors import (
    ClientError,
    ConnectionFailedError,
    GenerationCancelledError,
    ProtocolError,
    RemoteError,
    describe_transport_error,
    parse_http_error,
)

logger = logging.getLogger(__name__)

COMPLETIONS_PATH = "/v1/chat/completions"

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


# ─────────────────────────────────────────────────────────────────────
# WIRE TYPES
# ─────────────────────────────────────────────────────────────────────

class TokenUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Delta(BaseModel):
    """
    One incremental fragment of a streaming response.

    ``text`` is the visible answer, ``reasoning`` the model's thinking
    (from <think> blocks or ``reasoning_content``). The final delta has
    empty fragments and is the only one that may carry ``token_usage``.
    """
    model_config = ConfigDict(frozen=True)

    text: str = ""
    reasoning: str = ""
    is_final: bool = False
    token_usage: Optional[TokenUsage] = None


class GenerationRequest(BaseModel):
    """Transcript prefix + generation parameters for one completion."""
    model_config = ConfigDict(frozen=True)

    model: str
    messages: list[dict[str, str]]
    params: GenerationParams = Field(default_factory=GenerationParams)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": self.messages,
            "stream": True,
            "cache_prompt": True,
            "temperature": self.params.temperature,
            "max_tokens": self.params.max_tokens,
        }
        if self.params.stop:
            payload["stop"] = list(self.params.stop)
        payload.update(self.params.extra)
        return payload


class ReasoningSplitter:
    """
    Route <think>...</think> content to the reasoning channel.

    Only a leading think block counts; tags may arrive split across
    fragments only at fragment boundaries, as llama-server emits them as
    single tokens.
    """

    def __init__(self):
        self._in_reasoning = False
        self._done = False

    def feed(self, content: str) -> tuple[str, str]:
        """Return (text, reasoning) for one content fragment."""
        text: list[str] = []
        reasoning: list[str] = []
        while content:
            if self._in_reasoning:
                head, sep, content = content.partition(THINK_CLOSE)
                reasoning.append(head)
                if sep:
                    self._in_reasoning = False
                    self._done = True
            elif self._done:
                text.append(content)
                content = ""
            else:
                head, sep, content = content.partition(THINK_OPEN)
                text.append(head)
                if sep:
                    self._in_reasoning = True
                elif head.strip():
                    self._done = True
        return "".join(text), "".join(reasoning)


def _error_frame_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


def _parse_usage(raw: Any) -> TokenUsage:
    try:
        return TokenUsage.model_validate(raw)
    except ValidationError as e:
        raise ProtocolError(f"Malformed usage in frame: {str(raw)[:100]}") from e


def _first_choice(chunk: dict[str, Any]) -> Optional[dict[str, Any]]:
    """choices[0] of a chunk, or None for usage-only chunks."""
    choices = chunk.get("choices") or []
    if not isinstance(choices, list):
        raise ProtocolError(f"Malformed choices in frame: {str(choices)[:100]}")
    if not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        raise ProtocolError(f"Malformed choice in frame: {str(choice)[:100]}")
    return choice


def _delta_fields(choice: dict[str, Any]) -> tuple[str, str]:
    """(content, reasoning_content) of a choice's delta."""
    delta = choice.get("delta") or {}
    if not isinstance(delta, dict):
        raise ProtocolError(f"Malformed delta in frame: {str(delta)[:100]}")
    content = delta.get("content") or ""
    reasoning = delta.get("reasoning_content") or ""
    if not isinstance(content, str) or not isinstance(reasoning, str):
        raise ProtocolError(f"Non-text delta in frame: {str(delta)[:100]}")
    return content, reasoning


# ─────────────────────────────────────────────────────────────────────
# STREAM
# ─────────────────────────────────────────────────────────────────────

class CompletionStream:
    """
    Lazy, single-pass sequence of Deltas.

    Closing it before the final delta closes the HTTP connection; any
    further read raises GenerationCancelledError.
    """

    def __init__(self, deltas: AsyncGenerator[Delta, None]):
        self._deltas = deltas
        self._finished = False
        self._cancelled = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __aiter__(self) -> "CompletionStream":
        return self

    async def __anext__(self) -> Delta:
        if self._cancelled:
            raise GenerationCancelledError()
        if self._finished:
            raise StopAsyncIteration
        try:
            delta = await self._deltas.__anext__()
        except (StopAsyncIteration, ClientError):
            self._finished = True
            raise
        if delta.is_final:
            self._finished = True
            await self._deltas.aclose()
        return delta

    async def aclose(self) -> None:
        if not self._finished and not self._cancelled:
            logger.debug("Completion stream closed before final delta")
            self._cancelled = True
        await self._deltas.aclose()

    async def __aenter__(self) -> "CompletionStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


# ─────────────────────────────────────────────────────────────────────
# CLIENT
# ─────────────────────────────────────────────────────────────────────

class CompletionClient:
    """Issues streaming completion requests against a backend endpoint."""

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
    ):
        self.timeout_seconds = timeout_seconds
        self.connect_timeout = connect_timeout

    def stream_completion(self, endpoint_url: str, request: GenerationRequest) -> CompletionStream:
        """
        Start a streaming completion. No I/O happens until the first read.

        Args:
            endpoint_url: Base URL of a ready backend
            request: Messages and generation parameters

        Returns:
            CompletionStream of Deltas, ending with one ``is_final`` delta
        """
        return CompletionStream(self._iter_deltas(endpoint_url, request))

    async def _iter_deltas(self, endpoint_url: str, request: GenerationRequest) -> AsyncGenerator[Delta, None]:
        splitter = ReasoningSplitter()
        usage: Optional[TokenUsage] = None
        saw_done = False
        saw_finish_reason = False
        timeout = httpx.Timeout(self.timeout_seconds, connect=self.connect_timeout)

        logger.debug(f"Streaming completion from {endpoint_url}: {len(request.messages)} messages")
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                async with client.stream(
                    "POST",
                    f"{endpoint_url}{COMPLETIONS_PATH}",
                    json=request.to_payload(),
                ) as response:
                    if response.status_code >= 400:
                        body = await response.aread()
                        raise RemoteError(
                            parse_http_error(response.status_code, body),
                            status_code=response.status_code,
                        )

                    async for line in response.aiter_lines():
                        line = line.strip()
                        # Blank separators, SSE comments and non-data fields carry no payload
                        if not line or line.startswith(":") or line.startswith(("event:", "id:", "retry:")):
                            continue
                        if not line.startswith("data:"):
                            raise ProtocolError(f"Unexpected line in event stream: {line[:100]}")

                        data = line[len("data:"):].strip()
                        if data == "[DONE]":
                            saw_done = True
                            break

                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError as e:
                            raise ProtocolError(f"Malformed frame: {data[:100]}") from e
                        if not isinstance(chunk, dict):
                            raise ProtocolError(f"Unexpected frame: {data[:100]}")

                        if "error" in chunk:
                            raise RemoteError(_error_frame_message(chunk["error"]))

                        if chunk.get("usage"):
                            usage = _parse_usage(chunk["usage"])

                        choice = _first_choice(chunk)
                        if choice is None:
                            continue
                        content, reasoning_content = _delta_fields(choice)

                        text, reasoning = splitter.feed(content)
                        reasoning = reasoning_content + reasoning
                        if text or reasoning:
                            yield Delta(text=text, reasoning=reasoning)

                        if choice.get("finish_reason"):
                            saw_finish_reason = True
        except httpx.ConnectError as e:
            raise ConnectionFailedError(
                f"Cannot reach backend at {endpoint_url}: {describe_transport_error(e)}"
            ) from e
        except httpx.TimeoutException as e:
            raise ConnectionFailedError(
                f"Backend at {endpoint_url} timed out: {describe_transport_error(e)}"
            ) from e
        except httpx.TransportError as e:
            raise ConnectionFailedError(
                f"Connection to backend at {endpoint_url} lost: {describe_transport_error(e)}"
            ) from e

        if not (saw_done or saw_finish_reason):
            raise ConnectionFailedError(f"Stream from {endpoint_url} ended before completion")

        yield Delta(is_final=True, token_usage=usage)
