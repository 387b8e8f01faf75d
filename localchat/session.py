"""
Chat session: transcript ownership and the Idle/Generating state machine.

State management:
- The transcript is append-only from the outside; committed messages are
  frozen Pydantic models and are never reordered or deduplicated
- At most one generation is in flight; it runs as an asyncio.Task so
  cancel() can abandon it from anywhere on the loop
- Every turn ends in exactly one committed Assistant message: complete,
  interrupted (partial text kept) or failed (cause attached)
- Observers subscribe to ChatEvents; the session never renders anything
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field

from localchat.backends.base import Endpoint
from localchat.client import CompletionClient, Delta, GenerationRequest, TokenUsage
from localchat.config import DEFAULT_SYSTEM_PROMPT, TITLE_MAX_LENGTH, TITLE_PROMPT, EngineSettings, GenerationParams
from localchat.errors import LocalChatError, SessionBusyError

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    COMPLETE = "complete"
    STREAMING = "streaming"  # provisional snapshot only, never committed
    INTERRUPTED = "interrupted"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class ChatMessage(BaseModel):
    """One transcript entry. Immutable once committed."""
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    id: str = Field(default_factory=_new_id)
    timestamp: datetime = Field(default_factory=_utcnow)
    status: MessageStatus = MessageStatus.COMPLETE
    error: Optional[str] = None
    reasoning: Optional[str] = None
    token_usage: Optional[TokenUsage] = None

    def to_openai(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class ChatEventKind(str, Enum):
    COMMITTED = "committed"
    UPDATED = "updated"
    ERROR = "error"


class ChatEvent(BaseModel):
    """
    Append-event for observers.

    COMMITTED carries a final message, UPDATED the provisional reply as it
    grows (``fragment`` is the new text), ERROR the cause of a failed turn.
    """
    model_config = ConfigDict(frozen=True)

    kind: ChatEventKind
    message: ChatMessage
    fragment: str = ""
    error: Optional[str] = None


ChatListener = Callable[[ChatEvent], None]


class EndpointProvider(Protocol):
    """What the session needs from a BackendSupervisor."""

    async def acquire_endpoint(self) -> Endpoint:
        ...


@dataclass
class _ProvisionalReply:
    """The Assistant message while it is still streaming."""
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_utcnow)
    content: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    token_usage: Optional[TokenUsage] = None

    def snapshot(self, status: MessageStatus, error: Optional[str] = None) -> ChatMessage:
        reasoning = "".join(self.reasoning)
        return ChatMessage(
            id=self.id,
            role=Role.ASSISTANT,
            content="".join(self.content),
            timestamp=self.timestamp,
            status=status,
            error=error,
            reasoning=reasoning or None,
            token_usage=self.token_usage,
        )


def sanitize_title(raw: str) -> str:
    title = raw.strip().strip('"').strip()
    if len(title) > TITLE_MAX_LENGTH:
        title = title[:TITLE_MAX_LENGTH].rstrip() + "..."
    return title


class ChatSession:
    """
    One conversation against one supervised backend.

    Usage:
        session = ChatSession(supervisor)
        session.subscribe(print)
        reply = await session.submit("Hello")
    """

    def __init__(
        self,
        supervisor: EndpointProvider,
        client: Optional[CompletionClient] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        params: Optional[GenerationParams] = None,
        history: Sequence[ChatMessage] = (),
    ):
        """
        Args:
            supervisor: Source of ready endpoints
            client: Completion client (default: CompletionClient())
            system_prompt: Prepended to every request
            params: Generation parameters for every request
            history: Pre-seeded committed messages
        """
        if any(m.status is MessageStatus.STREAMING for m in history):
            raise ValueError("history may only contain committed messages")

        self._supervisor = supervisor
        self._client = client or CompletionClient()
        self.system_prompt = system_prompt
        self.params = params or GenerationParams()

        self._messages: list[ChatMessage] = list(history)
        self._listeners: list[ChatListener] = []
        self._state = SessionState.IDLE
        self._generation: Optional[asyncio.Task] = None
        self._provisional: Optional[_ProvisionalReply] = None
        self._cancel_requested = False
        self._finalizing = False

    @classmethod
    def from_settings(
        cls,
        supervisor: EndpointProvider,
        settings: EngineSettings,
        history: Sequence[ChatMessage] = (),
    ) -> "ChatSession":
        return cls(
            supervisor,
            client=CompletionClient(timeout_seconds=settings.request_timeout),
            system_prompt=settings.system_prompt,
            params=settings.generation,
            history=history,
        )

    # ─────────────────────────────────────────────────────────────────
    # Observation
    # ─────────────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        """Committed messages only."""
        return tuple(self._messages)

    @property
    def transcript(self) -> tuple[ChatMessage, ...]:
        """Committed messages plus the streaming reply, if any."""
        if self._provisional is None:
            return tuple(self._messages)
        return (*self._messages, self._provisional.snapshot(MessageStatus.STREAMING))

    def subscribe(self, listener: ChatListener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, event: ChatEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Chat listener failed on {event.kind.value}: {e}")

    # ─────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────

    async def submit(self, user_text: str) -> ChatMessage:
        """
        Run one turn: commit the user message, stream and commit the reply.

        Returns:
            The committed Assistant message (complete, interrupted or failed)

        Raises:
            SessionBusyError: If a generation is already in flight
        """
        self._begin()
        self._commit(ChatMessage(role=Role.USER, content=user_text))

        reply = self._provisional = _ProvisionalReply()
        self._publish(ChatEvent(kind=ChatEventKind.UPDATED, message=reply.snapshot(MessageStatus.STREAMING)))

        generation = self._generation = asyncio.create_task(self._generate(reply))
        try:
            await generation
        except asyncio.CancelledError:
            if not self._cancel_requested:
                # submit() itself was cancelled: the generation goes with it
                generation.cancel()
                self._finish(reply, MessageStatus.INTERRUPTED)
                raise
            logger.info("Generation cancelled")
            return self._finish(reply, MessageStatus.INTERRUPTED)
        except LocalChatError as e:
            logger.warning(f"Generation failed: {e}")
            return self._finish(reply, MessageStatus.FAILED, error=str(e))
        except Exception as e:
            logger.exception("Unexpected error during generation")
            self._finish(reply, MessageStatus.FAILED, error=str(e))
            raise
        else:
            return self._finish(reply, MessageStatus.COMPLETE)
        finally:
            self._end()

    def cancel(self) -> bool:
        """
        Abandon the in-flight generation, keeping whatever text streamed.

        No-op (returns False) when Idle, or when the final delta is
        already being applied.
        """
        if self._state is not SessionState.GENERATING or self._finalizing:
            return False
        generation = self._generation
        if generation is None or generation.done():
            return False
        self._cancel_requested = True
        generation.cancel()
        return True

    async def suggest_title(self) -> str:
        """
        Ask the model for a short title of the conversation so far.

        Does not touch the transcript. cancel() returns what arrived.

        Raises:
            SessionBusyError: If a generation is already in flight
            ClientError, SupervisorError: If the request fails
        """
        self._begin()
        parts: list[str] = []
        extra = [{"role": Role.USER.value, "content": TITLE_PROMPT}]

        generation = self._generation = asyncio.create_task(self._consume(parts.append, extra))
        try:
            await generation
        except asyncio.CancelledError:
            if not self._cancel_requested:
                generation.cancel()
                raise
        finally:
            self._end()
        return sanitize_title("".join(parts))

    # ─────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────

    def _begin(self) -> None:
        if self._state is not SessionState.IDLE:
            raise SessionBusyError("A generation is already in flight")
        self._state = SessionState.GENERATING
        self._cancel_requested = False
        self._finalizing = False

    def _end(self) -> None:
        self._generation = None
        self._provisional = None
        self._state = SessionState.IDLE

    def _commit(self, message: ChatMessage) -> None:
        self._messages.append(message)
        self._publish(ChatEvent(kind=ChatEventKind.COMMITTED, message=message))

    def _finish(self, reply: _ProvisionalReply, status: MessageStatus, error: Optional[str] = None) -> ChatMessage:
        message = reply.snapshot(status, error)
        self._provisional = None
        self._commit(message)
        if status is MessageStatus.FAILED:
            self._publish(ChatEvent(kind=ChatEventKind.ERROR, message=message, error=error))
        return message

    def _request_messages(self, extra: Sequence[dict[str, str]] = ()) -> list[dict[str, str]]:
        """System prompt + committed history; failed replies carry no content."""
        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend(
            m.to_openai()
            for m in self._messages
            if m.status is not MessageStatus.FAILED
        )
        messages.extend(extra)
        return messages

    async def _consume(
        self,
        on_delta: Callable[[str], None],
        extra: Sequence[dict[str, str]] = (),
        on_final: Optional[Callable[[Delta], None]] = None,
        on_reasoning: Optional[Callable[[Delta], None]] = None,
    ) -> None:
        endpoint = await self._supervisor.acquire_endpoint()
        request = GenerationRequest(
            model=endpoint.model_name,
            messages=self._request_messages(extra),
            params=self.params,
        )
        async with self._client.stream_completion(endpoint.url, request) as stream:
            async for delta in stream:
                if delta.is_final:
                    # Last writer wins: from here on cancel() is a no-op
                    self._finalizing = True
                    if on_final is not None:
                        on_final(delta)
                    return
                if delta.text:
                    on_delta(delta.text)
                if on_reasoning is not None and delta.reasoning:
                    on_reasoning(delta)

    async def _generate(self, reply: _ProvisionalReply) -> None:
        def on_text(text: str) -> None:
            reply.content.append(text)
            self._publish(ChatEvent(
                kind=ChatEventKind.UPDATED,
                message=reply.snapshot(MessageStatus.STREAMING),
                fragment=text,
            ))

        def on_reasoning(delta: Delta) -> None:
            reply.reasoning.append(delta.reasoning)
            self._publish(ChatEvent(
                kind=ChatEventKind.UPDATED,
                message=reply.snapshot(MessageStatus.STREAMING),
            ))

        def on_final(delta: Delta) -> None:
            reply.token_usage = delta.token_usage

        await self._consume(on_text, on_final=on_final, on_reasoning=on_reasoning)
