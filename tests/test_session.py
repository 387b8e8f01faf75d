"""Tests for localchat.session.

The session is driven against a StubSupervisor and either a ScriptedClient
or the real CompletionClient with httpx mocked by respx.
"""

import asyncio
import json

import httpx
import pytest
import respx

from localchat.backends.base import BackendState
from localchat.client import CompletionClient, CompletionStream, Delta
from localchat.errors import ConnectionFailedError, SessionBusyError, SupervisorError, TimedOutError
from localchat.session import (
    ChatEventKind,
    ChatMessage,
    ChatSession,
    MessageStatus,
    Role,
    SessionState,
    sanitize_title,
)
from localchat.supervisor import BackendSupervisor
from tests.conftest import (
    MOCK_COMPLETIONS_URL,
    MOCK_ENDPOINT,
    MOCK_HEALTH_URL,
    MOCK_MODEL_NAME,
    MOCK_STREAMING_CHUNKS,
    FakeLauncher,
    ScriptedClient,
    StubSupervisor,
    instant_ready,
    sse_body,
    sse_chunk,
)


class SlowCloseClient:
    """
    Client whose stream yields "Done" and the final delta, then blocks in
    aclose() until ``release`` is set.
    """

    def __init__(self):
        self.closing = asyncio.Event()
        self.release = asyncio.Event()

    def stream_completion(self, endpoint_url, request) -> CompletionStream:
        return SlowCloseStream(self._deltas(), self)

    async def _deltas(self):
        yield Delta(text="Done")
        yield Delta(is_final=True)


class SlowCloseStream(CompletionStream):

    def __init__(self, deltas, client: SlowCloseClient):
        super().__init__(deltas)
        self._client = client

    async def aclose(self) -> None:
        self._client.closing.set()
        await self._client.release.wait()
        await super().aclose()


class DropOnStopStream(httpx.AsyncByteStream):
    """Response body that sends one chunk, then drops when the backend stops."""

    def __init__(self, backend):
        self._backend = backend

    async def __aiter__(self):
        yield (sse_chunk("Hi") + "\n\n").encode()
        await self._backend.wait()
        raise httpx.RemoteProtocolError("Server disconnected without sending a complete message body")


# ─────────────────────────────────────────────────────────────────────
# HAPPY PATH
# ─────────────────────────────────────────────────────────────────────

class TestSubmit:
    """One full turn against a mocked llama-server."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_hello_hi_there(self):
        """'Hello' → transcript [User 'Hello', Assistant 'Hi there' complete]."""
        respx.post(MOCK_COMPLETIONS_URL).mock(
            return_value=httpx.Response(200, text=sse_body(MOCK_STREAMING_CHUNKS))
        )
        session = ChatSession(StubSupervisor(), client=CompletionClient())

        reply = await session.submit("Hello")

        assert reply.role is Role.ASSISTANT
        assert reply.content == "Hi there"
        assert reply.status is MessageStatus.COMPLETE
        assert reply.token_usage is not None
        assert reply.token_usage.total_tokens == 14

        transcript = session.transcript
        assert [m.role for m in transcript] == [Role.USER, Role.ASSISTANT]
        assert transcript[0].content == "Hello"
        assert transcript[1] == reply
        assert session.state is SessionState.IDLE

    @pytest.mark.asyncio
    @respx.mock
    async def test_request_carries_system_prompt_and_history(self):
        route = respx.post(MOCK_COMPLETIONS_URL).mock(
            return_value=httpx.Response(200, text=sse_body(MOCK_STREAMING_CHUNKS))
        )
        session = ChatSession(StubSupervisor(), client=CompletionClient(), system_prompt="Be brief.")

        await session.submit("Hello")
        await session.submit("Again")

        payload = json.loads(route.calls.last.request.content)
        assert payload["model"] == MOCK_MODEL_NAME
        assert payload["stream"] is True
        assert payload["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hello"},
            {"role": "assistant", "content": "Hi there"},
            {"role": "user", "content": "Again"},
        ]

    @pytest.mark.asyncio
    async def test_events_in_order(self):
        """User committed, provisional updates, assistant committed."""
        session = ChatSession(StubSupervisor(), client=ScriptedClient(("Hi", " there")))
        events = []
        session.subscribe(events.append)

        await session.submit("Hello")

        kinds = [e.kind for e in events]
        assert kinds[0] is ChatEventKind.COMMITTED
        assert kinds[-1] is ChatEventKind.COMMITTED
        assert [e.fragment for e in events if e.fragment] == ["Hi", " there"]
        # Updates carry the growing provisional message under one id
        updates = [e.message for e in events if e.kind is ChatEventKind.UPDATED]
        assert len({m.id for m in updates}) == 1
        assert updates[-1].content == "Hi there"
        assert updates[-1].status is MessageStatus.STREAMING
        assert events[-1].message.id == updates[-1].id

    @pytest.mark.asyncio
    async def test_transcript_shows_provisional_reply_while_streaming(self):
        client = ScriptedClient(("Par", "tial"), hang=True)
        session = ChatSession(StubSupervisor(), client=client)

        turn = asyncio.create_task(session.submit("Hello"))
        await client.reached.wait()

        transcript = session.transcript
        assert len(transcript) == 2
        assert transcript[1].status is MessageStatus.STREAMING
        assert transcript[1].content == "Partial"
        assert len(session.messages) == 1

        session.cancel()
        await turn

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_events(self):
        session = ChatSession(StubSupervisor(), client=ScriptedClient(("Hi",)))
        events = []
        unsubscribe = session.subscribe(events.append)
        unsubscribe()

        await session.submit("Hello")

        assert events == []

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_the_turn(self):
        session = ChatSession(StubSupervisor(), client=ScriptedClient(("Hi",)))

        def broken(event):
            raise RuntimeError("listener bug")

        session.subscribe(broken)
        reply = await session.submit("Hello")

        assert reply.status is MessageStatus.COMPLETE


# ─────────────────────────────────────────────────────────────────────
# FAILURES
# ─────────────────────────────────────────────────────────────────────

class TestFailedTurns:
    """Every failure still commits exactly one Assistant message."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_remote_error_fails_turn(self):
        """Backend reports "context overflow" → failed message carries it."""
        respx.post(MOCK_COMPLETIONS_URL).mock(
            return_value=httpx.Response(400, json={"error": {"message": "context overflow"}})
        )
        session = ChatSession(StubSupervisor(), client=CompletionClient())
        events = []
        session.subscribe(events.append)

        reply = await session.submit("Hello")

        assert reply.status is MessageStatus.FAILED
        assert reply.content == ""
        assert "context overflow" in reply.error
        assert len(session.transcript) == 2
        assert session.state is SessionState.IDLE
        errors = [e for e in events if e.kind is ChatEventKind.ERROR]
        assert len(errors) == 1
        assert "context overflow" in errors[0].error

    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_frame_fails_turn(self):
        """A frame of the wrong shape is a failed turn, not a crash."""
        lines = [sse_chunk("Hi"), 'data: {"choices": [{"delta": "oops"}]}']
        respx.post(MOCK_COMPLETIONS_URL).mock(return_value=httpx.Response(200, text=sse_body(lines)))
        session = ChatSession(StubSupervisor(), client=CompletionClient())

        reply = await session.submit("X")

        assert reply.status is MessageStatus.FAILED
        assert reply.content == "Hi"
        assert "Malformed delta" in reply.error
        assert session.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_supervisor_error_fails_turn(self):
        supervisor = StubSupervisor(error=SupervisorError(TimedOutError(MOCK_ENDPOINT, 120)))
        session = ChatSession(supervisor, client=ScriptedClient(("unused",)))

        reply = await session.submit("Hello")

        assert reply.status is MessageStatus.FAILED
        assert "not ready after 120s" in reply.error

    @pytest.mark.asyncio
    async def test_dropped_connection_keeps_partial_text(self):
        client = ScriptedClient(("Half",), error=ConnectionFailedError("Connection to backend lost"))
        session = ChatSession(StubSupervisor(), client=client)

        reply = await session.submit("Hello")

        assert reply.status is MessageStatus.FAILED
        assert reply.content == "Half"
        assert reply.error == "Connection to backend lost"

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_reply_is_left_out_of_next_request(self):
        route = respx.post(MOCK_COMPLETIONS_URL).mock(side_effect=[
            httpx.Response(500, json={"error": {"message": "boom"}}),
            httpx.Response(200, text=sse_body(MOCK_STREAMING_CHUNKS)),
        ])
        session = ChatSession(StubSupervisor(), client=CompletionClient())

        await session.submit("First")
        await session.submit("Second")

        messages = json.loads(route.calls.last.request.content)["messages"]
        assert [m["role"] for m in messages] == ["system", "user", "user"]


# ─────────────────────────────────────────────────────────────────────
# CANCEL
# ─────────────────────────────────────────────────────────────────────

class TestCancel:
    """cancel() abandons the generation and keeps what arrived."""

    @pytest.mark.asyncio
    async def test_cancel_after_partial_fragments(self):
        """'Par','tial' then cancel → Assistant 'Partial' interrupted."""
        client = ScriptedClient(("Par", "tial"), hang=True)
        session = ChatSession(StubSupervisor(), client=client)

        turn = asyncio.create_task(session.submit("Tell me a story"))
        await client.reached.wait()

        assert session.cancel() is True
        reply = await turn

        assert reply.content == "Partial"
        assert reply.status is MessageStatus.INTERRUPTED
        assert reply.error is None
        assert session.state is SessionState.IDLE
        assert [m.status for m in session.transcript] == [MessageStatus.COMPLETE, MessageStatus.INTERRUPTED]

    @pytest.mark.asyncio
    async def test_second_cancel_is_noop(self):
        client = ScriptedClient(("Par", "tial"), hang=True)
        session = ChatSession(StubSupervisor(), client=client)

        turn = asyncio.create_task(session.submit("Hello"))
        await client.reached.wait()
        session.cancel()
        await turn

        assert session.cancel() is False
        assert len(session.transcript) == 2

    @pytest.mark.asyncio
    async def test_cancel_while_final_delta_applies_is_noop(self):
        """Once the final delta is in, the reply commits complete."""
        client = SlowCloseClient()
        session = ChatSession(StubSupervisor(), client=client)

        turn = asyncio.create_task(session.submit("Hello"))
        await client.closing.wait()

        assert session.state is SessionState.GENERATING
        assert session.cancel() is False
        client.release.set()
        reply = await turn

        assert reply.status is MessageStatus.COMPLETE
        assert reply.content == "Done"
        assert session.state is SessionState.IDLE

    def test_cancel_when_idle_is_noop(self):
        session = ChatSession(StubSupervisor(), client=ScriptedClient())
        assert session.cancel() is False

    @pytest.mark.asyncio
    async def test_cancel_before_first_fragment(self):
        client = ScriptedClient((), hang=True)
        session = ChatSession(StubSupervisor(), client=client)

        turn = asyncio.create_task(session.submit("Hello"))
        await client.reached.wait()
        session.cancel()
        reply = await turn

        assert reply.status is MessageStatus.INTERRUPTED
        assert reply.content == ""

    @pytest.mark.asyncio
    async def test_cancelling_submit_itself_commits_and_propagates(self):
        client = ScriptedClient(("Par",), hang=True)
        session = ChatSession(StubSupervisor(), client=client)

        turn = asyncio.create_task(session.submit("Hello"))
        await client.reached.wait()
        turn.cancel()

        with pytest.raises(asyncio.CancelledError):
            await turn
        assert session.state is SessionState.IDLE
        assert session.transcript[-1].status is MessageStatus.INTERRUPTED
        assert session.transcript[-1].content == "Par"


# ─────────────────────────────────────────────────────────────────────
# BUSY / HISTORY / TITLE
# ─────────────────────────────────────────────────────────────────────

class TestSessionState:

    @pytest.mark.asyncio
    async def test_submit_while_generating_is_busy(self):
        client = ScriptedClient(("Par",), hang=True)
        session = ChatSession(StubSupervisor(), client=client)

        turn = asyncio.create_task(session.submit("Hello"))
        await client.reached.wait()

        with pytest.raises(SessionBusyError):
            await session.submit("Again")
        # The rejected submit left no trace
        assert len(session.messages) == 1

        session.cancel()
        await turn

    def test_history_is_preseeded(self):
        history = [
            ChatMessage(role=Role.USER, content="Hi"),
            ChatMessage(role=Role.ASSISTANT, content="Hello!"),
        ]
        session = ChatSession(StubSupervisor(), client=ScriptedClient(), history=history)
        assert session.transcript == tuple(history)

    def test_history_rejects_streaming_messages(self):
        history = [ChatMessage(role=Role.ASSISTANT, content="...", status=MessageStatus.STREAMING)]
        with pytest.raises(ValueError):
            ChatSession(StubSupervisor(), client=ScriptedClient(), history=history)

    def test_message_defaults(self):
        message = ChatMessage(role=Role.USER, content="Hi")
        assert len(message.id) == 32
        assert message.timestamp.tzinfo is not None
        assert message.status is MessageStatus.COMPLETE
        assert message.to_openai() == {"role": "user", "content": "Hi"}


class TestSuggestTitle:

    @pytest.mark.asyncio
    async def test_title_does_not_touch_transcript(self):
        client = ScriptedClient(('"Greetings', ' exchanged"'))
        session = ChatSession(StubSupervisor(), client=client)

        title = await session.suggest_title()

        assert title == "Greetings exchanged"
        assert session.transcript == ()
        last_message = client.requests[-1].messages[-1]
        assert last_message["role"] == "user"
        assert "short title" in last_message["content"]

    def test_long_title_is_truncated(self):
        title = sanitize_title('"' + "word " * 40 + '"')
        assert len(title) <= 83
        assert title.endswith("...")


# ─────────────────────────────────────────────────────────────────────
# END TO END
# ─────────────────────────────────────────────────────────────────────

class TestWithSupervisor:
    """Session driving a real BackendSupervisor over a fake launcher."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_ready_after_two_polls_then_reply(self, model_file, settings):
        health = respx.get(MOCK_HEALTH_URL).mock(side_effect=[
            httpx.Response(503, json={"error": {"message": "Loading model"}}),
            httpx.Response(200, json={"status": "ok"}),
        ])
        respx.post(MOCK_COMPLETIONS_URL).mock(
            return_value=httpx.Response(200, text=sse_body(MOCK_STREAMING_CHUNKS))
        )
        launcher = FakeLauncher()

        async with BackendSupervisor(model_file, settings, launcher=launcher) as supervisor:
            session = ChatSession.from_settings(supervisor, settings)
            reply = await session.submit("Hello")

        assert health.call_count == 2
        assert launcher.calls == 1
        assert [(m.role, m.content) for m in session.transcript] == [
            (Role.USER, "Hello"),
            (Role.ASSISTANT, "Hi there"),
        ]
        assert reply.status is MessageStatus.COMPLETE
        assert session.state is SessionState.IDLE

    @pytest.mark.asyncio
    @respx.mock
    async def test_shutdown_mid_generation_fails_turn_with_connection_error(self, model_file, settings):
        """Stopping the backend drops the stream; the partial reply is kept."""
        launcher = FakeLauncher()
        respx.post(MOCK_COMPLETIONS_URL).mock(
            side_effect=lambda request: httpx.Response(200, stream=DropOnStopStream(launcher.backends[-1]))
        )
        supervisor = BackendSupervisor(model_file, settings, launcher=launcher, health_check=instant_ready)
        session = ChatSession.from_settings(supervisor, settings)
        first_fragment = asyncio.Event()

        def on_event(event):
            if event.fragment:
                first_fragment.set()

        session.subscribe(on_event)

        turn = asyncio.create_task(session.submit("Hello"))
        await first_fragment.wait()
        await supervisor.shutdown()
        reply = await turn

        assert reply.status is MessageStatus.FAILED
        assert reply.content == "Hi"
        assert "lost" in reply.error
        assert session.state is SessionState.IDLE
        assert supervisor.state is BackendState.STOPPED
        assert launcher.backends[0].stop_calls == 1
