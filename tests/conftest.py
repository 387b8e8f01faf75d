"""Shared test fixtures for localchat tests."""

import asyncio
import json
from pathlib import Path
from typing import AsyncGenerator, Optional

import pytest

from localchat.backends.base import BackendDescriptor, BackendKind, Endpoint
from localchat.client import CompletionStream, Delta
from localchat.config import EngineSettings
from localchat.models import ModelReference, TransferProgress


# ─────────────────────────────────────────────────────────────────────
# MOCK DATA
# ─────────────────────────────────────────────────────────────────────

MOCK_HOST = "127.0.0.1"
MOCK_PORT = 18080
MOCK_ENDPOINT = f"http://{MOCK_HOST}:{MOCK_PORT}"
MOCK_COMPLETIONS_URL = f"{MOCK_ENDPOINT}/v1/chat/completions"
MOCK_HEALTH_URL = f"{MOCK_ENDPOINT}/health"

MOCK_REPO_ID = "bartowski/Qwen2.5-0.5B-Instruct-GGUF"
MOCK_MODEL_NAME = "Qwen2.5-0.5B-Instruct-GGUF"
MOCK_FILENAME = "Qwen2.5-0.5B-Instruct-Q4_K_M.gguf"


def sse_chunk(content: Optional[str] = None, finish_reason: Optional[str] = None, **delta) -> str:
    """One OpenAI-style streaming chunk as an SSE data line."""
    if content is not None:
        delta["content"] = content
    return "data: " + json.dumps({
        "id": "chatcmpl-123",
        "object": "chat.completion.chunk",
        "model": MOCK_MODEL_NAME,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    })


def sse_body(lines: list[str]) -> str:
    """Join SSE lines into a response body."""
    return "\n\n".join(lines) + "\n\n"


MOCK_USAGE = {"prompt_tokens": 12, "completion_tokens": 2, "total_tokens": 14}

MOCK_STREAMING_CHUNKS = [
    sse_chunk("", role="assistant"),
    sse_chunk("Hi"),
    sse_chunk(" there"),
    sse_chunk(finish_reason="stop"),
    "data: " + json.dumps({"choices": [], "usage": MOCK_USAGE}),
    "data: [DONE]",
]


# ─────────────────────────────────────────────────────────────────────
# FAKES - Backend side
# ─────────────────────────────────────────────────────────────────────

class FakeRunningBackend:
    """RunningBackend that lives until stopped or crashed."""

    def __init__(self, backend_id: str = "fake-1", endpoint_url: str = MOCK_ENDPOINT):
        self._backend_id = backend_id
        self._endpoint_url = endpoint_url
        self._exit_code: Optional[int] = None
        self._exited = asyncio.Event()
        self.stop_calls = 0

    @property
    def backend_id(self) -> str:
        return self._backend_id

    @property
    def endpoint_url(self) -> str:
        return self._endpoint_url

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    def is_alive(self) -> bool:
        return not self._exited.is_set()

    async def wait(self) -> Optional[int]:
        await self._exited.wait()
        return self._exit_code

    async def stop(self, grace_period: float) -> None:
        self.stop_calls += 1
        if self.is_alive():
            self.crash(0)

    def crash(self, exit_code: int = 1) -> None:
        self._exit_code = exit_code
        self._exited.set()


class FakeLauncher:
    """
    Launcher that records every call.

    ``failures`` are raised, in order, by the first calls; ``gate`` (when
    set) holds every launch until it is released.
    """

    def __init__(self, failures: tuple[BaseException, ...] = (), gate: Optional[asyncio.Event] = None):
        self.failures = list(failures)
        self.gate = gate
        self.ports: list[int] = []
        self.models: list[ModelReference] = []
        self.backends: list[FakeRunningBackend] = []

    @property
    def calls(self) -> int:
        return len(self.ports)

    async def __call__(self, descriptor, model, on_event=None) -> FakeRunningBackend:
        self.ports.append(descriptor.port)
        self.models.append(model)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        backend = FakeRunningBackend(
            backend_id=f"fake-{len(self.backends) + 1}",
            endpoint_url=descriptor.endpoint_url,
        )
        self.backends.append(backend)
        return backend


async def instant_ready(endpoint_url, backend, **kwargs) -> int:
    return 1


class FakeModelStore:
    """
    ModelStore that "downloads" by yielding canned progress.

    ``resolved`` (when set) is the path resolve() hands back.
    """

    def __init__(self, updates: tuple[TransferProgress, ...] = (), resolved: Optional[Path] = None):
        self.updates = updates
        self.resolved = resolved
        self.calls = 0

    def resolve(self, model: ModelReference) -> Path:
        return self.resolved or model.local_path

    async def ensure_present(self, model: ModelReference) -> AsyncGenerator[TransferProgress, None]:
        self.calls += 1
        for update in self.updates:
            yield update


# ─────────────────────────────────────────────────────────────────────
# FAKES - Session side
# ─────────────────────────────────────────────────────────────────────

class StubSupervisor:
    """EndpointProvider returning a fixed endpoint, or raising ``error``."""

    def __init__(self, error: Optional[BaseException] = None):
        self.error = error
        self.calls = 0

    async def acquire_endpoint(self) -> Endpoint:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return Endpoint(url=MOCK_ENDPOINT, model_name=MOCK_MODEL_NAME, backend_id="fake-1")


class ScriptedClient:
    """
    CompletionClient stand-in that replays scripted fragments.

    With ``hang=True`` the stream sets ``reached`` after the last fragment
    and then blocks forever instead of finishing.
    """

    def __init__(self, fragments: tuple[str, ...] = (), hang: bool = False, error: Optional[BaseException] = None):
        self.fragments = fragments
        self.hang = hang
        self.error = error
        self.reached = asyncio.Event()
        self.requests = []

    def stream_completion(self, endpoint_url, request) -> CompletionStream:
        self.requests.append(request)
        return CompletionStream(self._deltas())

    async def _deltas(self) -> AsyncGenerator[Delta, None]:
        for fragment in self.fragments:
            yield Delta(text=fragment)
        self.reached.set()
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()
        yield Delta(is_final=True)


# ─────────────────────────────────────────────────────────────────────
# FIXTURES
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def descriptor():
    return BackendDescriptor(
        kind=BackendKind.NATIVE,
        executable_or_image="llama-server",
        host=MOCK_HOST,
        port=MOCK_PORT,
    )


@pytest.fixture
def settings(descriptor):
    """Settings with short timeouts for fast tests."""
    return EngineSettings(
        descriptor=descriptor,
        ready_timeout=1.0,
        poll_interval=0.01,
        probe_timeout=0.5,
        shutdown_grace=0.5,
    )


@pytest.fixture
def model_file(tmp_path):
    """A ModelReference whose file exists on disk."""
    model = ModelReference.from_hub(MOCK_REPO_ID, MOCK_FILENAME, tmp_path)
    model.local_path.parent.mkdir(parents=True)
    model.local_path.write_bytes(b"GGUF")
    return model


@pytest.fixture
def missing_model(tmp_path):
    """A ModelReference whose file does not exist yet."""
    return ModelReference.from_hub(MOCK_REPO_ID, MOCK_FILENAME, tmp_path)
