"""
Backend types and the RunningBackend protocol.

This is the WHAT (interface), not the HOW (implementation).
See native.py and container.py for the two variants.

A backend kind is a tag on the descriptor, not a class hierarchy: the
native and container variants share no implementation, only the
capability set {launch, stop, is_alive, wait} described here.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol

from pydantic import BaseModel, ConfigDict


class BackendKind(str, Enum):
    NATIVE = "native"
    CONTAINER = "container"


class Accelerator(str, Enum):
    """Compute backend the inference server is built for."""
    CPU = "cpu"
    CUDA = "cuda"
    ROCM = "rocm"

    @classmethod
    def detect(cls, graphics_adapter: str) -> "Accelerator":
        """Pick an accelerator from a graphics adapter description."""
        if "NVIDIA" in graphics_adapter:
            return cls.CUDA
        if "AMD" in graphics_adapter:
            return cls.ROCM
        return cls.CPU

    @property
    def uses_gpu(self) -> bool:
        return self is not Accelerator.CPU


class BackendDescriptor(BaseModel):
    """
    Immutable launch configuration for one backend.

    ``executable_or_image`` is an executable name/path for NATIVE and an
    image reference ("repo:tag") for CONTAINER. ``install_dir`` is where
    managed llama-server builds live; None means never download one.
    """
    model_config = ConfigDict(frozen=True)

    kind: BackendKind
    executable_or_image: str
    host: str = "127.0.0.1"
    port: int = 8080
    accelerator: Accelerator = Accelerator.CPU
    gpu_layers: Optional[int] = None
    extra_args: tuple[str, ...] = ()
    install_dir: Optional[Path] = None

    @property
    def listen_address(self) -> str:
        # IPv6 literals are bracketed in host:port form
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"

    @property
    def endpoint_url(self) -> str:
        return f"http://{self.listen_address}"

    def with_port(self, port: int) -> "BackendDescriptor":
        return self.model_copy(update={"port": port})


class Endpoint(BaseModel):
    """Read-only view of a Ready backend handed out by the supervisor."""
    model_config = ConfigDict(frozen=True)

    url: str
    model_name: str
    backend_id: str


class BackendState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    SERVING = "serving"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERRORED = "errored"


class BootEventKind(str, Enum):
    PROGRESSED = "progressed"
    LOGGED = "logged"


class BootEvent(BaseModel):
    """Progress or log line emitted while a backend is being acquired."""
    model_config = ConfigDict(frozen=True)

    kind: BootEventKind
    stage: str = ""
    percent: int = 0
    line: str = ""

    @classmethod
    def progressed(cls, stage: str, percent: int) -> "BootEvent":
        return cls(kind=BootEventKind.PROGRESSED, stage=stage, percent=percent)

    @classmethod
    def logged(cls, line: str) -> "BootEvent":
        return cls(kind=BootEventKind.LOGGED, line=line)


BootListener = Callable[[BootEvent], None]


class RunningBackend(Protocol):
    """
    A launched process or container.

    Implementations must provide:
    - Identity (backend_id) and address (endpoint_url)
    - Liveness (exit_code is None while alive)
    - Exit watch (wait)
    - Teardown (stop), safe to call more than once
    """

    @property
    def backend_id(self) -> str:
        ...

    @property
    def endpoint_url(self) -> str:
        ...

    @property
    def exit_code(self) -> Optional[int]:
        """Exit status once the backend has exited, else None."""
        ...

    def is_alive(self) -> bool:
        ...

    async def wait(self) -> Optional[int]:
        """Suspend until the backend exits; return its exit status."""
        ...

    async def stop(self, grace_period: float) -> None:
        """
        Request graceful termination, force it after ``grace_period``.

        Must release every OS resource tied to the backend.
        """
        ...


@dataclass
class BackendHandle:
    """
    Mutable lifecycle record, owned exclusively by BackendSupervisor.

    ``running`` and ``backend_id`` are cleared once the supervisor has
    observed the backend's exit.
    """
    descriptor: BackendDescriptor
    state: BackendState = BackendState.STARTING
    running: Optional[RunningBackend] = None
    backend_id: Optional[str] = None
    endpoint_url: Optional[str] = None
    error: Optional[BaseException] = None

    def transition(self, state: BackendState, error: Optional[BaseException] = None) -> None:
        self.state = state
        if error is not None:
            self.error = error

    def clear(self) -> None:
        self.running = None
        self.backend_id = None
        self.endpoint_url = None
