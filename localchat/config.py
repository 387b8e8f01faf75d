"""
Configuration constants and Pydantic models for localchat.

Settings are read from the environment once, into an immutable
EngineSettings snapshot. Sessions never re-read configuration.
"""

import os
from pathlib import Path
from typing import Any, Optional

from huggingface_hub import get_token
from pydantic import BaseModel, ConfigDict, Field

from localchat.backends.base import Accelerator, BackendDescriptor, BackendKind


# ─────────────────────────────────────────────────────────────────────
# DEFAULTS - Generation
# ─────────────────────────────────────────────────────────────────────

DEFAULT_TEMPERATURE: float = 0.7
DEFAULT_MAX_TOKENS: int = 2048
DEFAULT_TIMEOUT_SECONDS: float = 300.0  # 5 minutes, first token can be slow on CPU
DEFAULT_CONNECT_TIMEOUT_SECONDS: float = 10.0
DEFAULT_SYSTEM_PROMPT: str = "You are a helpful assistant."

TITLE_PROMPT: str = (
    "Give me a short title for our conversation so far, "
    "without considering this interaction. "
    "Just the title between quotes; don't say anything else."
)
TITLE_MAX_LENGTH: int = 80


# ─────────────────────────────────────────────────────────────────────
# DEFAULTS - Backend
# ─────────────────────────────────────────────────────────────────────

DEFAULT_HOST: str = "127.0.0.1"
DEFAULT_PORT: int = 8080
DEFAULT_SERVER_BINARY: str = "llama-server"
DEFAULT_CONTAINER_IMAGE: str = "ghcr.io/ggml-org/llama.cpp"
CONTAINER_TAGS: dict[Accelerator, str] = {
    Accelerator.CPU: "server",
    Accelerator.CUDA: "server-cuda",
    Accelerator.ROCM: "server-rocm",
}
DEFAULT_GPU_LAYERS: int = 80

DEFAULT_READY_TIMEOUT_SECONDS: float = 120.0
DEFAULT_POLL_INTERVAL_SECONDS: float = 0.5
DEFAULT_PROBE_TIMEOUT_SECONDS: float = 2.0
DEFAULT_SHUTDOWN_GRACE_SECONDS: float = 5.0
DEFAULT_LAUNCH_ATTEMPTS: int = 3

DEFAULT_MODELS_DIR: str = "./models"
DEFAULT_SERVERS_DIR: str = "./servers"


# ─────────────────────────────────────────────────────────────────────
# ENVIRONMENT LOADING
# ─────────────────────────────────────────────────────────────────────

def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)))
    except ValueError:
        return default


def get_backend_kind() -> BackendKind:
    """
    Get backend kind from LOCALCHAT_BACKEND ("native" or "container").

    Unknown values fall back to native.
    """
    value = os.environ.get("LOCALCHAT_BACKEND", BackendKind.NATIVE.value).strip().lower()
    try:
        return BackendKind(value)
    except ValueError:
        return BackendKind.NATIVE


def get_accelerator() -> Accelerator:
    """Detect the accelerator from LOCALCHAT_GRAPHICS_ADAPTER (default CPU)."""
    return Accelerator.detect(os.environ.get("LOCALCHAT_GRAPHICS_ADAPTER", ""))


def get_server_binary() -> str:
    return os.environ.get("LOCALCHAT_SERVER_BINARY") or DEFAULT_SERVER_BINARY


def get_container_image(accelerator: Accelerator) -> str:
    """
    Get "image:tag" for the container backend.

    LOCALCHAT_CONTAINER_TAG overrides the accelerator-derived tag.
    """
    image = os.environ.get("LOCALCHAT_CONTAINER_IMAGE") or DEFAULT_CONTAINER_IMAGE
    tag = os.environ.get("LOCALCHAT_CONTAINER_TAG") or CONTAINER_TAGS[accelerator]
    return f"{image}:{tag}"


def get_host() -> str:
    return os.environ.get("LOCALCHAT_HOST") or DEFAULT_HOST


def get_port() -> int:
    return _env_int("LOCALCHAT_PORT", DEFAULT_PORT)


def get_gpu_layers(accelerator: Accelerator) -> Optional[int]:
    """GPU layers to offload; None (flag omitted) on CPU."""
    if not accelerator.uses_gpu:
        return None
    return _env_int("LOCALCHAT_GPU_LAYERS", DEFAULT_GPU_LAYERS)


def get_ready_timeout() -> float:
    return _env_float("LOCALCHAT_READY_TIMEOUT", DEFAULT_READY_TIMEOUT_SECONDS)


def get_poll_interval() -> float:
    return _env_float("LOCALCHAT_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS)


def get_shutdown_grace() -> float:
    return _env_float("LOCALCHAT_SHUTDOWN_GRACE", DEFAULT_SHUTDOWN_GRACE_SECONDS)


def get_launch_attempts() -> int:
    return max(_env_int("LOCALCHAT_LAUNCH_ATTEMPTS", DEFAULT_LAUNCH_ATTEMPTS), 1)


def get_models_dir() -> Path:
    return Path(os.environ.get("LOCALCHAT_MODELS_DIR") or DEFAULT_MODELS_DIR)


def get_servers_dir() -> Optional[Path]:
    """
    Directory for downloaded llama-server builds.

    LOCALCHAT_SERVER_DOWNLOAD=0 turns downloading off (returns None).
    """
    if os.environ.get("LOCALCHAT_SERVER_DOWNLOAD", "1").strip().lower() in ("0", "false", "no", "off"):
        return None
    return Path(os.environ.get("LOCALCHAT_SERVERS_DIR") or DEFAULT_SERVERS_DIR)


def get_hf_token() -> str | None:
    """HuggingFace token: HF_TOKEN, else the token saved by `huggingface-cli login`."""
    return get_token()


def load_backend_descriptor_from_env() -> BackendDescriptor:
    """Build the BackendDescriptor from LOCALCHAT_* variables."""
    kind = get_backend_kind()
    accelerator = get_accelerator()
    if kind is BackendKind.CONTAINER:
        executable_or_image = get_container_image(accelerator)
    else:
        executable_or_image = get_server_binary()

    return BackendDescriptor(
        kind=kind,
        executable_or_image=executable_or_image,
        host=get_host(),
        port=get_port(),
        accelerator=accelerator,
        gpu_layers=get_gpu_layers(accelerator),
        install_dir=get_servers_dir() if kind is BackendKind.NATIVE else None,
    )


# ─────────────────────────────────────────────────────────────────────
# DATA MODELS
# ─────────────────────────────────────────────────────────────────────

class GenerationParams(BaseModel):
    """
    Generation parameters, passed through to the backend as-is.

    ``extra`` is merged into the request body for backend-specific knobs.
    """
    model_config = ConfigDict(frozen=True)

    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    stop: tuple[str, ...] = ()
    extra: dict[str, Any] = Field(default_factory=dict)


class EngineSettings(BaseModel):
    """Immutable configuration snapshot taken at session start."""
    model_config = ConfigDict(frozen=True)

    descriptor: BackendDescriptor
    generation: GenerationParams = Field(default_factory=GenerationParams)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    request_timeout: float = DEFAULT_TIMEOUT_SECONDS
    ready_timeout: float = DEFAULT_READY_TIMEOUT_SECONDS
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS
    shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE_SECONDS
    launch_attempts: int = DEFAULT_LAUNCH_ATTEMPTS

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            descriptor=load_backend_descriptor_from_env(),
            ready_timeout=get_ready_timeout(),
            poll_interval=get_poll_interval(),
            shutdown_grace=get_shutdown_grace(),
            launch_attempts=get_launch_attempts(),
        )
