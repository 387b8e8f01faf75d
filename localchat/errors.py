"""
Error taxonomy for the backend lifecycle and chat engine.

Every failure path ends in one of these. The human-readable cause of an
error is always ``str(err)``; that string is what gets attached to a
failed chat turn.
"""

import json
from typing import Optional

import httpx


class LocalChatError(Exception):
    """Base class for all localchat errors."""
    pass


# ─────────────────────────────────────────────────────────────────────
# LAUNCH
# ─────────────────────────────────────────────────────────────────────

class LaunchError(LocalChatError):
    """A backend could not be started. Terminal for one launch attempt."""
    pass


class NotFoundError(LaunchError):
    """Executable or container image does not exist."""
    pass


class AddressInUseError(LaunchError):
    """The requested listen address is already bound."""

    def __init__(self, host: str, port: int):
        super().__init__(f"Address {host}:{port} is already in use")
        self.host = host
        self.port = port


class SpawnFailedError(LaunchError):
    """The spawn/start call itself failed."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


# ─────────────────────────────────────────────────────────────────────
# HEALTH
# ─────────────────────────────────────────────────────────────────────

class HealthError(LocalChatError):
    """A launched backend never became ready."""
    pass


class TimedOutError(HealthError):
    def __init__(self, endpoint: str, timeout: float):
        super().__init__(f"Backend at {endpoint} not ready after {timeout:g}s")
        self.endpoint = endpoint
        self.timeout = timeout


class BackendExitedError(HealthError):
    def __init__(self, exit_code: Optional[int]):
        super().__init__(f"Backend exited before becoming ready (exit code {exit_code})")
        self.exit_code = exit_code


# ─────────────────────────────────────────────────────────────────────
# COMPLETION CLIENT
# ─────────────────────────────────────────────────────────────────────

class ClientError(LocalChatError):
    """A streaming completion failed."""
    pass


class ConnectionFailedError(ClientError):
    """Endpoint unreachable, or the connection dropped mid-stream."""
    pass


class ProtocolError(ClientError):
    """Malformed frame on the wire."""
    pass


class RemoteError(ClientError):
    """The backend reported an inference-time failure."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class GenerationCancelledError(ClientError):
    """The consumer abandoned the stream before it completed."""

    def __init__(self, message: str = "Generation cancelled"):
        super().__init__(message)


# ─────────────────────────────────────────────────────────────────────
# SUPERVISOR / SESSION / STORAGE
# ─────────────────────────────────────────────────────────────────────

class SupervisorError(LocalChatError):
    """Supervisor could not produce a ready endpoint."""

    def __init__(self, cause: BaseException):
        super().__init__(str(cause))
        self.cause = cause


class BackendCrashedError(SupervisorError):
    """Backend exited while it was serving."""

    def __init__(self, exit_code: Optional[int]):
        super().__init__(RuntimeError(f"Backend crashed (exit code {exit_code})"))
        self.exit_code = exit_code


class SessionBusyError(LocalChatError):
    """An operation that requires Idle was called while Generating."""
    pass


class DownloadError(LocalChatError):
    """A model file could not be made present locally."""
    pass


class ChecksumMismatchError(DownloadError):
    def __init__(self, expected: str, actual: str):
        super().__init__(f"Checksum mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


def parse_http_error(status_code: int, body: bytes) -> str:
    """
    Extract a user-friendly error message from an HTTP error body.

    llama-server returns {"error": {"message": "..."}}; the Docker Engine
    returns {"message": "..."}. Anything else falls back to the raw body.
    """
    text = body.decode(errors="replace")
    try:
        data = json.loads(text)
    except ValueError:
        return f"HTTP {status_code}: {text[:200]}"

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            message = error.get("message", "")
            if message:
                return message
        elif isinstance(error, str) and error:
            return error
        message = data.get("message")
        if isinstance(message, str) and message:
            return message
    return f"HTTP {status_code}: {text[:200]}"


def describe_transport_error(error: httpx.TransportError) -> str:
    """Human-readable summary of an httpx transport failure."""
    detail = str(error) or type(error).__name__
    return f"{type(error).__name__}: {detail}"
