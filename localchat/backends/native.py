"""
Native backend: llama-server (or compatible) as a child process.

The process is spawned with the model path and listen address on its
command line. stdout/stderr are drained continuously so the pipes never
fill up; every line goes to the log and, while someone is listening, to
a BootEvent listener.
"""

import asyncio
import errno
import logging
import os
import shlex
import shutil
import socket
from typing import Callable, Optional

from localchat.backends.base import BackendDescriptor
from localchat.errors import AddressInUseError, NotFoundError, SpawnFailedError
from localchat.models import ModelReference

logger = logging.getLogger(__name__)

LineListener = Callable[[str], None]


def is_path(name: str) -> bool:
    """True for "/opt/llama/llama-server", False for a bare "llama-server"."""
    return os.sep in name or bool(os.altsep and os.altsep in name)


def resolve_executable(name: str) -> str:
    """
    Resolve an executable name or path.

    Raises:
        NotFoundError: If nothing executable is found
    """
    if is_path(name):
        if os.path.isfile(name) and os.access(name, os.X_OK):
            return name
        raise NotFoundError(f"Executable not found: {name}")

    path = shutil.which(name)
    if path is None:
        raise NotFoundError(f"Executable not found on PATH: {name}")
    return path


def ensure_port_free(host: str, port: int) -> None:
    """Raise AddressInUseError if host:port cannot be bound right now."""
    try:
        family, _, _, _, address = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)[0]
    except socket.gaierror as e:
        raise SpawnFailedError(f"Cannot resolve listen host {host}: {e}", cause=e) from e

    with socket.socket(family, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(address)
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                raise AddressInUseError(host, port) from e
            raise SpawnFailedError(f"Cannot bind {host}:{port}: {e}", cause=e) from e


def build_command(executable: str, descriptor: BackendDescriptor, model: ModelReference) -> list[str]:
    """Compose the llama-server argument vector."""
    args = [
        executable,
        "--model", str(model.local_path),
        "--host", descriptor.host,
        "--port", str(descriptor.port),
        "--alias", model.name,
    ]
    if descriptor.gpu_layers is not None:
        args.extend(["--n-gpu-layers", str(descriptor.gpu_layers)])
    args.extend(descriptor.extra_args)
    return args


class NativeProcess:
    """RunningBackend implementation for a local child process."""

    def __init__(self, process: asyncio.subprocess.Process, endpoint_url: str):
        self._process = process
        self._endpoint_url = endpoint_url
        self._log_tasks: set[asyncio.Task] = set()
        self.line_listener: Optional[LineListener] = None
        self._start_log_pumps()

    @property
    def backend_id(self) -> str:
        return str(self._process.pid)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def endpoint_url(self) -> str:
        return self._endpoint_url

    @property
    def exit_code(self) -> Optional[int]:
        return self._process.returncode

    def is_alive(self) -> bool:
        return self._process.returncode is None

    async def wait(self) -> Optional[int]:
        return await self._process.wait()

    async def stop(self, grace_period: float) -> None:
        if self._process.returncode is None:
            logger.info(f"Terminating backend process {self.pid}")
            try:
                self._process.terminate()
                await asyncio.wait_for(self._process.wait(), timeout=grace_period)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning(f"Backend process {self.pid} ignored SIGTERM, killing")
                try:
                    self._process.kill()
                except ProcessLookupError:
                    pass
                await self._process.wait()
        await self._drain_log_tasks()

    def _start_log_pumps(self) -> None:
        for label, stream in (("stdout", self._process.stdout), ("stderr", self._process.stderr)):
            if stream is not None:
                task = asyncio.create_task(self._pump_stream(stream, label))
                self._log_tasks.add(task)
                task.add_done_callback(self._log_tasks.discard)

    async def _pump_stream(self, stream: asyncio.StreamReader, label: str) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            logger.debug(f"[backend {label}] {text}")
            if self.line_listener is not None:
                try:
                    self.line_listener(text)
                except Exception as e:
                    logger.warning(f"Backend log listener failed: {e}")

    async def _drain_log_tasks(self) -> None:
        # Pipes hit EOF once the process is gone; give the pumps a moment
        # to flush the tail before cancelling them.
        pending = list(self._log_tasks)
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=1.0)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)


async def launch(
    descriptor: BackendDescriptor,
    model: ModelReference,
    executable: Optional[str] = None,
) -> NativeProcess:
    """
    Spawn the backend process and return immediately (not yet Ready).

    ``executable`` skips resolving ``descriptor.executable_or_image``.

    Raises:
        NotFoundError: Executable or model file missing
        AddressInUseError: Listen port already bound
        SpawnFailedError: The spawn call failed
    """
    executable = executable or resolve_executable(descriptor.executable_or_image)
    if not model.local_path.is_file():
        raise NotFoundError(f"Model file not found: {model.local_path}")
    ensure_port_free(descriptor.host, descriptor.port)

    command = build_command(executable, descriptor, model)
    logger.info(f"Starting backend: {shlex.join(command)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise NotFoundError(f"Executable not found: {executable}") from e
    except OSError as e:
        raise SpawnFailedError(f"Failed to spawn {executable}: {e}", cause=e) from e

    return NativeProcess(process, descriptor.endpoint_url)
