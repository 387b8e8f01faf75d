"""
Backend launchers.

Provider-agnostic launch: the descriptor's kind tag picks the variant,
each variant returns a RunningBackend.
"""

import logging
from typing import Awaitable, Callable, Optional

from localchat.backends import builds, container, native
from localchat.backends.base import (
    Accelerator,
    BackendDescriptor,
    BackendHandle,
    BackendKind,
    BackendState,
    BootEvent,
    BootEventKind,
    BootListener,
    Endpoint,
    RunningBackend,
)
from localchat.models import ModelReference, TransferProgress

logger = logging.getLogger(__name__)

Launcher = Callable[[BackendDescriptor, ModelReference, Optional[BootListener]], Awaitable[RunningBackend]]


def format_transfer(progress: TransferProgress, percent: int) -> str:
    """One log line per progress step: "=> 42% 1.20GB of 2.86GB @ 35.10 MB/s"."""
    total = progress.total or 0
    return (
        f"=> {percent}% {progress.downloaded / 1e9:.2f}GB of {total / 1e9:.2f}GB "
        f"@ {progress.speed / 1e6:.2f} MB/s"
    )


def progress_reporter(
    stage: str,
    on_event: Optional[BootListener],
) -> Callable[[TransferProgress], None]:
    """Turn byte-count updates into BootEvents, skipping repeated percents."""
    last_percent: Optional[int] = None

    def report(progress: TransferProgress) -> None:
        nonlocal last_percent
        if on_event is None:
            return
        result = progress.percent()
        if result is None:
            return
        _, percent = result
        if percent == last_percent:
            return
        last_percent = percent
        on_event(BootEvent.progressed(stage, percent))
        on_event(BootEvent.logged(format_transfer(progress, percent)))

    return report


async def _launch_native(
    descriptor: BackendDescriptor,
    model: ModelReference,
    on_event: Optional[BootListener],
) -> RunningBackend:
    reporters: dict[str, Callable[[TransferProgress], None]] = {}

    def on_build_progress(component: str, progress: TransferProgress) -> None:
        if component not in reporters:
            reporters[component] = progress_reporter(f"Downloading {component}...", on_event)
        reporters[component](progress)

    executable = await builds.ensure_server(descriptor, on_build_progress)
    process = await native.launch(descriptor, model, executable=executable)
    if on_event is not None:
        process.line_listener = lambda line: on_event(BootEvent.logged(line))
    return process


async def _launch_container(
    descriptor: BackendDescriptor,
    model: ModelReference,
    on_event: Optional[BootListener],
) -> RunningBackend:
    return await container.launch(
        descriptor,
        model,
        on_progress=progress_reporter("Pulling backend image...", on_event),
    )


LAUNCHERS: dict[BackendKind, Launcher] = {
    BackendKind.NATIVE: _launch_native,
    BackendKind.CONTAINER: _launch_container,
}


async def launch(
    descriptor: BackendDescriptor,
    model: ModelReference,
    on_event: Optional[BootListener] = None,
) -> RunningBackend:
    """
    Launch a backend for ``model`` according to ``descriptor``.

    Returns as soon as the process/container is running; readiness is the
    health monitor's job.

    Raises:
        LaunchError: NotFoundError, AddressInUseError or SpawnFailedError
        DownloadError: A managed llama-server build could not be fetched
    """
    logger.info(f"Launching {descriptor.kind.value} backend on {descriptor.listen_address} for {model.name}")
    return await LAUNCHERS[descriptor.kind](descriptor, model, on_event)


def detach_listeners(backend: RunningBackend) -> None:
    """Stop forwarding backend log lines once it is ready."""
    if isinstance(backend, native.NativeProcess):
        backend.line_listener = None


__all__ = [
    "Accelerator",
    "BackendDescriptor",
    "BackendHandle",
    "BackendKind",
    "BackendState",
    "BootEvent",
    "BootEventKind",
    "BootListener",
    "Endpoint",
    "RunningBackend",
    "detach_listeners",
    "format_transfer",
    "launch",
    "progress_reporter",
]
