"""
Backend supervisor: owns the backend handle from launch to stop.

Explicit state:
- BackendHandle is created, mutated and destroyed only here
- Everyone else receives a read-only Endpoint or a SupervisorError

Lifecycle:
    STARTING --launch--> (process running) --health--> READY --> SERVING
    any non-terminal --failure/crash--> ERRORED
    SERVING --shutdown--> STOPPING --> STOPPED

Concurrent acquire_endpoint() callers share one launch task; a second
caller never starts a second launch, and one caller being cancelled
never aborts the launch for the others.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt

from localchat import backends, health
from localchat.backends import (
    BackendHandle,
    BackendState,
    BootEvent,
    BootListener,
    Endpoint,
    RunningBackend,
    progress_reporter,
)
from localchat.config import EngineSettings
from localchat.errors import (
    AddressInUseError,
    BackendCrashedError,
    DownloadError,
    HealthError,
    LaunchError,
    SpawnFailedError,
    SupervisorError,
)
from localchat.models import ModelReference
from localchat.storage import ModelStore

logger = logging.getLogger(__name__)

HealthCheck = Callable[..., Awaitable[int]]


class BackendSupervisor:
    """
    Launches, health-checks, serves and stops one backend.

    Usage:
        async with BackendSupervisor(model, settings) as supervisor:
            endpoint = await supervisor.acquire_endpoint()
    """

    def __init__(
        self,
        model: ModelReference,
        settings: EngineSettings,
        store: Optional[ModelStore] = None,
        launcher: backends.Launcher = backends.launch,
        health_check: HealthCheck = health.wait_ready,
        on_event: Optional[BootListener] = None,
    ):
        """
        Args:
            model: Model every launch runs
            settings: Immutable configuration snapshot
            store: Makes the model file present before launching (optional)
            launcher: Backend launcher, ``backends.launch`` by default
            health_check: Readiness wait, ``health.wait_ready`` by default
            on_event: Receives BootEvents during acquisition
        """
        self.model = model
        self._settings = settings
        self._store = store
        self._launcher = launcher
        self._health_check = health_check
        self._on_event = on_event

        self._handle: Optional[BackendHandle] = None
        self._endpoint: Optional[Endpoint] = None
        self._launching: Optional[asyncio.Task] = None
        self._exit_watch: Optional[asyncio.Task] = None
        self.launch_count = 0

    # ─────────────────────────────────────────────────────────────────
    # Read-only state
    # ─────────────────────────────────────────────────────────────────

    @property
    def state(self) -> BackendState:
        if self._handle is None:
            return BackendState.STOPPED
        return self._handle.state

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._handle.error if self._handle is not None else None

    @property
    def endpoint(self) -> Optional[Endpoint]:
        return self._endpoint

    # ─────────────────────────────────────────────────────────────────
    # Acquire
    # ─────────────────────────────────────────────────────────────────

    async def acquire_endpoint(self) -> Endpoint:
        """
        Return the serving endpoint, launching the backend if needed.

        Idempotent while SERVING. After a crash, shutdown or failed launch
        the next call starts over from a fresh launch.

        Raises:
            SupervisorError: Wrapping the LaunchError/HealthError/DownloadError
        """
        if self._endpoint is not None and self._is_serving():
            return self._endpoint

        if self._launching is None:
            self._launching = asyncio.create_task(self._start())
            self._launching.add_done_callback(self._launch_finished)

        launching = self._launching
        try:
            return await asyncio.shield(launching)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if launching.cancelled() and current is not None and not current.cancelling():
                raise SupervisorError(SpawnFailedError("Backend launch aborted by shutdown"))
            raise

    def _is_serving(self) -> bool:
        handle = self._handle
        if handle is None or handle.state is not BackendState.SERVING or handle.running is None:
            return False
        if not handle.running.is_alive():
            # Exit watcher has not run yet; treat as crashed now
            self._mark_crashed(handle, handle.running.exit_code)
            return False
        return True

    def _launch_finished(self, task: asyncio.Task) -> None:
        if self._launching is task:
            self._launching = None
        # Waiters get the exception through shield(); mark it retrieved
        if not task.cancelled():
            task.exception()

    async def _start(self) -> Endpoint:
        handle = BackendHandle(descriptor=self._settings.descriptor)
        self._handle = handle
        self._endpoint = None
        self.launch_count += 1
        logger.info(f"Backend starting for {self.model.name} (launch #{self.launch_count})")

        try:
            model = self.model
            if self._store is not None:
                report = progress_reporter("Downloading model...", self._emit)
                async for progress in self._store.ensure_present(model):
                    report(progress)
                model = self._resolve(model)

            running = await self._launch_with_retry(handle, model)
            handle.running = running
            handle.backend_id = running.backend_id
            handle.endpoint_url = running.endpoint_url
            self._emit(BootEvent.progressed("Loading model...", 99))

            try:
                await self._health_check(
                    running.endpoint_url,
                    running,
                    timeout=self._settings.ready_timeout,
                    poll_interval=self._settings.poll_interval,
                    probe_timeout=self._settings.probe_timeout,
                )
            except BaseException:
                await self._teardown(handle)
                raise

            handle.transition(BackendState.READY)
            backends.detach_listeners(running)
            self._emit(BootEvent.progressed("Ready", 100))

            endpoint = Endpoint(
                url=running.endpoint_url,
                model_name=self.model.name,
                backend_id=running.backend_id,
            )
            handle.transition(BackendState.SERVING)
            self._endpoint = endpoint
            self._exit_watch = asyncio.create_task(self._watch_exit(handle, running))
            logger.info(f"Backend {running.backend_id} serving at {endpoint.url}")
            return endpoint

        except (LaunchError, HealthError, DownloadError) as e:
            handle.transition(BackendState.ERRORED, e)
            logger.error(f"Backend for {self.model.name} failed to start: {e}")
            raise SupervisorError(e) from e

    def _resolve(self, model: ModelReference) -> ModelReference:
        """Launch with the file the store says holds the model."""
        path = self._store.resolve(model)
        if path == model.local_path:
            return model
        logger.debug(f"Model {model.name} resolved to {path}")
        return model.model_copy(update={"local_path": path})

    async def _launch_with_retry(self, handle: BackendHandle, model: ModelReference) -> RunningBackend:
        """Launch; on AddressInUse try the next port, up to launch_attempts."""
        base = self._settings.descriptor
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._settings.launch_attempts),
            retry=retry_if_exception_type(AddressInUseError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                descriptor = base.with_port(base.port + attempt.retry_state.attempt_number - 1)
                handle.descriptor = descriptor
                running = await self._launcher(descriptor, model, self._emit)
        return running

    async def _watch_exit(self, handle: BackendHandle, running: RunningBackend) -> None:
        exit_code = await running.wait()
        if handle.state in (BackendState.STOPPING, BackendState.STOPPED):
            return
        if handle.state is not BackendState.ERRORED:
            self._mark_crashed(handle, exit_code)
        await self._teardown(handle)

    def _mark_crashed(self, handle: BackendHandle, exit_code: Optional[int]) -> None:
        logger.error(f"Backend {handle.backend_id} exited unexpectedly (exit code {exit_code})")
        handle.transition(BackendState.ERRORED, BackendCrashedError(exit_code))
        if handle is self._handle:
            self._endpoint = None

    async def _teardown(self, handle: BackendHandle) -> None:
        """Stop the handle's backend and clear it; never raises."""
        running = handle.running
        if running is None:
            return
        try:
            await running.stop(self._settings.shutdown_grace)
        except Exception as e:
            logger.error(f"Failed to stop backend {handle.backend_id}: {e}")
        finally:
            handle.clear()

    # ─────────────────────────────────────────────────────────────────
    # Shutdown
    # ─────────────────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """
        Stop the backend: graceful stop, forced after the grace period.

        Always ends in STOPPED with the listen address released, even if
        the graceful stop failed or a launch was still in progress.
        In-flight completions see their connection drop.
        """
        launching = self._launching
        if launching is not None and not launching.done():
            logger.info("Shutdown requested during launch, cancelling it")
            launching.cancel()
            await asyncio.gather(launching, return_exceptions=True)

        self._endpoint = None
        handle = self._handle
        if handle is None:
            return

        if handle.running is not None:
            handle.transition(BackendState.STOPPING)
            logger.info(f"Stopping backend {handle.backend_id}")
            await self._teardown(handle)

        handle.transition(BackendState.STOPPED)
        handle.clear()

        watch = self._exit_watch
        self._exit_watch = None
        if watch is not None and not watch.done():
            watch.cancel()
            await asyncio.gather(watch, return_exceptions=True)
        logger.info("Backend stopped")

    async def __aenter__(self) -> "BackendSupervisor":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    def _emit(self, event: BootEvent) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception as e:
            logger.warning(f"Boot event listener failed: {e}")
