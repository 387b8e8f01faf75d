"""
Health monitor: poll a launched backend until it accepts requests.

Polls are strictly sequential. Between polls the monitor also watches the
backend's exit, so a backend that dies during startup is reported at once
instead of after the full timeout. Retrying is the supervisor's decision;
nothing here retries a failed startup.
"""

import asyncio
import logging

import httpx

from localchat.backends.base import RunningBackend
from localchat.errors import BackendExitedError, TimedOutError

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"
DEFAULT_PROBE_TIMEOUT: float = 2.0


async def probe(client: httpx.AsyncClient, endpoint_url: str, probe_timeout: float) -> bool:
    """
    One liveness probe. True only on HTTP 200.

    llama-server answers 503 while the model is still loading.
    """
    try:
        response = await client.get(f"{endpoint_url}{HEALTH_PATH}", timeout=probe_timeout)
    except httpx.HTTPError as e:
        logger.debug(f"Health probe to {endpoint_url} failed: {e!r}")
        return False
    if response.status_code != 200:
        logger.debug(f"Health probe to {endpoint_url} returned {response.status_code}")
        return False
    return True


async def wait_ready(
    endpoint_url: str,
    backend: RunningBackend,
    timeout: float,
    poll_interval: float,
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> int:
    """
    Wait until the backend at ``endpoint_url`` is ready.

    Args:
        endpoint_url: Base URL of the launched backend
        backend: The launched process/container, watched for early exit
        timeout: Overall time limit in seconds
        poll_interval: Delay between probes
        probe_timeout: Per-probe timeout, separate from ``timeout``

    Returns:
        Number of probes it took

    Raises:
        BackendExitedError: The backend exited before any probe succeeded
        TimedOutError: ``timeout`` elapsed without a successful probe
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    exit_watch = asyncio.ensure_future(backend.wait())
    attempts = 0

    try:
        async with httpx.AsyncClient() as client:
            while True:
                if exit_watch.done() or not backend.is_alive():
                    raise BackendExitedError(backend.exit_code)

                attempts += 1
                if await probe(client, endpoint_url, probe_timeout):
                    logger.info(f"Backend at {endpoint_url} ready after {attempts} probe(s)")
                    return attempts

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise TimedOutError(endpoint_url, timeout)

                await asyncio.wait({exit_watch}, timeout=min(poll_interval, remaining))
    finally:
        if not exit_watch.done():
            exit_watch.cancel()
            await asyncio.gather(exit_watch, return_exceptions=True)
