"""
Container backend: llama-server inside a Docker container.

Talks to the Docker Engine HTTP API directly with httpx (over the unix
socket by default), so image pulls stream their per-layer byte counts and
can be cancelled like any other httpx stream.

Container layout:
- the model's directory is bind-mounted read-only at /models
- the server listens on 0.0.0.0:8080 inside, published to host:port
"""

import asyncio
import json
import logging
import os
import time
from typing import AsyncGenerator, Callable, Optional
from urllib.parse import quote

import httpx

from localchat.backends.base import Accelerator, BackendDescriptor
from localchat.errors import (
    AddressInUseError,
    NotFoundError,
    SpawnFailedError,
    describe_transport_error,
    parse_http_error,
)
from localchat.models import ModelReference, TransferProgress

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"
CONTAINER_PORT = 8080
CONTAINER_MODELS_DIR = "/models"

_ADDRESS_IN_USE_PATTERNS = ("port is already allocated", "address already in use")
_IMAGE_MISSING_PATTERNS = ("not found", "manifest unknown", "pull access denied", "no such image")

ProgressListener = Callable[[TransferProgress], None]


def split_image(image: str) -> tuple[str, str]:
    """Split "repo[:tag]" into (repo, tag); a registry port is not a tag."""
    repo, sep, tag = image.rpartition(":")
    if not sep or "/" in tag:
        return image, "latest"
    return repo, tag


class DockerEngine:
    """
    Minimal async Docker Engine API client.

    Only the calls the container backend needs: ping, image inspect/pull,
    container create/start/wait/stop/kill/remove.
    """

    def __init__(self, docker_host: str = DEFAULT_DOCKER_HOST, timeout: float = 30.0):
        if docker_host.startswith("unix://"):
            transport = httpx.AsyncHTTPTransport(uds=docker_host[len("unix://"):])
            base_url = "http://docker"
        elif docker_host.startswith("tcp://"):
            transport = None
            base_url = "http://" + docker_host[len("tcp://"):]
        else:
            transport = None
            base_url = docker_host

        self.docker_host = docker_host
        self._client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=timeout,
        )

    @classmethod
    def from_env(cls) -> "DockerEngine":
        return cls(os.environ.get("DOCKER_HOST") or DEFAULT_DOCKER_HOST)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise SpawnFailedError(
                f"Container engine request failed ({method} {path}): {describe_transport_error(e)}",
                cause=e,
            ) from e

    async def ping(self) -> None:
        """Raise SpawnFailedError unless the engine answers /_ping."""
        response = await self._request("GET", "/_ping")
        if response.status_code != 200:
            raise SpawnFailedError(
                f"Container engine not reachable at {self.docker_host}: "
                f"{parse_http_error(response.status_code, response.content)}"
            )

    async def image_exists(self, image: str) -> bool:
        response = await self._request("GET", f"/images/{image}/json")
        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            raise SpawnFailedError(
                f"Image inspect failed for {image}: "
                f"{parse_http_error(response.status_code, response.content)}"
            )
        return True

    async def pull_image(self, image: str) -> AsyncGenerator[TransferProgress, None]:
        """
        Pull an image, yielding aggregate download progress.

        Progress is summed across layers; only "Downloading" lines count.
        Closing the generator aborts the pull request.
        """
        repo, tag = split_image(image)
        layers: dict[str, tuple[int, int]] = {}
        started = time.monotonic()

        try:
            async with self._client.stream(
                "POST",
                "/images/create",
                params={"fromImage": repo, "tag": tag},
                timeout=httpx.Timeout(30.0, read=None),
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    message = parse_http_error(response.status_code, body)
                    if response.status_code == 404:
                        raise NotFoundError(f"Image not found: {image} ({message})")
                    raise SpawnFailedError(f"Image pull failed for {image}: {message}")

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug(f"Unparseable pull event: {line[:100]}")
                        continue

                    if "error" in event:
                        message = str(event["error"])
                        if any(p in message.lower() for p in _IMAGE_MISSING_PATTERNS):
                            raise NotFoundError(f"Image not found: {image} ({message})")
                        raise SpawnFailedError(f"Image pull failed for {image}: {message}")

                    detail = event.get("progressDetail") or {}
                    if event.get("status") != "Downloading" or "total" not in detail:
                        continue

                    layers[event.get("id", "")] = (int(detail.get("current", 0)), int(detail["total"]))
                    downloaded = sum(current for current, _ in layers.values())
                    total = sum(size for _, size in layers.values())
                    elapsed = max(time.monotonic() - started, 1e-6)
                    yield TransferProgress(
                        downloaded=downloaded,
                        total=total,
                        speed=int(downloaded / elapsed),
                    )
        except httpx.TransportError as e:
            raise SpawnFailedError(
                f"Image pull failed for {image}: {describe_transport_error(e)}", cause=e
            ) from e

        logger.info(f"Pulled image {image}")

    async def create_container(self, config: dict) -> str:
        response = await self._request("POST", "/containers/create", json=config)
        if response.status_code == 404:
            raise NotFoundError(
                f"Image not found: {config.get('Image')} "
                f"({parse_http_error(response.status_code, response.content)})"
            )
        if response.status_code >= 400:
            raise SpawnFailedError(
                f"Container create failed: {parse_http_error(response.status_code, response.content)}"
            )
        return response.json()["Id"]

    async def start_container(self, container_id: str, host: str, port: int) -> None:
        response = await self._request("POST", f"/containers/{container_id}/start")
        if response.status_code in (204, 304):
            return
        message = parse_http_error(response.status_code, response.content)
        if any(p in message.lower() for p in _ADDRESS_IN_USE_PATTERNS):
            raise AddressInUseError(host, port)
        raise SpawnFailedError(f"Container start failed: {message}")

    async def wait_container(self, container_id: str) -> Optional[int]:
        """Block until the container exits and return its status code."""
        response = await self._request(
            "POST",
            f"/containers/{container_id}/wait",
            timeout=httpx.Timeout(30.0, read=None),
        )
        if response.status_code >= 400:
            raise SpawnFailedError(
                f"Container wait failed: {parse_http_error(response.status_code, response.content)}"
            )
        return response.json().get("StatusCode")

    async def stop_container(self, container_id: str, grace_period: float) -> None:
        seconds = max(int(grace_period), 0)
        await self._request(
            "POST",
            f"/containers/{container_id}/stop",
            params={"t": seconds},
            timeout=seconds + 10.0,
        )

    async def kill_container(self, container_id: str) -> None:
        await self._request("POST", f"/containers/{container_id}/kill")

    async def remove_container(self, container_id: str) -> None:
        await self._request("DELETE", f"/containers/{quote(container_id)}", params={"force": "true"})


def build_container_config(descriptor: BackendDescriptor, model: ModelReference) -> dict:
    """Docker create body: image, command, port binding, model mount, devices."""
    command = [
        "--model", f"{CONTAINER_MODELS_DIR}/{model.file_name}",
        "--host", "0.0.0.0",
        "--port", str(CONTAINER_PORT),
        "--alias", model.name,
    ]
    if descriptor.gpu_layers is not None:
        command.extend(["--n-gpu-layers", str(descriptor.gpu_layers)])
    command.extend(descriptor.extra_args)

    host_config: dict = {
        "PortBindings": {
            f"{CONTAINER_PORT}/tcp": [{"HostIp": descriptor.host, "HostPort": str(descriptor.port)}]
        },
        "Binds": [f"{model.local_path.parent.resolve()}:{CONTAINER_MODELS_DIR}:ro"],
    }
    if descriptor.accelerator is Accelerator.CUDA:
        host_config["DeviceRequests"] = [
            {"Driver": "nvidia", "Count": -1, "Capabilities": [["gpu"]]}
        ]
    elif descriptor.accelerator is Accelerator.ROCM:
        host_config["Devices"] = [
            {"PathOnHost": path, "PathInContainer": path, "CgroupPermissions": "rwm"}
            for path in ("/dev/kfd", "/dev/dri")
        ]

    return {
        "Image": descriptor.executable_or_image,
        "Cmd": command,
        "ExposedPorts": {f"{CONTAINER_PORT}/tcp": {}},
        "HostConfig": host_config,
    }


class ContainerInstance:
    """RunningBackend implementation for a started container."""

    def __init__(self, engine: DockerEngine, container_id: str, endpoint_url: str, owns_engine: bool = False):
        self._engine = engine
        self._container_id = container_id
        self._endpoint_url = endpoint_url
        self._owns_engine = owns_engine
        self._exit_code: Optional[int] = None
        self._exited = asyncio.Event()
        self._watch_task = asyncio.create_task(self._watch())

    @property
    def backend_id(self) -> str:
        return self._container_id

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

    async def _watch(self) -> None:
        try:
            self._exit_code = await self._engine.wait_container(self._container_id)
        except SpawnFailedError as e:
            logger.warning(f"Lost track of container {self._container_id[:12]}: {e}")
            self._exit_code = -1
        finally:
            self._exited.set()

    async def stop(self, grace_period: float) -> None:
        short_id = self._container_id[:12]
        if self.is_alive():
            logger.info(f"Stopping container {short_id}")
            try:
                await self._engine.stop_container(self._container_id, grace_period)
                await asyncio.wait_for(self._exited.wait(), timeout=grace_period + 5.0)
            except (SpawnFailedError, asyncio.TimeoutError) as e:
                logger.warning(f"Container {short_id} did not stop gracefully ({e}), killing")
                try:
                    await self._engine.kill_container(self._container_id)
                except SpawnFailedError as kill_error:
                    logger.error(f"Failed to kill container {short_id}: {kill_error}")

        try:
            await self._engine.remove_container(self._container_id)
        except SpawnFailedError as e:
            logger.error(f"Failed to remove container {short_id}: {e}")

        if not self._watch_task.done():
            self._watch_task.cancel()
            await asyncio.gather(self._watch_task, return_exceptions=True)
            self._exited.set()
        if self._owns_engine:
            await self._engine.aclose()


async def launch(
    descriptor: BackendDescriptor,
    model: ModelReference,
    engine: Optional[DockerEngine] = None,
    on_progress: Optional[ProgressListener] = None,
) -> ContainerInstance:
    """
    Start the backend container and return immediately (not yet Ready).

    Pulls the image first when it is not present locally.

    Raises:
        NotFoundError: Image or model file missing
        AddressInUseError: Host port already allocated
        SpawnFailedError: Engine unreachable or create/start failed
    """
    owns_engine = engine is None
    engine = engine or DockerEngine.from_env()
    image = descriptor.executable_or_image

    try:
        if not model.local_path.is_file():
            raise NotFoundError(f"Model file not found: {model.local_path}")

        await engine.ping()

        if not await engine.image_exists(image):
            logger.info(f"Image {image} not present, pulling")
            async for progress in engine.pull_image(image):
                if on_progress is not None:
                    on_progress(progress)

        container_id = await engine.create_container(build_container_config(descriptor, model))
        logger.info(f"Created container {container_id[:12]} from {image}")

        try:
            await engine.start_container(container_id, descriptor.host, descriptor.port)
        except BaseException:
            try:
                await engine.remove_container(container_id)
            except SpawnFailedError as e:
                logger.error(f"Failed to remove container {container_id[:12]}: {e}")
            raise
    except BaseException:
        if owns_engine:
            await engine.aclose()
        raise

    return ContainerInstance(engine, container_id, descriptor.endpoint_url, owns_engine=owns_engine)
