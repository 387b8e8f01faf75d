"""
Managed llama-server builds for the native backend.

When the configured server binary is a bare name that is not on PATH, the
native backend runs a llama.cpp release build kept under the descriptor's
install_dir instead:

    <install_dir>/b<N>/...        one extracted release per build number

The newest installed build wins. With none installed, the latest release
is looked up on GitHub (falling back to a known-good build when the lookup
fails), downloaded for this platform and accelerator, and extracted.
"""

import logging
import os
import platform
import re
import shutil
import time
from pathlib import Path
from typing import Callable, Optional

import httpx

from localchat.backends import native
from localchat.backends.base import Accelerator, BackendDescriptor
from localchat.errors import DownloadError, NotFoundError, describe_transport_error, parse_http_error
from localchat.models import TransferProgress

logger = logging.getLogger(__name__)

LATEST_RELEASE_URL = "https://api.github.com/repos/ggml-org/llama.cpp/releases/latest"
RELEASE_DOWNLOAD_URL = "https://github.com/ggml-org/llama.cpp/releases/download"
LOCKED_BUILD = 6756
SERVER_NAMES = ("llama-server", "llama-server.exe")
WINDOWS_CUDA = "cuda-12.4"

_BUILD_DIR = re.compile(r"^b(\d+)$")

# (component, progress) for every downloaded chunk
BuildProgress = Callable[[str, TransferProgress], None]


# ─────────────────────────────────────────────────────────────────────
# RELEASE ASSETS
# ─────────────────────────────────────────────────────────────────────

def _arch(machine: str) -> str:
    machine = machine.lower()
    if machine in ("x86_64", "amd64"):
        return "x64"
    if machine in ("arm64", "aarch64"):
        return "arm64"
    return machine


def release_assets(
    build: int,
    accelerator: Accelerator,
    system: Optional[str] = None,
    machine: Optional[str] = None,
) -> list[tuple[str, str]]:
    """
    (component, archive name) pairs to download for one build.

    Linux releases ship no CUDA/HIP server, so GPUs get the Vulkan build
    there. On Windows CUDA also needs the CUDA runtime archive.

    Raises:
        NotFoundError: No release build exists for this platform
    """
    system = system or platform.system()
    arch = _arch(machine or platform.machine())

    if system == "Darwin" and arch in ("arm64", "x64"):
        variant = f"macos-{arch}"
    elif system == "Linux" and arch == "x64":
        variant = "ubuntu-vulkan-x64" if accelerator.uses_gpu else "ubuntu-x64"
    elif system == "Windows" and arch == "x64":
        variant = {
            Accelerator.CPU: "win-cpu-x64",
            Accelerator.CUDA: f"win-{WINDOWS_CUDA}-x64",
            Accelerator.ROCM: "win-hip-radeon-x64",
        }[accelerator]
    else:
        raise NotFoundError(f"No prebuilt llama-server for {system} {arch}")

    assets = [("llama-server", f"llama-b{build}-bin-{variant}.zip")]
    if system == "Windows" and accelerator is Accelerator.CUDA:
        assets.append(("CUDA backend", f"cudart-llama-bin-win-{WINDOWS_CUDA}-x64.zip"))
    return assets


# ─────────────────────────────────────────────────────────────────────
# INSTALLED BUILDS
# ─────────────────────────────────────────────────────────────────────

def find_server_executable(root: Path) -> Optional[Path]:
    for name in SERVER_NAMES:
        for path in sorted(root.rglob(name)):
            if path.is_file():
                return path
    return None


def installed_builds(install_dir: Path) -> list[tuple[int, Path]]:
    """(build number, server executable) for every complete build, oldest first."""
    if not install_dir.is_dir():
        return []
    builds = []
    for child in install_dir.iterdir():
        match = _BUILD_DIR.match(child.name)
        if match is None or not child.is_dir():
            continue
        executable = find_server_executable(child)
        if executable is not None:
            builds.append((int(match.group(1)), executable))
    return sorted(builds)


async def latest_build(client: httpx.AsyncClient) -> int:
    """Latest llama.cpp release number, or LOCKED_BUILD when GitHub can't say."""
    try:
        response = await client.get(LATEST_RELEASE_URL, headers={"Accept": "application/vnd.github+json"})
        response.raise_for_status()
        return int(response.json()["tag_name"].lstrip("b"))
    except (httpx.HTTPError, KeyError, TypeError, ValueError, AttributeError) as e:
        logger.warning(f"Could not look up the latest llama-server build ({e!r}), using b{LOCKED_BUILD}")
        return LOCKED_BUILD


# ─────────────────────────────────────────────────────────────────────
# DOWNLOAD
# ─────────────────────────────────────────────────────────────────────

async def _download(
    client: httpx.AsyncClient,
    url: str,
    destination: Path,
    component: str,
    on_progress: Optional[BuildProgress],
) -> None:
    started = time.monotonic()
    downloaded = 0
    async with client.stream("GET", url) as response:
        if response.status_code >= 400:
            body = await response.aread()
            raise DownloadError(
                f"Download of {component} failed: {parse_http_error(response.status_code, body)}"
            )
        length = response.headers.get("content-length")
        total = int(length) if length else None

        with open(destination, "wb") as f:
            async for chunk in response.aiter_bytes():
                f.write(chunk)
                downloaded += len(chunk)
                if on_progress is not None:
                    elapsed = max(time.monotonic() - started, 1e-6)
                    on_progress(component, TransferProgress(
                        downloaded=downloaded,
                        total=total,
                        speed=int(downloaded / elapsed),
                    ))


async def download_build(
    client: httpx.AsyncClient,
    build: int,
    accelerator: Accelerator,
    install_dir: Path,
    on_progress: Optional[BuildProgress] = None,
) -> Path:
    """
    Download and extract one release build into ``install_dir/b<build>``.

    Archives are extracted into a staging directory that only replaces
    the build directory once the server executable is in place.

    Returns:
        Path of the server executable

    Raises:
        NotFoundError: No release build for this platform
        DownloadError: Fetching or extracting failed
    """
    assets = release_assets(build, accelerator)
    target = install_dir / f"b{build}"
    staging = install_dir / f"b{build}.part"
    logger.info(f"Downloading llama-server b{build} into {target}")

    try:
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)

        for component, asset in assets:
            archive = staging / asset
            await _download(client, f"{RELEASE_DOWNLOAD_URL}/b{build}/{asset}", archive, component, on_progress)
            shutil.unpack_archive(archive, staging)
            archive.unlink()

        executable = find_server_executable(staging)
        if executable is None:
            raise DownloadError(f"llama-server b{build} archive contains no server executable")
        # zip archives drop the executable bit
        executable.chmod(executable.stat().st_mode | 0o111)

        if target.exists():
            shutil.rmtree(target)
        os.replace(staging, target)
    except httpx.TransportError as e:
        raise DownloadError(f"Download of llama-server b{build} failed: {describe_transport_error(e)}") from e
    except OSError as e:
        raise DownloadError(f"Cannot install llama-server b{build} into {target}: {e}") from e
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)

    logger.info(f"Installed llama-server b{build}")
    return target / executable.relative_to(staging)


async def ensure_server(descriptor: BackendDescriptor, on_progress: Optional[BuildProgress] = None) -> str:
    """
    Path of the server executable to run for ``descriptor``.

    Order: the configured name/path if it resolves, else the newest
    installed build, else a freshly downloaded one. Explicit paths and
    descriptors without install_dir never download.

    Raises:
        NotFoundError: Nothing to run and nothing may be downloaded
        DownloadError: The download failed
    """
    name = descriptor.executable_or_image
    try:
        return native.resolve_executable(name)
    except NotFoundError:
        if descriptor.install_dir is None or native.is_path(name):
            raise

    installed = installed_builds(descriptor.install_dir)
    if installed:
        build, executable = installed[-1]
        logger.info(f"{name} not on PATH, using installed build b{build}")
        return str(executable)

    async with httpx.AsyncClient(
        timeout=httpx.Timeout(30.0, read=None),
        follow_redirects=True,
    ) as client:
        build = await latest_build(client)
        executable = await download_build(
            client, build, descriptor.accelerator, descriptor.install_dir, on_progress
        )
    return str(executable)
