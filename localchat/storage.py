"""
Model storage: make a ModelReference's file present on disk.

The engine only depends on the ModelStore protocol. HuggingFaceModelStore
downloads from the Hub with a streaming httpx request so every chunk can
be reported as a byte-count update, and so that cancelling the download
closes the connection and removes the partial file.
"""

import hashlib
import logging
import os
import time
from pathlib import Path
from typing import AsyncGenerator, Optional, Protocol

import httpx

from localchat.errors import ChecksumMismatchError, DownloadError, describe_transport_error, parse_http_error
from localchat.models import ModelReference, TransferProgress

logger = logging.getLogger(__name__)


class ModelStore(Protocol):
    """Contract for model storage collaborators."""

    def resolve(self, model: ModelReference) -> Path:
        """Return the local file path for ``model``."""
        ...

    def ensure_present(self, model: ModelReference) -> AsyncGenerator[TransferProgress, None]:
        """
        Make the model file present, yielding progress while downloading.

        Yields nothing if the file is already present.

        Raises:
            DownloadError: The file could not be fetched or verified
        """
        ...


def is_present(model: ModelReference) -> bool:
    path = model.local_path
    if not path.is_file():
        return False
    if model.size_bytes is not None and path.stat().st_size != model.size_bytes:
        return False
    return True


class HuggingFaceModelStore:
    """
    Downloads GGUF files from the Hugging Face Hub.

    Usage:
        store = HuggingFaceModelStore(token=get_hf_token())
        async for progress in store.ensure_present(model):
            ...
    """

    def __init__(self, token: Optional[str] = None, timeout: float = 30.0):
        self._token = token
        self._timeout = timeout

    def resolve(self, model: ModelReference) -> Path:
        """Absolute path of the model file."""
        return model.local_path.resolve()

    async def ensure_present(self, model: ModelReference) -> AsyncGenerator[TransferProgress, None]:
        if is_present(model):
            return
        if model.remote_origin is None:
            raise DownloadError(f"Model file {model.local_path} is missing and has no remote origin")

        url = model.remote_origin.url
        destination = model.local_path
        partial = destination.with_name(destination.name + ".part")

        headers = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        logger.info(f"Downloading {url} to {destination}")
        digest = hashlib.sha256()
        downloaded = 0
        started = time.monotonic()
        completed = False

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, read=None),
                follow_redirects=True,
            ) as client:
                async with client.stream("GET", url, headers=headers) as response:
                    if response.status_code >= 400:
                        body = await response.aread()
                        raise DownloadError(
                            f"Download of {model.name} failed: "
                            f"{parse_http_error(response.status_code, body)}"
                        )

                    length = response.headers.get("content-length")
                    total = int(length) if length else model.size_bytes

                    yield TransferProgress(downloaded=0, total=total, speed=0)

                    with open(partial, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
                            digest.update(chunk)
                            downloaded += len(chunk)
                            elapsed = max(time.monotonic() - started, 1e-6)
                            yield TransferProgress(
                                downloaded=downloaded,
                                total=total,
                                speed=int(downloaded / elapsed),
                            )

            if model.size_bytes is not None and downloaded != model.size_bytes:
                raise DownloadError(
                    f"Download of {model.name} incomplete: {downloaded} of {model.size_bytes} bytes"
                )
            if model.checksum is not None:
                actual = digest.hexdigest()
                if actual.lower() != model.checksum.lower():
                    raise ChecksumMismatchError(model.checksum, actual)

            os.replace(partial, destination)
            completed = True
            logger.info(f"Downloaded {model.name} ({downloaded} bytes)")
        except httpx.TransportError as e:
            raise DownloadError(f"Download of {model.name} failed: {describe_transport_error(e)}") from e
        except OSError as e:
            raise DownloadError(f"Cannot write {model.name} to {destination}: {e}") from e
        finally:
            if not completed and partial.exists():
                partial.unlink()
