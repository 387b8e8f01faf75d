"""
Model references: what artifact to run, independent of how it is run.
"""

from pathlib import Path
from typing import Optional

from huggingface_hub import hf_hub_url
from pydantic import BaseModel, ConfigDict


class ModelId(BaseModel):
    """Hugging Face repository id, e.g. "bartowski/Qwen2.5-7B-Instruct-GGUF"."""
    model_config = ConfigDict(frozen=True)

    value: str

    @property
    def author(self) -> str:
        author, sep, _ = self.value.partition("/")
        return author if sep else self.value

    @property
    def name(self) -> str:
        _, sep, name = self.value.partition("/")
        return name if sep else self.value

    def __str__(self) -> str:
        return self.value


class RemoteOrigin(BaseModel):
    """Where a model file can be fetched from."""
    model_config = ConfigDict(frozen=True)

    repo_id: ModelId
    filename: str
    revision: str = "main"

    @property
    def url(self) -> str:
        return hf_hub_url(
            repo_id=self.repo_id.value,
            filename=self.filename,
            revision=self.revision,
        )


class ModelReference(BaseModel):
    """
    Immutable identity of a model artifact.

    Shared read-only by every session that runs it. ``size_bytes`` and
    ``checksum`` (sha256 hex) are checked after download when known.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    local_path: Path
    remote_origin: Optional[RemoteOrigin] = None
    size_bytes: Optional[int] = None
    checksum: Optional[str] = None

    @property
    def file_name(self) -> str:
        return self.local_path.name

    @classmethod
    def from_hub(
        cls,
        repo_id: str,
        filename: str,
        directory: Path,
        revision: str = "main",
        size_bytes: Optional[int] = None,
        checksum: Optional[str] = None,
    ) -> "ModelReference":
        """Reference a Hub file stored under ``directory/<author>/<name>/<filename>``."""
        model_id = ModelId(value=repo_id)
        return cls(
            name=model_id.name,
            local_path=Path(directory) / model_id.author / model_id.name / filename,
            remote_origin=RemoteOrigin(repo_id=model_id, filename=filename, revision=revision),
            size_bytes=size_bytes,
            checksum=checksum,
        )


class TransferProgress(BaseModel):
    """One byte-count update of a download or image pull."""
    model_config = ConfigDict(frozen=True)

    downloaded: int
    total: Optional[int] = None
    speed: int = 0  # bytes/second

    def percent(self) -> Optional[tuple[int, int]]:
        """Return (total, percent) or None while the total is unknown."""
        if not self.total:
            return None
        return self.total, round(self.downloaded / self.total * 100)
