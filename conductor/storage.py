"""Persistence boundary for spaces, plans and artifacts.

The orchestration core calls these after state changes but treats every
failure as non-fatal. Durability belongs to the adapter, not the core.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from conductor.config import BASE_DIR
from conductor.errors import StorageError
from conductor.models import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9._-]+$")


@dataclass
class ArtifactInfo:
    id: str
    name: str = ""
    mime_type: str = "text/plain"
    size_bytes: int = 0
    category: str = "output"  # input | output | intermediate
    task_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name or self.id,
            "mime_type": self.mime_type,
            "size_bytes": self.size_bytes,
            "category": self.category,
            "task_id": self.task_id,
            "metadata": self.metadata,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> ArtifactInfo:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mime_type", "text/plain"),
            size_bytes=data.get("size_bytes", 0),
            category=data.get("category", "output"),
            task_id=data.get("task_id"),
            metadata=data.get("metadata", {}),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
        )


class SpaceStorage(ABC):
    """Where spaces, their current plan and their artifacts are kept."""

    @abstractmethod
    async def save_space(self, space_id: str, data: dict) -> None: ...

    @abstractmethod
    async def get_space(self, space_id: str) -> dict | None: ...

    @abstractmethod
    async def save_plan(self, space_id: str, data: dict) -> None: ...

    @abstractmethod
    async def get_plan(self, space_id: str) -> dict | None: ...

    @abstractmethod
    async def save_artifact(self, space_id: str, info: ArtifactInfo, content: bytes) -> None: ...

    @abstractmethod
    async def get_artifact(self, space_id: str, artifact_id: str) -> tuple[ArtifactInfo, bytes] | None: ...

    @abstractmethod
    async def list_artifacts(self, space_id: str) -> list[ArtifactInfo]: ...

    @abstractmethod
    async def list_spaces(self) -> list[str]: ...

    @abstractmethod
    async def delete_space(self, space_id: str) -> bool: ...


class MemorySpaceStorage(SpaceStorage):
    """Process-local storage. Used by tests and when nothing needs to survive a restart."""

    def __init__(self):
        self._spaces: dict[str, dict] = {}
        self._plans: dict[str, dict] = {}
        self._artifacts: dict[str, dict[str, tuple[ArtifactInfo, bytes]]] = {}

    async def save_space(self, space_id: str, data: dict) -> None:
        self._spaces[space_id] = json.loads(json.dumps(data, default=str))

    async def get_space(self, space_id: str) -> dict | None:
        return self._spaces.get(space_id)

    async def save_plan(self, space_id: str, data: dict) -> None:
        self._plans[space_id] = json.loads(json.dumps(data, default=str))

    async def get_plan(self, space_id: str) -> dict | None:
        return self._plans.get(space_id)

    async def save_artifact(self, space_id: str, info: ArtifactInfo, content: bytes) -> None:
        self._artifacts.setdefault(space_id, {})[info.id] = (info, bytes(content))

    async def get_artifact(self, space_id: str, artifact_id: str) -> tuple[ArtifactInfo, bytes] | None:
        return self._artifacts.get(space_id, {}).get(artifact_id)

    async def list_artifacts(self, space_id: str) -> list[ArtifactInfo]:
        return [info for info, _ in self._artifacts.get(space_id, {}).values()]

    async def list_spaces(self) -> list[str]:
        return list(self._spaces)

    async def delete_space(self, space_id: str) -> bool:
        self._plans.pop(space_id, None)
        self._artifacts.pop(space_id, None)
        return self._spaces.pop(space_id, None) is not None


class LocalSpaceStorage(SpaceStorage):
    """One directory per space under `base_dir`:

        {space_id}/space.json
        {space_id}/plan.json
        {space_id}/artifacts/{artifact_id}        (raw bytes)
        {space_id}/artifacts/{artifact_id}.json   (ArtifactInfo)
    """

    def __init__(self, base_dir: Path | str = BASE_DIR):
        self.base_dir = Path(base_dir)

    def _space_dir(self, space_id: str) -> Path:
        if not _SAFE_NAME.match(space_id):
            raise StorageError(f"Invalid space id: {space_id!r}")
        return self.base_dir / space_id

    def _artifact_dir(self, space_id: str) -> Path:
        return self._space_dir(space_id) / "artifacts"

    def _write_json(self, path: Path, data: Any):
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(data, indent=2, default=str))
        except OSError as e:
            raise StorageError(f"Could not write {path}: {e}") from e

    def _read_json(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Could not read {path}: {e}") from e

    async def save_space(self, space_id: str, data: dict) -> None:
        self._write_json(self._space_dir(space_id) / "space.json", data)

    async def get_space(self, space_id: str) -> dict | None:
        return self._read_json(self._space_dir(space_id) / "space.json")

    async def save_plan(self, space_id: str, data: dict) -> None:
        self._write_json(self._space_dir(space_id) / "plan.json", data)

    async def get_plan(self, space_id: str) -> dict | None:
        return self._read_json(self._space_dir(space_id) / "plan.json")

    async def save_artifact(self, space_id: str, info: ArtifactInfo, content: bytes) -> None:
        if not _SAFE_NAME.match(info.id):
            raise StorageError(f"Invalid artifact id: {info.id!r}")
        directory = self._artifact_dir(space_id)
        try:
            directory.mkdir(parents=True, exist_ok=True)
            (directory / info.id).write_bytes(content)
        except OSError as e:
            raise StorageError(f"Could not write artifact {info.id}: {e}") from e
        self._write_json(directory / f"{info.id}.json", info.to_dict())
        logger.debug(f"Saved artifact {info.id} ({len(content)} bytes) for space {space_id}")

    async def get_artifact(self, space_id: str, artifact_id: str) -> tuple[ArtifactInfo, bytes] | None:
        if not _SAFE_NAME.match(artifact_id):
            return None
        directory = self._artifact_dir(space_id)
        meta = self._read_json(directory / f"{artifact_id}.json")
        blob = directory / artifact_id
        if meta is None or not blob.exists():
            return None
        return ArtifactInfo.from_dict(meta), blob.read_bytes()

    async def list_artifacts(self, space_id: str) -> list[ArtifactInfo]:
        directory = self._artifact_dir(space_id)
        if not directory.exists():
            return []
        return [ArtifactInfo.from_dict(self._read_json(p)) for p in sorted(directory.glob("*.json"))]

    async def list_spaces(self) -> list[str]:
        if not self.base_dir.exists():
            return []
        return sorted(p.name for p in self.base_dir.iterdir() if (p / "space.json").exists())

    async def delete_space(self, space_id: str) -> bool:
        directory = self._space_dir(space_id)
        if not directory.exists():
            return False
        for path in sorted(directory.rglob("*"), key=lambda p: len(p.parts), reverse=True):
            if path.is_dir():
                path.rmdir()
            else:
                path.unlink()
        directory.rmdir()
        return True
