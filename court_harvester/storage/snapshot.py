"""
JSON snapshot store.
One file per snapshot: a meta block plus the entity list sorted by key.
"""

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from court_harvester.errors import SnapshotCorrupted
from court_harvester.logging_config import get_logger
from court_harvester.models import Entity

logger = get_logger("storage.snapshot")

SNAPSHOT_VERSION = "1.0"

# Field names accepted for the entity collection; "courts" is the legacy one
COLLECTION_FIELDS = ("entities", "courts")


@dataclass
class Snapshot:
    """A loaded snapshot."""
    meta: Dict[str, Any] = field(default_factory=dict)
    entities: List[Entity] = field(default_factory=list)

    @property
    def progress(self) -> Dict[str, Any]:
        return self.meta.get("progress") or {}

    def __len__(self) -> int:
        return len(self.entities)


class SnapshotStore:
    """
    Reads and writes snapshots under one directory.
    Writes go to a temp file in the same directory and are renamed over
    the target, so a crash never leaves a half-written snapshot.
    """

    def __init__(self, directory: Union[str, Path], key_field: str = "code"):
        self.directory = Path(directory)
        self.key_field = key_field

    def path_for(self, name: str) -> Path:
        return self.directory / name

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def save(
        self,
        name: str,
        store: Any,
        progress: Optional[Dict[str, Any]] = None,
        phase: Optional[str] = None
    ) -> Path:
        """
        Write the entity store.

        Args:
            name: File name inside the store directory
            store: EntityStore (or any object with values/by_region/by_type)
            progress: Crawl progress block for resume
            phase: Phase the crawl was in

        Returns:
            Path of the written file
        """
        entities = store.values()
        data = {
            "meta": {
                "version": SNAPSHOT_VERSION,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "total": len(entities),
                "phase": phase,
                "by_region": store.by_region(),
                "by_type": store.by_type(),
                "progress": progress or {},
            },
            "entities": [
                e.to_dict(self.key_field)
                for e in sorted(entities, key=lambda e: e.key)
            ],
        }

        path = self.path_for(name)
        self._atomic_write(path, data)
        logger.debug(f"Snapshot written: {len(entities)} entities -> {path}")
        return path

    def _atomic_write(self, path: Path, data: Dict[str, Any]):
        path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(data, ensure_ascii=False, indent=2)

        fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_name, path)
        except BaseException:
            if os.path.exists(temp_name):
                os.unlink(temp_name)
            raise

    def load(self, name: str) -> Snapshot:
        """
        Read a snapshot back.

        Raises:
            FileNotFoundError: no such snapshot
            SnapshotCorrupted: the file exists but is not a valid snapshot
        """
        path = self.path_for(name)
        if not path.is_file():
            raise FileNotFoundError(f"Snapshot not found: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except UnicodeDecodeError as e:
            raise SnapshotCorrupted(path, f"not UTF-8: {e}") from e
        except json.JSONDecodeError as e:
            raise SnapshotCorrupted(path, f"invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise SnapshotCorrupted(path, "root is not an object")

        meta = data.get("meta") or {}
        if not isinstance(meta, dict):
            raise SnapshotCorrupted(path, "meta is not an object")

        items = None
        for collection in COLLECTION_FIELDS:
            if collection in data:
                items = data[collection]
                break
        if not isinstance(items, list):
            raise SnapshotCorrupted(path, "no entity list")

        entities = []
        for index, item in enumerate(items):
            entity = Entity.from_payload(item, self.key_field) if isinstance(item, dict) else None
            if entity is None:
                raise SnapshotCorrupted(path, f"entity #{index} has no {self.key_field!r}")
            entities.append(entity)

        logger.info(f"Loaded snapshot {path}: {len(entities)} entities")
        return Snapshot(meta=meta, entities=entities)
