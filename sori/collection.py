"""A versioned collection of published volumes, persisted as JSON."""

from __future__ import annotations

import copy
import json
import os
import threading
from dataclasses import dataclass, field
from typing import Any

from .models import COLLECTION_JSON, VolumeEntry, VolumeIndex
from .volume import generate_volume_index, publish_volume, validate_volume_dir


@dataclass
class VolumeCollection:
    """Volume entries plus a version that grows by one with every change."""

    version: int = 0
    volumes: list[VolumeEntry] = field(default_factory=list)

    def has_volume(self, index: VolumeIndex) -> bool:
        """Whether an entry shares the display name or the volume ref of index."""
        return any(
            entry.index.display_name == index.display_name
            or entry.index.volume_ref == index.volume_ref
            for entry in self.volumes
        )

    def merge(self, other: VolumeCollection) -> bool:
        """Append the entries of other not already present; bump the version if any were."""
        added = False
        for entry in other.volumes:
            if not self.has_volume(entry.index):
                self.volumes.append(entry)
                added = True
        if added:
            self.version += 1
        return added

    def add_volume(self, entry: VolumeEntry) -> None:
        """Append entry and bump the version."""
        self.volumes.append(entry)
        self.version += 1

    def remove_volume(self, idx: int) -> None:
        """Delete the entry at position idx and bump the version."""
        if idx < 0 or idx >= len(self.volumes):
            raise IndexError(f"index {idx} out of range")
        del self.volumes[idx]
        self.version += 1

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "volumes": [v.to_dict() for v in self.volumes]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VolumeCollection:
        if not isinstance(data, dict):
            raise ValueError("collection must be a JSON object")
        return cls(
            version=int(data.get("version") or 0),
            volumes=[VolumeEntry.from_dict(v) for v in data.get("volumes") or []],
        )


def new_volume_collection(*args: VolumeEntry) -> VolumeCollection:
    """Create a collection at version 1 holding the given entries."""
    return VolumeCollection(version=1, volumes=list(args))


def _save_collection(root_dir: str, coll: VolumeCollection) -> None:
    path = os.path.join(root_dir, COLLECTION_JSON)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(json.dumps(coll.to_dict(), indent=2, ensure_ascii=False))


def load_or_new_collection(root_dir: str | os.PathLike[str], *args: VolumeEntry) -> VolumeCollection:
    """Read volume-collection.json under root_dir, or create and save a new one from args."""
    root = os.fspath(root_dir)
    path = os.path.join(root, COLLECTION_JSON)
    try:
        with open(path, "rb") as handle:
            data = handle.read()
    except FileNotFoundError:
        coll = new_volume_collection(*args)
        _save_collection(root, coll)
        return coll
    try:
        return VolumeCollection.from_dict(json.loads(data))
    except ValueError as exc:
        raise ValueError(f"unmarshal collection JSON: {exc}") from exc


class CollectionManager:
    """Thread-safe access to a collection stored under a root directory."""

    def __init__(
        self,
        root_dir: str | os.PathLike[str],
        *initial: VolumeEntry,
        store_root: str | os.PathLike[str] | None = None,
    ) -> None:
        self.root = os.fspath(root_dir)
        self.store_root = store_root
        self._lock = threading.RLock()
        self._coll = load_or_new_collection(self.root, *initial)
        self._by_ref: dict[str, int] = {
            entry.index.volume_ref: i
            for i, entry in enumerate(self._coll.volumes)
            if entry.index.volume_ref
        }

    def add_or_update(self, entry: VolumeEntry) -> None:
        """Insert entry or replace the one with the same volume ref, saving on change."""
        with self._lock:
            ref = entry.index.volume_ref
            idx = self._by_ref.get(ref)
            if idx is not None:
                if self._coll.volumes[idx] == entry:
                    return
                self._coll.volumes[idx] = entry
            else:
                self._coll.volumes.append(entry)
                self._by_ref[ref] = len(self._coll.volumes) - 1
            self._coll.version += 1
            _save_collection(self.root, self._coll)

    def remove(self, ref: str) -> bool:
        """Remove the entry with volume ref ref; the last entry takes its place."""
        with self._lock:
            idx = self._by_ref.get(ref)
            if idx is None:
                return False
            volumes = self._coll.volumes
            last = len(volumes) - 1
            if idx != last:
                volumes[idx] = volumes[last]
                self._by_ref[volumes[idx].index.volume_ref] = idx
            volumes.pop()
            del self._by_ref[ref]
            self._coll.version += 1
            _save_collection(self.root, self._coll)
            return True

    def get_snapshot(self) -> VolumeCollection:
        """Return an independent copy of the collection."""
        with self._lock:
            return copy.deepcopy(self._coll)

    def get(self, ref: str) -> VolumeEntry | None:
        """Return a copy of the entry with volume ref ref, or None."""
        with self._lock:
            idx = self._by_ref.get(ref)
            if idx is None:
                return None
            return copy.deepcopy(self._coll.volumes[idx])

    def flush(self) -> None:
        """Write the collection to disk."""
        with self._lock:
            _save_collection(self.root, self._coll)

    def publish_volume_from_dir(self, vol_dir: str | os.PathLike[str], display_name: str, tag: str) -> VolumeEntry:
        """Validate, index and publish vol_dir as tag, then record it in the collection."""
        raw_config = validate_volume_dir(vol_dir)
        try:
            config_blob = json.loads(raw_config)
        except ValueError as exc:
            raise ValueError(f"failed to parse configblob.json: {exc}") from exc
        if config_blob is None:
            config_blob = {}
        if not isinstance(config_blob, dict):
            raise ValueError("failed to parse configblob.json: not a JSON object")

        index = generate_volume_index(vol_dir, display_name)
        published = publish_volume(index, vol_dir, tag, raw_config, self.store_root)
        entry = VolumeEntry(index=published, config_blob=config_blob)
        self.add_or_update(entry)
        return entry