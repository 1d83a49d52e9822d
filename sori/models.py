"""Volume index data: partitions, volume indexes and collection entries."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

CONFIG_BLOB_JSON = "configblob.json"
COLLECTION_JSON = "volume-collection.json"
VOLUME_INDEX_JSON = "volume-index.json"


@dataclass
class Partition:
    name: str = ""
    path: str = ""
    manifest_ref: str = ""
    created_at: str = ""
    compression: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "manifest_ref": self.manifest_ref,
            "created_at": self.created_at,
            "compression": self.compression,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Partition:
        return cls(
            name=data.get("name") or "",
            path=data.get("path") or "",
            manifest_ref=data.get("manifest_ref") or "",
            created_at=data.get("created_at") or "",
            compression=data.get("compression") or "",
        )


@dataclass
class VolumeIndex:
    volume_ref: str = ""
    display_name: str = ""
    created_at: str = ""
    partitions: list[Partition] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "volume_ref": self.volume_ref,
            "display_name": self.display_name,
            "created_at": self.created_at,
            "partitions": [part.to_dict() for part in self.partitions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VolumeIndex:
        return cls(
            volume_ref=data.get("volume_ref") or "",
            display_name=data.get("display_name") or "",
            created_at=data.get("created_at") or "",
            partitions=[Partition.from_dict(p) for p in data.get("partitions") or []],
        )

    def save_to_file(self, root_path: str | os.PathLike[str]) -> str:
        """Write the index as indented JSON to volume-index.json under root_path."""
        out_file = os.path.join(root_path, VOLUME_INDEX_JSON)
        with open(out_file, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(self.to_dict(), indent=2, ensure_ascii=False))
        return out_file


@dataclass
class VolumeEntry:
    index: VolumeIndex = field(default_factory=VolumeIndex)
    config_blob: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index.to_dict(), "configBlob": dict(self.config_blob)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VolumeEntry:
        return cls(
            index=VolumeIndex.from_dict(data.get("index") or {}),
            config_blob=dict(data.get("configBlob") or {}),
        )