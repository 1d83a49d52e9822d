"""Scanning, validating and publishing volume directories."""

from __future__ import annotations

import json
import logging
import os
import stat
from collections.abc import Iterator
from datetime import datetime, timezone

from .archive import tar_gz_dir
from .config import oci_store_path
from .models import CONFIG_BLOB_JSON, Partition, VolumeIndex
from .ocistore import (
    ANNOTATION_CREATED,
    MEDIA_TYPE_IMAGE_CONFIG,
    MEDIA_TYPE_IMAGE_LAYER_GZIP,
    Descriptor,
    NotFoundError,
    OCILayoutStore,
    digest_from_bytes,
)

log = logging.getLogger("sori")

NO_DEEP_SCAN_MARKER = "no_deep_scan"


def _now_rfc3339() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def _has_marker(directory: str) -> bool:
    with os.scandir(directory) as entries:
        return any(
            entry.name == NO_DEEP_SCAN_MARKER and not entry.is_dir(follow_symlinks=False)
            for entry in entries
        )


def _scan(directory: str, root: str, root_base: str, created_at: str) -> Iterator[Partition]:
    with os.scandir(directory) as listing:
        entries = sorted(listing, key=lambda entry: entry.name)
    for entry in entries:
        if not entry.is_dir(follow_symlinks=False):
            continue
        marker = _has_marker(entry.path)
        rel = os.path.relpath(entry.path, root).replace(os.sep, "/")
        yield Partition(name=entry.name, path=f"{root_base}/{rel}", created_at=created_at)
        if not marker:
            yield from _scan(entry.path, root, root_base, created_at)


def generate_volume_index(root_path: str | os.PathLike[str], display_name: str) -> VolumeIndex:
    """Build an initial index with one partition per subdirectory of root_path.

    Subdirectories are visited in name order; a directory holding a
    no_deep_scan file is listed but its subtree is not.
    """
    root = os.fspath(root_path)
    now = _now_rfc3339()
    root_base = os.path.basename(os.path.normpath(root))
    parts: list[Partition] = []
    if stat.S_ISDIR(os.lstat(root).st_mode):
        parts = list(_scan(root, root, root_base, now))
    return VolumeIndex(volume_ref="", display_name=display_name, created_at=now, partitions=parts)


def _load_metadata_json(path: str) -> bytes:
    with open(path, "rb") as handle:
        data = handle.read()
    try:
        json.loads(data)
    except ValueError as exc:
        raise ValueError(f"invalid JSON in {path}: {exc}") from exc
    return data


def validate_volume_dir(vol_dir: str | os.PathLike[str]) -> bytes:
    """Check that vol_dir is a non-empty directory and return its configblob.json.

    Hidden entries do not count; a missing configblob.json is created as "{}".
    """
    directory = os.fspath(vol_dir)
    info = os.stat(directory)
    if not stat.S_ISDIR(info.st_mode):
        raise NotADirectoryError(f"volume path {directory!r} is not a directory")

    visible = 0
    for name in sorted(os.listdir(directory)):
        if name.startswith("."):
            log.warning("hidden entry %r found in %s, skipping", name, directory)
            continue
        visible += 1
    if not visible:
        raise ValueError(f"volume directory {directory!r} is empty (only hidden files present)")

    cfg_path = os.path.join(directory, CONFIG_BLOB_JSON)
    try:
        return _load_metadata_json(cfg_path)
    except FileNotFoundError:
        log.info("%r not found; creating a new empty configblob.json", cfg_path)
        raw = b"{}"
        with open(cfg_path, "wb") as handle:
            handle.write(raw)
        return raw


def _layer_descriptor(data: bytes) -> Descriptor:
    return Descriptor(MEDIA_TYPE_IMAGE_LAYER_GZIP, digest_from_bytes(data), len(data))


def publish_volume(
    index: VolumeIndex,
    vol_path: str | os.PathLike[str],
    vol_name: str,
    config_blob: bytes,
    store_root: str | os.PathLike[str] | None = None,
) -> VolumeIndex:
    """Push the volume's config and partition layers, then tag a manifest as vol_name.

    The index is updated in place with layer digests and the manifest digest,
    and returned. When no blob was new and vol_name already resolves, the
    existing manifest is kept.
    """
    store = OCILayoutStore(store_root if store_root is not None else oci_store_path())

    def push_if_needed(desc: Descriptor, data: bytes) -> bool:
        if store.exists(desc):
            log.info("blob %s already exists, skipping", desc.digest)
            return False
        store.push(desc, data)
        return True

    config_desc = Descriptor(
        MEDIA_TYPE_IMAGE_CONFIG, digest_from_bytes(config_blob), len(config_blob)
    )
    any_pushed = push_if_needed(config_desc, config_blob)

    volume_dir = os.fspath(vol_path)
    root_base = os.path.basename(os.path.normpath(volume_dir))
    layers: list[Descriptor] = []

    if not index.partitions:
        data = tar_gz_dir(volume_dir, root_base)
        desc = _layer_descriptor(data)
        any_pushed = push_if_needed(desc, data) or any_pushed
        layers.append(desc)
    else:
        prefix = root_base + "/"
        for part in index.partitions:
            fs_path = os.path.join(volume_dir, part.path.removeprefix(prefix))
            data = tar_gz_dir(fs_path, part.path)
            desc = _layer_descriptor(data)
            any_pushed = push_if_needed(desc, data) or any_pushed
            part.manifest_ref = desc.digest
            layers.append(desc)

    if not any_pushed:
        try:
            existing = store.resolve(vol_name)
        except NotFoundError:
            pass
        else:
            log.info("no changes detected, skipping manifest update for %r", vol_name)
            index.volume_ref = existing.digest
            return index

    manifest_desc = store.pack_manifest(config_desc, layers, {ANNOTATION_CREATED: _now_rfc3339()})
    store.tag(manifest_desc, vol_name)
    index.volume_ref = manifest_desc.digest
    log.info("volume artifact %s tagged as %s", vol_name, manifest_desc.digest)
    return index