"""Extracting published volume artifacts from a local OCI layout."""

from __future__ import annotations

import json
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed

from .archive import untar_gz_dir
from .models import Partition, VolumeIndex
from .ocistore import ANNOTATION_PARTITION_PATH, Descriptor, NotFoundError, OCILayoutStore


def _open_manifest(repo: str, tag: str) -> tuple[OCILayoutStore, Descriptor, list[Descriptor]]:
    store = OCILayoutStore(repo)
    try:
        manifest_desc = store.resolve(tag)
    except NotFoundError as exc:
        raise NotFoundError(f"failed to resolve reference {f'{repo}:{tag}'!r}: {exc}") from exc
    with store.fetch(manifest_desc) as handle:
        try:
            manifest = json.load(handle)
        except ValueError as exc:
            raise ValueError(f"failed to decode manifest: {exc}") from exc
    layers = [Descriptor.from_dict(item) for item in manifest.get("layers") or []]
    return store, manifest_desc, layers


def _partition_path(layer: Descriptor, seen: set[str]) -> str:
    part_path = layer.annotations.get(ANNOTATION_PARTITION_PATH, "")
    if not part_path:
        raise ValueError(f"missing partitionPath annotation for layer {layer.digest}")
    if part_path in seen:
        raise ValueError(f"duplicate partition path {part_path!r}")
    seen.add(part_path)
    return part_path


def _extract_layer(
    store: OCILayoutStore, layer: Descriptor, part_path: str, dest_root: str
) -> Partition:
    target = os.path.join(dest_root, part_path)
    with store.fetch(layer) as stream:
        os.makedirs(target, 0o755, exist_ok=True)
        untar_gz_dir(stream, target)
    return Partition(name=part_path, path=part_path, manifest_ref=layer.digest)


def fetch_vol_seq(dest_root: str | os.PathLike[str], repo: str, tag: str) -> VolumeIndex:
    """Extract each layer of repo:tag under dest_root, one after another.

    Every layer is unpacked into dest_root/<partition path>; the rebuilt index
    is written to dest_root/volume-index.json and returned.
    """
    root = os.fspath(dest_root)
    store, manifest_desc, layers = _open_manifest(repo, tag)
    seen: set[str] = set()
    partitions = [
        _extract_layer(store, layer, _partition_path(layer, seen), root) for layer in layers
    ]
    index = VolumeIndex(volume_ref=manifest_desc.digest, partitions=partitions)
    index.save_to_file(root)
    return index


def fetch_vol_parallel(
    dest_root: str | os.PathLike[str], repo: str, tag: str, concurrency: int = 0
) -> VolumeIndex:
    """Like fetch_vol_seq, extracting layers on up to concurrency threads.

    All annotations are checked before any layer is extracted. A concurrency
    outside 1..layer count means the smaller of the CPU count and the layer count.
    """
    root = os.fspath(dest_root)
    store, manifest_desc, layers = _open_manifest(repo, tag)
    seen: set[str] = set()
    metas = [(layer, _partition_path(layer, seen)) for layer in layers]

    count = len(metas)
    if concurrency <= 0 or concurrency > count:
        concurrency = min(max(os.cpu_count() or 1, 1), count)

    cancelled = threading.Event()

    def job(layer: Descriptor, part_path: str) -> Partition | None:
        if cancelled.is_set():
            return None
        try:
            return _extract_layer(store, layer, part_path, root)
        except BaseException:
            cancelled.set()
            raise

    first_error: BaseException | None = None
    with ThreadPoolExecutor(max_workers=max(concurrency, 1)) as pool:
        futures = [pool.submit(job, layer, path) for layer, path in metas]
        for future in as_completed(futures):
            error = future.exception()
            if error is not None and first_error is None:
                first_error = error
    if first_error is not None:
        raise first_error

    partitions = [future.result() for future in futures]
    index = VolumeIndex(volume_ref=manifest_desc.digest, partitions=partitions)
    index.save_to_file(root)
    return index