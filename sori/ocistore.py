"""A content-addressed store in the OCI image layout on the local filesystem."""

from __future__ import annotations

import hashlib
import json
import os
import re
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, BinaryIO, Iterable

MEDIA_TYPE_IMAGE_CONFIG = "application/vnd.oci.image.config.v1+json"
MEDIA_TYPE_IMAGE_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
MEDIA_TYPE_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
MEDIA_TYPE_EMPTY_JSON = "application/vnd.oci.empty.v1+json"

ANNOTATION_CREATED = "org.opencontainers.image.created"
ANNOTATION_REF_NAME = "org.opencontainers.image.ref.name"
ANNOTATION_PARTITION_PATH = "org.example.partitionPath"

OCI_LAYOUT_FILE = "oci-layout"
INDEX_FILE = "index.json"
LAYOUT_VERSION = "1.0.0"

_DIGEST_RE = re.compile(r"^([a-z0-9]+(?:[.+_-][a-z0-9]+)*):([a-zA-Z0-9=_-]+)$")
_ALGORITHMS = {"sha256": 64, "sha384": 96, "sha512": 128}


class NotFoundError(LookupError):
    """Raised when a blob or reference is not in the store."""


def digest_from_bytes(data: bytes) -> str:
    """Return the sha256 digest string of data."""
    return "sha256:" + hashlib.sha256(data).hexdigest()


def _split_digest(digest: str) -> tuple[str, str]:
    match = _DIGEST_RE.match(digest)
    if not match:
        raise ValueError(f"invalid digest: {digest!r}")
    algorithm, encoded = match.groups()
    length = _ALGORITHMS.get(algorithm)
    if length is None:
        raise ValueError(f"unsupported digest algorithm: {algorithm}")
    if len(encoded) != length or not re.fullmatch(r"[0-9a-f]+", encoded):
        raise ValueError(f"invalid digest: {digest!r}")
    return algorithm, encoded


def _now_rfc3339() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Descriptor:
    media_type: str
    digest: str
    size: int
    annotations: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "mediaType": self.media_type,
            "digest": self.digest,
            "size": self.size,
        }
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Descriptor:
        return cls(
            media_type=data.get("mediaType") or "",
            digest=data.get("digest") or "",
            size=int(data.get("size") or 0),
            annotations=dict(data.get("annotations") or {}),
        )


def _atomic_write(path: str, data: bytes) -> None:
    directory = os.path.dirname(path)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class OCILayoutStore:
    """Blobs under blobs/<alg>/<hex>, tagged manifests listed in index.json."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = os.fspath(root)
        self._lock = threading.RLock()
        os.makedirs(self.root, exist_ok=True)
        self._ensure_layout()
        self._tags: dict[str, Descriptor] = {}
        self._untagged: list[Descriptor] = []
        self._load_index()

    def _ensure_layout(self) -> None:
        path = os.path.join(self.root, OCI_LAYOUT_FILE)
        if os.path.exists(path):
            with open(path, encoding="utf-8") as handle:
                layout = json.load(handle)
            version = layout.get("imageLayoutVersion") if isinstance(layout, dict) else None
            if version != LAYOUT_VERSION:
                raise ValueError(f"unsupported OCI layout version: {version!r}")
            return
        payload = json.dumps({"imageLayoutVersion": LAYOUT_VERSION}).encode()
        _atomic_write(path, payload)

    def _load_index(self) -> None:
        path = os.path.join(self.root, INDEX_FILE)
        if not os.path.exists(path):
            self._save_index()
            return
        with open(path, encoding="utf-8") as handle:
            index = json.load(handle)
        for entry in index.get("manifests") or []:
            desc = Descriptor.from_dict(entry)
            ref = desc.annotations.pop(ANNOTATION_REF_NAME, "")
            if ref:
                self._tags[ref] = desc
            else:
                self._untagged.append(desc)

    def _save_index(self) -> None:
        manifests = [desc.to_dict() for desc in self._untagged]
        for ref, desc in self._tags.items():
            tagged = Descriptor(
                desc.media_type,
                desc.digest,
                desc.size,
                {**desc.annotations, ANNOTATION_REF_NAME: ref},
            )
            manifests.append(tagged.to_dict())
        index = {
            "schemaVersion": 2,
            "mediaType": MEDIA_TYPE_IMAGE_INDEX,
            "manifests": manifests,
        }
        _atomic_write(
            os.path.join(self.root, INDEX_FILE),
            json.dumps(index, separators=(",", ":")).encode(),
        )

    def _blob_path(self, digest: str) -> str:
        algorithm, encoded = _split_digest(digest)
        return os.path.join(self.root, "blobs", algorithm, encoded)

    def exists(self, desc: Descriptor) -> bool:
        """Whether the blob described by desc is stored."""
        return os.path.isfile(self._blob_path(desc.digest))

    def push(self, desc: Descriptor, data: bytes | BinaryIO) -> None:
        """Store data as the blob described by desc, verifying size and digest."""
        content = data.read() if hasattr(data, "read") else bytes(data)
        if len(content) != desc.size:
            raise ValueError(
                f"size mismatch for {desc.digest}: expected {desc.size}, got {len(content)}"
            )
        algorithm, encoded = _split_digest(desc.digest)
        if hashlib.new(algorithm, content).hexdigest() != encoded:
            raise ValueError(f"digest mismatch for {desc.digest}")
        path = self._blob_path(desc.digest)
        with self._lock:
            if os.path.exists(path):
                raise FileExistsError(f"{desc.digest}: already exists")
            os.makedirs(os.path.dirname(path), exist_ok=True)
            _atomic_write(path, content)

    def fetch(self, desc: Descriptor) -> BinaryIO:
        """Open the blob described by desc for reading; the caller closes it."""
        try:
            return open(self._blob_path(desc.digest), "rb")
        except FileNotFoundError as exc:
            raise NotFoundError(f"{desc.digest}: not found") from exc

    def resolve(self, reference: str) -> Descriptor:
        """Return the manifest descriptor for a tag or a known manifest digest."""
        with self._lock:
            desc = self._tags.get(reference)
            if desc is None:
                known = [*self._tags.values(), *self._untagged]
                desc = next((d for d in known if d.digest == reference), None)
            if desc is None:
                raise NotFoundError(f"{reference}: not found")
            return Descriptor(desc.media_type, desc.digest, desc.size, dict(desc.annotations))

    def tag(self, desc: Descriptor, reference: str) -> None:
        """Point reference at the stored manifest described by desc."""
        if not reference:
            raise ValueError("missing reference")
        if not self.exists(desc):
            raise NotFoundError(f"{desc.digest}: not found")
        annotations = {k: v for k, v in desc.annotations.items() if k != ANNOTATION_REF_NAME}
        with self._lock:
            self._untagged = [d for d in self._untagged if d.digest != desc.digest]
            self._tags[reference] = Descriptor(desc.media_type, desc.digest, desc.size, annotations)
            self._save_index()

    def _push_empty(self) -> Descriptor:
        content = b"{}"
        desc = Descriptor(MEDIA_TYPE_EMPTY_JSON, digest_from_bytes(content), len(content))
        with self._lock:
            if not self.exists(desc):
                self.push(desc, content)
        return desc

    def pack_manifest(
        self,
        config: Descriptor | None,
        layers: Iterable[Descriptor],
        annotations: dict[str, str] | None = None,
    ) -> Descriptor:
        """Build an image manifest, store it and return its descriptor.

        A missing config or an empty layer list is replaced by the empty JSON
        descriptor; a creation time is added when annotations lack one.
        """
        if config is None:
            config = self._push_empty()
        layer_list = list(layers) or [self._push_empty()]
        manifest_annotations = dict(annotations or {})
        manifest_annotations.setdefault(ANNOTATION_CREATED, _now_rfc3339())
        manifest = {
            "schemaVersion": 2,
            "mediaType": MEDIA_TYPE_IMAGE_MANIFEST,
            "config": config.to_dict(),
            "layers": [layer.to_dict() for layer in layer_list],
            "annotations": manifest_annotations,
        }
        content = json.dumps(manifest, separators=(",", ":")).encode()
        desc = Descriptor(MEDIA_TYPE_IMAGE_MANIFEST, digest_from_bytes(content), len(content))
        with self._lock:
            if not self.exists(desc):
                self.push(desc, content)
        return desc