"""Deterministic tar.gz packing of directories and extraction of such archives."""

from __future__ import annotations

import io
import os
import shutil
import stat
import struct
import tarfile
import zlib
from typing import BinaryIO


def _walk(root: str) -> list[str]:
    """Every path under root, root included, without following symbolic links."""
    paths = [root]
    if not stat.S_ISDIR(os.lstat(root).st_mode):
        return paths
    pending = [root]
    while pending:
        directory = pending.pop()
        with os.scandir(directory) as entries:
            for entry in entries:
                paths.append(entry.path)
                if entry.is_dir(follow_symlinks=False):
                    pending.append(entry.path)
    return paths


def _join(*parts: str) -> str:
    present = [part for part in parts if part]
    if not present:
        return ""
    return os.path.normpath(os.sep.join(present))


def _tar_info(path: str, name: str) -> tarfile.TarInfo:
    info_stat = os.lstat(path)
    mode = info_stat.st_mode
    info = tarfile.TarInfo(name)
    info.mode = stat.S_IMODE(mode)
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    info.mtime = 0
    if stat.S_ISREG(mode):
        info.type = tarfile.REGTYPE
        info.size = info_stat.st_size
    elif stat.S_ISDIR(mode):
        info.type = tarfile.DIRTYPE
    elif stat.S_ISLNK(mode):
        info.type = tarfile.SYMTYPE
        info.linkname = os.readlink(path)
    elif stat.S_ISFIFO(mode):
        info.type = tarfile.FIFOTYPE
    elif stat.S_ISCHR(mode) or stat.S_ISBLK(mode):
        info.type = tarfile.CHRTYPE if stat.S_ISCHR(mode) else tarfile.BLKTYPE
        info.devmajor = os.major(info_stat.st_rdev)
        info.devminor = os.minor(info_stat.st_rdev)
    else:
        raise ValueError(f"{path}: unsupported file type")
    return info


def _gzip(data: bytes) -> bytes:
    """Gzip with best compression and a fixed header (no mtime, OS byte 0)."""
    compressor = zlib.compressobj(9, zlib.DEFLATED, -zlib.MAX_WBITS)
    body = compressor.compress(data) + compressor.flush()
    header = b"\x1f\x8b\x08\x00" + b"\x00\x00\x00\x00" + b"\x02\x00"
    trailer = struct.pack("<II", zlib.crc32(data) & 0xFFFFFFFF, len(data) & 0xFFFFFFFF)
    return header + body + trailer


def tar_gz_dir(fs_dir: str | os.PathLike[str], prefix_path: str) -> bytes:
    """Pack fs_dir into a tar.gz whose bytes depend only on the tree's content.

    Entries are sorted, named under prefix_path, and carry zero ownership and times.
    """
    root = os.fspath(fs_dir)
    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for path in sorted(_walk(root)):
            rel = os.path.relpath(path, root)
            if rel == ".":
                name = prefix_path
            else:
                name = _join(prefix_path, rel).replace(os.sep, "/")
            info = _tar_info(path, name)
            if info.isreg():
                with open(path, "rb") as handle:
                    tar.addfile(info, handle)
            else:
                tar.addfile(info)
    return _gzip(raw.getvalue())


def untar_gz_dir(stream: BinaryIO, dest: str | os.PathLike[str]) -> None:
    """Extract a gzip-compressed tar stream into dest.

    Directories, regular files and symbolic links are created; other entry types are skipped.
    """
    dest_dir = os.fspath(dest)
    with tarfile.open(fileobj=stream, mode="r|gz") as tar:
        for member in tar:
            target = _join(dest_dir, os.path.normpath(member.name))
            perm = member.mode & 0o777
            if member.isdir():
                os.makedirs(target, perm, exist_ok=True)
            elif member.type in (tarfile.REGTYPE, tarfile.AREGTYPE):
                os.makedirs(os.path.dirname(target) or ".", 0o755, exist_ok=True)
                source = tar.extractfile(member)
                fd = os.open(target, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, perm)
                with os.fdopen(fd, "wb") as out:
                    if source is not None:
                        with source:
                            shutil.copyfileobj(source, out)
            elif member.issym():
                os.makedirs(os.path.dirname(target) or ".", 0o755, exist_ok=True)
                os.symlink(member.linkname, target)