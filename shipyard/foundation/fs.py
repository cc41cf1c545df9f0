"""Filesystem helpers shared by the build stages.

Digests here are content digests: they cover relative paths, entry types,
file bytes, the executable bit and symlink targets, and never timestamps or
ownership. Two trees with the same content always hash the same.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import stat
from dataclasses import dataclass
from typing import Iterable, Iterator, Literal

EntryKind = Literal["dir", "file", "symlink"]

_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class TreeEntry:
    relpath: str
    abspath: str
    kind: EntryKind
    mode: int


def file_sha256(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        while True:
            chunk = handle.read(_CHUNK)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def bytes_sha256(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def iter_tree(root: str, *, exclude_top: Iterable[str] = ()) -> Iterator[TreeEntry]:
    """Yield every entry under `root` in sorted order, without following symlinks."""

    excluded = set(exclude_top)
    root = os.path.abspath(root)

    def walk(current: str, prefix: str) -> Iterator[TreeEntry]:
        with os.scandir(current) as it:
            entries = sorted(it, key=lambda e: e.name)
        for entry in entries:
            if not prefix and entry.name in excluded:
                continue
            rel = f"{prefix}/{entry.name}" if prefix else entry.name
            st = entry.stat(follow_symlinks=False)
            if stat.S_ISLNK(st.st_mode):
                yield TreeEntry(rel, entry.path, "symlink", stat.S_IMODE(st.st_mode))
            elif stat.S_ISDIR(st.st_mode):
                yield TreeEntry(rel, entry.path, "dir", stat.S_IMODE(st.st_mode))
                yield from walk(entry.path, rel)
            elif stat.S_ISREG(st.st_mode):
                yield TreeEntry(rel, entry.path, "file", stat.S_IMODE(st.st_mode))

    yield from walk(root, "")


def tree_digest(root: str, *, exclude_top: Iterable[str] = ()) -> str:
    digest = hashlib.sha256()
    for entry in iter_tree(root, exclude_top=exclude_top):
        digest.update(entry.kind.encode("ascii"))
        digest.update(b"\0")
        digest.update(entry.relpath.encode("utf-8"))
        digest.update(b"\0")
        if entry.kind == "file":
            digest.update(b"x" if entry.mode & 0o111 else b"-")
            digest.update(file_sha256(entry.abspath).encode("ascii"))
        elif entry.kind == "symlink":
            digest.update(os.readlink(entry.abspath).encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()


def files_digest(paths: Iterable[tuple[str, str]]) -> str:
    """Digest of (label, path) pairs, sorted by label; used for manifest inputs."""

    digest = hashlib.sha256()
    for label, path in sorted(paths):
        digest.update(label.encode("utf-8"))
        digest.update(b"\0")
        digest.update(file_sha256(path).encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()


def has_files(root: str) -> bool:
    if not os.path.isdir(root):
        return False
    return any(entry.kind != "dir" for entry in iter_tree(root))


def reset_dir(path: str) -> str:
    if os.path.lexists(path):
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
    os.makedirs(path)
    return path


def copy_file(src: str, dst: str) -> None:
    os.makedirs(os.path.dirname(dst) or ".", exist_ok=True)
    shutil.copy2(src, dst, follow_symlinks=False)


def copy_tree(src: str, dst: str, *, ignore_names: Iterable[str] = ()) -> None:
    ignored = tuple(ignore_names)
    shutil.copytree(
        src,
        dst,
        symlinks=True,
        ignore=shutil.ignore_patterns(*ignored) if ignored else None,
        dirs_exist_ok=True,
    )


def promote_dir(staging: str, final: str) -> None:
    """Replace `final` with `staging` so readers never observe a half-written directory."""

    os.makedirs(os.path.dirname(os.path.abspath(final)), exist_ok=True)
    previous = None
    if os.path.exists(final):
        previous = f"{final}.previous"
        if os.path.exists(previous):
            shutil.rmtree(previous)
        os.rename(final, previous)
    os.rename(staging, final)
    if previous is not None:
        shutil.rmtree(previous)
