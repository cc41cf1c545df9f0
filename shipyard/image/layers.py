"""Deterministic image layers.

A layer is a gzip'd tar whose bytes depend only on its entries and the
runtime identity: entries are sorted, timestamps are fixed, and every member
is owned by the runtime identity (root for the account-database system
layer). Identical inputs therefore give identical layer digests, and the
layer cache can be keyed on content alone.
"""

from __future__ import annotations

import gzip
import hashlib
import json
import logging
import os
import shutil
import tarfile
import uuid
from dataclasses import dataclass, field
from typing import BinaryIO

from shipyard.domain.artifacts import Layer
from shipyard.errors import ImageAssemblyError
from shipyard.foundation.fs import EntryKind, file_sha256, iter_tree
from shipyard.framework.config import IdentityConfig

logger = logging.getLogger(__name__)

LAYER_MEDIA_TYPE = "application/vnd.oci.image.layer.v1.tar+gzip"
SYSTEM_OWNER = IdentityConfig(user="root", group="root", uid=0, gid=0)


@dataclass(frozen=True)
class LayerEntry:
    # Path inside the image without a leading slash, e.g. "app/package.json".
    path: str
    kind: EntryKind
    mode: int
    source: str | None = None
    linkname: str | None = None


@dataclass
class LayerSpec:
    """Ordered set of entries for one layer; parent directories are added implicitly."""

    name: str
    entries: dict[str, LayerEntry] = field(default_factory=dict)
    # Root-owned system files (account database) instead of runtime-identity files.
    system: bool = False

    def _add_parents(self, path: str) -> None:
        parts = path.split("/")[:-1]
        for idx in range(1, len(parts) + 1):
            parent = "/".join(parts[:idx])
            if parent not in self.entries:
                self.entries[parent] = LayerEntry(path=parent, kind="dir", mode=0o755)

    def _add(self, entry: LayerEntry) -> None:
        existing = self.entries.get(entry.path)
        if existing is not None and not (existing.kind == "dir" and entry.kind == "dir"):
            raise ImageAssemblyError(f"Layer {self.name}: duplicate entry {entry.path}")
        self._add_parents(entry.path)
        self.entries[entry.path] = entry

    def add_file(self, source: str, dest: str) -> None:
        dest = dest.strip("/")
        if os.path.islink(source):
            self._add(LayerEntry(path=dest, kind="symlink", mode=0o777, linkname=os.readlink(source)))
            return
        if not os.path.isfile(source):
            raise ImageAssemblyError(f"Layer {self.name}: missing input file {source}")
        mode = os.stat(source).st_mode & 0o7777
        self._add(LayerEntry(path=dest, kind="file", mode=mode, source=source))

    def add_tree(self, source: str, dest: str) -> None:
        dest = dest.strip("/")
        if not os.path.isdir(source):
            raise ImageAssemblyError(f"Layer {self.name}: missing input directory {source}")
        self._add(LayerEntry(path=dest, kind="dir", mode=os.stat(source).st_mode & 0o7777))
        for entry in iter_tree(source):
            path = f"{dest}/{entry.relpath}"
            if entry.kind == "symlink":
                self._add(LayerEntry(path=path, kind="symlink", mode=0o777, linkname=os.readlink(entry.abspath)))
            else:
                self._add(LayerEntry(path=path, kind=entry.kind, mode=entry.mode, source=entry.abspath))

    def sorted_entries(self) -> list[LayerEntry]:
        return [self.entries[path] for path in sorted(self.entries)]

    def summary(self) -> dict[str, object]:
        return {"name": self.name, "entries": len(self.entries)}


def layer_cache_key(spec: LayerSpec, identity: IdentityConfig, *, mtime: int) -> str:
    digest = hashlib.sha256()
    header = {"layer": spec.name, "owner": [identity.user, identity.group, identity.uid, identity.gid], "mtime": mtime}
    digest.update(json.dumps(header, sort_keys=True).encode("utf-8"))
    for entry in spec.sorted_entries():
        if entry.kind == "file":
            content = file_sha256(entry.source or "")
        elif entry.kind == "symlink":
            content = entry.linkname or ""
        else:
            content = ""
        digest.update(f"\n{entry.kind}\0{entry.path}\0{entry.mode:o}\0{content}".encode("utf-8"))
    return digest.hexdigest()


class _HashingWriter:
    """Write-through file wrapper that hashes the uncompressed tar stream."""

    def __init__(self, raw: BinaryIO):
        self._raw = raw
        self._offset = 0
        self.sha256 = hashlib.sha256()

    def write(self, data: bytes) -> int:
        self.sha256.update(data)
        self._offset += len(data)
        return self._raw.write(data)

    def tell(self) -> int:
        return self._offset


def _tarinfo(entry: LayerEntry, identity: IdentityConfig, *, mtime: int) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name=entry.path + ("/" if entry.kind == "dir" else ""))
    info.mode = entry.mode
    info.mtime = mtime
    info.uid = identity.uid
    info.gid = identity.gid
    info.uname = identity.user
    info.gname = identity.group
    if entry.kind == "dir":
        info.type = tarfile.DIRTYPE
    elif entry.kind == "symlink":
        info.type = tarfile.SYMTYPE
        info.linkname = entry.linkname or ""
    else:
        info.type = tarfile.REGTYPE
        info.size = os.path.getsize(entry.source or "")
    return info


def write_layer_tar(spec: LayerSpec, identity: IdentityConfig, path: str, *, mtime: int = 0) -> str:
    """Write `spec` as a deterministic tar.gz at `path`; returns the uncompressed tar sha256 (diff id)."""

    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "wb") as raw:
        with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
            writer = _HashingWriter(gz)
            with tarfile.open(fileobj=writer, mode="w", format=tarfile.GNU_FORMAT) as tar:  # type: ignore[arg-type]
                for entry in spec.sorted_entries():
                    info = _tarinfo(entry, identity, mtime=mtime)
                    if entry.kind == "file":
                        with open(entry.source or "", "rb") as handle:
                            tar.addfile(info, handle)
                    else:
                        tar.addfile(info)
    return writer.sha256.hexdigest()


def verify_layer_ownership(path: str, identity: IdentityConfig, *, layer_name: str) -> int:
    """Every member must be owned by the runtime identity and never by root; returns member count."""

    count = 0
    with tarfile.open(path, mode="r:gz") as tar:
        for member in tar:
            count += 1
            if member.uid == 0 or member.gid == 0:
                raise ImageAssemblyError(
                    f"Layer {layer_name}: {member.name} is owned by root (uid={member.uid}, gid={member.gid})"
                )
            if member.uid != identity.uid or member.gid != identity.gid:
                raise ImageAssemblyError(
                    f"Layer {layer_name}: {member.name} is owned by {member.uid}:{member.gid}, "
                    f"expected {identity.uid}:{identity.gid}"
                )
    return count


def verify_system_layer(path: str, *, layer_name: str) -> int:
    """System files stay root-owned and are never writable by group or others; returns member count."""

    count = 0
    with tarfile.open(path, mode="r:gz") as tar:
        for member in tar:
            count += 1
            if member.uid != 0 or member.gid != 0:
                raise ImageAssemblyError(
                    f"Layer {layer_name}: {member.name} is owned by {member.uid}:{member.gid}, expected 0:0"
                )
            if not member.issym() and member.mode & 0o022:
                raise ImageAssemblyError(f"Layer {layer_name}: {member.name} is writable by group or others")
    return count


class LayerCache:
    """Content-addressed store of finished layer blobs under `<cache_dir>/layers`."""

    def __init__(self, root: str, *, enabled: bool = True):
        self.root = root
        self.enabled = enabled

    def _blob(self, key: str) -> str:
        return os.path.join(self.root, f"{key}.tar.gz")

    def _meta(self, key: str) -> str:
        return os.path.join(self.root, f"{key}.json")

    def lookup(self, key: str) -> tuple[str, dict] | None:
        if not self.enabled:
            return None
        blob, meta = self._blob(key), self._meta(key)
        if not (os.path.isfile(blob) and os.path.isfile(meta)):
            return None
        with open(meta, "r", encoding="utf-8") as handle:
            record = json.load(handle)
        if file_sha256(blob) != record.get("digest"):
            logger.warning("Discarding layer cache entry %s: digest mismatch", key)
            os.remove(blob)
            os.remove(meta)
            return None
        return blob, record

    def store(self, key: str, staged_blob: str, record: dict) -> str:
        os.makedirs(self.root, exist_ok=True)
        blob = self._blob(key)
        os.replace(staged_blob, blob)
        tmp_meta = f"{self._meta(key)}.tmp-{uuid.uuid4().hex[:8]}"
        with open(tmp_meta, "w", encoding="utf-8") as handle:
            json.dump(record, handle, indent=2)
            handle.write("\n")
        os.replace(tmp_meta, self._meta(key))
        return blob


def build_layer(
    spec: LayerSpec,
    identity: IdentityConfig,
    cache: LayerCache,
    *,
    scratch_dir: str,
    mtime: int = 0,
) -> tuple[Layer, str]:
    """Return (layer, diff_id), reusing a cached blob when the cache key matches."""

    owner = SYSTEM_OWNER if spec.system else identity
    key = layer_cache_key(spec, owner, mtime=mtime)
    entry_count = len(spec.entries)
    cached = cache.lookup(key)
    if cached is not None:
        blob, record = cached
        layer = Layer(
            name=spec.name,
            digest=str(record["digest"]),
            cache_key=key,
            size=os.path.getsize(blob),
            entry_count=entry_count,
            cache_hit=True,
            path=blob,
            system=spec.system,
        )
        return layer, str(record["diff_id"])

    staged = os.path.join(scratch_dir, f"{key}.tar.gz")
    diff_id = write_layer_tar(spec, owner, staged, mtime=mtime)
    digest = file_sha256(staged)
    record = {"name": spec.name, "digest": digest, "diff_id": diff_id, "entries": entry_count}
    if cache.enabled:
        blob = cache.store(key, staged, record)
    else:
        blob = staged
    layer = Layer(
        name=spec.name,
        digest=digest,
        cache_key=key,
        size=os.path.getsize(blob),
        entry_count=entry_count,
        cache_hit=False,
        path=blob,
        system=spec.system,
    )
    return layer, diff_id


def copy_blob(layer: Layer, blobs_dir: str) -> str:
    os.makedirs(blobs_dir, exist_ok=True)
    dst = os.path.join(blobs_dir, layer.digest)
    if not os.path.exists(dst):
        shutil.copyfile(layer.path, dst)
    return dst

