"""Base image input and the account files for the runtime identity.

The base image is an existing OCI image layout (for example `node:22-alpine`
exported with `skopeo copy docker://node:22-alpine oci:base`). Its layers go
below the application layers unchanged and its config supplies the
environment the Node runtime expects. The identity layer is written on top of
the base so `/etc/passwd` and `/etc/group` name the runtime identity.
"""

from __future__ import annotations

import json
import logging
import os
import tarfile
from dataclasses import dataclass
from typing import Any, Mapping

from shipyard.errors import ImageAssemblyError
from shipyard.foundation.fs import file_sha256
from shipyard.framework.config import BuildConfig, IdentityConfig
from shipyard.image.layers import LayerSpec

logger = logging.getLogger(__name__)

INDEX_MEDIA_TYPES = (
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
)
LAYER_MEDIA_TYPES = (
    "application/vnd.oci.image.layer.v1.tar+gzip",
    "application/vnd.oci.image.layer.v1.tar",
    "application/vnd.docker.image.rootfs.diff.tar.gzip",
)

ROOT_PASSWD = "root:x:0:0:root:/root:/sbin/nologin\n"
ROOT_GROUP = "root:x:0:root\n"


@dataclass(frozen=True)
class BaseLayer:
    digest: str
    diff_id: str
    size: int
    media_type: str
    path: str


@dataclass(frozen=True)
class BaseImage:
    layout_dir: str
    layers: tuple[BaseLayer, ...]
    config: Mapping[str, Any]
    passwd: str | None
    group: str | None

    def summary(self) -> dict[str, Any]:
        return {
            "layout_dir": self.layout_dir,
            "layers": len(self.layers),
            "architecture": self.config.get("architecture"),
        }


def _blob_path(layout_dir: str, digest: str) -> str:
    algo, _, hexdigest = str(digest).partition(":")
    if algo != "sha256" or not hexdigest:
        raise ImageAssemblyError(f"Base image {layout_dir}: unsupported digest {digest!r}")
    path = os.path.join(layout_dir, "blobs", algo, hexdigest)
    if not os.path.isfile(path):
        raise ImageAssemblyError(f"Base image {layout_dir}: missing blob {digest}")
    return path


def _read_json(path: str, *, what: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, ValueError) as exc:
        raise ImageAssemblyError(f"Cannot read {what} at {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ImageAssemblyError(f"Invalid {what} at {path}: expected a JSON object")
    return payload


def _pick_manifest(layout_dir: str, descriptors: list[Any], *, architecture: str) -> dict[str, Any]:
    if not descriptors:
        raise ImageAssemblyError(f"Base image {layout_dir}: index lists no manifests")
    if len(descriptors) == 1:
        return descriptors[0]
    for descriptor in descriptors:
        platform = descriptor.get("platform") or {}
        if platform.get("os", "linux") == "linux" and platform.get("architecture") == architecture:
            return descriptor
    raise ImageAssemblyError(f"Base image {layout_dir}: no manifest for linux/{architecture}")


def _account_files(layers: tuple[BaseLayer, ...]) -> tuple[str | None, str | None]:
    """Return the effective /etc/passwd and /etc/group text after applying every layer."""

    files: dict[str, str | None] = {"etc/passwd": None, "etc/group": None}
    for layer in layers:
        with tarfile.open(layer.path, mode="r:*") as tar:
            for member in tar:
                name = member.name.lstrip("./").rstrip("/")
                if name == "etc/.wh..wh..opq":
                    files = dict.fromkeys(files)
                    continue
                if name.startswith("etc/.wh.") and f"etc/{name[len('etc/.wh.'):]}" in files:
                    files[f"etc/{name[len('etc/.wh.'):]}"] = None
                    continue
                if name in files and member.isfile():
                    handle = tar.extractfile(member)
                    if handle is not None:
                        files[name] = handle.read().decode("utf-8")
    return files["etc/passwd"], files["etc/group"]


def load_base_image(layout_dir: str, *, architecture: str = "amd64") -> BaseImage:
    """Read an OCI layout, check every referenced blob, and collect its account files."""

    layout_dir = os.path.abspath(layout_dir)
    if not os.path.isfile(os.path.join(layout_dir, "oci-layout")):
        raise ImageAssemblyError(f"Base image layout not found: {layout_dir} (no oci-layout file)")
    index = _read_json(os.path.join(layout_dir, "index.json"), what="base image index")
    descriptor = _pick_manifest(layout_dir, list(index.get("manifests") or []), architecture=architecture)
    if descriptor.get("mediaType") in INDEX_MEDIA_TYPES:
        nested = _read_json(_blob_path(layout_dir, descriptor.get("digest")), what="base image index")
        descriptor = _pick_manifest(layout_dir, list(nested.get("manifests") or []), architecture=architecture)
    manifest = _read_json(_blob_path(layout_dir, descriptor.get("digest")), what="base image manifest")
    config = _read_json(_blob_path(layout_dir, (manifest.get("config") or {}).get("digest")), what="base image config")

    raw_layers = list(manifest.get("layers") or [])
    diff_ids = list((config.get("rootfs") or {}).get("diff_ids") or [])
    if len(raw_layers) != len(diff_ids):
        raise ImageAssemblyError(
            f"Base image {layout_dir}: {len(raw_layers)} layers but {len(diff_ids)} diff_ids in its config"
        )

    layers: list[BaseLayer] = []
    for raw, diff_id in zip(raw_layers, diff_ids):
        media_type = raw.get("mediaType", LAYER_MEDIA_TYPES[0])
        if media_type not in LAYER_MEDIA_TYPES:
            raise ImageAssemblyError(f"Base image {layout_dir}: unsupported layer media type {media_type}")
        path = _blob_path(layout_dir, raw.get("digest"))
        digest = raw["digest"].split(":", 1)[1]
        if file_sha256(path) != digest:
            raise ImageAssemblyError(f"Base image {layout_dir}: blob {raw['digest']} does not match its digest")
        layers.append(
            BaseLayer(
                digest=digest,
                diff_id=str(diff_id).split(":", 1)[-1],
                size=os.path.getsize(path),
                media_type=media_type,
                path=path,
            )
        )

    passwd, group = _account_files(tuple(layers))
    base = BaseImage(layout_dir=layout_dir, layers=tuple(layers), config=config, passwd=passwd, group=group)
    logger.info("Loaded base image %s: %d layers", layout_dir, len(layers))
    return base


def merge_account_entry(text: str, *, name: str, ident: int, line: str, what: str) -> str:
    """Append `line` to a passwd or group file unless an identical account already exists.

    An existing entry with the same name but another id, or the same id under
    another name, is an ImageAssemblyError.
    """

    for existing in text.splitlines():
        fields = existing.split(":")
        if len(fields) < 3 or existing.startswith("#"):
            continue
        if fields[0] == name:
            if fields[2] != str(ident):
                raise ImageAssemblyError(
                    f"Base image {what} already defines {name} with id {fields[2]}, expected {ident}"
                )
            return text
        if fields[2] == str(ident):
            raise ImageAssemblyError(f"Base image {what} already assigns id {ident} to {fields[0]}, not {name}")
    if text and not text.endswith("\n"):
        text += "\n"
    return text + line + "\n"


def account_files(cfg: BuildConfig, base: BaseImage | None) -> tuple[str, str]:
    identity: IdentityConfig = cfg.identity
    passwd = (base.passwd if base is not None else None) or ROOT_PASSWD
    group = (base.group if base is not None else None) or ROOT_GROUP
    passwd = merge_account_entry(
        passwd,
        name=identity.user,
        ident=identity.uid,
        line=f"{identity.user}:x:{identity.uid}:{identity.gid}::{cfg.runtime.workdir}:/sbin/nologin",
        what="/etc/passwd",
    )
    group = merge_account_entry(
        group,
        name=identity.group,
        ident=identity.gid,
        line=f"{identity.group}:x:{identity.gid}:{identity.user}",
        what="/etc/group",
    )
    return passwd, group


def plan_identity_layer(cfg: BuildConfig, base: BaseImage | None, *, scratch_dir: str) -> LayerSpec:
    """Root-owned system layer carrying /etc/passwd and /etc/group with the runtime identity."""

    passwd, group = account_files(cfg, base)
    etc_dir = os.path.join(scratch_dir, "identity", "etc")
    os.makedirs(etc_dir, exist_ok=True)
    spec = LayerSpec(name="identity", system=True)
    for filename, text in (("group", group), ("passwd", passwd)):
        path = os.path.join(etc_dir, filename)
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.chmod(path, 0o644)
        spec.add_file(path, f"etc/{filename}")
    return spec
