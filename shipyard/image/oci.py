"""OCI image layout writing (`oci-layout`, `index.json`, blobs)."""

from __future__ import annotations

import json
import os
import shutil
from typing import Any, Sequence

from shipyard.domain.artifacts import Layer
from shipyard.foundation.fs import bytes_sha256
from shipyard.framework.config import BuildConfig
from shipyard.image.base import BaseImage
from shipyard.image.layers import LAYER_MEDIA_TYPE, copy_blob

CONFIG_MEDIA_TYPE = "application/vnd.oci.image.config.v1+json"
MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
_NS_PER_S = 1_000_000_000
# Base config fields that describe how the base itself starts; the runtime contract replaces them.
_REPLACED_BASE_FIELDS = ("Cmd", "Entrypoint", "Healthcheck", "User", "WorkingDir", "ExposedPorts", "Env", "Labels")


def entrypoint(cfg: BuildConfig) -> list[str]:
    if cfg.runtime.entrypoint == "supervisor":
        return ["shipyard", "supervise", "--", *cfg.runtime.start_command]
    return list(cfg.runtime.start_command)


def healthcheck_test(cfg: BuildConfig) -> list[str]:
    if cfg.runtime.entrypoint == "supervisor":
        return ["CMD", "shipyard", "healthcheck"]
    url = f"http://localhost:${{PORT:-{cfg.runtime.port}}}{cfg.runtime.status_path}"
    return ["CMD-SHELL", f"wget --no-verbose --tries=1 --spider {url} || exit 1"]


def merge_env(base_env: Sequence[str], overrides: Sequence[str]) -> list[str]:
    """Base variables in their order; an override drops the same-named base value and is appended."""

    merged: dict[str, str] = {}
    for item in [*base_env, *overrides]:
        key = item.split("=", 1)[0]
        merged.pop(key, None)
        merged[key] = item
    return list(merged.values())


def image_config(
    cfg: BuildConfig,
    layers: Sequence[Layer],
    diff_ids: Sequence[str],
    base: BaseImage | None = None,
) -> dict[str, Any]:
    hc = cfg.healthcheck
    identity = cfg.identity
    base_root = dict(base.config) if base is not None else {}
    base_config = dict(base_root.get("config") or {})
    labels = dict(base_config.get("Labels") or {})
    labels["org.opencontainers.image.title"] = cfg.image_name

    config = {key: value for key, value in base_config.items() if key not in _REPLACED_BASE_FIELDS}
    config.update(
        {
            # Numeric so the runtime never depends on resolving names.
            "User": f"{identity.uid}:{identity.gid}",
            "WorkingDir": cfg.runtime.workdir,
            "Env": merge_env(base_config.get("Env") or [], [f"PORT={cfg.runtime.port}", "NODE_ENV=production"]),
            "ExposedPorts": {f"{cfg.runtime.port}/tcp": {}},
            "Entrypoint": entrypoint(cfg),
            "Healthcheck": {
                "Test": healthcheck_test(cfg),
                "Interval": int(hc.interval_s * _NS_PER_S),
                "Timeout": int(hc.timeout_s * _NS_PER_S),
                "StartPeriod": int(hc.start_period_s * _NS_PER_S),
                "StartInterval": int(hc.start_interval_s * _NS_PER_S),
                "Retries": hc.retries,
            },
            "Labels": labels,
        }
    )
    base_diff_ids = [f"sha256:{layer.diff_id}" for layer in base.layers] if base is not None else []
    return {
        "architecture": base_root.get("architecture", "amd64"),
        "os": base_root.get("os", "linux"),
        "config": config,
        "rootfs": {
            "type": "layers",
            "diff_ids": base_diff_ids + [f"sha256:{diff_id}" for diff_id in diff_ids],
        },
        "history": list(base_root.get("history") or [])
        + [{"created_by": f"shipyard layer {layer.name}"} for layer in layers],
    }


def _write_blob(blobs_dir: str, payload: bytes) -> tuple[str, int]:
    digest = bytes_sha256(payload)
    with open(os.path.join(blobs_dir, digest), "wb") as handle:
        handle.write(payload)
    return digest, len(payload)


def _canonical(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def write_image_layout(
    target_dir: str,
    cfg: BuildConfig,
    layers: Sequence[Layer],
    diff_ids: Sequence[str],
    *,
    base: BaseImage | None = None,
) -> str:
    """Write a complete OCI image layout into `target_dir`; returns the image id (config digest).

    Base layers, when given, come first and are copied byte for byte.
    """

    blobs_dir = os.path.join(target_dir, "blobs", "sha256")
    os.makedirs(blobs_dir, exist_ok=True)
    descriptors: list[dict[str, Any]] = []
    for idx, base_layer in enumerate(base.layers if base is not None else (), start=1):
        dst = os.path.join(blobs_dir, base_layer.digest)
        if not os.path.exists(dst):
            shutil.copyfile(base_layer.path, dst)
        descriptors.append(
            {
                "mediaType": base_layer.media_type,
                "digest": f"sha256:{base_layer.digest}",
                "size": base_layer.size,
                "annotations": {"org.opencontainers.image.title": f"base-{idx:02d}"},
            }
        )
    for layer in layers:
        copy_blob(layer, blobs_dir)
        descriptors.append(
            {
                "mediaType": LAYER_MEDIA_TYPE,
                "digest": f"sha256:{layer.digest}",
                "size": layer.size,
                "annotations": {"org.opencontainers.image.title": layer.name},
            }
        )

    config_digest, config_size = _write_blob(blobs_dir, _canonical(image_config(cfg, layers, diff_ids, base)))
    manifest = {
        "schemaVersion": 2,
        "mediaType": MANIFEST_MEDIA_TYPE,
        "config": {"mediaType": CONFIG_MEDIA_TYPE, "digest": f"sha256:{config_digest}", "size": config_size},
        "layers": descriptors,
    }
    manifest_digest, manifest_size = _write_blob(blobs_dir, _canonical(manifest))

    index = {
        "schemaVersion": 2,
        "manifests": [
            {
                "mediaType": MANIFEST_MEDIA_TYPE,
                "digest": f"sha256:{manifest_digest}",
                "size": manifest_size,
                "annotations": {"org.opencontainers.image.ref.name": cfg.image_name},
            }
        ],
    }
    with open(os.path.join(target_dir, "index.json"), "w", encoding="utf-8") as handle:
        json.dump(index, handle, indent=2)
        handle.write("\n")
    with open(os.path.join(target_dir, "oci-layout"), "w", encoding="utf-8") as handle:
        json.dump({"imageLayoutVersion": "1.0.0"}, handle)
        handle.write("\n")
    return f"sha256:{config_digest}"
