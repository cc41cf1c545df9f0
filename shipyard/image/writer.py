from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from typing import Any, Sequence

from shipyard.domain.artifacts import Layer, RuntimeImage
from shipyard.foundation.fs import promote_dir
from shipyard.framework.config import BuildConfig, IdentityConfig
from shipyard.image.base import BaseImage
from shipyard.image.layers import LayerCache, LayerSpec, build_layer, verify_layer_ownership, verify_system_layer
from shipyard.image.oci import write_image_layout


@dataclass(frozen=True)
class LayerSet:
    layers: tuple[Layer, ...]
    diff_ids: tuple[str, ...]

    def summary(self) -> dict[str, Any]:
        return {
            "layers": [layer.summary() for layer in self.layers],
            "cache_hits": sum(1 for layer in self.layers if layer.cache_hit),
        }


def build_layers(
    specs: Sequence[LayerSpec],
    identity: IdentityConfig,
    cache: LayerCache,
    *,
    scratch_dir: str,
    mtime: int = 0,
) -> LayerSet:
    os.makedirs(scratch_dir, exist_ok=True)
    layers: list[Layer] = []
    diff_ids: list[str] = []
    for spec in specs:
        layer, diff_id = build_layer(spec, identity, cache, scratch_dir=scratch_dir, mtime=mtime)
        layers.append(layer)
        diff_ids.append(diff_id)
    return LayerSet(layers=tuple(layers), diff_ids=tuple(diff_ids))


def verify_ownership(layer_set: LayerSet, identity: IdentityConfig) -> int:
    """Check every member of every layer; returns the total member count."""

    total = 0
    for layer in layer_set.layers:
        if layer.system:
            total += verify_system_layer(layer.path, layer_name=layer.name)
        else:
            total += verify_layer_ownership(layer.path, identity, layer_name=layer.name)
    return total


def publish_image(
    cfg: BuildConfig,
    layer_set: LayerSet,
    *,
    staging_dir: str,
    final_dir: str,
    base: BaseImage | None = None,
) -> RuntimeImage:
    """Write the image layout to `staging_dir`, then atomically replace `final_dir` with it."""

    if os.path.exists(staging_dir):
        shutil.rmtree(staging_dir)
    try:
        image_id = write_image_layout(staging_dir, cfg, layer_set.layers, layer_set.diff_ids, base=base)
        promote_dir(staging_dir, final_dir)
    except BaseException:
        shutil.rmtree(staging_dir, ignore_errors=True)
        raise
    return RuntimeImage(name=cfg.image_name, path=final_dir, image_id=image_id, layers=layer_set.layers)
