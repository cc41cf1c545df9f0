from __future__ import annotations

import os

from pipelinekit.config_namespace import ConfigNamespace
from pipelinekit.engine.pipeline import ActionStep, Block
from pipelinekit.stage_types import StageIO, StageRef
from shipyard.domain.artifacts import (
    COMPILED_KEY,
    IMAGE_KEY,
    MANIFESTS_KEY,
    PRUNED_KEY,
    SOURCE_KEY,
    RuntimeImage,
)
from shipyard.framework.inputs import BuildInputs
from shipyard.framework.runtime import BuildContext
from shipyard.image.base import BaseImage, load_base_image, plan_identity_layer
from shipyard.image.layers import LayerCache, LayerSpec
from shipyard.image.plan import plan_layers
from shipyard.image.writer import LayerSet, build_layers, publish_image, verify_ownership

KIND_ID = "build.image"
BASE_IMAGE_KEY = "base_image"
LAYER_PLAN_KEY = "layer_plan"
LAYER_SET_KEY = "layer_set"


def _build(inputs: BuildInputs, *, instance_id: str, cfg: ConfigNamespace) -> Block:
    use_cache = cfg.get_bool("use_cache", default=True)
    mtime = cfg.get_int("mtime", default=0, min_value=0)
    cfg.assert_consumed()
    build_cfg = inputs.cfg
    cache = LayerCache(os.path.join(build_cfg.cache_dir, "layers"), enabled=use_cache)

    def _base(ctx: BuildContext) -> BaseImage | None:
        if build_cfg.base_image_layout is None:
            ctx.warn(
                "No build.base_image_layout configured: the image carries only the identity and application "
                "layers and needs a Node runtime from elsewhere to start"
            )
            return None
        return load_base_image(build_cfg.base_image_layout)

    def _plan(ctx: BuildContext) -> list[LayerSpec]:
        identity = plan_identity_layer(
            build_cfg, ctx.outputs[BASE_IMAGE_KEY], scratch_dir=os.path.join(inputs.build_dir, "system")
        )
        app_layers = plan_layers(
            build_cfg,
            manifests=ctx.outputs[MANIFESTS_KEY],
            source=ctx.outputs[SOURCE_KEY],
            compiled=ctx.outputs[COMPILED_KEY],
            pruned=ctx.outputs[PRUNED_KEY],
        )
        return [identity, *app_layers]

    def _layers(ctx: BuildContext) -> LayerSet:
        layer_set = build_layers(
            ctx.outputs[LAYER_PLAN_KEY],
            build_cfg.identity,
            cache,
            scratch_dir=os.path.join(inputs.build_dir, "layers"),
            mtime=mtime,
        )
        for layer in layer_set.layers:
            ctx.logger.info(
                "Layer %s: %d entries, %d bytes, digest %s%s",
                layer.name,
                layer.entry_count,
                layer.size,
                layer.digest[:12],
                " (cached)" if layer.cache_hit else "",
            )
        return layer_set

    def _verify(ctx: BuildContext) -> int:
        return verify_ownership(ctx.outputs[LAYER_SET_KEY], build_cfg.identity)

    def _publish(ctx: BuildContext) -> RuntimeImage:
        image = publish_image(
            build_cfg,
            ctx.outputs[LAYER_SET_KEY],
            staging_dir=inputs.image_staging_dir,
            final_dir=inputs.image_dir,
            base=ctx.outputs[BASE_IMAGE_KEY],
        )
        ctx.image_path = image.path
        ctx.logger.info("Image %s written to %s (%s)", image.name, image.path, image.image_id)
        return image

    return Block(
        name=instance_id,
        nodes=[
            ActionStep(name="load_base_image", fn=_base, capture_key=BASE_IMAGE_KEY),
            ActionStep(name="plan_layers", fn=_plan, capture_key=LAYER_PLAN_KEY),
            ActionStep(name="build_layers", fn=_layers, capture_key=LAYER_SET_KEY),
            ActionStep(name="verify_ownership", fn=_verify),
            ActionStep(name="publish", fn=_publish, capture_key=IMAGE_KEY),
        ],
    )


STAGE = StageRef(
    id=KIND_ID,
    builder=_build,
    doc="Assemble deterministic, identity-owned layers into an OCI image layout.",
    source="image.writer",
    tags=("build",),
    kind="action",
    io=StageIO(
        requires=(MANIFESTS_KEY, SOURCE_KEY, COMPILED_KEY, PRUNED_KEY),
        provides=(IMAGE_KEY,),
    ),
)
