from __future__ import annotations

from pipelinekit.config_namespace import ConfigNamespace
from pipelinekit.engine.pipeline import ActionStep, Block
from pipelinekit.stage_types import StageIO, StageRef
from shipyard.domain.artifacts import MANIFESTS_KEY, PRUNED_KEY, RESOLVED_KEY, PrunedDependencySet
from shipyard.errors import PruningError
from shipyard.framework.inputs import BuildInputs
from shipyard.framework.runtime import BuildContext
from shipyard.impl.pruner import ProductionClosure, compute_closure, write_pruned_store
from shipyard.impl.resolver import store_module_dirs

KIND_ID = "build.prune"
CLOSURE_KEY = "production_closure"


def _build(inputs: BuildInputs, *, instance_id: str, cfg: ConfigNamespace) -> Block:
    fail_on_mismatch = cfg.get_bool("fail_on_classification_mismatch", default=False)
    keep_bin_links = cfg.get_bool("keep_bin_links", default=True)
    cfg.assert_consumed()
    build_cfg = inputs.cfg

    def _closure(ctx: BuildContext) -> ProductionClosure:
        resolved = ctx.outputs[RESOLVED_KEY]
        closure = compute_closure(ctx.outputs[MANIFESTS_KEY], resolved.lockfile)
        for message in closure.warnings:
            ctx.warn(message)
        if closure.warnings and fail_on_mismatch:
            raise PruningError(
                f"{len(closure.warnings)} package(s) disagree with the lockfile's dev classification "
                "(see warnings)"
            )
        ctx.logger.info("Production closure: kept %d, removed %d", len(closure.kept), len(closure.removed))
        return closure

    def _write(ctx: BuildContext) -> PrunedDependencySet:
        resolved = ctx.outputs[RESOLVED_KEY]
        return write_pruned_store(
            ctx.outputs[CLOSURE_KEY],
            resolved,
            module_dirs=store_module_dirs(resolved.store_dir, build_cfg.workspaces),
            pruned_dir=inputs.pruned_dir,
            keep_bin_links=keep_bin_links,
        )

    return Block(
        name=instance_id,
        nodes=[
            ActionStep(name="compute_closure", fn=_closure, capture_key=CLOSURE_KEY),
            ActionStep(name="write_pruned_store", fn=_write, capture_key=PRUNED_KEY),
        ],
    )


STAGE = StageRef(
    id=KIND_ID,
    builder=_build,
    doc="Copy the production closure of the manifests into a new dependency store.",
    source="impl.pruner",
    tags=("build",),
    kind="action",
    io=StageIO(requires=(MANIFESTS_KEY, RESOLVED_KEY), provides=(PRUNED_KEY,)),
)
