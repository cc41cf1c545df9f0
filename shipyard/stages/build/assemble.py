from __future__ import annotations

from functools import partial

from pipelinekit.config_namespace import ConfigNamespace
from pipelinekit.engine.patterns import iterate
from pipelinekit.engine.pipeline import ActionStep, Block
from pipelinekit.stage_types import StageIO, StageRef
from shipyard.domain.artifacts import MANIFESTS_KEY, RESOLVED_KEY, SOURCE_KEY, AssembledSource
from shipyard.foundation.fs import reset_dir
from shipyard.framework.config import WorkspaceConfig
from shipyard.framework.inputs import BuildInputs
from shipyard.framework.runtime import BuildContext
from shipyard.impl.assembler import copy_root_files, copy_workspace, link_store
from shipyard.impl.resolver import store_module_dirs

KIND_ID = "build.assemble"


def _build(inputs: BuildInputs, *, instance_id: str, cfg: ConfigNamespace) -> Block:
    extra_paths = cfg.get_list_str("extra_paths", default=[], allow_empty=True)
    cfg.assert_consumed()
    build_cfg = inputs.cfg
    root = inputs.source_root

    def _prepare(_ctx: BuildContext) -> None:
        reset_dir(root)

    def _root_files(ctx: BuildContext) -> list[str]:
        return copy_root_files(build_cfg, ctx.outputs[MANIFESTS_KEY], root, extra_paths=extra_paths)

    def _workspace(ws: WorkspaceConfig, _ctx: BuildContext) -> str:
        return copy_workspace(build_cfg, ws, root)

    def _link(ctx: BuildContext) -> list[str]:
        resolved = ctx.outputs[RESOLVED_KEY]
        return link_store(resolved, store_module_dirs(resolved.store_dir, build_cfg.workspaces), root)

    def _finalize(ctx: BuildContext) -> AssembledSource:
        return AssembledSource(
            root=root,
            workspace_dirs=tuple((ws.name, ws.path) for ws in build_cfg.workspaces),
            store_digest=ctx.outputs[RESOLVED_KEY].digest,
        )

    return Block(
        name=instance_id,
        nodes=[
            ActionStep(name="prepare", fn=_prepare),
            ActionStep(name="copy_root_files", fn=_root_files),
            iterate(
                "workspaces",
                items=build_cfg.workspaces,
                build=lambda ws, _idx: ActionStep(name="copy", fn=partial(_workspace, ws)),
                iteration_name=lambda ws, _idx: ws.name,
            ),
            ActionStep(name="link_store", fn=_link),
            ActionStep(name="finalize", fn=_finalize, capture_key=SOURCE_KEY),
        ],
    )


STAGE = StageRef(
    id=KIND_ID,
    builder=_build,
    doc="Lay out workspace sources, shared config and resources next to the linked store.",
    source="impl.assembler",
    tags=("build",),
    kind="action",
    io=StageIO(requires=(MANIFESTS_KEY, RESOLVED_KEY), provides=(SOURCE_KEY,)),
)
