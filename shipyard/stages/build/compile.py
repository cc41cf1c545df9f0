from __future__ import annotations

from pipelinekit.config_namespace import ConfigNamespace
from pipelinekit.engine.patterns import iterate
from pipelinekit.engine.pipeline import ActionStep, Block, CommandFailedError, CommandStep, Node
from pipelinekit.stage_types import StageIO, StageRef
from shipyard.domain.artifacts import COMPILED_KEY, RESOLVED_KEY, SOURCE_KEY, CompiledWorkspaces
from shipyard.framework.config import WorkspaceConfig
from shipyard.framework.inputs import BuildInputs
from shipyard.framework.runtime import BuildContext
from shipyard.impl.outputs import collect_artifacts, compilation_error, verify_store_unchanged

KIND_ID = "build.compile"


def _build(inputs: BuildInputs, *, instance_id: str, cfg: ConfigNamespace) -> Block:
    per_workspace = cfg.get_bool("per_workspace", default=False)
    verify_store = cfg.get_bool("verify_store_unchanged", default=True)
    cfg.assert_consumed()
    build_cfg = inputs.cfg
    root = inputs.source_root

    def _failed(failure: CommandFailedError, *, workspace: str | None = None) -> Exception:
        return compilation_error(
            failure, source_root=root, workspaces=build_cfg.workspaces, workspace=workspace
        )

    def _workspace_build(ws: WorkspaceConfig, _idx: int) -> CommandStep:
        return CommandStep(
            name="build",
            argv=[*build_cfg.build_command, f"--workspace={ws.path}"],
            cwd=root,
            error_factory=lambda failure: _failed(failure, workspace=ws.name),
        )

    build_node: Node
    if per_workspace:
        # Config order is build order (core before its dependents).
        build_node = iterate(
            "build",
            items=build_cfg.workspaces,
            build=_workspace_build,
            iteration_name=lambda ws, _idx: ws.name,
        )
    else:
        build_node = CommandStep(name="build", argv=list(build_cfg.build_command), cwd=root, error_factory=_failed)

    def _collect(ctx: BuildContext) -> CompiledWorkspaces:
        compiled = collect_artifacts(build_cfg.workspaces, source_root=root, artifacts_dir=inputs.artifacts_dir)
        for artifact in compiled.artifacts:
            ctx.logger.info(
                "Workspace %s: %d file(s) at %s (digest %s)",
                artifact.workspace,
                artifact.file_count,
                artifact.relpath,
                artifact.digest[:12],
            )
        return compiled

    def _verify_store(ctx: BuildContext) -> None:
        verify_store_unchanged(ctx.outputs[RESOLVED_KEY])

    nodes: list[Node] = [build_node, ActionStep(name="collect_artifacts", fn=_collect, capture_key=COMPILED_KEY)]
    if verify_store:
        nodes.append(ActionStep(name="verify_store", fn=_verify_store))
    return Block(name=instance_id, nodes=nodes)


STAGE = StageRef(
    id=KIND_ID,
    builder=_build,
    doc="Run the build command and snapshot each workspace's output directory.",
    source="impl.outputs",
    tags=("build",),
    kind="composite",
    io=StageIO(requires=(RESOLVED_KEY, SOURCE_KEY), provides=(COMPILED_KEY,)),
)
