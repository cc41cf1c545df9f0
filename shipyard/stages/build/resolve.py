from __future__ import annotations

from pipelinekit.config_namespace import ConfigNamespace
from pipelinekit.engine.pipeline import ActionStep, Block, CommandFailedError, CommandStep
from pipelinekit.stage_types import StageIO, StageRef
from shipyard.domain.artifacts import MANIFESTS_KEY, RESOLVED_KEY, ManifestSet, ResolvedDependencySet
from shipyard.errors import ManifestResolutionError
from shipyard.framework.inputs import BuildInputs
from shipyard.framework.runtime import BuildContext
from shipyard.impl.resolver import StorePlan, collect_manifests, prepare_store, save_store_to_cache, verify_store

KIND_ID = "build.resolve"
STORE_PLAN_KEY = "dependency_store_plan"


def _build(inputs: BuildInputs, *, instance_id: str, cfg: ConfigNamespace) -> Block:
    use_cache = cfg.get_bool("use_cache", default=True)
    verify_versions = cfg.get_bool("verify_versions", default=True)
    cfg.assert_consumed()
    build_cfg = inputs.cfg

    def _collect(ctx: BuildContext) -> ManifestSet:
        manifests, warnings = collect_manifests(build_cfg)
        for message in warnings:
            ctx.warn(message)
        ctx.logger.info(
            "Collected %d manifest input(s); input digest %s",
            len(manifests.input_files),
            manifests.input_digest[:12],
        )
        return manifests

    def _prepare(ctx: BuildContext) -> StorePlan:
        plan = prepare_store(
            ctx.outputs[MANIFESTS_KEY],
            store_dir=inputs.store_dir,
            cache_dir=build_cfg.cache_dir,
            install_command=build_cfg.install_command,
            use_cache=use_cache,
        )
        if plan.cache_hit:
            ctx.logger.info("Dependency cache hit %s; skipping install", plan.cache_key[:12])
        return plan

    def _needs_install(ctx: BuildContext) -> bool:
        return not ctx.outputs[STORE_PLAN_KEY].cache_hit

    def _install_failed(failure: CommandFailedError) -> Exception:
        return ManifestResolutionError(f"Dependency install failed: {failure}")

    def _verify(ctx: BuildContext) -> ResolvedDependencySet:
        plan: StorePlan = ctx.outputs[STORE_PLAN_KEY]
        resolved = verify_store(ctx.outputs[MANIFESTS_KEY], plan, verify_versions=verify_versions)
        if save_store_to_cache(plan, resolved):
            ctx.logger.info("Saved dependency store to cache %s", plan.cache_key[:12])
        return resolved

    return Block(
        name=instance_id,
        nodes=[
            ActionStep(name="collect_manifests", fn=_collect, capture_key=MANIFESTS_KEY),
            ActionStep(name="prepare_store", fn=_prepare, capture_key=STORE_PLAN_KEY),
            CommandStep(
                name="install",
                argv=list(build_cfg.install_command),
                cwd=inputs.store_dir,
                when=_needs_install,
                error_factory=_install_failed,
            ),
            ActionStep(name="verify_store", fn=_verify, capture_key=RESOLVED_KEY),
        ],
    )


STAGE = StageRef(
    id=KIND_ID,
    builder=_build,
    doc="Install the shared dependency store from manifests and the lockfile only.",
    source="impl.resolver",
    tags=("build",),
    kind="composite",
    io=StageIO(provides=(MANIFESTS_KEY, RESOLVED_KEY)),
)
