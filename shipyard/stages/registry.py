from __future__ import annotations

from functools import lru_cache

from pipelinekit.stage_registry import StageRegistry
from pipelinekit.stage_types import StageInstance, StageRef


@lru_cache(maxsize=1)
def get_stage_registry() -> StageRegistry:
    # Import side-effect: stage modules define `STAGE` symbols collected here.
    from shipyard.stages import build  # noqa: PLC0415

    refs: list[StageRef] = list(build.__all_stages__)
    return StageRegistry.from_refs(refs)


def default_stage_sequence() -> list[StageInstance]:
    """The build pipeline: each stage once, instance ids without the `build.` prefix."""

    from shipyard.stages import build  # noqa: PLC0415

    return [ref.instance(ref.id.split(".", 1)[-1]) for ref in build.__all_stages__]
