"""Generic stage compilation.

Turns an ordered list of stage instances into concrete stage blocks while
enforcing two rules that keep a pipeline's data flow forward-only:

- every key a stage `requires` must have been provided by an earlier stage
  (or be listed in `initial_outputs`);
- a capture key may be written by exactly one stage.

Stage-owned config is handed to each builder as a `ConfigNamespace`; keys a
builder does not consume fail compilation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from pipelinekit.config_namespace import ConfigNamespace
from pipelinekit.engine.pipeline import Block, Node
from pipelinekit.stage_types import StageInstance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledStages:
    blocks: tuple[Block, ...]
    metadata: dict[str, Any]

    def stage_ids(self) -> tuple[str, ...]:
        return tuple(block.name or "" for block in self.blocks)


def _collect_capture_keys(node: Node, *, path: str, seen: dict[str, str]) -> None:
    key = getattr(node, "capture_key", None)
    if key:
        if key in seen:
            raise ValueError(f"Duplicate capture_key {key!r} at {path} (already captured at {seen[key]})")
        seen[key] = path
    if isinstance(node, Block):
        for idx, child in enumerate(node.nodes):
            child_name = getattr(child, "name", None) or f"node_{idx + 1:02d}"
            _collect_capture_keys(child, path=f"{path}/{child_name}", seen=seen)


def compile_stages(
    stage_nodes: list[StageInstance],
    *,
    stage_configs: Mapping[str, Mapping[str, Any]],
    inputs: Any,
    initial_outputs: tuple[str, ...] | list[str] | set[str] = (),
    config_path: str = "stages",
) -> CompiledStages:
    """Compile stage instances into stage blocks with strict IO + config validation."""

    stage_ids: list[str] = []
    for idx, node in enumerate(stage_nodes):
        if not isinstance(node, StageInstance):
            raise TypeError(
                f"stage_nodes[{idx}] must be a StageInstance (type={type(node).__name__}, value={node!r})"
            )
        if node.instance_id in stage_ids:
            raise ValueError(f"Duplicate stage id: {node.instance_id}")
        stage_ids.append(node.instance_id)

    # Config for a stage that is not in the pipeline is a mistake, not a no-op.
    leftovers = sorted(set(stage_configs) - set(stage_ids))
    if leftovers:
        raise ValueError(
            f"Config under {config_path} for unknown stage(s): {', '.join(leftovers)} "
            f"(available: {', '.join(stage_ids) or '<none>'})"
        )

    provided = {str(item).strip() for item in initial_outputs if str(item).strip()}
    capture_owner: dict[str, str] = {}
    stage_io: dict[str, dict[str, list[str]]] = {}
    effective_configs: dict[str, dict[str, Any]] = {}
    blocks: list[Block] = []

    for node in stage_nodes:
        stage_id = node.instance_id
        ref = node.stage

        missing = [key for key in ref.io.requires if key not in provided]
        if missing:
            raise ValueError(
                "Stage IO validation failed: "
                f"stage={stage_id} kind={ref.id} missing_required_outputs={', '.join(missing)}"
            )

        raw_cfg = stage_configs.get(stage_id) or {}
        if not isinstance(raw_cfg, Mapping):
            raise TypeError(
                f"{config_path}.{stage_id} must be a mapping (type={type(raw_cfg).__name__})"
            )
        cfg_ns = ConfigNamespace(dict(raw_cfg), path=f"{config_path}.{stage_id}")

        try:
            block = ref.build(inputs, instance_id=stage_id, cfg=cfg_ns)
            cfg_ns.assert_consumed()
        except Exception as exc:
            raise ValueError(f"Stage config/build failed: stage={stage_id} kind={ref.id}: {exc}") from exc

        effective = cfg_ns.effective_values()
        if effective:
            effective_configs[stage_id] = effective

        captured: dict[str, str] = {}
        _collect_capture_keys(block, path=f"pipeline/{stage_id}", seen=captured)
        for key in captured:
            owner = capture_owner.setdefault(key, stage_id)
            if owner != stage_id:
                raise ValueError(f"Capture key collision: {key} (stages: {owner}, {stage_id})")

        undeclared = sorted(key for key in ref.io.provides if key not in captured)
        if undeclared:
            logger.debug(
                "Stage %s declares provides without a matching capture: %s",
                stage_id,
                ", ".join(undeclared),
            )

        stage_io[stage_id] = {
            "requires": list(ref.io.requires),
            "provides": list(ref.io.provides),
            "captures": sorted(captured),
        }
        provided.update(ref.io.provides)
        provided.update(captured)
        blocks.append(block)

    metadata: dict[str, Any] = {
        "stage_instances": [
            {"instance": node.instance_id, "kind": node.stage.id} for node in stage_nodes
        ],
        "stage_io": stage_io,
    }
    if effective_configs:
        metadata["stage_configs_effective"] = effective_configs
    return CompiledStages(blocks=tuple(blocks), metadata=metadata)
