"""Reusable pipeline kernel (engine primitives + stage authoring kit).

This package is intentionally independent of `shipyard.*`. Project-specific
conventions (which stages exist, what their artifacts look like, where builds
write their records) live in the consuming application.
"""

from pipelinekit.compiler import CompiledStages, compile_stages
from pipelinekit.config_namespace import ConfigNamespace
from pipelinekit.engine.pipeline import (
    ActionStep,
    Block,
    CommandExecutor,
    CommandFailedError,
    CommandResult,
    CommandStep,
    DefaultStepRecorder,
    FlowContext,
    Node,
    NullStepRecorder,
    PipelineRunner,
    StepRecorder,
    SubprocessExecutor,
    utc_now_iso8601,
)
from pipelinekit.stage_registry import StageRegistry
from pipelinekit.stage_types import StageBuilder, StageInstance, StageIO, StageKind, StageRef

__all__ = [
    "ActionStep",
    "Block",
    "CommandExecutor",
    "CommandFailedError",
    "CommandResult",
    "CommandStep",
    "CompiledStages",
    "ConfigNamespace",
    "DefaultStepRecorder",
    "FlowContext",
    "Node",
    "NullStepRecorder",
    "PipelineRunner",
    "StageBuilder",
    "StageIO",
    "StageInstance",
    "StageKind",
    "StageRef",
    "StageRegistry",
    "StepRecorder",
    "SubprocessExecutor",
    "compile_stages",
    "utc_now_iso8601",
]
