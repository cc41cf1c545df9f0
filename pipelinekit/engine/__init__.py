"""Engine primitives for building and running Block/Step trees."""

from pipelinekit.engine.patterns import iterate, sequence
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

__all__ = [
    "ActionStep",
    "Block",
    "CommandExecutor",
    "CommandFailedError",
    "CommandResult",
    "CommandStep",
    "DefaultStepRecorder",
    "FlowContext",
    "Node",
    "NullStepRecorder",
    "PipelineRunner",
    "StepRecorder",
    "SubprocessExecutor",
    "iterate",
    "sequence",
    "utc_now_iso8601",
]
