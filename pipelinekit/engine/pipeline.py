"""Execution engine for Block/Step trees.

This module is intentionally app-agnostic and must not import `shipyard.*`.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol, Sequence, TypeAlias

OUTPUT_TAIL_CHARS = 2000


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class FlowContext(Protocol):
    logger: logging.Logger
    outputs: dict[str, Any]
    steps: list[dict[str, Any]]


def _normalize_name(value: Any, *, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{label} must be a string or None (type={type(value).__name__})")
    name = value.strip()
    if not name:
        raise ValueError(f"{label} cannot be empty")
    return name


def _tail(text: str | None, limit: int = OUTPUT_TAIL_CHARS) -> str:
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    elapsed_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandFailedError(RuntimeError):
    """Raised when a CommandStep's process exits non-zero (or cannot be started)."""

    def __init__(self, result: CommandResult, *, step_name: str):
        self.result = result
        self.step_name = step_name
        detail = _tail(result.stderr) or _tail(result.stdout)
        message = (
            f"Command failed in step {step_name} "
            f"(exit={result.returncode}): {' '.join(result.argv)}"
        )
        if detail.strip():
            message = f"{message}\n{detail.strip()}"
        super().__init__(message)


class CommandExecutor(Protocol):
    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str | None,
        env: Mapping[str, str],
    ) -> CommandResult:
        ...


class SubprocessExecutor:
    """Runs commands with `subprocess.run`, inheriting the current environment."""

    def __init__(self, *, timeout_s: float | None = None):
        self.timeout_s = timeout_s

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str | None,
        env: Mapping[str, str],
    ) -> CommandResult:
        args = tuple(str(item) for item in argv)
        merged_env = dict(os.environ)
        merged_env.update({str(k): str(v) for k, v in env.items()})
        started = time.monotonic()
        try:
            proc = subprocess.run(
                list(args),
                cwd=cwd,
                env=merged_env,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
            )
        except FileNotFoundError as exc:
            return CommandResult(
                argv=args,
                returncode=127,
                stderr=str(exc),
                elapsed_s=time.monotonic() - started,
            )
        except subprocess.TimeoutExpired as exc:
            return CommandResult(
                argv=args,
                returncode=124,
                stdout=exc.stdout if isinstance(exc.stdout, str) else "",
                stderr=f"Timed out after {self.timeout_s}s",
                elapsed_s=time.monotonic() - started,
            )
        return CommandResult(
            argv=args,
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            elapsed_s=time.monotonic() - started,
        )


@dataclass(frozen=True)
class CommandStep:
    """Runs one external command; a non-zero exit fails the step."""

    name: str | None
    argv: Sequence[str] | Callable[[FlowContext], Sequence[str]]
    cwd: str | Callable[[FlowContext], str] | None = None
    env: dict[str, str] = field(default_factory=dict)
    capture_key: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    # Skip the command (result None) when this returns False.
    when: Callable[[FlowContext], bool] | None = None
    # Maps a CommandFailedError to the exception the step should raise instead.
    error_factory: Callable[[CommandFailedError], Exception] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _normalize_name(self.name, label="Step name"))
        if self.when is not None and not callable(self.when):
            raise TypeError("Step when must be callable or None")
        if self.error_factory is not None and not callable(self.error_factory):
            raise TypeError("Step error_factory must be callable or None")
        object.__setattr__(
            self, "capture_key", _normalize_name(self.capture_key, label="Step capture_key")
        )
        if not callable(self.argv):
            if isinstance(self.argv, str) or not isinstance(self.argv, Sequence):
                raise TypeError("Step argv must be a sequence of strings or a callable")
            if not self.argv:
                raise ValueError("Step argv cannot be empty")
        if not isinstance(self.env, dict):
            raise TypeError(f"Step env must be a dict (type={type(self.env).__name__})")
        if not isinstance(self.meta, dict):
            raise TypeError(f"Step meta must be a dict (type={type(self.meta).__name__})")

    def render_argv(self, ctx: FlowContext, *, step_name: str | None = None) -> tuple[str, ...]:
        label = step_name or self.name or "<unnamed>"
        raw = self.argv(ctx) if callable(self.argv) else self.argv
        if raw is None:
            raise ValueError(f"Step {label} produced None argv")
        if isinstance(raw, str) or not isinstance(raw, Sequence):
            raise TypeError(f"Step {label} produced non-sequence argv (type={type(raw).__name__})")
        argv = tuple(str(item) for item in raw)
        if not argv or not argv[0].strip():
            raise ValueError(f"Step {label} produced empty argv")
        return argv

    def render_cwd(self, ctx: FlowContext) -> str | None:
        if self.cwd is None:
            return None
        return str(self.cwd(ctx)) if callable(self.cwd) else str(self.cwd)


@dataclass(frozen=True)
class ActionStep:
    """Pure-Python glue execution node."""

    name: str | None
    fn: Callable[[FlowContext], Any]
    capture_key: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _normalize_name(self.name, label="Action name"))
        if not callable(self.fn):
            raise TypeError(f"Action fn must be callable (type={type(self.fn).__name__})")
        object.__setattr__(
            self, "capture_key", _normalize_name(self.capture_key, label="Action capture_key")
        )
        if not isinstance(self.meta, dict):
            raise TypeError(f"Action meta must be a dict (type={type(self.meta).__name__})")


@dataclass(frozen=True)
class Block:
    name: str | None = None
    nodes: list["Node"] = field(default_factory=list)
    capture_key: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _normalize_name(self.name, label="Block name"))
        object.__setattr__(
            self, "capture_key", _normalize_name(self.capture_key, label="Block capture_key")
        )
        if not isinstance(self.meta, dict):
            raise TypeError(f"Block meta must be a dict (type={type(self.meta).__name__})")


Node: TypeAlias = CommandStep | ActionStep | Block


_RECORDER_HOOKS = ("on_step_start", "on_step_end", "on_step_error")


class StepRecorder(Protocol):
    def on_step_start(self, ctx: FlowContext, path: str, **metrics: Any) -> None:
        ...

    def on_step_end(self, ctx: FlowContext, record: dict[str, Any]) -> None:
        ...

    def on_step_error(self, ctx: FlowContext, path: str, step_name: str, exc: Exception) -> None:
        ...


def _text(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None


class DefaultStepRecorder:
    """Logs each step through `ctx.logger` and appends its record to `ctx.steps`."""

    def on_step_start(self, ctx: FlowContext, path: str, **metrics: Any) -> None:
        parts = [f"type={metrics.get('node_type')}"]
        parts += [f"{key}={_text(metrics.get(key))}" for key in ("stage_id", "source") if _text(metrics.get(key))]
        if _text(metrics.get("doc")):
            parts.append(f"doc={json.dumps(_text(metrics['doc']), ensure_ascii=False)}")
        if metrics.get("argv"):
            parts.append(f"argv={json.dumps(list(metrics['argv']), ensure_ascii=False)}")
        if _text(metrics.get("cwd")):
            parts.append(f"cwd={metrics['cwd']}")
        ctx.logger.info("Step: %s (%s)", path, ", ".join(parts))

    def on_step_end(self, ctx: FlowContext, record: dict[str, Any]) -> None:
        ctx.steps.append(record)
        meta = record.get("meta") or {}
        parts = [f"{key}={_text(meta.get(key))}" for key in ("stage_id", "source") if _text(meta.get(key))]
        if record.get("type") == "command":
            parts[:0] = [f"exit={record.get('returncode', 0)}", f"elapsed_s={record.get('elapsed_s', 0.0):.2f}"]
        suffix = f" ({', '.join(parts)})" if parts else ""
        ctx.logger.info("Completed %s %s%s", record.get("type"), record.get("path"), suffix)

    def on_step_error(self, ctx: FlowContext, path: str, step_name: str, exc: Exception) -> None:
        ctx.logger.error("Step failed: %s (%s)", path, exc)


class NullStepRecorder:
    """Records nothing; `ctx.steps` stays empty."""

    def on_step_start(self, ctx: FlowContext, path: str, **metrics: Any) -> None:
        return None

    def on_step_end(self, ctx: FlowContext, record: dict[str, Any]) -> None:
        return None

    def on_step_error(self, ctx: FlowContext, path: str, step_name: str, exc: Exception) -> None:
        return None


def _jsonable(value: Any, depth: int = 4, limit: int = 25) -> Any:
    """Bounded JSON-friendly view of a step result; objects may offer `summary()`."""

    if depth <= 0:
        return "<max_depth>"
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if callable(getattr(value, "summary", None)):
        return _jsonable(value.summary(), depth, limit)
    if isinstance(value, (list, tuple)):
        out = [_jsonable(item, depth - 1, limit) for item in value[:limit]]
        if len(value) > limit:
            out.append(f"<{len(value) - limit} more>")
        return out
    if isinstance(value, dict):
        items = list(value.items())
        out_map = {str(k): _jsonable(v, depth - 1, limit) for k, v in items[:limit]}
        if len(items) > limit:
            out_map["<more>"] = f"<{len(items) - limit} more>"
        return out_map
    return repr(value)


def _node_type(node: Node) -> str:
    if isinstance(node, CommandStep):
        return "command"
    if isinstance(node, ActionStep):
        return "action"
    if isinstance(node, Block):
        return "block"
    raise TypeError(f"Unsupported pipeline node type: {type(node).__name__}")


@dataclass(frozen=True)
class _Frame:
    """Where a node sits in the tree and the meta its enclosing blocks hand down."""

    segments: tuple[str, ...]
    scope: dict[str, Any]

    @property
    def path(self) -> str:
        return "/".join(self.segments)

    @property
    def name(self) -> str:
        return self.segments[-1]

    def enter(self, name: str, scope: dict[str, Any]) -> "_Frame":
        return _Frame((*self.segments, name), scope)

    def step_meta(self, own: dict[str, Any], origin: Any = None) -> dict[str, Any]:
        meta = {**self.scope, **own}
        # Top-level blocks under "pipeline" are stages.
        if "stage_id" not in meta and len(self.segments) >= 2 and self.segments[0] == "pipeline":
            meta["stage_id"] = self.segments[1]
        if "source" not in meta and callable(origin):
            qualname = getattr(origin, "__qualname__", None) or getattr(origin, "__name__", "<callable>")
            meta["source"] = f"{getattr(origin, '__module__', None) or '<unknown_module>'}.{qualname}"
        return meta

    def record(self, node_type: str, meta: dict[str, Any], **fields: Any) -> dict[str, Any]:
        rec: dict[str, Any] = {"type": node_type, "name": self.name, "path": self.path, **fields}
        rec["created_at"] = utc_now_iso8601()
        if meta:
            rec["meta"] = _jsonable(meta)
        return rec


def _tag_failure(exc: Exception, frame: _Frame, node_type: str) -> None:
    # The innermost node tags the exception; enclosing blocks leave it alone.
    if hasattr(exc, "pipeline_path"):
        return
    try:
        exc.pipeline_path = frame.path  # type: ignore[attr-defined]
        exc.pipeline_node_type = node_type  # type: ignore[attr-defined]
        exc.pipeline_node_name = frame.name  # type: ignore[attr-defined]
    except AttributeError:
        pass


class PipelineRunner:
    """Runs a node tree depth-first, in declaration order; the first failure aborts the run.

    Steps are addressed by slash-joined paths (`pipeline/<stage>/<step>`).
    Unnamed nodes get positional names (`command_01`, `block_02`, ...), and
    sibling names must be unique. A failing step's exception gets
    `pipeline_path`, `pipeline_node_type` and `pipeline_node_name`
    attributes before it propagates.
    """

    def __init__(self, *, executor: CommandExecutor | None = None, recorder: StepRecorder | None = None):
        self._executor = executor or SubprocessExecutor()
        self._recorder = recorder or DefaultStepRecorder()
        for hook in _RECORDER_HOOKS:
            if not callable(getattr(self._recorder, hook, None)):
                raise TypeError(f"Step recorder missing required method: {hook}")

    def run(self, ctx: FlowContext, node: Node) -> Any:
        default = "pipeline" if isinstance(node, Block) else f"{_node_type(node)}_01"
        return self._visit(ctx, node, _Frame((node.name or default,), {}))

    def run_stages(self, ctx: FlowContext, stages: Sequence[Block]) -> Any:
        return self.run(ctx, Block(name="pipeline", nodes=list(stages)))

    def _visit(self, ctx: FlowContext, node: Node, frame: _Frame) -> Any:
        node_type = _node_type(node)
        try:
            if isinstance(node, Block):
                return self._block(ctx, node, frame)
            if isinstance(node, CommandStep):
                return self._command(ctx, node, frame)
            return self._action(ctx, node, frame)
        except Exception as exc:
            if node_type != "block" and not hasattr(exc, "pipeline_path"):
                try:
                    self._recorder.on_step_error(ctx, frame.path, frame.name, exc)
                except Exception:
                    ctx.logger.exception("Step recorder failed during error handling for %s", frame.path)
            _tag_failure(exc, frame, node_type)
            raise

    def _block(self, ctx: FlowContext, block: Block, frame: _Frame) -> Any:
        names = [child.name or f"{_node_type(child)}_{idx:02d}" for idx, child in enumerate(block.nodes, start=1)]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate node name(s) in block {frame.path}: {', '.join(duplicates)}")

        scope = {**frame.scope, **block.meta}
        last: Any = None
        for child, name in zip(block.nodes, names, strict=True):
            result = self._visit(ctx, child, frame.enter(name, scope))
            if result is not None:
                last = result

        if block.capture_key:
            if last is None:
                raise ValueError(
                    f"Block {frame.path} capture_key={block.capture_key} requested but no child produced a result"
                )
            ctx.outputs[block.capture_key] = last
        return last

    def _command(self, ctx: FlowContext, step: CommandStep, frame: _Frame) -> CommandResult | None:
        meta = frame.step_meta(step.meta, step.argv if callable(step.argv) else None)
        if step.when is not None and not step.when(ctx):
            ctx.logger.info("Skipped command %s (condition not met)", frame.path)
            ctx.steps.append(frame.record("command", meta, skipped=True))
            return None

        argv = step.render_argv(ctx, step_name=frame.name)
        cwd = step.render_cwd(ctx)
        self._recorder.on_step_start(
            ctx,
            frame.path,
            node_type="command",
            stage_id=meta.get("stage_id"),
            source=meta.get("source"),
            doc=meta.get("doc"),
            argv=argv,
            cwd=cwd,
        )
        result = self._executor.run(argv, cwd=cwd, env=dict(step.env))
        if not isinstance(result, CommandResult):
            raise TypeError(f"Command executor returned {type(result).__name__} for step {frame.name}")
        for stream, text in (("stdout", result.stdout), ("stderr", result.stderr)):
            if text.strip():
                ctx.logger.debug("%s for %s:\n%s", stream, frame.path, _tail(text))
        if not result.ok:
            failure = CommandFailedError(result, step_name=frame.name)
            if step.error_factory is None:
                raise failure
            raise step.error_factory(failure) from failure

        self._recorder.on_step_end(
            ctx,
            frame.record(
                "command",
                meta,
                argv=list(argv),
                cwd=cwd,
                returncode=result.returncode,
                elapsed_s=round(result.elapsed_s, 3),
            ),
        )
        if step.capture_key:
            ctx.outputs[step.capture_key] = result
        return result

    def _action(self, ctx: FlowContext, action: ActionStep, frame: _Frame) -> Any:
        meta = frame.step_meta(action.meta, action.fn)
        self._recorder.on_step_start(
            ctx,
            frame.path,
            node_type="action",
            stage_id=meta.get("stage_id"),
            source=meta.get("source"),
            doc=meta.get("doc"),
        )
        result = action.fn(ctx)
        if action.capture_key is not None:
            ctx.outputs[action.capture_key] = result

        extra = {} if result is None else {"result": _jsonable(result)}
        self._recorder.on_step_end(ctx, frame.record("action", meta, **extra))
        return result
