"""Stage declarations: what a stage builds, what it reads and what it publishes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from pipelinekit.config_namespace import ConfigNamespace
from pipelinekit.engine.pipeline import Block

StageKind = Literal["command", "action", "composite"]
STAGE_KINDS: tuple[str, ...] = ("command", "action", "composite")


def _keys(values: Any, *, label: str) -> tuple[str, ...]:
    out = tuple(str(value).strip() for value in values)
    if any(not value for value in out):
        raise ValueError(f"{label} entries must be non-empty strings")
    if len(set(out)) != len(out):
        raise ValueError(f"{label} contains duplicates: {', '.join(out)}")
    return out


@dataclass(frozen=True)
class StageIO:
    """Output keys a stage reads (`requires`) and publishes (`provides`)."""

    requires: tuple[str, ...] = ()
    provides: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "requires", _keys(self.requires, label="StageIO.requires"))
        object.__setattr__(self, "provides", _keys(self.provides, label="StageIO.provides"))
        both = sorted(set(self.requires) & set(self.provides))
        if both:
            raise ValueError(f"StageIO keys cannot be both required and provided: {', '.join(both)}")


class StageBuilder(Protocol):
    def __call__(self, inputs: Any, *, instance_id: str, cfg: ConfigNamespace) -> Block:
        ...


@dataclass(frozen=True)
class StageRef:
    """A registered stage kind.

    `id` is the kind (for example `build.prune`); one kind can be placed in a
    sequence several times under different instance ids. `build()` checks the
    builder's Block and stamps it with `stage_kind`/`stage_instance` plus the
    ref's doc, source and tags so step records can say where they came from.
    """

    id: str
    builder: StageBuilder
    doc: str | None = None
    source: str | None = None
    tags: tuple[str, ...] = ()
    kind: StageKind | None = None
    io: StageIO = field(default_factory=StageIO)

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise TypeError("StageRef.id must be a non-empty string")
        object.__setattr__(self, "id", self.id.strip())
        for attr in ("doc", "source"):
            value = getattr(self, attr)
            if value is not None and (not isinstance(value, str) or not value.strip()):
                raise TypeError(f"StageRef.{attr} must be a non-empty string or None")
            object.__setattr__(self, attr, value.strip() if value else None)
        object.__setattr__(self, "tags", tuple(t for t in (str(tag).strip() for tag in self.tags) if t))
        if self.kind is not None:
            kind = str(self.kind).strip().lower()
            if kind not in STAGE_KINDS:
                raise ValueError(f"StageRef.kind must be one of: {', '.join(STAGE_KINDS)} (got {self.kind!r})")
            object.__setattr__(self, "kind", kind)

    def instance(self, instance_id: str | None = None) -> "StageInstance":
        return StageInstance(stage=self, instance_id=instance_id or self.id)

    def _stamp(self, meta: dict[str, Any], instance_id: str) -> dict[str, Any]:
        stamped = dict(meta)
        for key, expected in (("stage_kind", self.id), ("stage_instance", instance_id)):
            current = stamped.setdefault(key, expected)
            if not isinstance(current, str) or current.strip() != expected:
                raise ValueError(f"Stage builder returned conflicting meta.{key}: expected={expected} got={current!r}")
        defaults = {"doc": self.doc, "source": self.source, "tags": list(self.tags)}
        for key, value in defaults.items():
            if value and key not in stamped:
                stamped[key] = value
        return stamped

    def build(self, inputs: Any, *, instance_id: str, cfg: ConfigNamespace) -> Block:
        if not isinstance(instance_id, str) or not instance_id.strip():
            raise ValueError("instance_id must be a non-empty string")
        instance_id = instance_id.strip()

        block = self.builder(inputs, instance_id=instance_id, cfg=cfg)
        if not isinstance(block, Block):
            raise TypeError(f"Stage builder returned non-Block (stage={self.id}, type={type(block).__name__})")
        if block.name != instance_id:
            raise ValueError(
                f"Stage builder returned mismatched Block.name: expected={instance_id} got={block.name}"
            )
        meta = self._stamp(block.meta, instance_id)
        if meta == block.meta:
            return block
        return Block(name=block.name, nodes=list(block.nodes), capture_key=block.capture_key, meta=meta)


@dataclass(frozen=True)
class StageInstance:
    """A StageRef placed in a sequence under `instance_id`."""

    stage: StageRef
    instance_id: str

    def __post_init__(self) -> None:
        if not isinstance(self.instance_id, str) or not self.instance_id.strip():
            raise TypeError("StageInstance.instance_id must be a non-empty string")
        object.__setattr__(self, "instance_id", self.instance_id.strip())
