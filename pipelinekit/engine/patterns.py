"""Block builders shared by stages: fan a builder out over items, or chain nodes."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from pipelinekit.engine.pipeline import Block, Node

T = TypeVar("T")


def _block_name(name: Any, *, what: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise TypeError(f"{what} must be a non-empty string")
    return name.strip()


def _renamed(node: Node, name: str) -> Block:
    if isinstance(node, Block):
        return Block(name=name, nodes=list(node.nodes), capture_key=node.capture_key, meta=dict(node.meta))
    return Block(name=name, nodes=[node])


def iterate(
    name: str,
    *,
    items: Iterable[T],
    build: Callable[[T, int], Node],
    iteration_name: Callable[[T, int], str] | None = None,
    meta: dict[str, Any] | None = None,
) -> Block:
    """One child block per item, in item order.

    Children are named by `iteration_name(item, idx)` (idx starts at 1) or
    `iter_01`, `iter_02`, ... so step paths stay stable across runs.
    """

    name = _block_name(name, what="name")
    children: list[Block] = []
    seen: set[str] = set()
    for idx, item in enumerate(items, start=1):
        label = f"iter_{idx:02d}" if iteration_name is None else iteration_name(item, idx)
        if not isinstance(label, str) or not label.strip():
            raise ValueError("iteration_name must return a non-empty string")
        label = label.strip()
        if label in seen:
            raise ValueError(f"iterate {name}: duplicate iteration name {label!r}")
        seen.add(label)
        children.append(_renamed(build(item, idx), label))
    return Block(name=name, nodes=children, meta=dict(meta or {}))


def sequence(name: str, *nodes: Node, meta: dict[str, Any] | None = None) -> Block:
    name = _block_name(name, what="name")
    if not nodes:
        raise ValueError(f"sequence {name} requires at least one node")
    return Block(name=name, nodes=list(nodes), meta=dict(meta or {}))
