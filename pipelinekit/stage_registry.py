from __future__ import annotations

import difflib
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from pipelinekit.stage_types import StageRef


class StageRegistry(Mapping[str, StageRef]):
    """Stage kinds by id; lookups accept the short name after the last dot."""

    def __init__(self, refs: Mapping[str, StageRef]) -> None:
        self._refs = dict(sorted(refs.items()))

    @classmethod
    def from_refs(cls, refs: Iterable[StageRef]) -> "StageRegistry":
        by_id: dict[str, StageRef] = {}
        for ref in refs:
            if ref.id in by_id:
                raise ValueError(f"Duplicate stage kind id: {ref.id}")
            by_id[ref.id] = ref
        return cls(by_id)

    def __getitem__(self, stage_id: str) -> StageRef:
        return self._refs[stage_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._refs)

    def __len__(self) -> int:
        return len(self._refs)

    def available(self) -> tuple[str, ...]:
        return tuple(self._refs)

    def describe(self) -> list[dict[str, Any]]:
        out = []
        for ref in self._refs.values():
            out.append(
                {
                    "stage_id": ref.id,
                    "doc": ref.doc,
                    "source": ref.source,
                    "tags": list(ref.tags),
                    "kind": ref.kind,
                    "io": {"requires": list(ref.io.requires), "provides": list(ref.io.provides)},
                }
            )
        return out

    def _short_matches(self, name: str) -> list[str]:
        return [stage_id for stage_id in self._refs if stage_id.rsplit(".", 1)[-1] == name]

    def resolve(self, stage_id: str) -> StageRef:
        if not isinstance(stage_id, str) or not stage_id.strip():
            raise ValueError("stage_id must be a non-empty string")
        key = stage_id.strip()
        if key in self._refs:
            return self._refs[key]

        matches = self._short_matches(key) if "." not in key else []
        if len(matches) == 1:
            return self._refs[matches[0]]
        if matches:
            raise ValueError(f"Ambiguous stage kind id: {stage_id} (matches: {', '.join(matches)})")

        message = f"Unknown stage kind id: {stage_id} (available: {', '.join(self._refs) or '<none>'}"
        hints = self.suggest(key)
        if hints:
            message += f"; did you mean: {', '.join(hints)}"
        raise ValueError(message + ")")

    def suggest(self, stage_id: str, *, limit: int = 3) -> tuple[str, ...]:
        key = (stage_id or "").strip()
        if not key:
            return ()
        short = {stage_id.rsplit(".", 1)[-1]: stage_id for stage_id in self._refs}
        hits = difflib.get_close_matches(key, list(short), n=limit)
        if hits:
            return tuple(short[hit] for hit in hits)
        return tuple(difflib.get_close_matches(key, list(self._refs), n=limit))
