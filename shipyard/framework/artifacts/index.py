from __future__ import annotations

import json
import os
import uuid
from datetime import datetime
from typing import Any, Mapping

BUILD_INDEX_FILENAME = "builds_index.jsonl"


def generate_build_id() -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{timestamp}_{uuid.uuid4().hex[:8]}"


def append_build_index_entry(path: str, entry: Mapping[str, Any]) -> None:
    """
    Append a single JSON object to a JSONL build index file.

    The caller is responsible for building a schema_versioned entry object.
    """

    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(dict(entry), ensure_ascii=False))
        handle.write("\n")


def read_build_index(path: str) -> list[dict[str, Any]]:
    """Read every entry of a build index; malformed lines raise ValueError with the line number."""

    if not os.path.exists(path):
        return []
    entries: list[dict[str, Any]] = []
    with open(path, "r", encoding="utf-8") as handle:
        for lineno, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid JSON in {path} line {lineno}: {exc}") from exc
            if not isinstance(entry, dict):
                raise ValueError(f"Invalid build index entry in {path} line {lineno}: expected object")
            entries.append(entry)
    return entries
