from __future__ import annotations

import json
import os
from typing import Any

from shipyard.framework.runtime import BuildContext


def transcript_path(log_dir: str, build_id: str) -> str:
    return os.path.join(log_dir, f"{build_id}_transcript.json")


def _summarize(value: Any) -> Any:
    to_summary = getattr(value, "summary", None)
    if callable(to_summary):
        return to_summary()
    return None


def write_transcript(path: str, ctx: BuildContext) -> None:
    payload: dict[str, Any] = {
        "build_id": ctx.build_id,
        "created_at": ctx.created_at,
        "source_dir": ctx.cfg.source_dir,
        "image_name": ctx.cfg.image_name,
        "workspaces": [ws.name for ws in ctx.cfg.workspaces],
        "identity": ctx.cfg.identity.owner,
        "steps": list(ctx.steps),
        "image_path": ctx.image_path,
    }

    artifacts: dict[str, Any] = {}
    for key, value in ctx.outputs.items():
        summary = _summarize(value)
        if summary is not None:
            artifacts[key] = summary
    if artifacts:
        payload["artifacts"] = artifacts
    if ctx.warnings:
        payload["warnings"] = list(ctx.warnings)
    if ctx.error is not None:
        payload["error"] = ctx.error

    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as file:
        json.dump(payload, file, ensure_ascii=False, indent=2)
        file.write("\n")
