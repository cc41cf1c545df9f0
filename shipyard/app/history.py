from __future__ import annotations

import os

import pandas as pd

from shipyard.framework.artifacts import BUILD_INDEX_FILENAME, read_build_index

HISTORY_COLUMNS = [
    "build_id",
    "created_at",
    "status",
    "phase",
    "elapsed_s",
    "image_id",
    "layers",
    "layer_cache_hits",
    "warnings",
    "error_type",
]


def load_build_history(log_dir: str) -> pd.DataFrame:
    """Build index as a DataFrame, newest first; empty (with columns) when no builds ran yet."""

    entries = read_build_index(os.path.join(log_dir, BUILD_INDEX_FILENAME))
    rows = []
    for entry in entries:
        row = {column: entry.get(column) for column in HISTORY_COLUMNS}
        error = entry.get("error")
        row["error_type"] = error.get("type") if isinstance(error, dict) else None
        rows.append(row)
    df = pd.DataFrame(rows, columns=HISTORY_COLUMNS)
    if df.empty:
        return df
    return df.sort_values("created_at", ascending=False, kind="stable").reset_index(drop=True)


def summarize_history(df: pd.DataFrame) -> dict[str, object]:
    if df.empty:
        return {"builds": 0, "succeeded": 0, "failed": 0, "cache_hit_rate": None}
    layers = pd.to_numeric(df["layers"], errors="coerce").fillna(0).sum()
    hits = pd.to_numeric(df["layer_cache_hits"], errors="coerce").fillna(0).sum()
    return {
        "builds": int(len(df)),
        "succeeded": int((df["status"] == "success").sum()),
        "failed": int((df["status"] == "error").sum()),
        "cache_hit_rate": round(float(hits / layers), 3) if layers else None,
    }


def format_history(df: pd.DataFrame, *, limit: int | None = 20) -> str:
    if df.empty:
        return "No builds recorded."
    view = df if limit is None else df.head(limit)
    view = view.fillna("")
    return view.to_string(index=False)
