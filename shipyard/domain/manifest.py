from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Mapping

from shipyard.errors import ManifestResolutionError

MANIFEST_FILENAME = "package.json"

# Dependency groups that must survive pruning. `devDependencies` is never here.
PRODUCTION_GROUPS: tuple[str, ...] = (
    "dependencies",
    "optionalDependencies",
    "peerDependencies",
)


def _string_map(payload: Mapping[str, Any], key: str, *, path: str) -> dict[str, str]:
    raw = payload.get(key)
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ManifestResolutionError(f"{path}: '{key}' must be an object (got {type(raw).__name__})")
    out: dict[str, str] = {}
    for name, spec in raw.items():
        if not isinstance(name, str) or not name.strip():
            raise ManifestResolutionError(f"{path}: '{key}' contains an empty package name")
        out[name] = str(spec)
    return out


def _workspace_globs(payload: Mapping[str, Any], *, path: str) -> tuple[str, ...]:
    raw = payload.get("workspaces")
    if raw is None:
        return ()
    # Yarn-style {"packages": [...]} is accepted alongside npm's plain list.
    if isinstance(raw, Mapping):
        raw = raw.get("packages", [])
    if isinstance(raw, str) or not isinstance(raw, list):
        raise ManifestResolutionError(f"{path}: 'workspaces' must be a list of paths")
    return tuple(str(item).strip().rstrip("/") for item in raw if str(item).strip())


@dataclass(frozen=True)
class Manifest:
    """A package's declared metadata and dependency lists."""

    name: str
    version: str | None
    path: str
    dependencies: Mapping[str, str] = field(default_factory=dict)
    dev_dependencies: Mapping[str, str] = field(default_factory=dict)
    optional_dependencies: Mapping[str, str] = field(default_factory=dict)
    peer_dependencies: Mapping[str, str] = field(default_factory=dict)
    scripts: Mapping[str, str] = field(default_factory=dict)
    workspaces: tuple[str, ...] = ()
    private: bool = False

    @property
    def directory(self) -> str:
        return os.path.dirname(self.path)

    def production_dependencies(self) -> dict[str, str]:
        merged: dict[str, str] = {}
        merged.update(self.peer_dependencies)
        merged.update(self.optional_dependencies)
        merged.update(self.dependencies)
        return merged

    def all_dependencies(self) -> dict[str, str]:
        merged = dict(self.dev_dependencies)
        merged.update(self.production_dependencies())
        return merged

    def is_optional(self, name: str) -> bool:
        return name in self.optional_dependencies and name not in self.dependencies

    @staticmethod
    def from_dict(payload: Mapping[str, Any], *, path: str) -> "Manifest":
        if not isinstance(payload, Mapping):
            raise ManifestResolutionError(f"{path}: manifest must be a JSON object")
        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ManifestResolutionError(f"{path}: manifest is missing a 'name'")
        version = payload.get("version")
        return Manifest(
            name=name.strip(),
            version=str(version) if version is not None else None,
            path=path,
            dependencies=_string_map(payload, "dependencies", path=path),
            dev_dependencies=_string_map(payload, "devDependencies", path=path),
            optional_dependencies=_string_map(payload, "optionalDependencies", path=path),
            peer_dependencies=_string_map(payload, "peerDependencies", path=path),
            scripts=_string_map(payload, "scripts", path=path),
            workspaces=_workspace_globs(payload, path=path),
            private=bool(payload.get("private", False)),
        )


def load_manifest(path: str) -> Manifest:
    if not os.path.isfile(path):
        raise ManifestResolutionError(f"Missing manifest: {path}")
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except json.JSONDecodeError as exc:
        raise ManifestResolutionError(f"Invalid JSON in manifest {path}: {exc}") from exc
    return Manifest.from_dict(payload, path=os.path.abspath(path))


def manifest_files(directory: str) -> list[str]:
    """`package.json` plus any lockfile next to it (`package*.json`), sorted."""

    if not os.path.isdir(directory):
        return []
    return sorted(
        os.path.join(directory, name)
        for name in os.listdir(directory)
        if name.startswith("package") and name.endswith(".json")
        and os.path.isfile(os.path.join(directory, name))
    )
