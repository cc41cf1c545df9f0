"""Stage artifacts.

Each build stage publishes exactly one of these under its capture key. They
are frozen once produced; a later stage reads them and writes its own output
somewhere new instead of mutating an earlier stage's directory.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from shipyard.domain.lockfile import Lockfile
from shipyard.domain.manifest import Manifest
from shipyard.framework.config import WorkspaceConfig

MANIFESTS_KEY = "manifests"
RESOLVED_KEY = "resolved_dependencies"
SOURCE_KEY = "assembled_source"
COMPILED_KEY = "compiled_workspaces"
PRUNED_KEY = "pruned_dependencies"
IMAGE_KEY = "runtime_image"


@dataclass(frozen=True)
class WorkspaceManifest:
    workspace: WorkspaceConfig
    manifest: Manifest


@dataclass(frozen=True)
class ManifestSet:
    source_dir: str
    root: Manifest
    workspaces: tuple[WorkspaceManifest, ...]
    lockfile: Lockfile
    # (path relative to the source root, absolute path) of every manifest/lockfile.
    input_files: tuple[tuple[str, str], ...]
    input_digest: str

    def workspace_manifest(self, name: str) -> Manifest:
        for item in self.workspaces:
            if item.workspace.name == name:
                return item.manifest
        raise KeyError(f"Unknown workspace: {name}")

    def summary(self) -> dict[str, Any]:
        return {
            "root": self.root.name,
            "workspaces": [item.workspace.name for item in self.workspaces],
            "input_files": [rel for rel, _ in self.input_files],
            "input_digest": self.input_digest,
        }


@dataclass(frozen=True)
class ResolvedDependencySet:
    """The installed dependency store, shared by every workspace."""

    store_dir: str
    lockfile: Lockfile
    digest: str
    input_digest: str
    cache_hit: bool
    package_count: int

    def summary(self) -> dict[str, Any]:
        return {
            "store_dir": self.store_dir,
            "digest": self.digest,
            "input_digest": self.input_digest,
            "cache_hit": self.cache_hit,
            "package_count": self.package_count,
        }


@dataclass(frozen=True)
class AssembledSource:
    root: str
    workspace_dirs: tuple[tuple[str, str], ...]
    store_digest: str

    def summary(self) -> dict[str, Any]:
        return {"root": self.root, "workspaces": [name for name, _ in self.workspace_dirs]}


@dataclass(frozen=True)
class WorkspaceArtifact:
    workspace: str
    # Path of the output inside the image/source tree, e.g. "packages/core/dist".
    relpath: str
    snapshot_dir: str
    digest: str
    file_count: int

    def summary(self) -> dict[str, Any]:
        return {
            "workspace": self.workspace,
            "relpath": self.relpath,
            "digest": self.digest,
            "file_count": self.file_count,
        }


@dataclass(frozen=True)
class CompiledWorkspaces:
    artifacts: tuple[WorkspaceArtifact, ...]

    def get(self, workspace: str) -> WorkspaceArtifact:
        for artifact in self.artifacts:
            if artifact.workspace == workspace:
                return artifact
        raise KeyError(f"No artifact for workspace: {workspace}")

    def summary(self) -> dict[str, Any]:
        return {"artifacts": [artifact.summary() for artifact in self.artifacts]}


@dataclass(frozen=True)
class PrunedDependencySet:
    store_dir: str
    kept: tuple[str, ...]
    removed: tuple[str, ...]
    # Directories inside store_dir that hold node_modules trees, e.g. "node_modules".
    module_dirs: tuple[str, ...]
    classification_warnings: tuple[str, ...]
    digest: str

    def summary(self) -> dict[str, Any]:
        return {
            "store_dir": self.store_dir,
            "kept_count": len(self.kept),
            "removed_count": len(self.removed),
            "removed": list(self.removed),
            "classification_warnings": list(self.classification_warnings),
            "digest": self.digest,
        }


@dataclass(frozen=True)
class Layer:
    name: str
    digest: str
    cache_key: str
    size: int
    entry_count: int
    cache_hit: bool
    path: str
    # System layers hold root-owned base files; all others belong to the runtime identity.
    system: bool = False

    def summary(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "digest": self.digest,
            "size": self.size,
            "entries": self.entry_count,
            "cache_hit": self.cache_hit,
            "system": self.system,
        }


@dataclass(frozen=True)
class RuntimeImage:
    name: str
    path: str
    image_id: str
    layers: tuple[Layer, ...]

    def summary(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "image_id": self.image_id,
            "layers": [layer.summary() for layer in self.layers],
        }
