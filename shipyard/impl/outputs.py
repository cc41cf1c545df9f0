from __future__ import annotations

import os
from typing import Sequence

from pipelinekit import CommandFailedError
from shipyard.domain.artifacts import CompiledWorkspaces, ResolvedDependencySet, WorkspaceArtifact
from shipyard.errors import CompilationError
from shipyard.foundation.fs import copy_tree, has_files, iter_tree, reset_dir, tree_digest
from shipyard.framework.config import WorkspaceConfig


def attribute_failure(
    failure: CommandFailedError, *, source_root: str, workspaces: Sequence[WorkspaceConfig]
) -> str | None:
    """Best-effort: name the workspace whose directory npm reported in the failure output."""

    text = f"{failure.result.stdout}\n{failure.result.stderr}"
    for ws in workspaces:
        ws_dir = os.path.join(source_root, ws.path)
        if ws_dir in text or f"workspace {ws.path}" in text:
            return ws.name
    return None


def compilation_error(
    failure: CommandFailedError,
    *,
    source_root: str,
    workspaces: Sequence[WorkspaceConfig],
    workspace: str | None = None,
) -> CompilationError:
    name = workspace or attribute_failure(failure, source_root=source_root, workspaces=workspaces)
    prefix = f"Build failed for workspace {name}" if name else "Build failed"
    return CompilationError(f"{prefix}: {failure}", workspace=name)


def _check_links(snapshot: str, ws: WorkspaceConfig) -> None:
    root = os.path.realpath(snapshot)
    for entry in iter_tree(snapshot):
        if entry.kind != "symlink":
            continue
        target = os.path.realpath(entry.abspath)
        if os.path.isabs(os.readlink(entry.abspath)) or not (
            target == root or target.startswith(root + os.sep)
        ):
            raise CompilationError(
                f"Workspace {ws.name}: output link {ws.output}/{entry.relpath} points outside the output directory",
                workspace=ws.name,
            )


def collect_artifacts(
    workspaces: Sequence[WorkspaceConfig], *, source_root: str, artifacts_dir: str
) -> CompiledWorkspaces:
    """Snapshot each workspace's output directory; every workspace must have produced one."""

    reset_dir(artifacts_dir)
    artifacts: list[WorkspaceArtifact] = []
    for ws in workspaces:
        relpath = f"{ws.path}/{ws.output}"
        output_dir = os.path.join(source_root, ws.path, ws.output)
        if not has_files(output_dir):
            raise CompilationError(
                f"Workspace {ws.name} produced no build output at {relpath}", workspace=ws.name
            )
        snapshot = os.path.join(artifacts_dir, ws.name)
        copy_tree(output_dir, snapshot)
        _check_links(snapshot, ws)
        artifacts.append(
            WorkspaceArtifact(
                workspace=ws.name,
                relpath=relpath,
                snapshot_dir=snapshot,
                digest=tree_digest(snapshot),
                file_count=sum(1 for entry in iter_tree(snapshot) if entry.kind != "dir"),
            )
        )
    return CompiledWorkspaces(artifacts=tuple(artifacts))


def verify_store_unchanged(resolved: ResolvedDependencySet) -> str:
    digest = tree_digest(resolved.store_dir)
    if digest != resolved.digest:
        raise CompilationError(
            "The build modified the dependency store "
            f"(digest {resolved.digest[:12]} -> {digest[:12]}); build tools must not write into node_modules"
        )
    return digest
