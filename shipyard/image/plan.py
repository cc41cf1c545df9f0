from __future__ import annotations

import os

from shipyard.domain.artifacts import AssembledSource, CompiledWorkspaces, ManifestSet, PrunedDependencySet
from shipyard.framework.config import BuildConfig
from shipyard.image.layers import LayerSpec

# Manifest-derived layers come first so source edits leave them cached.
LAYER_ORDER: tuple[str, ...] = ("root-manifests", "workspace-manifests", "artifacts", "resources", "dependencies")


def plan_layers(
    cfg: BuildConfig,
    *,
    manifests: ManifestSet,
    source: AssembledSource,
    compiled: CompiledWorkspaces,
    pruned: PrunedDependencySet,
) -> list[LayerSpec]:
    """Describe every image layer from stage artifacts only; raw source is never an input."""

    workdir = cfg.runtime.workdir.strip("/")

    def dest(rel: str) -> str:
        return f"{workdir}/{rel}" if workdir else rel

    root_manifests = LayerSpec(name="root-manifests")
    workspace_manifests = LayerSpec(name="workspace-manifests")
    for rel, path in manifests.input_files:
        target = workspace_manifests if "/" in rel else root_manifests
        target.add_file(path, dest(rel))
    license_path = os.path.join(source.root, cfg.license_file)
    if os.path.isfile(license_path):
        root_manifests.add_file(license_path, dest(cfg.license_file))

    artifacts = LayerSpec(name="artifacts")
    for artifact in compiled.artifacts:
        artifacts.add_tree(artifact.snapshot_dir, dest(artifact.relpath))

    resources = LayerSpec(name="resources")
    resources_path = os.path.join(source.root, cfg.resources_dir)
    if os.path.isdir(resources_path):
        resources.add_tree(resources_path, dest(cfg.resources_dir.strip("/")))

    dependencies = LayerSpec(name="dependencies")
    for rel in pruned.module_dirs:
        dependencies.add_tree(os.path.join(pruned.store_dir, rel), dest(rel))

    return [root_manifests, workspace_manifests, artifacts, resources, dependencies]
