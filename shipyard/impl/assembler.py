from __future__ import annotations

import glob
import os
import shutil
from typing import Callable, Sequence

from shipyard.domain.artifacts import ManifestSet, ResolvedDependencySet
from shipyard.domain.lockfile import NODE_MODULES
from shipyard.errors import SourceAssemblyError
from shipyard.foundation.fs import copy_file, copy_tree
from shipyard.framework.config import BuildConfig, WorkspaceConfig


def _copy_path(src: str, dst: str) -> None:
    if os.path.isdir(src) and not os.path.islink(src):
        copy_tree(src, dst, ignore_names=(NODE_MODULES,))
    else:
        copy_file(src, dst)


def _safe_relpath(value: str, *, label: str) -> str:
    rel = value.strip().strip("/")
    if not rel or os.path.isabs(value) or ".." in rel.split("/"):
        raise SourceAssemblyError(f"{label} must be a relative path inside the source root (got {value!r})")
    return rel


def copy_root_files(
    cfg: BuildConfig, manifests: ManifestSet, root: str, *, extra_paths: Sequence[str] = ()
) -> list[str]:
    """Copy root manifests, license, shared config, scripts, resources and extras; return what was copied."""

    copied: list[str] = []
    for rel, path in manifests.input_files:
        if "/" not in rel:
            copy_file(path, os.path.join(root, rel))
            copied.append(rel)

    for pattern in cfg.shared_config:
        for match in sorted(glob.glob(os.path.join(cfg.source_dir, pattern))):
            if os.path.isfile(match):
                rel = os.path.relpath(match, cfg.source_dir).replace(os.sep, "/")
                copy_file(match, os.path.join(root, rel))
                copied.append(rel)

    optional = [cfg.license_file, cfg.resources_dir]
    if cfg.scripts_dir:
        optional.append(cfg.scripts_dir)
    for value in optional:
        rel = _safe_relpath(value, label="Source path")
        src = os.path.join(cfg.source_dir, rel)
        if os.path.lexists(src):
            _copy_path(src, os.path.join(root, rel))
            copied.append(rel)

    for value in extra_paths:
        rel = _safe_relpath(value, label="extra_paths entry")
        src = os.path.join(cfg.source_dir, rel)
        if not os.path.lexists(src):
            raise SourceAssemblyError(f"extra_paths entry does not exist: {rel}")
        _copy_path(src, os.path.join(root, rel))
        copied.append(rel)

    return sorted(set(copied))


def _workspace_ignore(ws_src: str, output: str) -> Callable[[str, list[str]], set[str]]:
    output_top = output.split("/")[0]

    def ignore(directory: str, names: list[str]) -> set[str]:
        skipped = {name for name in names if name == NODE_MODULES}
        # Stale build output must never satisfy the post-build artifact check.
        if os.path.abspath(directory) == os.path.abspath(ws_src) and output_top in names:
            skipped.add(output_top)
        return skipped

    return ignore


def copy_workspace(cfg: BuildConfig, ws: WorkspaceConfig, root: str) -> str:
    src = os.path.join(cfg.source_dir, ws.path)
    if not os.path.isdir(src):
        raise SourceAssemblyError(f"Workspace {ws.name}: source directory {ws.path} does not exist")
    dst = os.path.join(root, ws.path)
    shutil.copytree(src, dst, symlinks=True, ignore=_workspace_ignore(src, ws.output), dirs_exist_ok=True)
    return dst


def _link_entry(src: str, dst: str) -> None:
    if os.path.islink(src):
        # Relative workspace links must resolve inside the assembled tree, not the store.
        os.symlink(os.readlink(src), dst)
    else:
        os.symlink(os.path.abspath(src), dst)


def link_store(resolved: ResolvedDependencySet, module_dirs: Sequence[str], root: str) -> list[str]:
    """Expose the store's node_modules trees inside the source root without writing to the store.

    Each module directory becomes a real directory of per-package symlinks, so
    tools that write caches under node_modules write into the source root.
    """

    linked: list[str] = []
    for rel in module_dirs:
        store_modules = os.path.join(resolved.store_dir, rel)
        target = os.path.join(root, rel)
        os.makedirs(target, exist_ok=True)
        for name in sorted(os.listdir(store_modules)):
            src = os.path.join(store_modules, name)
            if name.startswith("@") and os.path.isdir(src) and not os.path.islink(src):
                os.makedirs(os.path.join(target, name), exist_ok=True)
                for child in sorted(os.listdir(src)):
                    _link_entry(os.path.join(src, child), os.path.join(target, name, child))
            else:
                _link_entry(src, os.path.join(target, name))
        linked.append(rel)
    return linked
