"""Production closure and pruned store writing.

The closure is driven by manifest declarations: production groups of the root
and every workspace manifest are the roots, and edges come from the lockfile
entries of installed packages. The lockfile's own `dev` flags are only
cross-checked, never trusted.
"""

from __future__ import annotations

import os
import shutil
from collections import deque
from dataclasses import dataclass
from typing import Any, Sequence

from shipyard.domain.artifacts import ManifestSet, PrunedDependencySet, ResolvedDependencySet
from shipyard.domain.lockfile import NODE_MODULES, LockedPackage, Lockfile
from shipyard.domain.manifest import Manifest
from shipyard.errors import PruningError
from shipyard.foundation.fs import reset_dir, tree_digest


@dataclass(frozen=True)
class ProductionClosure:
    kept: tuple[str, ...]
    removed: tuple[str, ...]
    warnings: tuple[str, ...]

    def summary(self) -> dict[str, Any]:
        return {
            "kept_count": len(self.kept),
            "removed_count": len(self.removed),
            "warnings": list(self.warnings),
        }


def _manifest_roots(manifest: Manifest) -> list[tuple[str, bool]]:
    roots: list[tuple[str, bool]] = []
    for name in sorted(manifest.production_dependencies()):
        optional = manifest.is_optional(name) or (
            name in manifest.peer_dependencies
            and name not in manifest.dependencies
            and name not in manifest.optional_dependencies
        )
        roots.append((name, optional))
    return roots


def compute_closure(manifests: ManifestSet, lockfile: Lockfile) -> ProductionClosure:
    kept: set[str] = set()
    visited_targets: set[str] = set()
    queue: deque[tuple[str, str, bool, str]] = deque()

    def enqueue(manifest: Manifest, location: str, label: str) -> None:
        for name, optional in _manifest_roots(manifest):
            queue.append((name, location, optional, label))

    enqueue(manifests.root, "", "root manifest")
    for item in manifests.workspaces:
        ws = item.workspace
        if lockfile.get(ws.path) is None:
            raise PruningError(f"Workspace {ws.name} ({ws.path}) is not known to the lockfile")
        visited_targets.add(ws.path)
        enqueue(item.manifest, ws.path, f"workspace {ws.name}")
        # Keep the node_modules link that makes the workspace importable by name.
        for link in lockfile.links():
            target = lockfile.link_target(link)
            if target is not None and target.location == ws.path:
                kept.add(link.location)

    while queue:
        name, from_location, optional, required_by = queue.popleft()
        pkg = lockfile.resolve(name, from_location=from_location)
        if pkg is None:
            if optional:
                continue
            raise PruningError(
                f"{name} is required for production by {required_by} but the lockfile has no installed copy"
            )
        if pkg.location in kept:
            continue
        kept.add(pkg.location)

        if pkg.link:
            target = lockfile.link_target(pkg)
            if target is None or target.location in visited_targets:
                continue
            visited_targets.add(target.location)
            if target.installed:
                kept.add(target.location)
            _enqueue_edges(queue, target, label=f"{target.name} (linked)")
            continue
        _enqueue_edges(queue, pkg, label=pkg.name)

    candidates = [pkg for pkg in lockfile.packages.values() if pkg.location and (pkg.installed or pkg.link)]
    removed = sorted(pkg.location for pkg in candidates if pkg.location not in kept)
    warnings = _classification_warnings(lockfile, kept=kept, removed=removed)
    return ProductionClosure(kept=tuple(sorted(kept)), removed=tuple(removed), warnings=tuple(warnings))


def _enqueue_edges(queue: deque, pkg: LockedPackage, *, label: str) -> None:
    for dep, optional in pkg.runtime_edges():
        queue.append((dep, pkg.location, optional, label))


def _classification_warnings(lockfile: Lockfile, *, kept: set[str], removed: Sequence[str]) -> list[str]:
    warnings: list[str] = []
    for location in sorted(kept):
        pkg = lockfile.packages[location]
        if pkg.dev:
            warnings.append(f"Kept {location}: manifests require it for production but the lockfile marks it dev")
    for location in removed:
        pkg = lockfile.packages[location]
        if not pkg.link and not (pkg.dev or pkg.dev_optional):
            warnings.append(
                f"Removed {location}: no production manifest reaches it but the lockfile does not mark it dev"
            )
    return warnings


def _copy_package(src: str, dst: str) -> None:
    # Nested node_modules are copied per kept nested package, never wholesale.
    def ignore(directory: str, names: list[str]) -> set[str]:
        if os.path.abspath(directory) == os.path.abspath(src) and NODE_MODULES in names:
            return {NODE_MODULES}
        return set()

    shutil.copytree(src, dst, symlinks=True, ignore=ignore, dirs_exist_ok=True)


def _bin_target_kept(link_path: str, store_dir: str, kept_dirs: Sequence[str]) -> bool:
    target = os.path.normpath(os.path.join(os.path.dirname(link_path), os.readlink(link_path)))
    rel = os.path.relpath(target, store_dir).replace(os.sep, "/")
    return any(rel == loc or rel.startswith(f"{loc}/") for loc in kept_dirs)


def write_pruned_store(
    closure: ProductionClosure,
    resolved: ResolvedDependencySet,
    *,
    module_dirs: Sequence[str],
    pruned_dir: str,
    keep_bin_links: bool = True,
) -> PrunedDependencySet:
    store = resolved.store_dir
    lockfile = resolved.lockfile
    reset_dir(pruned_dir)

    written: list[str] = []
    for location in closure.kept:
        pkg = lockfile.packages[location]
        src = os.path.join(store, location)
        dst = os.path.join(pruned_dir, location)
        if not os.path.lexists(src):
            if pkg.optional or pkg.dev_optional:
                continue
            raise PruningError(f"Kept package {location} is missing from the resolved store")
        if pkg.link or os.path.islink(src):
            os.makedirs(os.path.dirname(dst), exist_ok=True)
            os.symlink(os.readlink(src), dst)
        elif pkg.installed:
            _copy_package(src, dst)
        else:
            continue
        written.append(location)

    if keep_bin_links:
        kept_dirs = [loc for loc in written if lockfile.packages[loc].installed]
        bin_dirs = {f"{rel}/.bin" for rel in module_dirs}
        bin_dirs.update(f"{loc}/{NODE_MODULES}/.bin" for loc in kept_dirs)
        for rel in sorted(bin_dirs):
            src_bin = os.path.join(store, rel)
            if not os.path.isdir(src_bin):
                continue
            for name in sorted(os.listdir(src_bin)):
                link_path = os.path.join(src_bin, name)
                if not os.path.islink(link_path) or not _bin_target_kept(link_path, store, kept_dirs):
                    continue
                dst = os.path.join(pruned_dir, rel, name)
                os.makedirs(os.path.dirname(dst), exist_ok=True)
                os.symlink(os.readlink(link_path), dst)

    present = tuple(rel for rel in module_dirs if os.path.isdir(os.path.join(pruned_dir, rel)))
    return PrunedDependencySet(
        store_dir=pruned_dir,
        kept=tuple(written),
        removed=closure.removed,
        module_dirs=present,
        classification_warnings=closure.warnings,
        digest=tree_digest(pruned_dir),
    )
