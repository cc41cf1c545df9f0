"""Dependency resolution: manifests in, one installed dependency store out.

Only manifests and the lockfile ever reach the store directory, so the
install step (and its cache entry) depends on nothing but those files.
"""

from __future__ import annotations

import fnmatch
import glob
import json
import logging
import os
import shutil
import uuid
from dataclasses import dataclass
from typing import Any, Sequence

from shipyard.domain.artifacts import ManifestSet, ResolvedDependencySet, WorkspaceManifest
from shipyard.domain.lockfile import NODE_MODULES, Lockfile, load_lockfile
from shipyard.domain.manifest import MANIFEST_FILENAME, Manifest, load_manifest, manifest_files
from shipyard.errors import ManifestResolutionError
from shipyard.foundation.fs import bytes_sha256, copy_file, copy_tree, files_digest, reset_dir, tree_digest
from shipyard.framework.config import BuildConfig, WorkspaceConfig

STORE_MARKER = "store.json"
_REPORT_LIMIT = 10

logger = logging.getLogger(__name__)


def _matches_workspace_glob(path: str, patterns: Sequence[str]) -> bool:
    normalized = path.strip("/")
    for pattern in patterns:
        pattern = pattern[2:] if pattern.startswith("./") else pattern
        if fnmatch.fnmatchcase(normalized, pattern.strip("/")):
            return True
    return False


def _declared_workspace_dirs(source_dir: str, patterns: Sequence[str]) -> list[str]:
    found: set[str] = set()
    for pattern in patterns:
        pattern = pattern[2:] if pattern.startswith("./") else pattern
        for match in glob.glob(os.path.join(source_dir, pattern)):
            if os.path.isfile(os.path.join(match, MANIFEST_FILENAME)):
                found.add(os.path.relpath(match, source_dir).replace(os.sep, "/"))
    return sorted(found)


def _check_declared(manifest: Manifest, *, location: str, label: str, lockfile: Lockfile) -> None:
    required = {**manifest.dev_dependencies, **manifest.dependencies}
    missing = sorted(
        name for name in required if lockfile.resolve(name, from_location=location) is None
    )
    if missing:
        raise ManifestResolutionError(
            f"{label} declares dependencies the lockfile does not resolve: {', '.join(missing)} "
            "(lockfile out of sync with manifests; run `npm install` and commit the lockfile)"
        )


def collect_manifests(cfg: BuildConfig) -> tuple[ManifestSet, list[str]]:
    """Load and cross-check every manifest and the lockfile, returning (set, warnings)."""

    source = cfg.source_dir
    root = load_manifest(os.path.join(source, MANIFEST_FILENAME))
    lock_path = os.path.join(source, cfg.lockfile)
    lockfile = load_lockfile(lock_path)
    warnings: list[str] = []

    inputs: dict[str, str] = {os.path.basename(path): path for path in manifest_files(source)}
    inputs[cfg.lockfile] = lock_path

    workspaces: list[WorkspaceManifest] = []
    for ws in cfg.workspaces:
        ws_dir = os.path.join(source, ws.path)
        manifest_path = os.path.join(ws_dir, MANIFEST_FILENAME)
        if not os.path.isfile(manifest_path):
            raise ManifestResolutionError(
                f"Workspace {ws.name}: missing manifest {ws.path}/{MANIFEST_FILENAME}"
            )
        if root.workspaces and not _matches_workspace_glob(ws.path, root.workspaces):
            raise ManifestResolutionError(
                f"Workspace {ws.name} ({ws.path}) is not covered by the root manifest's "
                f"workspaces ({', '.join(root.workspaces)})"
            )
        if lockfile.get(ws.path) is None:
            raise ManifestResolutionError(
                f"Lockfile {cfg.lockfile} has no entry for workspace {ws.path}; run `npm install` to sync it"
            )
        manifest = load_manifest(manifest_path)
        _check_declared(manifest, location=ws.path, label=f"Workspace {ws.name}", lockfile=lockfile)
        workspaces.append(WorkspaceManifest(workspace=ws, manifest=manifest))
        for path in manifest_files(ws_dir):
            inputs[f"{ws.path}/{os.path.basename(path)}"] = path

    _check_declared(root, location="", label="Root manifest", lockfile=lockfile)

    configured = {ws.path for ws in cfg.workspaces}
    for declared in _declared_workspace_dirs(source, root.workspaces):
        if declared not in configured:
            warnings.append(
                f"Workspace {declared} is declared by the root manifest but not configured; "
                "it will not be built into the image"
            )

    input_files = tuple(sorted(inputs.items()))
    manifests = ManifestSet(
        source_dir=source,
        root=root,
        workspaces=tuple(workspaces),
        lockfile=lockfile,
        input_files=input_files,
        input_digest=files_digest(input_files),
    )
    return manifests, warnings


def store_module_dirs(store_dir: str, workspaces: Sequence[WorkspaceConfig]) -> tuple[str, ...]:
    """Relative directories of a store that hold node_modules trees, root first."""

    candidates = [NODE_MODULES, *(f"{ws.path}/{NODE_MODULES}" for ws in workspaces)]
    return tuple(rel for rel in candidates if os.path.isdir(os.path.join(store_dir, rel)))


@dataclass(frozen=True)
class StorePlan:
    store_dir: str
    cache_key: str
    cache_entry: str | None
    cache_hit: bool

    def summary(self) -> dict[str, Any]:
        return {"store_dir": self.store_dir, "cache_key": self.cache_key, "cache_hit": self.cache_hit}


def dependency_cache_key(manifests: ManifestSet, install_command: Sequence[str]) -> str:
    return bytes_sha256(
        f"{manifests.input_digest}\0{json.dumps(list(install_command))}".encode("utf-8")
    )


def _restore_cached_store(entry: str, store_dir: str) -> bool:
    marker = os.path.join(entry, STORE_MARKER)
    if not os.path.isfile(marker):
        return False
    with open(marker, "r", encoding="utf-8") as handle:
        record = json.load(handle)

    copy_tree(os.path.join(entry, "store"), store_dir)
    if tree_digest(store_dir) != record.get("digest"):
        logger.warning("Discarding dependency cache entry %s: content digest mismatch", entry)
        shutil.rmtree(entry)
        reset_dir(store_dir)
        return False
    return True


def prepare_store(
    manifests: ManifestSet,
    *,
    store_dir: str,
    cache_dir: str,
    install_command: Sequence[str],
    use_cache: bool,
) -> StorePlan:
    """Seed the store directory with manifests, or restore it from the dependency cache."""

    reset_dir(store_dir)
    cache_key = dependency_cache_key(manifests, install_command)
    entry = os.path.join(cache_dir, "deps", cache_key) if use_cache else None
    if entry is not None and _restore_cached_store(entry, store_dir):
        return StorePlan(store_dir=store_dir, cache_key=cache_key, cache_entry=entry, cache_hit=True)

    for rel, path in manifests.input_files:
        copy_file(path, os.path.join(store_dir, rel))
    return StorePlan(store_dir=store_dir, cache_key=cache_key, cache_entry=entry, cache_hit=False)


def _installed_version(package_dir: str) -> str | None:
    path = os.path.join(package_dir, MANIFEST_FILENAME)
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, json.JSONDecodeError):
        return None
    version = payload.get("version") if isinstance(payload, dict) else None
    return str(version) if version is not None else None


def _format_report(items: list[str]) -> str:
    shown = ", ".join(items[:_REPORT_LIMIT])
    if len(items) > _REPORT_LIMIT:
        shown = f"{shown} (+{len(items) - _REPORT_LIMIT} more)"
    return shown


def verify_store(
    manifests: ManifestSet, plan: StorePlan, *, verify_versions: bool
) -> ResolvedDependencySet:
    """Check the installed store against the lockfile and digest it."""

    lockfile = manifests.lockfile
    packages = lockfile.installed_packages()
    missing: list[str] = []
    mismatched: list[str] = []
    present = 0
    for pkg in packages:
        package_dir = os.path.join(plan.store_dir, pkg.location)
        if not os.path.isdir(package_dir):
            # Platform-specific optional packages are legitimately absent.
            if not (pkg.optional or pkg.dev_optional):
                missing.append(pkg.location)
            continue
        present += 1
        if verify_versions and pkg.version is not None:
            installed = _installed_version(package_dir)
            if installed != pkg.version:
                mismatched.append(f"{pkg.location} (locked {pkg.version}, installed {installed})")

    if missing:
        raise ManifestResolutionError(
            f"Installed store is missing {len(missing)} locked package(s): {_format_report(missing)}"
        )
    if mismatched:
        raise ManifestResolutionError(
            f"Installed store does not match the lockfile: {_format_report(mismatched)}"
        )

    return ResolvedDependencySet(
        store_dir=plan.store_dir,
        lockfile=lockfile,
        digest=tree_digest(plan.store_dir),
        input_digest=manifests.input_digest,
        cache_hit=plan.cache_hit,
        package_count=present,
    )


def save_store_to_cache(plan: StorePlan, resolved: ResolvedDependencySet) -> bool:
    """Publish a freshly installed store into the dependency cache; returns True when written."""

    if plan.cache_entry is None or plan.cache_hit or os.path.exists(plan.cache_entry):
        return False
    staging = f"{plan.cache_entry}.tmp-{uuid.uuid4().hex[:8]}"
    try:
        copy_tree(plan.store_dir, os.path.join(staging, "store"))
        with open(os.path.join(staging, STORE_MARKER), "w", encoding="utf-8") as handle:
            json.dump(
                {"digest": resolved.digest, "input_digest": resolved.input_digest},
                handle,
                indent=2,
            )
            handle.write("\n")
        os.rename(staging, plan.cache_entry)
    except OSError:
        # Another build may have published the same key first.
        shutil.rmtree(staging, ignore_errors=True)
        if os.path.exists(plan.cache_entry):
            return False
        raise
    return True
