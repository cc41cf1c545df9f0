import json
import os
import shutil

import pytest

from conftest import LOCKFILE, FakeNpm, make_cfg_dict, write_monorepo
from shipyard.errors import ManifestResolutionError
from shipyard.framework.config import BuildConfig
from shipyard.impl.resolver import (
    collect_manifests,
    dependency_cache_key,
    prepare_store,
    save_store_to_cache,
    verify_store,
)


def _cfg(repo, tmp_path, **overrides) -> BuildConfig:
    cfg, _warnings = BuildConfig.from_dict(make_cfg_dict(repo, tmp_path, **overrides))
    return cfg


def _install(store_dir):
    FakeNpm().run(["npm", "ci"], cwd=store_dir, env={})


def test_collect_manifests_reads_root_workspaces_and_lockfile(monorepo, tmp_path):
    manifests, warnings = collect_manifests(_cfg(monorepo, tmp_path))

    assert warnings == []
    assert manifests.root.name == "mono"
    assert [item.workspace.name for item in manifests.workspaces] == ["core", "frontend", "server"]
    assert [rel for rel, _path in manifests.input_files] == [
        "package-lock.json",
        "package.json",
        "packages/core/package.json",
        "packages/frontend/package.json",
        "packages/server/package.json",
    ]
    assert manifests.workspace_manifest("server").dependencies == {"@mono/core": "*", "express": "^4.18.2"}


def test_input_digest_ignores_non_manifest_files(monorepo, tmp_path):
    before, _ = collect_manifests(_cfg(monorepo, tmp_path))
    (monorepo / "packages" / "server" / "src" / "index.ts").write_text("export {};\n", encoding="utf-8")
    (monorepo / "README.md").write_text("changed\n", encoding="utf-8")
    after, _ = collect_manifests(_cfg(monorepo, tmp_path))

    assert before.input_digest == after.input_digest


def test_input_digest_changes_with_lockfile(monorepo, tmp_path):
    before, _ = collect_manifests(_cfg(monorepo, tmp_path))
    lock = json.loads((monorepo / "package-lock.json").read_text(encoding="utf-8"))
    lock["packages"]["node_modules/lodash"]["version"] = "4.17.20"
    (monorepo / "package-lock.json").write_text(json.dumps(lock), encoding="utf-8")
    after, _ = collect_manifests(_cfg(monorepo, tmp_path))

    assert before.input_digest != after.input_digest


def test_missing_workspace_manifest_fails(monorepo, tmp_path):
    os.remove(monorepo / "packages" / "frontend" / "package.json")

    with pytest.raises(ManifestResolutionError, match=r"Workspace frontend: missing manifest"):
        collect_manifests(_cfg(monorepo, tmp_path))


def test_workspace_outside_root_globs_fails(monorepo, tmp_path):
    shutil.copytree(monorepo / "packages" / "core", monorepo / "libs" / "core")
    workspaces = [
        {"name": "core", "path": "libs/core", "output": "dist"},
        {"name": "server", "path": "packages/server"},
    ]

    with pytest.raises(ManifestResolutionError, match=r"not covered by the root manifest"):
        collect_manifests(_cfg(monorepo, tmp_path, workspaces=workspaces))


def test_unconfigured_declared_workspace_is_a_warning(monorepo, tmp_path):
    workspaces = [
        {"name": "core", "path": "packages/core"},
        {"name": "server", "path": "packages/server"},
    ]

    _manifests, warnings = collect_manifests(_cfg(monorepo, tmp_path, workspaces=workspaces))

    assert len(warnings) == 1
    assert "packages/frontend" in warnings[0]


def test_unsupported_lockfile_version_fails(tmp_path):
    lock = json.loads(json.dumps(LOCKFILE))
    lock["lockfileVersion"] = 1
    repo = write_monorepo(tmp_path / "repo", lockfile=lock)

    with pytest.raises(ManifestResolutionError, match=r"Unsupported lockfileVersion 1"):
        collect_manifests(_cfg(repo, tmp_path))


def test_cache_key_is_deterministic_and_covers_install_command(monorepo, tmp_path):
    first, _ = collect_manifests(_cfg(monorepo, tmp_path))
    second, _ = collect_manifests(_cfg(monorepo, tmp_path))

    assert dependency_cache_key(first, ["npm", "ci"]) == dependency_cache_key(second, ["npm", "ci"])
    assert dependency_cache_key(first, ["npm", "ci"]) != dependency_cache_key(first, ["npm", "install"])


def test_store_is_seeded_with_manifests_only(monorepo, tmp_path):
    manifests, _ = collect_manifests(_cfg(monorepo, tmp_path))
    store = tmp_path / "store"

    plan = prepare_store(
        manifests, store_dir=str(store), cache_dir=str(tmp_path / "cache"), install_command=["npm", "ci"], use_cache=True
    )

    assert plan.cache_hit is False
    seeded = sorted(
        os.path.relpath(os.path.join(dirpath, name), store).replace(os.sep, "/")
        for dirpath, _dirs, files in os.walk(store)
        for name in files
    )
    assert seeded == [rel for rel, _path in manifests.input_files]


def test_fresh_installs_produce_identical_store_digest(monorepo, tmp_path):
    manifests, _ = collect_manifests(_cfg(monorepo, tmp_path))
    digests = []
    for name in ("first", "second"):
        plan = prepare_store(
            manifests,
            store_dir=str(tmp_path / name),
            cache_dir=str(tmp_path / "cache"),
            install_command=["npm", "ci"],
            use_cache=False,
        )
        assert plan.cache_hit is False
        _install(plan.store_dir)
        resolved = verify_store(manifests, plan, verify_versions=True)
        assert resolved.cache_hit is False
        digests.append(resolved.digest)

    assert digests[0] == digests[1]
    assert not (tmp_path / "cache").exists()


def test_verify_store_detects_missing_and_mismatched_packages(monorepo, tmp_path):
    manifests, _ = collect_manifests(_cfg(monorepo, tmp_path))
    store = tmp_path / "store"
    plan = prepare_store(
        manifests, store_dir=str(store), cache_dir=str(tmp_path / "cache"), install_command=["npm", "ci"], use_cache=False
    )
    _install(str(store))

    resolved = verify_store(manifests, plan, verify_versions=True)
    assert resolved.package_count == 8

    (store / "node_modules" / "lodash" / "package.json").write_text(
        json.dumps({"name": "lodash", "version": "3.0.0"}), encoding="utf-8"
    )
    with pytest.raises(ManifestResolutionError, match=r"node_modules/lodash \(locked 4.17.21, installed 3.0.0\)"):
        verify_store(manifests, plan, verify_versions=True)
    verify_store(manifests, plan, verify_versions=False)

    shutil.rmtree(store / "node_modules" / "express")
    with pytest.raises(ManifestResolutionError, match=r"missing 1 locked package\(s\): node_modules/express"):
        verify_store(manifests, plan, verify_versions=False)


def test_cached_store_is_restored_and_corrupt_entries_are_discarded(monorepo, tmp_path):
    manifests, _ = collect_manifests(_cfg(monorepo, tmp_path))
    cache_dir = tmp_path / "cache"
    plan = prepare_store(
        manifests, store_dir=str(tmp_path / "s1"), cache_dir=str(cache_dir), install_command=["npm", "ci"], use_cache=True
    )
    _install(plan.store_dir)
    resolved = verify_store(manifests, plan, verify_versions=True)
    assert save_store_to_cache(plan, resolved) is True
    assert save_store_to_cache(plan, resolved) is False

    hit = prepare_store(
        manifests, store_dir=str(tmp_path / "s2"), cache_dir=str(cache_dir), install_command=["npm", "ci"], use_cache=True
    )
    assert hit.cache_hit is True
    assert verify_store(manifests, hit, verify_versions=True).digest == resolved.digest

    tampered = os.path.join(plan.cache_entry, "store", "node_modules", "lodash", "index.js")
    with open(tampered, "a", encoding="utf-8") as handle:
        handle.write("// tampered\n")

    miss = prepare_store(
        manifests, store_dir=str(tmp_path / "s3"), cache_dir=str(cache_dir), install_command=["npm", "ci"], use_cache=True
    )
    assert miss.cache_hit is False
    assert not os.path.exists(plan.cache_entry)
    assert os.path.isfile(tmp_path / "s3" / "package-lock.json")
