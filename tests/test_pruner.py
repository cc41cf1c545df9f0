import json
import os

import pytest

from conftest import LOCKFILE, FakeNpm, make_cfg_dict, write_monorepo
from shipyard.errors import PruningError
from shipyard.framework.config import BuildConfig
from shipyard.impl.pruner import compute_closure, write_pruned_store
from shipyard.impl.resolver import collect_manifests, prepare_store, store_module_dirs, verify_store


def _lockfile_with(changes=None):
    lock = json.loads(json.dumps(LOCKFILE))
    for location, entry in (changes or {}).items():
        if entry is None:
            lock["packages"].pop(location, None)
        else:
            lock["packages"][location] = entry
    return lock


def _manifests(repo, tmp_path):
    cfg, _ = BuildConfig.from_dict(make_cfg_dict(repo, tmp_path))
    manifests, _ = collect_manifests(cfg)
    return cfg, manifests


def test_closure_keeps_production_and_removes_dev_dependencies(monorepo, tmp_path):
    _cfg, manifests = _manifests(monorepo, tmp_path)

    closure = compute_closure(manifests, manifests.lockfile)

    assert set(closure.kept) == {
        "node_modules/@mono/core",
        "node_modules/@mono/frontend",
        "node_modules/@mono/server",
        "node_modules/accepts",
        "node_modules/express",
        "node_modules/lodash",
        "node_modules/semver",
    }
    assert closure.removed == (
        "node_modules/jest",
        "node_modules/jest-cli",
        "node_modules/typescript",
        "node_modules/vite",
    )
    assert closure.warnings == ()


def test_dependency_both_dev_and_production_is_kept(tmp_path):
    lock = _lockfile_with()
    lock["packages"]["packages/server"]["dependencies"]["typescript"] = "^5.4.0"
    repo = write_monorepo(tmp_path / "repo", lockfile=lock)
    _cfg, manifests = _manifests(repo, tmp_path)

    closure = compute_closure(manifests, manifests.lockfile)

    assert "node_modules/typescript" in closure.kept
    assert closure.warnings == (
        "Kept node_modules/typescript: manifests require it for production but the lockfile marks it dev",
    )


def test_unreached_non_dev_package_is_removed_with_warning(tmp_path):
    lock = _lockfile_with({"node_modules/left-pad": {"version": "1.3.0"}})
    repo = write_monorepo(tmp_path / "repo", lockfile=lock)
    _cfg, manifests = _manifests(repo, tmp_path)

    closure = compute_closure(manifests, manifests.lockfile)

    assert "node_modules/left-pad" in closure.removed
    assert any("Removed node_modules/left-pad" in warning for warning in closure.warnings)


def test_missing_optional_dependency_is_tolerated(tmp_path):
    lock = _lockfile_with()
    lock["packages"]["node_modules/express"]["optionalDependencies"] = {"fsevents": "^2.3.0"}
    repo = write_monorepo(tmp_path / "repo", lockfile=lock)
    _cfg, manifests = _manifests(repo, tmp_path)

    closure = compute_closure(manifests, manifests.lockfile)

    assert "node_modules/express" in closure.kept


def test_missing_required_dependency_names_requirer(tmp_path):
    lock = _lockfile_with({"node_modules/accepts": None})
    repo = write_monorepo(tmp_path / "repo", lockfile=lock)
    _cfg, manifests = _manifests(repo, tmp_path)

    with pytest.raises(PruningError, match=r"accepts is required for production by express"):
        compute_closure(manifests, manifests.lockfile)


def test_nested_copy_is_resolved_from_requiring_package(tmp_path):
    lock = _lockfile_with(
        {
            "node_modules/express": {"version": "4.18.2", "dependencies": {"accepts": "~1.3.8", "ms": "2.0.0"}},
            "node_modules/ms": {"version": "2.1.3", "dev": True},
            "node_modules/express/node_modules/ms": {"version": "2.0.0"},
        }
    )
    repo = write_monorepo(tmp_path / "repo", lockfile=lock)
    _cfg, manifests = _manifests(repo, tmp_path)

    closure = compute_closure(manifests, manifests.lockfile)

    assert "node_modules/express/node_modules/ms" in closure.kept
    assert "node_modules/ms" in closure.removed


def test_pruned_store_is_new_and_contains_kept_packages_only(monorepo, tmp_path):
    cfg, manifests = _manifests(monorepo, tmp_path)
    plan = prepare_store(
        manifests,
        store_dir=str(tmp_path / "store"),
        cache_dir=str(tmp_path / "cache"),
        install_command=["npm", "ci"],
        use_cache=False,
    )
    FakeNpm().run(["npm", "ci"], cwd=plan.store_dir, env={})
    resolved = verify_store(manifests, plan, verify_versions=True)
    closure = compute_closure(manifests, resolved.lockfile)
    pruned_dir = tmp_path / "pruned"

    pruned = write_pruned_store(
        closure,
        resolved,
        module_dirs=store_module_dirs(resolved.store_dir, cfg.workspaces),
        pruned_dir=str(pruned_dir),
    )

    modules = pruned_dir / "node_modules"
    assert sorted(os.listdir(modules)) == [".bin", "@mono", "accepts", "express", "lodash", "semver"]
    assert os.listdir(modules / ".bin") == ["semver"]
    assert os.readlink(modules / "@mono" / "server") == "../../packages/server"
    assert pruned.module_dirs == ("node_modules",)
    assert pruned.removed == closure.removed
    # The resolved store is untouched.
    assert os.path.isdir(os.path.join(resolved.store_dir, "node_modules", "typescript"))

    without_bins = write_pruned_store(
        closure,
        resolved,
        module_dirs=("node_modules",),
        pruned_dir=str(tmp_path / "pruned2"),
        keep_bin_links=False,
    )
    assert not os.path.exists(os.path.join(without_bins.store_dir, "node_modules", ".bin"))
