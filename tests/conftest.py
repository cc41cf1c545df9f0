import gzip
import hashlib
import io
import json
import logging
import os
import tarfile
from pathlib import Path

import pytest

from pipelinekit import CommandResult
from shipyard.framework.config import BuildConfig
from shipyard.framework.runtime import BuildContext

WORKSPACE_OUTPUTS = {"packages/core": "dist", "packages/frontend": "out", "packages/server": "dist"}

LOCKFILE = {
    "name": "mono",
    "version": "1.0.0",
    "lockfileVersion": 3,
    "requires": True,
    "packages": {
        "": {
            "name": "mono",
            "version": "1.0.0",
            "workspaces": ["packages/*"],
            "devDependencies": {"typescript": "^5.4.0"},
        },
        "node_modules/@mono/core": {"resolved": "packages/core", "link": True},
        "node_modules/@mono/frontend": {"resolved": "packages/frontend", "link": True},
        "node_modules/@mono/server": {"resolved": "packages/server", "link": True},
        "node_modules/accepts": {"version": "1.3.8"},
        "node_modules/express": {"version": "4.18.2", "dependencies": {"accepts": "~1.3.8"}},
        "node_modules/jest": {"version": "29.7.0", "dev": True, "dependencies": {"jest-cli": "^29.7.0"}},
        "node_modules/jest-cli": {"version": "29.7.0", "dev": True, "bin": {"jest": "bin/jest.js"}},
        "node_modules/lodash": {"version": "4.17.21"},
        "node_modules/semver": {"version": "7.6.0", "bin": {"semver": "bin/semver.js"}},
        "node_modules/typescript": {"version": "5.4.5", "dev": True, "bin": {"tsc": "bin/tsc"}},
        "node_modules/vite": {"version": "5.2.0", "dev": True, "bin": {"vite": "bin/vite.js"}},
        "packages/core": {
            "name": "@mono/core",
            "version": "1.0.0",
            "dependencies": {"lodash": "^4.17.21", "semver": "^7.6.0"},
            "devDependencies": {"typescript": "^5.4.0"},
        },
        "packages/frontend": {
            "name": "@mono/frontend",
            "version": "1.0.0",
            "dependencies": {"@mono/core": "*"},
            "devDependencies": {"vite": "^5.2.0"},
        },
        "packages/server": {
            "name": "@mono/server",
            "version": "1.0.0",
            "dependencies": {"@mono/core": "*", "express": "^4.18.2"},
            "devDependencies": {"jest": "^29.7.0"},
        },
    },
}


def _write_json(path: Path, payload) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


def write_monorepo(root: Path, *, lockfile=None) -> Path:
    lock = lockfile or LOCKFILE
    _write_json(
        root / "package.json",
        {
            "name": "mono",
            "version": "1.0.0",
            "private": True,
            "workspaces": ["packages/*"],
            "scripts": {"build": "npm run build --workspaces", "start": "npm run start -w packages/server"},
            "devDependencies": {"typescript": "^5.4.0"},
        },
    )
    _write_json(root / "package-lock.json", lock)
    for location, entry in lock["packages"].items():
        if not location.startswith("packages/"):
            continue
        manifest = {key: entry[key] for key in ("name", "version", "dependencies", "devDependencies") if key in entry}
        manifest["scripts"] = {"build": "tsc -p ."}
        _write_json(root / location / "package.json", manifest)
        (root / location / "src").mkdir(parents=True, exist_ok=True)
        (root / location / "src" / "index.ts").write_text(f"export const name = '{entry['name']}';\n", encoding="utf-8")

    (root / "LICENSE").write_text("MIT License\n", encoding="utf-8")
    (root / "tsconfig.json").write_text('{"compilerOptions": {"strict": true}}\n', encoding="utf-8")
    (root / "tsconfig.base.json").write_text('{"compilerOptions": {"target": "es2022"}}\n', encoding="utf-8")
    (root / "resources").mkdir(exist_ok=True)
    (root / "resources" / "banner.txt").write_text("hello\n", encoding="utf-8")
    (root / "scripts").mkdir(exist_ok=True)
    (root / "scripts" / "postbuild.sh").write_text("#!/bin/sh\necho done\n", encoding="utf-8")
    (root / "README.md").write_text("not part of the image\n", encoding="utf-8")
    return root


@pytest.fixture
def monorepo(tmp_path) -> Path:
    return write_monorepo(tmp_path / "repo")


class FakeNpm:
    """Stands in for npm: `ci` materializes node_modules from the lockfile, `run build` writes outputs."""

    def __init__(self, *, fail_workspaces=(), write_into_node_modules=False):
        self.calls: list[tuple[tuple[str, ...], str | None]] = []
        self.fail_workspaces = set(fail_workspaces)
        self.write_into_node_modules = write_into_node_modules

    def run(self, argv, *, cwd, env):
        argv = tuple(argv)
        self.calls.append((argv, cwd))
        if argv[:2] == ("npm", "ci"):
            return self._install(argv, cwd)
        if argv[:3] == ("npm", "run", "build"):
            return self._build(argv, cwd)
        return CommandResult(argv=argv, returncode=127, stderr=f"unknown command {argv}")

    def commands(self) -> list[tuple[str, ...]]:
        return [argv for argv, _cwd in self.calls]

    def _install(self, argv, cwd):
        with open(os.path.join(cwd, "package-lock.json"), encoding="utf-8") as handle:
            lock = json.load(handle)
        for location, entry in sorted(lock["packages"].items()):
            if not location.startswith("node_modules/"):
                continue
            path = os.path.join(cwd, location)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            if entry.get("link"):
                target = os.path.join(cwd, entry["resolved"])
                os.symlink(os.path.relpath(target, os.path.dirname(path)), path)
                continue
            os.makedirs(path, exist_ok=True)
            name = location.split("node_modules/")[-1]
            _write_json(Path(path) / "package.json", {"name": name, "version": entry["version"]})
            Path(path, "index.js").write_text(f"module.exports = '{name}';\n", encoding="utf-8")
            for bin_name, rel in (entry.get("bin") or {}).items():
                script = Path(path, rel)
                script.parent.mkdir(parents=True, exist_ok=True)
                script.write_text("#!/usr/bin/env node\n", encoding="utf-8")
                script.chmod(0o755)
                bin_dir = os.path.join(cwd, "node_modules", ".bin")
                os.makedirs(bin_dir, exist_ok=True)
                os.symlink(os.path.join("..", name, rel), os.path.join(bin_dir, bin_name))
        return CommandResult(argv=argv, returncode=0, stdout="added packages\n")

    def _build(self, argv, cwd):
        selected = [arg.split("=", 1)[1] for arg in argv if arg.startswith("--workspace=")]
        targets = selected or sorted(WORKSPACE_OUTPUTS)
        for ws_path in targets:
            ws_dir = os.path.join(cwd, ws_path)
            if ws_path.rsplit("/", 1)[-1] in self.fail_workspaces:
                return CommandResult(
                    argv=argv,
                    returncode=2,
                    stderr=f"error TS2304: Cannot find name 'x'.\nnpm error path {ws_dir}\nnpm error command failed",
                )
            out_dir = Path(ws_dir, WORKSPACE_OUTPUTS[ws_path])
            out_dir.mkdir(parents=True, exist_ok=True)
            (out_dir / "index.js").write_text(f"// built {ws_path}\n", encoding="utf-8")
        if self.write_into_node_modules:
            Path(cwd, "node_modules", "lodash", ".cache-file").write_text("x", encoding="utf-8")
        return CommandResult(argv=argv, returncode=0, stdout="built\n")


@pytest.fixture
def fake_npm() -> FakeNpm:
    return FakeNpm()


def make_cfg_dict(repo: Path, tmp_path: Path, **overrides) -> dict:
    cfg = {
        "build": {
            "source_dir": str(repo),
            "work_dir": str(tmp_path / "work"),
            "output_dir": str(tmp_path / "images"),
            "cache_dir": str(tmp_path / "cache"),
            "log_dir": str(tmp_path / "logs"),
            "image_name": "app",
        },
    }
    for key, value in overrides.items():
        cfg[key] = value
    return cfg


def make_ctx(cfg: BuildConfig, build_id: str = "test_build") -> BuildContext:
    logger = logging.getLogger(f"test.shipyard.{build_id}")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return BuildContext(build_id=build_id, cfg=cfg, logger=logger, created_at="2025-01-01T00:00:00Z")


def _tar_gz(members) -> tuple[bytes, str]:
    """(gzip'd tar, sha256 of the uncompressed tar) for [(name, payload or None for dir, mode)]."""

    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w", format=tarfile.GNU_FORMAT) as tar:
        for name, payload, mode in members:
            info = tarfile.TarInfo(name)
            info.mode = mode
            if payload is None:
                info.type = tarfile.DIRTYPE
                tar.addfile(info)
            elif isinstance(payload, str) and payload.startswith("->"):
                info.type = tarfile.SYMTYPE
                info.linkname = payload[2:]
                tar.addfile(info)
            else:
                info.size = len(payload)
                tar.addfile(info, io.BytesIO(payload))
    data = raw.getvalue()
    return gzip.compress(data, mtime=0), hashlib.sha256(data).hexdigest()


def write_base_layout(root: Path, *, passwd: str = "root:x:0:0:root:/root:/bin/sh\n", group: str = "root:x:0:root\n") -> Path:
    """A two-layer stand-in for a node:22-alpine OCI layout: system files, then the Node runtime."""

    layers = [
        [
            ("etc", None, 0o755),
            ("etc/group", group.encode("utf-8"), 0o644),
            ("etc/passwd", passwd.encode("utf-8"), 0o644),
        ],
        [
            ("usr", None, 0o755),
            ("usr/local", None, 0o755),
            ("usr/local/bin", None, 0o755),
            ("usr/local/bin/node", b"\x7fELF fake node\n", 0o755),
            ("usr/local/bin/npm", "->../lib/node_modules/npm/bin/npm-cli.js", 0o777),
        ],
    ]
    blobs = root / "blobs" / "sha256"
    blobs.mkdir(parents=True)

    def blob(payload: bytes) -> tuple[str, int]:
        digest = hashlib.sha256(payload).hexdigest()
        (blobs / digest).write_bytes(payload)
        return f"sha256:{digest}", len(payload)

    descriptors, diff_ids = [], []
    for members in layers:
        data, diff_id = _tar_gz(members)
        digest, size = blob(data)
        descriptors.append({"mediaType": "application/vnd.oci.image.layer.v1.tar+gzip", "digest": digest, "size": size})
        diff_ids.append(f"sha256:{diff_id}")
    config = {
        "architecture": "amd64",
        "os": "linux",
        "config": {
            "Env": ["PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin", "NODE_VERSION=22.11.0"],
            "Entrypoint": ["docker-entrypoint.sh"],
            "Cmd": ["node"],
        },
        "rootfs": {"type": "layers", "diff_ids": diff_ids},
        "history": [{"created_by": "ADD alpine-minirootfs.tar.gz /"}, {"created_by": "install node"}],
    }
    config_digest, config_size = blob(json.dumps(config).encode("utf-8"))
    manifest = {
        "schemaVersion": 2,
        "mediaType": "application/vnd.oci.image.manifest.v1+json",
        "config": {"mediaType": "application/vnd.oci.image.config.v1+json", "digest": config_digest, "size": config_size},
        "layers": descriptors,
    }
    manifest_digest, manifest_size = blob(json.dumps(manifest).encode("utf-8"))
    _write_json(
        root / "index.json",
        {
            "schemaVersion": 2,
            "manifests": [
                {"mediaType": "application/vnd.oci.image.manifest.v1+json", "digest": manifest_digest, "size": manifest_size}
            ],
        },
    )
    (root / "oci-layout").write_text('{"imageLayoutVersion": "1.0.0"}\n', encoding="utf-8")
    return root
