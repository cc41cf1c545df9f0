import json
import os

import pytest

from conftest import write_base_layout
from shipyard.errors import ImageAssemblyError
from shipyard.framework.config import BuildConfig
from shipyard.image.base import account_files, load_base_image, merge_account_entry
from shipyard.image.dockerfile import render_dockerfile
from shipyard.image.layers import LayerCache, LayerSpec
from shipyard.image.oci import image_config, merge_env, write_image_layout
from shipyard.image.writer import build_layers, publish_image


def _cfg(**overrides):
    cfg, _ = BuildConfig.from_dict({"build": {"image_name": "app"}, **overrides})
    return cfg


def _blob(layout, digest):
    return os.path.join(layout, "blobs", "sha256", digest.split(":", 1)[1])


def _layer_set(tmp_path, cfg):
    (tmp_path / "in").mkdir()
    (tmp_path / "in" / "package.json").write_text("{}", encoding="utf-8")
    spec = LayerSpec(name="root-manifests")
    spec.add_file(str(tmp_path / "in" / "package.json"), "app/package.json")
    return build_layers([spec], cfg.identity, LayerCache(str(tmp_path / "cache")), scratch_dir=str(tmp_path / "scratch"))


def test_image_config_carries_identity_port_and_healthcheck():
    config = image_config(_cfg(), [], [])["config"]

    assert config["User"] == "1000:1000"
    assert config["WorkingDir"] == "/app"
    assert config["Env"] == ["PORT=3000", "NODE_ENV=production"]
    assert config["ExposedPorts"] == {"3000/tcp": {}}
    assert config["Entrypoint"] == ["npm", "run", "start"]
    assert config["Healthcheck"] == {
        "Test": [
            "CMD-SHELL",
            "wget --no-verbose --tries=1 --spider http://localhost:${PORT:-3000}/api/v1/status || exit 1",
        ],
        "Interval": 30_000_000_000,
        "Timeout": 5_000_000_000,
        "StartPeriod": 5_000_000_000,
        "StartInterval": 1_000_000_000,
        "Retries": 3,
    }


def test_supervisor_entrypoint_wraps_start_command():
    config = image_config(_cfg(runtime={"entrypoint": "supervisor"}), [], [])["config"]

    assert config["Entrypoint"] == ["shipyard", "supervise", "--", "npm", "run", "start"]
    assert config["Healthcheck"]["Test"] == ["CMD", "shipyard", "healthcheck"]


def test_layout_links_index_manifest_config_and_layers(tmp_path):
    cfg = _cfg()
    layer_set = _layer_set(tmp_path, cfg)
    layout = str(tmp_path / "layout")

    image_id = write_image_layout(layout, cfg, layer_set.layers, layer_set.diff_ids)

    with open(os.path.join(layout, "oci-layout"), encoding="utf-8") as handle:
        assert json.load(handle) == {"imageLayoutVersion": "1.0.0"}
    with open(os.path.join(layout, "index.json"), encoding="utf-8") as handle:
        index = json.load(handle)
    entry = index["manifests"][0]
    assert entry["annotations"]["org.opencontainers.image.ref.name"] == "app"
    with open(_blob(layout, entry["digest"]), encoding="utf-8") as handle:
        manifest = json.load(handle)
    assert manifest["config"]["digest"] == image_id
    assert [layer["digest"] for layer in manifest["layers"]] == [f"sha256:{layer_set.layers[0].digest}"]
    assert os.path.isfile(_blob(layout, manifest["layers"][0]["digest"]))
    with open(_blob(layout, image_id), encoding="utf-8") as handle:
        config = json.load(handle)
    assert config["rootfs"]["diff_ids"] == [f"sha256:{layer_set.diff_ids[0]}"]


def test_publish_replaces_previous_image_atomically(tmp_path):
    cfg = _cfg()
    layer_set = _layer_set(tmp_path, cfg)
    final = tmp_path / "images" / "app"
    final.mkdir(parents=True)
    (final / "stale").write_text("old", encoding="utf-8")

    image = publish_image(cfg, layer_set, staging_dir=str(tmp_path / "images" / ".staging"), final_dir=str(final))

    assert image.path == str(final)
    assert sorted(os.listdir(final)) == ["blobs", "index.json", "oci-layout"]
    assert sorted(os.listdir(tmp_path / "images")) == ["app"]


def test_dockerfile_matches_runtime_contract():
    text = render_dockerfile(_cfg())
    lines = text.splitlines()

    assert lines[0] == "FROM node:22-alpine AS base"
    assert "RUN npm ci" in lines
    assert "RUN npm --workspaces prune --omit=dev" in lines
    assert "COPY --from=builder --chown=node:node /build/packages/frontend/out ./packages/frontend/out" in lines
    assert "COPY --from=builder --chown=node:node /build/node_modules ./node_modules" in lines
    assert "USER node" in lines
    assert "ENV PORT=3000" in lines
    assert (
        "HEALTHCHECK --interval=30s --timeout=5s --start-period=5s --start-interval=1s --retries=3 \\" in lines
    )
    assert "  CMD wget --no-verbose --tries=1 --spider http://localhost:${PORT:-3000}/api/v1/status || exit 1" in lines
    assert "EXPOSE 3000" in lines
    assert lines[-1] == 'ENTRYPOINT ["npm", "run", "start"]'
    # Manifests are copied and installed before any source so the install layer caches.
    assert lines.index("RUN npm ci") < lines.index("COPY packages/core ./packages/core")


def test_dockerfile_supervisor_mode_and_base_image():
    text = render_dockerfile(_cfg(runtime={"entrypoint": "supervisor"}), base_image="node:20-slim")

    assert text.startswith("FROM node:20-slim AS base\n")
    assert '  CMD ["shipyard", "healthcheck"]' in text
    assert "apk add" not in text


def test_base_config_supplies_environment_and_layers_go_first(tmp_path):
    base = load_base_image(str(write_base_layout(tmp_path / "base")))
    cfg = _cfg()

    config = image_config(cfg, [], ["f" * 64], base)

    assert config["config"]["Env"] == [
        "PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
        "NODE_VERSION=22.11.0",
        "PORT=3000",
        "NODE_ENV=production",
    ]
    assert "Cmd" not in config["config"]
    assert config["config"]["Entrypoint"] == ["npm", "run", "start"]
    diff_ids = config["rootfs"]["diff_ids"]
    assert diff_ids[:2] == [f"sha256:{layer.diff_id}" for layer in base.layers]
    assert diff_ids[-1] == "sha256:" + "f" * 64
    assert base.passwd == "root:x:0:0:root:/root:/bin/sh\n"


def test_merge_env_moves_overrides_after_base_values():
    assert merge_env(["PATH=/bin", "PORT=80", "A=1"], ["PORT=3000", "B=2"]) == ["PATH=/bin", "A=1", "PORT=3000", "B=2"]


def test_account_entries_reject_conflicting_base_accounts():
    text = "root:x:0:0:root:/root:/bin/sh\nnode:x:1001:1001::/home/node:/bin/sh\n"

    with pytest.raises(ImageAssemblyError, match=r"defines node with id 1001, expected 1000"):
        merge_account_entry(text, name="node", ident=1000, line="node:x:1000:1000::/app:/sbin/nologin", what="/etc/passwd")
    with pytest.raises(ImageAssemblyError, match=r"assigns id 1001 to node, not app"):
        merge_account_entry(text, name="app", ident=1001, line="app:x:1001:1001::/app:/sbin/nologin", what="/etc/passwd")

    passwd, group = account_files(_cfg(identity={"user": "app", "group": "app", "uid": 2000, "gid": 2000}), None)
    assert passwd.endswith("app:x:2000:2000::/app:/sbin/nologin\n")
    assert group.endswith("app:x:2000:app\n")


def test_base_layout_with_tampered_blob_is_rejected(tmp_path):
    layout = write_base_layout(tmp_path / "base")
    with open(layout / "index.json", encoding="utf-8") as handle:
        manifest_digest = json.load(handle)["manifests"][0]["digest"]
    with open(_blob(str(layout), manifest_digest), encoding="utf-8") as handle:
        layer_digest = json.load(handle)["layers"][1]["digest"]
    with open(_blob(str(layout), layer_digest), "ab") as handle:
        handle.write(b"x")

    with pytest.raises(ImageAssemblyError, match=r"does not match its digest"):
        load_base_image(str(layout))
    with pytest.raises(ImageAssemblyError, match=r"no oci-layout file"):
        load_base_image(str(tmp_path / "missing"))
