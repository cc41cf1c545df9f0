from __future__ import annotations

import argparse
import json
import os
import sys
from collections.abc import Sequence
from typing import Any

from shipyard.errors import ShipyardError
from shipyard.foundation.config_io import CONFIG_ENV_VAR, load_config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shipyard", add_help=True)
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="Build the runtime image for the monorepo")
    build.add_argument("--config", help="Config file (default: $SHIPYARD_CONFIG or config/config.yaml)")
    build.add_argument("--build-id", help="Use this build id instead of a generated one")

    sub.add_parser("list-stages", help="List available build stages")

    dockerfile = sub.add_parser("dockerfile", help="Render the equivalent multi-stage Dockerfile")
    dockerfile.add_argument("--config")
    dockerfile.add_argument("--output", help="Write to this path instead of stdout")
    dockerfile.add_argument("--base-image", default=None)

    supervise = sub.add_parser("supervise", help="Run the application as the runtime identity")
    supervise.add_argument("--config")
    supervise.add_argument("app_command", nargs=argparse.REMAINDER, help="-- command to run")

    healthcheck = sub.add_parser("healthcheck", help="Probe the status endpoint once (exit 0 healthy)")
    healthcheck.add_argument("--config")

    history = sub.add_parser("history", help="Show recorded builds")
    history.add_argument("--config")
    history.add_argument("--limit", type=int, default=20)

    return parser


def _anchor_source_dir(cfg_dict: dict[str, Any], meta: dict[str, Any]) -> dict[str, Any]:
    """Relative `build.source_dir` is taken relative to the config's repo root (or file)."""

    base = meta.get("repo_root")
    if not base and meta.get("paths"):
        base = os.path.dirname(meta["paths"][0])
    build = cfg_dict.get("build")
    if not base or not isinstance(build, dict):
        return cfg_dict
    source_dir = build.get("source_dir", ".")
    if isinstance(source_dir, str) and not os.path.isabs(os.path.expanduser(source_dir)):
        cfg_dict = dict(cfg_dict)
        cfg_dict["build"] = {**build, "source_dir": os.path.join(base, source_dir)}
    return cfg_dict


def _load(config_path: str | None, *, required: bool) -> tuple[dict[str, Any], dict[str, Any]]:
    if not required and config_path is None and not os.environ.get(CONFIG_ENV_VAR, "").strip():
        return {}, {"mode": "defaults", "paths": [], "env_var": CONFIG_ENV_VAR, "repo_root": None}
    cfg_dict, meta = load_config(config_path=config_path)
    return _anchor_source_dir(cfg_dict, meta), meta


def _runtime_config(config_path: str | None):
    from shipyard.framework.config import BuildConfig

    cfg_dict, _meta = _load(config_path, required=False)
    cfg, _warnings = BuildConfig.from_dict(cfg_dict)
    return cfg


def _cmd_build(args: argparse.Namespace) -> int:
    from shipyard.app.build import run_build

    cfg_dict, meta = _load(args.config, required=True)
    ctx = run_build(cfg_dict, build_id=args.build_id, config_meta=meta)
    print(ctx.image_path)
    return 0


def _cmd_list_stages() -> int:
    from shipyard.stages.registry import get_stage_registry

    for entry in get_stage_registry().describe():
        io = entry["io"]
        print(f"{entry['stage_id']}: {entry['doc'] or ''}")
        print(f"    requires: {', '.join(io['requires']) or '-'}")
        print(f"    provides: {', '.join(io['provides']) or '-'}")
    return 0


def _cmd_dockerfile(args: argparse.Namespace) -> int:
    from shipyard.framework.config import BuildConfig
    from shipyard.image.dockerfile import DEFAULT_BASE_IMAGE, render_dockerfile

    cfg_dict, _meta = _load(args.config, required=False)
    cfg, _warnings = BuildConfig.from_dict(cfg_dict)
    text = render_dockerfile(cfg, base_image=args.base_image or DEFAULT_BASE_IMAGE)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as handle:
            handle.write(text)
    else:
        sys.stdout.write(text)
    return 0


def _cmd_supervise(args: argparse.Namespace) -> int:
    from shipyard.foundation.logging_utils import setup_runtime_logger
    from shipyard.runtime.supervisor import Supervisor

    command = list(args.app_command)
    if command and command[0] == "--":
        command = command[1:]
    cfg = _runtime_config(args.config)
    supervisor = Supervisor(
        runtime=cfg.runtime,
        healthcheck=cfg.healthcheck,
        identity=cfg.identity,
        command=command or None,
        logger=setup_runtime_logger(),
    )
    return supervisor.run()


def _cmd_healthcheck(args: argparse.Namespace) -> int:
    from shipyard.runtime.probe import HttpProbe
    from shipyard.runtime.settings import probe_url, resolve_port

    cfg = _runtime_config(args.config)
    port = resolve_port(os.environ, default=cfg.runtime.port)
    result = HttpProbe(probe_url(port, cfg.runtime.status_path), timeout_s=cfg.healthcheck.timeout_s).probe()
    if not result.ok:
        print(json.dumps(result.summary()), file=sys.stderr)
        return 1
    return 0


def _cmd_history(args: argparse.Namespace) -> int:
    from shipyard.app.history import format_history, load_build_history, summarize_history
    from shipyard.framework.config import BuildConfig

    cfg_dict, _meta = _load(args.config, required=False)
    cfg, _warnings = BuildConfig.from_dict(cfg_dict)
    df = load_build_history(cfg.log_dir)
    print(format_history(df, limit=args.limit))
    summary = summarize_history(df)
    if summary["builds"]:
        print(
            f"\n{summary['builds']} builds, {summary['succeeded']} succeeded, {summary['failed']} failed"
            + (f", layer cache hit rate {summary['cache_hit_rate']}" if summary["cache_hit_rate"] is not None else "")
        )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    try:
        if args.command == "build":
            return _cmd_build(args)
        if args.command == "list-stages":
            return _cmd_list_stages()
        if args.command == "dockerfile":
            return _cmd_dockerfile(args)
        if args.command == "supervise":
            return _cmd_supervise(args)
        if args.command == "healthcheck":
            return _cmd_healthcheck(args)
        if args.command == "history":
            return _cmd_history(args)
    except (ShipyardError, ValueError, FileNotFoundError) as exc:
        print(f"shipyard {args.command}: {exc}", file=sys.stderr)
        return 1

    raise AssertionError(f"Unhandled command: {args.command}")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
