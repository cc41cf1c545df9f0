from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Mapping

DEFAULT_PORT = 3000
DEFAULT_STATUS_PATH = "/api/v1/status"
ENTRYPOINT_MODES: tuple[str, ...] = ("direct", "supervisor")


def parse_bool(value: Any, path: str) -> bool:
    """
    Strict boolean parsing to avoid bool('false') footguns.

    Accepts True/False, 0/1 and the strings true/false/1/0/yes/no
    (case-insensitive, surrounding whitespace ignored).
    """

    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
    raise ValueError(f"Invalid boolean for {path}: {value!r}")


def parse_int(value: Any, path: str) -> int:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected int, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid config value for {path}: must be an int") from exc
    raise ValueError(f"Invalid config value for {path}: must be an int")


def parse_float(value: Any, path: str) -> float:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected float, got bool")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid config value for {path}: must be a float") from exc
    raise ValueError(f"Invalid config value for {path}: must be a float")


def parse_str(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid config value for {path}: must be a non-empty string")
    return value.strip()


def parse_str_list(value: Any, path: str) -> tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ValueError(f"Invalid config value for {path}: must be a list of strings")
    items = tuple(parse_str(item, f"{path}[{idx}]") for idx, item in enumerate(value))
    if not items:
        raise ValueError(f"Invalid config value for {path}: cannot be empty")
    return items


@dataclass(frozen=True)
class WorkspaceConfig:
    name: str
    path: str
    output: str


DEFAULT_WORKSPACES: tuple[WorkspaceConfig, ...] = (
    WorkspaceConfig(name="core", path="packages/core", output="dist"),
    WorkspaceConfig(name="frontend", path="packages/frontend", output="out"),
    WorkspaceConfig(name="server", path="packages/server", output="dist"),
)


@dataclass(frozen=True)
class IdentityConfig:
    user: str = "node"
    group: str = "node"
    uid: int = 1000
    gid: int = 1000

    @property
    def owner(self) -> str:
        return f"{self.user}:{self.group}"


@dataclass(frozen=True)
class HealthcheckConfig:
    interval_s: float = 30.0
    timeout_s: float = 5.0
    start_period_s: float = 5.0
    retries: int = 3
    # Probe cadence while the start period is running.
    start_interval_s: float = 1.0


@dataclass(frozen=True)
class RuntimeConfig:
    port: int = DEFAULT_PORT
    workdir: str = "/app"
    start_command: tuple[str, ...] = ("npm", "run", "start")
    status_path: str = DEFAULT_STATUS_PATH
    status_file: str | None = None
    # "direct" runs start_command as the image entrypoint; "supervisor" wraps it in `shipyard supervise`.
    entrypoint: str = "direct"


@dataclass(frozen=True)
class BuildConfig:
    source_dir: str
    work_dir: str
    output_dir: str
    cache_dir: str
    log_dir: str
    image_name: str
    keep_workdir: bool

    lockfile: str
    license_file: str
    resources_dir: str
    scripts_dir: str | None
    # OCI layout of the base image (e.g. node:22-alpine); None builds an image without a base filesystem.
    base_image_layout: str | None
    shared_config: tuple[str, ...]

    install_command: tuple[str, ...]
    build_command: tuple[str, ...]

    workspaces: tuple[WorkspaceConfig, ...]
    identity: IdentityConfig
    runtime: RuntimeConfig
    healthcheck: HealthcheckConfig
    stage_configs: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def workspace(self, name: str) -> WorkspaceConfig:
        for ws in self.workspaces:
            if ws.name == name:
                return ws
        raise KeyError(f"Unknown workspace: {name}")

    @staticmethod
    def from_dict(cfg: Mapping[str, Any]) -> tuple["BuildConfig", list[str]]:
        """
        Parse and validate configuration, returning (BuildConfig, warnings).

        Raises:
            ValueError: if keys are invalid, or unknown keys appear with `strict: true`.
        """

        if not isinstance(cfg, Mapping):
            raise ValueError("Config must be a mapping")

        warnings: list[str] = []
        strict = parse_bool(cfg.get("strict", False), "strict")

        schema: dict[str, set[str] | None] = {
            "strict": None,
            "build": {
                "source_dir",
                "work_dir",
                "output_dir",
                "cache_dir",
                "log_dir",
                "image_name",
                "keep_workdir",
                "lockfile",
                "license_file",
                "resources_dir",
                "scripts_dir",
                "base_image_layout",
                "shared_config",
                "commands",
            },
            "workspaces": None,
            "identity": {"user", "group", "uid", "gid"},
            "runtime": {"port", "workdir", "start_command", "status_path", "status_file", "entrypoint"},
            "healthcheck": {"interval_s", "timeout_s", "start_period_s", "retries", "start_interval_s"},
            "stages": None,
        }
        unknown: list[str] = []
        for key, value in cfg.items():
            if key not in schema:
                unknown.append(str(key))
                continue
            allowed = schema[key]
            if allowed is not None and isinstance(value, Mapping):
                unknown.extend(f"{key}.{sub}" for sub in value if sub not in allowed)
        if unknown:
            if strict:
                raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
            warnings.extend(f"Unknown config key: {key}" for key in sorted(unknown))

        def section(name: str) -> Mapping[str, Any]:
            raw = cfg.get(name)
            if raw is None:
                return {}
            if not isinstance(raw, Mapping):
                raise ValueError(f"Invalid config type for {name}: expected mapping")
            return raw

        build = section("build")
        source_dir = os.path.abspath(os.path.expanduser(parse_str(build.get("source_dir", "."), "build.source_dir")))

        def build_path(key: str, default: str) -> str:
            raw = parse_str(build.get(key, default), f"build.{key}")
            expanded = os.path.expanduser(raw)
            if os.path.isabs(expanded):
                return expanded
            return os.path.join(source_dir, expanded)

        commands = build.get("commands") or {}
        if not isinstance(commands, Mapping):
            raise ValueError("Invalid config type for build.commands: expected mapping")
        unknown_commands = sorted(set(commands) - {"install", "build"})
        if unknown_commands:
            raise ValueError(f"Unknown build.commands entries: {', '.join(unknown_commands)}")

        scripts_dir_raw = build.get("scripts_dir", "scripts")
        scripts_dir = None if scripts_dir_raw is None else parse_str(scripts_dir_raw, "build.scripts_dir")
        base_image_layout = None if build.get("base_image_layout") is None else build_path("base_image_layout", "")

        workspaces = _parse_workspaces(cfg.get("workspaces"))
        identity = _parse_identity(section("identity"))
        runtime = _parse_runtime(section("runtime"))
        healthcheck = _parse_healthcheck(section("healthcheck"))

        stage_configs = section("stages")
        for stage_id, stage_cfg in stage_configs.items():
            if stage_cfg is not None and not isinstance(stage_cfg, Mapping):
                raise ValueError(f"Invalid config type for stages.{stage_id}: expected mapping")

        return (
            BuildConfig(
                source_dir=source_dir,
                work_dir=build_path("work_dir", ".shipyard/work"),
                output_dir=build_path("output_dir", ".shipyard/images"),
                cache_dir=build_path("cache_dir", ".shipyard/cache"),
                log_dir=build_path("log_dir", ".shipyard/logs"),
                image_name=parse_str(build.get("image_name", "app"), "build.image_name"),
                keep_workdir=parse_bool(build.get("keep_workdir", False), "build.keep_workdir"),
                lockfile=parse_str(build.get("lockfile", "package-lock.json"), "build.lockfile"),
                license_file=parse_str(build.get("license_file", "LICENSE"), "build.license_file"),
                resources_dir=parse_str(build.get("resources_dir", "resources"), "build.resources_dir"),
                scripts_dir=scripts_dir,
                base_image_layout=base_image_layout,
                shared_config=parse_str_list(
                    build.get("shared_config", ["tsconfig.*json"]), "build.shared_config"
                ),
                install_command=parse_str_list(
                    commands.get("install", ["npm", "ci"]), "build.commands.install"
                ),
                build_command=parse_str_list(
                    commands.get("build", ["npm", "run", "build"]), "build.commands.build"
                ),
                workspaces=workspaces,
                identity=identity,
                runtime=runtime,
                healthcheck=healthcheck,
                stage_configs={str(k): dict(v or {}) for k, v in stage_configs.items()},
            ),
            warnings,
        )


def _parse_workspaces(raw: Any) -> tuple[WorkspaceConfig, ...]:
    if raw is None:
        return DEFAULT_WORKSPACES
    if isinstance(raw, str) or not isinstance(raw, (list, tuple)) or not raw:
        raise ValueError("Invalid config value for workspaces: must be a non-empty list")

    out: list[WorkspaceConfig] = []
    seen_names: set[str] = set()
    seen_paths: set[str] = set()
    for idx, item in enumerate(raw):
        path = f"workspaces[{idx}]"
        if not isinstance(item, Mapping):
            raise ValueError(f"Invalid config type for {path}: expected mapping")
        extra = sorted(set(item) - {"name", "path", "output"})
        if extra:
            raise ValueError(f"Unknown keys under {path}: {', '.join(extra)}")
        name = parse_str(item.get("name"), f"{path}.name")
        ws_path = parse_str(item.get("path", f"packages/{name}"), f"{path}.path").strip("/")
        output = parse_str(item.get("output", "dist"), f"{path}.output").strip("/")
        if os.path.isabs(ws_path) or ".." in ws_path.split("/"):
            raise ValueError(f"Invalid config value for {path}.path: must be relative to the source root")
        if ".." in output.split("/"):
            raise ValueError(f"Invalid config value for {path}.output: must stay inside the workspace")
        if name in seen_names:
            raise ValueError(f"Duplicate workspace name: {name}")
        if ws_path in seen_paths:
            raise ValueError(f"Duplicate workspace path: {ws_path}")
        seen_names.add(name)
        seen_paths.add(ws_path)
        out.append(WorkspaceConfig(name=name, path=ws_path, output=output))
    return tuple(out)


def _parse_identity(raw: Mapping[str, Any]) -> IdentityConfig:
    defaults = IdentityConfig()
    identity = IdentityConfig(
        user=parse_str(raw.get("user", defaults.user), "identity.user"),
        group=parse_str(raw.get("group", defaults.group), "identity.group"),
        uid=parse_int(raw.get("uid", defaults.uid), "identity.uid"),
        gid=parse_int(raw.get("gid", defaults.gid), "identity.gid"),
    )
    if identity.uid <= 0 or identity.gid <= 0:
        raise ValueError(
            f"Invalid runtime identity {identity.owner} (uid={identity.uid}, gid={identity.gid}): "
            "uid and gid must be unprivileged (> 0)"
        )
    if identity.user == "root" or identity.group == "root":
        raise ValueError("Invalid runtime identity: user/group must not be root")
    return identity


def _parse_runtime(raw: Mapping[str, Any]) -> RuntimeConfig:
    defaults = RuntimeConfig()
    port = parse_int(raw.get("port", defaults.port), "runtime.port")
    if not 1 <= port <= 65535:
        raise ValueError(f"Invalid config value for runtime.port: must be 1-65535 (got {port})")
    status_path = parse_str(raw.get("status_path", defaults.status_path), "runtime.status_path")
    if not status_path.startswith("/"):
        raise ValueError("Invalid config value for runtime.status_path: must start with '/'")
    status_file = raw.get("status_file", defaults.status_file)
    entrypoint = parse_str(raw.get("entrypoint", defaults.entrypoint), "runtime.entrypoint")
    if entrypoint not in ENTRYPOINT_MODES:
        raise ValueError(
            f"Invalid config value for runtime.entrypoint: must be one of {', '.join(ENTRYPOINT_MODES)} (got {entrypoint!r})"
        )
    return RuntimeConfig(
        port=port,
        workdir=parse_str(raw.get("workdir", defaults.workdir), "runtime.workdir"),
        start_command=parse_str_list(
            raw.get("start_command", list(defaults.start_command)), "runtime.start_command"
        ),
        status_path=status_path,
        status_file=None if status_file is None else parse_str(status_file, "runtime.status_file"),
        entrypoint=entrypoint,
    )


def _parse_healthcheck(raw: Mapping[str, Any]) -> HealthcheckConfig:
    defaults = HealthcheckConfig()
    hc = HealthcheckConfig(
        interval_s=parse_float(raw.get("interval_s", defaults.interval_s), "healthcheck.interval_s"),
        timeout_s=parse_float(raw.get("timeout_s", defaults.timeout_s), "healthcheck.timeout_s"),
        start_period_s=parse_float(
            raw.get("start_period_s", defaults.start_period_s), "healthcheck.start_period_s"
        ),
        retries=parse_int(raw.get("retries", defaults.retries), "healthcheck.retries"),
        start_interval_s=parse_float(
            raw.get("start_interval_s", defaults.start_interval_s), "healthcheck.start_interval_s"
        ),
    )
    if hc.interval_s <= 0 or hc.timeout_s <= 0:
        raise ValueError("Invalid config value for healthcheck: interval_s and timeout_s must be > 0")
    if hc.timeout_s >= hc.interval_s:
        raise ValueError(
            "Invalid config value for healthcheck.timeout_s: must be shorter than interval_s "
            f"(timeout_s={hc.timeout_s}, interval_s={hc.interval_s})"
        )
    if hc.start_period_s < 0:
        raise ValueError("Invalid config value for healthcheck.start_period_s: must be >= 0")
    if hc.retries < 1:
        raise ValueError("Invalid config value for healthcheck.retries: must be >= 1")
    if not 0 < hc.start_interval_s <= hc.interval_s:
        raise ValueError(
            "Invalid config value for healthcheck.start_interval_s: must be > 0 and <= interval_s"
        )
    return hc
