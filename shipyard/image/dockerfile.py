from __future__ import annotations

import json

from shipyard.framework.config import BuildConfig
from shipyard.image.oci import entrypoint, healthcheck_test

DEFAULT_BASE_IMAGE = "node:22-alpine"


def _duration(seconds: float) -> str:
    return f"{int(seconds)}s" if float(seconds).is_integer() else f"{seconds}s"


def render_dockerfile(cfg: BuildConfig, *, base_image: str = DEFAULT_BASE_IMAGE) -> str:
    """Render the multi-stage Dockerfile equivalent to the shipyard build for `cfg`."""

    identity = cfg.identity
    owner = identity.owner
    workdir = cfg.runtime.workdir
    install = " ".join(cfg.install_command)
    build = " ".join(cfg.build_command)
    lines: list[str] = [
        f"FROM {base_image} AS base",
        "WORKDIR /build",
        "",
        "FROM base AS builder",
        f"COPY {cfg.license_file} ./",
        "COPY package*.json ./",
    ]
    for ws in cfg.workspaces:
        lines.append(f"COPY {ws.path}/package*.json ./{ws.path}/")
    lines.append(f"RUN {install}")
    lines.append("")
    for pattern in cfg.shared_config:
        lines.append(f"COPY {pattern} ./")
    for ws in cfg.workspaces:
        lines.append(f"COPY {ws.path} ./{ws.path}")
    if cfg.scripts_dir:
        lines.append(f"COPY {cfg.scripts_dir} ./{cfg.scripts_dir}")
    lines.append(f"COPY {cfg.resources_dir} ./{cfg.resources_dir}")
    lines.append(f"RUN {build}")
    lines.append("RUN npm --workspaces prune --omit=dev")
    lines.append("")

    lines.extend(
        [
            "FROM base AS final",
            f"RUN addgroup -S -g {identity.gid} {identity.group} 2>/dev/null || true \\",
            f"  && adduser -S -u {identity.uid} -G {identity.group} {identity.user} 2>/dev/null || true",
            f"WORKDIR {workdir}",
        ]
    )
    if cfg.runtime.entrypoint == "direct":
        lines.append("RUN apk add --no-cache wget")
    lines.append(f"COPY --from=builder --chown={owner} /build/package*.json /build/{cfg.license_file} ./")
    for ws in cfg.workspaces:
        lines.append(f"COPY --from=builder --chown={owner} /build/{ws.path}/package*.json ./{ws.path}/")
    for ws in cfg.workspaces:
        lines.append(
            f"COPY --from=builder --chown={owner} /build/{ws.path}/{ws.output} ./{ws.path}/{ws.output}"
        )
    lines.append(f"COPY --from=builder --chown={owner} /build/{cfg.resources_dir} ./{cfg.resources_dir}")
    lines.append(f"COPY --from=builder --chown={owner} /build/node_modules ./node_modules")
    lines.append("")

    hc = cfg.healthcheck
    test = healthcheck_test(cfg)
    check = test[1] if test[0] == "CMD-SHELL" else json.dumps(test[1:])
    lines.extend(
        [
            f"USER {identity.user}",
            f"ENV PORT={cfg.runtime.port}",
            (
                f"HEALTHCHECK --interval={_duration(hc.interval_s)} --timeout={_duration(hc.timeout_s)} "
                f"--start-period={_duration(hc.start_period_s)} --start-interval={_duration(hc.start_interval_s)} "
                f"--retries={hc.retries} \\"
            ),
            f"  CMD {check}",
            f"EXPOSE {cfg.runtime.port}",
            f"ENTRYPOINT {json.dumps(entrypoint(cfg))}",
            "",
        ]
    )
    return "\n".join(lines)
