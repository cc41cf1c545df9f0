from __future__ import annotations

import os
import shutil
import time
from typing import Any

from pipelinekit import CommandExecutor, PipelineRunner, compile_stages, utc_now_iso8601
from shipyard.domain.artifacts import IMAGE_KEY
from shipyard.foundation.logging_utils import close_operational_logger, setup_operational_logger
from shipyard.framework.artifacts import (
    BUILD_INDEX_FILENAME,
    append_build_index_entry,
    generate_build_id,
    transcript_path,
    write_transcript,
)
from shipyard.framework.config import BuildConfig
from shipyard.framework.inputs import BuildInputs
from shipyard.framework.runtime import BuildContext
from shipyard.stages.registry import default_stage_sequence

SCHEMA_VERSION = 1


def _log_config_meta(logger, config_meta: dict[str, Any] | None) -> None:
    if not config_meta:
        return
    mode = config_meta.get("mode")
    paths = config_meta.get("paths") or []
    env_var = config_meta.get("env_var") or "SHIPYARD_CONFIG"
    if mode in {"env", "explicit"} and paths:
        label = f"env {env_var}" if mode == "env" else "explicit path"
        logger.info("Loaded config from %s=%s", label, paths[0])
    elif len(paths) > 1:
        logger.info("Loaded config base=%s local=%s", paths[0], paths[1])
    elif paths:
        logger.info("Loaded config base=%s", paths[0])


def _index_entry(
    ctx: BuildContext,
    *,
    status: str,
    phase: str,
    elapsed_s: float,
    transcript: str,
    oplog: str,
) -> dict[str, Any]:
    image = ctx.outputs.get(IMAGE_KEY)
    layers = list(image.layers) if image is not None else []
    entry: dict[str, Any] = {
        "schema_version": SCHEMA_VERSION,
        "build_id": ctx.build_id,
        "created_at": ctx.created_at,
        "status": status,
        "phase": phase,
        "elapsed_s": round(elapsed_s, 3),
        "image_name": ctx.cfg.image_name,
        "image_id": image.image_id if image is not None else None,
        "layers": len(layers),
        "layer_cache_hits": sum(1 for layer in layers if layer.cache_hit),
        "warnings": len(ctx.warnings),
        "artifacts": {"transcript": transcript, "oplog": oplog, "image": ctx.image_path},
    }
    if ctx.error is not None:
        entry["error"] = ctx.error
    return entry


def run_build(
    cfg_dict,
    *,
    build_id: str | None = None,
    config_meta: dict[str, Any] | None = None,
    executor: CommandExecutor | None = None,
) -> BuildContext:
    """Run every build stage in order and publish the runtime image.

    Any stage failure aborts the build: the error is recorded in the transcript
    and build index, the work directory is removed, and the exception is
    re-raised. No image is promoted for a failed build.
    """

    cfg, cfg_warnings = BuildConfig.from_dict(cfg_dict)
    build_id = build_id or generate_build_id()
    logger, oplog_path = setup_operational_logger(cfg.log_dir, build_id)
    index_path = os.path.join(cfg.log_dir, BUILD_INDEX_FILENAME)
    transcript = transcript_path(cfg.log_dir, build_id)

    _log_config_meta(logger, config_meta)
    logger.info("Build started for %s (source %s)", build_id, cfg.source_dir)

    ctx = BuildContext(build_id=build_id, cfg=cfg, logger=logger, created_at=utc_now_iso8601())
    for warning in cfg_warnings:
        ctx.warn(warning)

    inputs = BuildInputs(cfg=cfg, build_id=build_id)
    started = time.monotonic()
    phase = "compile_stages"
    try:
        compiled = compile_stages(
            default_stage_sequence(), stage_configs=cfg.stage_configs, inputs=inputs
        )
        ctx.outputs["build_pipeline"] = compiled.metadata
        logger.info("Build stages: %s", list(compiled.stage_ids()))

        phase = "pipeline"
        PipelineRunner(executor=executor).run_stages(ctx, list(compiled.blocks))

        phase = "records"
        write_transcript(transcript, ctx)
        logger.info("Wrote transcript JSON to %s", transcript)
        _append_index(
            ctx,
            index_path,
            _index_entry(
                ctx,
                status="success",
                phase="complete",
                elapsed_s=time.monotonic() - started,
                transcript=transcript,
                oplog=oplog_path,
            ),
        )
        logger.info("Operational log stored at %s", oplog_path)
        logger.info("Build %s completed: image %s", build_id, ctx.image_path)
        return ctx
    except Exception as exc:
        logger.exception("Build failed during phase %s", phase)
        ctx.error = {"type": exc.__class__.__name__, "message": str(exc), "phase": phase}
        stage = getattr(exc, "stage", None)
        if stage:
            ctx.error["stage"] = stage
        pipeline_path = getattr(exc, "pipeline_path", None)
        if pipeline_path:
            ctx.error["path"] = pipeline_path
        workspace = getattr(exc, "workspace", None)
        if workspace:
            ctx.error["workspace"] = workspace

        try:
            write_transcript(transcript, ctx)
            logger.info("Wrote transcript JSON to %s", transcript)
            _append_index(
                ctx,
                index_path,
                _index_entry(
                    ctx,
                    status="error",
                    phase=phase,
                    elapsed_s=time.monotonic() - started,
                    transcript=transcript,
                    oplog=oplog_path,
                ),
            )
        except Exception:
            logger.exception("Failed to write build records during error handling")
        raise
    finally:
        _cleanup(inputs, logger)
        close_operational_logger(logger)


def _append_index(ctx: BuildContext, path: str, entry: dict[str, Any]) -> None:
    try:
        append_build_index_entry(path, entry)
        ctx.logger.info("Appended build index entry to %s (status=%s)", path, entry["status"])
    except OSError as exc:
        ctx.logger.exception("Build index append failed: %s", exc)
        ctx.outputs["build_index_error"] = str(exc)


def _cleanup(inputs: BuildInputs, logger) -> None:
    # A failed publish never leaves a staging image behind.
    if os.path.exists(inputs.image_staging_dir):
        shutil.rmtree(inputs.image_staging_dir, ignore_errors=True)
    if inputs.cfg.keep_workdir:
        logger.info("Keeping work directory %s", inputs.build_dir)
        return
    if os.path.exists(inputs.build_dir):
        shutil.rmtree(inputs.build_dir, ignore_errors=True)
        logger.debug("Removed work directory %s", inputs.build_dir)
