"""Build and runtime error taxonomy.

  ShipyardError
    ManifestResolutionError   manifests/lockfile unusable or install failed
    SourceAssemblyError       a required source path is missing or unsafe to copy
    CompilationError          build command failed or a workspace produced no output
    PruningError              production closure cannot be computed
    ImageAssemblyError        image layers violate ownership/layout rules
    RuntimeStartupError       port, privilege drop or process start failed

Build-time errors are fatal and never retried.
"""

from __future__ import annotations


class ShipyardError(Exception):
    """Base class; carries the stage that raised it when known."""

    stage: str | None = None

    def __init__(self, message: str, *, stage: str | None = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class ManifestResolutionError(ShipyardError):
    stage = "resolve"


class SourceAssemblyError(ShipyardError):
    stage = "assemble"


class CompilationError(ShipyardError):
    stage = "compile"

    def __init__(self, message: str, *, workspace: str | None = None, stage: str | None = None):
        super().__init__(message, stage=stage)
        self.workspace = workspace


class PruningError(ShipyardError):
    stage = "prune"


class ImageAssemblyError(ShipyardError):
    stage = "image"


class RuntimeStartupError(ShipyardError):
    stage = "runtime"
