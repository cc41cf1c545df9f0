from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from shipyard.framework.config import BuildConfig


@dataclass
class BuildContext:
    build_id: str
    cfg: BuildConfig
    logger: logging.Logger
    created_at: str

    outputs: dict[str, Any] = field(default_factory=dict)
    steps: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    image_path: str | None = None
    error: dict[str, Any] | None = None

    def warn(self, message: str) -> None:
        """Record a non-fatal finding in the transcript and the operational log."""

        self.warnings.append(message)
        self.logger.warning(message)
