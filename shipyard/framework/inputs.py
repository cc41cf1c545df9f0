from __future__ import annotations

import os
from dataclasses import dataclass

from shipyard.framework.config import BuildConfig


@dataclass(frozen=True)
class BuildInputs:
    """Everything a stage builder may read at compile time.

    Stage builders must not touch the filesystem; the directories below are
    only created when the stage's steps run.
    """

    cfg: BuildConfig
    build_id: str

    @property
    def build_dir(self) -> str:
        return os.path.join(self.cfg.work_dir, self.build_id)

    @property
    def store_dir(self) -> str:
        return os.path.join(self.build_dir, "deps")

    @property
    def source_root(self) -> str:
        return os.path.join(self.build_dir, "source")

    @property
    def artifacts_dir(self) -> str:
        return os.path.join(self.build_dir, "artifacts")

    @property
    def pruned_dir(self) -> str:
        return os.path.join(self.build_dir, "pruned")

    @property
    def image_dir(self) -> str:
        return os.path.join(self.cfg.output_dir, self.cfg.image_name)

    @property
    def image_staging_dir(self) -> str:
        return os.path.join(self.cfg.output_dir, f".staging-{self.cfg.image_name}-{self.build_id}")
