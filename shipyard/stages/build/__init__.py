from __future__ import annotations

from shipyard.stages.build.assemble import STAGE as ASSEMBLE
from shipyard.stages.build.compile import STAGE as COMPILE
from shipyard.stages.build.image import STAGE as IMAGE
from shipyard.stages.build.prune import STAGE as PRUNE
from shipyard.stages.build.resolve import STAGE as RESOLVE

# Build order; data flows strictly forward through this list.
__all_stages__ = [
    RESOLVE,
    ASSEMBLE,
    COMPILE,
    PRUNE,
    IMAGE,
]
