"""Build record helpers (transcript and build index).

Independent of `shipyard.stages` (framework boundary).
"""

from .index import BUILD_INDEX_FILENAME, append_build_index_entry, generate_build_id, read_build_index
from .transcript import transcript_path, write_transcript

__all__ = [
    "BUILD_INDEX_FILENAME",
    "append_build_index_entry",
    "generate_build_id",
    "read_build_index",
    "transcript_path",
    "write_transcript",
]
