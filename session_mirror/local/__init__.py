"""
Local file-based mirror storage.

Keeps the four mirror tables in one JSON document that is rewritten
atomically on every change.

Key classes:
- FileMirrorStore: MirrorStore backed by a single JSON state file
"""

from .file_ops import (
    LEGACY_STATE_FILE,
    migrate_legacy_state_file,
    read_json,
    write_json_atomic,
)
from .store import FileMirrorStore, normalize_models

__all__ = [
    "FileMirrorStore",
    "normalize_models",
    # Low-level file operations
    "LEGACY_STATE_FILE",
    "migrate_legacy_state_file",
    "read_json",
    "write_json_atomic",
]
