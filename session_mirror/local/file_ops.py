"""
JSON file operations for the local state file.

Provides:
- Whole-document reads that treat a missing file as "no data"
- Atomic writes using a sibling temp file, fsync and rename
- One-time migration of the legacy ``sessions.json`` state file
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..exceptions import StorageIOError

logger = logging.getLogger(__name__)

# Name the state file had before it held models and preferences
LEGACY_STATE_FILE = "sessions.json"


async def ensure_directory(path: Path) -> None:
    """Ensure directory exists, creating if necessary.

    Args:
        path: Directory path to ensure exists
    """
    try:
        await aiofiles.os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise StorageIOError("create_directory", str(path), e) from e


async def read_json(path: Path) -> dict[str, Any] | None:
    """Read a JSON document.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON data or None if the file doesn't exist

    Raises:
        StorageIOError: If the file cannot be read, is empty or is not a JSON object
    """
    try:
        async with aiofiles.open(path, encoding="utf-8") as f:
            content = await f.read()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageIOError("read_json", str(path), e) from e

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise StorageIOError("parse_json", str(path), e) from e
    if not isinstance(data, dict):
        raise StorageIOError("parse_json", str(path), ValueError("top-level value is not an object"))
    return data


async def write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    """Write JSON file atomically using temp file + rename.

    Readers see either the previous or the new document, never a mix.

    Args:
        path: Target path for JSON file
        data: Data to serialize as JSON
    """
    directory = path.parent
    await ensure_directory(directory)

    try:
        payload = json.dumps(data, indent=2, default=_json_serializer)
    except (TypeError, ValueError) as e:
        raise StorageIOError("serialize_json", str(path), e) from e

    fd, temp_path = tempfile.mkstemp(
        dir=directory,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    renamed = False
    try:
        os.close(fd)
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(payload)
            await f.flush()
            os.fsync(f.fileno())

        await aiofiles.os.rename(temp_path, path)
        renamed = True
    except OSError as e:
        raise StorageIOError("write_json", str(path), e) from e
    finally:
        if not renamed:
            try:
                os.remove(temp_path)
            except OSError:
                pass


def migrate_legacy_state_file(path: Path, default_name: str) -> bool:
    """Move a legacy ``sessions.json`` into place as the state file.

    Only applies when the state file uses the default name and does not exist
    yet, so an explicitly configured path is never replaced.

    Args:
        path: Configured state file path
        default_name: File name of the default state file

    Returns:
        True if a legacy file was moved
    """
    if path.name != default_name:
        return False

    try:
        if path.exists():
            return False
        legacy_path = path.with_name(LEGACY_STATE_FILE)
        if not legacy_path.exists():
            return False
        legacy_path.rename(path)
    except OSError as e:
        raise StorageIOError("migrate_legacy_state", str(path), e) from e

    logger.info(f"Migrated legacy state file {legacy_path} to {path}")
    return True


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for types not handled by default.

    Args:
        obj: Object to serialize

    Returns:
        JSON-serializable representation
    """
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
