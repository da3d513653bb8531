"""File handler module: path validation, encoding-aware reads, atomic writes.

Every file the engine produces (generated sources, stored IR, conflict
records) goes through ``write_file_atomic`` so that watchers and readers
never observe a half-written file.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from charset_normalizer import from_bytes

from irsync.core.async_utils import run_sync

# =============================================================================
# Path Validation
# =============================================================================


def validate_file_path(path_str: str) -> Path:
    """Validate and resolve an input file path.

    Args:
        path_str: Absolute path string to an existing file.

    Returns:
        Resolved Path object pointing to the real file.

    Raises:
        ValueError: If path is relative, doesn't exist, or is not a file.
    """
    path = Path(path_str)
    if not path.is_absolute():
        raise ValueError(f"Path must be absolute: {path_str}")
    resolved = path.resolve()
    if not resolved.exists():
        raise ValueError(f"File not found: {path_str}")
    if not resolved.is_file():
        raise ValueError(f"Path is not a file: {path_str}")
    return resolved


# =============================================================================
# File Read/Write
# =============================================================================


def read_file_with_encoding(path: Path) -> tuple[str, str]:
    """Read a file with automatic encoding detection.

    Reads raw bytes first, then uses charset-normalizer to detect encoding.
    Defaults to UTF-8 for empty files or when detection fails.

    Args:
        path: Path to the file to read.

    Returns:
        Tuple of (content_string, detected_encoding).
    """
    raw = Path(path).read_bytes()
    if not raw:
        return ("", "utf-8")

    result = from_bytes(raw).best()
    if result is None:
        encoding = "utf-8"
        content = raw.decode(encoding, errors="replace")
    else:
        encoding = result.encoding
        # ascii is a strict subset of utf-8
        if encoding in ("ascii", "utf_8"):
            encoding = "utf-8"
        content = str(result)
    return (content, encoding)


def write_file_atomic(
    path: Path, content: str, encoding: str = "utf-8"
) -> int:
    """Write content atomically, creating parent directories as needed.

    Writes to a temporary file in the target directory then replaces the
    target with ``os.replace()``.

    Args:
        path: Path to the output file.
        content: String content to write.
        encoding: Encoding to use (default: utf-8).

    Returns:
        Number of bytes written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    encoded = content.encode(encoding)

    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(encoded)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    return len(encoded)


def write_json_atomic(path: Path, data: Any) -> int:
    """Serialize *data* as indented JSON and write it atomically."""
    return write_file_atomic(
        path, json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    )


def remove_file(path: Path) -> bool:
    """Remove *path* if it exists.

    Returns:
        ``True`` if a file was removed, ``False`` if it was already absent.
    """
    try:
        Path(path).unlink()
    except FileNotFoundError:
        return False
    return True


# =============================================================================
# Async Wrappers
# =============================================================================


async def read_file_async(path_str: str) -> tuple[str, str, Path]:
    """Async wrapper: validate path, read file with encoding detection.

    Args:
        path_str: Absolute path string to an existing file.

    Returns:
        Tuple of (content_string, detected_encoding, resolved_path).

    Raises:
        ValueError: If path validation fails.
    """
    resolved = await run_sync(validate_file_path, path_str)
    content, encoding = await run_sync(read_file_with_encoding, resolved)
    return (content, encoding, resolved)
