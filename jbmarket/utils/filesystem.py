"""Filesystem utilities for jbmarket."""

import base64
import hashlib
import json
import shutil
from pathlib import Path
from typing import Any, BinaryIO


def ensure_directory(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path to ensure exists

    Returns:
        The directory path
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def copy_file(src: Path, dest: Path) -> Path:
    """Copy a file to a destination.

    Args:
        src: Source file path
        dest: Destination path (file or directory)

    Returns:
        Path to the copied file
    """
    if dest.is_dir():
        dest = dest / src.name
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src, dest)
    return dest


def remove_directory(path: Path) -> bool:
    """Remove a directory and its contents.

    Args:
        path: Directory path to remove

    Returns:
        True if the directory was removed, False if it didn't exist
    """
    if not path.exists():
        return False
    shutil.rmtree(path)
    return True


def dump_json(data: Any) -> str:
    """Serialize data the same way every time (sorted keys, 2-space indent)."""
    return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def write_json_file(path: Path, data: Any) -> None:
    """Write data to a JSON file in canonical form.

    Args:
        path: Path to the file
        data: Data to serialize
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_json(data), encoding="utf-8")


def swap_directories(staging: Path, target: Path) -> None:
    """Replace target with staging using renames.

    The previous target is renamed aside first and only removed once the
    staging directory is in place. If the second rename fails the previous
    target is restored.

    Args:
        staging: Fully written replacement directory
        target: Directory to replace (may not exist yet)
    """
    backup = target.with_name(f".{target.name}.previous")
    if backup.exists():
        shutil.rmtree(backup)

    had_target = target.exists()
    if had_target:
        target.rename(backup)
    try:
        staging.rename(target)
    except OSError:
        if had_target:
            backup.rename(target)
        raise

    if had_target:
        shutil.rmtree(backup)


def sri_from_digest(digest: bytes, algorithm: str = "sha256") -> str:
    """Format a raw digest as an SRI string (e.g. "sha256-abc...=")."""
    return f"{algorithm}-{base64.b64encode(digest).decode('ascii')}"


def compute_sri_hash(stream: BinaryIO, algorithm: str = "sha256") -> str:
    """Compute an SRI hash for a binary stream.

    Args:
        stream: Readable binary stream (file or HTTP response)
        algorithm: Hash algorithm (default: sha256)

    Returns:
        SRI-format integrity string
    """
    hasher = hashlib.new(algorithm)
    for chunk in iter(lambda: stream.read(8192), b""):
        hasher.update(chunk)
    return sri_from_digest(hasher.digest(), algorithm)
