"""Filesystem helpers.

Writes that other processes may observe mid-deploy (release metadata, the
active pointer) go through a temp entry in the same directory followed by
``os.replace``, which is atomic on POSIX filesystems.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import uuid
from pathlib import Path

__all__ = ["atomic_symlink", "atomic_write_text", "remove_tree"]


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write text to path atomically using temp file + replace."""
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    tmp_path = Path(tmp_name)

    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)


def atomic_symlink(link: Path, target: Path | str) -> None:
    """Point link at target, replacing any existing link in one rename.

    Readers resolving ``link`` see either the old or the new target.
    """
    link.parent.mkdir(parents=True, exist_ok=True)
    tmp_link = link.parent / f".{link.name}.{uuid.uuid4().hex[:8]}.tmp"

    try:
        os.symlink(str(target), tmp_link)
        os.replace(tmp_link, link)
    finally:
        if tmp_link.is_symlink():
            tmp_link.unlink(missing_ok=True)


def remove_tree(path: Path) -> bool:
    """Delete a directory tree (or a stray file/link) at path.

    Returns:
        True if something was removed, False if path was already absent.

    Raises:
        OSError: If the path exists but cannot be removed.
    """
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
        return True
    if not path.exists():
        return False
    shutil.rmtree(path)
    return True
