"""Host resource inspection (Linux)."""

from __future__ import annotations

from pathlib import Path

__all__ = ["MEMINFO_PATH", "read_mem_total_mb"]

MEMINFO_PATH = Path("/proc/meminfo")


def read_mem_total_mb(meminfo: Path = MEMINFO_PATH) -> int | None:
    """Total physical memory in MB from /proc/meminfo, or None if unreadable."""
    try:
        text = meminfo.read_text(encoding="utf-8")
    except OSError:
        return None

    for line in text.splitlines():
        if not line.startswith("MemTotal:"):
            continue
        parts = line.split()
        if len(parts) >= 2 and parts[1].isdigit():
            return int(parts[1]) // 1024
    return None
