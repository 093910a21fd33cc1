"""Temporary swap for building on low-memory hosts.

Image builds of the service can exhaust RAM on small VPS hosts. When total
memory is below the configured threshold, the guard makes sure a swap file
is active for the duration of the deploy and removes it afterwards, but
only if this run created it.
"""

from __future__ import annotations

import os
from pathlib import Path

from rollout.core.result import Err
from rollout.output.console import ConsoleProtocol
from rollout.platform.host import MEMINFO_PATH, read_mem_total_mb
from rollout.platform.process import CommandRunner

from .models import SwapResource

_MIB = 1024 * 1024
_SWAP_TOOL_TIMEOUT_SECONDS = 60.0
_DD_TIMEOUT_SECONDS = 15 * 60.0


class SwapGuard:
    """Acquires and releases build swap. Holds at most one resource."""

    def __init__(
        self,
        *,
        runner: CommandRunner,
        console: ConsoleProtocol,
        swap_path: Path = Path("/swapfile"),
        meminfo: Path = MEMINFO_PATH,
    ) -> None:
        self._runner = runner
        self._console = console
        self._swap_path = swap_path
        self._meminfo = meminfo
        self._held: SwapResource | None = None

    @property
    def held(self) -> SwapResource | None:
        return self._held

    def ensure_build_capacity(
        self, min_memory_mb: int, swap_size_bytes: int
    ) -> SwapResource | None:
        """Make sure the host can survive a build.

        Returns:
            The swap resource in use (None if memory suffices or swap could
            not be provided). Calling again before release returns the same
            resource without touching the host.
        """
        if self._held is not None:
            return self._held

        mem_mb = read_mem_total_mb(self._meminfo)
        if mem_mb is None:
            self._console.warning(f"cannot read {self._meminfo}; skipping swap check")
            return None
        if mem_mb >= min_memory_mb:
            return None

        self._console.info(f"Low RAM detected ({mem_mb}MB), ensuring swap at {self._swap_path}")

        if self._is_active():
            self._console.info(f"{self._swap_path} already active")
            self._held = SwapResource(
                path=self._swap_path,
                size_bytes=self._file_size() or swap_size_bytes,
                created_by_this_run=False,
            )
            return self._held

        preexisted = self._swap_path.exists()
        if preexisted:
            self._console.info(f"{self._swap_path} exists but is not active; activating it")
            if self._activate():
                self._held = SwapResource(
                    path=self._swap_path,
                    size_bytes=self._file_size() or swap_size_bytes,
                    created_by_this_run=True,
                    file_preexisted=True,
                )
                return self._held
            self._console.warning(f"could not activate existing {self._swap_path}")
            return None

        if not self._allocate(swap_size_bytes):
            self._discard_partial_file()
            self._console.warning("swap allocation failed; building without extra swap")
            return None

        if not self._activate():
            self._discard_partial_file()
            self._console.warning(f"could not activate {self._swap_path}")
            return None

        self._held = SwapResource(
            path=self._swap_path,
            size_bytes=swap_size_bytes,
            created_by_this_run=True,
        )
        return self._held

    def release_build_capacity(self, resource: SwapResource | None) -> bool:
        """Undo what ensure_build_capacity did. Never raises.

        Returns:
            True if nothing needed undoing or the undo fully succeeded.
        """
        if resource is None:
            return True
        if resource is self._held:
            self._held = None
        if not resource.created_by_this_run:
            return True

        ok = True
        off = self._runner.run(["swapoff", str(resource.path)], timeout=_SWAP_TOOL_TIMEOUT_SECONDS)
        if isinstance(off, Err):
            self._console.warning(f"swapoff {resource.path} failed: {off.error.detail or off.error}")
            ok = False

        if resource.file_preexisted:
            return ok

        try:
            resource.path.unlink(missing_ok=True)
        except OSError as e:
            self._console.warning(f"could not remove {resource.path}: {e}")
            ok = False
        else:
            self._console.info(f"Removed temporary swap at {resource.path}")
        return ok

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _is_active(self) -> bool:
        result = self._runner.run(
            ["swapon", "--show=NAME", "--noheadings"],
            timeout=_SWAP_TOOL_TIMEOUT_SECONDS,
        )
        if isinstance(result, Err):
            return False
        active = {line.strip() for line in result.value.splitlines() if line.strip()}
        return str(self._swap_path) in active

    def _allocate(self, size_bytes: int) -> bool:
        fast = self._runner.run(
            ["fallocate", "-l", str(size_bytes), str(self._swap_path)],
            timeout=_SWAP_TOOL_TIMEOUT_SECONDS,
        )
        if not isinstance(fast, Err):
            self._console.info(f"created {self._swap_path} with fallocate")
            return True

        self._console.info("fallocate failed, creating swap file with dd (slower)")
        count = max(1, size_bytes // _MIB)
        slow = self._runner.run(
            ["dd", "if=/dev/zero", f"of={self._swap_path}", "bs=1M", f"count={count}"],
            timeout=_DD_TIMEOUT_SECONDS,
        )
        return not isinstance(slow, Err)

    def _activate(self) -> bool:
        try:
            os.chmod(self._swap_path, 0o600)
        except OSError as e:
            self._console.warning(f"chmod 600 {self._swap_path} failed: {e}")

        for cmd in (["mkswap", str(self._swap_path)], ["swapon", str(self._swap_path)]):
            result = self._runner.run(cmd, timeout=_SWAP_TOOL_TIMEOUT_SECONDS)
            if isinstance(result, Err):
                self._console.warning(f"{cmd[0]} failed: {result.error.detail or result.error}")
                return False
        return True

    def _discard_partial_file(self) -> None:
        try:
            self._swap_path.unlink(missing_ok=True)
        except OSError as e:
            self._console.warning(f"could not remove partial {self._swap_path}: {e}")

    def _file_size(self) -> int | None:
        try:
            return self._swap_path.stat().st_size
        except OSError:
            return None
