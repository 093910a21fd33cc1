"""Subprocess execution with Result-based error handling.

Everything rollout does to the host (git, docker, swap tools) goes through a
``CommandRunner``. ``SubprocessRunner`` runs real commands; ``MockRunner``
scripts success and failure per command so deploy flows can be tested
without docker.

Usage:
    runner = SubprocessRunner()
    match runner.run(["docker", "compose", "ps"], cwd=release.directory):
        case Ok(stdout):
            print(stdout)
        case Err(error):
            print(f"Failed: {error.stderr}")
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from rollout.core.result import Err, Ok, Result

__all__ = [
    "CommandCall",
    "CommandRunner",
    "MockRunner",
    "ProcessError",
    "SubprocessRunner",
    "run",
]


@dataclass(frozen=True, slots=True)
class ProcessError:
    """Error from a failed subprocess execution.

    Attributes:
        command: The command that was executed.
        returncode: The exit code of the process (-1 if it never ran or timed out).
        stdout: Standard output (may be empty).
        stderr: Standard error (contains error details).
    """

    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    def __str__(self) -> str:
        """Format error for display."""
        cmd_str = " ".join(self.command[:4])
        if len(self.command) > 4:
            cmd_str += " ..."
        return f"{cmd_str} failed (exit {self.returncode})"

    @property
    def detail(self) -> str:
        """Last non-empty stderr line, for one-line error reports."""
        lines = [line for line in self.stderr.splitlines() if line.strip()]
        return lines[-1].strip() if lines else ""


def run(
    cmd: Sequence[str],
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    *,
    timeout: float | None = None,
) -> Result[str, ProcessError]:
    """Execute a command and return stdout or error.

    Args:
        cmd: Command and arguments to execute.
        cwd: Working directory for the command (current directory if None).
        env: Full environment (uses current env if None).
        timeout: Maximum seconds to wait (None for no limit).

    Returns:
        Ok(stdout) on success, Err(ProcessError) on failure.
    """
    try:
        proc = subprocess.run(
            list(cmd),
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        return Err(
            ProcessError(
                command=tuple(cmd),
                returncode=-1,
                stdout=e.stdout if isinstance(e.stdout, str) else "",
                stderr=f"Command timed out after {timeout}s",
            )
        )
    except OSError as e:
        return Err(
            ProcessError(
                command=tuple(cmd),
                returncode=-1,
                stdout="",
                stderr=str(e),
            )
        )

    if proc.returncode != 0:
        return Err(
            ProcessError(
                command=tuple(cmd),
                returncode=proc.returncode,
                stdout=proc.stdout,
                stderr=proc.stderr,
            )
        )

    return Ok(proc.stdout)


class CommandRunner(Protocol):
    """Capability for invoking external tools."""

    def run(
        self,
        cmd: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> Result[str, ProcessError]:
        """Run cmd; extra env is merged over the inherited environment."""
        ...


class SubprocessRunner:
    """Runs commands on the real host."""

    def run(
        self,
        cmd: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> Result[str, ProcessError]:
        full_env = {**os.environ, **env} if env else None
        return run(cmd, cwd=cwd, env=full_env, timeout=timeout)


@dataclass(frozen=True, slots=True)
class CommandCall:
    """A command recorded by MockRunner."""

    cmd: tuple[str, ...]
    cwd: Path | None
    env: Mapping[str, str] | None
    timeout: float | None

    @property
    def line(self) -> str:
        return " ".join(self.cmd)


@dataclass
class _Rule:
    tokens: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    remaining: int | None

    def matches(self, cmd: tuple[str, ...]) -> bool:
        return all(token in cmd for token in self.tokens)


def _empty_calls() -> list[CommandCall]:
    return []


def _empty_rules() -> list[_Rule]:
    return []


@dataclass
class MockRunner:
    """Command runner that records calls and returns scripted results.

    Rules match when every token appears as an argument of the command; the
    first matching rule wins. Unmatched commands succeed with empty stdout.

    Usage:
        runner = MockRunner()
        runner.fail("build", times=1)           # first build fails
        runner.respond("rev-parse", stdout="abc123\\n")
        pipeline = BuildPipeline(runner=runner, ...)
    """

    calls: list[CommandCall] = field(default_factory=_empty_calls)
    _rules: list[_Rule] = field(default_factory=_empty_rules, init=False, repr=False)

    def respond(self, *tokens: str, stdout: str = "", times: int | None = None) -> None:
        """Succeed with stdout for matching commands."""
        self._rules.append(_Rule(tokens, 0, stdout, "", times))

    def fail(
        self,
        *tokens: str,
        returncode: int = 1,
        stderr: str = "",
        times: int | None = None,
    ) -> None:
        """Fail matching commands with returncode."""
        self._rules.append(_Rule(tokens, returncode, "", stderr, times))

    def run(
        self,
        cmd: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> Result[str, ProcessError]:
        command = tuple(cmd)
        self.calls.append(CommandCall(cmd=command, cwd=cwd, env=env, timeout=timeout))

        for rule in self._rules:
            if rule.remaining == 0 or not rule.matches(command):
                continue
            if rule.remaining is not None:
                rule.remaining -= 1
            if rule.returncode != 0:
                return Err(ProcessError(command, rule.returncode, "", rule.stderr))
            return Ok(rule.stdout)

        return Ok("")

    # Test helper methods

    def called(self, *tokens: str) -> bool:
        """Check if any recorded command contains all tokens."""
        return bool(self.matching(*tokens))

    def matching(self, *tokens: str) -> list[CommandCall]:
        """All recorded commands containing all tokens, in call order."""
        return [c for c in self.calls if all(t in c.cmd for t in tokens)]

    @property
    def lines(self) -> list[str]:
        return [c.line for c in self.calls]
