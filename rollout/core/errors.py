"""Error codes for CLI exit status.

Deploy outcomes map to distinct exit codes so operator scripts can tell a
safe abort (old release still serving) from a rollback or a fatal failure.
"""

from enum import IntEnum

__all__ = ["ErrorCode"]


class ErrorCode(IntEnum):
    """Exit codes for CLI commands.

    These values are used as process exit codes and should remain stable:
    - 0: Success (release promoted)
    - 1: User error (bad input, invalid config)
    - 2: Environment error (missing tools, deploy lock held)
    - 3: Build error (both build attempts failed, old release untouched)
    - 4: Stage error (release storage or source fetch failed)
    - 5: Rolled back (new release unhealthy, previous release restored)
    - 6: Rollback failed (operator intervention required)
    - 7: Promoted, but pointer update or old release cleanup failed
    """

    OK = 0
    USER_ERROR = 1
    ENV_ERROR = 2
    BUILD_ERROR = 3
    STAGE_ERROR = 4
    ROLLED_BACK = 5
    ROLLBACK_FAILED = 6
    PROMOTION_ERROR = 7

    def __str__(self) -> str:
        """Return human-readable name."""
        return self.name.lower().replace("_", " ")

    @property
    def is_success(self) -> bool:
        """Check if this code indicates success."""
        return self == ErrorCode.OK

    @property
    def is_error(self) -> bool:
        """Check if this code indicates an error."""
        return self != ErrorCode.OK
