"""Single-host release orchestration for docker compose services."""

__version__ = "0.3.0"
