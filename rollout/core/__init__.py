"""Core domain types and logic."""

from .config import ConfigError, DeployConfig, load_config, load_config_or_default
from .errors import ErrorCode
from .fsm import FINISH, StepOutcome, advance, run_state_machine
from .result import Err, Ok, Result, is_err, is_ok

__all__ = [
    # config
    "ConfigError",
    "DeployConfig",
    "load_config",
    "load_config_or_default",
    # errors
    "ErrorCode",
    # fsm
    "FINISH",
    "StepOutcome",
    "advance",
    "run_state_machine",
    # result
    "Err",
    "Ok",
    "Result",
    "is_err",
    "is_ok",
]
