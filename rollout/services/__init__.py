"""Deploy components and the orchestrator that sequences them."""

from .build import BuildPipeline, BuildPolicy
from .cleanup import CleanupService
from .compose import Compose
from .controller import ServiceController
from .errors import (
    BuildError,
    ControllerError,
    DeployError,
    LockHeld,
    PromotionError,
    RollbackError,
    StageError,
    StateError,
)
from .health import HealthMonitor, HealthProbe, UrllibProbe
from .models import Release, ReleaseStatus, SwapResource
from .orchestrator import DeployOutcome, DeployReport, DeployState, Orchestrator
from .releases import ReleaseStore
from .source import SourceFetcher
from .swap import SwapGuard

__all__ = [
    "BuildError",
    "BuildPipeline",
    "BuildPolicy",
    "CleanupService",
    "Compose",
    "ControllerError",
    "DeployError",
    "DeployOutcome",
    "DeployReport",
    "DeployState",
    "HealthMonitor",
    "HealthProbe",
    "LockHeld",
    "Orchestrator",
    "PromotionError",
    "Release",
    "ReleaseStatus",
    "ReleaseStore",
    "RollbackError",
    "ServiceController",
    "SourceFetcher",
    "StageError",
    "StateError",
    "SwapGuard",
    "SwapResource",
    "UrllibProbe",
]
