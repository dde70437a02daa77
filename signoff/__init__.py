"""Signoff: multi-step approval and corrective-action workflows."""

from .config import SignoffConfig, load_config
from .contracts import (
    NonConformance,
    Notification,
    Outcome,
    Severity,
    StepPayload,
    WorkflowContext,
    WorkflowFilters,
    WorkflowStatus,
    WorkflowType,
)
from .dispatch import SideEffectDispatcher
from .engine import WorkflowEngine
from .errors import WorkflowError
from .identity import DirectoryEntry, StaticIdentityResolver
from .notifications import get_gateway
from .persistence import get_repository
from .roles import Actor, Role
from .sweeper import EscalationSweeper, SweepReport

__version__ = "0.1.0"
__all__ = [
    "Actor",
    "DirectoryEntry",
    "EscalationSweeper",
    "NonConformance",
    "Notification",
    "Outcome",
    "Role",
    "Severity",
    "SideEffectDispatcher",
    "SignoffConfig",
    "StaticIdentityResolver",
    "StepPayload",
    "SweepReport",
    "WorkflowContext",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowFilters",
    "WorkflowStatus",
    "WorkflowType",
    "get_gateway",
    "get_repository",
    "load_config",
]
