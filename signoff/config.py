from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import (
    DEFAULT_APPROVAL_STEP_SLA_HOURS,
    DEFAULT_DEADLINE_HOURS,
    DEFAULT_DELIVERY_ATTEMPTS,
    DEFAULT_DELIVERY_BACKOFF_BASE,
    DEFAULT_EXPENSE_THRESHOLDS,
    DEFAULT_PURCHASE_THRESHOLDS,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
)
from .contracts import Severity, WorkflowType
from .roles import DEFAULT_OVERRIDE_ROLES, OverridePolicy, Role


class RedisConfig(BaseModel):
    """Connection settings for the Redis notification channel."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class NotificationConfig(BaseModel):
    backend: Literal["log", "inmemory", "redis"] = "log"
    redis: RedisConfig = RedisConfig()
    max_attempts: int = Field(default=DEFAULT_DELIVERY_ATTEMPTS, ge=1)
    backoff_base: float = Field(default=DEFAULT_DELIVERY_BACKOFF_BASE, ge=0)
    operator_user_id: Optional[str] = None


class AmountTier(BaseModel):
    """Approver roles for amounts below ``upper_bound`` (``None`` = no limit)."""

    upper_bound: Optional[float] = None
    roles: List[Role]


def _scaled_tiers(thresholds: Tuple[float, float]) -> List[AmountTier]:
    low, high = thresholds
    return [
        AmountTier(upper_bound=low, roles=[Role.STORE_MANAGER]),
        AmountTier(upper_bound=high, roles=[Role.STORE_MANAGER, Role.MANAGER]),
        AmountTier(roles=[Role.STORE_MANAGER, Role.MANAGER, Role.COMPANY_ADMIN]),
    ]


def _default_amount_tiers() -> Dict[WorkflowType, List[AmountTier]]:
    return {
        WorkflowType.PURCHASE: _scaled_tiers(DEFAULT_PURCHASE_THRESHOLDS),
        WorkflowType.EXPENSE: _scaled_tiers(DEFAULT_EXPENSE_THRESHOLDS),
    }


class ApprovalConfig(BaseModel):
    """Approval-line policy."""

    amount_tiers: Dict[WorkflowType, List[AmountTier]] = Field(
        default_factory=_default_amount_tiers
    )
    step_sla_hours: Optional[float] = Field(
        default=DEFAULT_APPROVAL_STEP_SLA_HOURS, gt=0
    )
    override_roles: Dict[WorkflowType, List[Role]] = Field(default_factory=dict)
    default_override_roles: List[Role] = Field(
        default_factory=lambda: sorted(DEFAULT_OVERRIDE_ROLES, key=lambda r: r.rank)
    )
    skip_requester: bool = True

    @field_validator("amount_tiers")
    @classmethod
    def _check_tiers(
        cls, value: Dict[WorkflowType, List[AmountTier]]
    ) -> Dict[WorkflowType, List[AmountTier]]:
        for workflow_type, tiers in value.items():
            name = workflow_type.value
            if not tiers:
                raise ValueError(f"{name}: at least one amount tier is required")
            if tiers[-1].upper_bound is not None:
                raise ValueError(f"{name}: the last tier must be open-ended")
            bounds = [t.upper_bound for t in tiers[:-1]]
            if any(b is None for b in bounds):
                raise ValueError(f"{name}: only the last tier may be open-ended")
            if any(b <= a for a, b in zip(bounds, bounds[1:])):
                raise ValueError(f"{name}: tier bounds must be strictly increasing")
            sizes = [len(t.roles) for t in tiers]
            if min(sizes) == 0 or any(b < a for a, b in zip(sizes, sizes[1:])):
                raise ValueError(f"{name}: tiers must not shrink as amounts grow")
        return value

    def override_policy(self) -> OverridePolicy:
        return OverridePolicy(self.override_roles, self.default_override_roles)


class DeadlineOffsets(BaseModel):
    """Hours from creation until each remediation stage is due."""

    immediate_action_hours: float
    root_cause_hours: float
    corrective_action_hours: float
    verification_hours: float

    @model_validator(mode="after")
    def _strictly_increasing(self) -> "DeadlineOffsets":
        hours = self.as_tuple()
        if hours[0] <= 0 or any(b <= a for a, b in zip(hours, hours[1:])):
            raise ValueError(f"deadline offsets must be positive and increasing: {hours}")
        return self

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (
            self.immediate_action_hours,
            self.root_cause_hours,
            self.corrective_action_hours,
            self.verification_hours,
        )

    @classmethod
    def from_hours(cls, hours: Tuple[float, float, float, float]) -> "DeadlineOffsets":
        return cls(
            immediate_action_hours=hours[0],
            root_cause_hours=hours[1],
            corrective_action_hours=hours[2],
            verification_hours=hours[3],
        )


def _default_deadlines() -> Dict[Severity, DeadlineOffsets]:
    return {
        Severity(name): DeadlineOffsets.from_hours(hours)
        for name, hours in DEFAULT_DEADLINE_HOURS.items()
    }


SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class RemediationConfig(BaseModel):
    """Corrective-action policy."""

    deadlines: Dict[Severity, DeadlineOffsets] = Field(
        default_factory=_default_deadlines
    )
    stage_role: Role = Role.STORE_MANAGER

    @field_validator("deadlines")
    @classmethod
    def _check_deadlines(
        cls, value: Dict[Severity, DeadlineOffsets]
    ) -> Dict[Severity, DeadlineOffsets]:
        missing = [s.value for s in SEVERITY_ORDER if s not in value]
        if missing:
            raise ValueError(f"deadlines missing for severities: {missing}")
        for lower, higher in zip(SEVERITY_ORDER, SEVERITY_ORDER[1:]):
            if any(
                h > l for l, h in zip(value[lower].as_tuple(), value[higher].as_tuple())
            ):
                raise ValueError(
                    f"{higher.value} deadlines must not be longer than {lower.value}"
                )
        return value


class SweeperConfig(BaseModel):
    interval_seconds: float = Field(default=DEFAULT_SWEEP_INTERVAL_SECONDS, gt=0)
    # also remind the current holder once when their step falls due
    remind_holder: bool = False


class SignoffConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    directory_path: Optional[str] = None
    approval: ApprovalConfig = ApprovalConfig()
    remediation: RemediationConfig = RemediationConfig()
    notifications: NotificationConfig = NotificationConfig()
    sweeper: SweeperConfig = SweeperConfig()


def load_config(path: Optional[str] = None) -> SignoffConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SIGNOFF_CONFIG env
            variable or 'signoff.yaml' in the current directory.
    """

    config_path = path or os.getenv("SIGNOFF_CONFIG", "signoff.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SignoffConfig(**data)
    else:
        config = SignoffConfig()

    env_db_url = os.getenv("SIGNOFF_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_backend = os.getenv("SIGNOFF_NOTIFICATIONS")
    if env_backend:
        config.notifications = config.notifications.model_copy(
            update={"backend": env_backend.lower()}
        )
    return config
