"""Canonical roles, capabilities and decision override policy."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class Role(str, Enum):
    """Organizational roles, ordered from lowest to highest authority."""

    STAFF = "staff"
    STORE_MANAGER = "store_manager"
    MANAGER = "manager"
    COMPANY_ADMIN = "company_admin"
    SUPER_ADMIN = "super_admin"

    @classmethod
    def _missing_(cls, value: object) -> Optional["Role"]:
        if not isinstance(value, str):
            return None
        key = value.strip().lower().replace("-", "_").replace(" ", "_")
        key = ROLE_ALIASES.get(key, key)
        for member in cls:
            if member.value == key:
                return member
        return None

    @property
    def rank(self) -> int:
        return ROLE_HIERARCHY.index(self)


ROLE_HIERARCHY = [
    Role.STAFF,
    Role.STORE_MANAGER,
    Role.MANAGER,
    Role.COMPANY_ADMIN,
    Role.SUPER_ADMIN,
]

# Legacy role strings seen in stored data. "admin" is the head-office manager
# without a store binding, not the company owner.
ROLE_ALIASES = {
    "admin": "manager",
    "hq_manager": "manager",
    "owner": "company_admin",
    "superadmin": "super_admin",
    "employee": "staff",
}


class Capability(str, Enum):
    REQUEST = "request"
    DECIDE_STEP = "decide_step"
    PROGRESS_REMEDIATION = "progress_remediation"
    MANAGE_TEMPLATES = "manage_templates"
    VIEW_COMPANY = "view_company"


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.STAFF: frozenset({Capability.REQUEST, Capability.PROGRESS_REMEDIATION}),
    Role.STORE_MANAGER: frozenset(
        {Capability.REQUEST, Capability.DECIDE_STEP, Capability.PROGRESS_REMEDIATION}
    ),
    Role.MANAGER: frozenset(
        {
            Capability.REQUEST,
            Capability.DECIDE_STEP,
            Capability.PROGRESS_REMEDIATION,
            Capability.VIEW_COMPANY,
        }
    ),
    Role.COMPANY_ADMIN: frozenset(Capability),
    Role.SUPER_ADMIN: frozenset(Capability),
}


def parse_role(value: str | Role) -> Role:
    """Normalize a raw role string. Raises ``ValueError`` for unknown roles."""
    return value if isinstance(value, Role) else Role(value)


class Actor(BaseModel):
    """Authenticated caller with roles already normalized."""

    model_config = ConfigDict(frozen=True)

    id: str
    roles: FrozenSet[Role] = frozenset()

    @field_validator("roles", mode="before")
    @classmethod
    def _normalize_roles(cls, value: Iterable[str | Role]) -> FrozenSet[Role]:
        return frozenset(parse_role(v) for v in value or ())

    def holds(self, role: Role) -> bool:
        return role in self.roles


def has_capability(actor: Actor, capability: Capability) -> bool:
    return any(capability in ROLE_CAPABILITIES[role] for role in actor.roles)


def escalation_role(role: Optional[Role]) -> Role:
    """Return the role one level above ``role``, capped at company admin."""
    if role is None:
        return Role.STORE_MANAGER
    if role.rank >= Role.COMPANY_ADMIN.rank:
        return Role.COMPANY_ADMIN
    return ROLE_HIERARCHY[role.rank + 1]


DEFAULT_OVERRIDE_ROLES: FrozenSet[Role] = frozenset(
    {Role.COMPANY_ADMIN, Role.SUPER_ADMIN}
)


class OverridePolicy:
    """Which roles may decide a step bound to someone else, per workflow type."""

    def __init__(
        self,
        per_type: Optional[Mapping[str, Iterable[Role]]] = None,
        default: Iterable[Role] = DEFAULT_OVERRIDE_ROLES,
    ) -> None:
        self._default = frozenset(default)
        self._per_type = {
            _type_key(key): frozenset(roles) for key, roles in (per_type or {}).items()
        }

    def roles_for(self, workflow_type: str) -> FrozenSet[Role]:
        return self._per_type.get(_type_key(workflow_type), self._default)

    def allows(self, actor: Actor, workflow_type: str) -> bool:
        return bool(actor.roles & self.roles_for(workflow_type))


def _type_key(workflow_type: object) -> str:
    return workflow_type.value if isinstance(workflow_type, Enum) else str(workflow_type)
