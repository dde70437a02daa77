"""Resolution of organizational roles into concrete people."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Protocol

import yaml
from pydantic import BaseModel, field_validator

from .roles import Role, parse_role

logger = logging.getLogger(__name__)


class Identity(BaseModel):
    user_id: str
    name: Optional[str] = None
    role: Role


class IdentityResolver(Protocol):
    """Finds who currently holds a role for a company or store."""

    async def resolve_role(
        self, company_id: str, store_id: Optional[str], role: Role
    ) -> Identity | None:
        """Return one holder of ``role`` or ``None``."""


class DirectoryEntry(BaseModel):
    user_id: str
    name: Optional[str] = None
    company_id: str
    store_id: Optional[str] = None
    roles: List[Role]

    @field_validator("roles", mode="before")
    @classmethod
    def _normalize_roles(cls, value: List[str | Role]) -> List[Role]:
        return [parse_role(v) for v in value or ()]


class StaticIdentityResolver(IdentityResolver):
    """Resolve roles against a fixed directory of people.

    Store managers are matched on their store. Company-level roles only match
    people without a store binding, so a store manager who also carries the
    manager role is never picked as the head-office approver.
    """

    def __init__(self, entries: Iterable[DirectoryEntry] = ()) -> None:
        self._entries: List[DirectoryEntry] = list(entries)

    def add(self, entry: DirectoryEntry) -> None:
        self._entries.append(entry)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "StaticIdentityResolver":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        people = data.get("people", []) if isinstance(data, dict) else data
        return cls(DirectoryEntry(**person) for person in people)

    async def resolve_role(
        self, company_id: str, store_id: Optional[str], role: Role
    ) -> Identity | None:
        for entry in self._entries:
            if entry.company_id != company_id or role not in entry.roles:
                continue
            if role is Role.STORE_MANAGER:
                if store_id is None or entry.store_id != store_id:
                    continue
            elif entry.store_id is not None:
                continue
            return Identity(user_id=entry.user_id, name=entry.name, role=role)
        logger.debug(f"No {role.value} found for company={company_id} store={store_id}")
        return None
