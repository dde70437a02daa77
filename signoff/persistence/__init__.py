"""Persistence layer for signoff workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SignoffConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import Step, StepDescriptor, StepTemplate, WorkflowInstance
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[SignoffConfig] = None
) -> WorkflowRepository:
    """Factory function to build a workflow repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``SIGNOFF_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned. Each call builds a new
    repository; callers own and pass it to the engine.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("SIGNOFF_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        return InMemoryWorkflowRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteWorkflowRepository(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresWorkflowRepository

        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "Step",
    "StepDescriptor",
    "StepTemplate",
    "WorkflowInstance",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
]
