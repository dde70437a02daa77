"""Deadline computation for workflow steps."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Mapping, NamedTuple, Optional

from .config import DeadlineOffsets, RemediationConfig
from .contracts import RemediationStage, Severity


class RemediationDeadlines(NamedTuple):
    immediate_action: datetime
    root_cause: datetime
    corrective_action: datetime
    verification: datetime

    def for_stage(self, stage: RemediationStage) -> Optional[datetime]:
        """Due date for ``stage``; closure has none."""
        return {
            RemediationStage.IMMEDIATE_ACTION: self.immediate_action,
            RemediationStage.ROOT_CAUSE_ANALYSIS: self.root_cause,
            RemediationStage.CORRECTIVE_ACTION: self.corrective_action,
            RemediationStage.VERIFICATION: self.verification,
        }.get(stage)


class DeadlineCalculator:
    """Maps a severity and base time to per-stage due timestamps.

    Holds no state besides its policy, so the same inputs always produce the
    same deadlines.
    """

    def __init__(self, policy: Optional[Mapping[Severity, DeadlineOffsets]] = None):
        self._policy: Dict[Severity, DeadlineOffsets] = dict(
            policy or RemediationConfig().deadlines
        )

    def due_dates(self, severity: Severity, base_time: datetime) -> RemediationDeadlines:
        offsets = self._policy[Severity(severity)]
        return RemediationDeadlines(
            *(base_time + timedelta(hours=h) for h in offsets.as_tuple())
        )


def approval_due_at(started_at: datetime, sla_hours: Optional[float]) -> Optional[datetime]:
    """Due date for an approval step started at ``started_at``."""
    if sla_hours is None:
        return None
    return started_at + timedelta(hours=sla_hours)
