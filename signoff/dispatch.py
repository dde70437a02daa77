"""Side-effect dispatch for approved workflows."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .contracts import WorkflowType
from .errors import SideEffectError
from .persistence import WorkflowInstance

logger = logging.getLogger(__name__)

SideEffectHandler = Callable[
    [WorkflowInstance, Dict[str, Any]], Union[Awaitable[None], None]
]

SIDE_EFFECT_SUCCEEDED = "succeeded"
SIDE_EFFECT_FAILED = "failed"
SIDE_EFFECT_NONE = "none"


@dataclass
class DispatchResult:
    status: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != SIDE_EFFECT_FAILED


class SideEffectDispatcher:
    """Registry of per-type handlers run once when a workflow is approved.

    Handlers receive the approved instance and its creation context and make
    the single domain change the approval stands for (mark a purchase request
    approved, write the inventory adjustment for a disposal, put leave days on
    the schedule, ...). The engine calls ``dispatch`` only after the terminal
    transition has been committed, which happens once per instance.

    Handlers may raise ``SideEffectError`` to report a failure in their own
    words.
    """

    def __init__(self) -> None:
        self._handlers: Dict[WorkflowType, SideEffectHandler] = {}

    def register(self, workflow_type: WorkflowType, handler: SideEffectHandler) -> None:
        workflow_type = WorkflowType(workflow_type)
        if workflow_type in self._handlers:
            logger.warning(f"Replacing side-effect handler for {workflow_type.value}")
        self._handlers[workflow_type] = handler

    def handler(
        self, workflow_type: WorkflowType
    ) -> Callable[[SideEffectHandler], SideEffectHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(func: SideEffectHandler) -> SideEffectHandler:
            self.register(workflow_type, func)
            return func

        return decorator

    def has_handler(self, workflow_type: WorkflowType) -> bool:
        return WorkflowType(workflow_type) in self._handlers

    async def dispatch(self, instance: WorkflowInstance) -> DispatchResult:
        """Run the handler for ``instance.workflow_type``.

        Handler exceptions are logged and returned as a failed result; they
        never undo the approval.
        """
        handler = self._handlers.get(instance.workflow_type)
        if handler is None:
            logger.info(
                f"No side effect registered for {instance.workflow_type.value}; "
                f"workflow {instance.id} approved without follow-up"
            )
            return DispatchResult(SIDE_EFFECT_NONE)
        try:
            result = handler(instance, dict(instance.context))
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # noqa: BLE001
            error = (
                str(exc) if isinstance(exc, SideEffectError) else f"{type(exc).__name__}: {exc}"
            )
            logger.error(
                f"Side effect for {instance.workflow_type.value} workflow {instance.id} failed: {exc}",
                exc_info=True,
            )
            return DispatchResult(SIDE_EFFECT_FAILED, error)
        logger.info(f"Side effect for workflow {instance.id} completed")
        return DispatchResult(SIDE_EFFECT_SUCCEEDED)
