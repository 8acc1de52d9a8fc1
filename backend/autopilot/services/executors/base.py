"""
Executor interface.

The executor performs the storefront side effect once an action is
cleared. The governance layer only hands it the opaque payload and reads
back the id of the executed action.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from autopilot.models.pending_approval import ApprovalActionType
from autopilot.services.governance_errors import ExecutorUnavailableError


@dataclass
class ExecutorRequest:
    """
    One execution request.

    approval_id doubles as the idempotency key: the executor must treat
    repeated requests for the same approval as one action.
    """
    tenant_id: str
    approval_id: str
    action_type: ApprovalActionType
    payload: dict[str, Any]
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None

    @property
    def idempotency_key(self) -> str:
        return self.approval_id


@dataclass
class ExecutorResult:
    executed_action_id: str
    details: dict[str, Any] = field(default_factory=dict)


class ActionExecutor(ABC):
    """Performs cleared actions. Raises ExecutorUnavailableError on any failure."""

    @abstractmethod
    async def execute(self, request: ExecutorRequest) -> ExecutorResult:
        ...

    async def close(self) -> None:
        return None


__all__ = [
    "ActionExecutor",
    "ExecutorRequest",
    "ExecutorResult",
    "ExecutorUnavailableError",
]
