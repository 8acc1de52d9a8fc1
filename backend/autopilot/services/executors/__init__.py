"""
Executors for cleared storefront actions.

Each executor implements ActionExecutor and raises ExecutorUnavailableError
on failure. The approval decision is never reverted by an executor failure.
"""

from autopilot.services.executors.base import (
    ActionExecutor,
    ExecutorRequest,
    ExecutorResult,
)
from autopilot.services.executors.http_executor import HttpActionExecutor

__all__ = [
    "ActionExecutor",
    "ExecutorRequest",
    "ExecutorResult",
    "HttpActionExecutor",
]
