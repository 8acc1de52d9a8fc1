"""
Shared FastAPI dependencies.

The action executor is process-wide: one HTTP client pool reused across
requests and closed on shutdown.
"""

import logging
import os
from typing import Optional

from autopilot.services.executors import ActionExecutor, HttpActionExecutor

logger = logging.getLogger(__name__)

_executor: Optional[ActionExecutor] = None


def get_action_executor() -> Optional[ActionExecutor]:
    """
    Return the configured executor, or None when ACTION_EXECUTOR_URL is unset.

    Without an executor, approvals are still recorded and every execution
    attempt is stored as failed for later retry.
    """
    global _executor
    if _executor is None:
        if not os.getenv("ACTION_EXECUTOR_URL"):
            logger.warning("ACTION_EXECUTOR_URL not set; approved actions will not execute")
            return None
        _executor = HttpActionExecutor.from_env()
    return _executor


async def close_action_executor() -> None:
    global _executor
    if _executor is not None:
        await _executor.close()
        _executor = None
