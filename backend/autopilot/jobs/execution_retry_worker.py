"""
Execution retry worker.

Background worker that re-drives approved actions whose executor call
failed:
- Picks up APPROVED approvals with no executed_action_id
- Skips approvals whose last failure was permanent (executor 4xx)
- Re-runs the executor through the tenant's ApprovalCoordinator
- Autonomous approvals must fit today's caps again; otherwise deferred

Run as a cron job or background worker:
    python -m autopilot.jobs.execution_retry_worker

Configuration:
- EXECUTION_RETRY_BATCH_SIZE: Approvals per run (default from config/automation_defaults.yml)
- EXECUTION_RETRY_MAX_ATTEMPTS: Give up after this many executor calls

SECURITY:
- Each approval is retried under its own tenant's coordinator
- Full audit trail via approval_audit_entries (execution_retried)
"""

import asyncio
import logging
import sys
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from autopilot.config.automation_defaults import get_automation_defaults_loader
from autopilot.database.session import session_scope
from autopilot.models.approval_audit import SYSTEM_ACTOR
from autopilot.models.pending_approval import ApprovalStatus, PendingApproval
from autopilot.services.approval_coordinator import ApprovalCoordinator
from autopilot.services.executors.base import ActionExecutor
from autopilot.services.executors.http_executor import HttpActionExecutor
from autopilot.services.governance_errors import ConflictError, GovernanceError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class ExecutionRetryWorker:
    """
    Retries failed executions across all tenants.

    Commits after each approval so one failure never rolls back another
    tenant's progress.
    """

    def __init__(
        self,
        db_session: Session,
        executor: Optional[ActionExecutor],
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        loader = get_automation_defaults_loader()
        self.db = db_session
        self.executor = executor
        self.clock = clock
        self.batch_size = batch_size or loader.get_retry_batch_size()
        self.max_attempts = max_attempts or loader.get_retry_max_attempts()
        self.run_id = str(uuid.uuid4())
        self.stats = {
            "approvals_found": 0,
            "executed": 0,
            "failed": 0,
            "deferred": 0,
            "tenants_processed": 0,
            "errors": 0,
        }

    def _get_unexecuted(self) -> List[PendingApproval]:
        """Approved approvals still waiting on the executor, oldest attempt first."""
        return (
            self.db.query(PendingApproval)
            .filter(
                PendingApproval.status == ApprovalStatus.APPROVED,
                PendingApproval.executed_action_id.is_(None),
                PendingApproval.execution_retryable.is_(True),
                PendingApproval.execution_attempts < self.max_attempts,
            )
            .order_by(
                PendingApproval.last_execution_attempt_at.asc(),
                PendingApproval.created_at.asc(),
            )
            .limit(self.batch_size)
            .all()
        )

    async def process_approval(self, tenant_id: str, approval_id: str) -> None:
        coordinator = ApprovalCoordinator(self.db, tenant_id, self.executor, clock=self.clock)
        try:
            outcome = await coordinator.retry_execution(approval_id, actor=SYSTEM_ACTOR)
        except ConflictError:
            self.db.rollback()
            self.stats["deferred"] += 1
            logger.info(
                "Retry deferred, daily limits reached",
                extra={"run_id": self.run_id, "tenant_id": tenant_id, "approval_id": approval_id},
            )
            return
        except GovernanceError as e:
            self.db.rollback()
            self.stats["errors"] += 1
            logger.warning(
                "Retry skipped",
                extra={
                    "run_id": self.run_id,
                    "tenant_id": tenant_id,
                    "approval_id": approval_id,
                    "error": str(e),
                },
            )
            return

        self.db.commit()
        if outcome.execution_error:
            self.stats["failed"] += 1
        else:
            self.stats["executed"] += 1

    async def run(self) -> Dict:
        """
        Run one retry pass.

        Returns run statistics.
        """
        start_time = datetime.now(timezone.utc)
        logger.info("Starting execution retry worker", extra={"run_id": self.run_id})

        # Detach ids first; each retry commits and expires loaded instances
        pending = [(a.tenant_id, a.id) for a in self._get_unexecuted()]
        self.stats["approvals_found"] = len(pending)

        for tenant_id, approval_id in pending:
            await self.process_approval(tenant_id, approval_id)

        self.stats["tenants_processed"] = len({tenant_id for tenant_id, _ in pending})

        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        self.stats["duration_seconds"] = duration
        self.stats["run_id"] = self.run_id

        logger.info(
            "Execution retry worker completed",
            extra={"run_id": self.run_id, **self.stats},
        )
        return self.stats


async def main():
    """Main entry point for the execution retry worker."""
    logger.info("Execution Retry Worker starting")

    try:
        executor = HttpActionExecutor.from_env()
    except ValueError as e:
        logger.error("Executor not configured", extra={"error": str(e)})
        sys.exit(1)

    try:
        with session_scope() as session:
            stats = await ExecutionRetryWorker(session, executor).run()
            logger.info("Execution Retry Worker stats", extra=stats)
    except Exception as e:
        logger.error("Execution Retry Worker failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)
    finally:
        await executor.close()

    logger.info("Execution Retry Worker finished")


if __name__ == "__main__":
    asyncio.run(main())
