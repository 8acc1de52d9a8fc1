"""
Approval coordinator.

Ties the guardrail evaluator, the approval queue, the daily counters,
the executor and the audit trail together.

Entry points:
- submit_proposal: proposal source hands over a candidate action
- approve / reject: merchant decision on a pending approval
- retry_execution: re-run the executor for an approved, unexecuted action
- bulk_approve / bulk_reject: independent per-id decisions

INVARIANTS:
- Executor failures never revert a decision; they are recorded on the
  approval and retried out-of-band
- Autonomous executions reserve headroom before calling the executor and
  settle it afterwards; human approvals bypass the caps but are counted
- Every transition appends exactly one audit entry
- Repeating a decision is a no-op reported as already_reviewed

TRANSACTIONS:
Paths that call the executor run in two short transactions. The claim
(status transition or reservation) is committed before the executor is
awaited, and the outcome (execution link, counters, audit entry) is
committed after it. No row lock is held while the executor runs, so a
concurrent decision on the same approval sees the committed status and
returns already_reviewed. Paths that never reach the executor (reject,
queueing) leave the commit to the caller.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from autopilot.governance.base import merchant_day_start
from autopilot.governance.guardrails import (
    CATALOG_ACTIONS,
    CatalogActivity,
    GuardrailDecision,
    GuardrailRule,
    ProposalCandidate,
    SettingsSnapshot,
    Verdict,
    candidate_entity_id,
    candidate_rule_id,
    evaluate,
    validate_candidate,
)
from autopilot.governance.recipients import RecipientKey, extract_recipient
from autopilot.models.approval_audit import SYSTEM_ACTOR, AuditEvent
from autopilot.models.pending_approval import ApprovalActionType, ApprovalStatus, PendingApproval
from autopilot.services.approval_queue_service import ApprovalQueueService
from autopilot.services.audit_trail_service import AuditTrailService
from autopilot.services.automation_settings_service import AutomationSettingsService
from autopilot.services.consumption_service import ConsumptionService
from autopilot.services.executors.base import ActionExecutor, ExecutorRequest
from autopilot.services.governance_errors import (
    AlreadyReviewedError,
    ConflictError,
    ExecutorUnavailableError,
    GovernanceError,
    InvalidArgumentError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

MAX_BULK_IDS = 100


@dataclass
class SubmissionResult:
    decision: GuardrailDecision
    approval: PendingApproval
    deduplicated: bool = False
    execution_error: Optional[str] = None

    @property
    def verdict(self) -> Verdict:
        return self.decision.verdict


@dataclass
class ReviewOutcome:
    approval: PendingApproval
    already_reviewed: bool = False
    execution_error: Optional[str] = None


@dataclass
class ExecutionAttempt:
    executed_action_id: Optional[str] = None
    error: Optional[str] = None
    # False when a concurrent attempt linked its own execution first
    linked: bool = False


@dataclass
class BulkFailure:
    id: str
    reason: str


@dataclass
class BulkResult:
    succeeded: list[str] = field(default_factory=list)
    already_reviewed: list[str] = field(default_factory=list)
    failed: list[BulkFailure] = field(default_factory=list)


def _unique_ids(approval_ids: Iterable[str]) -> list[str]:
    ids = list(dict.fromkeys(approval_ids))
    if not ids:
        raise InvalidArgumentError("At least one id is required")
    if len(ids) > MAX_BULK_IDS:
        raise InvalidArgumentError(f"At most {MAX_BULK_IDS} ids per request")
    return ids


class ApprovalCoordinator:
    """
    Tenant-scoped governance workflow.

    SECURITY: tenant_id and reviewer come from the verified JWT only.
    """

    def __init__(
        self,
        db_session: Session,
        tenant_id: str,
        executor: Optional[ActionExecutor],
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not tenant_id:
            raise ValueError("tenant_id is required")

        self.db = db_session
        self.tenant_id = tenant_id
        self.executor = executor
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.settings = AutomationSettingsService(db_session, tenant_id)
        self.consumption = ConsumptionService(db_session, tenant_id)
        self.queue = ApprovalQueueService(db_session, tenant_id, clock=self._clock)
        self.audit = AuditTrailService(db_session, tenant_id)

    # =========================================================================
    # Proposal submission
    # =========================================================================

    async def submit_proposal(self, candidate: ProposalCandidate) -> SubmissionResult:
        """
        Evaluate a candidate and route it.

        Raises:
            InvalidArgumentError: If the candidate is malformed (DENY)
        """
        now = self._clock()
        settings = self.settings.get_snapshot()
        counters = self.consumption.get_snapshot(settings, now)
        activity = self._catalog_activity(settings, candidate, now)
        decision = evaluate(settings, counters, candidate, now, activity)

        logger.info(
            "Guardrail decision",
            extra={"tenant_id": self.tenant_id, "decision": decision.to_dict()},
        )

        if decision.verdict == Verdict.DENY:
            raise InvalidArgumentError(decision.reason)

        action_type = decision.action_type
        recipient = extract_recipient(action_type, candidate.payload)

        if decision.allows_autonomous:
            counter_date = self.consumption.local_date(settings, now)
            if self.consumption.reserve(counter_date, candidate.credit_cost, settings):
                return await self._execute_autonomously(
                    candidate, action_type, recipient, decision, counter_date
                )

            logger.warning(
                "Autonomous headroom taken concurrently, queueing for approval",
                extra={"tenant_id": self.tenant_id, "action_type": action_type.value},
            )
            decision = GuardrailDecision(
                verdict=Verdict.REQUIRE_APPROVAL,
                rule=GuardrailRule.RESERVATION_CONFLICT,
                reason="Daily autonomous limits were reached by a concurrent action",
                action_type=action_type,
            )

        approval, created = self.queue.create_pending(candidate, action_type, recipient)
        if created:
            self.audit.record_transition(
                approval_id=approval.id,
                event=AuditEvent.CREATED,
                to_status=ApprovalStatus.PENDING,
                actor=SYSTEM_ACTOR,
                reason=decision.reason,
            )
        else:
            logger.info(
                "Duplicate send folded into existing approval",
                extra={"tenant_id": self.tenant_id, "approval_id": approval.id},
            )
        return SubmissionResult(decision=decision, approval=approval, deduplicated=not created)

    def _catalog_activity(
        self,
        settings: SettingsSnapshot,
        candidate: ProposalCandidate,
        now: datetime,
    ) -> CatalogActivity:
        action_type, invalid_reason = validate_candidate(candidate)
        if invalid_reason or action_type not in CATALOG_ACTIONS:
            return CatalogActivity()

        changed = frozenset()
        if candidate.catalog_size is not None:
            changed = self.queue.catalog_entities_changed_since(
                merchant_day_start(now, settings.timezone)
            )

        last_change = None
        rule_id = candidate_rule_id(candidate)
        entity_id = candidate_entity_id(candidate, action_type)
        if rule_id and entity_id:
            last_change = self.queue.last_rule_change_at(rule_id, entity_id)

        return CatalogActivity(entities_changed_today=changed, last_rule_change_at=last_change)

    async def _execute_autonomously(
        self,
        candidate: ProposalCandidate,
        action_type: ApprovalActionType,
        recipient: Optional[RecipientKey],
        decision: GuardrailDecision,
        counter_date: date,
    ) -> SubmissionResult:
        approval = self.queue.create_auto_approved(candidate, action_type, recipient)
        request = self._executor_request(approval)
        self.db.commit()

        attempt = await self._call_executor(request)
        self._settle_reservation(counter_date, candidate.credit_cost, attempt)
        self.audit.record_transition(
            approval_id=request.approval_id,
            event=AuditEvent.AUTO_APPROVED,
            to_status=ApprovalStatus.APPROVED,
            actor=SYSTEM_ACTOR,
            executed_action_id=attempt.executed_action_id,
            reason=attempt.error or decision.reason,
        )
        self.db.commit()

        return SubmissionResult(
            decision=decision,
            approval=self.queue.get(request.approval_id),
            execution_error=attempt.error,
        )

    def _executor_request(self, approval: PendingApproval) -> ExecutorRequest:
        # Built before the claim commits; loaded attributes expire on commit
        return ExecutorRequest(
            tenant_id=self.tenant_id,
            approval_id=approval.id,
            action_type=approval.action_type,
            payload=dict(approval.recommended_action or {}),
            entity_id=approval.entity_id,
            entity_type=approval.entity_type,
        )

    async def _call_executor(self, request: ExecutorRequest) -> ExecutionAttempt:
        try:
            if self.executor is None:
                raise ExecutorUnavailableError("Action executor not configured")
            result = await self.executor.execute(request)
        except ExecutorUnavailableError as e:
            self.queue.record_execution_failure(request.approval_id, str(e), retryable=e.retryable)
            return ExecutionAttempt(error=str(e))

        linked = self.queue.record_execution_success(request.approval_id, result.executed_action_id)
        return ExecutionAttempt(executed_action_id=result.executed_action_id, linked=linked)

    def _settle_reservation(self, counter_date: date, credit_cost: int, attempt: ExecutionAttempt) -> None:
        if attempt.linked:
            self.consumption.commit_reservation(counter_date, credit_cost)
        else:
            self.consumption.release_reservation(counter_date, credit_cost)

    def _today(self) -> tuple[date, SettingsSnapshot]:
        settings = self.settings.get_snapshot()
        return self.consumption.local_date(settings, self._clock()), settings

    # =========================================================================
    # Merchant decisions
    # =========================================================================

    async def approve(self, approval_id: str, reviewer: str) -> ReviewOutcome:
        """
        Approve a pending action and execute it.

        Raises:
            NotFoundError: If the id does not exist in this tenant
        """
        try:
            approval = self.queue.transition(approval_id, ApprovalStatus.APPROVED, reviewer)
        except AlreadyReviewedError as e:
            logger.info(
                "Approval already reviewed",
                extra={"tenant_id": self.tenant_id, "approval_id": approval_id, "status": e.status},
            )
            return ReviewOutcome(approval=self.queue.get(approval_id), already_reviewed=True)

        request = self._executor_request(approval)
        self.db.commit()

        attempt = await self._call_executor(request)
        if attempt.linked:
            counter_date, _ = self._today()
            self.consumption.record_manual_execution(counter_date)

        self.audit.record_transition(
            approval_id=approval_id,
            event=AuditEvent.APPROVED,
            from_status=ApprovalStatus.PENDING,
            to_status=ApprovalStatus.APPROVED,
            actor=reviewer,
            executed_action_id=attempt.executed_action_id,
            reason=attempt.error,
        )
        self.db.commit()
        return ReviewOutcome(approval=self.queue.get(approval_id), execution_error=attempt.error)

    def reject(self, approval_id: str, reviewer: str, reason: Optional[str] = None) -> ReviewOutcome:
        """
        Reject a pending action. The executor is never called.

        Raises:
            NotFoundError: If the id does not exist in this tenant
        """
        try:
            self.queue.transition(approval_id, ApprovalStatus.REJECTED, reviewer)
        except AlreadyReviewedError as e:
            logger.info(
                "Approval already reviewed",
                extra={"tenant_id": self.tenant_id, "approval_id": approval_id, "status": e.status},
            )
            return ReviewOutcome(approval=self.queue.get(approval_id), already_reviewed=True)

        self.audit.record_transition(
            approval_id=approval_id,
            event=AuditEvent.REJECTED,
            from_status=ApprovalStatus.PENDING,
            to_status=ApprovalStatus.REJECTED,
            actor=reviewer,
            reason=reason,
        )
        return ReviewOutcome(approval=self.queue.get(approval_id))

    async def retry_execution(self, approval_id: str, actor: str) -> ReviewOutcome:
        """
        Re-run the executor for an approved action without re-asking the merchant.

        Autonomous (system-approved) actions must fit today's caps again.
        A failed attempt is recorded and reported via execution_error.

        Raises:
            NotFoundError: If the id does not exist in this tenant
            InvalidArgumentError: If the approval is not approved
            ConflictError: If an autonomous retry no longer fits today's caps
        """
        approval = self.queue.get(approval_id)
        if approval.status != ApprovalStatus.APPROVED:
            raise InvalidArgumentError(
                f"Only approved actions can be executed (status: {approval.status.value})"
            )
        if approval.is_executed:
            return ReviewOutcome(approval=approval)

        autonomous = approval.reviewed_by == SYSTEM_ACTOR
        credit_cost = approval.credit_cost
        counter_date, settings = self._today()
        if autonomous and not self.consumption.reserve(counter_date, credit_cost, settings):
            raise ConflictError("Daily autonomous limits reached; execution deferred")

        request = self._executor_request(approval)
        self.db.commit()

        attempt = await self._call_executor(request)
        if autonomous:
            self._settle_reservation(counter_date, credit_cost, attempt)
        elif attempt.linked:
            self.consumption.record_manual_execution(counter_date)

        self.audit.record_transition(
            approval_id=approval_id,
            event=AuditEvent.EXECUTION_RETRIED,
            from_status=ApprovalStatus.APPROVED,
            to_status=ApprovalStatus.APPROVED,
            actor=actor,
            executed_action_id=attempt.executed_action_id,
            reason=attempt.error,
        )
        self.db.commit()
        return ReviewOutcome(approval=self.queue.get(approval_id), execution_error=attempt.error)

    # =========================================================================
    # Bulk decisions
    # =========================================================================

    async def bulk_approve(self, approval_ids: Iterable[str], reviewer: str) -> BulkResult:
        """
        Approve each id independently. One failure never aborts the batch.

        Each approval commits on its own, so a failure only discards the
        failing item's uncommitted writes.

        Raises:
            InvalidArgumentError: If the id list is empty or too long
        """
        result = BulkResult()
        for approval_id in _unique_ids(approval_ids):
            try:
                outcome = await self.approve(approval_id, reviewer)
            except (GovernanceError, SQLAlchemyError) as e:
                self.db.rollback()
                self._record_bulk_failure(result, approval_id, e)
                continue
            self._record_bulk_outcome(result, approval_id, outcome)

        self._log_bulk("approve", reviewer, result)
        return result

    def bulk_reject(self, approval_ids: Iterable[str], reviewer: str, reason: Optional[str] = None) -> BulkResult:
        """
        Reject each id independently. One failure never aborts the batch.

        Raises:
            InvalidArgumentError: If the id list is empty or too long
        """
        result = BulkResult()
        for approval_id in _unique_ids(approval_ids):
            try:
                with self.db.begin_nested():
                    outcome = self.reject(approval_id, reviewer, reason)
            except (GovernanceError, SQLAlchemyError) as e:
                self._record_bulk_failure(result, approval_id, e)
                continue
            self._record_bulk_outcome(result, approval_id, outcome)

        self._log_bulk("reject", reviewer, result)
        return result

    @staticmethod
    def _record_bulk_outcome(result: BulkResult, approval_id: str, outcome: ReviewOutcome) -> None:
        if outcome.already_reviewed:
            result.already_reviewed.append(approval_id)
        else:
            result.succeeded.append(approval_id)

    def _record_bulk_failure(self, result: BulkResult, approval_id: str, error: Exception) -> None:
        if isinstance(error, NotFoundError):
            reason = "not found"
        elif isinstance(error, SQLAlchemyError):
            logger.exception(
                "Bulk item failed",
                extra={"tenant_id": self.tenant_id, "approval_id": approval_id},
            )
            reason = "database error"
        else:
            reason = str(error)
        result.failed.append(BulkFailure(id=approval_id, reason=reason))

    def _log_bulk(self, operation: str, reviewer: str, result: BulkResult) -> None:
        logger.info(
            f"Bulk {operation} completed",
            extra={
                "tenant_id": self.tenant_id,
                "user_id": reviewer,
                "succeeded": len(result.succeeded),
                "already_reviewed": len(result.already_reviewed),
                "failed": len(result.failed),
            },
        )
