"""
Repayment Scheduler Module

Batch job that walks every active loan, evaluates each repayment window that
has closed and has not been evaluated yet, books the window's penalty fee and
reports defaults to the credit bureau. Safe to run any number of times: a
window with a history record is never evaluated again.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .ledger import EntryKind, LedgerEntry, Posting
from .schedule import RepaymentWindow
from .loans import Loan, LoanManager, WindowRecord, WindowOutcome, CreditReportStatus
from .policy import PolicyStore
from .audit import AuditTrail, AuditEventType
from .collaborators import Clock, CreditBureau, SimulatedClock
from .notifications import NotificationDispatcher, NotificationType
from .logging_config import get_logger, log_action


logger = get_logger("p2p_lending.scheduler")


class WindowEvaluator:
    """Penalty and minimum-payment math for a single closed window"""

    def evaluate(self, loan: Loan, window: RepaymentWindow,
                 now: datetime) -> Tuple[WindowRecord, Optional[LedgerEntry]]:
        """
        Evaluate ``window`` for ``loan`` at ``now``

        Returns the history record and the penalty-fee charge to book (None
        when the fee rounds to zero).
        """
        terms = loan.terms
        if terms.outstanding_snapshot == "window_start":
            outstanding = loan.ledger.outstanding_as_of(window.start)
        else:
            outstanding = loan.outstanding

        fee = outstanding * terms.penalty_fee_rate
        min_required = outstanding * terms.min_payment_percent + fee
        paid = loan.ledger.repaid_between(window.start, window.end)

        record = WindowRecord(
            window_number=window.number,
            window_start=window.start,
            window_end=window.end,
            is_grace=window.is_grace,
            evaluated_at=now,
            outstanding_at_start=outstanding,
            fee_applied=fee,
            min_required=min_required,
            paid_during_window=paid,
            satisfied=paid >= min_required
        )

        fee_entry = None
        if fee.is_positive():
            fee_entry = LedgerEntry(
                kind=EntryKind.PENALTY_FEE,
                amount=fee,
                timestamp=now,
                description=f"Penalty fee for window {window.number}",
                reference=f"WINDOW-{loan.id[:8]}-{window.number}",
                posting=Posting.CHARGE
            )
        return record, fee_entry


@dataclass
class SchedulerReport:
    """Partial-result report of one scheduler run"""
    started_at: datetime
    loans_scanned: int = 0
    windows_evaluated: List[Dict[str, Any]] = field(default_factory=list)
    defaults: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    def add_outcome(self, outcome: WindowOutcome) -> None:
        record = outcome.record
        self.windows_evaluated.append({
            'loan_id': outcome.loan_id,
            'window_number': record.window_number,
            'fee_applied': str(record.fee_applied.amount),
            'min_required': str(record.min_required.amount),
            'paid_during_window': str(record.paid_during_window.amount),
            'defaulted': record.defaulted,
        })
        if record.defaulted:
            self.defaults.append(outcome.loan_id)

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            'started_at': self.started_at.isoformat(),
            'loans_scanned': self.loans_scanned,
            'windows_evaluated': self.windows_evaluated,
            'defaults': self.defaults,
            'failures': self.failures,
        }


class RepaymentScheduler:
    """
    Evaluates closed repayment windows across all active loans
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        credit_bureau: CreditBureau,
        notifications: NotificationDispatcher,
        policy_store: PolicyStore,
        audit_trail: AuditTrail,
        clock: Clock,
        evaluator: Optional[WindowEvaluator] = None
    ):
        self.loan_manager = loan_manager
        self.credit_bureau = credit_bureau
        self.notifications = notifications
        self.policy_store = policy_store
        self.audit_trail = audit_trail
        self.clock = clock
        self.evaluator = evaluator or WindowEvaluator()

    def run(self, triggered_by: str = "system") -> SchedulerReport:
        """
        Evaluate every active loan once and return

        A failure on one loan is logged and recorded in the report; the
        remaining loans are still evaluated.
        """
        now = self.clock.now()
        report = SchedulerReport(started_at=now)

        for loan_id in self.loan_manager.active_loan_ids():
            report.loans_scanned += 1
            try:
                self.evaluate_loan(loan_id, now, report)
            except Exception as e:
                logger.error(f"Scheduler failed for loan {loan_id}: {e}", exc_info=True)
                report.failures[loan_id] = str(e)

        self.audit_trail.log_event(
            event_type=AuditEventType.SCHEDULER_RUN,
            entity_type="scheduler",
            entity_id="repayment_scheduler",
            metadata={
                "loans_scanned": report.loans_scanned,
                "windows_evaluated": len(report.windows_evaluated),
                "defaults": len(report.defaults),
                "failures": len(report.failures)
            },
            user_id=triggered_by
        )
        log_action(logger, "info", "Scheduler run finished", user_id=triggered_by,
                   action="run_scheduler", resource="scheduler",
                   extra={"loans_scanned": report.loans_scanned,
                          "windows_evaluated": len(report.windows_evaluated),
                          "defaults": len(report.defaults),
                          "failures": len(report.failures)})
        return report

    def evaluate_loan(self, loan_id: str, now: datetime,
                      report: Optional[SchedulerReport] = None) -> List[WindowOutcome]:
        """
        Evaluate all closed, unevaluated windows of one loan in order

        Stops at the first defaulted window since the loan is no longer
        active. Each committed window is added to ``report`` before its side
        effects run, so a failing side effect cannot hide it.
        """
        outcomes = []
        while True:
            outcome = self.loan_manager.evaluate_next_window(loan_id, now, self.evaluator.evaluate)
            if outcome is None:
                break
            outcomes.append(outcome)
            if report is not None:
                report.add_outcome(outcome)
            self._after_evaluation(outcome)
        return outcomes

    def simulate_time(self, days: int, triggered_by: str = "admin") -> SchedulerReport:
        """Advance the simulated clock by ``days`` and run the scheduler"""
        if not isinstance(self.clock, SimulatedClock):
            raise ValueError("Time simulation requires a simulated clock")
        if days <= 0:
            raise ValueError("Days to simulate must be positive")

        now = self.clock.advance_days(days)
        self.audit_trail.log_event(
            event_type=AuditEventType.TIME_SIMULATED,
            entity_type="scheduler",
            entity_id="repayment_scheduler",
            metadata={"days": days, "now": now},
            user_id=triggered_by
        )
        log_action(logger, "info", f"Simulated time advanced by {days} days",
                   user_id=triggered_by, action="simulate_time", resource="scheduler")
        return self.run(triggered_by=triggered_by)

    def _after_evaluation(self, outcome: WindowOutcome) -> None:
        record = outcome.record
        if record.defaulted:
            self._report_default(outcome)
            notification_type = NotificationType.WINDOW_MISSED
        else:
            notification_type = NotificationType.WINDOW_SATISFIED

        try:
            self.notifications.notify(notification_type, outcome.loan_id, outcome.borrower_id, {
                "window_number": record.window_number,
                "outstanding_amount": outcome.outstanding.to_string(),
                "min_payment": record.min_required.to_string(),
                "window_end": record.window_end.date().isoformat(),
            })
        except Exception as e:
            logger.error(f"Notification for loan {outcome.loan_id} failed: {e}", exc_info=True)

    def _report_default(self, outcome: WindowOutcome) -> None:
        if not self.policy_store.get_policy().credit_reporting_enabled:
            logger.info(f"Credit reporting disabled, not reporting loan {outcome.loan_id}")
            return

        try:
            reference_id = self.credit_bureau.report(
                outcome.loan_id, outcome.borrower_id, outcome.outstanding,
                outcome.record.window_number
            )
        except Exception as e:
            logger.error(f"Credit report for loan {outcome.loan_id} failed: {e}", exc_info=True)
            self.loan_manager.record_credit_report(outcome, CreditReportStatus.FAILED, error=str(e))
            return

        self.loan_manager.record_credit_report(outcome, CreditReportStatus.REPORTED,
                                               reference_id=reference_id)
        log_action(logger, "warning", f"Default reported for window {outcome.record.window_number}",
                   user_id="system", action="report_default", resource=f"loan:{outcome.loan_id}",
                   extra={"reference_id": reference_id,
                          "amount": str(outcome.outstanding.amount)})
