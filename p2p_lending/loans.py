"""
Loan Module

The loan aggregate and its state machine: direct offers and borrower requests,
escrow funding, terms acceptance, disbursement, repayment, cancellation and
completion. Every state change is serialized per loan, validated before any
write, and persisted together with the loan's ledger and window history.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union
from enum import Enum
from contextlib import contextmanager
import threading
import uuid

from .currency import Money, Currency, to_decimal
from .ledger import Ledger, LedgerEntry, EntryKind
from .schedule import (
    ScheduleConfig, RepaymentWindow, schedule_for, current_window, closed_windows, due_at
)
from .allocation import allocate
from .policy import LendingPolicy, PolicyStore
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .users import UserRepository
from .collaborators import IdentityVerifier, Clock, SystemClock
from .notifications import NotificationDispatcher, NotificationType, Notification
from .exceptions import (
    LoanValidationError, LoanPreconditionError, LoanNotFoundError, UserNotFoundError
)
from .logging_config import get_logger, log_action


logger = get_logger("p2p_lending.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    LOAN_REQUEST = "LOAN_REQUEST"                        # Borrower asked a lender for a loan
    PENDING_PAYMENT = "PENDING_PAYMENT"                  # Lender accepted the request, funds not captured
    PENDING_BORROWER_ACCEPT = "PENDING_BORROWER_ACCEPT"  # Lender offered a loan
    PENDING_LENDER_FUNDING = "PENDING_LENDER_FUNDING"    # Borrower accepted terms, escrow not funded
    ACTIVE = "ACTIVE"                                    # Disbursed and in repayment
    COMPLETED = "COMPLETED"                              # Principal fully repaid
    CANCELLED = "CANCELLED"
    DEFAULT_REPORTED = "DEFAULT_REPORTED"                # Missed a repayment window


TERMINAL_STATUSES = (LoanStatus.COMPLETED, LoanStatus.CANCELLED, LoanStatus.DEFAULT_REPORTED)


class EscrowStatus(Enum):
    """Holding state of lender funds"""
    PENDING = "PENDING"
    FUNDED = "FUNDED"
    RELEASED = "RELEASED"


class CreditReportStatus(Enum):
    REPORTED = "REPORTED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class LoanTerms:
    """Terms fixed when the loan is created"""
    principal: Money
    initial_fee_rate: Decimal
    penalty_fee_rate: Decimal
    min_payment_percent: Decimal
    term_days: int
    grace_days: int
    window_length_days: int
    window_count: int
    outstanding_snapshot: str = "evaluation"

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def initial_platform_fee(self) -> Money:
        return self.principal * self.initial_fee_rate

    @property
    def schedule_config(self) -> ScheduleConfig:
        return ScheduleConfig(
            term_days=self.term_days,
            grace_days=self.grace_days,
            window_length_days=self.window_length_days,
            window_count=self.window_count
        )

    @classmethod
    def from_policy(cls, principal: Money, policy: LendingPolicy) -> 'LoanTerms':
        return cls(
            principal=principal,
            initial_fee_rate=policy.initial_fee_rate,
            penalty_fee_rate=policy.penalty_fee_rate,
            min_payment_percent=policy.min_payment_percent,
            term_days=policy.term_days,
            grace_days=policy.grace_days,
            window_length_days=policy.window_length_days,
            window_count=policy.window_count,
            outstanding_snapshot=policy.outstanding_snapshot
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal_amount': str(self.principal.amount),
            'principal_currency': self.principal.currency.code,
            'initial_fee_rate': str(self.initial_fee_rate),
            'penalty_fee_rate': str(self.penalty_fee_rate),
            'min_payment_percent': str(self.min_payment_percent),
            'term_days': self.term_days,
            'grace_days': self.grace_days,
            'window_length_days': self.window_length_days,
            'window_count': self.window_count,
            'outstanding_snapshot': self.outstanding_snapshot,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        return cls(
            principal=Money(Decimal(data['principal_amount']), Currency[data['principal_currency']]),
            initial_fee_rate=Decimal(data['initial_fee_rate']),
            penalty_fee_rate=Decimal(data['penalty_fee_rate']),
            min_payment_percent=Decimal(data['min_payment_percent']),
            term_days=data['term_days'],
            grace_days=data['grace_days'],
            window_length_days=data['window_length_days'],
            window_count=data['window_count'],
            outstanding_snapshot=data.get('outstanding_snapshot', "evaluation"),
        )


@dataclass(frozen=True)
class WindowRecord:
    """Outcome of evaluating one repayment window. Written once, never changed."""
    window_number: int
    window_start: datetime
    window_end: datetime
    is_grace: bool
    evaluated_at: datetime
    outstanding_at_start: Money
    fee_applied: Money
    min_required: Money
    paid_during_window: Money
    satisfied: bool

    @property
    def defaulted(self) -> bool:
        return not self.satisfied

    def to_dict(self) -> Dict[str, Any]:
        return {
            'window_number': self.window_number,
            'window_start': self.window_start.isoformat(),
            'window_end': self.window_end.isoformat(),
            'is_grace': self.is_grace,
            'evaluated_at': self.evaluated_at.isoformat(),
            'currency': self.outstanding_at_start.currency.code,
            'outstanding_at_start': str(self.outstanding_at_start.amount),
            'fee_applied': str(self.fee_applied.amount),
            'min_required': str(self.min_required.amount),
            'paid_during_window': str(self.paid_during_window.amount),
            'satisfied': self.satisfied,
            'defaulted': self.defaulted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WindowRecord':
        currency = Currency[data['currency']]

        def money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        return cls(
            window_number=data['window_number'],
            window_start=datetime.fromisoformat(data['window_start']),
            window_end=datetime.fromisoformat(data['window_end']),
            is_grace=data['is_grace'],
            evaluated_at=datetime.fromisoformat(data['evaluated_at']),
            outstanding_at_start=money('outstanding_at_start'),
            fee_applied=money('fee_applied'),
            min_required=money('min_required'),
            paid_during_window=money('paid_during_window'),
            satisfied=data['satisfied'],
        )


@dataclass
class CreditReport(StorageRecord):
    """A default report submitted (or attempted) to the credit bureau"""
    loan_id: str
    borrower_id: str
    amount_reported: Money
    window_number: int
    status: CreditReportStatus
    reference_id: Optional[str] = None
    reported_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class Loan(StorageRecord):
    """Loan aggregate: terms, status, escrow, ledger and window history"""
    lender_id: str
    borrower_id: str
    terms: LoanTerms
    ledger: Ledger
    status: LoanStatus = LoanStatus.PENDING_BORROWER_ACCEPT
    escrow_status: EscrowStatus = EscrowStatus.PENDING
    window_history: List[WindowRecord] = field(default_factory=list)

    # Request details
    purpose: Optional[str] = None
    repayment_plan: Optional[str] = None

    # Terms acceptance
    terms_accepted: bool = False
    terms_accepted_at: Optional[datetime] = None
    terms_accepted_by: Optional[str] = None
    terms_accepted_ip: Optional[str] = None
    terms_accepted_user_agent: Optional[str] = None

    # Temporal markers
    funded_at: Optional[datetime] = None
    disbursed_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @property
    def principal(self) -> Money:
        return self.terms.principal

    @property
    def currency(self) -> Currency:
        return self.terms.currency

    @property
    def outstanding(self) -> Money:
        return self.ledger.outstanding()

    @property
    def accrued_fees(self) -> Money:
        return self.ledger.accrued_fees()

    @property
    def total_fees_paid(self) -> Money:
        return self.ledger.total_fees_paid()

    @property
    def total_paid(self) -> Money:
        return self.ledger.total_paid()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def escrow_funded(self) -> bool:
        return self.escrow_status in (EscrowStatus.FUNDED, EscrowStatus.RELEASED)

    @property
    def defaulted_window(self) -> Optional[int]:
        for record in self.window_history:
            if record.defaulted:
                return record.window_number
        return None

    def schedule(self) -> List[RepaymentWindow]:
        """Repayment windows; empty until the loan is disbursed"""
        if not self.disbursed_at:
            return []
        return schedule_for(self.disbursed_at, self.terms.schedule_config)

    def current_window(self, instant: datetime) -> Optional[RepaymentWindow]:
        return current_window(self.schedule(), instant)

    def window_record(self, window_number: int) -> Optional[WindowRecord]:
        for record in self.window_history:
            if record.window_number == window_number:
                return record
        return None

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.lender_id, self.borrower_id)


@dataclass(frozen=True)
class PaymentRequirements:
    """What the borrower owes in the current repayment window"""
    loan_id: str
    as_of: datetime
    outstanding: Money
    accrued_fees: Money
    window: Optional[RepaymentWindow]
    projected_fee: Money
    min_payment: Money
    paid_in_window: Money
    remaining_min_payment: Money
    total_required: Money
    window_evaluated: bool = False


@dataclass(frozen=True)
class WindowOutcome:
    """Result of one window evaluation, carried out of the loan's critical section"""
    loan_id: str
    lender_id: str
    borrower_id: str
    record: WindowRecord
    outstanding: Money


WindowEvaluation = Callable[[Loan, RepaymentWindow, datetime], Tuple[WindowRecord, Optional[LedgerEntry]]]


class LoanManager:
    """
    Manages the loan lifecycle from offer or request through completion or default
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        users: UserRepository,
        identity_verifier: IdentityVerifier,
        policy_store: PolicyStore,
        notifications: NotificationDispatcher,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.users = users
        self.identity_verifier = identity_verifier
        self.policy_store = policy_store
        self.notifications = notifications
        self.clock = clock or SystemClock()

        self.loans_table = "loans"
        self.credit_reports_table = "credit_reports"

        # loan_id -> [lock, number of threads holding or waiting for it]
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def loan_lock(self, loan_id: str) -> Iterator[None]:
        """
        Serialize mutations of a single loan

        The lock is dropped from the registry when its last user leaves, so
        only loans with an operation in flight hold an entry.
        """
        with self._locks_guard:
            entry = self._locks.setdefault(loan_id, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[loan_id]

    # Creation

    def create_loan(
        self,
        lender_id: str,
        borrower_id: str,
        principal: Union[Money, Decimal, str, int],
        purpose: Optional[str] = None
    ) -> Loan:
        """
        Lender offers a loan directly to a borrower

        Books the initial platform fee and waits for the borrower to accept the
        terms and the lender to fund escrow.

        Raises:
            LoanValidationError: If the principal is not positive or lender and borrower are the same
            UserNotFoundError: If either party does not exist
        """
        policy = self.policy_store.get_policy()
        amount = self._parse_amount(principal, policy.currency, "Principal")
        self._validate_parties(lender_id, borrower_id)

        now = self.clock.now()
        terms = LoanTerms.from_policy(amount, policy)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            lender_id=lender_id,
            borrower_id=borrower_id,
            terms=terms,
            ledger=Ledger(amount),
            status=LoanStatus.PENDING_BORROWER_ACCEPT,
            escrow_status=EscrowStatus.PENDING,
            purpose=purpose
        )
        self._book_platform_fee(loan, now)

        with self.storage.atomic():
            self._save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "lender_id": lender_id,
                    "borrower_id": borrower_id,
                    "principal": amount.to_string(),
                    "platform_fee": terms.initial_platform_fee.to_string()
                },
                user_id=lender_id
            )

        log_action(logger, "info", f"Loan offered: {amount.to_string()}",
                   user_id=lender_id, action="create_loan", resource=f"loan:{loan.id}")
        return loan

    def create_loan_request(
        self,
        borrower_id: str,
        lender_id: str,
        principal: Union[Money, Decimal, str, int],
        purpose: str,
        repayment_plan: str
    ) -> Loan:
        """
        Borrower asks a specific lender for a loan

        No ledger entries are booked until the lender accepts.

        Raises:
            LoanValidationError: On a bad amount, a self-loan, or missing purpose / repayment plan
            UserNotFoundError: If either party does not exist
        """
        policy = self.policy_store.get_policy()
        amount = self._parse_amount(principal, policy.currency, "Principal")
        if not purpose or not purpose.strip():
            raise LoanValidationError("Loan purpose is required")
        if not repayment_plan or not repayment_plan.strip():
            raise LoanValidationError("Repayment plan is required")
        self._validate_parties(lender_id, borrower_id)

        now = self.clock.now()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            lender_id=lender_id,
            borrower_id=borrower_id,
            terms=LoanTerms.from_policy(amount, policy),
            ledger=Ledger(amount),
            status=LoanStatus.LOAN_REQUEST,
            escrow_status=EscrowStatus.PENDING,
            purpose=purpose.strip(),
            repayment_plan=repayment_plan.strip()
        )

        with self.storage.atomic():
            self._save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REQUEST_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "lender_id": lender_id,
                    "borrower_id": borrower_id,
                    "principal": amount.to_string(),
                    "purpose": loan.purpose
                },
                user_id=borrower_id
            )

        log_action(logger, "info", f"Loan requested: {amount.to_string()}",
                   user_id=borrower_id, action="create_loan_request", resource=f"loan:{loan.id}")
        return loan

    # Request path

    def accept_loan_request(self, loan_id: str, lender_id: str) -> Loan:
        """
        Lender accepts a borrower's request; the platform fee is booked now

        Raises:
            LoanValidationError: If the loan is not a pending request
            LoanPreconditionError: If the caller is not the lender or the borrower is not verified
        """
        with self.loan_lock(loan_id):
            loan = self._require_loan(loan_id)
            self._require_actor(loan, lender_id, loan.lender_id, "lender")
            self._require_status(loan, LoanStatus.LOAN_REQUEST, "accept a loan request")
            self._require_verified(loan.borrower_id)

            now = self.clock.now()
            self._book_platform_fee(loan, now)
            loan.status = LoanStatus.PENDING_PAYMENT
            loan.updated_at = now

            with self.storage.atomic():
                self._save_loan(loan)
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_REQUEST_ACCEPTED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"platform_fee": loan.terms.initial_platform_fee.to_string()},
                    user_id=lender_id
                )

        log_action(logger, "info", "Loan request accepted",
                   user_id=lender_id, action="accept_loan_request", resource=f"loan:{loan_id}")
        return loan

    def complete_payment(self, loan_id: str, lender_id: str, payment_id: str,
                         payment_method: str = "upi") -> Loan:
        """
        Record the gateway's confirmation that the lender paid for an accepted
        request. This is the disbursement moment.

        Raises:
            LoanValidationError: If the loan is not awaiting payment or no payment id is given
            LoanPreconditionError: If the caller is not the lender or escrow is not pending
        """
        if not payment_id:
            raise LoanValidationError("Payment id is required")

        with self.loan_lock(loan_id):
            loan = self._require_loan(loan_id)
            self._require_actor(loan, lender_id, loan.lender_id, "lender")
            self._require_status(loan, LoanStatus.PENDING_PAYMENT, "complete payment")
            self._require_escrow(loan, EscrowStatus.PENDING)

            now = self.clock.now()
            loan.ledger.append(LedgerEntry(
                kind=EntryKind.FUNDING,
                amount=loan.principal,
                timestamp=now,
                description="Lender payment captured",
                reference=f"{payment_method}:{payment_id}"
            ))
            loan.escrow_status = EscrowStatus.FUNDED
            loan.funded_at = now
            self._disburse(loan, now)

            with self.storage.atomic():
                self._save_loan(loan)
                self.audit_trail.log_event(
                    event_type=AuditEventType.ESCROW_FUNDED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"payment_id": payment_id, "payment_method": payment_method,
                              "amount": loan.principal.to_string()},
                    user_id=lender_id
                )
                self._log_disbursement(loan)

        log_action(logger, "info", "Loan payment completed and disbursed",
                   user_id=lender_id, action="complete_payment", resource=f"loan:{loan_id}",
                   extra={"payment_id": payment_id, "payment_method": payment_method})
        return loan

    # Direct path

    def fund_escrow(self, loan_id: str, lender_id: str, reference: str = "") -> Loan:
        """
        Lender funds escrow for a direct offer; disburses if terms were already accepted

        Raises:
            LoanValidationError: If the loan is not awaiting funding
            LoanPreconditionError: If the caller is not the lender, escrow is not
                                   pending, or the borrower is not verified
        """
        with self.loan_lock(loan_id):
            loan = self._require_loan(loan_id)
            self._require_actor(loan, lender_id, loan.lender_id, "lender")
            self._require_status(loan, (LoanStatus.PENDING_BORROWER_ACCEPT,
                                        LoanStatus.PENDING_LENDER_FUNDING), "fund escrow")
            self._require_escrow(loan, EscrowStatus.PENDING)
            self._require_verified(loan.borrower_id)

            now = self.clock.now()
            loan.ledger.append(LedgerEntry(
                kind=EntryKind.FUNDING,
                amount=loan.principal,
                timestamp=now,
                description="Escrow funded by lender",
                reference=reference or f"ESCROW-{loan.id[:8]}"
            ))
            loan.escrow_status = EscrowStatus.FUNDED
            loan.funded_at = now
            loan.updated_at = now
            disbursed = self._disburse_if_ready(loan, now)

            with self.storage.atomic():
                self._save_loan(loan)
                self.audit_trail.log_event(
                    event_type=AuditEventType.ESCROW_FUNDED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"amount": loan.principal.to_string()},
                    user_id=lender_id
                )
                if disbursed:
                    self._log_disbursement(loan)

        log_action(logger, "info", "Escrow funded" + (" and loan disbursed" if disbursed else ""),
                   user_id=lender_id, action="fund_escrow", resource=f"loan:{loan_id}")
        return loan

    def accept_terms(self, loan_id: str, borrower_id: str, client_ip: Optional[str] = None,
                     user_agent: Optional[str] = None) -> Loan:
        """
        Borrower accepts a direct offer; disburses if escrow was already funded

        Raises:
            LoanValidationError: If the loan is not awaiting borrower acceptance
            LoanPreconditionError: If the caller is not the borrower or is not verified
        """
        with self.loan_lock(loan_id):
            loan = self._require_loan(loan_id)
            self._require_actor(loan, borrower_id, loan.borrower_id, "borrower")
            self._require_status(loan, LoanStatus.PENDING_BORROWER_ACCEPT, "accept terms")
            self._require_verified(loan.borrower_id)

            now = self.clock.now()
            loan.terms_accepted = True
            loan.terms_accepted_at = now
            loan.terms_accepted_by = borrower_id
            loan.terms_accepted_ip = client_ip
            loan.terms_accepted_user_agent = user_agent
            loan.status = LoanStatus.PENDING_LENDER_FUNDING
            loan.updated_at = now
            disbursed = self._disburse_if_ready(loan, now)

            with self.storage.atomic():
                self._save_loan(loan)
                self.audit_trail.log_event(
                    event_type=AuditEventType.TERMS_ACCEPTED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"client_ip": client_ip, "user_agent": user_agent},
                    user_id=borrower_id
                )
                if disbursed:
                    self._log_disbursement(loan)

        log_action(logger, "info", "Loan terms accepted" + (" and loan disbursed" if disbursed else ""),
                   user_id=borrower_id, action="accept_terms", resource=f"loan:{loan_id}")
        return loan

    # Repayment

    def make_payment(self, loan_id: str, payer_id: str,
                     amount: Union[Money, Decimal, str, int], reference: str = "") -> Loan:
        """
        Apply a repayment: accrued penalty fees first, then principal

        Raises:
            LoanValidationError: If the amount is not positive, exceeds what is owed,
                                 or the loan is not active
            LoanPreconditionError: If the payer is not a party to the loan
        """
        with self.loan_lock(loan_id):
            loan = self._require_loan(loan_id)
            payment = self._parse_amount(amount, loan.currency, "Payment amount")
            if not loan.is_party(payer_id):
                raise LoanPreconditionError(f"User {payer_id} is not a party to loan {loan_id}")
            self._require_status(loan, LoanStatus.ACTIVE, "make a payment")

            owed = loan.outstanding + loan.accrued_fees
            if payment > owed:
                raise LoanValidationError(
                    f"Payment {payment.to_string()} exceeds outstanding principal and fees {owed.to_string()}"
                )

            now = self.clock.now()
            entries = allocate(payment, loan.accrued_fees, loan.outstanding, now,
                               reference=reference or f"PMT-{uuid.uuid4().hex[:8].upper()}")
            loan.ledger.extend(entries)
            loan.updated_at = now
            completed = loan.outstanding.is_zero()
            if completed:
                loan.status = LoanStatus.COMPLETED
                loan.closed_at = now

            with self.storage.atomic():
                self._save_loan(loan)
                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_MADE,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "amount": payment.to_string(),
                        "allocation": {entry.kind.value: str(entry.amount.amount) for entry in entries},
                        "outstanding": loan.outstanding.to_string()
                    },
                    user_id=payer_id
                )
                if completed:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.LOAN_COMPLETED,
                        entity_type="loan",
                        entity_id=loan.id,
                        metadata={"total_paid": loan.total_paid.to_string()},
                        user_id=payer_id
                    )

        log_action(logger, "info", f"Payment of {payment.to_string()} applied",
                   user_id=payer_id, action="make_payment", resource=f"loan:{loan_id}",
                   extra={"outstanding": str(loan.outstanding.amount), "completed": completed})
        return loan

    def cancel_loan(self, loan_id: str, actor_id: str, reason: Optional[str] = None) -> Loan:
        """
        Cancel an offer the borrower has not accepted and the lender has not funded

        Raises:
            LoanValidationError: If the loan is not awaiting borrower acceptance
            LoanPreconditionError: If escrow is funded or released, or the caller is not a party
        """
        with self.loan_lock(loan_id):
            loan = self._require_loan(loan_id)
            if not loan.is_party(actor_id):
                raise LoanPreconditionError(f"User {actor_id} is not a party to loan {loan_id}")
            if loan.escrow_status != EscrowStatus.PENDING:
                raise LoanPreconditionError(
                    f"Cannot cancel loan {loan_id}: escrow is {loan.escrow_status.value}"
                )
            self._require_status(loan, LoanStatus.PENDING_BORROWER_ACCEPT, "cancel")

            now = self.clock.now()
            loan.status = LoanStatus.CANCELLED
            loan.closed_at = now
            loan.updated_at = now

            with self.storage.atomic():
                self._save_loan(loan)
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_CANCELLED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"reason": reason},
                    user_id=actor_id
                )

        log_action(logger, "info", "Loan cancelled", user_id=actor_id,
                   action="cancel_loan", resource=f"loan:{loan_id}")
        return loan

    # Window evaluation (driven by the scheduler)

    def evaluate_next_window(self, loan_id: str, now: datetime,
                             evaluate: WindowEvaluation) -> Optional[WindowOutcome]:
        """
        Evaluate the earliest closed window that has no history record yet

        Returns None when the loan is not active or has no such window. A
        second call for the same window finds the record and does nothing.
        """
        with self.loan_lock(loan_id):
            loan = self._require_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                return None

            window = next((w for w in closed_windows(loan.schedule(), now)
                           if loan.window_record(w.number) is None), None)
            if window is None:
                return None

            record, fee_entry = evaluate(loan, window, now)
            if fee_entry is not None:
                loan.ledger.append(fee_entry)
            loan.window_history.append(record)
            loan.updated_at = now
            if record.defaulted:
                loan.status = LoanStatus.DEFAULT_REPORTED
                loan.closed_at = now

            with self.storage.atomic():
                self._save_loan(loan)
                self.audit_trail.log_event(
                    event_type=AuditEventType.WINDOW_EVALUATED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata=record.to_dict(),
                    user_id="system"
                )

            outcome = WindowOutcome(
                loan_id=loan.id,
                lender_id=loan.lender_id,
                borrower_id=loan.borrower_id,
                record=record,
                outstanding=loan.outstanding
            )

        log_action(logger, "warning" if record.defaulted else "info",
                   f"Window {record.window_number} {'defaulted' if record.defaulted else 'satisfied'}",
                   user_id="system", action="evaluate_window", resource=f"loan:{loan_id}",
                   extra={"fee_applied": str(record.fee_applied.amount),
                          "min_required": str(record.min_required.amount),
                          "paid_during_window": str(record.paid_during_window.amount)})
        return outcome

    # Credit reports

    def record_credit_report(self, outcome: WindowOutcome, status: CreditReportStatus,
                             reference_id: Optional[str] = None,
                             error: Optional[str] = None) -> CreditReport:
        """Persist the result of a default report submission"""
        now = self.clock.now()
        report = CreditReport(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=outcome.loan_id,
            borrower_id=outcome.borrower_id,
            amount_reported=outcome.outstanding,
            window_number=outcome.record.window_number,
            status=status,
            reference_id=reference_id,
            reported_at=now if status == CreditReportStatus.REPORTED else None,
            error=error
        )
        with self.storage.atomic():
            self.storage.save(self.credit_reports_table, report.id, self._credit_report_to_dict(report))
            self.audit_trail.log_event(
                event_type=AuditEventType.CREDIT_REPORTED,
                entity_type="loan",
                entity_id=outcome.loan_id,
                metadata={
                    "window_number": report.window_number,
                    "amount_reported": report.amount_reported.to_string(),
                    "status": status.value,
                    "reference_id": reference_id,
                    "error": error
                },
                user_id="system"
            )
        return report

    def list_credit_reports(self, borrower_id: Optional[str] = None,
                            loan_id: Optional[str] = None) -> List[CreditReport]:
        filters = {}
        if borrower_id:
            filters['borrower_id'] = borrower_id
        if loan_id:
            filters['loan_id'] = loan_id
        records = (self.storage.find(self.credit_reports_table, filters) if filters
                   else self.storage.load_all(self.credit_reports_table))
        reports = [self._credit_report_from_dict(data) for data in records]
        reports.sort(key=lambda r: r.created_at)
        return reports

    # Queries

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return self._loan_from_dict(data) if data else None

    def list_loans(
        self,
        party_id: Optional[str] = None,
        role: Optional[str] = None,
        status: Optional[LoanStatus] = None,
        include_requests: bool = False
    ) -> List[Loan]:
        """
        Loans, oldest first

        Args:
            party_id: Only loans where this user is a party
            role: "lender" or "borrower" to restrict which side party_id is on
            status: Only loans in this status
            include_requests: Include LOAN_REQUEST entries (implied when status is LOAN_REQUEST)
        """
        if role not in (None, "lender", "borrower"):
            raise LoanValidationError(f"Unknown role: {role}")

        filters = {}
        if status:
            filters['status'] = status.value
        if party_id and role:
            filters[f'{role}_id'] = party_id
        records = (self.storage.find(self.loans_table, filters) if filters
                   else self.storage.load_all(self.loans_table))

        loans = []
        for data in records:
            if party_id and not role and party_id not in (data['lender_id'], data['borrower_id']):
                continue
            if (not include_requests and status is None
                    and data['status'] == LoanStatus.LOAN_REQUEST.value):
                continue
            loans.append(self._loan_from_dict(data))
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def list_pending_requests(self, lender_id: str) -> List[Loan]:
        """Requests waiting for this lender's decision"""
        return self.list_loans(party_id=lender_id, role="lender", status=LoanStatus.LOAN_REQUEST)

    def list_pending_offers(self, borrower_id: str) -> List[Loan]:
        """Direct offers waiting for this borrower to accept"""
        return self.list_loans(party_id=borrower_id, role="borrower",
                               status=LoanStatus.PENDING_BORROWER_ACCEPT)

    def active_loan_ids(self) -> List[str]:
        return [loan.id for loan in self.list_loans(status=LoanStatus.ACTIVE)]

    def get_ledger(self, loan_id: str) -> List[LedgerEntry]:
        return list(self._require_loan(loan_id).ledger.entries)

    def get_window_history(self, loan_id: str) -> List[WindowRecord]:
        return list(self._require_loan(loan_id).window_history)

    def get_schedule(self, loan_id: str) -> List[RepaymentWindow]:
        """Repayment windows of a disbursed loan (empty before disbursement)"""
        return self._require_loan(loan_id).schedule()

    def get_payment_requirements(self, loan_id: str,
                                 as_of: Optional[datetime] = None) -> PaymentRequirements:
        """
        Minimum payment for the current window and the payoff amount

        Before the first window opens there is no minimum. Past the end of the
        schedule the final window applies.

        Raises:
            LoanValidationError: If the loan is not active
        """
        loan = self._require_loan(loan_id)
        self._require_status(loan, LoanStatus.ACTIVE, "compute payment requirements")
        now = as_of or self.clock.now()

        zero = Money.zero(loan.currency)
        outstanding = loan.outstanding
        accrued = loan.accrued_fees
        window = loan.current_window(now)

        projected_fee = min_payment = paid_in_window = zero
        evaluated = False
        if window:
            projected_fee = outstanding * loan.terms.penalty_fee_rate
            min_payment = outstanding * loan.terms.min_payment_percent + projected_fee
            paid_in_window = loan.ledger.repaid_between(window.start, window.end)
            evaluated = loan.window_record(window.number) is not None

        remaining = min_payment - paid_in_window
        return PaymentRequirements(
            loan_id=loan.id,
            as_of=now,
            outstanding=outstanding,
            accrued_fees=accrued,
            window=window,
            projected_fee=projected_fee,
            min_payment=min_payment,
            paid_in_window=paid_in_window,
            remaining_min_payment=remaining if remaining.is_positive() else zero,
            total_required=outstanding + accrued,
            window_evaluated=evaluated
        )

    def summary(self, loan_id: str) -> Dict[str, Any]:
        """Balances and dates derived from the ledger"""
        loan = self._require_loan(loan_id)
        window = loan.current_window(self.clock.now())
        return {
            'loan_id': loan.id,
            'status': loan.status.value,
            'escrow_status': loan.escrow_status.value,
            'principal': loan.principal,
            'outstanding': loan.outstanding,
            'accrued_fees': loan.accrued_fees,
            'total_fees_paid': loan.total_fees_paid,
            'total_fees_charged': loan.ledger.total_fees_charged(),
            'total_paid': loan.total_paid,
            'total_funded': loan.ledger.total_funded(),
            'is_terminal': loan.is_terminal,
            'disbursed_at': loan.disbursed_at,
            'due_at': loan.due_at,
            'current_window': window.number if window else None,
            'defaulted_window': loan.defaulted_window,
        }

    def get_statistics(self) -> Dict[str, Any]:
        by_status = {status.value: 0 for status in LoanStatus}
        for data in self.storage.load_all(self.loans_table):
            by_status[data['status']] += 1
        return {
            'total_loans': sum(by_status.values()),
            'loans_by_status': by_status,
            'credit_reports': self.storage.count(self.credit_reports_table),
        }

    # Notifications

    def send_payment_reminder(self, loan_id: str, channels=None) -> List[Notification]:
        """Remind the borrower of the current window's minimum payment"""
        loan = self._require_loan(loan_id)
        requirements = self.get_payment_requirements(loan_id)
        window = requirements.window
        data = {
            "window_number": window.number if window else "-",
            "outstanding_amount": requirements.outstanding.to_string(),
            "min_payment": (requirements.remaining_min_payment if window
                            else requirements.total_required).to_string(),
            "window_end": (window.end if window else loan.due_at).date().isoformat(),
        }
        return self.notifications.notify(NotificationType.PAYMENT_REMINDER, loan.id,
                                         loan.borrower_id, data, channels=channels)

    def list_notifications(self, loan_id: str) -> List[Notification]:
        self._require_loan(loan_id)
        return self.notifications.list_notifications(loan_id=loan_id)

    # Transition helpers

    def _book_platform_fee(self, loan: Loan, now: datetime) -> None:
        fee = loan.terms.initial_platform_fee
        if fee.is_positive():
            loan.ledger.append(LedgerEntry(
                kind=EntryKind.PLATFORM_FEE,
                amount=fee,
                timestamp=now,
                description=f"Platform fee at {loan.terms.initial_fee_rate * 100}%",
                reference=f"FEE-{loan.id[:8]}"
            ))

    def _disburse_if_ready(self, loan: Loan, now: datetime) -> bool:
        """Disburse once escrow is funded and the borrower has accepted, whichever came last"""
        if loan.escrow_status == EscrowStatus.FUNDED and loan.terms_accepted:
            self._disburse(loan, now)
            return True
        return False

    def _disburse(self, loan: Loan, now: datetime) -> None:
        loan.escrow_status = EscrowStatus.RELEASED
        loan.status = LoanStatus.ACTIVE
        loan.disbursed_at = now
        loan.due_at = due_at(now, loan.terms.schedule_config)
        loan.updated_at = now

    def _log_disbursement(self, loan: Loan) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DISBURSED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "amount": loan.principal.to_string(),
                "disbursed_at": loan.disbursed_at,
                "due_at": loan.due_at
            },
            user_id="system"
        )

    def _parse_amount(self, amount, currency: Currency, label: str) -> Money:
        if isinstance(amount, Money):
            if amount.currency != currency:
                raise LoanValidationError(f"{label} must be in {currency.code}")
            value = amount
        else:
            try:
                value = Money(to_decimal(amount), currency)
            except ValueError as e:
                raise LoanValidationError(f"{label} is not a valid amount: {amount}") from e
        if not value.is_positive():
            raise LoanValidationError(f"{label} must be positive")
        return value

    def _validate_parties(self, lender_id: str, borrower_id: str) -> None:
        if lender_id == borrower_id:
            raise LoanValidationError("Lender and borrower must be different users")
        for user_id in (lender_id, borrower_id):
            if not self.users.get_user(user_id):
                raise UserNotFoundError(f"User {user_id} not found")

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    def _require_actor(self, loan: Loan, actor_id: str, expected_id: str, role: str) -> None:
        if actor_id != expected_id:
            raise LoanPreconditionError(f"Only the {role} of loan {loan.id} can do this")

    def _require_status(self, loan: Loan, allowed, action: str) -> None:
        allowed = allowed if isinstance(allowed, tuple) else (allowed,)
        if loan.status not in allowed:
            raise LoanValidationError(
                f"Cannot {action}: loan {loan.id} is {loan.status.value}"
            )

    def _require_escrow(self, loan: Loan, expected: EscrowStatus) -> None:
        if loan.escrow_status != expected:
            raise LoanPreconditionError(
                f"Escrow for loan {loan.id} is {loan.escrow_status.value}, expected {expected.value}"
            )

    def _require_verified(self, user_id: str) -> None:
        if not self.identity_verifier.is_verified(user_id):
            raise LoanPreconditionError(f"Borrower {user_id} has not completed identity verification")

    # Persistence

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary, ledger and window history inline"""
        result = {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'lender_id': loan.lender_id,
            'borrower_id': loan.borrower_id,
            'status': loan.status.value,
            'escrow_status': loan.escrow_status.value,
            'terms': loan.terms.to_dict(),
            'ledger': loan.ledger.to_list(),
            'window_history': [record.to_dict() for record in loan.window_history],
            'purpose': loan.purpose,
            'repayment_plan': loan.repayment_plan,
            'terms_accepted': loan.terms_accepted,
            'terms_accepted_by': loan.terms_accepted_by,
            'terms_accepted_ip': loan.terms_accepted_ip,
            'terms_accepted_user_agent': loan.terms_accepted_user_agent,
        }
        for name in ('terms_accepted_at', 'funded_at', 'disbursed_at', 'due_at', 'closed_at'):
            value = getattr(loan, name)
            result[name] = value.isoformat() if value else None
        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        terms = LoanTerms.from_dict(data['terms'])

        def get_datetime(name: str) -> Optional[datetime]:
            if data.get(name):
                return datetime.fromisoformat(data[name])
            return None

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            lender_id=data['lender_id'],
            borrower_id=data['borrower_id'],
            terms=terms,
            ledger=Ledger.from_list(terms.principal, data.get('ledger', [])),
            status=LoanStatus(data['status']),
            escrow_status=EscrowStatus(data['escrow_status']),
            window_history=[WindowRecord.from_dict(item) for item in data.get('window_history', [])],
            purpose=data.get('purpose'),
            repayment_plan=data.get('repayment_plan'),
            terms_accepted=data.get('terms_accepted', False),
            terms_accepted_at=get_datetime('terms_accepted_at'),
            terms_accepted_by=data.get('terms_accepted_by'),
            terms_accepted_ip=data.get('terms_accepted_ip'),
            terms_accepted_user_agent=data.get('terms_accepted_user_agent'),
            funded_at=get_datetime('funded_at'),
            disbursed_at=get_datetime('disbursed_at'),
            due_at=get_datetime('due_at'),
            closed_at=get_datetime('closed_at')
        )

    def _credit_report_to_dict(self, report: CreditReport) -> Dict:
        return {
            'id': report.id,
            'created_at': report.created_at.isoformat(),
            'updated_at': report.updated_at.isoformat(),
            'loan_id': report.loan_id,
            'borrower_id': report.borrower_id,
            'amount_reported': str(report.amount_reported.amount),
            'currency': report.amount_reported.currency.code,
            'window_number': report.window_number,
            'status': report.status.value,
            'reference_id': report.reference_id,
            'reported_at': report.reported_at.isoformat() if report.reported_at else None,
            'error': report.error,
        }

    def _credit_report_from_dict(self, data: Dict) -> CreditReport:
        return CreditReport(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            borrower_id=data['borrower_id'],
            amount_reported=Money(Decimal(data['amount_reported']), Currency[data['currency']]),
            window_number=data['window_number'],
            status=CreditReportStatus(data['status']),
            reference_id=data.get('reference_id'),
            reported_at=datetime.fromisoformat(data['reported_at']) if data.get('reported_at') else None,
            error=data.get('error')
        )
