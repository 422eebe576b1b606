"""
Loan Ledger Module

Append-only sequence of typed monetary entries attached to a loan. The ledger
is the source of truth for every balance: outstanding principal, fees paid,
accrued (unpaid) penalty fees. Derived values are folds over the entries and
are recomputed on every read, never stored separately.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple
import uuid

from .currency import Money, Currency, sum_money


class EntryKind(Enum):
    """Kinds of ledger entries"""
    PLATFORM_FEE = "platform-fee"            # Booked once when the loan terms are fixed
    PENALTY_FEE = "penalty-fee"              # Window penalty (charge) or its repayment
    PRINCIPAL_PAYMENT = "principal-payment"  # Repayment of principal
    FUNDING = "funding"                      # Lender funds captured by the payment gateway


class Posting(Enum):
    """Whether an entry books an amount owed or records money received"""
    CHARGE = "charge"
    PAYMENT = "payment"


@dataclass(frozen=True)
class LedgerEntry:
    """Single immutable ledger entry"""
    kind: EntryKind
    amount: Money
    timestamp: datetime
    description: str = ""
    reference: str = ""
    posting: Posting = Posting.PAYMENT
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    
    @property
    def is_charge(self) -> bool:
        return self.posting == Posting.CHARGE
    
    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'kind': self.kind.value,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'timestamp': self.timestamp.isoformat(),
            'description': self.description,
            'reference': self.reference,
            'posting': self.posting.value,
        }
    
    @classmethod
    def from_dict(cls, data: Dict) -> 'LedgerEntry':
        return cls(
            id=data['id'],
            kind=EntryKind(data['kind']),
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            timestamp=datetime.fromisoformat(data['timestamp']),
            description=data.get('description', ""),
            reference=data.get('reference', ""),
            posting=Posting(data.get('posting', Posting.PAYMENT.value)),
        )


class Ledger:
    """
    Append-only loan ledger with derived balances.
    
    ``append`` only rejects malformed entries. Business validation (state,
    overpayment) belongs to the loan state machine before it appends.
    """
    
    def __init__(self, principal: Money, entries: Optional[List[LedgerEntry]] = None):
        self.principal = principal
        self._entries: List[LedgerEntry] = []
        for entry in entries or []:
            self.append(entry)
    
    @property
    def currency(self) -> Currency:
        return self.principal.currency
    
    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Append an entry to the ledger
        
        Raises:
            ValueError: If the entry is malformed (unknown kind, negative amount,
                        wrong currency, or a charge posting on a non-fee kind)
        """
        if not isinstance(entry.kind, EntryKind):
            raise ValueError(f"Unknown ledger entry kind: {entry.kind!r}")
        if not isinstance(entry.posting, Posting):
            raise ValueError(f"Unknown ledger posting: {entry.posting!r}")
        if entry.amount.currency != self.currency:
            raise ValueError(f"Ledger entry currency {entry.amount.currency.code} "
                             f"does not match loan currency {self.currency.code}")
        if entry.amount.is_negative():
            raise ValueError("Ledger entry amount cannot be negative")
        if entry.is_charge and entry.kind != EntryKind.PENALTY_FEE:
            raise ValueError(f"Only {EntryKind.PENALTY_FEE.value} entries can be charges")
        if entry.timestamp.tzinfo is None:
            raise ValueError("Ledger entry timestamp must be timezone-aware")
        
        self._entries.append(entry)
        return entry
    
    def extend(self, entries: List[LedgerEntry]) -> None:
        for entry in entries:
            self.append(entry)
    
    @property
    def entries(self) -> Tuple[LedgerEntry, ...]:
        return tuple(self._entries)
    
    def __iter__(self) -> Iterator[LedgerEntry]:
        return iter(tuple(self._entries))
    
    def __len__(self) -> int:
        return len(self._entries)
    
    def _sum(self, kind: EntryKind, posting: Optional[Posting] = None,
             until: Optional[datetime] = None) -> Money:
        return sum_money(
            (e.amount for e in self._entries
             if e.kind == kind
             and (posting is None or e.posting == posting)
             and (until is None or e.timestamp <= until)),
            self.currency
        )
    
    # Derived balances
    
    def principal_paid(self) -> Money:
        return self._sum(EntryKind.PRINCIPAL_PAYMENT)
    
    def outstanding(self) -> Money:
        """Principal not yet repaid, never negative"""
        remaining = self.principal - self.principal_paid()
        return remaining if remaining.is_positive() else Money.zero(self.currency)
    
    def outstanding_as_of(self, instant: datetime) -> Money:
        """Outstanding principal counting only repayments made up to ``instant``"""
        remaining = self.principal - self._sum(EntryKind.PRINCIPAL_PAYMENT, until=instant)
        return remaining if remaining.is_positive() else Money.zero(self.currency)
    
    def total_fees_charged(self) -> Money:
        """Penalty fees booked by repayment window evaluations"""
        return self._sum(EntryKind.PENALTY_FEE, Posting.CHARGE)
    
    def penalty_fees_paid(self) -> Money:
        return self._sum(EntryKind.PENALTY_FEE, Posting.PAYMENT)
    
    def accrued_fees(self) -> Money:
        """Penalty fees charged but not yet repaid"""
        accrued = self.total_fees_charged() - self.penalty_fees_paid()
        return accrued if accrued.is_positive() else Money.zero(self.currency)
    
    def total_fees_paid(self) -> Money:
        """Platform fee plus penalty fees actually paid"""
        return self._sum(EntryKind.PLATFORM_FEE) + self.penalty_fees_paid()
    
    def total_paid(self) -> Money:
        """Everything repaid by the borrower: principal and penalty fees"""
        return self.principal_paid() + self.penalty_fees_paid()
    
    def total_funded(self) -> Money:
        return self._sum(EntryKind.FUNDING)
    
    def repaid_between(self, start: datetime, end: datetime) -> Money:
        """Principal and penalty-fee repayments dated within [start, end]"""
        return sum_money(
            (e.amount for e in self._entries
             if e.kind in (EntryKind.PRINCIPAL_PAYMENT, EntryKind.PENALTY_FEE)
             and e.posting == Posting.PAYMENT
             and start <= e.timestamp <= end),
            self.currency
        )
    
    def to_list(self) -> List[Dict]:
        return [entry.to_dict() for entry in self._entries]
    
    @classmethod
    def from_list(cls, principal: Money, data: List[Dict]) -> 'Ledger':
        return cls(principal, [LedgerEntry.from_dict(item) for item in data])
