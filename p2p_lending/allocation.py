"""
Payment Allocator

Splits an incoming repayment across accrued penalty fees first and principal
second. The caller rejects overpayments before allocating.
"""

from datetime import datetime
from typing import List

from .currency import Money
from .ledger import EntryKind, LedgerEntry, Posting


def allocate(amount: Money, outstanding_fees: Money, outstanding_principal: Money,
             timestamp: datetime, reference: str = "") -> List[LedgerEntry]:
    """
    Allocate a payment to ledger entries.
    
    Args:
        amount: Payment amount, must be positive
        outstanding_fees: Penalty fees charged and not yet repaid
        outstanding_principal: Principal not yet repaid
        timestamp: Time of the payment
        reference: Correlation reference copied onto each entry
        
    Returns:
        Zero, one or two entries (fee portion, then principal portion); a payment
        absorbed entirely by fees produces no principal entry
        
    Raises:
        ValueError: If the amount is not positive or exceeds what is owed
    """
    if not amount.is_positive():
        raise ValueError("Payment amount must be positive")
    if amount > outstanding_fees + outstanding_principal:
        raise ValueError("Payment amount exceeds outstanding principal and fees")
    
    fee_portion = min(amount, outstanding_fees)
    remaining = amount - fee_portion
    principal_portion = min(remaining, outstanding_principal)
    
    entries = []
    if fee_portion.is_positive():
        entries.append(LedgerEntry(
            kind=EntryKind.PENALTY_FEE,
            amount=fee_portion,
            timestamp=timestamp,
            description="Penalty fee repayment",
            reference=reference,
            posting=Posting.PAYMENT,
        ))
    if principal_portion.is_positive():
        entries.append(LedgerEntry(
            kind=EntryKind.PRINCIPAL_PAYMENT,
            amount=principal_portion,
            timestamp=timestamp,
            description="Principal repayment",
            reference=reference,
        ))
    
    return entries
