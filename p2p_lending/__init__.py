"""
Peer-to-Peer Micro-Loan Platform

Loan lifecycle and ledger engine: escrow, disbursement, block repayment
windows with penalty fees, and credit-bureau default reporting. All
financial calculations use Decimal precision.
"""

__version__ = "1.0.0"
