"""
Pydantic schemas for API requests and responses
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..currency import Money
from ..ledger import LedgerEntry
from ..schedule import RepaymentWindow
from ..loans import Loan, WindowRecord, CreditReport, PaymentRequirements
from ..users import User
from ..notifications import Notification


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (INR, USD, etc.)")
    
    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


def money(value: Money) -> Dict[str, str]:
    return MoneyModel.from_money(value).model_dump()


# User schemas
class CreateUserRequest(BaseModel):
    name: str
    phone: str
    email: Optional[str] = None


class UpdateKYCRequest(BaseModel):
    status: str = Field(..., description="KYC status (none, pending, verified, rejected)")
    updated_by: Optional[str] = None


# Loan schemas
class CreateLoanRequest(BaseModel):
    lender_id: str
    borrower_id: str
    principal: str = Field(..., description="Decimal amount as string")
    purpose: Optional[str] = None


class CreateLoanRequestRequest(BaseModel):
    borrower_id: str
    lender_id: str
    principal: str = Field(..., description="Decimal amount as string")
    purpose: str
    repayment_plan: str


class LenderActionRequest(BaseModel):
    lender_id: str


class CompletePaymentRequest(BaseModel):
    lender_id: str
    payment_id: str
    payment_method: str = "upi"


class FundEscrowRequest(BaseModel):
    lender_id: str
    reference: Optional[str] = None


class AcceptTermsRequest(BaseModel):
    borrower_id: str


class LoanPaymentRequest(BaseModel):
    payer_id: str
    amount: str = Field(..., description="Decimal amount as string")
    reference: Optional[str] = None


class CancelLoanRequest(BaseModel):
    actor_id: str
    reason: Optional[str] = None


class ReminderRequest(BaseModel):
    channels: Optional[List[str]] = Field(None, description="sms, call, email, webhook")


# Admin schemas
class SimulateTimeRequest(BaseModel):
    days: int = Field(..., gt=0, description="Days to advance the simulated clock")


class UpdateSettingsRequest(BaseModel):
    initial_fee_rate: Optional[str] = None
    penalty_fee_rate: Optional[str] = None
    min_payment_percent: Optional[str] = None
    term_days: Optional[int] = None
    grace_days: Optional[int] = None
    window_length_days: Optional[int] = None
    window_count: Optional[int] = None
    credit_reporting_enabled: Optional[bool] = None
    outstanding_snapshot: Optional[str] = None
    updated_by: Optional[str] = None


# Response projections
def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def user_response(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "phone": user.phone,
        "email": user.email,
        "kyc_status": user.kyc_status.value,
        "created_at": user.created_at.isoformat(),
    }


def loan_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "lender_id": loan.lender_id,
        "borrower_id": loan.borrower_id,
        "status": loan.status.value,
        "escrow_status": loan.escrow_status.value,
        "principal": money(loan.principal),
        "platform_fee": money(loan.terms.initial_platform_fee),
        "outstanding": money(loan.outstanding),
        "accrued_fees": money(loan.accrued_fees),
        "total_fees_paid": money(loan.total_fees_paid),
        "total_paid": money(loan.total_paid),
        "purpose": loan.purpose,
        "repayment_plan": loan.repayment_plan,
        "terms": {
            "initial_fee_rate": str(loan.terms.initial_fee_rate),
            "penalty_fee_rate": str(loan.terms.penalty_fee_rate),
            "min_payment_percent": str(loan.terms.min_payment_percent),
            "term_days": loan.terms.term_days,
            "grace_days": loan.terms.grace_days,
            "window_length_days": loan.terms.window_length_days,
            "window_count": loan.terms.window_count,
        },
        "terms_accepted": loan.terms_accepted,
        "terms_accepted_at": _iso(loan.terms_accepted_at),
        "created_at": loan.created_at.isoformat(),
        "funded_at": _iso(loan.funded_at),
        "disbursed_at": _iso(loan.disbursed_at),
        "due_at": _iso(loan.due_at),
        "closed_at": _iso(loan.closed_at),
    }


def entry_response(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "kind": entry.kind.value,
        "posting": entry.posting.value,
        "amount": money(entry.amount),
        "timestamp": entry.timestamp.isoformat(),
        "description": entry.description,
        "reference": entry.reference,
    }


def window_response(window: RepaymentWindow) -> Dict[str, Any]:
    return window.to_dict()


def window_record_response(record: WindowRecord) -> Dict[str, Any]:
    return {
        "window_number": record.window_number,
        "window_start": record.window_start.isoformat(),
        "window_end": record.window_end.isoformat(),
        "is_grace": record.is_grace,
        "evaluated_at": record.evaluated_at.isoformat(),
        "outstanding_at_start": money(record.outstanding_at_start),
        "fee_applied": money(record.fee_applied),
        "min_required": money(record.min_required),
        "paid_during_window": money(record.paid_during_window),
        "satisfied": record.satisfied,
        "defaulted": record.defaulted,
    }


def requirements_response(requirements: PaymentRequirements) -> Dict[str, Any]:
    return {
        "loan_id": requirements.loan_id,
        "as_of": requirements.as_of.isoformat(),
        "window": window_response(requirements.window) if requirements.window else None,
        "window_evaluated": requirements.window_evaluated,
        "outstanding": money(requirements.outstanding),
        "accrued_fees": money(requirements.accrued_fees),
        "projected_fee": money(requirements.projected_fee),
        "min_payment": money(requirements.min_payment),
        "paid_in_window": money(requirements.paid_in_window),
        "remaining_min_payment": money(requirements.remaining_min_payment),
        "total_required": money(requirements.total_required),
    }


def credit_report_response(report: CreditReport) -> Dict[str, Any]:
    return {
        "id": report.id,
        "loan_id": report.loan_id,
        "borrower_id": report.borrower_id,
        "amount_reported": money(report.amount_reported),
        "window_number": report.window_number,
        "status": report.status.value,
        "reference_id": report.reference_id,
        "reported_at": _iso(report.reported_at),
        "error": report.error,
    }


def notification_response(notification: Notification) -> Dict[str, Any]:
    return {
        "id": notification.id,
        "type": notification.notification_type.value,
        "channel": notification.channel.value,
        "recipient_id": notification.recipient_id,
        "subject": notification.subject,
        "body": notification.body,
        "status": notification.status.value,
        "failed_reason": notification.failed_reason,
        "created_at": notification.created_at.isoformat(),
    }
