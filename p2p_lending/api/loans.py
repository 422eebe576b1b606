"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, Request, status

from .dependencies import LendingSystem, get_lending_system
from .schemas import (
    CreateLoanRequest, CreateLoanRequestRequest, LenderActionRequest, CompletePaymentRequest,
    FundEscrowRequest, AcceptTermsRequest, LoanPaymentRequest, CancelLoanRequest, ReminderRequest,
    loan_response, entry_response, window_response, window_record_response,
    requirements_response, notification_response, money
)
from ..loans import LoanStatus
from ..notifications import NotificationChannel


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Lender offers a loan to a borrower"""
    loan = system.loan_manager.create_loan(
        lender_id=request.lender_id,
        borrower_id=request.borrower_id,
        principal=request.principal,
        purpose=request.purpose
    )
    return loan_response(loan)


@router.get("")
def list_loans(
    party_id: Optional[str] = None,
    role: Optional[str] = None,
    status: Optional[str] = None,
    include_requests: bool = False,
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans, optionally for one party and/or status"""
    loans = system.loan_manager.list_loans(
        party_id=party_id,
        role=role,
        status=LoanStatus(status.upper()) if status else None,
        include_requests=include_requests
    )
    return {"loans": [loan_response(loan) for loan in loans]}


@router.post("/requests", status_code=status.HTTP_201_CREATED)
def create_loan_request(
    request: CreateLoanRequestRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Borrower asks a lender for a loan"""
    loan = system.loan_manager.create_loan_request(
        borrower_id=request.borrower_id,
        lender_id=request.lender_id,
        principal=request.principal,
        purpose=request.purpose,
        repayment_plan=request.repayment_plan
    )
    return loan_response(loan)


@router.get("/requests/pending")
def list_pending_requests(
    lender_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Requests waiting for a lender's decision"""
    loans = system.loan_manager.list_pending_requests(lender_id)
    return {"loans": [loan_response(loan) for loan in loans]}


@router.get("/offers/pending")
def list_pending_offers(
    borrower_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Offers waiting for a borrower's acceptance"""
    loans = system.loan_manager.list_pending_offers(borrower_id)
    return {"loans": [loan_response(loan) for loan in loans]}


@router.post("/{loan_id}/accept-request")
def accept_loan_request(
    loan_id: str,
    request: LenderActionRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Lender accepts a loan request"""
    loan = system.loan_manager.accept_loan_request(loan_id, request.lender_id)
    return loan_response(loan)


@router.post("/{loan_id}/complete-payment")
def complete_payment(
    loan_id: str,
    request: CompletePaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Record the lender's captured payment and disburse"""
    loan = system.loan_manager.complete_payment(
        loan_id, request.lender_id, request.payment_id, request.payment_method
    )
    return loan_response(loan)


@router.post("/{loan_id}/fund")
def fund_escrow(
    loan_id: str,
    request: FundEscrowRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Lender funds escrow for a direct offer"""
    loan = system.loan_manager.fund_escrow(loan_id, request.lender_id, reference=request.reference or "")
    return loan_response(loan)


@router.post("/{loan_id}/accept-terms")
def accept_terms(
    loan_id: str,
    request: AcceptTermsRequest,
    http_request: Request,
    system: LendingSystem = Depends(get_lending_system)
):
    """Borrower accepts a direct offer"""
    loan = system.loan_manager.accept_terms(
        loan_id,
        request.borrower_id,
        client_ip=http_request.client.host if http_request.client else None,
        user_agent=http_request.headers.get("user-agent")
    )
    return loan_response(loan)


@router.post("/{loan_id}/payments")
def make_payment(
    loan_id: str,
    request: LoanPaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Repay accrued fees and principal"""
    loan = system.loan_manager.make_payment(
        loan_id, request.payer_id, request.amount, reference=request.reference or ""
    )
    return loan_response(loan)


@router.post("/{loan_id}/cancel")
def cancel_loan(
    loan_id: str,
    request: CancelLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Cancel an unaccepted, unfunded offer"""
    loan = system.loan_manager.cancel_loan(loan_id, request.actor_id, reason=request.reason)
    return loan_response(loan)


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan details"""
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return loan_response(loan)


@router.get("/{loan_id}/summary")
def get_loan_summary(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Balances derived from the ledger"""
    summary = system.loan_manager.summary(loan_id)
    for key in ('principal', 'outstanding', 'accrued_fees', 'total_fees_paid',
                'total_fees_charged', 'total_paid', 'total_funded'):
        summary[key] = money(summary[key])
    for key in ('disbursed_at', 'due_at'):
        summary[key] = summary[key].isoformat() if summary[key] else None
    return summary


@router.get("/{loan_id}/ledger")
def get_ledger(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Ledger entries, oldest first"""
    entries = system.loan_manager.get_ledger(loan_id)
    return {"loan_id": loan_id, "entries": [entry_response(e) for e in entries]}


@router.get("/{loan_id}/windows")
def get_window_history(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Evaluated repayment windows"""
    records = system.loan_manager.get_window_history(loan_id)
    return {"loan_id": loan_id, "windows": [window_record_response(r) for r in records]}


@router.get("/{loan_id}/schedule")
def get_schedule(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Repayment windows of a disbursed loan"""
    windows = system.loan_manager.get_schedule(loan_id)
    return {"loan_id": loan_id, "windows": [window_response(w) for w in windows]}


@router.get("/{loan_id}/payment-requirements")
def get_payment_requirements(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Minimum payment for the current window and the payoff amount"""
    return requirements_response(system.loan_manager.get_payment_requirements(loan_id))


@router.post("/{loan_id}/reminders")
def send_payment_reminder(
    loan_id: str,
    request: Optional[ReminderRequest] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Remind the borrower of the current window's minimum payment"""
    channels = None
    if request and request.channels:
        channels = [NotificationChannel(channel.lower()) for channel in request.channels]
    notifications = system.loan_manager.send_payment_reminder(loan_id, channels=channels)
    return {"loan_id": loan_id, "notifications": [notification_response(n) for n in notifications]}


@router.get("/{loan_id}/notifications")
def list_notifications(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Notifications sent about a loan"""
    notifications = system.loan_manager.list_notifications(loan_id)
    return {"loan_id": loan_id, "notifications": [notification_response(n) for n in notifications]}
