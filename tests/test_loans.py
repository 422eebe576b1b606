"""
Test suite for the loan state machine

Tests direct offers, borrower requests, escrow and terms acceptance,
repayment, cancellation and the read-side projections.
"""

import pytest
import threading
from decimal import Decimal
from datetime import timedelta

from p2p_lending.currency import Money, Currency
from p2p_lending.ledger import EntryKind
from p2p_lending.loans import LoanStatus, EscrowStatus
from p2p_lending.storage import SQLiteStorage
from p2p_lending.config import LendingConfig
from p2p_lending.users import KYCStatus
from p2p_lending.api.dependencies import LendingSystem
from p2p_lending.exceptions import (
    LoanValidationError, LoanPreconditionError, LoanNotFoundError, UserNotFoundError
)


def inr(amount: str) -> Money:
    return Money(Decimal(amount), Currency.INR)


class TestCreateLoan:
    """Test direct loan offers"""

    def test_create_books_platform_fee(self, system, lender, borrower):
        """Test a 1000 offer at 1% books a 10 platform fee"""
        loan = system.loan_manager.create_loan(lender.id, borrower.id, "1000")

        assert loan.status == LoanStatus.PENDING_BORROWER_ACCEPT
        assert loan.escrow_status == EscrowStatus.PENDING
        entries = system.loan_manager.get_ledger(loan.id)
        assert len(entries) == 1
        assert entries[0].kind == EntryKind.PLATFORM_FEE
        assert entries[0].amount == inr("10")
        assert loan.total_fees_paid == inr("10")
        assert loan.outstanding == inr("1000")
        assert loan.disbursed_at is None

    def test_platform_fee_is_rounded(self, system, lender, borrower):
        """Test the fee is rounded half-up to two places"""
        loan = system.loan_manager.create_loan(lender.id, borrower.id, "1234.50")
        assert loan.terms.initial_platform_fee == inr("12.35")

    @pytest.mark.parametrize("principal", ["0", "-100", "abc", "NaN", "Infinity", "1e30"])
    def test_invalid_principal(self, system, lender, borrower, principal):
        """Test the principal must be a positive amount"""
        with pytest.raises(LoanValidationError):
            system.loan_manager.create_loan(lender.id, borrower.id, principal)
        assert system.loan_manager.list_loans() == []

    def test_self_loan_rejected(self, system, lender):
        """Test lender and borrower must differ"""
        with pytest.raises(LoanValidationError, match="different"):
            system.loan_manager.create_loan(lender.id, lender.id, "1000")

    def test_unknown_borrower(self, system, lender):
        """Test both parties must exist"""
        with pytest.raises(UserNotFoundError):
            system.loan_manager.create_loan(lender.id, "nobody", "1000")

    def test_terms_snapshot_policy(self, system, lender, borrower):
        """Test policy changes only affect loans created afterwards"""
        before = system.loan_manager.create_loan(lender.id, borrower.id, "1000")
        system.policy_store.update_policy({"initial_fee_rate": "0.02", "grace_days": 5})
        after = system.loan_manager.create_loan(lender.id, borrower.id, "1000")

        assert system.loan_manager.get_loan(before.id).terms.initial_platform_fee == inr("10")
        assert system.loan_manager.get_loan(before.id).terms.grace_days == 10
        assert after.terms.initial_platform_fee == inr("20")
        assert after.terms.grace_days == 5


class TestLoanRequest:
    """Test the borrower request path"""

    def _request(self, system, lender, borrower, principal="500"):
        return system.loan_manager.create_loan_request(
            borrower.id, lender.id, principal, purpose="School fees",
            repayment_plan="Two instalments from salary"
        )

    def test_request_books_nothing(self, system, lender, borrower):
        """Test a request has no ledger entries until accepted"""
        loan = self._request(system, lender, borrower)

        assert loan.status == LoanStatus.LOAN_REQUEST
        assert system.loan_manager.get_ledger(loan.id) == []
        assert loan.terms.initial_platform_fee == inr("5")

    @pytest.mark.parametrize("purpose,plan", [("", "plan"), ("purpose", " "), (None, "plan")])
    def test_purpose_and_plan_required(self, system, lender, borrower, purpose, plan):
        """Test requests need a purpose and a repayment plan"""
        with pytest.raises(LoanValidationError, match="required"):
            system.loan_manager.create_loan_request(borrower.id, lender.id, "500", purpose, plan)

    def test_pending_requests_listing(self, system, lender, borrower):
        """Test requests are listed for the lender but hidden from the default loan list"""
        loan = self._request(system, lender, borrower)

        assert [l.id for l in system.loan_manager.list_pending_requests(lender.id)] == [loan.id]
        assert system.loan_manager.list_pending_requests(borrower.id) == []
        assert system.loan_manager.list_loans(party_id=lender.id) == []
        assert len(system.loan_manager.list_loans(party_id=lender.id, include_requests=True)) == 1

    def test_accept_request_books_fee(self, system, lender, borrower):
        """Test accepting a request moves it to PENDING_PAYMENT and books the fee"""
        loan = self._request(system, lender, borrower)
        accepted = system.loan_manager.accept_loan_request(loan.id, lender.id)

        assert accepted.status == LoanStatus.PENDING_PAYMENT
        assert accepted.escrow_status == EscrowStatus.PENDING
        assert [e.kind for e in accepted.ledger] == [EntryKind.PLATFORM_FEE]
        assert accepted.total_fees_paid == inr("5")

    def test_only_lender_accepts_request(self, system, lender, borrower):
        """Test the borrower cannot accept their own request"""
        loan = self._request(system, lender, borrower)
        with pytest.raises(LoanPreconditionError):
            system.loan_manager.accept_loan_request(loan.id, borrower.id)

    def test_accept_request_twice(self, system, lender, borrower):
        """Test a request can only be accepted from LOAN_REQUEST"""
        loan = self._request(system, lender, borrower)
        system.loan_manager.accept_loan_request(loan.id, lender.id)
        with pytest.raises(LoanValidationError, match="PENDING_PAYMENT"):
            system.loan_manager.accept_loan_request(loan.id, lender.id)

    def test_accept_request_unverified_borrower(self, system, lender, unverified_borrower):
        """Test the borrower must be verified before the lender commits"""
        loan = self._request(system, lender, unverified_borrower)
        with pytest.raises(LoanPreconditionError, match="verification"):
            system.loan_manager.accept_loan_request(loan.id, lender.id)
        assert system.loan_manager.get_loan(loan.id).status == LoanStatus.LOAN_REQUEST

    def test_complete_payment_disburses(self, system, clock, lender, borrower):
        """Test the captured payment funds, releases escrow and activates the loan"""
        loan = self._request(system, lender, borrower)
        system.loan_manager.accept_loan_request(loan.id, lender.id)
        clock.advance_days(1)

        active = system.loan_manager.complete_payment(loan.id, lender.id, "pay_123", "card")

        assert active.status == LoanStatus.ACTIVE
        assert active.escrow_status == EscrowStatus.RELEASED
        assert active.disbursed_at == clock.now()
        assert active.due_at == clock.now() + timedelta(days=30)
        funding = [e for e in active.ledger if e.kind == EntryKind.FUNDING]
        assert len(funding) == 1
        assert funding[0].amount == inr("500")
        assert funding[0].reference == "card:pay_123"

    def test_complete_payment_requires_acceptance(self, system, lender, borrower):
        """Test payment cannot complete before the request is accepted"""
        loan = self._request(system, lender, borrower)
        with pytest.raises(LoanValidationError):
            system.loan_manager.complete_payment(loan.id, lender.id, "pay_123")

    def test_complete_payment_twice(self, system, lender, borrower):
        """Test a second confirmation is rejected"""
        loan = self._request(system, lender, borrower)
        system.loan_manager.accept_loan_request(loan.id, lender.id)
        system.loan_manager.complete_payment(loan.id, lender.id, "pay_123")
        with pytest.raises(LoanValidationError):
            system.loan_manager.complete_payment(loan.id, lender.id, "pay_124")


class TestDirectDisbursement:
    """Test the funding / acceptance join on direct offers"""

    def test_accept_then_fund(self, system, clock, lender, borrower):
        """Test funding after acceptance disburses"""
        loan = system.loan_manager.create_loan(lender.id, borrower.id, "1000")
        accepted = system.loan_manager.accept_terms(loan.id, borrower.id)
        assert accepted.status == LoanStatus.PENDING_LENDER_FUNDING
        assert accepted.escrow_status == EscrowStatus.PENDING

        clock.advance_days(2)
        active = system.loan_manager.fund_escrow(loan.id, lender.id)

        assert active.status == LoanStatus.ACTIVE
        assert active.escrow_status == EscrowStatus.RELEASED
        assert active.disbursed_at == clock.now()

    def test_fund_then_accept(self, system, clock, lender, borrower):
        """Test acceptance after funding disburses"""
        loan = system.loan_manager.create_loan(lender.id, borrower.id, "1000")
        funded = system.loan_manager.fund_escrow(loan.id, lender.id)
        assert funded.status == LoanStatus.PENDING_BORROWER_ACCEPT
        assert funded.escrow_status == EscrowStatus.FUNDED
        assert funded.disbursed_at is None

        clock.advance_days(3)
        active = system.loan_manager.accept_terms(loan.id, borrower.id, client_ip="10.0.0.7",
                                                  user_agent="pytest")

        assert active.status == LoanStatus.ACTIVE
        assert active.escrow_status == EscrowStatus.RELEASED
        assert active.disbursed_at == clock.now()
        assert active.terms_accepted_by == borrower.id
        assert active.terms_accepted_ip == "10.0.0.7"
        assert active.terms_accepted_user_agent == "pytest"

    def test_accept_terms_requires_verification(self, system, lender, unverified_borrower):
        """Test acceptance always fails while identity is unverified"""
        loan = system.loan_manager.create_loan(lender.id, unverified_borrower.id, "1000")
        with pytest.raises(LoanPreconditionError):
            system.loan_manager.accept_terms(loan.id, unverified_borrower.id)

        unchanged = system.loan_manager.get_loan(loan.id)
        assert unchanged.status == LoanStatus.PENDING_BORROWER_ACCEPT
        assert not unchanged.terms_accepted

    def test_accept_terms_after_verification(self, system, lender, unverified_borrower):
        """Test acceptance succeeds once KYC is verified"""
        loan = system.loan_manager.create_loan(lender.id, unverified_borrower.id, "1000")
        system.users.update_kyc_status(unverified_borrower.id, KYCStatus.VERIFIED)

        accepted = system.loan_manager.accept_terms(loan.id, unverified_borrower.id)
        assert accepted.status == LoanStatus.PENDING_LENDER_FUNDING

    def test_fund_escrow_requires_verification(self, system, lender, unverified_borrower):
        """Test escrow cannot be funded for an unverified borrower"""
        loan = system.loan_manager.create_loan(lender.id, unverified_borrower.id, "1000")
        with pytest.raises(LoanPreconditionError):
            system.loan_manager.fund_escrow(loan.id, lender.id)
        assert system.loan_manager.get_loan(loan.id).escrow_status == EscrowStatus.PENDING

    def test_fund_escrow_twice(self, system, lender, borrower):
        """Test escrow can only be funded from PENDING"""
        loan = system.loan_manager.create_loan(lender.id, borrower.id, "1000")
        system.loan_manager.fund_escrow(loan.id, lender.id)
        with pytest.raises(LoanPreconditionError, match="FUNDED"):
            system.loan_manager.fund_escrow(loan.id, lender.id)
        funding = [e for e in system.loan_manager.get_ledger(loan.id) if e.kind == EntryKind.FUNDING]
        assert len(funding) == 1

    def test_only_parties_act(self, system, lender, borrower):
        """Test the lender funds and the borrower accepts, not the other way round"""
        loan = system.loan_manager.create_loan(lender.id, borrower.id, "1000")
        with pytest.raises(LoanPreconditionError):
            system.loan_manager.fund_escrow(loan.id, borrower.id)
        with pytest.raises(LoanPreconditionError):
            system.loan_manager.accept_terms(loan.id, lender.id)

    def test_unknown_loan(self, system, lender):
        """Test operations on a missing loan raise not-found"""
        with pytest.raises(LoanNotFoundError):
            system.loan_manager.fund_escrow("missing", lender.id)
        assert system.loan_manager.get_loan("missing") is None


class TestMakePayment:
    """Test repayments"""

    def test_full_repayment_completes(self, system, active_loan, borrower):
        """Test paying exactly the outstanding makes one principal entry and completes"""
        before = len(active_loan.ledger)
        loan = system.loan_manager.make_payment(active_loan.id, borrower.id, "1000")

        new_entries = loan.ledger.entries[before:]
        assert len(new_entries) == 1
        assert new_entries[0].kind == EntryKind.PRINCIPAL_PAYMENT
        assert new_entries[0].amount == inr("1000")
        assert loan.status == LoanStatus.COMPLETED
        assert loan.outstanding == inr("0")
        assert loan.closed_at is not None

    def test_partial_payment(self, system, active_loan, borrower):
        """Test a partial payment reduces outstanding and keeps the loan active"""
        loan = system.loan_manager.make_payment(active_loan.id, borrower.id, "250.25")

        assert loan.status == LoanStatus.ACTIVE
        assert loan.outstanding == inr("749.75")
        assert loan.total_paid == inr("250.25")

    def test_lender_can_record_payment(self, system, active_loan, lender):
        """Test either party may record a payment"""
        loan = system.loan_manager.make_payment(active_loan.id, lender.id, "100")
        assert loan.outstanding == inr("900")

    def test_overpayment_rejected_without_mutation(self, system, active_loan, borrower):
        """Test amounts above outstanding plus accrued fees leave the ledger untouched"""
        before = system.loan_manager.get_ledger(active_loan.id)
        with pytest.raises(LoanValidationError, match="exceeds"):
            system.loan_manager.make_payment(active_loan.id, borrower.id, "1000.01")

        assert system.loan_manager.get_ledger(active_loan.id) == before
        assert system.loan_manager.get_loan(active_loan.id).status == LoanStatus.ACTIVE

    @pytest.mark.parametrize("amount", ["0", "-1"])
    def test_non_positive_rejected(self, system, active_loan, borrower, amount):
        """Test payments must be positive"""
        with pytest.raises(LoanValidationError, match="positive"):
            system.loan_manager.make_payment(active_loan.id, borrower.id, amount)

    @pytest.mark.parametrize("amount", ["NaN", "Infinity", "-Infinity", "1e30"])
    def test_non_finite_amount_rejected(self, system, active_loan, borrower, amount):
        """Test amounts that are not finite or exceed decimal precision are refused"""
        before = system.loan_manager.get_ledger(active_loan.id)
        with pytest.raises(LoanValidationError, match="not a valid amount"):
            system.loan_manager.make_payment(active_loan.id, borrower.id, amount)
        assert system.loan_manager.get_ledger(active_loan.id) == before

    def test_payment_requires_active_loan(self, system, lender, borrower):
        """Test payments are refused before disbursement"""
        loan = system.loan_manager.create_loan(lender.id, borrower.id, "1000")
        with pytest.raises(LoanValidationError, match="PENDING_BORROWER_ACCEPT"):
            system.loan_manager.make_payment(loan.id, borrower.id, "100")

    def test_payment_after_completion(self, system, active_loan, borrower):
        """Test a completed loan takes no more payments"""
        system.loan_manager.make_payment(active_loan.id, borrower.id, "1000")
        with pytest.raises(LoanValidationError):
            system.loan_manager.make_payment(active_loan.id, borrower.id, "1")

    def test_stranger_cannot_pay(self, system, active_loan):
        """Test the payer must be a party to the loan"""
        with pytest.raises(LoanPreconditionError):
            system.loan_manager.make_payment(active_loan.id, "someone-else", "10")

    def test_fees_paid_before_principal(self, system, clock, active_loan, borrower):
        """Test an accrued penalty fee absorbs the start of the next payment"""
        clock.advance_days(35)
        system.loan_manager.make_payment(active_loan.id, borrower.id, "210")
        clock.advance_days(6)
        system.scheduler.run()

        loan = system.loan_manager.get_loan(active_loan.id)
        assert loan.status == LoanStatus.ACTIVE
        assert loan.accrued_fees == inr("7.90")

        loan = system.loan_manager.make_payment(active_loan.id, borrower.id, "20")
        assert loan.accrued_fees == inr("0")
        assert loan.outstanding == inr("777.90")
        assert loan.total_fees_paid == inr("17.90")

    def test_payoff_includes_accrued_fees(self, system, clock, active_loan, borrower):
        """Test a loan with an accrued fee completes when principal and fee are paid"""
        clock.advance_days(35)
        system.loan_manager.make_payment(active_loan.id, borrower.id, "210")
        clock.advance_days(6)
        system.scheduler.run()

        with pytest.raises(LoanValidationError):
            system.loan_manager.make_payment(active_loan.id, borrower.id, "797.91")
        loan = system.loan_manager.make_payment(active_loan.id, borrower.id, "797.90")
        assert loan.status == LoanStatus.COMPLETED
        assert loan.accrued_fees == inr("0")

    def test_concurrent_payments_are_serialized(self, system, active_loan, borrower):
        """Test parallel payments on one loan never double-spend the outstanding"""
        errors = []

        def pay():
            try:
                system.loan_manager.make_payment(active_loan.id, borrower.id, "100")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=pay) for _ in range(12)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        loan = system.loan_manager.get_loan(active_loan.id)
        principal_entries = [e for e in loan.ledger if e.kind == EntryKind.PRINCIPAL_PAYMENT]
        assert len(principal_entries) == 10
        assert len(errors) == 2
        assert loan.outstanding == inr("0")
        assert loan.status == LoanStatus.COMPLETED
        assert system.loan_manager._locks == {}

    def test_loan_lock_released_from_registry(self, system, active_loan):
        """Test a loan keeps a lock entry only while an operation holds it"""
        manager = system.loan_manager
        with manager.loan_lock(active_loan.id):
            with manager.loan_lock(active_loan.id):
                assert manager._locks[active_loan.id][1] == 2
            assert active_loan.id in manager._locks

        assert manager._locks == {}

class TestCancelLoan:
    """Test cancellation rules"""

    def test_cancel_pending_offer(self, system, lender, borrower):
        """Test an unaccepted, unfunded offer can be cancelled"""
        loan = system.loan_manager.create_loan(lender.id, borrower.id, "1000")
        cancelled = system.loan_manager.cancel_loan(loan.id, lender.id, reason="changed my mind")

        assert cancelled.status == LoanStatus.CANCELLED
        assert cancelled.escrow_status == EscrowStatus.PENDING

    def test_cancel_funded_escrow_fails(self, system, lender, borrower):
        """Test cancelling with escrow FUNDED always fails"""
        loan = system.loan_manager.create_loan(lender.id, borrower.id, "1000")
        system.loan_manager.fund_escrow(loan.id, lender.id)
        with pytest.raises(LoanPreconditionError, match="FUNDED"):
            system.loan_manager.cancel_loan(loan.id, lender.id)

    def test_cancel_released_escrow_fails(self, system, active_loan, lender, borrower):
        """Test cancelling with escrow RELEASED always fails"""
        for actor in (lender, borrower):
            with pytest.raises(LoanPreconditionError, match="RELEASED"):
                system.loan_manager.cancel_loan(active_loan.id, actor.id)
        assert system.loan_manager.get_loan(active_loan.id).status == LoanStatus.ACTIVE

    def test_cancel_after_terms_accepted_fails(self, system, lender, borrower):
        """Test cancellation is only legal while awaiting borrower acceptance"""
        loan = system.loan_manager.create_loan(lender.id, borrower.id, "1000")
        system.loan_manager.accept_terms(loan.id, borrower.id)
        with pytest.raises(LoanValidationError):
            system.loan_manager.cancel_loan(loan.id, borrower.id)

    def test_stranger_cannot_cancel(self, system, lender, borrower):
        """Test only a party may cancel"""
        loan = system.loan_manager.create_loan(lender.id, borrower.id, "1000")
        with pytest.raises(LoanPreconditionError):
            system.loan_manager.cancel_loan(loan.id, "someone-else")


class TestLoanQueries:
    """Test read-side projections"""

    def test_schedule_empty_before_disbursement(self, system, lender, borrower):
        """Test an undisbursed loan has no windows"""
        loan = system.loan_manager.create_loan(lender.id, borrower.id, "1000")
        assert system.loan_manager.get_schedule(loan.id) == []

    def test_schedule_after_disbursement(self, system, clock, active_loan):
        """Test the schedule is anchored at disbursement"""
        windows = system.loan_manager.get_schedule(active_loan.id)
        assert windows[0].start == clock.now() + timedelta(days=30)
        assert windows[0].is_grace
        assert len(windows) == 5

    def test_requirements_during_term(self, system, active_loan):
        """Test there is no minimum before the first window opens"""
        requirements = system.loan_manager.get_payment_requirements(active_loan.id)

        assert requirements.window is None
        assert requirements.min_payment == inr("0")
        assert requirements.total_required == inr("1000")

    def test_requirements_inside_window(self, system, clock, active_loan, borrower):
        """Test the minimum is 20% of outstanding plus the projected 1% fee"""
        clock.advance_days(32)
        requirements = system.loan_manager.get_payment_requirements(active_loan.id)
        assert requirements.window.number == 1
        assert requirements.projected_fee == inr("10")
        assert requirements.min_payment == inr("210")
        assert requirements.remaining_min_payment == inr("210")

        system.loan_manager.make_payment(active_loan.id, borrower.id, "100")
        requirements = system.loan_manager.get_payment_requirements(active_loan.id)
        assert requirements.paid_in_window == inr("100")
        assert requirements.min_payment == inr("189")
        assert requirements.remaining_min_payment == inr("89")

    def test_requirements_require_active_loan(self, system, lender, borrower):
        """Test requirements are only projected for active loans"""
        loan = system.loan_manager.create_loan(lender.id, borrower.id, "1000")
        with pytest.raises(LoanValidationError):
            system.loan_manager.get_payment_requirements(loan.id)

    def test_summary(self, system, clock, active_loan, borrower):
        """Test the summary projection"""
        system.loan_manager.make_payment(active_loan.id, borrower.id, "400")
        clock.advance_days(31)
        summary = system.loan_manager.summary(active_loan.id)

        assert summary['status'] == "ACTIVE"
        assert summary['outstanding'] == inr("600")
        assert summary['total_fees_paid'] == inr("10")
        assert summary['total_paid'] == inr("400")
        assert summary['current_window'] == 1
        assert summary['defaulted_window'] is None
        assert summary['total_funded'] == inr("1000")
        assert not summary['is_terminal']

        system.loan_manager.make_payment(active_loan.id, borrower.id, "600")
        assert system.loan_manager.summary(active_loan.id)['is_terminal']

    def test_list_loans_by_role(self, system, lender, borrower):
        """Test filtering loans by party and role"""
        offered = system.loan_manager.create_loan(lender.id, borrower.id, "1000")

        assert [l.id for l in system.loan_manager.list_loans(party_id=lender.id)] == [offered.id]
        assert [l.id for l in system.loan_manager.list_loans(party_id=borrower.id,
                                                              role="borrower")] == [offered.id]
        assert system.loan_manager.list_loans(party_id=borrower.id, role="lender") == []
        assert [l.id for l in system.loan_manager.list_pending_offers(borrower.id)] == [offered.id]
        with pytest.raises(LoanValidationError):
            system.loan_manager.list_loans(party_id=lender.id, role="guarantor")

    def test_missing_loan_projection(self, system):
        """Test projections of a missing loan raise not-found"""
        with pytest.raises(LoanNotFoundError):
            system.loan_manager.get_ledger("missing")
        with pytest.raises(LoanNotFoundError):
            system.loan_manager.get_window_history("missing")


class TestLoanPersistence:
    """Test the aggregate survives a round trip through SQLite"""

    def test_sqlite_round_trip(self, clock, bureau):
        """Test ledger, window history and dates are stored inline"""
        system = LendingSystem(config=LendingConfig(database_url="memory://"),
                               storage=SQLiteStorage(":memory:"), clock=clock, credit_bureau=bureau)
        lender = system.users.create_user("L", "+919811111111", kyc_status=KYCStatus.VERIFIED)
        borrower = system.users.create_user("B", "+919822222222", kyc_status=KYCStatus.VERIFIED)
        loan = system.loan_manager.create_loan(lender.id, borrower.id, "1000")
        system.loan_manager.fund_escrow(loan.id, lender.id)
        system.loan_manager.accept_terms(loan.id, borrower.id)
        clock.advance_days(41)
        system.scheduler.run()

        stored = system.loan_manager.get_loan(loan.id)
        assert stored.status == LoanStatus.DEFAULT_REPORTED
        assert stored.disbursed_at == clock.now() - timedelta(days=41)
        assert [r.window_number for r in stored.window_history] == [1]
        assert stored.window_history[0].defaulted
        assert stored.ledger.total_fees_charged() == inr("10")
        system.close()
