"""
Shared fixtures: an in-memory lending system on a frozen simulated clock
"""

import pytest
from datetime import datetime, timezone

from p2p_lending.config import LendingConfig
from p2p_lending.storage import InMemoryStorage
from p2p_lending.collaborators import SimulatedClock, MockCreditBureau
from p2p_lending.users import KYCStatus
from p2p_lending.api.dependencies import LendingSystem


START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return SimulatedClock(start=START)


@pytest.fixture
def bureau():
    return MockCreditBureau()


@pytest.fixture
def system(clock, bureau):
    """Lending system with in-memory storage and default policy"""
    config = LendingConfig(database_url="memory://", notification_webhook_url=None)
    return LendingSystem(config=config, storage=InMemoryStorage(), clock=clock, credit_bureau=bureau)


@pytest.fixture
def lender(system):
    return system.users.create_user("Asha Lender", "+919800000001", "asha@example.com",
                                    kyc_status=KYCStatus.VERIFIED)


@pytest.fixture
def borrower(system):
    return system.users.create_user("Ravi Borrower", "+919800000002", "ravi@example.com",
                                    kyc_status=KYCStatus.VERIFIED)


@pytest.fixture
def unverified_borrower(system):
    return system.users.create_user("Kiran Unverified", "+919800000003")


@pytest.fixture
def make_active_loan(system):
    """Offer, fund and accept a direct loan; disbursed at the clock's current time"""
    def _make(lender, borrower, principal="1000"):
        loan = system.loan_manager.create_loan(lender.id, borrower.id, principal)
        system.loan_manager.fund_escrow(loan.id, lender.id)
        return system.loan_manager.accept_terms(loan.id, borrower.id)
    return _make


@pytest.fixture
def active_loan(make_active_loan, lender, borrower):
    return make_active_loan(lender, borrower)
