"""
Test suite for the lending policy and its persisted settings
"""

import pytest
from decimal import Decimal

from p2p_lending.config import LendingConfig
from p2p_lending.currency import Currency
from p2p_lending.storage import InMemoryStorage
from p2p_lending.audit import AuditTrail, AuditEventType
from p2p_lending.policy import LendingPolicy, PolicyStore


@pytest.fixture
def store():
    storage = InMemoryStorage()
    return PolicyStore(storage, AuditTrail(storage))


class TestLendingPolicy:

    def test_defaults(self):
        policy = LendingPolicy()
        assert policy.currency == Currency.INR
        assert policy.initial_fee_rate == Decimal('0.01')
        assert policy.penalty_fee_rate == Decimal('0.01')
        assert policy.min_payment_percent == Decimal('0.20')
        assert (policy.term_days, policy.grace_days) == (30, 10)
        assert (policy.window_length_days, policy.window_count) == (10, 4)
        assert policy.credit_reporting_enabled
        assert policy.outstanding_snapshot == "evaluation"

    def test_from_config(self):
        config = LendingConfig(penalty_fee_rate="0.02", window_count=6, credit_reporting_enabled=False)
        policy = LendingPolicy.from_config(config)

        assert policy.penalty_fee_rate == Decimal('0.02')
        assert policy.window_count == 6
        assert not policy.credit_reporting_enabled

    @pytest.mark.parametrize("changes", [
        {"initial_fee_rate": Decimal('1.5')},
        {"penalty_fee_rate": Decimal('-0.01')},
        {"outstanding_snapshot": "midnight"},
        {"window_length_days": 0},
        {"term_days": -1},
        {"penalty_fee_rate": "NaN"},
        {"min_payment_percent": "Infinity"},
    ])
    def test_invalid_values(self, changes):
        with pytest.raises(ValueError):
            LendingPolicy(**changes)

    def test_dict_round_trip(self):
        policy = LendingPolicy(penalty_fee_rate=Decimal('0.015'), outstanding_snapshot="window_start")
        assert LendingPolicy.from_dict(policy.to_dict()) == policy


class TestPolicyStore:

    def test_defaults_until_updated(self, store):
        assert store.get_policy() == LendingPolicy()

    def test_update_is_persisted_and_audited(self, store):
        updated = store.update_policy({"penalty_fee_rate": "0.02", "grace_days": 5}, updated_by="ops")

        assert updated.penalty_fee_rate == Decimal('0.02')
        assert store.get_policy() == updated
        assert store.get_policy().initial_fee_rate == Decimal('0.01')
        event = store.audit_trail.get_events_by_type(AuditEventType.SETTINGS_UPDATED)[0]
        assert event.user_id == "ops"
        assert event.metadata["changes"]["grace_days"] == "5"

    def test_updates_accumulate(self, store):
        store.update_policy({"grace_days": 5})
        store.update_policy({"credit_reporting_enabled": False})

        policy = store.get_policy()
        assert policy.grace_days == 5
        assert not policy.credit_reporting_enabled

    def test_unknown_setting(self, store):
        with pytest.raises(ValueError, match="Unknown settings"):
            store.update_policy({"interest_rate": "0.1"})

    def test_invalid_value_not_stored(self, store):
        with pytest.raises(ValueError):
            store.update_policy({"min_payment_percent": "2"})
        assert store.get_policy() == LendingPolicy()

    def test_currency_by_code(self, store):
        assert store.update_policy({"currency": "usd"}).currency == Currency.USD
