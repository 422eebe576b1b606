"""
Lending Policy Module

Rates and durations applied to new loans. Defaults come from LendingConfig;
operators can change them at runtime and the changes are persisted in the
``settings`` table. Each loan snapshots the policy into its own terms when it
is created, so later changes never affect existing loans.
"""

from dataclasses import dataclass, replace, fields
from decimal import Decimal
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import threading

from .config import LendingConfig
from .currency import Currency, to_decimal
from .schedule import ScheduleConfig
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .logging_config import get_logger, log_action


OUTSTANDING_SNAPSHOT_POLICIES = ("evaluation", "window_start")

logger = get_logger("p2p_lending.policy")


@dataclass(frozen=True)
class LendingPolicy:
    """Platform-wide lending rates and durations"""
    currency: Currency = Currency.INR
    initial_fee_rate: Decimal = Decimal('0.01')
    penalty_fee_rate: Decimal = Decimal('0.01')
    min_payment_percent: Decimal = Decimal('0.20')
    term_days: int = 30
    grace_days: int = 10
    window_length_days: int = 10
    window_count: int = 4
    credit_reporting_enabled: bool = True
    outstanding_snapshot: str = "evaluation"
    
    def __post_init__(self):
        for name in ('initial_fee_rate', 'penalty_fee_rate', 'min_payment_percent'):
            value = to_decimal(getattr(self, name))
            if value < Decimal('0') or value > Decimal('1'):
                raise ValueError(f"{name} must be between 0 and 1")
            object.__setattr__(self, name, value)
        if self.outstanding_snapshot not in OUTSTANDING_SNAPSHOT_POLICIES:
            raise ValueError(f"outstanding_snapshot must be one of {OUTSTANDING_SNAPSHOT_POLICIES}")
        self.schedule_config  # raises ValueError on invalid durations
    
    @property
    def schedule_config(self) -> ScheduleConfig:
        return ScheduleConfig(
            term_days=self.term_days,
            grace_days=self.grace_days,
            window_length_days=self.window_length_days,
            window_count=self.window_count
        )
    
    @classmethod
    def from_config(cls, config: LendingConfig) -> 'LendingPolicy':
        return cls(
            currency=Currency[config.currency.upper()],
            initial_fee_rate=Decimal(config.initial_fee_rate),
            penalty_fee_rate=Decimal(config.penalty_fee_rate),
            min_payment_percent=Decimal(config.min_payment_percent),
            term_days=config.term_days,
            grace_days=config.grace_days,
            window_length_days=config.window_length_days,
            window_count=config.window_count,
            credit_reporting_enabled=config.credit_reporting_enabled,
            outstanding_snapshot=config.outstanding_snapshot
        )
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'currency': self.currency.code,
            'initial_fee_rate': str(self.initial_fee_rate),
            'penalty_fee_rate': str(self.penalty_fee_rate),
            'min_payment_percent': str(self.min_payment_percent),
            'term_days': self.term_days,
            'grace_days': self.grace_days,
            'window_length_days': self.window_length_days,
            'window_count': self.window_count,
            'credit_reporting_enabled': self.credit_reporting_enabled,
            'outstanding_snapshot': self.outstanding_snapshot,
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LendingPolicy':
        values = dict(data)
        if 'currency' in values:
            values['currency'] = Currency[values['currency']]
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})


class PolicyStore:
    """Persisted, operator-editable lending policy"""
    
    SETTINGS_ID = "lending_policy"
    
    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 defaults: Optional[LendingPolicy] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "settings"
        self.defaults = defaults or LendingPolicy()
        self._lock = threading.Lock()
    
    def get_policy(self) -> LendingPolicy:
        """Current policy: stored settings, or the configured defaults"""
        data = self.storage.load(self.table_name, self.SETTINGS_ID)
        if not data:
            return self.defaults
        return LendingPolicy.from_dict(data['policy'])
    
    def update_policy(self, changes: Dict[str, Any], updated_by: Optional[str] = None) -> LendingPolicy:
        """
        Apply a partial update to the policy
        
        Raises:
            ValueError: On unknown setting names or invalid values
        """
        known = {f.name for f in fields(LendingPolicy)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        
        with self._lock:
            current = self.get_policy()
            values = dict(changes)
            if isinstance(values.get('currency'), str):
                values['currency'] = Currency[values['currency'].upper()]
            updated = replace(current, **values)
            
            now = datetime.now(timezone.utc)
            self.storage.save(self.table_name, self.SETTINGS_ID, {
                'id': self.SETTINGS_ID,
                'created_at': now.isoformat(),
                'updated_at': now.isoformat(),
                'updated_by': updated_by,
                'policy': updated.to_dict(),
            })
        
        self.audit_trail.log_event(
            event_type=AuditEventType.SETTINGS_UPDATED,
            entity_type="settings",
            entity_id=self.SETTINGS_ID,
            metadata={'changes': {k: str(v) for k, v in changes.items()}},
            user_id=updated_by
        )
        log_action(logger, "info", "Lending policy updated",
                   user_id=updated_by, action="update_policy", resource="settings",
                   extra={'changes': sorted(changes)})
        return updated
