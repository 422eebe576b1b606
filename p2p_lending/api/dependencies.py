"""
Lending system container and request dependencies
"""

from typing import Optional

from fastapi import Request

from ..config import LendingConfig, get_config
from ..storage import StorageInterface, create_storage
from ..audit import AuditTrail
from ..users import UserRepository, KYCStatus
from ..policy import LendingPolicy, PolicyStore
from ..collaborators import (
    Clock, SystemClock, SimulatedClock, CreditBureau, HttpCreditBureauClient,
    MockCreditBureau, RepositoryIdentityVerifier
)
from ..notifications import NotificationDispatcher
from ..loans import LoanManager
from ..scheduler import RepaymentScheduler


class LendingSystem:
    """P2P lending core with all components wired together"""
    
    def __init__(
        self,
        config: Optional[LendingConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None,
        credit_bureau: Optional[CreditBureau] = None
    ):
        self.config = config or get_config()
        
        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url)
        
        if clock is None:
            clock = SimulatedClock() if self.config.simulated_clock else SystemClock()
        self.clock = clock
        
        # Initialize core components
        self.audit_trail = AuditTrail(self.storage)
        self.users = UserRepository(self.storage, self.audit_trail)
        self.identity_verifier = RepositoryIdentityVerifier(self.users)
        self.policy_store = PolicyStore(self.storage, self.audit_trail,
                                        defaults=LendingPolicy.from_config(self.config))
        self.credit_bureau = credit_bureau or self._create_credit_bureau()
        self.notifications = NotificationDispatcher(
            self.storage, self.audit_trail, self.users,
            enabled=self.config.notifications_enabled,
            webhook_url=self.config.notification_webhook_url
        )
        self.loan_manager = LoanManager(
            self.storage, self.audit_trail, self.users, self.identity_verifier,
            self.policy_store, self.notifications, clock=self.clock
        )
        self.scheduler = RepaymentScheduler(
            self.loan_manager, self.credit_bureau, self.notifications,
            self.policy_store, self.audit_trail, self.clock
        )
    
    def _create_credit_bureau(self) -> CreditBureau:
        """Create credit bureau client based on configuration"""
        # In-process bureau unless a URL is configured
        if not self.config.credit_bureau_url:
            return MockCreditBureau()
        
        return HttpCreditBureauClient(
            base_url=self.config.credit_bureau_url,
            timeout=self.config.credit_bureau_timeout,
            api_key=self.config.credit_bureau_api_key or None
        )
    
    def dashboard(self):
        """Platform statistics for the admin dashboard"""
        stats = self.loan_manager.get_statistics()
        stats.update({
            'total_users': self.storage.count(self.users.table_name),
            'verified_users': len(self.users.list_users(KYCStatus.VERIFIED)),
            'notifications': self.notifications.get_delivery_stats(),
            'audit_events': self.audit_trail.count_events(),
            'now': self.clock.now().isoformat(),
        })
        return stats
    
    def close(self) -> None:
        self.credit_bureau.close()
        self.storage.close()


# Dependency to get the lending system of the running app
def get_lending_system(request: Request) -> LendingSystem:
    return request.app.state.system
