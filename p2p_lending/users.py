"""
User Repository Module

Lenders and borrowers with their identity-verification (KYC) status. The
repository is injected wherever users are needed; there is no process-wide
user registry.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import re
import threading
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import UserNotFoundError
from .logging_config import get_logger, log_action


logger = get_logger("p2p_lending.users")


class KYCStatus(Enum):
    """Identity verification status"""
    NONE = "none"           # Nothing submitted
    PENDING = "pending"     # Submitted, under review
    VERIFIED = "verified"   # Approved
    REJECTED = "rejected"   # Rejected


@dataclass
class User(StorageRecord):
    """Platform user (acts as lender, borrower, or both)"""
    name: str
    phone: str
    email: Optional[str] = None
    kyc_status: KYCStatus = KYCStatus.NONE
    kyc_updated_at: Optional[datetime] = None
    
    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Name is required")
        if not re.match(r'^\+?[0-9]{7,15}$', self.phone or ""):
            raise ValueError("Phone must be 7-15 digits with an optional leading +")
        if self.email and not re.match(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$', self.email):
            raise ValueError("Invalid email format")
    
    @property
    def is_verified(self) -> bool:
        return self.kyc_status == KYCStatus.VERIFIED


class UserRepository:
    """Create and look up users, and track their KYC status"""
    
    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "users"
        self._lock = threading.Lock()
    
    def create_user(self, name: str, phone: str, email: Optional[str] = None,
                    kyc_status: KYCStatus = KYCStatus.NONE) -> User:
        """
        Register a new user
        
        Raises:
            ValueError: If the details are invalid or the phone number is taken
        """
        now = datetime.now(timezone.utc)
        user = User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            phone=phone,
            email=email,
            kyc_status=kyc_status,
            kyc_updated_at=now if kyc_status != KYCStatus.NONE else None
        )
        
        with self._lock:
            if self.find_by_phone(phone):
                raise ValueError(f"A user with phone {phone} already exists")
            self._save_user(user)
        
        self.audit_trail.log_event(
            event_type=AuditEventType.USER_CREATED,
            entity_type="user",
            entity_id=user.id,
            metadata={"name": user.name, "kyc_status": user.kyc_status.value}
        )
        log_action(logger, "info", "User created", user_id=user.id,
                   action="create_user", resource="user")
        return user
    
    def get_user(self, user_id: str) -> Optional[User]:
        data = self.storage.load(self.table_name, user_id)
        return self._user_from_dict(data) if data else None
    
    def require_user(self, user_id: str) -> User:
        """Get a user or raise UserNotFoundError"""
        user = self.get_user(user_id)
        if not user:
            raise UserNotFoundError(f"User {user_id} not found")
        return user
    
    def find_by_phone(self, phone: str) -> Optional[User]:
        matches = self.storage.find(self.table_name, {'phone': phone})
        return self._user_from_dict(matches[0]) if matches else None
    
    def list_users(self, kyc_status: Optional[KYCStatus] = None) -> List[User]:
        if kyc_status:
            records = self.storage.find(self.table_name, {'kyc_status': kyc_status.value})
        else:
            records = self.storage.load_all(self.table_name)
        return [self._user_from_dict(data) for data in records]
    
    def update_kyc_status(self, user_id: str, status: KYCStatus,
                          updated_by: Optional[str] = None) -> User:
        """Set a user's identity verification status"""
        with self._lock:
            user = self.require_user(user_id)
            previous = user.kyc_status
            now = datetime.now(timezone.utc)
            user.kyc_status = status
            user.kyc_updated_at = now
            user.updated_at = now
            self._save_user(user)
        
        self.audit_trail.log_event(
            event_type=AuditEventType.KYC_STATUS_CHANGED,
            entity_type="user",
            entity_id=user_id,
            metadata={"from": previous.value, "to": status.value},
            user_id=updated_by
        )
        log_action(logger, "info", f"KYC status changed to {status.value}",
                   user_id=updated_by, action="update_kyc_status", resource=f"user:{user_id}")
        return user
    
    def _save_user(self, user: User) -> None:
        self.storage.save(self.table_name, user.id, self._user_to_dict(user))
    
    def _user_to_dict(self, user: User) -> Dict:
        return {
            'id': user.id,
            'created_at': user.created_at.isoformat(),
            'updated_at': user.updated_at.isoformat(),
            'name': user.name,
            'phone': user.phone,
            'email': user.email,
            'kyc_status': user.kyc_status.value,
            'kyc_updated_at': user.kyc_updated_at.isoformat() if user.kyc_updated_at else None,
        }
    
    def _user_from_dict(self, data: Dict) -> User:
        return User(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            phone=data['phone'],
            email=data.get('email'),
            kyc_status=KYCStatus(data['kyc_status']),
            kyc_updated_at=(datetime.fromisoformat(data['kyc_updated_at'])
                            if data.get('kyc_updated_at') else None)
        )
