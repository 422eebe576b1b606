"""
External Collaborators Module

Contracts the lending core depends on but does not implement: identity
verification lookup, credit-bureau default reporting, and the clock. Real
integrations live behind these interfaces; in-process implementations are
provided for the demo deployment and for tests.
"""

import httpx
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from .currency import Money
from .exceptions import CollaboratorError
from .users import UserRepository

logger = logging.getLogger("p2p_lending.collaborators")


# Identity verification

class IdentityVerifier(ABC):
    """Identity verification status lookup"""
    
    @abstractmethod
    def is_verified(self, user_id: str) -> bool:
        pass


class RepositoryIdentityVerifier(IdentityVerifier):
    """Reads KYC status from the user repository"""
    
    def __init__(self, users: UserRepository):
        self.users = users
    
    def is_verified(self, user_id: str) -> bool:
        user = self.users.get_user(user_id)
        return bool(user and user.is_verified)


# Credit bureau

class CreditBureau(ABC):
    """Credit-report submission for defaulted loans"""
    
    @abstractmethod
    def report(self, loan_id: str, borrower_id: str, amount: Money, window_number: int) -> str:
        """
        Submit a default report
        
        Returns:
            Bureau reference id
            
        Raises:
            CollaboratorError: If the submission fails
        """
        pass
    
    def close(self) -> None:
        pass


class HttpCreditBureauClient(CreditBureau):
    """REST client for a credit bureau default-reporting endpoint"""
    
    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout, transport=transport)
    
    def report(self, loan_id: str, borrower_id: str, amount: Money, window_number: int) -> str:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        
        payload = {
            "loan_id": loan_id,
            "borrower_id": borrower_id,
            "amount_reported": str(amount.amount),
            "currency": amount.currency.code,
            "block_number": window_number,
            "status": "DEFAULT",
        }
        
        start = time.time()
        try:
            response = self._client.post(f"{self.base_url}/reports", json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Credit bureau unreachable: {e}") from e
        latency_ms = (time.time() - start) * 1000
        
        if response.status_code not in (200, 201):
            logger.warning(f"Credit bureau returned {response.status_code}: {response.text}")
            raise CollaboratorError(f"Credit bureau rejected report with status {response.status_code}")
        
        try:
            reference_id = response.json()["reference_id"]
        except (ValueError, KeyError, TypeError) as e:
            raise CollaboratorError("Credit bureau response has no reference_id") from e
        
        logger.info(f"Default for loan {loan_id} reported as {reference_id} ({latency_ms:.0f}ms)")
        return reference_id
    
    def health_check(self) -> bool:
        try:
            r = self._client.get(f"{self.base_url}/health")
            return r.status_code == 200
        except httpx.HTTPError:
            return False
    
    def close(self) -> None:
        self._client.close()


@dataclass
class SubmittedReport:
    """Report accepted by the mock bureau"""
    reference_id: str
    loan_id: str
    borrower_id: str
    amount: Money
    window_number: int


class MockCreditBureau(CreditBureau):
    """In-process bureau for demos and tests; can be told to fail"""
    
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.reports: List[SubmittedReport] = []
        self._lock = threading.Lock()
    
    def report(self, loan_id: str, borrower_id: str, amount: Money, window_number: int) -> str:
        if self.fail:
            raise CollaboratorError("Mock credit bureau configured to fail")
        reference_id = f"CIBIL-{uuid.uuid4().hex[:12].upper()}"
        with self._lock:
            self.reports.append(SubmittedReport(
                reference_id=reference_id,
                loan_id=loan_id,
                borrower_id=borrower_id,
                amount=amount,
                window_number=window_number
            ))
        return reference_id


# Clock

class Clock(ABC):
    """Source of the current time for the lending core"""
    
    @abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SimulatedClock(Clock):
    """
    Wall clock shifted by an adjustable offset.
    
    Used by the demo "simulate time" admin action and by tests. With ``start``
    the clock is frozen at that instant plus the offset.
    """
    
    def __init__(self, start: Optional[datetime] = None, offset: timedelta = timedelta(0)):
        self.start = start
        self.offset = offset
        self._lock = threading.Lock()
    
    def now(self) -> datetime:
        base = self.start or datetime.now(timezone.utc)
        with self._lock:
            return base + self.offset
    
    def advance(self, delta: timedelta) -> datetime:
        if delta < timedelta(0):
            raise ValueError("Simulated time cannot move backwards")
        with self._lock:
            self.offset = self.offset + delta
        return self.now()
    
    def advance_days(self, days: int) -> datetime:
        return self.advance(timedelta(days=days))
