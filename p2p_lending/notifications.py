"""
Notification Module

Templated borrower communications for repayment windows: payment reminders,
"window satisfied" notices and "window missed / default reported" notices,
sent over SMS, voice call, email and an optional webhook. Dispatch is
fire-and-log: failures are recorded on the notification and never raised to
the loan operation that triggered them.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from abc import ABC, abstractmethod
import logging
import uuid

import requests

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .users import UserRepository


class NotificationChannel(Enum):
    """Delivery channels; VOICE is an automated call"""
    SMS = "sms"
    VOICE = "call"
    EMAIL = "email"
    WEBHOOK = "webhook"


class NotificationType(Enum):
    """Types of loan notifications"""
    PAYMENT_REMINDER = "payment_reminder"
    WINDOW_SATISFIED = "window_satisfied"
    WINDOW_MISSED = "window_missed"


class NotificationStatus(Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"  # No address for the channel


@dataclass
class Notification(StorageRecord):
    """One message to one recipient over one channel"""
    notification_type: NotificationType
    channel: NotificationChannel
    loan_id: str
    recipient_id: str
    recipient_address: str
    subject: str
    body: str
    status: NotificationStatus = NotificationStatus.SENT
    sent_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


# Templates with {placeholders} filled from the notification metadata
TEMPLATES: Dict[NotificationType, Dict[str, str]] = {
    NotificationType.PAYMENT_REMINDER: {
        "subject": "Payment due for loan {loan_ref}",
        "body": ("Reminder: pay at least {min_payment} towards your loan by {window_end}. "
                 "Outstanding: {outstanding_amount}. Window {window_number}."),
    },
    NotificationType.WINDOW_SATISFIED: {
        "subject": "Payment received for loan {loan_ref}",
        "body": ("Thank you. The minimum payment for window {window_number} was met. "
                 "Outstanding: {outstanding_amount}."),
    },
    NotificationType.WINDOW_MISSED: {
        "subject": "Missed payment on loan {loan_ref}",
        "body": ("The minimum payment of {min_payment} for window {window_number} was not "
                 "received by {window_end}. Outstanding {outstanding_amount} has been "
                 "reported to the credit bureau."),
    },
}

DEFAULT_CHANNELS: Dict[NotificationType, List[NotificationChannel]] = {
    NotificationType.PAYMENT_REMINDER: [NotificationChannel.SMS, NotificationChannel.EMAIL],
    NotificationType.WINDOW_SATISFIED: [NotificationChannel.SMS],
    NotificationType.WINDOW_MISSED: [NotificationChannel.SMS, NotificationChannel.VOICE,
                                     NotificationChannel.EMAIL],
}


class ChannelProvider(ABC):
    """Delivers a rendered notification over one channel"""
    
    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Return True when the channel accepted the message"""
        pass


class LogChannelProvider(ChannelProvider):
    """Logs notifications instead of delivering them (demo SMS, voice and email gateway)"""
    
    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("p2p_lending.notifications")
    
    def send(self, notification: Notification) -> bool:
        self.logger.info(
            f"{notification.channel.value.upper()} to {notification.recipient_address}: "
            f"{notification.subject} | {notification.body[:100]}"
        )
        return True


class WebhookChannelProvider(ChannelProvider):
    """POSTs notifications as JSON to an operator-configured URL"""
    
    def __init__(self, timeout: int = 10):
        self.timeout = timeout
    
    def send(self, notification: Notification) -> bool:
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "loan_id": notification.loan_id,
            "recipient_id": notification.recipient_id,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }
        
        response = requests.post(
            notification.recipient_address,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        return response.status_code in (200, 201, 202, 204)


class NotificationDispatcher:
    """Renders, sends and records loan notifications"""
    
    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        users: UserRepository,
        enabled: bool = True,
        webhook_url: Optional[str] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.users = users
        self.enabled = enabled
        self.webhook_url = webhook_url
        self.table_name = "notifications"
        self.logger = logging.getLogger("p2p_lending.notifications")
        
        log_provider = LogChannelProvider(self.logger)
        self.providers: Dict[NotificationChannel, ChannelProvider] = {
            NotificationChannel.SMS: log_provider,
            NotificationChannel.VOICE: log_provider,
            NotificationChannel.EMAIL: log_provider,
            NotificationChannel.WEBHOOK: WebhookChannelProvider(),
        }
    
    def register_provider(self, channel: NotificationChannel, provider: ChannelProvider) -> None:
        self.providers[channel] = provider
    
    def notify(
        self,
        notification_type: NotificationType,
        loan_id: str,
        recipient_id: str,
        data: Dict[str, Any],
        channels: Optional[List[NotificationChannel]] = None
    ) -> List[Notification]:
        """
        Send a notification over each channel and record the outcome
        
        Args:
            notification_type: Template to render
            loan_id: Loan the notification is about
            recipient_id: User to notify
            data: Template fields (window_number, outstanding_amount, min_payment, window_end)
            channels: Channels to use (defaults per notification type, plus the
                      webhook when one is configured)
            
        Returns:
            Recorded notifications; empty when notifications are disabled
        """
        if not self.enabled:
            return []
        
        if channels is None:
            channels = list(DEFAULT_CHANNELS[notification_type])
            if self.webhook_url:
                channels.append(NotificationChannel.WEBHOOK)
        
        fields_ = {"loan_ref": loan_id[:8], **{k: str(v) for k, v in data.items()}}
        template = TEMPLATES[notification_type]
        subject = template["subject"].format(**fields_)
        body = template["body"].format(**fields_)
        
        sent = []
        for channel in channels:
            sent.append(self._send_via_channel(notification_type, channel, loan_id,
                                               recipient_id, subject, body, data))
        return sent
    
    def _recipient_address(self, recipient_id: str, channel: NotificationChannel) -> Optional[str]:
        if channel == NotificationChannel.WEBHOOK:
            return self.webhook_url
        user = self.users.get_user(recipient_id)
        if not user:
            return None
        if channel == NotificationChannel.EMAIL:
            return user.email
        return user.phone
    
    def _send_via_channel(self, notification_type: NotificationType, channel: NotificationChannel,
                          loan_id: str, recipient_id: str, subject: str, body: str,
                          data: Dict[str, Any]) -> Notification:
        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            notification_type=notification_type,
            channel=channel,
            loan_id=loan_id,
            recipient_id=recipient_id,
            recipient_address=self._recipient_address(recipient_id, channel) or "",
            subject=subject,
            body=body,
            metadata={k: str(v) for k, v in data.items()}
        )
        
        provider = self.providers.get(channel)
        if not notification.recipient_address:
            notification.status = NotificationStatus.SKIPPED
            notification.failed_reason = f"No {channel.value} address for recipient"
        elif not provider:
            notification.status = NotificationStatus.SKIPPED
            notification.failed_reason = f"No provider registered for {channel.value}"
        else:
            try:
                if provider.send(notification):
                    notification.status = NotificationStatus.SENT
                    notification.sent_at = now
                else:
                    notification.status = NotificationStatus.FAILED
                    notification.failed_reason = "Provider send failed"
            except Exception as e:
                self.logger.error(f"{channel.value} notification for loan {loan_id} failed: {e}",
                                  exc_info=True)
                notification.status = NotificationStatus.FAILED
                notification.failed_reason = str(e)
        
        self.storage.save(self.table_name, notification.id, self._notification_to_dict(notification))
        self.audit_trail.log_event(
            AuditEventType.NOTIFICATION_SENT,
            "notification",
            notification.id,
            {
                "type": notification_type.value,
                "channel": channel.value,
                "loan_id": loan_id,
                "recipient_id": recipient_id,
                "status": notification.status.value
            },
            "system"
        )
        return notification
    
    def list_notifications(self, loan_id: Optional[str] = None,
                           recipient_id: Optional[str] = None) -> List[Notification]:
        """Recorded notifications, oldest first"""
        filters = {}
        if loan_id:
            filters['loan_id'] = loan_id
        if recipient_id:
            filters['recipient_id'] = recipient_id
        records = (self.storage.find(self.table_name, filters) if filters
                   else self.storage.load_all(self.table_name))
        notifications = [self._notification_from_dict(data) for data in records]
        notifications.sort(key=lambda n: n.created_at)
        return notifications
    
    def get_delivery_stats(self) -> Dict[str, int]:
        stats = {status.value: 0 for status in NotificationStatus}
        for data in self.storage.load_all(self.table_name):
            stats[data['status']] = stats.get(data['status'], 0) + 1
        stats['total'] = sum(stats.values())
        return stats
    
    def _notification_to_dict(self, notification: Notification) -> Dict:
        return {
            'id': notification.id,
            'created_at': notification.created_at.isoformat(),
            'updated_at': notification.updated_at.isoformat(),
            'notification_type': notification.notification_type.value,
            'channel': notification.channel.value,
            'loan_id': notification.loan_id,
            'recipient_id': notification.recipient_id,
            'recipient_address': notification.recipient_address,
            'subject': notification.subject,
            'body': notification.body,
            'status': notification.status.value,
            'sent_at': notification.sent_at.isoformat() if notification.sent_at else None,
            'failed_reason': notification.failed_reason,
            'metadata': notification.metadata,
        }
    
    def _notification_from_dict(self, data: Dict) -> Notification:
        return Notification(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            notification_type=NotificationType(data['notification_type']),
            channel=NotificationChannel(data['channel']),
            loan_id=data['loan_id'],
            recipient_id=data['recipient_id'],
            recipient_address=data['recipient_address'],
            subject=data['subject'],
            body=data['body'],
            status=NotificationStatus(data['status']),
            sent_at=datetime.fromisoformat(data['sent_at']) if data.get('sent_at') else None,
            failed_reason=data.get('failed_reason'),
            metadata=data.get('metadata', {})
        )
