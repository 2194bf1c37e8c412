"""Notification service for SMS and email.

Business operations never talk to a transport directly. They queue messages
on a ``Notifier``; the notifier renders templates, respects each visitor's
opt-in flags and flushes its outbox once the triggering transaction has been
committed. Dispatch failures are logged and recorded, never raised.
"""

import logging
import smtplib
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx
from jinja2 import Template
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vms.core.clock import Clock, SystemClock
from vms.core.config import Settings, settings as default_settings
from vms.core.errors import NotificationDispatchFailure
from vms.models.entity import Entity, EntityStatus
from vms.models.notification import NotificationLog
from vms.models.visit import Visit, VisitStatus

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """Outcome of handing one message to a transport."""
    accepted: bool
    channel: str  # "sms", "email"
    recipient: str
    message_id: Optional[str] = None
    cost: Optional[Decimal] = None
    error: Optional[str] = None
    sent_at: Optional[datetime] = None


class NotificationDispatcher(Protocol):
    def send(self, recipient_contact: str, message: str, context: Dict[str, Any]) -> DispatchResult: ...


def clean_phone_number(phone: str) -> str:
    """Normalize a Kenyan number to the 254XXXXXXXXX form the gateway expects."""
    digits = "".join(ch for ch in phone if ch.isdigit())
    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif len(digits) == 9:
        digits = "254" + digits
    return digits


class GatewayDispatcher:
    """Sends SMS through an HTTP gateway and email through SMTP."""

    def __init__(
        self,
        sms_provider: str = "mock",  # "gateway", "mock"
        sms_api_url: str = "",
        sms_api_key: Optional[str] = None,
        sms_api_secret: Optional[str] = None,
        sms_sender_id: str = "SMS_TEST",
        status_callback_url: Optional[str] = None,
        status_secret: Optional[str] = None,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        email_from: Optional[str] = None,
        email_from_name: str = "",
        timeout: float = 30.0,
        http_client: Optional[httpx.Client] = None,
    ):
        self.sms_provider = sms_provider
        self.sms_api_url = sms_api_url.rstrip("/")
        self.sms_api_key = sms_api_key
        self.sms_api_secret = sms_api_secret
        self.sms_sender_id = sms_sender_id
        self.status_callback_url = status_callback_url
        self.status_secret = status_secret

        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.email_from = email_from
        self.email_from_name = email_from_name

        self.timeout = timeout
        self._http_client = http_client

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "GatewayDispatcher":
        config = config or default_settings
        return cls(
            sms_provider=config.sms_provider,
            sms_api_url=config.sms_api_url,
            sms_api_key=config.sms_api_key,
            sms_api_secret=config.sms_api_secret,
            sms_sender_id=config.sms_sender_id,
            status_callback_url=config.sms_status_callback_url,
            status_secret=config.sms_status_secret,
            smtp_host=config.smtp_host,
            smtp_port=config.smtp_port,
            smtp_user=config.smtp_user,
            smtp_password=config.smtp_password,
            smtp_use_tls=config.smtp_use_tls,
            email_from=config.smtp_from_email,
            email_from_name=config.smtp_from_name,
            timeout=config.sms_timeout_seconds,
        )

    def _get_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=self.timeout)
        return self._http_client

    def close(self):
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def send(self, recipient_contact: str, message: str, context: Dict[str, Any]) -> DispatchResult:
        channel = context.get("channel", "sms")
        try:
            if channel == "email":
                return self._send_email(recipient_contact, context.get("subject") or "", message)
            if self.sms_provider == "gateway":
                return self._send_gateway_sms(recipient_contact, message)
            return self._send_mock_sms(recipient_contact, message)
        except NotificationDispatchFailure as e:
            logger.error(f"Notification dispatch failed: {e}")
            return DispatchResult(
                accepted=False, channel=channel, recipient=recipient_contact, error=e.error
            )

    def _send_gateway_sms(self, to: str, message: str) -> DispatchResult:
        if not self.sms_api_key or not self.sms_api_secret:
            raise NotificationDispatchFailure("sms", to, "API credentials not configured")

        payload: Dict[str, Any] = {
            "source": self.sms_sender_id,
            "message": message,
            "destination": [{"number": clean_phone_number(to)}],
        }
        if self.status_callback_url:
            payload["status_url"] = self.status_callback_url
            if self.status_secret:
                payload["status_secret"] = self.status_secret

        try:
            response = self._get_client().post(
                f"{self.sms_api_url}/sms/send",
                auth=(self.sms_api_key, self.sms_api_secret),
                json=payload,
            )
        except httpx.HTTPError as e:
            raise NotificationDispatchFailure("sms", to, str(e)) from e

        try:
            data = response.json()
        except ValueError:
            raise NotificationDispatchFailure(
                "sms", to, f"Invalid API response: {response.status_code} - {response.text}"
            )

        if response.status_code not in (200, 201) or data.get("success") is not True:
            raise NotificationDispatchFailure("sms", to, data.get("message") or f"HTTP {response.status_code}")

        recipient = (data.get("recipients") or [{}])[0]
        return DispatchResult(
            accepted=True,
            channel="sms",
            recipient=to,
            message_id=str(recipient["id"]) if recipient.get("id") else None,
            cost=Decimal(str(recipient.get("cost", 0))),
            sent_at=datetime.now(timezone.utc),
        )

    def _send_mock_sms(self, to: str, message: str) -> DispatchResult:
        """Mock SMS for development - logs warning that no real SMS is sent."""
        logger.warning(
            f"[MOCK SMS] No SMS provider configured. Message NOT actually sent. "
            f"To: {to}, Message: {message}"
        )
        return DispatchResult(accepted=True, channel="sms", recipient=to, sent_at=datetime.now(timezone.utc))

    def _send_email(self, to: str, subject: str, body: str) -> DispatchResult:
        if not (self.smtp_host and self.smtp_user and self.smtp_password and self.email_from):
            raise NotificationDispatchFailure("email", to, "SMTP not configured")

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.email_from_name} <{self.email_from}>"
        msg["To"] = to

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                if self.smtp_use_tls:
                    server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.email_from, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationDispatchFailure("email", to, str(e)) from e

        return DispatchResult(accepted=True, channel="email", recipient=to, sent_at=datetime.now(timezone.utc))


# ==========================================================================
# Message templates
# ==========================================================================

SMS_TEMPLATES: Dict[str, str] = {
    "registration_approved": (
        "{{ venue }}: Dear {{ name }}, your visit on {{ date }} has been registered and approved. "
        "Please carry a valid ID when you arrive."
    ),
    "registration_pending": (
        "{{ venue }}: Dear {{ name }}, your visit on {{ date }} has been registered but is pending "
        "approval due to capacity limits. You will be notified once approved."
    ),
    "visit_approved": (
        "{{ venue }}: Dear {{ name }}, your visit on {{ date }} has been approved. "
        "Please carry a valid ID when you arrive."
    ),
    "visit_unapproved": (
        "{{ venue }}: Dear {{ name }}, your visit on {{ date }} is currently pending approval "
        "due to capacity limits. You will be notified once approved."
    ),
    "visit_cancelled": (
        "{{ venue }}: Dear {{ name }}, your visit on {{ date }} has been cancelled. "
        "Please contact your host for more information."
    ),
    "visit_suspended": (
        "{{ venue }}: Dear {{ name }}, your visit on {{ date }} is on hold while your visiting "
        "privileges are suspended."
    ),
    "visit_banned": (
        "{{ venue }}: Dear {{ name }}, your visit on {{ date }} can no longer take place because "
        "your visiting privileges have been revoked."
    ),
    "entity_suspended": (
        "{{ venue }}: Dear {{ name }}, your visiting privileges have been temporarily suspended"
        "{% if quota %} because the visit limit has been reached{% endif %}. "
        "Please contact the club for more information."
    ),
    "entity_banned": (
        "{{ venue }}: Dear {{ name }}, your visiting privileges have been permanently revoked. "
        "Please contact the club for more information."
    ),
    "entity_restored": (
        "{{ venue }}: Dear {{ name }}, your visiting privileges have been restored. "
        "We look forward to seeing you."
    ),
    "signed_in": (
        "Welcome {{ name }}! You have successfully signed in at {{ time }}. Enjoy your visit!"
    ),
    "signed_out": (
        "Thank you for your visit {{ name }}! You have successfully signed out at {{ time }}. "
        "Have a great day!"
    ),
    "host_capacity": (
        "{{ venue }}: Dear {{ name }}, you have exceeded your daily guest limit ({{ limit }}) for "
        "{{ date }}. {{ pending }} guest(s) are pending approval and will be notified once slots "
        "become available."
    ),
    "host_guest_registered": (
        "{{ venue }}: Dear {{ name }}, {{ guest }} has been registered as your guest on {{ date }}"
        "{% if pending %} and is pending approval{% endif %}."
    ),
    "admin_registration": (
        "{{ venue }}: {{ guest }} ({{ entity_type }}) registered for {{ date }}: {{ outcome }}."
    ),
}

EMAIL_SUBJECTS: Dict[str, str] = {
    "registration_approved": "Visit registered",
    "registration_pending": "Visit pending approval",
    "visit_approved": "Visit approved",
    "visit_unapproved": "Visit pending approval",
    "visit_cancelled": "Visit cancelled",
    "visit_suspended": "Visit on hold",
    "visit_banned": "Visit cancelled",
    "entity_suspended": "Visiting privileges suspended",
    "entity_banned": "Visiting privileges revoked",
    "entity_restored": "Visiting privileges restored",
    "signed_in": "Signed in",
    "signed_out": "Signed out",
    "host_capacity": "Daily guest limit reached",
    "host_guest_registered": "Guest registered",
    "admin_registration": "New visit registration",
}

_COMPILED = {name: Template(body) for name, body in SMS_TEMPLATES.items()}


def render_message(template: str, **context: Any) -> str:
    return _COMPILED[template].render(**context)


def _format_date(day: date) -> str:
    return day.strftime("%d %b %Y")


@dataclass
class OutboundMessage:
    channel: str
    recipient: str
    template: str
    message: str
    subject: str = ""
    entity_id: Optional[int] = None


class Notifier:
    """Queues visit notifications and dispatches them after commit."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        session_factory: Optional[Callable[[], Session]] = None,
        clock: Optional[Clock] = None,
        config: Optional[Settings] = None,
    ):
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.config = config or default_settings
        self._outbox: List[OutboundMessage] = []

    @property
    def pending(self) -> List[OutboundMessage]:
        return list(self._outbox)

    # ------------------------------------------------------------------
    # Message builders
    # ------------------------------------------------------------------

    def _queue(self, entity: Entity, template: str, **context: Any):
        context.setdefault("venue", self.config.venue_name)
        context.setdefault("name", entity.full_name)
        message = render_message(template, **context)
        subject = f"{self.config.venue_name}: {EMAIL_SUBJECTS[template]}"

        if entity.receive_sms and entity.phone_number:
            self._outbox.append(OutboundMessage("sms", entity.phone_number, template, message, subject, entity.id))
        if entity.receive_email and entity.email:
            self._outbox.append(OutboundMessage("email", entity.email, template, message, subject, entity.id))

    def _queue_admins(self, template: str, **context: Any):
        context.setdefault("venue", self.config.venue_name)
        message = render_message(template, **context)
        subject = f"{self.config.venue_name}: {EMAIL_SUBJECTS[template]}"
        for phone in self.config.admin_phones:
            self._outbox.append(OutboundMessage("sms", phone, template, message, subject))
        for email in self.config.admin_emails:
            self._outbox.append(OutboundMessage("email", email, template, message, subject))

    def registration_outcome(self, entity: Entity, visit: Visit, host: Optional[Entity] = None):
        pending = visit.status != VisitStatus.APPROVED
        day = _format_date(visit.visit_date)
        self._queue(
            entity,
            "registration_pending" if pending else "registration_approved",
            date=day,
        )
        if host is not None:
            self._queue(host, "host_guest_registered", guest=entity.full_name, date=day, pending=pending)
        if self.config.notify_admins_on_registration:
            self._queue_admins(
                "admin_registration",
                guest=entity.full_name,
                entity_type=entity.entity_type,
                date=day,
                outcome="pending capacity" if pending else "approved",
            )

    def visit_status_changed(self, entity: Entity, visit_date: date, new_status: VisitStatus):
        self._queue(entity, f"visit_{new_status.value}", date=_format_date(visit_date))

    def entity_status_changed(self, entity: Entity, old_status: str, new_status: str, quota: bool = False):
        if new_status == EntityStatus.ACTIVE:
            template = "entity_restored"
        else:
            template = f"entity_{EntityStatus(new_status).value}"
        self._queue(entity, template, quota=quota, old_status=old_status)

    def signed_in(self, entity: Entity, visit: Visit):
        self._queue(entity, "signed_in", time=visit.sign_in_time.strftime("%H:%M"))

    def signed_out(self, entity: Entity, visit: Visit):
        self._queue(entity, "signed_out", time=visit.sign_out_time.strftime("%H:%M"))

    def host_capacity_reached(self, host: Entity, day: date, pending: int):
        self._queue(
            host,
            "host_capacity",
            date=_format_date(day),
            limit=self.config.host_daily_limit,
            pending=pending,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def discard(self):
        """Drop queued messages, e.g. when the triggering operation failed."""
        self._outbox.clear()

    def flush(self) -> List[DispatchResult]:
        """Send everything queued so far. Never raises for transport problems."""
        messages, self._outbox = self._outbox, []
        results: List[DispatchResult] = []

        for msg in messages:
            context = {
                "channel": msg.channel,
                "subject": msg.subject,
                "template": msg.template,
                "entity_id": msg.entity_id,
            }
            try:
                result = self.dispatcher.send(msg.recipient, msg.message, context)
            except Exception as e:
                logger.error(f"{msg.channel} dispatch to {msg.recipient} raised: {e}")
                result = DispatchResult(accepted=False, channel=msg.channel, recipient=msg.recipient, error=str(e))

            if result.accepted:
                logger.info(f"Notification '{msg.template}' accepted for {msg.recipient} via {msg.channel}")
            else:
                logger.warning(
                    f"Notification '{msg.template}' rejected for {msg.recipient} via {msg.channel}: {result.error}"
                )
            results.append(result)

        if messages:
            self._record(messages, results)
        return results

    def _record(self, messages: List[OutboundMessage], results: List[DispatchResult]):
        if self.session_factory is None:
            return
        db = self.session_factory()
        try:
            now = self.clock.now()
            for msg, result in zip(messages, results):
                db.add(NotificationLog(
                    entity_id=msg.entity_id,
                    channel=msg.channel,
                    recipient=msg.recipient,
                    template=msg.template,
                    message=msg.message,
                    message_id=result.message_id,
                    status="accepted" if result.accepted else "rejected",
                    error_message=result.error,
                    cost=result.cost,
                    created_at=now,
                ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record {len(messages)} notification log entries: {e}")
        finally:
            db.close()


def record_delivery_status(
    db: Session, message_id: str, status: str, reason: Optional[str] = None
) -> bool:
    """Store an asynchronous delivery report. Observability only."""
    log = db.query(NotificationLog).filter(NotificationLog.message_id == message_id).first()
    if log is None:
        logger.warning(f"Delivery status '{status}' for unknown message {message_id}")
        return False

    log.delivery_status = status.lower()
    if reason:
        log.delivery_reason = reason[:255]
    db.commit()
    logger.info(f"Delivery status for message {message_id}: {log.delivery_status}")
    return True


def cleanup_notification_logs(db: Session, now: datetime, retention_days: int) -> int:
    """Delete log entries older than the retention window."""
    cutoff = now - timedelta(days=retention_days)
    result = db.execute(delete(NotificationLog).where(NotificationLog.created_at < cutoff))
    db.commit()
    deleted = result.rowcount or 0
    if deleted:
        logger.info(f"Notification log retention: purged {deleted} entries older than {retention_days} days")
    return deleted
