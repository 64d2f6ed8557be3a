"""
Deposit and withdrawal notifications.

Every event is persisted as an in-app Notification row; confirmed deposits
and all withdrawal events also go out by email. Callers invoke this service
only after their ledger transaction has committed. Delivery problems are
logged and reported through the return value, never raised into the ledger.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal, managed_session
from models import Notification, NotificationPriority, NotificationType, utcnow
from services.email_service import EmailService
from utils.background_task_runner import run_io_task
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferNotice:
    """Everything a deposit or withdrawal notification can mention"""
    user_id: int
    email: Optional[str]
    amount: Decimal
    token: str
    chain: str
    address: str
    tx_hash: Optional[str] = None
    tx_url: Optional[str] = None
    explorer_name: Optional[str] = None
    deposit_id: Optional[str] = None
    withdrawal_id: Optional[str] = None
    confirmations: Optional[int] = None
    required_confirmations: Optional[int] = None
    fee: Optional[Decimal] = None

    @property
    def amount_text(self) -> str:
        return MonetaryDecimal.plain(self.amount)


class NotificationService:
    """In-app notifications plus transactional email"""

    def __init__(
        self,
        email_service: Optional[EmailService] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.email_service = email_service or EmailService()
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def notify_deposit_pending(self, notice: TransferNotice) -> Optional[int]:
        confirmations = notice.confirmations or 0
        required = notice.required_confirmations or 0
        return await self._record(
            notice,
            NotificationType.DEPOSIT_PENDING,
            NotificationPriority.NORMAL,
            "Deposit Pending",
            f"Your deposit of {notice.amount_text} {notice.token} is being confirmed. "
            f"{confirmations}/{required} confirmations.",
            {
                "deposit_id": notice.deposit_id,
                "tx_url": notice.tx_url,
                "explorer_name": notice.explorer_name,
                "confirmations": confirmations,
                "required_confirmations": required,
            },
        )

    async def notify_deposit_confirmed(self, notice: TransferNotice) -> Optional[int]:
        notification_id = await self._record(
            notice,
            NotificationType.DEPOSIT_CONFIRMED,
            NotificationPriority.HIGH,
            "Deposit Confirmed",
            f"Your deposit of {notice.amount_text} {notice.token} has been confirmed and credited to your account.",
            {"deposit_id": notice.deposit_id, "tx_url": notice.tx_url, "explorer_name": notice.explorer_name},
        )
        await self._email(notification_id, notice, "deposit_confirmed", {
            "amount": notice.amount_text,
            "token": notice.token,
            "chain": notice.chain,
            "address": notice.address,
            "timestamp": utcnow().strftime("%Y-%m-%d %H:%M:%S"),
        })
        return notification_id

    async def notify_withdrawal_request(
        self, notice: TransferNotice, code: str, expires_minutes: int
    ) -> Optional[int]:
        fee_text = MonetaryDecimal.plain(notice.fee or Decimal("0"))
        notification_id = await self._record(
            notice,
            NotificationType.WITHDRAWAL_REQUEST,
            NotificationPriority.HIGH,
            "Withdrawal Request",
            f"You've created a withdrawal request for {notice.amount_text} {notice.token}. "
            f"Please verify using the code sent to your email.",
            {"withdrawal_id": notice.withdrawal_id, "fee": fee_text},
        )
        await self._email(notification_id, notice, "withdrawal_request", {
            "amount": notice.amount_text,
            "token": notice.token,
            "chain": notice.chain,
            "address": notice.address,
            "fee": fee_text,
            "code": code,
            "expires_minutes": expires_minutes,
        })
        return notification_id

    async def notify_withdrawal_success(self, notice: TransferNotice) -> Optional[int]:
        notification_id = await self._record(
            notice,
            NotificationType.WITHDRAWAL_SUCCESS,
            NotificationPriority.HIGH,
            "Withdrawal Success",
            f"Your withdrawal of {notice.amount_text} {notice.token} has been processed successfully.",
            {"withdrawal_id": notice.withdrawal_id, "tx_url": notice.tx_url, "explorer_name": notice.explorer_name},
        )
        await self._email(notification_id, notice, "withdrawal_success", {
            "amount": notice.amount_text,
            "token": notice.token,
            "chain": notice.chain,
            "address": notice.address,
            "tx_hash": notice.tx_hash,
            "tx_url": notice.tx_url,
        })
        return notification_id

    async def notify_withdrawal_failed(self, notice: TransferNotice, reason: str) -> Optional[int]:
        notification_id = await self._record(
            notice,
            NotificationType.WITHDRAWAL_FAILED,
            NotificationPriority.URGENT,
            "Withdrawal Failed",
            f"Your withdrawal of {notice.amount_text} {notice.token} could not be processed. Reason: {reason}",
            {"withdrawal_id": notice.withdrawal_id, "failure_reason": reason},
        )
        await self._email(notification_id, notice, "withdrawal_failed", {
            "amount": notice.amount_text,
            "token": notice.token,
            "chain": notice.chain,
            "address": notice.address,
            "reason": reason,
        })
        return notification_id

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _record(
        self,
        notice: TransferNotice,
        notification_type: NotificationType,
        priority: NotificationPriority,
        title: str,
        message: str,
        extra_data: Dict[str, Any],
    ) -> Optional[int]:
        try:
            notification_id = await run_io_task(
                self._insert, notice, notification_type, priority, title, message, extra_data
            )
        except SQLAlchemyError as e:
            logger.error(f"❌ Failed to store {notification_type.value} notification for user {notice.user_id}: {e}")
            return None
        logger.info(f"🔔 {title} notification created for user {notice.user_id}")
        return notification_id

    def _insert(
        self,
        notice: TransferNotice,
        notification_type: NotificationType,
        priority: NotificationPriority,
        title: str,
        message: str,
        extra_data: Dict[str, Any],
    ) -> int:
        with managed_session(self.session_factory) as session:
            notification = Notification(
                user_id=notice.user_id,
                notification_type=notification_type.value,
                category="TRANSACTION",
                title=title,
                message=message,
                token=notice.token,
                amount=notice.amount_text,
                chain=notice.chain,
                address=notice.address,
                tx_hash=notice.tx_hash,
                priority=priority.value,
                extra_data={k: v for k, v in extra_data.items() if v is not None},
            )
            session.add(notification)
            session.flush()
            return notification.id

    async def _email(
        self, notification_id: Optional[int], notice: TransferNotice, template_id: str, context: Dict[str, Any]
    ) -> bool:
        if not notice.email:
            logger.warning(f"⚠️ No email address for user {notice.user_id}, skipping {template_id} email")
            return False

        logger.info(f"📧 Sending {template_id} email to {notice.email}...")
        sent = await self.email_service.send_template_email(notice.email, template_id, context)
        if not sent:
            return False

        if notification_id is not None:
            try:
                await run_io_task(self._mark_email_sent, notification_id)
            except SQLAlchemyError as e:
                logger.error(f"❌ Failed to flag notification {notification_id} as emailed: {e}")
        return True

    def _mark_email_sent(self, notification_id: int) -> None:
        with managed_session(self.session_factory) as session:
            session.execute(
                update(Notification).where(Notification.id == notification_id).values(email_sent=True)
            )

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    def list_notifications(self, user_id: int, unread_only: bool = False, limit: int = 50) -> List[Dict[str, Any]]:
        with managed_session(self.session_factory) as session:
            query = select(Notification).where(Notification.user_id == user_id)
            if unread_only:
                query = query.where(Notification.is_read.is_(False))
            rows = session.execute(
                query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
            ).scalars().all()
            return [
                {
                    "id": n.id,
                    "type": n.notification_type,
                    "title": n.title,
                    "message": n.message,
                    "priority": n.priority,
                    "is_read": n.is_read,
                    "created_at": n.created_at,
                }
                for n in rows
            ]

    def get_unread_count(self, user_id: int) -> int:
        with managed_session(self.session_factory) as session:
            return session.execute(
                select(func.count(Notification.id)).where(
                    Notification.user_id == user_id, Notification.is_read.is_(False)
                )
            ).scalar_one()

    def mark_as_read(self, user_id: int, notification_ids: Optional[Iterable[int]] = None) -> int:
        """Mark the given notifications (or all of the user's) read. Returns rows changed."""
        with managed_session(self.session_factory) as session:
            statement = update(Notification).where(
                Notification.user_id == user_id, Notification.is_read.is_(False)
            )
            if notification_ids is not None:
                statement = statement.where(Notification.id.in_(list(notification_ids)))
            result = session.execute(
                statement.values(is_read=True, read_at=utcnow()).execution_options(synchronize_session=False)
            )
            return result.rowcount

    def delete_old_notifications(self, days: Optional[int] = None) -> int:
        """Delete read notifications older than days"""
        days = days or Config.NOTIFICATION_RETENTION_DAYS
        cutoff = utcnow() - timedelta(days=days)
        with managed_session(self.session_factory) as session:
            result = session.execute(
                delete(Notification)
                .where(Notification.is_read.is_(True), Notification.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            deleted = result.rowcount
        logger.info(f"🧹 Deleted {deleted} old notification(s)")
        return deleted
