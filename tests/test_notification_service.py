"""
Notification tests: in-app records, email hand-off and inbox maintenance.
Email delivery is mocked at the EmailService boundary.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, Mock, patch

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from database import managed_session
from models import Notification, NotificationPriority, NotificationType, utcnow
from services.email_service import EmailService
from services.notification_service import NotificationService, TransferNotice


@pytest.fixture
def email_service():
    service = Mock(spec=EmailService)
    service.send_template_email = AsyncMock(return_value=True)
    return service


@pytest.fixture
def notification_service(email_service, session_factory):
    return NotificationService(email_service=email_service, session_factory=session_factory)


@pytest.fixture
def notice(user_id):
    return TransferNotice(
        user_id=user_id,
        email="alice@example.com",
        amount=Decimal("25.500000"),
        token="USDT",
        chain="ETH",
        address="0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed",
        tx_hash="0x" + "aa" * 32,
        tx_url="https://etherscan.io/tx/0x" + "aa" * 32,
        explorer_name="Etherscan",
        deposit_id="DEP20240501000001",
        withdrawal_id="WD20240501000001",
        confirmations=3,
        required_confirmations=12,
        fee=Decimal("5"),
    )


def load(session_factory, notification_id):
    with managed_session(session_factory) as session:
        return session.get(Notification, notification_id)


class TestDepositNotifications:
    """Pending is in-app only; confirmed also sends email"""

    @pytest.mark.asyncio
    async def test_pending_is_in_app_only(self, notification_service, email_service, session_factory, notice):
        notification_id = await notification_service.notify_deposit_pending(notice)

        row = load(session_factory, notification_id)
        assert row.notification_type == NotificationType.DEPOSIT_PENDING.value
        assert row.priority == NotificationPriority.NORMAL.value
        assert row.amount == "25.5"
        assert "3/12 confirmations" in row.message
        assert row.extra_data["deposit_id"] == "DEP20240501000001"
        email_service.send_template_email.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_confirmed_sends_email(self, notification_service, email_service, session_factory, notice):
        notification_id = await notification_service.notify_deposit_confirmed(notice)

        row = load(session_factory, notification_id)
        assert row.priority == NotificationPriority.HIGH.value
        assert row.email_sent is True

        to_email, template_id, context = email_service.send_template_email.await_args.args
        assert to_email == "alice@example.com"
        assert template_id == "deposit_confirmed"
        assert context["amount"] == "25.5"
        assert context["token"] == "USDT"

    @pytest.mark.asyncio
    async def test_email_failure_keeps_notification(self, notification_service, email_service,
                                                    session_factory, notice):
        email_service.send_template_email.return_value = False

        notification_id = await notification_service.notify_deposit_confirmed(notice)

        row = load(session_factory, notification_id)
        assert row is not None
        assert row.email_sent is False

    @pytest.mark.asyncio
    async def test_missing_email_skips_send(self, notification_service, email_service, notice):
        no_email = TransferNotice(**{**notice.__dict__, "email": None})

        notification_id = await notification_service.notify_deposit_confirmed(no_email)

        assert notification_id is not None
        email_service.send_template_email.assert_not_awaited()


class TestWithdrawalNotifications:
    """Withdrawal events carry the code, the tx link or the failure reason"""

    @pytest.mark.asyncio
    async def test_request_email_carries_code(self, notification_service, email_service, notice):
        await notification_service.notify_withdrawal_request(notice, "123456", 5)

        _, template_id, context = email_service.send_template_email.await_args.args
        assert template_id == "withdrawal_request"
        assert context["code"] == "123456"
        assert context["expires_minutes"] == 5
        assert context["fee"] == "5"

    @pytest.mark.asyncio
    async def test_success(self, notification_service, email_service, session_factory, notice):
        notification_id = await notification_service.notify_withdrawal_success(notice)

        assert load(session_factory, notification_id).notification_type == NotificationType.WITHDRAWAL_SUCCESS.value
        context = email_service.send_template_email.await_args.args[2]
        assert context["tx_url"] == notice.tx_url

    @pytest.mark.asyncio
    async def test_failed_is_urgent(self, notification_service, email_service, session_factory, notice):
        notification_id = await notification_service.notify_withdrawal_failed(notice, "Transaction reverted")

        row = load(session_factory, notification_id)
        assert row.priority == NotificationPriority.URGENT.value
        assert "Reason: Transaction reverted" in row.message
        assert email_service.send_template_email.await_args.args[2]["reason"] == "Transaction reverted"

    @pytest.mark.asyncio
    async def test_storage_failure_is_not_raised(self, notification_service, email_service, notice):
        error = OperationalError("INSERT", {}, Exception("disk I/O error"))
        with patch.object(notification_service, "_insert", side_effect=error):
            notification_id = await notification_service.notify_withdrawal_success(notice)

        assert notification_id is None
        email_service.send_template_email.assert_awaited_once()


class TestInbox:
    """Listing, read state and retention"""

    @pytest.mark.asyncio
    async def test_unread_and_mark_read(self, notification_service, notice, user_id):
        first = await notification_service.notify_deposit_pending(notice)
        await notification_service.notify_deposit_confirmed(notice)

        assert notification_service.get_unread_count(user_id) == 2
        assert notification_service.mark_as_read(user_id, [first]) == 1
        assert notification_service.get_unread_count(user_id) == 1

        unread = notification_service.list_notifications(user_id, unread_only=True)
        assert [n["type"] for n in unread] == [NotificationType.DEPOSIT_CONFIRMED.value]

        assert notification_service.mark_as_read(user_id) == 1
        assert notification_service.get_unread_count(user_id) == 0

    @pytest.mark.asyncio
    async def test_other_users_notifications_untouched(self, notification_service, notice, user_id, other_user_id):
        await notification_service.notify_deposit_pending(notice)

        assert notification_service.mark_as_read(other_user_id) == 0
        assert notification_service.get_unread_count(user_id) == 1

    @pytest.mark.asyncio
    async def test_delete_old_read_notifications(self, notification_service, session_factory, notice, user_id):
        old_read = await notification_service.notify_deposit_pending(notice)
        old_unread = await notification_service.notify_deposit_pending(notice)
        recent_read = await notification_service.notify_deposit_pending(notice)
        notification_service.mark_as_read(user_id, [old_read, recent_read])

        with managed_session(session_factory) as session:
            session.execute(
                update(Notification)
                .where(Notification.id.in_([old_read, old_unread]))
                .values(created_at=utcnow() - timedelta(days=45))
            )

        assert notification_service.delete_old_notifications(days=30) == 1

        with managed_session(session_factory) as session:
            remaining = set(session.execute(select(Notification.id)).scalars().all())
        assert remaining == {old_unread, recent_read}
