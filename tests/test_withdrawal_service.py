"""
Withdrawal workflow tests

Request -> verify -> broadcast -> confirm, plus cancel and fail paths. The
verification code is read from the notification call, the same way the user
would receive it.
"""

import asyncio
import re
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine, event, select

from conftest import EXTERNAL_ETH_ADDRESS
from database import managed_session
from models import Base, LedgerTransaction, Withdrawal, WithdrawalStatus
from utils.ledger_exceptions import (
    BelowMinimum, ConfigurationError, InsufficientBalance, InvalidAddress, InvalidAmount,
    InvalidCode, InvalidState, ValidationError, WithdrawalNotFound,
)

TX_HASH = "0x" + "cd" * 32


@pytest.fixture
def funded_user(ledger, user_id):
    ledger.credit(user_id, "ETH", "ETH", Decimal("1"))
    return user_id


def issued_code(notifications) -> str:
    return notifications.notify_withdrawal_request.await_args.args[1]


def wrong_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


async def request(withdrawal_service, user_id, amount="0.5", to_address=EXTERNAL_ETH_ADDRESS):
    return await withdrawal_service.request_withdrawal(user_id, "ETH", "ETH", amount, to_address)


async def verified(withdrawal_service, notifications, user_id):
    view = await request(withdrawal_service, user_id)
    return await withdrawal_service.verify_withdrawal(view.withdrawal_id, issued_code(notifications), user_id)


class TestFeeCalculation:
    """Flat per-token fee, net never negative"""

    def test_flat_fee(self, withdrawal_service):
        fees = withdrawal_service.calculate_fee("ETH", "ETH", "0.5")
        assert fees["fee"] == Decimal("0.005")
        assert fees["net_amount"] == Decimal("0.495")

    def test_net_floors_at_zero(self, withdrawal_service):
        fees = withdrawal_service.calculate_fee("BSC", "BNB", "0.0001")
        assert fees["net_amount"] == Decimal("0")

    def test_unknown_token(self, withdrawal_service):
        with pytest.raises(ConfigurationError):
            withdrawal_service.calculate_fee("BTC", "USDT", "1")


class TestWithdrawalRequest:
    """Validation order and fund locking on request"""

    @pytest.mark.asyncio
    async def test_request_locks_funds(self, withdrawal_service, ledger, notifications, funded_user):
        view = await request(withdrawal_service, funded_user)

        assert re.match(r"^WD\d{8}\d{6}$", view.withdrawal_id), "withdrawal id format"
        assert view.status == WithdrawalStatus.PENDING.value
        assert view.amount == Decimal("0.5")
        assert view.fee == Decimal("0.005")
        assert view.net_amount == Decimal("0.495")
        assert view.required_confirmations == 12
        assert view.email_verified is False

        balance = ledger.get_balance(funded_user, "ETH", "ETH")
        assert balance.available == Decimal("0.5")
        assert balance.locked == Decimal("0.5")
        assert balance.total == Decimal("1")

        notifications.notify_withdrawal_request.assert_awaited_once()
        notice, code, ttl = notifications.notify_withdrawal_request.await_args.args
        assert notice.withdrawal_id == view.withdrawal_id
        assert notice.email == "alice@example.com"
        assert re.match(r"^\d{6}$", code)
        assert ttl == 5

    @pytest.mark.asyncio
    async def test_destination_normalized(self, withdrawal_service, funded_user):
        view = await request(withdrawal_service, funded_user, to_address="0x" + "AB" * 20)
        assert view.to_address == EXTERNAL_ETH_ADDRESS

    @pytest.mark.asyncio
    async def test_below_minimum(self, withdrawal_service, ledger, funded_user):
        with pytest.raises(BelowMinimum) as exc_info:
            await request(withdrawal_service, funded_user, amount="0.001")

        assert str(exc_info.value) == "Minimum withdrawal is 0.01 ETH"
        assert ledger.get_balance(funded_user, "ETH", "ETH").locked == Decimal("0")

    @pytest.mark.asyncio
    async def test_invalid_address(self, withdrawal_service, funded_user):
        with pytest.raises(InvalidAddress) as exc_info:
            await request(withdrawal_service, funded_user, to_address="TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t")
        assert str(exc_info.value) == "Invalid EVM address format"

    @pytest.mark.asyncio
    async def test_invalid_amount(self, withdrawal_service, funded_user):
        with pytest.raises(InvalidAmount):
            await request(withdrawal_service, funded_user, amount="-1")

    @pytest.mark.asyncio
    async def test_unknown_chain(self, withdrawal_service, funded_user):
        with pytest.raises(ConfigurationError):
            await withdrawal_service.request_withdrawal(funded_user, "ETH", "FOO", "1", EXTERNAL_ETH_ADDRESS)

    @pytest.mark.asyncio
    async def test_insufficient_balance_writes_nothing(self, withdrawal_service, notifications,
                                                       session_factory, funded_user):
        with pytest.raises(InsufficientBalance):
            await request(withdrawal_service, funded_user, amount="2")

        with managed_session(session_factory) as session:
            assert session.execute(select(Withdrawal)).scalars().all() == []
        notifications.notify_withdrawal_request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_user(self, withdrawal_service):
        with pytest.raises(ValidationError):
            await request(withdrawal_service, 999)


class TestConcurrentRequests:
    """Two requests racing for the same funds on separate connections"""

    @pytest.fixture
    def engine(self, tmp_path):
        """File-backed database so each worker thread gets its own connection"""
        engine = create_engine(
            f"sqlite:///{tmp_path / 'ledger.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def disable_implicit_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def begin_immediate(conn):
            # Writers serialize the way row locks do on PostgreSQL
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        Base.metadata.create_all(engine)
        yield engine
        Base.metadata.drop_all(engine)
        engine.dispose()

    @pytest.mark.asyncio
    async def test_only_one_request_locks_the_funds(self, withdrawal_service, ledger, session_factory, user_id):
        ledger.credit(user_id, "USDT", "ETH", Decimal("100"))

        results = await asyncio.gather(
            withdrawal_service.request_withdrawal(user_id, "USDT", "ETH", "60", EXTERNAL_ETH_ADDRESS),
            withdrawal_service.request_withdrawal(user_id, "USDT", "ETH", "60", EXTERNAL_ETH_ADDRESS),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1, f"exactly one request must fail, got {results}"
        assert isinstance(failures[0], InsufficientBalance)

        balance = ledger.get_balance(user_id, "USDT", "ETH")
        assert balance.available == Decimal("40")
        assert balance.locked == Decimal("60")
        assert balance.total == Decimal("100")
        with managed_session(session_factory) as session:
            assert len(session.execute(select(Withdrawal)).scalars().all()) == 1


class TestVerification:
    """PENDING -> PROCESSING only with the right code from the right user"""

    @pytest.mark.asyncio
    async def test_correct_code(self, withdrawal_service, notifications, funded_user):
        view = await verified(withdrawal_service, notifications, funded_user)

        assert view.status == WithdrawalStatus.PROCESSING.value
        assert view.email_verified is True
        assert view.verified_at is not None

    @pytest.mark.asyncio
    async def test_wrong_code_keeps_pending(self, withdrawal_service, notifications, funded_user):
        view = await request(withdrawal_service, funded_user)

        with pytest.raises(InvalidCode):
            await withdrawal_service.verify_withdrawal(
                view.withdrawal_id, wrong_code(issued_code(notifications)), funded_user
            )

        status = await withdrawal_service.get_withdrawal_status(view.withdrawal_id, funded_user)
        assert status["status"] == WithdrawalStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_second_verification_rejected(self, withdrawal_service, notifications, funded_user):
        view = await request(withdrawal_service, funded_user)
        code = issued_code(notifications)
        await withdrawal_service.verify_withdrawal(view.withdrawal_id, code, funded_user)

        with pytest.raises(InvalidState) as exc_info:
            await withdrawal_service.verify_withdrawal(view.withdrawal_id, code, funded_user)
        assert str(exc_info.value) == "Withdrawal is already processing"

    @pytest.mark.asyncio
    async def test_other_user_sees_not_found(self, withdrawal_service, notifications, funded_user, other_user_id):
        view = await request(withdrawal_service, funded_user)

        with pytest.raises(WithdrawalNotFound):
            await withdrawal_service.verify_withdrawal(view.withdrawal_id, issued_code(notifications), other_user_id)

    @pytest.mark.asyncio
    async def test_resend_replaces_code(self, withdrawal_service, notifications, funded_user):
        view = await request(withdrawal_service, funded_user)
        first_code = issued_code(notifications)

        await withdrawal_service.resend_verification_code(view.withdrawal_id, funded_user)
        second_code = issued_code(notifications)
        assert notifications.notify_withdrawal_request.await_count == 2

        if first_code != second_code:
            with pytest.raises(InvalidCode):
                await withdrawal_service.verify_withdrawal(view.withdrawal_id, first_code, funded_user)

        verified_view = await withdrawal_service.verify_withdrawal(view.withdrawal_id, second_code, funded_user)
        assert verified_view.status == WithdrawalStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_resend_after_verification_rejected(self, withdrawal_service, notifications, funded_user):
        view = await verified(withdrawal_service, notifications, funded_user)

        with pytest.raises(InvalidState):
            await withdrawal_service.resend_verification_code(view.withdrawal_id, funded_user)


class TestSettlement:
    """Broadcast and confirmation release the locked funds exactly once"""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, withdrawal_service, ledger, notifications, session_factory, funded_user):
        view = await verified(withdrawal_service, notifications, funded_user)

        view = await withdrawal_service.mark_broadcast(view.withdrawal_id, TX_HASH, "0x" + "01" * 20)
        assert view.status == WithdrawalStatus.AWAITING_CONFIRMATION.value
        assert view.tx_url == f"https://etherscan.io/tx/{TX_HASH}"

        view = await withdrawal_service.complete_withdrawal(view.withdrawal_id, 5)
        assert view.status == WithdrawalStatus.AWAITING_CONFIRMATION.value
        assert view.confirmations == 5
        assert ledger.get_balance(funded_user, "ETH", "ETH").locked == Decimal("0.5")

        view = await withdrawal_service.complete_withdrawal(view.withdrawal_id, 12)
        assert view.status == WithdrawalStatus.COMPLETED.value
        assert view.completed_at is not None

        balance = ledger.get_balance(funded_user, "ETH", "ETH")
        assert balance.total == Decimal("0.5")
        assert balance.available == Decimal("0.5")
        assert balance.locked == Decimal("0")
        notifications.notify_withdrawal_success.assert_awaited_once()

        again = await withdrawal_service.complete_withdrawal(view.withdrawal_id, 20)
        assert again.status == WithdrawalStatus.COMPLETED.value
        assert ledger.get_balance(funded_user, "ETH", "ETH").total == Decimal("0.5")
        notifications.notify_withdrawal_success.assert_awaited_once()

        with managed_session(session_factory) as session:
            history = session.execute(select(LedgerTransaction)).scalars().all()
            assert len(history) == 1
            assert history[0].withdrawal_id == view.withdrawal_id

    @pytest.mark.asyncio
    async def test_broadcast_is_idempotent_for_same_hash(self, withdrawal_service, notifications, funded_user):
        view = await verified(withdrawal_service, notifications, funded_user)
        await withdrawal_service.mark_broadcast(view.withdrawal_id, TX_HASH)

        again = await withdrawal_service.mark_broadcast(view.withdrawal_id, TX_HASH)
        assert again.status == WithdrawalStatus.AWAITING_CONFIRMATION.value

        with pytest.raises(InvalidState):
            await withdrawal_service.mark_broadcast(view.withdrawal_id, "0x" + "ef" * 32)

    @pytest.mark.asyncio
    async def test_broadcast_requires_verification(self, withdrawal_service, funded_user):
        view = await request(withdrawal_service, funded_user)

        with pytest.raises(InvalidState):
            await withdrawal_service.mark_broadcast(view.withdrawal_id, TX_HASH)

    @pytest.mark.asyncio
    async def test_complete_from_pending_rejected(self, withdrawal_service, funded_user):
        view = await request(withdrawal_service, funded_user)

        with pytest.raises(InvalidState):
            await withdrawal_service.complete_withdrawal(view.withdrawal_id, 50)

    @pytest.mark.asyncio
    async def test_refresh_confirmations_from_tip(self, withdrawal_service, ledger, notifications, funded_user):
        view = await verified(withdrawal_service, notifications, funded_user)
        await withdrawal_service.mark_broadcast(view.withdrawal_id, TX_HASH)
        lookup = AsyncMock(side_effect=[None, 100])

        assert await withdrawal_service.refresh_confirmations("ETH", 105, lookup) == 0
        assert await withdrawal_service.refresh_confirmations("ETH", 112, lookup) == 1

        lookup.assert_awaited_with(TX_HASH)
        assert ledger.get_balance(funded_user, "ETH", "ETH").total == Decimal("0.5")


class TestCancelAndFail:
    """Locked funds return to available on every unhappy path"""

    @pytest.mark.asyncio
    async def test_cancel_pending(self, withdrawal_service, ledger, funded_user):
        view = await request(withdrawal_service, funded_user)

        view = await withdrawal_service.cancel_withdrawal(view.withdrawal_id, funded_user)

        assert view.status == WithdrawalStatus.CANCELLED.value
        assert view.failure_reason == "Cancelled by user"
        balance = ledger.get_balance(funded_user, "ETH", "ETH")
        assert balance.available == Decimal("1")
        assert balance.locked == Decimal("0")

    @pytest.mark.asyncio
    async def test_cancel_after_broadcast_rejected(self, withdrawal_service, ledger, notifications, funded_user):
        view = await verified(withdrawal_service, notifications, funded_user)
        await withdrawal_service.mark_broadcast(view.withdrawal_id, TX_HASH)

        with pytest.raises(InvalidState):
            await withdrawal_service.cancel_withdrawal(view.withdrawal_id, funded_user)
        assert ledger.get_balance(funded_user, "ETH", "ETH").locked == Decimal("0.5")

    @pytest.mark.asyncio
    async def test_cancel_by_other_user(self, withdrawal_service, funded_user, other_user_id):
        view = await request(withdrawal_service, funded_user)

        with pytest.raises(WithdrawalNotFound):
            await withdrawal_service.cancel_withdrawal(view.withdrawal_id, other_user_id)

    @pytest.mark.asyncio
    async def test_fail_after_broadcast(self, withdrawal_service, ledger, notifications, funded_user):
        view = await verified(withdrawal_service, notifications, funded_user)
        await withdrawal_service.mark_broadcast(view.withdrawal_id, TX_HASH)

        view = await withdrawal_service.fail_withdrawal(view.withdrawal_id, "Transaction reverted")

        assert view.status == WithdrawalStatus.FAILED.value
        assert view.failure_reason == "Transaction reverted"
        assert ledger.get_balance(funded_user, "ETH", "ETH").available == Decimal("1")
        notifications.notify_withdrawal_failed.assert_awaited_once()
        assert notifications.notify_withdrawal_failed.await_args.args[1] == "Transaction reverted"

    @pytest.mark.asyncio
    async def test_fail_terminal_rejected(self, withdrawal_service, ledger, funded_user):
        view = await request(withdrawal_service, funded_user)
        await withdrawal_service.cancel_withdrawal(view.withdrawal_id, funded_user)

        with pytest.raises(InvalidState):
            await withdrawal_service.fail_withdrawal(view.withdrawal_id, "too late")
        assert ledger.get_balance(funded_user, "ETH", "ETH").available == Decimal("1")

    @pytest.mark.asyncio
    async def test_fail_missing_withdrawal(self, withdrawal_service):
        with pytest.raises(WithdrawalNotFound):
            await withdrawal_service.fail_withdrawal("WD20240101000001", "missing")


class TestWithdrawalReads:
    """Status and history include advisory USD values"""

    @pytest.mark.asyncio
    async def test_status_with_usd_value(self, withdrawal_service, funded_user, other_user_id):
        view = await request(withdrawal_service, funded_user)

        status = await withdrawal_service.get_withdrawal_status(view.withdrawal_id, funded_user)
        assert status["current_usd_value"] == Decimal("990.00000000")

        with pytest.raises(WithdrawalNotFound):
            await withdrawal_service.get_withdrawal_status(view.withdrawal_id, other_user_id)

    @pytest.mark.asyncio
    async def test_list_user_withdrawals(self, withdrawal_service, funded_user):
        first = await request(withdrawal_service, funded_user, amount="0.1")
        await request(withdrawal_service, funded_user, amount="0.2")
        await withdrawal_service.cancel_withdrawal(first.withdrawal_id, funded_user)

        listing = await withdrawal_service.list_user_withdrawals(funded_user)
        assert listing["total"] == 2
        assert all(entry["current_price"] == 2000.0 for entry in listing["withdrawals"])

        cancelled = await withdrawal_service.list_user_withdrawals(funded_user, status="cancelled")
        assert cancelled["total"] == 1
        assert cancelled["withdrawals"][0]["withdrawal_id"] == first.withdrawal_id
