"""
Withdrawal Pipeline
===================

    PENDING ──verify──> PROCESSING ──broadcast──> AWAITING_CONFIRMATION ──> COMPLETED
       │                    │                              │
       ├──cancel────────────┴──> CANCELLED                 │
       └──fail (any non-terminal state) ──> FAILED <───────┘

Funds are locked when the request is accepted and leave the ledger exactly
once: released on completion, or returned to available on cancel or fail.
Each transition is one transaction that re-reads the row under lock, so a
transition can only fire from the state it was written for.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import SessionLocal, managed_session
from models import (
    LedgerTransaction, LedgerTransactionType, User, Withdrawal, WithdrawalStatus, utcnow,
)
from services.balance_ledger import BalanceLedger
from services.chain_registry import ChainFamily, ChainRegistry, TokenConfig, get_chain_registry
from services.notification_service import NotificationService, TransferNotice
from services.price_oracle import PriceOracle
from services.verification_code_service import IssuedCode, VerificationCodeService
from utils.address_validation import describe_address_format, is_valid_address, normalize_address
from utils.background_task_runner import run_io_task
from utils.decimal_precision import MonetaryDecimal
from utils.id_generator import generate_withdrawal_id
from utils.ledger_exceptions import (
    BelowMinimum, InvalidAddress, InvalidState, LedgerError, ValidationError, WithdrawalNotFound,
)
from utils.optimistic_locking import OptimisticLockingError, with_optimistic_locking

logger = logging.getLogger(__name__)

TxHeightLookup = Callable[[str], Awaitable[Optional[int]]]


@dataclass(frozen=True)
class WithdrawalView:
    """Detached read model of a Withdrawal row"""
    withdrawal_id: str
    user_id: int
    currency: str
    chain: str
    amount: Decimal
    fee: Decimal
    net_amount: Decimal
    to_address: str
    status: str
    email_verified: bool
    tx_hash: Optional[str]
    tx_url: Optional[str]
    confirmations: int
    required_confirmations: int
    failure_reason: Optional[str]
    submitted_at: datetime
    verified_at: Optional[datetime]
    broadcast_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    failed_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: Withdrawal) -> "WithdrawalView":
        return cls(
            withdrawal_id=row.withdrawal_id,
            user_id=row.user_id,
            currency=row.currency,
            chain=row.chain,
            amount=row.amount,
            fee=row.fee,
            net_amount=row.net_amount,
            to_address=row.to_address,
            status=row.status,
            email_verified=row.email_verified,
            tx_hash=row.tx_hash,
            tx_url=row.tx_url,
            confirmations=row.confirmations,
            required_confirmations=row.required_confirmations,
            failure_reason=row.failure_reason,
            submitted_at=row.submitted_at,
            verified_at=row.verified_at,
            broadcast_at=row.broadcast_at,
            completed_at=row.completed_at,
            cancelled_at=row.cancelled_at,
            failed_at=row.failed_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "withdrawal_id": self.withdrawal_id,
            "status": self.status,
            "currency": self.currency,
            "chain": self.chain,
            "amount": self.amount,
            "fee": self.fee,
            "net_amount": self.net_amount,
            "to_address": self.to_address,
            "tx_hash": self.tx_hash,
            "tx_url": self.tx_url,
            "confirmations": self.confirmations,
            "required_confirmations": self.required_confirmations,
            "failure_reason": self.failure_reason,
            "submitted_at": self.submitted_at,
            "completed_at": self.completed_at,
            "cancelled_at": self.cancelled_at,
            "failed_at": self.failed_at,
        }


class WithdrawalService:
    """Withdrawal requests, email verification and settlement"""

    def __init__(
        self,
        registry: Optional[ChainRegistry] = None,
        ledger: Optional[BalanceLedger] = None,
        notifications: Optional[NotificationService] = None,
        codes: Optional[VerificationCodeService] = None,
        price_oracle: Optional[PriceOracle] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.registry = registry or get_chain_registry()
        self.session_factory = session_factory
        self.price_oracle = price_oracle or PriceOracle()
        self.ledger = ledger or BalanceLedger(price_oracle=self.price_oracle, session_factory=session_factory)
        self.notifications = notifications or NotificationService(session_factory=session_factory)
        self.codes = codes or VerificationCodeService()

    # ------------------------------------------------------------------
    # Fees
    # ------------------------------------------------------------------

    def calculate_fee(self, chain: str, currency: str, amount) -> Dict[str, Decimal]:
        """Flat per-token fee; the net amount never goes below zero"""
        token = self.registry.get_token(chain, currency)
        value = MonetaryDecimal.to_positive_amount(amount)
        return self._fee_for(token, value)

    @staticmethod
    def _fee_for(token: TokenConfig, amount: Decimal) -> Dict[str, Decimal]:
        fee = token.withdrawal_fee
        return {"fee": fee, "net_amount": max(Decimal("0"), amount - fee)}

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    async def request_withdrawal(
        self,
        user_id: int,
        currency: str,
        chain: str,
        amount,
        to_address: str,
        memo: Optional[str] = None,
        note: Optional[str] = None,
    ) -> WithdrawalView:
        """
        Validate, lock the funds and create a PENDING withdrawal with a fresh
        verification code. The code is delivered by email and notification.
        """
        chain_config = self.registry.get_chain(chain)
        token = self.registry.get_token(chain_config.chain_id, currency)
        value = MonetaryDecimal.to_positive_amount(amount)

        if value < token.min_withdrawal:
            raise BelowMinimum(f"Minimum withdrawal is {MonetaryDecimal.plain(token.min_withdrawal)} {token.symbol}")

        if not is_valid_address(chain_config.family, to_address):
            raise InvalidAddress(describe_address_format(chain_config.family))

        fees = self._fee_for(token, value)
        destination = normalize_address(chain_config.family, to_address)

        view, issued, email = await run_io_task(
            self._create_request,
            user_id, token.symbol, chain_config.chain_id, value, fees["fee"], fees["net_amount"],
            destination, memo, note,
        )

        logger.info(
            f"📤 Withdrawal {view.withdrawal_id} requested: {MonetaryDecimal.plain(value)} {view.currency} "
            f"on {view.chain} to {view.to_address} by user {user_id}"
        )
        await self.notifications.notify_withdrawal_request(
            self._notice(view, email), issued.code, issued.ttl_minutes
        )
        return view

    @with_optimistic_locking(max_retries=3)
    def _create_request(
        self,
        user_id: int,
        currency: str,
        chain: str,
        amount: Decimal,
        fee: Decimal,
        net_amount: Decimal,
        to_address: str,
        memo: Optional[str],
        note: Optional[str],
    ) -> Tuple[WithdrawalView, IssuedCode, Optional[str]]:
        chain_config = self.registry.get_chain(chain)
        with managed_session(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                raise ValidationError(f"User {user_id} not found")

            self.ledger.lock(user_id, currency, chain, amount, session=session)

            withdrawal = Withdrawal(
                withdrawal_id=generate_withdrawal_id(session),
                user_id=user_id,
                currency=currency,
                chain=chain,
                amount=amount,
                fee=fee,
                net_amount=net_amount,
                to_address=to_address,
                memo=memo,
                note=note,
                status=WithdrawalStatus.PENDING.value,
                email_verified=False,
                confirmations=0,
                required_confirmations=chain_config.confirmations,
                submitted_at=utcnow(),
            )
            session.add(withdrawal)
            session.flush()

            issued = self.codes.issue_code(session, user_id, withdrawal.withdrawal_id)
            return WithdrawalView.from_row(withdrawal), issued, user.email

    async def resend_verification_code(self, withdrawal_id: str, user_id: int) -> WithdrawalView:
        """Issue a new code for a withdrawal still waiting for verification"""
        view, issued, email = await run_io_task(self._reissue_code, withdrawal_id, user_id)
        await self.notifications.notify_withdrawal_request(
            self._notice(view, email), issued.code, issued.ttl_minutes
        )
        return view

    def _reissue_code(self, withdrawal_id: str, user_id: int) -> Tuple[WithdrawalView, IssuedCode, Optional[str]]:
        with managed_session(self.session_factory) as session:
            withdrawal = self._load_owned(session, withdrawal_id, user_id)
            if withdrawal.status != WithdrawalStatus.PENDING.value:
                raise InvalidState("Withdrawal is no longer pending verification")
            issued = self.codes.issue_code(session, user_id, withdrawal_id)
            email = session.execute(select(User.email).where(User.id == user_id)).scalar_one_or_none()
            return WithdrawalView.from_row(withdrawal), issued, email

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def verify_withdrawal(self, withdrawal_id: str, code: str, user_id: int) -> WithdrawalView:
        """PENDING -> PROCESSING after consuming the withdrawal's verification code"""
        return await run_io_task(self._verify, withdrawal_id, code, user_id)

    def _verify(self, withdrawal_id: str, code: str, user_id: int) -> WithdrawalView:
        with managed_session(self.session_factory) as session:
            withdrawal = self._load_owned(session, withdrawal_id, user_id)
            if withdrawal.status != WithdrawalStatus.PENDING.value:
                raise InvalidState(f"Withdrawal is already {withdrawal.status.lower()}")

            self.codes.consume_code(session, user_id, withdrawal_id, code)

            withdrawal.status = WithdrawalStatus.PROCESSING.value
            withdrawal.email_verified = True
            withdrawal.verified_at = utcnow()
            session.flush()

            logger.info(f"✅ Withdrawal {withdrawal_id} verified, now PROCESSING")
            return WithdrawalView.from_row(withdrawal)

    async def mark_broadcast(
        self, withdrawal_id: str, tx_hash: str, from_address: Optional[str] = None
    ) -> WithdrawalView:
        """PROCESSING -> AWAITING_CONFIRMATION once the signer returned a transaction hash"""
        if not tx_hash:
            raise ValidationError("Transaction hash is required")
        return await run_io_task(self._mark_broadcast, withdrawal_id, tx_hash, from_address)

    def _mark_broadcast(self, withdrawal_id: str, tx_hash: str, from_address: Optional[str]) -> WithdrawalView:
        with managed_session(self.session_factory) as session:
            withdrawal = self._load_for_update(session, withdrawal_id)

            if withdrawal.status == WithdrawalStatus.AWAITING_CONFIRMATION.value and withdrawal.tx_hash == tx_hash:
                return WithdrawalView.from_row(withdrawal)
            if withdrawal.status != WithdrawalStatus.PROCESSING.value:
                raise InvalidState(f"Cannot process withdrawal with status: {withdrawal.status}")

            withdrawal.status = WithdrawalStatus.AWAITING_CONFIRMATION.value
            withdrawal.tx_hash = tx_hash
            withdrawal.tx_url = self.registry.explorer_tx_url(withdrawal.chain, tx_hash)
            withdrawal.from_address = from_address
            withdrawal.broadcast_at = utcnow()
            session.flush()

            logger.info(f"📡 Withdrawal {withdrawal_id} broadcast as {tx_hash}")
            return WithdrawalView.from_row(withdrawal)

    async def complete_withdrawal(self, withdrawal_id: str, confirmations: int) -> WithdrawalView:
        """
        Record confirmations and, once the chain threshold is met, release the
        locked funds and mark the withdrawal COMPLETED. Completing a completed
        withdrawal is a no-op.
        """
        view, completed_now, email = await run_io_task(self._complete, withdrawal_id, confirmations)
        if completed_now:
            await self.notifications.notify_withdrawal_success(self._notice(view, email))
        return view

    @with_optimistic_locking(max_retries=3)
    def _complete(self, withdrawal_id: str, confirmations: int) -> Tuple[WithdrawalView, bool, Optional[str]]:
        with managed_session(self.session_factory) as session:
            withdrawal = self._load_for_update(session, withdrawal_id)

            if withdrawal.status == WithdrawalStatus.COMPLETED.value:
                return WithdrawalView.from_row(withdrawal), False, None
            if withdrawal.status not in (
                WithdrawalStatus.PROCESSING.value, WithdrawalStatus.AWAITING_CONFIRMATION.value
            ):
                raise InvalidState(f"Cannot complete withdrawal with status: {withdrawal.status}")

            withdrawal.confirmations = max(withdrawal.confirmations, confirmations)
            if withdrawal.confirmations < withdrawal.required_confirmations:
                session.flush()
                logger.debug(
                    f"Withdrawal {withdrawal_id}: {withdrawal.confirmations}/"
                    f"{withdrawal.required_confirmations} confirmations"
                )
                return WithdrawalView.from_row(withdrawal), False, None

            self.ledger.release_locked(
                withdrawal.user_id, withdrawal.currency, withdrawal.chain, withdrawal.amount, session=session
            )

            now = utcnow()
            withdrawal.status = WithdrawalStatus.COMPLETED.value
            withdrawal.completed_at = now
            withdrawal.processing_time = int((now - withdrawal.submitted_at).total_seconds())

            session.add(LedgerTransaction(
                user_id=withdrawal.user_id,
                transaction_type=LedgerTransactionType.WITHDRAWAL.value,
                currency=withdrawal.currency,
                chain=withdrawal.chain,
                amount=withdrawal.amount,
                fee=withdrawal.fee,
                withdrawal_id=withdrawal.withdrawal_id,
                tx_hash=withdrawal.tx_hash,
                tx_url=withdrawal.tx_url,
                from_address=withdrawal.from_address,
                to_address=withdrawal.to_address,
                description=(
                    f"Withdrawal {MonetaryDecimal.plain(withdrawal.net_amount)} {withdrawal.currency} "
                    f"to {withdrawal.to_address}"
                ),
                completed_at=now,
            ))
            session.flush()

            email = session.execute(select(User.email).where(User.id == withdrawal.user_id)).scalar_one_or_none()
            logger.info(f"✅ Withdrawal {withdrawal_id} completed")
            return WithdrawalView.from_row(withdrawal), True, email

    async def cancel_withdrawal(
        self, withdrawal_id: str, user_id: int, reason: Optional[str] = None
    ) -> WithdrawalView:
        """User cancellation from PENDING or PROCESSING; the locked funds become available again"""
        return await run_io_task(self._cancel, withdrawal_id, user_id, reason)

    @with_optimistic_locking(max_retries=3)
    def _cancel(self, withdrawal_id: str, user_id: int, reason: Optional[str]) -> WithdrawalView:
        with managed_session(self.session_factory) as session:
            withdrawal = self._load_owned(session, withdrawal_id, user_id)
            if WithdrawalStatus(withdrawal.status) not in WithdrawalStatus.cancellable():
                raise InvalidState(f"Cannot cancel withdrawal with status: {withdrawal.status}")

            self.ledger.unlock(
                withdrawal.user_id, withdrawal.currency, withdrawal.chain, withdrawal.amount, session=session
            )
            withdrawal.status = WithdrawalStatus.CANCELLED.value
            withdrawal.cancelled_at = utcnow()
            withdrawal.failure_reason = reason or "Cancelled by user"
            session.flush()

            logger.info(f"🚫 Withdrawal {withdrawal_id} cancelled by user {user_id}")
            return WithdrawalView.from_row(withdrawal)

    async def fail_withdrawal(self, withdrawal_id: str, reason: str) -> WithdrawalView:
        """Any non-terminal state -> FAILED with the locked funds returned"""
        view, email = await run_io_task(self._fail, withdrawal_id, reason)
        await self.notifications.notify_withdrawal_failed(self._notice(view, email), reason)
        return view

    @with_optimistic_locking(max_retries=3)
    def _fail(self, withdrawal_id: str, reason: str) -> Tuple[WithdrawalView, Optional[str]]:
        with managed_session(self.session_factory) as session:
            withdrawal = self._load_for_update(session, withdrawal_id)
            if WithdrawalStatus(withdrawal.status) in WithdrawalStatus.terminal():
                logger.error(f"❌ Refusing to fail withdrawal {withdrawal_id} in state {withdrawal.status}")
                raise InvalidState(f"Cannot fail {withdrawal.status.lower()} withdrawal")

            self.ledger.unlock(
                withdrawal.user_id, withdrawal.currency, withdrawal.chain, withdrawal.amount, session=session
            )
            withdrawal.status = WithdrawalStatus.FAILED.value
            withdrawal.failed_at = utcnow()
            withdrawal.failure_reason = reason
            session.flush()

            email = session.execute(select(User.email).where(User.id == withdrawal.user_id)).scalar_one_or_none()
            logger.warning(f"⚠️ Withdrawal {withdrawal_id} failed: {reason}")
            return WithdrawalView.from_row(withdrawal), email

    async def refresh_confirmations(
        self, chain: str, current_height: int, tx_height_lookup: TxHeightLookup
    ) -> int:
        """Advance AWAITING_CONFIRMATION withdrawals on chain. Returns withdrawals completed."""
        pending = await run_io_task(self._awaiting_confirmation, chain)
        family = self.registry.get_chain(chain).family
        completed = 0
        for withdrawal_id, tx_hash in pending:
            block_height = await tx_height_lookup(tx_hash)
            if block_height is None:
                continue
            if family == ChainFamily.BITCOIN:
                confirmations = max(0, current_height - block_height + 1)
            else:
                confirmations = max(0, current_height - block_height)
            try:
                view = await self.complete_withdrawal(withdrawal_id, confirmations)
            except (SQLAlchemyError, LedgerError, OptimisticLockingError) as e:
                logger.error(f"❌ Confirmation refresh failed for withdrawal {withdrawal_id}: {e}")
                continue
            if view.status == WithdrawalStatus.COMPLETED.value:
                completed += 1
        return completed

    def _awaiting_confirmation(self, chain: str) -> List[Tuple[str, str]]:
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(Withdrawal.withdrawal_id, Withdrawal.tx_hash).where(
                    Withdrawal.chain == chain.upper(),
                    Withdrawal.status == WithdrawalStatus.AWAITING_CONFIRMATION.value,
                    Withdrawal.tx_hash.is_not(None),
                )
            ).all()
            return [tuple(row) for row in rows]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_withdrawal_status(self, withdrawal_id: str, user_id: Optional[int] = None) -> Dict[str, Any]:
        view = await run_io_task(self._get_view, withdrawal_id, user_id)
        status = view.to_dict()
        status["current_usd_value"] = await self.price_oracle.calculate_usd_value(view.currency, view.net_amount)
        return status

    def _get_view(self, withdrawal_id: str, user_id: Optional[int]) -> WithdrawalView:
        with managed_session(self.session_factory) as session:
            withdrawal = session.execute(
                select(Withdrawal).where(Withdrawal.withdrawal_id == withdrawal_id)
            ).scalar_one_or_none()
            if withdrawal is None or (user_id is not None and withdrawal.user_id != user_id):
                raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
            return WithdrawalView.from_row(withdrawal)

    async def list_user_withdrawals(
        self, user_id: int, status: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> Dict[str, Any]:
        views, total = await run_io_task(self._list_views, user_id, status, limit, offset)
        prices = await self.price_oracle.get_prices({v.currency for v in views})
        withdrawals = []
        for view in views:
            entry = view.to_dict()
            price = prices.get(view.currency, 0.0)
            entry["current_price"] = price
            entry["current_usd_value"] = MonetaryDecimal.usd_value(view.net_amount, price)
            withdrawals.append(entry)
        return {"withdrawals": withdrawals, "total": total, "limit": limit, "offset": offset}

    def _list_views(
        self, user_id: int, status: Optional[str], limit: int, offset: int
    ) -> Tuple[List[WithdrawalView], int]:
        with managed_session(self.session_factory) as session:
            conditions = [Withdrawal.user_id == user_id]
            if status:
                conditions.append(Withdrawal.status == status.upper())
            rows = session.execute(
                select(Withdrawal)
                .where(*conditions)
                .order_by(Withdrawal.submitted_at.desc(), Withdrawal.id.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            total = session.execute(select(func.count(Withdrawal.id)).where(*conditions)).scalar_one()
            return [WithdrawalView.from_row(row) for row in rows], total

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load_for_update(session: Session, withdrawal_id: str) -> Withdrawal:
        withdrawal = session.execute(
            select(Withdrawal).where(Withdrawal.withdrawal_id == withdrawal_id).with_for_update()
        ).scalar_one_or_none()
        if withdrawal is None:
            raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    def _load_owned(self, session: Session, withdrawal_id: str, user_id: int) -> Withdrawal:
        """Another user's withdrawal is reported as not found"""
        withdrawal = self._load_for_update(session, withdrawal_id)
        if withdrawal.user_id != user_id:
            logger.warning(f"⚠️ User {user_id} attempted to access withdrawal {withdrawal_id}")
            raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    def _notice(self, view: WithdrawalView, email: Optional[str]) -> TransferNotice:
        return TransferNotice(
            user_id=view.user_id,
            email=email,
            amount=view.amount,
            token=view.currency,
            chain=view.chain,
            address=view.to_address,
            tx_hash=view.tx_hash,
            tx_url=view.tx_url,
            explorer_name=self.registry.get_chain(view.chain).explorer_name,
            withdrawal_id=view.withdrawal_id,
            fee=view.fee,
        )
