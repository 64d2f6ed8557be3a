"""
Deposit Pipeline
================

Turns scanner candidates into Deposit rows and credits the ledger exactly
once per chain event.

    PENDING ──> CONFIRMING ──> COMPLETED
       └───────────────────────────^

- The (chain, tx_hash, output_index) unique index is the dedup guard: a
  second insert of the same event fails, and it counts as a duplicate only
  when the row is then found. Any other integrity failure is retried once.
- Confirmation counts only move up.
- The credit, the COMPLETED status and the history row commit together.
- Notifications go out after commit and cannot undo a credit.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from database import SessionLocal, managed_session
from models import (
    Deposit, DepositSource, DepositStatus, LedgerTransaction, LedgerTransactionType,
    User, WalletAddress, utcnow,
)
from services.balance_ledger import BalanceLedger
from services.chain_registry import ChainFamily, ChainRegistry, get_chain_registry
from services.deposit_scanner import DepositCandidate
from services.notification_service import NotificationService, TransferNotice
from utils.address_validation import normalize_address
from utils.background_task_runner import run_io_task
from utils.decimal_precision import MonetaryDecimal
from utils.id_generator import generate_deposit_id
from utils.ledger_exceptions import (
    ConfigurationError, DepositNotFound, InvalidState, LedgerError, ValidationError,
)
from utils.optimistic_locking import OptimisticLockingError, with_optimistic_locking

logger = logging.getLogger(__name__)

MANUAL_FROM_ADDRESS = "manual_deposit"


class DepositAction(Enum):
    CREATED = "created"
    UPDATED = "updated"
    COMPLETED = "completed"
    UNCHANGED = "unchanged"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class DepositView:
    """Detached read model of a Deposit row"""
    deposit_id: str
    user_id: int
    currency: str
    chain: str
    amount: Decimal
    fee: Decimal
    net_amount: Decimal
    tx_hash: str
    output_index: int
    tx_url: Optional[str]
    from_address: Optional[str]
    to_address: str
    block_number: Optional[int]
    confirmations: int
    required_confirmations: int
    status: str
    source: str
    submitted_at: datetime
    confirmed_at: Optional[datetime]
    completed_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: Deposit) -> "DepositView":
        return cls(
            deposit_id=row.deposit_id,
            user_id=row.user_id,
            currency=row.currency,
            chain=row.chain,
            amount=row.amount,
            fee=row.fee,
            net_amount=row.net_amount,
            tx_hash=row.tx_hash,
            output_index=row.output_index,
            tx_url=row.tx_url,
            from_address=row.from_address,
            to_address=row.to_address,
            block_number=row.block_number,
            confirmations=row.confirmations,
            required_confirmations=row.required_confirmations,
            status=row.status,
            source=row.source,
            submitted_at=row.submitted_at,
            confirmed_at=row.confirmed_at,
            completed_at=row.completed_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deposit_id": self.deposit_id,
            "status": self.status,
            "currency": self.currency,
            "chain": self.chain,
            "amount": self.amount,
            "fee": self.fee,
            "net_amount": self.net_amount,
            "tx_hash": self.tx_hash,
            "tx_url": self.tx_url,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "confirmations": self.confirmations,
            "required_confirmations": self.required_confirmations,
            "source": self.source,
            "submitted_at": self.submitted_at,
            "completed_at": self.completed_at,
        }


@dataclass
class DepositOutcome:
    action: DepositAction
    deposit: Optional[DepositView] = None
    user_email: Optional[str] = None
    notify_pending: bool = False
    notify_confirmed: bool = False
    reason: Optional[str] = None


@dataclass
class ProcessingSummary:
    """Per-tick tally of candidate handling"""
    created: int = 0
    completed: int = 0
    updated: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def record(self, outcome: DepositOutcome) -> None:
        # notify_pending marks a row inserted in this tick, even if it completed at once
        if outcome.notify_pending:
            self.created += 1
        if outcome.action == DepositAction.COMPLETED:
            self.completed += 1
        elif outcome.action == DepositAction.UPDATED:
            self.updated += 1
        elif outcome.action == DepositAction.DUPLICATE:
            self.duplicates += 1
        elif outcome.action == DepositAction.SKIPPED:
            self.skipped += 1


class DepositService:
    """Deposit detection, confirmation tracking and crediting"""

    def __init__(
        self,
        registry: Optional[ChainRegistry] = None,
        ledger: Optional[BalanceLedger] = None,
        notifications: Optional[NotificationService] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.registry = registry or get_chain_registry()
        self.session_factory = session_factory
        self.ledger = ledger or BalanceLedger(session_factory=session_factory)
        self.notifications = notifications or NotificationService(session_factory=session_factory)

    # ------------------------------------------------------------------
    # Deposit addresses
    # ------------------------------------------------------------------

    def assign_deposit_address(self, user_id: int, chain: str, address: str) -> str:
        """Record a deposit address issued to user_id. Addresses are immutable once stored."""
        chain_config = self.registry.get_chain(chain)
        stored = normalize_address(chain_config.family, address)
        with managed_session(self.session_factory) as session:
            session.add(WalletAddress(user_id=user_id, chain=chain_config.chain_id, address=stored))
        logger.info(f"🏷️ Deposit address {stored} assigned to user {user_id} on {chain_config.chain_id}")
        return stored

    def get_deposit_addresses(self, chain: str) -> List[str]:
        with managed_session(self.session_factory) as session:
            return list(session.execute(
                select(WalletAddress.address)
                .where(WalletAddress.chain == chain.upper())
                .order_by(WalletAddress.id)
            ).scalars().all())

    # ------------------------------------------------------------------
    # Scanner intake
    # ------------------------------------------------------------------

    async def process_candidates(self, candidates: Sequence[DepositCandidate]) -> ProcessingSummary:
        """Persist a tick's candidates one transaction each, then notify"""
        summary = ProcessingSummary()
        for candidate in candidates:
            try:
                outcome = await run_io_task(self.process_candidate, candidate)
            except ConfigurationError as e:
                logger.warning(f"⚠️ Skipping {candidate.chain} deposit {candidate.tx_hash}: {e}")
                summary.skipped += 1
                continue
            except (SQLAlchemyError, LedgerError, OptimisticLockingError) as e:
                message = f"Failed to process {candidate.chain} deposit {candidate.tx_hash}: {e}"
                logger.error(f"❌ {message}")
                summary.failed += 1
                summary.errors.append(message)
                continue

            summary.record(outcome)
            await self._dispatch_notifications(outcome)

        if candidates:
            logger.info(
                f"📥 Deposit intake: {summary.created} new, {summary.completed} completed, "
                f"{summary.updated} updated, {summary.duplicates} duplicate, "
                f"{summary.skipped} skipped, {summary.failed} failed"
            )
        return summary

    def process_candidate(self, candidate: DepositCandidate) -> DepositOutcome:
        """Record first sight of a chain event, or advance the existing deposit"""
        chain_config = self.registry.get_chain(candidate.chain)
        token = self.registry.get_token(chain_config.chain_id, candidate.token)

        if candidate.amount < token.min_deposit:
            logger.info(
                f"💧 Ignoring {chain_config.chain_id} deposit {candidate.tx_hash}: "
                f"{MonetaryDecimal.plain(candidate.amount)} {token.symbol} below minimum {token.min_deposit}"
            )
            return DepositOutcome(action=DepositAction.SKIPPED, reason="below_minimum")

        event_key = f"{candidate.chain}:{candidate.tx_hash}:{candidate.output_index}"
        try:
            return self._record_candidate(candidate)
        except IntegrityError as e:
            if self._chain_event_recorded(candidate):
                # A concurrent tick inserted the same chain event first
                logger.info(f"🔁 Deposit {event_key} already recorded")
                return DepositOutcome(action=DepositAction.DUPLICATE)
            logger.warning(f"⚠️ Integrity error recording deposit {event_key}, retrying once: {e.orig}")

        # A second IntegrityError propagates and the candidate counts as failed
        return self._record_candidate(candidate)

    def _chain_event_recorded(self, candidate: DepositCandidate) -> bool:
        chain_id = self.registry.get_chain(candidate.chain).chain_id
        with managed_session(self.session_factory) as session:
            existing = session.execute(
                select(Deposit.id).where(
                    Deposit.chain == chain_id,
                    Deposit.tx_hash == candidate.tx_hash,
                    Deposit.output_index == candidate.output_index,
                )
            ).scalar_one_or_none()
            return existing is not None

    @with_optimistic_locking(max_retries=3)
    def _record_candidate(self, candidate: DepositCandidate) -> DepositOutcome:
        chain_config = self.registry.get_chain(candidate.chain)
        with managed_session(self.session_factory) as session:
            existing = session.execute(
                select(Deposit)
                .where(
                    Deposit.chain == chain_config.chain_id,
                    Deposit.tx_hash == candidate.tx_hash,
                    Deposit.output_index == candidate.output_index,
                )
                .with_for_update()
            ).scalar_one_or_none()

            if existing is not None:
                return self._observe(session, existing, candidate.confirmations, candidate.block_number)

            owner = self._find_owner(session, chain_config.family, chain_config.chain_id, candidate.to_address)
            if owner is None:
                logger.warning(
                    f"⚠️ No user owns {chain_config.chain_id} address {candidate.to_address}, "
                    f"skipping {candidate.tx_hash}"
                )
                return DepositOutcome(action=DepositAction.SKIPPED, reason="unknown_address")
            user_id, stored_address, email = owner

            required = chain_config.confirmations
            confirmations = max(0, candidate.confirmations)
            completes_now = confirmations >= required
            # A deposit that is already deep enough is inserted open and completed below
            status = DepositStatus.CONFIRMING if confirmations > 0 and not completes_now else DepositStatus.PENDING

            amount = MonetaryDecimal.quantize_amount(candidate.amount)
            deposit = Deposit(
                deposit_id=generate_deposit_id(session),
                user_id=user_id,
                currency=candidate.token.upper(),
                chain=chain_config.chain_id,
                amount=amount,
                fee=Decimal("0"),
                net_amount=amount,
                tx_hash=candidate.tx_hash,
                output_index=candidate.output_index,
                tx_url=self.registry.explorer_tx_url(chain_config.chain_id, candidate.tx_hash),
                token_contract=candidate.token_contract,
                from_address=candidate.from_address,
                to_address=stored_address,
                block_number=candidate.block_number,
                confirmations=confirmations,
                required_confirmations=required,
                status=status.value,
                source=DepositSource.SCANNER.value,
                submitted_at=utcnow(),
            )
            session.add(deposit)
            # Surfaces a duplicate chain event before any balance is touched
            session.flush()

            logger.info(
                f"🆕 Deposit {deposit.deposit_id}: {MonetaryDecimal.plain(amount)} {deposit.currency} "
                f"on {deposit.chain} for user {user_id} ({confirmations}/{required} confirmations)"
            )

            if completes_now:
                self._complete(session, deposit)
                return DepositOutcome(
                    action=DepositAction.COMPLETED,
                    deposit=DepositView.from_row(deposit),
                    user_email=email,
                    notify_pending=True,
                    notify_confirmed=True,
                )

            return DepositOutcome(
                action=DepositAction.CREATED,
                deposit=DepositView.from_row(deposit),
                user_email=email,
                notify_pending=True,
            )

    def _find_owner(self, session: Session, family: ChainFamily, chain: str, address: str):
        stored = normalize_address(family, address or "")
        row = session.execute(
            select(WalletAddress.user_id, WalletAddress.address, User.email)
            .join(User, User.id == WalletAddress.user_id)
            .where(WalletAddress.chain == chain, WalletAddress.address == stored)
        ).first()
        return tuple(row) if row else None

    def _observe(
        self, session: Session, deposit: Deposit, confirmations: int, block_number: Optional[int] = None
    ) -> DepositOutcome:
        """Apply a later confirmation count to an existing deposit"""
        if deposit.status == DepositStatus.COMPLETED.value:
            return DepositOutcome(action=DepositAction.UNCHANGED, deposit=DepositView.from_row(deposit))

        changed = False
        if block_number is not None and deposit.block_number is None:
            deposit.block_number = block_number
            changed = True

        if confirmations > deposit.confirmations:
            deposit.confirmations = confirmations
            changed = True

        if deposit.confirmations >= deposit.required_confirmations:
            self._complete(session, deposit)
            email = session.execute(select(User.email).where(User.id == deposit.user_id)).scalar_one_or_none()
            return DepositOutcome(
                action=DepositAction.COMPLETED,
                deposit=DepositView.from_row(deposit),
                user_email=email,
                notify_confirmed=True,
            )

        if deposit.confirmations > 0 and deposit.status == DepositStatus.PENDING.value:
            deposit.status = DepositStatus.CONFIRMING.value
            changed = True

        if not changed:
            return DepositOutcome(action=DepositAction.UNCHANGED, deposit=DepositView.from_row(deposit))

        session.flush()
        logger.debug(
            f"Deposit {deposit.deposit_id}: {deposit.confirmations}/{deposit.required_confirmations} confirmations"
        )
        return DepositOutcome(action=DepositAction.UPDATED, deposit=DepositView.from_row(deposit))

    def _complete(self, session: Session, deposit: Deposit) -> None:
        """Credit and mark COMPLETED within the caller's transaction"""
        if deposit.status == DepositStatus.COMPLETED.value:
            logger.error(f"❌ Deposit {deposit.deposit_id} is already completed")
            raise InvalidState(f"Deposit {deposit.deposit_id} is already completed")

        self.ledger.credit(deposit.user_id, deposit.currency, deposit.chain, deposit.net_amount, session=session)

        now = utcnow()
        deposit.status = DepositStatus.COMPLETED.value
        deposit.confirmed_at = deposit.confirmed_at or now
        deposit.completed_at = now
        deposit.processing_time = int((now - deposit.submitted_at).total_seconds())

        session.add(LedgerTransaction(
            user_id=deposit.user_id,
            transaction_type=LedgerTransactionType.DEPOSIT.value,
            currency=deposit.currency,
            chain=deposit.chain,
            amount=deposit.net_amount,
            fee=deposit.fee,
            deposit_id=deposit.deposit_id,
            tx_hash=deposit.tx_hash,
            tx_url=deposit.tx_url,
            from_address=deposit.from_address,
            to_address=deposit.to_address,
            description=f"Deposit {MonetaryDecimal.plain(deposit.net_amount)} {deposit.currency} on {deposit.chain}",
            completed_at=now,
        ))
        session.flush()

        logger.info(
            f"✅ Deposit {deposit.deposit_id} completed: credited {MonetaryDecimal.plain(deposit.net_amount)} "
            f"{deposit.currency} to user {deposit.user_id}"
        )

    # ------------------------------------------------------------------
    # Confirmation refresh and explicit completion
    # ------------------------------------------------------------------

    async def refresh_confirmations(self, chain: str, current_height: int) -> int:
        """Recompute confirmations of open deposits on chain from the tip. Returns deposits completed."""
        deposit_pks = await run_io_task(self._open_deposit_pks, chain)
        completed = 0
        for deposit_pk in deposit_pks:
            try:
                outcome = await run_io_task(self._refresh_one, deposit_pk, current_height)
            except (SQLAlchemyError, LedgerError, OptimisticLockingError) as e:
                logger.error(f"❌ Confirmation refresh failed for deposit #{deposit_pk}: {e}")
                continue
            if outcome.notify_confirmed:
                completed += 1
            await self._dispatch_notifications(outcome)
        return completed

    def _open_deposit_pks(self, chain: str) -> List[int]:
        with managed_session(self.session_factory) as session:
            return list(session.execute(
                select(Deposit.id).where(
                    Deposit.chain == chain.upper(),
                    Deposit.status.in_([DepositStatus.PENDING.value, DepositStatus.CONFIRMING.value]),
                    Deposit.block_number.is_not(None),
                )
            ).scalars().all())

    @with_optimistic_locking(max_retries=3)
    def _refresh_one(self, deposit_pk: int, current_height: int) -> DepositOutcome:
        with managed_session(self.session_factory) as session:
            deposit = session.execute(
                select(Deposit).where(Deposit.id == deposit_pk).with_for_update()
            ).scalar_one_or_none()
            if deposit is None or deposit.block_number is None:
                return DepositOutcome(action=DepositAction.UNCHANGED)
            family = self.registry.get_chain(deposit.chain).family
            confirmations = self.confirmations_at(family, current_height, deposit.block_number)
            return self._observe(session, deposit, confirmations)

    @staticmethod
    def confirmations_at(family: ChainFamily, current_height: int, block_number: int) -> int:
        """Bitcoin counts the inclusion block itself; EVM counts blocks built on top"""
        if family == ChainFamily.BITCOIN:
            return max(0, current_height - block_number + 1)
        return max(0, current_height - block_number)

    async def complete_deposit(self, deposit_id: str) -> DepositView:
        """Force a non-completed deposit to COMPLETED and credit it"""
        outcome = await run_io_task(self._complete_by_id, deposit_id)
        await self._dispatch_notifications(outcome)
        return outcome.deposit

    @with_optimistic_locking(max_retries=3)
    def _complete_by_id(self, deposit_id: str) -> DepositOutcome:
        with managed_session(self.session_factory) as session:
            deposit = session.execute(
                select(Deposit).where(Deposit.deposit_id == deposit_id).with_for_update()
            ).scalar_one_or_none()
            if deposit is None:
                raise DepositNotFound(f"Deposit {deposit_id} not found")
            self._complete(session, deposit)
            email = session.execute(select(User.email).where(User.id == deposit.user_id)).scalar_one_or_none()
            return DepositOutcome(
                action=DepositAction.COMPLETED,
                deposit=DepositView.from_row(deposit),
                user_email=email,
                notify_confirmed=True,
            )

    # ------------------------------------------------------------------
    # Manual credit
    # ------------------------------------------------------------------

    async def create_manual_deposit(
        self,
        user_id: int,
        currency: str,
        chain: str,
        amount,
        tx_hash: Optional[str] = None,
        to_address: Optional[str] = None,
    ) -> DepositView:
        """Admin credit recorded as an already completed deposit"""
        chain_config = self.registry.get_chain(chain)
        token = self.registry.get_token(chain_config.chain_id, currency)
        value = MonetaryDecimal.to_positive_amount(amount)
        tx_hash = tx_hash or f"manual_{int(time.time() * 1000)}_{secrets.token_hex(4)}"

        try:
            outcome = await run_io_task(
                self._record_manual, user_id, token.symbol, chain_config.chain_id, value, tx_hash, to_address
            )
        except IntegrityError:
            raise ValidationError(f"Transaction {tx_hash} is already recorded as a deposit")

        await self._dispatch_notifications(outcome)
        return outcome.deposit

    @with_optimistic_locking(max_retries=3)
    def _record_manual(
        self, user_id: int, currency: str, chain: str, amount: Decimal, tx_hash: str, to_address: Optional[str]
    ) -> DepositOutcome:
        chain_config = self.registry.get_chain(chain)
        with managed_session(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                raise ValidationError(f"User {user_id} not found")

            if to_address is None:
                to_address = session.execute(
                    select(WalletAddress.address)
                    .where(WalletAddress.user_id == user_id, WalletAddress.chain == chain)
                    .order_by(WalletAddress.id)
                ).scalars().first() or "manual"

            now = utcnow()
            deposit = Deposit(
                deposit_id=generate_deposit_id(session),
                user_id=user_id,
                currency=currency,
                chain=chain,
                amount=amount,
                fee=Decimal("0"),
                net_amount=amount,
                tx_hash=tx_hash,
                output_index=0,
                tx_url=None if tx_hash.startswith("manual_") else self.registry.explorer_tx_url(chain, tx_hash),
                from_address=MANUAL_FROM_ADDRESS,
                to_address=to_address,
                confirmations=chain_config.confirmations,
                required_confirmations=chain_config.confirmations,
                status=DepositStatus.PENDING.value,
                source=DepositSource.MANUAL.value,
                submitted_at=now,
            )
            session.add(deposit)
            session.flush()
            self._complete(session, deposit)
            logger.info(f"🛠️ Manual deposit {deposit.deposit_id} recorded for user {user_id}")
            return DepositOutcome(
                action=DepositAction.COMPLETED,
                deposit=DepositView.from_row(deposit),
                user_email=user.email,
                notify_confirmed=True,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_deposit_status(self, deposit_id: str, user_id: Optional[int] = None) -> Dict[str, Any]:
        with managed_session(self.session_factory) as session:
            deposit = session.execute(
                select(Deposit).where(Deposit.deposit_id == deposit_id)
            ).scalar_one_or_none()
            if deposit is None or (user_id is not None and deposit.user_id != user_id):
                raise DepositNotFound(f"Deposit {deposit_id} not found")
            return DepositView.from_row(deposit).to_dict()

    def list_user_deposits(
        self, user_id: int, status: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> Dict[str, Any]:
        with managed_session(self.session_factory) as session:
            conditions = [Deposit.user_id == user_id]
            if status:
                conditions.append(Deposit.status == status.upper())
            rows = session.execute(
                select(Deposit)
                .where(*conditions)
                .order_by(Deposit.submitted_at.desc(), Deposit.id.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            total = session.execute(select(func.count(Deposit.id)).where(*conditions)).scalar_one()
            return {
                "deposits": [DepositView.from_row(row).to_dict() for row in rows],
                "total": total,
                "limit": limit,
                "offset": offset,
            }

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _dispatch_notifications(self, outcome: DepositOutcome) -> None:
        deposit = outcome.deposit
        if deposit is None or not (outcome.notify_pending or outcome.notify_confirmed):
            return

        chain_config = self.registry.get_chain(deposit.chain)
        notice = TransferNotice(
            user_id=deposit.user_id,
            email=outcome.user_email,
            amount=deposit.net_amount,
            token=deposit.currency,
            chain=deposit.chain,
            address=deposit.to_address,
            tx_hash=deposit.tx_hash,
            tx_url=deposit.tx_url,
            explorer_name=chain_config.explorer_name,
            deposit_id=deposit.deposit_id,
            confirmations=deposit.confirmations,
            required_confirmations=deposit.required_confirmations,
        )
        if outcome.notify_pending:
            await self.notifications.notify_deposit_pending(notice)
        if outcome.notify_confirmed:
            await self.notifications.notify_deposit_confirmed(notice)
