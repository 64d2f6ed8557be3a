"""
Balance Ledger
==============

Authoritative per-user, per-asset, per-chain balances with four partitions:

    total == available + locked + frozen

Every mutation is a single transaction that locks the row (SELECT ... FOR
UPDATE), recomputes the partitions, asserts the invariant and writes back
through the version column. A concurrent writer that slipped past the row
lock surfaces as a version conflict and the whole unit of work is retried.

Operations:
- credit:         total += a, available += a   (completed deposit)
- debit:          total -= a, available -= a
- lock:           available -= a, locked += a  (withdrawal accepted)
- unlock:         available += a, locked -= a  (withdrawal cancelled / failed)
- release_locked: total -= a, locked -= a      (withdrawal completed)
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import SessionLocal, managed_session
from models import Balance, utcnow
from services.price_oracle import PriceOracle
from utils.background_task_runner import run_io_task
from utils.decimal_precision import MonetaryDecimal
from utils.ledger_exceptions import InsufficientBalance, InvalidState
from utils.optimistic_locking import with_optimistic_locking

logger = logging.getLogger(__name__)


class LedgerOperation(Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    LOCK = "lock"
    UNLOCK = "unlock"
    RELEASE_LOCKED = "release_locked"


@dataclass(frozen=True)
class BalanceSnapshot:
    """Detached copy of a Balance row, safe to hand across threads and sessions"""
    user_id: int
    currency: str
    chain: str
    total: Decimal
    available: Decimal
    locked: Decimal
    frozen: Decimal
    usd_value: Decimal

    @classmethod
    def from_row(cls, row: Balance) -> "BalanceSnapshot":
        return cls(
            user_id=row.user_id,
            currency=row.currency,
            chain=row.chain,
            total=row.total,
            available=row.available,
            locked=row.locked,
            frozen=row.frozen,
            usd_value=row.usd_value,
        )

    @classmethod
    def empty(cls, user_id: int, currency: str, chain: str) -> "BalanceSnapshot":
        zero = Decimal("0")
        return cls(user_id, currency, chain, zero, zero, zero, zero, zero)


class BalanceLedger:
    """Atomic balance mutations and balance reads"""

    def __init__(
        self,
        price_oracle: Optional[PriceOracle] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.price_oracle = price_oracle or PriceOracle()
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def credit(self, user_id: int, currency: str, chain: str, amount, session: Optional[Session] = None) -> BalanceSnapshot:
        """Add funds. Creates the balance row on first credit."""
        return self._execute(LedgerOperation.CREDIT, user_id, currency, chain, amount, session)

    def debit(self, user_id: int, currency: str, chain: str, amount, session: Optional[Session] = None) -> BalanceSnapshot:
        return self._execute(LedgerOperation.DEBIT, user_id, currency, chain, amount, session)

    def lock(self, user_id: int, currency: str, chain: str, amount, session: Optional[Session] = None) -> BalanceSnapshot:
        return self._execute(LedgerOperation.LOCK, user_id, currency, chain, amount, session)

    def unlock(self, user_id: int, currency: str, chain: str, amount, session: Optional[Session] = None) -> BalanceSnapshot:
        return self._execute(LedgerOperation.UNLOCK, user_id, currency, chain, amount, session)

    def release_locked(self, user_id: int, currency: str, chain: str, amount, session: Optional[Session] = None) -> BalanceSnapshot:
        return self._execute(LedgerOperation.RELEASE_LOCKED, user_id, currency, chain, amount, session)

    def _execute(
        self,
        operation: LedgerOperation,
        user_id: int,
        currency: str,
        chain: str,
        amount,
        session: Optional[Session],
    ) -> BalanceSnapshot:
        value = MonetaryDecimal.to_positive_amount(amount)
        currency = currency.upper()
        chain = chain.upper()

        if session is not None:
            # Caller owns the transaction boundary
            return self._apply(session, operation, user_id, currency, chain, value)

        try:
            return self._apply_in_own_transaction(operation, user_id, currency, chain, value)
        except IntegrityError:
            # Lost the race to create the row on first credit; it exists now
            logger.info(f"🔁 Balance row for user {user_id} {currency}/{chain} created concurrently, retrying")
            return self._apply_in_own_transaction(operation, user_id, currency, chain, value)

    @with_optimistic_locking(max_retries=3)
    def _apply_in_own_transaction(
        self, operation: LedgerOperation, user_id: int, currency: str, chain: str, amount: Decimal
    ) -> BalanceSnapshot:
        with managed_session(self.session_factory) as session:
            return self._apply(session, operation, user_id, currency, chain, amount)

    def _apply(
        self,
        session: Session,
        operation: LedgerOperation,
        user_id: int,
        currency: str,
        chain: str,
        amount: Decimal,
    ) -> BalanceSnapshot:
        balance = self._load_for_update(session, user_id, currency, chain)

        if balance is None:
            if operation == LedgerOperation.CREDIT:
                balance = Balance(
                    user_id=user_id,
                    currency=currency,
                    chain=chain,
                    total=Decimal("0"),
                    available=Decimal("0"),
                    locked=Decimal("0"),
                    frozen=Decimal("0"),
                    usd_value=Decimal("0"),
                )
                session.add(balance)
            elif operation in (LedgerOperation.DEBIT, LedgerOperation.LOCK):
                raise InsufficientBalance(
                    f"Insufficient balance. Available: 0 {currency}",
                    available=Decimal("0"),
                    requested=amount,
                )
            else:
                raise InvalidState(f"No balance for user {user_id} {currency}/{chain} to {operation.value}")

        total = balance.total
        available = balance.available
        locked = balance.locked
        frozen = balance.frozen

        if operation == LedgerOperation.CREDIT:
            total += amount
            available += amount
        elif operation == LedgerOperation.DEBIT:
            self._require_available(available, amount, currency)
            total -= amount
            available -= amount
        elif operation == LedgerOperation.LOCK:
            self._require_available(available, amount, currency)
            available -= amount
            locked += amount
        elif operation == LedgerOperation.UNLOCK:
            self._require_locked(locked, amount, currency, operation)
            available += amount
            locked -= amount
        elif operation == LedgerOperation.RELEASE_LOCKED:
            self._require_locked(locked, amount, currency, operation)
            total -= amount
            locked -= amount

        self._assert_invariant(total, available, locked, frozen)

        balance.total = total
        balance.available = available
        balance.locked = locked
        balance.frozen = frozen
        balance.usd_value = MonetaryDecimal.usd_value(total, self.price_oracle.get_cached_price(currency))
        balance.updated_at = utcnow()
        session.flush()

        logger.info(
            f"💰 Ledger {operation.value}: user={user_id} {MonetaryDecimal.plain(amount)} {currency}/{chain} "
            f"-> total={MonetaryDecimal.plain(total)} available={MonetaryDecimal.plain(available)} "
            f"locked={MonetaryDecimal.plain(locked)}"
        )
        return BalanceSnapshot.from_row(balance)

    @staticmethod
    def _load_for_update(session: Session, user_id: int, currency: str, chain: str) -> Optional[Balance]:
        return session.execute(
            select(Balance)
            .where(
                Balance.user_id == user_id,
                Balance.currency == currency,
                Balance.chain == chain,
            )
            .with_for_update()
        ).scalar_one_or_none()

    @staticmethod
    def _require_available(available: Decimal, amount: Decimal, currency: str) -> None:
        if available < amount:
            raise InsufficientBalance(
                f"Insufficient balance. Available: {MonetaryDecimal.plain(available)} {currency}",
                available=available,
                requested=amount,
            )

    @staticmethod
    def _require_locked(locked: Decimal, amount: Decimal, currency: str, operation: LedgerOperation) -> None:
        if locked < amount:
            logger.error(
                f"❌ Ledger {operation.value} of {MonetaryDecimal.plain(amount)} {currency} exceeds "
                f"locked {MonetaryDecimal.plain(locked)}"
            )
            raise InvalidState(
                f"Cannot {operation.value} {MonetaryDecimal.plain(amount)} {currency}: "
                f"only {MonetaryDecimal.plain(locked)} locked"
            )

    @staticmethod
    def _assert_invariant(total: Decimal, available: Decimal, locked: Decimal, frozen: Decimal) -> None:
        if min(total, available, locked, frozen) < 0:
            raise InvalidState(
                f"Negative balance partition: total={total} available={available} locked={locked} frozen={frozen}"
            )
        if total != available + locked + frozen:
            raise InvalidState(
                f"Partition mismatch: total={total} != available={available} + locked={locked} + frozen={frozen}"
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, user_id: int, currency: str, chain: str) -> BalanceSnapshot:
        """Current balance, or an all-zero snapshot if the row was never created"""
        currency = currency.upper()
        chain = chain.upper()
        with managed_session(self.session_factory) as session:
            row = session.execute(
                select(Balance).where(
                    Balance.user_id == user_id,
                    Balance.currency == currency,
                    Balance.chain == chain,
                )
            ).scalar_one_or_none()
            if row is None:
                return BalanceSnapshot.empty(user_id, currency, chain)
            return BalanceSnapshot.from_row(row)

    def get_user_balances(self, user_id: int) -> List[BalanceSnapshot]:
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(Balance)
                .where(Balance.user_id == user_id)
                .order_by(Balance.currency, Balance.chain)
            ).scalars().all()
            return [BalanceSnapshot.from_row(row) for row in rows]

    async def get_user_balances_with_prices(self, user_id: int) -> List[Dict[str, Any]]:
        """Balances annotated with the current USD price and value"""
        balances = await run_io_task(self.get_user_balances, user_id)
        prices = await self.price_oracle.get_prices({b.currency for b in balances})
        result = []
        for b in balances:
            price = prices.get(b.currency, 0.0)
            result.append({
                "currency": b.currency,
                "chain": b.chain,
                "total": b.total,
                "available": b.available,
                "locked": b.locked,
                "frozen": b.frozen,
                "price": price,
                "usd_value": MonetaryDecimal.usd_value(b.total, price),
            })
        return result

    async def get_portfolio_value(self, user_id: int) -> Dict[str, Any]:
        """Total USD value across all balances plus a per-currency breakdown"""
        balances = await self.get_user_balances_with_prices(user_id)
        breakdown: Dict[str, Dict[str, Any]] = {}
        total_usd = Decimal("0")
        for entry in balances:
            bucket = breakdown.setdefault(
                entry["currency"], {"amount": Decimal("0"), "usd_value": Decimal("0"), "chains": []}
            )
            bucket["amount"] += entry["total"]
            bucket["usd_value"] += entry["usd_value"]
            bucket["chains"].append(entry["chain"])
            total_usd += entry["usd_value"]
        return {"total_usd": total_usd, "breakdown": breakdown}

    async def refresh_usd_values(self) -> int:
        """Recompute the advisory usd_value column for every balance"""
        currencies = await run_io_task(self._distinct_currencies)
        if not currencies:
            return 0
        prices = await self.price_oracle.get_prices(currencies)
        updated = await run_io_task(self._write_usd_values, prices)
        logger.info(f"💱 Refreshed USD values for {updated} balance(s)")
        return updated

    def _distinct_currencies(self) -> List[str]:
        with managed_session(self.session_factory) as session:
            return list(session.execute(select(Balance.currency).distinct()).scalars().all())

    def _write_usd_values(self, prices: Dict[str, float]) -> int:
        table = Balance.__table__
        updated = 0
        with managed_session(self.session_factory) as session:
            rows = session.execute(select(table.c.id, table.c.currency, table.c.total)).all()
            for row_id, currency, total in rows:
                # Core UPDATE on usd_value only; leaves the version column alone
                session.execute(
                    update(table)
                    .where(table.c.id == row_id)
                    .values(usd_value=MonetaryDecimal.usd_value(total, prices.get(currency, 0.0)))
                )
                updated += 1
        return updated
