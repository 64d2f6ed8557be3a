"""
Multi-chain Wallet Ledger - Database Schema
===========================================

Schema for the deposit and withdrawal core:
- Deposit addresses issued to users, one per (chain, address)
- Per-user, per-asset, per-chain balances split into available/locked/frozen
- Deposits deduplicated on the chain event (chain, tx hash, output index)
- Withdrawals with one-time email verification codes
- Scan watermarks, ledger history and in-app notifications
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class Amount(TypeDecorator):
    """
    Exact decimal column.

    NUMERIC(38, 18) on PostgreSQL. SQLite has no exact decimal storage, so
    the value is kept as its string form there and parsed back to Decimal.
    """

    impl = Numeric(38, 18)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(38, 18))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        if dialect.name == "sqlite":
            return format(value, "f")
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value
        return Decimal(str(value))


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class DepositStatus(Enum):
    """Deposit confirmation lifecycle"""
    PENDING = "PENDING"
    CONFIRMING = "CONFIRMING"
    COMPLETED = "COMPLETED"


class DepositSource(Enum):
    """How a deposit entered the system"""
    SCANNER = "SCANNER"
    MANUAL = "MANUAL"


class WithdrawalStatus(Enum):
    """Withdrawal lifecycle states"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @classmethod
    def terminal(cls):
        return {cls.COMPLETED, cls.CANCELLED, cls.FAILED}

    @classmethod
    def cancellable(cls):
        return {cls.PENDING, cls.PROCESSING}


class VerificationCodeType(Enum):
    """Purpose of a one-time code"""
    WITHDRAWAL = "WITHDRAWAL"


class LedgerTransactionType(Enum):
    """Completed balance movements recorded in history"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"


class NotificationType(Enum):
    """In-app notification kinds"""
    DEPOSIT_PENDING = "DEPOSIT_PENDING"
    DEPOSIT_CONFIRMED = "DEPOSIT_CONFIRMED"
    WITHDRAWAL_REQUEST = "WITHDRAWAL_REQUEST"
    WITHDRAWAL_SUCCESS = "WITHDRAWAL_SUCCESS"
    WITHDRAWAL_FAILED = "WITHDRAWAL_FAILED"


class NotificationPriority(Enum):
    """Notification priority"""
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


# ============================================================================
# CORE MODELS
# ============================================================================

class User(Base):
    """Account owner"""
    __tablename__ = "users"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    display_name = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    wallet_addresses = relationship("WalletAddress", back_populates="user")


class WalletAddress(Base):
    """Deposit address issued to a user. Immutable once created."""
    __tablename__ = "wallet_addresses"

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    chain = Column(String(10), nullable=False)
    address = Column(String(128), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="wallet_addresses")

    __table_args__ = (
        UniqueConstraint("chain", "address", name="uq_wallet_address_chain_address"),
        Index("idx_wallet_address_user_chain", "user_id", "chain"),
    )


class Balance(Base):
    """
    Authoritative balance for one (user, currency, chain).

    total == available + locked + frozen at every commit. The version column
    turns concurrent read-modify-write cycles into a detected conflict.
    """
    __tablename__ = "balances"

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    currency = Column(String(16), nullable=False)
    chain = Column(String(10), nullable=False)

    total = Column(Amount, nullable=False, default=Decimal("0"))
    available = Column(Amount, nullable=False, default=Decimal("0"))
    locked = Column(Amount, nullable=False, default=Decimal("0"))
    frozen = Column(Amount, nullable=False, default=Decimal("0"))
    usd_value = Column(Amount, nullable=False, default=Decimal("0"))

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("user_id", "currency", "chain", name="uq_balance_user_currency_chain"),
        CheckConstraint("available >= 0", name="ck_balance_available_non_negative").ddl_if(dialect="postgresql"),
        CheckConstraint("locked >= 0", name="ck_balance_locked_non_negative").ddl_if(dialect="postgresql"),
        CheckConstraint("frozen >= 0", name="ck_balance_frozen_non_negative").ddl_if(dialect="postgresql"),
        CheckConstraint(
            "total = available + locked + frozen", name="ck_balance_partition_sum"
        ).ddl_if(dialect="postgresql"),
    )


class Deposit(Base):
    """Incoming chain transfer to a user's deposit address"""
    __tablename__ = "deposits"

    id = Column(Integer, primary_key=True)
    deposit_id = Column(String(32), nullable=False, unique=True, index=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)

    currency = Column(String(16), nullable=False)
    chain = Column(String(10), nullable=False)
    amount = Column(Amount, nullable=False)
    fee = Column(Amount, nullable=False, default=Decimal("0"))
    net_amount = Column(Amount, nullable=False)

    # Dedup key: log index for EVM token transfers, vout for Bitcoin, -1 for native EVM transfers
    tx_hash = Column(String(128), nullable=False)
    output_index = Column(Integer, nullable=False, default=0)
    tx_url = Column(String(500), nullable=True)
    token_contract = Column(String(128), nullable=True)
    from_address = Column(String(128), nullable=True)
    to_address = Column(String(128), nullable=False)
    block_number = Column(BigInteger, nullable=True)

    confirmations = Column(Integer, nullable=False, default=0)
    required_confirmations = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=DepositStatus.PENDING.value, index=True)
    source = Column(String(10), nullable=False, default=DepositSource.SCANNER.value)

    submitted_at = Column(DateTime, default=utcnow, nullable=False)
    confirmed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    processing_time = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("chain", "tx_hash", "output_index", name="uq_deposit_chain_event"),
        Index("idx_deposit_status_chain", "status", "chain"),
        Index("idx_deposit_user_status", "user_id", "status"),
        CheckConstraint("amount > 0", name="ck_deposit_amount_positive").ddl_if(dialect="postgresql"),
    )


class Withdrawal(Base):
    """User-initiated transfer out to an external address"""
    __tablename__ = "withdrawals"

    id = Column(Integer, primary_key=True)
    withdrawal_id = Column(String(32), nullable=False, unique=True, index=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)

    currency = Column(String(16), nullable=False)
    chain = Column(String(10), nullable=False)
    amount = Column(Amount, nullable=False)
    fee = Column(Amount, nullable=False, default=Decimal("0"))
    net_amount = Column(Amount, nullable=False)

    to_address = Column(String(128), nullable=False)
    from_address = Column(String(128), nullable=True)
    memo = Column(String(255), nullable=True)
    note = Column(Text, nullable=True)

    status = Column(String(30), nullable=False, default=WithdrawalStatus.PENDING.value, index=True)
    email_verified = Column(Boolean, nullable=False, default=False)
    tx_hash = Column(String(128), nullable=True, unique=True)
    tx_url = Column(String(500), nullable=True)
    confirmations = Column(Integer, nullable=False, default=0)
    required_confirmations = Column(Integer, nullable=False)
    failure_reason = Column(Text, nullable=True)

    submitted_at = Column(DateTime, default=utcnow, nullable=False)
    verified_at = Column(DateTime, nullable=True)
    broadcast_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    processing_time = Column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_withdrawal_user_status", "user_id", "status"),
        CheckConstraint("amount > 0", name="ck_withdrawal_amount_positive").ddl_if(dialect="postgresql"),
    )


class VerificationCode(Base):
    """One-time code, consumed by a single conditional update. Only the SHA-256 hash is stored."""
    __tablename__ = "verification_codes"

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    code_hash = Column(String(64), nullable=False)
    code_type = Column(String(20), nullable=False, default=VerificationCodeType.WITHDRAWAL.value)
    withdrawal_id = Column(String(32), nullable=True, index=True)
    extra_data = Column(JSON, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_verification_code_lookup", "user_id", "code_type", "used"),
    )


class ScanWatermark(Base):
    """Last block below which every deposit address of a chain was scanned"""
    __tablename__ = "scan_watermarks"

    chain = Column(String(10), primary_key=True)
    last_scanned_block = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class LedgerTransaction(Base):
    """Immutable history row for a completed deposit or withdrawal"""
    __tablename__ = "ledger_transactions"

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    transaction_type = Column(String(20), nullable=False)
    currency = Column(String(16), nullable=False)
    chain = Column(String(10), nullable=False)
    amount = Column(Amount, nullable=False)
    fee = Column(Amount, nullable=False, default=Decimal("0"))
    deposit_id = Column(String(32), nullable=True, unique=True)
    withdrawal_id = Column(String(32), nullable=True, unique=True)
    tx_hash = Column(String(128), nullable=True)
    tx_url = Column(String(500), nullable=True)
    from_address = Column(String(128), nullable=True)
    to_address = Column(String(128), nullable=True)
    description = Column(String(255), nullable=True)
    completed_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_ledger_tx_user_type", "user_id", "transaction_type"),
    )


class Notification(Base):
    """Persisted in-app notification"""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    notification_type = Column(String(30), nullable=False)
    category = Column(String(20), nullable=False, default="TRANSACTION")
    title = Column(String(100), nullable=False)
    message = Column(Text, nullable=False)
    token = Column(String(16), nullable=True)
    amount = Column(String(64), nullable=True)
    chain = Column(String(64), nullable=True)
    address = Column(String(128), nullable=True)
    tx_hash = Column(String(128), nullable=True)
    priority = Column(String(10), nullable=False, default=NotificationPriority.NORMAL.value)
    is_read = Column(Boolean, nullable=False, default=False)
    email_sent = Column(Boolean, nullable=False, default=False)
    extra_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    read_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_notification_user_read", "user_id", "is_read"),
    )


class IdCounter(Base):
    """Daily sequence backing DEP/WD identifiers"""
    __tablename__ = "id_counters"

    prefix = Column(String(8), primary_key=True)
    date = Column(String(8), nullable=False)
    last_value = Column(Integer, nullable=False, default=0)
