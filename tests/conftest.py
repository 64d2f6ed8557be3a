"""
Shared fixtures for the ledger test suite.

Every test gets a fresh in-memory SQLite database behind a StaticPool, so
run_io_task worker threads and the test body see the same connection.
Notifications and email are mocked; prices come from a pre-filled cache.
"""

import os

# Must be set before config/database are imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["BREVO_API_KEY"] = ""

import logging
import random
from decimal import Decimal
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import managed_session
from models import Base, User
from services.balance_ledger import BalanceLedger
from services.chain_registry import ChainRegistry
from services.deposit_scanner import DepositCandidate
from services.deposit_service import DepositService
from services.notification_service import NotificationService
from services.price_oracle import PriceCache, PriceOracle, StablecoinWalk
from services.verification_code_service import VerificationCodeService
from services.withdrawal_service import WithdrawalService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

ETH_DEPOSIT_ADDRESS = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
ETH_DEPOSIT_ADDRESS_CHECKSUM = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
BTC_DEPOSIT_ADDRESS = "bc1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh"
EXTERNAL_ETH_ADDRESS = "0x" + "ab" * 20
USDT_ETH_CONTRACT = "0xdac17f958d2ee523a2206206994597c13d831ec7"

TEST_PRICES = {"ETH": 2000.0, "BTC": 50000.0, "BNB": 300.0}


@pytest.fixture
def engine():
    """Fresh in-memory database with the full schema"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def create_user(session_factory, email: str) -> int:
    with managed_session(session_factory) as session:
        user = User(email=email, display_name=email.split("@")[0])
        session.add(user)
        session.flush()
        return user.id


@pytest.fixture
def user_id(session_factory):
    return create_user(session_factory, "alice@example.com")


@pytest.fixture
def other_user_id(session_factory):
    return create_user(session_factory, "bob@example.com")


@pytest.fixture
def registry():
    return ChainRegistry()


@pytest.fixture
def price_oracle():
    """Oracle that never reaches CoinGecko: volatile prices are cached for an hour"""
    cache = PriceCache(ttl_seconds=3600)
    for symbol, price in TEST_PRICES.items():
        cache.set(symbol, price)
    return PriceOracle(cache=cache, stablecoin_walk=StablecoinWalk(rng=random.Random(7)))


@pytest.fixture
def notifications():
    """NotificationService double; async events become AsyncMocks"""
    mock = Mock(spec=NotificationService)
    mock.delete_old_notifications.return_value = 0
    return mock


@pytest.fixture
def ledger(session_factory, price_oracle):
    return BalanceLedger(price_oracle=price_oracle, session_factory=session_factory)


@pytest.fixture
def deposit_service(registry, ledger, notifications, session_factory):
    return DepositService(
        registry=registry,
        ledger=ledger,
        notifications=notifications,
        session_factory=session_factory,
    )


@pytest.fixture
def withdrawal_service(registry, ledger, notifications, price_oracle, session_factory):
    return WithdrawalService(
        registry=registry,
        ledger=ledger,
        notifications=notifications,
        codes=VerificationCodeService(ttl_minutes=5),
        price_oracle=price_oracle,
        session_factory=session_factory,
    )


@pytest.fixture
def eth_wallet(deposit_service, user_id):
    """User's ETH deposit address, registered in mixed case"""
    return deposit_service.assign_deposit_address(user_id, "ETH", ETH_DEPOSIT_ADDRESS_CHECKSUM)


@pytest.fixture
def btc_wallet(deposit_service, user_id):
    return deposit_service.assign_deposit_address(user_id, "BTC", BTC_DEPOSIT_ADDRESS)


def make_candidate(**overrides) -> DepositCandidate:
    """USDT transfer to the ETH test address unless overridden"""
    fields = dict(
        chain="ETH",
        tx_hash="0x" + "aa" * 32,
        output_index=5,
        from_address="0x" + "22" * 20,
        to_address=ETH_DEPOSIT_ADDRESS,
        token="USDT",
        amount=Decimal("25"),
        block_number=100,
        confirmations=3,
        token_contract=USDT_ETH_CONTRACT,
        token_display_name="Tether USD (Official)",
    )
    fields.update(overrides)
    return DepositCandidate(**fields)
