#!/usr/bin/env python3
"""
Ledger worker startup

Deterministic sequence: logging, database, services, scheduler. Runs until
SIGINT/SIGTERM, then lets in-flight scanner ticks finish before exiting.
"""

import asyncio
import logging
import signal
import sys
from typing import List, Optional

from config import Config

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from database import create_tables, test_connection  # noqa: E402
from jobs.deposit_scheduler import DepositScheduler  # noqa: E402
from services.balance_ledger import BalanceLedger  # noqa: E402
from services.chain_registry import ChainRegistry, get_chain_registry  # noqa: E402
from services.deposit_service import DepositService  # noqa: E402
from services.email_service import EmailService  # noqa: E402
from services.notification_service import NotificationService  # noqa: E402
from services.price_oracle import PriceOracle  # noqa: E402
from services.withdrawal_service import WithdrawalService  # noqa: E402
from utils.ledger_exceptions import ConfigurationError  # noqa: E402


class LedgerStartupManager:
    """Builds the service graph once and owns the worker scheduler"""

    def __init__(self):
        self.registry: Optional[ChainRegistry] = None
        self.price_oracle: Optional[PriceOracle] = None
        self.ledger: Optional[BalanceLedger] = None
        self.deposit_service: Optional[DepositService] = None
        self.withdrawal_service: Optional[WithdrawalService] = None
        self.scheduler: Optional[DepositScheduler] = None
        self.startup_errors: List[str] = []

    def initialize_database(self) -> bool:
        logger.info("🗄️ Initializing database...")
        if not test_connection():
            self.startup_errors.append("Database: connection test failed")
            return False
        create_tables()
        return True

    def initialize_services(self) -> bool:
        logger.info("🔧 Initializing ledger services...")
        try:
            self.registry = get_chain_registry()
            self.registry.enabled_chains()
        except ConfigurationError as e:
            logger.error(f"❌ Invalid chain configuration: {e}")
            self.startup_errors.append(f"Config: {e}")
            return False

        self.price_oracle = PriceOracle()
        notifications = NotificationService(email_service=EmailService())
        self.ledger = BalanceLedger(price_oracle=self.price_oracle)
        self.deposit_service = DepositService(
            registry=self.registry, ledger=self.ledger, notifications=notifications
        )
        self.withdrawal_service = WithdrawalService(
            registry=self.registry,
            ledger=self.ledger,
            notifications=notifications,
            price_oracle=self.price_oracle,
        )
        self.registry.log_configured_tokens()
        logger.info("✅ Ledger services ready")
        return True

    async def start_workers(self) -> None:
        symbols = {token.symbol for _, token in self.registry.supported_tokens()}
        await self.price_oracle.warm(symbols)

        self.scheduler = DepositScheduler(
            registry=self.registry,
            deposit_service=self.deposit_service,
            withdrawal_service=self.withdrawal_service,
            ledger=self.ledger,
        )
        self.scheduler.start()

    async def startup_sequence(self) -> bool:
        Config.log_environment_config()
        if not self.initialize_database():
            return False
        if not self.initialize_services():
            return False
        await self.start_workers()
        return True

    async def shutdown(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.shutdown()


async def main() -> None:
    manager = LedgerStartupManager()
    if not await manager.startup_sequence():
        logger.error(f"❌ Startup failed - exiting: {manager.startup_errors}")
        sys.exit(1)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info("🎉 Ledger workers running")
    await stop_event.wait()

    logger.info("👋 Shutdown requested, waiting for in-flight ticks...")
    await manager.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
