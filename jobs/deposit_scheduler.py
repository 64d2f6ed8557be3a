"""
Deposit Workers - per-chain scanning plus shared maintenance jobs

Jobs:
1. Chain scan (one per enabled chain) - every chain's registry poll interval
2. Confirmation refresh - open deposits and broadcast withdrawals, every 30s
3. USD value refresh - advisory balance valuation, every 5 minutes
4. Notification cleanup - read notifications past retention, daily

Each job runs with max_instances=1 and coalesce=True: a slow chain never
overlaps itself and never holds up another chain's job.
"""

import aiohttp
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Set

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.balance_ledger import BalanceLedger
from services.bitcoin_deposit_scanner import BitcoinDepositScanner
from services.chain_registry import ChainConfig, ChainFamily, ChainRegistry
from services.deposit_scanner import DepositScanner
from services.deposit_service import DepositService
from services.evm_deposit_scanner import EvmDepositScanner, ScanWatermarkStore
from services.withdrawal_service import WithdrawalService
from utils.background_task_runner import run_io_task
from utils.ledger_exceptions import ChainDataError

logger = logging.getLogger(__name__)


def build_scanner(chain: ChainConfig, registry: ChainRegistry) -> Optional[DepositScanner]:
    """Scanner for the chain's family, or None where no data source is wired"""
    if chain.family == ChainFamily.EVM:
        return EvmDepositScanner(chain, registry)
    if chain.family == ChainFamily.BITCOIN:
        return BitcoinDepositScanner(chain, registry)
    return None


class DepositScheduler:
    """Owns the AsyncIOScheduler and the scanner instances"""

    def __init__(
        self,
        registry: ChainRegistry,
        deposit_service: DepositService,
        withdrawal_service: WithdrawalService,
        ledger: BalanceLedger,
        watermarks: Optional[ScanWatermarkStore] = None,
        scanners: Optional[Dict[str, DepositScanner]] = None,
        enabled_chains: Optional[Iterable[str]] = None,
    ):
        self.registry = registry
        self.deposit_service = deposit_service
        self.withdrawal_service = withdrawal_service
        self.ledger = ledger
        self.watermarks = watermarks or ScanWatermarkStore(deposit_service.session_factory)

        if scanners is None:
            scanners = {}
            for chain in registry.enabled_chains(enabled_chains):
                scanner = build_scanner(chain, registry)
                if scanner is None:
                    logger.warning(f"⚠️ No deposit scanner for {chain.chain_id} ({chain.family.value}), not polling")
                    continue
                scanners[chain.chain_id] = scanner
        self.scanners = scanners

        self._in_flight: Set[asyncio.Task] = set()

        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,  # Prevent job pileup
                "max_instances": 1,  # Single instance enforcement
                "misfire_grace_time": Config.SCHEDULER_MISFIRE_GRACE_SECONDS,
            },
            timezone="UTC",
        )

    def setup_jobs(self) -> None:
        for chain_id in self.scanners:
            chain = self.registry.get_chain(chain_id)
            self.scheduler.add_job(
                self.run_chain_scan,
                trigger=IntervalTrigger(seconds=chain.poll_interval),
                args=[chain_id],
                id=f"deposit_scan_{chain_id.lower()}",
                name=f"🔍 Deposit Scan - {chain.display_name}",
                next_run_time=datetime.now(),
                replace_existing=True,
            )
            logger.info(f"✅ {chain_id} deposit scan scheduled every {chain.poll_interval}s")

        self.scheduler.add_job(
            self.run_confirmation_refresh,
            trigger=IntervalTrigger(seconds=Config.CONFIRMATION_REFRESH_INTERVAL_SECONDS),
            id="confirmation_refresh",
            name="⏱️ Confirmation Refresh - Deposits & Withdrawals",
            replace_existing=True,
        )
        logger.info(f"✅ Confirmation refresh scheduled every {Config.CONFIRMATION_REFRESH_INTERVAL_SECONDS}s")

        self.scheduler.add_job(
            self.run_usd_value_refresh,
            trigger=IntervalTrigger(seconds=Config.USD_VALUE_REFRESH_INTERVAL_SECONDS),
            id="usd_value_refresh",
            name="💱 USD Value Refresh - Balance Valuation",
            replace_existing=True,
        )
        logger.info(f"✅ USD value refresh scheduled every {Config.USD_VALUE_REFRESH_INTERVAL_SECONDS}s")

        self.scheduler.add_job(
            self.run_notification_cleanup,
            trigger=IntervalTrigger(hours=24),
            id="notification_cleanup",
            name="🧹 Notification Cleanup",
            replace_existing=True,
        )

        jobs = self.scheduler.get_jobs()
        logger.info(f"📋 {len(jobs)} deposit worker job(s) registered")

    def start(self) -> None:
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 Deposit scheduler started")

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop scheduling new ticks, let running ticks finish, then stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.pause()

        running = [task for task in self._in_flight if not task.done()]
        if running:
            logger.info(f"⏳ Waiting for {len(running)} in-flight tick(s) to finish")
            done, pending = await asyncio.wait(running, timeout=timeout)
            if pending:
                logger.warning(f"⚠️ {len(pending)} tick(s) still running after {timeout}s")

        if self.scheduler.running:
            # AsyncIOExecutor cannot block here; in-flight work was awaited above
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Deposit scheduler stopped")

    def _track_current_tick(self) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def run_chain_scan(self, chain_id: str) -> Dict[str, Any]:
        """One scanner tick: network reads first, then one DB transaction per candidate"""
        self._track_current_tick()
        scanner = self.scanners[chain_id]
        stats: Dict[str, Any] = {"chain": chain_id, "candidates": 0, "watermark": None, "errors": []}

        try:
            addresses = await run_io_task(self.deposit_service.get_deposit_addresses, chain_id)
            last_scanned = None
            if isinstance(scanner, EvmDepositScanner):
                last_scanned = await run_io_task(self.watermarks.get, chain_id)

            result = await scanner.scan(addresses, last_scanned)
            stats["candidates"] = len(result.candidates)
            stats["errors"].extend(result.errors)

            summary = await self.deposit_service.process_candidates(result.candidates)
            stats["errors"].extend(summary.errors)

            if result.next_watermark is not None:
                if summary.failed:
                    logger.warning(
                        f"⚠️ {chain_id}: {summary.failed} deposit(s) failed to persist, "
                        f"watermark stays at {last_scanned}"
                    )
                else:
                    stats["watermark"] = await run_io_task(self.watermarks.advance, chain_id, result.next_watermark)
        except Exception as e:
            logger.error(f"❌ {chain_id} deposit scan tick failed: {e}", exc_info=True)
            stats["errors"].append(str(e))

        return stats

    async def run_confirmation_refresh(self) -> Dict[str, Dict[str, int]]:
        """Recompute confirmations for every scanned chain from its current tip"""
        self._track_current_tick()
        results: Dict[str, Dict[str, int]] = {}
        for chain_id, scanner in self.scanners.items():
            # Tip and per-withdrawal lookups share one connection pool per chain
            async with scanner.http_session():
                refreshed = await self._refresh_chain(chain_id, scanner)
            if refreshed is not None:
                results[chain_id] = refreshed
        return results

    async def _refresh_chain(self, chain_id: str, scanner: DepositScanner) -> Optional[Dict[str, int]]:
        try:
            height = await scanner.get_current_height()
        except (ChainDataError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"❌ Could not read {chain_id} tip for confirmation refresh: {e}")
            return None

        deposits = await self.deposit_service.refresh_confirmations(chain_id, height)
        withdrawals = await self.withdrawal_service.refresh_confirmations(
            chain_id, height, self._tx_height_lookup(scanner)
        )
        if deposits or withdrawals:
            logger.info(
                f"⏱️ {chain_id} at height {height}: {deposits} deposit(s), "
                f"{withdrawals} withdrawal(s) completed"
            )
        return {"deposits_completed": deposits, "withdrawals_completed": withdrawals}

    @staticmethod
    def _tx_height_lookup(scanner: DepositScanner):
        async def lookup(tx_hash: str) -> Optional[int]:
            try:
                return await scanner.get_transaction_height(tx_hash)
            except (ChainDataError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                logger.warning(f"⚠️ Could not look up {scanner.chain_id} transaction {tx_hash}: {e}")
                return None
        return lookup

    async def run_usd_value_refresh(self) -> int:
        self._track_current_tick()
        try:
            return await self.ledger.refresh_usd_values()
        except Exception as e:
            logger.error(f"❌ USD value refresh failed: {e}", exc_info=True)
            return 0

    async def run_notification_cleanup(self) -> int:
        self._track_current_tick()
        return await run_io_task(self.deposit_service.notifications.delete_old_notifications)
