"""
Deposit scanner contract shared by the EVM and Bitcoin variants.

A scanner turns "the deposit addresses of one chain" into a finite stream of
DepositCandidate records per poll. Scanners only talk to the network; the
deposit service owns every database write.
"""

import aiohttp
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from config import Config
from services.chain_registry import ChainConfig, ChainRegistry
from utils.ledger_exceptions import ChainDataError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DepositCandidate:
    """Normalized incoming transfer seen on chain"""
    chain: str
    tx_hash: str
    output_index: int
    from_address: str
    to_address: str
    token: str
    amount: Decimal
    block_number: Optional[int]
    confirmations: int
    timestamp: Optional[datetime] = None
    token_contract: Optional[str] = None
    token_display_name: Optional[str] = None
    is_custom_token: bool = False

    @property
    def dedup_key(self):
        return (self.chain, self.tx_hash, self.output_index)


@dataclass
class ScanResult:
    """Outcome of one scanner poll for one chain"""
    chain: str
    addresses_scanned: int = 0
    current_height: Optional[int] = None
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    candidates: List[DepositCandidate] = field(default_factory=list)
    failed_addresses: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    # Block the watermark may advance to; None keeps the stored value
    next_watermark: Optional[int] = None

    @property
    def token_breakdown(self) -> Dict[str, int]:
        counts = Counter(
            f"{c.token} (Platform)" if c.is_custom_token else c.token for c in self.candidates
        )
        return dict(counts)

    def record_error(self, address: Optional[str], message: str) -> None:
        if address and address not in self.failed_addresses:
            self.failed_addresses.append(address)
        self.errors.append(message)


class DepositScanner(ABC):
    """Base class: HTTP plumbing plus the per-address error isolation loop"""

    def __init__(
        self,
        chain: ChainConfig,
        registry: ChainRegistry,
        request_delay: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.chain = chain
        self.registry = registry
        self.request_delay = Config.SCANNER_REQUEST_DELAY_SECONDS if request_delay is None else request_delay
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.HTTP_TIMEOUT_SECONDS)
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def chain_id(self) -> str:
        return self.chain.chain_id

    @abstractmethod
    async def get_current_height(self) -> int:
        """Current chain tip height"""

    @abstractmethod
    async def get_transaction_height(self, tx_hash: str) -> Optional[int]:
        """Inclusion height of a transaction, None while unconfirmed"""

    @abstractmethod
    def iter_address_candidates(
        self, address: str, context: Dict[str, Any]
    ) -> AsyncIterator[DepositCandidate]:
        """Lazy candidates for one address within the poll described by context"""

    @abstractmethod
    async def scan(self, addresses: Sequence[str], last_scanned_block: Optional[int] = None) -> ScanResult:
        """One full poll over addresses"""

    async def _scan_addresses(
        self, addresses: Sequence[str], context: Dict[str, Any], result: ScanResult
    ) -> None:
        """Collect candidates address by address; a failing address never aborts the poll"""
        for index, address in enumerate(addresses):
            collected: List[DepositCandidate] = []
            try:
                async for candidate in self.iter_address_candidates(address, context):
                    collected.append(candidate)
            except (ChainDataError, aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError) as e:
                message = f"Error scanning {self.chain_id} address {address}: {e}"
                result.record_error(address, message)
                logger.error(f"❌ {message}")
                continue
            result.candidates.extend(collected)

            if self.request_delay and index < len(addresses) - 1:
                await asyncio.sleep(self.request_delay)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def http_session(self):
        """Reuse one ClientSession for the duration of a poll"""
        if self._session is not None and not self._session.closed:
            yield self._session
            return
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            self._session = session
            try:
                yield session
            finally:
                self._session = None

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        async with self.http_session() as session:
            async with session.get(url, params=params) as response:
                if response.status != 200:
                    raise ChainDataError(f"GET {url} returned HTTP {response.status}")
                return await response.json(content_type=None)

    async def _get_text(self, url: str, params: Optional[Dict[str, Any]] = None) -> str:
        async with self.http_session() as session:
            async with session.get(url, params=params) as response:
                if response.status != 200:
                    raise ChainDataError(f"GET {url} returned HTTP {response.status}")
                return await response.text()

    async def _post_json(self, url: str, payload: Dict[str, Any]) -> Any:
        async with self.http_session() as session:
            async with session.post(url, json=payload) as response:
                if response.status != 200:
                    raise ChainDataError(f"POST {url} returned HTTP {response.status}")
                return await response.json(content_type=None)
