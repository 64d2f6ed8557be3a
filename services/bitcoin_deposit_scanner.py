"""
Bitcoin deposit scanner over mempool.space or BlockCypher.

Every output paying one of our addresses is a candidate; the output's vout
index is part of the dedup key, so a transaction paying two deposit
addresses yields two deposits. There is no watermark: address histories are
re-read each poll and the confirmation count is recomputed from the tip.
"""

import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from config import Config
from services.chain_registry import ChainConfig, ChainRegistry
from services.deposit_scanner import DepositCandidate, DepositScanner, ScanResult
from utils.decimal_precision import MonetaryDecimal
from utils.ledger_exceptions import ChainDataError

logger = logging.getLogger(__name__)

PROVIDER_MEMPOOL = "mempool"
PROVIDER_BLOCKCYPHER = "blockcypher"
BLOCKCYPHER_TX_LIMIT = 50
SATOSHI_DECIMALS = 8


def confirmations_from_height(tip_height: int, block_height: Optional[int]) -> int:
    """A transaction in the tip block has one confirmation"""
    if block_height is None or block_height < 0:
        return 0
    return max(0, tip_height - block_height + 1)


def _parse_iso_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed.replace(tzinfo=None)


class BitcoinDepositScanner(DepositScanner):
    """Address-history scanner for Bitcoin"""

    def __init__(
        self,
        chain: ChainConfig,
        registry: ChainRegistry,
        provider: Optional[str] = None,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        request_delay: Optional[float] = None,
        **kwargs,
    ):
        if request_delay is None:
            request_delay = Config.BTC_REQUEST_DELAY_SECONDS
        super().__init__(chain, registry, request_delay=request_delay, **kwargs)
        self.provider = (provider or Config.BTC_PROVIDER).lower()
        if self.provider not in (PROVIDER_MEMPOOL, PROVIDER_BLOCKCYPHER):
            raise ValueError(f"Unsupported Bitcoin provider: {self.provider}")
        self.api_url = (api_url or chain.explorer_api_url or Config.BTC_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else Config.BLOCKCYPHER_API_KEY

    def _token_params(self) -> Dict[str, Any]:
        return {"token": self.api_key} if self.api_key else {}

    async def get_current_height(self) -> int:
        if self.provider == PROVIDER_BLOCKCYPHER:
            data = await self._get_json(self.api_url, params=self._token_params())
            return int(data["height"])
        text = await self._get_text(f"{self.api_url}/blocks/tip/height")
        return int(text.strip())

    async def get_transaction_height(self, tx_hash: str) -> Optional[int]:
        """Block holding tx_hash, or None while it is unconfirmed"""
        if self.provider == PROVIDER_BLOCKCYPHER:
            data = await self._get_json(f"{self.api_url}/txs/{tx_hash}", params=self._token_params())
            height = data.get("block_height")
            return height if height is not None and height >= 0 else None
        status = await self._get_json(f"{self.api_url}/tx/{tx_hash}/status")
        if not status.get("confirmed"):
            return None
        return status.get("block_height")

    async def scan(self, addresses: Sequence[str], last_scanned_block: Optional[int] = None) -> ScanResult:
        result = ScanResult(chain=self.chain_id)
        if not addresses:
            logger.debug("No BTC deposit addresses to scan")
            return result

        async with self.http_session():
            try:
                tip_height = await self.get_current_height()
            except Exception as e:
                result.record_error(None, f"Failed to get BTC tip height: {e}")
                logger.error(f"❌ Failed to get BTC tip height: {e}")
                return result

            result.current_height = tip_height
            logger.info(f"🔍 Scanning {len(addresses)} BTC address(es) via {self.provider} at height {tip_height}")
            await self._scan_addresses(addresses, {"current_height": tip_height}, result)

        result.addresses_scanned = len(addresses)
        if result.candidates:
            logger.info(f"✅ BTC scan found {len(result.candidates)} output(s)")
        return result

    async def iter_address_candidates(
        self, address: str, context: Dict[str, Any]
    ) -> AsyncIterator[DepositCandidate]:
        if self.provider == PROVIDER_BLOCKCYPHER:
            async for candidate in self._iter_blockcypher(address, context["current_height"]):
                yield candidate
        else:
            async for candidate in self._iter_mempool(address, context["current_height"]):
                yield candidate

    async def _iter_mempool(self, address: str, tip_height: int) -> AsyncIterator[DepositCandidate]:
        transactions = await self._get_json(f"{self.api_url}/address/{address}/txs")
        if not isinstance(transactions, list):
            raise ChainDataError(f"Unexpected mempool response for {address}")

        for tx in transactions:
            status = tx.get("status") or {}
            confirmed = bool(status.get("confirmed"))
            block_height = status.get("block_height") if confirmed else None
            confirmations = confirmations_from_height(tip_height, block_height)

            from_address = "unknown"
            vin = tx.get("vin") or []
            if vin:
                prevout = vin[0].get("prevout") or {}
                from_address = prevout.get("scriptpubkey_address") or "unknown"

            timestamp = None
            if status.get("block_time"):
                timestamp = datetime.fromtimestamp(int(status["block_time"]), tz=timezone.utc).replace(tzinfo=None)

            for vout_index, vout in enumerate(tx.get("vout") or []):
                if vout.get("scriptpubkey_address") != address:
                    continue
                satoshis = int(vout.get("value") or 0)
                if satoshis <= 0:
                    continue
                yield DepositCandidate(
                    chain=self.chain_id,
                    tx_hash=tx["txid"],
                    output_index=vout_index,
                    from_address=from_address,
                    to_address=address,
                    token="BTC",
                    amount=MonetaryDecimal.from_base_units(satoshis, SATOSHI_DECIMALS),
                    block_number=block_height,
                    confirmations=confirmations,
                    timestamp=timestamp,
                )

    async def _iter_blockcypher(self, address: str, tip_height: int) -> AsyncIterator[DepositCandidate]:
        params = {"limit": BLOCKCYPHER_TX_LIMIT}
        params.update(self._token_params())
        data = await self._get_json(f"{self.api_url}/addrs/{address}/full", params=params)
        if data.get("error"):
            raise ChainDataError(f"BlockCypher error for {address}: {data['error']}")

        for tx in data.get("txs") or []:
            block_height = tx.get("block_height")
            if block_height is not None and block_height < 0:
                block_height = None
            confirmations = int(tx.get("confirmations") or 0)
            if block_height is not None and not confirmations:
                confirmations = confirmations_from_height(tip_height, block_height)

            input_addresses: List[str] = []
            for tx_input in tx.get("inputs") or []:
                input_addresses.extend(tx_input.get("addresses") or [])
            from_address = input_addresses[0] if input_addresses else "unknown"

            for vout_index, output in enumerate(tx.get("outputs") or []):
                if address not in (output.get("addresses") or []):
                    continue
                satoshis = int(output.get("value") or 0)
                if satoshis <= 0:
                    continue
                yield DepositCandidate(
                    chain=self.chain_id,
                    tx_hash=tx["hash"],
                    output_index=vout_index,
                    from_address=from_address,
                    to_address=address,
                    token="BTC",
                    amount=MonetaryDecimal.from_base_units(satoshis, SATOSHI_DECIMALS),
                    block_number=block_height,
                    confirmations=confirmations,
                    timestamp=_parse_iso_timestamp(tx.get("confirmed")),
                )
