"""
EVM deposit scanner.

ERC-20 deposits come from eth_getLogs filtered on the Transfer topic with the
deposit address as the indexed recipient. Native deposits come from the
explorer's txlist endpoint, which needs an API key; without one they are not
scanned.

Scanning resumes from a per-chain watermark so each block range is read once
under normal operation. A poll in which any address failed leaves the
watermark where it was and the range is read again next time; the unique
deposit index absorbs the repeats.
"""

import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal, managed_session
from models import ScanWatermark, utcnow
from services.chain_registry import ERC20_TRANSFER_TOPIC, ChainConfig, ChainRegistry
from services.deposit_scanner import DepositCandidate, DepositScanner, ScanResult
from utils.decimal_precision import MonetaryDecimal
from utils.ledger_exceptions import ChainDataError

logger = logging.getLogger(__name__)

NATIVE_OUTPUT_INDEX = -1


def pad_address_topic(address: str) -> str:
    """32-byte topic form of a 20-byte address"""
    return "0x" + "0" * 24 + address.lower().replace("0x", "")


def topic_to_address(topic: str) -> str:
    return "0x" + topic[26:].lower()


class ScanWatermarkStore:
    """Reads and writes the per-chain last scanned block"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def get(self, chain: str) -> Optional[int]:
        with managed_session(self.session_factory) as session:
            row = session.get(ScanWatermark, chain.upper())
            return row.last_scanned_block if row else None

    def advance(self, chain: str, block: int) -> int:
        """Move the watermark forward to block. Never moves it backwards."""
        with managed_session(self.session_factory) as session:
            row = session.execute(
                select(ScanWatermark).where(ScanWatermark.chain == chain.upper()).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                session.add(ScanWatermark(chain=chain.upper(), last_scanned_block=block))
                return block
            if block > row.last_scanned_block:
                row.last_scanned_block = block
                row.updated_at = utcnow()
            return row.last_scanned_block


class EvmDepositScanner(DepositScanner):
    """Transfer-log and native-transfer scanner for Etherscan-family EVM chains"""

    def __init__(
        self,
        chain: ChainConfig,
        registry: ChainRegistry,
        explorer_api_key: Optional[str] = None,
        lookback_blocks: Optional[int] = None,
        max_blocks_per_scan: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(chain, registry, **kwargs)
        if not chain.rpc_url:
            logger.warning(f"⚠️ No RPC URL configured for {chain.chain_id}")
        self.explorer_api_key = (
            explorer_api_key if explorer_api_key is not None else Config.EXPLORER_API_KEYS.get(chain.chain_id)
        )
        self.lookback_blocks = lookback_blocks or Config.INITIAL_SCAN_LOOKBACK_BLOCKS
        self.max_blocks_per_scan = max_blocks_per_scan or Config.MAX_BLOCKS_PER_SCAN

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": 1}
        data = await self._post_json(self.chain.rpc_url, payload)
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise ChainDataError(f"{self.chain_id} RPC {method} failed: {message}")
        if "result" not in data:
            raise ChainDataError(f"{self.chain_id} RPC {method} returned no result")
        return data["result"]

    async def get_current_height(self) -> int:
        result = await self._rpc("eth_blockNumber", [])
        return int(result, 16)

    async def get_transaction_height(self, tx_hash: str) -> Optional[int]:
        """Block holding tx_hash, or None while it is unmined"""
        receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
        if not receipt or not receipt.get("blockNumber"):
            return None
        return int(receipt["blockNumber"], 16)

    def block_range(self, current_height: int, last_scanned_block: Optional[int]):
        """(from_block, to_block) for this poll, or None when already at the tip"""
        if last_scanned_block is None:
            last_scanned_block = max(0, current_height - self.lookback_blocks)
        from_block = last_scanned_block + 1
        to_block = min(current_height, from_block + self.max_blocks_per_scan - 1)
        if from_block > to_block:
            return None
        return from_block, to_block

    async def scan(self, addresses: Sequence[str], last_scanned_block: Optional[int] = None) -> ScanResult:
        result = ScanResult(chain=self.chain_id)
        if not addresses:
            logger.debug(f"No {self.chain_id} deposit addresses to scan")
            return result

        async with self.http_session():
            try:
                current_height = await self.get_current_height()
            except Exception as e:
                result.record_error(None, f"Failed to get {self.chain_id} block number: {e}")
                logger.error(f"❌ Failed to get {self.chain_id} block number: {e}")
                return result

            result.current_height = current_height
            block_range = self.block_range(current_height, last_scanned_block)
            if block_range is None:
                logger.debug(f"{self.chain_id} already scanned up to block {current_height}")
                return result

            result.from_block, result.to_block = block_range
            logger.info(
                f"🔍 Scanning {len(addresses)} {self.chain_id} address(es), "
                f"blocks {result.from_block}-{result.to_block}"
            )
            context = {
                "from_block": result.from_block,
                "to_block": result.to_block,
                "current_height": current_height,
            }
            await self._scan_addresses(addresses, context, result)

        result.addresses_scanned = len(addresses)
        if not result.failed_addresses:
            result.next_watermark = result.to_block
        else:
            logger.warning(
                f"⚠️ {self.chain_id} scan had {len(result.failed_addresses)} failed address(es), "
                f"watermark held at {last_scanned_block}"
            )

        if result.candidates:
            logger.info(
                f"✅ {self.chain_id} scan found {len(result.candidates)} transfer(s): {result.token_breakdown}"
            )
        return result

    async def iter_address_candidates(
        self, address: str, context: Dict[str, Any]
    ) -> AsyncIterator[DepositCandidate]:
        async for candidate in self.iter_token_transfers(address, context):
            yield candidate
        async for candidate in self.iter_native_transfers(address, context):
            yield candidate

    async def iter_token_transfers(
        self, address: str, context: Dict[str, Any]
    ) -> AsyncIterator[DepositCandidate]:
        """Transfer logs of registered contracts whose recipient is address"""
        if not self.chain.scan_contracts:
            return

        logs = await self._rpc("eth_getLogs", [{
            "fromBlock": hex(context["from_block"]),
            "toBlock": hex(context["to_block"]),
            "topics": [ERC20_TRANSFER_TOPIC, None, pad_address_topic(address)],
        }])

        for log in logs or []:
            contract = self.registry.get_scan_contract(self.chain_id, log.get("address", ""))
            if contract is None:
                continue

            topics = log.get("topics") or []
            if len(topics) < 3:
                continue

            raw_value = int(log.get("data") or "0x0", 16)
            if raw_value == 0:
                continue

            block_number = int(log["blockNumber"], 16)
            yield DepositCandidate(
                chain=self.chain_id,
                tx_hash=log["transactionHash"],
                output_index=int(log.get("logIndex") or "0x0", 16),
                from_address=topic_to_address(topics[1]),
                to_address=address.lower(),
                token=contract.symbol,
                amount=MonetaryDecimal.from_base_units(raw_value, contract.decimals),
                block_number=block_number,
                confirmations=max(0, context["current_height"] - block_number),
                token_contract=contract.address.lower(),
                token_display_name=contract.display_name,
                is_custom_token=contract.is_custom,
            )

    async def iter_native_transfers(
        self, address: str, context: Dict[str, Any]
    ) -> AsyncIterator[DepositCandidate]:
        """Successful incoming native-coin transfers from the explorer txlist"""
        native = self.chain.native_token
        if native is None or not self.chain.explorer_api_url:
            return
        if not self.explorer_api_key:
            logger.debug(f"No explorer API key for {self.chain_id}, skipping native transfer scan")
            return

        params = {
            "module": "account",
            "action": "txlist",
            "address": address,
            "startblock": context["from_block"],
            "endblock": context["to_block"],
            "sort": "asc",
            "apikey": self.explorer_api_key,
        }
        data = await self._get_json(self.chain.explorer_api_url, params=params)
        transactions = self._explorer_result(data)

        wanted = address.lower()
        for tx in transactions:
            if (tx.get("to") or "").lower() != wanted:
                continue
            if tx.get("value", "0") == "0" or tx.get("isError", "0") != "0":
                continue

            block_number = int(tx["blockNumber"])
            timestamp = None
            if tx.get("timeStamp"):
                timestamp = datetime.fromtimestamp(int(tx["timeStamp"]), tz=timezone.utc).replace(tzinfo=None)

            yield DepositCandidate(
                chain=self.chain_id,
                tx_hash=tx["hash"],
                output_index=NATIVE_OUTPUT_INDEX,
                from_address=(tx.get("from") or "unknown").lower(),
                to_address=wanted,
                token=native.symbol,
                amount=MonetaryDecimal.from_base_units(tx["value"], native.decimals),
                block_number=block_number,
                confirmations=max(0, context["current_height"] - block_number),
                timestamp=timestamp,
            )

    def _explorer_result(self, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        status = str(data.get("status", ""))
        result = data.get("result")
        if status == "1" and isinstance(result, list):
            return result
        if isinstance(result, list) and not result:
            # "No transactions found"
            return []
        raise ChainDataError(f"{self.chain_id} explorer error: {data.get('message')} {result}")
