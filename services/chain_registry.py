"""
Chain Registry
==============

Static description of every supported chain and token: confirmation
thresholds, minimums, withdrawal fees, explorer URL templates, scanner token
contracts and worker poll intervals. New chains are added here as data.
"""

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from config import Config
from utils.ledger_exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# ERC20 Transfer(address,address,uint256) event topic
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

DEFAULT_POLL_INTERVAL_SECONDS = 30
FAST_CHAIN_POLL_INTERVAL_SECONDS = 3


class ChainFamily(Enum):
    """Address format / data-source family"""
    EVM = "EVM"
    TRON = "TRON"
    BITCOIN = "BITCOIN"
    SOLANA = "SOLANA"


@dataclass(frozen=True)
class TokenConfig:
    """Ledger-facing token: what can be deposited and withdrawn on a chain"""
    symbol: str
    name: str
    decimals: int
    min_deposit: Decimal
    min_withdrawal: Decimal
    withdrawal_fee: Decimal
    contract_address: Optional[str] = None
    is_native: bool = False


@dataclass(frozen=True)
class TokenContract:
    """
    Contract the scanner recognises in Transfer logs.

    Several contracts may share a symbol (official and platform USDT); they
    all credit the same balance.
    """
    address: str
    decimals: int
    symbol: str
    display_name: str
    is_custom: bool = False


@dataclass(frozen=True)
class ChainConfig:
    chain_id: str
    name: str
    display_name: str
    family: ChainFamily
    native_currency: str
    confirmations: int
    block_time: float
    explorer_url: str
    explorer_name: str
    explorer_api_url: Optional[str] = None
    rpc_url: Optional[str] = None
    tokens: Tuple[TokenConfig, ...] = ()
    scan_contracts: Tuple[TokenContract, ...] = ()
    poll_interval: int = DEFAULT_POLL_INTERVAL_SECONDS
    network: str = "mainnet"

    @property
    def native_token(self) -> Optional[TokenConfig]:
        for token in self.tokens:
            if token.is_native:
                return token
        return None


def _d(value: str) -> Decimal:
    return Decimal(value)


# Platform token contracts
CUSTOM_CONTRACTS = {
    "USCT": {"ERC20": "0xd32F83a9f25388572DAF835B55cAE37aF2E0140f"},
    "USDT": {"ERC20": "0xBFc76b063E03D6E93d2737563bb0a7422c80BC2A"},
}


def _poll_interval(chain_id: str, block_time: float) -> int:
    """Roughly one block, clamped between the fast-chain floor and the default ceiling"""
    override = Config.chain_poll_interval_override(chain_id)
    if override:
        return override
    if block_time <= FAST_CHAIN_POLL_INTERVAL_SECONDS:
        return FAST_CHAIN_POLL_INTERVAL_SECONDS
    return int(min(max(block_time, FAST_CHAIN_POLL_INTERVAL_SECONDS), DEFAULT_POLL_INTERVAL_SECONDS))


def _default_chains() -> List[ChainConfig]:
    return [
        ChainConfig(
            chain_id="ETH",
            name="ethereum",
            display_name="Ethereum (ERC20)",
            family=ChainFamily.EVM,
            native_currency="ETH",
            confirmations=12,
            block_time=12,
            explorer_url="https://etherscan.io",
            explorer_name="Etherscan",
            explorer_api_url="https://api.etherscan.io/api",
            rpc_url=Config.RPC_URLS["ETH"],
            tokens=(
                TokenConfig("ETH", "Ethereum", 18, _d("0.001"), _d("0.01"), _d("0.005"), is_native=True),
                TokenConfig("USCT", "USCT Token", 18, _d("1"), _d("10"), _d("5"),
                            contract_address=CUSTOM_CONTRACTS["USCT"]["ERC20"]),
                TokenConfig("USDT", "Tether USD", 6, _d("1"), _d("10"), _d("5"),
                            contract_address=CUSTOM_CONTRACTS["USDT"]["ERC20"]),
                TokenConfig("USDC", "USD Coin", 6, _d("1"), _d("10"), _d("5"),
                            contract_address="0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"),
            ),
            scan_contracts=(
                TokenContract("0xdac17f958d2ee523a2206206994597c13d831ec7", 6, "USDT", "Tether USD (Official)"),
                TokenContract("0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48", 6, "USDC", "USD Coin (Official)"),
                TokenContract("0xbfc76b063e03d6e93d2737563bb0a7422c80bc2a", 6, "USDT", "USDT (Platform)", True),
                TokenContract("0xd32f83a9f25388572daf835b55cae37af2e0140f", 18, "USCT",
                              "USCT (Platform Stablecoin)", True),
            ),
            poll_interval=_poll_interval("ETH", 12),
        ),
        ChainConfig(
            chain_id="TRX",
            name="tron",
            display_name="TRON (TRC20)",
            family=ChainFamily.TRON,
            native_currency="TRX",
            confirmations=20,
            block_time=3,
            explorer_url="https://tronscan.org",
            explorer_name="Tronscan",
            explorer_api_url="https://apilist.tronscanapi.com/api",
            rpc_url=Config.RPC_URLS["TRX"],
            tokens=(
                TokenConfig("TRX", "TRON", 6, _d("1"), _d("10"), _d("1"), is_native=True),
                TokenConfig("USCT", "USCT Token", 6, _d("1"), _d("10"), _d("1")),
                TokenConfig("USDT", "Tether USD", 6, _d("1"), _d("10"), _d("1"),
                            contract_address="TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"),
            ),
            poll_interval=_poll_interval("TRX", 3),
        ),
        ChainConfig(
            chain_id="BSC",
            name="bsc",
            display_name="BNB Smart Chain (BEP20)",
            family=ChainFamily.EVM,
            native_currency="BNB",
            confirmations=15,
            block_time=3,
            explorer_url="https://bscscan.com",
            explorer_name="BscScan",
            explorer_api_url="https://api.bscscan.com/api",
            rpc_url=Config.RPC_URLS["BSC"],
            tokens=(
                TokenConfig("BNB", "BNB", 18, _d("0.01"), _d("0.1"), _d("0.0005"), is_native=True),
                TokenConfig("USCT", "USCT Token", 18, _d("1"), _d("10"), _d("0.5")),
                TokenConfig("USDT", "Tether USD", 18, _d("1"), _d("10"), _d("0.5"),
                            contract_address="0x55d398326f99059fF775485246999027B3197955"),
                TokenConfig("USDC", "USD Coin", 18, _d("1"), _d("10"), _d("0.5"),
                            contract_address="0x8ac76a51cc950d9822d68b83fe1ad97b32cd580d"),
            ),
            scan_contracts=(
                TokenContract("0x55d398326f99059ff775485246999027b3197955", 18, "USDT", "Tether USD (BSC)"),
                TokenContract("0x8ac76a51cc950d9822d68b83fe1ad97b32cd580d", 18, "USDC", "USD Coin (BSC)"),
            ),
            poll_interval=_poll_interval("BSC", 3),
        ),
        ChainConfig(
            chain_id="SOL",
            name="solana",
            display_name="Solana (SPL)",
            family=ChainFamily.SOLANA,
            native_currency="SOL",
            confirmations=1,
            block_time=0.4,
            explorer_url="https://solscan.io",
            explorer_name="Solscan",
            rpc_url=Config.RPC_URLS["SOL"],
            tokens=(
                TokenConfig("SOL", "Solana", 9, _d("0.01"), _d("0.1"), _d("0.01"), is_native=True),
            ),
            poll_interval=_poll_interval("SOL", 0.4),
        ),
        ChainConfig(
            chain_id="BTC",
            name="bitcoin",
            display_name="Bitcoin",
            family=ChainFamily.BITCOIN,
            native_currency="BTC",
            confirmations=Config.BTC_CONFIRMATIONS,
            block_time=600,
            explorer_url="https://blockstream.info",
            explorer_name="Blockstream",
            explorer_api_url=Config.BTC_API_URL,
            tokens=(
                TokenConfig("BTC", "Bitcoin", 8, _d("0.0001"), _d("0.001"), _d("0.0005"), is_native=True),
            ),
            poll_interval=_poll_interval("BTC", 600),
        ),
    ] + _scan_only_evm_chains()


def _stable_tokens(fee: str) -> Tuple[TokenConfig, ...]:
    return (
        TokenConfig("USDT", "Tether USD", 6, _d("1"), _d("10"), _d(fee)),
        TokenConfig("USDC", "USD Coin", 6, _d("1"), _d("10"), _d(fee)),
    )


def _scan_only_evm_chains() -> List[ChainConfig]:
    """L2 / sidechain networks where only the official stablecoins are accepted"""
    specs = [
        ("ARB", "arbitrum", "Arbitrum One", "ETH", 2, "https://arbiscan.io", "Arbiscan",
         "https://api.arbiscan.io/api",
         "0xfd086bc7cd5c481dcc9c85ebe478a1c0b69fcbb9", "0xaf88d065e77c8cc2239327c5edb3a432268e5831", "Arbitrum"),
        ("MATIC", "polygon", "Polygon", "MATIC", 2, "https://polygonscan.com", "PolygonScan",
         "https://api.polygonscan.com/api",
         "0xc2132d05d31c914a87c6611c10748aeb04b58e8f", "0x2791bca1f2de4661ed88a30c99a7a9449aa84174", "Polygon"),
        ("AVAX", "avalanche", "Avalanche C-Chain", "AVAX", 2, "https://snowtrace.io", "Snowtrace",
         "https://api.snowtrace.io/api",
         "0x9702230a8ea53601f5cd2dc00fdbc13d4df4a8c7", "0xb97ef9ef8734c71904d8002f8b6bc66dd9c48a6e", "Avalanche"),
        ("OP", "optimism", "Optimism", "ETH", 2, "https://optimistic.etherscan.io", "Optimism Explorer",
         "https://api-optimistic.etherscan.io/api",
         "0x94b008aa00579c1307b0ef2c499ad98a8ce58e58", "0x7f5c764cbc14f9669b88837ca1490cca17c31607", "Optimism"),
    ]
    chains = []
    for (chain_id, name, display, native, block_time, explorer, explorer_name,
         api_url, usdt, usdc, label) in specs:
        chains.append(ChainConfig(
            chain_id=chain_id,
            name=name,
            display_name=display,
            family=ChainFamily.EVM,
            native_currency=native,
            confirmations=20,
            block_time=block_time,
            explorer_url=explorer,
            explorer_name=explorer_name,
            explorer_api_url=api_url,
            rpc_url=Config.RPC_URLS[chain_id],
            tokens=_stable_tokens("1"),
            scan_contracts=(
                TokenContract(usdt, 6, "USDT", f"Tether USD ({label})"),
                TokenContract(usdc, 6, "USDC", f"USD Coin ({label})"),
            ),
            poll_interval=_poll_interval(chain_id, block_time),
        ))
    return chains


class ChainRegistry:
    """Read-only lookup over ChainConfig records. Unknown keys raise ConfigurationError."""

    def __init__(self, chains: Optional[Iterable[ChainConfig]] = None):
        chain_list = list(chains) if chains is not None else _default_chains()
        self._chains: Dict[str, ChainConfig] = {}
        for chain in chain_list:
            if chain.chain_id in self._chains:
                raise ConfigurationError(f"Duplicate chain id {chain.chain_id}")
            self._chains[chain.chain_id] = chain

    def get_chain(self, chain_id: str) -> ChainConfig:
        key = (chain_id or "").upper()
        chain = self._chains.get(key)
        if chain is None:
            raise ConfigurationError(f"Unknown chain: {chain_id}")
        return chain

    def get_token(self, chain_id: str, symbol: str) -> TokenConfig:
        chain = self.get_chain(chain_id)
        wanted = (symbol or "").upper()
        for token in chain.tokens:
            if token.symbol == wanted:
                return token
        raise ConfigurationError(f"Unknown token {symbol} on chain {chain.chain_id}")

    def has_chain(self, chain_id: str) -> bool:
        return (chain_id or "").upper() in self._chains

    def chains(self) -> List[ChainConfig]:
        return list(self._chains.values())

    def enabled_chains(self, enabled: Optional[Iterable[str]] = None) -> List[ChainConfig]:
        """Resolve the configured ENABLED_CHAINS list. Unknown ids are a ConfigurationError."""
        wanted = list(enabled) if enabled is not None else Config.ENABLED_CHAINS
        return [self.get_chain(chain_id) for chain_id in wanted]

    def supported_tokens(self) -> List[Tuple[str, TokenConfig]]:
        return [(chain.chain_id, token) for chain in self._chains.values() for token in chain.tokens]

    def get_scan_contract(self, chain_id: str, contract_address: str) -> Optional[TokenContract]:
        """Scanner contract for a Transfer log, or None when the contract is not ours"""
        chain = self.get_chain(chain_id)
        wanted = (contract_address or "").lower()
        for contract in chain.scan_contracts:
            if contract.address.lower() == wanted:
                return contract
        return None

    def get_token_by_contract(self, contract_address: str) -> Tuple[str, TokenConfig]:
        """Find (chain_id, token) for a contract address across all chains"""
        wanted = (contract_address or "").lower()
        for chain in self._chains.values():
            for token in chain.tokens:
                if token.contract_address and token.contract_address.lower() == wanted:
                    return chain.chain_id, token
            for contract in chain.scan_contracts:
                if contract.address.lower() == wanted:
                    return chain.chain_id, self.get_token(chain.chain_id, contract.symbol)
        raise ConfigurationError(f"Unknown token contract: {contract_address}")

    def explorer_tx_url(self, chain_id: str, tx_hash: str) -> str:
        chain = self.get_chain(chain_id)
        if chain.family == ChainFamily.TRON:
            return f"{chain.explorer_url}/#/transaction/{tx_hash}"
        return f"{chain.explorer_url}/tx/{tx_hash}"

    def explorer_address_url(self, chain_id: str, address: str) -> str:
        chain = self.get_chain(chain_id)
        if chain.family == ChainFamily.TRON:
            return f"{chain.explorer_url}/#/address/{address}"
        if chain.family == ChainFamily.SOLANA:
            return f"{chain.explorer_url}/account/{address}"
        return f"{chain.explorer_url}/address/{address}"

    def with_overrides(self, chain_id: str, **changes) -> "ChainRegistry":
        """Copy of the registry with one chain's fields replaced"""
        target = self.get_chain(chain_id)
        updated = [replace(target, **changes) if c.chain_id == target.chain_id else c for c in self._chains.values()]
        return ChainRegistry(updated)

    def log_configured_tokens(self) -> None:
        logger.info("🪙 Configured tokens for deposit detection:")
        for chain in self._chains.values():
            symbols = ", ".join(token.symbol for token in chain.tokens)
            logger.info(
                f"   {chain.chain_id}: {symbols} | {chain.confirmations} confirmations | "
                f"poll every {chain.poll_interval}s"
            )
            for contract in chain.scan_contracts:
                tag = "[PLATFORM]" if contract.is_custom else "[OFFICIAL]"
                logger.info(f"      {contract.symbol} {tag} {contract.display_name}: {contract.address}")


_default_registry: Optional[ChainRegistry] = None


def get_chain_registry() -> ChainRegistry:
    """Process-wide registry built from the default chain table"""
    global _default_registry
    if _default_registry is None:
        _default_registry = ChainRegistry()
    return _default_registry
