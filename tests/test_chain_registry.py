"""
Chain registry lookups: chains, tokens, scanner contracts and explorer links.
"""

from decimal import Decimal

import pytest

from services.chain_registry import ChainFamily, ChainRegistry, get_chain_registry
from utils.ledger_exceptions import ConfigurationError


class TestChainLookup:

    def test_lookup_is_case_insensitive(self, registry):
        assert registry.get_chain("eth").chain_id == "ETH"
        assert registry.has_chain("btc")
        assert not registry.has_chain("DOGE")

    def test_unknown_chain(self, registry):
        with pytest.raises(ConfigurationError, match="Unknown chain"):
            registry.get_chain("DOGE")

    @pytest.mark.parametrize("chain_id,confirmations", [
        ("ETH", 12), ("TRX", 20), ("BSC", 15), ("SOL", 1), ("BTC", 3),
        ("ARB", 20), ("MATIC", 20), ("AVAX", 20), ("OP", 20),
    ])
    def test_confirmation_thresholds(self, registry, chain_id, confirmations):
        assert registry.get_chain(chain_id).confirmations == confirmations

    def test_families(self, registry):
        assert registry.get_chain("BSC").family == ChainFamily.EVM
        assert registry.get_chain("TRX").family == ChainFamily.TRON
        assert registry.get_chain("BTC").family == ChainFamily.BITCOIN
        assert registry.get_chain("SOL").family == ChainFamily.SOLANA

    def test_poll_interval_tracks_block_time(self, registry):
        assert registry.get_chain("SOL").poll_interval == 3
        assert registry.get_chain("ETH").poll_interval == 12
        assert registry.get_chain("BTC").poll_interval == 30

    def test_enabled_chains(self, registry):
        assert [c.chain_id for c in registry.enabled_chains(["btc", "ETH"])] == ["BTC", "ETH"]
        with pytest.raises(ConfigurationError):
            registry.enabled_chains(["ETH", "XRP"])

    def test_duplicate_chain_rejected(self, registry):
        eth = registry.get_chain("ETH")
        with pytest.raises(ConfigurationError, match="Duplicate chain id"):
            ChainRegistry([eth, eth])

    def test_shared_default_registry(self):
        assert get_chain_registry() is get_chain_registry()


class TestTokenLookup:
    """Ledger tokens with their limits and fees"""

    def test_native_eth(self, registry):
        eth = registry.get_token("ETH", "eth")
        assert eth.is_native
        assert eth.decimals == 18
        assert eth.min_deposit == Decimal("0.001")
        assert eth.min_withdrawal == Decimal("0.01")
        assert eth.withdrawal_fee == Decimal("0.005")
        assert registry.get_chain("ETH").native_token is eth

    def test_stablecoin_decimals_differ_by_chain(self, registry):
        assert registry.get_token("ETH", "USDT").decimals == 6
        assert registry.get_token("BSC", "USDT").decimals == 18

    def test_bitcoin_limits(self, registry):
        btc = registry.get_token("BTC", "BTC")
        assert btc.decimals == 8
        assert btc.min_deposit == Decimal("0.0001")
        assert btc.withdrawal_fee == Decimal("0.0005")

    def test_scan_only_chains_have_no_native_token(self, registry):
        assert registry.get_chain("ARB").native_token is None
        assert {t.symbol for t in registry.get_chain("ARB").tokens} == {"USDT", "USDC"}

    def test_unknown_token(self, registry):
        with pytest.raises(ConfigurationError, match="Unknown token DOGE on chain ETH"):
            registry.get_token("ETH", "DOGE")

    def test_supported_tokens(self, registry):
        pairs = {(chain_id, token.symbol) for chain_id, token in registry.supported_tokens()}
        assert ("ETH", "USCT") in pairs
        assert ("BTC", "BTC") in pairs
        assert ("OP", "USDC") in pairs


class TestScanContracts:
    """Official and platform contracts credit the same symbol"""

    def test_official_and_platform_usdt(self, registry):
        official = registry.get_scan_contract("ETH", "0xDAC17F958D2EE523A2206206994597C13D831EC7")
        platform = registry.get_scan_contract("ETH", "0xbfc76b063e03d6e93d2737563bb0a7422c80bc2a")

        assert official.symbol == platform.symbol == "USDT"
        assert not official.is_custom
        assert platform.is_custom

    def test_unregistered_contract(self, registry):
        assert registry.get_scan_contract("ETH", "0x" + "ee" * 20) is None

    def test_token_by_contract(self, registry):
        chain_id, token = registry.get_token_by_contract("0xdac17f958d2ee523a2206206994597c13d831ec7")
        assert (chain_id, token.symbol) == ("ETH", "USDT")

        chain_id, token = registry.get_token_by_contract("0x55d398326f99059ff775485246999027b3197955")
        assert (chain_id, token.decimals) == ("BSC", 18)

        with pytest.raises(ConfigurationError):
            registry.get_token_by_contract("0x" + "ee" * 20)


class TestExplorerLinks:

    def test_tx_urls(self, registry):
        assert registry.explorer_tx_url("ETH", "0xabc") == "https://etherscan.io/tx/0xabc"
        assert registry.explorer_tx_url("TRX", "abc").endswith("/#/transaction/abc")
        assert registry.explorer_tx_url("BTC", "abc") == "https://blockstream.info/tx/abc"

    def test_address_urls(self, registry):
        assert registry.explorer_address_url("SOL", "Abc").endswith("/account/Abc")
        assert registry.explorer_address_url("TRX", "Tabc").endswith("/#/address/Tabc")
        assert registry.explorer_address_url("BSC", "0xabc").endswith("/address/0xabc")


class TestOverrides:

    def test_override_leaves_original_untouched(self, registry):
        quick = registry.with_overrides("eth", confirmations=1)

        assert quick.get_chain("ETH").confirmations == 1
        assert registry.get_chain("ETH").confirmations == 12
        assert quick.get_chain("BSC") == registry.get_chain("BSC")
