"""Withdrawal destination address format checks per chain family"""

import re
import logging
from typing import Optional

from services.chain_registry import ChainFamily

logger = logging.getLogger(__name__)

ADDRESS_PATTERNS = {
    ChainFamily.EVM: re.compile(r"^0x[a-fA-F0-9]{40}$"),
    ChainFamily.TRON: re.compile(r"^T[a-zA-Z0-9]{33}$"),
    ChainFamily.BITCOIN: re.compile(r"^(1|3|bc1)[a-zA-Z0-9]{25,62}$"),
    ChainFamily.SOLANA: re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$"),
}

ADDRESS_LABELS = {
    ChainFamily.EVM: "EVM",
    ChainFamily.TRON: "TRON",
    ChainFamily.BITCOIN: "Bitcoin",
    ChainFamily.SOLANA: "Solana",
}


def is_valid_address(family: ChainFamily, address: Optional[str]) -> bool:
    """True when address matches the family's format"""
    if not address:
        return False
    pattern = ADDRESS_PATTERNS.get(family)
    if pattern is None:
        logger.warning(f"⚠️ No address pattern for chain family {family}")
        return False
    return bool(pattern.match(address.strip()))


def normalize_address(family: ChainFamily, address: str) -> str:
    """
    Canonical stored form. EVM hex is case-insensitive and stored lower-case;
    base58 and bech32 addresses keep their case.
    """
    address = address.strip()
    if family == ChainFamily.EVM:
        return address.lower()
    return address


def describe_address_format(family: ChainFamily) -> str:
    return f"Invalid {ADDRESS_LABELS.get(family, family.value)} address format"
