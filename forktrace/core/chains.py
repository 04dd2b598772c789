"""Chains whose explorers expose the Etherscan proxy API."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ChainConfig:
    """Configuration for a supported EVM chain."""

    chain_id: int
    name: str
    explorer_url: str
    explorer_api_url: str
    native_currency: str = "ETH"
    is_testnet: bool = False


# ── Chain Registry ───────────────────────────────────────────────────────────

CHAINS: dict[str, ChainConfig] = {
    "ethereum": ChainConfig(
        chain_id=1,
        name="Ethereum Mainnet",
        explorer_url="https://etherscan.io",
        explorer_api_url="https://api.etherscan.io/api",
    ),
    "sepolia": ChainConfig(
        chain_id=11155111,
        name="Sepolia",
        explorer_url="https://sepolia.etherscan.io",
        explorer_api_url="https://api-sepolia.etherscan.io/api",
        is_testnet=True,
    ),
    "polygon": ChainConfig(
        chain_id=137,
        name="Polygon Mainnet",
        explorer_url="https://polygonscan.com",
        explorer_api_url="https://api.polygonscan.com/api",
        native_currency="MATIC",
    ),
    "bsc": ChainConfig(
        chain_id=56,
        name="BNB Smart Chain",
        explorer_url="https://bscscan.com",
        explorer_api_url="https://api.bscscan.com/api",
        native_currency="BNB",
    ),
    "arbitrum": ChainConfig(
        chain_id=42161,
        name="Arbitrum One",
        explorer_url="https://arbiscan.io",
        explorer_api_url="https://api.arbiscan.io/api",
    ),
    "optimism": ChainConfig(
        chain_id=10,
        name="Optimism",
        explorer_url="https://optimistic.etherscan.io",
        explorer_api_url="https://api-optimistic.etherscan.io/api",
    ),
    "base": ChainConfig(
        chain_id=8453,
        name="Base",
        explorer_url="https://basescan.org",
        explorer_api_url="https://api.basescan.org/api",
    ),
}


def get_chain_config(chain_name: str) -> ChainConfig | None:
    """Get chain configuration by name."""
    return CHAINS.get(chain_name.lower())


def get_chain_by_id(chain_id: int) -> ChainConfig | None:
    for chain in CHAINS.values():
        if chain.chain_id == chain_id:
            return chain
    return None
