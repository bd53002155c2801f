"""
Chains supported for tipping and relaying.
"""

from dataclasses import dataclass
from typing import Optional

from .config import APECHAIN_ID


@dataclass(frozen=True)
class Chain:
    """A supported EVM chain."""

    id: int
    name: str
    native_symbol: str
    testnet: bool = False


ETHEREUM = Chain(1, "Ethereum", "ETH")
OPTIMISM = Chain(10, "Optimism", "ETH")
BSC = Chain(56, "BSC", "BNB")
POLYGON = Chain(137, "Polygon", "POL")
ABSTRACT = Chain(2741, "Abstract", "ETH")
BASE = Chain(8453, "Base", "ETH")
APECHAIN = Chain(APECHAIN_ID, "ApeChain", "APE")
ARBITRUM = Chain(42161, "Arbitrum", "ETH")
AVALANCHE = Chain(43114, "Avalanche", "AVAX")
TAIKO = Chain(167000, "Taiko", "ETH")

BASE_SEPOLIA = Chain(84532, "Base Sepolia", "ETH", testnet=True)
ETHEREUM_SEPOLIA = Chain(11155111, "Ethereum Sepolia", "ETH", testnet=True)
POLYGON_AMOY = Chain(80002, "Polygon Amoy", "POL", testnet=True)
APECHAIN_CURTIS = Chain(33111, "ApeChain Curtis", "APE", testnet=True)

SUPPORTED_CHAINS: dict[int, Chain] = {
    chain.id: chain
    for chain in (
        ETHEREUM,
        OPTIMISM,
        BSC,
        POLYGON,
        ABSTRACT,
        BASE,
        APECHAIN,
        ARBITRUM,
        AVALANCHE,
        TAIKO,
        BASE_SEPOLIA,
        ETHEREUM_SEPOLIA,
        POLYGON_AMOY,
        APECHAIN_CURTIS,
    )
}

# Source chains whose relays settle noticeably slower.
SLOW_SOURCE_CHAINS = frozenset({ETHEREUM.id, POLYGON.id, OPTIMISM.id})


def get_chain(chain_id: int) -> Optional[Chain]:
    """Look up a supported chain by id."""
    return SUPPORTED_CHAINS.get(chain_id)


def chain_name(chain_id: int) -> str:
    """Human-readable chain name, falling back to the numeric id."""
    chain = SUPPORTED_CHAINS.get(chain_id)
    return chain.name if chain else f"chain-{chain_id}"
