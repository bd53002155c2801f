"""
Relay status resolvers.

Once the source transaction is confirmed, relay progress comes from one of
two strategies: the bridging API (authoritative, optional) or a time-based
estimate anchored on the source confirmation. FallbackResolver composes
them: the API answer wins whenever it is available.
"""

import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import structlog

from .chains import SLOW_SOURCE_CHAINS
from .config import APECHAIN_ID
from .models import RelayRecord, RelayStatus, TransactionStatus
from .relay_api import RelayApiClient, map_vendor_status
from .transaction import TransactionWatcher
from .watch import Clock, SystemClock

logger = structlog.get_logger()

BASE_RELAY_TIME = 120.0
SLOW_CHAIN_PENALTY = 60.0
SETTLEMENT_CHAIN_BONUS = 30.0
MIN_RELAY_TIME = 60.0

PROGRESS_SOURCE_CONFIRMED = 50.0
PROGRESS_CEILING = 95.0
PROGRESS_DESTINATION_FAILED = 75.0
PROGRESS_COMPLETE = 100.0


@dataclass(frozen=True)
class RelayContext:
    """Identity of the relay being resolved."""

    relay_id: str
    source_chain: int
    destination_chain: int
    source_transaction_hash: str
    # clock time the source receipt was first seen confirmed
    first_seen: Optional[float] = None

    def record(self, status: RelayStatus, progress: float, **fields: Any) -> RelayRecord:
        """Build a RelayRecord for this relay."""
        return RelayRecord(
            relay_id=self.relay_id,
            source_chain=self.source_chain,
            destination_chain=self.destination_chain,
            source_transaction_hash=self.source_transaction_hash,
            status=status,
            progress=progress,
            **fields,
        )


class StatusResolver(Protocol):
    """Derives relay status after the source transaction is confirmed."""

    async def resolve(self, ctx: RelayContext) -> Optional[RelayRecord]:
        ...


class DestinationResolver(Protocol):
    """Best-effort lookup of the destination-chain transaction of a relay."""

    async def find_destination_transaction(
        self, source_tx_hash: str, destination_chain: int, relay_id: str
    ) -> Optional[str]:
        ...


class NullDestinationResolver:
    """Destination lookup that never finds anything."""

    async def find_destination_transaction(
        self, source_tx_hash: str, destination_chain: int, relay_id: str
    ) -> Optional[str]:
        return None


def estimate_relay_time(
    source_chain: int,
    destination_chain: int,
    settlement_chain_id: int = APECHAIN_ID,
) -> float:
    """
    Expected relay duration in seconds.

    Base 120s, +60s from a slow source chain, -30s into the settlement
    chain, never below 60s.
    """
    estimate = BASE_RELAY_TIME
    if source_chain in SLOW_SOURCE_CHAINS:
        estimate += SLOW_CHAIN_PENALTY
    if destination_chain == settlement_chain_id:
        estimate -= SETTLEMENT_CHAIN_BONUS
    return max(MIN_RELAY_TIME, estimate)


def interpolate_progress(elapsed: float, estimate: float) -> float:
    """Linear progress from 50 at confirmation to 95 at the estimate."""
    span = PROGRESS_CEILING - PROGRESS_SOURCE_CONFIRMED
    fraction = max(elapsed, 0.0) / estimate
    return min(PROGRESS_CEILING, PROGRESS_SOURCE_CONFIRMED + fraction * span)


def _timestamp(value: Any) -> Optional[float]:
    """Vendor timestamps may be seconds or milliseconds."""
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number / 1000.0 if number > 1e11 else number


def record_from_vendor(ctx: RelayContext, data: dict[str, Any]) -> RelayRecord:
    """Translate a bridging API record into a RelayRecord."""
    try:
        progress = float(data.get("progress") or 0)
    except (TypeError, ValueError):
        progress = 0.0

    return RelayRecord(
        relay_id=ctx.relay_id,
        source_chain=int(data.get("sourceChain") or ctx.source_chain),
        destination_chain=int(data.get("destinationChain") or ctx.destination_chain),
        source_transaction_hash=data.get("sourceTx") or ctx.source_transaction_hash,
        destination_transaction_hash=data.get("destTx"),
        status=map_vendor_status(data.get("status")),
        progress=min(max(progress, 0.0), 100.0),
        source_amount=str(data.get("sourceAmount") or "0"),
        destination_amount=data.get("destAmount"),
        token_symbol=data.get("token") or "USDC",
        estimated_completion_time=_timestamp(data.get("eta")),
        actual_completion_time=_timestamp(data.get("completedAt")),
    )


class ApiStatusResolver:
    """Authoritative status from the bridging API."""

    def __init__(self, api: RelayApiClient):
        self.api = api

    async def resolve(self, ctx: RelayContext) -> Optional[RelayRecord]:
        data = await self.api.get_status(ctx.relay_id)
        if data is None:
            return None
        return record_from_vendor(ctx, data)


class HeuristicStatusResolver:
    """
    Time-based estimate anchored on the source block time, or on the time
    the receipt was first seen when the block has no timestamp.

    Before the estimated relay time has passed, progress is interpolated
    between 50 and 95. After it, the destination transaction is looked up
    and, when found, its status decides the outcome. Returns None when the
    source receipt is missing; read failures raise ChainRPCError.
    """

    def __init__(
        self,
        transactions: TransactionWatcher,
        destinations: Optional[DestinationResolver] = None,
        clock: Optional[Clock] = None,
        settlement_chain_id: int = APECHAIN_ID,
    ):
        self.transactions = transactions
        self.destinations = destinations or NullDestinationResolver()
        self.clock = clock or SystemClock()
        self.settlement_chain_id = settlement_chain_id

    async def resolve(self, ctx: RelayContext) -> Optional[RelayRecord]:
        receipt = await self.transactions.source.get_transaction_receipt(
            ctx.source_transaction_hash, ctx.source_chain
        )
        if receipt is None:
            return None

        now = self.clock.now()
        anchor = receipt.block_timestamp or ctx.first_seen or now
        estimate = estimate_relay_time(
            ctx.source_chain, ctx.destination_chain, self.settlement_chain_id
        )
        elapsed = now - anchor
        eta = anchor + estimate

        if elapsed <= estimate:
            return ctx.record(
                RelayStatus.RELAYING,
                interpolate_progress(elapsed, estimate),
                token_symbol="USDC",
                estimated_completion_time=eta,
            )

        destination_hash = await self._find_destination(ctx)
        if destination_hash is None:
            return ctx.record(
                RelayStatus.RELAYING,
                PROGRESS_CEILING,
                token_symbol="USDC",
                estimated_completion_time=eta,
            )

        destination_status = await self.transactions.fetch_status(
            destination_hash, ctx.destination_chain
        )
        if destination_status == TransactionStatus.CONFIRMED:
            return ctx.record(
                RelayStatus.COMPLETED,
                PROGRESS_COMPLETE,
                token_symbol="USDC",
                destination_transaction_hash=destination_hash,
                estimated_completion_time=eta,
                actual_completion_time=now,
            )
        if destination_status == TransactionStatus.FAILED:
            return ctx.record(
                RelayStatus.FAILED,
                PROGRESS_DESTINATION_FAILED,
                token_symbol="USDC",
                destination_transaction_hash=destination_hash,
                error="Destination transaction failed",
            )
        return ctx.record(
            RelayStatus.RELAYING,
            PROGRESS_SOURCE_CONFIRMED,
            token_symbol="USDC",
            destination_transaction_hash=destination_hash,
            estimated_completion_time=eta,
        )

    async def _find_destination(self, ctx: RelayContext) -> Optional[str]:
        try:
            return await self.destinations.find_destination_transaction(
                ctx.source_transaction_hash, ctx.destination_chain, ctx.relay_id
            )
        except Exception as e:
            logger.warning("destination_lookup_failed", relay_id=ctx.relay_id, error=str(e))
            return None


class FallbackResolver:
    """Try the primary resolver; on absence or error use the secondary."""

    def __init__(self, primary: StatusResolver, secondary: StatusResolver):
        self.primary = primary
        self.secondary = secondary

    async def resolve(self, ctx: RelayContext) -> Optional[RelayRecord]:
        try:
            record = await self.primary.resolve(ctx)
        except Exception as e:
            logger.warning("relay_api_unavailable", relay_id=ctx.relay_id, error=str(e))
            record = None

        if record is not None:
            return record
        return await self.secondary.resolve(ctx)


def generate_relay_id(tx_hash: str, timestamp: Optional[float] = None) -> str:
    """Relay id derived from the source transaction hash and a millisecond timestamp."""
    ts = timestamp if timestamp is not None else time.time()
    return f"relay_{tx_hash[2:10]}_{int(ts * 1000)}"
