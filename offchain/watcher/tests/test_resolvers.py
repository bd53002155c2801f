"""
Tests for relay status resolvers and relay estimates.
"""

import httpx
import pytest

from tipchain_watcher.models import RelayStatus
from tipchain_watcher.relay_api import RelayApiClient, RelayApiError, map_vendor_status
from tipchain_watcher.resolvers import (
    ApiStatusResolver,
    FallbackResolver,
    HeuristicStatusResolver,
    RelayContext,
    estimate_relay_time,
    generate_relay_id,
    interpolate_progress,
    record_from_vendor,
)
from tipchain_watcher.rpc import MockChainRPC
from tipchain_watcher.transaction import TransactionWatcher
from tipchain_watcher.watch import VirtualClock

BASE = 8453
ETHEREUM = 1
APECHAIN = 33139
SOURCE_TX = "0x" + "11" * 32
DEST_TX = "0x" + "22" * 32
CTX = RelayContext("relay_11111111_1", BASE, APECHAIN, SOURCE_TX)


class StaticDestinations:
    def __init__(self, tx_hash=None, error=None):
        self.tx_hash = tx_hash
        self.error = error
        self.calls = 0

    async def find_destination_transaction(self, source_tx_hash, destination_chain, relay_id):
        self.calls += 1
        if self.error:
            raise self.error
        return self.tx_hash


class StaticResolver:
    def __init__(self, record=None, error=None):
        self.record = record
        self.error = error
        self.calls = 0

    async def resolve(self, ctx):
        self.calls += 1
        if self.error:
            raise self.error
        return self.record


class TestEstimateRelayTime:
    @pytest.mark.parametrize(
        "source, destination, expected",
        [
            (BASE, 42161, 120.0),
            (BASE, APECHAIN, 90.0),
            (ETHEREUM, APECHAIN, 150.0),
            (ETHEREUM, BASE, 180.0),
            (137, APECHAIN, 150.0),
        ],
    )
    def test_estimates(self, source, destination, expected):
        assert estimate_relay_time(source, destination) == expected

    def test_custom_settlement_chain(self):
        assert estimate_relay_time(BASE, 42161, settlement_chain_id=42161) == 90.0

    def test_interpolation_bounds(self):
        assert interpolate_progress(0, 90) == 50.0
        assert interpolate_progress(90, 90) == 95.0
        assert interpolate_progress(500, 90) == 95.0


class TestVendorMapping:
    @pytest.mark.parametrize(
        "vendor, expected",
        [
            ("pending", RelayStatus.PENDING),
            ("processing", RelayStatus.RELAYING),
            ("bridging", RelayStatus.RELAYING),
            ("completed", RelayStatus.COMPLETED),
            ("success", RelayStatus.COMPLETED),
            ("failed", RelayStatus.FAILED),
            ("error", RelayStatus.FAILED),
            ("SUCCESS", RelayStatus.COMPLETED),
            ("queued", RelayStatus.INITIATED),
            (None, RelayStatus.INITIATED),
        ],
    )
    def test_map_vendor_status(self, vendor, expected):
        assert map_vendor_status(vendor) == expected

    def test_record_from_vendor(self):
        record = record_from_vendor(
            CTX,
            {
                "status": "processing",
                "progress": 130,
                "destTx": DEST_TX,
                "sourceAmount": "1000000",
                "destAmount": "990000",
                "eta": 1_700_000_100_000,
            },
        )

        assert record.status == RelayStatus.RELAYING
        assert record.progress == 100.0
        assert record.source_chain == BASE
        assert record.destination_chain == APECHAIN
        assert record.source_transaction_hash == SOURCE_TX
        assert record.destination_transaction_hash == DEST_TX
        assert record.source_amount == "1000000"
        assert record.token_symbol == "USDC"
        assert record.estimated_completion_time == 1_700_000_100.0


class TestApiStatusResolver:
    @pytest.mark.asyncio
    async def test_resolves_vendor_record(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == f"/status/{CTX.relay_id}"
            return httpx.Response(200, json={"status": "completed", "progress": 100, "destTx": DEST_TX})

        api = RelayApiClient("https://relay.test", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        record = await ApiStatusResolver(api).resolve(CTX)

        assert record.status == RelayStatus.COMPLETED
        assert record.destination_transaction_hash == DEST_TX
        await api.aclose()

    @pytest.mark.asyncio
    async def test_missing_record_is_none(self):
        api = RelayApiClient(
            "https://relay.test",
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404))),
        )
        assert await ApiStatusResolver(api).resolve(CTX) is None
        await api.aclose()


class TestHeuristicStatusResolver:
    """Time-based estimates anchored on the source block."""

    @pytest.fixture
    def clock(self) -> VirtualClock:
        return VirtualClock()

    @pytest.fixture
    def mock_rpc(self, clock) -> MockChainRPC:
        rpc = MockChainRPC()
        rpc.set_receipts(BASE, SOURCE_TX, MockChainRPC.make_receipt(SOURCE_TX, block_timestamp=clock.now()))
        return rpc

    def resolver(self, mock_rpc, clock, destinations=None) -> HeuristicStatusResolver:
        return HeuristicStatusResolver(TransactionWatcher(mock_rpc, clock=clock), destinations, clock=clock)

    @pytest.mark.asyncio
    async def test_progress_increases_with_elapsed_time(self, mock_rpc, clock):
        resolver = self.resolver(mock_rpc, clock)
        estimate = estimate_relay_time(BASE, APECHAIN)

        clock.advance(0.25 * estimate)
        early = await resolver.resolve(CTX)
        clock.advance(0.5 * estimate)
        late = await resolver.resolve(CTX)

        assert early.status == RelayStatus.RELAYING
        assert late.status == RelayStatus.RELAYING
        assert 50 <= early.progress <= 95
        assert 50 <= late.progress <= 95
        assert early.progress < late.progress
        assert early.progress == pytest.approx(61.25)
        assert late.progress == pytest.approx(83.75)

    @pytest.mark.asyncio
    async def test_eta_is_anchored_on_block_time(self, mock_rpc, clock):
        anchor = clock.now()
        clock.advance(10)

        record = await self.resolver(mock_rpc, clock).resolve(CTX)
        assert record.estimated_completion_time == anchor + 90.0

    @pytest.mark.asyncio
    async def test_overdue_without_destination_stays_relaying(self, mock_rpc, clock):
        destinations = StaticDestinations()
        clock.advance(200)

        record = await self.resolver(mock_rpc, clock, destinations).resolve(CTX)

        assert record.status == RelayStatus.RELAYING
        assert record.progress == 95.0
        assert destinations.calls == 1

    @pytest.mark.asyncio
    async def test_destination_lookup_skipped_before_estimate(self, mock_rpc, clock):
        destinations = StaticDestinations(DEST_TX)
        clock.advance(30)

        await self.resolver(mock_rpc, clock, destinations).resolve(CTX)
        assert destinations.calls == 0

    @pytest.mark.asyncio
    async def test_confirmed_destination_completes(self, mock_rpc, clock):
        mock_rpc.set_receipts(APECHAIN, DEST_TX, MockChainRPC.make_receipt(DEST_TX))
        clock.advance(200)

        record = await self.resolver(mock_rpc, clock, StaticDestinations(DEST_TX)).resolve(CTX)

        assert record.status == RelayStatus.COMPLETED
        assert record.progress == 100.0
        assert record.destination_transaction_hash == DEST_TX
        assert record.actual_completion_time == clock.now()

    @pytest.mark.asyncio
    async def test_failed_destination_fails(self, mock_rpc, clock):
        mock_rpc.set_receipts(APECHAIN, DEST_TX, MockChainRPC.make_receipt(DEST_TX, success=False))
        clock.advance(200)

        record = await self.resolver(mock_rpc, clock, StaticDestinations(DEST_TX)).resolve(CTX)

        assert record.status == RelayStatus.FAILED
        assert record.progress == 75.0

    @pytest.mark.asyncio
    async def test_pending_destination_is_relaying(self, mock_rpc, clock):
        mock_rpc.add_pending(APECHAIN, DEST_TX)
        clock.advance(200)

        record = await self.resolver(mock_rpc, clock, StaticDestinations(DEST_TX)).resolve(CTX)

        assert record.status == RelayStatus.RELAYING
        assert record.progress == 50.0

    @pytest.mark.asyncio
    async def test_destination_lookup_errors_are_absorbed(self, mock_rpc, clock):
        clock.advance(200)
        destinations = StaticDestinations(error=RuntimeError("indexer down"))

        record = await self.resolver(mock_rpc, clock, destinations).resolve(CTX)
        assert record.progress == 95.0

    @pytest.mark.asyncio
    async def test_no_receipt_is_none(self, clock):
        resolver = self.resolver(MockChainRPC(), clock)
        assert await resolver.resolve(CTX) is None


class TestFallbackResolver:
    @pytest.mark.asyncio
    async def test_primary_wins(self):
        primary = StaticResolver(CTX.record(RelayStatus.COMPLETED, 100.0))
        secondary = StaticResolver(CTX.record(RelayStatus.RELAYING, 60.0))

        record = await FallbackResolver(primary, secondary).resolve(CTX)

        assert record.status == RelayStatus.COMPLETED
        assert secondary.calls == 0

    @pytest.mark.asyncio
    async def test_absent_primary_falls_back(self):
        secondary = StaticResolver(CTX.record(RelayStatus.RELAYING, 60.0))

        record = await FallbackResolver(StaticResolver(), secondary).resolve(CTX)
        assert record.progress == 60.0

    @pytest.mark.asyncio
    async def test_failing_primary_falls_back(self):
        primary = StaticResolver(error=RelayApiError("connection refused"))
        secondary = StaticResolver(CTX.record(RelayStatus.RELAYING, 70.0))

        record = await FallbackResolver(primary, secondary).resolve(CTX)

        assert record.progress == 70.0
        assert primary.calls == 1


class TestGenerateRelayId:
    def test_format(self):
        assert generate_relay_id("0xabcdef0123456789", timestamp=1_700_000_000.5) == (
            "relay_abcdef01_1700000000500"
        )

    def test_defaults_to_current_time(self):
        relay_id = generate_relay_id(SOURCE_TX)
        prefix, short_hash, millis = relay_id.split("_")
        assert prefix == "relay"
        assert short_hash == "11111111"
        assert millis.isdigit()
