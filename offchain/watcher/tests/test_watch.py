"""
Tests for the shared watch primitives.
"""

import asyncio

import pytest

from tipchain_watcher.watch import (
    CancellationToken,
    PollState,
    SingleFlight,
    SystemClock,
    VirtualClock,
    WatchCancelledError,
    balance_key,
    notify,
    transaction_key,
)


class TestKeys:
    def test_transaction_key_is_case_insensitive(self):
        assert transaction_key(1, "0xABCdef") == "1-0xabcdef"
        assert transaction_key(1, "0xABCdef") == transaction_key(1, "0xabcDEF")

    def test_balance_key_native(self):
        assert balance_key(33139, "0xAbC") == "33139-0xabc-native"

    def test_balance_key_token(self):
        assert balance_key(8453, "0xAbC", "0xDeF") == "8453-0xabc-0xdef"


class TestSingleFlight:
    """Tests for the keyed single-flight registry."""

    @pytest.mark.asyncio
    async def test_second_request_attaches_to_running_loop(self):
        flight: SingleFlight[int] = SingleFlight("test")
        release = asyncio.Event()
        starts = []

        async def factory(handle):
            starts.append(handle.key)
            await release.wait()
            return 7

        first, started_first = flight.get_or_start("k", factory)
        second, started_second = flight.get_or_start("k", factory)

        assert started_first is True
        assert started_second is False
        assert first is second
        assert first.task is second.task
        assert len(flight) == 1

        release.set()
        assert await first.task == 7
        assert starts == ["k"]

    @pytest.mark.asyncio
    async def test_handle_removed_after_success(self):
        flight: SingleFlight[int] = SingleFlight("test")

        async def factory(handle):
            return 42

        handle, _ = flight.get_or_start("k", factory)
        assert await handle.task == 42
        await asyncio.sleep(0)

        assert "k" not in flight
        assert handle.state == PollState.TERMINAL

    @pytest.mark.asyncio
    async def test_handle_removed_after_failure(self):
        flight: SingleFlight[int] = SingleFlight("test")

        async def factory(handle):
            raise RuntimeError("boom")

        handle, _ = flight.get_or_start("k", factory)
        with pytest.raises(RuntimeError):
            await handle.task
        await asyncio.sleep(0)

        assert len(flight) == 0

    @pytest.mark.asyncio
    async def test_finished_key_starts_a_new_loop(self):
        flight: SingleFlight[int] = SingleFlight("test")
        runs = []

        async def factory(handle):
            runs.append(handle)
            return len(runs)

        first, _ = flight.get_or_start("k", factory)
        await first.task
        second, started = flight.get_or_start("k", factory)

        assert started is True
        assert await second.task == 2

    @pytest.mark.asyncio
    async def test_cancel_signals_token_and_drops_handle(self):
        flight: SingleFlight[None] = SingleFlight("test")

        async def factory(handle):
            await handle.token.wait()
            raise WatchCancelledError(handle.key)

        handle, _ = flight.get_or_start("k", factory)
        await asyncio.sleep(0)

        assert flight.cancel("k") is True
        assert "k" not in flight
        assert handle.token.cancelled
        with pytest.raises(WatchCancelledError):
            await handle.task

    def test_cancel_unknown_key(self):
        flight: SingleFlight[None] = SingleFlight("test")
        assert flight.cancel("missing") is False

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        flight: SingleFlight[None] = SingleFlight("test")

        async def factory(handle):
            await handle.token.wait()

        handles = [flight.get_or_start(key, factory)[0] for key in ("a", "b", "c")]
        assert sorted(flight.keys()) == ["a", "b", "c"]

        assert flight.cancel_all() == 3
        assert len(flight) == 0
        await asyncio.gather(*(h.task for h in handles))


class TestClocks:
    @pytest.mark.asyncio
    async def test_virtual_clock_advances_on_sleep(self):
        clock = VirtualClock(start=100.0)
        await clock.sleep(3.0)
        await clock.sleep(1.5)

        assert clock.now() == 104.5
        assert clock.sleeps == [3.0, 1.5]

    @pytest.mark.asyncio
    async def test_virtual_clock_does_not_advance_when_cancelled(self):
        clock = VirtualClock(start=0.0)
        token = CancellationToken()
        token.cancel()

        await clock.sleep(10.0, token)
        assert clock.now() == 0.0

    @pytest.mark.asyncio
    async def test_system_clock_sleep_ends_on_cancel(self):
        clock = SystemClock()
        token = CancellationToken()

        async def cancel_soon():
            await asyncio.sleep(0.01)
            token.cancel()

        canceller = asyncio.ensure_future(cancel_soon())
        await asyncio.wait_for(clock.sleep(30.0, token), timeout=2.0)
        await canceller
        assert token.cancelled


class TestNotify:
    def test_callback_errors_are_swallowed(self):
        def broken(update):
            raise ValueError("bad callback")

        notify(broken, object(), key="k")

    def test_callback_receives_update(self):
        seen = []
        notify(seen.append, "update")
        assert seen == ["update"]
