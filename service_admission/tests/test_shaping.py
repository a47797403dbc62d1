"""
Unit tests for the debouncer and duplicate detector.
"""

import asyncio
import json

import pytest

from service_admission.app.shaping import Debouncer, DuplicateDetector
from service_admission.app.store import InMemoryCounterStore
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock, MessageFactory, UnavailableCounterStore


class SlowFirstWriteStore(InMemoryCounterStore):
    """In-memory store whose first ``set`` completes after later ones."""

    def __init__(self, clock, delay: float):
        super().__init__(clock)
        self.delay = delay
        self.writes = 0

    async def set(self, key, value, ttl_ms):
        self.writes += 1
        if self.writes == 1:
            await asyncio.sleep(self.delay)
        await super().set(key, value, ttl_ms)


class TestDuplicateDetector:
    """Test cases for DuplicateDetector."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def detector(self, clock):
        return DuplicateDetector(InMemoryCounterStore(clock), 10000, MetricsCollector("admission-test"), clock)

    @pytest.mark.asyncio
    async def test_identical_text_within_window(self, detector, clock):
        """Second identical message is a duplicate; one 10001 ms later is not."""
        assert await detector.is_duplicate("u3", "besok rapat jam 9") is False

        clock.advance(1000)
        assert await detector.is_duplicate("u3", "besok rapat jam 9") is True

        clock.advance(10001)
        assert await detector.is_duplicate("u3", "besok rapat jam 9") is False

    @pytest.mark.asyncio
    async def test_comparison_trims_whitespace(self, detector):
        await detector.is_duplicate("u3", "  lihat tugas ")

        assert await detector.is_duplicate("u3", "lihat tugas") is True

    @pytest.mark.asyncio
    async def test_comparison_is_case_sensitive(self, detector):
        await detector.is_duplicate("u3", "Lihat tugas")

        assert await detector.is_duplicate("u3", "lihat tugas") is False

    @pytest.mark.asyncio
    async def test_record_is_overwritten_by_every_message(self, detector):
        await detector.is_duplicate("u3", "a")
        await detector.is_duplicate("u3", "b")

        assert await detector.is_duplicate("u3", "a") is False

    @pytest.mark.asyncio
    async def test_users_are_independent(self, detector):
        await detector.is_duplicate("u3", "hapus tugas 2")

        assert await detector.is_duplicate("u4", "hapus tugas 2") is False

    @pytest.mark.asyncio
    async def test_custom_window(self, detector, clock):
        await detector.is_duplicate("u3", "ok", window_ms=500)
        clock.advance(499)

        assert await detector.is_duplicate("u3", "ok", window_ms=500) is True

    @pytest.mark.asyncio
    async def test_duplicates_are_counted(self, detector):
        await detector.is_duplicate("u3", "x")
        await detector.is_duplicate("u3", "x")

        assert detector.metrics.sample("duplicates_suppressed_total") == 1

    @pytest.mark.asyncio
    async def test_store_failure_is_not_duplicate(self, clock):
        detector = DuplicateDetector(UnavailableCounterStore(), clock=clock)

        assert await detector.is_duplicate("u3", "x") is False
        assert await detector.is_duplicate("u3", "x") is False


class TestDebouncer:
    """Test cases for Debouncer."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def debouncer(self, clock):
        return Debouncer(InMemoryCounterStore(clock), delay_ms=50, metrics=MetricsCollector("admission-test"), clock=clock)

    @pytest.mark.asyncio
    async def test_single_message_is_processed_after_delay(self, debouncer):
        loop = asyncio.get_running_loop()
        started = loop.time()

        assert await debouncer.should_process("u2", "m1", "tambah tugas") is True
        assert loop.time() - started >= 0.04
        assert debouncer.pending_users() == []

    @pytest.mark.asyncio
    async def test_burst_keeps_only_latest(self, debouncer):
        """m1 and m2 are superseded; only m3 goes through."""
        messages = MessageFactory.burst("u2", ["tambah", "tambah tugas", "tambah tugas rapat besok"])

        async def send(message, after):
            await asyncio.sleep(after)
            return await debouncer.should_process(message.user_id, message.message_id, message.text, delay_ms=300)

        results = await asyncio.gather(*[
            send(message, index * 0.02) for index, message in enumerate(messages)
        ])

        assert results == [False, False, True]
        assert debouncer.metrics.sample("debounce_superseded_total") == 2

    @pytest.mark.asyncio
    async def test_superseded_message_resolves_without_waiting(self, debouncer):
        first = asyncio.ensure_future(debouncer.should_process("u2", "m1", "a", delay_ms=5000))
        await asyncio.sleep(0.01)

        second = asyncio.ensure_future(debouncer.should_process("u2", "m2", "b", delay_ms=10))

        assert await asyncio.wait_for(first, timeout=1) is False
        assert await second is True

    @pytest.mark.asyncio
    async def test_users_do_not_cancel_each_other(self, debouncer):
        results = await asyncio.gather(
            debouncer.should_process("u2", "m1", "a"),
            debouncer.should_process("u5", "m1", "b"),
        )

        assert results == [True, True]

    @pytest.mark.asyncio
    async def test_newer_message_persisted_elsewhere_wins(self, debouncer, clock):
        """Another replica's later message in the store drops this one."""
        task = asyncio.ensure_future(debouncer.should_process("u2", "m1", "a"))
        await asyncio.sleep(0.01)
        clock.advance(10)
        await debouncer.store.set(
            Debouncer.latest_key("u2"),
            json.dumps({"message_id": "m9", "text": "z", "received_at": clock()}),
            10000
        )

        assert await task is False

    @pytest.mark.asyncio
    async def test_older_record_in_store_does_not_veto(self, debouncer, clock):
        task = asyncio.ensure_future(debouncer.should_process("u2", "m1", "a"))
        await asyncio.sleep(0.01)
        await debouncer.store.set(
            Debouncer.latest_key("u2"),
            json.dumps({"message_id": "m0", "text": "z", "received_at": clock() - 500}),
            10000
        )

        assert await task is True

    @pytest.mark.asyncio
    async def test_late_write_of_superseded_message_keeps_latest(self, clock):
        """m1's write lands after m2's; m2 must still be processed."""
        debouncer = Debouncer(SlowFirstWriteStore(clock, delay=0.05), delay_ms=100, clock=clock)

        async def send(message_id, after):
            await asyncio.sleep(after)
            return await debouncer.should_process("u2", message_id, message_id)

        results = await asyncio.gather(send("m1", 0), send("m2", 0.01))

        assert results == [False, True]
        assert json.loads(await debouncer.store.get(Debouncer.latest_key("u2")))["message_id"] == "m1"

    @pytest.mark.asyncio
    async def test_store_failure_falls_back_to_local_view(self, clock):
        debouncer = Debouncer(UnavailableCounterStore(), delay_ms=20, clock=clock)

        results = await asyncio.gather(
            debouncer.should_process("u2", "m1", "a"),
            debouncer.should_process("u2", "m2", "b"),
        )

        assert results == [False, True]

    @pytest.mark.asyncio
    async def test_cancel_all_resolves_pending_as_not_processed(self, debouncer):
        task = asyncio.ensure_future(debouncer.should_process("u2", "m1", "a", delay_ms=5000))
        await asyncio.sleep(0.01)

        debouncer.cancel_all()

        assert await asyncio.wait_for(task, timeout=1) is False
        assert debouncer.pending_users() == []
