"""Tests for the token-gated message debouncer."""

import asyncio
import time

import pytest

from src.conversation.buffer_store import InMemoryBufferStore
from src.conversation.debouncer import MessageDebouncer
from src.conversation.duplicate_detector import DuplicateDetector
from src.conversation.state_machine import BufferState
from src.logging_context import get_conversation_id
from src.schemas.conversation_schema import BurstDetails, ConversationBuffer

QUIET_MS = 50
SETTLE = 0.2
CID = "fb:1001"


class Recorder:
    """Flush handler that records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []
        self.times: list[float] = []
        self.conversation_ids: list[str] = []

    async def __call__(self, conversation_id: str, text: str, token: str) -> None:
        self.calls.append((conversation_id, text, token))
        self.times.append(asyncio.get_running_loop().time())
        self.conversation_ids.append(get_conversation_id())

    @property
    def texts(self) -> list[str]:
        return [text for _, text, _ in self.calls]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def store():
    return InMemoryBufferStore()


class TestBurstCoalescing:
    @pytest.mark.asyncio
    async def test_burst_flushes_once_with_latest_text(self, recorder):
        debouncer = MessageDebouncer(recorder, quiet_ms=QUIET_MS, combine_mode="latest")
        loop = asyncio.get_running_loop()
        started = loop.time()

        await debouncer.on_message(CID, "hi")
        await asyncio.sleep(0.01)
        await debouncer.on_message(CID, "I want to book")
        await asyncio.sleep(0.01)
        await debouncer.on_message(CID, "a full groom")
        await asyncio.sleep(SETTLE)

        assert recorder.texts == ["a full groom"]
        assert recorder.times[0] - started >= 0.069
        assert debouncer.stats.messages_received == 3
        assert debouncer.stats.flushes == 1
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_concatenate_mode_joins_burst(self, recorder):
        debouncer = MessageDebouncer(recorder, quiet_ms=QUIET_MS, combine_mode="concatenate")
        await debouncer.on_message(CID, "I want")
        await debouncer.on_message(CID, "  a full groom ")
        await asyncio.sleep(SETTLE)

        assert recorder.texts == ["I want a full groom"]
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_flush_receives_latest_token(self, recorder):
        debouncer = MessageDebouncer(recorder, quiet_ms=QUIET_MS)
        await debouncer.on_message(CID, "one")
        token = await debouncer.on_message(CID, "two")
        await asyncio.sleep(SETTLE)

        assert recorder.calls == [(CID, "two", token)]
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_conversations_are_independent(self, recorder):
        debouncer = MessageDebouncer(recorder, quiet_ms=QUIET_MS)
        await debouncer.on_message("fb:1", "groom please")
        await debouncer.on_message("ig:2", "nail trim")
        await asyncio.sleep(SETTLE)

        assert sorted(recorder.texts) == ["groom please", "nail trim"]
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_blank_message_extends_quiet_period(self, recorder):
        debouncer = MessageDebouncer(recorder, quiet_ms=QUIET_MS, combine_mode="concatenate")
        await debouncer.on_message(CID, "hello")
        await debouncer.on_message(CID, "   ")
        await asyncio.sleep(SETTLE)

        assert recorder.texts == ["hello"]
        await debouncer.shutdown()


class TestTokenGating:
    @pytest.mark.asyncio
    async def test_superseded_timer_never_runs_handler(self, store):
        count = 0

        async def handler(conversation_id, text, token):
            nonlocal count
            count += 1

        debouncer = MessageDebouncer(handler, store=store, quiet_ms=QUIET_MS)
        await debouncer.on_message(CID, "first")
        await asyncio.sleep(0.02)
        await debouncer.on_message(CID, "second")
        await asyncio.sleep(SETTLE)

        assert count == 1
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_stale_timer_from_other_instance_is_discarded(self, recorder, store):
        """Two processes sharing one store: only the newest token's timer flushes."""
        first = MessageDebouncer(recorder, store=store, quiet_ms=QUIET_MS)
        second = MessageDebouncer(recorder, store=store, quiet_ms=QUIET_MS)

        await first.on_message(CID, "part one")
        await asyncio.sleep(0.01)
        latest = await second.on_message(CID, "part two")
        await asyncio.sleep(SETTLE)

        assert recorder.calls == [(CID, "part two", latest)]
        assert first.stats.stale_timers_discarded == 1
        assert first.stats.flushes == 0
        assert second.stats.flushes == 1
        assert CID not in store
        await first.shutdown()
        await second.shutdown()


class TestFlushRaces:
    @pytest.mark.asyncio
    async def test_message_during_flush_starts_new_burst(self, store):
        texts: list[str] = []
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_handler(conversation_id, text, token):
            texts.append(text)
            if len(texts) == 1:
                started.set()
                await release.wait()

        debouncer = MessageDebouncer(slow_handler, store=store, quiet_ms=QUIET_MS, combine_mode="concatenate")
        await debouncer.on_message(CID, "book a bath")
        await asyncio.wait_for(started.wait(), timeout=1)
        assert debouncer.state(CID) == BufferState.FLUSHING

        await debouncer.on_message(CID, "for tuesday")
        assert debouncer.state(CID) == BufferState.BUFFERING
        release.set()
        await asyncio.sleep(SETTLE)

        assert texts == ["book a bath", "for tuesday"]
        assert debouncer.stats.flushes == 2
        assert CID not in store
        assert debouncer.state(CID) == BufferState.IDLE
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_in_flight_flush_keeps_newer_buffer(self, store):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_handler(conversation_id, text, token):
            if text == "first":
                started.set()
                await release.wait()

        debouncer = MessageDebouncer(slow_handler, store=store, quiet_ms=QUIET_MS)
        await debouncer.on_message(CID, "first")
        await asyncio.wait_for(started.wait(), timeout=1)

        debouncer.quiet_seconds = 10
        newer = await debouncer.on_message(CID, "second")
        release.set()
        await asyncio.sleep(0.05)

        assert CID in store
        assert (await store.get(CID)).active_flush_token == newer
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_handler_failure_still_cleans_up(self, store):
        async def failing_handler(conversation_id, text, token):
            raise RuntimeError("AI backend down")

        debouncer = MessageDebouncer(failing_handler, store=store, quiet_ms=QUIET_MS)
        await debouncer.on_message(CID, "hello")
        await asyncio.sleep(SETTLE)

        assert debouncer.stats.handler_failures == 1
        assert debouncer.stats.flushes == 0
        assert CID not in store
        assert debouncer.state(CID) == BufferState.IDLE
        assert debouncer.active_count() == 0
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_handler_failure_logged(self, store, caplog):
        async def failing_handler(conversation_id, text, token):
            raise RuntimeError("AI backend down")

        debouncer = MessageDebouncer(failing_handler, store=store, quiet_ms=QUIET_MS)
        with caplog.at_level("ERROR", logger="src.conversation.debouncer"):
            await debouncer.on_message(CID, "hello")
            await asyncio.sleep(SETTLE)

        assert any("Flush handler failed" in r.message for r in caplog.records)
        await debouncer.shutdown()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_state_follows_burst(self, recorder):
        debouncer = MessageDebouncer(recorder, quiet_ms=QUIET_MS)
        assert debouncer.state(CID) == BufferState.IDLE
        await debouncer.on_message(CID, "hello")
        assert debouncer.state(CID) == BufferState.BUFFERING
        assert debouncer.active_count() == 1
        await asyncio.sleep(SETTLE)
        assert debouncer.state(CID) == BufferState.IDLE
        assert debouncer.active_count() == 0
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_handler_sees_conversation_id_in_context(self, recorder):
        debouncer = MessageDebouncer(recorder, quiet_ms=QUIET_MS)
        await debouncer.on_message(CID, "hello")
        await asyncio.sleep(SETTLE)

        assert recorder.conversation_ids == [CID]
        assert get_conversation_id() == "NO_CONVERSATION"
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_drops_pending_burst(self, recorder, store):
        debouncer = MessageDebouncer(recorder, store=store, quiet_ms=QUIET_MS)
        await debouncer.on_message(CID, "hello")
        await debouncer.cancel(CID)
        await asyncio.sleep(SETTLE)

        assert recorder.calls == []
        assert CID not in store
        assert debouncer.state(CID) == BufferState.IDLE

    @pytest.mark.asyncio
    async def test_shutdown_cancels_timers(self, recorder):
        debouncer = MessageDebouncer(recorder, quiet_ms=QUIET_MS)
        await debouncer.on_message("fb:1", "a")
        await debouncer.on_message("fb:2", "b")
        await debouncer.shutdown()
        await asyncio.sleep(SETTLE)

        assert recorder.calls == []
        assert debouncer.active_count() == 0

    @pytest.mark.asyncio
    async def test_cleanup_stale_removes_orphaned_buffers(self, recorder, store):
        debouncer = MessageDebouncer(recorder, store=store, quiet_ms=QUIET_MS, stale_threshold_sec=300)
        now = time.time()
        await store.set("old", ConversationBuffer(conversation_id="old", last_activity=now - 600))
        await store.set("fresh", ConversationBuffer(conversation_id="fresh", last_activity=now - 10))

        removed = await debouncer.cleanup_stale(now=now)

        assert removed == 1
        assert "old" not in store
        assert "fresh" in store
        assert debouncer.stats.stale_buffers_removed == 1

    @pytest.mark.asyncio
    async def test_cleanup_stale_skips_buffers_with_live_timer(self, recorder, store):
        debouncer = MessageDebouncer(recorder, store=store, quiet_ms=10_000, stale_threshold_sec=1)
        await debouncer.on_message(CID, "hello")

        removed = await debouncer.cleanup_stale(now=time.time() + 3600)

        assert removed == 0
        assert CID in store
        await debouncer.shutdown()


class TestConstruction:
    def test_rejects_unknown_combine_mode(self, recorder):
        with pytest.raises(ValueError, match="combine mode"):
            MessageDebouncer(recorder, combine_mode="merge")

    def test_rejects_negative_quiet_period(self, recorder):
        with pytest.raises(ValueError, match="quiet_ms"):
            MessageDebouncer(recorder, quiet_ms=-1)

    def test_rejects_explicit_empty_combine_mode(self, recorder):
        with pytest.raises(ValueError, match="combine mode"):
            MessageDebouncer(recorder, combine_mode="")

    def test_explicit_zero_stale_threshold_is_kept(self, recorder):
        assert MessageDebouncer(recorder, stale_threshold_sec=0).stale_threshold_sec == 0

    def test_rejects_non_positive_cleanup_interval(self, recorder):
        with pytest.raises(ValueError, match="cleanup_interval_sec"):
            MessageDebouncer(recorder, cleanup_interval_sec=0)

    def test_defaults_come_from_settings(self, recorder):
        debouncer = MessageDebouncer(recorder)
        assert debouncer.quiet_seconds == 4.0
        assert debouncer.combine_mode == "latest"


class TestBufferStore:
    @pytest.mark.asyncio
    async def test_get_set_delete(self, store):
        buffer = ConversationBuffer(conversation_id=CID)
        assert await store.get(CID) is None
        await store.set(CID, buffer)
        assert await store.get(CID) is buffer
        assert len(store) == 1
        await store.delete(CID)
        await store.delete(CID)
        assert await store.items() == []

    def test_buffer_add_message(self):
        buffer = ConversationBuffer(conversation_id=CID)
        buffer.add_message(" hi ")
        buffer.add_message("")
        buffer.add_message("there")
        assert buffer.message_texts == ["hi", "there"]
        assert buffer.combined_text() == "there"
        assert buffer.combined_text("concatenate") == "hi there"

    def test_buffer_counts_image_only_messages(self):
        buffer = ConversationBuffer(conversation_id=CID)
        buffer.add_message("here is my dog")
        buffer.add_message("", image_url="https://cdn.example/rex.jpg")
        assert buffer.message_count == 2
        assert buffer.image_urls == ["https://cdn.example/rex.jpg"]
        buffer.start_new_burst()
        assert (buffer.message_count, buffer.image_urls, buffer.message_texts) == (0, [], [])


class FailingDeleteStore(InMemoryBufferStore):
    async def delete(self, conversation_id: str) -> None:
        raise RuntimeError("store unavailable")


class TestBurstDetails:
    @pytest.mark.asyncio
    async def test_handler_receives_images_and_count(self):
        seen: list[tuple[str, BurstDetails]] = []

        async def handler(conversation_id, text, token, details):
            seen.append((text, details))

        debouncer = MessageDebouncer(handler, quiet_ms=QUIET_MS, pass_burst_details=True)
        await debouncer.on_message(CID, "can you groom him?")
        await debouncer.on_message(CID, "", image_url="https://cdn.example/rex-1.jpg")
        await debouncer.on_message(CID, "", image_url="https://cdn.example/rex-2.jpg")
        await asyncio.sleep(SETTLE)

        assert seen == [
            (
                "can you groom him?",
                BurstDetails(
                    message_count=3,
                    image_urls=("https://cdn.example/rex-1.jpg", "https://cdn.example/rex-2.jpg"),
                ),
            )
        ]
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_three_argument_handler_by_default(self, recorder):
        debouncer = MessageDebouncer(recorder, quiet_ms=QUIET_MS)
        await debouncer.on_message(CID, "", image_url="https://cdn.example/rex.jpg")
        await asyncio.sleep(SETTLE)

        assert recorder.texts == [""]
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_new_burst_during_flush_drops_flushed_images(self):
        seen: list[BurstDetails] = []
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(conversation_id, text, token, details):
            seen.append(details)
            if len(seen) == 1:
                started.set()
                await release.wait()

        debouncer = MessageDebouncer(handler, quiet_ms=QUIET_MS, pass_burst_details=True)
        await debouncer.on_message(CID, "look", image_url="https://cdn.example/a.jpg")
        await asyncio.wait_for(started.wait(), timeout=1)
        await debouncer.on_message(CID, "and this", image_url="https://cdn.example/b.jpg")
        release.set()
        await asyncio.sleep(SETTLE)

        assert [d.image_urls for d in seen] == [
            ("https://cdn.example/a.jpg",),
            ("https://cdn.example/b.jpg",),
        ]
        assert [d.message_count for d in seen] == [1, 1]
        await debouncer.shutdown()


class TestDuplicateMessages:
    @pytest.mark.asyncio
    async def test_redelivered_message_is_dropped(self, recorder):
        debouncer = MessageDebouncer(
            recorder, quiet_ms=QUIET_MS, combine_mode="concatenate", duplicate_detector=DuplicateDetector(max_size=10)
        )
        first = await debouncer.on_message(CID, "book a bath", message_id="mid.1")
        again = await debouncer.on_message(CID, "book a bath", message_id="mid.1")
        await asyncio.sleep(SETTLE)

        assert first is not None
        assert again is None
        assert recorder.calls == [(CID, "book a bath", first)]
        assert debouncer.stats.duplicates_dropped == 1
        assert debouncer.stats.messages_received == 1
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_messages_without_id_are_never_dropped(self, recorder):
        debouncer = MessageDebouncer(
            recorder, quiet_ms=QUIET_MS, combine_mode="concatenate", duplicate_detector=DuplicateDetector(max_size=10)
        )
        await debouncer.on_message(CID, "yes")
        await debouncer.on_message(CID, "yes")
        await asyncio.sleep(SETTLE)

        assert recorder.texts == ["yes yes"]
        assert debouncer.stats.duplicates_dropped == 0
        await debouncer.shutdown()

    def test_detector_trims_oldest_ids(self):
        detector = DuplicateDetector(max_size=2)
        for message_id in ("a", "b", "c"):
            detector.add(message_id)
        assert len(detector) == 2
        assert "a" not in detector
        assert detector.is_duplicate("c")
        assert not detector.is_duplicate("a")

    def test_detector_ignores_empty_ids(self):
        detector = DuplicateDetector(max_size=2)
        detector.add("")
        detector.add(None)
        assert len(detector) == 0
        assert not detector.is_duplicate(None)

    def test_detector_rejects_non_positive_size(self):
        with pytest.raises(ValueError, match="max_size"):
            DuplicateDetector(max_size=0)

    def test_detector_size_defaults_from_settings(self):
        assert DuplicateDetector().max_size == 1000


class TestPeriodicCleanup:
    @pytest.mark.asyncio
    async def test_background_loop_removes_stale_buffers(self, recorder, store):
        debouncer = MessageDebouncer(
            recorder, store=store, quiet_ms=QUIET_MS, stale_threshold_sec=1, cleanup_interval_sec=0.05
        )
        await store.set("old", ConversationBuffer(conversation_id="old", last_activity=time.time() - 600))

        debouncer.start_cleanup()
        await asyncio.sleep(SETTLE)

        assert "old" not in store
        assert debouncer.stats.stale_buffers_removed == 1
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_start_cleanup_is_idempotent(self, recorder):
        debouncer = MessageDebouncer(recorder, cleanup_interval_sec=60)
        debouncer.start_cleanup()
        task = debouncer._cleanup_task
        debouncer.start_cleanup()

        assert debouncer._cleanup_task is task
        await debouncer.shutdown()
        assert task.cancelled()
        assert debouncer._cleanup_task is None

    @pytest.mark.asyncio
    async def test_loop_survives_failing_pass(self, recorder, caplog):
        debouncer = MessageDebouncer(recorder, store=FailingDeleteStore(), stale_threshold_sec=1, cleanup_interval_sec=0.02)
        await debouncer._store.set("old", ConversationBuffer(conversation_id="old", last_activity=time.time() - 600))

        with caplog.at_level("ERROR", logger="src.conversation.debouncer"):
            debouncer.start_cleanup()
            await asyncio.sleep(0.15)

        failures = [r for r in caplog.records if "Stale buffer cleanup failed" in r.message]
        assert len(failures) >= 2
        assert not debouncer._cleanup_task.done()
        await debouncer.shutdown()


class TestFlushContext:
    @pytest.mark.asyncio
    async def test_conversation_id_reset_when_cleanup_raises(self, recorder):
        store = FailingDeleteStore()
        debouncer = MessageDebouncer(recorder, store=store, quiet_ms=QUIET_MS)
        await store.set(CID, ConversationBuffer(conversation_id=CID, active_flush_token="tok-1"))

        with pytest.raises(RuntimeError, match="store unavailable"):
            await debouncer._flush(CID, "tok-1")

        assert recorder.conversation_ids == [CID]
        assert get_conversation_id() == "NO_CONVERSATION"
