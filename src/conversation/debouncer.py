"""
Message debouncer: one AI call per burst of inbound chat messages.

Customers often type one thought across several messages. Each message
restarts a quiet-period timer; when the timer finally fires, the buffered
text is handed to the flush handler exactly once.

How it stays race-safe:
1. Every message mints a fresh flush token and stores it on the buffer.
2. A timer only flushes if the buffer's token still equals the token it
   was created with. Stale timers are discarded without side effects.
3. After the handler returns (or raises), the buffer is deleted only if
   the token still matches, so a message that arrived mid-flush keeps
   its buffer for the newer timer.

Optional housekeeping: a DuplicateDetector drops webhook redeliveries by
message id, and ``start_cleanup()`` runs ``cleanup_stale()`` on an interval
until ``shutdown()``.

Usage:
    async def respond(conversation_id: str, text: str, token: str) -> None:
        await ai_pipeline.reply(conversation_id, text)

    debouncer = MessageDebouncer(respond)
    await debouncer.on_message("fb:123", "I want to")
    await debouncer.on_message("fb:123", "book a groom")

    # Handlers that also want attachments and the message count:
    async def respond_with_photos(conversation_id, text, token, details: BurstDetails) -> None:
        ...

    debouncer = MessageDebouncer(respond_with_photos, pass_burst_details=True)
    await debouncer.on_message("ig:7", "is this matted?", image_url="https://cdn/coat.jpg")
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from src.config import settings
from src.conversation.buffer_store import BufferStore, InMemoryBufferStore
from src.conversation.duplicate_detector import DuplicateDetector
from src.conversation.state_machine import BufferState, BufferStateMachine, BufferTrigger
from src.logging_context import get_conversation_logger, reset_conversation_id, set_conversation_id
from src.schemas.conversation_schema import BurstDetails, ConversationBuffer

logger = get_conversation_logger(__name__)

FlushHandler = Callable[..., Awaitable[None]]


@dataclass
class DebounceStats:
    """Counters for monitoring buffer behaviour."""
    messages_received: int = 0
    duplicates_dropped: int = 0
    flushes: int = 0
    handler_failures: int = 0
    stale_timers_discarded: int = 0
    stale_buffers_removed: int = 0


class MessageDebouncer:
    """Coalesces inbound message bursts per conversation."""

    def __init__(
        self,
        flush_handler: FlushHandler,
        store: Optional[BufferStore] = None,
        quiet_ms: Optional[int] = None,
        combine_mode: Optional[str] = None,
        stale_threshold_sec: Optional[int] = None,
        duplicate_detector: Optional[DuplicateDetector] = None,
        pass_burst_details: bool = False,
        cleanup_interval_sec: Optional[float] = None,
    ) -> None:
        self._flush_handler = flush_handler
        self._store: BufferStore = store if store is not None else InMemoryBufferStore()
        quiet = settings.messaging.debounce_quiet_ms if quiet_ms is None else quiet_ms
        if quiet < 0:
            raise ValueError(f"quiet_ms must be >= 0, got {quiet}")
        self.quiet_seconds = quiet / 1000
        self.combine_mode = settings.messaging.combine_mode if combine_mode is None else combine_mode
        if self.combine_mode not in ("latest", "concatenate"):
            raise ValueError(f"Unknown combine mode: {self.combine_mode!r}")
        self.stale_threshold_sec = (
            settings.messaging.stale_buffer_threshold_sec if stale_threshold_sec is None else stale_threshold_sec
        )
        self.cleanup_interval_sec = (
            settings.messaging.cleanup_interval_sec if cleanup_interval_sec is None else cleanup_interval_sec
        )
        if self.cleanup_interval_sec <= 0:
            raise ValueError(f"cleanup_interval_sec must be > 0, got {self.cleanup_interval_sec}")
        self.duplicate_detector = duplicate_detector
        self.pass_burst_details = pass_burst_details

        # Process-local: timers, lifecycle machines, tokens being flushed.
        self._timers: dict[str, asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()
        self._flushing: dict[str, set[str]] = {}
        self._machines: dict[str, BufferStateMachine] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self.stats = DebounceStats()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def on_message(
        self,
        conversation_id: str,
        text: str,
        image_url: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> Optional[str]:
        """
        Buffer a message and (re)start the quiet-period timer.

        Returns the new flush token, or None when ``message_id`` is a
        redelivery the duplicate detector has already seen.
        """
        if self.duplicate_detector is not None and self.duplicate_detector.is_duplicate(message_id):
            self.stats.duplicates_dropped += 1
            logger.info("Dropped duplicate message %s for %s", message_id, conversation_id)
            return None

        buffer = await self._store.get(conversation_id)
        if buffer is None:
            buffer = ConversationBuffer(conversation_id=conversation_id)
            logger.debug("Created message buffer for %s", conversation_id)
        elif buffer.active_flush_token in self._flushing.get(conversation_id, ()):
            # The current burst is already being flushed; start an independent one.
            buffer.start_new_burst()
            logger.debug("Message during flush for %s, starting new burst", conversation_id)

        buffer.add_message(text, image_url)
        token = uuid.uuid4().hex
        buffer.active_flush_token = token
        await self._store.set(conversation_id, buffer)
        if self.duplicate_detector is not None:
            self.duplicate_detector.add(message_id)

        if self._cancel_timer(conversation_id):
            logger.debug("User still typing in %s, timer reset", conversation_id)
        self._timers[conversation_id] = asyncio.create_task(
            self._run_timer(conversation_id, token), name=f"debounce:{conversation_id}"
        )

        self._machine(conversation_id).transition(BufferTrigger.MESSAGE_RECEIVED)
        self.stats.messages_received += 1
        logger.debug(
            "Waiting %.0fms for %s to finish typing (%d buffered)",
            self.quiet_seconds * 1000, conversation_id, buffer.message_count,
        )
        return token

    async def cancel(self, conversation_id: str) -> None:
        """Drop a conversation's pending burst (e.g. after a processing error)."""
        self._cancel_timer(conversation_id)
        await self._store.delete(conversation_id)
        self._notify(conversation_id, BufferTrigger.CANCELLED)
        self._machines.pop(conversation_id, None)
        logger.info("Buffer cancelled for %s", conversation_id)

    async def cleanup_stale(self, now: Optional[float] = None) -> int:
        """Remove buffers idle past the stale threshold that no timer or flush owns."""
        now = time.time() if now is None else now
        removed = 0
        for conversation_id, buffer in await self._store.items():
            if conversation_id in self._timers or self._flushing.get(conversation_id):
                continue
            idle = now - buffer.last_activity
            if idle > self.stale_threshold_sec:
                await self._store.delete(conversation_id)
                self._machines.pop(conversation_id, None)
                removed += 1
                logger.info("Removed stale buffer for %s (idle %.0fs)", conversation_id, idle)

        # Machines left behind when another instance flushed a shared buffer.
        live = {cid for cid, _ in await self._store.items()}
        for conversation_id in list(self._machines):
            if (
                conversation_id not in live
                and conversation_id not in self._timers
                and not self._flushing.get(conversation_id)
            ):
                del self._machines[conversation_id]
        self.stats.stale_buffers_removed += removed
        return removed

    def start_cleanup(self) -> None:
        """Run ``cleanup_stale()`` every ``cleanup_interval_sec`` until shutdown. Idempotent."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="debounce:cleanup")
        logger.info("Stale buffer cleanup every %ss", self.cleanup_interval_sec)

    async def shutdown(self, wait: bool = True) -> None:
        """Cancel all pending timers and the cleanup loop; optionally wait for in-flight flushes."""
        pending = [task for task in self._timers.values() if not task.done()]
        for conversation_id in list(self._timers):
            self._cancel_timer(conversation_id)
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            pending.append(self._cleanup_task)
            self._cleanup_task = None
        if wait:
            pending.extend(self._inflight)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Debouncer shut down")

    def state(self, conversation_id: str) -> BufferState:
        machine = self._machines.get(conversation_id)
        return machine.current_state if machine else BufferState.IDLE

    def active_count(self) -> int:
        """Conversations with a pending timer or an in-flight flush."""
        flushing = {cid for cid, tokens in self._flushing.items() if tokens}
        return len(set(self._timers) | flushing)

    # ------------------------------------------------------------------ #
    # Timer and flush
    # ------------------------------------------------------------------ #

    def _cancel_timer(self, conversation_id: str) -> bool:
        task = self._timers.pop(conversation_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def _run_timer(self, conversation_id: str, token: str) -> None:
        try:
            await asyncio.sleep(self.quiet_seconds)
        except asyncio.CancelledError:
            logger.debug("Superseded timer cancelled for %s", conversation_id)
            raise

        # Past this point the flush is no longer cancellable by new messages.
        task = asyncio.current_task()
        if self._timers.get(conversation_id) is task:
            del self._timers[conversation_id]
        self._inflight.add(task)
        try:
            await self._flush(conversation_id, token)
        finally:
            self._inflight.discard(task)

    async def _flush(self, conversation_id: str, token: str) -> None:
        buffer = await self._store.get(conversation_id)
        if buffer is None or buffer.active_flush_token != token:
            self.stats.stale_timers_discarded += 1
            self._notify(conversation_id, BufferTrigger.STALE_TIMER)
            logger.debug("Discarding stale timer for %s", conversation_id)
            return

        text = buffer.combined_text(self.combine_mode)
        details = BurstDetails(message_count=buffer.message_count, image_urls=tuple(buffer.image_urls))
        self._flushing.setdefault(conversation_id, set()).add(token)
        self._notify(conversation_id, BufferTrigger.TIMER_FIRED)

        context_token = set_conversation_id(conversation_id)
        try:
            try:
                logger.info(
                    "Flushing %d buffered message(s), %d image(s) for %s",
                    details.message_count, len(details.image_urls), conversation_id,
                )
                if self.pass_burst_details:
                    await self._flush_handler(conversation_id, text, token, details)
                else:
                    await self._flush_handler(conversation_id, text, token)
                self.stats.flushes += 1
            except Exception:
                self.stats.handler_failures += 1
                logger.exception("Flush handler failed for %s", conversation_id)
            finally:
                await self._finish_flush(conversation_id, token)
        finally:
            reset_conversation_id(context_token)

    async def _finish_flush(self, conversation_id: str, token: str) -> None:
        tokens = self._flushing.get(conversation_id)
        if tokens is not None:
            tokens.discard(token)
            if not tokens:
                del self._flushing[conversation_id]

        current = await self._store.get(conversation_id)
        if current is not None and current.active_flush_token == token:
            await self._store.delete(conversation_id)
            self._notify(conversation_id, BufferTrigger.FLUSH_COMPLETED)
            self._machines.pop(conversation_id, None)
            logger.debug("Buffer processed and cleaned up for %s", conversation_id)
        else:
            self._notify(conversation_id, BufferTrigger.FLUSH_SUPERSEDED)
            logger.debug("Newer burst owns the buffer for %s, leaving it", conversation_id)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_sec)
            try:
                await self.cleanup_stale()
            except Exception:
                # Keep looping; the next interval retries.
                logger.exception("Stale buffer cleanup failed")

    # ------------------------------------------------------------------ #
    # Lifecycle bookkeeping
    # ------------------------------------------------------------------ #

    def _machine(self, conversation_id: str) -> BufferStateMachine:
        machine = self._machines.get(conversation_id)
        if machine is None:
            machine = BufferStateMachine()
            self._machines[conversation_id] = machine
        return machine

    def _notify(self, conversation_id: str, trigger: BufferTrigger) -> None:
        machine = self._machines.get(conversation_id)
        if machine is not None:
            machine.transition(trigger)
