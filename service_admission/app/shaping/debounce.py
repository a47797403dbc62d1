"""
Collapses a burst of messages from one caller into a single downstream call.

The latest message per user is persisted in the counter store; the timer
that decides the burst is over lives in this process only. Cancellation
therefore holds per process: deployments must route each user's messages
to one gateway instance for the "only the latest survives" guarantee.
"""

import asyncio
import json
from typing import Dict, Optional

from shared.errors import CounterStoreError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..models import require_identifier
from ..store import Clock, CounterStore, epoch_ms


class _PendingMessage:
    """One scheduled debounce: the awaited decision and the timer task behind it."""

    __slots__ = ("message_id", "received_at", "waiter", "timer")

    def __init__(self, message_id: str, received_at: int, waiter: asyncio.Future):
        self.message_id = message_id
        self.received_at = received_at
        self.waiter = waiter
        self.timer: Optional[asyncio.Task] = None

    def resolve(self, process: bool):
        if not self.waiter.done():
            self.waiter.set_result(process)

    def supersede(self):
        if self.timer is not None:
            self.timer.cancel()
        self.resolve(False)


class Debouncer:
    """Per-user trailing-edge debounce.

    ``should_process`` resolves ``True`` for the message that ends a burst
    and ``False`` for every message a newer one replaced.
    """

    def __init__(self,
                 store: CounterStore,
                 delay_ms: int = 3000,
                 ttl_seconds: int = 10,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Clock = epoch_ms):
        self.store = store
        self.delay_ms = delay_ms
        self.ttl_seconds = ttl_seconds
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("admission.debounce")
        self._pending: Dict[str, _PendingMessage] = {}

    @staticmethod
    def latest_key(user_id: str) -> str:
        return f"debounce:{user_id}"

    def pending_users(self):
        return list(self._pending)

    async def should_process(self,
                             user_id: str,
                             message_id: str,
                             message_text: str,
                             delay_ms: Optional[int] = None) -> bool:
        """Wait out the debounce delay and report whether this message ends the burst.

        Resolves ``True`` once ``delay_ms`` passes with no newer message for
        the user. A message that is superseded resolves ``False`` at the
        moment the newer one arrives rather than after its own delay.
        """
        require_identifier(user_id)
        require_identifier(message_id, "message_id")
        delay = self.delay_ms if delay_ms is None else max(0, delay_ms)
        loop = asyncio.get_running_loop()

        previous = self._pending.get(user_id)
        if previous is not None:
            previous.supersede()
            self.logger.debug(
                "Message superseded",
                user_id=user_id,
                superseded=previous.message_id,
                latest=message_id
            )
            if self.metrics:
                self.metrics.increment_counter("debounce_superseded_total")

        pending = _PendingMessage(message_id, self.clock(), loop.create_future())
        self._pending[user_id] = pending

        await self._persist_latest(user_id, pending, message_text, delay)
        if pending.waiter.done():
            # A newer message arrived while this one was being persisted
            return pending.waiter.result()

        pending.timer = loop.create_task(self._fire(user_id, pending, delay))
        try:
            return await pending.waiter
        except asyncio.CancelledError:
            self._forget(user_id, pending)
            if pending.timer is not None:
                pending.timer.cancel()
            raise

    async def _persist_latest(self, user_id: str, pending: _PendingMessage, message_text: str, delay_ms: int):
        ttl_ms = max(self.ttl_seconds * 1000, delay_ms * 2)
        record = {"message_id": pending.message_id, "text": message_text, "received_at": pending.received_at}
        try:
            await self.store.set(self.latest_key(user_id), json.dumps(record), ttl_ms)
        except CounterStoreError as e:
            self.logger.warning("Failed to persist latest message", user_id=user_id, error=e.message)
            if self.metrics:
                self.metrics.increment_counter("store_failures_total", component="debounce")

    async def _fire(self, user_id: str, pending: _PendingMessage, delay_ms: int):
        await asyncio.sleep(delay_ms / 1000)

        process = not await self._superseded_elsewhere(user_id, pending)
        self._forget(user_id, pending)
        if not process:
            self.logger.debug("Newer message persisted elsewhere", user_id=user_id, message_id=pending.message_id)
        pending.resolve(process)

    async def _superseded_elsewhere(self, user_id: str, pending: _PendingMessage) -> bool:
        """Whether the store holds a strictly newer message for the user.

        A stale write landing after a newer one (an older message of this
        burst, say) never overrides the timer that is still current here.
        An unreadable or missing record leaves the local view in charge.
        """
        try:
            raw = await self.store.get(self.latest_key(user_id))
        except CounterStoreError as e:
            self.logger.warning("Failed to read latest message", user_id=user_id, error=e.message)
            if self.metrics:
                self.metrics.increment_counter("store_failures_total", component="debounce")
            return False
        if raw is None:
            return False
        try:
            record = json.loads(raw)
            latest_id = record["message_id"]
            latest_at = int(record["received_at"])
        except (ValueError, KeyError, TypeError):
            return False
        return latest_id != pending.message_id and latest_at > pending.received_at

    def _forget(self, user_id: str, pending: _PendingMessage):
        if self._pending.get(user_id) is pending:
            del self._pending[user_id]

    def cancel_all(self):
        """Resolve every pending message as not processed."""
        for user_id, pending in list(self._pending.items()):
            pending.supersede()
            self._forget(user_id, pending)
