"""
Suppression of content-identical repeats from one caller.
"""

import json
from typing import Optional

from shared.errors import CounterStoreError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..models import require_identifier
from ..store import Clock, CounterStore, epoch_ms


class DuplicateDetector:
    """Flags a message as a duplicate of the caller's previous one.

    A message is a duplicate when the previous record for the same user is
    younger than the window and its trimmed text matches exactly. Every
    call overwrites the record, duplicate or not.
    """

    def __init__(self,
                 store: CounterStore,
                 window_ms: int = 10000,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Clock = epoch_ms):
        self.store = store
        self.window_ms = window_ms
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("admission.duplicates")

    @staticmethod
    def record_key(user_id: str) -> str:
        return f"recent:{user_id}"

    async def is_duplicate(self,
                           user_id: str,
                           message_text: str,
                           window_ms: Optional[int] = None,
                           now_ms: Optional[int] = None) -> bool:
        require_identifier(user_id)
        window = window_ms if window_ms is not None else self.window_ms
        now = now_ms if now_ms is not None else self.clock()
        text = (message_text or "").strip()
        key = self.record_key(user_id)

        try:
            previous = await self.store.get(key)
            await self.store.set(key, json.dumps({"text": text, "received_at": now}), max(window, 1))
        except CounterStoreError as e:
            self.logger.warning("Duplicate check failed, treating as new", user_id=user_id, error=e.message)
            if self.metrics:
                self.metrics.increment_counter("store_failures_total", component="duplicates")
            return False

        if previous is None:
            return False
        try:
            record = json.loads(previous)
            age = now - int(record["received_at"])
            duplicate = age < window and record["text"] == text
        except (ValueError, KeyError, TypeError):
            self.logger.warning("Ignoring malformed duplicate record", user_id=user_id)
            return False

        if duplicate:
            self.logger.info("Duplicate message suppressed", user_id=user_id, age_ms=age)
            if self.metrics:
                self.metrics.increment_counter("duplicates_suppressed_total")
        return duplicate
