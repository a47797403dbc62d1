"""
Admission gateway: the in-process entry point used by the message handler.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from shared.circuit_breaker import CircuitBreaker
from shared.config import AdmissionConfig, get_config
from shared.errors import AdmissionError, CounterStoreError
from shared.logging import clear_context, configure_logging, get_logger, set_message_context, set_request_id
from shared.metrics import MetricsCollector

from .models import (
    AdmissionResult, ChannelDecision, MessageDecision, MessageOutcome, Operation, Priority,
    Tier, UsageSummary, parse_enum,
)
from .ratelimit import ChannelLimiter, LoadGauge, QuotaResolver, SlidingWindowLimiter
from .shaping import Debouncer, DuplicateDetector
from .store import Clock, CounterStore, RedisCounterStore, epoch_ms
from .usage import UsageTracker


class AdmissionGateway:
    """Wires the admission and shaping components around one counter store."""

    def __init__(self,
                 store: CounterStore,
                 config: Optional[AdmissionConfig] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Clock = epoch_ms):
        self.config = config or get_config()
        self.store = store
        self.clock = clock
        self.metrics = metrics or MetricsCollector(self.config.service_name)
        self.logger = get_logger("admission.gateway")

        self.load_gauge = LoadGauge(store, ttl_seconds=self.config.load_ttl_seconds)
        self.limiter = SlidingWindowLimiter(store, tier_scoped=self.config.tier_scoped_windows)
        self.quota = QuotaResolver(self.limiter, self.load_gauge, self.config, self.metrics, clock)
        self.channels = ChannelLimiter(
            SlidingWindowLimiter(store, prefix="edge"),
            self.config.channel_limits,
            self.metrics,
            clock
        )
        self.usage = UsageTracker(store, self.load_gauge, self.config, self.metrics, clock)
        self.debouncer = Debouncer(
            store,
            delay_ms=self.config.debounce_delay_ms,
            ttl_seconds=self.config.debounce_ttl_seconds,
            metrics=self.metrics,
            clock=clock
        )
        self.duplicates = DuplicateDetector(store, self.config.duplicate_window_ms, self.metrics, clock)

    async def start(self):
        """Start the gateway; an unreachable store is logged, not fatal."""
        try:
            await self.store.start()
        except CounterStoreError as e:
            self.logger.warning("Counter store unavailable at startup, admissions will fail open", error=e.message)
            self.metrics.record_error("store_start")
        self.logger.info("Admission gateway started", env=self.config.env)

    async def stop(self):
        self.debouncer.cancel_all()
        await self.store.stop()
        self.logger.info("Admission gateway stopped")

    async def health(self) -> Dict[str, Any]:
        """Liveness summary with counter store status."""
        try:
            store_status = "ok" if await self.store.ping() else "error"
        except CounterStoreError:
            store_status = "error"

        health = {
            "service": self.config.service_name,
            "status": store_status,
            "dependencies": {"counter_store": store_status},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if isinstance(self.store, RedisCounterStore):
            health["circuit_breaker"] = self.store.breaker.get_state()
        return health

    async def check_admission(self,
                              user_id: str,
                              operation: Union[Operation, str],
                              tier: Union[Tier, str] = Tier.FREE,
                              priority: Union[Priority, str] = Priority.NORMAL) -> AdmissionResult:
        operation = parse_enum(Operation, operation, "operation")
        with self.metrics.time_operation("admission_check_duration_seconds", operation=operation.value):
            return await self.quota.check_admission(user_id, operation, tier, priority)

    async def debounce(self, user_id: str, message_id: str, message_text: str,
                       delay_ms: Optional[int] = None) -> bool:
        return await self.debouncer.should_process(user_id, message_id, message_text, delay_ms)

    async def check_duplicate(self, user_id: str, message_text: str, window_ms: Optional[int] = None) -> bool:
        return await self.duplicates.is_duplicate(user_id, message_text, window_ms)

    async def report_usage(self, user_id: str, operation: Union[Operation, str], tokens_used: int,
                           success: bool, tier: Union[Tier, str] = Tier.FREE) -> None:
        await self.usage.record_usage(user_id, operation, tokens_used, success, tier)

    async def usage_summary(self, user_id: str, tier: Union[Tier, str] = Tier.FREE) -> UsageSummary:
        return await self.usage.summarize(user_id, tier)

    async def check_channel(self, channel: str, *identifiers: str) -> ChannelDecision:
        return await self.channels.check(channel, *identifiers)

    async def handle_message(self,
                             user_id: str,
                             message_id: str,
                             message_text: str,
                             tier: Union[Tier, str] = Tier.FREE,
                             priority: Union[Priority, str] = Priority.NORMAL,
                             operation: Union[Operation, str] = Operation.PARSING,
                             delay_ms: Optional[int] = None,
                             request_id: Optional[str] = None) -> MessageDecision:
        """Run one inbound message through duplicate check, debounce and admission.

        Invalid input is logged with its error response and re-raised.
        """
        request_id = set_request_id(request_id)
        set_message_context(user_id=user_id, message_id=message_id)
        try:
            if await self.check_duplicate(user_id, message_text):
                return MessageDecision(
                    outcome=MessageOutcome.DUPLICATE, message_id=message_id, request_id=request_id
                )

            if not await self.debounce(user_id, message_id, message_text, delay_ms):
                return MessageDecision(
                    outcome=MessageOutcome.SUPERSEDED, message_id=message_id, request_id=request_id
                )

            admission = await self.check_admission(user_id, operation, tier, priority)
            outcome = MessageOutcome.PROCESS if admission.success else MessageOutcome.REJECTED
            return MessageDecision(
                outcome=outcome, message_id=message_id, request_id=request_id, admission=admission
            )
        except AdmissionError as e:
            self.logger.warning("Message rejected", **e.to_response().model_dump(exclude_none=True))
            raise
        finally:
            clear_context()


def create_gateway(config: Optional[AdmissionConfig] = None,
                   metrics: Optional[MetricsCollector] = None) -> AdmissionGateway:
    """Build a gateway backed by Redis."""
    config = config or get_config()
    configure_logging(config.service_name, config.log_level)
    breaker = CircuitBreaker(
        failure_threshold=config.breaker_failure_threshold,
        recovery_timeout=config.breaker_recovery_seconds,
        name="counter_store"
    )
    store = RedisCounterStore(config.redis_url, timeout_ms=config.store_timeout_ms, breaker=breaker)
    return AdmissionGateway(store, config, metrics)
