"""
Data models for the admission service.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, Field

from shared.errors import ValidationError


class Operation(str, Enum):
    """Downstream call kinds with their own quota."""
    PARSING = "parsing"
    REPLY = "reply"


class Scope(str, Enum):
    """Sliding-window scopes."""
    PARSING = "parsing"
    REPLY = "reply"
    GLOBAL = "global"
    CHANNEL = "channel"


class Tier(str, Enum):
    """Quota classes."""
    FREE = "free"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class Priority(str, Enum):
    """Per-call priority applied after tier and load adjustments."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class AdmissionReason(str, Enum):
    """Why an admission decision came out the way it did."""
    ADMITTED = "admitted"
    QUOTA_EXCEEDED = "quota_exceeded"
    SYSTEM_BUSY = "system_busy"
    FAIL_OPEN = "fail_open"


class MessageOutcome(str, Enum):
    """Fate of one inbound chat message."""
    PROCESS = "process"
    DUPLICATE = "duplicate"
    SUPERSEDED = "superseded"
    REJECTED = "rejected"


E = TypeVar("E", bound=Enum)


def parse_enum(enum_cls: Type[E], value, field: str) -> E:
    """Coerce a caller-supplied value, raising ``ValidationError`` when unknown."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(
            f"Unknown {field}: {value!r}",
            {"field": field, "value": value, "allowed": [member.value for member in enum_cls]}
        )


def require_identifier(value: Optional[str], field: str = "user_id") -> str:
    """Reject empty caller identifiers."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a non-empty string", {"field": field})
    return value


GLOBAL_IDENTIFIER = "global"


@dataclass(frozen=True)
class RateLimitKey:
    """Identity of one sliding window."""
    scope: Scope
    identifier: str
    tier: Optional[Tier] = None

    def storage_key(self, prefix: str = "ratelimit", tier_scoped: bool = False) -> str:
        """Counter store key; the tier is part of it only for tier-scoped windows."""
        parts = [prefix, self.scope.value]
        if tier_scoped and self.tier is not None:
            parts.append(self.tier.value)
        parts.append(self.identifier)
        return ":".join(parts)

    @classmethod
    def global_key(cls) -> "RateLimitKey":
        return cls(scope=Scope.GLOBAL, identifier=GLOBAL_IDENTIFIER)


def retry_after_seconds(reset_time: int, now_ms: int) -> int:
    """Whole seconds until ``reset_time``, never less than one."""
    return max(1, math.ceil((reset_time - now_ms) / 1000))


class WindowDecision(BaseModel):
    """Result of one sliding-window admission."""
    admitted: bool
    remaining: int
    reset_at: int
    limit: int


class AdmissionResult(BaseModel):
    """Answer to ``check_admission``."""
    success: bool
    remaining: int
    reset_time: int
    message: Optional[str] = None
    reason: AdmissionReason = AdmissionReason.ADMITTED
    limit: Optional[int] = None

    def retry_after_seconds(self, now_ms: int) -> int:
        return retry_after_seconds(self.reset_time, now_ms)


class ChannelDecision(BaseModel):
    """Answer to an edge check on one ingress channel."""
    channel: str
    success: bool
    remaining: int
    reset_time: int
    retry_after_seconds: int = 0
    fail_open: bool = False


class UsageCounts(BaseModel):
    parsing: int = 0
    reply: int = 0
    tokens: int = 0


class PercentUsed(BaseModel):
    parsing: int = 0
    reply: int = 0


class UsageSummary(BaseModel):
    """Advisory view of one user's consumption today."""
    today: UsageCounts = Field(default_factory=UsageCounts)
    tier: Tier = Tier.FREE
    percent_used: PercentUsed = Field(default_factory=PercentUsed)
    recommendation: Optional[str] = None


class MessageDecision(BaseModel):
    """Result of running one message through the full shaping pipeline."""
    outcome: MessageOutcome
    message_id: str
    request_id: Optional[str] = None
    admission: Optional[AdmissionResult] = None

    @property
    def should_process(self) -> bool:
        return self.outcome == MessageOutcome.PROCESS
