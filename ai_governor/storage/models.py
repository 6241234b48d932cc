"""
Data models for storage layer.

Defines the persisted entities: usage records, user quotas and cache entries.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional

from ai_governor.core.pricing import CostBreakdown
from ai_governor.core.token_counter import TokenUsage

OPERATION_TEXT = "text-generation"
OPERATION_STREAMING = "streaming"
OPERATION_EMBEDDING = "embedding"
OPERATIONS = (OPERATION_TEXT, OPERATION_STREAMING, OPERATION_EMBEDDING)


def utcnow() -> datetime:
    """Timezone-aware current time; all day boundaries are UTC."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one governed AI request.

    Append-only events that create an auditable ledger of AI costs.
    Failed requests are recorded with zero usage and cost; cache hits are
    recorded with the original usage (tokens saved) and zero cost.
    Once written, these records must never be modified.
    """
    session_id: str
    provider: str
    model: str
    usage: TokenUsage
    cost: CostBreakdown
    timestamp: datetime
    operation: str = OPERATION_TEXT
    cached: bool = False
    user_id: Optional[str] = None
    success: bool = True
    error: Optional[str] = None
    feature: Optional[str] = None
    request_id: str = field(default_factory=lambda: f"ai_{uuid.uuid4().hex[:16]}")

    def __post_init__(self):
        if self.operation not in OPERATIONS:
            raise ValueError(f"Unknown operation: {self.operation}")

    @property
    def estimated(self) -> bool:
        """True when the usage is a best-effort estimate, not vendor-reported."""
        return self.usage.estimated


@dataclass(frozen=True)
class UserQuota:
    """Snapshot of one user's daily allowance and consumption."""
    user_id: str
    daily_token_limit: int
    daily_cost_limit: float
    current_daily_tokens: int
    current_daily_cost: float
    last_reset_date: Optional[date]

    @property
    def remaining_cost(self) -> float:
        return self.daily_cost_limit - self.current_daily_cost

    @property
    def remaining_tokens(self) -> int:
        return self.daily_token_limit - self.current_daily_tokens


@dataclass
class CacheEntry:
    """Previously computed response stored under a request fingerprint."""
    key: str
    content: str
    usage: TokenUsage
    model: str
    provider: str
    created_at: datetime
    expires_at: datetime
    hit_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "content": self.content,
            "usage": self.usage.to_dict(),
            "model": self.model,
            "provider": self.provider,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "hit_count": self.hit_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        return cls(
            key=data["key"],
            content=data["content"],
            usage=TokenUsage.from_dict(data["usage"]),
            model=data["model"],
            provider=data["provider"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            hit_count=int(data.get("hit_count", 0)),
        )
