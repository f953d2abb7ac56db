"""
Data models for storage layer.

Defines subscribers, generated scripts and usage records.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple

from ugc_guard.core.plans import PlanTier


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Subscriber:
    """Snapshot of a subscriber's plan and generation counters.

    Counters are only ever changed by the quota-safe transaction; a snapshot
    read outside a locked session must not be used for entitlement checks.
    """
    id: str
    plan: PlanTier
    trial_generations_used: int = 0
    monthly_generation_count: int = 0
    total_generations: int = 0
    trial_started_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    monthly_reset_date: Optional[datetime] = None
    has_batch_generation: bool = False
    team_size: int = 0
    is_email_verified: bool = True


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one generation attempt's token and cost usage.

    Append-only. Aggregated into daily and monthly windows; only retention
    pruning ever removes records.
    """
    subscriber_id: str
    provider_id: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    estimated_cost: float
    timestamp: datetime
    success: bool = True


@dataclass(frozen=True)
class GeneratedScript:
    """A generated hook/script/visuals artifact ready for persistence."""
    id: str
    subscriber_id: str
    provider_id: str
    model: str
    hook: str
    script: str
    visuals: Tuple[str, ...] = field(default_factory=tuple)
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0
    created_at: datetime = field(default_factory=utcnow)
    watermarked: bool = False
    variation: Optional[int] = None
