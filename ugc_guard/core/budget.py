"""
Budget governor: per-plan generation counts, token envelopes and cost ceilings.

Allocations are derived once from config and never change for the lifetime
of a governor. Usage records are read from and appended to an injected
UsageStore.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ugc_guard.config.loader import AppConfig
from ugc_guard.storage.models import UsageRecord, utcnow
from ugc_guard.storage.repository import UsageStore, day_key, month_key

from .plans import PlanTier
from .pricing import PricingTable, calculate_cost

logger = logging.getLogger(__name__)

DAILY_RETENTION = timedelta(days=7)
MONTHLY_RETENTION = timedelta(days=90)


@dataclass(frozen=True)
class TokenAllocation:
    """Per-generation ceiling for a plan."""
    input_limit: int
    output_limit: int
    total_limit: int
    cost_limit: float


@dataclass(frozen=True)
class UserTokenLimits:
    """Generation counts and token budgets for a plan."""
    daily_generations: int
    monthly_generations: int
    tokens_per_generation: TokenAllocation
    daily_token_budget: int
    monthly_token_budget: int


@dataclass(frozen=True)
class GenerationAllowance:
    """Answer to whether a subscriber may generate now."""
    allowed: bool
    remaining_daily: int
    remaining_monthly: int
    reason: Optional[str] = None


class BudgetGovernor:
    """Enforces generation-count, token and cost ceilings per plan."""

    def __init__(self, config: AppConfig, store: UsageStore, clock=utcnow):
        """Initialize the governor.

        Args:
            config: Loaded configuration (token envelope, plans, providers)
            store: Usage record store
            clock: Returns the current aware UTC datetime
        """
        self.config = config
        self.store = store
        self.clock = clock
        self.pricing = PricingTable.from_providers(config.providers)
        self._limits: Dict[PlanTier, UserTokenLimits] = {
            plan: self._derive_limits(plan) for plan in PlanTier
        }
        logger.debug("Budget governor initialized for %d plans", len(self._limits))

    def _derive_limits(self, plan: PlanTier) -> UserTokenLimits:
        tokens = self.config.tokens
        settings = self.config.get_plan(plan)
        scale = settings.token_scale
        allocation = TokenAllocation(
            input_limit=int(tokens.base_input_tokens * scale),
            output_limit=int(tokens.base_output_tokens * scale),
            total_limit=int((tokens.base_input_tokens + tokens.base_output_tokens) * scale),
            cost_limit=tokens.base_cost_limit * settings.cost_scale,
        )
        return UserTokenLimits(
            daily_generations=settings.daily_generations,
            monthly_generations=settings.monthly_generations,
            tokens_per_generation=allocation,
            daily_token_budget=settings.daily_generations * allocation.total_limit,
            monthly_token_budget=settings.monthly_generations * allocation.total_limit,
        )

    def limits_for(self, plan: PlanTier) -> UserTokenLimits:
        return self._limits[plan]

    def allocation_for(self, plan: PlanTier) -> TokenAllocation:
        return self._limits[plan].tokens_per_generation

    def daily_cost_ceiling(self, plan: PlanTier) -> float:
        """Daily token budget converted to dollars."""
        return self._limits[plan].daily_token_budget * self.config.tokens.cost_per_token

    def daily_records(self, subscriber_id: str, now: Optional[datetime] = None) -> List[UsageRecord]:
        return self.store.records_for_day(subscriber_id, day_key(now or self.clock()))

    def monthly_records(self, subscriber_id: str, now: Optional[datetime] = None) -> List[UsageRecord]:
        return self.store.records_for_month(subscriber_id, month_key(now or self.clock()))

    def can_generate(self, subscriber_id: str, plan: PlanTier) -> GenerationAllowance:
        """Check today's and this month's successful generation counts.

        The daily limit is checked first. When it is exhausted the monthly
        remainder is still reported.

        Args:
            subscriber_id: Subscriber to check
            plan: Subscriber's current plan

        Returns:
            GenerationAllowance with remaining counts and a reason when denied
        """
        limits = self._limits[plan]
        now = self.clock()
        used_today = _successes(self.daily_records(subscriber_id, now))
        used_month = _successes(self.monthly_records(subscriber_id, now))
        remaining_daily = max(0, limits.daily_generations - used_today)
        remaining_monthly = max(0, limits.monthly_generations - used_month)

        if remaining_daily == 0:
            return GenerationAllowance(
                allowed=False,
                remaining_daily=0,
                remaining_monthly=remaining_monthly,
                reason=f"Daily generation limit of {limits.daily_generations} reached",
            )
        if remaining_monthly == 0:
            return GenerationAllowance(
                allowed=False,
                remaining_daily=remaining_daily,
                remaining_monthly=0,
                reason=f"Monthly generation limit of {limits.monthly_generations} reached",
            )
        return GenerationAllowance(True, remaining_daily, remaining_monthly)

    def estimate_cost(
        self,
        plan: PlanTier,
        provider_id: str,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
    ) -> float:
        """Estimate the cost of one generation.

        Missing token counts fall back to the plan's allocation ceilings,
        giving a worst-case pre-flight estimate.

        Raises:
            ValueError: If the provider has no configured pricing
        """
        allocation = self.allocation_for(plan)
        if input_tokens is None:
            input_tokens = allocation.input_limit
        if output_tokens is None:
            output_tokens = allocation.output_limit
        return calculate_cost(self.pricing.get_pricing(provider_id), input_tokens, output_tokens)

    def would_exceed_cost_limit(
        self,
        subscriber_id: str,
        plan: PlanTier,
        provider_id: str,
        estimated_cost: Optional[float] = None,
        count: int = 1,
    ) -> bool:
        """Check the per-generation ceiling and the daily cost ceiling.

        Either check alone trips the limit. ``count`` generations of
        ``estimated_cost`` each are charged against the daily ceiling.
        """
        if estimated_cost is None:
            estimated_cost = self.estimate_cost(plan, provider_id)

        allocation = self.allocation_for(plan)
        if estimated_cost > allocation.cost_limit:
            logger.info(
                "Per-generation cost %.6f exceeds %s ceiling %.6f",
                estimated_cost, plan.value, allocation.cost_limit,
            )
            return True

        spent_today = sum(r.estimated_cost for r in self.daily_records(subscriber_id) if r.success)
        if spent_today + estimated_cost * count > self.daily_cost_ceiling(plan):
            logger.info(
                "Daily cost %.6f + %.6f exceeds %s ceiling for %s",
                spent_today, estimated_cost * count, plan.value, subscriber_id,
            )
            return True
        return False

    def record_usage(self, record: UsageRecord) -> None:
        self.store.append(record)
        logger.debug(
            "Recorded usage for %s via %s: %d tokens, $%.6f (success=%s)",
            record.subscriber_id, record.provider_id, record.total_tokens,
            record.estimated_cost, record.success,
        )

    def get_user_usage_stats(self, subscriber_id: str, plan: PlanTier) -> Dict[str, Dict]:
        """Summarize today's and this month's usage against plan limits."""
        limits = self._limits[plan]
        now = self.clock()
        return {
            "daily": _summarize(
                self.daily_records(subscriber_id, now),
                limits.daily_generations,
                limits.daily_token_budget,
            ),
            "monthly": _summarize(
                self.monthly_records(subscriber_id, now),
                limits.monthly_generations,
                limits.monthly_token_budget,
            ),
        }

    def cleanup(self, now: Optional[datetime] = None):
        """Prune daily keys older than 7 days and monthly keys older than 90.

        Idempotent. Only keys whose whole window starts before the cutoff
        are deleted.

        Returns:
            Number of (daily, monthly) keys deleted
        """
        now = now or self.clock()
        deleted = self.store.prune(now - DAILY_RETENTION, now - MONTHLY_RETENTION)
        logger.info("Usage cleanup removed %d daily and %d monthly keys", *deleted)
        return deleted


def _successes(records: List[UsageRecord]) -> int:
    return sum(1 for r in records if r.success)


def _summarize(records: List[UsageRecord], limit: int, token_budget: int) -> Dict:
    successful = [r for r in records if r.success]
    return {
        "used": len(successful),
        "limit": limit,
        "tokens_used": sum(r.total_tokens for r in successful),
        "token_budget": token_budget,
        "cost_used": round(sum(r.estimated_cost for r in successful), 6),
    }
