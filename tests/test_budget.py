"""
Unit tests for the budget governor.

Tests plan scaling, generation allowances, cost ceilings and retention.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from ugc_guard.core.budget import BudgetGovernor
from ugc_guard.core.plans import PlanTier
from ugc_guard.storage.models import UsageRecord
from ugc_guard.storage.repository import InMemoryUsageStore

from conftest import FIXED_NOW


def _record(subscriber_id="sub-1", when=FIXED_NOW, cost=0.0005, success=True, tokens=(500, 800)):
    return UsageRecord(
        subscriber_id=subscriber_id,
        provider_id="gemini",
        input_tokens=tokens[0],
        output_tokens=tokens[1],
        total_tokens=sum(tokens),
        estimated_cost=cost,
        timestamp=when,
        success=success,
    )


@pytest.fixture
def store():
    return InMemoryUsageStore()


@pytest.fixture
def governor(config, store, fixed_clock):
    return BudgetGovernor(config, store, clock=fixed_clock)


class TestAllocations:
    """Test per-plan limits derived from config."""

    def test_trial_allocation(self, governor):
        """Trial is 0.8x tokens and 0.5x cost of the base envelope."""
        allocation = governor.allocation_for(PlanTier.TRIAL)
        assert allocation.input_limit == 800
        assert allocation.output_limit == 1600
        assert allocation.total_limit == 2400
        assert allocation.cost_limit == pytest.approx(0.0025)

    def test_budgets_derived_from_generations(self, governor):
        """Token budgets are generations x total_limit."""
        limits = governor.limits_for(PlanTier.TRIAL)
        assert limits.daily_token_budget == 5 * 2400
        assert limits.monthly_token_budget == 15 * 2400

    def test_agency_scaling(self, governor):
        """Agency is 1.5x the base envelope."""
        allocation = governor.allocation_for(PlanTier.AGENCY)
        assert allocation.total_limit == 4500
        assert allocation.cost_limit == pytest.approx(0.0075)

    def test_scaling_is_configuration(self, config, store):
        """Changing the scale in config changes the allocation."""
        plans = dict(config.plans)
        plans[PlanTier.PRO] = replace(plans[PlanTier.PRO], token_scale=2.0)
        governor = BudgetGovernor(replace(config, plans=plans), store)
        assert governor.allocation_for(PlanTier.PRO).total_limit == 6000


class TestCanGenerate:
    """Test generation-count allowances."""

    def test_fresh_subscriber(self, governor):
        """Nothing used means full allowance."""
        allowance = governor.can_generate("sub-1", PlanTier.STARTER)
        assert allowance.allowed
        assert allowance.remaining_daily == 20
        assert allowance.remaining_monthly == 50

    def test_daily_exhausted_reports_monthly(self, governor, store):
        """Daily is checked first and monthly remainder is still reported."""
        for _ in range(5):
            store.append(_record())
        allowance = governor.can_generate("sub-1", PlanTier.TRIAL)
        assert not allowance.allowed
        assert allowance.remaining_daily == 0
        assert allowance.remaining_monthly == 10
        assert "Daily generation limit of 5" in allowance.reason

    def test_monthly_exhausted(self, governor, store):
        """Earlier days count toward the month."""
        earlier = FIXED_NOW - timedelta(days=3)
        for _ in range(15):
            store.append(_record(when=earlier))
        allowance = governor.can_generate("sub-1", PlanTier.TRIAL)
        assert not allowance.allowed
        assert allowance.remaining_daily == 5
        assert allowance.remaining_monthly == 0

    def test_failed_records_not_counted(self, governor, store):
        """Only successful generations consume the allowance."""
        for _ in range(5):
            store.append(_record(success=False))
        assert governor.can_generate("sub-1", PlanTier.TRIAL).allowed

    def test_other_subscribers_isolated(self, governor, store):
        """Usage is per subscriber."""
        for _ in range(5):
            store.append(_record(subscriber_id="sub-2"))
        assert governor.can_generate("sub-1", PlanTier.TRIAL).allowed


class TestCostLimits:
    """Test cost estimation and ceilings."""

    def test_estimate_defaults_to_allocation(self, governor):
        """Missing token counts use the plan ceilings."""
        # trial: 800 in * 0.10/1M + 1600 out * 0.40/1M
        assert governor.estimate_cost(PlanTier.TRIAL, "gemini") == pytest.approx(0.00072)

    def test_estimate_with_counts(self, governor):
        """Known counts are priced linearly."""
        assert governor.estimate_cost(PlanTier.TRIAL, "openai", 1_000_000, 0) == pytest.approx(0.15)

    def test_estimate_unknown_provider(self, governor):
        """Unpriced providers are an error."""
        with pytest.raises(ValueError, match="Unsupported provider"):
            governor.estimate_cost(PlanTier.TRIAL, "mistral")

    def test_within_limits(self, governor):
        """Default estimates fit every plan."""
        for plan in PlanTier:
            assert not governor.would_exceed_cost_limit("sub-1", plan, "gemini")

    def test_per_generation_ceiling_ignores_daily_usage(self, governor):
        """Above the per-generation ceiling always trips."""
        assert governor.would_exceed_cost_limit("sub-1", PlanTier.TRIAL, "gemini", estimated_cost=0.003)

    def test_daily_ceiling(self, governor, store):
        """Today's spend plus this generation above the daily ceiling trips."""
        ceiling = governor.daily_cost_ceiling(PlanTier.TRIAL)
        assert ceiling == pytest.approx(6.0)
        store.append(_record(cost=ceiling - 0.001))
        assert governor.would_exceed_cost_limit("sub-1", PlanTier.TRIAL, "gemini", estimated_cost=0.002)
        assert not governor.would_exceed_cost_limit("sub-1", PlanTier.TRIAL, "gemini", estimated_cost=0.0005)

    def test_batch_count_charged_against_daily(self, governor, store):
        """A batch charges count estimates against the daily ceiling."""
        store.append(_record(cost=5.99))
        assert not governor.would_exceed_cost_limit("sub-1", PlanTier.TRIAL, "gemini", 0.002, count=1)
        assert governor.would_exceed_cost_limit("sub-1", PlanTier.TRIAL, "gemini", 0.002, count=6)


class TestUsageStats:
    """Test usage summaries."""

    def test_stats(self, governor, store):
        """Daily and monthly windows summarize successful usage."""
        governor.record_usage(_record(cost=0.001))
        governor.record_usage(_record(cost=0.002, when=FIXED_NOW - timedelta(days=2)))
        governor.record_usage(_record(cost=0.5, success=False))

        stats = governor.get_user_usage_stats("sub-1", PlanTier.STARTER)
        assert stats["daily"] == {
            "used": 1, "limit": 20, "tokens_used": 1300,
            "token_budget": 20 * 3000, "cost_used": 0.001,
        }
        assert stats["monthly"]["used"] == 2
        assert stats["monthly"]["cost_used"] == pytest.approx(0.003)


class TestCleanup:
    """Test retention pruning."""

    def test_prunes_only_expired_keys(self, governor, store):
        """Daily keys older than 7 days and monthly keys older than 90 days go."""
        store.append(_record(when=FIXED_NOW - timedelta(days=10)))
        store.append(_record(when=FIXED_NOW - timedelta(days=2)))
        store.append(_record(when=datetime(2025, 11, 20, tzinfo=timezone.utc)))

        daily, monthly = governor.cleanup()
        assert daily == 2
        assert monthly == 1
        assert len(store.records_for_day("sub-1", "2026-03-13")) == 1
        assert store.records_for_month("sub-1", "2025-11") == []
        assert len(store.records_for_month("sub-1", "2026-03")) == 2

    def test_idempotent(self, governor, store):
        """A second run deletes nothing."""
        store.append(_record(when=FIXED_NOW - timedelta(days=30)))
        governor.cleanup()
        assert governor.cleanup() == (0, 0)
