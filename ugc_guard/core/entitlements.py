"""
Plan entitlements: trial and monthly generation limits, platform and
feature access, team size and output watermarking.

All checks read a Subscriber snapshot; the quota-safe transaction passes
the snapshot it re-read under the subscriber lock.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from ugc_guard.config.loader import AppConfig, PlanSettings

from .plans import PlanTier

WATERMARK_HOOK_SUFFIX = " [Made with a free trial]"
WATERMARK_SCRIPT_FOOTER = "\n\n---\nGenerated on a free trial. Upgrade to remove this watermark."

TRIAL_EXPIRED_MESSAGE = "Free trial has expired. Please upgrade to continue creating ads."
GENERIC_UPGRADE_MESSAGE = "Generation limit reached. Please upgrade your plan."


@dataclass(frozen=True)
class UsageStatus:
    """Whether a subscriber may generate under their plan, and what remains."""
    can_generate: bool
    remaining_generations: int
    limit_type: str  # "trial" or "monthly"
    upgrade_message: Optional[str] = None


class EntitlementPolicy:
    """Plan-level generation limits and access rules."""

    def __init__(self, config: AppConfig):
        self.config = config

    def plan_settings(self, plan: PlanTier) -> PlanSettings:
        return self.config.get_plan(plan)

    def trial_limit(self, subscriber) -> int:
        """Trial generations allowed, which depend on email verification."""
        settings = self.plan_settings(PlanTier.TRIAL)
        if subscriber.is_email_verified:
            return settings.trial_generations
        return settings.trial_generations_unverified

    def check_usage(self, subscriber, now: datetime) -> UsageStatus:
        """Evaluate plan limits for a subscriber at ``now``.

        Args:
            subscriber: Snapshot read under the subscriber lock
            now: Current aware UTC datetime

        Returns:
            UsageStatus with an upgrade message when generation is denied
        """
        if subscriber.plan == PlanTier.TRIAL:
            return self._check_trial(subscriber, now)
        return self._check_monthly(subscriber, now)

    def _check_trial(self, subscriber, now: datetime) -> UsageStatus:
        limit = self.trial_limit(subscriber)
        if subscriber.trial_ends_at is not None and now > subscriber.trial_ends_at:
            return UsageStatus(False, 0, "trial", TRIAL_EXPIRED_MESSAGE)

        remaining = max(0, limit - subscriber.trial_generations_used)
        if remaining == 0:
            return UsageStatus(False, 0, "trial", self.upgrade_message(PlanTier.TRIAL, limit))
        return UsageStatus(True, remaining, "trial")

    def _check_monthly(self, subscriber, now: datetime) -> UsageStatus:
        settings = self.plan_settings(subscriber.plan)
        used = self.effective_monthly_count(subscriber, now)
        remaining = max(0, settings.monthly_generations - used)
        if remaining == 0:
            message = self.upgrade_message(subscriber.plan, settings.monthly_generations)
            return UsageStatus(False, 0, "monthly", message)
        return UsageStatus(True, remaining, "monthly")

    @staticmethod
    def needs_monthly_reset(subscriber, now: datetime) -> bool:
        """True when the monthly counter was last reset in an earlier month."""
        reset = subscriber.monthly_reset_date
        if reset is None:
            return True
        return (reset.year, reset.month) != (now.year, now.month)

    def effective_monthly_count(self, subscriber, now: datetime) -> int:
        if self.needs_monthly_reset(subscriber, now):
            return 0
        return subscriber.monthly_generation_count

    def upgrade_message(self, plan: PlanTier, limit: int) -> str:
        """User-facing message for a subscriber who hit their plan limit."""
        next_plan = plan.next_tier()
        if next_plan is None:
            return GENERIC_UPGRADE_MESSAGE
        next_limit = self.plan_settings(next_plan).monthly_generations
        if plan == PlanTier.TRIAL:
            return (
                f"Trial generation limit of {limit} reached. Upgrade to "
                f"{next_plan.value.title()} plan for {next_limit} generations/month."
            )
        return (
            f"Monthly generation limit of {limit} reached. Upgrade to "
            f"{next_plan.value.title()} for {next_limit} generations/month."
        )

    def can_access_platform(self, plan: PlanTier, platform: Optional[str]) -> bool:
        if platform is None:
            return True
        return platform.lower() in self.plan_settings(plan).platforms

    def can_access_feature(self, plan: PlanTier, feature: str) -> bool:
        return feature in self.plan_settings(plan).features

    def team_member_limit(self, plan: PlanTier) -> int:
        return self.plan_settings(plan).team_members

    def can_add_team_member(self, plan: PlanTier, current_team_size: int) -> bool:
        return current_team_size < self.team_member_limit(plan)

    def platform_denied_message(self, plan: PlanTier, platform: str) -> str:
        allowed = ", ".join(self.plan_settings(plan).platforms)
        return (
            f"The {plan.value.title()} plan does not include {platform}. "
            f"Available platforms: {allowed}. Upgrade to unlock more platforms."
        )

    def requires_watermark(self, plan: PlanTier) -> bool:
        return self.plan_settings(plan).watermark

    @staticmethod
    def apply_watermark(content):
        """Return ``content`` with the trial watermark on hook and script."""
        return replace(
            content,
            hook=content.hook + WATERMARK_HOOK_SUFFIX,
            script=content.script + WATERMARK_SCRIPT_FOOTER,
        )
