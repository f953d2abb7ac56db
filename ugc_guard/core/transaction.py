"""
Quota-safe generation transaction.

One generation runs as a single locked check-generate-commit sequence per
subscriber:

1. Acquire the subscriber lock and re-read the subscriber under it
2. Check plan entitlements, generation counts and cost ceilings
3. Run the orchestrator inside the retry loop, each attempt bounded by
   the per-attempt timeout (per provider call for batches)
4. Stage the artifact and counter increments with their plan limit,
   commit once, release

The commit checks the limit again against the stored counters, which
catches writers in other processes sharing the database.

The lock is acquired once and held through every retry and backoff sleep;
retries never re-check entitlements. A failed or rejected generation never
touches the counters.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from ugc_guard.providers.base import GeneratedContent, GenerationRequest
from ugc_guard.storage.models import GeneratedScript, UsageRecord, utcnow
from ugc_guard.storage.subscribers import SubscriberSession, SubscriberStore

from .budget import BudgetGovernor
from .entitlements import EntitlementPolicy
from .errors import (
    AllProvidersFailed,
    EntitlementExceeded,
    GenerationExhausted,
    GenerationTimeout,
    ValidationError,
)
from .orchestrator import ProviderOrchestrator
from .plans import PlanTier
from .policy import GenerationPolicy, call_with_timeout
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

BATCH_FEATURE = "batch_generation"


@dataclass(frozen=True)
class GenerationResult:
    """A committed generation and the subscriber's remaining quota."""
    artifact: GeneratedScript
    remaining_generations: int
    job_id: Optional[str] = None


@dataclass(frozen=True)
class BatchGenerationResult:
    """Committed variations; may hold fewer than requested."""
    artifacts: List[GeneratedScript] = field(default_factory=list)
    remaining_generations: int = 0
    requested: int = 0

    @property
    def partial(self) -> bool:
        return len(self.artifacts) < self.requested


class QuotaSafeGenerator:
    """Runs generations with exactly-once quota accounting per subscriber."""

    def __init__(
        self,
        store: SubscriberStore,
        budget: BudgetGovernor,
        orchestrator: ProviderOrchestrator,
        policy: GenerationPolicy,
        entitlements: EntitlementPolicy,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.budget = budget
        self.orchestrator = orchestrator
        self.policy = policy
        self.entitlements = entitlements
        self.clock = clock
        self.sleep = sleep

    def generate(self, subscriber_id: str, request: GenerationRequest) -> GenerationResult:
        """Generate one script and charge exactly one generation for it.

        Args:
            subscriber_id: Subscriber to charge
            request: Validated product and audience description

        Returns:
            GenerationResult with the persisted artifact

        Raises:
            ValidationError: If the request is invalid
            SubscriberNotFound: If the subscriber does not exist
            EntitlementExceeded: If plan, count or cost limits deny generation
            NoProvidersAvailable: If no provider is enabled
            GenerationExhausted: If every attempt failed
        """
        self._validate(request)
        with self.store.locked(subscriber_id) as session:
            subscriber = session.subscriber
            now = self.clock()
            remaining = self._check_entitlements(session, request, now, needed=1)

            content = self._run_with_retries(
                subscriber.plan, subscriber_id,
                lambda: self.orchestrator.generate(request),
            )
            artifact = self._stage_artifact(session, content, now)
            self._stage_counters(session, now, produced=1)

        logger.info(
            "Generated script %s for %s via %s (%d remaining)",
            artifact.id, subscriber_id, artifact.provider_id, remaining - 1,
        )
        return GenerationResult(artifact=artifact, remaining_generations=remaining - 1)

    def generate_variations(
        self,
        subscriber_id: str,
        request: GenerationRequest,
        count: int,
    ) -> BatchGenerationResult:
        """Generate ``count`` variations and charge one generation per item produced.

        Requires the batch-generation entitlement and at least ``count``
        remaining generations. A partial batch is committed as is.

        Raises:
            ValidationError: If the request is invalid or count < 1
            EntitlementExceeded: If batch generation or the quota is not available
            GenerationExhausted: If no variation could be produced
        """
        if count < 1:
            raise ValidationError(["count must be at least 1"])
        self._validate(request)

        with self.store.locked(subscriber_id) as session:
            subscriber = session.subscriber
            if not (subscriber.has_batch_generation
                    or self.entitlements.can_access_feature(subscriber.plan, BATCH_FEATURE)):
                raise EntitlementExceeded(
                    "Batch generation is not included in your plan. "
                    "Upgrade to Pro to generate multiple variations at once."
                )
            now = self.clock()
            remaining = self._check_entitlements(session, request, now, needed=count)

            contents = self._run_with_retries(
                subscriber.plan, subscriber_id,
                lambda: self.orchestrator.generate_variations(
                    request, count, timeout_ms=self.policy.timeout_ms,
                ),
                bounded=False,
            )
            artifacts = [
                self._stage_artifact(session, content, now, variation=index)
                for index, content in enumerate(contents)
            ]
            self._stage_counters(session, now, produced=len(artifacts))

        logger.info(
            "Generated %d of %d variations for %s", len(artifacts), count, subscriber_id,
        )
        return BatchGenerationResult(
            artifacts=artifacts,
            remaining_generations=remaining - len(artifacts),
            requested=count,
        )

    def _validate(self, request: GenerationRequest) -> None:
        result = self.policy.validate(request)
        if not result.valid:
            raise ValidationError(result.errors)

    def _check_entitlements(
        self,
        session: SubscriberSession,
        request: GenerationRequest,
        now: datetime,
        needed: int,
    ) -> int:
        """Check every limit against the locked snapshot.

        Returns:
            Generations remaining under the plan before this request
        """
        subscriber = session.subscriber
        plan = subscriber.plan

        status = self.entitlements.check_usage(subscriber, now)
        if not status.can_generate:
            logger.info("Denied %s: %s", subscriber.id, status.upgrade_message)
            raise EntitlementExceeded(status.upgrade_message, 0)
        if status.remaining_generations < needed:
            raise EntitlementExceeded(
                f"Only {status.remaining_generations} generations remaining on your plan. "
                "Upgrade for a higher limit.",
                status.remaining_generations,
            )

        if not self.entitlements.can_access_platform(plan, request.platform):
            raise EntitlementExceeded(
                self.entitlements.platform_denied_message(plan, request.platform),
                status.remaining_generations,
            )

        allowance = self.budget.can_generate(subscriber.id, plan)
        if not allowance.allowed or min(allowance.remaining_daily, allowance.remaining_monthly) < needed:
            reason = allowance.reason or "Not enough generations left today"
            raise EntitlementExceeded(
                f"{reason}. Upgrade your plan for higher limits.",
                min(allowance.remaining_daily, allowance.remaining_monthly),
            )

        chain = self.orchestrator.fallback_chain()
        if chain and self.budget.would_exceed_cost_limit(
            subscriber.id, plan, chain[0].provider_id, count=needed,
        ):
            raise EntitlementExceeded(
                "AI cost budget for your plan has been reached. "
                "Upgrade your plan for a higher budget.",
                status.remaining_generations,
            )
        return status.remaining_generations

    def _run_with_retries(self, plan: PlanTier, subscriber_id: str, attempt_fn, bounded: bool = True):
        """Run ``attempt_fn`` under the retry policy.

        Args:
            bounded: Apply the per-attempt timeout to the whole call. Batches
                pass False and bound each provider call instead.

        Raises:
            NoProvidersAvailable: Immediately, without retrying
            GenerationExhausted: When the policy stops retrying
        """
        attempt = 0
        while True:
            try:
                return self._attempt(attempt_fn, bounded)
            except (AllProvidersFailed, GenerationTimeout) as e:
                if self.policy.should_retry(attempt, e):
                    delay_ms = self.policy.retry_delay(attempt)
                    logger.warning(
                        "Attempt %d for %s failed (%s); retrying in %dms",
                        attempt + 1, subscriber_id, e, delay_ms,
                    )
                    self.sleep(delay_ms / 1000)
                    attempt += 1
                    continue

                attempts = attempt + 1
                logger.error("Generation for %s exhausted after %d attempts: %s", subscriber_id, attempts, e)
                self._record_failure(plan, subscriber_id, e)
                raise GenerationExhausted(attempts, e) from e

    def _attempt(self, attempt_fn, bounded: bool):
        if not bounded:
            return attempt_fn()
        return call_with_timeout(attempt_fn, self.policy.timeout_ms)

    def _record_failure(self, plan: PlanTier, subscriber_id: str, error: Exception) -> None:
        provider_id = self._failed_provider(error)
        if provider_id is None:
            return
        usage = TokenUsage.failed_attempt()
        cost = self.budget.estimate_cost(plan, provider_id, usage.input_tokens, usage.output_tokens)
        self.budget.record_usage(UsageRecord(
            subscriber_id=subscriber_id,
            provider_id=provider_id,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            estimated_cost=cost,
            timestamp=self.clock(),
            success=False,
        ))

    def _failed_provider(self, error: Exception) -> Optional[str]:
        if isinstance(error, AllProvidersFailed) and error.last_error is not None:
            provider_id = getattr(error.last_error, "provider_id", None)
            if provider_id:
                return provider_id
        chain = self.orchestrator.fallback_chain()
        return chain[0].provider_id if chain else None

    def _stage_artifact(
        self,
        session: SubscriberSession,
        content: GeneratedContent,
        now: datetime,
        variation: Optional[int] = None,
    ) -> GeneratedScript:
        subscriber = session.subscriber
        watermarked = self.entitlements.requires_watermark(subscriber.plan)
        if watermarked:
            content = self.entitlements.apply_watermark(content)

        provider_id, model = self._attribution(content)
        usage = content.token_usage
        cost = self.budget.estimate_cost(
            subscriber.plan, provider_id, usage.input_tokens, usage.output_tokens,
        )
        artifact = GeneratedScript(
            id=uuid.uuid4().hex,
            subscriber_id=subscriber.id,
            provider_id=provider_id,
            model=model,
            hook=content.hook,
            script=content.script,
            visuals=tuple(content.visuals),
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            estimated_cost=cost,
            created_at=now,
            watermarked=watermarked,
            variation=variation,
        )
        session.save_artifact(artifact)

        record = UsageRecord(
            subscriber_id=subscriber.id,
            provider_id=provider_id,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            estimated_cost=cost,
            timestamp=now,
            success=True,
        )
        session.on_commit(lambda: self.budget.record_usage(record))
        return artifact

    def _attribution(self, content: GeneratedContent) -> Tuple[str, str]:
        if content.metrics is not None:
            return content.metrics.provider_id, content.metrics.model
        metrics = self.orchestrator.last_metrics()
        if metrics is None:
            raise ValueError("Generated content carries no provider attribution")
        return metrics.provider_id, metrics.model

    def _stage_counters(self, session: SubscriberSession, now: datetime, produced: int) -> None:
        if produced == 0:
            return
        subscriber = session.subscriber
        if subscriber.plan == PlanTier.TRIAL:
            limit = self.entitlements.trial_limit(subscriber)
            session.increment("trial_generations_used", produced, limit=limit)
        else:
            limit = self.entitlements.plan_settings(subscriber.plan).monthly_generations
            if self.entitlements.needs_monthly_reset(subscriber, now):
                session.reset_monthly_count(produced, now, limit=limit)
            else:
                session.increment("monthly_generation_count", produced, limit=limit)
        session.limit_message = self.entitlements.upgrade_message(subscriber.plan, limit)
        session.increment("total_generations", produced)
