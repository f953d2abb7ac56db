"""
Generation service facade.

Wires the orchestrator, budget governor, policy, entitlements, quota-safe
transaction and job queue together behind the operations callers use.
"""

import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from ugc_guard.config.loader import AppConfig
from ugc_guard.providers.base import GenerationRequest, ProviderAdapter
from ugc_guard.providers.openai_compatible import build_adapters
from ugc_guard.storage.models import utcnow
from ugc_guard.storage.repository import SqliteUsageStore, UsageStore, initialize_schema
from ugc_guard.storage.subscribers import SqliteSubscriberStore, SubscriberStore

from .budget import BudgetGovernor
from .entitlements import EntitlementPolicy
from .errors import (
    EntitlementExceeded,
    GenerationExhausted,
    GenerationPending,
    SubscriberNotFound,
    ValidationError,
)
from .jobs import JobOptions, JobQueue, JobStatus, JobStatusView
from .orchestrator import ProviderHealthReport, ProviderOrchestrator
from .policy import GenerationPolicy
from .transaction import BatchGenerationResult, GenerationResult, QuotaSafeGenerator

logger = logging.getLogger(__name__)

GENERATE_JOB = "generate"

# Failures the job queue must not retry: the transaction already retried
# provider trouble, and the rest are decided by the request or the plan.
FINAL_ERRORS = (EntitlementExceeded, ValidationError, GenerationExhausted, SubscriberNotFound)


def is_job_retryable(error: BaseException) -> bool:
    return not isinstance(error, FINAL_ERRORS)


class GenerationService:
    """Entry point for generation, job status, health and usage queries."""

    def __init__(
        self,
        config: AppConfig,
        subscribers: SubscriberStore,
        usage: UsageStore,
        adapters: Optional[List[ProviderAdapter]] = None,
        use_queue: bool = False,
        clock: Callable = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the service.

        Args:
            config: Loaded configuration
            subscribers: Subscriber store (the only writer of counters is the transaction)
            usage: Usage record store
            adapters: Provider adapters; built from config when omitted
            use_queue: Route ``generate`` through the job queue
            clock: Returns the current aware UTC datetime
            sleep: Used for retry backoff and queue polling
        """
        self.config = config
        self.subscribers = subscribers
        if adapters is None:
            adapters = build_adapters(config)
        self.orchestrator = ProviderOrchestrator.from_config(config, adapters)
        self.budget = BudgetGovernor(config, usage, clock=clock)
        self.policy = GenerationPolicy(config.retry)
        self.entitlements = EntitlementPolicy(config)
        self.generator = QuotaSafeGenerator(
            store=subscribers,
            budget=self.budget,
            orchestrator=self.orchestrator,
            policy=self.policy,
            entitlements=self.entitlements,
            clock=clock,
            sleep=sleep,
        )
        self.queue = JobQueue(config.queue, is_retryable=is_job_retryable, clock=clock, sleep=sleep)
        self.queue.register(GENERATE_JOB, self._run_generate_job)
        self.use_queue = use_queue
        if use_queue:
            self.queue.start()

    @classmethod
    def from_config(cls, config: AppConfig, **kwargs) -> "GenerationService":
        """Build a service on the SQLite database named in config."""
        initialize_schema(config.database_path)
        return cls(
            config,
            SqliteSubscriberStore(config.database_path),
            SqliteUsageStore(config.database_path),
            **kwargs,
        )

    def close(self) -> None:
        self.queue.shutdown()

    def generate(self, subscriber_id: str, request: GenerationRequest) -> GenerationResult:
        """Generate one script, directly or through the job queue.

        Raises:
            GenerationPending: If queued and still running after the wait timeout
            UgcGuardError: Any failure raised by the transaction
        """
        if not self.use_queue:
            return self.generator.generate(subscriber_id, request)

        job_id = self.submit(subscriber_id, request)
        outcome = self.queue.await_completion(job_id, self.config.queue.wait_timeout_ms)
        if outcome.success:
            return replace(outcome.data, job_id=job_id)

        job = self.queue.get_job(job_id)
        if job is not None and job.status == JobStatus.FAILED and job.exception is not None:
            raise job.exception
        if job is not None and not job.status.is_terminal:
            raise GenerationPending(job_id)
        raise GenerationExhausted(1, None)

    def submit(
        self,
        subscriber_id: str,
        request: GenerationRequest,
        options: Optional[JobOptions] = None,
    ) -> str:
        """Queue a generation and return its job id."""
        if not self.queue.is_paused and not self.queue.health()["workers"]:
            self.queue.start()
        return self.queue.enqueue(GENERATE_JOB, (subscriber_id, request), options)

    def _run_generate_job(self, payload: Any) -> GenerationResult:
        subscriber_id, request = payload
        return self.generator.generate(subscriber_id, request)

    def generate_variations(
        self,
        subscriber_id: str,
        request: GenerationRequest,
        count: int,
    ) -> BatchGenerationResult:
        return self.generator.generate_variations(subscriber_id, request, count)

    def get_job_status(self, job_id: str) -> Optional[JobStatusView]:
        return self.queue.get_job_status(job_id)

    def get_provider_health(self) -> ProviderHealthReport:
        return self.orchestrator.get_provider_health()

    def get_user_usage_stats(self, subscriber_id: str) -> Dict[str, Any]:
        """Usage against the subscriber's current plan.

        Raises:
            SubscriberNotFound: If the subscriber does not exist
        """
        subscriber = self.subscribers.get(subscriber_id)
        stats = self.budget.get_user_usage_stats(subscriber_id, subscriber.plan)
        status = self.entitlements.check_usage(subscriber, self.budget.clock())
        stats["plan"] = {
            "tier": subscriber.plan.value,
            "limit_type": status.limit_type,
            "remaining_generations": status.remaining_generations,
            "can_generate": status.can_generate,
            "upgrade_message": status.upgrade_message,
        }
        return stats

    def cleanup(self, now=None):
        return self.budget.cleanup(now)
