"""
Service wiring for Routewise.

Builds the policy store, quota ledger, selector, evaluation registry and
router from Settings, and owns the background scheduler.
"""

from __future__ import annotations

import asyncio
from datetime import time
from typing import Any

import structlog

from routewise.core.config import Settings, get_settings
from routewise.core.models import RequestContext, RoutingDecision
from routewise.evaluation.datasets import DatasetStore, FileDatasetStore, InMemoryDatasetStore
from routewise.evaluation.registry import (
    EvaluationRegistry,
    InMemoryResultStore,
    JsonLinesResultStore,
    ResultStore,
)
from routewise.optimization.selector import AccuracyCostSelector
from routewise.policy.matcher import PolicyMatcher
from routewise.policy.store import FilePolicyBackend, InMemoryPolicyBackend, PolicyBackend, PolicyStore
from routewise.quota.ledger import QuotaLedger
from routewise.quota.store import InMemoryQuotaStore, QuotaStore, RedisQuotaStore
from routewise.quota.tiers import TierLookup, TierTable
from routewise.routing.catalog import ProviderCatalog
from routewise.routing.router import Router
from routewise.utils.clock import Clock, SystemClock
from routewise.utils.metrics import RoutingMetrics
from routewise.utils.scheduler import DailySchedule, IntervalSchedule, JobScheduler

logger = structlog.get_logger()

QUOTA_PURGE_JOB = "quota_purge"
POLICY_RECONCILE_JOB = "policy_reconcile"


def create_redis_client(settings: Settings) -> Any | None:
    """Create a Redis client, or None when Redis is not configured or unreachable."""
    if not settings.redis.is_configured:
        return None

    try:
        import redis

        if settings.redis.url:
            client = redis.from_url(
                settings.redis.url,
                socket_timeout=settings.redis.socket_timeout,
                max_connections=settings.redis.max_connections,
            )
        else:
            client = redis.Redis(
                host=settings.redis.host,
                port=settings.redis.port,
                password=settings.redis.password.get_secret_value() if settings.redis.password else None,
                db=settings.redis.db,
                ssl=settings.redis.ssl,
                socket_timeout=settings.redis.socket_timeout,
                max_connections=settings.redis.max_connections,
            )
        client.ping()
        logger.info("Redis connected successfully")
        return client
    except Exception as e:
        logger.warning("Redis connection failed, using in-memory quota store", error=str(e))
        return None


class RoutingService:
    """
    Fully wired routing core.

    Example:
        service = RoutingService()
        await service.start()
        decision = await service.route(RequestContext(user_id="u1", request_type="general_chat"))
        await service.stop()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        clock: Clock | None = None,
        quota_store: QuotaStore | None = None,
        policy_backend: PolicyBackend | None = None,
        tier_lookup: TierLookup | None = None,
        dataset_store: DatasetStore | None = None,
        result_store: ResultStore | None = None,
        catalog: ProviderCatalog | None = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        s = self.settings

        if policy_backend is None:
            policy_backend = (
                FilePolicyBackend(s.policy.table_path) if s.policy.table_path
                else InMemoryPolicyBackend()
            )
        self.policy_store = PolicyStore(
            policy_backend, clock=self.clock, history_size=s.policy.history_size
        )
        self.matcher = PolicyMatcher(
            self.policy_store, strategy=s.router.merge_strategy, clock=self.clock
        )

        if quota_store is None:
            redis_client = create_redis_client(s)
            quota_store = (
                RedisQuotaStore(redis_client, max_retries=s.quota.max_cas_retries)
                if redis_client is not None else InMemoryQuotaStore()
            )
        self.quota_store = quota_store
        self.ledger = QuotaLedger(
            quota_store,
            TierTable.from_settings(s.quota.tiers, default_tier=s.router.default_tier),
            tier_lookup=tier_lookup,
            clock=self.clock,
            reset_time=time(s.quota.reset_hour, s.quota.reset_minute),
            limit_resolution=s.router.limit_resolution,
        )

        self.selector = AccuracyCostSelector(threshold_percent=s.router.accuracy_threshold_percent)

        if dataset_store is None:
            dataset_store = (
                FileDatasetStore(s.evaluation.datasets_path) if s.evaluation.datasets_path
                else InMemoryDatasetStore()
            )
        if result_store is None:
            result_store = (
                JsonLinesResultStore(s.evaluation.results_path) if s.evaluation.results_path
                else InMemoryResultStore()
            )
        self.evaluations = EvaluationRegistry(
            dataset_store,
            results=result_store,
            selector=self.selector,
            pass_threshold=s.evaluation.pass_threshold,
            clock=self.clock,
        )

        if catalog is None:
            catalog = (
                ProviderCatalog.from_file(s.router.catalog_path, level1_min_accuracy=s.router.level1_min_accuracy)
                if s.router.catalog_path
                else ProviderCatalog(level1_min_accuracy=s.router.level1_min_accuracy)
            )
        self.metrics = RoutingMetrics()
        self.router = Router(
            self.matcher,
            self.ledger,
            self.selector,
            catalog=catalog,
            metrics=self.metrics,
            clock=self.clock,
            default_estimated_tokens=s.router.default_estimated_tokens,
        )

        self.scheduler = JobScheduler(self.clock)
        self.scheduler.add_job(
            QUOTA_PURGE_JOB,
            DailySchedule(s.quota.reset_hour, s.quota.reset_minute),
            self.ledger.reset_daily_limits,
        )
        self.scheduler.add_job(
            POLICY_RECONCILE_JOB,
            IntervalSchedule(s.policy.reload_interval_seconds),
            self.policy_store.reconcile_safely,
        )
        self._started = False

    async def start(self, run_scheduler: bool = True) -> None:
        """Load the policy table, publish stored accuracies and start background jobs."""
        if self._started:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.policy_store.load)
        self.evaluations.publish()
        if run_scheduler:
            await self.scheduler.start()
        self._started = True
        logger.info(
            "Routing service started",
            policy_version=self.policy_store.table.version,
            merge_strategy=self.matcher.strategy.value,
            limit_resolution=self.ledger.limit_resolution.value,
            quota_store=type(self.quota_store).__name__,
        )

    async def stop(self) -> None:
        await self.scheduler.stop()
        self._started = False
        logger.info("Routing service stopped")

    async def route(self, context: RequestContext) -> RoutingDecision:
        return await self.router.route(context)
