"""
Router facade.

Orchestrates one routing request:

    RECEIVED -> CLASSIFIED -> POLICY_MATCHED -> QUOTA_CHECKED
             -> PROVIDER_SELECTED -> RECORDED -> DONE

with exits to REJECTED (quota denial) and FAILED (no eligible provider or
policy error). Usage is recorded in one atomic, shielded step after a
provider is chosen, so a rejected or failed request never consumes quota.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum

import structlog

from routewise.core.errors import NoEligibleProviderError
from routewise.core.models import (
    PrivacyLevel,
    ProviderCandidate,
    RequestContext,
    RoutingDecision,
    RoutingReason,
    RoutingStrategy,
    TaskLevel,
)
from routewise.optimization.selector import AccuracyCostSelector
from routewise.policy.matcher import PolicyMatcher
from routewise.policy.models import PolicyDecision
from routewise.quota.ledger import QuotaLedger
from routewise.routing.catalog import ProviderCatalog
from routewise.routing.classifier import RequestClassifier
from routewise.utils.clock import Clock, SystemClock
from routewise.utils.metrics import RoutingMetrics

logger = structlog.get_logger()

DEFAULT_ESTIMATED_TOKENS = 2000


class RouteState(str, Enum):
    RECEIVED = "RECEIVED"
    CLASSIFIED = "CLASSIFIED"
    POLICY_MATCHED = "POLICY_MATCHED"
    QUOTA_CHECKED = "QUOTA_CHECKED"
    PROVIDER_SELECTED = "PROVIDER_SELECTED"
    RECORDED = "RECORDED"
    DONE = "DONE"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Selection:
    """Chosen candidate plus the ordered alternatives."""

    chosen: ProviderCandidate
    fallback_chain: list[str]
    used_fallback_pool: bool


class Router:
    """
    Routes requests to a provider under policy and quota constraints.

    Example:
        router = Router(matcher, ledger, selector, ProviderCatalog())
        decision = await router.route(RequestContext(user_id="u1", request_type="general_chat"))
    """

    def __init__(
        self,
        matcher: PolicyMatcher,
        ledger: QuotaLedger,
        selector: AccuracyCostSelector,
        catalog: ProviderCatalog | None = None,
        classifier: RequestClassifier | None = None,
        metrics: RoutingMetrics | None = None,
        clock: Clock | None = None,
        default_estimated_tokens: int = DEFAULT_ESTIMATED_TOKENS,
    ):
        self._matcher = matcher
        self._ledger = ledger
        self._selector = selector
        self._catalog = catalog or ProviderCatalog()
        self._classifier = classifier or RequestClassifier()
        self._metrics = metrics or RoutingMetrics()
        self._clock = clock or SystemClock()
        self._default_estimated_tokens = default_estimated_tokens

    @property
    def metrics(self) -> RoutingMetrics:
        return self._metrics

    @property
    def catalog(self) -> ProviderCatalog:
        return self._catalog

    async def route(
        self,
        context: RequestContext,
        trace: list[RouteState] | None = None,
    ) -> RoutingDecision:
        """
        Route a request.

        Args:
            context: The request descriptor
            trace: Optional list that receives every state visited

        Raises:
            QuotaExceededError: The user's daily budget does not admit the request.
            NoEligibleProviderError: No candidate survived filtering.
        """
        states: list[RouteState] = trace if trace is not None else []
        states.append(RouteState.RECEIVED)
        decision_id = uuid.uuid4().hex
        log = logger.bind(decision_id=decision_id, user_id=context.user_id)

        now = context.current_time or self._clock.now()
        tier = await self._ledger.resolve_tier(context.user_id)
        context = context.model_copy(update={"user_tier": tier.name, "current_time": now})

        level = self._classifier.classify(context)
        states.append(RouteState.CLASSIFIED)

        try:
            policy = self._matcher.decide(context, now)
        except Exception as e:
            states.append(RouteState.FAILED)
            self._metrics.record_failure(context.user_id, type(e).__name__)
            log.error("Policy evaluation failed", error=str(e))
            raise
        states.append(RouteState.POLICY_MATCHED)

        est_tokens = context.estimated_tokens or self._default_estimated_tokens
        est_cost = context.estimated_cost or 0.0

        admission = await self._ledger.can_admit(
            context.user_id, level.value, est_tokens, est_cost, tier=tier
        )
        if not admission.allowed:
            states.append(RouteState.REJECTED)
            self._metrics.record_rejection(context.user_id, admission.limit, admission.reason or "")
            log.info("Request rejected by quota", reason=admission.reason, tier=tier.name)
            raise admission.to_error(context.user_id)
        states.append(RouteState.QUOTA_CHECKED)

        try:
            selection = self._select(context, level, policy)
        except NoEligibleProviderError as e:
            states.append(RouteState.FAILED)
            self._metrics.record_failure(context.user_id, type(e).__name__)
            log.warning(
                "No eligible provider",
                level=level.value,
                preferred=policy.preferred_providers,
                fallback=policy.fallback_providers,
            )
            raise
        states.append(RouteState.PROVIDER_SELECTED)

        chosen = selection.chosen
        cost = chosen.estimate_cost(est_tokens)

        # Commit runs to completion even if the caller is cancelled.
        committed = await asyncio.shield(
            self._ledger.admit_and_record(
                context.user_id, level.value, est_tokens, cost, tier=tier
            )
        )
        if not committed.allowed:
            states.append(RouteState.REJECTED)
            self._metrics.record_rejection(context.user_id, committed.limit, committed.reason or "")
            log.info("Request rejected at commit", reason=committed.reason, tier=tier.name)
            raise committed.to_error(context.user_id)
        states.append(RouteState.RECORDED)
        states.append(RouteState.DONE)

        reason = self._reason(context, level, selection.used_fallback_pool)
        decision = RoutingDecision(
            decision_id=decision_id,
            user_id=context.user_id,
            request_type=context.request_type,
            task_level=level,
            provider=chosen.provider,
            model=chosen.model,
            fallback_chain=selection.fallback_chain,
            applied_rules=policy.applied_rules,
            routing_strategy=policy.routing_strategy,
            routing_reason=reason,
            cache=policy.cache,
            rate_limit_override=policy.rate_limit_override,
            estimated_tokens=est_tokens,
            estimated_cost=cost,
            quota_remaining=committed.remaining,
            policy_version=policy.policy_version,
            states=[s.value for s in states],
            created_at=now,
        )

        self._metrics.record_decision(
            user_id=context.user_id,
            provider=chosen.provider,
            model=chosen.model,
            task_level=level.value,
            strategy=policy.routing_strategy.value,
            estimated_cost=cost,
            fallback=selection.used_fallback_pool,
        )
        log.info(
            "Request routed",
            provider=chosen.provider,
            model=chosen.model,
            level=level.value,
            reason=reason.value,
            rules=policy.applied_rules,
        )
        return decision

    def _select(
        self,
        context: RequestContext,
        level: TaskLevel,
        policy: PolicyDecision,
    ) -> Selection:
        require_no_retention = (
            context.privacy_level == PrivacyLevel.MAXIMUM
            or policy.routing_strategy == RoutingStrategy.PRIVACY_OPTIMIZED
        )

        def pool(providers: list[str]) -> list[ProviderCandidate]:
            return self._catalog.filter(
                self._selector.apply_overrides(self._catalog.models_for(providers)),
                level,
                allowed_models=policy.allowed_models,
                blocked_models=policy.blocked_models,
                region=context.region,
                required_accuracy=context.required_accuracy,
            )

        def rank(candidates: list[ProviderCandidate]) -> list[ProviderCandidate]:
            return self._selector.rank(
                candidates, level, require_no_retention=require_no_retention
            )

        fallback_candidates = pool(policy.fallback_providers)
        used_fallback = False
        try:
            ranked = rank(pool(policy.preferred_providers))
        except NoEligibleProviderError:
            used_fallback = True
            ranked = rank(fallback_candidates)

        alternatives = ranked[1:]
        if not used_fallback:
            eligible = [
                c for c in fallback_candidates if c.no_retention or not require_no_retention
            ]
            if eligible:
                alternatives += rank(eligible)

        chosen = ranked[0]
        chain: list[str] = []
        for candidate in alternatives:
            if len(chain) >= policy.max_retries:
                break
            if candidate.identifier != chosen.identifier and candidate.identifier not in chain:
                chain.append(candidate.identifier)

        return Selection(chosen=chosen, fallback_chain=chain, used_fallback_pool=used_fallback)

    @staticmethod
    def _reason(context: RequestContext, level: TaskLevel, used_fallback: bool) -> RoutingReason:
        if used_fallback:
            return RoutingReason.FALLBACK_TO_SECONDARY
        if context.emergency:
            return RoutingReason.EMERGENCY_OVERRIDE
        if level == TaskLevel.LEVEL1:
            return RoutingReason.ACCURACY_REQUIREMENT
        return RoutingReason.COST_OPTIMIZATION

