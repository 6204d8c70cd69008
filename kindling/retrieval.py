"""
Retrieval orchestration and token-budget tiering.

A retrieval is one pass:
1. active pins in scope, resolved to their targets
2. the current session summary (latest summary of the open capsule)
3. ranked candidates from the provider, excluding everything above

Pins and the current summary are tier 0 and are never dropped. Ranked
candidates are tier 1; under a token budget they are kept greedily, in
score order, until the next one would exceed the budget.
"""

import logging
import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional, Union

from .protocol import RetrievalProvider, StoreProtocol
from .types import (
    Observation,
    PinnedItem,
    Provenance,
    RankedHit,
    RetrieveResult,
    ScopeIds,
    Summary,
    now_ms,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CANDIDATES = 10

TokenEstimator = Callable[[str], int]


class Tier(IntEnum):
    PINNED = 0
    CANDIDATE = 1


@dataclass
class TieredItem:
    """A retrieval item tagged with its eviction tier."""
    tier: Tier
    id: str
    content: str
    item: Union[PinnedItem, Summary, RankedHit]


@dataclass
class BudgetResult:
    items: list[TieredItem]
    tokens_used: int
    truncated: bool
    tier0_exceeds_budget: bool


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


def assign_tiers(
    pins: list[PinnedItem],
    current_summary: Optional[Summary],
    candidates: list[RankedHit],
) -> list[TieredItem]:
    """Pins, then the current summary, then candidates in the given order."""
    tiered = [
        TieredItem(Tier.PINNED, p.target.id, p.target.content, p) for p in pins
    ]
    if current_summary is not None:
        tiered.append(TieredItem(
            Tier.PINNED, current_summary.id, current_summary.content, current_summary,
        ))
    tiered.extend(
        TieredItem(Tier.CANDIDATE, c.id, c.content, c) for c in candidates
    )
    return tiered


def tier0_exceeds_budget(
    items: list[TieredItem], budget: int, estimate: TokenEstimator = estimate_tokens,
) -> bool:
    """True if the non-evictable items alone cost more than the budget."""
    cost = sum(estimate(i.content) for i in items if i.tier == Tier.PINNED)
    return cost > budget


def filter_by_token_budget(
    items: list[TieredItem], budget: int, estimate: TokenEstimator = estimate_tokens,
) -> BudgetResult:
    """
    Apply a token budget to tiered items.

    Every tier-0 item is kept. Tier-1 items are added in order while the
    running total stays within budget; the first one that does not fit
    stops the pass.
    """
    kept = [i for i in items if i.tier == Tier.PINNED]
    used = sum(estimate(i.content) for i in kept)
    candidates = [i for i in items if i.tier != Tier.PINNED]
    truncated = False
    for item in candidates:
        cost = estimate(item.content)
        if used + cost > budget:
            truncated = True
            break
        kept.append(item)
        used += cost
    return BudgetResult(
        items=kept,
        tokens_used=used,
        truncated=truncated,
        tier0_exceeds_budget=tier0_exceeds_budget(items, budget, estimate),
    )


class Retriever:
    """Composes pins, the current summary and ranked candidates."""

    def __init__(
        self,
        store: StoreProtocol,
        provider: RetrievalProvider,
        estimate: TokenEstimator = estimate_tokens,
    ):
        self._store = store
        self._provider = provider
        self._estimate = estimate

    @property
    def provider(self) -> RetrievalProvider:
        return self._provider

    def retrieve(
        self,
        query: str,
        scope_ids: Union[ScopeIds, dict, None] = None,
        token_budget: Optional[int] = None,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        include_redacted: bool = False,
        now: Optional[int] = None,
    ) -> RetrieveResult:
        """
        Retrieve context for a query within a scope.

        Args:
            query: Full-text query
            scope_ids: Scope dimensions to filter on (absent ones match all)
            token_budget: If set, drop tier-1 candidates that do not fit
            max_candidates: Cap on tier-1 candidates before budgeting
            include_redacted: Allow redacted observations as pins/candidates
            now: Evaluation time for pin expiry and recency (epoch ms)
        """
        scope = ScopeIds.from_dict(scope_ids)
        now = now_ms() if now is None else now
        exclude: set[str] = set()

        pins = []
        for pin in self._store.list_active_pins(scope, now):
            target = self._resolve_target(pin.target_type, pin.target_id)
            if target is None:
                continue
            if isinstance(target, Observation) and target.redacted and not include_redacted:
                continue
            pins.append(PinnedItem(pin, target))
            exclude.add(target.id)

        current_summary = None
        if scope.session_id:
            capsule = self._store.get_open_capsule_for_session(scope.session_id)
            if capsule is not None:
                current_summary = self._store.get_latest_summary_for_capsule(capsule.id)
                if current_summary is not None:
                    exclude.add(current_summary.id)

        ranked = self._provider.search(
            query,
            scope_ids=scope,
            exclude_ids=exclude,
            include_redacted=include_redacted,
            max_results=None,
            now=now,
        )
        total = len(ranked)
        candidates = ranked[:max_candidates]

        truncated = False
        over_budget = False
        if token_budget is not None:
            budgeted = filter_by_token_budget(
                assign_tiers(pins, current_summary, candidates), token_budget, self._estimate,
            )
            candidates = [i.item for i in budgeted.items if i.tier == Tier.CANDIDATE]
            truncated = budgeted.truncated
            over_budget = budgeted.tier0_exceeds_budget
            if over_budget:
                logger.warning(
                    "Pinned context alone exceeds token budget of %d", token_budget,
                )

        logger.debug(
            "Retrieve %r: %d pins, summary=%s, %d/%d candidates",
            query, len(pins), current_summary is not None, len(candidates), total,
        )
        return RetrieveResult(
            pins=pins,
            current_summary=current_summary,
            candidates=candidates,
            provenance=Provenance(
                query=query,
                scope_ids=scope,
                total_candidates=total,
                returned_candidates=len(candidates),
                truncated_due_to_token_budget=truncated,
                provider_used=self._provider.name,
            ),
            tier0_exceeds_budget=over_budget,
        )

    def _resolve_target(self, target_type: str, target_id: str):
        if target_type == "observation":
            return self._store.get_observation(target_id)
        if target_type == "summary":
            return self._store.get_summary(target_id)
        return None
