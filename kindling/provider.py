"""
Local full-text ranking provider.

Scoring:
    score = clamp(0.7 * relevance + 0.3 * recency)

where relevance is the engine's BM25 rank normalized to [0, 1] across the
pool's current result set (best match 1.0; all equal ranks give 1.0), and
recency = max(0, 1 - age / 30 days).

Observations and summaries are ranked as separate pools, then merged and
sorted together so they compete for the same result slots.
"""

import logging
from typing import Optional, Union

from .errors import MalformedQuery
from .protocol import StoreProtocol
from .types import Observation, RankedHit, ScopeIds, Summary, now_ms

logger = logging.getLogger(__name__)

RELEVANCE_WEIGHT = 0.7
RECENCY_WEIGHT = 0.3
MAX_AGE_MS = 30 * 24 * 60 * 60 * 1000
MATCH_CONTEXT_CHARS = 100
DEFAULT_MAX_RESULTS = 50


def recency_score(ts: int, now: int, max_age_ms: int = MAX_AGE_MS) -> float:
    """Linear decay from 1.0 (now) to 0.0 (max_age_ms old or older)."""
    age = now - ts
    return min(1.0, max(0.0, 1.0 - age / max_age_ms))


def normalize_ranks(ranks: list[float]) -> list[float]:
    """
    Map raw engine ranks (lower is better) onto [0, 1] (higher is better).

    If every rank is equal, every row gets 1.0.
    """
    if not ranks:
        return []
    best, worst = min(ranks), max(ranks)
    spread = worst - best
    if spread == 0:
        return [1.0] * len(ranks)
    return [(worst - r) / spread for r in ranks]


def score_candidate(relevance: float, recency: float) -> float:
    """Weighted blend clamped to [0, 1] and rounded to 10 decimal places."""
    score = RELEVANCE_WEIGHT * relevance + RECENCY_WEIGHT * recency
    return round(min(1.0, max(0.0, score)), 10)


def match_context(content: str, limit: int = MATCH_CONTEXT_CHARS) -> str:
    """Content preview: first `limit` characters, '...' if truncated."""
    if len(content) <= limit:
        return content
    return content[:limit] + "..."


def sort_hits(hits: list[RankedHit]) -> list[RankedHit]:
    """Score descending, then newer first, then id ascending."""
    return sorted(hits, key=lambda h: (-h.score, -h.ts, h.id))


class LocalFtsProvider:
    """
    Ranking provider over the store's full-text indexes.

    Query syntax errors are logged and answered with an empty list; every
    other storage error propagates.
    """

    name = "local-fts"

    def __init__(self, store: StoreProtocol, max_age_ms: int = MAX_AGE_MS):
        self._store = store
        self._max_age_ms = max_age_ms

    def search(
        self,
        query: str,
        scope_ids: Optional[ScopeIds] = None,
        exclude_ids: Optional[set[str]] = None,
        include_redacted: bool = False,
        max_results: Optional[int] = DEFAULT_MAX_RESULTS,
        now: Optional[int] = None,
    ) -> list[RankedHit]:
        if not query or not query.strip():
            return []
        now = now_ms() if now is None else now
        exclude = set(exclude_ids or ())

        try:
            obs_rows = self._store.search_observations(query, scope_ids, include_redacted)
            sum_rows = self._store.search_summaries(query, scope_ids)
        except MalformedQuery as e:
            logger.warning("Treating malformed query as no matches: %s", e)
            return []

        hits = (
            self._score_pool("observation", obs_rows, exclude, now)
            + self._score_pool("summary", sum_rows, exclude, now)
        )
        hits = sort_hits(hits)
        if max_results is not None:
            hits = hits[:max_results]
        logger.debug(
            "Query %r: %d observation matches, %d summary matches, %d returned",
            query, len(obs_rows), len(sum_rows), len(hits),
        )
        return hits

    def _score_pool(
        self,
        entity_type: str,
        rows: list[tuple[Union[Observation, Summary], float]],
        exclude: set[str],
        now: int,
    ) -> list[RankedHit]:
        rows = [(entity, rank) for entity, rank in rows if entity.id not in exclude]
        relevances = normalize_ranks([rank for _, rank in rows])
        hits = []
        for (entity, _), relevance in zip(rows, relevances):
            ts = entity.created_at if isinstance(entity, Summary) else entity.ts
            score = score_candidate(relevance, recency_score(ts, now, self._max_age_ms))
            hits.append(RankedHit(
                entity_type=entity_type,
                entity=entity,
                score=score,
                match_context=match_context(entity.content),
            ))
        return hits
