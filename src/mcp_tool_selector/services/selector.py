# Tool selector
# Consults the cache, asks the oracle on a miss and ranks the answer

import asyncio
import logging
import math
from typing import Sequence

from ..models.tool import Query, RankedToolSelection, RawToolMatch, ToolDescriptor, ToolMatch
from .error_handler import CacheUnavailable, OracleMalformedResponse, OracleUnavailable, SelectionFailed
from .oracle import SelectionOracle
from .registry import registry_fingerprint
from .selection_cache import SelectionCache, is_volatile_query, make_key

logger = logging.getLogger(__name__)


def _checked_confidence(raw: RawToolMatch) -> float | None:
    """Return the oracle's confidence as a float, or None if it is unusable."""
    value = raw.confidence
    if value is None or isinstance(value, bool):
        return None
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
        return None
    return confidence


def rank_matches(
    raw_matches: Sequence[RawToolMatch],
    known_ids: set[str],
    max_candidates: int,
) -> tuple[list[ToolMatch], int]:
    """Drop malformed entries, keep the best entry per tool and order the rest.

    Returns the ranked matches and the number of dropped entries. Order is
    confidence descending, then tool id ascending.
    """
    best: dict[str, ToolMatch] = {}
    dropped = 0

    for raw in raw_matches:
        confidence = _checked_confidence(raw)
        if confidence is None:
            logger.warning(f"Dropping oracle entry for '{raw.tool_id}': invalid confidence {raw.confidence!r}")
            dropped += 1
            continue
        if raw.tool_id not in known_ids:
            logger.warning(f"Dropping oracle entry for unknown tool '{raw.tool_id}'")
            dropped += 1
            continue

        current = best.get(raw.tool_id)
        if current is None or confidence > current.confidence:
            best[raw.tool_id] = ToolMatch(
                tool_id=raw.tool_id,
                confidence=confidence,
                reasoning=raw.reasoning,
                suggested_parameters=raw.suggested_parameters,
            )

    ranked = sorted(best.values(), key=lambda m: (-m.confidence, m.tool_id))
    return ranked[:max_candidates], dropped


class ToolSelector:
    """Produces a RankedToolSelection for a query against a registry snapshot."""

    def __init__(
        self,
        oracle: SelectionOracle,
        cache: SelectionCache | None = None,
        confidence_threshold: float = 0.7,
        max_candidates: int = 5,
        cache_ttl: float | None = None,
        oracle_timeout: float = 30.0,
        skip_volatile_queries: bool = False,
    ) -> None:
        self.oracle = oracle
        self.cache = cache
        self.confidence_threshold = confidence_threshold
        self.max_candidates = max_candidates
        self.cache_ttl = cache_ttl
        self.oracle_timeout = oracle_timeout
        self.skip_volatile_queries = skip_volatile_queries

    def should_cache(self, query: Query) -> bool:
        if self.cache is None:
            return False
        if self.skip_volatile_queries and is_volatile_query(query.normalized):
            logger.debug(f"Query contains context-dependent terms, skipping cache: {query.raw}")
            return False
        return True

    async def select(
        self,
        query: Query | str,
        registry: Sequence[ToolDescriptor],
        confidence_threshold: float | None = None,
    ) -> RankedToolSelection:
        if isinstance(query, str):
            query = Query.from_text(query)
        threshold = self.confidence_threshold if confidence_threshold is None else confidence_threshold
        fingerprint = registry_fingerprint(registry)
        key = make_key(query.normalized, fingerprint)
        use_cache = self.should_cache(query)

        if use_cache:
            cached = self._cache_get(key)
            if cached is not None:
                return cached.model_copy(update={"from_cache": True, "confidence_threshold": threshold})

        response = await self._ask_oracle(query, registry)

        ranked, dropped = rank_matches(response.matches, {tool.id for tool in registry}, self.max_candidates)
        if response.matches and not ranked:
            raise SelectionFailed(
                "Every candidate returned by the oracle was malformed",
                {"dropped_entries": dropped},
            )
        if dropped:
            logger.warning(f"Dropped {dropped} malformed oracle entries for query: {query.raw}")

        selection = RankedToolSelection(
            matches=ranked,
            registry_fingerprint=fingerprint,
            from_cache=False,
            confidence_threshold=threshold,
            dropped_entries=dropped,
            reasoning=response.reasoning,
        )

        if use_cache:
            self._cache_put(key, selection)

        return selection

    async def _ask_oracle(self, query: Query, registry: Sequence[ToolDescriptor]):
        try:
            return await asyncio.wait_for(self.oracle.rank(query, list(registry)), timeout=self.oracle_timeout)
        except asyncio.TimeoutError as e:
            raise OracleUnavailable(
                f"Oracle did not answer within {self.oracle_timeout}s",
                {"timeout": self.oracle_timeout},
            ) from e
        except OracleMalformedResponse as e:
            raise SelectionFailed(f"Oracle response could not be used: {e.message}", e.details) from e

    def _cache_get(self, key: str) -> RankedToolSelection | None:
        try:
            return self.cache.get(key)
        except CacheUnavailable as e:
            logger.warning(f"Bypassing selection cache on read: {e}")
            return None

    def _cache_put(self, key: str, selection: RankedToolSelection) -> None:
        try:
            self.cache.put(key, selection, self.cache_ttl)
        except CacheUnavailable as e:
            logger.warning(f"Bypassing selection cache on write: {e}")
