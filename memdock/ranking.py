"""
Ranking weights per search intent, and the score combination that uses them.

Every ranking engine consuming these weights combines signals the same way:

    score = lexical_boost * lexical + vector_boost * vector
          + recency_boost * recency + priority_boost * priority
          + graph_boost * graph

and breaks ties by priority (desc), then updated_at (desc).
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional


@dataclass(frozen=True)
class IntentWeights:
    """Non-negative multipliers for each ranking signal."""
    lexical_boost: float
    vector_boost: float
    recency_boost: float
    priority_boost: float
    graph_boost: float

    def as_dict(self) -> Dict[str, float]:
        return {
            "lexical_boost": self.lexical_boost,
            "vector_boost": self.vector_boost,
            "recency_boost": self.recency_boost,
            "priority_boost": self.priority_boost,
            "graph_boost": self.graph_boost,
        }


INTENT_WEIGHTS: Dict[str, IntentWeights] = {
    "entity": IntentWeights(2.0, 0.5, 0.3, 1.0, 0.0),
    "temporal": IntentWeights(0.7, 0.5, 3.0, 0.5, 0.0),
    "relationship": IntentWeights(0.5, 1.5, 1.0, 1.0, 2.0),
    "aspect": IntentWeights(1.0, 1.5, 0.5, 1.5, 0.0),
    "exploratory": IntentWeights(1.0, 1.2, 1.0, 1.0, 0.0),
}


def weights_for(intent: str) -> IntentWeights:
    """
    Look up the weight vector for an intent.

    Raises:
        KeyError: for an intent outside the five known ones
    """
    return INTENT_WEIGHTS[intent]


@dataclass
class RankingSignals:
    """Per-record signal values, each normalized to [0, 1]."""
    key: str
    lexical: float = 0.0
    vector: float = 0.0
    recency: float = 0.0
    priority: float = 0.0
    graph: float = 0.0
    # Raw values used only for tie-breaking
    raw_priority: int = 0
    updated_at: Optional[datetime] = None


def score(signals: RankingSignals, weights: IntentWeights) -> float:
    return (
        weights.lexical_boost * signals.lexical
        + weights.vector_boost * signals.vector
        + weights.recency_boost * signals.recency
        + weights.priority_boost * signals.priority
        + weights.graph_boost * signals.graph
    )


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def rank(candidates: Iterable[RankingSignals], weights: IntentWeights) -> List[RankingSignals]:
    """Order candidates by weighted score, then priority, then recency (all descending)."""
    def sort_key(item: RankingSignals):
        updated = item.updated_at or _EPOCH
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        return (score(item, weights), item.raw_priority, updated.timestamp())

    return sorted(candidates, key=sort_key, reverse=True)


def rank_signal(position: int, total: int) -> float:
    """Map a 0-based rank position onto (0, 1]; first place scores 1.0."""
    if total <= 0 or position < 0:
        return 0.0
    return 1.0 - (position / total)


def recency_signal(updated_at: Optional[datetime], now: Optional[datetime] = None,
                   half_life_days: float = 30.0) -> float:
    """Exponential decay: 1.0 for just-updated, 0.5 after one half-life."""
    if updated_at is None:
        return 0.0
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    age_days = max(0.0, (now - updated_at).total_seconds() / 86400.0)
    return math.pow(0.5, age_days / half_life_days)


def priority_signal(priority: int, ceiling: int = 100) -> float:
    if ceiling <= 0:
        return 0.0
    return max(0.0, min(1.0, priority / ceiling))


def merge_search_results(
    fts_keys: List[str],
    vector_keys: List[str],
    limit: int,
    k: int = 60,
) -> List[str]:
    """
    Merge two ranked key lists with Reciprocal Rank Fusion.

    Each list contributes 1 / (k + rank) per key; keys are returned by total
    contribution, descending.
    """
    scores: Dict[str, float] = {}
    for ranked in (fts_keys, vector_keys):
        for i, key in enumerate(ranked):
            scores[key] = scores.get(key, 0.0) + 1.0 / (k + i + 1)

    ordered = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    return [key for key, _ in ordered[:limit]]
