"""
Importance Scoring - ranking value for incidents.

DESIGN PRINCIPLES:
- Score is SYSTEM-DERIVED, never user-editable
- Score is a pure function of (vote stats, neighborhood, age, weights, now)
- "now" is always passed in; nothing here reads the wall clock
- Vote stats are rebuilt from the full vote set, never patched incrementally

Formula:
    neighborhood_score = up - down among votes cast from the incident's neighborhood
    global_score       = up - down across all votes
    raw                = neighborhood_score * neighborhood_vote_weight + global_score * global_vote_weight
    decay              = exp(-age_days / decay_constant_days)
    score              = max(0, raw * decay)

NOTE: decay_constant_days is an e-folding time, so decay is ~0.368 (not 0.5)
at age == decay_constant_days. The name suggests a half-life; the behaviour
is kept as-is pending product clarification.
"""

import logging
import math
from datetime import datetime
from typing import Dict, Iterable, Optional

from pydantic import ValidationError

from app.models.incident import ScoreWeights
from app.models.vote import NeighborhoodVotes, Vote, VoteStats

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


def recalculate_vote_stats(votes: Iterable[Vote]) -> VoteStats:
    """
    Rebuild VoteStats from scratch.

    Order-independent: the same vote set always yields the same stats.
    Votes without a neighborhood count toward the global totals only.
    """
    upvotes = 0
    downvotes = 0
    by_neighborhood: Dict[str, NeighborhoodVotes] = {}

    for vote in votes:
        value = int(vote.value)
        if value > 0:
            upvotes += 1
        elif value < 0:
            downvotes += 1
        else:
            continue

        if vote.neighborhood_id:
            bucket = by_neighborhood.setdefault(vote.neighborhood_id, NeighborhoodVotes())
            if value > 0:
                bucket.upvotes += 1
            else:
                bucket.downvotes += 1

    return VoteStats(
        total=upvotes + downvotes,
        upvotes=upvotes,
        downvotes=downvotes,
        by_neighborhood={key: by_neighborhood[key] for key in sorted(by_neighborhood)},
    )


def age_in_days(created_at: datetime, now: datetime) -> float:
    """
    Real-valued age in days. Timestamps after `now` (clock skew) count as age 0.
    """
    return max(0.0, (now - created_at).total_seconds() / SECONDS_PER_DAY)


def decay_factor(age_days: float, decay_constant_days: float) -> float:
    if decay_constant_days <= 0:
        raise ValueError("decay_constant_days must be positive")
    return math.exp(-age_days / decay_constant_days)


def neighborhood_score(vote_stats: VoteStats, neighborhood_id: Optional[str]) -> int:
    """Net votes cast from the incident's own neighborhood (0 when it has none)."""
    if not neighborhood_id:
        return 0
    bucket = vote_stats.by_neighborhood.get(neighborhood_id)
    if bucket is None:
        return 0
    return bucket.upvotes - bucket.downvotes


def calculate_importance_score(
    vote_stats: VoteStats,
    neighborhood_id: Optional[str],
    created_at: datetime,
    weights: ScoreWeights,
    now: datetime,
) -> float:
    """
    Calculate the importance score for an incident.

    Args:
        vote_stats: Aggregate rebuilt from the incident's vote set
        neighborhood_id: The incident's neighborhood, or None
        created_at: Incident creation time (timezone-aware)
        weights: Municipality ranking weights
        now: Evaluation time (timezone-aware)

    Returns:
        Non-negative score; deterministic for identical inputs
    """
    local = neighborhood_score(vote_stats, neighborhood_id)
    global_net = vote_stats.upvotes - vote_stats.downvotes

    raw_score = local * weights.neighborhood_vote_weight + global_net * weights.global_vote_weight
    decay = decay_factor(age_in_days(created_at, now), weights.decay_constant_days)

    return max(0.0, raw_score * decay)


def resolve_score_weights(municipality_settings: Optional[Dict]) -> ScoreWeights:
    """
    Read `score_weights` from a municipality's settings mapping.

    Missing fields fall back to the configured defaults individually. A
    configuration that fails validation (e.g. a non-positive decay constant)
    falls back to the defaults entirely.
    """
    defaults = ScoreWeights.defaults()
    raw = (municipality_settings or {}).get("score_weights")
    if not raw:
        return defaults

    merged = defaults.model_dump()
    merged.update({key: value for key, value in raw.items() if key in merged and value is not None})
    try:
        return ScoreWeights(**merged)
    except ValidationError as e:
        logger.warning(f"Invalid score weights {raw}, using defaults: {e.errors()}")
        return defaults
