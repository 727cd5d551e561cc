"""Turn one submission's per-attachment results into a single outcome.

Order matters:
  1. one non-profile attachment rejects the whole submission
  2. no rank found anywhere -> unreadable
  3. best match = highest confidence, first-seen wins ties
  4. never downgrade: a stored rank whose range starts higher blocks it
  5. otherwise accept; within the stored tier the level only goes up
"""
from typing import Iterable

from models import MatchResult, Outcome, VerificationRecord
from ranks import RankTable


def select_best(results: Iterable[MatchResult]) -> MatchResult | None:
    """Highest-confidence matched result; ties keep the earlier attachment."""
    best = None
    for result in results:
        if not result.matched:
            continue
        # strictly greater: an equal score must not displace the first-seen one
        if best is None or result.confidence > best.confidence:
            best = result
    return best


def reconcile(
    results: Iterable[MatchResult],
    prior: VerificationRecord | None,
    table: RankTable,
) -> Outcome:
    results = list(results)

    if any(not r.is_profile_screen for r in results):
        return Outcome.invalid()

    best = select_best(results)
    if best is None:
        return Outcome.unreadable()

    rank = best.rank
    level = best.level_detected if best.level_detected is not None else rank.level_min

    if prior is not None:
        prior_tier = table.by_name(prior.rank_name)
        if prior_tier is not None and prior_tier.level_min > rank.level_min:
            return Outcome.no_upgrade(rank, level, prior.rank_name)
        if prior_tier == rank:
            # same tier again: a blurrier or name-only screenshot must not lower the stored level
            level = max(level, prior.level_detected)

    return Outcome.accept(rank, level, best.confidence)
