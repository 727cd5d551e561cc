"""Rank table: named level bands, each mapped to one Discord role.

Loaded once at startup and never mutated. Ranges must not overlap, so any
level resolves to at most one tier.
"""
import bisect
import json
import logging
from typing import Iterable, Iterator

from models import RankTier

logger = logging.getLogger(__name__)


class RankTable:
    def __init__(self, tiers: Iterable[RankTier]):
        ordered = sorted(tiers, key=lambda t: t.level_min)
        if not ordered:
            raise ValueError("Rank table is empty.")

        by_name: dict[str, RankTier] = {}
        for tier in ordered:
            name = (tier.rank_name or "").strip()
            if not name:
                raise ValueError(f"Rank with empty name: {tier!r}")
            if tier.level_min > tier.level_max:
                raise ValueError(
                    f"Rank {name!r}: level_min {tier.level_min} > level_max {tier.level_max}"
                )
            key = name.lower()
            if key in by_name:
                raise ValueError(f"Duplicate rank name: {name!r}")
            by_name[key] = tier

        for prev, cur in zip(ordered, ordered[1:]):
            if cur.level_min <= prev.level_max:
                raise ValueError(
                    f"Rank ranges overlap: {prev.rank_name!r} [{prev.level_min}, {prev.level_max}] "
                    f"and {cur.rank_name!r} [{cur.level_min}, {cur.level_max}]"
                )

        self._tiers = tuple(ordered)
        self._by_name = by_name
        self._mins = [t.level_min for t in ordered]

    def __iter__(self) -> Iterator[RankTier]:
        return iter(self._tiers)

    def __len__(self) -> int:
        return len(self._tiers)

    def names(self) -> list[str]:
        return [t.rank_name for t in self._tiers]

    def by_name(self, name: str | None) -> RankTier | None:
        if not name:
            return None
        return self._by_name.get(name.strip().lower())

    def for_level(self, level: int) -> RankTier | None:
        idx = bisect.bisect_right(self._mins, level) - 1
        if idx < 0:
            return None
        tier = self._tiers[idx]
        return tier if tier.contains(level) else None


def tiers_from_json(data: list[dict]) -> list[RankTier]:
    tiers = []
    for i, obj in enumerate(data):
        try:
            tiers.append(RankTier(
                rank_name=str(obj["rank_name"]).strip(),
                level_min=int(obj["level_min"]),
                level_max=int(obj["level_max"]),
                role_id=str(obj["role_id"]).strip(),
            ))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Bad rank entry #{i}: {obj!r} ({e})") from e
    return tiers


def load_rank_table(path: str) -> RankTable:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("ranks", [])
    table = RankTable(tiers_from_json(data))
    logger.info("Loaded %d rank tiers from %s", len(table), path)
    return table
