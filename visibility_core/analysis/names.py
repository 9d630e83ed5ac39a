"""Competitor name canonicalization and merge-by-name deduplication.

Two display names refer to the same competitor iff their canonical keys are
equal. The key is: lowercase → drop one leading article → drop one trailing
legal-entity suffix → collapse whitespace → trim.

    "The Competitor"   → "competitor"
    "Competitor Inc."  → "competitor"
    "Acme, LLC"        → "acme"
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace

from visibility_core.schemas.records import CompetitorObservation

logger = logging.getLogger(__name__)

LEADING_ARTICLES = ("the", "a", "an")
LEGAL_SUFFIXES = ("llc", "inc", "corp", "ltd", "co", "limited", "company", "corporation")

_WHITESPACE_RE = re.compile(r"\s+")
_LEADING_ARTICLE_RE = re.compile(r"^(?:%s)\s+" % "|".join(LEADING_ARTICLES))
_TRAILING_SUFFIX_RE = re.compile(r"(?:^|,\s*|\s+)(?:%s)\.?$" % "|".join(LEGAL_SUFFIXES))


def normalize_competitor_name(name: str) -> str:
    """Return the canonical merge key for a competitor display name."""
    key = _WHITESPACE_RE.sub(" ", name.lower()).strip()
    key = _LEADING_ARTICLE_RE.sub("", key, count=1)
    key = _TRAILING_SUFFIX_RE.sub("", key, count=1)
    return _WHITESPACE_RE.sub(" ", key).strip()


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _CompetitorGroup:
    """Immutable accumulator for one canonical name; rebuilt on every merge."""

    display_name: str
    mention_count: int = 0
    appears_with_target: int = 0
    weighted_position_sum: float = 0.0  # Σ position × mentions over known positions
    position_weight: int = 0  # Σ mentions over known positions
    plain_position_sum: float = 0.0  # Σ position over known positions
    position_samples: int = 0

    def merge(self, obs: CompetitorObservation) -> _CompetitorGroup:
        merged = replace(
            self,
            mention_count=self.mention_count + obs.mention_count,
            appears_with_target=self.appears_with_target + obs.appears_with_target,
        )
        if obs.avg_position is None:
            return merged
        return replace(
            merged,
            weighted_position_sum=merged.weighted_position_sum + obs.avg_position * obs.mention_count,
            position_weight=merged.position_weight + obs.mention_count,
            plain_position_sum=merged.plain_position_sum + obs.avg_position,
            position_samples=merged.position_samples + 1,
        )

    @property
    def avg_position(self) -> float | None:
        """Mention-weighted mean position; plain mean when every sample has zero mentions."""
        if self.position_samples == 0:
            return None
        if self.position_weight > 0:
            return self.weighted_position_sum / self.position_weight
        return self.plain_position_sum / self.position_samples

    def to_observation(self) -> CompetitorObservation:
        return CompetitorObservation(
            name=self.display_name,
            mention_count=self.mention_count,
            avg_position=self.avg_position,
            appears_with_target=self.appears_with_target,
        )


def deduplicate_competitors(competitors: list[CompetitorObservation]) -> list[CompetitorObservation]:
    """Merge competitors whose names share a canonical key.

    Keeps the first-seen display name and first-seen order. Entries with a
    blank display name are dropped. Running it on its own output is a no-op.
    """
    groups: dict[str, _CompetitorGroup] = {}

    for obs in competitors:
        if not obs.name or not obs.name.strip():
            logger.debug("Dropping competitor with blank name (mentions=%d)", obs.mention_count)
            continue

        key = normalize_competitor_name(obs.name)
        current = groups.get(key) or _CompetitorGroup(display_name=obs.name.strip())
        groups = {**groups, key: current.merge(obs)}

    merged = [group.to_observation() for group in groups.values()]

    if len(merged) != len(competitors):
        logger.debug("Competitor dedup: %d observations → %d competitors", len(competitors), len(merged))

    return merged
