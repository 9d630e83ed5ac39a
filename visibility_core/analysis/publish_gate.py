"""Publish Eligibility Gate.

Decides whether an entity may be published and which structured properties
its subscription tier exposes.

Eligibility (lenient rule, thresholds from ``PublishPolicy``):
    can_publish = is_notable
               OR confidence >= notable_confidence
               OR (references AND confidence >= reference_confidence)
    sandbox_mode forces can_publish = True.

Tier properties are ordered and nested: basic ⊂ standard ⊂ premium, with
premium expanded further once enrichment_level >= 3.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from visibility_core.analysis.types import Tier
from visibility_core.schemas.publish import PublishAssessment, TopReference
from visibility_core.schemas.records import Claim, NotabilityRecord, Reference

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishPolicy:
    notable_confidence: float = 0.3
    reference_confidence: float = 0.2
    review_confidence: float = 0.7  # below this a publishable entity still goes to manual review


DEFAULT_POLICY = PublishPolicy()

# ---------------------------------------------------------------------------
# Tier property sets
# ---------------------------------------------------------------------------

BASIC_PROPERTIES: tuple[str, ...] = (
    "P31",  # instance of
    "P856",  # official website
    "P1448",  # official name
    "P625",  # coordinate location
    "P1329",  # phone number
)

STANDARD_PROPERTIES: tuple[str, ...] = BASIC_PROPERTIES + (
    "P6375",  # street address
    "P968",  # email address
    "P571",  # inception
    "P2002",  # X username
    "P2013",  # Facebook ID
    "P2003",  # Instagram username
    "P4264",  # LinkedIn company ID
    "P1128",  # employees
)

PREMIUM_PROPERTIES: tuple[str, ...] = STANDARD_PROPERTIES + (
    "P2004",  # net profit
    "P2012",  # cuisine
    "P249",  # ticker symbol
)

ENRICHED_PREMIUM_PROPERTIES: tuple[str, ...] = PREMIUM_PROPERTIES + (
    "P131",  # located in the administrative territorial entity
    "P159",  # headquarters location
    "P17",  # country
    "P452",  # industry
    "P1454",  # legal form
    "P18",  # image
    "P4896",  # 3D model
)

ENRICHMENT_EXPANSION_LEVEL = 3

# Lower rank sorts first
SOURCE_TYPE_RANK = {
    "government": 1,
    "news": 2,
    "academic": 3,
    "database": 4,
    "directory": 5,
    "review": 6,
    "other": 7,
    "company": 8,
}
TOP_REFERENCES_LIMIT = 5


def coerce_tier(tier: Tier | str) -> Tier:
    """Parse a tier name; unknown values fall back to basic."""
    try:
        return Tier(tier)
    except ValueError:
        logger.warning("Unknown tier %r, falling back to basic", tier)
        return Tier.BASIC


def properties_for_tier(tier: Tier | str, enrichment_level: int | None = None) -> tuple[str, ...]:
    """Ordered property ids the tier may publish."""
    tier = coerce_tier(tier)

    if tier == Tier.PREMIUM:
        if enrichment_level is not None and enrichment_level >= ENRICHMENT_EXPANSION_LEVEL:
            return ENRICHED_PREMIUM_PROPERTIES
        return PREMIUM_PROPERTIES
    if tier == Tier.STANDARD:
        return STANDARD_PROPERTIES
    return BASIC_PROPERTIES


def filter_claims(claims: Iterable[Claim], allowed: tuple[str, ...]) -> list[Claim]:
    """Keep claims whose property is allowed, ordered by ``allowed``.

    Claims sharing a property keep their relative order; references are kept as-is.
    """
    order = {pid: idx for idx, pid in enumerate(allowed)}
    kept = [claim for claim in claims if claim.property_id in order]
    return sorted(kept, key=lambda claim: order[claim.property_id])


def select_top_references(references: list[Reference], limit: int = TOP_REFERENCES_LIMIT) -> list[TopReference]:
    serious = [ref for ref in references if ref.is_serious]
    ranked = sorted(
        serious,
        key=lambda ref: (SOURCE_TYPE_RANK.get(ref.source_type, SOURCE_TYPE_RANK["other"]), -ref.trust_score),
    )
    return [
        TopReference(
            title=ref.title,
            url=ref.url,
            source=ref.source,
            trust_score=min(max(ref.trust_score, 0.0), 100.0),
        )
        for ref in ranked[:limit]
    ]


def is_publishable(notability: NotabilityRecord, policy: PublishPolicy = DEFAULT_POLICY) -> bool:
    if notability.is_notable:
        return True
    if notability.confidence >= policy.notable_confidence:
        return True
    return bool(notability.references) and notability.confidence >= policy.reference_confidence


def build_publish_recommendation(
    notability: NotabilityRecord,
    can_publish: bool,
    policy: PublishPolicy = DEFAULT_POLICY,
) -> str:
    if not can_publish:
        if notability.suggestions:
            return f"Do not publish - {notability.suggestions[0]}"
        return "Do not publish - notability requirements not met. Gather more independent references."
    if notability.confidence < policy.review_confidence:
        return (
            f"Manual review recommended - confidence {notability.confidence:.0%} "
            f"is below {policy.review_confidence:.0%}."
        )
    return f"Ready to publish - {notability.serious_reference_count} serious reference(s) found."


GENERIC_RECOMMENDATION = "Publishing enabled without a notability decision. Review references before publishing."


def assess_publish_eligibility(
    notability: NotabilityRecord,
    tier: Tier | str,
    enrichment_level: int | None = None,
    *,
    candidate_claims: Iterable[Claim] = (),
    policy: PublishPolicy = DEFAULT_POLICY,
    sandbox_mode: bool = False,
) -> PublishAssessment:
    """Combine a notability assessment with the tier into a publish decision.

    Args:
        notability: Output of the notability collaborator.
        tier: Subscription tier name.
        enrichment_level: Prior enrichment level; premium expands at >= 3.
        candidate_claims: Full candidate claim set to be filtered by tier.
        policy: Eligibility thresholds.
        sandbox_mode: Forces can_publish regardless of notability.

    Returns:
        PublishAssessment with the filtered, tier-ordered property set.
    """
    tier = coerce_tier(tier)
    allowed = properties_for_tier(tier, enrichment_level)
    eligible = is_publishable(notability, policy)
    can_publish = eligible or sandbox_mode

    if sandbox_mode and not eligible:
        recommendation = GENERIC_RECOMMENDATION
    else:
        recommendation = build_publish_recommendation(notability, can_publish, policy)

    properties = filter_claims(candidate_claims, allowed)

    logger.debug(
        "Publish gate: notable=%s, confidence=%.2f, refs=%d, tier=%s, can_publish=%s, properties=%d",
        notability.is_notable,
        notability.confidence,
        len(notability.references),
        tier.value,
        can_publish,
        len(properties),
    )

    return PublishAssessment(
        is_notable=notability.is_notable,
        confidence=notability.confidence,
        reasons=list(notability.reasons),
        serious_reference_count=max(0, notability.serious_reference_count),
        top_references=select_top_references(notability.references),
        can_publish=can_publish,
        recommendation=recommendation,
        tier=tier,
        enrichment_level=enrichment_level,
        allowed_property_ids=list(allowed),
        properties=properties,
    )
