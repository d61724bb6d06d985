"""
Discovery feeds: candidates scored for compatibility and ranked.

Scoring runs concurrently, bounded by settings.max_concurrent_scoring. A
candidate whose scoring fails stays in the feed with score 0.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from ..analyst import AnalysisError, CompatibilityAnalysis, is_configured, score_compatibility
from ..archivist import BaseStorage, Business, BuyerProfile, EntityType, InsightType
from ..config.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ScoredCandidate:
    record: Any
    score: int
    analysis: Optional[CompatibilityAnalysis] = None


def match_entity_id(business_id: str, buyer_id: str) -> str:
    """AiInsight entity id for a (business, buyer) pairing."""
    return f"{business_id}-{buyer_id}"


async def _record_compatibility(
    storage: BaseStorage,
    business: Business,
    buyer: BuyerProfile,
    analysis: CompatibilityAnalysis,
) -> None:
    try:
        await storage.create_ai_insight({
            "entity_type": EntityType.MATCH,
            "entity_id": match_entity_id(business.id, buyer.id),
            "insight_type": InsightType.COMPATIBILITY,
            "insights": analysis.to_json_dict(),
            "confidence": analysis.compatibility_score / 100,
        })
    except Exception as e:
        logger.warning(f"Failed to record compatibility insight for {business.id}/{buyer.id}: {e}")


async def _score_candidates(storage: BaseStorage, pairs: List[tuple]) -> List[ScoredCandidate]:
    """Score (business, buyer, candidate) triples, highest score first."""
    semaphore = asyncio.Semaphore(max(1, settings.max_concurrent_scoring))
    record_insights = is_configured()

    async def score_one(business: Business, buyer: BuyerProfile, candidate: Any) -> ScoredCandidate:
        async with semaphore:
            try:
                analysis = await score_compatibility(business, buyer)
            except AnalysisError as e:
                logger.warning(f"Scoring failed for business {business.id} / buyer {buyer.id}: {e}")
                return ScoredCandidate(record=candidate, score=0)

        if record_insights:
            await _record_compatibility(storage, business, buyer, analysis)
        return ScoredCandidate(record=candidate, score=analysis.compatibility_score, analysis=analysis)

    results = await asyncio.gather(*(score_one(b, p, c) for b, p, c in pairs))
    # sorted() is stable, so equal scores keep storage order
    return sorted(results, key=lambda c: c.score, reverse=True)


async def discover_buyers(storage: BaseStorage, business: Business) -> List[ScoredCandidate]:
    """Active buyer profiles ranked for a seller's business."""
    buyers = [
        buyer for buyer in await storage.get_active_buyer_profiles()
        if buyer.user_id != business.owner_id
    ]
    logger.info(f"Scoring {len(buyers)} buyers for business {business.id}")
    return await _score_candidates(storage, [(business, buyer, buyer) for buyer in buyers])


async def discover_businesses(storage: BaseStorage, buyer: BuyerProfile) -> List[ScoredCandidate]:
    """Active businesses in the buyer's preferred industries, ranked."""
    seen = set()
    businesses = []
    for industry in buyer.preferred_industries or []:
        for business in await storage.get_businesses_by_industry(industry):
            if business.id in seen or business.owner_id == buyer.user_id:
                continue
            seen.add(business.id)
            businesses.append(business)

    logger.info(f"Scoring {len(businesses)} businesses for buyer {buyer.id}")
    return await _score_candidates(storage, [(business, buyer, business) for business in businesses])
