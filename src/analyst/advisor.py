"""
AI Advisor - compatibility scoring, document analysis and deal guidance.

Uses Instructor + Claude for structured output. When no provider key is
configured every operation returns fixed placeholder content instead
(degraded mode), so the marketplace keeps working without AI.

Provider failures surface as AnalysisError; callers decide whether that is
fatal (document ingestion marks the document failed, discovery scores the
candidate 0).
"""

import logging
import random
from typing import Any, List, Optional

import httpx
import instructor
from anthropic import AsyncAnthropic, APIError
from instructor.core import InstructorRetryException

from ..config.settings import settings
from .prompts import (
    COMPATIBILITY_SYSTEM_PROMPT,
    DOCUMENT_SYSTEM_PROMPT,
    NDA_SYSTEM_PROMPT,
    RECOMMENDATION_SYSTEM_PROMPT,
    build_compatibility_prompt,
    build_document_prompt,
    build_nda_prompt,
    build_recommendation_prompt,
)
from .schemas import CompatibilityAnalysis, DealRecommendations, DocumentAnalysis, Valuation

logger = logging.getLogger(__name__)


class AnalysisError(RuntimeError):
    """The AI provider failed or returned output that could not be parsed."""


# Degraded-mode content

FALLBACK_STRENGTHS = ["Industry alignment", "Budget compatibility"]
FALLBACK_CONSIDERATIONS = ["Timeline differences", "Experience level"]
FALLBACK_MATCH_RECOMMENDATIONS = ["Schedule a call to discuss details", "Review business financials"]

FALLBACK_DOCUMENT_SUMMARY = (
    "Document uploaded successfully. Automated analysis is not configured; "
    "manual review required."
)

STAGE_RECOMMENDATIONS = {
    "initial_discussion": ["Schedule a video call", "Prepare basic questions", "Share company overview"],
    "nda_signed": ["Request financial statements", "Schedule site visit", "Prepare due diligence checklist"],
    "financial_review": ["Analyze revenue trends", "Review expense categories", "Assess cash flow"],
    "due_diligence": ["Verify legal compliance", "Review employee contracts", "Check customer contracts"],
    "negotiation": ["Prepare offer terms", "Discuss payment structure", "Plan transition timeline"],
    "closing": ["Finalize legal documents", "Arrange financing", "Plan handover process"],
}
DEFAULT_RECOMMENDATIONS = ["Continue with next steps"]

NDA_TEMPLATE = """NON-DISCLOSURE AGREEMENT

This Non-Disclosure Agreement ("Agreement") is entered into on [DATE] between the parties for the purpose of evaluating a potential business acquisition.

CONFIDENTIAL INFORMATION:
All business information, financial data, customer lists, and proprietary processes shared during this evaluation.

PERMITTED USE:
Information may only be used for evaluating the potential acquisition and must not be disclosed to third parties.

RETURN OF MATERIALS:
All documents and materials must be returned within 30 days if the transaction does not proceed.

TERM:
This agreement remains in effect for 2 years from the date of signing.

This template is a starting point only and should be reviewed by counsel before signing.

[Signature Lines]"""


# Provider clients, created on first use so degraded mode never builds one

_anthropic_client: Optional[AsyncAnthropic] = None
_client: Optional[instructor.AsyncInstructor] = None


def is_configured() -> bool:
    """True when a provider key is set (otherwise degraded mode)."""
    return bool(settings.anthropic_api_key.strip())


def _get_anthropic_client() -> AsyncAnthropic:
    global _anthropic_client
    if _anthropic_client is None:
        _anthropic_client = AsyncAnthropic(
            api_key=settings.anthropic_api_key,
            timeout=httpx.Timeout(settings.llm_timeout, connect=settings.llm_connect_timeout),
            max_retries=settings.llm_max_retries,
        )
    return _anthropic_client


def _get_client() -> instructor.AsyncInstructor:
    global _client
    if _client is None:
        _client = instructor.from_anthropic(_get_anthropic_client())
    return _client


def reset_clients() -> None:
    """Drop cached clients (after settings change)."""
    global _anthropic_client, _client
    _anthropic_client = None
    _client = None


async def _structured_call(response_model, system: str, prompt: str, what: str):
    """One Instructor call. Transport retries are the client's own max_retries."""
    try:
        return await _get_client().messages.create(
            model=settings.llm_model,
            max_tokens=settings.llm_max_tokens,
            temperature=settings.llm_temperature,
            system=system,
            messages=[{"role": "user", "content": prompt}],
            response_model=response_model,
        )
    except InstructorRetryException as e:
        logger.error(
            f"Instructor validation failed for {what}: {e}\n"
            f"  Validation errors: {getattr(e, 'errors', 'N/A')}"
        )
        raise AnalysisError(f"Failed to {what}") from e
    except APIError as e:
        logger.error(f"Claude API error during {what}: {e}")
        raise AnalysisError(f"Failed to {what}") from e
    except Exception as e:
        logger.error(f"Unexpected error during {what}: {type(e).__name__}: {e}")
        raise AnalysisError(f"Failed to {what}") from e


async def score_compatibility(business: Any, buyer: Any) -> CompatibilityAnalysis:
    """Score how well a buyer profile fits a business.

    Args:
        business: Business record (or any object with the business fields)
        buyer: BuyerProfile record

    Returns:
        CompatibilityAnalysis with a score in [0, 100]

    Raises:
        AnalysisError: provider failure (never raised in degraded mode)
    """
    if not is_configured():
        return CompatibilityAnalysis(
            compatibility_score=random.randint(60, 100),
            strengths=list(FALLBACK_STRENGTHS),
            considerations=list(FALLBACK_CONSIDERATIONS),
            recommendations=list(FALLBACK_MATCH_RECOMMENDATIONS),
        )

    analysis = await _structured_call(
        CompatibilityAnalysis,
        COMPATIBILITY_SYSTEM_PROMPT,
        build_compatibility_prompt(business, buyer),
        "analyze buyer-seller compatibility",
    )
    logger.debug(
        f"Compatibility {getattr(business, 'id', '?')}/{getattr(buyer, 'id', '?')}: "
        f"{analysis.compatibility_score}"
    )
    return analysis


async def analyze_document(
    content: str,
    document_type: str,
    business_context: Optional[Any] = None,
) -> DocumentAnalysis:
    """Analyze an uploaded document's text.

    Args:
        content: Decoded document text
        document_type: One of the DocumentType values
        business_context: Business the document belongs to, if known

    Returns:
        DocumentAnalysis (placeholder with confidence 0 in degraded mode)

    Raises:
        AnalysisError: provider failure
    """
    if not is_configured():
        return DocumentAnalysis(
            summary=FALLBACK_DOCUMENT_SUMMARY,
            key_metrics={"revenue": "N/A", "profitability": "N/A"},
            risk_flags=[],
            valuation=Valuation(
                estimated_value=0,
                confidence=0,
                methodology="Manual review required",
            ),
            recommendations=["Have a qualified advisor review this document"],
        )

    return await _structured_call(
        DocumentAnalysis,
        DOCUMENT_SYSTEM_PROMPT,
        build_document_prompt(content, document_type, business_context),
        "analyze financial document",
    )


async def recommend_next_steps(deal: Any, current_stage: str) -> List[str]:
    """Actionable next steps for a deal at its current stage."""
    if not is_configured():
        return list(STAGE_RECOMMENDATIONS.get(current_stage, DEFAULT_RECOMMENDATIONS))

    result = await _structured_call(
        DealRecommendations,
        RECOMMENDATION_SYSTEM_PROMPT,
        build_recommendation_prompt(deal, current_stage),
        "generate deal recommendations",
    )
    return result.recommendations


async def draft_nda(business_type: str, transaction_structure: str) -> str:
    """Draft an NDA for an acquisition. Free text, so no response_model."""
    if not is_configured():
        return NDA_TEMPLATE

    try:
        message = await _get_anthropic_client().messages.create(
            model=settings.llm_model,
            max_tokens=settings.llm_nda_max_tokens,
            temperature=settings.llm_temperature,
            system=NDA_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": build_nda_prompt(business_type, transaction_structure)}],
        )
    except APIError as e:
        logger.error(f"Claude API error during NDA generation: {e}")
        raise AnalysisError("Failed to generate NDA template") from e

    text = "".join(
        block.text for block in message.content if getattr(block, "type", None) == "text"
    ).strip()
    if not text:
        logger.error("NDA generation returned no text content")
        raise AnalysisError("Failed to generate NDA template")
    return text
