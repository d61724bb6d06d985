"""AI advisor: compatibility scoring, document analysis and deal guidance."""

from .advisor import (
    AnalysisError,
    analyze_document,
    draft_nda,
    is_configured,
    recommend_next_steps,
    score_compatibility,
)
from .schemas import CompatibilityAnalysis, DealRecommendations, DocumentAnalysis, Valuation

__all__ = [
    "AnalysisError",
    "analyze_document",
    "draft_nda",
    "is_configured",
    "recommend_next_steps",
    "score_compatibility",
    "CompatibilityAnalysis",
    "DealRecommendations",
    "DocumentAnalysis",
    "Valuation",
]
