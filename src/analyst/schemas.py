"""
Pydantic schemas for AI advisor output with Instructor.

These schemas enforce structured JSON output from the LLM and are also the
JSON contract returned to API clients (camelCase on the wire).
"""

import logging
import math
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class CamelModel(BaseModel):
    """Serializes with camelCase keys, accepts camelCase or snake_case input."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def _finite_number(value: Any, default: float) -> float:
    """Coerce LLM numeric output; NaN, infinity and garbage become the default."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


class CompatibilityAnalysis(CamelModel):
    """Fit between a business for sale and a prospective buyer."""
    compatibility_score: int = Field(
        description="Overall compatibility from 0 (no fit) to 100 (ideal fit)"
    )
    strengths: List[str] = Field(
        default_factory=list,
        description="Reasons the pairing works (industry, budget, timeline...)"
    )
    considerations: List[str] = Field(
        default_factory=list,
        description="Gaps either side should look at before proceeding"
    )
    recommendations: List[str] = Field(
        default_factory=list,
        description="Concrete next steps for the two parties"
    )

    @field_validator("compatibility_score", mode="before")
    @classmethod
    def clamp_score(cls, v: Any) -> int:
        score = _finite_number(v, 0.0)
        clamped = int(round(min(100.0, max(0.0, score))))
        if clamped != score:
            logger.warning(f"CLAMPING compatibility score {v!r} -> {clamped}")
        return clamped


class Valuation(CamelModel):
    estimated_value: float = Field(
        default=0,
        description="Estimated enterprise value in USD, 0 if it cannot be estimated"
    )
    confidence: float = Field(
        default=0.5,
        description="Confidence in the estimate from 0.0 to 1.0"
    )
    methodology: str = Field(
        default="Comparative analysis",
        description="How the value was derived (e.g., 'SDE multiple', 'DCF')"
    )

    @field_validator("estimated_value", mode="before")
    @classmethod
    def finite_value(cls, v: Any) -> float:
        return max(0.0, _finite_number(v, 0.0))

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        return min(1.0, max(0.0, _finite_number(v, 0.0)))


class DocumentAnalysis(CamelModel):
    """Financial/legal review of one uploaded document."""
    summary: str = Field(
        default="Analysis completed",
        description="Two or three sentence summary of the document"
    )
    key_metrics: Dict[str, Any] = Field(
        default_factory=dict,
        description="Named metrics found in the document (revenue, margins, growth...)"
    )
    risk_flags: List[str] = Field(
        default_factory=list,
        description="Red flags a buyer should investigate"
    )
    valuation: Valuation = Field(default_factory=Valuation)
    recommendations: List[str] = Field(
        default_factory=list,
        description="Follow-up actions for the buyer"
    )


class DealRecommendations(CamelModel):
    recommendations: List[str] = Field(
        default_factory=list,
        description="3-5 specific, actionable steps for the current deal stage"
    )
