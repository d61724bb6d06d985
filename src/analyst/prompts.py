"""
Prompt text for the AI advisor.
"""

import re
from typing import Any, Iterable, Optional

COMPATIBILITY_SYSTEM_PROMPT = (
    "You are an expert M&A advisor analyzing buyer-seller compatibility for "
    "small and mid-sized business acquisitions. Score honestly: a poor fit "
    "should score low even if both profiles are complete."
)

DOCUMENT_SYSTEM_PROMPT = (
    "You are an expert financial analyst specializing in business acquisitions. "
    "Use numerical values where appropriate and only report metrics that appear "
    "in the document."
)

RECOMMENDATION_SYSTEM_PROMPT = (
    "You are an expert M&A advisor providing practical deal guidance."
)

NDA_SYSTEM_PROMPT = (
    "You are a legal expert specializing in business acquisition agreements. "
    "Generate professional, comprehensive legal documents."
)

# Uploaded documents are truncated before prompting
MAX_DOCUMENT_CHARS = 50_000


def _sanitize_prompt_value(value: Any, max_length: int = 500) -> str:
    """Make a user-supplied value safe to embed in a prompt.

    Strips control characters, breaks up fence/section markers and truncates.
    """
    if value is None:
        return "N/A"
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(v) for v in value) or "N/A"

    sanitized = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', str(value))
    sanitized = sanitized.replace('```', '`\u200b`\u200b`')
    sanitized = sanitized.replace('---', '-\u200b-\u200b-')
    sanitized = re.sub(r'(?i)(SYSTEM|USER|ASSISTANT):', '\\1\u200b:', sanitized)

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."
    return sanitized.strip() or "N/A"


def _field_lines(record: Any, fields: Iterable[tuple]) -> str:
    return "\n".join(
        f"- {label}: {_sanitize_prompt_value(getattr(record, name, None))}"
        for label, name in fields
    )


BUSINESS_FIELDS = (
    ("Industry", "industry"),
    ("Annual Revenue", "annual_revenue"),
    ("Years in Business", "years_in_business"),
    ("Employees", "employees"),
    ("Location", "location"),
    ("Selling Reason", "selling_reason"),
    ("Timeline", "timeline"),
    ("Asking Price", "asking_price"),
)

BUYER_FIELDS = (
    ("Budget Range", "budget_range"),
    ("Preferred Industries", "preferred_industries"),
    ("Experience", "experience"),
    ("Timeline", "timeline"),
    ("Investment Focus", "investment_focus"),
    ("Acquisition Structure", "acquisition_structure"),
    ("Has Financing", "has_financing"),
)


def build_compatibility_prompt(business: Any, buyer: Any) -> str:
    return f"""Analyze the compatibility between this business for sale and a potential buyer.

Business Profile:
{_field_lines(business, BUSINESS_FIELDS)}

Buyer Profile:
{_field_lines(buyer, BUYER_FIELDS)}

Give a compatibility score from 0 to 100 with the strengths, considerations and
recommendations behind it."""


def build_document_prompt(content: str, document_type: str, business: Optional[Any]) -> str:
    if len(content) > MAX_DOCUMENT_CHARS:
        content = content[:MAX_DOCUMENT_CHARS] + "\n[...truncated]"

    context = (
        _field_lines(business, BUSINESS_FIELDS[:3])
        if business is not None
        else "- No business profile attached"
    )

    return f"""Analyze this {_sanitize_prompt_value(document_type, 50)} for a business acquisition.

Business Context:
{context}

Document Content:
---
{content}
---

Analyze for:
1. Key financial metrics and trends
2. Risk factors and red flags
3. Valuation insights
4. Investment recommendations"""


def build_recommendation_prompt(deal: Any, current_stage: str) -> str:
    estimated = getattr(deal, "estimated_value", None)
    estimated_text = f"${estimated:,.0f}" if estimated else "not yet estimated"
    return f"""Generate actionable recommendations for this business acquisition deal.

Current Stage: {_sanitize_prompt_value(current_stage, 50)}
Stage Progress: {getattr(deal, "stage_progress", 0)}%
Estimated Value: {estimated_text}
Next Milestone: {_sanitize_prompt_value(getattr(deal, "next_milestone", None), 200)}

Provide 3-5 specific, actionable recommendations for the current stage."""


def build_nda_prompt(business_type: str, transaction_structure: str) -> str:
    return f"""Generate a professional NDA (Non-Disclosure Agreement) template for a business acquisition.

Business Type: {_sanitize_prompt_value(business_type, 200)}
Transaction Structure: {_sanitize_prompt_value(transaction_structure, 200)}

Include standard clauses for:
- Definition of confidential information
- Permitted use of information
- Return of materials
- Term and termination
- Remedies for breach

Make it comprehensive but readable. Return only the complete NDA text."""
