"""Marketplace orchestration: matching, deal stages, discovery and documents."""

from .stages import (
    DEAL_STAGES,
    DEAL_STAGE_ORDER,
    INITIAL_DEAL_PROGRESS,
    STAGE_PROGRESS,
    TERMINAL_STAGES,
    StageTransitionError,
    advance_deal,
    check_stage_transition,
    next_stage,
    stage_status,
    stage_timeline,
)
from .matching import (
    MatchConflictError,
    MatchOutcome,
    NotParticipantError,
    derive_match_status,
    open_match,
    promote_if_mutually_accepted,
    record_match_action,
    resolve_side,
)
from .discovery import ScoredCandidate, discover_businesses, discover_buyers, match_entity_id
from .documents import DocumentTooLargeError, ingest_document

__all__ = [
    "DEAL_STAGES",
    "DEAL_STAGE_ORDER",
    "INITIAL_DEAL_PROGRESS",
    "STAGE_PROGRESS",
    "TERMINAL_STAGES",
    "StageTransitionError",
    "advance_deal",
    "check_stage_transition",
    "next_stage",
    "stage_status",
    "stage_timeline",
    "MatchConflictError",
    "MatchOutcome",
    "NotParticipantError",
    "derive_match_status",
    "open_match",
    "promote_if_mutually_accepted",
    "record_match_action",
    "resolve_side",
    "ScoredCandidate",
    "discover_businesses",
    "discover_buyers",
    "match_entity_id",
    "DocumentTooLargeError",
    "ingest_document",
]
