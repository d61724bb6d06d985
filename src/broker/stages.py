"""
Deal stage machine.

A deal moves through six ordered workflow stages and may end in one of two
terminal states (completed, cancelled). Each workflow stage carries a nominal
progress used by clients for display; stage_progress on the deal itself is
whatever the caller last supplied.
"""

import logging
from typing import Dict, List, Optional, Sequence

from ..archivist import BaseStorage, Deal, DealStage
from ..config.settings import settings

logger = logging.getLogger(__name__)

# (stage, nominal progress, label, description)
DEAL_STAGES = (
    (DealStage.INITIAL_DISCUSSION, 20, "Initial Discussion", "Getting to know each other"),
    (DealStage.NDA_SIGNED, 40, "NDA Signed", "Confidentiality agreement in place"),
    (DealStage.FINANCIAL_REVIEW, 60, "Financial Review", "Reviewing business financials"),
    (DealStage.DUE_DILIGENCE, 80, "Due Diligence", "Detailed business investigation"),
    (DealStage.NEGOTIATION, 90, "Negotiation", "Negotiating terms and price"),
    (DealStage.CLOSING, 100, "Closing", "Finalizing the acquisition"),
)

DEAL_STAGE_ORDER = tuple(stage.value for stage, _, _, _ in DEAL_STAGES)
STAGE_PROGRESS: Dict[str, int] = {stage.value: progress for stage, progress, _, _ in DEAL_STAGES}
TERMINAL_STAGES = frozenset({DealStage.COMPLETED.value, DealStage.CANCELLED.value})
ALL_STAGES = frozenset(DEAL_STAGE_ORDER) | TERMINAL_STAGES

# Progress of a freshly promoted deal
INITIAL_DEAL_PROGRESS = 10


class StageTransitionError(ValueError):
    """The requested stage change is not allowed from the deal's current stage."""

    def __init__(self, current: str, target: str, reason: str):
        self.current = current
        self.target = target
        self.reason = reason
        super().__init__(f"Cannot move deal from {current} to {target}: {reason}")


def _value(stage) -> str:
    return stage.value if isinstance(stage, DealStage) else str(stage)


def stage_status(stage: str, current_stage: str, ordered: Sequence[str] = DEAL_STAGE_ORDER) -> str:
    """Display status of one workflow stage relative to the deal's current stage.

    Returns "completed" for stages before the current one, "current" for the
    current one and "upcoming" otherwise. A terminal current stage is not in
    the ordering, so every stage reads as upcoming; completed deals are
    special-cased by stage_timeline.
    """
    stage = _value(stage)
    current_stage = _value(current_stage)
    if stage not in ordered:
        return "upcoming"
    stage_index = ordered.index(stage)
    current_index = ordered.index(current_stage) if current_stage in ordered else -1

    if stage_index < current_index:
        return "completed"
    if stage_index == current_index:
        return "current"
    return "upcoming"


def stage_timeline(current_stage: str) -> List[dict]:
    """Workflow stages with labels, nominal progress and display status."""
    current_stage = _value(current_stage)
    timeline = []
    for stage, progress, label, description in DEAL_STAGES:
        if current_stage == DealStage.COMPLETED.value:
            status = "completed"
        else:
            status = stage_status(stage.value, current_stage)
        timeline.append({
            "stage": stage.value,
            "label": label,
            "description": description,
            "progress": progress,
            "status": status,
        })
    return timeline


def next_stage(current_stage: str) -> Optional[str]:
    """Following workflow stage, or None at closing and in terminal states."""
    current_stage = _value(current_stage)
    if current_stage not in DEAL_STAGE_ORDER:
        return None
    index = DEAL_STAGE_ORDER.index(current_stage)
    if index + 1 >= len(DEAL_STAGE_ORDER):
        return None
    return DEAL_STAGE_ORDER[index + 1]


def check_stage_transition(current_stage: str, target_stage: str) -> None:
    """Validate a stage change, raising StageTransitionError if it is not allowed.

    Rules:
    - target must be a known stage
    - terminal deals cannot move
    - a deal can always be completed or cancelled
    - workflow stages only move forward (skipping ahead is allowed)
    - re-submitting the current stage (progress-only update) is allowed
    """
    current_stage = _value(current_stage)
    target_stage = _value(target_stage)

    if target_stage not in ALL_STAGES:
        raise StageTransitionError(current_stage, target_stage, "unknown stage")
    if target_stage == current_stage:
        return
    if current_stage in TERMINAL_STAGES:
        raise StageTransitionError(current_stage, target_stage, "deal is already closed out")
    if target_stage in TERMINAL_STAGES:
        return
    if current_stage in DEAL_STAGE_ORDER and (
        DEAL_STAGE_ORDER.index(target_stage) < DEAL_STAGE_ORDER.index(current_stage)
    ):
        raise StageTransitionError(current_stage, target_stage, "stages cannot move backwards")


async def advance_deal(
    storage: BaseStorage,
    deal: Deal,
    stage: str,
    progress: Optional[int] = None,
) -> Deal:
    """Move a deal to a new stage.

    Deals moved to completed or cancelled are marked inactive.

    Args:
        storage: Storage backend
        deal: Current deal record
        stage: Target stage
        progress: New stage_progress (0-100), None keeps the current value

    Returns:
        Updated deal

    Raises:
        StageTransitionError: transition not allowed (only with enforce_stage_order)
    """
    stage = _value(stage)
    if settings.enforce_stage_order:
        check_stage_transition(deal.current_stage, stage)

    updated = await storage.update_deal_stage(deal.id, stage, progress)
    is_active = stage not in TERMINAL_STAGES
    if updated.is_active != is_active:
        updated = await storage.update_deal(deal.id, {"is_active": is_active})
    logger.info(
        f"Deal {deal.id}: {deal.current_stage} -> {updated.current_stage} "
        f"({updated.stage_progress}%)"
    )
    return updated
