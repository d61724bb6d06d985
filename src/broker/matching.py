"""
Two-sided match protocol.

A match pairs one business with one buyer profile. The seller and the buyer
each record an action (pending, accept, reject) independently; the match
status is derived from both. The first time both sides have accepted, the
match is promoted into a deal.

Once a deal exists the match is locked: repeating an action is a no-op and
changing it raises MatchConflictError. Deals are never cancelled from here.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..archivist import (
    BaseStorage,
    Deal,
    DealStage,
    Match,
    MatchAction,
    MatchStatus,
    RecordNotFoundError,
    UserType,
)
from ..common.broadcast import publish
from .stages import INITIAL_DEAL_PROGRESS

logger = logging.getLogger(__name__)


class MatchConflictError(Exception):
    """An action would change a match that already has a deal."""

    def __init__(self, match_id: str, deal_id: str):
        self.match_id = match_id
        self.deal_id = deal_id
        super().__init__(f"Match {match_id} already has deal {deal_id}; actions are locked")


class NotParticipantError(PermissionError):
    """The acting user is neither the seller nor the buyer of the match."""


@dataclass
class MatchOutcome:
    match: Match
    deal: Optional[Deal] = None


def _value(action) -> str:
    return action.value if isinstance(action, MatchAction) else str(action)


def derive_match_status(seller_action: str, buyer_action: str) -> str:
    """accepted iff both accepted, rejected if either rejected, else pending."""
    seller_action = _value(seller_action)
    buyer_action = _value(buyer_action)
    if seller_action == MatchAction.REJECT.value or buyer_action == MatchAction.REJECT.value:
        return MatchStatus.REJECTED.value
    if seller_action == MatchAction.ACCEPT.value and buyer_action == MatchAction.ACCEPT.value:
        return MatchStatus.ACCEPTED.value
    return MatchStatus.PENDING.value


async def resolve_side(storage: BaseStorage, match: Match, user_id: str) -> str:
    """Which side of the match the user acts for ("seller" or "buyer")."""
    if match.seller_id == user_id:
        return UserType.SELLER.value
    buyer = await storage.get_buyer_profile_by_id(match.buyer_id)
    if buyer is not None and buyer.user_id == user_id:
        return UserType.BUYER.value
    raise NotParticipantError(f"User {user_id} is not a party to match {match.id}")


async def _buyer_user_id(storage: BaseStorage, match: Match) -> Optional[str]:
    buyer = await storage.get_buyer_profile_by_id(match.buyer_id)
    return buyer.user_id if buyer else None


async def _notify_parties(storage: BaseStorage, match: Match, payload: dict) -> None:
    await publish(match.seller_id, payload)
    buyer_user_id = await _buyer_user_id(storage, match)
    if buyer_user_id and buyer_user_id != match.seller_id:
        await publish(buyer_user_id, payload)


async def promote_if_mutually_accepted(storage: BaseStorage, match: Match) -> Optional[Deal]:
    """Create the deal for a mutually accepted match.

    Returns the existing deal if one was already created, None if the match
    is not mutually accepted. Never creates a second deal for a match.
    """
    if derive_match_status(match.seller_action, match.buyer_action) != MatchStatus.ACCEPTED.value:
        return None

    existing = await storage.get_deal_by_match_id(match.id)
    if existing is not None:
        return existing

    deal = await storage.create_deal({
        "match_id": match.id,
        "current_stage": DealStage.INITIAL_DISCUSSION,
        "stage_progress": INITIAL_DEAL_PROGRESS,
    })
    logger.info(f"Match {match.id} mutually accepted, created deal {deal.id}")
    await _notify_parties(storage, match, {
        "type": "deal_created",
        "dealId": deal.id,
        "matchId": match.id,
    })
    return deal


async def record_match_action(
    storage: BaseStorage,
    match: Match,
    side: str,
    action: str,
) -> MatchOutcome:
    """Record one side's action, recompute status and promote if both accepted.

    Args:
        storage: Storage backend
        match: Current match record
        side: "seller" or "buyer"
        action: pending, accept or reject

    Returns:
        MatchOutcome with the updated match and its deal (if any)

    Raises:
        MatchConflictError: the match already has a deal and the action differs
    """
    action = _value(action)
    field = f"{side}_action"

    existing_deal = await storage.get_deal_by_match_id(match.id)
    if existing_deal is not None:
        if getattr(match, field) == action:
            return MatchOutcome(match=match, deal=existing_deal)
        logger.warning(f"Rejected {side} action {action!r} on locked match {match.id}")
        raise MatchConflictError(match.id, existing_deal.id)

    seller_action = action if side == UserType.SELLER.value else match.seller_action
    buyer_action = action if side == UserType.BUYER.value else match.buyer_action
    updated = await storage.update_match(match.id, {
        field: action,
        "status": derive_match_status(seller_action, buyer_action),
    })
    logger.info(f"Match {match.id}: {side} -> {action} (status {updated.status})")

    await _notify_parties(storage, updated, {
        "type": "match_updated",
        "matchId": updated.id,
        "status": updated.status,
    })
    deal = await promote_if_mutually_accepted(storage, updated)
    return MatchOutcome(match=updated, deal=deal)


async def open_match(
    storage: BaseStorage,
    user_id: str,
    business_id: str,
    buyer_id: str,
    action: str,
) -> MatchOutcome:
    """Record a user's action on a (business, buyer profile) pairing.

    The acting side is resolved from the user: the business owner acts as
    seller, the buyer profile owner as buyer. The pairing's existing match is
    reused, so the second party's swipe lands on the same match.

    Raises:
        RecordNotFoundError: business or buyer profile does not exist
        NotParticipantError: user owns neither side
        MatchConflictError: see record_match_action
    """
    business = await storage.get_business_by_id(business_id)
    if business is None:
        raise RecordNotFoundError("Business", business_id)
    buyer = await storage.get_buyer_profile_by_id(buyer_id)
    if buyer is None:
        raise RecordNotFoundError("BuyerProfile", buyer_id)

    if business.owner_id == user_id:
        side = UserType.SELLER.value
    elif buyer.user_id == user_id:
        side = UserType.BUYER.value
    else:
        raise NotParticipantError(f"User {user_id} owns neither business {business_id} nor buyer {buyer_id}")

    match = await storage.get_match_by_pair(business_id, buyer_id)
    if match is not None:
        return await record_match_action(storage, match, side, action)

    action = _value(action)
    seller_action = action if side == UserType.SELLER.value else MatchAction.PENDING.value
    buyer_action = action if side == UserType.BUYER.value else MatchAction.PENDING.value
    match = await storage.create_match({
        "business_id": business_id,
        "buyer_id": buyer_id,
        "seller_id": business.owner_id,
        "seller_action": seller_action,
        "buyer_action": buyer_action,
        "status": derive_match_status(seller_action, buyer_action),
    })
    logger.info(f"Created match {match.id}: business {business_id} x buyer {buyer_id} ({side} {action})")

    await _notify_parties(storage, match, {
        "type": "match_created",
        "matchId": match.id,
        "status": match.status,
    })
    deal = await promote_if_mutually_accepted(storage, match)
    return MatchOutcome(match=match, deal=deal)
