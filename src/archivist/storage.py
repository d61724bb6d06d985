"""
Storage contract for marketplace entities.

Two interchangeable implementations satisfy it:
- MemoryStorage: process-local maps keyed by generated id
- DatabaseStorage: SQLModel tables through an async session

Rules shared by both:
- create_* assigns the id and timestamps and returns the stored record
- get_* returns None when nothing matches
- update_* merges partial fields, refreshes updated_at and raises
  RecordNotFoundError when the id is absent
- no multi-entity transactions
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

from .models import (
    AiInsight,
    AnalysisStatus,
    Business,
    BuyerProfile,
    Deal,
    Document,
    Match,
    Message,
    User,
)


class RecordNotFoundError(LookupError):
    """An update referenced an id that does not exist."""

    def __init__(self, entity: str, record_id: str):
        self.entity = entity
        self.record_id = record_id
        super().__init__(f"{entity} {record_id} not found")


# Fields a caller may never overwrite through update_*
PROTECTED_FIELDS = frozenset({"id", "created_at", "updated_at"})


def plain_values(data: Dict[str, Any]) -> Dict[str, Any]:
    """Unwrap enum members to their string values and drop protected fields."""
    cleaned = {}
    for key, value in data.items():
        if key in PROTECTED_FIELDS:
            continue
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, list):
            value = [v.value if isinstance(v, Enum) else v for v in value]
        cleaned[key] = value
    return cleaned


class BaseStorage(ABC):
    """Keyed storage with foreign-key lookups for every marketplace entity."""

    # ----- Users -----

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def upsert_user(self, user_id: str, **fields: Any) -> User:
        """Create the user or merge fields into the existing one."""

    # ----- Businesses -----

    @abstractmethod
    async def create_business(self, data: Dict[str, Any]) -> Business:
        ...

    @abstractmethod
    async def get_business_by_id(self, business_id: str) -> Optional[Business]:
        ...

    @abstractmethod
    async def get_business_by_owner_id(self, owner_id: str) -> Optional[Business]:
        ...

    @abstractmethod
    async def update_business(self, business_id: str, updates: Dict[str, Any]) -> Business:
        ...

    @abstractmethod
    async def get_businesses_by_industry(self, industry: str) -> List[Business]:
        """Active businesses in an industry."""

    # ----- Buyer profiles -----

    @abstractmethod
    async def create_buyer_profile(self, data: Dict[str, Any]) -> BuyerProfile:
        ...

    @abstractmethod
    async def get_buyer_profile_by_id(self, profile_id: str) -> Optional[BuyerProfile]:
        ...

    @abstractmethod
    async def get_buyer_profile_by_user_id(self, user_id: str) -> Optional[BuyerProfile]:
        ...

    @abstractmethod
    async def update_buyer_profile(self, profile_id: str, updates: Dict[str, Any]) -> BuyerProfile:
        ...

    @abstractmethod
    async def get_active_buyer_profiles(self) -> List[BuyerProfile]:
        ...

    # ----- Matches -----

    @abstractmethod
    async def create_match(self, data: Dict[str, Any]) -> Match:
        ...

    @abstractmethod
    async def get_match_by_id(self, match_id: str) -> Optional[Match]:
        ...

    @abstractmethod
    async def get_match_by_pair(self, business_id: str, buyer_id: str) -> Optional[Match]:
        ...

    @abstractmethod
    async def get_matches_for_seller(self, seller_id: str) -> List[Match]:
        """Matches whose seller is this user id."""

    @abstractmethod
    async def get_matches_for_buyer(self, buyer_id: str) -> List[Match]:
        """Matches for this buyer profile id."""

    @abstractmethod
    async def update_match(self, match_id: str, updates: Dict[str, Any]) -> Match:
        ...

    # ----- Deals -----

    @abstractmethod
    async def create_deal(self, data: Dict[str, Any]) -> Deal:
        ...

    @abstractmethod
    async def get_deal_by_id(self, deal_id: str) -> Optional[Deal]:
        ...

    @abstractmethod
    async def get_deal_by_match_id(self, match_id: str) -> Optional[Deal]:
        ...

    @abstractmethod
    async def get_deals_by_user_id(self, user_id: str) -> List[Deal]:
        """Deals where the user is the match's seller or owns its buyer profile."""

    @abstractmethod
    async def update_deal_stage(self, deal_id: str, stage: str, progress: Optional[int] = None) -> Deal:
        """Overwrite current_stage; progress None keeps the current value."""

    @abstractmethod
    async def update_deal(self, deal_id: str, updates: Dict[str, Any]) -> Deal:
        ...

    # ----- Documents -----

    @abstractmethod
    async def create_document(self, data: Dict[str, Any]) -> Document:
        ...

    @abstractmethod
    async def get_document_by_id(self, document_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    async def get_documents_by_deal_id(self, deal_id: str) -> List[Document]:
        ...

    @abstractmethod
    async def update_document_analysis(
        self,
        document_id: str,
        analysis: Dict[str, Any],
        risk_flags: Optional[List[str]] = None,
        status: AnalysisStatus = AnalysisStatus.COMPLETED,
    ) -> Document:
        """Store analysis results; risk_flags None keeps the current flags."""

    # ----- Messages -----

    @abstractmethod
    async def create_message(self, data: Dict[str, Any]) -> Message:
        ...

    @abstractmethod
    async def get_messages_by_deal_id(self, deal_id: str) -> List[Message]:
        """Messages for a deal, oldest first."""

    @abstractmethod
    async def mark_messages_as_read(self, deal_id: str, user_id: str) -> int:
        """Flag messages received by user_id in this deal as read. Returns count."""

    # ----- AI insights -----

    @abstractmethod
    async def create_ai_insight(self, data: Dict[str, Any]) -> AiInsight:
        ...

    @abstractmethod
    async def get_ai_insights_by_entity(self, entity_type: str, entity_id: str) -> List[AiInsight]:
        ...
