"""
In-process storage backed by plain dicts.

Each entity lives in its own id -> row map. Rows are stored as dicts and
rebuilt into model instances on read, so callers never hold a reference
into the store.
"""

import copy
import logging
from typing import Any, Dict, List, Optional, Type

from sqlmodel import SQLModel

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
    new_id,
    next_updated_at,
)
from .storage import BaseStorage, RecordNotFoundError, plain_values

logger = logging.getLogger(__name__)


class MemoryStorage(BaseStorage):
    """Process-lifetime storage. Used by default and in tests."""

    def __init__(self):
        self._tables: Dict[str, Dict[str, dict]] = {
            "users": {},
            "businesses": {},
            "buyer_profiles": {},
            "matches": {},
            "deals": {},
            "documents": {},
            "messages": {},
            "ai_insights": {},
        }

    # ----- Generic helpers -----

    @staticmethod
    def _load(model: Type[SQLModel], row: Optional[dict]):
        if row is None:
            return None
        return model(**copy.deepcopy(row))

    def _rows(self, model: Type[SQLModel]) -> List[dict]:
        return list(self._tables[model.__tablename__].values())

    def _insert(self, model: Type[SQLModel], data: Dict[str, Any]):
        values = plain_values(data)
        values["id"] = new_id()
        record = model(**values)
        row = record.model_dump()
        self._tables[model.__tablename__][row["id"]] = copy.deepcopy(row)
        return self._load(model, row)

    def _update(self, model: Type[SQLModel], record_id: str, updates: Dict[str, Any]):
        table = self._tables[model.__tablename__]
        existing = table.get(record_id)
        if existing is None:
            logger.warning(f"{model.__name__} not found for update: {record_id}")
            raise RecordNotFoundError(model.__name__, record_id)

        merged = {**existing, **copy.deepcopy(plain_values(updates))}
        if "updated_at" in existing:
            merged["updated_at"] = next_updated_at(existing["updated_at"])
        table[record_id] = merged
        return self._load(model, merged)

    def _find(self, model: Type[SQLModel], **criteria) -> List:
        return [
            self._load(model, row)
            for row in self._rows(model)
            if all(row.get(k) == v for k, v in criteria.items())
        ]

    def _first(self, model: Type[SQLModel], **criteria):
        found = self._find(model, **criteria)
        return found[0] if found else None

    # ----- Users -----

    async def get_user(self, user_id: str) -> Optional[User]:
        return self._load(User, self._tables["users"].get(user_id))

    async def upsert_user(self, user_id: str, **fields: Any) -> User:
        existing = self._tables["users"].get(user_id)
        if existing is None:
            record = User(id=user_id, **plain_values(fields))
            row = record.model_dump()
            self._tables["users"][user_id] = row
            return self._load(User, row)
        return self._update(User, user_id, fields)

    # ----- Businesses -----

    async def create_business(self, data: Dict[str, Any]) -> Business:
        return self._insert(Business, data)

    async def get_business_by_id(self, business_id: str) -> Optional[Business]:
        return self._load(Business, self._tables["businesses"].get(business_id))

    async def get_business_by_owner_id(self, owner_id: str) -> Optional[Business]:
        return self._first(Business, owner_id=owner_id)

    async def update_business(self, business_id: str, updates: Dict[str, Any]) -> Business:
        return self._update(Business, business_id, updates)

    async def get_businesses_by_industry(self, industry: str) -> List[Business]:
        return self._find(Business, industry=industry, is_active=True)

    # ----- Buyer profiles -----

    async def create_buyer_profile(self, data: Dict[str, Any]) -> BuyerProfile:
        return self._insert(BuyerProfile, data)

    async def get_buyer_profile_by_id(self, profile_id: str) -> Optional[BuyerProfile]:
        return self._load(BuyerProfile, self._tables["buyer_profiles"].get(profile_id))

    async def get_buyer_profile_by_user_id(self, user_id: str) -> Optional[BuyerProfile]:
        return self._first(BuyerProfile, user_id=user_id)

    async def update_buyer_profile(self, profile_id: str, updates: Dict[str, Any]) -> BuyerProfile:
        return self._update(BuyerProfile, profile_id, updates)

    async def get_active_buyer_profiles(self) -> List[BuyerProfile]:
        return self._find(BuyerProfile, is_active=True)

    # ----- Matches -----

    async def create_match(self, data: Dict[str, Any]) -> Match:
        return self._insert(Match, data)

    async def get_match_by_id(self, match_id: str) -> Optional[Match]:
        return self._load(Match, self._tables["matches"].get(match_id))

    async def get_match_by_pair(self, business_id: str, buyer_id: str) -> Optional[Match]:
        return self._first(Match, business_id=business_id, buyer_id=buyer_id)

    async def get_matches_for_seller(self, seller_id: str) -> List[Match]:
        return self._find(Match, seller_id=seller_id)

    async def get_matches_for_buyer(self, buyer_id: str) -> List[Match]:
        return self._find(Match, buyer_id=buyer_id)

    async def update_match(self, match_id: str, updates: Dict[str, Any]) -> Match:
        return self._update(Match, match_id, updates)

    # ----- Deals -----

    async def create_deal(self, data: Dict[str, Any]) -> Deal:
        return self._insert(Deal, data)

    async def get_deal_by_id(self, deal_id: str) -> Optional[Deal]:
        return self._load(Deal, self._tables["deals"].get(deal_id))

    async def get_deal_by_match_id(self, match_id: str) -> Optional[Deal]:
        return self._first(Deal, match_id=match_id)

    async def get_deals_by_user_id(self, user_id: str) -> List[Deal]:
        buyer_profile_ids = {
            row["id"] for row in self._rows(BuyerProfile) if row["user_id"] == user_id
        }
        match_ids = {
            row["id"]
            for row in self._rows(Match)
            if row["seller_id"] == user_id or row["buyer_id"] in buyer_profile_ids
        }
        return [self._load(Deal, row) for row in self._rows(Deal) if row["match_id"] in match_ids]

    async def update_deal_stage(self, deal_id: str, stage: str, progress: Optional[int] = None) -> Deal:
        updates: Dict[str, Any] = {"current_stage": stage}
        if progress is not None:
            updates["stage_progress"] = progress
        return self._update(Deal, deal_id, updates)

    async def update_deal(self, deal_id: str, updates: Dict[str, Any]) -> Deal:
        return self._update(Deal, deal_id, updates)

    # ----- Documents -----

    async def create_document(self, data: Dict[str, Any]) -> Document:
        return self._insert(Document, data)

    async def get_document_by_id(self, document_id: str) -> Optional[Document]:
        return self._load(Document, self._tables["documents"].get(document_id))

    async def get_documents_by_deal_id(self, deal_id: str) -> List[Document]:
        return self._find(Document, deal_id=deal_id)

    async def update_document_analysis(
        self,
        document_id: str,
        analysis: Dict[str, Any],
        risk_flags: Optional[List[str]] = None,
        status: AnalysisStatus = AnalysisStatus.COMPLETED,
    ) -> Document:
        updates: Dict[str, Any] = {"ai_analysis_results": analysis, "ai_analysis_status": status}
        if risk_flags is not None:
            updates["risk_flags"] = risk_flags
        return self._update(Document, document_id, updates)

    # ----- Messages -----

    async def create_message(self, data: Dict[str, Any]) -> Message:
        return self._insert(Message, data)

    async def get_messages_by_deal_id(self, deal_id: str) -> List[Message]:
        messages = self._find(Message, deal_id=deal_id)
        return sorted(messages, key=lambda m: m.created_at)

    async def mark_messages_as_read(self, deal_id: str, user_id: str) -> int:
        count = 0
        for row in self._rows(Message):
            if row["deal_id"] == deal_id and row["receiver_id"] == user_id and not row["is_read"]:
                row["is_read"] = True
                count += 1
        return count

    # ----- AI insights -----

    async def create_ai_insight(self, data: Dict[str, Any]) -> AiInsight:
        return self._insert(AiInsight, data)

    async def get_ai_insights_by_entity(self, entity_type: str, entity_id: str) -> List[AiInsight]:
        return self._find(AiInsight, entity_type=entity_type, entity_id=entity_id)
