"""
Relational storage backed by SQLModel tables.

Every operation runs in its own session (commit on exit), matching the
no-multi-entity-transaction contract of the storage layer.
"""

import logging
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import SQLModel

from .database import get_session
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
    next_updated_at,
)
from .storage import BaseStorage, RecordNotFoundError, plain_values

logger = logging.getLogger(__name__)


class DatabaseStorage(BaseStorage):
    """Storage over PostgreSQL (asyncpg) or SQLite (aiosqlite)."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        # None = the application-wide factory from database.py
        self._session_factory = session_factory

    def _session(self):
        return get_session(self._session_factory)

    # ----- Generic helpers -----

    async def _insert(self, model: Type[SQLModel], data: Dict[str, Any]):
        async with self._session() as session:
            record = model(**plain_values(data))
            session.add(record)
            await session.flush()
            await session.refresh(record)
            return record

    async def _get(self, model: Type[SQLModel], record_id: str):
        async with self._session() as session:
            return await session.get(model, record_id)

    async def _update(self, model: Type[SQLModel], record_id: str, updates: Dict[str, Any]):
        async with self._session() as session:
            record = await session.get(model, record_id)
            if record is None:
                logger.warning(f"{model.__name__} not found for update: {record_id}")
                raise RecordNotFoundError(model.__name__, record_id)
            self._apply(record, updates)
            await session.flush()
            await session.refresh(record)
            return record

    @staticmethod
    def _apply(record: SQLModel, updates: Dict[str, Any]) -> None:
        for key, value in plain_values(updates).items():
            setattr(record, key, value)
        if hasattr(record, "updated_at"):
            record.updated_at = next_updated_at(record.updated_at)

    async def _select_all(self, stmt) -> List:
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def _select_first(self, stmt):
        async with self._session() as session:
            result = await session.execute(stmt.limit(1))
            return result.scalars().first()

    # ----- Users -----

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self._get(User, user_id)

    async def upsert_user(self, user_id: str, **fields: Any) -> User:
        async with self._session() as session:
            user = await session.get(User, user_id)
            if user is None:
                user = User(id=user_id, **plain_values(fields))
                session.add(user)
            else:
                self._apply(user, fields)
            await session.flush()
            await session.refresh(user)
            return user

    # ----- Businesses -----

    async def create_business(self, data: Dict[str, Any]) -> Business:
        return await self._insert(Business, data)

    async def get_business_by_id(self, business_id: str) -> Optional[Business]:
        return await self._get(Business, business_id)

    async def get_business_by_owner_id(self, owner_id: str) -> Optional[Business]:
        stmt = select(Business).where(Business.owner_id == owner_id).order_by(Business.created_at)
        return await self._select_first(stmt)

    async def update_business(self, business_id: str, updates: Dict[str, Any]) -> Business:
        return await self._update(Business, business_id, updates)

    async def get_businesses_by_industry(self, industry: str) -> List[Business]:
        stmt = (
            select(Business)
            .where(Business.industry == industry)
            .where(Business.is_active == True)
            .order_by(Business.created_at)
        )
        return await self._select_all(stmt)

    # ----- Buyer profiles -----

    async def create_buyer_profile(self, data: Dict[str, Any]) -> BuyerProfile:
        return await self._insert(BuyerProfile, data)

    async def get_buyer_profile_by_id(self, profile_id: str) -> Optional[BuyerProfile]:
        return await self._get(BuyerProfile, profile_id)

    async def get_buyer_profile_by_user_id(self, user_id: str) -> Optional[BuyerProfile]:
        stmt = select(BuyerProfile).where(BuyerProfile.user_id == user_id).order_by(BuyerProfile.created_at)
        return await self._select_first(stmt)

    async def update_buyer_profile(self, profile_id: str, updates: Dict[str, Any]) -> BuyerProfile:
        return await self._update(BuyerProfile, profile_id, updates)

    async def get_active_buyer_profiles(self) -> List[BuyerProfile]:
        stmt = select(BuyerProfile).where(BuyerProfile.is_active == True).order_by(BuyerProfile.created_at)
        return await self._select_all(stmt)

    # ----- Matches -----

    async def create_match(self, data: Dict[str, Any]) -> Match:
        return await self._insert(Match, data)

    async def get_match_by_id(self, match_id: str) -> Optional[Match]:
        return await self._get(Match, match_id)

    async def get_match_by_pair(self, business_id: str, buyer_id: str) -> Optional[Match]:
        stmt = (
            select(Match)
            .where(Match.business_id == business_id)
            .where(Match.buyer_id == buyer_id)
            .order_by(Match.created_at)
        )
        return await self._select_first(stmt)

    async def get_matches_for_seller(self, seller_id: str) -> List[Match]:
        stmt = select(Match).where(Match.seller_id == seller_id).order_by(Match.created_at)
        return await self._select_all(stmt)

    async def get_matches_for_buyer(self, buyer_id: str) -> List[Match]:
        stmt = select(Match).where(Match.buyer_id == buyer_id).order_by(Match.created_at)
        return await self._select_all(stmt)

    async def update_match(self, match_id: str, updates: Dict[str, Any]) -> Match:
        return await self._update(Match, match_id, updates)

    # ----- Deals -----

    async def create_deal(self, data: Dict[str, Any]) -> Deal:
        return await self._insert(Deal, data)

    async def get_deal_by_id(self, deal_id: str) -> Optional[Deal]:
        return await self._get(Deal, deal_id)

    async def get_deal_by_match_id(self, match_id: str) -> Optional[Deal]:
        return await self._select_first(select(Deal).where(Deal.match_id == match_id))

    async def get_deals_by_user_id(self, user_id: str) -> List[Deal]:
        stmt = (
            select(Deal)
            .join(Match, Match.id == Deal.match_id)
            .outerjoin(BuyerProfile, BuyerProfile.id == Match.buyer_id)
            .where(or_(Match.seller_id == user_id, BuyerProfile.user_id == user_id))
            .order_by(Deal.created_at)
        )
        return await self._select_all(stmt)

    async def update_deal_stage(self, deal_id: str, stage: str, progress: Optional[int] = None) -> Deal:
        updates: Dict[str, Any] = {"current_stage": stage}
        if progress is not None:
            updates["stage_progress"] = progress
        return await self._update(Deal, deal_id, updates)

    async def update_deal(self, deal_id: str, updates: Dict[str, Any]) -> Deal:
        return await self._update(Deal, deal_id, updates)

    # ----- Documents -----

    async def create_document(self, data: Dict[str, Any]) -> Document:
        return await self._insert(Document, data)

    async def get_document_by_id(self, document_id: str) -> Optional[Document]:
        return await self._get(Document, document_id)

    async def get_documents_by_deal_id(self, deal_id: str) -> List[Document]:
        stmt = select(Document).where(Document.deal_id == deal_id).order_by(Document.created_at)
        return await self._select_all(stmt)

    async def update_document_analysis(
        self,
        document_id: str,
        analysis: Dict[str, Any],
        risk_flags: Optional[List[str]] = None,
        status: AnalysisStatus = AnalysisStatus.COMPLETED,
    ) -> Document:
        updates: Dict[str, Any] = {"ai_analysis_results": analysis, "ai_analysis_status": status}
        if risk_flags is not None:
            updates["risk_flags"] = list(risk_flags)
        return await self._update(Document, document_id, updates)

    # ----- Messages -----

    async def create_message(self, data: Dict[str, Any]) -> Message:
        return await self._insert(Message, data)

    async def get_messages_by_deal_id(self, deal_id: str) -> List[Message]:
        stmt = select(Message).where(Message.deal_id == deal_id).order_by(Message.created_at)
        return await self._select_all(stmt)

    async def mark_messages_as_read(self, deal_id: str, user_id: str) -> int:
        async with self._session() as session:
            result = await session.execute(
                update(Message)
                .where(Message.deal_id == deal_id)
                .where(Message.receiver_id == user_id)
                .where(Message.is_read == False)
                .values(is_read=True)
            )
            return result.rowcount or 0

    # ----- AI insights -----

    async def create_ai_insight(self, data: Dict[str, Any]) -> AiInsight:
        return await self._insert(AiInsight, data)

    async def get_ai_insights_by_entity(self, entity_type: str, entity_id: str) -> List[AiInsight]:
        stmt = (
            select(AiInsight)
            .where(AiInsight.entity_type == entity_type)
            .where(AiInsight.entity_id == entity_id)
            .order_by(AiInsight.created_at)
        )
        return await self._select_all(stmt)
