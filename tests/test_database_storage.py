"""
Tests for the SQL storage backend against an in-memory SQLite database.

The same contract as MemoryStorage: these tests focus on the parts that go
through SQL (joins, JSON columns, bulk updates, not-found on update).
"""

import pytest
import pytest_asyncio

from tests.test_helpers import skip_no_sqlite

pytestmark = [skip_no_sqlite]


@pytest_asyncio.fixture
async def db_storage():
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from sqlalchemy.pool import StaticPool
    from src.archivist import DatabaseStorage, init_db

    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield DatabaseStorage(factory)
    await engine.dispose()


@pytest_asyncio.fixture
async def seeded(db_storage, sample_business_data, sample_buyer_data):
    seller = await db_storage.upsert_user("seller-1", user_type="seller")
    buyer_user = await db_storage.upsert_user("buyer-1", user_type="buyer")
    business = await db_storage.create_business({"owner_id": seller.id, **sample_business_data})
    buyer = await db_storage.create_buyer_profile({"user_id": buyer_user.id, **sample_buyer_data})
    match = await db_storage.create_match({
        "business_id": business.id,
        "buyer_id": buyer.id,
        "seller_id": seller.id,
        "seller_action": "accept",
        "buyer_action": "accept",
        "status": "accepted",
    })
    deal = await db_storage.create_deal({"match_id": match.id, "stage_progress": 10})
    return db_storage, business, buyer, match, deal


class TestDatabaseStorage:

    @pytest.mark.asyncio
    async def test_update_business_round_trip(self, seeded):
        storage, business, *_ = seeded

        await storage.update_business(business.id, {"industry": "healthcare"})
        reloaded = await storage.get_business_by_owner_id("seller-1")

        assert reloaded.industry == "healthcare"
        assert reloaded.updated_at > business.updated_at

    @pytest.mark.asyncio
    async def test_update_missing_raises_not_found(self, db_storage):
        from src.archivist import RecordNotFoundError

        with pytest.raises(RecordNotFoundError):
            await db_storage.update_buyer_profile("missing", {"timeline": "now"})

    @pytest.mark.asyncio
    async def test_json_list_columns(self, seeded):
        storage, _, buyer, *_ = seeded

        reloaded = await storage.get_buyer_profile_by_user_id("buyer-1")
        assert reloaded.preferred_industries == ["technology", "retail"]

        updated = await storage.update_buyer_profile(buyer.id, {"preferred_industries": ["healthcare"]})
        assert updated.preferred_industries == ["healthcare"]

    @pytest.mark.asyncio
    async def test_businesses_by_industry(self, seeded):
        storage, business, *_ = seeded
        assert [b.id for b in await storage.get_businesses_by_industry("technology")] == [business.id]
        assert await storage.get_businesses_by_industry("healthcare") == []

    @pytest.mark.asyncio
    async def test_deals_by_user_id_joins_both_sides(self, seeded):
        storage, _, _, _, deal = seeded

        assert [d.id for d in await storage.get_deals_by_user_id("seller-1")] == [deal.id]
        assert [d.id for d in await storage.get_deals_by_user_id("buyer-1")] == [deal.id]
        assert await storage.get_deals_by_user_id("stranger") == []

    @pytest.mark.asyncio
    async def test_deal_stage_update(self, seeded):
        storage, _, _, match, deal = seeded

        assert (await storage.get_deal_by_match_id(match.id)).id == deal.id
        assert deal.current_stage == "initial_discussion"

        moved = await storage.update_deal_stage(deal.id, "nda_signed", 40)
        assert moved.current_stage == "nda_signed"
        assert moved.stage_progress == 40
        assert moved.updated_at > deal.updated_at

    @pytest.mark.asyncio
    async def test_mark_messages_as_read(self, seeded):
        storage, _, _, _, deal = seeded

        await storage.create_message(
            {"deal_id": deal.id, "sender_id": "seller-1", "receiver_id": "buyer-1", "content": "Hello"}
        )
        await storage.create_message(
            {"deal_id": deal.id, "sender_id": "buyer-1", "receiver_id": "seller-1", "content": "Hi"}
        )

        assert await storage.mark_messages_as_read(deal.id, "buyer-1") == 1
        assert await storage.mark_messages_as_read(deal.id, "buyer-1") == 0

        messages = await storage.get_messages_by_deal_id(deal.id)
        assert [m.content for m in messages] == ["Hello", "Hi"]
        assert [m.is_read for m in messages] == [True, False]

    @pytest.mark.asyncio
    async def test_document_analysis_json(self, seeded):
        storage, business, _, _, deal = seeded
        doc = await storage.create_document({
            "deal_id": deal.id,
            "business_id": business.id,
            "uploader_id": "seller-1",
            "file_name": "pnl.csv",
            "file_type": "text/csv",
            "file_size": 10,
            "file_path": "uploads/pnl.csv",
            "document_type": "financial_statement",
        })
        updated = await storage.update_document_analysis(
            doc.id, {"summary": "ok", "keyMetrics": {"revenue": 1}}, risk_flags=["Debt"]
        )
        assert updated.ai_analysis_results["keyMetrics"] == {"revenue": 1}
        assert updated.risk_flags == ["Debt"]
        assert [d.id for d in await storage.get_documents_by_deal_id(deal.id)] == [doc.id]

    @pytest.mark.asyncio
    async def test_ai_insights(self, db_storage):
        await db_storage.create_ai_insight({
            "entity_type": "match",
            "entity_id": "b-p",
            "insight_type": "compatibility",
            "insights": {"compatibilityScore": 72},
            "confidence": 0.72,
        })
        found = await db_storage.get_ai_insights_by_entity("match", "b-p")
        assert len(found) == 1
        assert found[0].insights["compatibilityScore"] == 72
