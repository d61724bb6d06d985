"""
Pytest fixtures for test infrastructure.

This module is automatically loaded by pytest and provides shared fixtures.
For skip markers and helper functions, see test_helpers.py.
"""

from types import SimpleNamespace

import pytest
import pytest_asyncio


# =============================================================================
# Global fixtures (autouse)
# =============================================================================
@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Degraded AI mode, memory storage and a throwaway upload dir for every test."""
    from src.config.settings import settings
    from src.analyst import advisor
    from src.common.broadcast import hub

    monkeypatch.setattr(settings, "anthropic_api_key", "")
    monkeypatch.setattr(settings, "storage_backend", "memory")
    monkeypatch.setattr(settings, "enforce_stage_order", True)
    monkeypatch.setattr(settings, "upload_dir", str(tmp_path / "uploads"))
    advisor.reset_clients()
    hub._topics.clear()
    yield
    advisor.reset_clients()
    hub._topics.clear()


# =============================================================================
# Shared fixtures
# =============================================================================
@pytest.fixture
def storage():
    """Fresh in-memory storage."""
    from src.archivist import MemoryStorage
    return MemoryStorage()


@pytest.fixture
def sample_business_data():
    """A seller's business listing."""
    return {
        "name": "Harbor Coffee Roasters",
        "industry": "technology",
        "description": "Specialty roaster with a subscription e-commerce platform",
        "annual_revenue": "1m-5m",
        "years_in_business": 8,
        "location": "Portland, OR",
        "selling_reason": "Retirement",
        "timeline": "6-12 months",
        "asking_price": 2_400_000,
        "employees": 14,
    }


@pytest.fixture
def sample_buyer_data():
    """A buyer's acquisition criteria."""
    return {
        "budget_range": "1m-5m",
        "preferred_industries": ["technology", "retail"],
        "experience": "first_time",
        "investment_focus": "Profitable, owner-operated businesses",
        "timeline": "0-6 months",
        "location": "Pacific Northwest",
        "acquisition_structure": ["asset_purchase", "seller_financing"],
        "has_financing": True,
    }


@pytest_asyncio.fixture
async def marketplace(storage, sample_business_data, sample_buyer_data):
    """One seller with a business and one buyer with a profile."""
    seller = await storage.upsert_user("seller-1", user_type="seller", onboarding_completed=True)
    buyer_user = await storage.upsert_user("buyer-1", user_type="buyer", onboarding_completed=True)
    business = await storage.create_business({"owner_id": seller.id, **sample_business_data})
    buyer = await storage.create_buyer_profile({"user_id": buyer_user.id, **sample_buyer_data})
    return SimpleNamespace(
        storage=storage,
        seller=seller,
        buyer_user=buyer_user,
        business=business,
        buyer=buyer,
    )
