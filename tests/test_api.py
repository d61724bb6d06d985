"""
HTTP API tests.

Runs the FastAPI app against a fresh MemoryStorage (via dependency override)
in degraded AI mode. Callers identify themselves with X-User-Id.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from src.archivist import MemoryStorage, get_storage
from src.main import app

SELLER = {"X-User-Id": "seller-1"}
BUYER = {"X-User-Id": "buyer-1"}
STRANGER = {"X-User-Id": "stranger-1"}


@pytest.fixture
def api_storage():
    return MemoryStorage()


@pytest.fixture
def client(api_storage):
    app.dependency_overrides[get_storage] = lambda: api_storage
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def onboarded(client):
    """Seller with a technology business, buyer interested in technology."""
    seller = client.post("/api/onboarding/complete", headers=SELLER, json={
        "userType": "seller",
        "businessData": {
            "name": "Harbor Coffee Roasters",
            "industry": "technology",
            "annualRevenue": "1m-5m",
            "askingPrice": 2400000,
        },
    })
    buyer = client.post("/api/onboarding/complete", headers=BUYER, json={
        "userType": "buyer",
        "buyerData": {
            "budgetRange": "1m-5m",
            "preferredIndustries": ["technology"],
            "hasFinancing": True,
        },
    })
    assert seller.status_code == 200
    assert buyer.status_code == 200
    return seller.json()["business"], buyer.json()["buyerProfile"]


@pytest.fixture
def deal(client, onboarded):
    business, buyer = onboarded
    client.post("/api/matches/create", headers=SELLER, json={
        "businessId": business["id"], "buyerId": buyer["id"], "action": "accept",
    })
    response = client.post("/api/matches/create", headers=BUYER, json={
        "businessId": business["id"], "buyerId": buyer["id"], "action": "accept",
    })
    assert response.status_code == 200
    return response.json()["deal"]


class TestIdentityAndHealth:

    def test_missing_header_is_401(self, client):
        response = client.get("/api/auth/user")
        assert response.status_code == 401
        assert response.json()["detail"] == "Authentication required"

    def test_blank_header_is_401(self, client):
        assert client.get("/api/deals", headers={"X-User-Id": "  "}).status_code == 401

    def test_first_request_registers_user(self, client, api_storage):
        response = client.get("/api/auth/user", headers=SELLER)
        assert response.status_code == 200
        body = response.json()
        assert body["id"] == "seller-1"
        assert body["onboardingCompleted"] is False
        assert "createdAt" in body

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["storageBackend"] == "memory"
        assert body["aiConfigured"] is False


class TestOnboardingAndProfiles:

    def test_onboarding_creates_profiles(self, client, onboarded):
        business, buyer = onboarded
        assert business["ownerId"] == "seller-1"
        assert business["isActive"] is True
        assert buyer["preferredIndustries"] == ["technology"]

        user = client.get("/api/auth/user", headers=SELLER).json()
        assert user["userType"] == "seller"
        assert user["onboardingCompleted"] is True

    def test_onboarding_again_updates_existing_business(self, client, onboarded):
        business, _ = onboarded
        response = client.post("/api/onboarding/complete", headers=SELLER, json={
            "userType": "seller",
            "businessData": {"name": "Harbor Coffee Co.", "industry": "retail"},
        })
        assert response.json()["business"]["id"] == business["id"]
        assert response.json()["business"]["industry"] == "retail"

    def test_invalid_user_type_is_422(self, client):
        response = client.post("/api/onboarding/complete", headers=SELLER, json={"userType": "broker"})
        assert response.status_code == 422

    def test_profile_404_before_onboarding(self, client):
        assert client.get("/api/business/profile", headers=SELLER).status_code == 404
        assert client.get("/api/buyer/profile", headers=BUYER).status_code == 404
        assert client.put("/api/business/profile", headers=SELLER, json={"name": "x"}).status_code == 404

    def test_partial_profile_update(self, client, onboarded):
        response = client.put("/api/business/profile", headers=SELLER, json={"employees": 20})
        assert response.status_code == 200
        body = response.json()
        assert body["employees"] == 20
        assert body["name"] == "Harbor Coffee Roasters"
        assert body["id"] == onboarded[0]["id"]

        response = client.put("/api/buyer/profile", headers=BUYER, json={"timeline": "asap"})
        assert response.json()["timeline"] == "asap"
        assert response.json()["hasFinancing"] is True


class TestDiscovery:

    def test_profile_required(self, client):
        assert client.get("/api/discover/buyers", headers=SELLER).status_code == 404
        assert client.get("/api/discover/businesses", headers=BUYER).status_code == 404

    def test_feeds_in_degraded_mode(self, client, onboarded):
        business, buyer = onboarded

        buyers = client.get("/api/discover/buyers", headers=SELLER).json()
        assert [b["id"] for b in buyers] == [buyer["id"]]
        assert 60 <= buyers[0]["compatibilityScore"] <= 100
        assert buyers[0]["aiInsights"]["strengths"]

        businesses = client.get("/api/discover/businesses", headers=BUYER).json()
        assert [b["id"] for b in businesses] == [business["id"]]
        assert "compatibilityScore" in businesses[0]


class TestMatchesAndDeals:

    def test_mutual_accept_creates_one_deal(self, client, onboarded):
        business, buyer = onboarded
        pair = {"businessId": business["id"], "buyerId": buyer["id"]}

        first = client.post("/api/matches/create", headers=SELLER, json={**pair, "action": "accept"}).json()
        assert first["match"]["status"] == "pending"
        assert first["deal"] is None

        second = client.post("/api/matches/create", headers=BUYER, json={**pair, "action": "accept"}).json()
        assert second["match"]["id"] == first["match"]["id"]
        assert second["match"]["status"] == "accepted"
        assert second["deal"]["currentStage"] == "initial_discussion"
        assert second["deal"]["stageProgress"] == 10

        again = client.put(f"/api/matches/{first['match']['id']}", headers=BUYER, json={"action": "accept"})
        assert again.json()["deal"]["id"] == second["deal"]["id"]

        assert len(client.get("/api/deals", headers=SELLER).json()) == 1
        assert len(client.get("/api/deals", headers=BUYER).json()) == 1

    def test_changing_action_after_deal_is_409(self, client, deal):
        match_id = deal["matchId"]
        response = client.put(f"/api/matches/{match_id}", headers=SELLER, json={"action": "reject"})
        assert response.status_code == 409

    def test_match_errors(self, client, onboarded):
        business, buyer = onboarded
        response = client.post("/api/matches/create", headers=STRANGER, json={
            "businessId": business["id"], "buyerId": buyer["id"], "action": "accept",
        })
        assert response.status_code == 403

        response = client.post("/api/matches/create", headers=SELLER, json={
            "businessId": "missing", "buyerId": buyer["id"], "action": "accept",
        })
        assert response.status_code == 404

        response = client.post("/api/matches/create", headers=SELLER, json={
            "businessId": business["id"], "buyerId": buyer["id"], "action": "maybe",
        })
        assert response.status_code == 422

        assert client.put("/api/matches/missing", headers=SELLER, json={"action": "accept"}).status_code == 404

    def test_list_matches_for_both_sides(self, client, deal):
        assert [m["id"] for m in client.get("/api/matches", headers=SELLER).json()] == [deal["matchId"]]
        assert [m["id"] for m in client.get("/api/matches", headers=BUYER).json()] == [deal["matchId"]]
        assert client.get("/api/matches", headers=STRANGER).json() == []

    def test_deal_access(self, client, deal):
        assert client.get(f"/api/deals/{deal['id']}", headers=BUYER).status_code == 200
        assert client.get(f"/api/deals/{deal['id']}", headers=STRANGER).status_code == 403
        assert client.get("/api/deals/missing", headers=SELLER).status_code == 404

    def test_stage_update_and_timeline(self, client, deal):
        url = f"/api/deals/{deal['id']}/stage"

        response = client.put(url, headers=SELLER, json={"stage": "nda_signed", "progress": 40})
        assert response.status_code == 200
        assert response.json()["currentStage"] == "nda_signed"
        assert response.json()["stageProgress"] == 40

        stages = client.get(f"/api/deals/{deal['id']}/stages", headers=BUYER).json()
        assert [s["status"] for s in stages[:3]] == ["completed", "current", "upcoming"]

        assert client.put(url, headers=SELLER, json={"stage": "initial_discussion"}).status_code == 409
        assert client.put(url, headers=SELLER, json={"stage": "signed"}).status_code == 422
        assert client.put(url, headers=SELLER, json={"stage": "closing", "progress": 101}).status_code == 422
        assert client.put(url, headers=STRANGER, json={"stage": "closing"}).status_code == 403

    def test_update_deal_details(self, client, deal):
        response = client.put(f"/api/deals/{deal['id']}", headers=SELLER, json={
            "estimatedValue": 2100000,
            "nextMilestone": "Send LOI",
            "milestoneDueDate": "2026-11-01T17:00:00+02:00",
        })
        assert response.status_code == 200
        body = response.json()
        assert body["estimatedValue"] == 2100000
        assert body["nextMilestone"] == "Send LOI"
        assert body["milestoneDueDate"].startswith("2026-11-01T15:00:00")
        assert body["currentStage"] == "initial_discussion"


class TestDocuments:

    def test_upload_and_list(self, client, deal):
        response = client.post(
            "/api/documents/upload",
            headers=SELLER,
            data={"dealId": deal["id"], "documentType": "financial_statement"},
            files={"document": ("pnl.csv", b"month,revenue\njan,100\n", "text/csv")},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Document uploaded successfully"
        assert body["document"]["aiAnalysisStatus"] == "completed"
        assert body["document"]["documentType"] == "financial_statement"
        assert body["document"]["riskFlags"] == []
        assert "filePath" not in body["document"]

        listed = client.get(f"/api/documents/{deal['id']}", headers=BUYER).json()
        assert [d["id"] for d in listed] == [body["document"]["id"]]
        assert client.get(f"/api/documents/{deal['id']}", headers=STRANGER).status_code == 403

    def test_upload_without_file_is_400(self, client):
        response = client.post("/api/documents/upload", headers=SELLER, data={"documentType": "other"})
        assert response.status_code == 400
        assert response.json()["detail"] == "No file uploaded"

    def test_upload_too_large_is_413(self, client, monkeypatch):
        from src.config.settings import settings
        monkeypatch.setattr(settings, "max_upload_bytes", 8)

        response = client.post(
            "/api/documents/upload",
            headers=SELLER,
            files={"document": ("big.txt", b"0123456789", "text/plain")},
        )
        assert response.status_code == 413

    def _upload(self, client, headers, **form):
        return client.post(
            "/api/documents/upload",
            headers=headers,
            data={"documentType": "financial_statement", **form},
            files={"document": ("pnl.txt", b"Revenue: 1M", "text/plain")},
        )

    def test_upload_for_own_business(self, client, onboarded):
        business, _ = onboarded
        response = self._upload(client, SELLER, businessId=business["id"])
        assert response.status_code == 200
        assert response.json()["document"]["businessId"] == business["id"]

    def test_upload_for_deal_business(self, client, onboarded, deal):
        business, _ = onboarded
        response = self._upload(client, BUYER, dealId=deal["id"], businessId=business["id"])
        assert response.status_code == 200

    def test_upload_for_someone_elses_business_is_403(self, client, onboarded):
        business, _ = onboarded
        assert self._upload(client, BUYER, businessId=business["id"]).status_code == 403
        assert self._upload(client, STRANGER, businessId=business["id"]).status_code == 403

    def test_upload_for_unknown_business_is_404(self, client, onboarded):
        assert self._upload(client, SELLER, businessId="no-such-business").status_code == 404

    def test_upload_to_someone_elses_deal_is_403(self, client, deal):
        assert self._upload(client, STRANGER, dealId=deal["id"]).status_code == 403

    def test_insight_write_failure_still_returns_document(self, client, api_storage, deal, monkeypatch):
        from src.analyst import DocumentAnalysis
        from src.broker import documents

        async def fake_analysis(content, document_type, business_context=None):
            return DocumentAnalysis(summary="Stable margins", risk_flags=["Key-person risk"])

        async def broken_insight(data):
            raise RuntimeError("insight table unavailable")

        monkeypatch.setattr(documents, "analyze_document", fake_analysis)
        monkeypatch.setattr(documents, "is_configured", lambda: True)
        monkeypatch.setattr(api_storage, "create_ai_insight", broken_insight)

        response = self._upload(client, SELLER, dealId=deal["id"])

        assert response.status_code == 200
        assert response.json()["document"]["aiAnalysisStatus"] == "completed"
        listed = client.get(f"/api/documents/{deal['id']}", headers=SELLER).json()
        assert [d["aiAnalysisStatus"] for d in listed] == ["completed"]


class TestMessages:

    def test_send_list_and_mark_read(self, client, deal):
        sent = client.post("/api/messages", headers=SELLER, json={
            "dealId": deal["id"], "receiverId": "buyer-1", "content": "Hi, NDA attached",
        })
        assert sent.status_code == 200
        assert sent.json()["isRead"] is False
        assert sent.json()["messageType"] == "text"

        first_read = client.get(f"/api/messages/{deal['id']}", headers=BUYER).json()
        assert [m["content"] for m in first_read] == ["Hi, NDA attached"]
        assert first_read[0]["isRead"] is False

        second_read = client.get(f"/api/messages/{deal['id']}", headers=BUYER).json()
        assert second_read[0]["isRead"] is True

    def test_message_validation(self, client, deal):
        outsider = client.post("/api/messages", headers=SELLER, json={
            "dealId": deal["id"], "receiverId": "stranger-1", "content": "hello",
        })
        assert outsider.status_code == 422

        empty = client.post("/api/messages", headers=SELLER, json={
            "dealId": deal["id"], "receiverId": "buyer-1", "content": "",
        })
        assert empty.status_code == 422

        forbidden = client.post("/api/messages", headers=STRANGER, json={
            "dealId": deal["id"], "receiverId": "buyer-1", "content": "hello",
        })
        assert forbidden.status_code == 403


class TestAiEndpoints:

    def test_nda_template_in_degraded_mode(self, client):
        response = client.post("/api/ai/generate-nda", headers=BUYER, json={
            "businessType": "Coffee roaster", "transactionStructure": "asset purchase",
        })
        assert response.status_code == 200
        assert response.json()["nda"].startswith("NON-DISCLOSURE AGREEMENT")

    def test_nda_provider_failure_is_502(self, client, monkeypatch):
        from src import main
        from src.analyst import AnalysisError

        async def failing(business_type, transaction_structure):
            raise AnalysisError("Failed to generate NDA template")

        monkeypatch.setattr(main, "draft_nda", failing)
        response = client.post("/api/ai/generate-nda", headers=BUYER, json={
            "businessType": "Coffee roaster", "transactionStructure": "asset purchase",
        })
        assert response.status_code == 502

    def test_stage_recommendations(self, client, deal):
        response = client.get(f"/api/ai/deal-recommendations/{deal['id']}", headers=SELLER)
        assert response.status_code == 200
        assert response.json()["recommendations"][0] == "Schedule a video call"
        assert client.get(f"/api/ai/deal-recommendations/{deal['id']}", headers=STRANGER).status_code == 403



class TestInsights:
    """Insights are readable by the entity's owner and by parties to its deals."""

    @staticmethod
    def _seed(storage, entity_type, entity_id, **insights):
        asyncio.run(storage.create_ai_insight({
            "entity_type": entity_type,
            "entity_id": entity_id,
            "insight_type": "risk_assessment",
            "insights": insights,
            "confidence": 0.5,
        }))

    def test_business_insights(self, client, api_storage, onboarded):
        business, _ = onboarded
        self._seed(api_storage, "business", business["id"], summary="Healthy margins")
        url = f"/api/insights/business/{business['id']}"

        response = client.get(url, headers=SELLER)
        assert response.status_code == 200
        assert response.json()[0]["insights"] == {"summary": "Healthy margins"}
        # interested buyer without a deal sees nothing yet
        assert client.get(url, headers=BUYER).status_code == 403
        assert client.get(url, headers=STRANGER).status_code == 403

    def test_business_insights_for_deal_party(self, client, api_storage, onboarded, deal):
        business, _ = onboarded
        self._seed(api_storage, "business", business["id"], summary="Healthy margins")

        response = client.get(f"/api/insights/business/{business['id']}", headers=BUYER)
        assert response.status_code == 200
        assert len(response.json()) == 1

    def test_unknown_business_is_404(self, client):
        assert client.get("/api/insights/business/nope", headers=SELLER).status_code == 404

    def test_unknown_entity_type_is_422(self, client):
        assert client.get("/api/insights/planet/x", headers=SELLER).status_code == 422

    def test_deal_insights(self, client, api_storage, deal):
        self._seed(api_storage, "deal", deal["id"], summary="Closing checklist")
        url = f"/api/insights/deal/{deal['id']}"

        assert client.get(url, headers=SELLER).status_code == 200
        assert client.get(url, headers=BUYER).status_code == 200
        assert client.get(url, headers=STRANGER).status_code == 403

    def test_buyer_insights(self, client, api_storage, onboarded):
        _, buyer = onboarded
        self._seed(api_storage, "buyer", buyer["id"], summary="Financing in place")
        url = f"/api/insights/buyer/{buyer['id']}"

        assert client.get(url, headers=BUYER).status_code == 200
        assert client.get(url, headers=SELLER).status_code == 403

    def test_match_insights(self, client, api_storage, onboarded):
        business, buyer = onboarded
        pair = f"{business['id']}-{buyer['id']}"
        self._seed(api_storage, "match", pair, score=82)
        url = f"/api/insights/match/{pair}"

        assert client.get(url, headers=SELLER).json()[0]["insights"] == {"score": 82}
        assert client.get(url, headers=BUYER).status_code == 200
        assert client.get(url, headers=STRANGER).status_code == 403

    def test_document_findings_stay_with_deal_parties(self, client, onboarded, deal, monkeypatch):
        from src.analyst import DocumentAnalysis
        from src.broker import documents

        async def fake_analysis(content, document_type, business_context=None):
            return DocumentAnalysis(summary="Revenue down 40% YoY; owner takes $900k distributions")

        monkeypatch.setattr(documents, "analyze_document", fake_analysis)
        monkeypatch.setattr(documents, "is_configured", lambda: True)
        business, _ = onboarded

        response = client.post(
            "/api/documents/upload",
            headers=SELLER,
            data={"dealId": deal["id"], "documentType": "financial_statement"},
            files={"document": ("pnl.txt", b"Revenue: 600k", "text/plain")},
        )
        assert response.status_code == 200

        url = f"/api/insights/business/{business['id']}"
        assert client.get(f"/api/documents/{deal['id']}", headers=STRANGER).status_code == 403
        assert client.get(url, headers=STRANGER).status_code == 403

        insights = client.get(url, headers=BUYER).json()
        assert [i["insights"]["summary"] for i in insights] == [
            "Revenue down 40% YoY; owner takes $900k distributions",
        ]
