"""
DealMatch - Main Application Entry Point

Business-acquisition marketplace backend: sellers list businesses, buyers
publish acquisition criteria, both sides swipe on AI-ranked candidates and a
mutually accepted match becomes a deal that walks a fixed stage workflow.

Caller identity is supplied by the upstream identity provider in the
X-User-Id header.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI, HTTPException, Depends, Security, File, Form, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .config import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

from .analyst import AnalysisError, CompatibilityAnalysis, draft_nda, is_configured, recommend_next_steps
from .archivist import (
    BaseStorage,
    Deal,
    DealStage,
    DocumentType,
    EntityType,
    MatchAction,
    MessageType,
    RecordNotFoundError,
    User,
    UserType,
    close_db,
    get_storage,
    init_db,
)
from .archivist.database import get_pool_status
from .broker import (
    DocumentTooLargeError,
    MatchConflictError,
    NotParticipantError,
    StageTransitionError,
    advance_deal,
    discover_businesses,
    discover_buyers,
    ingest_document,
    open_match,
    record_match_action,
    resolve_side,
    stage_timeline,
)
from .common.broadcast import publish, router as broadcast_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(f"Starting DealMatch (storage={settings.storage_backend}, ai={'on' if is_configured() else 'degraded'})")

    if settings.storage_backend == "database":
        try:
            await init_db()
            logger.info("Database tables ready")
        except Exception as e:
            logger.warning(f"Could not initialize database: {e}")

    yield

    logger.info("Shutting down...")
    if settings.storage_backend == "database":
        try:
            await close_db()
            logger.info("Database connections closed")
        except Exception as e:
            logger.warning(f"Error closing database: {e}")


app = FastAPI(
    title="DealMatch",
    description="Business acquisition marketplace with AI-assisted matching",
    version="0.1.0",
    lifespan=lifespan,
)

# GZip compression for responses > 500 bytes
app.add_middleware(GZipMiddleware, minimum_size=500)

_allowed_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
]
if settings.frontend_url:
    _allowed_origins.append(settings.frontend_url)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(broadcast_router)


# ----- Identity -----

user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)


async def current_user(
    user_id: Optional[str] = Security(user_id_header),
    storage: BaseStorage = Depends(get_storage),
) -> User:
    """Resolve the caller, creating the user record on first sight."""
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    user_id = user_id.strip()
    user = await storage.get_user(user_id)
    if user is None:
        user = await storage.upsert_user(user_id)
        logger.info(f"Registered new user {user_id}")
    return user


# ----- Base Models -----

class ApiModel(BaseModel):
    """camelCase on the wire; snake_case also accepted on input."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def _naive_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is not None and v.tzinfo is not None:
        v = v.astimezone(timezone.utc).replace(tzinfo=None)
    return v


# ----- Response Models -----

class UserResponse(ApiModel):
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    user_type: Optional[str] = None
    onboarding_completed: bool = False
    created_at: datetime
    updated_at: datetime


class BusinessResponse(ApiModel):
    id: str
    owner_id: str
    name: str
    industry: str
    description: Optional[str] = None
    annual_revenue: Optional[str] = None
    years_in_business: Optional[int] = None
    location: Optional[str] = None
    selling_reason: Optional[str] = None
    timeline: Optional[str] = None
    asking_price: Optional[float] = None
    employees: Optional[int] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class BuyerProfileResponse(ApiModel):
    id: str
    user_id: str
    budget_range: str
    preferred_industries: List[str] = []
    experience: Optional[str] = None
    investment_focus: Optional[str] = None
    timeline: Optional[str] = None
    location: Optional[str] = None
    acquisition_structure: List[str] = []
    has_financing: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime


class BusinessCandidateResponse(BusinessResponse):
    compatibility_score: int
    ai_insights: Optional[CompatibilityAnalysis] = None


class BuyerCandidateResponse(BuyerProfileResponse):
    compatibility_score: int
    ai_insights: Optional[CompatibilityAnalysis] = None


class MatchResponse(ApiModel):
    id: str
    business_id: str
    buyer_id: str
    seller_id: str
    status: str
    ai_compatibility_score: Optional[float] = None
    seller_action: str
    buyer_action: str
    created_at: datetime
    updated_at: datetime


class DealResponse(ApiModel):
    id: str
    match_id: str
    current_stage: str
    stage_progress: int
    estimated_value: Optional[float] = None
    notes: Optional[str] = None
    next_milestone: Optional[str] = None
    milestone_due_date: Optional[datetime] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class MatchResultResponse(ApiModel):
    match: MatchResponse
    deal: Optional[DealResponse] = None


class StageResponse(ApiModel):
    stage: str
    label: str
    description: str
    progress: int
    status: str


class DocumentResponse(ApiModel):
    id: str
    deal_id: Optional[str] = None
    business_id: Optional[str] = None
    uploader_id: str
    file_name: str
    file_type: str
    file_size: int
    document_type: str
    ai_analysis_status: str
    ai_analysis_results: Optional[Dict[str, Any]] = None
    risk_flags: List[str] = []
    created_at: datetime
    updated_at: datetime


class UploadResponse(ApiModel):
    document: DocumentResponse
    message: str


class MessageResponse(ApiModel):
    id: str
    deal_id: str
    sender_id: str
    receiver_id: str
    content: str
    message_type: str
    is_read: bool
    created_at: datetime


class AiInsightResponse(ApiModel):
    id: str
    entity_type: str
    entity_id: str
    insight_type: str
    insights: Dict[str, Any]
    confidence: Optional[float] = None
    created_at: datetime


class OnboardingResponse(ApiModel):
    success: bool
    user: UserResponse
    business: Optional[BusinessResponse] = None
    buyer_profile: Optional[BuyerProfileResponse] = None


class NdaResponse(ApiModel):
    nda: str


class RecommendationsResponse(ApiModel):
    recommendations: List[str]


class HealthResponse(ApiModel):
    status: str
    timestamp: datetime
    storage_backend: str
    ai_configured: bool
    pool_status: Optional[Dict[str, int]] = None


# ----- Request Models -----

class BusinessData(ApiModel):
    name: str = Field(min_length=1, max_length=255)
    industry: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    annual_revenue: Optional[str] = Field(default=None, max_length=100)
    years_in_business: Optional[int] = Field(default=None, ge=0)
    location: Optional[str] = Field(default=None, max_length=255)
    selling_reason: Optional[str] = Field(default=None, max_length=255)
    timeline: Optional[str] = Field(default=None, max_length=100)
    asking_price: Optional[float] = Field(default=None, ge=0)
    employees: Optional[int] = Field(default=None, ge=0)


class BusinessUpdate(ApiModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    industry: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    annual_revenue: Optional[str] = Field(default=None, max_length=100)
    years_in_business: Optional[int] = Field(default=None, ge=0)
    location: Optional[str] = Field(default=None, max_length=255)
    selling_reason: Optional[str] = Field(default=None, max_length=255)
    timeline: Optional[str] = Field(default=None, max_length=100)
    asking_price: Optional[float] = Field(default=None, ge=0)
    employees: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class BuyerData(ApiModel):
    budget_range: str = Field(min_length=1, max_length=100)
    preferred_industries: List[str] = []
    experience: Optional[str] = Field(default=None, max_length=100)
    investment_focus: Optional[str] = None
    timeline: Optional[str] = Field(default=None, max_length=100)
    location: Optional[str] = Field(default=None, max_length=255)
    acquisition_structure: List[str] = []
    has_financing: bool = False


class BuyerUpdate(ApiModel):
    budget_range: Optional[str] = Field(default=None, min_length=1, max_length=100)
    preferred_industries: Optional[List[str]] = None
    experience: Optional[str] = Field(default=None, max_length=100)
    investment_focus: Optional[str] = None
    timeline: Optional[str] = Field(default=None, max_length=100)
    location: Optional[str] = Field(default=None, max_length=255)
    acquisition_structure: Optional[List[str]] = None
    has_financing: Optional[bool] = None
    is_active: Optional[bool] = None


class OnboardingRequest(ApiModel):
    user_type: UserType
    business_data: Optional[BusinessData] = None
    buyer_data: Optional[BuyerData] = None


class MatchCreateRequest(ApiModel):
    business_id: str
    buyer_id: str
    action: MatchAction


class MatchUpdateRequest(ApiModel):
    action: MatchAction


class StageUpdateRequest(ApiModel):
    stage: DealStage
    progress: Optional[int] = Field(default=None, ge=0, le=100)


class DealUpdateRequest(ApiModel):
    estimated_value: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = None
    next_milestone: Optional[str] = Field(default=None, max_length=500)
    milestone_due_date: Optional[datetime] = None

    @field_validator("milestone_due_date")
    @classmethod
    def to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Columns are TIMESTAMP WITHOUT TIME ZONE."""
        return _naive_utc(v)


class MessageCreateRequest(ApiModel):
    deal_id: str
    receiver_id: str
    content: str = Field(min_length=1, max_length=10_000)
    message_type: MessageType = MessageType.TEXT


class NdaRequest(ApiModel):
    business_type: str = Field(min_length=1, max_length=200)
    transaction_structure: str = Field(min_length=1, max_length=200)


# ----- Helpers -----

async def _deal_parties(storage: BaseStorage, deal: Deal) -> Tuple[str, Optional[str]]:
    """(seller user id, buyer user id) for a deal."""
    match = await storage.get_match_by_id(deal.match_id)
    if match is None:
        return "", None
    buyer = await storage.get_buyer_profile_by_id(match.buyer_id)
    return match.seller_id, buyer.user_id if buyer else None


async def _require_deal(storage: BaseStorage, deal_id: str, user: User) -> Deal:
    """Load a deal the caller is a party to (404 / 403 otherwise)."""
    deal = await storage.get_deal_by_id(deal_id)
    if deal is None:
        raise HTTPException(status_code=404, detail=f"Deal {deal_id} not found")
    if user.id not in await _deal_parties(storage, deal):
        raise HTTPException(status_code=403, detail="Not a party to this deal")
    return deal


async def _notify_deal(storage: BaseStorage, deal: Deal, payload: dict) -> None:
    await publish(deal.id, payload)
    for party in await _deal_parties(storage, deal):
        if party:
            await publish(party, payload)


async def _require_upload_business(
    storage: BaseStorage,
    business_id: str,
    deal: Optional[Deal],
    user: User,
) -> None:
    """A document may describe the caller's own business or the business of its deal."""
    business = await storage.get_business_by_id(business_id)
    if business is None:
        raise HTTPException(status_code=404, detail=f"Business {business_id} not found")
    if business.owner_id == user.id:
        return
    if deal is not None:
        match = await storage.get_match_by_id(deal.match_id)
        if match is not None and match.business_id == business_id:
            return
    raise HTTPException(status_code=403, detail="Not allowed to upload for this business")


async def _require_insight_access(
    storage: BaseStorage,
    entity_type: EntityType,
    entity_id: str,
    user: User,
) -> None:
    """Insights are visible to the owner of the entity and to parties of its deals."""
    if entity_type == EntityType.DEAL:
        await _require_deal(storage, entity_id, user)
        return

    if entity_type == EntityType.BUYER:
        profile = await storage.get_buyer_profile_by_id(entity_id)
        if profile is None:
            raise HTTPException(status_code=404, detail=f"Buyer profile {entity_id} not found")
        if profile.user_id != user.id:
            raise HTTPException(status_code=403, detail="Not allowed to view these insights")
        return

    if entity_type == EntityType.MATCH:
        # Compatibility insights are keyed "{business_id}-{buyer_id}"
        business = await storage.get_business_by_owner_id(user.id)
        if business is not None and entity_id.startswith(f"{business.id}-"):
            return
        buyer = await storage.get_buyer_profile_by_user_id(user.id)
        if buyer is not None and entity_id.endswith(f"-{buyer.id}"):
            return
        raise HTTPException(status_code=403, detail="Not allowed to view these insights")

    business = await storage.get_business_by_id(entity_id)
    if business is None:
        raise HTTPException(status_code=404, detail=f"Business {entity_id} not found")
    if business.owner_id == user.id:
        return
    for deal in await storage.get_deals_by_user_id(user.id):
        match = await storage.get_match_by_id(deal.match_id)
        if match is not None and match.business_id == entity_id:
            return
    raise HTTPException(status_code=403, detail="Not allowed to view these insights")


def _match_result(outcome) -> MatchResultResponse:
    return MatchResultResponse(
        match=MatchResponse.model_validate(outcome.match),
        deal=DealResponse.model_validate(outcome.deal) if outcome.deal else None,
    )


# ----- Endpoints -----

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint with pool monitoring for the database backend."""
    pool_status = None
    if settings.storage_backend == "database":
        try:
            pool_status = get_pool_status()
        except Exception as e:
            logger.warning(f"Failed to get pool status: {e}")

    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        storage_backend=settings.storage_backend,
        ai_configured=is_configured(),
        pool_status=pool_status,
    )


# ----- Users & Onboarding -----

@app.get("/api/auth/user", response_model=UserResponse)
async def get_current_user(user: User = Depends(current_user)):
    return UserResponse.model_validate(user)


@app.post("/api/onboarding/complete", response_model=OnboardingResponse)
async def complete_onboarding(
    request: OnboardingRequest,
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    """
    Set the user's role and create (or refresh) their business or buyer profile.

    Re-running onboarding updates the existing profile instead of creating a second one.
    """
    try:
        user = await storage.upsert_user(
            user.id,
            user_type=request.user_type,
            onboarding_completed=True,
        )

        business = None
        buyer_profile = None

        if request.user_type == UserType.SELLER and request.business_data:
            data = request.business_data.model_dump()
            existing = await storage.get_business_by_owner_id(user.id)
            if existing:
                business = await storage.update_business(existing.id, data)
            else:
                business = await storage.create_business({"owner_id": user.id, **data})
                logger.info(f"Seller {user.id} listed business {business.id}")

        if request.user_type == UserType.BUYER and request.buyer_data:
            data = request.buyer_data.model_dump()
            existing = await storage.get_buyer_profile_by_user_id(user.id)
            if existing:
                buyer_profile = await storage.update_buyer_profile(existing.id, data)
            else:
                buyer_profile = await storage.create_buyer_profile({"user_id": user.id, **data})
                logger.info(f"Buyer {user.id} created profile {buyer_profile.id}")

        return OnboardingResponse(
            success=True,
            user=UserResponse.model_validate(user),
            business=BusinessResponse.model_validate(business) if business else None,
            buyer_profile=BuyerProfileResponse.model_validate(buyer_profile) if buyer_profile else None,
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Onboarding failed for {user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


# ----- Profiles -----

@app.get("/api/business/profile", response_model=BusinessResponse)
async def get_business_profile(
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    business = await storage.get_business_by_owner_id(user.id)
    if business is None:
        raise HTTPException(status_code=404, detail="Business not found")
    return BusinessResponse.model_validate(business)


@app.put("/api/business/profile", response_model=BusinessResponse)
async def update_business_profile(
    request: BusinessUpdate,
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    """Update the caller's business. Only provided fields change."""
    try:
        business = await storage.get_business_by_owner_id(user.id)
        if business is None:
            raise HTTPException(status_code=404, detail="Business not found")

        updated = await storage.update_business(business.id, request.model_dump(exclude_unset=True))
        return BusinessResponse.model_validate(updated)

    except HTTPException:
        raise
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Business not found")
    except Exception as e:
        logger.error(f"Failed to update business for {user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/buyer/profile", response_model=BuyerProfileResponse)
async def get_buyer_profile(
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    profile = await storage.get_buyer_profile_by_user_id(user.id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Buyer profile not found")
    return BuyerProfileResponse.model_validate(profile)


@app.put("/api/buyer/profile", response_model=BuyerProfileResponse)
async def update_buyer_profile(
    request: BuyerUpdate,
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    """Update the caller's buyer profile. Only provided fields change."""
    try:
        profile = await storage.get_buyer_profile_by_user_id(user.id)
        if profile is None:
            raise HTTPException(status_code=404, detail="Buyer profile not found")

        updated = await storage.update_buyer_profile(profile.id, request.model_dump(exclude_unset=True))
        return BuyerProfileResponse.model_validate(updated)

    except HTTPException:
        raise
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Buyer profile not found")
    except Exception as e:
        logger.error(f"Failed to update buyer profile for {user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


# ----- Discovery -----

@app.get("/api/discover/buyers", response_model=List[BuyerCandidateResponse])
async def discover_buyers_endpoint(
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    """Active buyers ranked by compatibility with the caller's business."""
    try:
        business = await storage.get_business_by_owner_id(user.id)
        if business is None:
            raise HTTPException(status_code=404, detail="Business profile required")

        candidates = await discover_buyers(storage, business)
        return [
            BuyerCandidateResponse(
                **BuyerProfileResponse.model_validate(c.record).model_dump(),
                compatibility_score=c.score,
                ai_insights=c.analysis,
            )
            for c in candidates
        ]

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Buyer discovery failed for {user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/discover/businesses", response_model=List[BusinessCandidateResponse])
async def discover_businesses_endpoint(
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    """Businesses in the caller's preferred industries, ranked by compatibility."""
    try:
        buyer = await storage.get_buyer_profile_by_user_id(user.id)
        if buyer is None:
            raise HTTPException(status_code=404, detail="Buyer profile required")

        candidates = await discover_businesses(storage, buyer)
        return [
            BusinessCandidateResponse(
                **BusinessResponse.model_validate(c.record).model_dump(),
                compatibility_score=c.score,
                ai_insights=c.analysis,
            )
            for c in candidates
        ]

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Business discovery failed for {user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


# ----- Matches -----

@app.post("/api/matches/create", response_model=MatchResultResponse)
async def create_match_endpoint(
    request: MatchCreateRequest,
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    """
    Record the caller's action on a business/buyer pairing.

    The caller must own the business (seller side) or the buyer profile
    (buyer side). Returns the deal when this action completes mutual acceptance.
    """
    try:
        outcome = await open_match(storage, user.id, request.business_id, request.buyer_id, request.action)
        return _match_result(outcome)

    except HTTPException:
        raise
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NotParticipantError:
        raise HTTPException(status_code=403, detail="Not a party to this match")
    except MatchConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to create match for {user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/matches", response_model=List[MatchResponse])
async def list_matches(
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    """Matches where the caller is the seller or owns the buyer profile."""
    matches = list(await storage.get_matches_for_seller(user.id))
    buyer = await storage.get_buyer_profile_by_user_id(user.id)
    if buyer is not None:
        seen = {m.id for m in matches}
        matches.extend(m for m in await storage.get_matches_for_buyer(buyer.id) if m.id not in seen)
    return [MatchResponse.model_validate(m) for m in matches]


@app.put("/api/matches/{match_id}", response_model=MatchResultResponse)
async def update_match_endpoint(
    match_id: str,
    request: MatchUpdateRequest,
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    """Record the caller's action on an existing match."""
    try:
        match = await storage.get_match_by_id(match_id)
        if match is None:
            raise HTTPException(status_code=404, detail=f"Match {match_id} not found")

        side = await resolve_side(storage, match, user.id)
        outcome = await record_match_action(storage, match, side, request.action)
        return _match_result(outcome)

    except HTTPException:
        raise
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail=f"Match {match_id} not found")
    except NotParticipantError:
        raise HTTPException(status_code=403, detail="Not a party to this match")
    except MatchConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to update match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


# ----- Deals -----

@app.get("/api/deals", response_model=List[DealResponse])
async def list_deals(
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    deals = await storage.get_deals_by_user_id(user.id)
    return [DealResponse.model_validate(d) for d in deals]


@app.get("/api/deals/{deal_id}", response_model=DealResponse)
async def get_deal(
    deal_id: str,
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    deal = await _require_deal(storage, deal_id, user)
    return DealResponse.model_validate(deal)


@app.get("/api/deals/{deal_id}/stages", response_model=List[StageResponse])
async def get_deal_stages(
    deal_id: str,
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    """Workflow stages with completed/current/upcoming status for this deal."""
    deal = await _require_deal(storage, deal_id, user)
    return [StageResponse(**entry) for entry in stage_timeline(deal.current_stage)]


@app.put("/api/deals/{deal_id}/stage", response_model=DealResponse)
async def update_deal_stage(
    deal_id: str,
    request: StageUpdateRequest,
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    """
    Move a deal to a stage, optionally setting progress.

    Backwards moves and moves out of completed/cancelled are rejected while
    settings.enforce_stage_order is on.
    """
    try:
        deal = await _require_deal(storage, deal_id, user)
        updated = await advance_deal(storage, deal, request.stage, request.progress)

        await _notify_deal(storage, updated, {
            "type": "deal_stage_changed",
            "dealId": updated.id,
            "stage": updated.current_stage,
            "progress": updated.stage_progress,
        })
        return DealResponse.model_validate(updated)

    except HTTPException:
        raise
    except StageTransitionError as e:
        logger.warning(f"Rejected stage change on deal {deal_id}: {e}")
        raise HTTPException(status_code=409, detail=str(e))
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail=f"Deal {deal_id} not found")
    except Exception as e:
        logger.error(f"Failed to update stage for deal {deal_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@app.put("/api/deals/{deal_id}", response_model=DealResponse)
async def update_deal_details(
    deal_id: str,
    request: DealUpdateRequest,
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    """Update valuation, notes and milestone. Stage changes go through /stage."""
    try:
        await _require_deal(storage, deal_id, user)
        updated = await storage.update_deal(deal_id, request.model_dump(exclude_unset=True))
        return DealResponse.model_validate(updated)

    except HTTPException:
        raise
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail=f"Deal {deal_id} not found")
    except Exception as e:
        logger.error(f"Failed to update deal {deal_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


# ----- Documents -----

@app.post("/api/documents/upload", response_model=UploadResponse)
async def upload_document(
    document: Optional[UploadFile] = File(default=None),
    deal_id: Optional[str] = Form(default=None, alias="dealId"),
    business_id: Optional[str] = Form(default=None, alias="businessId"),
    document_type: DocumentType = Form(default=DocumentType.OTHER, alias="documentType"),
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    """
    Upload a document and analyze it before responding.

    The returned document is "completed" (including the placeholder analysis
    when AI is not configured) or "failed" if the provider errored.
    """
    try:
        if document is None or not document.filename:
            raise HTTPException(status_code=400, detail="No file uploaded")

        deal_id = deal_id or None
        business_id = business_id or None
        deal = await _require_deal(storage, deal_id, user) if deal_id else None
        if business_id:
            await _require_upload_business(storage, business_id, deal, user)

        data = await document.read(settings.max_upload_bytes + 1)
        stored = await ingest_document(
            storage,
            uploader_id=user.id,
            file_name=document.filename,
            file_type=document.content_type or "application/octet-stream",
            data=data,
            document_type=document_type,
            deal_id=deal_id,
            business_id=business_id,
        )
        return UploadResponse(
            document=DocumentResponse.model_validate(stored),
            message="Document uploaded successfully",
        )

    except HTTPException:
        raise
    except DocumentTooLargeError as e:
        raise HTTPException(status_code=413, detail=str(e))
    except Exception as e:
        logger.error(f"Document upload failed for {user.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/documents/{deal_id}", response_model=List[DocumentResponse])
async def list_documents(
    deal_id: str,
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    await _require_deal(storage, deal_id, user)
    documents = await storage.get_documents_by_deal_id(deal_id)
    return [DocumentResponse.model_validate(d) for d in documents]


# ----- Messages -----

@app.get("/api/messages/{deal_id}", response_model=List[MessageResponse])
async def list_messages(
    deal_id: str,
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    """Deal messages, oldest first. Marks the caller's received messages read."""
    await _require_deal(storage, deal_id, user)
    messages = await storage.get_messages_by_deal_id(deal_id)
    marked = await storage.mark_messages_as_read(deal_id, user.id)
    if marked:
        logger.debug(f"Marked {marked} messages read in deal {deal_id} for {user.id}")
    return [MessageResponse.model_validate(m) for m in messages]


@app.post("/api/messages", response_model=MessageResponse)
async def send_message(
    request: MessageCreateRequest,
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    try:
        deal = await _require_deal(storage, request.deal_id, user)
        if request.receiver_id not in await _deal_parties(storage, deal):
            raise HTTPException(status_code=422, detail="Receiver is not a party to this deal")

        message = await storage.create_message({
            "deal_id": deal.id,
            "sender_id": user.id,
            "receiver_id": request.receiver_id,
            "content": request.content,
            "message_type": request.message_type,
        })

        payload = {"type": "new_message", "dealId": deal.id, "messageId": message.id}
        await publish(deal.id, payload)
        await publish(request.receiver_id, payload)
        return MessageResponse.model_validate(message)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to send message in deal {request.deal_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


# ----- AI -----

@app.post("/api/ai/generate-nda", response_model=NdaResponse)
async def generate_nda(
    request: NdaRequest,
    user: User = Depends(current_user),
):
    try:
        nda = await draft_nda(request.business_type, request.transaction_structure)
        return NdaResponse(nda=nda)
    except AnalysisError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except Exception as e:
        logger.error(f"NDA generation failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/ai/deal-recommendations/{deal_id}", response_model=RecommendationsResponse)
async def deal_recommendations(
    deal_id: str,
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    try:
        deal = await _require_deal(storage, deal_id, user)
        recommendations = await recommend_next_steps(deal, deal.current_stage)
        return RecommendationsResponse(recommendations=recommendations)

    except HTTPException:
        raise
    except AnalysisError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except Exception as e:
        logger.error(f"Recommendations failed for deal {deal_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/insights/{entity_type}/{entity_id}", response_model=List[AiInsightResponse])
async def list_insights(
    entity_type: EntityType,
    entity_id: str,
    user: User = Depends(current_user),
    storage: BaseStorage = Depends(get_storage),
):
    """Recorded AI outputs for an entity, oldest first. Owners and deal parties only."""
    await _require_insight_access(storage, entity_type, entity_id, user)
    insights = await storage.get_ai_insights_by_entity(entity_type.value, entity_id)
    return [AiInsightResponse.model_validate(i) for i in insights]


# ----- CLI Runner -----

def run_server():
    """Run the FastAPI server."""
    import uvicorn
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )


if __name__ == "__main__":
    run_server()
