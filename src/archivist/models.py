"""
Database models using SQLModel (SQLAlchemy + Pydantic).

Schema:
- User: Marketplace identity, seller or buyer
- Business: A seller's listed business (one per seller)
- BuyerProfile: A buyer's acquisition criteria (one per buyer)
- Match: Pairing of one Business with one BuyerProfile, two-sided actions
- Deal: Acquisition workflow created from a mutually accepted Match
- Document: Uploaded file with AI analysis results
- Message: Chat message between the parties of a Deal
- AiInsight: Append-only audit trail of AI outputs
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import Column, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import SQLModel, Field


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now_naive() -> datetime:
    """Return current UTC time as timezone-naive datetime.

    PostgreSQL TIMESTAMP WITHOUT TIME ZONE columns require naive datetimes.
    Using timezone-aware datetimes causes asyncpg DataError.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def next_updated_at(previous: Optional[datetime]) -> datetime:
    """Timestamp for an update, strictly later than the previous one.

    Coarse system clocks can return the same value for a create and an
    immediately following update.
    """
    now = utc_now_naive()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def new_id() -> str:
    return str(uuid.uuid4())


class UserType(str, Enum):
    SELLER = "seller"
    BUYER = "buyer"


class MatchAction(str, Enum):
    """One side's decision on a match."""
    PENDING = "pending"
    ACCEPT = "accept"
    REJECT = "reject"


class MatchStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"  # Reserved, never set by the matching protocol


class DealStage(str, Enum):
    """Acquisition workflow stages, in workflow order, then terminal states."""
    INITIAL_DISCUSSION = "initial_discussion"
    NDA_SIGNED = "nda_signed"
    FINANCIAL_REVIEW = "financial_review"
    DUE_DILIGENCE = "due_diligence"
    NEGOTIATION = "negotiation"
    CLOSING = "closing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DocumentType(str, Enum):
    FINANCIAL_STATEMENT = "financial_statement"
    TAX_RETURN = "tax_return"
    LEGAL_DOCUMENT = "legal_document"
    OPERATIONAL_DOC = "operational_doc"
    OTHER = "other"


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class MessageType(str, Enum):
    TEXT = "text"
    DOCUMENT = "document"
    SYSTEM = "system"


class EntityType(str, Enum):
    BUSINESS = "business"
    BUYER = "buyer"
    MATCH = "match"
    DEAL = "deal"


class InsightType(str, Enum):
    VALUATION = "valuation"
    RISK_ASSESSMENT = "risk_assessment"
    MARKET_ANALYSIS = "market_analysis"
    RECOMMENDATION = "recommendation"
    COMPATIBILITY = "compatibility"


class User(SQLModel, table=True):
    """A marketplace participant. Identity comes from the external auth provider."""
    __tablename__ = "users"

    id: str = Field(primary_key=True, max_length=255)
    email: Optional[str] = Field(default=None, unique=True, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)
    profile_image_url: Optional[str] = Field(default=None, max_length=500)
    user_type: Optional[str] = Field(default=None, max_length=20)  # seller | buyer
    onboarding_completed: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utc_now_naive)
    updated_at: datetime = Field(default_factory=utc_now_naive)


class Business(SQLModel, table=True):
    """A business listed for sale. Soft-deleted via is_active, never removed."""
    __tablename__ = "businesses"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    owner_id: str = Field(foreign_key="users.id", index=True)
    name: str = Field(max_length=255)
    industry: str = Field(max_length=100, index=True)
    description: Optional[str] = None
    annual_revenue: Optional[str] = Field(default=None, max_length=100)  # Revenue band, e.g. "1m-5m"
    years_in_business: Optional[int] = None
    location: Optional[str] = Field(default=None, max_length=255)
    selling_reason: Optional[str] = Field(default=None, max_length=255)
    timeline: Optional[str] = Field(default=None, max_length=100)
    asking_price: Optional[float] = None
    employees: Optional[int] = None
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utc_now_naive)
    updated_at: datetime = Field(default_factory=utc_now_naive)


class BuyerProfile(SQLModel, table=True):
    """A buyer's acquisition criteria."""
    __tablename__ = "buyer_profiles"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    user_id: str = Field(foreign_key="users.id", index=True)
    budget_range: str = Field(max_length=100)
    preferred_industries: List[str] = Field(default_factory=list, sa_column=Column(JSONType))
    experience: Optional[str] = Field(default=None, max_length=100)
    investment_focus: Optional[str] = None
    timeline: Optional[str] = Field(default=None, max_length=100)
    location: Optional[str] = Field(default=None, max_length=255)
    acquisition_structure: List[str] = Field(default_factory=list, sa_column=Column(JSONType))
    has_financing: bool = Field(default=False)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utc_now_naive)
    updated_at: datetime = Field(default_factory=utc_now_naive)


class Match(SQLModel, table=True):
    """Pairing of a Business with a BuyerProfile.

    The pairing never changes; seller_action and buyer_action are recorded
    independently and status is derived from them.
    """
    __tablename__ = "matches"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    business_id: str = Field(foreign_key="businesses.id", index=True)
    buyer_id: str = Field(foreign_key="buyer_profiles.id", index=True)
    seller_id: str = Field(foreign_key="users.id", index=True)
    status: str = Field(default=MatchStatus.PENDING.value, max_length=20)
    ai_compatibility_score: Optional[float] = None
    seller_action: str = Field(default=MatchAction.PENDING.value, max_length=20)
    buyer_action: str = Field(default=MatchAction.PENDING.value, max_length=20)
    created_at: datetime = Field(default_factory=utc_now_naive)
    updated_at: datetime = Field(default_factory=utc_now_naive)


class Deal(SQLModel, table=True):
    """Acquisition workflow for a mutually accepted Match (one deal per match)."""
    __tablename__ = "deals"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    match_id: str = Field(foreign_key="matches.id", unique=True, index=True)
    current_stage: str = Field(default=DealStage.INITIAL_DISCUSSION.value, max_length=30)
    stage_progress: int = Field(default=0)  # 0-100, caller-supplied
    estimated_value: Optional[float] = None
    notes: Optional[str] = None
    next_milestone: Optional[str] = None
    milestone_due_date: Optional[datetime] = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utc_now_naive)
    updated_at: datetime = Field(default_factory=utc_now_naive)


class Document(SQLModel, table=True):
    """An uploaded document and its AI analysis."""
    __tablename__ = "documents"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    deal_id: Optional[str] = Field(default=None, foreign_key="deals.id", index=True)
    business_id: Optional[str] = Field(default=None, foreign_key="businesses.id")
    uploader_id: str = Field(foreign_key="users.id")
    file_name: str = Field(max_length=255)
    file_type: str = Field(max_length=100)
    file_size: int
    file_path: str = Field(max_length=500)
    document_type: str = Field(max_length=30)
    ai_analysis_status: str = Field(default=AnalysisStatus.PENDING.value, max_length=20)
    ai_analysis_results: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSONType))
    risk_flags: List[str] = Field(default_factory=list, sa_column=Column(JSONType))
    created_at: datetime = Field(default_factory=utc_now_naive)
    updated_at: datetime = Field(default_factory=utc_now_naive)


class Message(SQLModel, table=True):
    """Deal chat message. Append-only apart from is_read."""
    __tablename__ = "messages"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    deal_id: str = Field(foreign_key="deals.id", index=True)
    sender_id: str = Field(foreign_key="users.id")
    receiver_id: str = Field(foreign_key="users.id", index=True)
    content: str
    message_type: str = Field(default=MessageType.TEXT.value, max_length=20)
    is_read: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utc_now_naive, index=True)


class AiInsight(SQLModel, table=True):
    """AI output tied to an entity. Append-only."""
    __tablename__ = "ai_insights"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    entity_type: str = Field(max_length=20, index=True)
    entity_id: str = Field(max_length=100, index=True)
    insight_type: str = Field(max_length=30)
    insights: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSONType))
    confidence: Optional[float] = None
    created_at: datetime = Field(default_factory=utc_now_naive)
