"""Pydantic schemas: scoring inputs and API request/response bodies."""
from __future__ import annotations

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cvpa.utils import json_parse, normalize_mentions

Category = Literal["job", "pain", "gain"]
GapType = Literal["jobs", "pains", "gains"]
Severity = Literal["low", "medium", "high", "critical"]


# ---------------------------------------------------------------------------
# Scoring inputs
# ---------------------------------------------------------------------------


class MentionedItem(BaseModel):
    """One mention inside a stored list. Malformed fields fall back to defaults."""
    model_config = ConfigDict(extra="ignore")

    text: str = ""
    type: str | None = None
    severity: str | None = None
    confidence: float = 0.0

    @field_validator("text", mode="before")
    @classmethod
    def text_or_empty(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("type", "severity", mode="before")
    @classmethod
    def label_or_none(cls, v: Any) -> str | None:
        return v if isinstance(v, str) else None

    @field_validator("confidence", mode="before")
    @classmethod
    def confidence_or_zero(cls, v: Any) -> float:
        try:
            return float(v)
        except (TypeError, ValueError):
            return 0.0


class Promise(BaseModel):
    """A value-proposition claim as seen by the scoring engine."""
    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    company_id: int | None = None
    extracted_text: str
    category: str
    job_type: str | None = None
    gain_type: str | None = None
    confidence: float = 0.5
    source_type: str = ""
    source_url: str = ""


class FeedbackAnnotation(BaseModel):
    """Customer reality for one review. Mention lists are always normalised lists."""

    id: int | None = None
    company_id: int | None = None
    review_id: int | None = None
    jobs_mentioned: list[MentionedItem] = []
    pains_mentioned: list[MentionedItem] = []
    gains_mentioned: list[MentionedItem] = []
    sentiment: float | None = None
    topics: list[Any] = []
    review_text: str = ""
    rating: float | None = None
    source: str = ""
    review_date: date | None = None

    @field_validator("jobs_mentioned", "pains_mentioned", "gains_mentioned", mode="before")
    @classmethod
    def normalize(cls, v: Any) -> list[dict[str, Any]]:
        return normalize_mentions(v)

    @field_validator("topics", mode="before")
    @classmethod
    def normalize_topics(cls, v: Any) -> list[Any]:
        if isinstance(v, str):
            v = json_parse(v, [])
        return v if isinstance(v, list) else []

    def mentions(self, category: str) -> list[MentionedItem]:
        return {
            "job": self.jobs_mentioned,
            "pain": self.pains_mentioned,
            "gain": self.gains_mentioned,
        }.get(category, [])


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1)
    industry: str = Field(min_length=1)
    website_url: str = ""
    description: str = ""
    app_store_id: str = ""
    google_play_package: str = ""


class CompanyUpdate(BaseModel):
    name: str | None = None
    industry: str | None = None
    website_url: str | None = None
    description: str | None = None
    app_store_id: str | None = None
    google_play_package: str | None = None


class ValuePropositionCreate(BaseModel):
    extracted_text: str
    category: Category
    job_type: Literal["functional", "emotional", "social"] | None = None
    gain_type: Literal["required", "expected", "desired", "unexpected"] | None = None
    confidence: float = Field(0.5, ge=0, le=1)
    source_type: str = "website"
    source_url: str = ""

    @field_validator("category", "job_type", "gain_type", mode="before")
    @classmethod
    def lower(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class FeedbackCreate(BaseModel):
    jobs_mentioned: list[MentionedItem] = []
    pains_mentioned: list[MentionedItem] = []
    gains_mentioned: list[MentionedItem] = []
    sentiment: float = Field(0.5, ge=0, le=1)
    topics: list[str] = []

    @field_validator("jobs_mentioned", "pains_mentioned", "gains_mentioned", mode="before")
    @classmethod
    def normalize(cls, v: Any) -> list[dict[str, Any]]:
        return normalize_mentions(v)


class ReviewCreate(BaseModel):
    source: str = ""
    reviewer_name: str = ""
    rating: float | None = Field(None, ge=0, le=5)
    review_text: str = ""
    review_date: date | None = None
    verified: bool = False
    analysis: FeedbackCreate | None = None


class AuditCreate(BaseModel):
    time_period_start: date | None = None
    time_period_end: date | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class AuditScoreOut(BaseModel):
    id: int
    company_id: int
    audit_id: int
    audit_date: str
    overall_score: float
    jobs_score: float
    pains_score: float
    gains_score: float
    statistical_significance: float
    sample_size: int


class GapOut(BaseModel):
    id: int
    company_id: int
    audit_id: int
    gap_type: GapType
    gap_description: str
    gap_severity: Severity
    promise_text: str
    reality_text: str
    impact_score: float
    priority: int


class CompanyOut(BaseModel):
    id: int
    name: str
    industry: str
    website_url: str
    description: str
    app_store_id: str
    google_play_package: str
    created_at: str | None = None


class CompanyDetail(CompanyOut):
    value_proposition_count: int = 0
    review_count: int = 0
    latest_score: AuditScoreOut | None = None


class ValuePropositionOut(BaseModel):
    id: int
    company_id: int
    extracted_text: str
    category: str
    job_type: str | None = None
    gain_type: str | None = None
    confidence: float
    source_type: str
    source_url: str


class AuditOut(BaseModel):
    id: int
    company_id: int
    status: str
    time_period_start: str | None = None
    time_period_end: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    error_message: str = ""


class AuditDetail(AuditOut):
    score: AuditScoreOut | None = None
    gaps: list[GapOut] = []


class AuditRunResult(BaseModel):
    audit: AuditOut
    score: AuditScoreOut
    gapsCount: int


class RegenerateGapsResult(BaseModel):
    message: str
    gapsCount: int
    gaps: list[GapOut]


class ImportResult(BaseModel):
    value_propositions_imported: int
    value_propositions_skipped: int
    reviews_imported: int


class FeedbackQuote(BaseModel):
    text: str
    rating: float | None = None
    source: str = ""
    sentiment: float | None = None
    date: str | None = None


class KeyPointPromise(BaseModel):
    text: str
    source_type: str = ""
    source_url: str = ""
    job_type: str | None = None
    gain_type: str | None = None
    confidence: float


class KeyPointFeedback(BaseModel):
    mention_count: int
    mention_percentage: float
    sentiment_score: float
    quotes: list[FeedbackQuote]


class KeyPoint(BaseModel):
    promise: KeyPointPromise
    customer_feedback: KeyPointFeedback
    fulfillment_status: Literal["fulfilled", "partial", "not_fulfilled"]


class DimensionBreakdown(BaseModel):
    score: float
    key_points: list[KeyPoint]


class AuditBreakdown(BaseModel):
    audit: AuditOut
    score: AuditScoreOut | None = None
    dimensions: dict[str, DimensionBreakdown]


class ReviewSourceStats(BaseModel):
    source: str
    count: int
    verified_count: int
    avg_rating: float | None = None
    earliest_review: str | None = None
    latest_review: str | None = None


class ReviewTotals(BaseModel):
    total_reviews: int
    unique_sources: int
    overall_avg_rating: float | None = None
    total_verified: int


class LatestAuditInfo(BaseModel):
    audit_id: int
    status: str
    start_date: str | None = None
    time_period_start: str | None = None
    time_period_end: str | None = None


class DataSourcesOut(BaseModel):
    review_sources: list[ReviewSourceStats]
    latest_audit_info: LatestAuditInfo | None = None
    totals: ReviewTotals
