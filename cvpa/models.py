from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    industry: Mapped[str] = mapped_column(String(200), nullable=False)
    website_url: Mapped[str] = mapped_column(String(500), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    app_store_id: Mapped[str] = mapped_column(String(200), default="")
    google_play_package: Mapped[str] = mapped_column(String(200), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    value_propositions: Mapped[list[ValueProposition]] = relationship(
        "ValueProposition", back_populates="company", cascade="all, delete-orphan")
    reviews: Mapped[list[Review]] = relationship("Review", back_populates="company", cascade="all, delete-orphan")
    audits: Mapped[list[Audit]] = relationship("Audit", back_populates="company", cascade="all, delete-orphan")


class ValueProposition(Base):
    """A promise extracted from company-controlled text."""
    __tablename__ = "value_propositions"
    __table_args__ = (UniqueConstraint("company_id", "category", "extracted_text"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    source_type: Mapped[str] = mapped_column(String(50), default="website")
    source_url: Mapped[str] = mapped_column(String(500), default="")
    extracted_text: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(10), nullable=False)  # job | pain | gain
    job_type: Mapped[str | None] = mapped_column(String(20), nullable=True)  # functional | emotional | social
    gain_type: Mapped[str | None] = mapped_column(String(20), nullable=True)  # required | expected | desired | unexpected
    confidence: Mapped[float] = mapped_column(Float, default=0.5)
    extracted_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    company: Mapped[Company] = relationship("Company", back_populates="value_propositions")


class Review(Base):
    __tablename__ = "reviews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    source: Mapped[str] = mapped_column(String(50), default="")
    reviewer_name: Mapped[str] = mapped_column(String(300), default="")
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    review_text: Mapped[str] = mapped_column(Text, default="")
    review_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    sentiment_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    collected_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    company: Mapped[Company] = relationship("Company", back_populates="reviews")
    analysis: Mapped[FeedbackAnalysis | None] = relationship(
        "FeedbackAnalysis", back_populates="review", uselist=False, cascade="all, delete-orphan")


class FeedbackAnalysis(Base):
    """Jobs/pains/gains annotation of one customer review."""
    __tablename__ = "customer_feedback_analysis"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    review_id: Mapped[int] = mapped_column(Integer, ForeignKey("reviews.id"), nullable=False, unique=True)
    jobs_mentioned_json: Mapped[str] = mapped_column(Text, default="[]")
    pains_mentioned_json: Mapped[str] = mapped_column(Text, default="[]")
    gains_mentioned_json: Mapped[str] = mapped_column(Text, default="[]")
    sentiment: Mapped[float | None] = mapped_column(Float, nullable=True)
    topics_json: Mapped[str] = mapped_column(Text, default="[]")
    analyzed_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    review: Mapped[Review] = relationship("Review", back_populates="analysis")


class Audit(Base):
    __tablename__ = "audits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | collecting | analyzing | completed | failed
    time_period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    time_period_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    error_message: Mapped[str] = mapped_column(Text, default="")
    start_date: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    company: Mapped[Company] = relationship("Company", back_populates="audits")
    scores: Mapped[list[AuditScore]] = relationship("AuditScore", back_populates="audit", cascade="all, delete-orphan")
    gaps: Mapped[list[GapAnalysis]] = relationship("GapAnalysis", back_populates="audit", cascade="all, delete-orphan")


class AuditScore(Base):
    __tablename__ = "audit_scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    audit_id: Mapped[int] = mapped_column(Integer, ForeignKey("audits.id"), nullable=False)
    audit_date: Mapped[date] = mapped_column(Date, default=date.today)
    overall_score: Mapped[float] = mapped_column(Float, nullable=False)
    jobs_score: Mapped[float] = mapped_column(Float, nullable=False)
    pains_score: Mapped[float] = mapped_column(Float, nullable=False)
    gains_score: Mapped[float] = mapped_column(Float, nullable=False)
    statistical_significance: Mapped[float] = mapped_column(Float, nullable=False)
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    audit: Mapped[Audit] = relationship("Audit", back_populates="scores")


class GapAnalysis(Base):
    __tablename__ = "gap_analysis"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    audit_id: Mapped[int] = mapped_column(Integer, ForeignKey("audits.id"), nullable=False)
    gap_type: Mapped[str] = mapped_column(String(10), nullable=False)  # jobs | pains | gains
    gap_description: Mapped[str] = mapped_column(Text, default="")
    gap_severity: Mapped[str] = mapped_column(String(10), nullable=False)  # low | medium | high | critical
    promise_text: Mapped[str] = mapped_column(Text, default="")
    reality_text: Mapped[str] = mapped_column(Text, default="")
    impact_score: Mapped[float] = mapped_column(Float, default=0.0)
    priority: Mapped[int] = mapped_column(Integer, default=0)

    audit: Mapped[Audit] = relationship("Audit", back_populates="gaps")
