"""Shared business logic for the CVPA API, MCP server and scripts."""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from cvpa import scorer
from cvpa.models import Audit, AuditScore, Company, FeedbackAnalysis, GapAnalysis, Review, ValueProposition
from cvpa.schemas import FeedbackAnnotation, Promise, ReviewCreate, ValuePropositionCreate
from cvpa.store import AuditStore, CVPAError, PersistenceError

log = logging.getLogger(__name__)

MIN_PROPOSITION_LENGTH = 15


class NoFeedbackError(CVPAError):
    """The company has no customer feedback to score against."""


class ComputationError(CVPAError):
    """Scoring or gap computation failed unexpectedly."""


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def company_summary(company: Company) -> dict:
    return {
        "id": company.id, "name": company.name, "industry": company.industry,
        "website_url": company.website_url, "description": company.description,
        "app_store_id": company.app_store_id,
        "google_play_package": company.google_play_package,
        "created_at": _iso(company.created_at),
    }


def score_dict(score: AuditScore | None) -> dict | None:
    if score is None:
        return None
    return {
        "id": score.id, "company_id": score.company_id, "audit_id": score.audit_id,
        "audit_date": _iso(score.audit_date),
        "overall_score": score.overall_score, "jobs_score": score.jobs_score,
        "pains_score": score.pains_score, "gains_score": score.gains_score,
        "statistical_significance": score.statistical_significance,
        "sample_size": score.sample_size,
    }


def gap_dict(gap: GapAnalysis) -> dict:
    return {
        "id": gap.id, "company_id": gap.company_id, "audit_id": gap.audit_id,
        "gap_type": gap.gap_type, "gap_description": gap.gap_description,
        "gap_severity": gap.gap_severity, "promise_text": gap.promise_text,
        "reality_text": gap.reality_text, "impact_score": gap.impact_score,
        "priority": gap.priority,
    }


def audit_summary(audit: Audit) -> dict:
    return {
        "id": audit.id, "company_id": audit.company_id, "status": audit.status,
        "time_period_start": _iso(audit.time_period_start),
        "time_period_end": _iso(audit.time_period_end),
        "start_date": _iso(audit.start_date), "end_date": _iso(audit.end_date),
        "error_message": audit.error_message or "",
    }


def proposition_summary(vp: ValueProposition) -> dict:
    return {
        "id": vp.id, "company_id": vp.company_id, "extracted_text": vp.extracted_text,
        "category": vp.category, "job_type": vp.job_type, "gain_type": vp.gain_type,
        "confidence": vp.confidence, "source_type": vp.source_type,
        "source_url": vp.source_url,
    }


def latest_company_score(session: Session, company_id: int) -> AuditScore | None:
    return session.execute(
        select(AuditScore)
        .where(AuditScore.company_id == company_id)
        .order_by(AuditScore.id.desc())
        .limit(1)
    ).scalars().first()


def company_detail(session: Session, company: Company) -> dict:
    base = company_summary(company)
    base["value_proposition_count"] = session.execute(
        select(func.count()).select_from(ValueProposition).where(ValueProposition.company_id == company.id)
    ).scalar_one()
    base["review_count"] = session.execute(
        select(func.count()).select_from(Review).where(Review.company_id == company.id)
    ).scalar_one()
    base["latest_score"] = score_dict(latest_company_score(session, company.id))
    return base


def audit_detail(store: AuditStore, audit: Audit) -> dict:
    base = audit_summary(audit)
    base["score"] = score_dict(store.latest_audit_score(audit.id))
    base["gaps"] = [gap_dict(g) for g in store.list_gaps(audit.id)]
    return base


def get_entity(session: Session, model, entity_id: int):
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def get_company_audit(session: Session, company_id: int, audit_id: int) -> Audit | None:
    return session.execute(
        select(Audit).where(Audit.id == audit_id, Audit.company_id == company_id)
    ).scalars().first()


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


def import_value_propositions(
    session: Session, company_id: int, items: list[ValuePropositionCreate],
) -> tuple[list[ValueProposition], int]:
    """Insert new promises, skipping short texts and exact duplicates.

    Returns ``(created, skipped)``. Caller must commit.
    """
    existing = {
        (vp.category, vp.extracted_text)
        for vp in session.execute(
            select(ValueProposition).where(ValueProposition.company_id == company_id)
        ).scalars()
    }
    created: list[ValueProposition] = []
    skipped = 0
    for item in items:
        text = item.extracted_text.strip()
        key = (item.category, text)
        if len(text) < MIN_PROPOSITION_LENGTH or key in existing:
            skipped += 1
            continue
        existing.add(key)
        vp = ValueProposition(
            company_id=company_id, extracted_text=text, category=item.category,
            job_type=item.job_type, gain_type=item.gain_type, confidence=item.confidence,
            source_type=item.source_type, source_url=item.source_url,
        )
        session.add(vp)
        created.append(vp)
    return created, skipped


def import_reviews(session: Session, company_id: int, items: list[ReviewCreate]) -> list[Review]:
    """Insert reviews and their feedback annotations. Caller must commit."""
    created: list[Review] = []
    for item in items:
        review = Review(
            company_id=company_id, source=item.source, reviewer_name=item.reviewer_name,
            rating=item.rating, review_text=item.review_text, review_date=item.review_date,
            verified=item.verified,
        )
        if item.analysis is not None:
            a = item.analysis
            review.sentiment_score = a.sentiment
            review.analysis = FeedbackAnalysis(
                company_id=company_id,
                jobs_mentioned_json=json.dumps([m.model_dump() for m in a.jobs_mentioned]),
                pains_mentioned_json=json.dumps([m.model_dump() for m in a.pains_mentioned]),
                gains_mentioned_json=json.dumps([m.model_dump() for m in a.gains_mentioned]),
                sentiment=a.sentiment,
                topics_json=json.dumps(a.topics),
            )
        session.add(review)
        created.append(review)
    return created


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def calculate_scores(store: AuditStore, company_id: int, audit_id: int) -> AuditScore:
    """Score a company's promises against its feedback and persist the result.

    Raises:
        NoFeedbackError: the company has no feedback annotations.
        PersistenceError: the score could not be saved.
    """
    promises = store.list_promises(company_id)
    feedback = store.list_feedback(company_id)
    if not feedback:
        raise NoFeedbackError("No customer feedback available for scoring")

    score = scorer.build_audit_score(promises, feedback, company_id, audit_id)
    saved = store.save_audit_score(score)
    log.info(
        "Audit %s scored: overall=%.1f jobs=%.1f pains=%.1f gains=%.1f (n=%d)",
        audit_id, saved.overall_score, saved.jobs_score, saved.pains_score,
        saved.gains_score, saved.sample_size,
    )
    return saved


def _compute_gaps(
    store: AuditStore, company_id: int, audit_id: int, score: AuditScore | None,
) -> list[GapAnalysis]:
    try:
        promises = store.list_promises(company_id)
        feedback = store.list_feedback(company_id)
        log.info("Gap identification for audit %s: %d promises, %d feedback items",
                 audit_id, len(promises), len(feedback))
        gaps = scorer.build_score_gaps(score, company_id, audit_id)
        gaps += scorer.build_promise_gaps(
            promises, feedback, company_id, audit_id, first_priority=len(gaps) + 1,
        )
    except Exception as exc:
        raise ComputationError(f"Gap computation failed for audit {audit_id}: {exc}") from exc
    return gaps


def identify_gaps(store: AuditStore, company_id: int, audit_id: int) -> list[GapAnalysis]:
    """Recompute and replace the gaps of an audit.

    Never raises: failures are logged and produce an empty list. A failed
    insert only drops that one gap.
    """
    score = None
    try:
        score = store.latest_audit_score(audit_id)
        gaps = _compute_gaps(store, company_id, audit_id, score)
        store.delete_gaps_for_audit(audit_id)

        inserted: list[GapAnalysis] = []
        for gap in gaps:
            try:
                inserted.append(store.insert_gap(gap))
            except PersistenceError as exc:
                log.warning("Skipping gap %r for audit %s: %s", gap.gap_description, audit_id, exc)

        log.info("Saved %d of %d gaps for audit %s", len(inserted), len(gaps), audit_id)
        if not inserted:
            log.warning("No gaps created for audit %s (scores: %s)", audit_id, _score_context(score))
        return inserted
    except Exception:
        log.exception("Gap identification failed for audit %s, company %s (scores: %s)",
                      audit_id, company_id, _score_context(score))
        return []


def _score_context(score: AuditScore | None) -> str:
    if score is None:
        return "none"
    return f"jobs={score.jobs_score:.1f} pains={score.pains_score:.1f} gains={score.gains_score:.1f}"


# ---------------------------------------------------------------------------
# Audit pipeline
# ---------------------------------------------------------------------------


def create_audit(session: Session, company_id: int, time_period_start=None, time_period_end=None) -> Audit:
    """Create a pending audit (caller must commit)."""
    audit = Audit(
        company_id=company_id, status="pending",
        time_period_start=time_period_start, time_period_end=time_period_end,
    )
    session.add(audit)
    return audit


def run_audit(store: AuditStore, audit: Audit) -> tuple[AuditScore, list[GapAnalysis]]:
    """Score an audit, then identify its gaps.

    A scoring failure marks the audit failed and raises a ``CVPAError``;
    unexpected errors are wrapped in ``ComputationError``.
    """
    store.set_audit_status(audit, "analyzing")
    try:
        score = calculate_scores(store, audit.company_id, audit.id)
    except Exception as exc:
        log.exception("Audit %s failed", audit.id)
        store.session.rollback()
        store.set_audit_status(audit, "failed", error=str(exc))
        if isinstance(exc, CVPAError):
            raise
        raise ComputationError(f"Scoring failed for audit {audit.id}: {exc}") from exc
    gaps = identify_gaps(store, audit.company_id, audit.id)
    store.set_audit_status(audit, "completed")
    return score, gaps


def regenerate_gaps(store: AuditStore, company_id: int, audit_id: int) -> list[GapAnalysis]:
    return identify_gaps(store, company_id, audit_id)


def latest_completed_audit(session: Session) -> Audit | None:
    return session.execute(
        select(Audit).where(Audit.status == "completed").order_by(Audit.id.desc()).limit(1)
    ).scalars().first()


# ---------------------------------------------------------------------------
# Audit breakdown & data sources
# ---------------------------------------------------------------------------

KEY_POINTS_PER_DIMENSION = 5
MIN_KEY_POINTS = 3  # fewer promises than this get a generic point for a low score
QUOTES_PER_POINT = 5
FALLBACK_QUOTES = 3

# (category, response key, score attribute, generic promise wording)
_BREAKDOWN_DIMENSIONS = (
    ("job", "jobs_fulfillment", "jobs_score", "specific jobs to be done"),
    ("pain", "pain_relief", "pains_score", "pain relief"),
    ("gain", "gain_achievement", "gains_score", "customer gains"),
)


def _quote(f: FeedbackAnnotation) -> dict:
    return {
        "text": f.review_text, "rating": f.rating, "source": f.source,
        "sentiment": f.sentiment, "date": _iso(f.review_date),
    }


def _key_point(promise: Promise, feedback: list[FeedbackAnnotation], category: str) -> dict:
    stats = scorer.compute_promise_stats(promise, feedback, category)
    return {
        "promise": {
            "text": promise.extracted_text, "source_type": promise.source_type,
            "source_url": promise.source_url, "job_type": promise.job_type,
            "gain_type": promise.gain_type, "confidence": promise.confidence,
        },
        "customer_feedback": {
            "mention_count": stats.mention_count,
            "mention_percentage": stats.mention_percentage,
            "sentiment_score": stats.average_sentiment,
            "quotes": [_quote(f) for f in stats.matching_feedback[:QUOTES_PER_POINT]],
        },
        "fulfillment_status": scorer.fulfillment_status(stats.mention_percentage),
    }


def _generic_point(wording: str, feedback: list[FeedbackAnnotation]) -> dict:
    return {
        "promise": {
            "text": f"Company promises to deliver {wording}", "source_type": "general",
            "source_url": "", "job_type": None, "gain_type": None, "confidence": 0.8,
        },
        "customer_feedback": {
            "mention_count": 0,
            "mention_percentage": 0.0,
            "sentiment_score": scorer.NEUTRAL_SENTIMENT,
            "quotes": [_quote(f) for f in feedback[:FALLBACK_QUOTES]],
        },
        "fulfillment_status": "not_fulfilled",
    }


def audit_breakdown(store: AuditStore, audit: Audit) -> dict:
    """Per-dimension view of an audit: the most confident promises with customer quotes.

    Each dimension lists up to five promises by confidence. A dimension with
    fewer than three promises and a score below the gap threshold also gets a
    generic point quoting the first reviews.
    """
    score = store.latest_audit_score(audit.id)
    promises = store.list_promises(audit.company_id)
    feedback = store.list_feedback(audit.company_id)

    dimensions: dict[str, dict] = {}
    for category, key, attr, wording in _BREAKDOWN_DIMENSIONS:
        top = sorted(
            (p for p in promises if p.category == category), key=lambda p: -p.confidence,
        )[:KEY_POINTS_PER_DIMENSION]
        points = [_key_point(p, feedback, category) for p in top]
        dimension_score = getattr(score, attr) if score is not None else 0.0
        if (len(points) < MIN_KEY_POINTS and score is not None and feedback
                and dimension_score < scorer.SCORE_GAP_THRESHOLD):
            points.append(_generic_point(wording, feedback))
        dimensions[key] = {"score": dimension_score, "key_points": points[:KEY_POINTS_PER_DIMENSION]}

    return {"audit": audit_summary(audit), "score": score_dict(score), "dimensions": dimensions}


def _avg_rating(value) -> float | None:
    return round(float(value), 1) if value is not None else None


def data_source_stats(session: Session, company_id: int) -> dict:
    """Review counts per source, overall totals and the latest audit's period."""
    verified = func.sum(case((Review.verified, 1), else_=0))
    rows = session.execute(
        select(
            Review.source, func.count(Review.id), verified, func.avg(Review.rating),
            func.min(Review.review_date), func.max(Review.review_date),
        )
        .where(Review.company_id == company_id)
        .group_by(Review.source)
        .order_by(func.count(Review.id).desc(), Review.source)
    ).all()
    overall_avg = session.execute(
        select(func.avg(Review.rating)).where(Review.company_id == company_id)
    ).scalar()
    latest = session.execute(
        select(Audit).where(Audit.company_id == company_id).order_by(Audit.id.desc()).limit(1)
    ).scalars().first()

    sources = [
        {
            "source": source or "", "count": count, "verified_count": int(verified_count or 0),
            "avg_rating": _avg_rating(avg_rating),
            "earliest_review": _iso(earliest), "latest_review": _iso(latest_date),
        }
        for source, count, verified_count, avg_rating, earliest, latest_date in rows
    ]
    return {
        "review_sources": sources,
        "latest_audit_info": {
            "audit_id": latest.id, "status": latest.status,
            "start_date": _iso(latest.start_date),
            "time_period_start": _iso(latest.time_period_start),
            "time_period_end": _iso(latest.time_period_end),
        } if latest is not None else None,
        "totals": {
            "total_reviews": sum(s["count"] for s in sources),
            "unique_sources": len(sources),
            "overall_avg_rating": _avg_rating(overall_avg),
            "total_verified": sum(s["verified_count"] for s in sources),
        },
    }


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)
