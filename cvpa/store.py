"""Data-store boundary for the scoring engine.

The scoring functions never touch SQLAlchemy directly; they receive an
:class:`AuditStore` bound to a session.  Mention lists are normalised here,
once, on the way out of the database.
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cvpa.models import Audit, AuditScore, FeedbackAnalysis, GapAnalysis, Review, ValueProposition
from cvpa.schemas import FeedbackAnnotation, Promise

log = logging.getLogger(__name__)


class CVPAError(Exception):
    """Base class for audit scoring errors."""


class PersistenceError(CVPAError):
    """A read or write against the data store failed."""


class AuditStore:
    """Reads promises and feedback, writes scores and gaps.

    Every write commits on its own, so a failed gap insert only loses that gap.
    """

    def __init__(self, session: Session):
        self.session = session

    def _commit(self, action: str) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError(f"Failed to {action}: {exc}") from exc

    # -- reads ---------------------------------------------------------------

    def list_promises(self, company_id: int) -> list[Promise]:
        rows = self.session.execute(
            select(ValueProposition)
            .where(ValueProposition.company_id == company_id)
            .order_by(ValueProposition.id)
        ).scalars().all()
        return [Promise.model_validate(r) for r in rows]

    def list_feedback(self, company_id: int) -> list[FeedbackAnnotation]:
        rows = self.session.execute(
            select(FeedbackAnalysis, Review.review_text, Review.rating, Review.source, Review.review_date)
            .join(Review, Review.id == FeedbackAnalysis.review_id)
            .where(FeedbackAnalysis.company_id == company_id)
            .order_by(FeedbackAnalysis.id)
        ).all()
        return [
            FeedbackAnnotation(
                id=fa.id, company_id=fa.company_id, review_id=fa.review_id,
                jobs_mentioned=fa.jobs_mentioned_json,
                pains_mentioned=fa.pains_mentioned_json,
                gains_mentioned=fa.gains_mentioned_json,
                sentiment=fa.sentiment, topics=fa.topics_json,
                review_text=review_text or "", rating=rating,
                source=source or "", review_date=review_date,
            )
            for fa, review_text, rating, source, review_date in rows
        ]

    def latest_audit_score(self, audit_id: int) -> AuditScore | None:
        return self.session.execute(
            select(AuditScore)
            .where(AuditScore.audit_id == audit_id)
            .order_by(AuditScore.id.desc())
            .limit(1)
        ).scalars().first()

    def list_gaps(self, audit_id: int) -> list[GapAnalysis]:
        return list(self.session.execute(
            select(GapAnalysis)
            .where(GapAnalysis.audit_id == audit_id)
            .order_by(GapAnalysis.impact_score.desc(), GapAnalysis.priority)
        ).scalars().all())

    # -- writes --------------------------------------------------------------

    def save_audit_score(self, score: AuditScore) -> AuditScore:
        self.session.add(score)
        self._commit("save audit score")
        self.session.refresh(score)
        return score

    def delete_gaps_for_audit(self, audit_id: int) -> None:
        try:
            self.session.execute(delete(GapAnalysis).where(GapAnalysis.audit_id == audit_id))
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError(f"Failed to delete gaps for audit {audit_id}: {exc}") from exc
        self._commit("delete gaps")

    def insert_gap(self, gap: GapAnalysis) -> GapAnalysis:
        self.session.add(gap)
        self._commit("insert gap")
        self.session.refresh(gap)
        return gap

    def set_audit_status(self, audit: Audit, status: str, error: str | None = None) -> Audit:
        audit.status = status
        if error is not None:
            audit.error_message = error
        if status in ("completed", "failed"):
            audit.end_date = datetime.now(UTC)
        self._commit(f"mark audit {audit.id} {status}")
        return audit
