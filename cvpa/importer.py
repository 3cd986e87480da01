from __future__ import annotations

import logging
from datetime import date, datetime
from pathlib import Path

import openpyxl
from pydantic import ValidationError
from sqlalchemy.orm import Session

from cvpa import services
from cvpa.schemas import FeedbackCreate, ImportResult, ReviewCreate, ValuePropositionCreate

log = logging.getLogger(__name__)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _col(row: tuple, idx: int | None) -> object:
    """Safely get a column value from a row tuple."""
    if idx is None:
        return None
    return row[idx] if idx < len(row) else None


def _f(value: object) -> float | None:
    """Safely coerce cell value to float, None if missing."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def _b(value: object) -> bool:
    """Safely coerce cell value to bool."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


def _d(value: object) -> date | None:
    """Safely coerce cell value to a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(_s(value)) if value else None
    except ValueError:
        return None


def _header_index(header: tuple) -> dict[str, int]:
    return {_s(name).lower(): idx for idx, name in enumerate(header) if _s(name)}


# ---------------------------------------------------------------------------
# Sheet parsers
# ---------------------------------------------------------------------------


def _parse_propositions_sheet(ws) -> tuple[list[ValuePropositionCreate], int]:
    """Parse the value propositions sheet (1 header row). Returns (items, invalid_count)."""
    rows = list(ws.iter_rows(values_only=True))
    if not rows:
        return [], 0
    cols = _header_index(rows[0])
    items: list[ValuePropositionCreate] = []
    invalid = 0
    for row in rows[1:]:
        if not row or not _s(_col(row, cols.get("extracted_text"))):
            continue
        data = {
            "extracted_text": _s(_col(row, cols.get("extracted_text"))),
            "category": _s(_col(row, cols.get("category"))),
            "job_type": _s(_col(row, cols.get("job_type"))) or None,
            "gain_type": _s(_col(row, cols.get("gain_type"))) or None,
            "source_type": _s(_col(row, cols.get("source_type"))) or "website",
            "source_url": _s(_col(row, cols.get("source_url"))),
        }
        confidence = _f(_col(row, cols.get("confidence")))
        if confidence is not None:
            data["confidence"] = confidence
        try:
            items.append(ValuePropositionCreate(**data))
        except ValidationError as exc:
            log.warning("Skipping invalid value proposition %r: %s", data["extracted_text"][:60], exc)
            invalid += 1
    return items, invalid


def _parse_reviews_sheet(ws) -> list[ReviewCreate]:
    """Parse the reviews sheet; mention columns hold JSON text."""
    rows = list(ws.iter_rows(values_only=True))
    if not rows:
        return []
    cols = _header_index(rows[0])
    items: list[ReviewCreate] = []
    for row in rows[1:]:
        text = _s(_col(row, cols.get("review_text"))) if row else ""
        if not text:
            continue
        sentiment = _f(_col(row, cols.get("sentiment")))
        analysis = None
        if sentiment is not None:
            try:
                analysis = FeedbackCreate(
                    jobs_mentioned=_s(_col(row, cols.get("jobs_mentioned"))),
                    pains_mentioned=_s(_col(row, cols.get("pains_mentioned"))),
                    gains_mentioned=_s(_col(row, cols.get("gains_mentioned"))),
                    sentiment=sentiment,
                    topics=[t.strip() for t in _s(_col(row, cols.get("topics"))).split(",") if t.strip()],
                )
            except ValidationError as exc:
                log.warning("Review without usable annotation %r: %s", text[:60], exc)
        rating = _f(_col(row, cols.get("rating")))
        try:
            items.append(ReviewCreate(
                source=_s(_col(row, cols.get("source"))),
                reviewer_name=_s(_col(row, cols.get("reviewer_name"))),
                rating=rating,
                review_text=text,
                review_date=_d(_col(row, cols.get("review_date"))),
                verified=_b(_col(row, cols.get("verified"))),
                analysis=analysis,
            ))
        except ValidationError as exc:
            log.warning("Skipping invalid review %r: %s", text[:60], exc)
    return items


def import_xlsx(file_path: str | Path, session: Session, company_id: int) -> ImportResult:
    """Import extraction output for one company from an XLSX workbook.

    Sheets are picked by name: one containing "prop" holds value propositions,
    one containing "review" holds reviews with their annotations.
    """
    file_path = Path(file_path)
    wb = openpyxl.load_workbook(file_path, read_only=True, data_only=True)

    propositions: list[ValuePropositionCreate] = []
    reviews: list[ReviewCreate] = []
    invalid = 0
    for sheet_name in wb.sheetnames:
        lower = sheet_name.casefold()
        if "prop" in lower:
            propositions, invalid = _parse_propositions_sheet(wb[sheet_name])
        elif "review" in lower:
            reviews = _parse_reviews_sheet(wb[sheet_name])

    wb.close()

    created, skipped = services.import_value_propositions(session, company_id, propositions)
    imported_reviews = services.import_reviews(session, company_id, reviews)
    session.commit()
    log.info("Imported %d value propositions and %d reviews for company %s from %s",
             len(created), len(imported_reviews), company_id, file_path.name)

    return ImportResult(
        value_propositions_imported=len(created),
        value_propositions_skipped=skipped + invalid,
        reviews_imported=len(imported_reviews),
    )
