from __future__ import annotations

import logging
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Generator

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from cvpa import services
from cvpa.db import get_session, init_db
from cvpa.importer import import_xlsx
from cvpa.models import Audit, Company, ValueProposition
from cvpa.schemas import (
    AuditBreakdown,
    AuditCreate,
    AuditDetail,
    AuditOut,
    AuditRunResult,
    CompanyCreate,
    CompanyDetail,
    CompanyOut,
    CompanyUpdate,
    DataSourcesOut,
    ImportResult,
    RegenerateGapsResult,
    ReviewCreate,
    ValuePropositionCreate,
    ValuePropositionOut,
)
from cvpa.store import AuditStore

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="CVPA",
    version="0.1.0",
    description=(
        "Customer Value Proposition Audit API. Compares what a company promises "
        "(jobs, pains, gains) with what customers report in reviews, and ranks the gaps. "
        "All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Companies", "description": "Create and browse audited companies."},
        {"name": "Data", "description": "Load extracted value propositions and annotated reviews."},
        {"name": "Audits", "description": "Run promise-vs-reality scoring and gap analysis."},
    ],
)

COMPANY_FIELDS = ("name", "industry", "website_url", "description", "app_store_id", "google_play_package")


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = services.get_entity(session, model, entity_id)
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


def _get_audit_or_404(session: Session, company_id: int, audit_id: int) -> Audit:
    _get_or_404(session, Company, company_id, "Company")
    audit = services.get_company_audit(session, company_id, audit_id)
    if not audit:
        raise HTTPException(404, "Audit not found")
    return audit


# ---------------------------------------------------------------------------
# Routes: Companies
# ---------------------------------------------------------------------------


class CompanyListResponse(BaseModel):
    companies: list[CompanyOut]


@app.get("/api/companies", response_model=CompanyListResponse,
         tags=["Companies"], summary="List companies, newest first")
async def list_companies(session: Session = Depends(db_session)):
    companies = session.execute(select(Company).order_by(Company.id.desc())).scalars().all()
    return {"companies": [services.company_summary(c) for c in companies]}


@app.post("/api/companies", response_model=CompanyDetail, status_code=201,
          tags=["Companies"], summary="Create a company to audit")
async def create_company(body: CompanyCreate, session: Session = Depends(db_session)):
    company = Company(**body.model_dump())
    session.add(company)
    session.commit()
    session.refresh(company)
    return services.company_detail(session, company)


@app.get("/api/companies/{company_id}", response_model=CompanyDetail,
         tags=["Companies"], summary="Get a company with its latest audit score")
async def get_company(company_id: int, session: Session = Depends(db_session)):
    return services.company_detail(session, _get_or_404(session, Company, company_id, "Company"))


@app.put("/api/companies/{company_id}", response_model=CompanyDetail,
         tags=["Companies"], summary="Update company fields (partial update, null fields ignored)")
async def update_company(company_id: int, body: CompanyUpdate, session: Session = Depends(db_session)):
    company = _get_or_404(session, Company, company_id, "Company")
    services.apply_updates(company, body.model_dump(), COMPANY_FIELDS)
    session.commit()
    return services.company_detail(session, company)


@app.delete("/api/companies/{company_id}", tags=["Companies"],
            summary="Delete a company with its data, audits, scores and gaps")
async def delete_company(company_id: int, session: Session = Depends(db_session)):
    company = _get_or_404(session, Company, company_id, "Company")
    session.delete(company)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Data
# ---------------------------------------------------------------------------


class PropositionImportResponse(BaseModel):
    imported: int
    skipped: int
    items: list[ValuePropositionOut]


@app.post("/api/companies/{company_id}/value-propositions", response_model=PropositionImportResponse,
          status_code=201, tags=["Data"], summary="Add extracted value propositions (promises)")
async def add_value_propositions(
    company_id: int, body: list[ValuePropositionCreate], session: Session = Depends(db_session),
):
    _get_or_404(session, Company, company_id, "Company")
    created, skipped = services.import_value_propositions(session, company_id, body)
    session.commit()
    return {
        "imported": len(created), "skipped": skipped,
        "items": [services.proposition_summary(vp) for vp in created],
    }


@app.get("/api/companies/{company_id}/value-propositions", response_model=list[ValuePropositionOut],
         tags=["Data"], summary="List value propositions, highest confidence first")
async def list_value_propositions(
    company_id: int,
    category: str | None = Query(None, description="job, pain or gain"),
    session: Session = Depends(db_session),
):
    _get_or_404(session, Company, company_id, "Company")
    query = select(ValueProposition).where(ValueProposition.company_id == company_id)
    if category:
        query = query.where(ValueProposition.category == category.strip().lower())
    rows = session.execute(
        query.order_by(ValueProposition.confidence.desc(), ValueProposition.id)
    ).scalars().all()
    return [services.proposition_summary(vp) for vp in rows]


@app.post("/api/companies/{company_id}/reviews", status_code=201,
          tags=["Data"], summary="Add customer reviews with their jobs/pains/gains annotation")
async def add_reviews(company_id: int, body: list[ReviewCreate], session: Session = Depends(db_session)):
    _get_or_404(session, Company, company_id, "Company")
    created = services.import_reviews(session, company_id, body)
    session.commit()
    return {
        "imported": len(created),
        "annotated": sum(1 for r in created if r.analysis is not None),
    }


@app.post("/api/companies/{company_id}/import", response_model=ImportResult,
          tags=["Data"], summary="Import value propositions and reviews from an XLSX workbook")
async def import_file(
    company_id: int, file: UploadFile = File(...), session: Session = Depends(db_session),
):
    _get_or_404(session, Company, company_id, "Company")
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return import_xlsx(tmp_path, session, company_id)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


@app.get("/api/companies/{company_id}/data-sources", response_model=DataSourcesOut,
         tags=["Data"], summary="Review counts, ratings and date range per source")
async def data_sources(company_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Company, company_id, "Company")
    return services.data_source_stats(session, company_id)


# ---------------------------------------------------------------------------
# Routes: Audits
# ---------------------------------------------------------------------------


@app.post("/api/companies/{company_id}/audits", response_model=AuditRunResult, status_code=201,
          tags=["Audits"], summary="Create an audit and run scoring plus gap analysis")
async def create_audit(company_id: int, body: AuditCreate | None = None, session: Session = Depends(db_session)):
    _get_or_404(session, Company, company_id, "Company")
    body = body or AuditCreate()
    audit = services.create_audit(session, company_id, body.time_period_start, body.time_period_end)
    session.commit()
    session.refresh(audit)

    store = AuditStore(session)
    try:
        score, gaps = services.run_audit(store, audit)
    except services.CVPAError as exc:
        raise HTTPException(422, str(exc)) from exc
    return {
        "audit": services.audit_summary(audit),
        "score": services.score_dict(score),
        "gapsCount": len(gaps),
    }


@app.get("/api/companies/{company_id}/audits", response_model=list[AuditOut],
         tags=["Audits"], summary="List audits for a company, newest first")
async def list_audits(company_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Company, company_id, "Company")
    audits = session.execute(
        select(Audit).where(Audit.company_id == company_id).order_by(Audit.id.desc())
    ).scalars().all()
    return [services.audit_summary(a) for a in audits]


@app.get("/api/companies/{company_id}/audits/{audit_id}", response_model=AuditDetail,
         tags=["Audits"], summary="Get an audit with its score and gaps (highest impact first)")
async def get_audit(company_id: int, audit_id: int, session: Session = Depends(db_session)):
    audit = _get_audit_or_404(session, company_id, audit_id)
    return services.audit_detail(AuditStore(session), audit)


@app.get("/api/companies/{company_id}/audits/{audit_id}/detailed", response_model=AuditBreakdown,
         tags=["Audits"], summary="Per-dimension breakdown: top promises with customer quotes")
async def get_audit_breakdown(company_id: int, audit_id: int, session: Session = Depends(db_session)):
    audit = _get_audit_or_404(session, company_id, audit_id)
    return services.audit_breakdown(AuditStore(session), audit)


@app.post("/api/companies/{company_id}/audits/{audit_id}/regenerate-gaps",
          response_model=RegenerateGapsResult, tags=["Audits"],
          summary="Recompute the gaps of an already scored audit")
async def regenerate_gaps(company_id: int, audit_id: int, session: Session = Depends(db_session)):
    _get_audit_or_404(session, company_id, audit_id)
    gaps = services.regenerate_gaps(AuditStore(session), company_id, audit_id)
    return {
        "message": "Gaps regenerated successfully",
        "gapsCount": len(gaps),
        "gaps": [services.gap_dict(g) for g in gaps],
    }


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run(
        "cvpa.app:app",
        host=os.environ.get("CVPA_HOST", "127.0.0.1"),
        port=int(os.environ.get("CVPA_PORT", "8002")),
        reload=True,
    )


if __name__ == "__main__":
    main()
