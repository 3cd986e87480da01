from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP
from sqlalchemy import select

from cvpa import scorer, services
from cvpa.db import current_db_path, get_session, init_db
from cvpa.models import Company
from cvpa.store import AuditStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def cvpa_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "CVPA",
    instructions=(
        "CVPA audits whether a company's value propositions match what customers say in reviews. "
        "Start with list_companies(), then get_company(id) for counts and the latest score. "
        "run_company_audit(id) scores the company and lists gaps; get_audit() shows a past audit."
    ),
    lifespan=cvpa_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def _get_or_error(session, model, entity_id, label="Entity"):
    obj = services.get_entity(session, model, entity_id)
    if not obj:
        return None, {"error": f"{label} {entity_id} not found"}
    return obj, None


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("cvpa://overview")
def cvpa_overview() -> str:
    """Overview of CVPA: data model, workflow, and scoring thresholds."""
    db_path = current_db_path()
    return json.dumps({
        "system": "CVPA - Customer Value Proposition Audit",
        "database": str(db_path) if db_path else None,
        "data_model": {
            "company": "An audited company. Owns value propositions, reviews and audits.",
            "value_proposition": "A promise (category job, pain or gain) extracted from company-controlled text.",
            "review": "A customer review with a jobs/pains/gains annotation and sentiment (0-1).",
            "audit_score": "Jobs, pains and gains scores (0-100) plus the weighted overall score.",
            "gap": "A promise-vs-reality mismatch with severity, impact score and priority.",
        },
        "workflow": [
            "1. list_companies() - find the company.",
            "2. get_company(id) - check there are value propositions and reviews.",
            "3. run_company_audit(id) - score and identify gaps.",
            "4. get_audit(company_id, audit_id) - read score and gaps by impact.",
            "   get_audit_breakdown(company_id, audit_id) - top promises per dimension with quotes.",
            "5. regenerate_audit_gaps(company_id, audit_id) - recompute gaps only.",
        ],
        "weights": scorer.DIMENSION_WEIGHTS,
        "thresholds": {
            "similarity": scorer.SIMILARITY_THRESHOLD,
            "dimension_gap_below": scorer.SCORE_GAP_THRESHOLD,
            "promise_fulfillment_gap_below": scorer.FULFILLMENT_GAP_THRESHOLD,
            "promise_sentiment_gap_below": scorer.SENTIMENT_GAP_THRESHOLD,
        },
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Companies
# ---------------------------------------------------------------------------


@mcp.tool()
def list_companies() -> list[dict]:
    """List all companies, newest first."""
    with _session() as session:
        companies = session.execute(select(Company).order_by(Company.id.desc())).scalars().all()
        return [services.company_summary(c) for c in companies]


@mcp.tool()
def get_company(company_id: int) -> dict:
    """Get a company with value proposition and review counts and its latest audit score."""
    with _session() as session:
        company, err = _get_or_error(session, Company, company_id, "Company")
        return err if err else services.company_detail(session, company)


@mcp.tool()
def get_data_sources(company_id: int) -> dict:
    """Review counts per source with verified count, average rating and date range."""
    with _session() as session:
        _, err = _get_or_error(session, Company, company_id, "Company")
        return err if err else services.data_source_stats(session, company_id)


# ---------------------------------------------------------------------------
# Tools: Audits
# ---------------------------------------------------------------------------


@mcp.tool()
def run_company_audit(company_id: int) -> dict:
    """Create a new audit for a company, score it and identify gaps."""
    with _session() as session:
        _, err = _get_or_error(session, Company, company_id, "Company")
        if err:
            return err
        audit = services.create_audit(session, company_id)
        session.commit()
        store = AuditStore(session)
        try:
            services.run_audit(store, audit)
        except services.CVPAError as exc:
            return {"error": f"Audit failed: {exc}", "audit": services.audit_summary(audit)}
        return services.audit_detail(store, audit)


@mcp.tool()
def get_audit(company_id: int, audit_id: int) -> dict:
    """Get an audit with its score and gaps, highest impact first."""
    with _session() as session:
        audit = services.get_company_audit(session, company_id, audit_id)
        if audit is None:
            return {"error": f"Audit {audit_id} not found for company {company_id}"}
        return services.audit_detail(AuditStore(session), audit)


@mcp.tool()
def get_audit_breakdown(company_id: int, audit_id: int) -> dict:
    """Per-dimension breakdown of an audit: top promises by confidence with customer quotes
    and a fulfilled / partial / not_fulfilled status."""
    with _session() as session:
        audit = services.get_company_audit(session, company_id, audit_id)
        if audit is None:
            return {"error": f"Audit {audit_id} not found for company {company_id}"}
        return services.audit_breakdown(AuditStore(session), audit)


@mcp.tool()
def regenerate_audit_gaps(company_id: int, audit_id: int) -> dict:
    """Recompute the gaps of an already scored audit, replacing the old ones."""
    with _session() as session:
        audit = services.get_company_audit(session, company_id, audit_id)
        if audit is None:
            return {"error": f"Audit {audit_id} not found for company {company_id}"}
        gaps = services.regenerate_gaps(AuditStore(session), company_id, audit_id)
        return {"gapsCount": len(gaps), "gaps": [services.gap_dict(g) for g in gaps]}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the CVPA MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
