"""Integration tests for the FastAPI endpoints.

Uses TestClient with an in-memory database swapped in for ``db_session``.
"""
from __future__ import annotations

import io
from unittest.mock import patch

import openpyxl
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cvpa.models import Base

TRACK_PROMISE = "lets you track your order status easily"
TRACK_MENTION = "I can track your order status"
CHECKOUT_PAIN = "checkout takes forever and keeps failing"


@pytest.fixture()
def test_db():
    """Create a temporary SQLite in-memory database for testing.

    Uses StaticPool so all connections share the same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using in-memory database."""
    # the lifespan still opens the default database, keep it out of the package
    monkeypatch.setenv("CVPA_DB_PATH", str(tmp_path / "lifespan.db"))
    engine, TestSession = test_db
    from cvpa.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def company_id(client):
    resp = client.post("/api/companies", json={"name": "ShipFast", "industry": "Logistics"})
    assert resp.status_code == 201
    return resp.json()["id"]


@pytest.fixture()
def seeded(client, company_id):
    """Company with a job and a pain promise plus ten annotated reviews."""
    resp = client.post(f"/api/companies/{company_id}/value-propositions", json=[
        {"extracted_text": TRACK_PROMISE, "category": "job", "job_type": "functional"},
        {"extracted_text": CHECKOUT_PAIN, "category": "pain", "confidence": 0.9},
    ])
    assert resp.status_code == 201
    reviews = (
        [{"review_text": "Tracking is great", "rating": 5,
          "analysis": {"jobs_mentioned": [{"text": TRACK_MENTION}], "sentiment": 0.8}}] * 6
        + [{"review_text": "Checkout is awful", "rating": 1,
            "analysis": {"pains_mentioned": [CHECKOUT_PAIN], "sentiment": 0.2}}] * 4
    )
    resp = client.post(f"/api/companies/{company_id}/reviews", json=reviews)
    assert resp.status_code == 201
    assert resp.json() == {"imported": 10, "annotated": 10}
    return company_id


class TestCompanyEndpoints:
    def test_create_and_get(self, client, company_id):
        resp = client.get(f"/api/companies/{company_id}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["name"] == "ShipFast"
        assert data["value_proposition_count"] == 0
        assert data["review_count"] == 0
        assert data["latest_score"] is None

    def test_create_requires_industry(self, client):
        resp = client.post("/api/companies", json={"name": "NoIndustry"})
        assert resp.status_code == 422

    def test_list(self, client, company_id):
        client.post("/api/companies", json={"name": "Second", "industry": "Retail"})
        resp = client.get("/api/companies")
        assert resp.status_code == 200
        names = [c["name"] for c in resp.json()["companies"]]
        assert names == ["Second", "ShipFast"]

    def test_update_ignores_nulls(self, client, company_id):
        resp = client.put(f"/api/companies/{company_id}", json={"industry": "Parcel delivery", "name": None})
        assert resp.status_code == 200
        assert resp.json()["industry"] == "Parcel delivery"
        assert resp.json()["name"] == "ShipFast"

    def test_delete_cascades(self, client, seeded):
        client.post(f"/api/companies/{seeded}/audits")
        resp = client.delete(f"/api/companies/{seeded}")
        assert resp.status_code == 200
        assert client.get(f"/api/companies/{seeded}").status_code == 404

    def test_not_found(self, client):
        assert client.get("/api/companies/999").status_code == 404
        assert client.put("/api/companies/999", json={}).status_code == 404
        assert client.get("/api/companies/999/audits").status_code == 404


class TestDataEndpoints:
    def test_value_propositions(self, client, seeded):
        resp = client.get(f"/api/companies/{seeded}/value-propositions")
        assert resp.status_code == 200
        data = resp.json()
        assert [vp["category"] for vp in data] == ["pain", "job"]

        resp = client.get(f"/api/companies/{seeded}/value-propositions", params={"category": "JOB"})
        assert [vp["extracted_text"] for vp in resp.json()] == [TRACK_PROMISE]

    def test_duplicate_and_short_propositions_skipped(self, client, seeded):
        resp = client.post(f"/api/companies/{seeded}/value-propositions", json=[
            {"extracted_text": TRACK_PROMISE, "category": "job"},
            {"extracted_text": "Short one", "category": "gain"},
        ])
        assert resp.status_code == 201
        assert resp.json()["imported"] == 0
        assert resp.json()["skipped"] == 2

    def test_invalid_category_rejected(self, client, company_id):
        resp = client.post(f"/api/companies/{company_id}/value-propositions", json=[
            {"extracted_text": "A promise without a valid category", "category": "feature"},
        ])
        assert resp.status_code == 422

    def test_sentiment_out_of_range_rejected(self, client, company_id):
        resp = client.post(f"/api/companies/{company_id}/reviews", json=[
            {"review_text": "Too happy", "analysis": {"sentiment": 1.5}},
        ])
        assert resp.status_code == 422

    def test_import_rejects_non_xlsx(self, client, company_id):
        resp = client.post(
            f"/api/companies/{company_id}/import",
            files={"file": ("data.csv", b"a,b\n1,2\n", "text/csv")},
        )
        assert resp.status_code == 400

    def test_import_xlsx(self, client, company_id):
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Propositions"
        ws.append(["extracted_text", "category"])
        ws.append([CHECKOUT_PAIN, "pain"])
        reviews = wb.create_sheet("Reviews")
        reviews.append(["review_text", "sentiment", "pains_mentioned"])
        reviews.append(["Checkout failed again", 0.1, f'["{CHECKOUT_PAIN}"]'])
        buf = io.BytesIO()
        wb.save(buf)

        resp = client.post(
            f"/api/companies/{company_id}/import",
            files={"file": ("extraction.xlsx", buf.getvalue(),
                            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")},
        )
        assert resp.status_code == 200
        assert resp.json() == {
            "value_propositions_imported": 1,
            "value_propositions_skipped": 0,
            "reviews_imported": 1,
        }
        assert client.get(f"/api/companies/{company_id}").json()["review_count"] == 1


class TestAuditEndpoints:
    def test_run_audit(self, client, seeded):
        resp = client.post(f"/api/companies/{seeded}/audits", json={"time_period_start": "2024-01-01"})
        assert resp.status_code == 201
        data = resp.json()
        assert data["audit"]["status"] == "completed"
        assert data["audit"]["time_period_start"] == "2024-01-01"
        assert data["score"]["sample_size"] == 10
        assert data["score"]["overall_score"] == pytest.approx(55.0)
        assert data["gapsCount"] == 3

        company = client.get(f"/api/companies/{seeded}").json()
        assert company["latest_score"]["id"] == data["score"]["id"]

    def test_audit_detail_ranks_gaps(self, client, seeded):
        audit_id = client.post(f"/api/companies/{seeded}/audits").json()["audit"]["id"]
        resp = client.get(f"/api/companies/{seeded}/audits/{audit_id}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["score"]["jobs_score"] == pytest.approx(100.0)
        gaps = data["gaps"]
        assert [g["impact_score"] for g in gaps] == pytest.approx([100.0, 50.0, 40.0])
        assert [g["gap_severity"] for g in gaps] == ["critical", "medium", "critical"]
        assert gaps[2]["promise_text"] == CHECKOUT_PAIN

    def test_audit_without_feedback_fails(self, client, company_id):
        resp = client.post(f"/api/companies/{company_id}/audits")
        assert resp.status_code == 422
        assert "No customer feedback" in resp.json()["detail"]

        audits = client.get(f"/api/companies/{company_id}/audits").json()
        assert len(audits) == 1
        assert audits[0]["status"] == "failed"
        assert audits[0]["error_message"] == "No customer feedback available for scoring"

    def test_list_audits_newest_first(self, client, seeded):
        first = client.post(f"/api/companies/{seeded}/audits").json()["audit"]["id"]
        second = client.post(f"/api/companies/{seeded}/audits").json()["audit"]["id"]
        ids = [a["id"] for a in client.get(f"/api/companies/{seeded}/audits").json()]
        assert ids == [second, first]

    def test_regenerate_gaps(self, client, seeded):
        audit_id = client.post(f"/api/companies/{seeded}/audits").json()["audit"]["id"]
        resp = client.post(f"/api/companies/{seeded}/audits/{audit_id}/regenerate-gaps")
        assert resp.status_code == 200
        data = resp.json()
        assert data["message"] == "Gaps regenerated successfully"
        assert data["gapsCount"] == 3
        assert len(data["gaps"]) == 3

        detail = client.get(f"/api/companies/{seeded}/audits/{audit_id}").json()
        assert {g["id"] for g in detail["gaps"]} == {g["id"] for g in data["gaps"]}

    def test_regenerate_failure_reports_zero(self, client, seeded):
        audit_id = client.post(f"/api/companies/{seeded}/audits").json()["audit"]["id"]
        with patch("cvpa.scorer.build_promise_gaps", side_effect=RuntimeError("bad data")):
            resp = client.post(f"/api/companies/{seeded}/audits/{audit_id}/regenerate-gaps")
        assert resp.status_code == 200
        assert resp.json()["gapsCount"] == 0

    def test_audit_belongs_to_company(self, client, seeded):
        audit_id = client.post(f"/api/companies/{seeded}/audits").json()["audit"]["id"]
        other = client.post("/api/companies", json={"name": "Other", "industry": "Retail"}).json()["id"]
        assert client.get(f"/api/companies/{other}/audits/{audit_id}").status_code == 404
        assert client.post(f"/api/companies/{other}/audits/{audit_id}/regenerate-gaps").status_code == 404
        assert client.get(f"/api/companies/{seeded}/audits/999").status_code == 404

    def test_unexpected_scoring_error_fails_audit(self, client, seeded):
        with patch("cvpa.scorer.build_audit_score", side_effect=RuntimeError("boom")):
            resp = client.post(f"/api/companies/{seeded}/audits")
        assert resp.status_code == 422
        assert "boom" in resp.json()["detail"]

        [audit] = client.get(f"/api/companies/{seeded}/audits").json()
        assert audit["status"] == "failed"
        assert audit["error_message"] == "boom"

    def test_audit_breakdown(self, client, seeded):
        audit_id = client.post(f"/api/companies/{seeded}/audits").json()["audit"]["id"]
        resp = client.get(f"/api/companies/{seeded}/audits/{audit_id}/detailed")
        assert resp.status_code == 200
        data = resp.json()
        assert data["audit"]["id"] == audit_id
        assert set(data["dimensions"]) == {"jobs_fulfillment", "pain_relief", "gain_achievement"}

        [track] = data["dimensions"]["jobs_fulfillment"]["key_points"]
        assert track["promise"]["job_type"] == "functional"
        assert track["customer_feedback"]["mention_percentage"] == 60.0
        assert track["customer_feedback"]["quotes"][0]["rating"] == 5
        assert track["fulfillment_status"] == "fulfilled"
        pains = data["dimensions"]["pain_relief"]["key_points"]
        assert pains[0]["promise"]["confidence"] == 0.9
        assert pains[-1]["promise"]["source_type"] == "general"

    def test_audit_breakdown_not_found(self, client, seeded):
        audit_id = client.post(f"/api/companies/{seeded}/audits").json()["audit"]["id"]
        other = client.post("/api/companies", json={"name": "Other", "industry": "Retail"}).json()["id"]
        assert client.get(f"/api/companies/{other}/audits/{audit_id}/detailed").status_code == 404
        assert client.get(f"/api/companies/{seeded}/audits/999/detailed").status_code == 404

    def test_data_sources(self, client, seeded):
        audit_id = client.post(f"/api/companies/{seeded}/audits").json()["audit"]["id"]
        resp = client.get(f"/api/companies/{seeded}/data-sources")
        assert resp.status_code == 200
        data = resp.json()
        [source] = data["review_sources"]
        assert (source["source"], source["count"], source["verified_count"]) == ("", 10, 0)
        assert data["totals"]["overall_avg_rating"] == 3.4
        assert data["latest_audit_info"]["audit_id"] == audit_id
        assert data["latest_audit_info"]["status"] == "completed"

    def test_data_sources_unknown_company(self, client):
        assert client.get("/api/companies/999/data-sources").status_code == 404
