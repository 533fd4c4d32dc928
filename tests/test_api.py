from datetime import date

import pandas as pd
import pytest
from fastapi.testclient import TestClient

from conftest import TODAY, merge_tables, study_tables
from visitkit.api import app
from visitkit.config import Config
from visitkit.cron import RelayedResponse
from visitkit.store import TrialStore

USER = {"X-User-Id": "user-1", "X-Study-Access": "STUDY-1"}
JOB_TOKEN = "job-secret"


@pytest.fixture
def store():
    # Baselines far in the future keep every visit past the horizon whatever today is
    tables = merge_tables(study_tables("STUDY-1"), study_tables("STUDY-2", status="enrolling"))
    tables["subjects"]["randomization_date"] = "2099-01-01"
    tables["subjects"]["enrollment_date"] = "2099-01-01"
    tables["subject_visits"]["visit_date"] = None
    return TrialStore(tables=tables)


@pytest.fixture
def client(store, monkeypatch):
    monkeypatch.setattr(Config, "LAB_KIT_RECOMMENDATION_JOB_TOKEN", JOB_TOKEN)
    app.state.store = store
    yield TestClient(app)
    app.state.store = None


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_recompute_requires_identity(client):
    """No caller identity: 401."""
    response = client.post("/lab-kit-recommendations/recompute", json={"studyId": "STUDY-1"})
    assert response.status_code == 401


def test_recompute_requires_study_access(client):
    """Authenticated but not granted the study: 403."""
    response = client.post(
        "/lab-kit-recommendations/recompute",
        json={"studyId": "STUDY-2"},
        headers=USER,
    )
    assert response.status_code == 403


@pytest.mark.parametrize("body", [
    {},
    {"studyId": ""},
    {"studyId": "STUDY-1", "daysAhead": "abc"},
    {"studyId": "STUDY-1", "daysAhead": 0},
    {"studyId": "STUDY-1", "daysAhead": True},
    ["STUDY-1"],
])
def test_recompute_rejects_invalid_body(client, body):
    """Invalid input is a 400, checked before the study is touched."""
    response = client.post("/lab-kit-recommendations/recompute", json=body, headers=USER)
    assert response.status_code == 400


def test_recompute_unknown_study(client):
    response = client.post(
        "/lab-kit-recommendations/recompute",
        json={"studyId": "NOPE"},
        headers={"X-User-Id": "admin", "X-Study-Access": "*"},
    )
    assert response.status_code == 404


def test_recompute_returns_counts(client):
    """Aliases collapse to one field and counts come back under studyId."""
    response = client.post(
        "/lab-kit-recommendations/recompute",
        json={"study_id": "STUDY-1", "days": "30"},
        headers=USER,
    )
    assert response.status_code == 200
    assert response.json() == {"studyId": "STUDY-1", "created": 0, "updated": 0, "expired": 0}


def test_recompute_all_job_token(client, monkeypatch):
    """Missing or wrong token is 401; an unconfigured token is 500."""
    url = "/lab-kit-recommendations/recompute-all"
    assert client.post(url, json={}).status_code == 401
    assert client.post(url, json={}, headers={"Authorization": "Bearer wrong"}).status_code == 401

    monkeypatch.setattr(Config, "LAB_KIT_RECOMMENDATION_JOB_TOKEN", "")
    response = client.post(url, json={}, headers={"Authorization": f"Bearer {JOB_TOKEN}"})
    assert response.status_code == 500


def test_recompute_all_runs_batch(client):
    """Comma-separated statuses and the days alias are accepted."""
    response = client.post(
        "/lab-kit-recommendations/recompute-all",
        json={"status": "enrolling, active", "days_ahead": 180},
        headers={"Authorization": f"Bearer {JOB_TOKEN}"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 2
    assert body["failures"] == 0
    assert {r["studyId"] for r in body["results"]} == {"STUDY-1", "STUDY-2"}
    assert all("error" not in r for r in body["results"])


def test_recompute_all_without_body(client):
    response = client.post(
        "/lab-kit-recommendations/recompute-all",
        headers={"Authorization": f"Bearer {JOB_TOKEN}"},
    )
    assert response.status_code == 200
    assert response.json()["processed"] == 2


def test_recompute_all_rejects_bad_days(client):
    response = client.post(
        "/lab-kit-recommendations/recompute-all",
        json={"daysAhead": "lots"},
        headers={"Authorization": f"Bearer {JOB_TOKEN}"},
    )
    assert response.status_code == 400


def test_cron_requires_trigger_header(client):
    assert client.get("/cron/recompute-lab-kits").status_code == 403


def test_cron_relays_batch_response(client, monkeypatch):
    """The trigger's status and body pass through unchanged."""
    relayed = RelayedResponse(207, b'{"processed": 3, "failures": 1}', "application/json")
    monkeypatch.setattr("visitkit.api.CronTrigger.run", lambda self: relayed)
    response = client.get("/cron/recompute-lab-kits", headers={"X-Cron-Trigger": "1"})
    assert response.status_code == 207
    assert response.headers["content-type"] == "application/json"
    assert response.json() == {"processed": 3, "failures": 1}


def test_cron_relays_plain_text_body(client, monkeypatch):
    """A non-JSON upstream body keeps its bytes and content type."""
    relayed = RelayedResponse(502, b"Bad Gateway", "text/plain; charset=utf-8")
    monkeypatch.setattr("visitkit.api.CronTrigger.run", lambda self: relayed)
    response = client.get("/cron/recompute-lab-kits", headers={"X-Cron-Trigger": "1"})
    assert response.status_code == 502
    assert response.headers["content-type"] == "text/plain; charset=utf-8"
    assert response.content == b"Bad Gateway"


def test_list_recommendations(client, store):
    store.insert_recommendation({"study_id": "STUDY-1", "kit_type": "PK", "quantity_needed": 2, "status": "active"})
    store.insert_recommendation({"study_id": "STUDY-1", "kit_type": "Chemistry", "quantity_needed": 1, "status": "expired"})

    response = client.get("/lab-kit-recommendations", params={"studyId": "STUDY-1"}, headers=USER)

    assert response.status_code == 200
    body = response.json()
    assert len(body["recommendations"]) == 2
    assert body["counts"] == {"active": 1, "expired": 1}


def test_list_lab_kits_sweeps_expired(client):
    response = client.get("/lab-kits", params={"studyId": "STUDY-1"}, headers=USER)

    assert response.status_code == 200
    body = response.json()
    assert body["expired"] == 2
    statuses = {kit["id"]: kit["status"] for kit in body["kits"]}
    assert statuses["STUDY-1-KIT-2"] == "expired"
    assert statuses["STUDY-1-KIT-3"] == "shipped"


def test_subject_visits(client):
    response = client.get("/subjects/STUDY-1-SUBJ-1/visits", headers=USER)

    assert response.status_code == 200
    visits = {v["visit_id"]: v for v in response.json()["visits"]}
    assert visits["STUDY-1-V-1"]["projected_date"] == "2099-01-15"
    assert visits["STUDY-1-V-1"]["status"] == "scheduled"


def test_subject_visits_access(client):
    assert client.get("/subjects/STUDY-2-SUBJ-1/visits", headers=USER).status_code == 403
    assert client.get("/subjects/NOPE/visits", headers=USER).status_code == 404


def test_subject_drug_compliance(client, store):
    store.tables["study_drugs"] = pd.DataFrame([
        {"id": "D1", "study_id": "STUDY-1", "code": "D1", "name": "Drug", "dose_per_day": 1},
    ])
    store.tables["drug_cycles"] = pd.DataFrame([{
        "id": "C1", "subject_id": "STUDY-1-SUBJ-1", "visit_id": None, "drug_id": "D1",
        "dispensing_date": date(2024, 1, 1), "last_dose_date": date(2024, 1, 10),
        "tablets_dispensed": 10, "tablets_returned": 2,
    }])

    response = client.get("/subjects/STUDY-1-SUBJ-1/drug-compliance", headers=USER)

    assert response.status_code == 200
    unlinked = response.json()["visits"]["unlinked"]
    assert unlinked["items"][0]["compliance_percentage"] == 80
    assert unlinked["items"][0]["is_compliant"] is True


def test_update_section_anchor(client, store):
    store.tables["subject_sections"] = pd.DataFrame([
        {"id": "SEC-1", "subject_id": "STUDY-1-SUBJ-1", "study_section_id": "A", "anchor_date": date(2099, 1, 1)},
    ])
    store.tables["subject_visits"].loc[
        store.tables["subject_visits"]["id"] == "STUDY-1-V-1", "subject_section_id"
    ] = "SEC-1"

    response = client.patch(
        "/subject-sections/update-anchor",
        json={"subjectSectionId": "SEC-1", "anchorDate": "2099-02-01"},
        headers=USER,
    )

    assert response.status_code == 200
    assert response.json()["visits_updated"] == 1
    visit = store.subject_visits(subject_id="STUDY-1-SUBJ-1").set_index("id").loc["STUDY-1-V-1"]
    assert visit["visit_date"] == date(2099, 2, 15)


def test_update_section_anchor_bad_date(client):
    response = client.patch(
        "/subject-sections/update-anchor",
        json={"subjectSectionId": "SEC-1", "anchorDate": "not-a-date"},
        headers=USER,
    )
    assert response.status_code == 400



def test_lab_kit_forecast(client, monkeypatch):
    monkeypatch.setattr("visitkit.recommendation_engine.today_utc", lambda: TODAY)
    app.state.store = TrialStore(tables=study_tables())

    response = client.get("/lab-kits/forecast", params={"studyId": "STUDY-1", "daysAhead": 60}, headers=USER)

    assert response.status_code == 200
    body = response.json()
    assert (body["studyId"], body["daysAhead"], body["criticalIssues"]) == ("STUDY-1", 60, 1)
    chemistry = body["items"][0]
    assert chemistry["kit_type"] == "Chemistry"
    assert chemistry["status"] == "critical"
    assert chemistry["quantity_needed"] == 3
    assert chemistry["latest_order_date"] == "2024-03-05"


def test_lab_kit_forecast_access(client):
    response = client.get("/lab-kits/forecast", params={"studyId": "STUDY-2"}, headers=USER)
    assert response.status_code == 403


def test_subject_compliance(client, store):
    store.tables["study_drugs"] = pd.DataFrame([
        {"id": "D1", "study_id": "STUDY-1", "code": "D1", "name": "Drug", "dose_per_day": 1},
    ])
    store.tables["drug_cycles"] = pd.DataFrame([{
        "id": "C1", "subject_id": "STUDY-1-SUBJ-1", "visit_id": None, "drug_id": "D1",
        "dispensing_date": date(2024, 1, 1), "last_dose_date": date(2024, 1, 10),
        "tablets_dispensed": 10, "tablets_returned": 2,
    }])

    response = client.get("/subjects/STUDY-1-SUBJ-1/compliance", headers=USER)

    assert response.status_code == 200
    body = response.json()
    assert body["drug"][0]["percentage"] == 80
    assert body["visits"] == []
    assert body["overall"]["percentage"] == 80
    assert body["overall"]["status"] == "acceptable"


def test_rejected_requests_never_load_the_store(client, store, monkeypatch):
    """Bad input and denied callers are answered before the data directory is read."""
    loads = []

    def counting_load():
        loads.append(1)
        return store

    monkeypatch.setattr("visitkit.api.load_store", counting_load)
    app.state.store = None

    url = "/lab-kit-recommendations/recompute"
    assert client.post(url, json={"studyId": "STUDY-1", "daysAhead": "abc"}, headers=USER).status_code == 400
    assert client.post(url, json={"studyId": "STUDY-2"}, headers=USER).status_code == 403
    assert client.post(
        "/lab-kit-recommendations/recompute-all",
        json={"daysAhead": "lots"},
        headers={"Authorization": f"Bearer {JOB_TOKEN}"},
    ).status_code == 400
    assert client.patch(
        "/subject-sections/update-anchor",
        json={"subjectSectionId": "SEC-1", "anchorDate": "not-a-date"},
        headers=USER,
    ).status_code == 400
    assert client.get("/lab-kits", params={"studyId": "STUDY-2"}, headers=USER).status_code == 403
    assert loads == []

    assert client.post(url, json={"studyId": "STUDY-1"}, headers=USER).status_code == 200
    assert loads == [1]


if __name__ == "__main__":
    pytest.main([__file__])
