"""
Tests for the REST API endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from einvoice_qc.api import app
from einvoice_qc.config import SPEC_VERSION_LABEL


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture
def payload(clean_header, clean_lines, clean_buyer) -> dict:
    return {"headers": [clean_header], "lines": clean_lines, "buyers": [clean_buyer]}


@pytest.fixture
def failing_payload(payload) -> dict:
    payload["headers"][0]["total_incl_vat"] = 999
    return payload


class TestSystemEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["version"] == "0.1.0"
        assert body["spec_version"] == SPEC_VERSION_LABEL

    def test_rules(self, client):
        uc1 = client.get("/rules").json()
        assert len(uc1) == 34
        assert uc1[0]["check_id"] == "UAE-UC1-CHK-001"
        everything = client.get("/rules", params={"include_baseline": True}).json()
        assert len(everything) == 45


class TestRunChecks:

    def test_clean_dataset(self, client, payload):
        response = client.post("/run-checks", json=payload)
        assert response.status_code == 200
        body = response.json()
        assert body["exceptions"] == []
        assert body["summary"]["pass_rate_percent"] == 100.0

    def test_failing_dataset(self, client, failing_payload):
        failing_payload["dataset_type"] = "AR"
        body = client.post("/run-checks", json=failing_payload).json()
        check_ids = {exc["check_id"] for exc in body["exceptions"]}
        assert "UAE-UC1-CHK-025" in check_ids
        assert all(exc["dataset_type"] == "AR" for exc in body["exceptions"])
        assert all(exc["case_status"] == "Open" for exc in body["exceptions"])
        assert body["summary"]["pass_rate_percent"] == 0.0

    def test_custom_checks(self, client, payload):
        payload["custom_checks"] = [{
            "id": "cust-1",
            "name": "Large invoice",
            "severity": "Low",
            "rule_type": "math",
            "parameters": {"left_expression": "{total_incl_vat}", "operator": "<", "right_expression": "100"},
            "message_template": "Invoice {invoice_number} is large",
        }]
        body = client.post("/run-checks", json=payload).json()
        [exc] = body["exceptions"]
        assert exc["check_id"] == "cust-1"
        assert exc["message"] == "Invoice INV-001 is large"

    def test_unknown_dataset_type(self, client, payload):
        payload["dataset_type"] = "XX"
        assert client.post("/run-checks", json=payload).status_code == 422

    def test_malformed_records(self, client):
        assert client.post("/run-checks", json={"headers": "not a list"}).status_code == 422


class TestSearchChecks:

    def test_fuzzy_duplicates(self, client, clean_header):
        second = dict(clean_header, invoice_id="h2", invoice_number="INV-002",
                      seller_name="Acme Trading L.L.C.", issue_date="2025-01-16")
        request = {
            "headers": [clean_header, second],
            "checks": [{
                "name": "Fuzzy duplicate",
                "rule_type": "fuzzy_duplicate",
                "parameters": {"vendor_similarity_threshold": 0.8},
            }],
        }
        body = client.post("/search-checks", json=request).json()
        assert body["total_flags"] == 2
        assert body["flags"][0]["dataset_type"] == "AP"

        request["dataset_type"] = "AR"
        assert client.post("/search-checks", json=request).json()["total_flags"] == 0


class TestCoverageEndpoints:

    def test_traceability_without_data(self, client):
        body = client.post("/traceability").json()
        assert body["readiness"] is None
        assert body["matrix"]["gaps"]["total_requirements"] == len(body["matrix"]["rows"])

    def test_traceability_with_data(self, client, payload):
        body = client.post("/traceability", json=payload).json()
        rows = {row["requirement_id"]: row for row in body["matrix"]["rows"]}
        assert rows["IBT-001"]["population_pct"] == 100.0
        assert body["readiness"] is not None

    def test_consistency(self, client):
        body = client.get("/consistency").json()
        assert all(issue["level"] != "error" for issue in body["issues"])
        assert body["passed"] == 4
        assert body["failed"] == 2


class TestCaseTransitions:

    def _exception(self, client, failing_payload) -> dict:
        failing_payload["dataset_type"] = "AP"
        body = client.post("/run-checks", json=failing_payload).json()
        return body["exceptions"][0]

    def test_resolve(self, client, failing_payload):
        exception = self._exception(client, failing_payload)
        response = client.post("/cases/transition", json={
            "exception": exception,
            "status": "Resolved",
            "reason_code": "REQUEST_VENDOR_CORRECTION",
        })
        assert response.status_code == 200
        assert response.json()["case_status"] == "Resolved"
        assert response.json()["id"] == exception["id"]

    def test_disallowed_transition_conflicts(self, client, failing_payload):
        exception = self._exception(client, failing_payload)
        exception["case_status"] = "Resolved"
        response = client.post("/cases/transition", json={"exception": exception, "status": "Waived"})
        assert response.status_code == 409

    def test_wrong_reason_code_conflicts(self, client, failing_payload):
        exception = self._exception(client, failing_payload)
        response = client.post("/cases/transition", json={
            "exception": exception,
            "status": "Resolved",
            "reason_code": "REISSUE_INVOICE",
        })
        assert response.status_code == 409
