"""
Unit tests for Health Status main service.
"""

import pytest
import json
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_health.app.main import HealthStatusService
from service_health.app.schemas import HistoryEntryModel
from shared.config import get_config
from shared.errors import RuleDocumentError
from shared.logging import user_id_var
from shared.test_helpers import TestDataFactory, TestEnvironment


class TestHealthStatusService:
    """Test cases for HealthStatusService."""

    @pytest.fixture
    def config(self):
        """Service configuration without environment lookups."""
        return get_config("health", 8020, **TestEnvironment.get_mock_config())

    @pytest.fixture
    def health_service(self, config):
        """Create HealthStatusService instance."""
        return HealthStatusService(config)

    @pytest.fixture
    def client(self, health_service):
        """Create test client."""
        return TestClient(health_service.app)

    @pytest.fixture
    def loaded_client(self, health_service, client):
        """Test client with the sample rule document loaded."""
        health_service.load_rules(TestDataFactory.create_rule_document())
        return client

    @pytest.fixture
    def history_request(self):
        """Newest-first decrypted history."""
        history = [
            TestDataFactory.create_test_entry(TestDataFactory.day(0), result="positive", entry_id="test"),
            TestDataFactory.create_symptoms_entry(TestDataFactory.day(-1), ["s1", "s2", "s3"], entry_id="symptoms"),
        ]
        return [TestDataFactory.entry_to_request_json(entry) for entry in history]

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "health"
        assert "status_evaluation" in data["capabilities"]

    def test_health_endpoint(self, client):
        """Test health endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "X-Request-ID" in response.headers
        assert response.json()["dependencies"] == {"rules": "missing"}

    def test_health_reports_loaded_rules(self, loaded_client):
        """Test the health check reports the rule document once loaded."""
        response = loaded_client.get("/health")

        assert response.json()["dependencies"] == {"rules": "ok"}

    def test_user_id_bound_from_header(self, health_service, client):
        """Test the X-User-ID header is bound into the logging context."""
        @health_service.app.get("/whoami")
        async def whoami():
            return {"user_id": user_id_var.get()}

        assert client.get("/whoami", headers={"X-User-ID": "user-7"}).json() == {"user_id": "user-7"}
        assert client.get("/whoami").json() == {"user_id": None}

    def test_entry_without_known_type_has_no_blob(self):
        """Test a payload is only attached when the history type is known."""
        blob = {"result": "positive", "test_type": "PCR"}

        unknown = HistoryEntryModel(id="h1", type="mystery", blob=blob).to_entry()
        known = HistoryEntryModel(id="h2", type="received_test", blob=blob).to_entry()

        assert unknown.type is None
        assert unknown.blob is None
        assert known.blob.test_result == "positive"

    def test_metrics_endpoint(self, client):
        """Test metrics endpoint renders this service's registry."""
        client.get("/health")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "status_evaluations_total" in response.text

    def test_rule_stats_without_document(self, client):
        """Test stats before any document is loaded."""
        response = client.get("/rules/stats")

        assert response.status_code == 200
        assert response.json() == {"loaded": False, "stats": {}}

    def test_put_rules(self, client):
        """Test replacing the rule document."""
        response = client.put("/rules", json=TestDataFactory.create_rule_document())

        assert response.status_code == 200
        assert response.json()["stats"]["test_rules"] == 2

        stats = client.get("/rules/stats").json()
        assert stats["loaded"] is True
        assert stats["stats"]["constants"] == 4

    def test_put_rules_not_an_object(self, client):
        """Test a non-object body is rejected."""
        response = client.put("/rules", json=[1, 2, 3])

        assert response.status_code == 422

    def test_malformed_request_body(self, client):
        """Test request validation failures use the standard error body."""
        response = client.post("/status/resolve", json={"history": []}, headers={"X-Request-ID": "req-42"})

        assert response.status_code == 422
        data = response.json()
        assert data["code"] == "VALIDATION_ERROR"
        assert data["request_id"] == "req-42"
        assert data["details"]["errors"]

    def test_load_rules_invalid_document(self, health_service):
        """Test loading a non-object document raises a rule document error."""
        with pytest.raises(RuleDocumentError):
            health_service.load_rules("not a document")
        assert health_service.rules is None

    def test_rules_loaded_from_file(self, config, tmp_path):
        """Test the rule document path is read at startup."""
        path = tmp_path / "rules.json"
        path.write_text(json.dumps(TestDataFactory.create_rule_document()))

        service = HealthStatusService(config.model_copy(update={"rules_document_path": str(path)}))

        assert service.rules is not None
        assert service.rules.get_stats()["action_rules"] == 2

    def test_rules_file_unreadable(self, config, tmp_path):
        """Test a bad rule document file leaves the service without rules."""
        path = tmp_path / "rules.json"
        path.write_text("{not json")

        broken = HealthStatusService(config.model_copy(update={"rules_document_path": str(path)}))
        missing = HealthStatusService(config.model_copy(update={"rules_document_path": str(tmp_path / "nope.json")}))

        assert broken.rules is None
        assert missing.rules is None

    def test_evaluate_without_rules(self, client, history_request):
        """Test evaluation needs a rule document."""
        response = client.post("/status/evaluate", json={"history": history_request})

        assert response.status_code == 400
        assert response.json()["code"] == "SERVICE_ERROR"

    def test_evaluate_status(self, loaded_client, history_request):
        """Test replaying a history into a status."""
        response = loaded_client.post("/status/evaluate", json={
            "history": history_request,
            "today": "2020-10-15",
            "now": "2020-10-15T13:00:00Z",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["history_count"] == 2
        assert data["status"]["health_status"] == "red"
        assert data["status"]["priority"] == 10
        assert data["status"]["next_step_date"] == "2020-10-25T12:00:00.000Z"
        assert data["status"]["history_blob"]["result"] == "positive"

    def test_evaluate_unsorted_history(self, loaded_client, history_request):
        """Test evaluation orders the history itself."""
        response = loaded_client.post("/status/evaluate", json={
            "history": list(reversed(history_request)),
            "now": "2020-10-15T13:00:00Z",
        })

        assert response.json()["status"]["health_status"] == "red"

    def test_evaluate_from_current_status(self, loaded_client):
        """Test evaluation starting from a supplied status."""
        response = loaded_client.post("/status/evaluate", json={
            "history": [],
            "current_status": {"health_status": "green", "priority": 3},
        })

        assert response.json()["status"]["health_status"] == "green"
        assert response.json()["status"]["priority"] == 3

    def test_resolve_status(self, loaded_client, history_request):
        """Test resolving one history entry."""
        response = loaded_client.post("/status/resolve", json={"history": history_request, "index": 0})

        assert response.status_code == 200
        status = response.json()["status"]
        assert status["health_status"] == "red"
        assert status["priority"] == 10
        assert status["next_step_date"] == "2020-10-25T12:00:00.000Z"

    def test_resolve_status_nothing_applies(self, loaded_client):
        """Test an entry without a matching rule resolves to no status."""
        entry = TestDataFactory.create_action_entry(TestDataFactory.day(0), "unknown-action")

        response = loaded_client.post("/status/resolve", json={
            "history": [TestDataFactory.entry_to_request_json(entry)],
            "index": 0,
        })

        assert response.status_code == 200
        assert response.json() == {"status": None}

    def test_resolve_status_index_out_of_range(self, loaded_client, history_request):
        """Test an out of range index is rejected."""
        response = loaded_client.post("/status/resolve", json={"history": history_request, "index": 5})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert response.json()["details"]["history_count"] == 2

    @pytest.mark.parametrize("status,current,expected", [
        ({"health_status": "red", "priority": 10}, {"health_status": "yellow", "priority": 1}, True),
        ({"health_status": "green", "priority": -100}, {"health_status": "red", "priority": 5}, True),
        ({"health_status": "yellow", "priority": 2}, {"health_status": "yellow", "priority": 3}, False),
        ({"health_status": "yellow", "priority": 3}, {"health_status": "yellow", "priority": 3}, True),
        ({"health_status": "orange"}, None, True),
    ])
    def test_can_update(self, client, status, current, expected):
        """Test the override check endpoint."""
        response = client.post("/status/can-update", json={"status": status, "current_status": current})

        assert response.status_code == 200
        assert response.json() == {"can_update": expected}
