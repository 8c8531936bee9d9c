"""
Study Design API 테스트

POST /study-design, GET /study-design/config, POST /study-design/config/reload
"""

import shutil

import pytest
from fastapi.testclient import TestClient

from api.main import app
from services.study_design.config_loader import CONFIG_DIR, clear_cache


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


class TestStudyDesignAPI:
    """POST /study-design"""

    def test_generic_be_study(self, client):
        response = client.post(
            "/study-design",
            json={
                "product_type": "generic",
                "compound_name": "omeprazole",
                "stage_hint": "Phase 1 BE study",
                "formulation": {"dosageForm": "capsule", "route": "oral"},
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "pattern_selected"
        assert data["regulatory_pathway"] == "generic"
        assert data["primary_objective"] == "pk_equivalence"
        assert data["design_pattern"] == "PK_CROSSOVER_BE"
        assert data["confidence"] == 95
        assert data["decision_trace"][0]["step"] == "0. versions"
        assert data["structured_rationale"]["what"].startswith("Selected design:")
        assert data["protocol"]["acceptance_criteria"]["criterion"] == "Average Bioequivalence"
        assert data["protocol"]["dosing"]["regimen"] == "single-dose"

    def test_camel_case_drug_characteristics(self, client):
        response = client.post(
            "/study-design",
            json={
                "product_type": "generic",
                "compound_name": "clopidogrel",
                "stage_hint": "BE study",
                "drug_characteristics": {"isHVD": True, "halfLife": 6},
            },
        )
        assert response.status_code == 200
        assert response.json()["design_pattern"] == "PK_CROSSOVER_BE_REPLICATE"

    def test_snake_case_drug_characteristics(self, client):
        response = client.post(
            "/study-design",
            json={
                "product_type": "generic",
                "compound_name": "warfarin",
                "drug_characteristics": {"is_nti": True},
            },
        )
        assert response.status_code == 200
        warnings = response.json()["warnings"]
        assert [w["rule_id"] for w in warnings] == ["GR-104"]
        assert warnings[0]["severity"] == "SOFT"

    def test_human_decision_is_not_an_error(self, client):
        response = client.post(
            "/study-design",
            json={"product_type": "biosimilar", "compound_name": "adalimumab", "stage_hint": "Phase 2 dose"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "human_decision_required"
        assert data["design_pattern"] is None
        assert data["confidence"] == 0
        assert data["warnings"][0]["rule_id"] == "HUMAN_DECISION_REQUIRED"

    def test_unknown_product_type_rejected(self, client):
        response = client.post("/study-design", json={"product_type": "device", "compound_name": "stent"})
        assert response.status_code == 422

    def test_empty_compound_name_rejected(self, client):
        response = client.post("/study-design", json={"product_type": "generic", "compound_name": ""})
        assert response.status_code == 422


class TestConfigEndpoints:
    """GET /study-design/config, POST /study-design/config/reload"""

    def test_config_status(self, client):
        response = client.get("/study-design/config")
        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert len(data["config_hash"]) == 16
        assert data["pattern_count"] == 12
        assert data["versions"]["fallback"] == "2.0"
        assert data["versions"]["protocol"] == "1.0"

    def test_reload_keeps_hash_for_unchanged_config(self, client):
        before = client.get("/study-design/config").json()["config_hash"]
        response = client.post("/study-design/config/reload")
        assert response.status_code == 200
        assert response.json()["config_hash"] == before

    def test_reload_rejects_invalid_config(self, client, tmp_path, monkeypatch):
        before = client.get("/study-design/config").json()["config_hash"]
        (tmp_path / "patterns.yaml").write_text("version: '1.0'\npatterns: []\n", encoding="utf-8")
        (tmp_path / "guardrails.yaml").write_text("version: '1.0'\nrules: []\n", encoding="utf-8")
        (tmp_path / "fallback_order.yaml").write_text(
            "version: '1.0'\nfallback_order:\n  'innovator:pk_safety': [SAD]\n", encoding="utf-8"
        )
        (tmp_path / "classification.yaml").write_text("version: '1.0'\n", encoding="utf-8")
        monkeypatch.setenv("STUDY_DESIGN_CONFIG_DIR", str(tmp_path))

        response = client.post("/study-design/config/reload")
        assert response.status_code == 422
        locations = [e["location"] for e in response.json()["detail"]["errors"]]
        assert "fallback_order[innovator:pk_safety][0]" in locations

        monkeypatch.delenv("STUDY_DESIGN_CONFIG_DIR")
        clear_cache()
        assert client.get("/study-design/config").json()["config_hash"] == before


    def test_reload_reports_malformed_yaml(self, client, tmp_path, monkeypatch):
        for path in CONFIG_DIR.glob("*.yaml"):
            shutil.copy(path, tmp_path / path.name)
        (tmp_path / "guardrails.yaml").write_text("rules: [unclosed\n", encoding="utf-8")
        monkeypatch.setenv("STUDY_DESIGN_CONFIG_DIR", str(tmp_path))

        response = client.post("/study-design/config/reload")
        assert response.status_code == 422
        locations = [e["location"] for e in response.json()["detail"]["errors"]]
        assert "guardrails.yaml" in locations

        monkeypatch.delenv("STUDY_DESIGN_CONFIG_DIR")
        clear_cache()


class TestServiceUnavailable:
    """engine 미초기화"""

    def test_returns_503_without_engine(self):
        client = TestClient(app)
        app.state.engine = None
        response = client.post("/study-design", json={"product_type": "generic", "compound_name": "omeprazole"})
        assert response.status_code == 503


class TestHealthEndpoint:
    """헬스 체크 / API 정보"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        paths = [e["path"] for e in response.json()["endpoints"]]
        assert "/study-design" in paths
