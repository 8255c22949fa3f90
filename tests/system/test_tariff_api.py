from __future__ import annotations

from dutystack.api.security import set_rate_limit
from dutystack.config import get_settings


def test_health_and_version(system_client):
    health = system_client.get("/health")
    assert health.status_code == 200
    body = health.json()
    assert body["ok"] is True
    assert body["hierarchy_nodes"] > 0
    assert body["layers"] > 0

    version = system_client.get("/v1/version").json()
    assert version["engine_version"] == "0.1.0"
    assert version["hierarchy_revision"]
    assert version["catalog_version"]


def test_missing_api_key_rejected(anonymous_client):
    response = anonymous_client.get("/api/tariff/resolve", params={"code": "6109100010", "country": "VN"})
    assert response.status_code == 401


def test_unknown_api_key_rejected(anonymous_client):
    response = anonymous_client.get(
        "/api/tariff/cache/status",
        headers={"X-API-Key": "not-a-key"},
    )
    assert response.status_code == 401


def test_rate_limit_enforced(system_client):
    set_rate_limit(2)
    codes = [system_client.get("/api/tariff/cache/status").status_code for _ in range(3)]
    assert codes == [200, 200, 429]


def test_rate_limit_counts_per_route_template(system_client):
    set_rate_limit(2)
    codes = [
        system_client.get(f"/api/tariff/hierarchy/{code}").status_code
        for code in ("6912", "69", "6109")
    ]
    assert codes == [200, 200, 429]
    assert system_client.get("/api/tariff/cache/status").status_code == 200


def test_rate_limit_and_keys_come_from_settings(monkeypatch, system_client):
    monkeypatch.setenv("DUTYSTACK_RATE_LIMIT_PER_MINUTE", "1")
    monkeypatch.setenv("DUTYSTACK_API_KEYS", "rotated-key, system-key")
    get_settings.cache_clear()
    set_rate_limit(None)

    codes = [system_client.get("/api/tariff/cache/status").status_code for _ in range(2)]
    assert codes == [200, 429]
    rotated = system_client.get("/api/tariff/history", headers={"X-API-Key": "rotated-key"})
    assert rotated.status_code == 200


def test_resolve_effective_rate(system_client):
    response = system_client.get(
        "/api/tariff/resolve",
        params={"code": "6109.10.00.10", "country": "vn", "as_of": "2025-09-01"},
    )
    assert response.status_code == 200, response.text
    assert response.headers.get("X-Run-ID")
    body = response.json()
    assert body["code"] == "6109100010"
    assert body["country"] == "VN"
    assert body["base_mfn_rate"] == 16.5
    assert body["effective_rate"] == 36.5


def test_resolve_unknown_code_suggests_prefix(system_client):
    response = system_client.get("/api/tariff/resolve", params={"code": "6109999999", "country": "VN"})
    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "CODE_NOT_FOUND"
    assert "6109" in body["hint"]


def test_resolve_malformed_code(system_client):
    response = system_client.get("/api/tariff/resolve", params={"code": "61O9", "country": "VN"})
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_CODE_FORMAT"


def test_landed_cost(system_client):
    payload = {
        "hts_code": "6109100010",
        "country_code": "VN",
        "product_value": 10000,
        "quantity": 500,
        "shipping_cost": 300,
        "insurance_cost": 50,
        "as_of": "2025-06-10",
    }
    response = system_client.post("/api/tariff/landed-cost", json=payload)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["effective_rate"] == 26.5
    assert body["duties"] == 2650.0
    assert body["fees_total"] == 47.14
    assert body["total_landed_cost"] == 13047.14
    assert body["duty_breakdown"]["code"] == "6109100010"


def test_landed_cost_rejects_zero_quantity(system_client):
    payload = {"hts_code": "6109100010", "country_code": "VN", "product_value": 100, "quantity": 0}
    response = system_client.post("/api/tariff/landed-cost", json=payload)
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_INPUT"


def test_landed_cost_rejects_overflowing_value(system_client):
    body = '{"hts_code": "6109100010", "country_code": "VN", "product_value": 1e999, "quantity": 1}'
    response = system_client.post(
        "/api/tariff/landed-cost",
        content=body,
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 422
    assert response.json()["error"] == "VALIDATION_ERROR"
    assert [field["path"] for field in response.json()["fields"]] == ["request.product_value"]


def test_landed_cost_validation_error_shape(system_client):
    response = system_client.post("/api/tariff/landed-cost", json={"country_code": "VN"})
    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "VALIDATION_ERROR"
    paths = {field["path"] for field in body["fields"]}
    assert "request.hts_code" in paths
    assert "request.product_value" in paths


def test_classify_attaches_duties_and_records_history(system_client):
    payload = {"description": "ceramic coffee mug", "country_of_origin": "CN", "as_of": "2025-06-10"}
    response = system_client.post("/api/tariff/classify", json=payload)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["primary"]["code"] == "69120044"
    assert body["primary"]["duty"]["effective_rate"] == 65.0
    assert body["needs_clarification"] is False
    assert body["destination_country"] == "US"

    history = system_client.get("/api/tariff/history", params={"limit": 5}).json()
    assert history["count"] == 1
    assert history["items"][0]["hts_code"] == "69120044"
    assert history["items"][0]["country_of_origin"] == "CN"


def test_classify_vague_description_asks_questions(system_client):
    response = system_client.post("/api/tariff/classify", json={"description": "widget"})
    body = response.json()
    assert body["primary"] is None
    assert body["needs_clarification"] is True
    assert body["questions"]


def test_classify_stopword_only_description_is_not_an_error(system_client):
    response = system_client.post("/api/tariff/classify", json={"description": "Other"})
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["primary"] is None
    assert body["needs_clarification"] is True
    assert [q["factor"] for q in body["questions"]] == ["detail"]


def test_optimize(system_client):
    payload = {
        "product_description": "ceramic coffee mug",
        "country_of_origin": "CN",
        "unit_value": 100,
        "max_results": 3,
        "as_of": "2025-06-10",
    }
    response = system_client.post("/api/tariff/optimize", json=payload)
    assert response.status_code == 200, response.text
    body = response.json()
    assert len(body["applicable_codes"]) == 3
    assert body["recommended_code"] == "69111080"
    assert body["savings_summary"]["baseline_code"] == "69120044"


def test_optimize_rejects_zero_max_results(system_client):
    payload = {"product_description": "mug", "country_of_origin": "CN", "max_results": 0}
    response = system_client.post("/api/tariff/optimize", json=payload)
    assert response.status_code == 422


def test_hierarchy_lookup(system_client):
    body = system_client.get("/api/tariff/hierarchy/6912").json()
    assert body["node"]["code"] == "6912"
    assert [a["code"] for a in body["ancestors"]] == ["69"]
    assert [c["code"] for c in body["children"]] == ["691200"]


def test_cache_status_and_clear(system_client):
    params = {"code": "72085100", "country": "CN", "as_of": "2025-06-10"}
    assert system_client.get("/api/tariff/resolve", params=params).status_code == 200
    assert system_client.get("/api/tariff/resolve", params=params).status_code == 200

    status = system_client.get("/api/tariff/cache/status").json()
    assert status["resolve"]["entries"] == 1
    assert status["resolve"]["loads"] == 1

    cleared = system_client.post("/api/tariff/cache/clear").json()["cleared"]
    assert cleared["resolve"] == 1
    assert system_client.get("/api/tariff/cache/status").json()["resolve"]["entries"] == 0


def test_resolve_carries_adcvd_warning(system_client):
    params = {"code": "72085100", "country": "CN", "as_of": "2025-06-10"}
    body = system_client.get("/api/tariff/resolve", params=params).json()
    assert body["effective_rate"] == 95.0
    assert "ADCVD_WARNING" in body["flags"]
    assert body["adcvd_warning"]["order_id"] == "hot-rolled-steel"
    assert body["adcvd_warning"]["country_affected"] is True


def test_compare_origins(system_client):
    payload = {
        "hts_code": "6912.00.44",
        "countries": ["VN", "MX", "KR"],
        "current_origin": "CN",
        "product_value": 10000,
        "as_of": "2025-06-10",
    }
    response = system_client.post("/api/tariff/compare-origins", json=payload)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["cheapest_origin"] == "KR"
    assert body["most_expensive_origin"] == "CN"
    assert [row["country"] for row in body["origins"]] == ["KR", "VN", "MX", "CN"]
    assert body["origins"][0]["savings_vs_current"] == 5500.0
    assert body["origins"][0]["is_cheapest"] is True
    assert body["origins"][-1]["is_current"] is True


def test_compare_origins_validation(system_client):
    response = system_client.post(
        "/api/tariff/compare-origins",
        json={"hts_code": "69120044", "countries": ["CN"], "product_value": -5},
    )
    assert response.status_code == 422
    bad_origin = system_client.post(
        "/api/tariff/compare-origins",
        json={"hts_code": "69120044", "countries": ["CN", "China"]},
    )
    assert bad_origin.status_code == 400
    assert bad_origin.json()["error"] == "INVALID_INPUT"
