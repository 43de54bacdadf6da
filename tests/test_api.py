from __future__ import annotations

from fastapi.testclient import TestClient

from conftest import RateLimited, json_response, make_response
from healthlens.services.retry import UpstreamExhaustedError

FACILITIES = [
    {"name": "Far Hospital", "type": "Hospital", "lat": 13.05, "lng": 77.60},
    {"name": "Corner Pharmacy", "type": "Pharmacy", "lat": 12.972, "lng": 77.595},
]


def test_facilities_endpoint_ranks_and_uses_camel_case(api_client, fake_genai):
    fake_genai.push(make_response("maps text"), json_response(FACILITIES))

    response = api_client.post("/api/analysis/facilities", json={"lat": 12.9716, "lng": 77.5946})

    assert response.status_code == 200
    payload = response.json()
    assert [f["name"] for f in payload] == ["Corner Pharmacy", "Far Hospital"]
    assert payload[0]["distance"].endswith(" m")
    assert payload[0]["distanceKm"] < payload[1]["distanceKm"]


def test_coordinates_are_validated(api_client):
    response = api_client.post("/api/analysis/facilities", json={"lat": 123, "lng": 0})
    assert response.status_code == 422


def test_location_endpoint_accepts_camel_case_body(api_client, fake_genai, settings):
    def handler(call):
        if call.model == settings.gemini_image_model:
            return RuntimeError("image model unavailable")
        return json_response({"summary": "Clean air.", "hazards": [], "diseases": []})

    fake_genai.handler = handler
    response = api_client.post(
        "/api/analysis/location",
        json={"lat": 28.61, "lng": 77.21, "language": "English", "knownName": "New Delhi"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["analysis"]["locationName"] == "New Delhi"
    assert body["illustrativeImage"] is None


def test_bot_command_omits_page_when_speaking(api_client, fake_genai):
    fake_genai.push(json_response({"action": "speak", "responseText": "Stay hydrated."}))

    response = api_client.post(
        "/api/analysis/bot-command",
        json={"message": "any tips?", "availablePages": ["welcome"]},
    )

    assert response.status_code == 200
    assert response.json() == {"action": "speak", "responseText": "Stay hydrated."}


def test_image_upload_rejects_non_images(api_client, fake_genai):
    response = api_client.post(
        "/api/analysis/image",
        data={"language": "English"},
        files={"image": ("notes.txt", b"hello", "text/plain")},
    )
    assert response.status_code == 400
    assert fake_genai.calls == []


def test_prescription_upload(api_client, fake_genai):
    fake_genai.push(json_response({"summary": "Two medicines.", "medicines": [{"name": "Amoxicillin"}], "precautions": []}))

    response = api_client.post(
        "/api/analysis/prescription",
        data={"language": "English"},
        files={"image": ("rx.jpg", b"\xff\xd8jpeg", "image/jpeg")},
    )

    assert response.status_code == 200
    assert response.json()["medicines"][0]["name"] == "Amoxicillin"
    assert fake_genai.calls[0].contents[0].inline_data.mime_type == "image/jpeg"


def test_rate_limit_exhaustion_maps_to_503(api_client, fake_genai):
    fake_genai.push(RateLimited(), RateLimited(), RateLimited())
    response = api_client.get("/api/analysis/geocode", params={"q": "Mysuru"})
    assert response.status_code == 503
    assert "busy" in response.json()["detail"]


def test_provider_error_maps_to_502(api_client, fake_genai):
    fake_genai.push(PermissionError("401 UNAUTHENTICATED"))
    response = api_client.get("/api/analysis/alerts")
    assert response.status_code == 502


def test_exhausted_error_type_is_preserved_through_router(api_client, gateway, monkeypatch):
    async def exhausted(*args, **kwargs):
        raise UpstreamExhaustedError(3, RateLimited())

    monkeypatch.setattr(gateway, "get_city_health_snapshot", exhausted)
    response = api_client.get("/api/analysis/city-snapshot", params={"city": "Pune", "country": "India"})
    assert response.status_code == 503


def test_unconfigured_gateway_returns_503():
    from healthlens.main import app

    with TestClient(app) as client:
        app.state.gateway = None
        response = client.get("/api/analysis/geocode", params={"q": "Pune"})
        health = client.get("/api/analysis/health")
    assert response.status_code == 503
    assert health.json() == {"ai": "unconfigured", "cache": None}


def test_health_reports_cache_backend(api_client, gateway):
    api_client.app.state.gateway = gateway
    assert api_client.get("/api/analysis/health").json() == {"ai": "ok", "cache": "memory"}
