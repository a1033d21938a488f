import asyncio
import copy

from fastapi.testclient import TestClient

import main
from models import MalformedModelOutput, UpstreamFailure
from sample_payloads import (
    DIAGNOSIS_PAYLOAD,
    PRICING_ANALYSIS_PAYLOAD,
    PRICING_PAYLOAD,
    TRIAGE_PAYLOAD,
    VISION_PAYLOAD,
)


client = TestClient(main.app)


def _create_case(**body):
    resp = client.post("/cases", json=body)
    assert resp.status_code == 200
    return resp.json()["case"]


def _upload_photo(case_id):
    resp = client.post(
        f"/cases/{case_id}/media",
        files={"file": ("tap.jpg", b"\xff\xd8\xff\xe0jpeg", "image/jpeg")},
    )
    assert resp.status_code == 200
    return resp.json()["case"]


def test_caf_case_end_to_end_flow(scripted_model):
    case = _create_case(description="Kitchen tap is leaking")
    case_id = case["case_id"]
    assert case["status"] == "new"
    assert case["title"] == "Untitled Case"

    scripted_model.queue(TRIAGE_PAYLOAD)
    triage_resp = client.post(f"/cases/{case_id}/triage", json={"description": "Kitchen tap is leaking"})
    assert triage_resp.status_code == 200
    triage_body = triage_resp.json()
    assert triage_body["success"] is True
    assert triage_body["status"] == "triaged"
    assert triage_body["result"]["category"] == "Plumbing"
    assert triage_body["case"]["title"] == "Plumbing: Leaking tap"

    message_resp = client.post(f"/cases/{case_id}/tenant-message", json={"answers": {}})
    assert message_resp.status_code == 200
    message = message_resp.json()["message"]
    assert "What type of tap?" in message
    assert message.count("Hi, could you please clarify") == 1

    with_photo = _upload_photo(case_id)
    assert with_photo["media"][0]["contentType"] == "image/jpeg"

    scripted_model.queue(VISION_PAYLOAD)
    vision_resp = client.post(f"/cases/{case_id}/vision", json={"context": "Leaking kitchen tap"})
    assert vision_resp.status_code == 200
    assert vision_resp.json()["status"] == "visioned"

    scripted_model.queue(DIAGNOSIS_PAYLOAD)
    diagnosis_resp = client.post(
        f"/cases/{case_id}/diagnosis",
        json={"answers": {"q1": "Mixer"}, "tenant_text": "Drips all night"},
    )
    assert diagnosis_resp.status_code == 200
    diagnoses = diagnosis_resp.json()["result"]["diagnoses"]
    assert [d["severity"] for d in diagnoses] == ["high", "low"]

    scripted_model.queue(PRICING_PAYLOAD)
    pricing_resp = client.post(f"/cases/{case_id}/pricing", json={"diagnosis_index": 1})
    assert pricing_resp.status_code == 200
    pricing_body = pricing_resp.json()
    assert pricing_body["status"] == "priced"
    assert pricing_body["result"]["final_recommended_price"] == 145.48
    pricing_prompt = scripted_model.last_prompt.rendered_text()
    assert "Trade required: Handyman" in pricing_prompt
    assert "Estimated material cost: 12.5" in pricing_prompt

    scripted_model.queue(PRICING_ANALYSIS_PAYLOAD)
    analysis_resp = client.post(
        f"/cases/{case_id}/pricing/analysis",
        json={"job_text": "Subbie quote $198 incl GST"},
    )
    assert analysis_resp.status_code == 200
    assert analysis_resp.json()["status"] == "priced"

    get_resp = client.get(f"/cases/{case_id}")
    assert get_resp.status_code == 200
    stored = get_resp.json()["case"]
    assert stored["pricing_diagnosis_index"] == 1
    assert [t["stage"] for t in stored["traces"]] == [
        "triage",
        "vision",
        "diagnosis",
        "pricing",
        "pricing_analysis",
    ]


def test_retriage_resets_downstream_stages(scripted_model):
    case_id = _create_case(description="Tap leaking")["case_id"]
    _upload_photo(case_id)
    scripted_model.queue(TRIAGE_PAYLOAD, VISION_PAYLOAD, DIAGNOSIS_PAYLOAD, PRICING_PAYLOAD, TRIAGE_PAYLOAD)
    client.post(f"/cases/{case_id}/triage", json={"description": "Tap leaking"})
    client.post(f"/cases/{case_id}/vision", json={"context": "Tap"})
    client.post(f"/cases/{case_id}/diagnosis", json={"answers": {}})
    client.post(f"/cases/{case_id}/pricing", json={"diagnosis_index": 0})

    resp = client.post(f"/cases/{case_id}/triage", json={"description": "Tap leaking badly"})

    body = resp.json()
    assert resp.status_code == 200
    assert body["status"] == "triaged"
    assert body["case"]["vision"] is None
    assert body["case"]["diagnosis"] is None
    assert body["case"]["pricing"] is None
    assert len(body["case"]["media"]) == 1


def test_final_diagnosis_before_triage_is_rejected(scripted_model):
    case_id = _create_case(description="Tap leaking")["case_id"]

    resp = client.post(
        f"/cases/{case_id}/diagnosis",
        json={"answers": {}, "vision_recon_raw": '{"vision_summary": "drip"}'},
    )

    assert resp.status_code == 400
    detail = resp.json()["detail"]
    assert detail["kind"] == "validation_failure"
    assert detail["field"] == "triage"
    assert client.get(f"/cases/{case_id}").json()["case"]["status"] == "new"


def test_pricing_schema_violation_is_reported(scripted_model):
    case_id = _create_case(description="Tap leaking")["case_id"]
    _upload_photo(case_id)
    payload = copy.deepcopy(PRICING_PAYLOAD)
    del payload["price_recommendation"]["final_recommended_price"]
    scripted_model.queue(TRIAGE_PAYLOAD, VISION_PAYLOAD, DIAGNOSIS_PAYLOAD, payload)
    client.post(f"/cases/{case_id}/triage", json={"description": "Tap leaking"})
    client.post(f"/cases/{case_id}/vision", json={"context": "Tap"})
    client.post(f"/cases/{case_id}/diagnosis", json={"answers": {}})

    resp = client.post(f"/cases/{case_id}/pricing", json={"diagnosis_index": 0})

    assert resp.status_code == 502
    detail = resp.json()["detail"]
    assert detail["kind"] == "schema_violation"
    assert detail["missing_fields"] == ["final_recommended_price"]
    assert client.get(f"/cases/{case_id}").json()["case"]["pricing"] is None


def test_upstream_failures_map_to_gateway_errors(scripted_model):
    case_id = _create_case(description="Tap leaking")["case_id"]
    scripted_model.queue(
        UpstreamFailure(message="Model provider returned HTTP 500.", status_code=500, body="boom"),
        UpstreamFailure(message="Model call timed out", timeout=True),
        MalformedModelOutput(message="no json", raw_text="sorry", cleaned_text="sorry"),
    )

    first = client.post(f"/cases/{case_id}/triage", json={"description": "Tap leaking"})
    second = client.post(f"/cases/{case_id}/triage", json={"description": "Tap leaking"})
    third = client.post(f"/cases/{case_id}/triage", json={"description": "Tap leaking"})

    assert first.status_code == 502
    assert first.json()["detail"]["status_code"] == 500
    assert first.json()["detail"]["stage"] == "triage"
    assert second.status_code == 504
    assert third.status_code == 502
    assert third.json()["detail"]["raw_text"] == "sorry"


def test_failure_diagnostics_hidden_when_errors_not_exposed(scripted_model, monkeypatch):
    monkeypatch.setenv("CAF_EXPOSE_ERRORS", "false")
    case_id = _create_case(description="Tap leaking")["case_id"]
    scripted_model.queue(MalformedModelOutput(message="no json", raw_text="sorry", cleaned_text="sorry"))

    resp = client.post(f"/cases/{case_id}/triage", json={"description": "Tap leaking"})

    assert resp.status_code == 502
    assert resp.json()["detail"]["kind"] == "malformed_model_output"
    assert "raw_text" not in resp.json()["detail"]


def test_unknown_case_returns_404(scripted_model):
    assert client.get("/cases/does-not-exist").status_code == 404
    resp = client.post("/cases/does-not-exist/triage", json={"description": "Leak"})
    assert resp.status_code == 404
    assert resp.json()["detail"]["not_found"] is True
    assert client.post("/cases/does-not-exist/tenant-message", json={"answers": {}}).status_code == 404


def test_tenant_message_before_triage_is_rejected():
    case_id = _create_case(description="Tap leaking")["case_id"]
    resp = client.post(f"/cases/{case_id}/tenant-message", json={"answers": {}})
    assert resp.status_code == 400


def test_vision_without_photos_is_rejected(scripted_model):
    case_id = _create_case(description="Tap leaking")["case_id"]
    resp = client.post(f"/cases/{case_id}/vision", json={"context": "Tap"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["field"] == "media"
    assert scripted_model.calls == []


def test_upload_and_serve_local_media():
    resp = client.post("/uploads", files={"file": ("tap.png", b"png-bytes", "image/png")})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["bytes_uploaded"] == 9
    assert body["url"].startswith("http://testserver/media/")

    served = client.get(body["url"])
    assert served.status_code == 200
    assert served.content == b"png-bytes"

    assert client.get("/media/not-there.png").status_code == 404


def test_upload_rejects_empty_and_oversized_files():
    empty = client.post("/uploads", files={"file": ("empty.jpg", b"", "image/jpeg")})
    assert empty.status_code == 400
    assert "empty" in empty.json()["detail"].lower()

    too_big = client.post("/uploads", files={"file": ("big.jpg", b"x" * 2048, "image/jpeg")})
    assert too_big.status_code == 413


def test_list_cases_newest_first():
    first = _create_case(external_job_id="EA-1")
    second = _create_case(external_job_id="EA-2")

    resp = client.get("/cases", params={"limit": 500})
    assert resp.status_code == 200
    ids = [c["case_id"] for c in resp.json()["cases"]]
    assert ids.index(second["case_id"]) < ids.index(first["case_id"])


def test_health_and_root():
    health = client.get("/health")
    assert health.status_code == 200
    body = health.json()
    assert body["status"] == "ok"
    assert body["case_store_backend"] == "sqlite"
    assert body["media_upload_backend"] == "local"
    assert set(body["models"]) == {
        "triage",
        "vision",
        "refine",
        "diagnosis",
        "pricing",
        "pricing_analysis",
    }

    root = client.get("/")
    assert root.status_code == 200
    assert root.json()["service"] == "caf-copilot-service"


def test_media_store_runs_outside_the_event_loop(monkeypatch):
    storage = main.copilot_orchestrator.media_storage
    original_store = storage.store
    seen = []

    def _store(*args, **kwargs):
        try:
            asyncio.get_running_loop()
            seen.append("on_loop")
        except RuntimeError:
            seen.append("worker_thread")
        return original_store(*args, **kwargs)

    monkeypatch.setattr(storage, "store", _store)

    resp = client.post("/uploads", files={"file": ("tap.png", b"png-bytes", "image/png")})

    assert resp.status_code == 200
    assert seen == ["worker_thread"]
