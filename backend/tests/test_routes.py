"""API tests for the scan, queue, enrichment and admin endpoints."""

import base64
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from main import app
from scan_pipeline.feature_flags import get_feature_flags
from scan_pipeline.models.labels import EnrichedWine
from scan_pipeline.routes.deps import (
    get_enrichment_queue,
    get_image_intake,
    get_queue_store,
    get_wine_repository,
)
from scan_pipeline.services.image_intake import ImageIntake, SupabaseStorage

from conftest import ADMIN_KEY, FAKE_JPEG, SERVICE_ROLE_KEY, SUPABASE_URL, auth_header, make_token

OPUS_ONE_LABEL = {
    "producer": "Opus One Winery",
    "wine_name": "Opus One",
    "year": 2019,
    "varietals": ["Cabernet Sauvignon"],
    "confidence": 0.9,
}


@pytest.fixture
def storage_requests():
    return []


@pytest.fixture
def client(queue, repo, enrichment_queue, flags, storage_requests):
    """TestClient wired to a temp database and a mocked storage API."""

    def handler(request):
        storage_requests.append(request)
        if request.url.path.startswith("/storage/v1/object/list/"):
            return httpx.Response(200, json=[])
        return httpx.Response(200, json={"Key": request.url.path})

    intake = ImageIntake(SupabaseStorage(
        base_url=SUPABASE_URL, service_key="k", transport=httpx.MockTransport(handler)
    ))
    app.dependency_overrides[get_queue_store] = lambda: queue
    app.dependency_overrides[get_wine_repository] = lambda: repo
    app.dependency_overrides[get_enrichment_queue] = lambda: enrichment_queue
    app.dependency_overrides[get_image_intake] = lambda: intake
    app.dependency_overrides[get_feature_flags] = lambda: flags
    yield TestClient(app)
    app.dependency_overrides.clear()


def _user(sub="user-1"):
    return auth_header(make_token(sub=sub))


def _service():
    return auth_header(SERVICE_ROLE_KEY)


def _submit_base64(client, headers=None, **body):
    payload = {"image_base64": base64.b64encode(FAKE_JPEG).decode()}
    payload.update(body)
    return client.post("/scan/base64", json=payload, headers=headers if headers is not None else _user())


class TestInfoEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_root(self, client):
        assert client.get("/").json()["name"] == "Vinho Scan Pipeline API"


class TestCors:
    def test_preflight(self, client):
        response = client.options("/scan", headers={"Origin": "http://localhost:3000"})
        assert response.status_code == 200
        assert response.text == "ok"
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"

    def test_unknown_origin_gets_production_origin(self, client):
        response = client.get("/health", headers={"Origin": "https://evil.example.com"})
        assert response.headers["access-control-allow-origin"] == "https://www.vinho.dev"


class TestSubmitScan:
    def test_requires_session(self, client):
        response = _submit_base64(client, headers={})
        assert response.status_code == 401

    def test_base64_submission(self, client, queue, repo, storage_requests):
        response = _submit_base64(client, ocr_text="OPUS ONE 2019")

        assert response.status_code == 202
        body = response.json()
        assert body["message"] == "Scan queued for processing"
        job = queue.get(body["queueItemId"])
        assert job.scan_id == body["scanId"]
        assert job.user_id == "user-1"
        assert job.ocr_text == "OPUS ONE 2019"
        assert repo.get_scan(body["scanId"])["user_id"] == "user-1"
        assert len(storage_requests) == 1

    def test_data_uri_prefix(self, client):
        payload = "data:image/jpeg;base64," + base64.b64encode(FAKE_JPEG).decode()
        response = client.post("/scan/base64", json={"image_base64": payload}, headers=_user())
        assert response.status_code == 202

    def test_invalid_base64(self, client):
        response = _submit_base64(client, image_base64="not base64!!")
        assert response.status_code == 400

    def test_invalid_content_type(self, client):
        response = _submit_base64(client, content_type="image/gif")
        assert response.status_code == 400
        assert "Invalid image type" in response.json()["detail"]

    def test_duplicate_idempotency_key(self, client):
        first = _submit_base64(client, idempotency_key="tap-1")
        second = _submit_base64(client, idempotency_key="tap-1")

        assert second.status_code == 409
        assert second.json()["detail"]["queueItemId"] == first.json()["queueItemId"]

    def test_multipart_submission(self, client, queue):
        response = client.post(
            "/scan",
            files={"image": ("label.jpg", FAKE_JPEG, "image/jpeg")},
            data={"ocr_text": "OPUS ONE"},
            headers={**_user(), "Idempotency-Key": "tap-9"},
        )
        assert response.status_code == 202
        job = queue.get(response.json()["queueItemId"])
        assert job.idempotency_key == "tap-9"
        assert job.ocr_text == "OPUS ONE"

    def test_storage_failure_is_502(self, queue, repo, flags):
        intake = ImageIntake(SupabaseStorage(
            base_url=SUPABASE_URL,
            service_key="k",
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text="unavailable")),
        ))
        app.dependency_overrides[get_queue_store] = lambda: queue
        app.dependency_overrides[get_wine_repository] = lambda: repo
        app.dependency_overrides[get_image_intake] = lambda: intake
        app.dependency_overrides[get_feature_flags] = lambda: flags
        try:
            response = _submit_base64(TestClient(app))
        finally:
            app.dependency_overrides.clear()
        assert response.status_code == 502


class TestScanStatus:
    def test_owner_sees_status(self, client):
        job_id = _submit_base64(client).json()["queueItemId"]
        response = client.get(f"/scan/{job_id}", headers=_user())

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["retry_count"] == 0
        assert body["matched_vintage_id"] is None

    def test_other_user_gets_404(self, client):
        job_id = _submit_base64(client).json()["queueItemId"]
        assert client.get(f"/scan/{job_id}", headers=_user("user-2")).status_code == 404

    def test_unknown_job(self, client):
        assert client.get("/scan/9999", headers=_user()).status_code == 404


class TestProcessQueue:
    def test_rejects_user_token(self, client):
        response = client.post("/process-wine-queue", headers=_user())
        assert response.status_code == 401
        assert response.json() == {"detail": "Unauthorized"}

    def test_rejects_missing_auth(self, client):
        assert client.post("/process-wine-queue").status_code == 401

    def test_empty_queue(self, client):
        response = client.post("/process-wine-queue", headers=_service())
        assert response.status_code == 200
        assert response.json() == {"success": True, "processed_count": 0, "failed_count": 0, "total": 0}

    def test_processes_submitted_scans(self, client):
        _submit_base64(client, ocr_text="one")
        _submit_base64(client, ocr_text="two")

        with patch("scan_pipeline.services.label_extractor.complete_json",
                   new=AsyncMock(side_effect=[OPUS_ONE_LABEL, ValueError("not JSON")])), \
             patch("scan_pipeline.services.enrichment.complete_json",
                   new=AsyncMock(return_value={"wine_type": "red"})), \
             patch("scan_pipeline.services.geocoder.complete_json",
                   new=AsyncMock(return_value={})):
            response = client.post("/process-wine-queue", json={"limit": 10}, headers=_service())

        assert response.status_code == 200
        assert response.json() == {"success": True, "processed_count": 1, "failed_count": 1, "total": 2}

    def test_service_role_jwt(self, client):
        token = make_token(sub="service", role="service_role")
        assert client.post("/process-wine-queue", headers=auth_header(token)).status_code == 200

    def test_invalid_limit(self, client):
        response = client.post("/process-wine-queue", json={"limit": 0}, headers=_service())
        assert response.status_code == 422


class TestSweep:
    def test_sweep(self, client):
        response = client.post("/sweep-wine-queue", headers=_service())
        assert response.status_code == 200
        assert response.json() == {"success": True, "requeued": 0, "finalized": 0}

    def test_requires_internal_auth(self, client):
        assert client.post("/sweep-wine-queue", headers=_user()).status_code == 401


class TestCleanup:
    def test_requires_target(self, client):
        response = client.post("/cleanup-wine-data", json={}, headers=auth_header(ADMIN_KEY))
        assert response.status_code == 400

    def test_user_cleanup(self, client, queue):
        _submit_base64(client)
        response = client.post("/cleanup-wine-data", json={"user_id": "user-1"}, headers=auth_header(ADMIN_KEY))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["stats"]["queue_deleted"] == 1
        assert body["stats"]["scans_deleted"] == 1
        assert body["total_deleted"] == 2
        assert queue.counts_by_status()["pending"] == 0

    def test_requires_internal_auth(self, client):
        response = client.post("/cleanup-wine-data", json={"delete_all": True}, headers=_user())
        assert response.status_code == 401


class TestEnrichmentEndpoints:
    def _tasted(self, repo, user_id="user-1"):
        result = repo.resolve(EnrichedWine(producer="Opus One Winery", wine_name="Opus One", confidence=0.9, year=2019))
        repo.create_tasting(user_id, result.vintage_id, None)
        return result

    def test_enrich_wines_queues_user_wines(self, client, repo, enrichment_queue):
        self._tasted(repo)
        response = client.post("/enrich-wines", json={}, headers=_user())

        assert response.status_code == 200
        body = response.json()
        assert (body["success"], body["queued"], body["skipped"]) == (True, 1, 0)
        assert enrichment_queue.counts_by_status()["pending"] == 1

    def test_enrich_wines_requires_user(self, client):
        assert client.post("/enrich-wines", json={}).status_code == 401

    def test_enrich_wines_invalid_action(self, client):
        response = client.post("/enrich-wines", json={"action": "drop"}, headers=_user())
        assert response.status_code == 400
        assert response.json() == {"detail": "Invalid action"}

    def test_process_enrichment_queue(self, client, repo, enrichment_queue):
        result = self._tasted(repo)
        client.post("/enrich-wines", json={}, headers=_user())

        with patch("scan_pipeline.services.enrichment.complete_json",
                   new=AsyncMock(return_value={"wine_type": "red", "varietals": ["Cabernet Sauvignon"]})):
            response = client.post("/process-enrichment-queue", json={"limit": 3}, headers=_service())

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "processed": 1,
            "failed": 0,
            "total": 1,
            "message": "Processed 1 enrichment jobs, 0 failed",
        }
        assert repo.get_wine(result.wine_id).wine_type == "red"
        assert enrichment_queue.counts_by_status()["completed"] == 1

    def test_process_enrichment_queue_empty(self, client):
        response = client.post("/process-enrichment-queue", headers=_service())
        assert response.status_code == 200
        assert response.json()["message"] == "No pending enrichment jobs"

    def test_process_enrichment_queue_invalid_action(self, client):
        response = client.post("/process-enrichment-queue", json={"action": "purge"}, headers=_service())
        assert response.status_code == 400

    def test_process_enrichment_queue_requires_internal_auth(self, client):
        assert client.post("/process-enrichment-queue", headers=_user()).status_code == 401
