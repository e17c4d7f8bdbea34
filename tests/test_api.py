import dataclasses

from fastapi.testclient import TestClient

from proxy_pipeline.api.app import create_app

from conftest import make_settings

SOURCE = "https://cdn.example.com/a.mp4"


def _create(client, auth, **body):
    payload = {"fileId": "f1", "sourceUrl": SOURCE}
    payload.update(body)
    return client.post("/transcode", json=payload, headers=auth)


class TestTranscode:
    def test_accepted(self, client, auth):
        resp = _create(client, auth, qualities=["low-tier", "mid-tier"])

        assert resp.status_code == 202
        body = resp.json()
        assert body["success"] is True
        assert body["jobId"].startswith("transcode-")
        assert body["status"] == "processing"

    def test_requires_secret(self, client):
        resp = client.post("/transcode", json={"fileId": "f1", "sourceUrl": SOURCE})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}

    def test_wrong_secret(self, client):
        resp = _create(client, {"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_unset_secret_locks_privileged_routes(self, services):
        open_services = dataclasses.replace(services, settings=make_settings(api_secret=""))
        client = TestClient(create_app(services=open_services))

        assert client.post("/transcode", json={"fileId": "f1", "sourceUrl": SOURCE},
                           headers={"Authorization": "Bearer "}).status_code == 401
        assert client.post("/lifecycle").status_code == 401

    def test_unsupported_quality(self, client, auth):
        resp = _create(client, auth, qualities=["360p", "8k"])

        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "Invalid qualities"
        assert "8k" in body["message"]
        assert "high-tier" in body["validQualities"]

    def test_bad_source_url(self, client, auth):
        resp = _create(client, auth, sourceUrl="ftp://example.com/a.mp4")
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid sourceUrl"

    def test_missing_fields(self, client, auth):
        resp = client.post("/transcode", json={"sourceUrl": SOURCE}, headers=auth)
        assert resp.status_code == 400
        assert resp.json()["error"] == "Missing required parameter"

    def test_malformed_body_maps_to_400(self, client, auth):
        resp = client.post("/transcode", content=b"{nope", headers={**auth, "Content-Type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid request"

    def test_provisioning_failure_is_reported_on_job(self, client, auth, provisioner):
        provisioner.provision_error = "SSH key IDs are required for droplet creation"

        resp = _create(client, auth)

        assert resp.status_code == 202
        assert resp.json()["status"] == "failed"
        status = client.get(f"/status/{resp.json()['jobId']}").json()
        assert status["error"] == "SSH key IDs are required for droplet creation"


class TestStatusAndWebhook:
    def test_status_view_is_camel_case(self, client, auth):
        job_id = _create(client, auth, qualities=["360p"]).json()["jobId"]

        body = client.get(f"/status/{job_id}").json()

        assert body["jobId"] == job_id
        assert body["fileId"] == "f1"
        assert body["requestedQualities"] == ["360p"]
        assert body["completedQualities"] == []
        assert body["progress"] == 0
        assert body["isUpgrade"] is False
        assert body["completedAt"] is None

    def test_unknown_job(self, client):
        resp = client.get("/status/transcode-missing")
        assert resp.status_code == 404
        assert resp.json()["error"] == "Job not found"

    def test_webhook_completes_job(self, client, auth):
        job_id = _create(client, auth, qualities=["360p"]).json()["jobId"]

        resp = client.post("/webhook", json={"jobId": job_id, "status": "completed", "qualities": ["360p"]},
                           headers=auth)

        assert resp.status_code == 200
        assert resp.json() == {"success": True, "message": "Webhook processed", "jobId": job_id,
                               "status": "completed"}
        body = client.get(f"/status/{job_id}").json()
        assert body["status"] == "completed"
        assert body["progress"] == 100

    def test_webhook_requires_secret(self, client):
        resp = client.post("/webhook", json={"jobId": "transcode-x", "status": "completed"})
        assert resp.status_code == 401

    def test_webhook_unknown_job_and_bad_status(self, client, auth):
        missing = client.post("/webhook", json={"jobId": "transcode-x", "status": "completed"}, headers=auth)
        assert missing.status_code == 404

        job_id = _create(client, auth).json()["jobId"]
        bad = client.post("/webhook", json={"jobId": job_id, "status": "done"}, headers=auth)
        assert bad.status_code == 400


class TestProxy:
    def test_serves_bytes_with_quality_headers(self, client, completed_job):
        job = completed_job(["mid-tier"])

        resp = client.get("/proxy/f1/high-tier.mp4")

        assert resp.status_code == 200
        assert resp.content == f"{job.job_id}/mid-tier".encode()
        assert resp.headers["content-type"] == "video/mp4"
        assert resp.headers["cache-control"] == "public, max-age=31536000"
        assert resp.headers["x-proxy-quality"] == "mid-tier"
        assert resp.headers["x-requested-quality"] == "high-tier"
        assert resp.headers["content-length"] == str(len(resp.content))

    def test_large_rendition_is_streamed_in_chunks(self, client, completed_job, objects, monkeypatch):
        job = completed_job(["360p"], with_objects=False)
        data = b"\x00" * (2 * 1024 * 1024 + 512 * 1024)
        objects.add_proxy(job.job_id, "360p", data=data)
        reads = []
        real_open = objects.open

        def recording_open(key):
            stream = real_open(key)
            chunks = stream.body.iter_chunks

            def iter_chunks(chunk_size):
                for chunk in chunks(chunk_size):
                    reads.append(len(chunk))
                    yield chunk

            stream.body.iter_chunks = iter_chunks
            return stream

        monkeypatch.setattr(objects, "open", recording_open)

        resp = client.get("/proxy/f1/360p")

        assert resp.status_code == 200
        assert resp.headers["content-length"] == str(len(data))
        assert resp.content == data
        assert reads == [1024 * 1024, 1024 * 1024, 512 * 1024]

    def test_not_found_carries_reason(self, client):
        resp = client.get("/proxy/unknown/360p")
        assert resp.status_code == 404
        assert resp.json()["reason"] == "job_not_found"

    def test_unknown_quality(self, client, completed_job):
        completed_job()
        resp = client.get("/proxy/f1/4k")
        assert resp.status_code == 400
        assert "validQualities" in resp.json()


class TestLifecycleAndHealth:
    def test_scenario_f(self, client, auth):
        assert client.post("/lifecycle", headers={"Authorization": "Bearer wrong"}).status_code == 401

        resp = client.post("/lifecycle", headers=auth)

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        for field in ("scanned", "deleted", "retained", "errors", "metadataUpdated",
                      "instancesDeleted", "instancesKept", "instanceErrors"):
            assert isinstance(body[field], int) and body[field] >= 0

    def test_public_health_skips_dependency_checks(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["version"] == "1.0.0"
        assert body["services"]["database"]["status"] == "unknown"
        assert body["config"]["hasAPISecret"] is True

    def test_privileged_health_runs_checks(self, client, auth):
        body = client.get("/health", headers=auth).json()
        assert body["status"] == "healthy"
        assert {s["status"] for s in body["services"].values()} == {"healthy"}

    def test_health_wrong_secret(self, client):
        assert client.get("/health", headers={"Authorization": "Bearer wrong"}).status_code == 401
