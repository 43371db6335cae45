import json

from bulksms.models import JobState
from bulksms.services import CampaignJobService
from bulksms.services.bootstrap import build_failed_batch_store
from bulksms.services.recipient_service import Recipient

CSV_TEXT = "name,phone\nAda,08012345678\nBo,08012345679\n"


def _upload(client, template="Hi {{name}}", channel="dnd", csv_text=CSV_TEXT):
    return client.post(
        "/api/upload",
        files={"csv": ("contacts.csv", csv_text.encode("utf-8"), "text/csv")},
        data={"template": template, "channel": channel},
    )


def _sse_frames(body: str):
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


def test_health_reports_backends(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": "ok", "store": "memory"}


def test_upload_creates_job_and_deduplicates(client):
    first = _upload(client)
    assert first.status_code == 200
    body = first.json()
    assert body["jobId"].startswith("sms-")
    assert body["message"] == "Job created successfully"
    assert body["alreadyExists"] is False

    second = _upload(client)
    assert second.json()["jobId"] == body["jobId"]
    assert second.json()["alreadyExists"] is True


def test_upload_requires_file_and_template(client):
    missing_file = client.post("/api/upload", data={"template": "Hello"})
    assert missing_file.status_code == 400
    assert missing_file.json()["detail"] == "No CSV file provided"

    missing_template = _upload(client, template="")
    assert missing_template.status_code == 400
    assert missing_template.json()["detail"] == "Template is required"

    bad_channel = _upload(client, channel="fax")
    assert bad_channel.status_code == 400


def test_preview_returns_summary(client):
    response = client.post(
        "/api/preview",
        files={"csv": ("contacts.csv", CSV_TEXT.encode("utf-8"), "text/csv")},
        data={"template": "Hi {{name}}"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["phoneColumn"] == "phone"
    assert body["validPhones"] == 2
    assert body["mode"] == "personalized"
    assert body["samples"][1]["message"] == "Hi Bo"


def test_job_status_and_listing(client):
    job_id = _upload(client).json()["jobId"]

    status_response = client.get(f"/api/jobs/{job_id}")
    assert status_response.status_code == 200
    body = status_response.json()
    assert body["jobId"] == job_id
    assert body["state"] == "waiting"
    assert body["isRetry"] is False
    assert body["progress"]["processed"] == 0

    listing = client.get("/api/jobs", params={"limit": 5})
    assert [job["jobId"] for job in listing.json()["jobs"]] == [job_id]

    assert client.get("/api/jobs/missing").status_code == 404


def test_progress_stream_sends_final_snapshot_and_closes(client, session_factory):
    job_id = _upload(client).json()["jobId"]
    session = session_factory()
    service = CampaignJobService(session)
    service.claim_next_job(worker_id="worker-api")
    service.mark_completed(job_id=job_id, worker_id="worker-api", result={"success": True})
    session.close()

    response = client.get(f"/api/jobs/{job_id}/progress")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    frames = _sse_frames(response.text)
    assert len(frames) == 1
    assert frames[0]["jobId"] == job_id
    assert frames[0]["state"] == JobState.COMPLETED.value
    assert "timestamp" in frames[0]


def test_progress_stream_for_unknown_job(client):
    response = client.get("/api/jobs/missing/progress")
    assert _sse_frames(response.text) == [{"error": "Job not found"}]


def test_failed_batches_and_retry(client):
    job_id = _upload(client).json()["jobId"]
    store = build_failed_batch_store()
    record = store.record(
        job_id,
        [Recipient(original_index=1, attributes={"name": "Bo"}, phone="08012345679").fail("Termii API error: x")],
    )

    failed = client.get(f"/api/jobs/{job_id}/failed")
    assert failed.status_code == 200
    [entry] = failed.json()["failedBatches"]
    assert entry["key"] == record.key
    assert entry["jobId"] == job_id
    assert entry["error"] == "Termii API error: x"

    retry = client.post(f"/api/jobs/{job_id}/retry", json={"batchKeys": [record.key]})
    assert retry.status_code == 200
    body = retry.json()
    assert body["jobId"].startswith("retry-")
    assert body["recipients"] == 1

    retry_status = client.get(f"/api/jobs/{body['jobId']}").json()
    assert retry_status["isRetry"] is True
    assert retry_status["parentJobId"] == job_id
    assert retry_status["progress"]["total"] == 1


def test_retry_errors(client):
    assert client.post("/api/jobs/missing/retry", json={"batchKeys": []}).status_code == 400
    assert client.post("/api/jobs/missing/retry", json={"batchKeys": ["failed_batch:x"]}).status_code == 404
