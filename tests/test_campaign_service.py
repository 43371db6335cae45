import pytest

from bulksms.core.store import InMemoryKeyValueBackend
from bulksms.models import JobState
from bulksms.services import CampaignJobService, CampaignService, exceptions
from bulksms.services.campaign_service import fingerprint_job_id
from bulksms.services.progress_store import FailedBatchStore, ProgressRecord
from bulksms.services.recipient_service import Recipient

CSV_TEXT = "name,phone\nAda,08012345678\nBo,08012345679\nCy,\n"


def _service(session, failed_store=None):
    return CampaignService(
        session,
        failed_batch_store=failed_store or FailedBatchStore(InMemoryKeyValueBackend(), ttl_seconds=60),
    )


def test_submit_upload_creates_waiting_job(db_session):
    result = _service(db_session).submit_upload(csv_text=CSV_TEXT, template="Hi {{name}}", channel="DND")

    assert result.job_id == fingerprint_job_id(CSV_TEXT, "Hi {{name}}", "dnd")
    assert result.job_id.startswith("sms-")
    assert result.message == "Job created successfully"
    assert result.already_exists is False

    job = CampaignJobService(db_session).get_job(result.job_id)
    assert job.state == JobState.WAITING.value
    assert job.payload["channel"] == "dnd"
    assert len(job.payload["source_rows"]) == 3
    assert job.is_retry is False


def test_identical_submission_returns_same_job(db_session):
    service = _service(db_session)
    first = service.submit_upload(csv_text=CSV_TEXT, template="Hello", channel="dnd")
    second = service.submit_upload(csv_text=CSV_TEXT, template="Hello", channel="dnd")

    assert second.job_id == first.job_id
    assert second.already_exists is True
    assert second.message == "Job already exists and is processing"
    assert len(service.list_jobs()) == 1


def test_different_channel_is_a_different_job(db_session):
    service = _service(db_session)
    first = service.submit_upload(csv_text=CSV_TEXT, template="Hello", channel="dnd")
    second = service.submit_upload(csv_text=CSV_TEXT, template="Hello", channel="generic")

    assert first.job_id != second.job_id


def test_completed_and_failed_jobs_on_resubmission(db_session):
    service = _service(db_session)
    jobs = CampaignJobService(db_session)
    created = service.submit_upload(csv_text=CSV_TEXT, template="Hello", channel="dnd")

    job = jobs.claim_next_job(worker_id="w1")
    jobs.mark_failed(job_id=job.id, worker_id="w1", error="boom")
    requeued = service.submit_upload(csv_text=CSV_TEXT, template="Hello", channel="dnd")
    assert requeued.job_id == created.job_id
    assert requeued.message == "Failed job re-queued"
    assert jobs.get_job(created.job_id).state == JobState.WAITING.value

    jobs.claim_next_job(worker_id="w1")
    jobs.mark_completed(job_id=created.job_id, worker_id="w1", result={"success": True})
    completed = service.submit_upload(csv_text=CSV_TEXT, template="Hello", channel="dnd")
    assert completed.message == "Job already completed"
    assert completed.already_exists is True


@pytest.mark.parametrize(
    "csv_text, template, channel, message",
    [
        (CSV_TEXT, "", "dnd", "Template is required"),
        (CSV_TEXT, "   ", "dnd", "Template is required"),
        ("name,phone\n", "Hello", "dnd", "CSV file contains no data rows"),
        (CSV_TEXT, "Hello", "carrier-pigeon", "Unsupported channel"),
    ],
)
def test_submit_upload_validation(db_session, csv_text, template, channel, message):
    with pytest.raises(exceptions.ValidationError, match=message):
        _service(db_session).submit_upload(csv_text=csv_text, template=template, channel=channel)


def test_retry_creates_isolated_job_from_selected_batches(db_session):
    failed_store = FailedBatchStore(InMemoryKeyValueBackend(), ttl_seconds=60)
    service = _service(db_session, failed_store)
    original = service.submit_upload(csv_text=CSV_TEXT, template="Hi {{name}}", channel="generic")
    original_progress = ProgressRecord(total=3, processed=3, failed=3, batches=1).to_dict()
    CampaignJobService(db_session).update_progress(original.job_id, original_progress)
    db_session.commit()

    first = failed_store.record(
        original.job_id,
        [
            Recipient(original_index=0, attributes={"name": "Ada"}, phone="08012345678").fail("boom"),
            Recipient(original_index=1, attributes={"name": "Bo"}, phone="08012345679").fail("boom"),
        ],
    )
    second = failed_store.record(original.job_id, [Recipient(original_index=2, phone=None).fail("No phone number found")])
    foreign = failed_store.record("sms-other", [Recipient(original_index=9, phone="1").fail("x")])

    result = service.retry_failed_batches(original.job_id, [first.key, second.key, foreign.key, "failed_batch:gone"])

    assert result.job_id.startswith("retry-")
    assert result.message == "Retry job created successfully"
    assert result.recipients == 3

    retry_job = service.get_job(result.job_id)
    assert retry_job.is_retry is True
    assert retry_job.parent_job_id == original.job_id
    assert retry_job.payload["template"] == "Hi {{name}}"
    assert retry_job.payload["channel"] == "generic"
    assert [entry["originalIndex"] for entry in retry_job.payload["recipients"]] == [0, 1, 2]
    assert all("error" not in entry for entry in retry_job.payload["recipients"])
    assert retry_job.progress["total"] == 3
    assert retry_job.progress["processed"] == 0

    db_session.expire_all()
    assert service.get_job(original.job_id).progress == original_progress


def test_retry_requires_keys_and_known_job(db_session):
    service = _service(db_session)
    with pytest.raises(exceptions.ValidationError, match="batchKeys array is required"):
        service.retry_failed_batches("sms-x", [])
    with pytest.raises(exceptions.NotFoundError, match="Job not found"):
        service.retry_failed_batches("sms-x", ["failed_batch:sms-x:1-abc"])


def test_retry_without_live_batches_is_rejected(db_session):
    service = _service(db_session)
    original = service.submit_upload(csv_text=CSV_TEXT, template="Hello", channel="dnd")

    with pytest.raises(exceptions.ValidationError, match="No recipients found"):
        service.retry_failed_batches(original.job_id, ["failed_batch:expired"])


def test_preview_reports_mode_variables_and_samples(db_session):
    preview = _service(db_session).preview(csv_text=CSV_TEXT + "Di,bad\n", template="Hi {{name}}, {{plan}}")

    assert preview.columns == ["name", "phone"]
    assert preview.phone_column == "phone"
    assert preview.rows == 4
    assert preview.recipients == 3
    assert preview.valid_phones == 2
    assert preview.invalid_phones == 1
    assert preview.variables == ["name", "plan"]
    assert preview.missing_variables == ["plan"]
    assert preview.mode.value == "personalized"
    assert preview.samples[0] == {
        "originalIndex": 0,
        "phone": "08012345678",
        "normalizedPhone": "2348012345678",
        "message": "Hi Ada, {{plan}}",
    }


def test_get_job_raises_not_found(db_session):
    with pytest.raises(exceptions.NotFoundError):
        _service(db_session).get_job("missing")
