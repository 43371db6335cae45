import anyio

from bulksms.core.config import get_settings
from bulksms.core.locking import make_lock
from bulksms.models import JobState
from bulksms.services import CampaignJobService, CampaignService
from bulksms.services.bootstrap import build_dispatcher
from bulksms.services.sms_gateways import DryRunSMSGateway, TermiiSMSGateway
from bulksms.workers.campaign_worker import CampaignWorker

CSV_TEXT = "name,phone\nAda,08012345678\nBo,08012345679\n"


def _submit(session, template="Hi {{name}}"):
    return CampaignService(session).submit_upload(csv_text=CSV_TEXT, template=template, channel="dnd").job_id


def _worker(gateway=None):
    settings = get_settings()
    gateway = gateway or DryRunSMSGateway()
    return CampaignWorker(
        worker_id="worker-test",
        dispatcher=build_dispatcher(settings, gateway=gateway),
        settings=settings,
    ), gateway


def test_worker_completes_claimed_job(db_session):
    job_id = _submit(db_session)
    worker, gateway = _worker()

    assert anyio.run(worker.run_once) == 1

    db_session.expire_all()
    job = CampaignJobService(db_session).get_job(job_id)
    assert job.state == JobState.COMPLETED.value
    assert job.result["success"] is True
    assert job.result["processed"] == 2
    assert job.result["failed"] == 0
    assert job.progress["total"] == 2
    assert [result.message for result in gateway.sent] == ["Hi Ada", "Hi Bo"]
    assert worker.metrics["completed"] == 1


def test_worker_returns_zero_when_queue_is_empty():
    worker, _ = _worker()
    assert anyio.run(worker.run_once) == 0


def test_worker_marks_job_failed_on_configuration_error(db_session):
    job_id = _submit(db_session)
    gateway = TermiiSMSGateway(api_key=None, base_url="https://termii.example", sender_id="N-Alert")
    worker, _ = _worker(gateway)

    anyio.run(worker.run_once)

    db_session.expire_all()
    job = CampaignJobService(db_session).get_job(job_id)
    assert job.state == JobState.FAILED.value
    assert job.failed_reason == "TERMII_API_KEY is not configured"
    assert worker.metrics["failed"] == 1


def test_completed_job_returns_stored_result(db_session):
    job_id = _submit(db_session)
    worker, gateway = _worker()
    anyio.run(worker.run_once)

    async def _again():
        return await worker.process_job(job_id)

    result = anyio.run(_again)

    assert result["processed"] == 2
    assert len(gateway.sent) == 2


def test_busy_job_lock_requeues_job(db_session):
    job_id = _submit(db_session)
    worker, gateway = _worker()
    lock = make_lock(f"campaign:job:{job_id}", redis_client=None, wait_timeout=0.1)
    assert lock.acquire()
    try:
        anyio.run(worker.run_once)
    finally:
        lock.release()

    db_session.expire_all()
    job = CampaignJobService(db_session).get_job(job_id)
    assert job.state == JobState.WAITING.value
    assert job.lock_owner is None
    assert gateway.sent == []
    assert worker.metrics["lock_busy"] == 1


def test_worker_loop_processes_queue_until_stopped(db_session):
    job_id = _submit(db_session, template="Big sale today")
    worker, gateway = _worker()

    async def _run():
        await worker.start()
        with anyio.fail_after(5):
            while not worker.metrics["completed"]:
                await anyio.sleep(0.01)
        await worker.stop()

    anyio.run(_run)

    db_session.expire_all()
    assert CampaignJobService(db_session).get_job(job_id).state == JobState.COMPLETED.value
    assert gateway.sent[0].phones == ["2348012345678", "2348012345679"]
