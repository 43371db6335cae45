import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from bulksms.core.dependencies import get_campaign_service
from bulksms.schemas import PreviewResponse, PreviewSample, UploadResponse
from bulksms.services import CampaignService
from bulksms.services import exceptions as service_exceptions

router = APIRouter(tags=["campaigns"])
logger = logging.getLogger("campaign.api")


def _read_csv(csv: UploadFile | None) -> str:
    if csv is None:
        logger.warning("No CSV file provided in request")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No CSV file provided")
    content = csv.file.read()
    logger.info("CSV received: %s (%.2f KB)", csv.filename, len(content) / 1024)
    return content.decode("utf-8", errors="replace")


@router.post("/upload", response_model=UploadResponse)
def upload_campaign(
    csv: UploadFile | None = File(None),
    template: str | None = Form(None),
    channel: str | None = Form(None),
    service: CampaignService = Depends(get_campaign_service),
):
    csv_text = _read_csv(csv)
    try:
        result = service.submit_upload(csv_text=csv_text, template=template or "", channel=channel or "")
    except service_exceptions.ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return UploadResponse(jobId=result.job_id, message=result.message, alreadyExists=result.already_exists)


@router.post("/preview", response_model=PreviewResponse)
def preview_campaign(
    csv: UploadFile | None = File(None),
    template: str | None = Form(None),
    service: CampaignService = Depends(get_campaign_service),
):
    csv_text = _read_csv(csv)
    try:
        preview = service.preview(csv_text=csv_text, template=template or "")
    except service_exceptions.ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return PreviewResponse(
        columns=preview.columns,
        phoneColumn=preview.phone_column,
        rows=preview.rows,
        recipients=preview.recipients,
        validPhones=preview.valid_phones,
        invalidPhones=preview.invalid_phones,
        variables=preview.variables,
        missingVariables=preview.missing_variables,
        mode=preview.mode.value,
        samples=[PreviewSample(**sample) for sample in preview.samples],
    )
