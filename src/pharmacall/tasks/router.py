"""
Task callback router.

The dispatcher POSTs ``{"searchId", "pharmacyId", "attempt"}`` here when a
job invocation is due. A 2xx answer acknowledges the delivery; any other
status makes the dispatcher redeliver.
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError

from pharmacall.config import Settings
from pharmacall.dependencies import get_app_settings, get_scheduler, get_signature_verifier
from pharmacall.dispatch.interface import PROCESS_JOB_PATH, ProcessJobPayload
from pharmacall.dispatch.signature import QStashSignatureVerifier
from pharmacall.scheduling.service import PharmacyCallScheduler
from pharmacall.shared.logging import correlation_id_var, get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["tasks"])


@router.post(
    PROCESS_JOB_PATH,
    summary="Process one pharmacy-call job invocation",
    responses={
        400: {"description": "Malformed payload"},
        401: {"description": "Invalid dispatcher signature"},
        404: {"description": "Job not found"},
    },
)
async def process_pharmacy_call(
    request: Request,
    scheduler: Annotated[PharmacyCallScheduler, Depends(get_scheduler)],
    verifier: Annotated[QStashSignatureVerifier | None, Depends(get_signature_verifier)],
    settings: Annotated[Settings, Depends(get_app_settings)],
    upstash_signature: Annotated[str | None, Header()] = None,
    upstash_message_id: Annotated[str | None, Header()] = None,
) -> dict[str, Any]:
    body = await request.body()
    if upstash_message_id:
        correlation_id_var.set(upstash_message_id)

    if verifier is not None:
        # SignatureVerificationError is mapped to 401 by the app
        verifier.verify(upstash_signature, body, url=settings.task_url(PROCESS_JOB_PATH))

    try:
        payload = ProcessJobPayload.model_validate_json(body)
    except ValidationError as e:
        logger.warning("Invalid job payload", extra={"errors": e.error_count()})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_PAYLOAD", "message": "Invalid job payload"},
        )

    result = await scheduler.process_job(payload)
    return {
        "success": True,
        "outcome": result.outcome.value,
        "jobId": str(result.job_id),
        "attempt": result.attempt,
        "reason": result.reason,
        "retryInSeconds": result.retry_in_seconds,
        "result": result.result,
    }
