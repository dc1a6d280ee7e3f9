"""
FastAPI router for Vapi webhook endpoints.

Vapi expects a fast answer; handlers only touch the call record and the
in-process completion registry.
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from pharmacall.dependencies import get_vapi_adapter, get_webhook_handler
from pharmacall.shared.logging import get_logger
from pharmacall.voice.interface import WebhookParseError
from pharmacall.voice.vapi_adapter import VapiAdapter
from pharmacall.voice.webhooks.handler import VapiWebhookHandler

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/vapi",
    summary="Receive a Vapi server message",
    responses={
        400: {"description": "Malformed payload"},
        401: {"description": "Invalid webhook secret"},
    },
)
async def vapi_webhook(
    request: Request,
    adapter: Annotated[VapiAdapter, Depends(get_vapi_adapter)],
    handler: Annotated[VapiWebhookHandler, Depends(get_webhook_handler)],
    x_vapi_secret: Annotated[str | None, Header()] = None,
) -> dict[str, Any]:
    if not adapter.validate_webhook_secret(x_vapi_secret):
        logger.warning("Rejected Vapi webhook with invalid secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "INVALID_WEBHOOK_SECRET", "message": "Invalid webhook secret"},
        )

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_PAYLOAD", "message": "Body is not valid JSON"},
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_PAYLOAD", "message": "Body must be a JSON object"},
        )

    try:
        event = adapter.parse_webhook_event(payload)
    except WebhookParseError as e:
        logger.warning("Unparseable Vapi webhook", extra={"error_code": e.error_code})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": e.error_code or "INVALID_PAYLOAD", "message": str(e)},
        )

    return await handler.handle_event(event)
