from __future__ import annotations

"""
Vapi voice-call provider adapter.

Uses a sync httpx client; the async entrypoints on ``VoiceCallProvider``
move each request onto a worker thread.
"""

import hmac
import logging
from datetime import datetime
from typing import Any

import httpx

from pharmacall.voice.config import VoiceConfig, get_voice_config
from pharmacall.voice.interface import (
    CallPlacementError,
    CallStatusError,
    CallStatusSnapshot,
    PlaceCallRequest,
    PlacedCall,
    ProviderCallStatus,
    VoiceCallProvider,
    VoiceEventType,
    VoiceWebhookEvent,
    WebhookParseError,
)

logger = logging.getLogger(__name__)

VAPI_STATUS_MAP: dict[str, ProviderCallStatus] = {
    "queued": ProviderCallStatus.QUEUED,
    "scheduled": ProviderCallStatus.QUEUED,
    "ringing": ProviderCallStatus.RINGING,
    "in-progress": ProviderCallStatus.IN_PROGRESS,
    "forwarding": ProviderCallStatus.FORWARDING,
    "ended": ProviderCallStatus.ENDED,
}

VAPI_EVENT_MAP: dict[str, VoiceEventType] = {
    "status-update": VoiceEventType.STATUS_UPDATE,
    "end-of-call-report": VoiceEventType.END_OF_CALL_REPORT,
    "call-start": VoiceEventType.CALL_STARTED,
    "call-end": VoiceEventType.CALL_ENDED,
    "function-call": VoiceEventType.FUNCTION_CALL,
}


def _parse_timestamp(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _duration_seconds(data: dict[str, Any]) -> int | None:
    for key in ("durationSeconds", "duration"):
        value = data.get(key)
        if isinstance(value, (int, float)):
            return int(round(value))
    started = _parse_timestamp(data.get("startedAt"))
    ended = _parse_timestamp(data.get("endedAt"))
    if started and ended:
        return max(0, int(round((ended - started).total_seconds())))
    return None


def _transcript(data: dict[str, Any]) -> str | None:
    transcript = data.get("transcript")
    if isinstance(transcript, str):
        return transcript
    artifact = data.get("artifact")
    if isinstance(artifact, dict) and isinstance(artifact.get("transcript"), str):
        return artifact["transcript"]
    return None


class VapiAdapter(VoiceCallProvider):
    """Vapi REST adapter (``POST /call``, ``GET /call/{id}``)."""

    def __init__(
        self,
        config: VoiceConfig | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._config = config or get_voice_config()
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(
                base_url=self._config.base_url,
                timeout=httpx.Timeout(self._config.request_timeout_seconds),
            )
        return self._http_client

    def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
        }

    def _url(self, endpoint: str) -> str:
        return f"{self._config.base_url.rstrip('/')}{endpoint}"

    def place_call_sync(self, request: PlaceCallRequest) -> PlacedCall:
        """Place an outbound call with the configured assistant (sync)."""
        client = self._get_client()

        payload: dict[str, Any] = {
            "assistantId": self._config.assistant_id,
            "phoneNumberId": self._config.phone_number_id,
            "name": f"Pharmacy Call - {request.medication_name}"[:40],
            "customer": {"number": request.phone_number},
            "assistantOverrides": {
                "variableValues": {
                    "medicationName": request.medication_name,
                    "dosage": request.dosage or "",
                    "pharmacyName": request.pharmacy_name or "pharmacy",
                },
            },
            "metadata": {
                "searchType": "pharmacy",
                "medication": request.medication_name,
                "dosage": request.dosage,
                "pharmacyName": request.pharmacy_name,
                **request.metadata,
            },
        }

        logger.info(
            "Placing Vapi call",
            extra={
                "pharmacy_name": request.pharmacy_name,
                "medication": request.medication_name,
            },
        )

        try:
            response = client.post(self._url("/call"), json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            logger.exception("HTTP error during Vapi call placement")
            raise CallPlacementError(
                message=f"HTTP error: {e!s}",
                error_code="HTTP_ERROR",
            ) from e

        if response.status_code >= 400:
            error_data = self._error_body(response)
            logger.error(
                "Vapi call placement failed",
                extra={"status_code": response.status_code, "error": error_data},
            )
            raise CallPlacementError(
                message=str(error_data.get("message") or "Call placement failed"),
                error_code=str(response.status_code),
                provider_response=error_data,
            )

        data = response.json()
        call_id = data.get("id")
        if not call_id:
            raise CallPlacementError(
                message="Vapi response missing call id",
                error_code="INVALID_RESPONSE",
                provider_response=data,
            )

        return PlacedCall(
            provider_call_id=str(call_id),
            status=VAPI_STATUS_MAP.get(str(data.get("status", "")), ProviderCallStatus.QUEUED),
            raw_response=data,
        )

    def get_call_status_sync(self, provider_call_id: str) -> CallStatusSnapshot:
        client = self._get_client()
        try:
            response = client.get(self._url(f"/call/{provider_call_id}"), headers=self._headers())
        except httpx.HTTPError as e:
            raise CallStatusError(
                message=f"HTTP error: {e!s}",
                error_code="HTTP_ERROR",
            ) from e

        if response.status_code >= 400:
            error_data = self._error_body(response)
            raise CallStatusError(
                message=str(error_data.get("message") or "Call status lookup failed"),
                error_code=str(response.status_code),
                provider_response=error_data,
            )

        return self.snapshot_from_payload(response.json())

    @staticmethod
    def snapshot_from_payload(data: dict[str, Any]) -> CallStatusSnapshot:
        return CallStatusSnapshot(
            provider_call_id=str(data.get("id", "")),
            status=VAPI_STATUS_MAP.get(str(data.get("status", "")), ProviderCallStatus.QUEUED),
            duration_seconds=_duration_seconds(data),
            transcript=_transcript(data),
            ended_reason=data.get("endedReason"),
            started_at=_parse_timestamp(data.get("startedAt")),
            ended_at=_parse_timestamp(data.get("endedAt")),
            raw_response=data,
        )

    def parse_webhook_event(self, payload: dict[str, Any]) -> VoiceWebhookEvent:
        """Parse a Vapi server message (``{"message": {...}}``)."""
        message = payload.get("message", payload)
        if not isinstance(message, dict):
            raise WebhookParseError("Webhook payload has no message object", error_code="INVALID_PAYLOAD")

        raw_type = str(message.get("type", ""))
        call = message.get("call") if isinstance(message.get("call"), dict) else {}
        provider_call_id = call.get("id") or message.get("callId")
        if not provider_call_id:
            raise WebhookParseError(
                "Webhook message missing call id",
                error_code="MISSING_CALL_ID",
                provider_response=payload,
            )

        event_type = VAPI_EVENT_MAP.get(raw_type, VoiceEventType.OTHER)

        status: ProviderCallStatus | None = None
        raw_status = message.get("status") or call.get("status")
        if raw_status:
            status = VAPI_STATUS_MAP.get(str(raw_status))
        if event_type in (VoiceEventType.END_OF_CALL_REPORT, VoiceEventType.CALL_ENDED):
            status = ProviderCallStatus.ENDED
        elif event_type == VoiceEventType.CALL_STARTED and status is None:
            status = ProviderCallStatus.IN_PROGRESS

        function_name: str | None = None
        function_arguments: dict[str, Any] = {}
        function_call = message.get("functionCall")
        if isinstance(function_call, dict):
            function_name = function_call.get("name")
            params = function_call.get("parameters")
            if isinstance(params, dict):
                function_arguments = params

        return VoiceWebhookEvent(
            event_type=event_type,
            provider_call_id=str(provider_call_id),
            status=status,
            ended_reason=message.get("endedReason") or call.get("endedReason"),
            transcript=_transcript(message) or _transcript(call),
            duration_seconds=_duration_seconds(message) or _duration_seconds(call),
            function_name=function_name,
            function_arguments=function_arguments,
            raw_payload=payload,
        )

    def validate_webhook_secret(self, presented: str | None) -> bool:
        expected = self._config.webhook_secret
        if not expected:
            return True
        if not presented:
            return False
        return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))

    @staticmethod
    def _error_body(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {"message": response.text}
        return data if isinstance(data, dict) else {"message": str(data)}
