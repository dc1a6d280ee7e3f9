"""
Webhook event handler for Vapi server messages.

Status events update the call record; end-of-call events wake the executor
waiting on that call; function calls carry the structured availability
result the assistant collected.
"""

from collections import OrderedDict
from typing import Any

from pharmacall.jobs.models import CallRecordStatus
from pharmacall.jobs.store import JobStore
from pharmacall.shared.database import utcnow
from pharmacall.shared.logging import get_logger
from pharmacall.voice.completion import CallCompletionRegistry
from pharmacall.voice.interface import ProviderCallStatus, VoiceEventType, VoiceWebhookEvent
from pharmacall.voice.outcome import ExtractedData

logger = get_logger(__name__)

RECORD_AVAILABILITY_FUNCTION = "recordMedicationAvailability"
MAX_PROCESSED_EVENTS = 4096


def _coerce_availability(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "in_stock", "available"):
            return True
        if lowered in ("false", "no", "out_of_stock", "unavailable"):
            return False
    return None


def _coerce_price(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace("$", "").replace(",", "").strip())
        except ValueError:
            return None
    return None


def extraction_from_arguments(arguments: dict[str, Any]) -> ExtractedData:
    """Build ``ExtractedData`` from the assistant's function-call arguments."""
    availability = _coerce_availability(
        arguments.get("availability", arguments.get("inStock"))
    )
    notes = arguments.get("notes")
    return ExtractedData(
        availability=availability,
        price=_coerce_price(arguments.get("price")),
        notes=str(notes) if notes else "Reported by assistant",
    )


class VapiWebhookHandler:
    """Handler for processing Vapi webhook events.

    Duplicate deliveries of the same (call, event, status) triple are
    skipped in memory; only the most recent keys are remembered.
    """

    def __init__(self, jobs: JobStore, completions: CallCompletionRegistry) -> None:
        self._jobs = jobs
        self._completions = completions
        self._processed_events: OrderedDict[str, None] = OrderedDict()

    async def handle_event(self, event: VoiceWebhookEvent) -> dict[str, Any]:
        """Apply one webhook event.

        Returns:
            The body to send back to Vapi. Function calls get ``{"result": ...}``.
        """
        status = event.status.value if event.status else ""
        idempotency_key = f"{event.provider_call_id}:{event.event_type.value}:{status}"
        if (
            event.event_type != VoiceEventType.FUNCTION_CALL
            and idempotency_key in self._processed_events
        ):
            logger.info(
                "Duplicate webhook event skipped",
                extra={
                    "provider_call_id": event.provider_call_id,
                    "event_type": event.event_type.value,
                },
            )
            return {"received": True, "duplicate": True}

        logger.info(
            "Processing voice webhook event",
            extra={
                "provider_call_id": event.provider_call_id,
                "event_type": event.event_type.value,
                "status": status or None,
            },
        )

        response: dict[str, Any] = {"received": True}
        match event.event_type:
            case VoiceEventType.STATUS_UPDATE:
                await self._handle_status_update(event)
            case VoiceEventType.CALL_STARTED:
                await self._mark_answered(event.provider_call_id)
            case VoiceEventType.END_OF_CALL_REPORT | VoiceEventType.CALL_ENDED:
                self._handle_ended(event)
            case VoiceEventType.FUNCTION_CALL:
                response = self._handle_function_call(event)
            case _:
                pass

        self._processed_events[idempotency_key] = None
        while len(self._processed_events) > MAX_PROCESSED_EVENTS:
            self._processed_events.popitem(last=False)
        return response

    async def _handle_status_update(self, event: VoiceWebhookEvent) -> None:
        if event.status == ProviderCallStatus.RINGING:
            await self._update_record(event.provider_call_id, status=CallRecordStatus.RINGING)
        elif event.status == ProviderCallStatus.IN_PROGRESS:
            await self._mark_answered(event.provider_call_id)
        elif event.status == ProviderCallStatus.ENDED:
            self._handle_ended(event)

    async def _mark_answered(self, provider_call_id: str) -> None:
        await self._update_record(
            provider_call_id,
            status=CallRecordStatus.ANSWERED,
            answered_at=utcnow(),
        )

    async def _update_record(self, provider_call_id: str, **patch: Any) -> None:
        record = await self._jobs.get_call_record_by_provider_id(provider_call_id)
        if record is None:
            logger.warning(
                "Call record not found for webhook event",
                extra={"provider_call_id": provider_call_id},
            )
            return
        if record.status in (CallRecordStatus.COMPLETED, CallRecordStatus.FAILED):
            return
        await self._jobs.update_call_record(record.id, **patch)

    def _handle_ended(self, event: VoiceWebhookEvent) -> None:
        woken = self._completions.resolve(event.provider_call_id, event.to_snapshot())
        logger.info(
            "Call end reported",
            extra={
                "provider_call_id": event.provider_call_id,
                "ended_reason": event.ended_reason,
                "waiter_woken": woken,
            },
        )

    def _handle_function_call(self, event: VoiceWebhookEvent) -> dict[str, Any]:
        if event.function_name != RECORD_AVAILABILITY_FUNCTION:
            logger.warning(
                "Unknown function call from assistant",
                extra={
                    "provider_call_id": event.provider_call_id,
                    "function_name": event.function_name,
                },
            )
            return {"result": "unsupported function"}

        data = extraction_from_arguments(event.function_arguments)
        self._completions.report_extraction(event.provider_call_id, data)
        return {"result": "recorded"}
