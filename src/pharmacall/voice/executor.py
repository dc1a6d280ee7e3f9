"""
Call executors: perform one pharmacy call and report a ``CallOutcome``.

Executors never raise into the scheduler; every failure comes back as
``CallOutcome(success=False, error=...)``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

from pharmacall.jobs.models import CallProvider, QueueJob
from pharmacall.shared.logging import get_logger
from pharmacall.voice.completion import CallCompletionRegistry
from pharmacall.voice.config import VoiceConfig
from pharmacall.voice.interface import (
    CallStatusSnapshot,
    PlaceCallRequest,
    VoiceCallProvider,
    VoiceProviderError,
)
from pharmacall.voice.outcome import (
    CallOutcome,
    calculate_confidence,
    extract_availability,
    is_failed_ending,
)

logger = get_logger(__name__)

TIMEOUT_ERROR = "timeout"

PlacedCallback = Callable[[str], Awaitable[None]]


class CallExecutor(Protocol):
    provider: CallProvider

    async def execute(
        self,
        job: QueueJob,
        on_placed: PlacedCallback | None = None,
    ) -> CallOutcome: ...


class VoiceCallExecutor:
    """Places a real call through the provider and waits for it to end.

    The wait is bounded by ``poll_interval_seconds * max_polls``. A webhook
    resolution through ``completions`` ends the wait early; polling stays as
    the fallback.
    """

    provider = CallProvider.VAPI

    def __init__(
        self,
        voice_provider: VoiceCallProvider,
        config: VoiceConfig,
        completions: CallCompletionRegistry | None = None,
    ) -> None:
        self._voice_provider = voice_provider
        self._config = config
        self._completions = completions

    async def execute(
        self,
        job: QueueJob,
        on_placed: PlacedCallback | None = None,
    ) -> CallOutcome:
        request = PlaceCallRequest(
            phone_number=job.pharmacy_phone,
            medication_name=job.medication_name,
            dosage=job.dosage,
            pharmacy_name=job.pharmacy_name,
            metadata={
                "jobId": str(job.id),
                "searchId": str(job.search_id),
                "pharmacyId": job.pharmacy_id,
                "attempt": job.attempt,
            },
        )

        try:
            placed = await self._voice_provider.place_call(request)
        except VoiceProviderError as e:
            logger.warning(
                "Call placement failed",
                extra={"job_id": str(job.id), "error_code": e.error_code},
            )
            return CallOutcome.failure(error=str(e) or "call_failed")
        except Exception:
            logger.exception("Unexpected error placing call", extra={"job_id": str(job.id)})
            return CallOutcome.failure(error="call_failed")

        call_id = placed.provider_call_id
        if on_placed is not None:
            try:
                await on_placed(call_id)
            except Exception:
                logger.exception(
                    "on_placed callback failed",
                    extra={"job_id": str(job.id), "provider_call_id": call_id},
                )

        try:
            snapshot = await self._await_completion(call_id)
        except Exception:
            logger.exception(
                "Unexpected error waiting for call",
                extra={"job_id": str(job.id), "provider_call_id": call_id},
            )
            return CallOutcome.failure(error="call_failed", provider_call_id=call_id)

        if snapshot is None:
            logger.warning(
                "Call did not end within polling window",
                extra={"job_id": str(job.id), "provider_call_id": call_id},
            )
            return CallOutcome.failure(
                error=TIMEOUT_ERROR,
                duration_seconds=int(self._config.poll_interval_seconds * self._config.max_polls),
                provider_call_id=call_id,
            )

        return self._outcome_from_snapshot(snapshot)

    async def _await_completion(self, call_id: str) -> CallStatusSnapshot | None:
        interval = self._config.poll_interval_seconds
        future = self._completions.expect(call_id) if self._completions else None
        try:
            for poll in range(self._config.max_polls):
                if future is not None:
                    done, _ = await asyncio.wait({future}, timeout=interval)
                    if done:
                        return future.result()
                else:
                    await asyncio.sleep(interval)

                try:
                    snapshot = await self._voice_provider.get_call_status(call_id)
                except VoiceProviderError as e:
                    logger.warning(
                        "Call status poll failed",
                        extra={"provider_call_id": call_id, "poll": poll, "error": str(e)},
                    )
                    continue

                if snapshot.is_terminal:
                    return snapshot
                if is_failed_ending(snapshot.ended_reason):
                    return snapshot
            return None
        finally:
            if self._completions is not None:
                self._completions.discard(call_id)

    def _outcome_from_snapshot(self, snapshot: CallStatusSnapshot) -> CallOutcome:
        duration = snapshot.duration_seconds or 0
        reported = (
            self._completions.take_extraction(snapshot.provider_call_id)
            if self._completions is not None
            else None
        )
        if is_failed_ending(snapshot.ended_reason):
            return CallOutcome.failure(
                error=snapshot.ended_reason or "call_failed",
                duration_seconds=duration,
                provider_call_id=snapshot.provider_call_id,
                ended_reason=snapshot.ended_reason,
            )

        return CallOutcome(
            success=True,
            duration_seconds=duration,
            transcript=snapshot.transcript or "",
            extracted_data=reported or extract_availability(snapshot.transcript),
            confidence_score=calculate_confidence(
                snapshot.duration_seconds, snapshot.ended_reason, snapshot.transcript
            ),
            provider_call_id=snapshot.provider_call_id,
            ended_reason=snapshot.ended_reason,
        )
