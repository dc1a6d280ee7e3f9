"""Tests for the real-call executor with a fake provider."""

from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest

from pharmacall.jobs.models import CallProvider, QueueJob
from pharmacall.voice.completion import CallCompletionRegistry
from pharmacall.voice.config import VoiceConfig
from pharmacall.voice.executor import TIMEOUT_ERROR, VoiceCallExecutor
from pharmacall.voice.interface import (
    CallPlacementError,
    CallStatusError,
    CallStatusSnapshot,
    PlaceCallRequest,
    PlacedCall,
    ProviderCallStatus,
)
from pharmacall.voice.outcome import ExtractedData


class FakeProvider:
    """Returns queued snapshots in order, then repeats the last one."""

    def __init__(self, snapshots: list[CallStatusSnapshot] | None = None) -> None:
        self.snapshots = snapshots or []
        self.requests: list[PlaceCallRequest] = []
        self.polls = 0
        self.place_error: Exception | None = None

    async def place_call(self, request: PlaceCallRequest) -> PlacedCall:
        if self.place_error is not None:
            raise self.place_error
        self.requests.append(request)
        return PlacedCall(provider_call_id="call_abc", status=ProviderCallStatus.QUEUED)

    async def get_call_status(self, provider_call_id: str) -> CallStatusSnapshot:
        self.polls += 1
        if not self.snapshots:
            return snapshot(ProviderCallStatus.IN_PROGRESS)
        if len(self.snapshots) > 1:
            return self.snapshots.pop(0)
        return self.snapshots[0]


def snapshot(
    status: ProviderCallStatus,
    ended_reason: str | None = None,
    transcript: str | None = None,
    duration: int | None = None,
) -> CallStatusSnapshot:
    return CallStatusSnapshot(
        provider_call_id="call_abc",
        status=status,
        ended_reason=ended_reason,
        transcript=transcript,
        duration_seconds=duration,
    )


def make_job() -> QueueJob:
    return QueueJob(
        id=uuid4(),
        search_id=uuid4(),
        pharmacy_id="ph-1",
        pharmacy_name="Corner Drugs",
        pharmacy_phone="+15555550100",
        medication_name="Amoxicillin",
        dosage="500mg",
        attempt=2,
    )


@pytest.fixture
def fast_config() -> VoiceConfig:
    return VoiceConfig(poll_interval_seconds=0.01, max_polls=3)


class TestVoiceCallExecutor:
    @pytest.mark.asyncio
    async def test_completed_call_is_extracted(self, fast_config: VoiceConfig) -> None:
        provider = FakeProvider(
            [
                snapshot(ProviderCallStatus.RINGING),
                snapshot(
                    ProviderCallStatus.ENDED,
                    ended_reason="customer-ended-call",
                    transcript="Yes we have it in stock, it is $30 for the bottle.",
                    duration=65,
                ),
            ]
        )
        executor = VoiceCallExecutor(provider, fast_config)
        placed: list[str] = []

        async def on_placed(call_id: str) -> None:
            placed.append(call_id)

        job = make_job()
        outcome = await executor.execute(job, on_placed=on_placed)

        assert executor.provider == CallProvider.VAPI
        assert placed == ["call_abc"]
        assert outcome.success is True
        assert outcome.provider_call_id == "call_abc"
        assert outcome.duration_seconds == 65
        assert outcome.extracted_data == ExtractedData(
            availability=True, price=30.0, notes="In stock at $30.00"
        )
        assert outcome.confidence_score == 1.0
        request = provider.requests[0]
        assert request.phone_number == "+15555550100"
        assert request.metadata["jobId"] == str(job.id)
        assert request.metadata["attempt"] == 2

    @pytest.mark.asyncio
    async def test_no_answer_is_a_failure(self, fast_config: VoiceConfig) -> None:
        provider = FakeProvider(
            [snapshot(ProviderCallStatus.ENDED, ended_reason="customer-did-not-answer", duration=0)]
        )
        outcome = await VoiceCallExecutor(provider, fast_config).execute(make_job())

        assert outcome.success is False
        assert outcome.error == "customer-did-not-answer"

    @pytest.mark.asyncio
    async def test_polling_is_bounded(self, fast_config: VoiceConfig) -> None:
        provider = FakeProvider()
        outcome = await VoiceCallExecutor(provider, fast_config).execute(make_job())

        assert outcome.success is False
        assert outcome.error == TIMEOUT_ERROR
        assert provider.polls == 3

    @pytest.mark.asyncio
    async def test_status_errors_keep_polling(self, fast_config: VoiceConfig) -> None:
        class FlakyProvider(FakeProvider):
            async def get_call_status(self, provider_call_id: str) -> CallStatusSnapshot:
                self.polls += 1
                if self.polls == 1:
                    raise CallStatusError("upstream 502", error_code="502")
                return snapshot(ProviderCallStatus.ENDED, ended_reason="customer-ended-call")

        provider = FlakyProvider()
        outcome = await VoiceCallExecutor(provider, fast_config).execute(make_job())

        assert outcome.success is True
        assert provider.polls == 2

    @pytest.mark.asyncio
    async def test_placement_error_is_returned_not_raised(self, fast_config: VoiceConfig) -> None:
        provider = FakeProvider()
        provider.place_error = CallPlacementError("invalid number", error_code="400")

        outcome = await VoiceCallExecutor(provider, fast_config).execute(make_job())

        assert outcome.success is False
        assert outcome.error == "invalid number"
        assert provider.polls == 0

    @pytest.mark.asyncio
    async def test_webhook_resolution_ends_wait_early(self) -> None:
        config = VoiceConfig(poll_interval_seconds=5.0, max_polls=60)
        completions = CallCompletionRegistry()
        provider = FakeProvider()
        executor = VoiceCallExecutor(provider, config, completions=completions)

        async def on_placed(call_id: str) -> None:
            completions.report_extraction(
                call_id, ExtractedData(availability=False, price=None, notes="Backordered")
            )
            asyncio.get_running_loop().call_soon(
                completions.resolve,
                call_id,
                snapshot(
                    ProviderCallStatus.ENDED,
                    ended_reason="assistant-ended-call",
                    transcript="We have it in stock",
                    duration=40,
                ),
            )

        outcome = await asyncio.wait_for(executor.execute(make_job(), on_placed=on_placed), 1.0)

        assert outcome.success is True
        assert provider.polls == 0
        # the assistant's reported data wins over transcript keywords
        assert outcome.extracted_data == ExtractedData(
            availability=False, price=None, notes="Backordered"
        )
        assert completions.pending_count() == 0


class TestCallCompletionRegistry:
    @pytest.mark.asyncio
    async def test_early_event_is_delivered_to_later_waiter(self) -> None:
        registry = CallCompletionRegistry()
        ended = snapshot(ProviderCallStatus.ENDED)

        assert registry.resolve("call_abc", ended) is False
        future = registry.expect("call_abc")

        assert future.done()
        assert future.result() == ended

    @pytest.mark.asyncio
    async def test_discard_cancels_waiter(self) -> None:
        registry = CallCompletionRegistry()
        future = registry.expect("call_abc")
        registry.discard("call_abc")

        assert future.cancelled()
        assert registry.pending_count() == 0
        assert registry.resolve("call_abc", snapshot(ProviderCallStatus.ENDED)) is False

    def test_extraction_is_taken_once(self) -> None:
        registry = CallCompletionRegistry()
        data = ExtractedData(availability=True, price=9.0, notes="ok")
        registry.report_extraction("call_abc", data)

        assert registry.take_extraction("call_abc") == data
        assert registry.take_extraction("call_abc") is None
