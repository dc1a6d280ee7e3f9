"""Tests for transcript heuristics, confidence scoring and the simulator."""

import random
from uuid import uuid4

import pytest

from pharmacall.jobs.models import CallProvider, QueueJob
from pharmacall.voice.outcome import (
    calculate_confidence,
    extract_availability,
    is_failed_ending,
)
from pharmacall.voice.simulator import SIMULATED_ERRORS, SimulatedCallExecutor


def make_job(dosage: str | None = "500mg") -> QueueJob:
    return QueueJob(
        id=uuid4(),
        search_id=uuid4(),
        pharmacy_id="ph-1",
        pharmacy_name="Corner Drugs",
        pharmacy_phone="+15555550100",
        medication_name="Amoxicillin",
        dosage=dosage,
        attempt=1,
    )


class TestExtractAvailability:
    def test_in_stock_with_price(self) -> None:
        data = extract_availability("Yes, we have it in stock. It's $1,249.99 for thirty.")
        assert data.availability is True
        assert data.price == 1249.99
        assert data.notes == "In stock at $1249.99"

    def test_denial_wins_over_available(self) -> None:
        data = extract_availability("Sorry, that one is not available right now.")
        assert data.availability is False
        assert data.notes == "Out of stock"

    def test_unclear_transcript(self) -> None:
        data = extract_availability("Please hold while I transfer you.")
        assert data.availability is None
        assert data.price is None

    @pytest.mark.parametrize("transcript", [None, "", "   "])
    def test_empty_transcript(self, transcript: str | None) -> None:
        data = extract_availability(transcript)
        assert data.availability is None
        assert data.notes == "No transcript available"


class TestFailedEnding:
    @pytest.mark.parametrize(
        "reason",
        ["customer-did-not-answer", "customer-busy", "voicemail", "pipeline-error-openai", "no-answer"],
    )
    def test_failed_endings(self, reason: str) -> None:
        assert is_failed_ending(reason)

    @pytest.mark.parametrize("reason", [None, "", "customer-ended-call", "assistant-ended-call"])
    def test_clean_endings(self, reason: str | None) -> None:
        assert not is_failed_ending(reason)


class TestConfidence:
    def test_floor_for_short_failed_call(self) -> None:
        assert calculate_confidence(10, "customer-busy", None) == 0.5

    def test_long_clean_call_is_capped(self) -> None:
        assert calculate_confidence(90, "customer-ended-call", "x" * 80) == 1.0

    def test_partial_signals(self) -> None:
        # +0.2 for >30s, +0.2 for a clean ending
        assert calculate_confidence(45, "customer-ended-call", "short") == 0.9
        # clean ending only
        assert calculate_confidence(None, None, None) == 0.7


class TestSimulatedCallExecutor:
    def test_rates_are_validated(self) -> None:
        with pytest.raises(ValueError):
            SimulatedCallExecutor(success_rate=1.5)
        with pytest.raises(ValueError):
            SimulatedCallExecutor(in_stock_rate=-0.1)

    @pytest.mark.asyncio
    async def test_always_succeeds_at_full_success_rate(self) -> None:
        executor = SimulatedCallExecutor(rng=random.Random(7), success_rate=1.0, in_stock_rate=1.0)
        placed: list[str] = []

        async def on_placed(call_id: str) -> None:
            placed.append(call_id)

        outcome = await executor.execute(make_job(), on_placed=on_placed)

        assert executor.provider == CallProvider.MOCK
        assert outcome.success is True
        assert placed == ["SIM_CALL_000001"]
        assert outcome.provider_call_id == "SIM_CALL_000001"
        assert outcome.extracted_data is not None
        assert outcome.extracted_data.availability is True
        assert 20 <= outcome.extracted_data.price <= 220
        assert 30 <= outcome.duration_seconds <= 150
        assert 0.7 <= outcome.confidence_score <= 1.0
        assert "Amoxicillin 500mg" in outcome.transcript

    @pytest.mark.asyncio
    async def test_always_fails_at_zero_success_rate(self) -> None:
        executor = SimulatedCallExecutor(rng=random.Random(7), success_rate=0.0)
        outcome = await executor.execute(make_job())
        assert outcome.success is False
        assert outcome.error in SIMULATED_ERRORS
        assert outcome.extracted_data is None

    @pytest.mark.asyncio
    async def test_seeded_runs_are_reproducible(self) -> None:
        first = SimulatedCallExecutor(rng=random.Random(42))
        second = SimulatedCallExecutor(rng=random.Random(42))
        job = make_job(dosage=None)
        assert await first.execute(job) == await second.execute(job)

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_abort_call(self) -> None:
        executor = SimulatedCallExecutor(rng=random.Random(1), success_rate=1.0)

        async def broken(_: str) -> None:
            raise RuntimeError("db down")

        outcome = await executor.execute(make_job(), on_placed=broken)
        assert outcome.success is True
