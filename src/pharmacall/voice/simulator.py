"""
Simulated call executor for development and tests.

Produces outcomes shaped like real calls without placing one.
"""

from __future__ import annotations

import random

from pharmacall.jobs.models import CallProvider, QueueJob
from pharmacall.shared.logging import get_logger
from pharmacall.voice.executor import PlacedCallback
from pharmacall.voice.outcome import CallOutcome, ExtractedData

logger = get_logger(__name__)

SIMULATED_ERRORS = ("no_answer", "busy", "invalid_number", "call_failed")


class SimulatedCallExecutor:
    """Random but plausible call outcomes.

    Pass a seeded ``random.Random`` for deterministic results.
    """

    provider = CallProvider.MOCK

    def __init__(
        self,
        rng: random.Random | None = None,
        success_rate: float = 0.9,
        in_stock_rate: float = 0.7,
    ) -> None:
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError("success_rate must be within [0, 1]")
        if not 0.0 <= in_stock_rate <= 1.0:
            raise ValueError("in_stock_rate must be within [0, 1]")
        self._rng = rng or random.Random()
        self._success_rate = success_rate
        self._in_stock_rate = in_stock_rate
        self._counter = 0

    async def execute(
        self,
        job: QueueJob,
        on_placed: PlacedCallback | None = None,
    ) -> CallOutcome:
        self._counter += 1
        call_id = f"SIM_CALL_{self._counter:06d}"
        if on_placed is not None:
            try:
                await on_placed(call_id)
            except Exception:
                logger.exception("on_placed callback failed", extra={"job_id": str(job.id)})

        duration = self._rng.randint(30, 150)

        if self._rng.random() >= self._success_rate:
            error = self._rng.choice(SIMULATED_ERRORS)
            logger.info(
                "Simulated call failed",
                extra={"job_id": str(job.id), "error": error},
            )
            return CallOutcome.failure(
                error=error,
                duration_seconds=duration,
                provider_call_id=call_id,
            )

        in_stock = self._rng.random() < self._in_stock_rate
        price = float(self._rng.randint(20, 220)) if in_stock else None
        dosage = f" {job.dosage}" if job.dosage else ""
        status_text = f"In stock for ${price:.0f}" if in_stock else "Out of stock"

        return CallOutcome(
            success=True,
            duration_seconds=duration,
            transcript=(
                f"Called {job.pharmacy_name} asking about "
                f"{job.medication_name}{dosage}. {status_text}."
            ),
            extracted_data=ExtractedData(
                availability=in_stock,
                price=price,
                notes="In stock, ready for pickup" if in_stock else "Currently out of stock",
            ),
            confidence_score=round(0.7 + self._rng.random() * 0.3, 2),
            provider_call_id=call_id,
        )
