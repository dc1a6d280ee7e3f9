"""
Call outcome model and transcript heuristics.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any

# Denials are matched first: "not available" also contains "available".
OUT_OF_STOCK_PHRASES = (
    "out of stock",
    "not available",
    "unavailable",
    "don't have",
    "do not have",
    "no we don't",
    "sold out",
)
IN_STOCK_PHRASES = (
    "in stock",
    "available",
    "have it",
    "yes we have",
    "we do have",
)
PRICE_PATTERN = re.compile(r"\$\s?(\d+(?:,\d{3})*(?:\.\d{1,2})?)")

NO_ANSWER_REASONS = (
    "no-answer",
    "customer-did-not-answer",
    "customer-busy",
    "voicemail",
    "silence-timed-out",
)

CONFIDENCE_FLOOR = 0.5
CONFIDENCE_CAP = 1.0


@dataclass(frozen=True)
class ExtractedData:
    """Structured result of one pharmacy call."""

    availability: bool | None
    price: float | None
    notes: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CallOutcome:
    """What one call attempt produced. Failures carry ``error``, never raise."""

    success: bool
    duration_seconds: int = 0
    transcript: str | None = None
    extracted_data: ExtractedData | None = None
    confidence_score: float | None = None
    provider_call_id: str | None = None
    error: str | None = None
    ended_reason: str | None = None

    @classmethod
    def failure(
        cls,
        error: str,
        duration_seconds: int = 0,
        provider_call_id: str | None = None,
        ended_reason: str | None = None,
    ) -> CallOutcome:
        return cls(
            success=False,
            duration_seconds=duration_seconds,
            provider_call_id=provider_call_id,
            error=error,
            ended_reason=ended_reason,
        )


def extract_availability(transcript: str | None) -> ExtractedData:
    """Keyword heuristics over the call transcript."""
    text = transcript or ""
    lowered = text.lower()

    availability: bool | None = None
    if any(phrase in lowered for phrase in OUT_OF_STOCK_PHRASES):
        availability = False
    elif any(phrase in lowered for phrase in IN_STOCK_PHRASES):
        availability = True

    price: float | None = None
    match = PRICE_PATTERN.search(text)
    if match:
        price = float(match.group(1).replace(",", ""))

    if not text.strip():
        notes = "No transcript available"
    elif availability is True:
        notes = "In stock" + (f" at ${price:.2f}" if price is not None else "")
    elif availability is False:
        notes = "Out of stock"
    else:
        notes = "Call completed; availability unclear from transcript"

    return ExtractedData(availability=availability, price=price, notes=notes)


def is_failed_ending(ended_reason: str | None) -> bool:
    """Whether the provider's end reason means the call did not get through."""
    if not ended_reason:
        return False
    reason = ended_reason.lower()
    return "error" in reason or any(marker in reason for marker in NO_ANSWER_REASONS)


def calculate_confidence(
    duration_seconds: int | None,
    ended_reason: str | None,
    transcript: str | None,
) -> float:
    """Confidence in the extracted result, in [0.5, 1.0]."""
    confidence = CONFIDENCE_FLOOR
    if duration_seconds and duration_seconds > 30:
        confidence += 0.2
    if duration_seconds and duration_seconds > 60:
        confidence += 0.1
    if not is_failed_ending(ended_reason):
        confidence += 0.2
    if transcript and len(transcript) > 50:
        confidence += 0.1
    return round(min(CONFIDENCE_CAP, max(CONFIDENCE_FLOOR, confidence)), 2)
