"""
Voice-call provider interface definition.

Adapters implement the sync methods; the async entrypoints run them in a
worker thread so the event loop never blocks on provider HTTP calls.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import anyio


class ProviderCallStatus(str, Enum):
    """Call status values reported by the provider."""

    QUEUED = "queued"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    FORWARDING = "forwarding"
    ENDED = "ended"


@dataclass(frozen=True)
class PlaceCallRequest:
    """Request to place an outbound pharmacy call."""

    phone_number: str
    medication_name: str
    dosage: str | None
    pharmacy_name: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PlacedCall:
    """Response from call placement."""

    provider_call_id: str
    status: ProviderCallStatus
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallStatusSnapshot:
    """Provider view of a call at one point in time."""

    provider_call_id: str
    status: ProviderCallStatus
    duration_seconds: int | None = None
    transcript: str | None = None
    ended_reason: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status == ProviderCallStatus.ENDED


class VoiceEventType(str, Enum):
    """Webhook events the provider posts back."""

    STATUS_UPDATE = "status-update"
    END_OF_CALL_REPORT = "end-of-call-report"
    CALL_STARTED = "call-start"
    CALL_ENDED = "call-end"
    FUNCTION_CALL = "function-call"
    OTHER = "other"


@dataclass(frozen=True)
class VoiceWebhookEvent:
    """Parsed webhook event from the voice provider."""

    event_type: VoiceEventType
    provider_call_id: str
    status: ProviderCallStatus | None = None
    ended_reason: str | None = None
    transcript: str | None = None
    duration_seconds: int | None = None
    function_name: str | None = None
    function_arguments: dict[str, Any] = field(default_factory=dict)
    raw_payload: dict[str, Any] = field(default_factory=dict)

    def to_snapshot(self) -> CallStatusSnapshot:
        return CallStatusSnapshot(
            provider_call_id=self.provider_call_id,
            status=self.status or ProviderCallStatus.ENDED,
            duration_seconds=self.duration_seconds,
            transcript=self.transcript,
            ended_reason=self.ended_reason,
            raw_response=self.raw_payload,
        )


class VoiceProviderError(Exception):
    """Base exception for voice provider errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_response: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.provider_response = provider_response or {}


class CallPlacementError(VoiceProviderError):
    """Error while placing a call."""


class CallStatusError(VoiceProviderError):
    """Error while fetching call status."""


class WebhookParseError(VoiceProviderError):
    """Error parsing webhook event."""


class VoiceCallProvider(ABC):
    """Abstract interface for voice-call providers."""

    async def place_call(self, request: PlaceCallRequest) -> PlacedCall:
        return await anyio.to_thread.run_sync(self.place_call_sync, request)

    async def get_call_status(self, provider_call_id: str) -> CallStatusSnapshot:
        return await anyio.to_thread.run_sync(self.get_call_status_sync, provider_call_id)

    @abstractmethod
    def place_call_sync(self, request: PlaceCallRequest) -> PlacedCall:
        """Place an outbound call."""
        ...

    @abstractmethod
    def get_call_status_sync(self, provider_call_id: str) -> CallStatusSnapshot:
        """Fetch the current state of a call."""
        ...

    @abstractmethod
    def parse_webhook_event(self, payload: dict[str, Any]) -> VoiceWebhookEvent:
        """Parse a webhook event from the provider."""
        ...

    @abstractmethod
    def validate_webhook_secret(self, presented: str | None) -> bool:
        """Check the shared secret sent with a webhook."""
        ...

    def close(self) -> None:
        """Release provider resources."""
