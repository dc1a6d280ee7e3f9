"""
Call executor factory.

Resolves the configured call mode once at startup; missing credentials for
real calls are a fatal configuration error.
"""

from __future__ import annotations

from pharmacall.config import Settings
from pharmacall.shared.exceptions import ConfigurationError
from pharmacall.shared.logging import get_logger
from pharmacall.voice.completion import CallCompletionRegistry
from pharmacall.voice.config import VoiceConfig
from pharmacall.voice.executor import CallExecutor, VoiceCallExecutor
from pharmacall.voice.simulator import SimulatedCallExecutor
from pharmacall.voice.vapi_adapter import VapiAdapter

logger = get_logger(__name__)


def _mask(s: str, keep: int = 6) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


def _require_credentials(config: VoiceConfig) -> None:
    missing = config.missing_credentials()
    if missing:
        raise ConfigurationError(
            message="Real call mode requires Vapi credentials",
            details={"missing": missing},
        )


def build_voice_provider(config: VoiceConfig) -> VapiAdapter:
    _require_credentials(config)
    return VapiAdapter(config)


def build_call_executor(
    settings: Settings,
    config: VoiceConfig,
    completions: CallCompletionRegistry | None = None,
    voice_provider: VapiAdapter | None = None,
) -> CallExecutor:
    """Pick the executor for the configured call mode.

    ``voice_provider`` lets the caller share one adapter (and its HTTP client)
    between the executor and the webhook route.
    """
    real = config.use_real_calls(settings.app_env)

    logger.info(
        "Call executor resolved",
        extra={
            "call_mode": config.call_mode.value,
            "real_calls": real,
            "vapi_api_key": _mask(config.api_key),
            "assistant_id": config.assistant_id,
            "max_wait_seconds": config.poll_interval_seconds * config.max_polls,
        },
    )

    if not real:
        return SimulatedCallExecutor()

    if voice_provider is None:
        voice_provider = build_voice_provider(config)
    else:
        _require_credentials(config)
    return VoiceCallExecutor(
        voice_provider=voice_provider,
        config=config,
        completions=completions,
    )
