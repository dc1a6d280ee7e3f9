"""
Voice provider configuration.

Real calls go through Vapi; everything else uses the simulator.
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CallMode(str, Enum):
    """How pharmacy calls are executed."""

    AUTO = "auto"
    REAL = "real"
    SIMULATED = "simulated"


class VoiceConfig(BaseSettings):
    """Vapi configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="VAPI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    call_mode: CallMode = Field(default=CallMode.AUTO)

    # Provider credentials
    api_key: str = Field(default="")
    assistant_id: str = Field(default="")
    phone_number_id: str = Field(default="")
    base_url: str = Field(default="https://api.vapi.ai")

    # Shared secret Vapi sends back in the x-vapi-secret header
    webhook_secret: str = Field(default="")

    # Completion wait: poll_interval_seconds * max_polls bounds one call
    poll_interval_seconds: float = Field(default=5.0, gt=0, le=60)
    max_polls: int = Field(default=60, ge=1, le=720)
    request_timeout_seconds: float = Field(default=30.0, gt=0, le=120)

    def use_real_calls(self, app_env: str) -> bool:
        """Resolve ``call_mode`` for the running environment."""
        if self.call_mode == CallMode.REAL:
            return True
        if self.call_mode == CallMode.SIMULATED:
            return False
        return app_env == "prod" and bool(self.api_key)

    @property
    def max_call_seconds(self) -> float:
        """Upper bound on one real call: placement plus the completion wait."""
        return self.request_timeout_seconds + self.poll_interval_seconds * self.max_polls

    def missing_credentials(self) -> list[str]:
        """Names of the settings a real call cannot be placed without."""
        required = {
            "VAPI_API_KEY": self.api_key,
            "VAPI_ASSISTANT_ID": self.assistant_id,
            "VAPI_PHONE_NUMBER_ID": self.phone_number_id,
        }
        return [name for name, value in required.items() if not value]


@lru_cache(maxsize=1)
def get_voice_config() -> VoiceConfig:
    return VoiceConfig()
