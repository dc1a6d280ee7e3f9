"""
Shared exception hierarchy.

HTTP mapping lives in ``pharmacall.main``; jobs only ever store the short
``message`` of these errors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class AppError(Exception):
    message: str = "Application error"
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message


class ConfigurationError(AppError):
    """Fatal misconfiguration; never retried."""


class InvalidTimezoneError(ConfigurationError):
    pass


class NotFoundError(AppError):
    pass


class SearchNotFoundError(NotFoundError):
    pass


class JobNotFoundError(NotFoundError):
    pass


class BusinessRuleError(AppError):
    """Terminal rejection of a request; never retried."""


class NoPharmaciesSelectedError(BusinessRuleError):
    pass


class DispatchError(AppError):
    """The delayed-task publish call failed."""


class SignatureVerificationError(AppError):
    pass
