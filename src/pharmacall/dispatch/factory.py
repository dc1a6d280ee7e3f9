"""
Dispatcher and signature-verifier factories.
"""

from __future__ import annotations

from pharmacall.config import Settings
from pharmacall.dispatch.interface import TaskDispatcher
from pharmacall.dispatch.local import LocalTaskDispatcher
from pharmacall.dispatch.qstash import QStashDispatcher
from pharmacall.dispatch.signature import QStashSignatureVerifier
from pharmacall.shared.exceptions import ConfigurationError
from pharmacall.shared.logging import get_logger

logger = get_logger(__name__)


def build_dispatcher(settings: Settings) -> TaskDispatcher:
    """Select the dispatcher named by ``TASK_DISPATCHER``.

    The local dispatcher is returned unbound; the caller binds it to the
    scheduler once both exist.
    """
    logger.info("Task dispatcher resolved", extra={"dispatcher": settings.task_dispatcher})

    if settings.task_dispatcher == "qstash":
        return QStashDispatcher.from_settings(settings)

    if settings.task_dispatcher == "local":
        if settings.app_env == "prod":
            logger.warning("Local task dispatcher in prod: scheduled jobs do not survive restarts")
        return LocalTaskDispatcher()

    raise ConfigurationError(
        message=f"Unsupported task dispatcher: {settings.task_dispatcher}",
    )


def build_signature_verifier(settings: Settings) -> QStashSignatureVerifier | None:
    """Verifier for task callbacks, or None when unsigned callbacks are allowed.

    Unsigned callbacks are only tolerated in dev; every other environment
    running the qstash dispatcher must configure signing keys.
    """
    if settings.signing_keys:
        return QStashSignatureVerifier(
            current_signing_key=settings.qstash_current_signing_key,
            next_signing_key=settings.qstash_next_signing_key,
        )
    if settings.app_env == "dev":
        return None
    raise ConfigurationError(
        message="QSTASH_CURRENT_SIGNING_KEY is required outside dev",
        details={"app_env": settings.app_env},
    )
