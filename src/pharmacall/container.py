"""
Service wiring.

One ``ServiceContainer`` is built per process at startup and stored on
``app.state``; request dependencies read from it.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from pharmacall.admin.service import AdminService
from pharmacall.config import Settings, get_settings
from pharmacall.dispatch.factory import build_dispatcher, build_signature_verifier
from pharmacall.dispatch.interface import TaskDispatcher
from pharmacall.dispatch.local import LocalTaskDispatcher
from pharmacall.dispatch.signature import QStashSignatureVerifier
from pharmacall.jobs.store import JobStore
from pharmacall.scheduling.models import SchedulerSettings
from pharmacall.scheduling.rate_guard import RateGuard
from pharmacall.scheduling.service import PharmacyCallScheduler
from pharmacall.searches.repository import SearchRepository
from pharmacall.shared.database import DatabaseManager, utcnow
from pharmacall.shared.exceptions import ConfigurationError
from pharmacall.shared.logging import get_logger
from pharmacall.voice.completion import CallCompletionRegistry
from pharmacall.voice.config import VoiceConfig, get_voice_config
from pharmacall.voice.executor import CallExecutor, VoiceCallExecutor
from pharmacall.voice.factory import build_call_executor
from pharmacall.voice.vapi_adapter import VapiAdapter
from pharmacall.voice.webhooks.handler import VapiWebhookHandler

logger = get_logger(__name__)

CLAIM_MARGIN = timedelta(minutes=1)


def check_claim_outlives_call(stale_after: timedelta, voice_config: VoiceConfig) -> None:
    """Reject a stale-claim threshold a call still in flight could outlast.

    A redelivery may take over a ``processing`` claim once it is older than
    ``stale_after``; that must never happen while the first call can still be
    waiting on the provider.

    Raises:
        ConfigurationError: ``stale_after`` does not exceed the call bound plus
            ``CLAIM_MARGIN``.
    """
    call_bound = timedelta(seconds=voice_config.max_call_seconds)
    if stale_after <= call_bound + CLAIM_MARGIN:
        raise ConfigurationError(
            message="STALE_PROCESSING_MINUTES must exceed the longest call wait",
            details={
                "stale_processing_seconds": int(stale_after.total_seconds()),
                "max_call_seconds": voice_config.max_call_seconds,
                "margin_seconds": int(CLAIM_MARGIN.total_seconds()),
            },
        )


@dataclass
class ServiceContainer:
    settings: Settings
    voice_config: VoiceConfig
    db: DatabaseManager
    searches: SearchRepository
    jobs: JobStore
    rate_guard: RateGuard
    completions: CallCompletionRegistry
    executor: CallExecutor
    dispatcher: TaskDispatcher
    scheduler: PharmacyCallScheduler
    admin: AdminService
    signature_verifier: QStashSignatureVerifier | None
    vapi_adapter: VapiAdapter
    webhook_handler: VapiWebhookHandler

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        voice_config: VoiceConfig | None = None,
        db: DatabaseManager | None = None,
        executor: CallExecutor | None = None,
        dispatcher: TaskDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> ServiceContainer:
        """Wire every service.

        Raises:
            ConfigurationError: invalid timezone, missing provider credentials,
                a stale-claim threshold shorter than a real call, or missing
                signing keys outside dev.
        """
        settings = settings or get_settings()
        voice_config = voice_config or get_voice_config()
        db = db or DatabaseManager(settings.database_url)

        session_factory = db.session_factory
        searches = SearchRepository(session_factory)
        jobs = JobStore(session_factory)
        rate_guard = RateGuard(session_factory)
        completions = CallCompletionRegistry()

        vapi_adapter = VapiAdapter(voice_config)
        executor = executor or build_call_executor(
            settings, voice_config, completions, voice_provider=vapi_adapter
        )
        stale_after = timedelta(minutes=settings.stale_processing_minutes)
        if isinstance(executor, VoiceCallExecutor):
            check_claim_outlives_call(stale_after, voice_config)
        dispatcher = dispatcher or build_dispatcher(settings)

        scheduler = PharmacyCallScheduler(
            searches=searches,
            jobs=jobs,
            rate_guard=rate_guard,
            executor=executor,
            dispatcher=dispatcher,
            settings=SchedulerSettings(
                timezone=settings.calling_timezone,
                stale_processing_after=stale_after,
            ),
            clock=clock,
        )
        if isinstance(dispatcher, LocalTaskDispatcher):
            dispatcher.bind(scheduler.process_job)

        container = cls(
            settings=settings,
            voice_config=voice_config,
            db=db,
            searches=searches,
            jobs=jobs,
            rate_guard=rate_guard,
            completions=completions,
            executor=executor,
            dispatcher=dispatcher,
            scheduler=scheduler,
            admin=AdminService(searches, jobs, clock=clock),
            signature_verifier=build_signature_verifier(settings),
            vapi_adapter=vapi_adapter,
            webhook_handler=VapiWebhookHandler(jobs, completions),
        )
        logger.info(
            "Services wired",
            extra={
                "executor": type(executor).__name__,
                "dispatcher": type(dispatcher).__name__,
                "calling_timezone": settings.calling_timezone,
                "signed_task_callbacks": container.signature_verifier is not None,
            },
        )
        return container

    async def aclose(self) -> None:
        await self.dispatcher.aclose()
        self.vapi_adapter.close()
        await self.db.close()
