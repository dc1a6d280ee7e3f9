from __future__ import annotations

"""
QStash delayed-publish dispatcher.

``POST {qstash_url}/v2/publish/{destination}`` with an ``Upstash-Delay``
header; QStash then POSTs the JSON body to the destination.
"""

import logging
from typing import Any

import anyio
import httpx

from pharmacall.dispatch.interface import PROCESS_JOB_PATH, ProcessJobPayload
from pharmacall.shared.exceptions import ConfigurationError, DispatchError

logger = logging.getLogger(__name__)

# QStash retries failed deliveries itself; ProcessJob is idempotent.
DEFAULT_DELIVERY_RETRIES = 3


class QStashDispatcher:
    def __init__(
        self,
        qstash_url: str,
        token: str,
        callback_url: str,
        http_client: httpx.Client | None = None,
        delivery_retries: int = DEFAULT_DELIVERY_RETRIES,
    ) -> None:
        if not token:
            raise ConfigurationError(message="QSTASH_TOKEN is required for the qstash dispatcher")
        if not callback_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                message="Dispatcher callback URL must be absolute",
                details={"callback_url": callback_url},
            )
        self._qstash_url = qstash_url.rstrip("/")
        self._token = token
        self._callback_url = callback_url
        self._http_client = http_client
        self._owns_client = http_client is None
        self._delivery_retries = delivery_retries

    @classmethod
    def from_settings(cls, settings: Any, http_client: httpx.Client | None = None) -> QStashDispatcher:
        return cls(
            qstash_url=settings.qstash_url,
            token=settings.qstash_token,
            callback_url=settings.task_url(PROCESS_JOB_PATH),
            http_client=http_client,
        )

    def _get_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=httpx.Timeout(15.0))
        return self._http_client

    async def schedule(self, payload: ProcessJobPayload, delay_seconds: int) -> str:
        return await anyio.to_thread.run_sync(self.schedule_sync, payload, delay_seconds)

    def schedule_sync(self, payload: ProcessJobPayload, delay_seconds: int) -> str:
        delay = max(0, int(delay_seconds))
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
            "Upstash-Retries": str(self._delivery_retries),
        }
        if delay > 0:
            headers["Upstash-Delay"] = f"{delay}s"

        try:
            response = self._get_client().post(
                f"{self._qstash_url}/v2/publish/{self._callback_url}",
                json=payload.to_wire(),
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.exception(
                "HTTP error publishing to QStash",
                extra={"pharmacy_id": payload.pharmacy_id, "attempt": payload.attempt},
            )
            raise DispatchError(message=f"QStash publish failed: {e!s}") from e

        if response.status_code >= 400:
            logger.error(
                "QStash publish rejected",
                extra={
                    "status_code": response.status_code,
                    "body": response.text[:500],
                    "pharmacy_id": payload.pharmacy_id,
                },
            )
            raise DispatchError(
                message=f"QStash publish rejected with status {response.status_code}",
                details={"status_code": response.status_code},
            )

        data = response.json() if response.content else {}
        message_id = data.get("messageId") if isinstance(data, dict) else None
        if not message_id:
            raise DispatchError(message="QStash response missing messageId")

        logger.info(
            "Job invocation published",
            extra={
                "message_id": message_id,
                "search_id": str(payload.search_id),
                "pharmacy_id": payload.pharmacy_id,
                "attempt": payload.attempt,
                "delay_seconds": delay,
            },
        )
        return str(message_id)

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            self._http_client.close()
            self._http_client = None
