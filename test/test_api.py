"""
API integration tests: admin, task callback and Vapi webhook routes.

The ASGI transport does not run the lifespan, so each app gets a container
built against the per-test SQLite database.
"""

import json
import time
from collections.abc import AsyncGenerator
from uuid import uuid4

import httpx
import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport

from conftest import IN_WINDOW, WEEKEND, RecordingDispatcher, ScriptedExecutor
from pharmacall.config import Settings
from pharmacall.container import ServiceContainer
from pharmacall.dispatch.interface import PROCESS_JOB_PATH
from pharmacall.dispatch.signature import body_digest
from pharmacall.jobs.models import JobStatus
from pharmacall.main import create_app
from pharmacall.shared.database import DatabaseManager
from pharmacall.voice.config import CallMode, VoiceConfig

ADMIN_KEY = "admin-key"
AUTH = {"Authorization": f"Bearer {ADMIN_KEY}"}
BASE_URL = "http://localhost:8080"
SIGNING_KEY = "sig_current_0123456789abcdefghijklmnopqrstuvwxyz"


def build_container(
    db: DatabaseManager,
    dispatcher: RecordingDispatcher,
    executor: ScriptedExecutor,
    **overrides,
) -> ServiceContainer:
    values = {
        "app_env": "dev",
        "admin_api_key": ADMIN_KEY,
        "public_base_url": BASE_URL,
        "qstash_current_signing_key": "",
        "qstash_next_signing_key": "",
    }
    values.update(overrides)
    return ServiceContainer.build(
        settings=Settings(**values),
        voice_config=VoiceConfig(call_mode=CallMode.SIMULATED, webhook_secret="hook-secret"),
        db=db,
        executor=executor,
        dispatcher=dispatcher,
        clock=lambda: IN_WINDOW,
    )


@pytest_asyncio.fixture
async def client(
    db: DatabaseManager,
    dispatcher: RecordingDispatcher,
    executor: ScriptedExecutor,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app(build_container(db, dispatcher, executor))
    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=BASE_URL) as c:
        yield c


def job_body(search_id, pharmacy_id: str = "ph-1", attempt: int = 1) -> bytes:
    return json.dumps(
        {"searchId": str(search_id), "pharmacyId": pharmacy_id, "attempt": attempt}
    ).encode()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_correlation_id_is_echoed(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health", headers={"x-request-id": "req-42"})
        assert response.headers["x-correlation-id"] == "req-42"

    @pytest.mark.asyncio
    async def test_correlation_id_is_generated(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")
        assert response.headers["x-correlation-id"]


class TestAdminAuth:
    @pytest.mark.asyncio
    async def test_missing_key(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/admin/queue-stats")
        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "INVALID_ADMIN_KEY"

    @pytest.mark.asyncio
    async def test_wrong_key(self, client: httpx.AsyncClient) -> None:
        response = await client.get(
            "/api/admin/queue-stats", headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_admin_disabled_without_key(
        self, db: DatabaseManager, dispatcher: RecordingDispatcher, executor: ScriptedExecutor
    ) -> None:
        app = create_app(build_container(db, dispatcher, executor, admin_api_key=""))
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=BASE_URL) as c:
            response = await c.get("/api/admin/queue-stats", headers=AUTH)

        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "ADMIN_DISABLED"


class TestStartCalling:
    @pytest.mark.asyncio
    async def test_start_calling(
        self, client: httpx.AsyncClient, make_search, dispatcher: RecordingDispatcher
    ) -> None:
        search = await make_search("ph-1", "ph-2")

        response = await client.post(
            f"/api/admin/searches/{search.id}/start-calling", headers=AUTH
        )

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "calling_in_progress"
        assert data["jobs_created"] == 2
        assert data["jobs_enqueued"] == 2
        assert data["jobs_failed"] == 0
        assert data["delay_seconds"] == 0
        assert data["scheduled_for"] is None
        assert {p.pharmacy_id for p, _ in dispatcher.scheduled} == {"ph-1", "ph-2"}

    @pytest.mark.asyncio
    async def test_unknown_search(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            f"/api/admin/searches/{uuid4()}/start-calling", headers=AUTH
        )
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_no_pharmacies(self, client: httpx.AsyncClient, make_search) -> None:
        search = await make_search()

        response = await client.post(
            f"/api/admin/searches/{search.id}/start-calling", headers=AUTH
        )

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "BUSINESS_RULE"

    @pytest.mark.asyncio
    async def test_malformed_search_id(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/admin/searches/not-a-uuid/start-calling", headers=AUTH)
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"


class TestSearchViews:
    @pytest.mark.asyncio
    async def test_jobs_and_metrics(self, client: httpx.AsyncClient, make_search) -> None:
        search = await make_search("ph-1", "ph-2")
        await client.post(f"/api/admin/searches/{search.id}/start-calling", headers=AUTH)
        await client.post(PROCESS_JOB_PATH, content=job_body(search.id, "ph-1"))

        response = await client.get(f"/api/admin/searches/{search.id}/jobs", headers=AUTH)

        assert response.status_code == 200
        data = response.json()
        assert data["search"]["id"] == str(search.id)
        statuses = {job["pharmacy_id"]: job["status"] for job in data["jobs"]}
        assert statuses == {"ph-1": "completed", "ph-2": "pending"}
        assert data["metrics"] == {
            "total_jobs": 2,
            "pending_jobs": 1,
            "processing_jobs": 0,
            "completed_jobs": 1,
            "failed_jobs": 0,
            "progress_percentage": 50.0,
            "success_rate": 100.0,
        }

    @pytest.mark.asyncio
    async def test_queue_stats(self, client: httpx.AsyncClient, make_search) -> None:
        search = await make_search("ph-1", "ph-2")
        await client.post(f"/api/admin/searches/{search.id}/start-calling", headers=AUTH)
        await client.post(PROCESS_JOB_PATH, content=job_body(search.id, "ph-1"))

        response = await client.get("/api/admin/queue-stats", headers=AUTH)

        assert response.status_code == 200
        data = response.json()
        assert data["total_jobs_24h"] == 2
        assert data["completed_jobs"] == 1
        assert data["pending_jobs"] == 1
        assert data["success_rate"] == 100.0
        assert data["avg_confidence_score"] == 0.9
        assert len(data["recent_jobs"]) == 2

    @pytest.mark.asyncio
    async def test_complete_search(self, client: httpx.AsyncClient, make_search) -> None:
        search = await make_search("ph-1")

        response = await client.post(f"/api/admin/searches/{search.id}/complete", headers=AUTH)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["completed_at"] is not None

    @pytest.mark.asyncio
    async def test_manual_pharmacy_result(self, client: httpx.AsyncClient, make_search) -> None:
        search = await make_search("ph-1")

        response = await client.post(
            f"/api/admin/searches/{search.id}/pharmacy-results",
            headers=AUTH,
            json={"pharmacy_id": "ph-1", "availability": False, "notes": "Back next week"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["search"]["status"] == "completed"
        entry = data["pharmacy_results"]["ph-1"]
        assert entry["availability"] is False
        assert entry["price"] is None
        assert entry["notes"] == "Back next week"
        assert entry["updated_by"] == "admin"

    @pytest.mark.asyncio
    async def test_manual_result_rejects_negative_price(
        self, client: httpx.AsyncClient, make_search
    ) -> None:
        search = await make_search("ph-1")

        response = await client.post(
            f"/api/admin/searches/{search.id}/pharmacy-results",
            headers=AUTH,
            json={"pharmacy_id": "ph-1", "availability": True, "price": -1},
        )

        assert response.status_code == 422


class TestTaskCallback:
    @pytest.mark.asyncio
    async def test_unsigned_delivery_in_dev(
        self, client: httpx.AsyncClient, make_search, executor: ScriptedExecutor
    ) -> None:
        search = await make_search("ph-1")
        await client.post(f"/api/admin/searches/{search.id}/start-calling", headers=AUTH)

        response = await client.post(
            PROCESS_JOB_PATH,
            content=job_body(search.id),
            headers={"Upstash-Message-Id": "msg_123"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["outcome"] == "completed"
        assert data["attempt"] == 1
        assert data["result"]["availability"] is True
        assert data["result"]["price"] == 42.5
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_redelivery_is_skipped(
        self, client: httpx.AsyncClient, make_search, executor: ScriptedExecutor
    ) -> None:
        search = await make_search("ph-1")
        await client.post(f"/api/admin/searches/{search.id}/start-calling", headers=AUTH)

        await client.post(PROCESS_JOB_PATH, content=job_body(search.id))
        response = await client.post(PROCESS_JOB_PATH, content=job_body(search.id))

        assert response.status_code == 200
        assert response.json()["outcome"] == "skipped"
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_invalid_payload(self, client: httpx.AsyncClient) -> None:
        response = await client.post(PROCESS_JOB_PATH, content=b'{"pharmacyId": ""}')
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_PAYLOAD"

    @pytest.mark.asyncio
    async def test_missing_job(self, client: httpx.AsyncClient) -> None:
        response = await client.post(PROCESS_JOB_PATH, content=job_body(uuid4()))
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_signed_delivery(
        self,
        db: DatabaseManager,
        dispatcher: RecordingDispatcher,
        executor: ScriptedExecutor,
        make_search,
    ) -> None:
        container = build_container(
            db, dispatcher, executor, qstash_current_signing_key=SIGNING_KEY
        )
        app = create_app(container)
        search = await make_search("ph-1")
        await container.scheduler.start_calling(search.id)
        body = job_body(search.id)
        now = int(time.time())
        signature = jwt.encode(
            {
                "iss": "Upstash",
                "sub": f"{BASE_URL}{PROCESS_JOB_PATH}",
                "iat": now,
                "nbf": now,
                "exp": now + 300,
                "body": body_digest(body),
            },
            SIGNING_KEY,
            algorithm="HS256",
        )

        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=BASE_URL) as c:
            unsigned = await c.post(PROCESS_JOB_PATH, content=body)
            signed = await c.post(
                PROCESS_JOB_PATH, content=body, headers={"Upstash-Signature": signature}
            )

        assert unsigned.status_code == 401
        assert unsigned.json()["detail"]["code"] == "INVALID_SIGNATURE"
        assert signed.status_code == 200
        assert signed.json()["outcome"] == "completed"
        job = await container.jobs.get_job(search.id, "ph-1")
        assert job is not None
        assert job.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_dispatch_outage_maps_to_503(
        self,
        db: DatabaseManager,
        dispatcher: RecordingDispatcher,
        executor: ScriptedExecutor,
        make_search,
    ) -> None:
        container = build_container(db, dispatcher, executor)
        search = await make_search("ph-1")
        await container.scheduler.start_calling(search.id)
        # outside the window the job must be re-published, and publishing fails
        container.scheduler._clock = lambda: WEEKEND
        dispatcher.fail_all = True
        app = create_app(container)

        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=BASE_URL) as c:
            response = await c.post(PROCESS_JOB_PATH, content=job_body(search.id))

        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "DISPATCH_FAILED"


class TestVapiWebhook:
    @pytest.mark.asyncio
    async def test_rejects_bad_secret(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/webhooks/vapi",
            json={"message": {"type": "status-update", "call": {"id": "c1"}}},
            headers={"x-vapi-secret": "wrong"},
        )
        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "INVALID_WEBHOOK_SECRET"

    @pytest.mark.asyncio
    async def test_rejects_malformed_json(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/webhooks/vapi",
            content=b"{not json",
            headers={"x-vapi-secret": "hook-secret", "content-type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_PAYLOAD"

    @pytest.mark.asyncio
    async def test_rejects_missing_call_id(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/webhooks/vapi",
            json={"message": {"type": "status-update"}},
            headers={"x-vapi-secret": "hook-secret"},
        )
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "MISSING_CALL_ID"

    @pytest.mark.asyncio
    async def test_function_call_is_recorded(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/webhooks/vapi",
            json={
                "message": {
                    "type": "function-call",
                    "call": {"id": "call-xyz"},
                    "functionCall": {
                        "name": "recordMedicationAvailability",
                        "parameters": {"availability": True, "price": 9.5},
                    },
                }
            },
            headers={"x-vapi-secret": "hook-secret"},
        )
        assert response.status_code == 200
        assert response.json() == {"result": "recorded"}

    @pytest.mark.asyncio
    async def test_status_update_acknowledged(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/webhooks/vapi",
            json={"message": {"type": "status-update", "status": "ringing", "call": {"id": "c1"}}},
            headers={"x-vapi-secret": "hook-secret"},
        )
        assert response.status_code == 200
        assert response.json() == {"received": True}
