"""
FastAPI dependencies resolving services from the application container.
"""

from fastapi import Request

from pharmacall.admin.service import AdminService
from pharmacall.config import Settings
from pharmacall.container import ServiceContainer
from pharmacall.dispatch.signature import QStashSignatureVerifier
from pharmacall.scheduling.service import PharmacyCallScheduler
from pharmacall.voice.vapi_adapter import VapiAdapter
from pharmacall.voice.webhooks.handler import VapiWebhookHandler


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_app_settings(request: Request) -> Settings:
    return get_container(request).settings


def get_scheduler(request: Request) -> PharmacyCallScheduler:
    return get_container(request).scheduler


def get_admin_service(request: Request) -> AdminService:
    return get_container(request).admin


def get_signature_verifier(request: Request) -> QStashSignatureVerifier | None:
    return get_container(request).signature_verifier


def get_vapi_adapter(request: Request) -> VapiAdapter:
    return get_container(request).vapi_adapter


def get_webhook_handler(request: Request) -> VapiWebhookHandler:
    return get_container(request).webhook_handler
