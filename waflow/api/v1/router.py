# waflow/api/v1/router.py
"""Main API router combining all v1 endpoints"""
from fastapi import APIRouter

from waflow.api.v1 import (
    appointments,
    contacts,
    custom_messages,
    flows,
    functions,
    settings,
    templates,
    webhooks,
    whatsapp_flows,
)

api_router = APIRouter()

# Include all routers
api_router.include_router(whatsapp_flows.router, prefix="/whatsapp/flows", tags=["WhatsApp Flows"])
api_router.include_router(webhooks.router, tags=["Webhooks"])
api_router.include_router(appointments.router, prefix="/appointments", tags=["Appointments"])
api_router.include_router(flows.router, prefix="/flows", tags=["Flows"])
api_router.include_router(functions.router, prefix="/functions", tags=["Functions"])
api_router.include_router(custom_messages.router, prefix="/custom-messages", tags=["Custom Messages"])
api_router.include_router(contacts.router, prefix="/contacts", tags=["Contacts"])
api_router.include_router(settings.router, prefix="/settings", tags=["Settings"])
api_router.include_router(templates.router, prefix="/templates", tags=["Templates"])
