"""
FastAPI application factory
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from insurecrm.api import (
    auth, automation_rules, campaigns, contact_groups, conversations, credentials, leads,
    templates, webhooks, widget,
)
from insurecrm.core.config import Settings, get_settings
from insurecrm.core.logging import setup_logging

logger = logging.getLogger(__name__)


def create_app(settings: Settings = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(
        level=settings.log_level,
        format_type='json' if settings.use_json_logging else 'standard',
    )

    app = FastAPI(
        title=settings.app_name,
        description="Multi-tenant insurance CRM: WhatsApp and web chat AI agent, automation and campaigns",
        version="1.0.0",
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth.router)
    app.include_router(webhooks.router)
    app.include_router(widget.router)
    app.include_router(conversations.router)
    app.include_router(automation_rules.router)
    app.include_router(campaigns.router)
    app.include_router(leads.router)
    app.include_router(contact_groups.router)
    app.include_router(templates.router)
    app.include_router(templates.labels_router)
    app.include_router(credentials.router)

    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "healthy", "service": settings.app_name, "environment": settings.environment}

    logger.info(f"{settings.app_name} app created for {settings.environment} environment with {len(app.routes)} routes")
    return app


app = create_app()
