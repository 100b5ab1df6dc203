"""
Shared router dependencies for outbound collaborators

Routers receive the WhatsApp messenger and AI provider through these so tests
can swap them with ``app.dependency_overrides``.
"""
from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from insurecrm.db.database import get_db
from insurecrm.services.ai_provider import OpenAIProvider
from insurecrm.services.whatsapp_client import WhatsAppMessenger


def get_whatsapp_messenger(db: Session = Depends(get_db)) -> WhatsAppMessenger:
    return WhatsAppMessenger(db)


def get_ai_provider() -> Optional[OpenAIProvider]:
    # The tenant is not known yet; the conversation engine keys the provider per tenant
    return None
