"""
Shared pytest fixtures: in-memory database, two tenants, fake outbound
collaborators and an API client wired to them.
"""
import os

# Settings are read once and cached, so the environment must be in place
# before anything under insurecrm is imported.
os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENCRYPTION_KEY"] = "8f3a1c5e7b9d2f4a6c8e0b1d3f5a7c9e2b4d6f8a0c1e3b5d7f9a2c4e6b8d0f1a"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["WIDGET_SECRET"] = "test-widget-secret"
os.environ["APP_URL"] = "https://crm.test"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ.pop("OPENAI_API_KEY", None)

import uuid
from datetime import datetime
from typing import Callable
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from insurecrm.auth.jwt_handler import JWTHandler
from insurecrm.core.encryption import VersionedEncryption
from insurecrm.core.tenant_context import TenantContext
from insurecrm.db.database import Base, get_db
from insurecrm.db.models import (
    AIConversation, ConversationStatus, ConversationType, Tenant, User,
    WhatsAppCredential, WhatsAppTemplate,
)
from insurecrm.services.ai_provider import AICompletion
from insurecrm.services.tenant_service import hash_password

TEST_ENCRYPTION_KEY = os.environ["ENCRYPTION_KEY"]
APP_SECRET = "meta-app-secret"
VERIFY_TOKEN = "verify-token-123"

AI_REPLY = (
    "Our auto insurance policies start at a competitive monthly premium. "
    "I can prepare a personalised quote if you share a few details."
)


@pytest.fixture
def test_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db(test_engine) -> Session:
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


def _make_tenant(db: Session, name: str, subdomain: str, status: str = "active") -> Tenant:
    tenant = Tenant(id=str(uuid.uuid4()), name=name, subdomain=subdomain, status=status, plan="pro", settings={})
    db.add(tenant)
    db.commit()
    return tenant


@pytest.fixture
def tenant_a(test_db) -> Tenant:
    return _make_tenant(test_db, "Acme Insurance", "acme")


@pytest.fixture
def tenant_b(test_db) -> Tenant:
    return _make_tenant(test_db, "Beta Brokers", "beta")


@pytest.fixture
def context_a(tenant_a) -> TenantContext:
    return TenantContext(tenant_id=tenant_a.id, caller_id="user-a", role="admin")


@pytest.fixture
def context_b(tenant_b) -> TenantContext:
    return TenantContext(tenant_id=tenant_b.id, caller_id="user-b", role="admin")


@pytest.fixture
def make_user(test_db) -> Callable[..., User]:
    def _make_user(tenant: Tenant, role: str = "admin", email: str = None, password: str = "password123") -> User:
        user = User(
            id=str(uuid.uuid4()),
            tenant_id=tenant.id if tenant else None,
            email=email or f"{role}-{uuid.uuid4().hex[:8]}@example.com",
            full_name=f"Test {role.title()}",
            hashed_password=hash_password(password),
            role=role,
            is_active=True,
        )
        test_db.add(user)
        test_db.commit()
        return user
    return _make_user


@pytest.fixture
def admin_user(make_user, tenant_a) -> User:
    return make_user(tenant_a, "admin")


@pytest.fixture
def agent_user(make_user, tenant_a) -> User:
    return make_user(tenant_a, "agent")


@pytest.fixture
def auth_headers() -> Callable[[User], dict]:
    def _auth_headers(user: User) -> dict:
        token = JWTHandler().create_access_token({"sub": user.id})
        return {"Authorization": f"Bearer {token}"}
    return _auth_headers


@pytest.fixture
def encryption() -> VersionedEncryption:
    return VersionedEncryption(TEST_ENCRYPTION_KEY)


@pytest.fixture
def make_template(test_db) -> Callable[..., WhatsAppTemplate]:
    def _make_template(tenant: Tenant, status: str = "APPROVED", name: str = None) -> WhatsAppTemplate:
        template = WhatsAppTemplate(
            id=str(uuid.uuid4()),
            tenant_id=tenant.id,
            name=name or f"follow_up_{uuid.uuid4().hex[:6]}",
            language="en_US",
            category="MARKETING",
            body="Hi {{1}}, just checking in about your quote.",
            status=status,
        )
        test_db.add(template)
        test_db.commit()
        return template
    return _make_template


@pytest.fixture
def make_conversation(test_db) -> Callable[..., AIConversation]:
    def _make_conversation(tenant: Tenant, phone: str = "15550102030", created_at: datetime = None,
                           status: str = ConversationStatus.ACTIVE.value) -> AIConversation:
        conversation = AIConversation(
            id=str(uuid.uuid4()),
            tenant_id=tenant.id,
            type=ConversationType.WHATSAPP_CHAT.value,
            status=status,
            is_escalated=status == ConversationStatus.ESCALATED.value,
            phone_number=phone,
            conversation_metadata={"phoneNumber": phone},
            created_at=created_at or datetime(2026, 1, 1, 12, 0, 0),
        )
        test_db.add(conversation)
        test_db.commit()
        return conversation
    return _make_conversation


@pytest.fixture
def whatsapp_credential(test_db, tenant_a, encryption) -> WhatsAppCredential:
    credential = WhatsAppCredential(
        id=str(uuid.uuid4()),
        tenant_id=tenant_a.id,
        name="Main line",
        phone_number="+1 555 000 1111",
        phone_number_id="109876543210",
        access_token=encryption.encrypt("EAAG-access-token"),
        app_secret=encryption.encrypt(APP_SECRET),
        webhook_verify_token=VERIFY_TOKEN,
        is_default=True,
        is_active=True,
    )
    test_db.add(credential)
    test_db.commit()
    return credential


@pytest.fixture
def fake_messenger():
    """Stands in for WhatsAppMessenger; records sends instead of calling Graph"""
    messenger = Mock()
    messenger.send_text = AsyncMock(return_value="wamid.text-1")
    messenger.send_template = AsyncMock(return_value="wamid.template-1")
    return messenger


@pytest.fixture
def fake_ai():
    provider = Mock()
    provider.complete = AsyncMock(return_value=AICompletion(
        text=AI_REPLY, confidence=0.8, finish_reason="stop", intent="get_quote",
    ))
    return provider


@pytest.fixture
def test_client(test_db, fake_messenger, fake_ai):
    from insurecrm.api.deps import get_ai_provider, get_whatsapp_messenger
    from insurecrm.main import app

    def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_whatsapp_messenger] = lambda: fake_messenger
    app.dependency_overrides[get_ai_provider] = lambda: fake_ai

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
