"""
Credential management for tenant admins

Secrets are sealed before they are stored and never returned; responses only
report whether each secret is configured.
"""
import logging
import secrets
from typing import Any, Dict, List, Optional, Type

from sqlalchemy.orm import Session

from insurecrm.core.config import get_settings
from insurecrm.core.encryption import VersionedEncryption, get_encryption
from insurecrm.db.models import EmailCredential, WhatsAppCredential
from insurecrm.services.tenant_gateway import TenantGateway

logger = logging.getLogger(__name__)


class CredentialNotFoundError(Exception):
    pass


def generate_verify_token() -> str:
    return secrets.token_hex(32)


def build_webhook_url(credential_id: str) -> str:
    base_url = get_settings().app_url.rstrip("/")
    return f"{base_url}/webhook/{credential_id}"


class CredentialService:
    def __init__(self, db: Session, encryption: Optional[VersionedEncryption] = None):
        self.db = db
        self.gateway = TenantGateway(db)
        self._encryption = encryption

    @property
    def encryption(self) -> VersionedEncryption:
        if self._encryption is None:
            self._encryption = get_encryption()
        return self._encryption

    def _clear_defaults(self, model: Type, keep_id: Optional[str] = None):
        """At most one default credential per tenant per provider"""
        criteria = [model.is_default.is_(True)]
        if keep_id:
            criteria.append(model.id != keep_id)
        self.gateway.query(model, *criteria).update({"is_default": False}, synchronize_session=False)

    def _get(self, model: Type, credential_id: str):
        credential = self.gateway.get(model, credential_id)
        if credential is None:
            raise CredentialNotFoundError(f"{model.__name__} not found")
        return credential

    # WhatsApp

    def list_whatsapp(self) -> List[Dict[str, Any]]:
        credentials = self.gateway.query(WhatsAppCredential).order_by(WhatsAppCredential.created_at.desc()).all()
        return [c.to_dict() for c in credentials]

    def create_whatsapp(self, data: Dict[str, Any]) -> Dict[str, Any]:
        tenant_id = self.gateway.require_tenant_id()
        is_default = bool(data.get("is_default"))
        if is_default:
            self._clear_defaults(WhatsAppCredential)

        credential = WhatsAppCredential(
            tenant_id=tenant_id,
            name=data["name"],
            phone_number=data.get("phone_number"),
            phone_number_id=data["phone_number_id"],
            business_account_id=data.get("business_account_id"),
            access_token=self.encryption.encrypt(data["access_token"]),
            app_secret=self.encryption.encrypt(data["app_secret"]) if data.get("app_secret") else None,
            webhook_verify_token=generate_verify_token(),
            is_default=is_default,
            is_active=True,
        )
        self.gateway.add(credential)
        self.db.flush()
        credential.webhook_url = build_webhook_url(credential.id)
        self.db.commit()
        self.db.refresh(credential)

        logger.info(f"Created WhatsApp credential {credential.id} for tenant {tenant_id}")
        return credential.to_dict()

    def update_whatsapp(self, credential_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        credential = self._get(WhatsAppCredential, credential_id)

        if data.get("is_default"):
            self._clear_defaults(WhatsAppCredential, keep_id=credential.id)

        for field in ("name", "phone_number", "phone_number_id", "business_account_id"):
            if data.get(field):
                setattr(credential, field, data[field])
        if data.get("is_default") is not None:
            credential.is_default = bool(data["is_default"])
        if data.get("is_active") is not None:
            credential.is_active = bool(data["is_active"])

        # Secrets change only when supplied
        if data.get("access_token"):
            credential.access_token = self.encryption.encrypt(data["access_token"])
        if data.get("app_secret"):
            credential.app_secret = self.encryption.encrypt(data["app_secret"])

        self.db.commit()
        self.db.refresh(credential)
        return credential.to_dict()

    def regenerate_whatsapp_webhook(self, credential_id: str) -> Dict[str, str]:
        credential = self._get(WhatsAppCredential, credential_id)
        credential.webhook_verify_token = generate_verify_token()
        credential.webhook_url = build_webhook_url(credential.id)
        self.db.commit()
        return {"webhook_url": credential.webhook_url, "webhook_verify_token": credential.webhook_verify_token}

    # Email

    def list_email(self) -> List[Dict[str, Any]]:
        credentials = self.gateway.query(EmailCredential).order_by(EmailCredential.created_at.desc()).all()
        return [c.to_dict() for c in credentials]

    def create_email(self, data: Dict[str, Any]) -> Dict[str, Any]:
        tenant_id = self.gateway.require_tenant_id()
        is_default = bool(data.get("is_default"))
        if is_default:
            self._clear_defaults(EmailCredential)

        credential = EmailCredential(
            tenant_id=tenant_id,
            name=data["name"],
            email=data["email"],
            smtp_host=data["smtp_host"],
            smtp_port=data.get("smtp_port") or 587,
            smtp_user=data["smtp_user"],
            smtp_password=self.encryption.encrypt(data["smtp_password"]),
            use_tls=data.get("use_tls", True),
            is_default=is_default,
        )
        self.gateway.add(credential)
        self.db.commit()
        self.db.refresh(credential)
        return credential.to_dict()

    def update_email(self, credential_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        credential = self._get(EmailCredential, credential_id)

        if data.get("is_default"):
            self._clear_defaults(EmailCredential, keep_id=credential.id)

        for field in ("name", "email", "smtp_host", "smtp_port", "smtp_user"):
            if data.get(field):
                setattr(credential, field, data[field])
        for field in ("use_tls", "is_default", "is_active"):
            if data.get(field) is not None:
                setattr(credential, field, bool(data[field]))
        if data.get("smtp_password"):
            credential.smtp_password = self.encryption.encrypt(data["smtp_password"])

        self.db.commit()
        self.db.refresh(credential)
        return credential.to_dict()

    # Shared

    def set_default(self, model: Type, credential_id: str) -> Dict[str, Any]:
        credential = self._get(model, credential_id)
        self._clear_defaults(model, keep_id=credential.id)
        credential.is_default = True
        self.db.commit()
        self.db.refresh(credential)
        return credential.to_dict()

    def delete(self, model: Type, credential_id: str):
        if not self.gateway.delete(model, credential_id):
            raise CredentialNotFoundError(f"{model.__name__} not found")
        self.db.commit()
