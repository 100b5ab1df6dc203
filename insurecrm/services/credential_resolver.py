"""
Per-tenant provider credential resolution

Looks up a tenant's WhatsApp / email credentials and decrypts secrets on the
way out. There is no global fallback: a tenant without credentials is simply
"not configured".
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from insurecrm.core.encryption import EncryptionError, VersionedEncryption, get_encryption
from insurecrm.db.models import EmailCredential, Tenant, WhatsAppCredential

logger = logging.getLogger(__name__)

PROVIDER_WHATSAPP = "whatsapp"
PROVIDER_EMAIL = "email"
PROVIDER_OPENAI = "openai"


class CredentialNotConfiguredError(Exception):
    """The tenant has no usable credential for the provider"""

    def __init__(self, provider: str, tenant_id: Optional[str] = None):
        self.provider = provider
        self.tenant_id = tenant_id
        super().__init__(f"{provider} credentials not configured for this tenant")


@dataclass
class WhatsAppSendCredentials:
    """Decrypted values needed for one outbound Graph API call"""
    access_token: str
    phone_number_id: str
    credential_id: Optional[str] = None


class CredentialResolver:
    def __init__(self, db: Session, encryption: Optional[VersionedEncryption] = None):
        self.db = db
        self._encryption = encryption

    @property
    def encryption(self) -> VersionedEncryption:
        if self._encryption is None:
            self._encryption = get_encryption()
        return self._encryption

    def _reveal(self, value: Optional[str], what: str, tenant_id: str) -> Optional[str]:
        """Decrypt sealed values; failures resolve to None instead of ciphertext"""
        if not value:
            return None
        if not VersionedEncryption.is_encrypted(value):
            return value
        try:
            return self.encryption.decrypt(value)
        except EncryptionError as e:
            logger.error(f"Failed to decrypt {what} for tenant {tenant_id}: {e}")
            return None

    # Credential rows

    def get_whatsapp_credential(self, tenant_id: str, credential_id: Optional[str] = None) -> Optional[WhatsAppCredential]:
        """Active credential by id, else the tenant default, else the newest active one"""
        if not tenant_id:
            return None
        query = self.db.query(WhatsAppCredential).filter(
            WhatsAppCredential.tenant_id == tenant_id,
            WhatsAppCredential.is_active.is_(True),
        )
        if credential_id:
            return query.filter(WhatsAppCredential.id == credential_id).first()
        default = query.filter(WhatsAppCredential.is_default.is_(True)).first()
        if default:
            return default
        return query.order_by(WhatsAppCredential.created_at.desc()).first()

    def get_email_credential(self, tenant_id: str) -> Optional[EmailCredential]:
        if not tenant_id:
            return None
        query = self.db.query(EmailCredential).filter(
            EmailCredential.tenant_id == tenant_id,
            EmailCredential.is_active.is_(True),
        )
        default = query.filter(EmailCredential.is_default.is_(True)).first()
        if default:
            return default
        return query.order_by(EmailCredential.created_at.desc()).first()

    # Tenant settings bag

    def get_setting(self, tenant_id: str, category: str, key: str) -> Optional[Any]:
        """Read ``settings[category][key]``; category may be dotted (``credentials.whatsapp``)"""
        if not tenant_id:
            return None
        tenant = self.db.query(Tenant).filter(Tenant.id == tenant_id).first()
        if tenant is None or not tenant.settings:
            return None

        node: Any = tenant.settings
        for part in category.split("."):
            if not isinstance(node, dict):
                return None
            node = node.get(part)
        if not isinstance(node, dict):
            return None

        value = node.get(key)
        if isinstance(value, str):
            return self._reveal(value, f"setting {category}.{key}", tenant_id)
        return value

    # Resolved secrets

    def get_access_token(self, tenant_id: str, provider: str = PROVIDER_WHATSAPP) -> Optional[str]:
        if provider == PROVIDER_WHATSAPP:
            credential = self.get_whatsapp_credential(tenant_id)
            if credential is not None:
                return self._reveal(credential.access_token, "WhatsApp access token", tenant_id)
            return self.get_setting(tenant_id, "credentials.whatsapp", "accessToken")

        if provider == PROVIDER_EMAIL:
            credential = self.get_email_credential(tenant_id)
            if credential is not None:
                return self._reveal(credential.smtp_password, "SMTP password", tenant_id)
            return self.get_setting(tenant_id, "credentials.email", "password")

        if provider == PROVIDER_OPENAI:
            return self.get_setting(tenant_id, "credentials.openai", "apiKey")

        logger.warning(f"Unknown credential provider requested: {provider}")
        return None

    def get_phone_number_id(self, tenant_id: str) -> Optional[str]:
        credential = self.get_whatsapp_credential(tenant_id)
        if credential is not None:
            return credential.phone_number_id
        return self.get_setting(tenant_id, "credentials.whatsapp", "phoneNumberId")

    def get_app_secret(self, credential: WhatsAppCredential) -> Optional[str]:
        return self._reveal(credential.app_secret, "WhatsApp app secret", credential.tenant_id)

    def resolve_whatsapp(self, tenant_id: str, credential_id: Optional[str] = None) -> WhatsAppSendCredentials:
        """
        Raises:
            CredentialNotConfiguredError: no token or phone number id for the tenant
        """
        credential = self.get_whatsapp_credential(tenant_id, credential_id)
        if credential is not None:
            token = self._reveal(credential.access_token, "WhatsApp access token", tenant_id)
            phone_number_id = credential.phone_number_id
            resolved_id = credential.id
        else:
            token = self.get_setting(tenant_id, "credentials.whatsapp", "accessToken")
            phone_number_id = self.get_setting(tenant_id, "credentials.whatsapp", "phoneNumberId")
            resolved_id = None

        if not token or not phone_number_id:
            raise CredentialNotConfiguredError(PROVIDER_WHATSAPP, tenant_id)
        return WhatsAppSendCredentials(access_token=token, phone_number_id=phone_number_id, credential_id=resolved_id)
