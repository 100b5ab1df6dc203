"""
Tenant credential management API

Secrets go in, but only ``*_configured`` flags come back out.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from insurecrm.core.encryption import EncryptionError
from insurecrm.core.tenant_context import TenantContext, establish
from insurecrm.db.database import get_db
from insurecrm.db.models import EmailCredential, WhatsAppCredential
from insurecrm.middleware.tenant_context import require_role
from insurecrm.services.credential_service import CredentialNotFoundError, CredentialService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/credentials", tags=["Credentials"])


class WhatsAppCredentialCreate(BaseModel):
    name: str = Field(..., min_length=1)
    phone_number: Optional[str] = None
    phone_number_id: str = Field(..., description="Meta phone number id")
    business_account_id: Optional[str] = None
    access_token: str = Field(..., min_length=1)
    app_secret: Optional[str] = Field(None, description="Used to verify webhook signatures")
    is_default: bool = False


class WhatsAppCredentialUpdate(BaseModel):
    name: Optional[str] = None
    phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None
    business_account_id: Optional[str] = None
    access_token: Optional[str] = None
    app_secret: Optional[str] = None
    is_default: Optional[bool] = None
    is_active: Optional[bool] = None


class EmailCredentialCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: str
    smtp_host: str
    smtp_port: int = 587
    smtp_user: str
    smtp_password: str = Field(..., min_length=1)
    use_tls: bool = True
    is_default: bool = False


class EmailCredentialUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = None
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    use_tls: Optional[bool] = None
    is_default: Optional[bool] = None
    is_active: Optional[bool] = None


def _sealing_failed(e: EncryptionError):
    logger.error(f"Credential encryption failed: {e}")
    raise HTTPException(status_code=500, detail="Credential storage is not configured")


# WhatsApp

@router.get("/whatsapp")
async def list_whatsapp_credentials(
    tenant_context: TenantContext = Depends(require_role("admin")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        return CredentialService(db).list_whatsapp()


@router.post("/whatsapp", status_code=201)
async def create_whatsapp_credential(
    request: WhatsAppCredentialCreate,
    tenant_context: TenantContext = Depends(require_role("admin")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return CredentialService(db).create_whatsapp(request.model_dump())
        except EncryptionError as e:
            _sealing_failed(e)


@router.patch("/whatsapp/{credential_id}")
async def update_whatsapp_credential(
    request: WhatsAppCredentialUpdate,
    credential_id: str = Path(..., description="Credential ID"),
    tenant_context: TenantContext = Depends(require_role("admin")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return CredentialService(db).update_whatsapp(credential_id, request.model_dump(exclude_unset=True))
        except CredentialNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except EncryptionError as e:
            _sealing_failed(e)


@router.post("/whatsapp/{credential_id}/default")
async def set_default_whatsapp_credential(
    credential_id: str = Path(..., description="Credential ID"),
    tenant_context: TenantContext = Depends(require_role("admin")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return CredentialService(db).set_default(WhatsAppCredential, credential_id)
        except CredentialNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))


@router.post("/whatsapp/{credential_id}/regenerate-webhook")
async def regenerate_whatsapp_webhook(
    credential_id: str = Path(..., description="Credential ID"),
    tenant_context: TenantContext = Depends(require_role("admin")),
    db: Session = Depends(get_db)
):
    """Rotate the webhook verify token; Meta must be re-subscribed afterwards"""
    with establish(tenant_context):
        try:
            return CredentialService(db).regenerate_whatsapp_webhook(credential_id)
        except CredentialNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))


@router.delete("/whatsapp/{credential_id}", status_code=204)
async def delete_whatsapp_credential(
    credential_id: str = Path(..., description="Credential ID"),
    tenant_context: TenantContext = Depends(require_role("admin")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            CredentialService(db).delete(WhatsAppCredential, credential_id)
        except CredentialNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))


# Email

@router.get("/email")
async def list_email_credentials(
    tenant_context: TenantContext = Depends(require_role("admin")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        return CredentialService(db).list_email()


@router.post("/email", status_code=201)
async def create_email_credential(
    request: EmailCredentialCreate,
    tenant_context: TenantContext = Depends(require_role("admin")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return CredentialService(db).create_email(request.model_dump())
        except EncryptionError as e:
            _sealing_failed(e)


@router.patch("/email/{credential_id}")
async def update_email_credential(
    request: EmailCredentialUpdate,
    credential_id: str = Path(..., description="Credential ID"),
    tenant_context: TenantContext = Depends(require_role("admin")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return CredentialService(db).update_email(credential_id, request.model_dump(exclude_unset=True))
        except CredentialNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except EncryptionError as e:
            _sealing_failed(e)


@router.post("/email/{credential_id}/default")
async def set_default_email_credential(
    credential_id: str = Path(..., description="Credential ID"),
    tenant_context: TenantContext = Depends(require_role("admin")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return CredentialService(db).set_default(EmailCredential, credential_id)
        except CredentialNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))


@router.delete("/email/{credential_id}", status_code=204)
async def delete_email_credential(
    credential_id: str = Path(..., description="Credential ID"),
    tenant_context: TenantContext = Depends(require_role("admin")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            CredentialService(db).delete(EmailCredential, credential_id)
        except CredentialNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
