"""
Tenant context dependencies for FastAPI routes

Each entry point resolves the caller's identity here and then binds it with
``establish`` as its first action:

- dashboard requests: tenant comes from the authenticated user row
- webhooks: tenant comes from the credential in the URL, re-validated against
  tenant status because the path is untrusted
- widget calls: tenant comes from the verified widget token
"""
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from insurecrm.auth.dependencies import AuthUser, get_current_user
from insurecrm.core.config import get_settings
from insurecrm.core.tenant_context import TenantContext
from insurecrm.db.database import get_db
from insurecrm.db.models import Tenant, UserRole, WhatsAppCredential
from insurecrm.services.widget_auth import WidgetAuthService, WidgetIdentity, WidgetTokenError

logger = logging.getLogger(__name__)

ROLE_HIERARCHY = {
    UserRole.AGENT.value: 0,
    UserRole.MANAGER.value: 1,
    UserRole.ADMIN.value: 2,
}


async def get_tenant_context(
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> TenantContext:
    """
    Build the tenant context for an authenticated dashboard request.

    Raises:
        HTTPException: 403 if the user has no tenant or the tenant is not operational
    """
    if current_user.is_super_admin:
        return TenantContext(
            tenant_id=current_user.tenant_id,
            caller_id=current_user.user_id,
            is_super_admin=True,
            role=current_user.role,
        )

    if not current_user.tenant_id:
        logger.warning(f"SECURITY: user {current_user.user_id} has no tenant")
        raise HTTPException(status_code=403, detail="User is not assigned to a tenant")

    tenant = db.query(Tenant).filter(Tenant.id == current_user.tenant_id).first()
    if tenant is None or not tenant.is_operational():
        raise HTTPException(status_code=403, detail="Tenant account is not active")

    return TenantContext(
        tenant_id=current_user.tenant_id,
        caller_id=current_user.user_id,
        role=current_user.role,
    )


def require_role(required_role: str):
    """
    Dependency factory enforcing a minimum role within the tenant.

    Args:
        required_role: Minimum role required (agent < manager < admin)
    """
    def role_dependency(tenant_context: TenantContext = Depends(get_tenant_context)) -> TenantContext:
        if tenant_context.is_super_admin:
            return tenant_context

        user_level = ROLE_HIERARCHY.get(tenant_context.role, -1)
        required_level = ROLE_HIERARCHY.get(required_role, 999)
        if user_level < required_level:
            logger.warning(
                f"User {tenant_context.caller_id} with role {tenant_context.role} "
                f"attempted to access endpoint requiring {required_role}"
            )
            raise HTTPException(status_code=403, detail=f"Access denied. Requires {required_role} role.")
        return tenant_context

    return role_dependency


class WebhookTenantError(Exception):
    pass


def resolve_webhook_tenant(db: Session, credential_id: str) -> WhatsAppCredential:
    """
    Look up the credential named in a webhook URL and validate its tenant.

    This is the only unscoped read keyed by untrusted input; the caller must
    establish the tenant context from the returned credential before any
    further data access.
    """
    credential = db.query(WhatsAppCredential).filter(
        WhatsAppCredential.id == credential_id,
        WhatsAppCredential.is_active.is_(True),
    ).first()
    if credential is None:
        raise WebhookTenantError("Unknown webhook credential")

    tenant = db.query(Tenant).filter(Tenant.id == credential.tenant_id).first()
    if tenant is None or not tenant.is_operational():
        logger.warning(f"SECURITY: webhook for credential {credential_id} targets non-operational tenant")
        raise WebhookTenantError("Tenant is not active")
    return credential


def webhook_context(credential: WhatsAppCredential) -> TenantContext:
    return TenantContext(tenant_id=credential.tenant_id, caller_id=f"webhook:{credential.id}")


_widget_auth: Optional[WidgetAuthService] = None


def get_widget_auth() -> WidgetAuthService:
    global _widget_auth
    if _widget_auth is None:
        settings = get_settings()
        _widget_auth = WidgetAuthService(settings.widget_secret, settings.widget_token_ttl_seconds)
    return _widget_auth


def _request_domain(request: Request) -> Optional[str]:
    # Origin, else Referer; never Host
    return request.headers.get("origin") or request.headers.get("referer")


async def get_widget_identity(
    request: Request,
    x_widget_token: Optional[str] = Header(None),
    widget_auth: WidgetAuthService = Depends(get_widget_auth),
) -> WidgetIdentity:
    """Verify the widget token against the calling page's domain; 401 on any failure"""
    try:
        return widget_auth.verify_token(x_widget_token or "", _request_domain(request))
    except WidgetTokenError as e:
        raise HTTPException(status_code=401, detail=str(e))


def widget_context(identity: WidgetIdentity) -> TenantContext:
    return TenantContext(tenant_id=identity.tenant_id, caller_id=f"widget:{identity.widget_id}")


def create_celery_context(tenant_id: str, caller_id: str) -> TenantContext:
    """Context for a background job acting on one tenant"""
    return TenantContext(tenant_id=tenant_id, caller_id=caller_id)
