"""
Tenant signup and dashboard login

Signup provisions a trial tenant together with its first admin user. Login
enforces the tenant lifecycle: an expired trial is suspended on the spot and the
attempt is rejected with a dedicated error.
"""
import logging
import re
from datetime import timedelta
from typing import Any, Dict, Optional

from passlib.context import CryptContext
from sqlalchemy.orm import Session

from insurecrm.auth.jwt_handler import JWTHandler
from insurecrm.core.clock import Clock, utcnow
from insurecrm.core.config import get_settings
from insurecrm.db.models import Tenant, TenantStatus, User, UserRole

logger = logging.getLogger(__name__)

TRIAL_EXPIRED_MESSAGE = "Trial period expired. Please subscribe to continue."

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

_SUBDOMAIN_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


class AuthenticationError(Exception):
    pass


class TrialExpiredError(AuthenticationError):
    def __init__(self):
        super().__init__(TRIAL_EXPIRED_MESSAGE)


class TenantSuspendedError(AuthenticationError):
    pass


class SignupError(ValueError):
    pass


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed_password: str) -> bool:
    return pwd_context.verify(password, hashed_password)


class TenantService:
    def __init__(self, db: Session, jwt_handler: Optional[JWTHandler] = None, now: Clock = utcnow):
        self.db = db
        self.jwt_handler = jwt_handler or JWTHandler()
        self.now = now

    def signup(self, company_name: str, subdomain: str, email: str, password: str,
               full_name: Optional[str] = None) -> Dict[str, Any]:
        subdomain = (subdomain or "").strip().lower()
        email = (email or "").strip().lower()

        if not company_name or not company_name.strip():
            raise SignupError("Company name is required")
        if not _SUBDOMAIN_RE.match(subdomain):
            raise SignupError("Subdomain may only contain lowercase letters, digits and hyphens")
        if not password or len(password) < 8:
            raise SignupError("Password must be at least 8 characters")
        if self.db.query(Tenant).filter(Tenant.subdomain == subdomain).first():
            raise SignupError("Subdomain is already taken")
        if self.db.query(User).filter(User.email == email).first():
            raise SignupError("Email is already registered")

        tenant = Tenant(
            name=company_name.strip(),
            subdomain=subdomain,
            status=TenantStatus.TRIAL.value,
            plan="trial",
            trial_ends_at=self.now() + timedelta(days=get_settings().trial_period_days),
            settings={},
        )
        self.db.add(tenant)
        self.db.flush()

        user = User(
            tenant_id=tenant.id,
            email=email,
            full_name=full_name,
            hashed_password=hash_password(password),
            role=UserRole.ADMIN.value,
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(tenant)
        self.db.refresh(user)

        logger.info(f"Tenant {tenant.id} signed up with subdomain {subdomain}")
        return self._session_payload(user, tenant)

    def login(self, email: str, password: str) -> Dict[str, Any]:
        """
        Raises:
            AuthenticationError: unknown email, wrong password or inactive user
            TrialExpiredError: trial ended; tenant is suspended as a side effect
            TenantSuspendedError: tenant suspended or cancelled
        """
        user = self.db.query(User).filter(User.email == (email or "").strip().lower()).first()
        if user is None or not verify_password(password, user.hashed_password):
            raise AuthenticationError("Invalid email or password")
        if not user.is_active:
            raise AuthenticationError("User account is inactive")

        tenant = None
        if user.tenant_id:
            tenant = self.db.query(Tenant).filter(Tenant.id == user.tenant_id).first()
            self._check_tenant(tenant)

        user.last_login_at = self.now()
        self.db.commit()
        return self._session_payload(user, tenant)

    def _check_tenant(self, tenant: Optional[Tenant]):
        if tenant is None:
            raise AuthenticationError("Tenant not found")

        if tenant.status == TenantStatus.TRIAL.value and tenant.trial_ends_at and tenant.trial_ends_at <= self.now():
            tenant.status = TenantStatus.SUSPENDED.value
            self.db.commit()
            logger.info(f"Tenant {tenant.id} trial expired; suspended")
            raise TrialExpiredError()

        if not tenant.is_operational():
            logger.info(f"Login rejected for tenant {tenant.id} with status {tenant.status}")
            raise TenantSuspendedError(f"Account is {tenant.status}")

    def _session_payload(self, user: User, tenant: Optional[Tenant]) -> Dict[str, Any]:
        token = self.jwt_handler.create_access_token({
            "sub": user.id,
            "email": user.email,
            "tenant_id": user.tenant_id,
            "role": user.role,
        })
        return {
            "access_token": token,
            "token_type": "bearer",
            "user": {
                "id": user.id,
                "email": user.email,
                "full_name": user.full_name,
                "role": user.role,
            },
            "tenant": tenant.to_dict() if tenant else None,
        }
