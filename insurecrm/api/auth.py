"""
Signup and login API
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from insurecrm.db.database import get_db
from insurecrm.services.tenant_service import (
    AuthenticationError, SignupError, TenantService, TrialExpiredError,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/auth", tags=["Auth"])


class SignupRequest(BaseModel):
    company_name: str = Field(..., description="Tenant display name")
    subdomain: str = Field(..., description="Unique tenant subdomain")
    email: str = Field(..., description="Admin user email")
    password: str = Field(..., min_length=8, description="Admin user password")
    full_name: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class SessionResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]
    tenant: Optional[Dict[str, Any]] = None


@router.post("/signup", response_model=SessionResponse, status_code=201)
async def signup(request: SignupRequest, db: Session = Depends(get_db)):
    """Create a trial tenant with its first admin user"""
    try:
        return TenantService(db).signup(
            company_name=request.company_name,
            subdomain=request.subdomain,
            email=request.email,
            password=request.password,
            full_name=request.full_name,
        )
    except SignupError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/login", response_model=SessionResponse)
async def login(request: LoginRequest, db: Session = Depends(get_db)):
    try:
        return TenantService(db).login(request.email, request.password)
    except TrialExpiredError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except AuthenticationError as e:
        # Suspended and cancelled tenants land here too
        status_code = 401 if type(e) is AuthenticationError else 403
        raise HTTPException(status_code=status_code, detail=str(e))
