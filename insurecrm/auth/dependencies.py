"""
Authentication dependencies for FastAPI routes
"""
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from insurecrm.auth.jwt_handler import JWTHandler
from insurecrm.db.database import get_db
from insurecrm.db.models import User

security = HTTPBearer(auto_error=False)
jwt_handler = JWTHandler()


class AuthUser:
    """Authenticated user model"""
    def __init__(self, user_id: str, email: str, tenant_id: Optional[str], role: str,
                 is_super_admin: bool = False):
        self.user_id = user_id
        self.email = email
        self.tenant_id = tenant_id
        self.role = role
        self.is_super_admin = is_super_admin


async def get_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> str:
    """Extract JWT token from Authorization header"""
    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials


async def get_current_user(
    db: Session = Depends(get_db),
    token: str = Depends(get_token)
) -> AuthUser:
    """Resolve the bearer token to an active user"""
    payload = jwt_handler.verify_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Role and tenant come from the row, not the token, so revocations apply immediately
    user = db.query(User).filter(User.id == user_id).first()
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is inactive",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return AuthUser(
        user_id=user.id,
        email=user.email,
        tenant_id=user.tenant_id,
        role=user.role,
        is_super_admin=bool(user.is_super_admin),
    )
