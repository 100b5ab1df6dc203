"""
Tenant Context Propagation

Binds the tenant identity of the current request or background task to the
running execution (thread or asyncio task) so downstream services can read it
without receiving it as a parameter. Storage is a ContextVar, so concurrent
requests never observe each other's identity.
"""
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


class TenantContextError(Exception):
    """Raised when the tenant context is established incorrectly"""
    pass


@dataclass(frozen=True)
class TenantContext:
    """Immutable identity of the caller for one execution"""
    tenant_id: Optional[str]
    caller_id: str
    is_super_admin: bool = False
    role: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "caller_id": self.caller_id,
            "is_super_admin": self.is_super_admin,
            "role": self.role,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TenantContext":
        return cls(
            tenant_id=data.get("tenant_id"),
            caller_id=data.get("caller_id") or "unknown",
            is_super_admin=bool(data.get("is_super_admin", False)),
            role=data.get("role"),
        )


_current_context: ContextVar[Optional[TenantContext]] = ContextVar("tenant_context", default=None)


@contextmanager
def establish(context: TenantContext) -> Iterator[TenantContext]:
    """
    Bind a tenant context for the duration of the block.

    An execution may establish its context exactly once; a second call while a
    context is active raises instead of silently replacing the identity.

    Usage:
        with establish(TenantContext(tenant_id=tid, caller_id=user_id)):
            ...
    """
    if not isinstance(context, TenantContext):
        raise TenantContextError("establish() requires a TenantContext")

    active = _current_context.get()
    if active is not None:
        logger.warning(
            f"SECURITY: attempt to re-establish tenant context "
            f"(active tenant={active.tenant_id}, requested tenant={context.tenant_id})"
        )
        raise TenantContextError("Tenant context already established for this execution")

    token = _current_context.set(context)
    try:
        yield context
    finally:
        _current_context.reset(token)


def current() -> Optional[TenantContext]:
    """Return the active tenant context, or None outside an established scope"""
    return _current_context.get()


def current_tenant_id() -> Optional[str]:
    context = _current_context.get()
    return context.tenant_id if context else None
