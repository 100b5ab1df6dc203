"""
Tenant-Scoped Data Gateway

Every read of a tenant-scoped entity goes through ``TenantGateway`` so the tenant
filter cannot be forgotten. The gateway reads the ambient tenant context by
default; callers that must not depend on ambient state (schedulers scanning
across tenants) pass an explicit context.

Writes are not auto-scoped: code creating a tenant-scoped row sets ``tenant_id``
itself from ``require_tenant_id()`` and hands the row to ``add()``, which
rejects rows that do not belong to the current tenant.
"""
import logging
from typing import Any, List, Optional, Type

from sqlalchemy import false
from sqlalchemy.orm import Query, Session

from insurecrm.core import tenant_context
from insurecrm.core.tenant_context import TenantContext
from insurecrm.db.models import TENANT_SCOPED_MODELS

logger = logging.getLogger(__name__)


class TenantIsolationError(Exception):
    """Raised when an operation would cross or ignore tenant boundaries"""
    pass


class MissingTenantContextError(TenantIsolationError):
    """Raised when a tenant-scoped write runs without a tenant"""
    pass


def is_tenant_scoped(model: Type) -> bool:
    return model in TENANT_SCOPED_MODELS


class TenantGateway:
    """Single choke point for tenant-scoped persistence access"""

    def __init__(self, db: Session, context: Optional[TenantContext] = None):
        self.db = db
        self._explicit_context = context

    @property
    def context(self) -> Optional[TenantContext]:
        if self._explicit_context is not None:
            return self._explicit_context
        return tenant_context.current()

    def scoped_filter(self, model: Type, *criteria) -> List[Any]:
        """
        Return ``criteria`` with the tenant restriction applied.

        Super-admin contexts get the criteria unchanged. Without a tenant id
        the result matches no rows.
        """
        criteria = list(criteria)
        if not is_tenant_scoped(model):
            return criteria

        context = self.context
        if context is not None and context.is_super_admin:
            return criteria

        if context is None or not context.tenant_id:
            logger.warning(
                f"SECURITY: scoped query on {model.__tablename__} without tenant context "
                f"(caller={context.caller_id if context else None}); returning no rows"
            )
            return criteria + [false()]

        return criteria + [model.tenant_id == context.tenant_id]

    def query(self, model: Type, *criteria) -> Query:
        return self.db.query(model).filter(*self.scoped_filter(model, *criteria))

    def get(self, model: Type, entity_id: Any):
        """Fetch one entity by id, or None if it does not exist for this tenant"""
        return self.query(model, model.id == entity_id).first()

    def assert_ownership(self, model: Type, entity_id: Any) -> bool:
        """
        Whether the current context may act on ``model`` row ``entity_id``.

        Loads the row's tenant unscoped and compares it to the context; models
        outside the tenant-scoped set always pass.
        """
        if not is_tenant_scoped(model):
            return True

        context = self.context
        if context is not None and context.is_super_admin:
            return True

        if context is None or not context.tenant_id:
            logger.warning(
                f"SECURITY: ownership check on {model.__tablename__}:{entity_id} without tenant context"
            )
            return False

        row = self.db.query(model.tenant_id).filter(model.id == entity_id).first()
        if row is None:
            return False

        if row.tenant_id != context.tenant_id:
            logger.warning(
                f"SECURITY: tenant {context.tenant_id} attempted access to "
                f"{model.__tablename__}:{entity_id} owned by another tenant"
            )
            return False
        return True

    def get_owned(self, model: Type, entity_id: Any):
        """Like ``get`` but for mutations: raises when the row is not the caller's"""
        if not self.assert_ownership(model, entity_id):
            raise TenantIsolationError(f"{model.__name__} {entity_id} not found")
        return self.db.query(model).filter(model.id == entity_id).first()

    def require_tenant_id(self) -> str:
        """Tenant id for new rows; writes never proceed without one"""
        context = self.context
        if context is None or not context.tenant_id:
            logger.warning("SECURITY: tenant-scoped write attempted without tenant context")
            raise MissingTenantContextError("Tenant context required")
        return context.tenant_id

    def add(self, entity):
        """Stage a new row after checking it was stamped with the caller's tenant"""
        model = type(entity)
        if is_tenant_scoped(model):
            tenant_id = getattr(entity, "tenant_id", None)
            if not tenant_id:
                raise MissingTenantContextError(f"{model.__name__} created without tenant_id")
            context = self.context
            if not (context is not None and context.is_super_admin) and tenant_id != self.require_tenant_id():
                logger.warning(
                    f"SECURITY: write of {model.__tablename__} for tenant {tenant_id} "
                    f"from context of tenant {context.tenant_id if context else None}"
                )
                raise TenantIsolationError("Cannot create records for another tenant")
        self.db.add(entity)
        return entity

    def delete(self, model: Type, entity_id: Any) -> bool:
        if not self.assert_ownership(model, entity_id):
            return False
        entity = self.db.query(model).filter(model.id == entity_id).first()
        if entity is None:
            return False
        self.db.delete(entity)
        return True
