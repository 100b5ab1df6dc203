"""
Tests for tenant context propagation and the tenant-scoped data gateway
"""
import asyncio
import uuid

import pytest

from insurecrm.core import tenant_context
from insurecrm.core.tenant_context import TenantContext, TenantContextError, establish
from insurecrm.db.models import Lead, Tenant
from insurecrm.services.tenant_gateway import (
    MissingTenantContextError, TenantGateway, TenantIsolationError,
)


def _lead(tenant, phone):
    return Lead(id=str(uuid.uuid4()), tenant_id=tenant.id, name="Jane", phone=phone, source="MANUAL")


class TestTenantContext:
    """Establishing and reading the ambient tenant context"""

    def test_context_is_visible_inside_block_only(self):
        context = TenantContext(tenant_id="t-1", caller_id="u-1")
        assert tenant_context.current() is None

        with establish(context):
            assert tenant_context.current() == context
            assert tenant_context.current_tenant_id() == "t-1"

        assert tenant_context.current() is None

    def test_second_establish_is_rejected(self):
        """An execution may not swap its tenant identity mid-flight"""
        with establish(TenantContext(tenant_id="t-1", caller_id="u-1")):
            with pytest.raises(TenantContextError):
                with establish(TenantContext(tenant_id="t-2", caller_id="u-2")):
                    pass
            assert tenant_context.current_tenant_id() == "t-1"

    def test_establish_requires_context_object(self):
        with pytest.raises(TenantContextError):
            with establish({"tenant_id": "t-1"}):
                pass

    @pytest.mark.asyncio
    async def test_concurrent_tasks_do_not_share_context(self):
        seen = {}

        async def handler(tenant_id):
            with establish(TenantContext(tenant_id=tenant_id, caller_id=f"caller-{tenant_id}")):
                await asyncio.sleep(0.01)
                seen[tenant_id] = tenant_context.current_tenant_id()

        await asyncio.gather(handler("t-1"), handler("t-2"), handler("t-3"))
        assert seen == {"t-1": "t-1", "t-2": "t-2", "t-3": "t-3"}

    def test_context_round_trips_through_dict(self):
        context = TenantContext(tenant_id="t-1", caller_id="celery", is_super_admin=False, role="agent")
        assert TenantContext.from_dict(context.to_dict()) == context


class TestTenantGateway:
    """Reads and writes through the gateway stay inside one tenant"""

    def test_query_returns_only_current_tenant_rows(self, test_db, tenant_a, tenant_b, context_a, context_b):
        test_db.add_all([_lead(tenant_a, "111"), _lead(tenant_a, "112"), _lead(tenant_b, "221")])
        test_db.commit()

        with establish(context_a):
            phones = sorted(lead.phone for lead in TenantGateway(test_db).query(Lead).all())
        assert phones == ["111", "112"]

        with establish(context_b):
            phones = [lead.phone for lead in TenantGateway(test_db).query(Lead).all()]
        assert phones == ["221"]

    def test_get_other_tenant_row_returns_none(self, test_db, tenant_a, tenant_b, context_a):
        foreign = _lead(tenant_b, "221")
        test_db.add(foreign)
        test_db.commit()

        with establish(context_a):
            assert TenantGateway(test_db).get(Lead, foreign.id) is None

    def test_query_without_context_fails_closed(self, test_db, tenant_a):
        test_db.add(_lead(tenant_a, "111"))
        test_db.commit()

        assert TenantGateway(test_db).query(Lead).all() == []

    def test_super_admin_sees_every_tenant(self, test_db, tenant_a, tenant_b):
        test_db.add_all([_lead(tenant_a, "111"), _lead(tenant_b, "221")])
        test_db.commit()

        scan = TenantGateway(test_db, context=TenantContext(tenant_id=None, caller_id="ops", is_super_admin=True))
        assert scan.query(Lead).count() == 2

    def test_explicit_context_overrides_ambient(self, test_db, tenant_a, tenant_b, context_a, context_b):
        test_db.add_all([_lead(tenant_a, "111"), _lead(tenant_b, "221")])
        test_db.commit()

        with establish(context_a):
            gateway = TenantGateway(test_db, context=context_b)
            assert [lead.phone for lead in gateway.query(Lead).all()] == ["221"]

    def test_unscoped_models_are_not_filtered(self, test_db, tenant_a, tenant_b, context_a):
        with establish(context_a):
            assert TenantGateway(test_db).query(Tenant).count() == 2

    def test_assert_ownership(self, test_db, tenant_a, tenant_b, context_a):
        own, foreign = _lead(tenant_a, "111"), _lead(tenant_b, "221")
        test_db.add_all([own, foreign])
        test_db.commit()

        with establish(context_a):
            gateway = TenantGateway(test_db)
            assert gateway.assert_ownership(Lead, own.id) is True
            assert gateway.assert_ownership(Lead, foreign.id) is False
            assert gateway.assert_ownership(Lead, "missing") is False
            with pytest.raises(TenantIsolationError):
                gateway.get_owned(Lead, foreign.id)

    def test_delete_of_foreign_row_is_refused(self, test_db, tenant_a, tenant_b, context_a):
        foreign = _lead(tenant_b, "221")
        test_db.add(foreign)
        test_db.commit()

        with establish(context_a):
            assert TenantGateway(test_db).delete(Lead, foreign.id) is False
        assert test_db.query(Lead).filter(Lead.id == foreign.id).count() == 1

    def test_write_requires_tenant(self, test_db, tenant_a):
        gateway = TenantGateway(test_db)
        with pytest.raises(MissingTenantContextError):
            gateway.require_tenant_id()
        with pytest.raises(MissingTenantContextError):
            gateway.add(Lead(name="No tenant"))

    def test_write_for_other_tenant_is_rejected(self, test_db, tenant_a, tenant_b, context_a):
        with establish(context_a):
            with pytest.raises(TenantIsolationError):
                TenantGateway(test_db).add(_lead(tenant_b, "221"))
