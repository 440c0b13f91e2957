from sqlalchemy.orm import Session

from crmgate.core.errors import TenantNotFound
from crmgate.tenants.models import Tenant


def resolve_tenant(db: Session, tenant_id: str | None = None) -> Tenant:
    """Look a tenant up by id, or take the first provisioned one."""
    if tenant_id:
        tenant = db.get(Tenant, tenant_id)
    else:
        tenant = db.query(Tenant).order_by(Tenant.created_at, Tenant.id).first()
    if not tenant:
        raise TenantNotFound()
    return tenant
