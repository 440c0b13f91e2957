"""Provision a tenant (one CRM deployment).

    python scripts/create_tenant.py --name Acme --crm-url https://crm.acme.test [--crm-api-key KEY]
"""

import argparse
import secrets
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from crmgate.db.session import SessionLocal  # noqa: E402
from crmgate.tenants.models import Tenant  # noqa: E402


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a tenant row")
    parser.add_argument("--name", required=True)
    parser.add_argument("--crm-url", required=True, help="CRM base URL, e.g. https://crm.example.com")
    parser.add_argument("--domain", default=None)
    parser.add_argument("--crm-api-key", default=None, help="service credential used by role sync")
    parser.add_argument("--id", dest="tenant_id", default=None)
    return parser.parse_args(argv)


def create_tenant(db, args: argparse.Namespace) -> Tenant:
    tenant_id = args.tenant_id or f"t_{secrets.token_hex(8)}"
    if db.get(Tenant, tenant_id):
        raise SystemExit(f"Tenant {tenant_id} already exists")

    tenant = Tenant(
        id=tenant_id,
        name=args.name,
        domain=args.domain,
        crm_url=args.crm_url.rstrip("/"),
        crm_api_key=args.crm_api_key,
    )
    db.add(tenant)
    db.commit()
    return tenant


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    db = SessionLocal()
    try:
        tenant = create_tenant(db, args)
    finally:
        db.close()

    print(f"[OK] Tenant created: id={tenant.id} name={tenant.name} crm_url={tenant.crm_url}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
