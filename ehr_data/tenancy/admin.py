# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
Tenant Administration — Onboarding tooling entry point.

Usage:
    python -m ehr_data.tenancy.admin init-shared
    python -m ehr_data.tenancy.admin create --name acme
    python -m ehr_data.tenancy.admin drop --name acme --yes
    python -m ehr_data.tenancy.admin list
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional

from ehr_data.core.config import settings
from ehr_data.core.logging import setup_logging
from ehr_data.tenancy.errors import TenancyError
from ehr_data.tenancy.provisioning import (
    deprovision_tenant,
    ensure_shared_schema,
    list_tenant_schemas,
    list_tenants,
    provision_tenant,
)
from ehr_data.tenancy.scope import TenantPool


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ehr-tenant", description="Manage tenant schemas")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-shared", help="Create the shared reference schema")

    create = sub.add_parser("create", help="Provision a tenant schema")
    create.add_argument("--name", required=True, help="Tenant identifier (letters, digits, '_')")

    drop = sub.add_parser("drop", help="Drop a tenant schema and all its data")
    drop.add_argument("--name", required=True)
    drop.add_argument("--yes", action="store_true", help="Confirm the irreversible drop")

    sub.add_parser("list", help="List provisioned tenants")
    return parser


async def run_command(pool: TenantPool, args: argparse.Namespace) -> int:
    if args.command == "init-shared":
        created = await ensure_shared_schema(pool)
        print(f"[tenant] shared schema {pool.shared_schema} ready ({len(created)} tables created)")
        return 0

    if args.command == "create":
        result = await provision_tenant(pool, args.name)
        state = "created" if result.created else "already provisioned"
        print(f"[tenant] {result.tenant_id}: schema {result.schema} {state}")
        return 0

    if args.command == "drop":
        if not args.yes:
            print("[tenant] refusing to drop without --yes", file=sys.stderr)
            return 2
        existed = await deprovision_tenant(pool, args.name)
        print(f"[tenant] {args.name}: {'dropped' if existed else 'no such schema'}")
        return 0

    if args.command == "list":
        records = await list_tenants(pool)
        registered = {r.schema for r in records}
        for record in records:
            print(f"{record.tenant_id:<32} {record.schema:<40} {record.created_at or ''}")
        for schema in await list_tenant_schemas(pool):
            if schema not in registered:
                print(f"{'?':<32} {schema:<40} (unregistered)")
        return 0

    return 2


async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(settings.LOG_LEVEL)
    pool = TenantPool.from_settings(settings)
    try:
        return await run_command(pool, args)
    except TenancyError as exc:
        print(f"[tenant] {exc.kind}: {exc}", file=sys.stderr)
        return 1
    finally:
        await pool.close()


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
