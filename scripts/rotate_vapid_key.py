from __future__ import annotations

import argparse
import asyncio
import sys

from pushrelay.core.clock import utc_now
from pushrelay.core.config import get_settings
from pushrelay.persistence.db import SessionLocal
from pushrelay.services.push.vapid import generate_vapid_key_pair, rotate_vapid_key


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate and activate a new VAPID key pair for a tenant")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--subject", default=None, help="mailto: or https: contact; defaults to settings")
    return parser


async def _rotate(tenant_id: str, subject: str | None) -> int:
    # Existing browser subscriptions were made against the old public key and must re-subscribe.
    public_key, private_key = generate_vapid_key_pair()
    async with SessionLocal() as session:
        row, previous_id = await rotate_vapid_key(
            session=session,
            tenant_id=tenant_id,
            public_key=public_key,
            private_key=private_key,
            subject=subject or get_settings().vapid_default_subject,
            now=utc_now(),
        )
    print("VAPID key rotated:")
    print(f"  key_id: {row.id}")
    print(f"  tenant_id: {tenant_id}")
    print(f"  replaced_key_id: {previous_id or ''}")
    print(f"  public_key: {public_key}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_rotate(args.tenant_id, args.subject))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"rotate_vapid_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
