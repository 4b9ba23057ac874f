#!/usr/bin/env python3
"""
FleetProv -- operator command line.

Usage:
  python main.py serve [--host 0.0.0.0] [--port 8000]
  python main.py create-admin alice
  python main.py list
  python main.py list --status approval_pending_request_received
  python main.py approve 3f9c0a1b2c3d4e5f6a7b
  python main.py revoke 3f9c0a1b2c3d4e5f6a7b
  python main.py hash SN-001

Every sub-command reads the same settings as the API (environment or .env):
DATABASE_URL for the device registry, AUTH_DATABASE_URL for operators.
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from core.config import get_settings
from core.errors import NotFoundError
from core.identity import hash_serial, sanitize_serial
from registry.models import DeviceRecord, ProvisioningStatus
from registry.store import DeviceRegistry

_MIN_PASSWORD_LENGTH = 12


def _print_device(record: DeviceRecord) -> None:
    approved = "yes" if record.approved_for_provisioning else "no"
    print(f"  {record.id}  {record.serial:<24} {record.provisioning_status.value:<36} approved={approved}")


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, proxy_headers=True)
    return 0


def _cmd_create_admin(args: argparse.Namespace) -> int:
    # Deferred: auth.tokens reads SECRET_KEY at import time, which the other
    # sub-commands do not need.
    from auth.models import Operator
    from auth.store import OperatorStore
    from auth.tokens import hash_password

    password: Optional[str] = args.password
    if password is None:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Repeat password: "):
            print("  [!] Passwords do not match.")
            return 1
    if len(password) < _MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {_MIN_PASSWORD_LENGTH} characters.")
        return 1

    store = OperatorStore(get_settings().auth_database_url)
    try:
        operator_id = store.create_operator(
            Operator(username=args.username, role=args.role, hashed_password=hash_password(password))
        )
    except IntegrityError:
        print(f"  [!] Operator '{args.username}' already exists.")
        return 1
    finally:
        store.close()
    print(f"  Created {args.role} '{args.username}' (id {operator_id}).")
    return 0


def _cmd_list(args: argparse.Namespace) -> int:
    registry = DeviceRegistry(get_settings().database_url)
    try:
        status = ProvisioningStatus(args.status) if args.status else None
        devices = registry.list_devices(status)
    finally:
        registry.close()
    if not devices:
        print("  No devices.")
        return 0
    for record in devices:
        _print_device(record)
    print(f"\n  {len(devices)} device(s).")
    return 0


def _cmd_set_approval(args: argparse.Namespace, approved: bool) -> int:
    registry = DeviceRegistry(get_settings().database_url)
    try:
        record = registry.set_approval(args.device_id, approved)
    except NotFoundError:
        print(f"  [!] No device with id '{args.device_id}'.")
        return 1
    finally:
        registry.close()
    _print_device(record)
    return 0


def _cmd_hash(args: argparse.Namespace) -> int:
    serial = sanitize_serial(args.serial)
    if not serial:
        print("  [!] Serial is empty after sanitization.")
        return 1
    print(hash_serial(serial))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="fleetprov",
        description="Device registration, approval, and provisioning service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --port 8080
  python main.py create-admin alice
  python main.py list --status approval_pending_request_received
  python main.py approve 3f9c0a1b2c3d4e5f6a7b
  curl "http://localhost:8000/provision?device_hash=$(python main.py hash SN-001)"
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    create_admin = sub.add_parser("create-admin", help="Create an operator account")
    create_admin.add_argument("username")
    create_admin.add_argument(
        "--role",
        choices=["admin", "viewer"],
        default="admin",
        help="admin may approve devices; viewer may only list them (default: admin)",
    )
    create_admin.add_argument(
        "--password",
        default=None,
        help="Password (prompted for when omitted; avoid passing it on shared machines)",
    )

    list_cmd = sub.add_parser("list", help="List registered devices")
    list_cmd.add_argument(
        "--status",
        choices=[s.value for s in ProvisioningStatus],
        default=None,
        metavar="STATUS",
        help="Only show devices in this provisioning status",
    )

    approve = sub.add_parser("approve", help="Approve a device for provisioning")
    approve.add_argument("device_id")

    revoke = sub.add_parser("revoke", help="Withdraw provisioning approval")
    revoke.add_argument("device_id")

    hash_cmd = sub.add_parser("hash", help="Print the device hash for a serial number")
    hash_cmd.add_argument("serial")

    args = parser.parse_args(argv)

    if args.command == "serve":
        return _cmd_serve(args)
    if args.command == "create-admin":
        return _cmd_create_admin(args)
    if args.command == "list":
        return _cmd_list(args)
    if args.command == "approve":
        return _cmd_set_approval(args, True)
    if args.command == "revoke":
        return _cmd_set_approval(args, False)
    if args.command == "hash":
        return _cmd_hash(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
