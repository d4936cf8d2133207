#!/usr/bin/env python3
"""
Cardinal -- Container provisioning webhooks for CI pipelines.

Operator CLI. Every subcommand reads the same environment / .env settings as
the API server and talks to the same database and hypervisor.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 3000
  python main.py list
  python main.py access 105
  python main.py create --name ci-build --hostname ci-01
  python main.py create --name ci-build --hostname ci-01 --cores 4 --memory 4096 --wait
  python main.py reconcile

Environment variables:
  ENCRYPTION_KEY  Key for stored container passwords (32+ chars).
  PROXMOX_HOST, PROXMOX_NODE, PROXMOX_TOKEN, PROXMOX_SECRET
                  Hypervisor connection. See core/config.py for the full list.
"""

import argparse
import logging
import sys
import time
from typing import Optional

from core.config import get_settings
from core.errors import CardinalError
from core.models import ProvisioningRequest
from provisioning.bootstrap import Services, build_services

logger = logging.getLogger("cardinal.cli")


def _print_row(cols: list[str], widths: list[int]) -> None:
    print("  " + "  ".join(c.ljust(w) for c, w in zip(cols, widths)))


def cmd_list(services: Services, args: argparse.Namespace) -> int:
    records = services.orchestrator.list_containers()
    if not records:
        print("  No containers recorded.")
        return 0
    header = ["CT_ID", "NAME", "STATUS", "IP ADDRESS", "JOB", "CREATED"]
    rows = [
        [r.ct_id, r.name, r.status, r.ip_address or "-", r.jenkins_job_id or "-", r.created_at or "-"]
        for r in records
    ]
    widths = [max(len(row[i]) for row in [header] + rows) for i in range(len(header))]
    _print_row(header, widths)
    _print_row(["-" * w for w in widths], widths)
    for row in rows:
        _print_row(row, widths)
    return 0


def cmd_access(services: Services, args: argparse.Namespace) -> int:
    bundle = services.orchestrator.get_access(args.ct_id)
    print(f"  ct_id:      {bundle.ct_id}")
    print(f"  ip_address: {bundle.ip_address}")
    print(f"  username:   {bundle.username}")
    print(f"  password:   {bundle.password}")
    return 0


def cmd_create(services: Services, args: argparse.Namespace) -> int:
    request = ProvisioningRequest(
        name=args.name,
        hostname=args.hostname,
        cores=args.cores,
        memory=args.memory,
        disk=args.disk,
        ostemplate=args.ostemplate,
        jenkins_job_id=args.job,
    )
    print(f"  Creating {args.name} ({args.hostname})...", end=" ", flush=True)
    result = services.orchestrator.create_container(request)
    print(f"done. ct_id={result.ct_id}")

    # The scheduled timer would die with this process; resolve inline instead.
    services.reconciler.shutdown()
    if not args.wait:
        print("  Address will be resolved by the next reconcile sweep.")
        return 0

    delay = get_settings().resolve_delay_seconds
    print(f"  Waiting {delay:g}s for the container to obtain an address...", end=" ", flush=True)
    time.sleep(delay)
    address: Optional[str] = services.reconciler.resolve_once(result.ct_id)
    print(address or "not yet available.")
    return 0


def cmd_reconcile(services: Services, args: argparse.Namespace) -> int:
    resolved = services.reconciler.sweep()
    print(f"  {resolved} container(s) resolved.")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, log_level="info")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="cardinal",
        description="Container provisioning webhooks for CI pipelines.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --port 3000
  python main.py create --name ci-build --hostname ci-01 --wait
  python main.py access 105
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the webhook API server")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=3000, help="Bind port (default: 3000)")

    sub.add_parser("list", help="List every recorded container, newest first")

    access = sub.add_parser("access", help="Print credentials for a running container")
    access.add_argument("ct_id", metavar="CT_ID", help="Hypervisor container id")

    create = sub.add_parser("create", help="Provision a container")
    create.add_argument("--name", required=True, help="Display name")
    create.add_argument("--hostname", required=True, help="Hostname (letters, digits and hyphens)")
    create.add_argument("--cores", type=int, help="CPU cores")
    create.add_argument("--memory", type=int, metavar="MB", help="RAM in MB")
    create.add_argument("--disk", type=int, metavar="GB", help="Root disk size in GB")
    create.add_argument("--ostemplate", help="OS template, e.g. local:vztmpl/debian-12-standard.tar.zst")
    create.add_argument("--job", metavar="ID", help="CI job id to record with the container")
    create.add_argument(
        "--wait",
        action="store_true",
        help="Wait RESOLVE_DELAY_SECONDS and resolve the address before exiting",
    )

    sub.add_parser("reconcile", help="Run one address reconciliation sweep")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "serve":
        return cmd_serve(args)

    handlers = {
        "list": cmd_list,
        "access": cmd_access,
        "create": cmd_create,
        "reconcile": cmd_reconcile,
    }
    services = build_services(get_settings())
    try:
        return handlers[args.command](services, args)
    except CardinalError as e:
        logger.debug("%s failed", args.command, exc_info=True)
        print(f"\n  [!] {e}")
        return 1
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
