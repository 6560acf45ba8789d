"""CLI entry points for vmmeter."""

from __future__ import annotations

import argparse
import json
import signal
import threading
from pathlib import Path
from typing import Any, List, Optional

from vmmeter.api import Engine, Response
from vmmeter.billing import parse_month
from vmmeter.config import load_config
from vmmeter.exceptions import ManagerError
from vmmeter.utils import log


def _emit(body: Any) -> None:
    print(json.dumps(body, indent=2, default=str))


def _request(engine: Engine, method: str, path: str, body: Optional[dict] = None) -> int:
    response: Response = engine.handle(method, path, body)
    if response.status >= 400:
        log("ERROR", response.body.get("error", f"HTTP {response.status}"))
        if response.body.get("details"):
            log("ERROR", str(response.body["details"]))
        return 1
    _emit(response.body)
    return 0


def _read_ssh_key(raw: str) -> str:
    """Accept either a key or a path to a .pub file."""
    candidate = Path(raw).expanduser()
    if not raw.startswith("ssh-") and candidate.is_file():
        return candidate.read_text(encoding="utf-8").strip()
    return raw


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vmmeter", description="Provision and meter KVM guests on this host")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Provision a new VM")
    create.add_argument("name")
    create.add_argument("--os", dest="os_key", required=True, help="OS catalog key (e.g. ubuntu22)")
    create.add_argument("--memory", type=int, default=2048, help="Memory in MiB")
    create.add_argument("--vcpu", type=int, default=2)
    create.add_argument("--disk", type=int, default=20, help="Disk size in GiB (minimum 20)")
    create.add_argument("--network", default=None)
    create.add_argument("--ssh", required=True, help="SSH public key or path to a .pub file")
    create.add_argument("--user-id", default=None)
    create.add_argument("--plan-id", type=int, default=None)

    sub.add_parser("list", help="List domains")
    for action in ("get", "start", "shutdown", "poweroff", "delete"):
        cmd = sub.add_parser(action, help=f"{action.capitalize()} a VM")
        cmd.add_argument("name")

    sub.add_parser("images", help="List catalog images")
    download = sub.add_parser("download", help="Fetch a base image into the cache")
    download.add_argument("os_key")
    download.add_argument("--status", action="store_true", help="Report the download task instead of starting one")

    sub.add_parser("networks", help="List hypervisor networks")
    sub.add_parser("network-default", help="Define and start the default NAT network")

    sub.add_parser("sample", help="Take one usage sample of every running VM")
    bill = sub.add_parser("bill", help="Generate invoices")
    bill.add_argument("--month", default=None, help="YYYY-MM (default: previous month)")
    invoices = sub.add_parser("invoices", help="List invoices")
    invoices.add_argument("--user-id", default=None)

    plan = sub.add_parser("plan-add", help="Seed a pricing plan")
    plan.add_argument("name")
    plan.add_argument("--cpu-hourly", type=float, required=True)
    plan.add_argument("--memory-hourly", type=float, required=True)

    sub.add_parser("serve", help="Run the sampling and billing scheduler")
    return parser


def _serve(engine: Engine) -> int:
    scheduler = engine.build_scheduler()
    stop = threading.Event()

    def _stop(signum, frame):
        log("INFO", f"Received signal {signum}, stopping")
        stop.set()

    prev_sigterm = signal.signal(signal.SIGTERM, _stop)
    try:
        scheduler.serve(stop)
    except KeyboardInterrupt:
        stop.set()
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)
    return 0


def dispatch(engine: Engine, args: argparse.Namespace) -> int:
    command = args.command
    if command == "create":
        body = {
            "name": args.name,
            "memory": args.memory,
            "vcpu": args.vcpu,
            "diskSizeGB": args.disk,
            "osKey": args.os_key,
            "network": args.network,
            "ssh": _read_ssh_key(args.ssh),
            "userId": args.user_id,
            "planId": args.plan_id,
        }
        return _request(engine, "POST", "/vms", body)
    if command == "list":
        return _request(engine, "GET", "/vms")
    if command == "get":
        return _request(engine, "GET", f"/vms/{args.name}")
    if command in ("start", "shutdown", "poweroff"):
        return _request(engine, "POST", f"/vms/{args.name}/{command}")
    if command == "delete":
        return _request(engine, "DELETE", f"/vms/{args.name}")
    if command == "images":
        return _request(engine, "GET", "/images")
    if command == "download":
        if args.status:
            return _request(engine, "GET", f"/images/{args.os_key}/download")
        # A CLI process exits right away, so fetch in the foreground.
        path = engine.images.ensure_local(args.os_key)
        _emit({"osKey": args.os_key, "state": "done", "path": str(path), "error": None})
        return 0
    if command == "networks":
        return _request(engine, "GET", "/networks")
    if command == "network-default":
        return _request(engine, "POST", "/networks/default")
    if command == "sample":
        samples = engine.sampler.run()
        _emit({"samples": len(samples), "vms": [sample.vm_name for sample in samples]})
        return 0
    if command == "bill":
        window = parse_month(args.month) if args.month else None
        _emit([invoice.to_dict() for invoice in engine.billing.run(window=window)])
        return 0
    if command == "invoices":
        _emit([invoice.to_dict() for invoice in engine.storage.list_invoices(args.user_id)])
        return 0
    if command == "plan-add":
        plan = engine.storage.add_plan(args.name, args.cpu_hourly, args.memory_hourly)
        _emit(plan.to_dict())
        return 0
    if command == "serve":
        return _serve(engine)
    raise ManagerError(f"Unknown command '{command}'")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    engine: Optional[Engine] = None
    try:
        engine = Engine(load_config())
        return dispatch(engine, args)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    finally:
        if engine is not None:
            engine.close()
