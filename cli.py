from __future__ import annotations

import argparse
import json
import os
import sys

import requests

from drc.migrations import checksum_directory


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _kv_pairs(items: list[str] | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in items or []:
        if "=" not in item:
            raise SystemExit(f"Expected SERVICE=IMAGE, got {item!r}")
        k, v = item.split("=", 1)
        out[k.strip()] = v.strip()
    return out


def _auth() -> tuple[str, str] | None:
    password = os.getenv("DRC_ADMIN_PASSWORD")
    if not password:
        return None
    return os.getenv("DRC_ADMIN_USER", "admin"), password


def _show(r: requests.Response) -> int:
    try:
        _print(r.json())
    except ValueError:
        print(r.text)
    return 0 if r.ok else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Deployment Rollout Controller CLI")
    p.add_argument("--api", default=os.getenv("DRC_API", "http://localhost:8000"), help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("services", help="List service descriptors")

    s_plan = sub.add_parser("plan", help="Show the start order")
    s_plan.add_argument("--target", action="append", help="Restrict to a service and its dependencies")

    s_roll = sub.add_parser("rollout", help="Start a rollout")
    s_roll.add_argument("--image", action="append", metavar="SERVICE=IMAGE", help="New image for a service")
    s_roll.add_argument("--target", action="append", help="Restrict to a service and its dependencies")
    s_roll.add_argument("--migration-checksum")
    s_roll.add_argument("--migration-version")
    s_roll.add_argument("--no-apply-migrations", action="store_true", help="Only check the gate, never migrate")
    s_roll.add_argument("--auto-rollback", action="store_true", help="Roll the failed service back automatically")

    s_st = sub.add_parser("status", help="Show a rollout (or all rollouts)")
    s_st.add_argument("rollout_id", nargs="?")

    s_cancel = sub.add_parser("cancel", help="Cancel a running rollout")
    s_cancel.add_argument("rollout_id")

    s_rb = sub.add_parser("rollback", help="Roll services of a rollout back to their previous image")
    s_rb.add_argument("rollout_id")
    s_rb.add_argument("services", nargs="+")
    s_rb.add_argument("--image", action="append", metavar="SERVICE=IMAGE", help="Roll back to this image instead")

    s_mig = sub.add_parser("migrate", help="Apply a schema migration")
    s_mig.add_argument("--checksum", required=True)
    s_mig.add_argument("--version")

    s_migs = sub.add_parser("migrations", help="List migration records")
    s_migs.add_argument("--version")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--rollout")

    s_sum = sub.add_parser("checksum", help="Compute the checksum of a migrations directory (local)")
    s_sum.add_argument("path")

    args = p.parse_args(argv)

    if args.cmd == "checksum":
        if not os.path.isdir(args.path):
            print(f"Not a directory: {args.path}", file=sys.stderr)
            return 1
        print(checksum_directory(args.path))
        return 0

    base = args.api.rstrip("/")
    auth = _auth()

    if args.cmd == "services":
        return _show(requests.get(f"{base}/services", timeout=10))

    if args.cmd == "plan":
        return _show(requests.get(f"{base}/plan", params={"targets": args.target or []}, timeout=10))

    if args.cmd == "rollout":
        payload = {
            "images": _kv_pairs(args.image),
            "targets": args.target,
            "migration_checksum": args.migration_checksum,
            "migration_version": args.migration_version,
            "apply_migrations": not args.no_apply_migrations,
            "auto_rollback": args.auto_rollback,
        }
        return _show(requests.post(f"{base}/rollouts", json=payload, auth=auth, timeout=30))

    if args.cmd == "status":
        if args.rollout_id:
            return _show(requests.get(f"{base}/rollouts/{args.rollout_id}", timeout=10))
        return _show(requests.get(f"{base}/rollouts", timeout=10))

    if args.cmd == "cancel":
        return _show(requests.post(f"{base}/rollouts/{args.rollout_id}/cancel", auth=auth, timeout=10))

    if args.cmd == "rollback":
        payload = {"services": args.services, "images": _kv_pairs(args.image)}
        return _show(requests.post(f"{base}/rollouts/{args.rollout_id}/rollback", json=payload, auth=auth, timeout=30))

    if args.cmd == "migrate":
        payload = {"checksum": args.checksum, "version": args.version}
        # Migrations can take a while; the API call blocks until the runner exits.
        return _show(requests.post(f"{base}/migrations/apply", json=payload, auth=auth, timeout=900))

    if args.cmd == "migrations":
        params = {"version": args.version} if args.version else None
        return _show(requests.get(f"{base}/migrations", params=params, timeout=10))

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.rollout:
            params["rollout_id"] = args.rollout
        return _show(requests.get(f"{base}/events", params=params, timeout=10))

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
