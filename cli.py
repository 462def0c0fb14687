from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Config Drift Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("status", help="Show reconciler status")

    s_rep = sub.add_parser("reports", help="Show cycle reports")
    s_rep.add_argument("--limit", type=int, default=5)
    s_rep.add_argument("--latest", action="store_true", help="Only the most recent report")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--level", choices=["INFO", "WARN", "ERROR"])

    s_rec = sub.add_parser("reconcile", help="Queue a reconciliation pass")
    s_rec.add_argument("--identity", action="append", help="Kind/namespace/name; repeatable. Default: all units")
    s_rec.add_argument("--dry-run", action="store_true", help="Run now, report drift and patches, change nothing")

    sub.add_parser("scopes", help="List scopes")

    s_units = sub.add_parser("units", help="List units of a scope")
    s_units.add_argument("--scope", help="Scope slug or id (default: the monitored scope)")

    s_imp = sub.add_parser("import", help="Import YAML manifests as units (local registry)")
    s_imp.add_argument("--scope", required=True)
    s_imp.add_argument("--file", required=True, help="Multi-document YAML file, '-' for stdin")
    s_imp.add_argument("--label", action="append", default=[], help="key=value; repeatable")

    s_scope = sub.add_parser("create-scope", help="Create a scope (local registry)")
    s_scope.add_argument("--slug", required=True)
    s_scope.add_argument("--upstream")
    s_scope.add_argument("--clone", action="store_true", help="Copy every upstream unit as a downstream unit")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "status":
        _print(requests.get(f"{base}/status", timeout=10).json())
        return 0

    if args.cmd == "reports":
        if args.latest:
            r = requests.get(f"{base}/reports/latest", timeout=10)
        else:
            r = requests.get(f"{base}/reports", params={"limit": args.limit}, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.level:
            params["level"] = args.level
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "reconcile":
        payload = {"identities": args.identity, "dry_run": args.dry_run}
        # A dry run executes the pass inline, so allow for slow clusters.
        r = requests.post(f"{base}/reconcile", json=payload, timeout=300 if args.dry_run else 30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "scopes":
        _print(requests.get(f"{base}/scopes", timeout=10).json())
        return 0

    if args.cmd == "units":
        params = {"scope": args.scope} if args.scope else {}
        r = requests.get(f"{base}/units", params=params, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "import":
        text = sys.stdin.read() if args.file == "-" else open(args.file, encoding="utf-8").read()
        labels = dict(kv.split("=", 1) for kv in args.label if "=" in kv)
        payload = {"scope": args.scope, "manifests": text, "labels": labels}
        r = requests.post(f"{base}/units/import", json=payload, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "create-scope":
        payload = {"slug": args.slug, "upstream": args.upstream, "clone": args.clone}
        r = requests.post(f"{base}/scopes", json=payload, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
