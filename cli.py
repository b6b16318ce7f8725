from __future__ import annotations

import argparse
import json
import os
import sys

import requests

from kar.names import parse_selector


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Kafka Assembly Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", default=os.getenv("KAR_API_USER", "admin"))
    p.add_argument("--password", default=os.getenv("KAR_API_PASSWORD", "changeme"))
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("assemblies", help="List known assemblies and their last reconcile result")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--assembly", default=None)

    s_rec = sub.add_parser("reconcile", help="Reconcile one assembly now")
    s_rec.add_argument("--namespace", required=True)
    s_rec.add_argument("--name", required=True)

    s_all = sub.add_parser("reconcile-all", help="Reconcile every assembly in a namespace")
    s_all.add_argument("--namespace", default=None, help="Namespace, or '*' for all (default: server scope)")
    s_all.add_argument("--selector", default=None, help="Extra label terms, e.g. env=prod,team")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password)

    if args.cmd == "assemblies":
        r = requests.get(f"{base}/assemblies", auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.assembly:
            params["assembly"] = args.assembly
        r = requests.get(f"{base}/events", params=params, auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "reconcile":
        r = requests.post(f"{base}/assemblies/{args.namespace}/{args.name}/reconcile", auth=auth, timeout=300)
        _print(r.json())
        return 0 if r.ok and r.json().get("ok") else 1

    if args.cmd == "reconcile-all":
        body = {"namespace": args.namespace}
        if args.selector:
            body["selector"] = parse_selector(args.selector)
        r = requests.post(f"{base}/reconcile-all", json=body, auth=auth, timeout=600)
        _print(r.json())
        if not r.ok:
            return 1
        return 0 if all(item.get("ok") for item in r.json()) else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
