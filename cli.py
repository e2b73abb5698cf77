from __future__ import annotations

import argparse
import json
import sys
import uuid
from datetime import datetime, timezone

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def build_notification(repository: str, tag: str, action: str = "push") -> dict:
    """A minimal registry notification body carrying a single event."""
    return {
        "events": [
            {
                "id": str(uuid.uuid4()),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "action": action,
                "target": {"repository": repository, "tag": tag},
            }
        ]
    }


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Registry Push Reconciler CLI")
    p.add_argument("--api", default="http://localhost:3030", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_ev = sub.add_parser("events", help="Show the event log")
    s_ev.add_argument("--limit", type=int, default=20)

    s_rec = sub.add_parser("reconciliations", help="Show reconciliation outcomes")
    s_rec.add_argument("--limit", type=int, default=20)
    s_rec.add_argument("--workload", help="Only outcomes for this workload (<repository>-<tag>)")

    sub.add_parser("workloads", help="Show last known status per workload")

    s_push = sub.add_parser("push", help="Send a synthetic registry notification")
    s_push.add_argument("--repository", required=True)
    s_push.add_argument("--tag", required=True)
    s_push.add_argument("--action", choices=["push", "pull"], default="push")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    if args.cmd == "reconciliations":
        params = {"limit": args.limit}
        if args.workload:
            params["workload"] = args.workload
        _print(requests.get(f"{base}/reconciliations", params=params, timeout=10).json())
        return 0

    if args.cmd == "workloads":
        _print(requests.get(f"{base}/workloads", timeout=10).json())
        return 0

    if args.cmd == "push":
        payload = build_notification(args.repository, args.tag, args.action)
        # Reconciliation is synchronous on the server: registry fetches plus cluster calls.
        r = requests.post(f"{base}/event", json=payload, timeout=120)
        body = r.json()
        _print(body)
        results = body.get("results", [])
        return 0 if body.get("accepted") and all(x.get("ok") for x in results) else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
