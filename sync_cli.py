#!/usr/bin/env python3
"""Log FitTrack records from the command line, queueing them when offline.

Usage:
  python3 sync_cli.py log-weight 81.4 --notes "morning"
  python3 sync_cli.py log-workout "Back Squat" 100 5 3 --rpe 8
  python3 sync_cli.py log-macro 2400 180 250 70 --water 3000
  python3 sync_cli.py import-workouts workouts.csv
  python3 sync_cli.py status
  python3 sync_cli.py replay

The API is reached at --api-url (or FITTRACK_API_URL). When it cannot be
reached, the write is stored in the offline queue and sent on the next
`replay` (or the next command that finds the API reachable).
"""
from __future__ import annotations

import argparse
import asyncio
import csv
import logging
import os
import sys
from typing import List, Optional

import httpx

from offline_sync import (
    HealthCheckMonitor,
    HttpReplayer,
    JsonFileQueueStorage,
    OfflineSyncQueue,
)

DEFAULT_API_URL = "http://localhost:8000"


def _parse_int(raw: Optional[str]) -> Optional[int]:
    if not raw or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None


def _parse_float(raw: Optional[str]) -> Optional[float]:
    if not raw or not raw.strip():
        return None
    try:
        return float(raw.strip())
    except ValueError:
        return None


def _clean(payload: dict) -> dict:
    # Remove None values to keep payload clean
    return {k: v for k, v in payload.items() if v is not None}


def read_workouts_csv(csv_file: str) -> List[dict]:
    """Rows need exercise, weight, reps, sets; date/rpe/notes/phase are optional."""
    workouts = []
    with open(csv_file, "r", encoding="utf-8") as f:
        for row in csv.DictReader(f):
            workouts.append(_clean({
                "exercise": (row.get("exercise") or "").strip(),
                "weight": _parse_float(row.get("weight")),
                "reps": _parse_int(row.get("reps")),
                "sets": _parse_int(row.get("sets")),
                "rpe": _parse_int(row.get("rpe")),
                "date": row.get("date") or None,
                "notes": row.get("notes") or None,
                "phase": row.get("phase") or None,
            }))
    return workouts


class SyncClient:
    """Online-first writer: POST directly, fall back to the offline queue."""

    def __init__(
        self,
        api_url: str,
        queue_path: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.transport = transport
        self.monitor = HealthCheckMonitor(self.api_url, transport=transport)
        self.queue = OfflineSyncQueue(
            JsonFileQueueStorage(queue_path),
            HttpReplayer(self.api_url, transport=transport),
            max_attempts=max_attempts,
        )

    async def connect(self) -> bool:
        """Probe the API, then hand connectivity to the queue (replays if online)."""
        online = await self.monitor.poll_once()
        await self.queue.observe_connectivity(self.monitor)
        return online

    async def write(self, endpoint: str, payload: dict) -> str:
        """Return 'sent' or the queued item's id."""
        if self.monitor.is_online():
            try:
                async with httpx.AsyncClient(
                    base_url=self.api_url, transport=self.transport, timeout=10
                ) as client:
                    resp = await client.post(endpoint, json=payload)
                if resp.status_code == 400:
                    raise ValueError(resp.json().get("error", "Invalid data"))
                resp.raise_for_status()
                return "sent"
            except httpx.HTTPStatusError as e:
                # 429 and 5xx are transient; any other 4xx is a rejection
                if e.response.status_code != 429 and e.response.status_code < 500:
                    raise
                print(f"API answered {e.response.status_code}, queueing")
                await self.monitor.set_online(False)
            except httpx.TransportError as e:
                print(f"API unreachable, queueing: {e}")
                await self.monitor.set_online(False)
        return self.queue.enqueue(endpoint, "POST", payload)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sync_cli", description="FitTrack offline-first client")
    parser.add_argument("--api-url", default=os.getenv("FITTRACK_API_URL", DEFAULT_API_URL))
    parser.add_argument("--queue", default=None, help="path of the offline queue file")
    parser.add_argument("--max-attempts", type=int, default=None,
                        help="drop a queued write after this many failed replays")
    sub = parser.add_subparsers(dest="command", required=True)

    w = sub.add_parser("log-workout", help="log an exercise")
    w.add_argument("exercise")
    w.add_argument("weight", type=float)
    w.add_argument("reps", type=int)
    w.add_argument("sets", type=int)
    w.add_argument("--rpe", type=int)
    w.add_argument("--tempo")
    w.add_argument("--rest", type=int, dest="rest_time")
    w.add_argument("--phase")
    w.add_argument("--week", type=int, dest="week_in_program")
    w.add_argument("--date")
    w.add_argument("--notes")

    bw = sub.add_parser("log-weight", help="log body weight")
    bw.add_argument("weight", type=float)
    bw.add_argument("--date")
    bw.add_argument("--notes")

    m = sub.add_parser("log-macro", help="log a day's macros")
    m.add_argument("calories", type=int)
    m.add_argument("protein", type=int)
    m.add_argument("carbs", type=int)
    m.add_argument("fats", type=int)
    m.add_argument("--water", type=int, dest="water_intake")
    m.add_argument("--date")
    m.add_argument("--notes")

    imp = sub.add_parser("import-workouts", help="log every row of a workouts CSV")
    imp.add_argument("csv_file")

    sub.add_parser("status", help="list queued writes")
    sub.add_parser("replay", help="send queued writes if the API is reachable")
    return parser


_PAYLOAD_FIELDS = {
    "log-workout": ("/api/workouts", [
        "exercise", "weight", "reps", "sets", "rpe", "tempo", "rest_time",
        "phase", "week_in_program", "date", "notes",
    ]),
    "log-weight": ("/api/weights", ["weight", "date", "notes"]),
    "log-macro": ("/api/macros", [
        "calories", "protein", "carbs", "fats", "water_intake", "date", "notes",
    ]),
}


async def run(args: argparse.Namespace, transport: Optional[httpx.AsyncBaseTransport] = None) -> int:
    client = SyncClient(args.api_url, args.queue, transport=transport, max_attempts=args.max_attempts)

    if args.command == "status":
        items = client.queue.pending()
        print(f"{len(items)} queued write(s)")
        for item in items:
            print(f"  {item.id}  {item.method} {item.endpoint}  attempts={item.attempts}")
        return 0

    online = await client.connect()

    if args.command == "replay":
        if not online:
            print(f"API not reachable at {client.api_url}; {len(client.queue)} write(s) still queued")
            return 1
        remaining = len(client.queue)
        print(f"Replay done, {remaining} write(s) still queued")
        return 1 if remaining else 0

    if args.command == "import-workouts":
        payloads = [("/api/workouts", p) for p in read_workouts_csv(args.csv_file)]
    else:
        endpoint, fields = _PAYLOAD_FIELDS[args.command]
        payloads = [(endpoint, _clean({f: getattr(args, f) for f in fields}))]

    sent = queued = rejected = 0
    for endpoint, payload in payloads:
        try:
            result = await client.write(endpoint, payload)
        except (ValueError, httpx.HTTPStatusError) as e:
            rejected += 1
            print(f"Rejected {endpoint}: {e}")
            continue
        if result == "sent":
            sent += 1
        else:
            queued += 1
            print(f"Offline: queued {endpoint} as {result}")

    print(f"Sent: {sent}  Queued: {queued}  Rejected: {rejected}")
    return 1 if rejected else 0


def main(argv: Optional[List[str]] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(message)s")
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args, transport=transport))


if __name__ == "__main__":
    sys.exit(main())
