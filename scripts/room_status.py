"""Query a running duet relay over HTTP.

Useful for checking that ``duet serve`` is up and which rooms are occupied
without opening a WebSocket.

Examples
--------
Show relay health and the list of active rooms::

    python scripts/room_status.py

Show who is in a specific room on a remote relay::

    python scripts/room_status.py --url http://relay.example.com:3001 --room ab12cd34
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Iterable

import httpx


DEFAULT_URL = "http://localhost:3001"


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="duet relay status")
    parser.add_argument("--url", default=DEFAULT_URL, help="Base HTTP URL of the relay.")
    parser.add_argument("--room", default=None, help="Room id to inspect instead of overall health.")
    parser.add_argument("--timeout", type=float, default=5.0, help="Request timeout in seconds.")
    return parser.parse_args(argv)


def fetch_status(client: httpx.Client, room: str | None = None) -> dict:
    path = f"/rooms/{room.strip().upper()}" if room else "/healthz"
    response = client.get(path)
    if response.status_code == 404:
        return {"roomId": room.strip().upper() if room else None, "members": []}
    response.raise_for_status()
    return response.json()


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    timeout = httpx.Timeout(args.timeout, connect=args.timeout)

    with httpx.Client(base_url=args.url, timeout=timeout) as client:
        try:
            status = fetch_status(client, args.room)
        except httpx.HTTPError as exc:
            print(f"Relay request failed: {exc}", file=sys.stderr)
            return 1

    print(json.dumps(status, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
