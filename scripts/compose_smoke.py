#!/usr/bin/env python3
from __future__ import annotations

import json
import os
import sys
from urllib.error import URLError
from urllib.request import Request, urlopen


def _get(url: str, api_key: str | None) -> dict:
    headers = {"X-API-Key": api_key} if api_key else {}
    with urlopen(Request(url, headers=headers), timeout=5) as response:
        return json.loads(response.read().decode("utf-8"))


def main() -> int:
    base_url = os.getenv("RAGENGINE_API_URL", "http://localhost:8000").rstrip("/")
    api_key = os.getenv("RAGENGINE_API_KEY")
    try:
        ready = _get(f"{base_url}/healthz/ready", api_key)
        print("/healthz/ready:", ready)
        if ready.get("status") != "ready":
            print("Similarity-search backend is not reachable.", file=sys.stderr)
            return 1
        snapshot = _get(f"{base_url}/config/snapshot", api_key)
        print("/config/snapshot hash:", snapshot["hash"])
        spaces = _get(f"{base_url}/embedding-spaces", api_key)
        print("/embedding-spaces:", ", ".join(space["embedding_space_id"] for space in spaces))
    except (URLError, KeyError, ValueError) as exc:
        print(f"Smoke check failed: {exc}", file=sys.stderr)
        return 1
    print("Smoke check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
