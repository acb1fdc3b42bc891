#!/usr/bin/env python3
"""Submit one capture to a running API and wait until it is searchable."""

from __future__ import annotations

import json
import os
import sys
import time

from urllib.error import URLError
from urllib.request import Request, urlopen


def _call(url: str, payload: dict | None = None) -> dict:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = Request(url, data=data, headers={"Content-Type": "application/json"})
    api_key = os.getenv("SENTINELKB_API_KEY")
    if api_key:
        request.add_header("X-API-Key", api_key)
    with urlopen(request, timeout=5) as response:
        return json.loads(response.read().decode("utf-8"))


def main() -> int:
    base_url = os.getenv("SENTINELKB_API_URL", "http://localhost:8000").rstrip("/")
    try:
        print("/healthz:", _call(f"{base_url}/healthz"))
        accepted = _call(
            f"{base_url}/api/v1/capture",
            {
                "source_url": "https://example.com/smoke",
                "content_type": "note",
                "raw_content": "Smoke test capture about customer retention experiments",
                "tags": ["smoke"],
            },
        )
        capture_id = accepted["id"]
        capture: dict = {}
        for _ in range(40):
            capture = _call(f"{base_url}/api/v1/capture/{capture_id}")
            if capture["status"] in ("completed", "failed"):
                break
            time.sleep(0.25)
        print("capture status:", capture.get("status"))
        if capture.get("status") != "completed":
            print(f"Capture did not complete: {capture.get('error_message')}", file=sys.stderr)
            return 1
        hits = _call(f"{base_url}/api/v1/search/tags", {"tags": ["smoke"]})
        print("tag search hits:", hits["count"])
    except (URLError, KeyError, ValueError) as exc:
        print(f"Compose smoke failed: {exc}", file=sys.stderr)
        return 1
    print("Compose smoke passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
