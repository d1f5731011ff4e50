#!/usr/bin/env python3
import json
import os
import sys

import requests


BASE = os.environ.get("GATEWAY_URL", "http://127.0.0.1:3000")


def main():
    command = sys.argv[1] if len(sys.argv) > 1 else "build-files"
    args = sys.argv[2:]

    print("Health…")
    h = requests.get(f"{BASE}/health", timeout=10)
    print(json.dumps(h.json(), indent=2))

    print(f"\nRun {command}…")
    with requests.post(f"{BASE}/run", json={"command": command, "args": args}, stream=True, timeout=(10, None)) as r:
        r.raise_for_status()
        for line in r.iter_lines(decode_unicode=True):
            if not line or line.startswith(":"):
                continue
            if line.startswith("data: "):
                ev = json.loads(line[6:])
                data = ev.get("data") or {}
                if ev["type"] in ("stdout", "stderr"):
                    print(f"[{ev['type']}] {data.get('line', '')}")
                else:
                    print(json.dumps(ev))


if __name__ == "__main__":
    try:
        main()
    except requests.HTTPError as e:
        print("HTTP error:", e, file=sys.stderr)
        if e.response is not None:
            print(e.response.text, file=sys.stderr)
        sys.exit(2)
