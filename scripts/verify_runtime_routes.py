import json
import os

import httpx


def main() -> int:
    base_url = os.getenv("VERIFY_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
    print(f"Checking runtime at {base_url}")
    with httpx.Client(base_url=base_url, timeout=10.0) as client:
        try:
            health = client.get("/health")
        except httpx.HTTPError as exc:
            print(f"[FAIL] Could not connect to service: {exc}")
            return 1

        print(f"[INFO] /health status={health.status_code}")
        if health.status_code != 200:
            print("[FAIL] /health is not healthy.")
            return 1

        version = client.get("/version")
        app_version_header = version.headers.get("X-Chunkserve-Version")
        print(f"[INFO] /version status={version.status_code} X-Chunkserve-Version={app_version_header}")
        if version.status_code != 200:
            print("[FAIL] /version missing. You may be running an older server process.")
            return 2
        print(f"[OK] version payload: {json.dumps(version.json(), sort_keys=True)}")

        metrics = client.get("/metrics")
        print(f"[INFO] /metrics status={metrics.status_code}")
        if metrics.status_code != 200 or "chunks_received_total" not in metrics.text:
            print("[FAIL] /metrics does not expose chunk counters.")
            return 3

        print("[OK] runtime routes are available.")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
