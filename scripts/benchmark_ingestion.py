#!/usr/bin/env python3
"""
Ingestion benchmark for the EventPulse API

Usage:
    python scripts/benchmark_ingestion.py <api-key> [total-events]

Posts batches to /api/v1/events/batch and reports throughput and latency.
"""

import statistics
import sys
import time
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import requests

EVENT_NAMES = ["page_view", "button_click", "form_submit", "purchase", "signup"]


def generate_events(count: int, start: datetime, offset: int):
    events = []
    for i in range(offset, offset + count):
        events.append({
            "id": str(uuid4()),
            "timestamp": (start + timedelta(seconds=i)).isoformat(),
            "user_id": f"user_{i % 10000}",  # 10k unique users
            "session_id": f"session_{i % 2500}",
            "event_name": EVENT_NAMES[i % len(EVENT_NAMES)],
            "properties": {"benchmark": True, "index": i, "page": f"/page/{i % 50}"}
        })
    return events


def benchmark_ingestion(base_url: str, api_key: str, total_events: int = 100000, batch_size: int = 100):
    print(f"\n{'=' * 60}")
    print(f"BENCHMARK: Ingesting {total_events:,} events")
    print(f"{'=' * 60}")

    start = datetime.now(timezone.utc) - timedelta(seconds=total_events)
    session = requests.Session()
    session.headers["X-API-Key"] = api_key

    accepted = 0
    throttled = 0
    batch_times = []
    start_time = time.time()

    for i in range(0, total_events, batch_size):
        events = generate_events(min(batch_size, total_events - i), start, i)
        batch_start = time.time()

        try:
            response = session.post(f"{base_url}/api/v1/events/batch", json={"events": events}, timeout=30)
            if response.status_code == 201:
                accepted += response.json()["accepted"]
            elif response.status_code == 429:
                throttled += 1
                time.sleep(float(response.headers.get("Retry-After", 1)))
            else:
                print(f"Error in batch {i // batch_size}: Status {response.status_code} {response.text[:200]}")
        except requests.RequestException as e:
            print(f"Error in batch {i // batch_size}: {e}")

        batch_times.append((time.time() - batch_start) * 1000)

        if (i // batch_size) % 100 == 0:
            print(f"Progress: {i + len(events):,} / {total_events:,} events")

    total_time = time.time() - start_time
    ordered = sorted(batch_times)

    print(f"\n{'=' * 60}")
    print("INGESTION RESULTS")
    print(f"{'=' * 60}")
    print(f"Accepted events:     {accepted:,}")
    print(f"Throttled batches:   {throttled:,}")
    print(f"Total time:          {total_time:.2f}s")
    print(f"Events/sec:          {accepted / total_time:,.0f}")
    print(f"P50 batch latency:   {statistics.median(ordered):.0f}ms")
    print(f"P95 batch latency:   {ordered[int(len(ordered) * 0.95)]:.0f}ms")
    print(f"Max batch latency:   {ordered[-1]:.0f}ms")
    print(f"{'=' * 60}\n")


def main():
    if len(sys.argv) < 2:
        print("Usage: python scripts/benchmark_ingestion.py <api-key> [total-events]")
        sys.exit(1)

    base_url = "http://localhost:8000"
    api_key = sys.argv[1]
    total_events = int(sys.argv[2]) if len(sys.argv) > 2 else 100000

    try:
        response = requests.get(f"{base_url}/health", timeout=5)
        if response.status_code != 200:
            print("Error: API is not healthy")
            sys.exit(1)
    except requests.RequestException as e:
        print(f"Error: Cannot connect to API: {e}")
        sys.exit(1)

    benchmark_ingestion(base_url, api_key, total_events=total_events)


if __name__ == "__main__":
    main()
