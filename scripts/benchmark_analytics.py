#!/usr/bin/env python3
"""
Aggregation benchmark for the EventPulse API

Usage:
    python scripts/benchmark_analytics.py <api-key>

The first request per endpoint is usually computed; later ones within the
cache TTL are served from the response cache, so both columns are reported.
"""

import statistics
import sys
import time

import requests

# Paths below /api/v1/analytics
ANALYTICS_QUERIES = [
    ("Overview (7d)", "/overview?date_range=7d"),
    ("DAU (30d)", "/users/daily-active?date_range=30d"),
    ("Funnel (3 steps)", "/funnel?events=page_view,button_click,purchase&date_range=30d"),
    ("Retention (weekly)", "/retention?period=weekly"),
    ("Pages (top 20)", "/pages?limit=20"),
    ("Realtime", "/realtime"),
]


def benchmark_queries(base_url: str, api_key: str, runs: int = 5):
    print(f"\n{'=' * 60}")
    print("BENCHMARK: Aggregation endpoints")
    print(f"{'=' * 60}")

    prefix = f"{base_url}/api/v1/analytics"
    queries = [(name, f"{prefix}{path}") for name, path in ANALYTICS_QUERIES]

    session = requests.Session()
    session.headers["X-API-Key"] = api_key
    results = []

    for name, url in queries:
        times = []
        for _ in range(runs):
            start = time.time()
            try:
                response = session.get(url, timeout=30)
            except requests.RequestException as e:
                print(f"Error in {name}: {e}")
                continue
            elapsed = (time.time() - start) * 1000
            if response.status_code == 200:
                times.append(elapsed)
            else:
                print(f"Error in {name}: Status {response.status_code}")

        if times:
            results.append({
                "name": name,
                "first": times[0],
                "warm": statistics.median(times[1:]) if len(times) > 1 else times[0],
                "max": max(times)
            })

    print(f"\n{'Query':<22} {'First':>10} {'Warm P50':>10} {'Max':>10}")
    print(f"{'-' * 56}")
    for r in results:
        print(f"{r['name']:<22} {r['first']:>8.0f}ms {r['warm']:>8.0f}ms {r['max']:>8.0f}ms")
    print(f"{'=' * 60}\n")

    return results


def main():
    if len(sys.argv) != 2:
        print("Usage: python scripts/benchmark_analytics.py <api-key>")
        sys.exit(1)

    base_url = "http://localhost:8000"

    try:
        response = requests.get(f"{base_url}/health", timeout=5)
        if response.status_code != 200:
            print("Error: API is not healthy")
            sys.exit(1)
    except requests.RequestException as e:
        print(f"Error: Cannot connect to API: {e}")
        sys.exit(1)

    benchmark_queries(base_url, sys.argv[1])


if __name__ == "__main__":
    main()
