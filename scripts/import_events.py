"""
CSV Import Script for Events

Usage:
    python scripts/import_events.py <tenant-id> <path-to-csv>

CSV Format:
    id,timestamp,user_id,session_id,event_name,platform,properties_json

Rows go through the same validation as the ingestion API. Invalid rows are
reported and skipped; valid rows are appended in batches.
"""

import asyncio
import csv
import json
import sys
from pathlib import Path

from pydantic import ValidationError

from eventpulse.core.config import settings
from eventpulse.core.database import get_duckdb_connection
from eventpulse.core.timeutil import to_naive_utc, utcnow
from eventpulse.schemas.event import EventCreate, StoredEvent
from eventpulse.services.event_store import EventStore

REQUIRED_HEADERS = {'timestamp', 'user_id', 'event_name'}


def row_to_event(row: dict, tenant_id: str, received_at) -> StoredEvent:
    properties = {}
    if row.get('properties_json') and row['properties_json'].strip():
        properties = json.loads(row['properties_json'])

    event = EventCreate(
        id=row.get('id') or None,
        user_id=row['user_id'],
        session_id=row.get('session_id') or None,
        event_name=row['event_name'],
        properties=properties,
        timestamp=row['timestamp'],
        platform=row.get('platform') or "web"
    )
    return StoredEvent(
        id=event.id or f"import_{received_at:%Y%m%d%H%M%S}_{row['_line']}",
        tenant_id=tenant_id,
        user_id=event.user_id,
        session_id=event.session_id,
        event_name=event.event_name,
        properties=event.properties,
        timestamp=to_naive_utc(event.timestamp),
        platform=event.platform,
        received_at=received_at
    )


async def import_csv(tenant_id: str, file_path: str, batch_size: int = 1000):
    """
    Import events from CSV file

    Args:
        tenant_id: Project the events belong to
        file_path: Path to CSV file
        batch_size: Number of events appended per transaction
    """
    file_path = Path(file_path)

    if not file_path.exists():
        print(f"Error: File not found: {file_path}")
        sys.exit(1)

    print(f"Starting import from: {file_path}")

    store = EventStore(get_duckdb_connection(settings.duckdb_path), timeout=600)
    received_at = utcnow()

    total_processed = 0
    total_inserted = 0
    total_invalid = 0

    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            reader = csv.DictReader(f)

            if not REQUIRED_HEADERS.issubset(reader.fieldnames or ()):
                print(f"Error: CSV must have headers: {REQUIRED_HEADERS}")
                print(f"Found headers: {reader.fieldnames}")
                sys.exit(1)

            batch = []

            for i, row in enumerate(reader, 1):
                total_processed += 1
                try:
                    batch.append(row_to_event({**row, '_line': i}, tenant_id, received_at))
                except (ValidationError, ValueError) as e:
                    total_invalid += 1
                    print(f"Error on row {i}: {e}")
                    continue

                if len(batch) >= batch_size:
                    total_inserted += await store.append(batch)
                    print(f"Processed {total_processed} rows | "
                          f"Inserted: {total_inserted} | "
                          f"Invalid: {total_invalid}")
                    batch = []

            if batch:
                total_inserted += await store.append(batch)
    finally:
        store.close()

    print("\n" + "=" * 50)
    print("Import completed!")
    print(f"Total processed: {total_processed}")
    print(f"Total inserted: {total_inserted}")
    print(f"Total invalid: {total_invalid}")
    print("=" * 50)


def main():
    if len(sys.argv) != 3:
        print("Usage: python scripts/import_events.py <tenant-id> <path-to-csv>")
        sys.exit(1)

    asyncio.run(import_csv(sys.argv[1], sys.argv[2]))


if __name__ == "__main__":
    main()
