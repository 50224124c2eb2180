# Counter migration: seed the GRV / APT counters from IDs already stored
#
# Run once against an existing database before the dashboard serves traffic.
# Safe to re-run: counters that already exist are left untouched.
#
# Usage:  python backend/migrate_counters.py [--dry-run]

import sys
import logging
from pathlib import Path

from pymongo import MongoClient

_backend_dir = Path(__file__).resolve().parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

from seed.config import MONGODB_URL, MONGODB_DB, STORE_TIMEOUT_SECONDS
from tracking.errors import StorageUnavailable
from tracking.ids import SEQUENCES, SequenceAllocator

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def migrate(db, dry_run: bool = False) -> dict:
    """Initialize every known counter; with *dry_run* only report what would be set."""
    allocator = SequenceAllocator(db, timeout=STORE_TIMEOUT_SECONDS)
    result = {}
    for seq in SEQUENCES.values():
        if dry_run:
            current = allocator.current_value(seq.counter)
            highest = allocator.scan_existing_max_id(db[seq.collection], seq.id_field, seq.prefix)
            result[seq.counter] = current if current is not None else highest
            print(f"  {seq.counter:12s} existing={current}  highest stored={seq.prefix}{highest:08d}")
        else:
            result[seq.counter] = allocator.initialize_counter(
                seq.counter, db[seq.collection], seq.id_field, seq.prefix)
            print(f"  {seq.counter:12s} -> {result[seq.counter]}")
    return result


def main(argv=None) -> int:
    import argparse
    parser = argparse.ArgumentParser(description="Initialize GRV/APT counters from stored records")
    parser.add_argument("--dry-run", action="store_true", help="report without writing")
    args = parser.parse_args(argv)

    print("=" * 64)
    print("  Counter Migration" + ("  (dry run)" if args.dry_run else ""))
    print("=" * 64)
    client = MongoClient(MONGODB_URL)
    try:
        migrate(client[MONGODB_DB], dry_run=args.dry_run)
    except StorageUnavailable as e:
        logger.error("Migration aborted, database unavailable: %s", e)
        return 1
    finally:
        client.close()
    print("=" * 64)
    return 0


if __name__ == "__main__":
    sys.exit(main())
