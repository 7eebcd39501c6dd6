#!/usr/bin/env python3
"""Utility script to inspect and repair sync state."""
import asyncio
import sys
import time
from pathlib import Path
from typing import Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from carsync.config import config
from carsync.errors import SyncError
from carsync.logging_conf import setup_logging
from carsync.store.spool import SpoolManager
from carsync.store.state import CheckpointManager, SyncCheckpoint, new_run_id
from carsync.store.supabase_writer import SupabaseCarWriter, UpsertResult


async def show_status(store: CheckpointManager, writer: Optional[SupabaseCarWriter] = None,
                      spool: Optional[SpoolManager] = None) -> None:
    """Show checkpoint, table counts and spool files."""
    await store.initialize()
    checkpoint = await store.read()

    print(f"Checkpoint store: {store.db_path}")
    if checkpoint is None:
        print("Checkpoint: none (next run starts fresh)")
    else:
        age_hours = checkpoint.age() / 3600
        valid = not checkpoint.is_stale(store.max_age_seconds)
        print(f"Checkpoint: run {checkpoint.run_id}")
        print(f"  Last page: {checkpoint.last_page} (next run starts at {checkpoint.last_page + 1})")
        print(f"  Rows processed: {checkpoint.total_processed}")
        print(f"  Age: {age_hours:.1f}h ({'valid' if valid else 'stale, will be ignored'})")

    if writer:
        staging = await writer.count_rows(writer.staging_table)
        cache = await writer.count_rows(writer.cache_table)
        print(f"Rows in {writer.staging_table}: {staging if staging is not None else 'unknown'}")
        print(f"Rows in {writer.cache_table}: {cache if cache is not None else 'unknown'}")

    if spool:
        files = sorted(spool.list_spool_files())
        print(f"Spool files: {len(files)}")
        for spool_file in files:
            print(f"  {spool_file.name}")


async def set_checkpoint(store: CheckpointManager, page: int) -> SyncCheckpoint:
    """Write a checkpoint so the next run starts at ``page``."""
    if page < 1:
        raise ValueError("page must be >= 1")
    await store.initialize()
    existing = await store.read()
    now = time.time()
    checkpoint = SyncCheckpoint(
        run_id=existing.run_id if existing else new_run_id(),
        last_page=page - 1,
        total_processed=existing.total_processed if existing else 0,
        start_time=existing.start_time if existing else now,
        last_update_time=now,
    )
    if not await store.save(checkpoint):
        raise RuntimeError("Failed to save checkpoint")
    print(f"Checkpoint set: next run starts at page {page}")
    return checkpoint


async def clear_checkpoint(store: CheckpointManager) -> None:
    """Delete the checkpoint."""
    await store.initialize()
    await store.clear()
    print("Checkpoint cleared (next run starts fresh)")


async def replay_spool(writer: SupabaseCarWriter, spool: SpoolManager) -> UpsertResult:
    """Re-upsert spooled rows. Files are deleted once fully replayed."""
    total = UpsertResult()
    for spool_file in sorted(spool.list_spool_files()):
        rows = await spool.read_rows(spool_file)
        result = await writer.replay_rows(rows)
        total.success += result.success
        total.failed += result.failed
        if result.failed == 0:
            spool.delete(spool_file)
            print(f"Replayed {result.success} rows from {spool_file.name}")
        else:
            print(f"Replay of {spool_file.name}: {result.success} ok, {result.failed} failed (file kept)")
    print(f"Replay total: {total.success} ok, {total.failed} failed")
    return total


async def resume(page: Optional[int] = None) -> None:
    """Run the sync from the checkpoint, or from ``page``."""
    from carsync.jobs.runner import create_runner

    config.validate()
    runner = create_runner(config, resume=True, start_page=page)
    try:
        report = await runner.run()
    except SyncError as e:
        print(f"Sync failed in phase {e.phase}: {e.message}")
        sys.exit(1)
    print(f"Run {report['run_id']} finished: {report['phase']}")


def _writer() -> SupabaseCarWriter:
    config.validate(require_supabase=True)
    return SupabaseCarWriter.from_config(config)


def _page_arg(argv: list[str]) -> Optional[int]:
    if "--page" in argv:
        index = argv.index("--page")
        if index + 1 >= len(argv):
            print("Error: --page needs a value")
            sys.exit(1)
        return int(argv[index + 1])
    return None


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage:")
        print("  python scripts/sync_recovery.py status                 # Show checkpoint, counts, spool")
        print("  python scripts/sync_recovery.py checkpoint --page <n>  # Next run starts at page n")
        print("  python scripts/sync_recovery.py clear                  # Delete checkpoint")
        print("  python scripts/sync_recovery.py replay-spool           # Re-upsert spooled rows")
        print("  python scripts/sync_recovery.py resume [--page <n>]    # Run the sync now")
        sys.exit(1)

    setup_logging()
    command = sys.argv[1]
    store = CheckpointManager(max_age_seconds=config.CHECKPOINT_MAX_AGE_HOURS * 3600)

    if command == "status":
        writer = None
        if config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE_KEY:
            writer = SupabaseCarWriter.from_config(config)
        asyncio.run(show_status(store, writer, SpoolManager()))
    elif command == "checkpoint":
        page = _page_arg(sys.argv)
        if page is None:
            print("Error: Please provide --page <n>")
            sys.exit(1)
        asyncio.run(set_checkpoint(store, page))
    elif command == "clear":
        confirm = input("Are you sure you want to delete the checkpoint? (yes/no): ")
        if confirm.lower() == "yes":
            asyncio.run(clear_checkpoint(store))
        else:
            print("Cancelled")
    elif command == "replay-spool":
        asyncio.run(replay_spool(_writer(), SpoolManager()))
    elif command == "resume":
        asyncio.run(resume(_page_arg(sys.argv)))
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)
