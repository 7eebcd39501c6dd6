"""Tests for the failed-row spool and replay."""
import asyncio

from tenacity import wait_none

from scripts.sync_recovery import replay_spool, set_checkpoint
from carsync.store.spool import SpoolManager
from carsync.store.state import CheckpointManager, SyncCheckpoint
from carsync.store.supabase_writer import SupabaseCarWriter


def test_write_and_read_rows(tmp_path):
    """Spooled rows are appended as JSON lines."""
    spool = SpoolManager(tmp_path)
    asyncio.run(spool.write_rows("sync-1", [{"id": "a"}, {"id": "b"}]))
    asyncio.run(spool.write_rows("sync-1", [{"id": "c"}]))

    path = spool.get_spool_file("sync-1")
    assert path.name == "failed_sync-1.jsonl"
    assert asyncio.run(spool.read_rows(path)) == [{"id": "a"}, {"id": "b"}, {"id": "c"}]


def test_corrupt_lines_are_skipped(tmp_path):
    """A broken line doesn't lose the rest of the file."""
    spool = SpoolManager(tmp_path)
    path = spool.get_spool_file("sync-1")
    path.write_bytes(b'{"id": "a"}\n{not json\n\n{"id": "b"}\n')

    assert asyncio.run(spool.read_rows(path)) == [{"id": "a"}, {"id": "b"}]


def test_replay_spool_upserts_and_deletes_files(tmp_path, supabase_client):
    """Replayed files are removed once every row landed."""
    spool = SpoolManager(tmp_path)
    asyncio.run(spool.write_rows("sync-1", [{"id": "a"}, {"id": "b"}]))
    writer = SupabaseCarWriter(supabase_client, pause_seconds=0, retry_attempts=1, retry_wait=wait_none())

    result = asyncio.run(replay_spool(writer, spool))

    assert result.success == 2
    assert set(supabase_client.tables["cars_staging"]) == {"a", "b"}
    assert list(spool.list_spool_files()) == []


def test_replay_spool_keeps_file_on_failure(tmp_path, supabase_client):
    """A file with failed rows stays for the next attempt."""
    spool = SpoolManager(tmp_path)
    asyncio.run(spool.write_rows("sync-1", [{"id": "a"}]))
    writer = SupabaseCarWriter(supabase_client, pause_seconds=0, retry_attempts=1, retry_wait=wait_none())
    supabase_client.fail_next_upserts = 1

    result = asyncio.run(replay_spool(writer, spool))

    assert result.failed == 1
    assert len(list(spool.list_spool_files())) == 1


def test_set_checkpoint_resumes_at_page(tmp_path):
    """Setting page N stores last_page N-1 and keeps the run id."""
    store = CheckpointManager(tmp_path / "state.db")
    asyncio.run(store.initialize())
    asyncio.run(store.save(SyncCheckpoint(run_id="sync-old", last_page=3, total_processed=90)))

    asyncio.run(set_checkpoint(store, 50))
    checkpoint = asyncio.run(store.load())

    assert checkpoint.last_page == 49
    assert checkpoint.run_id == "sync-old"
    assert checkpoint.total_processed == 90
