"""Tests for the SQLite checkpoint store."""
import asyncio
import time

from carsync.store.state import CheckpointManager, SyncCheckpoint, new_run_id

HOUR = 3600


def _store(tmp_path):
    store = CheckpointManager(tmp_path / "state.db")
    asyncio.run(store.initialize())
    return store


def test_save_and_load_roundtrip(tmp_path):
    """A saved checkpoint loads back unchanged."""
    store = _store(tmp_path)
    checkpoint = SyncCheckpoint(run_id="sync-1", last_page=41, total_processed=1230)

    assert asyncio.run(store.save(checkpoint)) is True
    loaded = asyncio.run(store.load())

    assert loaded == checkpoint


def test_only_one_checkpoint_is_kept(tmp_path):
    """Saving again replaces the previous checkpoint."""
    store = _store(tmp_path)
    asyncio.run(store.save(SyncCheckpoint(run_id="sync-1", last_page=1)))
    asyncio.run(store.save(SyncCheckpoint(run_id="sync-1", last_page=2)))

    assert asyncio.run(store.load()).last_page == 2


def test_checkpoint_older_than_24h_is_ignored(tmp_path):
    """Stale checkpoints mean starting fresh."""
    store = _store(tmp_path)
    now = time.time()
    asyncio.run(store.save(SyncCheckpoint(run_id="sync-1", last_page=10, last_update_time=now - 25 * HOUR)))

    assert asyncio.run(store.load(now=now)) is None
    assert asyncio.run(store.read()).last_page == 10


def test_checkpoint_within_24h_is_used(tmp_path):
    """A 23 hour old checkpoint is still valid."""
    store = _store(tmp_path)
    now = time.time()
    asyncio.run(store.save(SyncCheckpoint(run_id="sync-1", last_page=10, last_update_time=now - 23 * HOUR)))

    assert asyncio.run(store.load(now=now)).last_page == 10


def test_clear_removes_checkpoint(tmp_path):
    """After clear there is nothing to resume from."""
    store = _store(tmp_path)
    asyncio.run(store.save(SyncCheckpoint(run_id="sync-1", last_page=3)))
    asyncio.run(store.clear())

    assert asyncio.run(store.load()) is None


def test_unreachable_store_starts_fresh(tmp_path):
    """Load returns None and save reports False when the database can't be opened."""
    store = CheckpointManager(tmp_path / "missing" / "state.db")

    assert asyncio.run(store.load()) is None
    assert asyncio.run(store.save(SyncCheckpoint(run_id="sync-1"))) is False


def test_run_id_format():
    """Run ids are prefixed and unique."""
    first, second = new_run_id(), new_run_id()
    assert first.startswith("sync-")
    assert first != second
