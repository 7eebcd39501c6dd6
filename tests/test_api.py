"""Tests for the trigger API."""
import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import make_listing, paged_handler

from carsync.api import main as api_main
from carsync.config import Config
from carsync.fetch.circuit_breaker import CircuitBreaker
from carsync.fetch.client import BackoffWait, PageFetcher
from carsync.fetch.concurrency import ConcurrencyLimiter
from carsync.fetch.rate_limit import TokenBucket
from carsync.jobs.run_control import RunControl
from carsync.jobs.runner import SyncRunner
from carsync.store.state import CheckpointManager, SyncCheckpoint


@pytest.fixture
def store(tmp_path):
    store = CheckpointManager(tmp_path / "state.db")
    asyncio.run(store.initialize())
    return store


@pytest.fixture
def client(monkeypatch, store):
    monkeypatch.setattr(Config, "API_BASE_URL", "https://api.test")
    monkeypatch.setattr(Config, "API_KEY", "secret")
    monkeypatch.setattr(Config, "API_KEY_HEADER_SECRET", None)
    monkeypatch.setattr(api_main, "sync_state", api_main.SyncState())

    factory_calls = []

    def factory(cfg, resume=True, direct=False, dry_run=False, max_pages=None):
        factory_calls.append({"resume": resume, "direct": direct, "dry_run": dry_run, "max_pages": max_pages})
        transport = httpx.MockTransport(paged_handler({1: {"data": [make_listing(1), make_listing(2)]}}, []))
        return SyncRunner(
            fetcher=PageFetcher(
                "https://api.test",
                "secret",
                TokenBucket(capacity=100, refill_rate=100),
                client=httpx.AsyncClient(transport=transport),
                max_retries=0,
                backoff=BackoffWait(base=0, rate_limit_base=0),
            ),
            writer=None,
            checkpoints=None,
            circuit_breaker=CircuitBreaker(),
            limiter=ConcurrencyLimiter(2),
            run_control=RunControl(max_pages=max_pages or 10, max_consecutive_empty=1),
            resume=resume,
            dry_run=dry_run,
        )

    api_main.app.dependency_overrides[api_main.get_runner_factory] = lambda: factory
    api_main.app.dependency_overrides[api_main.get_checkpoints] = lambda: store
    test_client = TestClient(api_main.app)
    test_client.factory_calls = factory_calls
    yield test_client
    api_main.app.dependency_overrides.clear()


def test_health(client):
    """Health needs no key and reports idle."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["sync_running"] is False


def test_start_sync_runs_in_background(client):
    """POST /sync starts a run and the status shows its report."""
    response = client.post("/sync", json={"dry_run": True, "fresh": True, "max_pages": 5})
    assert response.status_code == 202
    assert response.json()["status"] == "started"
    assert client.factory_calls == [{"resume": False, "direct": False, "dry_run": True, "max_pages": 5}]

    status = client.get("/sync/status").json()
    assert status["running"] is False
    assert status["phase"] == "DONE"
    assert status["last_report"]["rows_valid"] == 2
    assert status["last_error"] is None


def test_second_sync_is_rejected_while_running(client, monkeypatch):
    """Only one sync runs at a time."""
    monkeypatch.setattr(api_main.sync_state, "running", True)
    response = client.post("/sync", json={"dry_run": True})
    assert response.status_code == 409


def test_missing_config_is_reported(client, monkeypatch):
    """Starting without API settings fails cleanly."""
    monkeypatch.setattr(Config, "API_BASE_URL", None)
    response = client.post("/sync", json={"dry_run": True})
    assert response.status_code == 500
    assert "API_BASE_URL" in response.json()["detail"]


def test_checkpoint_endpoint(client, store):
    """GET /checkpoint shows the stored checkpoint and its resume page."""
    assert client.get("/checkpoint").json() == {"checkpoint": None}

    asyncio.run(store.save(SyncCheckpoint(run_id="sync-1", last_page=12, total_processed=360)))
    body = client.get("/checkpoint").json()

    assert body["checkpoint"]["run_id"] == "sync-1"
    assert body["resume_page"] == 13
    assert body["valid"] is True


def test_api_key_required_when_configured(client, monkeypatch):
    """With a secret configured, protected endpoints need the header."""
    monkeypatch.setattr(Config, "API_KEY_HEADER_SECRET", "s3cret")

    assert client.get("/sync/status").status_code == 403
    assert client.get("/sync/status", headers={"X-API-KEY": "wrong"}).status_code == 403
    assert client.get("/sync/status", headers={"X-API-KEY": "s3cret"}).status_code == 200
    assert client.get("/health").status_code == 200


def test_checkpoint_store_uses_configured_max_age():
    """The API's checkpoint store honours CHECKPOINT_MAX_AGE_HOURS."""
    assert api_main.get_checkpoints().max_age_seconds == Config.CHECKPOINT_MAX_AGE_HOURS * 3600
