"""Shared test fixtures: in-memory Supabase client and listing payloads."""
import threading
from typing import Any, Optional

import httpx
import pytest


class FakeResponse:
    def __init__(self, data: Any = None, count: Optional[int] = None):
        self.data = data
        self.count = count


class FakeQuery:
    """Chainable table query supporting the calls the writer makes."""

    def __init__(self, client: "FakeSupabaseClient", table: str):
        self.client = client
        self.table = table
        self.op: Optional[str] = None
        self.rows: list[dict[str, Any]] = []
        self.on_conflict: Optional[str] = None

    def upsert(self, rows, on_conflict=None):
        self.op = "upsert"
        self.rows = list(rows)
        self.on_conflict = on_conflict
        return self

    def delete(self):
        self.op = "delete"
        return self

    def select(self, *columns, count=None):
        self.op = "select"
        return self

    def neq(self, column, value):
        return self

    def limit(self, n):
        return self

    def execute(self):
        return self.client._execute(self)


class FakeRpc:
    def __init__(self, client: "FakeSupabaseClient", name: str):
        self.client = client
        self.name = name

    def execute(self):
        return self.client._rpc(self.name)


class FakeSupabaseClient:
    """Keeps tables as dicts keyed by ``id``; merge and mark-inactive act on them."""

    def __init__(self, staging_table: str = "cars_staging", cache_table: str = "cars_cache"):
        self.staging_table = staging_table
        self.cache_table = cache_table
        self.tables: dict[str, dict[str, dict[str, Any]]] = {staging_table: {}, cache_table: {}}
        self.upsert_calls: list[tuple[str, int]] = []
        self.rpc_calls: list[str] = []
        self.fail_next_upserts = 0
        self.failing_rpcs: set[str] = set()
        self._lock = threading.Lock()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str) -> FakeRpc:
        return FakeRpc(self, name)

    def _execute(self, query: FakeQuery) -> FakeResponse:
        with self._lock:
            table = self.tables.setdefault(query.table, {})
            if query.op == "upsert":
                self.upsert_calls.append((query.table, len(query.rows)))
                if self.fail_next_upserts > 0:
                    self.fail_next_upserts -= 1
                    raise RuntimeError("upsert rejected")
                for row in query.rows:
                    table[row[query.on_conflict or "id"]] = dict(row)
                return FakeResponse(data=query.rows)
            if query.op == "delete":
                deleted = list(table.values())
                table.clear()
                return FakeResponse(data=deleted)
            return FakeResponse(data=[], count=len(table))

    def _rpc(self, name: str) -> FakeResponse:
        with self._lock:
            self.rpc_calls.append(name)
            if name in self.failing_rpcs:
                raise RuntimeError(f"{name} failed")
            staging = self.tables[self.staging_table]
            cache = self.tables[self.cache_table]
            if name == "bulk_merge_from_staging":
                for row_id, row in staging.items():
                    cache[row_id] = dict(row, is_active=True)
                return FakeResponse(data={"merged": len(staging)})
            if name == "mark_missing_inactive":
                missing = [row_id for row_id in cache if row_id not in staging]
                for row_id in missing:
                    cache[row_id]["is_active"] = False
                return FakeResponse(data={"deactivated": len(missing)})
            raise RuntimeError(f"unknown rpc {name}")


def make_listing(car_id: Any, **overrides) -> dict[str, Any]:
    """A complete listing payload as the API sends it."""
    listing = {
        "id": car_id,
        "manufacturer": {"name": "Toyota"},
        "model": {"name": "Corolla"},
        "year": 2019,
        "title": "Toyota Corolla 2019",
        "vin": f"VIN{car_id}",
        "color": {"name": "White"},
        "fuel": {"name": "Petrol"},
        "transmission": {"name": "Automatic"},
        "lots": [
            {
                "lot": f"L{car_id}",
                "buy_now": 15000,
                "bid": 12000,
                "odometer": {"km": 45000},
                "images": {"normal": [f"https://img.test/{car_id}/1.jpg", f"https://img.test/{car_id}/2.jpg"]},
                "status": {"name": "sale"},
                "condition": {"name": "Run_And_Drives"},
                "domain": {"name": "copart"},
            }
        ],
    }
    listing.update(overrides)
    return listing


def paged_handler(pages: dict[int, Any], requested: list[int]):
    """MockTransport handler serving ``pages``; an int value is an HTTP status."""

    def handler(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page"])
        requested.append(page)
        body = pages.get(page, {"data": []})
        if isinstance(body, int):
            return httpx.Response(body)
        return httpx.Response(200, json=body)

    return handler


@pytest.fixture
def supabase_client() -> FakeSupabaseClient:
    return FakeSupabaseClient()
