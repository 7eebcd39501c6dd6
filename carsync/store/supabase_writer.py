"""Supabase writer: micro-batch upserts and the finalize RPCs."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from supabase import create_client, Client
from tenacity import Retrying, stop_after_attempt, wait_exponential

from carsync.config import Config, config
from carsync.jobs.metrics import SyncMetrics
from carsync.store.spool import SpoolManager
from carsync.transform.models import CachedCarRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class UpsertResult:
    success: int = 0
    failed: int = 0


class SupabaseCarWriter:
    """Writes car rows to Supabase in small batches.

    Rows go to the staging table and are promoted by the
    ``bulk_merge_from_staging`` RPC. With ``direct=True`` they go straight into
    the cache table instead.
    """

    def __init__(
        self,
        client: Client,
        staging_table: str = "cars_staging",
        cache_table: str = "cars_cache",
        direct: bool = False,
        micro_batch_size: int = 20,
        pause_seconds: float = 0.005,
        retry_attempts: int = 3,
        retry_wait: Optional[Callable] = None,
        spool: Optional[SpoolManager] = None,
    ):
        if micro_batch_size < 1:
            raise ValueError("micro_batch_size must be >= 1")
        self.client = client
        self.staging_table = staging_table
        self.cache_table = cache_table
        self.direct = direct
        self.table = cache_table if direct else staging_table
        self.micro_batch_size = micro_batch_size
        self.pause_seconds = pause_seconds
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=2, max=10)
        self.spool = spool

    @classmethod
    def from_config(
        cls,
        cfg: Config = config,
        direct: bool = False,
        spool: Optional[SpoolManager] = None,
    ) -> "SupabaseCarWriter":
        if not cfg.SUPABASE_URL or not cfg.SUPABASE_SERVICE_ROLE_KEY:
            raise ValueError("Supabase configuration missing")
        client: Client = create_client(cfg.SUPABASE_URL, cfg.SUPABASE_SERVICE_ROLE_KEY)
        return cls(
            client,
            staging_table=cfg.SUPABASE_STAGING_TABLE,
            cache_table=cfg.SUPABASE_CACHE_TABLE,
            direct=direct,
            micro_batch_size=cfg.BATCH_SIZE,
            spool=spool,
        )

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a sync Supabase call in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=self.retry_wait,
            reraise=True,
        )

    async def upsert(
        self,
        records: list[CachedCarRecord],
        metrics: Optional[SyncMetrics] = None,
        run_id: Optional[str] = None,
    ) -> UpsertResult:
        """Upsert records keyed on ``id``, one micro-batch at a time.

        A failing micro-batch is counted and spooled; the remaining batches are
        still written.
        """
        result = UpsertResult()
        rows = [record.to_row() for record in records]

        for start in range(0, len(rows), self.micro_batch_size):
            batch = rows[start : start + self.micro_batch_size]
            try:
                await self._run(self.upsert_rows_sync, batch)
                result.success += len(batch)
                if metrics:
                    metrics.db_writes += 1
            except Exception as e:
                result.failed += len(batch)
                if metrics:
                    metrics.db_errors += 1
                logger.error(f"Micro-batch upsert into {self.table} failed ({len(batch)} rows): {e}")
                if self.spool and run_id:
                    try:
                        await self.spool.write_rows(run_id, batch)
                    except OSError as spool_error:
                        logger.warning(f"Failed to spool rows: {spool_error}")

            if start + self.micro_batch_size < len(rows):
                await asyncio.sleep(self.pause_seconds)

        if metrics:
            metrics.rows_upserted += result.success
            metrics.rows_failed += result.failed
        return result

    def upsert_rows_sync(self, rows: list[dict[str, Any]]) -> None:
        """Synchronous upsert with retries (called from thread pool)."""
        self._retrying()(
            lambda: self.client.table(self.table).upsert(rows, on_conflict="id").execute()
        )

    async def replay_rows(self, rows: list[dict[str, Any]]) -> UpsertResult:
        """Re-upsert already transformed rows, e.g. from the spool."""
        result = UpsertResult()
        for start in range(0, len(rows), self.micro_batch_size):
            batch = rows[start : start + self.micro_batch_size]
            try:
                await self._run(self.upsert_rows_sync, batch)
                result.success += len(batch)
            except Exception as e:
                result.failed += len(batch)
                logger.error(f"Replay of {len(batch)} rows failed: {e}")
        return result

    async def clear_staging(self) -> bool:
        """Delete every staging row. Failures are logged, not raised."""
        try:
            await self._run(
                lambda: self.client.table(self.staging_table).delete().neq("id", "").execute()
            )
            logger.info(f"Cleared {self.staging_table}")
            return True
        except Exception as e:
            logger.warning(f"Error clearing {self.staging_table}: {e}")
            return False

    async def merge_from_staging(self) -> Any:
        """Promote staging rows into the cache table in one transaction."""
        response = await self._run(lambda: self.client.rpc("bulk_merge_from_staging").execute())
        return response.data

    async def mark_missing_inactive(self) -> Any:
        """Deactivate cache rows that this sync didn't see."""
        response = await self._run(lambda: self.client.rpc("mark_missing_inactive").execute())
        return response.data

    async def count_rows(self, table: Optional[str] = None) -> Optional[int]:
        """Exact row count of a table, None if the query fails."""
        table = table or self.cache_table
        try:
            response = await self._run(
                lambda: self.client.table(table).select("id", count="exact").limit(1).execute()
            )
            return response.count
        except Exception as e:
            logger.warning(f"Failed to count rows in {table}: {e}")
            return None

    async def test_connection(self) -> bool:
        """Test Supabase connection."""
        try:
            await self._run(
                lambda: self.client.table(self.table).select("id", count="exact").limit(1).execute()
            )
            logger.info("Supabase connection successful")
            return True
        except Exception as e:
            logger.error(f"Supabase connection test failed: {e}")
            return False
