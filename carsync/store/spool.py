"""Disk spool for rows whose micro-batch upsert failed."""
import logging
from pathlib import Path
from typing import Any, Iterator
import aiofiles
import orjson

from carsync.config import SPOOL_DIR

logger = logging.getLogger(__name__)


class SpoolManager:
    """Manages JSONL spool files for later replay."""

    def __init__(self, spool_dir: Path = SPOOL_DIR):
        self.spool_dir = spool_dir
        self.spool_dir.mkdir(parents=True, exist_ok=True)

    def get_spool_file(self, run_id: str) -> Path:
        """Get spool file path for a run."""
        return self.spool_dir / f"failed_{run_id}.jsonl"

    async def write_rows(self, run_id: str, rows: list[dict[str, Any]]) -> None:
        """Append rows to the run's spool file."""
        if not rows:
            return
        spool_file = self.get_spool_file(run_id)
        payload = b"".join(orjson.dumps(row) + b"\n" for row in rows)
        async with aiofiles.open(spool_file, "ab") as f:
            await f.write(payload)
        logger.info(f"Spooled {len(rows)} rows to {spool_file.name}")

    async def read_rows(self, spool_file: Path) -> list[dict[str, Any]]:
        """Read all rows from a spool file."""
        if not spool_file.exists():
            return []

        rows = []
        async with aiofiles.open(spool_file, "rb") as f:
            async for line in f:
                if not line.strip():
                    continue
                try:
                    rows.append(orjson.loads(line))
                except orjson.JSONDecodeError as e:
                    logger.warning(f"Error reading spool line in {spool_file.name}: {e}")
                    continue

        return rows

    def delete(self, spool_file: Path) -> None:
        """Delete a spool file after successful replay."""
        if spool_file.exists():
            spool_file.unlink()

    def list_spool_files(self) -> Iterator[Path]:
        """List all spool files."""
        return self.spool_dir.glob("failed_*.jsonl")
