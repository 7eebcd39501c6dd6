"""Metrics exporter for observability."""
import time
from pathlib import Path
from typing import Any, Dict
import aiofiles
import orjson

from carsync.config import METRICS_FILE


class MetricsExporter:
    """Appends metrics snapshots to a JSONL file."""

    def __init__(self, run_id: str, metrics_file: Path = METRICS_FILE):
        self.run_id = run_id
        self.metrics_file = metrics_file

    async def export_metrics(self, phase: str, current_page: int, summary: Dict[str, Any]) -> None:
        """Export a metrics snapshot."""
        snapshot = {
            "ts": time.time(),
            "run_id": self.run_id,
            "phase": phase,
            "current_page": current_page,
            **summary,
        }

        line = orjson.dumps(snapshot) + b"\n"
        async with aiofiles.open(self.metrics_file, "ab") as f:
            await f.write(line)
