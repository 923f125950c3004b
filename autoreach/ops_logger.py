from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from .schemas import AutomationResult, PoolStats

logger = logging.getLogger(__name__)


def run_record(result: AutomationResult, *, user_id: str, pool: Optional[PoolStats] = None) -> Dict[str, Any]:
    """Flatten one automation result into an ops record."""
    record: Dict[str, Any] = {
        "arp_ops": 1,
        "url": result.request_url,
        "user_id": user_id,
        "status": result.status.value,
        "contact_page_url": result.contact_page_url,
        "candidates": len(result.candidates),
        "methods": sorted({c.method.value for c in result.candidates}),
        "defenses": [d.tag.value for d in result.defenses],
        "protection": [p.value for p in result.protection.types],
        "strategy_errors": sorted(result.strategy_errors),
        "submitted": bool(result.submission and result.submission.success),
        "started_at": result.started_at.isoformat(),
        "durations": {"total_ms": result.duration_ms},
    }
    if result.error:
        record["error"] = result.error
    if pool is not None:
        record["pool"] = {
            "instances": pool.total_instances,
            "tabs": pool.total_tabs,
        }
    return record


class OpsLogger:
    """Append-only JSONL logger for per-request automation records.

    - One JSON object per line (UTF-8, newline-delimited)
    - Thread-safe (coarse lock)
    - Best-effort: write failures are logged, never raised
    """

    def __init__(self, file_path: Path, also_stdout: bool = False) -> None:
        self.file_path = Path(file_path)
        self.also_stdout = bool(also_stdout)
        self._lock = threading.Lock()
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("ops log directory unavailable: %s", e)

    def emit(self, record: Dict[str, Any]) -> None:
        try:
            line = json.dumps(record, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            line = json.dumps({"arp_ops": 1, "_serialization_error": True, "record_str": str(record)})
        try:
            with self._lock:
                with self.file_path.open("a", encoding="utf-8") as f:
                    f.write(line)
                    f.write("\n")
        except OSError as e:
            logger.warning("ops log write failed: %s", e)
        if self.also_stdout:
            print(line)
