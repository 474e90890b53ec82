"""Run diagnostics: structured JSONL records of attempts and turns."""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from openturn.types import Turn


@dataclass
class ExecutionMetrics:
    """Timing and token figures for one completed turn."""

    start_time: float
    end_time: float
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    model: str = ""
    provider: str = ""
    finish_reason: str = ""
    attempts: int = 1

    @property
    def duration_ms(self) -> float:
        return max(0.0, (self.end_time - self.start_time) * 1000)

    @property
    def tokens_per_second(self) -> float:
        seconds = self.duration_ms / 1000
        if seconds <= 0:
            return 0.0
        return self.output_tokens / seconds

    @classmethod
    def from_turn(
        cls,
        turn: Turn,
        start_time: float,
        end_time: float,
        provider: str = "",
        attempts: int = 1,
    ) -> ExecutionMetrics:
        return cls(
            start_time=start_time,
            end_time=end_time,
            input_tokens=turn.usage.input_tokens,
            output_tokens=turn.usage.output_tokens,
            cache_creation_tokens=turn.usage.cache_creation_tokens,
            cache_read_tokens=turn.usage.cache_read_tokens,
            model=turn.model,
            provider=provider,
            finish_reason=turn.finish_reason.value,
            attempts=attempts,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["duration_ms"] = round(self.duration_ms, 1)
        data["tokens_per_second"] = round(self.tokens_per_second, 2)
        return data


class TurnRecorder:
    """Append one JSON line per failed attempt and per finished run.

    File: ~/.openturn/runs/run_YYYYMMDD_HHMMSS.jsonl
    Each line: {"_seq": 0, "_elapsed_ms": 123.4, "_ts": "...", ...}
    """

    def __init__(self, path: Path | None = None):
        if path is None:
            runs_dir = Path.home() / ".openturn" / "runs"
            runs_dir.mkdir(parents=True, exist_ok=True)
            ts = time.strftime("%Y%m%d_%H%M%S")
            path = runs_dir / f"run_{ts}.jsonl"
        else:
            path.parent.mkdir(parents=True, exist_ok=True)

        self.path = path
        self._file = open(path, "a", encoding="utf-8")
        self._seq = 0
        self._start = time.monotonic()

    def _write(self, record: dict[str, Any]) -> None:
        record["_seq"] = self._seq
        record["_elapsed_ms"] = round((time.monotonic() - self._start) * 1000, 1)
        record["_ts"] = time.strftime("%Y-%m-%dT%H:%M:%S")
        self._seq += 1
        self._file.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
        self._file.flush()

    def log_attempt_failed(
        self,
        attempt: int,
        error: BaseException,
        retry: bool,
        delay_ms: int = 0,
    ) -> None:
        self._write({
            "kind": "attempt_failed",
            "attempt": attempt,
            "error_type": type(error).__name__,
            "error": str(error)[:500],
            "status_code": getattr(error, "status_code", None),
            "retry": retry,
            "delay_ms": delay_ms,
        })

    def log_turn(self, turn: Turn, metrics: ExecutionMetrics) -> None:
        """Record the final turn of a run with its metrics."""
        self._write({
            "kind": "turn",
            "content_preview": turn.content[:200],
            "tool_calls": [
                {"id": c.id, "name": c.name, "error": c.error}
                for c in turn.tool_calls
            ],
            "metrics": metrics.to_dict(),
        })

    def log_failure(self, error: BaseException, attempts: int) -> None:
        self._write({
            "kind": "run_failed",
            "attempts": attempts,
            "error_type": type(error).__name__,
            "error": str(error)[:500],
        })

    def close(self) -> None:
        """Flush and close the log file."""
        if not self._file.closed:
            self._file.flush()
            self._file.close()
