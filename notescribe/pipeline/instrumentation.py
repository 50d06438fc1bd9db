"""Run-scoped event and timing log for transcriptions.

A run owns one directory under ``base_dir``:

  logs.jsonl   one JSON object per event (stage, event, timestamp, payload fields)
  timing.json  seconds per stage, written by ``finalize``

Disk errors are reported through ``logging`` at DEBUG and otherwise ignored.
"""
from __future__ import annotations

import json
import logging
import os
import time
import importlib.util
from contextlib import contextmanager
from dataclasses import asdict, is_dataclass
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

TRACKED_DEPENDENCIES = ["librosa", "music21", "pandas", "soundfile", "scipy"]


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class PipelineLogger:
    """JSONL event stream plus per-stage timings for one transcription run."""

    def __init__(self, base_dir: str = "results", run_name: Optional[str] = None):
        self.base_dir = base_dir
        self.run_name = run_name or f"run_{int(time.time())}"
        self.run_dir = os.path.join(base_dir, self.run_name)
        os.makedirs(self.run_dir, exist_ok=True)
        self.logs_path = os.path.join(self.run_dir, "logs.jsonl")
        self.timing_path = os.path.join(self.run_dir, "timing.json")
        self._timing: Dict[str, float] = {}
        self._opened_at = time.perf_counter()

        deps = self.dependency_snapshot(TRACKED_DEPENDENCIES)
        self.log_event("pipeline", "start", {"run_dir": self.run_dir, "dependencies": deps})

    @staticmethod
    def dependency_snapshot(modules: Optional[List[str]] = None) -> Dict[str, bool]:
        """Which of ``modules`` are importable, without importing them."""
        snapshot: Dict[str, bool] = {}
        for name in modules or []:
            try:
                found = importlib.util.find_spec(name) is not None
            except (ImportError, ValueError):
                found = False
            snapshot[name] = found
        return snapshot

    def _write(self, path: str, text: str, mode: str) -> None:
        try:
            with open(path, mode, encoding="utf-8") as f:
                f.write(text)
        except OSError as exc:
            logger.debug("PipelineLogger could not write %s: %s", path, exc)

    def log_event(self, stage: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        record: Dict[str, Any] = {"stage": stage, "event": event, "timestamp": time.time()}
        record.update({k: _jsonable(v) for k, v in (payload or {}).items()})
        self._write(self.logs_path, json.dumps(record) + "\n", "a")

    def record_timing(self, stage: str, duration_s: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        seconds = float(duration_s)
        self._timing[stage] = seconds
        self.log_event(stage, "timing", dict(metadata or {}, duration_s=seconds))

    @contextmanager
    def timer(self, stage: str, **metadata: Any) -> Iterator[None]:
        """Record the wall-clock time of the ``with`` body under ``stage``."""
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(stage, time.perf_counter() - t0, metadata or None)

    def finalize(self) -> None:
        """Write timing.json; a run without an explicit "total" gets the logger's lifetime."""
        self._timing.setdefault("total", time.perf_counter() - self._opened_at)
        self._write(self.timing_path, json.dumps(self._timing, indent=2), "w")

    @property
    def timing(self) -> Dict[str, float]:
        return dict(self._timing)

    def emit_config(self, stage: str, config_obj: Any, extras: Optional[Dict[str, Any]] = None) -> None:
        config = asdict(config_obj) if is_dataclass(config_obj) and not isinstance(config_obj, type) else str(config_obj)
        self.log_event(stage, "config", dict(extras or {}, config=config))
