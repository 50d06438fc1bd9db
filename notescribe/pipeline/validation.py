"""Pipeline invariant checks for stage outputs."""
from __future__ import annotations

from dataclasses import asdict
from typing import Any, Iterable, Optional
import json
import math
import os
import time
import logging

import numpy as np

from .config import PipelineConfig
from .models import AnalysisData, FramePitch, NoteEvent, RawNote, StageAOutput, StageBOutput, TranscriptionResult

logger = logging.getLogger(__name__)


_DEF_TOL = 1e-6


def _validate_timebase_from_frames(frames: Iterable[FramePitch], hop_seconds: float) -> None:
    times = [fp.time for fp in frames]
    if len(times) < 2:
        return
    diffs = np.diff(times)
    if np.any(diffs <= 0):
        raise AssertionError("Frame times must be strictly increasing")
    median_dt = float(np.median(diffs))
    if not math.isclose(median_dt, hop_seconds, rel_tol=1e-2, abs_tol=1e-4):
        raise AssertionError(
            f"Frame spacing {median_dt:.6f}s deviates from hop_seconds {hop_seconds:.6f}s"
        )


def _on_grid(value: float, grid: float) -> bool:
    steps = value / grid
    return abs(steps - round(steps)) < 1e-6


def validate_notes(notes: Iterable[Any], min_duration: float = 0.0, grid: Optional[float] = None) -> None:
    """Shared note checks: positive finite duration, finite pitch, confidence in [0, 1]."""
    for n in notes:
        if not (n.duration > 0.0 and math.isfinite(n.duration)):
            raise AssertionError(f"Note duration must be positive and finite, got {n.duration}")
        if not math.isfinite(n.midi_pitch):
            raise AssertionError("Note midi_pitch must be finite")
        if not 0.0 <= n.confidence <= 1.0:
            raise AssertionError(f"Note confidence {n.confidence} outside [0, 1]")
        if not 0.0 <= n.velocity <= 1.0:
            raise AssertionError(f"Note velocity {n.velocity} outside [0, 1]")
        if n.duration < min_duration - _DEF_TOL:
            raise AssertionError(f"Note duration {n.duration:.4f}s below minimum {min_duration:.4f}s")
        if grid is not None and not (_on_grid(n.start_time, grid) and _on_grid(n.duration, grid)):
            raise AssertionError(f"Note timing ({n.start_time}, {n.duration}) not on the {grid}s grid")


def validate_invariants(stage_output: Any, config: Optional[PipelineConfig] = None, analysis_data: Optional[AnalysisData] = None) -> None:
    """Validate invariants per stage.

    Raises AssertionError on invariant violations.
    """
    config = config or PipelineConfig()

    # Stage A
    if isinstance(stage_output, StageAOutput):
        if stage_output.threshold < config.stage_a.threshold_floor:
            raise AssertionError("Stage A threshold below the configured floor")
        if config.stage_a.hop_size <= 0 or config.stage_a.window_size <= 0:
            raise AssertionError("Stage A hop/window must be positive")
        return

    # Stage B
    if isinstance(stage_output, StageBOutput):
        if len(stage_output.frames) != len(stage_output.smoothed_frames):
            raise AssertionError("Smoothing must preserve the frame count")
        for raw, smooth in zip(stage_output.frames, stage_output.smoothed_frames):
            if raw.time != smooth.time or raw.confidence != smooth.confidence or raw.volume != smooth.volume:
                raise AssertionError("Smoothing may only change frequencies")
            if not 0.0 <= raw.confidence <= 1.0:
                raise AssertionError("Frame confidence outside [0, 1]")
        _validate_timebase_from_frames(stage_output.frames, stage_output.frame_duration)
        return

    # Raw notes straight from segmentation, or after cleanup when grid-aligned
    if isinstance(stage_output, list) and stage_output and isinstance(stage_output[0], RawNote):
        grid = config.stage_d.grid_seconds
        if all(_on_grid(n.start_time, grid) and _on_grid(n.duration, grid) for n in stage_output):
            validate_notes(stage_output, min_duration=config.stage_d.min_note_duration, grid=grid)
        else:
            validate_notes(stage_output, min_duration=config.stage_c.min_note_duration)
        for prev, curr in zip(stage_output, stage_output[1:]):
            if curr.start_time < prev.start_time - _DEF_TOL:
                raise AssertionError("Notes must be in temporal order")
        return

    # Annotated notes
    if isinstance(stage_output, list) and stage_output and isinstance(stage_output[0], NoteEvent):
        validate_notes(stage_output, min_duration=config.stage_d.min_note_duration, grid=config.stage_d.grid_seconds)
        ids = [n.id for n in stage_output]
        if len(set(ids)) != len(ids):
            raise AssertionError("Note ids must be unique")
        for n in stage_output:
            if not 1 <= n.midi_velocity <= 127:
                raise AssertionError("MIDI velocity outside [1, 127]")
            if analysis_data is not None and (
                n.start_time < analysis_data.start_time - config.stage_d.grid_seconds
                or n.start_time > analysis_data.end_time + config.stage_d.grid_seconds
            ):
                raise AssertionError("Note timing falls outside the analysed span")
        return

    # Final result
    if isinstance(stage_output, TranscriptionResult):
        analysis = stage_output.analysis_data
        if analysis is not None and analysis.frames and analysis.sample_rate > 0 and not analysis.diagnostics.get("chunks"):
            hop_seconds = float(config.stage_a.hop_size) / float(analysis.sample_rate)
            _validate_timebase_from_frames(analysis.frames, hop_seconds)
        if stage_output.notes:
            validate_invariants(stage_output.notes, config, analysis)
        return


def dump_resolved_config(config: Any, analysis_data: Optional[AnalysisData] = None, run_dir: str = "results") -> str:
    os.makedirs(run_dir, exist_ok=True)
    run_path = os.path.join(run_dir, f"run_{int(time.time() * 1000)}")
    os.makedirs(run_path, exist_ok=True)

    payload = {
        "config": asdict(config) if hasattr(config, "__dataclass_fields__") else str(config),
        "diagnostics": dict(analysis_data.diagnostics) if analysis_data is not None else {},
        "key": analysis_data.key.label if analysis_data is not None else None,
    }

    path = os.path.join(run_path, "resolved_config.json")
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, default=str)

    logger.info("Resolved config saved", extra={"resolved_config_path": path})
    return path
