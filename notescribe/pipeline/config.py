"""
Pipeline configuration.

Each stage owns a dataclass of tunables whose defaults reproduce the reference
transcription. Overrides arrive as nested dicts (or JSON files of the same
shape), e.g. ``{"stage_c": {"use_key": false}}``.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, Dict


@dataclass
class StageAConfig:
    target_sample_rate: int = 44100
    window_size: int = 2048
    hop_size: int = 441
    # Coarse noise-floor estimate
    rms_stride: int = 100
    threshold_floor: float = 0.005
    threshold_ratio: float = 0.2


@dataclass
class StageBConfig:
    detector: str = "yin"
    yin: Dict[str, Any] = field(
        default_factory=lambda: {
            "threshold": 0.15,
            "fallback_threshold": 0.6,
            "fmin": 27.5,  # A0
            "fmax": 4186.0,  # C8
        }
    )
    pyin: Dict[str, Any] = field(
        default_factory=lambda: {
            "fmin": 65.41,  # C2
            "fmax": 2093.0,  # C7
        }
    )
    min_frame_probability: float = 0.3
    smoothing: Dict[str, Any] = field(
        default_factory=lambda: {
            "median_window": 7,
            "isolated_max_voiced": 2,
        }
    )


@dataclass
class StageCConfig:
    use_key: bool = True
    split_semitones: float = 0.8
    chroma_min_confidence: float = 0.3
    min_note_duration: float = 0.08
    velocity_gain: float = 5.0
    snap_tolerance: float = 0.4


@dataclass
class StageDConfig:
    min_note_duration: float = 0.1
    grid_seconds: float = 0.125
    legato_gap: float = 0.15
    legato_pitch_tolerance: float = 0.1
    # Rendering: the 0.125 s grid is a 1/16 note at 120 bpm
    tempo_bpm: float = 120.0
    time_signature: str = "4/4"
    staff_split_point: Dict[str, Any] = field(default_factory=lambda: {"pitch": 60})
    vibrato: Dict[str, Any] = field(
        default_factory=lambda: {
            "enabled": True,
            "min_frames": 12,
            "min_depth_cents": 15.0,
            "min_rate_hz": 3.0,
            "max_rate_hz": 10.0,
        }
    )


@dataclass
class ChunkingConfig:
    chunk_seconds: float = 30.0
    overlap_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.chunk_seconds <= 0:
            raise ValueError(f"chunk_seconds must be positive, got {self.chunk_seconds}")
        if not 0 <= self.overlap_seconds < self.chunk_seconds:
            raise ValueError(
                f"overlap_seconds ({self.overlap_seconds}) must be in [0, chunk_seconds)"
            )


@dataclass
class PipelineConfig:
    stage_a: StageAConfig = field(default_factory=StageAConfig)
    stage_b: StageBConfig = field(default_factory=StageBConfig)
    stage_c: StageCConfig = field(default_factory=StageCConfig)
    stage_d: StageDConfig = field(default_factory=StageDConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)

    @classmethod
    def from_dict(cls, overrides: Dict[str, Any]) -> "PipelineConfig":
        """Build a config from defaults plus a nested override dict."""
        return cls().with_overrides(overrides)

    def with_overrides(self, overrides: Dict[str, Any]) -> "PipelineConfig":
        cfg = copy.deepcopy(self)
        _apply_overrides(cfg, overrides or {}, path="")
        # Re-run validation hooks after mutation
        cfg.chunking = ChunkingConfig(
            chunk_seconds=cfg.chunking.chunk_seconds,
            overlap_seconds=cfg.chunking.overlap_seconds,
        )
        return cfg


def _apply_overrides(target: Any, overrides: Dict[str, Any], path: str) -> None:
    known = {f.name for f in fields(target)}
    for key, value in overrides.items():
        dotted = f"{path}.{key}" if path else key
        if key not in known:
            raise ValueError(f"Unknown config key: {dotted}")
        current = getattr(target, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ValueError(f"Config section {dotted} expects a mapping")
            _apply_overrides(current, value, dotted)
        elif isinstance(current, dict) and isinstance(value, dict):
            merged = dict(current)
            merged.update(value)
            setattr(target, key, merged)
        else:
            setattr(target, key, value)


def load_config(path: str) -> PipelineConfig:
    with open(path, "r", encoding="utf-8") as f:
        overrides = json.load(f)
    return PipelineConfig.from_dict(overrides)

