"""
Pipeline data model.

Records flow Stage A -> Stage D as fresh lists. Frame and note records are
frozen; later passes derive new records with ``dataclasses.replace`` instead of
mutating what an earlier stage produced.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np


NOTE_NAMES_SHARP = ("C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B")


class Scale(str, Enum):
    MAJOR = "major"
    MINOR = "minor"


class NoteDuration(str, Enum):
    WHOLE = "1"
    HALF = "1/2"
    QUARTER = "1/4"
    EIGHTH = "1/8"
    SIXTEENTH = "1/16"


class AnalyzerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class Segment:
    """Mono sample buffer plus its placement in the original recording."""

    samples: Optional[np.ndarray]
    sample_rate: int
    start_time: float = 0.0
    end_time: Optional[float] = None

    @property
    def duration(self) -> float:
        if self.samples is None or self.sample_rate <= 0:
            return 0.0
        return float(len(self.samples)) / float(self.sample_rate)

    @property
    def resolved_end_time(self) -> float:
        if self.end_time is not None:
            return float(self.end_time)
        return float(self.start_time) + self.duration


@dataclass(frozen=True)
class PitchEstimate:
    frequency: float  # Hz, -1.0 when unvoiced
    probability: float

    @property
    def voiced(self) -> bool:
        return self.frequency > 0.0


@dataclass(frozen=True)
class FramePitch:
    time: float
    frequency: float = 0.0  # Hz, 0 = unvoiced
    confidence: float = 0.0
    volume: float = 0.0  # frame RMS

    @property
    def voiced(self) -> bool:
        return self.frequency > 0.0

    @property
    def midi(self) -> Optional[float]:
        if self.frequency <= 0.0:
            return None
        return 69.0 + 12.0 * math.log2(self.frequency / 440.0)


@dataclass(frozen=True)
class AnalysisMetric:
    """One column of the confidence heatmap."""

    time: float
    energy: float
    pitch_confidence: float


@dataclass(frozen=True)
class KeyEstimate:
    root: int = 0
    scale: Scale = Scale.MAJOR
    confidence: float = 0.0

    @property
    def label(self) -> str:
        return f"{NOTE_NAMES_SHARP[self.root % 12]} {self.scale.value}"


@dataclass(frozen=True)
class RawNote:
    """Note as produced by segmentation and refined by quantization / cleanup.

    ``detected_pitch`` keeps the fractional pitch the segmenter measured, so the
    cent offset survives harmonic quantization.
    """

    start_time: float
    duration: float
    midi_pitch: float
    velocity: float = 0.0
    confidence: float = 0.0
    detected_pitch: Optional[float] = None

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


@dataclass(frozen=True)
class Vibrato:
    depth_cents: float
    rate_hz: float


@dataclass(frozen=True)
class NoteEvent:
    """Final, annotated note handed to callers."""

    id: str
    start_time: float
    duration: float
    midi_pitch: float
    midi_note: int
    note_name: str
    cent_offset: float
    quantized_value: NoteDuration
    velocity: float
    midi_velocity: int
    confidence: float
    voice_id: int = 0
    vibrato: Optional[Vibrato] = None
    instrument: str = ""

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration,
            "midi_pitch": self.midi_pitch,
            "midi_note": self.midi_note,
            "note_name": self.note_name,
            "cent_offset": self.cent_offset,
            "quantized_value": self.quantized_value.value,
            "velocity": self.velocity,
            "midi_velocity": self.midi_velocity,
            "confidence": self.confidence,
            "voice_id": self.voice_id,
            "vibrato": (
                {"depth_cents": self.vibrato.depth_cents, "rate_hz": self.vibrato.rate_hz}
                if self.vibrato is not None
                else None
            ),
            "instrument": self.instrument,
        }


@dataclass
class StageAOutput:
    segment: Segment
    threshold: float


@dataclass
class StageBOutput:
    segment: Segment
    frames: List[FramePitch]
    smoothed_frames: List[FramePitch]
    metrics: List[AnalysisMetric] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def frame_duration(self) -> float:
        return float(self.diagnostics.get("hop_seconds", 0.0))


@dataclass
class AnalysisData:
    start_time: float = 0.0
    end_time: float = 0.0
    sample_rate: int = 0
    key: KeyEstimate = field(default_factory=KeyEstimate)
    frames: List[FramePitch] = field(default_factory=list)
    smoothed_frames: List[FramePitch] = field(default_factory=list)
    metrics: List[AnalysisMetric] = field(default_factory=list)
    raw_notes: List[RawNote] = field(default_factory=list)
    notes: List[NoteEvent] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> float:
        return max(0.0, self.end_time - self.start_time)


@dataclass
class TranscriptionResult:
    notes: List[NoteEvent]
    analysis_data: AnalysisData
    musicxml: str = ""
    midi_bytes: bytes = b""
