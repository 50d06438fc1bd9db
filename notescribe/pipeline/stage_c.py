# notescribe/pipeline/stage_c.py
"""
Stage C — Theory / Note segmentation

This module converts the smoothed frame track into RawNote objects and resolves
them against the segment's estimated key.

  - estimate_key: weighted chroma correlated with Krumhansl-Schmuckler profiles
  - segment_notes: pitch-continuity state machine over frames
  - harmonic_quantize: round to semitones, nudging near-boundary pitches into the key
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np
import logging

from .models import FramePitch, KeyEstimate, RawNote, Scale, StageBOutput
from .config import PipelineConfig
from .detectors import round_half_up

logger = logging.getLogger(__name__)

# Krumhansl-Schmuckler key profiles, tonic first
MAJOR_PROFILE = np.array([6.35, 2.23, 3.48, 2.33, 4.38, 4.09, 2.52, 5.19, 2.39, 3.66, 2.29, 2.88])
MINOR_PROFILE = np.array([6.33, 2.68, 3.52, 5.38, 2.60, 3.53, 2.54, 4.75, 3.98, 2.69, 3.34, 3.17])

SCALE_INTERVALS = {
    Scale.MAJOR: frozenset({0, 2, 4, 5, 7, 9, 11}),
    Scale.MINOR: frozenset({0, 2, 3, 5, 7, 8, 10}),
}

NO_KEY = KeyEstimate(root=0, scale=Scale.MAJOR, confidence=0.0)


def build_chroma(frames: Sequence[FramePitch], min_confidence: float = 0.3) -> Tuple[np.ndarray, float]:
    """Confidence-weighted pitch-class histogram and its total weight (unnormalized)."""
    chroma = np.zeros(12, dtype=np.float64)
    total = 0.0
    for fp in frames:
        if fp.voiced and fp.confidence > min_confidence:
            pc = int(round_half_up(fp.midi)) % 12
            chroma[pc] += fp.confidence
            total += fp.confidence
    return chroma, total


def _profile_correlation(chroma: np.ndarray, profile: np.ndarray, root: int) -> float:
    with np.errstate(invalid="ignore", divide="ignore"):
        r = np.corrcoef(chroma, np.roll(profile, root))[0, 1]
    return float(np.nan_to_num(r, nan=-1.0))


def estimate_key(frames: Sequence[FramePitch], min_confidence: float = 0.3) -> KeyEstimate:
    """Best-correlating tonic and mode for the segment's chroma.

    All major roots are scored before minor roots; a later candidate only wins with
    a strictly greater correlation. No voiced weight, or a flat chroma, gives
    C major with confidence 0.
    """
    chroma, total = build_chroma(frames, min_confidence)
    if total <= 0.0:
        return NO_KEY

    chroma = chroma / total
    if np.all(chroma == chroma[0]):
        return NO_KEY

    best_score = -np.inf
    best_root = 0
    best_scale = Scale.MAJOR
    for scale, profile in ((Scale.MAJOR, MAJOR_PROFILE), (Scale.MINOR, MINOR_PROFILE)):
        for root in range(12):
            score = _profile_correlation(chroma, profile, root)
            if score > best_score:
                best_score = score
                best_root = root
                best_scale = scale

    return KeyEstimate(root=best_root, scale=best_scale, confidence=float(np.clip(best_score, 0.0, 1.0)))


class _NoteAccumulator:
    __slots__ = ("start_time", "duration", "pitch", "confidence", "velocity")

    def __init__(self, fp: FramePitch, pitch: float, frame_duration: float, velocity_gain: float):
        self.start_time = fp.time
        self.duration = frame_duration
        self.pitch = pitch
        self.confidence = fp.confidence
        self.velocity = min(1.0, fp.volume * velocity_gain)

    def extend(self, fp: FramePitch, pitch: float, frame_duration: float) -> None:
        total = self.duration + frame_duration
        self.pitch = (self.pitch * self.duration + pitch * frame_duration) / total
        self.duration = total
        self.confidence = max(self.confidence, fp.confidence)

    def to_note(self) -> RawNote:
        return RawNote(
            start_time=self.start_time,
            duration=self.duration,
            midi_pitch=self.pitch,
            velocity=self.velocity,
            confidence=self.confidence,
            detected_pitch=self.pitch,
        )


def segment_notes(
    frames: Sequence[FramePitch],
    frame_duration: float,
    split_semitones: float = 0.8,
    min_duration: float = 0.08,
    velocity_gain: float = 5.0,
) -> List[RawNote]:
    """Group consecutive voiced frames into notes by pitch continuity.

    A note closes on an unvoiced frame, on a pitch jump of ``split_semitones`` or
    more, or at the end of input, and is emitted only if it lasted ``min_duration``.
    """
    notes: List[RawNote] = []
    current: Optional[_NoteAccumulator] = None

    def _flush() -> None:
        if current is not None and current.duration >= min_duration:
            notes.append(current.to_note())

    for fp in frames:
        pitch = fp.midi
        if pitch is None:
            _flush()
            current = None
            continue

        if current is None:
            current = _NoteAccumulator(fp, pitch, frame_duration, velocity_gain)
        elif abs(current.pitch - pitch) < split_semitones:
            current.extend(fp, pitch, frame_duration)
        else:
            _flush()
            current = _NoteAccumulator(fp, pitch, frame_duration, velocity_gain)

    _flush()
    return notes


def _quantize_pitch(pitch: float, key: KeyEstimate, tolerance: float) -> float:
    rounded = round_half_up(pitch)
    intervals = SCALE_INTERVALS[key.scale]
    if int(rounded - key.root) % 12 in intervals:
        return rounded

    best = rounded
    best_dist = float("inf")
    for offset in (-1, 0, 1):
        candidate = rounded + offset
        if int(candidate - key.root) % 12 in intervals:
            dist = abs(pitch - candidate)
            if dist < best_dist:
                best_dist = dist
                best = candidate
    return best if best_dist < tolerance else rounded


def harmonic_quantize(
    notes: Sequence[RawNote],
    key: Optional[KeyEstimate],
    use_key: bool = True,
    tolerance: float = 0.4,
) -> List[RawNote]:
    """Round every pitch to a semitone, preferring an in-key neighbour within ``tolerance``.

    Strongly chromatic notes keep their plain rounded pitch. Without a key (or with
    ``use_key=False``) notes are only rounded.
    """
    out: List[RawNote] = []
    for note in notes:
        if use_key and key is not None:
            pitch = _quantize_pitch(note.midi_pitch, key, tolerance)
        else:
            pitch = round_half_up(note.midi_pitch)
        detected = note.detected_pitch if note.detected_pitch is not None else note.midi_pitch
        out.append(replace(note, midi_pitch=pitch, detected_pitch=detected))
    return out


def apply_theory(stage_b_out: StageBOutput, config: Any = None) -> Tuple[KeyEstimate, List[RawNote]]:
    """
    Stage C entry point: key from the raw frames, notes from the smoothed frames,
    then harmonic quantization.
    """
    if config is None:
        config = PipelineConfig()
    c_conf = config.stage_c

    key = estimate_key(stage_b_out.frames, c_conf.chroma_min_confidence)
    raw = segment_notes(
        stage_b_out.smoothed_frames,
        stage_b_out.frame_duration,
        split_semitones=c_conf.split_semitones,
        min_duration=c_conf.min_note_duration,
        velocity_gain=c_conf.velocity_gain,
    )
    notes = harmonic_quantize(raw, key, use_key=c_conf.use_key, tolerance=c_conf.snap_tolerance)

    logger.debug("Stage C: key=%s (%.3f), %d notes", key.label, key.confidence, len(notes))
    return key, notes
