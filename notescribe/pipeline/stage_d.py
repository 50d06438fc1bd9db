"""
Stage D: rhythm cleanup and rendering

Drops ghost notes, snaps timing to the rhythmic grid, bridges legato gaps,
annotates the surviving notes and renders MusicXML / MIDI with music21.
"""

from __future__ import annotations

from dataclasses import replace
from typing import List, Optional, Sequence, Tuple, Any
import logging
import math

import numpy as np
import pandas as pd

try:
    import music21
    from music21 import stream, note, tempo, meter, key, clef, midi
    MUSIC21_AVAILABLE = True
except Exception:  # pragma: no cover - optional dependency
    music21 = None  # type: ignore
    MUSIC21_AVAILABLE = False

from .models import (
    NOTE_NAMES_SHARP,
    AnalysisData,
    FramePitch,
    KeyEstimate,
    NoteDuration,
    NoteEvent,
    RawNote,
    TranscriptionResult,
    Vibrato,
)
from .config import PipelineConfig, StageDConfig
from .detectors import round_half_up

logger = logging.getLogger(__name__)

_DURATION_BEATS = (
    (4.0, NoteDuration.WHOLE),
    (2.0, NoteDuration.HALF),
    (1.0, NoteDuration.QUARTER),
    (0.5, NoteDuration.EIGHTH),
    (0.25, NoteDuration.SIXTEENTH),
)


# --------------------------------------------------------
# Rhythmic cleanup
# --------------------------------------------------------
def snap_to_grid(value: float, grid: float) -> float:
    return round_half_up(value / grid) * grid


def _legato_fold(notes: Sequence[RawNote], max_gap: float, pitch_tolerance: float) -> List[RawNote]:
    merged: List[RawNote] = []
    for curr in notes:
        if not merged:
            merged.append(curr)
            continue
        prev = merged[-1]
        gap = curr.start_time - prev.end_time
        # gap < max_gap also covers curr starting inside prev (negative gap)
        if gap < max_gap and abs(prev.midi_pitch - curr.midi_pitch) < pitch_tolerance:
            end = max(prev.end_time, curr.end_time)
            merged[-1] = replace(prev, duration=end - prev.start_time)
        else:
            merged.append(curr)
    return merged


def cleanup_and_quantize(
    notes: Sequence[RawNote],
    min_duration: float = 0.1,
    grid: float = 0.125,
    legato_gap: float = 0.15,
    pitch_tolerance: float = 0.1,
) -> List[RawNote]:
    """
    Drop notes of ``min_duration`` or shorter, snap start and duration to ``grid``
    (duration never below one grid unit), then merge same-pitch neighbours whose
    gap is under ``legato_gap``. Running it on its own output changes nothing.
    """
    kept = [n for n in notes if n.duration > min_duration]
    snapped = [
        replace(
            n,
            start_time=snap_to_grid(n.start_time, grid),
            duration=max(grid, snap_to_grid(n.duration, grid)),
        )
        for n in kept
    ]
    return _legato_fold(snapped, legato_gap, pitch_tolerance)


# --------------------------------------------------------
# Annotation
# --------------------------------------------------------
def note_name(midi_note: int) -> str:
    return f"{NOTE_NAMES_SHARP[midi_note % 12]}{midi_note // 12 - 1}"


def duration_value(duration: float, tempo_bpm: float = 120.0) -> NoteDuration:
    """Closest written value (in log-duration) for a duration in seconds."""
    beats = duration * tempo_bpm / 60.0
    if beats <= 0.0:
        return NoteDuration.SIXTEENTH
    return min(_DURATION_BEATS, key=lambda item: abs(math.log2(beats / item[0])))[1]


def detect_vibrato(
    frames: Sequence[FramePitch],
    start_time: float,
    end_time: float,
    min_frames: int = 12,
    min_depth_cents: float = 15.0,
    min_rate_hz: float = 3.0,
    max_rate_hz: float = 10.0,
) -> Optional[Vibrato]:
    """Periodic pitch modulation inside ``[start_time, end_time)`` from unsmoothed frames."""
    span = [fp for fp in frames if start_time <= fp.time < end_time and fp.frequency > 0.0]
    if len(span) < min_frames:
        return None

    hz = np.array([fp.frequency for fp in span], dtype=np.float64)
    times = np.array([fp.time for fp in span], dtype=np.float64)
    seconds = float(times[-1] - times[0])
    if seconds <= 0.0:
        return None

    cents = 1200.0 * np.log2(hz / float(np.median(hz)))
    cents = cents - float(np.mean(cents))
    depth = float(np.max(cents) - np.min(cents)) / 2.0

    signs = np.sign(cents)
    signs = signs[signs != 0]
    crossings = int(np.count_nonzero(np.diff(signs)))
    rate = crossings / 2.0 / seconds

    if depth < min_depth_cents or not min_rate_hz <= rate <= max_rate_hz:
        return None
    return Vibrato(depth_cents=depth, rate_hz=rate)


def annotate_notes(
    notes: Sequence[RawNote],
    frames: Sequence[FramePitch],
    segment_start: float,
    config: Optional[StageDConfig] = None,
) -> List[NoteEvent]:
    """Turn cleaned notes into NoteEvents with ids, names, cent offsets and voices."""
    d_conf = config or StageDConfig()
    split_pitch = int(d_conf.staff_split_point.get("pitch", 60))
    vib_conf = dict(d_conf.vibrato)
    vib_enabled = bool(vib_conf.pop("enabled", True))
    prefix = f"note_{int(math.floor(segment_start))}"

    events: List[NoteEvent] = []
    for i, n in enumerate(notes):
        midi_note = int(round_half_up(n.midi_pitch))
        detected = n.detected_pitch if n.detected_pitch is not None else n.midi_pitch
        vibrato = detect_vibrato(frames, n.start_time, n.end_time, **vib_conf) if vib_enabled else None
        events.append(
            NoteEvent(
                id=f"{prefix}_{i}",
                start_time=n.start_time,
                duration=n.duration,
                midi_pitch=n.midi_pitch,
                midi_note=midi_note,
                note_name=note_name(midi_note),
                cent_offset=(detected - n.midi_pitch) * 100.0,
                quantized_value=duration_value(n.duration, d_conf.tempo_bpm),
                velocity=n.velocity,
                midi_velocity=int(max(1, min(127, round_half_up(n.velocity * 127.0)))),
                confidence=n.confidence,
                voice_id=0 if midi_note >= split_pitch else 1,
                vibrato=vibrato,
            )
        )
    return events


def finalize_notes(
    raw_notes: Sequence[RawNote],
    frames: Sequence[FramePitch],
    segment_start: float,
    config: Optional[PipelineConfig] = None,
) -> Tuple[List[RawNote], List[NoteEvent]]:
    """Stage D note pass: cleanup, then annotation."""
    d_conf = (config or PipelineConfig()).stage_d
    cleaned = cleanup_and_quantize(
        raw_notes,
        min_duration=d_conf.min_note_duration,
        grid=d_conf.grid_seconds,
        legato_gap=d_conf.legato_gap,
        pitch_tolerance=d_conf.legato_pitch_tolerance,
    )
    return cleaned, annotate_notes(cleaned, frames, segment_start, d_conf)


# --------------------------------------------------------
# Tabular export
# --------------------------------------------------------
def notes_to_dataframe(notes: Sequence[NoteEvent]) -> pd.DataFrame:
    rows = []
    for n in notes:
        row = n.to_dict()
        vib = row.pop("vibrato")
        row["vibrato_depth_cents"] = vib["depth_cents"] if vib else None
        row["vibrato_rate_hz"] = vib["rate_hz"] if vib else None
        rows.append(row)
    columns = [
        "id", "start_time", "end_time", "duration", "midi_pitch", "midi_note", "note_name",
        "cent_offset", "quantized_value", "velocity", "midi_velocity", "confidence",
        "voice_id", "instrument", "vibrato_depth_cents", "vibrato_rate_hz",
    ]
    return pd.DataFrame(rows, columns=columns)


def frames_to_dataframe(frames: Sequence[FramePitch]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "time": [fp.time for fp in frames],
            "frequency": [fp.frequency for fp in frames],
            "confidence": [fp.confidence for fp in frames],
            "volume": [fp.volume for fp in frames],
        }
    )


def write_notes_csv(notes: Sequence[NoteEvent], path: str) -> str:
    notes_to_dataframe(notes).to_csv(path, index=False)
    return path


def write_frames_csv(frames: Sequence[FramePitch], path: str) -> str:
    frames_to_dataframe(frames).to_csv(path, index=False)
    return path


# --------------------------------------------------------
# Score rendering
# --------------------------------------------------------
def _music21_key(k: KeyEstimate):
    tonic = NOTE_NAMES_SHARP[k.root % 12]
    if k.scale.value == "minor":
        tonic = tonic.lower()
    return key.Key(tonic)


def _build_score(events: Sequence[NoteEvent], key_estimate: Optional[KeyEstimate], d_conf: StageDConfig):
    quarter_dur = 60.0 / float(d_conf.tempo_bpm)
    split_pitch = int(d_conf.staff_split_point.get("pitch", 60))

    part_treble = stream.Part()
    part_treble.id = "P1"
    part_bass = stream.Part()
    part_bass.id = "P2"
    part_treble.append(clef.TrebleClef())
    part_bass.append(clef.BassClef())

    for p in (part_treble, part_bass):
        try:
            p.append(meter.TimeSignature(d_conf.time_signature))
        except Exception:
            p.append(meter.TimeSignature("4/4"))
        p.append(tempo.MetronomeMark(number=float(d_conf.tempo_bpm)))
        if key_estimate is not None and key_estimate.confidence > 0.0:
            p.append(_music21_key(key_estimate))

    for e in sorted(events, key=lambda ev: (ev.start_time, ev.midi_note)):
        n = note.Note(e.midi_note)
        n.duration = music21.duration.Duration(e.duration / quarter_dur)
        n.volume.velocity = e.midi_velocity
        target = part_treble if e.midi_note >= split_pitch else part_bass
        target.insert(e.start_time / quarter_dur, n)

    score = stream.Score()
    for p in (part_treble, part_bass):
        try:
            p_quant = p.makeMeasures(inPlace=False)
            p_quant.makeRests(inPlace=True)
            p_quant.makeTies(inPlace=True)
        except Exception as exc:
            logger.warning("makeMeasures/makeRests/makeTies failed for part %s: %s", p.id, exc)
            p_quant = p
        score.append(p_quant)
    return score


def render_score(
    events: Sequence[NoteEvent],
    key_estimate: Optional[KeyEstimate] = None,
    config: Optional[PipelineConfig] = None,
    pipeline_logger: Optional[Any] = None,
) -> Tuple[str, bytes]:
    """MusicXML text and MIDI bytes for the notes; empty outputs when music21 is unusable."""
    if not MUSIC21_AVAILABLE:
        if pipeline_logger:
            pipeline_logger.log_event("stage_d", "feature_disabled", {"feature": "music21", "reason": "missing"})
        return "", b""

    d_conf = (config or PipelineConfig()).stage_d
    try:
        score = _build_score(events, key_estimate, d_conf)
        from music21.musicxml import m21ToXml
        musicxml = m21ToXml.GeneralObjectExporter(score).parse().decode("utf-8")
    except Exception as exc:
        logger.warning("MusicXML export failed: %s", exc)
        if pipeline_logger:
            pipeline_logger.log_event("stage_d", "render_failed", {"target": "musicxml", "error": str(exc)})
        return "", b""

    midi_bytes = b""
    try:
        mf = midi.translate.music21ObjectToMidiFile(score)
        midi_bytes = bytes(mf.writestr())
    except Exception as exc:
        logger.warning("MIDI export failed: %s", exc)
        if pipeline_logger:
            pipeline_logger.log_event("stage_d", "render_failed", {"target": "midi", "error": str(exc)})

    return musicxml, midi_bytes


def quantize_and_render(
    events: List[NoteEvent],
    analysis_data: AnalysisData,
    config: Optional[PipelineConfig] = None,
    pipeline_logger: Optional[Any] = None,
) -> TranscriptionResult:
    """
    Stage D: Render Sheet Music (MusicXML) and MIDI using music21.

    Returns TranscriptionResult containing musicxml string and midi bytes.
    """
    musicxml, midi_bytes = render_score(events, analysis_data.key, config, pipeline_logger)
    return TranscriptionResult(
        notes=list(events),
        analysis_data=analysis_data,
        musicxml=musicxml,
        midi_bytes=midi_bytes,
    )
