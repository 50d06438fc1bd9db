from typing import List, Tuple

import numpy as np
from music21 import stream, note, tempo, key, meter


GroundTruth = List[Tuple[float, float, int]]  # (start_sec, duration_sec, midi)


def _part(bpm: float, ts: str = "4/4", key_name: str = "C") -> stream.Part:
    p = stream.Part()
    p.append(tempo.MetronomeMark(number=bpm))
    p.append(key.Key(key_name))
    p.append(meter.TimeSignature(ts))
    return p


def _score_from(part: stream.Part) -> stream.Score:
    s = stream.Score()
    s.append(part)
    return s


def create_sine_wave_score(pitch_name="C4", seconds=1.0, rest_seconds=1.0):
    """
    L0: one sustained note then silence, at 60 bpm (1 beat per second).
    """
    p = _part(60)
    n = note.Note(pitch_name)
    n.quarterLength = seconds
    n.volume.velocity = 90
    p.append(n)
    r = note.Rest()
    r.quarterLength = rest_seconds
    p.append(r)
    return _score_from(p)


def create_c_major_scale():
    """
    L1: C Major Scale (Up and Down).
    """
    p = _part(120)
    pitches = ["C4", "D4", "E4", "F4", "G4", "A4", "B4", "C5",
               "B4", "A4", "G4", "F4", "E4", "D4", "C4"]
    for pi in pitches:
        n = note.Note(pi)
        n.quarterLength = 1.0
        p.append(n)
    return _score_from(p)


def create_gapped_repeats():
    """L2: same pitch repeated with quarter rests in between (must not merge)."""
    p = _part(120)
    for pi in ["E4", "E4", "G4", "G4", "E4"]:
        n = note.Note(pi)
        n.quarterLength = 1.0
        p.append(n)
        r = note.Rest()
        r.quarterLength = 1.0
        p.append(r)
    return _score_from(p)


def create_legato_line():
    """L2: stepwise half notes played legato."""
    p = _part(120)
    for pi in ["G4", "A4", "B4", "C5", "B4", "A4", "G4"]:
        n = note.Note(pi)
        n.quarterLength = 2.0
        p.append(n)
    return _score_from(p)


def create_chromatic_neighbors():
    """L3: C major context with chromatic neighbour tones."""
    p = _part(120)
    melody = [("C4", 1), ("E4", 1), ("G4", 1), ("C5", 1),
              ("F#4", 2), ("G4", 2), ("C#4", 2), ("D4", 2),
              ("E4", 1), ("D4", 1), ("C4", 2)]
    for pitch_name, dur in melody:
        n = note.Note(pitch_name)
        n.quarterLength = dur
        p.append(n)
    return _score_from(p)


def create_long_melody(repeats=5):
    """L4: Old MacDonald theme repeated to run past one analysis chunk."""
    p = _part(100)
    melody_data = [
        ("C4", 1), ("C4", 1), ("C4", 1), ("G4", 1),
        ("A4", 1), ("A4", 1), ("G4", 2),
        ("E4", 1), ("E4", 1), ("D4", 1), ("D4", 1),
        ("C4", 2),
        ("D4", 1), ("D4", 1), ("C4", 1), ("C4", 2),
    ]
    for _ in range(repeats):
        for pitch_name, dur in melody_data:
            n = note.Note(pitch_name)
            n.quarterLength = dur
            p.append(n)
    return _score_from(p)


def score_to_audio(
    score: stream.Score,
    sr: int = 44100,
    release: float = 0.03,
    amplitude: float = 0.5,
) -> Tuple[np.ndarray, GroundTruth]:
    """
    Render a monophonic score as sine tones and return (audio, ground truth).

    Each note sounds for its written length minus ``release`` seconds so repeated
    pitches stay separable. Tempo comes from the first MetronomeMark.
    """
    mark = next(iter(score.recurse().getElementsByClass(tempo.MetronomeMark)), None)
    bpm = float(mark.number) if mark is not None else 120.0
    sec_per_quarter = 60.0 / bpm

    notes = list(score.recurse().notes)
    total_quarters = float(score.highestTime)
    audio = np.zeros(int(np.ceil(total_quarters * sec_per_quarter * sr)) + 1, dtype=np.float32)
    truth: GroundTruth = []

    for n in notes:
        start = float(n.getOffsetInHierarchy(score)) * sec_per_quarter
        dur = float(n.quarterLength) * sec_per_quarter
        sounding = max(0.0, dur - release)
        i0 = int(round(start * sr))
        t = np.arange(int(round(sounding * sr))) / float(sr)
        tone = amplitude * np.sin(2.0 * np.pi * float(n.pitch.frequency) * t)
        # 5 ms fades avoid clicks that read as broadband onsets
        fade = min(len(tone) // 2, int(0.005 * sr))
        if fade > 0:
            ramp = np.linspace(0.0, 1.0, fade)
            tone[:fade] *= ramp
            tone[-fade:] *= ramp[::-1]
        audio[i0:i0 + len(tone)] += tone[: max(0, len(audio) - i0)]
        truth.append((start, dur, int(n.pitch.midi)))

    return audio, truth


def generate_benchmark_example(example_id: str):
    """
    Dispatcher to create specific benchmark examples.
    """
    if example_id == "sine_262":
        return create_sine_wave_score("C4")
    elif example_id == "sine_440":
        return create_sine_wave_score("A4")

    elif example_id == "c_major_scale":
        return create_c_major_scale()

    elif example_id == "gapped_repeats":
        return create_gapped_repeats()
    elif example_id == "legato_line":
        return create_legato_line()

    elif example_id == "chromatic_neighbors":
        return create_chromatic_neighbors()

    elif example_id == "long_melody":
        return create_long_melody()

    else:
        raise ValueError(f"Unknown example_id: {example_id}")
