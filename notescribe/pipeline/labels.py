"""Human-readable pitch labels for display and export."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from .detectors import round_half_up
from .models import NOTE_NAMES_SHARP

NOTE_NAMES_FLAT = ("C", "Db", "D", "Eb", "E", "F", "Gb", "G", "Ab", "A", "Bb", "B")
# Fixed-do, chromatic syllables for the black keys
SOLFEGE_NAMES = ("Do", "Di", "Re", "Ri", "Mi", "Fa", "Fi", "Sol", "Si", "La", "Li", "Ti")

FORMATS = ("scientific", "note_only", "solfege")
ACCIDENTAL_STYLES = ("sharp", "flat", "double_sharp")


@dataclass(frozen=True)
class NoteLabel:
    display: str
    is_accidental: bool
    octave: Optional[int] = None


def format_pitch(
    midi_pitch: float,
    fmt: str = "scientific",
    accidental_style: str = "sharp",
    show_octave: bool = True,
) -> NoteLabel:
    """Label a (possibly fractional) MIDI pitch, e.g. 61 -> "C♯4", "Db4" style flat -> "D♭4".

    Non-finite input gives "?". ``note_only`` never shows the octave.
    """
    if fmt not in FORMATS:
        raise ValueError(f"Unknown pitch format: {fmt}")
    if accidental_style not in ACCIDENTAL_STYLES:
        raise ValueError(f"Unknown accidental style: {accidental_style}")
    if midi_pitch is None or not math.isfinite(midi_pitch):
        return NoteLabel(display="?", is_accidental=False)

    rounded = int(round_half_up(midi_pitch))
    octave = rounded // 12 - 1
    semitone = rounded % 12

    if fmt == "solfege":
        name = SOLFEGE_NAMES[semitone]
        is_accidental = len(name) == 2 and name.endswith("i")
    else:
        use_sharps = accidental_style != "flat"
        name = (NOTE_NAMES_SHARP if use_sharps else NOTE_NAMES_FLAT)[semitone]
        is_accidental = len(name) > 1
        if is_accidental:
            if accidental_style == "double_sharp":
                name = name.replace("#", "x")
            elif accidental_style == "flat":
                name = name.replace("b", "♭")
            else:
                name = name.replace("#", "♯")

    display = name
    if show_octave and fmt != "note_only":
        display += str(octave)
    return NoteLabel(display=display, is_accidental=is_accidental, octave=octave)
