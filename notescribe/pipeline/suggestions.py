"""Playback preset hints derived from transcribed note statistics."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from .models import NoteEvent

MIN_NOTES = 10


@dataclass(frozen=True)
class SuggestedSettings:
    voice: str
    style: str
    bpm: int


def generate_suggestions(notes: Sequence[NoteEvent]) -> Optional[SuggestedSettings]:
    """Pick a voice/style/tempo preset, or None with fewer than ``MIN_NOTES`` notes."""
    if len(notes) < MIN_NOTES:
        return None

    avg_pitch = sum(n.midi_pitch for n in notes) / len(notes)
    avg_duration = sum(n.duration for n in notes) / len(notes)
    span = notes[-1].start_time - notes[0].start_time
    density = len(notes) / span if span > 0 else float("inf")

    if avg_pitch < 48 and avg_duration > 0.4:
        return SuggestedSettings(voice="synth_bass", style="funk", bpm=95)
    if avg_pitch > 65 and density > 5:
        return SuggestedSettings(voice="piano", style="pop", bpm=125)
    if density > 8 and avg_duration < 0.2:
        return SuggestedSettings(voice="synth_lead", style="techno", bpm=145)
    return SuggestedSettings(voice="grand_piano", style="ballad", bpm=80)
