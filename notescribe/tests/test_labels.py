import math

import pytest

from notescribe.pipeline.labels import NoteLabel, format_pitch


class TestFormatPitch:
    @pytest.mark.parametrize(
        "midi, style, expected",
        [
            (60, "sharp", "C4"),
            (61, "sharp", "C♯4"),
            (61, "flat", "D♭4"),
            (70, "flat", "B♭4"),
            (66, "double_sharp", "Fx4"),
            (21, "sharp", "A0"),
            (108, "sharp", "C8"),
        ],
    )
    def test_scientific(self, midi, style, expected):
        assert format_pitch(midi, accidental_style=style).display == expected

    def test_accidental_flag(self):
        assert format_pitch(61).is_accidental
        assert not format_pitch(62).is_accidental

    def test_fractional_pitch_rounds_half_up(self):
        assert format_pitch(60.5).display == "C♯4"
        assert format_pitch(60.49).display == "C4"

    def test_note_only_hides_octave(self):
        label = format_pitch(64, fmt="note_only")
        assert label == NoteLabel(display="E", is_accidental=False, octave=4)
        assert format_pitch(64, fmt="note_only", show_octave=True).display == "E"

    def test_hide_octave(self):
        assert format_pitch(69, show_octave=False).display == "A"

    def test_solfege(self):
        assert format_pitch(60, fmt="solfege").display == "Do4"
        label = format_pitch(61, fmt="solfege")
        assert label.display == "Di4"
        assert label.is_accidental
        assert not format_pitch(67, fmt="solfege").is_accidental

    @pytest.mark.parametrize("value", [math.nan, math.inf, None])
    def test_non_finite(self, value):
        assert format_pitch(value).display == "?"

    def test_unknown_options(self):
        with pytest.raises(ValueError):
            format_pitch(60, fmt="roman")
        with pytest.raises(ValueError):
            format_pitch(60, accidental_style="natural")
