import pytest
import numpy as np

from notescribe.pipeline.stage_c import (
    MAJOR_PROFILE,
    MINOR_PROFILE,
    _profile_correlation,
    NO_KEY,
    apply_theory,
    build_chroma,
    estimate_key,
    harmonic_quantize,
    segment_notes,
)
from notescribe.pipeline.models import FramePitch, KeyEstimate, RawNote, Scale, StageBOutput, Segment
from notescribe.pipeline.config import PipelineConfig
from notescribe.pipeline.detectors import midi_to_hz

HOP = 0.01


def _frames(pitches, confidence=0.9, volume=0.1, start=0.0):
    """One frame per entry; None is an unvoiced frame."""
    out = []
    for i, p in enumerate(pitches):
        t = start + i * HOP
        if p is None:
            out.append(FramePitch(time=t))
        else:
            out.append(FramePitch(time=t, frequency=midi_to_hz(p), confidence=confidence, volume=volume))
    return out


class TestSegmentNotes:
    def test_constant_pitch_single_note(self):
        notes = segment_notes(_frames([69.0] * 100), HOP)
        assert len(notes) == 1
        assert notes[0].start_time == 0.0
        assert notes[0].duration == pytest.approx(1.0)
        assert notes[0].midi_pitch == pytest.approx(69.0)

    def test_unvoiced_frame_splits(self):
        notes = segment_notes(_frames([60.0] * 20 + [None] + [60.0] * 20), HOP)
        assert len(notes) == 2
        assert notes[1].start_time == pytest.approx(0.21)
        assert notes[0].duration == pytest.approx(0.2)

    def test_short_runs_dropped(self):
        notes = segment_notes(_frames([60.0] * 5 + [None] + [64.0] * 9), HOP)
        assert len(notes) == 1
        assert notes[0].midi_pitch == pytest.approx(64.0)

    def test_pitch_jump_splits(self):
        notes = segment_notes(_frames([69.0] * 20 + [71.0] * 20), HOP)
        assert [round(n.midi_pitch) for n in notes] == [69, 71]
        assert notes[1].start_time == pytest.approx(0.2)

    def test_small_drift_stays_one_note(self):
        notes = segment_notes(_frames([60.0] * 10 + [60.5] * 10), HOP)
        assert len(notes) == 1
        assert notes[0].midi_pitch == pytest.approx(60.25)

    def test_velocity_and_confidence(self):
        frames = _frames([60.0] * 10, volume=0.1)
        frames[4] = FramePitch(time=frames[4].time, frequency=frames[4].frequency, confidence=0.99, volume=0.5)
        note = segment_notes(frames, HOP)[0]
        # velocity comes from the first frame only
        assert note.velocity == pytest.approx(0.5)
        assert note.confidence == 0.99

    def test_velocity_capped(self):
        note = segment_notes(_frames([60.0] * 10, volume=0.9), HOP)[0]
        assert note.velocity == 1.0

    def test_detected_pitch_recorded(self):
        note = segment_notes(_frames([60.3] * 10), HOP)[0]
        assert note.detected_pitch == pytest.approx(60.3)

    def test_no_frames(self):
        assert segment_notes([], HOP) == []


class TestHarmonicQuantize:
    C_MAJOR = KeyEstimate(root=0, scale=Scale.MAJOR, confidence=0.8)
    A_MINOR = KeyEstimate(root=9, scale=Scale.MINOR, confidence=0.8)

    @staticmethod
    def _note(pitch):
        return RawNote(start_time=0.0, duration=0.5, midi_pitch=pitch, velocity=0.5, confidence=0.9, detected_pitch=pitch)

    @pytest.mark.parametrize("pitch, expected", [(60.3, 60.0), (60.9, 61.0), (61.4, 61.0), (59.5, 60.0)])
    def test_c_major(self, pitch, expected):
        assert harmonic_quantize([self._note(pitch)], self.C_MAJOR)[0].midi_pitch == expected

    def test_chromatic_note_kept_in_minor(self):
        assert harmonic_quantize([self._note(63.2)], self.A_MINOR)[0].midi_pitch == 63.0

    def test_without_key(self):
        notes = [self._note(61.4), self._note(66.5)]
        assert [n.midi_pitch for n in harmonic_quantize(notes, self.C_MAJOR, use_key=False)] == [61.0, 67.0]
        assert [n.midi_pitch for n in harmonic_quantize(notes, None)] == [61.0, 67.0]

    def test_detected_pitch_preserved(self):
        out = harmonic_quantize([self._note(60.3)], self.C_MAJOR)[0]
        assert out.detected_pitch == pytest.approx(60.3)
        assert out.velocity == 0.5
        assert out.confidence == 0.9

    def test_missing_detected_pitch_taken_from_input(self):
        note = RawNote(start_time=0.0, duration=0.5, midi_pitch=64.2)
        assert harmonic_quantize([note], self.C_MAJOR)[0].detected_pitch == 64.2


class TestEstimateKey:
    def test_c_major_scale(self):
        frames = _frames([60, 62, 64, 65, 67, 69, 71])
        k = estimate_key(frames)
        assert (k.root, k.scale) == (0, Scale.MAJOR)
        assert 0.0 < k.confidence <= 1.0

    def test_even_major_scale_beats_every_minor_rotation(self):
        chroma = np.zeros(12)
        chroma[[0, 2, 4, 5, 7, 9, 11]] = 1.0 / 7.0
        c_major = _profile_correlation(chroma, MAJOR_PROFILE, 0)
        assert c_major > max(_profile_correlation(chroma, MINOR_PROFILE, r) for r in range(12))
        # relative minor shares every pitch class
        assert c_major > _profile_correlation(chroma, MINOR_PROFILE, 9)

    def test_single_pitch_class_prefers_major(self):
        k = estimate_key(_frames([60.0] * 10))
        assert (k.root, k.scale) == (0, Scale.MAJOR)

    def test_minor_profile_weighted_chroma(self):
        frames = []
        for i, weight in enumerate(MINOR_PROFILE):
            pitch = 57 + i  # A3 upward
            frames.append(
                FramePitch(time=i * HOP, frequency=midi_to_hz(pitch), confidence=float(weight) / 7.0, volume=0.1)
            )
        k = estimate_key(frames)
        assert (k.root, k.scale) == (9, Scale.MINOR)
        assert k.confidence == pytest.approx(1.0, abs=1e-6)

    def test_no_voiced_frames(self):
        assert estimate_key(_frames([None] * 10)) == NO_KEY

    def test_low_confidence_frames_ignored(self):
        assert estimate_key(_frames([60, 64, 67], confidence=0.3)) == NO_KEY

    def test_flat_chroma(self):
        assert estimate_key(_frames(list(range(60, 72)))) == NO_KEY

    def test_build_chroma_weights(self):
        chroma, total = build_chroma(_frames([60, 72, 67], confidence=0.5))
        assert total == pytest.approx(1.5)
        assert chroma[0] == pytest.approx(1.0)
        assert chroma[7] == pytest.approx(0.5)

    def test_label(self):
        assert KeyEstimate(root=9, scale=Scale.MINOR).label == "A minor"
        assert KeyEstimate(root=1).label == "C# major"


class TestApplyTheory:
    def test_key_from_raw_notes_from_smoothed(self):
        raw = _frames([60, 62, 64, 65, 67, 69, 71] * 3)
        smoothed = _frames([60.2] * 30)
        sb = StageBOutput(
            segment=Segment(np.zeros(10), 44100),
            frames=raw,
            smoothed_frames=smoothed,
            diagnostics={"hop_seconds": HOP},
        )
        key, notes = apply_theory(sb, PipelineConfig())
        assert key.label == "C major"
        assert len(notes) == 1
        assert notes[0].midi_pitch == 60.0
        assert notes[0].detected_pitch == pytest.approx(60.2)
