import pytest
import numpy as np
from unittest.mock import MagicMock

from notescribe.pipeline.stage_b import extract_features, extract_frames, smooth_frames, frame_metrics
from notescribe.pipeline.models import StageAOutput, Segment, FramePitch, PitchEstimate
from notescribe.pipeline.config import PipelineConfig
from notescribe.pipeline.detectors import YinDetector


def _track(freqs, hop=0.01):
    return [
        FramePitch(time=i * hop, frequency=f, confidence=0.9 if f > 0 else 0.0, volume=0.1 if f > 0 else 0.0)
        for i, f in enumerate(freqs)
    ]


class TestSmoothFrames:
    def test_isolated_voiced_frame_is_removed(self):
        out = smooth_frames(_track([0, 0, 0, 440.0, 0, 0, 0]))
        assert all(fp.frequency == 0.0 for fp in out)

    def test_octave_outlier_replaced_by_median(self):
        freqs = [440.0] * 7
        freqs[3] = 880.0
        out = smooth_frames(_track(freqs))
        assert out[3].frequency == 440.0

    def test_upper_middle_element_of_even_voiced_set(self):
        # frame 0 sees frames 0..3, all voiced
        out = smooth_frames(_track([100.0, 200.0, 300.0, 400.0]))
        assert out[0].frequency == 300.0

    def test_pair_of_voiced_frames_survives(self):
        out = smooth_frames(_track([0, 0, 0, 440.0, 441.0, 0, 0, 0]))
        assert out[3].frequency == 440.0
        assert out[4].frequency == 441.0

    def test_reads_neighbours_from_unsmoothed_input(self):
        frames = _track([0, 0, 0, 440.0, 0, 0, 0])
        smooth_frames(frames)
        assert frames[3].frequency == 440.0

    def test_keeps_time_confidence_and_volume(self):
        frames = _track([440.0] * 3 + [880.0] + [440.0] * 3)
        out = smooth_frames(frames)
        assert [fp.time for fp in out] == [fp.time for fp in frames]
        assert out[3].confidence == frames[3].confidence
        assert out[3].volume == frames[3].volume

    def test_empty(self):
        assert smooth_frames([]) == []


class TestExtractFrames:
    @pytest.fixture
    def sr(self):
        return 44100

    @pytest.fixture
    def tone(self, sr):
        t = np.arange(sr) / float(sr)
        return (0.5 * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32)

    def test_frame_count_and_times(self, sr, tone):
        frames = extract_frames(Segment(tone, sr), 0.005, YinDetector(sr))
        # windows must end strictly before the last sample
        assert len(frames) == len(range(0, sr - 2048, 441))
        assert frames[0].time == 0.0
        assert frames[1].time == pytest.approx(0.01)
        assert all(fp.frequency == pytest.approx(440.0, rel=0.005) for fp in frames)

    def test_times_offset_by_segment_start(self, sr, tone):
        frames = extract_frames(Segment(tone, sr, start_time=12.5), 0.005, YinDetector(sr))
        assert frames[0].time == pytest.approx(12.5)
        assert frames[3].time == pytest.approx(12.53)

    def test_silence_is_all_unvoiced(self, sr):
        frames = extract_frames(Segment(np.zeros(sr, dtype=np.float32), sr), 0.005, YinDetector(sr))
        assert frames
        assert all(fp.frequency == 0.0 and fp.confidence == 0.0 and fp.volume == 0.0 for fp in frames)

    def test_low_probability_detections_dropped(self, sr, tone):
        detector = MagicMock()
        detector.estimate.return_value = PitchEstimate(frequency=440.0, probability=0.3)
        frames = extract_frames(Segment(tone, sr), 0.005, detector, min_probability=0.3)
        assert all(not fp.voiced for fp in frames)

    def test_quiet_windows_skip_detection(self, sr, tone):
        detector = MagicMock()
        extract_frames(Segment(tone, sr), 10.0, detector)
        detector.estimate.assert_not_called()

    def test_voiced_frames_carry_rms(self, sr, tone):
        frames = extract_frames(Segment(tone, sr), 0.005, YinDetector(sr))
        assert frames[10].volume == pytest.approx(0.5 / np.sqrt(2), rel=0.02)


class TestExtractFeatures:
    def test_diagnostics_and_metrics(self):
        sr = 44100
        t = np.arange(sr) / float(sr)
        seg = Segment((0.5 * np.sin(2 * np.pi * 261.63 * t)).astype(np.float32), sr)
        logger = MagicMock()

        out = extract_features(StageAOutput(segment=seg, threshold=0.05), PipelineConfig(), pipeline_logger=logger)

        assert out.diagnostics["hop_seconds"] == pytest.approx(0.01)
        assert out.frame_duration == pytest.approx(0.01)
        assert out.diagnostics["detector"] == "yin"
        assert out.diagnostics["n_frames"] == len(out.frames) == len(out.smoothed_frames)
        assert len(out.metrics) == len(out.frames)
        assert out.metrics[5].pitch_confidence == out.frames[5].confidence
        logger.log_event.assert_called_once()
        assert logger.log_event.call_args[0][1] == "frames_extracted"

    def test_unknown_detector(self):
        sr = 44100
        seg = Segment(np.zeros(4096, dtype=np.float32), sr)
        cfg = PipelineConfig.from_dict({"stage_b": {"detector": "swift"}})
        with pytest.raises(ValueError):
            extract_features(StageAOutput(segment=seg, threshold=0.005), cfg)

    def test_frame_metrics(self):
        metrics = frame_metrics(_track([0.0, 440.0]))
        assert metrics[1].energy == 0.1
        assert metrics[1].pitch_confidence == 0.9
        assert metrics[0].pitch_confidence == 0.0
