import numpy as np
import pytest
import soundfile as sf

from notescribe.pipeline.config import ChunkingConfig, PipelineConfig
from notescribe.pipeline.models import Segment
from notescribe.pipeline.stage_a import (
    InvalidSegmentError,
    adaptive_threshold,
    load_audio,
    make_segment,
    plan_chunks,
    prepare_segment,
    validate_segment,
)
from notescribe.pipeline.transcribe import analyze_segment


class TestAdaptiveThreshold:
    def test_zero_buffer_hits_floor_exactly(self):
        assert adaptive_threshold(np.zeros(44100)) == 0.005

    def test_scales_with_strided_rms(self):
        assert adaptive_threshold(np.ones(1000)) == pytest.approx(0.2)

    def test_only_strided_samples_count(self):
        y = np.zeros(1000)
        y[1::100] = 10.0  # never sampled with stride 100
        assert adaptive_threshold(y) == 0.005

    def test_empty_input(self):
        assert adaptive_threshold(np.zeros(0)) == 0.005


class TestValidateSegment:
    @pytest.fixture
    def sr(self):
        return 44100

    def test_valid_segment_passes(self, sr):
        validate_segment(Segment(np.zeros(4096), sr), 2048)

    @pytest.mark.parametrize(
        "samples, rate",
        [
            (np.zeros(0), 44100),
            (np.zeros(4096), 0),
            (np.zeros(4096), -1),
            (np.zeros(1024), 44100),
            (np.full(4096, np.nan), 44100),
        ],
    )
    def test_invalid_inputs_raise(self, samples, rate):
        with pytest.raises(InvalidSegmentError):
            validate_segment(Segment(samples, rate), 2048)

    @pytest.mark.parametrize(
        "samples, rate",
        [
            (None, 44100),
            (np.zeros(0), 44100),
            (np.zeros(4096), 0),
            (np.zeros(1024), 44100),
            (np.array([np.inf] * 4096), 44100),
        ],
    )
    def test_analysis_returns_no_notes_for_invalid_input(self, samples, rate):
        assert analyze_segment(Segment(samples, rate)) == []

    def test_missing_buffer_has_zero_duration(self):
        seg = Segment(None, 44100, start_time=3.0)
        assert seg.duration == 0.0
        assert seg.resolved_end_time == 3.0

    def test_invalid_segment_error_is_value_error(self):
        assert issubclass(InvalidSegmentError, ValueError)

    def test_prepare_segment_threshold(self, sr):
        out = prepare_segment(Segment(np.zeros(4096), sr), PipelineConfig())
        assert out.threshold == 0.005


class TestSegments:
    def test_make_segment_slices_and_offsets(self):
        audio = np.arange(1000, dtype=np.float32)
        seg = make_segment(audio, 100, start_time=2.0, duration=3.0)
        assert len(seg.samples) == 300
        assert seg.samples[0] == 200
        assert seg.start_time == 2.0
        assert seg.resolved_end_time == 5.0

    def test_make_segment_clips_at_end(self):
        audio = np.zeros(1000, dtype=np.float32)
        seg = make_segment(audio, 100, start_time=8.0, duration=5.0)
        assert len(seg.samples) == 200

    def test_segment_samples_are_read_only(self):
        seg = make_segment(np.zeros(100, dtype=np.float32), 100, 0.0, 1.0)
        with pytest.raises(ValueError):
            seg.samples[0] = 1.0


class TestPlanChunks:
    def test_overlapping_windows(self):
        assert plan_chunks(70.0) == [(0.0, 30.0), (25.0, 30.0), (50.0, 20.0)]

    def test_short_audio_single_chunk(self):
        assert plan_chunks(20.0) == [(0.0, 20.0)]
        assert plan_chunks(30.0) == [(0.0, 30.0)]

    def test_empty(self):
        assert plan_chunks(0.0) == []

    def test_custom_chunking(self):
        chunks = plan_chunks(10.0, ChunkingConfig(chunk_seconds=4.0, overlap_seconds=1.0))
        assert chunks == [(0.0, 4.0), (3.0, 4.0), (6.0, 4.0)]


class TestLoadAudio:
    def test_load_wav(self, tmp_path):
        sr = 44100
        y = (0.5 * np.sin(2 * np.pi * 440.0 * np.arange(sr) / sr)).astype(np.float32)
        path = tmp_path / "tone.wav"
        sf.write(str(path), y, sr)

        audio, out_sr = load_audio(str(path), target_sr=sr)
        assert out_sr == sr
        assert audio.dtype == np.float32
        assert len(audio) == sr

    def test_missing_file_raises_runtime_error(self, tmp_path):
        with pytest.raises(RuntimeError):
            load_audio(str(tmp_path / "missing.wav"))
