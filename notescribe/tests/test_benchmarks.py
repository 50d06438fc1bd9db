import json
import os

import numpy as np
import pytest

from notescribe.benchmarks.ladder.generators import generate_benchmark_example, score_to_audio
from notescribe.benchmarks.ladder.levels import BENCHMARK_LEVELS
from notescribe.benchmarks.ladder.runner import note_metrics, run_full_benchmark
from notescribe.pipeline.models import RawNote
from notescribe.pipeline.stage_d import annotate_notes


def _events(specs):
    raw = [RawNote(start_time=s, duration=d, midi_pitch=float(m), velocity=0.5, confidence=0.9) for s, d, m in specs]
    return annotate_notes(raw, [], 0.0)


class TestLadderDefinition:
    def test_every_example_can_be_generated(self):
        for level in BENCHMARK_LEVELS:
            for example_id in level["examples"]:
                assert generate_benchmark_example(example_id) is not None

    def test_unknown_example(self):
        with pytest.raises(ValueError):
            generate_benchmark_example("does_not_exist")


class TestScoreToAudio:
    def test_c_major_scale_truth(self):
        audio, truth = score_to_audio(generate_benchmark_example("c_major_scale"), sr=8000)
        assert len(truth) == 15
        assert truth[0] == (0.0, 0.5, 60)
        assert truth[1] == (0.5, 0.5, 62)
        assert truth[7][2] == 72
        assert len(audio) == int(np.ceil(7.5 * 8000)) + 1
        assert float(np.max(np.abs(audio))) <= 0.5 + 1e-6

    def test_rest_is_silent(self):
        audio, truth = score_to_audio(generate_benchmark_example("sine_440"), sr=8000)
        assert truth == [(0.0, 1.0, 69)]
        assert not np.any(audio[int(1.0 * 8000):])

    def test_long_melody_spans_several_chunks(self):
        _, truth = score_to_audio(generate_benchmark_example("long_melody"), sr=8000)
        assert truth[-1][0] + truth[-1][1] > 55.0


class TestNoteMetrics:
    def test_perfect_match(self):
        truth = [(0.0, 0.5, 60), (0.5, 0.5, 62)]
        m = note_metrics(_events([(0.0, 0.5, 60), (0.5, 0.5, 62)]), truth)
        assert m["precision"] == m["recall"] == m["f1"] == 1.0
        assert m["mean_onset_error"] == 0.0

    def test_wrong_pitch_and_late_onset(self):
        truth = [(0.0, 0.5, 60), (0.5, 0.5, 62)]
        m = note_metrics(_events([(0.0, 0.5, 61), (0.75, 0.5, 62)]), truth)
        assert m["matched"] == 0
        assert m["f1"] == 0.0
        assert m["mean_onset_error"] is None

    def test_extra_prediction_lowers_precision(self):
        truth = [(0.0, 0.5, 60)]
        m = note_metrics(_events([(0.0, 0.5, 60), (1.0, 0.5, 64)]), truth)
        assert m["recall"] == 1.0
        assert m["precision"] == 0.5

    def test_each_prediction_used_once(self):
        truth = [(0.0, 0.5, 60), (0.05, 0.5, 60)]
        m = note_metrics(_events([(0.0, 0.5, 60)]), truth)
        assert m["matched"] == 1

    def test_empty(self):
        m = note_metrics([], [])
        assert m["precision"] == m["recall"] == 0.0


class TestRunFullBenchmark:
    def test_signal_level(self, tmp_path):
        results = run_full_benchmark(output_dir=str(tmp_path), level_ids=["L0_SIGNAL"])

        assert list(results) == ["L0_SIGNAL"]
        for example in results["L0_SIGNAL"]:
            assert example["errors"] == []
            assert example["metrics"]["recall"] == 1.0
            assert os.path.exists(os.path.join(tmp_path, f"{example['id']}_notes.csv"))
            assert os.path.exists(os.path.join(tmp_path, f"{example['id']}.wav"))

        with open(os.path.join(tmp_path, "benchmark_summary.json")) as f:
            summary = json.load(f)
        assert summary["L0_SIGNAL"][0]["id"] == "sine_262"
