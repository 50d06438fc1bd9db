import importlib.util
import json
import os
import sys

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest
import pandas as pd
import soundfile as sf
from unittest.mock import patch

from notescribe.tools.plot_debug import plot_frame_debug

SR = 22050
REPO_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _write_tone(path, sr=SR, seconds=1.0):
    t = np.arange(int(seconds * sr)) / float(sr)
    sf.write(str(path), (0.5 * np.sin(2 * np.pi * 261.63 * t)).astype(np.float32), sr)


def _load_cli():
    spec = importlib.util.spec_from_file_location("transcribe_cli", os.path.join(REPO_ROOT, "scripts", "transcribe.py"))
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestPlotDebug:
    def test_saves_figure(self, tmp_path):
        wav = tmp_path / "tone.wav"
        _write_tone(wav)
        frames = tmp_path / "frames.csv"
        pd.DataFrame(
            {"time": [0.0, 0.01, 0.02], "frequency": [0.0, 261.6, 261.7], "confidence": [0.0, 0.9, 0.95], "volume": [0.0, 0.3, 0.3]}
        ).to_csv(frames, index=False)
        notes = tmp_path / "notes.csv"
        pd.DataFrame(
            {"start_time": [0.0], "end_time": [1.0], "midi_pitch": [60.0], "note_name": ["C4"]}
        ).to_csv(notes, index=False)

        out = tmp_path / "plot.png"
        fig = plot_frame_debug(str(wav), str(frames), str(notes), str(out))
        assert out.exists()
        assert fig.axes


class TestTranscribeCli:
    def test_writes_outputs(self, tmp_path):
        wav = tmp_path / "tone.wav"
        _write_tone(wav, sr=44100, seconds=2.0)
        cli = _load_cli()
        argv = [
            "transcribe.py",
            "--audio_path", str(wav),
            "--output_musicxml", str(tmp_path / "out.musicxml"),
            "--output_midi", str(tmp_path / "out.mid"),
            "--output_notes_csv", str(tmp_path / "notes.csv"),
            "--output_frames_csv", str(tmp_path / "frames.csv"),
            "--output_log", str(tmp_path / "log.json"),
            "--log_dir", str(tmp_path / "runs"),
            "--accidentals", "flat",
        ]
        with patch.object(sys, "argv", argv):
            cli.main()

        for name in ("out.musicxml", "out.mid", "notes.csv", "frames.csv"):
            assert (tmp_path / name).exists()
        with open(tmp_path / "log.json") as f:
            log = json.load(f)
        assert [n["label"] for n in log["notes"]] == ["C4"]
        assert log["suggestion"] is None
        assert log["duration_s"] == pytest.approx(2.0)
        assert "total" in log["timing"]
