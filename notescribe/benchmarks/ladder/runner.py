import os
import json
import logging
import numpy as np
import soundfile as sf
from typing import Dict, Any, List, Optional, Sequence, Tuple

from notescribe.pipeline.config import PipelineConfig
from notescribe.pipeline.models import NoteEvent, TranscriptionResult
from notescribe.pipeline.stage_d import quantize_and_render, write_frames_csv, write_notes_csv
from notescribe.pipeline.transcribe import transcribe_long
from notescribe.pipeline.validation import validate_invariants

from .levels import BENCHMARK_LEVELS
from .generators import GroundTruth, generate_benchmark_example, score_to_audio

logger = logging.getLogger(__name__)


class NumpyEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        elif isinstance(obj, np.floating):
            return float(obj)
        elif isinstance(obj, np.ndarray):
            return obj.tolist()
        return super().default(obj)


def note_metrics(
    predicted: Sequence[NoteEvent],
    truth: GroundTruth,
    onset_tolerance: float = 0.1,
) -> Dict[str, Any]:
    """Greedy one-to-one matching on exact MIDI note and onset within ``onset_tolerance``."""
    used = set()
    onset_errors: List[float] = []
    for start, _dur, midi in truth:
        best_idx: Optional[int] = None
        best_err = onset_tolerance
        for idx, n in enumerate(predicted):
            if idx in used or n.midi_note != midi:
                continue
            err = abs(n.start_time - start)
            if err <= best_err:
                best_idx, best_err = idx, err
        if best_idx is not None:
            used.add(best_idx)
            onset_errors.append(best_err)

    matched = len(used)
    precision = matched / len(predicted) if predicted else 0.0
    recall = matched / len(truth) if truth else 0.0
    f1 = 2 * precision * recall / (precision + recall) if precision + recall > 0 else 0.0
    return {
        "n_truth": len(truth),
        "n_predicted": len(predicted),
        "matched": matched,
        "precision": precision,
        "recall": recall,
        "f1": f1,
        "mean_onset_error": float(np.mean(onset_errors)) if onset_errors else None,
    }


def run_example(example_id: str, config: PipelineConfig, output_dir: str) -> Tuple[Dict[str, Any], TranscriptionResult]:
    sr = int(config.stage_a.target_sample_rate)
    score = generate_benchmark_example(example_id)
    audio, truth = score_to_audio(score, sr=sr)

    wav_path = os.path.join(output_dir, f"{example_id}.wav")
    sf.write(wav_path, audio, sr)

    analysis = transcribe_long(audio, sr, config)
    result = quantize_and_render(analysis.notes, analysis, config)
    validate_invariants(result, config)

    write_notes_csv(result.notes, os.path.join(output_dir, f"{example_id}_notes.csv"))
    write_frames_csv(analysis.frames, os.path.join(output_dir, f"{example_id}_frames.csv"))
    if result.musicxml:
        with open(os.path.join(output_dir, f"{example_id}.musicxml"), "w", encoding="utf-8") as f:
            f.write(result.musicxml)

    metrics = note_metrics(result.notes, truth)
    metrics["key"] = analysis.key.label
    metrics["overlap_notes"] = analysis.diagnostics.get("overlap_notes", 0)
    metrics["failed_chunks"] = analysis.diagnostics.get("failed_chunks", [])
    return metrics, result


def run_full_benchmark(
    config: Optional[PipelineConfig] = None,
    output_dir: str = "benchmark_results",
    level_ids: Optional[Sequence[str]] = None,
) -> Dict[str, Any]:
    """
    Runs the benchmark ladder and writes ``benchmark_summary.json``.
    """
    config = config or PipelineConfig()
    os.makedirs(output_dir, exist_ok=True)

    results: Dict[str, Any] = {}
    for level in BENCHMARK_LEVELS:
        level_id = level["id"]
        if level_ids and level_id not in level_ids:
            continue
        logger.info("Running level %s", level_id)
        level_results = []

        for example_id in level["examples"]:
            example_res: Dict[str, Any] = {"id": example_id, "errors": []}
            try:
                metrics, _ = run_example(example_id, config, output_dir)
                example_res["metrics"] = metrics
                example_res["passed"] = all(
                    metrics.get(name, 0.0) >= floor for name, floor in level.get("expected_metrics", {}).items()
                )
            except Exception as e:
                logger.exception("Example %s failed", example_id)
                example_res["errors"].append(str(e))
                example_res["passed"] = False
            level_results.append(example_res)

        results[level_id] = level_results

    with open(os.path.join(output_dir, "benchmark_summary.json"), "w", encoding="utf-8") as f:
        json.dump(results, f, indent=2, cls=NumpyEncoder)

    return results
