"""
Stage B — Feature Extraction

This module slides the analysis window over a segment, runs per-frame pitch
detection, median-smooths the resulting frequency track and derives the
per-frame confidence heatmap.
"""

from __future__ import annotations
from dataclasses import replace
from typing import List, Dict, Any, Optional
import numpy as np
import logging
import warnings

from .models import StageAOutput, StageBOutput, FramePitch, AnalysisMetric, Segment
from .config import PipelineConfig
from .detectors import YinDetector, BasePitchDetector, _frame_audio, frame_rms

logger = logging.getLogger(__name__)

__all__ = [
    "extract_frames",
    "extract_pyin_frames",
    "smooth_frames",
    "frame_metrics",
    "extract_features",
]


def _unvoiced(t: float) -> FramePitch:
    return FramePitch(time=t, frequency=0.0, confidence=0.0, volume=0.0)


def extract_frames(
    segment: Segment,
    threshold: float,
    detector: BasePitchDetector,
    window_size: int = 2048,
    hop_size: int = 441,
    min_probability: float = 0.3,
) -> List[FramePitch]:
    """One frame per hop whose window lies strictly inside the segment.

    Windows at or below ``threshold`` RMS skip pitch detection. Detections that are
    unvoiced or not above ``min_probability`` are emitted as silent frames.
    """
    sr = segment.sample_rate
    windows = _frame_audio(segment.samples, window_size, hop_size)
    frames: List[FramePitch] = []

    for i, window in enumerate(windows):
        t = float(segment.start_time) + float(i * hop_size) / float(sr)
        rms = frame_rms(window)
        if rms <= threshold:
            frames.append(_unvoiced(t))
            continue

        estimate = detector.estimate(window)
        if estimate.voiced and estimate.probability > min_probability:
            frames.append(
                FramePitch(
                    time=t,
                    frequency=float(estimate.frequency),
                    confidence=float(estimate.probability),
                    volume=rms,
                )
            )
        else:
            frames.append(_unvoiced(t))

    return frames


def extract_pyin_frames(
    segment: Segment,
    window_size: int = 2048,
    hop_size: int = 441,
    fmin: float = 65.41,
    fmax: float = 2093.0,
    min_probability: float = 0.3,
) -> List[FramePitch]:
    """Frame track from ``librosa.pyin`` on the same hop grid as ``extract_frames``."""
    import librosa

    y = np.asarray(segment.samples, dtype=np.float32)
    sr = segment.sample_rate

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        f0, voiced_flag, voiced_prob = librosa.pyin(
            y,
            fmin=fmin,
            fmax=fmax,
            sr=sr,
            frame_length=window_size,
            hop_length=hop_size,
            center=False,
            fill_na=0.0,
        )
    rms = librosa.feature.rms(y=y, frame_length=window_size, hop_length=hop_size, center=False)[0]

    # pyin also emits the final window that ends exactly at the buffer end
    n_frames = len(range(0, len(y) - window_size, hop_size))
    frames: List[FramePitch] = []
    for i in range(min(n_frames, len(f0))):
        t = float(segment.start_time) + float(i * hop_size) / float(sr)
        hz = float(f0[i]) if np.isfinite(f0[i]) else 0.0
        prob = float(np.nan_to_num(voiced_prob[i]))
        if hz > 0.0 and bool(voiced_flag[i]) and prob > min_probability:
            vol = float(rms[i]) if i < len(rms) else 0.0
            frames.append(FramePitch(time=t, frequency=hz, confidence=prob, volume=vol))
        else:
            frames.append(_unvoiced(t))
    return frames


def smooth_frames(
    frames: List[FramePitch],
    window: int = 7,
    isolated_max_voiced: int = 2,
) -> List[FramePitch]:
    """Median-filter voiced frequencies over a centered window.

    The window is clipped at the edges and includes the frame itself. With more
    than half the window voiced, the frequency becomes the upper-middle element of
    the sorted voiced set. A voiced frame with fewer than ``isolated_max_voiced``
    voiced frequencies around it is zeroed. Neighbours are always read from the
    unsmoothed input.
    """
    half = window // 2
    freqs = [fp.frequency for fp in frames]
    out: List[FramePitch] = []

    for i, fp in enumerate(frames):
        lo = max(0, i - half)
        hi = min(len(frames), i + half + 1)
        voiced = sorted(f for f in freqs[lo:hi] if f > 0.0)

        if len(voiced) > half:
            new_freq = voiced[len(voiced) // 2]
        elif fp.frequency > 0.0 and len(voiced) < isolated_max_voiced:
            new_freq = 0.0
        else:
            new_freq = fp.frequency

        out.append(replace(fp, frequency=new_freq) if new_freq != fp.frequency else fp)
    return out


def frame_metrics(frames: List[FramePitch]) -> List[AnalysisMetric]:
    return [AnalysisMetric(time=fp.time, energy=fp.volume, pitch_confidence=fp.confidence) for fp in frames]


def _build_detector(name: str, config: PipelineConfig, sr: int) -> BasePitchDetector:
    if name == "yin":
        return YinDetector.from_config(sr, config.stage_b.yin)
    raise ValueError(f"Unknown detector: {name}")


def extract_features(
    stage_a_out: StageAOutput,
    config: Optional[PipelineConfig] = None,
    detector: Optional[BasePitchDetector] = None,
    pipeline_logger: Optional[Any] = None,
) -> StageBOutput:
    """
    Stage B: frame extraction, smoothing and heatmap metrics.

    ``config.stage_b.detector`` selects the per-frame estimator ("yin" runs the
    built-in YIN, "pyin" delegates to librosa). An explicit ``detector`` wins.
    """
    if config is None:
        config = PipelineConfig()

    a_conf = config.stage_a
    b_conf = config.stage_b
    segment = stage_a_out.segment
    sr = segment.sample_rate

    detector_name = b_conf.detector if detector is None else type(detector).__name__
    if detector is None and b_conf.detector == "pyin":
        frames = extract_pyin_frames(
            segment,
            window_size=a_conf.window_size,
            hop_size=a_conf.hop_size,
            fmin=float(b_conf.pyin.get("fmin", 65.41)),
            fmax=float(b_conf.pyin.get("fmax", 2093.0)),
            min_probability=b_conf.min_frame_probability,
        )
    else:
        if detector is None:
            detector = _build_detector(b_conf.detector, config, sr)
        frames = extract_frames(
            segment,
            stage_a_out.threshold,
            detector,
            window_size=a_conf.window_size,
            hop_size=a_conf.hop_size,
            min_probability=b_conf.min_frame_probability,
        )

    smoothed = smooth_frames(
        frames,
        window=int(b_conf.smoothing.get("median_window", 7)),
        isolated_max_voiced=int(b_conf.smoothing.get("isolated_max_voiced", 2)),
    )

    diagnostics: Dict[str, Any] = {
        "detector": detector_name,
        "threshold": float(stage_a_out.threshold),
        "window_size": int(a_conf.window_size),
        "hop_size": int(a_conf.hop_size),
        "hop_seconds": float(a_conf.hop_size) / float(sr),
        "n_frames": len(frames),
        "voiced_frames": sum(1 for fp in frames if fp.voiced),
        "smoothed_voiced_frames": sum(1 for fp in smoothed if fp.voiced),
    }

    if pipeline_logger is not None:
        pipeline_logger.log_event(
            "stage_b",
            "frames_extracted",
            {k: diagnostics[k] for k in ("detector", "n_frames", "voiced_frames", "smoothed_voiced_frames")},
        )

    logger.debug("Stage B extracted %d frames (%d voiced)", diagnostics["n_frames"], diagnostics["voiced_frames"])

    return StageBOutput(
        segment=segment,
        frames=frames,
        smoothed_frames=smoothed,
        metrics=frame_metrics(frames),
        diagnostics=diagnostics,
    )
