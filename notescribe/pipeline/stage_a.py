"""
Stage A — Segment Preparation

This module handles audio loading, segment construction and validation,
the coarse noise-floor threshold, and long-form chunk planning.
"""

from __future__ import annotations

import logging
import math
import warnings
from typing import List, Optional, Tuple, Union

import librosa
import numpy as np

from .config import ChunkingConfig, PipelineConfig, StageAConfig
from .models import Segment, StageAOutput

logger = logging.getLogger(__name__)

# Public constants (exported for tests)
THRESHOLD_FLOOR = 0.005
THRESHOLD_RATIO = 0.2
RMS_STRIDE = 100


class InvalidSegmentError(ValueError):
    """Segment cannot be analysed (empty, non-finite, bad rate, or shorter than one window)."""


def _resolve_stage_a(config: Optional[Union[PipelineConfig, StageAConfig]]) -> StageAConfig:
    if config is None:
        return PipelineConfig().stage_a
    if isinstance(config, StageAConfig):
        return config
    return config.stage_a


def load_audio(
    audio_path: str,
    target_sr: int = 44100,
    start_offset: float = 0.0,
    max_duration: Optional[float] = None,
) -> Tuple[np.ndarray, int]:
    """Decode ``audio_path`` to mono float32 at ``target_sr``."""
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            audio, sr = librosa.load(
                audio_path,
                sr=target_sr,
                mono=True,
                offset=max(0.0, float(start_offset or 0.0)),
                duration=max_duration,
            )
    except Exception as e:
        raise RuntimeError(f"Stage A failed to load audio: {e}")

    if len(audio) == 0:
        raise ValueError("Audio too short (empty)")

    return np.asarray(audio, dtype=np.float32), int(sr)


def make_segment(
    audio: np.ndarray,
    sample_rate: int,
    start_time: float = 0.0,
    duration: Optional[float] = None,
) -> Segment:
    """Cut ``[start_time, start_time + duration)`` out of a full recording.

    Sample bounds are floored and clipped to the buffer, so a segment reaching past
    the end of the recording is simply shorter.
    """
    if sample_rate <= 0:
        return Segment(samples=np.zeros(0, dtype=np.float32), sample_rate=int(sample_rate), start_time=start_time)

    total = len(audio)
    start_sample = int(math.floor(start_time * sample_rate))
    if duration is None:
        end_sample = total
    else:
        end_sample = int(math.floor((start_time + duration) * sample_rate))
    lo = max(0, start_sample)
    hi = min(total, end_sample)
    samples = np.array(audio[lo:hi], dtype=np.float32, copy=True) if hi > lo else np.zeros(0, dtype=np.float32)
    samples.setflags(write=False)

    end_time = start_time + duration if duration is not None else float(total) / float(sample_rate)
    return Segment(samples=samples, sample_rate=int(sample_rate), start_time=float(start_time), end_time=float(end_time))


def validate_segment(segment: Segment, window_size: int) -> None:
    """Raise ``InvalidSegmentError`` when the segment cannot produce a single frame."""
    if segment.samples is None or len(segment.samples) == 0:
        raise InvalidSegmentError("empty sample buffer")
    if segment.sample_rate <= 0:
        raise InvalidSegmentError(f"non-positive sample rate: {segment.sample_rate}")
    if window_size > len(segment.samples):
        raise InvalidSegmentError(
            f"window ({window_size}) larger than segment ({len(segment.samples)} samples)"
        )
    if not np.all(np.isfinite(segment.samples)):
        raise InvalidSegmentError("sample buffer contains NaN or Inf")


def adaptive_threshold(
    samples: np.ndarray,
    stride: int = RMS_STRIDE,
    floor: float = THRESHOLD_FLOOR,
    ratio: float = THRESHOLD_RATIO,
) -> float:
    """Energy gate from a strided RMS estimate: ``max(floor, ratio * rms)``.

    Only decides which frames bother running pitch estimation; the voicing decision
    belongs to the pitch estimator.
    """
    y = np.asarray(samples, dtype=np.float64).reshape(-1)
    if y.size == 0:
        return float(floor)
    sampled = y[:: max(1, int(stride))]
    avg_rms = float(np.sqrt(np.mean(sampled * sampled)))
    return float(max(floor, avg_rms * ratio))


def prepare_segment(
    segment: Segment,
    config: Optional[Union[PipelineConfig, StageAConfig]] = None,
) -> StageAOutput:
    """
    Stage A main entry point.

    1. Validate the segment (raises InvalidSegmentError).
    2. Estimate the adaptive energy threshold.
    """
    a_conf = _resolve_stage_a(config)
    validate_segment(segment, a_conf.window_size)
    threshold = adaptive_threshold(
        segment.samples,
        stride=a_conf.rms_stride,
        floor=a_conf.threshold_floor,
        ratio=a_conf.threshold_ratio,
    )
    logger.debug(
        "Stage A ready",
        extra={"segment_start": segment.start_time, "samples": len(segment.samples), "threshold": threshold},
    )
    return StageAOutput(segment=segment, threshold=threshold)


def plan_chunks(duration_sec: float, chunking: Optional[ChunkingConfig] = None) -> List[Tuple[float, float]]:
    """Overlapping (start, length) windows covering ``[0, duration_sec)``.

    Consecutive chunks advance by ``chunk_seconds - overlap_seconds``; the last chunk
    is the one that reaches the end of the recording.
    """
    chunking = chunking or ChunkingConfig()
    if duration_sec <= 0:
        return []

    step = chunking.chunk_seconds - chunking.overlap_seconds
    chunks: List[Tuple[float, float]] = []
    start = 0.0
    while True:
        length = min(chunking.chunk_seconds, duration_sec - start)
        chunks.append((start, length))
        if start + chunking.chunk_seconds >= duration_sec:
            break
        start += step
    return chunks
