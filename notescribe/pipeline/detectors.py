# notescribe/pipeline/detectors.py
from __future__ import annotations

import math
from typing import Any, Dict, Optional

import numpy as np
import scipy.signal

from .models import PitchEstimate


UNVOICED = PitchEstimate(frequency=-1.0, probability=0.0)


# --------------------------------------------------------------------------------------
# Utility
# --------------------------------------------------------------------------------------
def hz_to_midi(hz: float) -> float:
    if hz <= 0.0:
        return 0.0
    return 69.0 + 12.0 * math.log2(hz / 440.0)


def midi_to_hz(m: float) -> float:
    """Convert MIDI pitch to frequency in Hz."""
    return 440.0 * 2 ** ((float(m) - 69.0) / 12.0)


def round_half_up(x: float) -> float:
    """Nearest integer with .5 going up (-0.5 -> 0, 0.5 -> 1), unlike Python's banker's round."""
    return float(math.floor(x + 0.5))


def frame_rms(window: np.ndarray) -> float:
    if window.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(window, dtype=np.float64))))


def _frame_audio(y: np.ndarray, frame_length: int, hop_length: int) -> np.ndarray:
    """Strided (n_frames, frame_length) view over every window that fits strictly
    before the end of ``y``; no padding."""
    y = np.ascontiguousarray(y, dtype=np.float64).reshape(-1)
    if len(y) <= frame_length or hop_length <= 0:
        return np.zeros((0, frame_length), dtype=np.float64)

    n_frames = len(range(0, len(y) - frame_length, hop_length))
    return np.lib.stride_tricks.as_strided(
        y,
        shape=(n_frames, frame_length),
        strides=(y.strides[0] * hop_length, y.strides[0]),
        writeable=False,
    )


# --------------------------------------------------------------------------------------
# YIN core
# --------------------------------------------------------------------------------------
def difference_function(buffer: np.ndarray, w: int) -> np.ndarray:
    """d(tau) = sum_{j<w} (x[j] - x[j+tau])^2 for tau in [0, w).

    Expanded as energy(x[0:w]) + energy(x[tau:tau+w]) - 2 * xcorr(tau), with the
    cross-correlation done by FFT.
    """
    x = np.asarray(buffer, dtype=np.float64)
    if w <= 0:
        return np.zeros(0, dtype=np.float64)

    head = x[:w]
    energy_head = float(np.dot(head, head))

    sq_cum = np.concatenate(([0.0], np.cumsum(x * x)))
    taus = np.arange(w)
    energy_shift = sq_cum[taus + w] - sq_cum[taus]

    xcorr = scipy.signal.correlate(x[: 2 * w - 1], head, mode="valid", method="fft")[:w]
    diff = energy_head + energy_shift - 2.0 * xcorr
    # FFT round-off can leave tiny negatives where the true value is 0
    return np.maximum(diff, 0.0)


def cumulative_mean_normalized_difference(diff: np.ndarray) -> np.ndarray:
    """CMNDF with d'(0) = 1 and d'(tau) = 1 while the running sum is still zero."""
    out = np.ones_like(diff, dtype=np.float64)
    if diff.size <= 1:
        return out
    running = np.cumsum(diff[1:])
    taus = np.arange(1, diff.size, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        normalized = diff[1:] * taus / running
    out[1:] = np.where(running == 0.0, 1.0, normalized)
    return out


def _parabolic_lag(cmnd: np.ndarray, tau: int) -> float:
    if not 0 < tau < cmnd.size - 1:
        return float(tau)
    s0, s1, s2 = cmnd[tau - 1], cmnd[tau], cmnd[tau + 1]
    denominator = 2.0 * (2.0 * s1 - s2 - s0)
    if abs(denominator) > 1e-6:
        return float(tau) + float((s2 - s0) / denominator)
    return float(tau)


def yin_pitch(
    buffer: np.ndarray,
    sample_rate: int,
    *,
    threshold: float = 0.15,
    fallback_threshold: float = 0.6,
    fmin: float = 27.5,
    fmax: float = 4186.0,
) -> PitchEstimate:
    """Estimate the fundamental of one analysis window with YIN.

    Returns ``UNVOICED`` (frequency -1, probability 0) for silence, pure noise and
    buffers too short to hold a lag inside the musical search range.
    """
    x = np.asarray(buffer, dtype=np.float64).reshape(-1)
    if sample_rate <= 0 or x.size < 4:
        return UNVOICED

    w = x.size // 2
    min_tau = max(2, int(math.floor(sample_rate / fmax)))
    max_tau = min(w - 2, int(math.floor(sample_rate / fmin)))
    if max_tau <= min_tau:
        return UNVOICED

    cmnd = cumulative_mean_normalized_difference(difference_function(x, w))

    # First dip under the absolute threshold, walked down to its local minimum.
    # Favors the smallest lag (highest plausible frequency).
    tau_estimate = -1
    search = cmnd[min_tau:max_tau]
    below = np.flatnonzero(search < threshold)
    if below.size:
        tau = min_tau + int(below[0])
        while tau + 1 < max_tau and cmnd[tau + 1] < cmnd[tau]:
            tau += 1
        tau_estimate = tau
    else:
        best = int(np.argmin(search))
        if search[best] < fallback_threshold:
            tau_estimate = min_tau + best

    if tau_estimate < 0:
        return UNVOICED

    lag = _parabolic_lag(cmnd, tau_estimate)
    if lag <= 0.0:
        return UNVOICED

    probability = 1.0 - min(1.0, float(cmnd[tau_estimate]))
    return PitchEstimate(frequency=float(sample_rate) / lag, probability=probability)


# --------------------------------------------------------------------------------------
# Detector base + implementations
# --------------------------------------------------------------------------------------
class BasePitchDetector:
    """
    Per-window pitch estimator used by Stage B.
    Must implement: estimate(window) -> PitchEstimate
    """

    def __init__(
        self,
        sr: int,
        fmin: float = 27.5,
        fmax: float = 4186.0,
        threshold: float = 0.15,
        **kwargs: Any,  # absorb unknown config keys safely
    ):
        self.sr = int(sr)
        self.fmin = float(fmin)
        self.fmax = float(fmax)
        self.threshold = float(threshold)
        self.kwargs: Dict[str, Any] = kwargs

    def estimate(self, window: np.ndarray) -> PitchEstimate:
        raise NotImplementedError


class YinDetector(BasePitchDetector):
    """Reference YIN with a musical search range and a fallback global-minimum gate."""

    def __init__(self, sr: int, fallback_threshold: float = 0.6, **kwargs: Any):
        super().__init__(sr, **kwargs)
        self.fallback_threshold = float(fallback_threshold)

    @classmethod
    def from_config(cls, sr: int, yin_conf: Optional[Dict[str, Any]] = None) -> "YinDetector":
        conf = dict(yin_conf or {})
        return cls(
            sr,
            fmin=float(conf.pop("fmin", 27.5)),
            fmax=float(conf.pop("fmax", 4186.0)),
            threshold=float(conf.pop("threshold", 0.15)),
            fallback_threshold=float(conf.pop("fallback_threshold", 0.6)),
            **conf,
        )

    def estimate(self, window: np.ndarray) -> PitchEstimate:
        return yin_pitch(
            window,
            self.sr,
            threshold=self.threshold,
            fallback_threshold=self.fallback_threshold,
            fmin=self.fmin,
            fmax=self.fmax,
        )
