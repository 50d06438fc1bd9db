from __future__ import annotations

import asyncio
import copy
import importlib
import logging
import time
from typing import Any, Dict, List, Optional

import numpy as np

from .config import PipelineConfig
from .instrumentation import PipelineLogger
from .models import AnalysisData, AnalyzerState, NoteEvent, Segment, TranscriptionResult
from .stage_a import InvalidSegmentError, load_audio, make_segment, plan_chunks, prepare_segment
from .stage_b import extract_features
from .stage_c import apply_theory, estimate_key
from .stage_d import finalize_notes, quantize_and_render

logger = logging.getLogger(__name__)


class AnalyzerNotReadyError(RuntimeError):
    """Raised when analysis is requested before ``initialize()`` succeeded."""


def _import_backend(name: str) -> Any:
    return importlib.import_module(name)


def _add_timing(timings: Optional[Dict[str, float]], stage: str, t0: float) -> None:
    if timings is not None:
        timings[stage] = timings.get(stage, 0.0) + (time.perf_counter() - t0)


def run_segment(
    segment: Segment,
    config: Optional[PipelineConfig] = None,
    pipeline_logger: Optional[PipelineLogger] = None,
    timings: Optional[Dict[str, float]] = None,
) -> AnalysisData:
    """
    Stages A -> D over one segment. Raises InvalidSegmentError for unusable input.

    ``timings`` (if given) accumulates wall-clock seconds per stage.
    """
    if config is None:
        config = PipelineConfig()

    t0 = time.perf_counter()
    stage_a_out = prepare_segment(segment, config)
    _add_timing(timings, "stage_a", t0)

    t0 = time.perf_counter()
    stage_b_out = extract_features(stage_a_out, config, pipeline_logger=pipeline_logger)
    _add_timing(timings, "stage_b", t0)

    t0 = time.perf_counter()
    key, raw_notes = apply_theory(stage_b_out, config)
    _add_timing(timings, "stage_c", t0)

    t0 = time.perf_counter()
    cleaned, notes = finalize_notes(raw_notes, stage_b_out.frames, segment.start_time, config)
    _add_timing(timings, "stage_d", t0)

    diagnostics = dict(stage_b_out.diagnostics)
    diagnostics.update(
        {
            "key": key.label,
            "key_confidence": key.confidence,
            "notes_before_cleanup": len(raw_notes),
            "notes_after_cleanup": len(cleaned),
        }
    )
    return AnalysisData(
        start_time=segment.start_time,
        end_time=segment.resolved_end_time,
        sample_rate=segment.sample_rate,
        key=key,
        frames=stage_b_out.frames,
        smoothed_frames=stage_b_out.smoothed_frames,
        metrics=stage_b_out.metrics,
        raw_notes=raw_notes,
        notes=notes,
        diagnostics=diagnostics,
    )


def _empty_analysis(segment: Segment, reason: str) -> AnalysisData:
    return AnalysisData(
        start_time=segment.start_time,
        end_time=segment.resolved_end_time,
        sample_rate=segment.sample_rate,
        diagnostics={"invalid_input": reason},
    )


def analyze_segment_detailed(
    segment: Segment,
    config: Optional[PipelineConfig] = None,
    pipeline_logger: Optional[PipelineLogger] = None,
    timings: Optional[Dict[str, float]] = None,
) -> AnalysisData:
    """Like ``run_segment`` but invalid input yields an empty analysis instead of raising."""
    try:
        return run_segment(segment, config, pipeline_logger=pipeline_logger, timings=timings)
    except InvalidSegmentError as exc:
        logger.debug("Skipping segment at %.3fs: %s", segment.start_time, exc)
        return _empty_analysis(segment, str(exc))


def analyze_segment(segment: Segment, config: Optional[PipelineConfig] = None) -> List[NoteEvent]:
    """Segment -> notes with the reference YIN pipeline. Never raises on bad input."""
    return analyze_segment_detailed(segment, config).notes


# ---------------------------------------------------------------------------
# Analyzer strategies
# ---------------------------------------------------------------------------
class SegmentAnalyzer:
    """
    Segment -> NoteEvent strategy with an explicit lifecycle.

    A fresh analyzer is UNINITIALIZED; ``await analyzer.initialize()`` moves it to
    READY, or to FAILED (re-raising) when its backend cannot be set up.
    """

    name = "base"

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = copy.deepcopy(config) if config is not None else PipelineConfig()
        self._state = AnalyzerState.UNINITIALIZED

    @property
    def state(self) -> AnalyzerState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is AnalyzerState.READY

    async def initialize(self) -> "SegmentAnalyzer":
        if self._state is AnalyzerState.READY:
            return self
        try:
            await self._setup()
        except Exception:
            self._state = AnalyzerState.FAILED
            logger.exception("%s analyzer failed to initialize", self.name)
            raise
        self._state = AnalyzerState.READY
        return self

    async def _setup(self) -> None:
        self.config.stage_b.detector = "yin"

    def _require_ready(self) -> None:
        if self._state is not AnalyzerState.READY:
            raise AnalyzerNotReadyError(f"{self.name} analyzer is {self._state.value}; await initialize() first")

    def analyze_detailed(
        self,
        segment: Segment,
        pipeline_logger: Optional[PipelineLogger] = None,
        timings: Optional[Dict[str, float]] = None,
    ) -> AnalysisData:
        self._require_ready()
        return analyze_segment_detailed(segment, self.config, pipeline_logger=pipeline_logger, timings=timings)

    def analyze(self, segment: Segment) -> List[NoteEvent]:
        return self.analyze_detailed(segment).notes


class YinSegmentAnalyzer(SegmentAnalyzer):
    """Reference pipeline: built-in YIN per frame."""

    name = "yin"


class PyinSegmentAnalyzer(SegmentAnalyzer):
    """Frame pitch from ``librosa.pyin``; key, segmentation and cleanup are shared."""

    name = "pyin"

    async def _setup(self) -> None:
        try:
            await asyncio.to_thread(_import_backend, "librosa")
        except Exception as exc:
            raise RuntimeError(f"librosa unavailable: {exc}") from exc
        self.config.stage_b.detector = "pyin"


ANALYZERS = {
    YinSegmentAnalyzer.name: YinSegmentAnalyzer,
    PyinSegmentAnalyzer.name: PyinSegmentAnalyzer,
}


# ---------------------------------------------------------------------------
# Long-form analysis
# ---------------------------------------------------------------------------
def _count_overlap_notes(notes: List[NoteEvent], chunks: List[tuple]) -> int:
    regions = []
    for (start, length), (next_start, _) in zip(chunks, chunks[1:]):
        regions.append((next_start, start + length))
    return sum(1 for n in notes if any(lo <= n.start_time < hi for lo, hi in regions))


def transcribe_long(
    audio: np.ndarray,
    sample_rate: int,
    config: Optional[PipelineConfig] = None,
    analyzer: Optional[SegmentAnalyzer] = None,
    pipeline_logger: Optional[PipelineLogger] = None,
    timings: Optional[Dict[str, float]] = None,
) -> AnalysisData:
    """
    Analyse a whole recording in overlapping chunks.

    Each chunk is analysed independently with its offset as ``start_time``; a chunk
    that raises contributes no notes. Results are concatenated in chunk order. Notes
    inside overlap regions are not reconciled and may be duplicated at seams; their
    count is reported as ``diagnostics["overlap_notes"]``.
    """
    if config is None:
        config = analyzer.config if analyzer is not None else PipelineConfig()

    duration = float(len(audio)) / float(sample_rate) if sample_rate > 0 else 0.0
    chunks = plan_chunks(duration, config.chunking)

    notes: List[NoteEvent] = []
    frames = []
    smoothed = []
    metrics = []
    raw_notes = []
    failed_chunks: List[int] = []

    for idx, (start, length) in enumerate(chunks):
        segment = make_segment(audio, sample_rate, start, length)
        try:
            if analyzer is not None:
                chunk = analyzer.analyze_detailed(segment, pipeline_logger=pipeline_logger, timings=timings)
            else:
                chunk = analyze_segment_detailed(segment, config, pipeline_logger=pipeline_logger, timings=timings)
        except Exception:
            logger.exception("Chunk %d (%.1fs-%.1fs) failed; substituting no notes", idx, start, start + length)
            failed_chunks.append(idx)
            continue
        notes.extend(chunk.notes)
        frames.extend(chunk.frames)
        smoothed.extend(chunk.smoothed_frames)
        metrics.extend(chunk.metrics)
        raw_notes.extend(chunk.raw_notes)

    overlap_notes = _count_overlap_notes(notes, chunks)
    if overlap_notes:
        logger.warning(
            "%d notes start inside chunk overlap regions and were not de-duplicated", overlap_notes
        )

    diagnostics: Dict[str, Any] = {
        "chunks": [{"start": start, "length": length} for start, length in chunks],
        "failed_chunks": failed_chunks,
        "overlap_notes": overlap_notes,
        "analyzer": analyzer.name if analyzer is not None else config.stage_b.detector,
    }
    if pipeline_logger is not None:
        pipeline_logger.log_event("analysis", "chunks_done", diagnostics)

    return AnalysisData(
        start_time=0.0,
        end_time=duration,
        sample_rate=int(sample_rate),
        key=estimate_key(frames, config.stage_c.chroma_min_confidence),
        frames=frames,
        smoothed_frames=smoothed,
        metrics=metrics,
        raw_notes=raw_notes,
        notes=notes,
        diagnostics=diagnostics,
    )


def transcribe(
    audio_path: str,
    config: Optional[PipelineConfig] = None,
    pipeline_logger: Optional[PipelineLogger] = None,
    analyzer: Optional[SegmentAnalyzer] = None,
) -> TranscriptionResult:
    """
    High-level entry point: load a file, analyse it in chunks and render the score.

    A supplied ``analyzer`` must already be READY; callers await its ``initialize()``.
    """
    if config is None:
        config = analyzer.config if analyzer is not None else PipelineConfig()
    if pipeline_logger is None:
        pipeline_logger = PipelineLogger()
    if analyzer is not None and not analyzer.ready:
        raise AnalyzerNotReadyError(f"{analyzer.name} analyzer is {analyzer.state.value}; await initialize() first")

    pipeline_logger.emit_config("pipeline", config, {"audio_path": audio_path})
    t_start = time.perf_counter()

    with pipeline_logger.timer("load", audio_path=audio_path):
        audio, sr = load_audio(audio_path, target_sr=config.stage_a.target_sample_rate)

    timings: Dict[str, float] = {}
    analysis = transcribe_long(audio, sr, config, analyzer=analyzer, pipeline_logger=pipeline_logger, timings=timings)

    t0 = time.perf_counter()
    result = quantize_and_render(analysis.notes, analysis, config, pipeline_logger)
    timings["render"] = time.perf_counter() - t0

    for stage, seconds in timings.items():
        pipeline_logger.record_timing(stage, seconds)
    pipeline_logger.record_timing(
        "total",
        time.perf_counter() - t_start,
        {"notes": len(result.notes), "key": analysis.key.label},
    )
    pipeline_logger.finalize()
    return result
