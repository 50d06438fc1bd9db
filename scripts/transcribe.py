import argparse
import asyncio
import json
import logging
import os
import sys

from notescribe.pipeline.config import PipelineConfig, load_config
from notescribe.pipeline.instrumentation import PipelineLogger
from notescribe.pipeline.labels import format_pitch
from notescribe.pipeline.stage_d import write_frames_csv, write_notes_csv
from notescribe.pipeline.suggestions import generate_suggestions
from notescribe.pipeline.transcribe import ANALYZERS, transcribe

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description="Transcribe audio to music notation")
    parser.add_argument("--audio_path", required=True, help="Path to input audio file")
    parser.add_argument("--config", default=None, help="JSON file of config overrides")
    parser.add_argument("--analyzer", choices=sorted(ANALYZERS), default="yin", help="Per-frame pitch strategy")
    parser.add_argument("--sample_rate", type=int, default=None, help="Resample to this rate before analysis")
    parser.add_argument("--output_musicxml", default="output.musicxml", help="Output MusicXML path")
    parser.add_argument("--output_midi", default="output.mid", help="Output MIDI path")
    parser.add_argument("--output_notes_csv", default="notes.csv", help="Output notes CSV path")
    parser.add_argument("--output_frames_csv", default=None, help="Optional frame track CSV (for tools/plot_debug.py)")
    parser.add_argument("--output_log", default="transcription_log.json", help="Output log path")
    parser.add_argument("--log_dir", default="results", help="Directory for the JSONL run log")
    parser.add_argument(
        "--label_format",
        choices=["scientific", "note_only", "solfege"],
        default="scientific",
        help="Pitch label style used in the JSON log",
    )
    parser.add_argument("--accidentals", choices=["sharp", "flat", "double_sharp"], default="sharp")
    return parser.parse_args()


def main():
    args = parse_args()

    logger.info(f"Starting transcription for {args.audio_path}")

    if not os.path.exists(args.audio_path):
        logger.error(f"Audio file not found: {args.audio_path}")
        sys.exit(1)

    config = load_config(args.config) if args.config else PipelineConfig()
    if args.sample_rate:
        config = config.with_overrides({"stage_a": {"target_sample_rate": args.sample_rate}})

    analyzer = ANALYZERS[args.analyzer](config)
    try:
        asyncio.run(analyzer.initialize())
    except Exception as e:
        logger.error(f"Analyzer '{args.analyzer}' unavailable: {e}")
        sys.exit(1)

    pipeline_logger = PipelineLogger(base_dir=args.log_dir)
    try:
        result = transcribe(args.audio_path, config, pipeline_logger=pipeline_logger, analyzer=analyzer)
    except (RuntimeError, ValueError) as e:
        logger.error(f"Transcription failed: {e}")
        sys.exit(1)

    analysis = result.analysis_data
    logger.info(f"Detected key: {analysis.key.label} (confidence {analysis.key.confidence:.2f})")
    logger.info(f"Total notes extracted: {len(result.notes)} over {analysis.duration:.1f}s")
    if analysis.diagnostics.get("overlap_notes"):
        logger.warning(f"{analysis.diagnostics['overlap_notes']} notes fall in chunk overlaps and may be duplicated")

    if result.musicxml:
        with open(args.output_musicxml, "w", encoding="utf-8") as f:
            f.write(result.musicxml)
        logger.info(f"Written MusicXML to {args.output_musicxml}")
    else:
        logger.warning("MusicXML rendering unavailable; skipped")

    if result.midi_bytes:
        with open(args.output_midi, "wb") as f:
            f.write(result.midi_bytes)
        logger.info(f"Written MIDI to {args.output_midi}")
    else:
        logger.warning("MIDI rendering unavailable; skipped")

    write_notes_csv(result.notes, args.output_notes_csv)
    logger.info(f"Written notes CSV to {args.output_notes_csv}")
    if args.output_frames_csv:
        write_frames_csv(analysis.frames, args.output_frames_csv)
        logger.info(f"Written frames CSV to {args.output_frames_csv}")

    suggestion = generate_suggestions(result.notes)
    log_entries = {
        "audio_path": args.audio_path,
        "analyzer": args.analyzer,
        "duration_s": analysis.duration,
        "key": {"root": analysis.key.root, "scale": analysis.key.scale.value, "confidence": analysis.key.confidence},
        "diagnostics": analysis.diagnostics,
        "suggestion": suggestion.__dict__ if suggestion else None,
        "timing": pipeline_logger.timing,
        "notes": [
            dict(
                n.to_dict(),
                label=format_pitch(n.midi_pitch, args.label_format, args.accidentals).display,
            )
            for n in result.notes
        ],
    }
    with open(args.output_log, 'w', encoding="utf-8") as f:
        json.dump(log_entries, f, indent=2, default=str)
    logger.info(f"Written log to {args.output_log}")


if __name__ == "__main__":
    main()
