import argparse
import logging
import os

import matplotlib
import matplotlib.pyplot as plt
import numpy as np
import librosa
import librosa.display
import pandas as pd

logger = logging.getLogger(__name__)


def plot_frame_debug(wav_path, frames_path, notes_path=None, output_path=None):
    """
    Spectrogram with the frame pitch track (and optionally note boxes) overlaid.

    ``frames_path`` is a CSV with time,frequency,confidence columns as written by
    ``stage_d.write_frames_csv``; ``notes_path`` one from ``write_notes_csv``.
    """
    logger.info("Loading audio: %s", wav_path)
    y, sr = librosa.load(wav_path, sr=None, mono=True)

    df = pd.read_csv(frames_path)
    voiced = df[df["frequency"] > 0]

    fig, ax = plt.subplots(figsize=(12, 8))

    D = librosa.amplitude_to_db(np.abs(librosa.stft(y)), ref=np.max)
    img = librosa.display.specshow(D, sr=sr, x_axis='time', y_axis='log', ax=ax)
    fig.colorbar(img, ax=ax, format='%+2.0f dB')

    ax.scatter(
        voiced["time"],
        voiced["frequency"],
        c=voiced["confidence"],
        cmap="cool",
        vmin=0.0,
        vmax=1.0,
        s=6,
        label="Frame F0",
    )

    if notes_path:
        notes = pd.read_csv(notes_path)
        for _, row in notes.iterrows():
            hz = librosa.midi_to_hz(row["midi_pitch"])
            ax.hlines(hz, row["start_time"], row["end_time"], colors="white", linewidth=3, alpha=0.8)
            ax.text(row["start_time"], hz * 1.03, row["note_name"], color="white", fontsize=7)

    ax.set_title(f'Frame pitch debug: {os.path.basename(wav_path)}')
    ax.legend(loc='upper right')
    fig.tight_layout()

    if output_path:
        fig.savefig(output_path)
        logger.info("Plot saved to %s", output_path)
    else:
        plt.show()
    return fig


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Visualize the frame pitch track")
    parser.add_argument("wav_path", help="Path to input audio file")
    parser.add_argument("frames_path", help="Frames CSV (time,frequency,confidence,volume)")
    parser.add_argument("--notes", help="Notes CSV to overlay", default=None)
    parser.add_argument("--output", "-o", help="Output image path", default="debug_plot.png")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    if args.output:
        matplotlib.use("Agg")
    plot_frame_debug(args.wav_path, args.frames_path, args.notes, args.output)
