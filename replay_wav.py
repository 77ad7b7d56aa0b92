"""Replay a WAV file through the spectral pipeline and print one record per window.

Usage:
  python replay_wav.py recording.wav                    # default 60-band list, DB_OFFSET from env
  python replay_wav.py recording.wav --offset 0         # explicit calibration offset
  python replay_wav.py recording.wav --legacy-bands     # 32-entry band list
  python replay_wav.py                                  # synthetic 1 kHz tone
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

import numpy as np

from acoustic_agent.audio.config import AudioConfig, LEGACY_BAND_EDGES
from acoustic_agent.pipeline import LatestMailbox, SpectrumPipeline


def load_wav_frames(path: Path, frame_size: int, sample_rate: int = 44100):
    """Load WAV and yield capture-sized frames as float32."""
    import scipy.io.wavfile as wavfile
    sr, audio = wavfile.read(str(path))
    if audio.dtype == np.int16:
        audio = audio.astype(np.float32) / 32768.0
    elif audio.dtype == np.int32:
        audio = audio.astype(np.float32) / 2147483648.0
    if sr != sample_rate:
        raise ValueError(f"Expected {sample_rate} Hz, got {sr} Hz. Resample the file.")
    if audio.ndim > 1:
        audio = audio.mean(axis=1)
    for i in range(0, len(audio), frame_size):
        frame = audio[i : i + frame_size]
        if len(frame) > 0:
            yield frame.astype(np.float32)


def tone_frames(frame_size: int, sample_rate: int, seconds: float = 2.0, freq: float = 1000.0):
    """Synthetic 0.5-amplitude sine, cut into frames."""
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    audio = (0.5 * np.sin(2 * np.pi * freq * t)).astype(np.float32)
    for i in range(0, len(audio), frame_size):
        yield audio[i : i + frame_size]


def main(wav_path=None, offset=None, legacy_bands=False):
    config = AudioConfig(band_edges=LEGACY_BAND_EDGES) if legacy_bands else AudioConfig()
    mailbox = LatestMailbox()
    pipeline = SpectrumPipeline(mailbox, audio_config=config, db_offset=offset)

    if wav_path:
        wav_path = Path(wav_path)
        if not wav_path.exists():
            print(f"File not found: {wav_path}")
            sys.exit(1)
        frames = load_wav_frames(wav_path, config.frame_size, config.sample_rate)
        source = str(wav_path)
    else:
        frames = tone_frames(config.frame_size, config.sample_rate)
        source = "synthetic 1 kHz tone"

    print(f"Replaying {source} ({config.frame_size}-sample frames, {len(config.band_edges)} bands)...\n")
    count = 0
    for frame in frames:
        if pipeline.process_frame(frame) is not None:
            print(mailbox.get_nowait().decode("utf-8"))
            count += 1
    print(f"\n{count} records. Done.")


if __name__ == "__main__":
    args = sys.argv[1:]
    legacy_bands = "--legacy-bands" in args
    offset = None
    if "--offset" in args:
        idx = args.index("--offset")
        if idx + 1 < len(args):
            offset = float(args[idx + 1])
            del args[idx : idx + 2]
    positional = [a for a in args if not a.startswith("--")]
    wav_path = positional[0] if positional else None
    main(wav_path=wav_path, offset=offset, legacy_bands=legacy_bands)
