"""Spectral features: Welch PSD, band reduction, loudness (RMS / peak SPL)."""

import enum
import math
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from scipy.signal import welch

from acoustic_agent.audio.config import AudioConfig


class BandCalibration(str, enum.Enum):
    """How the calibration offset is applied to a band's dB value."""

    ADD = "add"  # offset + dB, same convention as loudness
    SUBTRACT = "subtract"  # offset - dB


def welch_psd(
    samples: np.ndarray,
    config: Optional[AudioConfig] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Estimate the power spectral density of a window.

    Welch's method, Hann window, segment length = FFT length, default
    half-segment overlap, no detrending (the DC bin is kept).

    Args:
        samples: Mono samples, shape (n_samples,).
        config: Audio configuration (sample rate, FFT size).

    Returns:
        (freqs, power): equal-length arrays, freqs increasing from 0 to
        Nyquist, power linear (not dB).
    """
    config = config or AudioConfig()
    data = np.asarray(samples, dtype=np.float64)
    nperseg = min(config.fft_size, len(data))
    freqs, power = welch(
        data,
        fs=config.sample_rate,
        window="hann",
        nperseg=nperseg,
        nfft=config.fft_size,
        detrend=False,
    )
    return freqs, power


def power_to_db(power: np.ndarray) -> np.ndarray:
    """10*log10(power); zero and negative powers map to -inf."""
    power = np.asarray(power, dtype=np.float64)
    out = np.full(power.shape, -np.inf)
    positive = power > 0
    out[positive] = 10.0 * np.log10(power[positive])
    return out


def format_edge(edge: float) -> str:
    """Shortest decimal form of a band edge ("20", "31.5", "22050")."""
    value = float(edge)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def calibrate_band(
    db: float,
    offset: float,
    rule: BandCalibration = BandCalibration.ADD,
) -> float:
    """Apply the calibration offset to a band maximum."""
    if BandCalibration(rule) is BandCalibration.SUBTRACT:
        return float(offset - db)
    return float(db + offset)


def reduce_bands(
    freqs: Sequence[float],
    power: Sequence[float],
    edges: Sequence[float],
    offset: float = 0.0,
    rule: BandCalibration = BandCalibration.ADD,
) -> Dict[str, float]:
    """Collapse PSD bins into bands, keeping the per-band maximum in dB.

    Bins are walked in order of increasing frequency against the band upper
    edges. A bin past the current edge closes the band and moves on by exactly
    one edge; it seeds the next band only if it also fits under that edge.
    Bands that never received a finite value are left out of the result, as
    are bins above the last edge.

    Args:
        freqs: Bin frequencies in Hz, increasing.
        power: Linear power per bin.
        edges: Band upper edges in Hz, increasing.
        offset: Calibration offset in dB.
        rule: How ``offset`` is combined with the band maximum.

    Returns:
        Mapping from ``format_edge(edge)`` to calibrated dB.
    """
    bands: Dict[str, float] = {}
    if len(edges) == 0:
        return bands
    db_values = power_to_db(power)
    e = 0
    band_max = -math.inf
    for freq, db in zip(freqs, db_values):
        if freq <= edges[e]:
            if db > band_max:
                band_max = db
            continue
        if band_max > -math.inf:
            bands[format_edge(edges[e])] = calibrate_band(band_max, offset, rule)
        band_max = -math.inf
        if e + 1 >= len(edges):
            break
        e += 1
        if freq <= edges[e]:
            band_max = db
    if band_max > -math.inf:
        bands[format_edge(edges[e])] = calibrate_band(band_max, offset, rule)
    return bands


@dataclass(frozen=True)
class Loudness:
    """Calibrated SPL of one frame; -inf for a silent frame."""

    db_avg: float
    db_peak: float


def amplitude_to_spl(amplitude: float, offset: float, p_ref: float = 0.00002) -> float:
    """20*log10(amplitude / p_ref) + offset, or -inf for a zero amplitude."""
    if amplitude <= 0:
        return -math.inf
    return 20.0 * math.log10(amplitude / p_ref) + offset


def loudness(
    frame: np.ndarray,
    offset: float,
    p_ref: float = 0.00002,
) -> Loudness:
    """RMS and peak SPL of a single callback frame."""
    data = np.asarray(frame, dtype=np.float64)
    if data.size == 0:
        return Loudness(-math.inf, -math.inf)
    rms = float(np.sqrt(np.mean(data**2)))
    peak = float(np.max(np.abs(data)))
    return Loudness(
        db_avg=amplitude_to_spl(rms, offset, p_ref),
        db_peak=amplitude_to_spl(peak, offset, p_ref),
    )
