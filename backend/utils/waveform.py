"""Numeric helpers that turn astats peak levels into display waveforms."""
from __future__ import annotations

import numpy as np

MIN_DB = -60.0
MAX_DB = 0.0


def normalize_db_to_peak(db_values: list[float] | np.ndarray) -> np.ndarray:
    """Maps dBFS peak levels onto 0..1 over a fixed -60..0 dB window."""
    values = np.asarray(db_values, dtype=float)
    clamped = np.clip(values, MIN_DB, MAX_DB)
    return (clamped - MIN_DB) / (MAX_DB - MIN_DB)


def rms_reduce(data: list[float] | np.ndarray, target_length: int) -> np.ndarray:
    """Reduces `data` to `target_length` points using RMS over each window.

    Shorter input is stretched by linear interpolation so the output length
    is always `target_length`.
    """
    values = np.asarray(data, dtype=float)
    if target_length <= 0:
        return np.zeros(0)
    if values.size == 0:
        return np.zeros(target_length)
    if values.size == target_length:
        return values.copy()
    if values.size < target_length:
        if values.size == 1:
            return np.full(target_length, values[0])
        source_x = np.linspace(0.0, 1.0, values.size)
        target_x = np.linspace(0.0, 1.0, target_length)
        return np.interp(target_x, source_x, values)

    chunk = values.size / target_length
    result = np.empty(target_length)
    for i in range(target_length):
        start = int(np.floor(i * chunk))
        end = min(int(np.floor((i + 1) * chunk)), values.size)
        window = values[start:end]
        result[i] = np.sqrt(np.mean(window * window)) if window.size else 0.0
    return result


def _stats(window: np.ndarray) -> tuple[float, float, float, float]:
    low = float(window.min())
    high = float(window.max())
    return low, high, high - low, float(window.std())


def enhance_dynamic_range(peaks: list[float] | np.ndarray) -> np.ndarray:
    """Restores visual contrast in flat waveforms.

    A coarse chunk pass stretches low variance regions around their center
    with smoothed edges, then a sliding window pass does the same at finer
    granularity, and the result is min-max normalized.
    """
    original = np.asarray(peaks, dtype=float)
    if original.size == 0:
        return original.copy()

    enhanced = original.copy()
    size = original.size

    chunk_size = max(50, size // 20)
    for start in range(0, size, chunk_size):
        end = min(size, start + chunk_size)
        low, high, spread, std = _stats(original[start:end])
        if spread < 0.6 and std < 0.25:
            factor = min(4.0, 0.4 / max(std, 0.01))
            center = (low + high) / 2
            index = np.arange(start, end)
            edge_distance = np.minimum(index - start, end - index)
            smoothing = np.minimum(1.0, edge_distance / 5.0)
            target = center + (enhanced[start:end] - center) * factor
            enhanced[start:end] += (target - enhanced[start:end]) * smoothing * 0.9

    window_size = min(100, max(20, size // 10))
    half = window_size // 2
    for i in range(size):
        start = max(0, i - half)
        end = min(size, i + half)
        low, high, spread, std = _stats(enhanced[start:end])
        if spread <= 0.6 and std <= 0.25:
            factor = min(2.5, 0.3 / max(std, 0.02))
            center = (low + high) / 2
            target = center + (enhanced[i] - center) * factor
            smoothing = min(1.0, min(i - start, end - i) / 2.0)
            enhanced[i] += (target - enhanced[i]) * smoothing * 0.8

    low = float(enhanced.min())
    spread = float(enhanced.max()) - low
    if spread > 0:
        enhanced = (enhanced - low) / spread
    return np.clip(enhanced, 0.0, 1.0)


def build_waveform(db_values: list[float], samples: int) -> list[float]:
    linear = normalize_db_to_peak(db_values)
    reduced = rms_reduce(linear, samples)
    return [round(float(value), 6) for value in enhance_dynamic_range(reduced)]
