import numpy as np
import pytest

from utils.waveform import (
    build_waveform,
    enhance_dynamic_range,
    normalize_db_to_peak,
    rms_reduce,
)


def test_normalize_db_maps_window_onto_unit_range() -> None:
    result = normalize_db_to_peak([-90.0, -60.0, -30.0, 0.0, 3.0])
    assert result.tolist() == pytest.approx([0.0, 0.0, 0.5, 1.0, 1.0])


def test_rms_reduce_uses_root_mean_square_per_window() -> None:
    result = rms_reduce([3.0, 4.0, 0.0, 0.0], 2)
    assert result.tolist() == pytest.approx([np.sqrt(12.5), 0.0])


def test_rms_reduce_stretches_short_input() -> None:
    result = rms_reduce([0.0, 1.0], 5)
    assert result.tolist() == pytest.approx([0.0, 0.25, 0.5, 0.75, 1.0])
    assert rms_reduce([0.4], 3).tolist() == pytest.approx([0.4, 0.4, 0.4])
    assert rms_reduce([], 4).tolist() == [0.0, 0.0, 0.0, 0.0]


def test_enhance_dynamic_range_stays_in_unit_range() -> None:
    rng = np.random.default_rng(7)
    peaks = 0.45 + rng.random(400) * 0.1
    enhanced = enhance_dynamic_range(peaks)
    assert enhanced.shape == peaks.shape
    assert enhanced.min() >= 0.0
    assert enhanced.max() <= 1.0
    # flat input gets its contrast stretched
    assert enhanced.max() - enhanced.min() > peaks.max() - peaks.min()


def test_enhance_dynamic_range_handles_constant_input() -> None:
    enhanced = enhance_dynamic_range(np.full(60, 0.3))
    assert np.all(enhanced >= 0.0)
    assert np.all(enhanced <= 1.0)
    assert enhance_dynamic_range([]).size == 0


@pytest.mark.parametrize("samples", [1, 12, 80])
def test_build_waveform_has_exact_sample_count(samples: int) -> None:
    levels = list(np.linspace(-50.0, -5.0, 500))
    waveform = build_waveform(levels, samples)
    assert len(waveform) == samples
    assert all(0.0 <= value <= 1.0 for value in waveform)
