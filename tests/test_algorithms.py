import numpy as np
import pytest

from peaktrack_smt import algorithms
from peaktrack_smt.simulation import render_frame


def _window(p_true, centre=(20, 20), radius=4):
    xs_grid, ys_grid = np.meshgrid(np.arange(centre[0] - radius, centre[0] + radius + 1),
                                   np.arange(centre[1] - radius, centre[1] + radius + 1))
    xs = np.column_stack([xs_grid.ravel(), ys_grid.ravel()]).astype(float)
    ys = algorithms.gaussian_formula(xs[:, 0], xs[:, 1], p_true)
    return xs, ys


def test_gauss_jordan_matches_numpy_solve():
    left = np.array([[2.0, 1.0, -1.0], [-3.0, -1.0, 2.0], [-2.0, 1.0, 2.0]])
    right = np.array([[8.0], [-11.0], [-3.0]])
    expected = np.linalg.solve(left, right)

    algorithms.gauss_jordan(left, right)
    assert np.allclose(right, expected)
    assert np.allclose(left, np.eye(3))


def test_gauss_jordan_inverts_with_pivoting():
    matrix = np.array([[0.0, 2.0], [3.0, 1.0]])
    inverse = np.eye(2)
    algorithms.gauss_jordan(matrix.copy(), inverse)
    assert np.allclose(inverse, np.linalg.inv(matrix))


def test_fit_recovers_noiseless_gaussian():
    p_true = np.array([10.0, 200.0, 20.3, 19.6, 1.5])
    xs, ys = _window(p_true)

    p, e, chi_sq, iterations = algorithms.fit_gaussian(xs, ys, [12.0, 180.0, 20.0, 20.0, 1.0])

    assert np.all(np.abs(p - p_true) < 1e-3)
    assert chi_sq < 1e-6
    assert 1 <= iterations <= 50
    assert np.all(np.isfinite(e))


def test_fit_keeps_fixed_parameters():
    p_true = np.array([5.0, 100.0, 19.8, 20.4, 1.2])
    xs, ys = _window(p_true)

    vary = [True, True, True, True, False]
    p, e, _, _ = algorithms.fit_gaussian(xs, ys, [4.0, 90.0, 20.0, 20.0, 1.2], vary)

    assert p[4] == 1.2
    assert e[4] == 0.0
    assert np.all(np.abs(p[:4] - p_true[:4]) < 1e-3)


def test_fit_errors_reflect_noise(rng):
    p_true = np.array([10.0, 200.0, 20.0, 20.0, 1.5])
    xs, ys = _window(p_true)
    ys = ys + rng.normal(0, 2.0, ys.shape)

    p, e, _, _ = algorithms.fit_gaussian(xs, ys, [10.0, 190.0, 20.0, 20.0, 1.0])

    assert np.all(np.isfinite(e))
    assert np.all(e > 0)
    assert abs(p[2] - 20.0) < 5 * e[2] + 0.05
    assert abs(p[3] - 20.0) < 5 * e[3] + 0.05


def test_initial_guess_fills_only_missing_entries():
    xs, ys = _window([10.0, 200.0, 21.0, 19.0, 1.5])
    p = algorithms.initial_guess(xs, ys, [np.nan] * 4 + [1.0])

    assert p[0] == pytest.approx(ys.min())
    assert p[1] == pytest.approx(ys.max() - ys.min())
    assert (p[2], p[3]) == (21.0, 19.0)
    assert p[4] == 1.0


def test_initial_guess_uses_centre_value_for_supplied_position():
    xs, ys = _window([10.0, 200.0, 20.0, 20.0, 1.5])
    p = algorithms.initial_guess(xs, ys, [np.nan, np.nan, 21.0, 20.0, 1.5], centre_value=150.0)
    assert p[0] == pytest.approx(ys.min())
    assert p[1] == pytest.approx(150.0 - ys.min())
    assert (p[2], p[3]) == (21.0, 20.0)


def test_initial_guess_swaps_roles_for_negative_peaks():
    xs, ys = _window([0.0, -100.0, 18.0, 22.0, 1.5])
    p = algorithms.initial_guess(xs, ys, [np.nan] * 5, find_negative=True, psf_width=2.0)

    assert p[0] == pytest.approx(ys.max())
    assert p[1] == pytest.approx(ys.min() - ys.max())
    assert (p[2], p[3]) == (18.0, 22.0)
    assert p[4] == 2.0


def test_fit_recovers_negative_peak():
    p_true = np.array([50.0, -40.0, 20.2, 20.1, 1.4])
    xs, ys = _window(p_true)
    p0 = algorithms.initial_guess(xs, ys, [np.nan, np.nan, np.nan, np.nan, 1.0], find_negative=True)

    p, _, _, _ = algorithms.fit_gaussian(xs, ys, p0)
    assert np.all(np.abs(p - p_true) < 1e-3)


def test_r_squared_is_one_for_exact_model():
    p_true = [10.0, 200.0, 20.0, 20.0, 1.5]
    xs, ys = _window(p_true)
    assert algorithms.r_squared(xs, ys, p_true) == pytest.approx(1.0)


def test_r_squared_undefined_for_flat_data():
    xs, _ = _window([0.0, 1.0, 20.0, 20.0, 1.0])
    assert np.isnan(algorithms.r_squared(xs, np.full(len(xs), 3.0), [3.0, 0.0, 20.0, 20.0, 1.0]))


def test_dog_filter_peaks_on_spot():
    frame = render_frame((40, 30), [(12, 17)], 200.0, 1.5, 10.0)
    filtered = algorithms.dog_filter(frame, 2.0)

    assert filtered.shape == frame.shape
    y, x = np.unravel_index(np.argmax(filtered), filtered.shape)
    assert (x, y) == (12, 17)
    # Flat background cancels out
    assert abs(filtered[0, 0]) < 1e-3
