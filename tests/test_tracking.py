import numpy as np
import pytest

from peaktrack_smt import simulation, tracking
from peaktrack_smt.images import ImageData
from peaktrack_smt.parameters import Parameters
from peaktrack_smt.spots import Spots
from peaktrack_smt.status import TrackingStatus


def _scenario_params(**overrides):
    settings = dict(num_procs=1, num_frames=5, frame_size=(64, 64), spot_height=200.0,
                    spot_width=1.5, bg_mean=10.0, threshold=50, minimum_distance=4,
                    max_difference=[np.nan, np.nan, 3.0, 3.0, np.nan, 1],
                    min_trajectory_length=3)
    settings.update(overrides)
    return Parameters(**settings)


def _scenario(**overrides):
    params = _scenario_params(**overrides)
    image, path = simulation.simulate_linear(params, (20, 20), (24, 24))
    return params, image, path


@pytest.mark.parametrize("num_procs", [1, 3])
def test_single_spot_moving_diagonally(num_procs):
    params, image, path = _scenario(num_procs=num_procs)
    status = TrackingStatus()

    all_spots, trajs = tracking.track(image, params, status)

    assert [s.num_spots for s in all_spots] == [1] * 5
    assert [s.frame for s in all_spots] == list(range(5))
    assert len(trajs) == 1
    traj = trajs[0]
    assert traj.length == 5
    assert traj.frames == [0, 1, 2, 3, 4]
    assert np.all(np.abs(np.array(traj.path) - path) < 0.2)
    assert status.frames_done == 5

    table = traj.columns()
    assert set(table) == {"T", "x", "y", "intensity", "uncorrected_intensity"}
    assert np.all(table["intensity"] > 0)


def test_fitted_peaks_carry_quality_and_intensity():
    params, image, _ = _scenario()
    frame_spots, num_success, num_total = tracking.track_frame(image[0], 0, params)

    assert (num_success, num_total) == (1, 1)
    peak = frame_spots.peak(0)
    assert peak.t == 0
    assert peak.sigma == pytest.approx(1.5, abs=1e-3)
    assert peak.height == pytest.approx(200.0, abs=1e-2)
    assert peak.r_squared > 0.999
    assert np.isfinite(peak.intensity)
    assert peak.median_background > 10.0


def test_detection_only_keeps_pixel_positions():
    params, image, _ = _scenario(fit_peaks=False, integrate=False)
    frame_spots, num_success, num_total = tracking.track_frame(image[1], 1, params)
    assert (num_success, num_total) == (0, 0)
    assert frame_spots.positions.tolist() == [[21.0, 21.0]]
    assert np.isnan(frame_spots.intensity[0])


def test_dog_filtered_detection():
    params, image, path = _scenario(use_dog_filter=True, threshold=5)
    all_spots, trajs = tracking.track(image, params)
    assert [s.num_spots for s in all_spots] == [1] * 5
    assert len(trajs) == 1
    assert np.all(np.abs(np.array(trajs[0].path) - path) < 0.2)


def test_analysis_region_restricts_every_frame():
    params, image, _ = _scenario(region=(30, 30, 34, 34))
    all_spots, trajs = tracking.track(image, params)
    assert all(s.num_spots == 0 for s in all_spots)
    assert trajs == []


@pytest.mark.parametrize("num_procs", [1, 2])
def test_failing_frame_counts_as_empty(monkeypatch, num_procs):
    original = Spots.find_in_frame

    def flaky(self, frame, params, region=None, status=None):
        if self.frame == 2:
            raise RuntimeError("unreadable frame")
        return original(self, frame, params, region, status)

    monkeypatch.setattr(Spots, "find_in_frame", flaky)

    params, image, _ = _scenario(num_procs=num_procs, min_trajectory_length=2)
    all_spots, trajs = tracking.track(image, params)
    assert [s.num_spots for s in all_spots] == [1, 1, 0, 1, 1]
    assert sorted(t.frames for t in trajs) == [[0, 1], [3, 4]]

    # A two frame gap bridges the failed frame
    params.update(max_difference=[np.nan, np.nan, 3.0, 3.0, np.nan, 2])
    all_spots, trajs = tracking.track(image, params)
    assert [t.frames for t in trajs] == [[0, 1, 3, 4]]


def test_cancelled_run_returns_empty_frames():
    params, image, _ = _scenario()
    status = TrackingStatus()
    status.cancel()

    all_spots, trajs = tracking.track(image, params, status)

    assert status.cancelled
    assert [s.num_spots for s in all_spots] == [0] * 5
    assert trajs == []
    assert status.frames_done == 5


def test_cancelled_detection_keeps_accepted_peaks():
    frame = np.zeros((20, 20))
    frame[5, 5] = 100
    frame[15, 15] = 90

    class CancelAfterFirst:
        calls = 0

        @property
        def cancelled(self):
            self.calls += 1
            return self.calls > 1

    found = Spots()
    found.find_in_frame(frame, _scenario_params(), status=CancelAfterFirst())
    assert found.positions.tolist() == [[5.0, 5.0]]


def test_cancel_after_fitting_keeps_fitted_peaks(monkeypatch):
    frame = ImageData()
    frame.set_pixel_data(simulation.render_frame((64, 64), [(16.0, 16.0), (44.0, 40.0)],
                                                 200.0, 1.5, 10.0))
    status = TrackingStatus()

    # Cancel once every spot has been fitted, before duplicates are removed
    fit = Spots.fit

    def fit_then_cancel(self, *args, **kwargs):
        counts = fit(self, *args, **kwargs)
        status.cancel()
        return counts

    monkeypatch.setattr(Spots, "fit", fit_then_cancel)
    frame_spots, num_success, num_total = tracking.track_frame(frame, 0, _scenario_params(),
                                                                status=status)

    assert (num_success, num_total) == (2, 2)
    assert frame_spots.num_spots == 2
    assert np.allclose(frame_spots.positions, [[16.0, 16.0], [44.0, 40.0]], atol=0.01)
    assert status.frames_done == 1


def test_progress_counter_is_monotonic():
    status = TrackingStatus()
    counts = [status.frame_done() for _ in range(4)]
    assert counts == [1, 2, 3, 4]
    assert status.frames_done == 4
