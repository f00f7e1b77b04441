import numpy as np
import pytest

from peaktrack_smt.parameters import Parameters, default_parameters


def test_defaults_match_reference_behaviour():
    params = Parameters()
    assert params.threshold == 50
    assert params.minimum_distance == 4
    assert params.fit_radius == 4
    assert params.inner_radius == 1 and params.outer_radius == 3
    assert params.max_frame_gap == 1
    assert params.search_radius == 1
    assert params.min_trajectory_length == 100
    assert params.pixel_size == 1.0
    assert np.isnan(params.max_difference[0])


def test_every_default_has_description_and_class():
    for name, entry in default_parameters.items():
        assert entry["description"], name
        assert entry["class"] in ("general", "detection", "fitting", "integration", "tracking", "simulation")


def test_list_defaults_are_not_shared():
    a = Parameters()
    b = Parameters()
    a.vary[4] = False
    assert b.vary[4] is True


def test_overrides_and_update():
    params = Parameters(threshold=30, max_difference=[np.nan, np.nan, 3, 2, np.nan, 2])
    assert params.threshold == 30
    assert params.search_radius == 3
    assert params.max_frame_gap == 2
    params.update(threshold=12)
    assert params.threshold == 12


@pytest.mark.parametrize("overrides", [
    dict(inner_radius=3, outer_radius=2),
    dict(inner_radius=2, outer_radius=2),
    dict(inner_radius=-1),
    dict(fit_radius=0),
    dict(vary=[True, True]),
    dict(max_error=[1.0]),
    dict(pixel_size=0),
    dict(num_procs=0),
    dict(suppression_key="brightness"),
    dict(max_difference=[np.nan, np.nan, 1, 1, np.nan, 0]),
    dict(check_max_difference=[True, False, False]),
    dict(region=(0, 0, 0, 10)),
    dict(not_a_parameter=1),
])
def test_malformed_configuration_aborts(overrides):
    with pytest.raises(SystemExit):
        Parameters(**overrides)
