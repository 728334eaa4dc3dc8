import numpy as np
import pytest

pytest.importorskip('pysdot')

from sdot_init import Box, PowerDiagramBackend, initialise
from sdot_init.pysdot_backend import (
    PySdotBackend,
    pysdot_cell_areas,
    pysdot_mass_map_derivatives,
    replication_offsets,
)

UNIT_BOX = Box(0.0, 0.0, 1.0, 1.0)


def _problem(n, seed):
    rng = np.random.default_rng(seed)
    seeds = np.column_stack([rng.random(n), 3.0 * rng.random(n) - 1.0])
    weights = 0.01 * rng.standard_normal(n)
    return seeds, weights


def test_replication_offsets_cover_periodic_axes():
    box = Box(0.0, 0.0, 2.0, 1.0)

    assert replication_offsets(box, True, False) == [[-2.0, 0.0], [2.0, 0.0]]
    assert len(replication_offsets(box, True, True)) == 8
    assert replication_offsets(box, False, False) == []


def test_areas_agree_with_in_package_diagram():
    seeds, weights = _problem(15, 3)
    reference = PowerDiagramBackend()

    areas = pysdot_cell_areas(UNIT_BOX, seeds, weights, True, False)

    assert areas.sum() == pytest.approx(1.0)
    assert np.allclose(areas, reference.cell_areas(UNIT_BOX, seeds, weights, True, False), atol=1e-10)


def test_weight_jacobian_agrees_with_in_package_diagram():
    seeds, weights = _problem(10, 5)
    reference = PowerDiagramBackend().mass_map_derivatives(UNIT_BOX, seeds, weights, True, False)

    derivs = pysdot_mass_map_derivatives(UNIT_BOX, seeds, weights, True, False)

    assert derivs.d_weights.shape == (10, 10)
    assert np.allclose(derivs.d_weights.toarray(), reference.d_weights.toarray(), atol=1e-8)
    assert np.allclose(derivs.d_seeds_x.toarray(), reference.d_seeds_x.toarray(), atol=1e-8)


def test_initialise_with_pysdot_backend():
    seeds = [[0.5, 1.5], [0.5, 2.0]]

    result = initialise(UNIT_BOX, seeds, backend=PySdotBackend(), rng=np.random.default_rng(0))

    assert result.perturbed
    assert result.weights[-1] == 0.0
    assert PowerDiagramBackend().cell_areas(UNIT_BOX, seeds, result.weights, True, False).min() > result.area_threshold
