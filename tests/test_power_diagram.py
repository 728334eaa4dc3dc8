import numpy as np
import pytest

from sdot_init import power_diagram
from sdot_init.model import Box
from sdot_init.power_diagram import (
    BOX_EDGE,
    cell_areas,
    laguerre_cells,
    mass_map_derivatives,
    periodic_images,
)

UNIT_BOX = Box(0.0, 0.0, 1.0, 1.0)


def _random_problem(n, seed, box=UNIT_BOX):
    rng = np.random.default_rng(seed)
    seeds = np.column_stack(
        [
            box.xmin + box.width * rng.random(n),
            box.ymin + box.height * rng.random(n),
        ]
    )
    weights = 0.01 * rng.standard_normal(n)
    return seeds, weights


def test_periodic_images_wraps_and_replicates_periodic_axis_only():
    seeds = np.array([[1.25, 0.5], [-0.5, 3.0]])

    positions, owners = periodic_images(UNIT_BOX, seeds, True, False)

    assert positions.shape == (6, 2)
    assert owners.tolist() == [0, 1, 0, 1, 0, 1]
    assert np.allclose(positions[2:4], [[0.25, 0.5], [0.5, 3.0]])
    assert np.allclose(positions[0:2, 0], [-0.75, -0.5])
    assert np.allclose(positions[4:6, 0], [1.25, 1.5])
    assert np.allclose(positions[:, 1], [0.5, 3.0, 0.5, 3.0, 0.5, 3.0])


def test_periodic_images_counts():
    seeds = np.zeros((3, 2))
    assert periodic_images(UNIT_BOX, seeds, False, False)[0].shape == (3, 2)
    assert periodic_images(UNIT_BOX, seeds, False, True)[0].shape == (9, 2)
    assert periodic_images(UNIT_BOX, seeds, True, True)[0].shape == (27, 2)


@pytest.mark.parametrize(
    "per_x, per_y",
    [(True, False), (False, True), (True, True), (False, False)],
)
def test_cell_areas_partition_the_box(per_x, per_y):
    box = Box(-1.0, 2.0, 2.0, 4.0)
    seeds, weights = _random_problem(12, 7, box)

    areas = cell_areas(box, seeds, weights, per_x, per_y)

    assert areas.shape == (12,)
    assert np.all(areas >= 0.0)
    assert areas.sum() == pytest.approx(box.area, rel=1e-10)


def test_single_seed_owns_the_whole_box():
    areas = cell_areas(UNIT_BOX, np.array([[0.3, 3.0]]), np.array([0.0]), True, False)

    assert areas == pytest.approx([1.0])


def test_aligned_seeds_outside_box_give_zero_area_cell():
    seeds = np.array([[0.5, 1.5], [0.5, 2.0]])
    weights = np.array([0.25, 1.0])

    areas = cell_areas(UNIT_BOX, seeds, weights, True, False)

    assert areas[0] == pytest.approx(1.0)
    assert areas[1] == pytest.approx(0.0, abs=1e-15)


def test_horizontal_split_for_aligned_seeds():
    seeds = np.array([[0.5, 1.5], [0.5, 2.0]])
    # Boundary sits at y = 1.75 + w_0 - w_1.
    weights = np.array([-1.25, 0.0])

    areas = cell_areas(UNIT_BOX, seeds, weights, True, False)

    assert areas == pytest.approx([0.5, 0.5])


def test_areas_are_invariant_under_weight_shift():
    seeds, weights = _random_problem(9, 11)

    base = cell_areas(UNIT_BOX, seeds, weights, True, False)
    shifted = cell_areas(UNIT_BOX, seeds, weights + 3.7, True, False)

    assert np.allclose(base, shifted, atol=1e-12)


def test_areas_are_invariant_under_period_shift():
    seeds, weights = _random_problem(6, 5)
    moved = seeds + np.array([2.0, 0.0])

    assert np.allclose(
        cell_areas(UNIT_BOX, seeds, weights, True, False),
        cell_areas(UNIT_BOX, moved, weights, True, False),
        atol=1e-12,
    )


def test_lifted_hull_matches_all_pairs(monkeypatch):
    seeds, weights = _random_problem(25, 3)
    seeds[:, 1] = 6.0 * seeds[:, 1] - 2.5

    hull_areas = cell_areas(UNIT_BOX, seeds, weights, True, False)
    monkeypatch.setattr(power_diagram, "ALL_PAIRS_MAX_SITES", 10**6)
    brute_areas = cell_areas(UNIT_BOX, seeds, weights, True, False)

    assert np.allclose(hull_areas, brute_areas, atol=1e-12)


def test_cell_edges_are_labelled():
    seeds = np.array([[0.25, 0.5], [0.75, 0.5]])
    cells = laguerre_cells(UNIT_BOX, seeds, np.zeros(2), False, False)

    assert {cell.owner for cell in cells} == {0, 1}
    for cell in cells:
        labels = [label for label, _, _ in cell.edges()]
        assert labels.count(BOX_EDGE) == 3
        assert cell.area == pytest.approx(0.5)
        (other,) = [label for label in labels if label != BOX_EDGE]
        assert other == 1 - cell.owner


def test_weight_jacobian_is_a_laplacian():
    seeds, weights = _random_problem(10, 21)

    derivs = mass_map_derivatives(UNIT_BOX, seeds, weights, True, False)
    dense = derivs.d_weights.toarray()

    assert np.allclose(dense, dense.T, atol=1e-12)
    assert np.allclose(dense.sum(axis=1), 0.0, atol=1e-12)
    off_diagonal = dense - np.diag(np.diag(dense))
    assert np.all(off_diagonal <= 1e-15)
    assert np.all(np.diag(dense) > 0.0)


def test_translation_does_not_change_areas_on_a_torus():
    seeds, weights = _random_problem(8, 13)

    derivs = mass_map_derivatives(UNIT_BOX, seeds, weights, True, True)

    assert np.allclose(derivs.d_seeds_x.toarray().sum(axis=1), 0.0, atol=1e-10)
    assert np.allclose(derivs.d_seeds_y.toarray().sum(axis=1), 0.0, atol=1e-10)


def _finite_difference(func, x, h=1e-6):
    columns = []
    for k in range(x.size):
        step = np.zeros_like(x)
        step[k] = h
        columns.append((func(x + step) - func(x - step)) / (2.0 * h))
    return np.column_stack(columns)


@pytest.mark.parametrize("per_x, per_y", [(True, False), (False, True)])
def test_derivatives_match_finite_differences(per_x, per_y):
    seeds, weights = _random_problem(5, 17)
    derivs = mass_map_derivatives(UNIT_BOX, seeds, weights, per_x, per_y)

    def by_weights(w):
        return cell_areas(UNIT_BOX, seeds, w, per_x, per_y)

    def by_axis(axis):
        def areas(coords):
            moved = seeds.copy()
            moved[:, axis] = coords
            return cell_areas(UNIT_BOX, moved, weights, per_x, per_y)

        return areas

    assert derivs.areas == pytest.approx(by_weights(weights))
    assert np.allclose(derivs.d_weights.toarray(), _finite_difference(by_weights, weights), atol=1e-5)
    assert np.allclose(derivs.d_seeds_x.toarray(), _finite_difference(by_axis(0), seeds[:, 0]), atol=1e-5)
    assert np.allclose(derivs.d_seeds_y.toarray(), _finite_difference(by_axis(1), seeds[:, 1]), atol=1e-5)
