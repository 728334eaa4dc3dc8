import numpy as np
import pytest

from sdot_init import Box, InitialiseOptions, ValidationError, initialise, validate_problem
from sdot_init.validate import validate_threshold, validate_weights


def test_validate_problem_normalises_inputs():
    box, seeds, targets = validate_problem((0, 0, 2, 1), [[0.5, 0.5], [1.5, 0.5]])

    assert box == Box(0.0, 0.0, 2.0, 1.0)
    assert seeds.dtype == float
    assert seeds.shape == (2, 2)
    assert targets == pytest.approx([1.0, 1.0])


def test_validate_problem_copies_seeds():
    raw = np.array([[0.5, 0.5]])

    _, seeds, _ = validate_problem([0, 0, 1, 1], raw)
    seeds[0, 0] = 9.0

    assert raw[0, 0] == 0.5


@pytest.mark.parametrize(
    'box, message_part',
    [([0, 0, 1], 'invalid box'), ([0, 0, 0, 1], 'invalid box'), ([0, 0, np.inf, 1], 'invalid box')],
)
def test_box_must_be_finite_and_non_empty(box, message_part):
    with pytest.raises(ValidationError) as exc:
        validate_problem(box, [[0.5, 0.5]])

    assert message_part in str(exc.value)


@pytest.mark.parametrize(
    'seeds, message_part',
    [
        ([], 'shape'),
        ([[0.5, 0.5, 0.5]], 'shape'),
        ([[0.5, np.nan]], 'finite'),
    ],
)
def test_seeds_must_be_finite_pairs(seeds, message_part):
    with pytest.raises(ValidationError) as exc:
        validate_problem([0, 0, 1, 1], seeds)

    assert message_part in str(exc.value)


def test_empty_seed_array_is_rejected():
    with pytest.raises(ValidationError) as exc:
        validate_problem([0, 0, 1, 1], np.zeros((0, 2)))

    assert 'at least one seed' in str(exc.value)


@pytest.mark.parametrize(
    'targets, message_part',
    [
        ([0.5], 'expected 2 target areas'),
        ([1.0, 0.0], 'strictly positive'),
        ([0.7, 0.7], 'sum to'),
    ],
)
def test_target_areas_must_match_box(targets, message_part):
    with pytest.raises(ValidationError) as exc:
        validate_problem([0, 0, 1, 1], [[0.2, 0.2], [0.8, 0.8]], targets)

    assert message_part in str(exc.value)


@pytest.mark.parametrize('value', [0.0, -1e-3, float('nan')])
def test_threshold_must_be_positive(value):
    with pytest.raises(ValidationError):
        validate_threshold(value)


def test_weights_length_is_checked():
    with pytest.raises(ValidationError):
        validate_weights([0.0, 1.0, 2.0], 2)


def test_initialise_rejects_bad_threshold_and_budget():
    with pytest.raises(ValidationError):
        initialise([0, 0, 1, 1], [[0.5, 0.5]], area_threshold=-1.0)

    with pytest.raises(ValidationError):
        initialise([0, 0, 1, 1], [[0.5, 0.5]], options=InitialiseOptions(max_iterations=0))


@pytest.mark.parametrize(
    'options, message_part',
    [
        ({'damping': 0.0}, 'damping'),
        ({'damping': 1.5}, 'damping'),
        ({'max_singular_retries': -1}, 'max_singular_retries'),
    ],
)
def test_initialise_rejects_bad_loop_options(options, message_part):
    with pytest.raises(ValidationError) as exc:
        initialise([0, 0, 1, 1], [[0.5, 1.5], [0.5, 2.0]], options=InitialiseOptions(**options))

    assert message_part in str(exc.value)
