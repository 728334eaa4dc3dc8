"""Initial weights for damped Newton under partial periodicity.

The c-transform of the zero potential gives every seed a non-empty cell, but
when only one axis is periodic two seeds outside the box that lie on a line
perpendicular to the periodic axis can still receive cells of zero area, which
leaves the Newton linearisation singular.  In that case the seeds are shifted
by a random offset along the periodic axis, the shifted problem is solved to
optimality, and the optimal weights are carried back to the original seeds with
one implicit-function step

    dm/dw . dw = -(dm/dz_x . dx + dm/dz_y . dy),   (dx, dy) = -perturbation

solved with the last weight held at zero.  If the corrected weights still give
a cell at or below the area threshold the offset is halved and the previous
shifted solution is used to extrapolate a starting point for the next solve.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .backend import PowerDiagramBackend, TransportBackend
from .config import get_default_options
from .logging_utils import apply_debug_logging
from .model import (
    Axis,
    Box,
    BoxLike,
    DegenerateInputError,
    InitialWeights,
    InitialiseOptions,
    IterationBudgetExceeded,
    PerturbationStep,
    SingularJacobianError,
    SolverConvergenceError,
    WeightNormalisationError,
)
from .transport import solve_reduced
from .validate import ValidationError, validate_problem, validate_threshold

logger = logging.getLogger(__name__)

AREA_THRESHOLD_FRACTION = 1e-14

GUESS_DEFAULT = "default"
GUESS_EXTRAPOLATED = "extrapolated"


def default_area_threshold(box: Box, n: int) -> float:
    """Return ``1e-14`` times the average cell area of ``n`` equal cells."""

    return AREA_THRESHOLD_FRACTION * box.area / max(int(n), 1)


def perturbation_axis(per_x: bool, per_y: bool) -> Axis:
    """Return the axis along which seeds are shifted.

    Seeds that collapse a cell are aligned perpendicular to the periodic axis,
    so offsets along the periodic axis separate them.
    """

    if not (per_x or per_y):
        raise DegenerateInputError("at least one axis must be periodic")
    return 0 if per_x else 1


def initial_perturbation(
    box: Box,
    n: int,
    axis: Axis,
    rng: np.random.Generator,
    exponent: int = 6,
) -> Tuple[np.ndarray, float]:
    """Draw centred offsets of size ``2**-exponent`` times the box extent.

    Returns the ``(n, 2)`` offsets, non-zero only along ``axis``, and their
    nominal amplitude.
    """

    length = box.extent(axis)
    amplitude = length / 2.0**exponent
    perturbation = np.zeros((n, 2), dtype=float)
    perturbation[:, axis] = (length * rng.random(n) - length / 2.0) / 2.0**exponent
    return perturbation, amplitude


def _require_zero_last_weight(weights: np.ndarray, where: str) -> None:
    if weights.size and weights[-1] != 0.0:
        raise WeightNormalisationError(f"{where} must have last weight 0, got {weights[-1]!r}")


@dataclass
class _Problem:
    box: Box
    seeds: np.ndarray
    target_areas: np.ndarray
    per_x: bool
    per_y: bool
    threshold: float
    backend: TransportBackend
    damping: float

    def areas(self, seeds: np.ndarray, weights: np.ndarray) -> np.ndarray:
        return np.asarray(self.backend.cell_areas(self.box, seeds, weights, self.per_x, self.per_y), dtype=float)

    def default_guess(self, seeds: np.ndarray) -> np.ndarray:
        return np.asarray(self.backend.default_weight_guess(self.box, seeds, self.per_x, self.per_y), dtype=float)

    def solve(self, seeds: np.ndarray, guess: np.ndarray) -> np.ndarray:
        weights = self.backend.solve_optimal_weights(
            self.box, seeds, self.target_areas, guess, self.damping, self.per_x, self.per_y
        )
        return np.asarray(weights, dtype=float)


@dataclass
class _LoopState:
    perturbation: np.ndarray
    amplitude: float
    previous: Optional[Tuple[np.ndarray, np.ndarray]] = None
    singular_failures: int = 0
    steps: List[PerturbationStep] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def halve(self, seeds: np.ndarray, weights: np.ndarray) -> None:
        self.previous = (seeds, weights)
        self.perturbation = self.perturbation / 2.0
        self.amplitude = self.amplitude / 2.0


def _first_order_increment(
    problem: _Problem,
    seeds: np.ndarray,
    weights: np.ndarray,
    displacement: np.ndarray,
) -> np.ndarray:
    """Weight change keeping the areas fixed when ``seeds`` move by ``displacement``.

    ``weights`` must be normalised with a zero last entry; the returned
    increment is too.
    """

    _require_zero_last_weight(weights, "weights at the linearisation point")
    derivs = problem.backend.mass_map_derivatives(problem.box, seeds, weights, problem.per_x, problem.per_y)
    rhs = -(derivs.d_seeds_x @ displacement[:, 0] + derivs.d_seeds_y @ displacement[:, 1])
    return solve_reduced(derivs.d_weights, np.asarray(rhs, dtype=float).reshape(-1))


def _starting_weights(problem: _Problem, state: _LoopState, perturbed: np.ndarray) -> Tuple[np.ndarray, str]:
    if state.previous is not None:
        prev_seeds, prev_weights = state.previous
        try:
            guess = prev_weights + _first_order_increment(problem, prev_seeds, prev_weights, perturbed - prev_seeds)
        except SingularJacobianError as exc:
            logger.debug("Extrapolated guess unavailable, using default guess: %s", exc)
        else:
            min_area = float(problem.areas(perturbed, guess).min())
            if min_area > problem.threshold:
                return guess, GUESS_EXTRAPOLATED
            logger.debug("Extrapolated guess is degenerate (min area %.3e), using default guess", min_area)
    return problem.default_guess(perturbed), GUESS_DEFAULT


def _solve_perturbed(
    problem: _Problem,
    state: _LoopState,
    perturbed: np.ndarray,
    guess: np.ndarray,
    guess_kind: str,
) -> Tuple[np.ndarray, str]:
    try:
        weights = problem.solve(perturbed, guess)
    except SolverConvergenceError as exc:
        if guess_kind == GUESS_DEFAULT:
            raise
        message = f"Newton solve from extrapolated guess failed ({exc}); retrying from default guess"
        logger.info(message)
        state.warnings.append(message)
        guess_kind = GUESS_DEFAULT
        weights = problem.solve(perturbed, problem.default_guess(perturbed))
    _require_zero_last_weight(weights, "damped Newton output")
    return weights, guess_kind


def _perturbation_loop(problem: _Problem, state: _LoopState, options: InitialiseOptions) -> InitialWeights:
    last_min_area = math.nan
    last_amplitude = state.amplitude

    for iteration in range(options.max_iterations):
        last_amplitude = state.amplitude
        max_offset = float(np.max(np.abs(state.perturbation)))
        perturbed = problem.seeds + state.perturbation

        guess, guess_kind = _starting_weights(problem, state, perturbed)
        perturbed_weights, guess_kind = _solve_perturbed(problem, state, perturbed, guess, guess_kind)

        try:
            increment = _first_order_increment(problem, perturbed, perturbed_weights, -state.perturbation)
        except SingularJacobianError as exc:
            state.singular_failures += 1
            note = f"correction step {iteration} singular: {exc}"
            logger.info(note)
            state.warnings.append(note)
            state.steps.append(
                PerturbationStep(iteration, state.amplitude, max_offset, math.nan, guess_kind, False, note)
            )
            if state.singular_failures > options.max_singular_retries:
                raise
            state.halve(perturbed, perturbed_weights)
            continue

        candidate = perturbed_weights + increment
        last_min_area = float(problem.areas(problem.seeds, candidate).min())
        accepted = last_min_area > problem.threshold
        state.steps.append(
            PerturbationStep(iteration, state.amplitude, max_offset, last_min_area, guess_kind, accepted)
        )
        logger.debug(
            "Perturbation step %d amplitude=%.3e guess=%s min_area=%.3e accepted=%s",
            iteration,
            state.amplitude,
            guess_kind,
            last_min_area,
            accepted,
        )
        if accepted:
            logger.info(
                "Corrected weights accepted after %d perturbation step(s), min area %.3e",
                iteration + 1,
                last_min_area,
            )
            return InitialWeights(
                weights=candidate,
                min_area=last_min_area,
                area_threshold=problem.threshold,
                perturbed=True,
                steps=state.steps,
                warnings=state.warnings,
            )
        state.halve(perturbed, perturbed_weights)

    raise IterationBudgetExceeded(options.max_iterations, last_min_area, last_amplitude)


def initialise(
    box: BoxLike,
    seeds: Sequence[Sequence[float]],
    target_areas: Optional[Sequence[float]] = None,
    per_x: bool = True,
    per_y: bool = False,
    area_threshold: Optional[float] = None,
    *,
    options: Optional[InitialiseOptions] = None,
    rng: Optional[np.random.Generator] = None,
    backend: Optional[TransportBackend] = None,
) -> InitialWeights:
    """Return weights for ``seeds`` whose Laguerre cells all exceed the area threshold.

    ``target_areas`` defaults to equal areas and ``area_threshold`` to
    ``1e-14 * box.area / n``.  ``rng`` drives the seed perturbation and takes
    precedence over ``options.random_seed``.
    """

    opts = options or get_default_options()
    axis = perturbation_axis(per_x, per_y)
    if opts.max_iterations < 1:
        raise ValidationError("max_iterations must be at least 1")
    if not 0.0 < opts.damping <= 1.0:
        raise ValidationError(f"damping must lie in (0, 1], got {opts.damping}")
    if opts.max_singular_retries < 0:
        raise ValidationError("max_singular_retries must be non-negative")
    bx, z, targets = validate_problem(box, seeds, target_areas)
    n = z.shape[0]
    threshold = validate_threshold(area_threshold if area_threshold is not None else opts.area_threshold)
    if threshold is None:
        threshold = default_area_threshold(bx, n)

    problem = _Problem(
        box=bx,
        seeds=z,
        target_areas=targets,
        per_x=bool(per_x),
        per_y=bool(per_y),
        threshold=threshold,
        backend=backend or PowerDiagramBackend(newton=opts.newton),
        damping=opts.damping,
    )
    logger.info(
        "Initialising weights for %d seeds (per_x=%s per_y=%s threshold=%.3e)", n, per_x, per_y, threshold
    )

    weights = problem.default_guess(z)
    min_area = float(problem.areas(z, weights).min())
    if min_area > threshold:
        logger.info("Default weight guess accepted, min area %.3e", min_area)
        return InitialWeights(weights=weights, min_area=min_area, area_threshold=threshold, perturbed=False)

    logger.info(
        "Default weight guess gives min area %.3e <= %.3e; perturbing seeds along axis %d",
        min_area,
        threshold,
        axis,
    )
    generator = rng if rng is not None else np.random.default_rng(opts.random_seed)
    perturbation, amplitude = initial_perturbation(bx, n, axis, generator, opts.initial_exponent)
    state = _LoopState(perturbation=perturbation, amplitude=amplitude)
    return _perturbation_loop(problem, state, opts)


def initialise_weights(
    box: BoxLike,
    seeds: Sequence[Sequence[float]],
    target_areas: Optional[Sequence[float]] = None,
    per_x: bool = True,
    per_y: bool = False,
    area_threshold: Optional[float] = None,
    *,
    options: Optional[InitialiseOptions] = None,
    rng: Optional[np.random.Generator] = None,
    backend: Optional[TransportBackend] = None,
) -> np.ndarray:
    """Return only the weight vector of :func:`initialise`."""

    return initialise(
        box,
        seeds,
        target_areas,
        per_x,
        per_y,
        area_threshold,
        options=options,
        rng=rng,
        backend=backend,
    ).weights


apply_debug_logging(globals(), logger=logger)


__all__ = [
    "AREA_THRESHOLD_FRACTION",
    "default_area_threshold",
    "initial_perturbation",
    "initialise",
    "initialise_weights",
    "perturbation_axis",
]
