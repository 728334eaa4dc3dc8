"""Weight guesses and the damped Newton solver for semi-discrete transport."""

from __future__ import annotations

import logging
import warnings
from typing import Callable, Optional

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import MatrixRankWarning, spsolve

from .logging_utils import apply_debug_logging
from .model import (
    Box,
    BoxLike,
    MassMapDerivatives,
    NewtonOptions,
    SingularJacobianError,
    SolverConvergenceError,
)
from .power_diagram import cell_areas, mass_map_derivatives
from .validate import validate_weights

logger = logging.getLogger(__name__)

DerivativeEvaluator = Callable[[Box, np.ndarray, np.ndarray, bool, bool], MassMapDerivatives]

DEFAULT_TOL_FRACTION = 1e-10
SOLVE_RESIDUAL_RTOL = 1e-8


def default_weight_guess(box: BoxLike, seeds: np.ndarray, per_x: bool, per_y: bool) -> np.ndarray:
    """Return the c-transform of the zero potential on ``box``.

    ``w_i`` is the smallest periodic squared distance from seed ``i`` to the
    box, which makes the closest box point of every seed belong to its cell.
    Periodic axes contribute nothing since the box spans a full period.
    """

    bx = Box.coerce(box)
    z = np.asarray(seeds, dtype=float).reshape(-1, 2)
    weights = np.zeros(z.shape[0], dtype=float)
    for axis, periodic in enumerate((per_x, per_y)):
        if periodic:
            continue
        coord = z[:, axis]
        gap = np.maximum(bx.lower(axis) - coord, 0.0) + np.maximum(coord - bx.upper(axis), 0.0)
        weights += gap * gap
    return weights


def solve_reduced(d_weights: sparse.spmatrix, rhs: np.ndarray) -> np.ndarray:
    """Solve the weight Jacobian system with the last weight held at zero.

    Areas only depend on weight differences, so ``d_weights`` is singular; the
    leading ``(n-1) x (n-1)`` block is solved instead and the result is padded
    with a trailing zero.
    """

    b = np.asarray(rhs, dtype=float).reshape(-1)
    n = b.size
    increment = np.zeros(n, dtype=float)
    if n <= 1:
        return increment

    block = sparse.csc_matrix(d_weights)[: n - 1, : n - 1]
    reduced_rhs = b[: n - 1]
    if np.any(np.diff(sparse.csr_matrix(block).indptr) == 0):
        raise SingularJacobianError("reduced weight Jacobian has an empty row")
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("error", MatrixRankWarning)
            solution = np.atleast_1d(spsolve(block, reduced_rhs))
    except (MatrixRankWarning, RuntimeError) as exc:
        raise SingularJacobianError(f"reduced weight Jacobian is singular: {exc}") from exc

    if not np.all(np.isfinite(solution)):
        raise SingularJacobianError("reduced weight Jacobian solve produced non-finite values")
    residual = float(np.linalg.norm(block @ solution - reduced_rhs))
    scale = float(np.linalg.norm(reduced_rhs))
    if residual > SOLVE_RESIDUAL_RTOL * max(scale, np.finfo(float).tiny):
        raise SingularJacobianError(
            f"reduced weight Jacobian is ill-conditioned (relative residual {residual / max(scale, 1e-300):.3e})"
        )

    increment[: n - 1] = solution
    return increment


def damped_newton(
    box: BoxLike,
    seeds: np.ndarray,
    target_areas: np.ndarray,
    initial_weights: np.ndarray,
    damping: float = 0.1,
    per_x: bool = True,
    per_y: bool = False,
    options: Optional[NewtonOptions] = None,
    derivatives: DerivativeEvaluator = mass_map_derivatives,
) -> np.ndarray:
    """Drive the cell areas to ``target_areas`` with a damped Newton method.

    Every step keeps all cells above ``eps0 = min(min m(w0), min target) / 2``
    and must reduce the area error by the factor ``1 - damping * tau``, where
    ``tau`` is halved until both hold.  The returned weights have their last
    entry equal to zero.  ``derivatives`` evaluates the areas and their
    Jacobians; it defaults to the in-package power diagram.
    """

    opts = options or NewtonOptions()
    if not 0.0 < damping <= 1.0:
        raise ValueError(f"damping must lie in (0, 1], got {damping}")

    bx = Box.coerce(box)
    z = np.asarray(seeds, dtype=float).reshape(-1, 2)
    targets = np.asarray(target_areas, dtype=float).reshape(-1)
    w0 = validate_weights(initial_weights, z.shape[0])
    weights = w0 - w0[-1]
    tol = opts.tol if opts.tol is not None else DEFAULT_TOL_FRACTION * float(targets.mean())

    derivs = derivatives(bx, z, weights, per_x, per_y)
    areas = derivs.areas
    eps0 = 0.5 * min(float(areas.min()), float(targets.min()))
    if eps0 <= 0.0:
        raise SolverConvergenceError(
            f"initial weights give an empty cell (min area {float(areas.min()):.3e})"
        )
    error = float(np.linalg.norm(areas - targets))

    for iteration in range(opts.max_iterations + 1):
        max_error = float(np.max(np.abs(areas - targets)))
        logger.debug("Newton iteration %d max area error %.3e", iteration, max_error)
        if max_error <= tol:
            logger.info(
                "Damped Newton converged after %d iteration(s), max area error %.3e",
                iteration,
                max_error,
            )
            return weights
        if iteration == opts.max_iterations:
            break

        try:
            direction = solve_reduced(derivs.d_weights, targets - areas)
        except SingularJacobianError as exc:
            raise SolverConvergenceError(f"Newton direction unavailable at iteration {iteration}: {exc}") from exc

        tau = 1.0
        for _ in range(opts.max_halvings):
            trial = weights + tau * direction
            trial_derivs = derivatives(bx, z, trial, per_x, per_y)
            trial_error = float(np.linalg.norm(trial_derivs.areas - targets))
            if trial_derivs.areas.min() >= eps0 and trial_error <= (1.0 - damping * tau) * error:
                break
            tau *= 0.5
        else:
            raise SolverConvergenceError(
                f"line search failed after {opts.max_halvings} halvings at iteration {iteration}"
            )

        logger.debug("Newton step %d accepted with tau=%.3g", iteration, tau)
        weights, derivs, error = trial, trial_derivs, trial_error
        areas = derivs.areas

    raise SolverConvergenceError(
        f"damped Newton did not converge in {opts.max_iterations} iterations "
        f"(max area error {float(np.max(np.abs(areas - targets))):.3e}, tol {tol:.1e})"
    )


def area_error(box: BoxLike, seeds: np.ndarray, weights: np.ndarray, target_areas: np.ndarray, per_x: bool, per_y: bool) -> float:
    """Return the largest absolute deviation of the cell areas from the targets."""

    areas = cell_areas(box, seeds, weights, per_x, per_y)
    return float(np.max(np.abs(areas - np.asarray(target_areas, dtype=float))))


apply_debug_logging(globals(), logger=logger)


__all__ = [
    "area_error",
    "damped_newton",
    "default_weight_guess",
    "solve_reduced",
]
