"""Transport backend evaluating the power diagram with :mod:`pysdot`.

The domain is the box itself.  Periodicity is handled the pysdot way: seeds
are wrapped into the box along the periodic axes and the power diagram gets
replications at every non-zero offset in ``{-L, 0, L}`` per periodic axis, so
the cell of a seed gathers the pieces of all its images.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import product
from typing import List

import numpy as np
from pysdot import PowerDiagram
from pysdot.domain_types import ConvexPolyhedraAssembly
from scipy.sparse import csr_matrix

from . import transport
from .logging_utils import apply_debug_logging
from .model import Box, BoxLike, MassMapDerivatives, NewtonOptions

logger = logging.getLogger(__name__)

# pysdot orders the unknowns of dirac i as (x_i, y_i, w_i) and the outputs as
# (centroid_x_i, centroid_y_i, mass_i).
_UNKNOWNS_PER_SEED = 3
_X, _Y, _W = 0, 1, 2


def make_domain(box: BoxLike) -> ConvexPolyhedraAssembly:
    bx = Box.coerce(box)
    domain = ConvexPolyhedraAssembly()
    domain.add_box([bx.xmin, bx.ymin], [bx.xmax, bx.ymax])
    return domain


def replication_offsets(box: BoxLike, per_x: bool, per_y: bool) -> List[List[float]]:
    """Return the non-zero image offsets for the periodic axes."""

    bx = Box.coerce(box)
    offsets = []
    for kx, ky in product(range(-int(per_x), int(per_x) + 1), range(-int(per_y), int(per_y) + 1)):
        if kx != 0 or ky != 0:
            offsets.append([bx.width * kx, bx.height * ky])
    return offsets


def _wrapped(bx: Box, seeds: np.ndarray, per_x: bool, per_y: bool) -> np.ndarray:
    z = np.array(seeds, dtype=np.float64).reshape(-1, 2)
    for axis, periodic in enumerate((per_x, per_y)):
        if periodic:
            lower = bx.lower(axis)
            z[:, axis] = lower + np.mod(z[:, axis] - lower, bx.extent(axis))
    return np.ascontiguousarray(z)


def build_power_diagram(
    box: BoxLike,
    seeds: np.ndarray,
    weights: np.ndarray,
    per_x: bool,
    per_y: bool,
) -> PowerDiagram:
    bx = Box.coerce(box)
    pd = PowerDiagram(
        positions=_wrapped(bx, seeds, per_x, per_y),
        weights=np.ascontiguousarray(np.asarray(weights, dtype=np.float64).reshape(-1)),
        domain=make_domain(bx),
    )
    for offset in replication_offsets(bx, per_x, per_y):
        pd.add_replication(offset)
    return pd


def pysdot_cell_areas(box: BoxLike, seeds: np.ndarray, weights: np.ndarray, per_x: bool, per_y: bool) -> np.ndarray:
    pd = build_power_diagram(box, seeds, weights, per_x, per_y)
    return np.asarray(pd.integrals(), dtype=float)


def pysdot_mass_map_derivatives(
    box: BoxLike,
    seeds: np.ndarray,
    weights: np.ndarray,
    per_x: bool,
    per_y: bool,
) -> MassMapDerivatives:
    """Read the mass rows of pysdot's centroid/mass Jacobian.

    Moving a seed by a full period does not change the diagram, so the
    derivatives at the wrapped seeds are the derivatives at the given ones.
    """

    pd = build_power_diagram(box, seeds, weights, per_x, per_y)
    n = np.asarray(seeds).reshape(-1, 2).shape[0]
    mvs = pd.der_centroids_and_integrals_wrt_weight_and_positions()
    full = csr_matrix(
        (mvs.m_values, mvs.m_columns, mvs.m_offsets),
        shape=(_UNKNOWNS_PER_SEED * n, _UNKNOWNS_PER_SEED * n),
    )
    mass_rows = full[_W::_UNKNOWNS_PER_SEED]
    return MassMapDerivatives(
        areas=np.asarray(pd.integrals(), dtype=float),
        d_weights=csr_matrix(mass_rows[:, _W::_UNKNOWNS_PER_SEED]),
        d_seeds_x=csr_matrix(mass_rows[:, _X::_UNKNOWNS_PER_SEED]),
        d_seeds_y=csr_matrix(mass_rows[:, _Y::_UNKNOWNS_PER_SEED]),
    )


@dataclass
class PySdotBackend:
    """Backend using pysdot for areas and Jacobians.

    The damped Newton iteration itself is :func:`transport.damped_newton`, fed
    with pysdot derivatives, so the damping factor keeps its meaning.
    """

    newton: NewtonOptions = field(default_factory=NewtonOptions)

    def default_weight_guess(self, box: Box, seeds: np.ndarray, per_x: bool, per_y: bool) -> np.ndarray:
        return transport.default_weight_guess(box, seeds, per_x, per_y)

    def solve_optimal_weights(
        self,
        box: Box,
        seeds: np.ndarray,
        target_areas: np.ndarray,
        initial_weights: np.ndarray,
        damping: float,
        per_x: bool,
        per_y: bool,
    ) -> np.ndarray:
        return transport.damped_newton(
            box,
            seeds,
            target_areas,
            initial_weights,
            damping,
            per_x,
            per_y,
            options=self.newton,
            derivatives=pysdot_mass_map_derivatives,
        )

    def cell_areas(self, box: Box, seeds: np.ndarray, weights: np.ndarray, per_x: bool, per_y: bool) -> np.ndarray:
        return pysdot_cell_areas(box, seeds, weights, per_x, per_y)

    def mass_map_derivatives(
        self, box: Box, seeds: np.ndarray, weights: np.ndarray, per_x: bool, per_y: bool
    ) -> MassMapDerivatives:
        return pysdot_mass_map_derivatives(box, seeds, weights, per_x, per_y)


apply_debug_logging(globals(), logger=logger)


__all__ = [
    "PySdotBackend",
    "build_power_diagram",
    "make_domain",
    "pysdot_cell_areas",
    "pysdot_mass_map_derivatives",
    "replication_offsets",
]
