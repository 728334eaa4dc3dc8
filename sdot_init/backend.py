"""Geometry and solver services used by the initialiser."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import numpy as np

from . import power_diagram, transport
from .model import Box, MassMapDerivatives, NewtonOptions


class TransportBackend(Protocol):
    """Protocol implemented by power-diagram / transport providers."""

    def default_weight_guess(self, box: Box, seeds: np.ndarray, per_x: bool, per_y: bool) -> np.ndarray:
        """Return the c-transform of the zero potential for ``seeds``."""

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
        """Return weights matching ``target_areas`` with the last entry at zero.

        Raises ``SolverConvergenceError`` when the solve does not converge.
        """

    def cell_areas(self, box: Box, seeds: np.ndarray, weights: np.ndarray, per_x: bool, per_y: bool) -> np.ndarray:
        """Return one non-negative cell area per seed."""

    def mass_map_derivatives(
        self, box: Box, seeds: np.ndarray, weights: np.ndarray, per_x: bool, per_y: bool
    ) -> MassMapDerivatives:
        """Return areas and their derivatives w.r.t. weights and seed coordinates."""


@dataclass
class PowerDiagramBackend:
    """Backend built on the in-package clipped power diagram."""

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
            box, seeds, target_areas, initial_weights, damping, per_x, per_y, options=self.newton
        )

    def cell_areas(self, box: Box, seeds: np.ndarray, weights: np.ndarray, per_x: bool, per_y: bool) -> np.ndarray:
        return power_diagram.cell_areas(box, seeds, weights, per_x, per_y)

    def mass_map_derivatives(
        self, box: Box, seeds: np.ndarray, weights: np.ndarray, per_x: bool, per_y: bool
    ) -> MassMapDerivatives:
        return power_diagram.mass_map_derivatives(box, seeds, weights, per_x, per_y)


__all__ = ["PowerDiagramBackend", "TransportBackend"]
