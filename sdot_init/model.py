"""Core data structures for the initialisation pipeline."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import sparse

Axis = int
BoxLike = Union["Box", Sequence[float], np.ndarray]


class InitialisationError(RuntimeError):
    """Base class for failures while building an initial weight vector."""


class DegenerateInputError(InitialisationError, ValueError):
    """Raised when the periodicity flags do not describe a supported problem."""


class SolverConvergenceError(InitialisationError):
    """Raised when the damped Newton solve fails to reach the target areas."""


class SingularJacobianError(InitialisationError):
    """Raised when the reduced weight Jacobian cannot be solved reliably."""


class WeightNormalisationError(InitialisationError):
    """Raised when a weight vector does not have its last entry fixed at zero."""


class IterationBudgetExceeded(InitialisationError):
    """Raised when the perturbation loop runs out of halving steps."""

    def __init__(self, iterations: int, last_min_area: float, last_amplitude: float):
        super().__init__(
            f"no non-degenerate weights after {iterations} perturbation step(s); "
            f"last min area {last_min_area:.3e}, last amplitude {last_amplitude:.3e}"
        )
        self.iterations = iterations
        self.last_min_area = last_min_area
        self.last_amplitude = last_amplitude


@dataclass(frozen=True)
class Box:
    """Axis-aligned source domain ``[xmin, ymin, xmax, ymax]``."""

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    def __post_init__(self) -> None:
        values = (self.xmin, self.ymin, self.xmax, self.ymax)
        if not all(math.isfinite(float(v)) for v in values):
            raise ValueError("box bounds must be finite")
        if not (self.xmax > self.xmin and self.ymax > self.ymin):
            raise ValueError("box must satisfy xmax > xmin and ymax > ymin")

    @classmethod
    def coerce(cls, value: BoxLike) -> "Box":
        if isinstance(value, Box):
            return value
        coords = [float(v) for v in np.asarray(value, dtype=float).ravel()]
        if len(coords) != 4:
            raise ValueError("box must be given as [xmin, ymin, xmax, ymax]")
        return cls(*coords)

    @property
    def width(self) -> float:
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        return self.ymax - self.ymin

    @property
    def area(self) -> float:
        return self.width * self.height

    def lower(self, axis: Axis) -> float:
        return self.xmin if axis == 0 else self.ymin

    def upper(self, axis: Axis) -> float:
        return self.xmax if axis == 0 else self.ymax

    def extent(self, axis: Axis) -> float:
        return self.width if axis == 0 else self.height

    def corners(self) -> np.ndarray:
        """Return the box vertices in counter-clockwise order."""

        return np.array(
            [
                [self.xmin, self.ymin],
                [self.xmax, self.ymin],
                [self.xmax, self.ymax],
                [self.xmin, self.ymax],
            ],
            dtype=float,
        )

class MassMapDerivatives(NamedTuple):
    """Cell areas and their Jacobian blocks at a (seeds, weights) configuration."""

    areas: np.ndarray
    d_weights: sparse.csr_matrix
    d_seeds_x: sparse.csr_matrix
    d_seeds_y: sparse.csr_matrix


@dataclass
class NewtonOptions:
    """Damped Newton solver options."""

    tol: Optional[float] = None
    max_iterations: int = 100
    max_halvings: int = 40


@dataclass
class InitialiseOptions:
    """Options for the perturbation-correction initialiser."""

    random_seed: Optional[int] = None
    area_threshold: Optional[float] = None
    initial_exponent: int = 6
    damping: float = 0.1
    max_iterations: int = 30
    max_singular_retries: int = 5
    newton: NewtonOptions = field(default_factory=NewtonOptions)


@dataclass
class PerturbationStep:
    iteration: int
    amplitude: float
    max_offset: float
    min_area: float
    guess: str
    accepted: bool
    note: Optional[str] = None


@dataclass
class InitialWeights:
    weights: np.ndarray
    min_area: float
    area_threshold: float
    perturbed: bool
    steps: List[PerturbationStep] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def amplitudes(self) -> Tuple[float, ...]:
        """Perturbation amplitude used at each loop iteration."""

        return tuple(step.amplitude for step in self.steps)


__all__ = [
    "Axis",
    "Box",
    "BoxLike",
    "DegenerateInputError",
    "InitialWeights",
    "InitialisationError",
    "InitialiseOptions",
    "IterationBudgetExceeded",
    "MassMapDerivatives",
    "NewtonOptions",
    "PerturbationStep",
    "SingularJacobianError",
    "SolverConvergenceError",
    "WeightNormalisationError",
]
