from .model import (
    Box,
    DegenerateInputError,
    InitialWeights,
    InitialisationError,
    InitialiseOptions,
    IterationBudgetExceeded,
    MassMapDerivatives,
    NewtonOptions,
    PerturbationStep,
    SingularJacobianError,
    SolverConvergenceError,
    WeightNormalisationError,
)
from .config import get_default_options, set_default_options, reset_default_options
from .validate import ValidationError, validate_problem
from .power_diagram import LaguerreCell, cell_areas, laguerre_cells, mass_map_derivatives, periodic_images
from .transport import area_error, damped_newton, default_weight_guess, solve_reduced
from .backend import PowerDiagramBackend, TransportBackend
from .initialise import (
    default_area_threshold,
    initial_perturbation,
    initialise,
    initialise_weights,
    perturbation_axis,
)

__all__ = [
    'Box',
    'DegenerateInputError',
    'InitialWeights',
    'InitialisationError',
    'InitialiseOptions',
    'IterationBudgetExceeded',
    'MassMapDerivatives',
    'NewtonOptions',
    'PerturbationStep',
    'SingularJacobianError',
    'SolverConvergenceError',
    'WeightNormalisationError',
    'get_default_options',
    'set_default_options',
    'reset_default_options',
    'ValidationError',
    'validate_problem',
    'LaguerreCell',
    'cell_areas',
    'laguerre_cells',
    'mass_map_derivatives',
    'periodic_images',
    'area_error',
    'damped_newton',
    'default_weight_guess',
    'solve_reduced',
    'PowerDiagramBackend',
    'TransportBackend',
    'default_area_threshold',
    'initial_perturbation',
    'initialise',
    'initialise_weights',
    'perturbation_axis',
]
