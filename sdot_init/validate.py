from typing import Optional, Sequence, Tuple

import numpy as np

from .model import Box, BoxLike

TARGET_SUM_RTOL = 1e-9


class ValidationError(ValueError):
    pass


def validate_box(box: BoxLike) -> Box:
    try:
        return Box.coerce(box)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f'invalid box: {exc}') from exc


def validate_seeds(seeds: Sequence[Sequence[float]]) -> np.ndarray:
    arr = np.array(seeds, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValidationError(f'seeds must have shape (n, 2), got {arr.shape}')
    if arr.shape[0] == 0:
        raise ValidationError('at least one seed is required')
    if not np.all(np.isfinite(arr)):
        raise ValidationError('seed coordinates must be finite')
    return arr


def validate_weights(weights: Sequence[float], n: int) -> np.ndarray:
    arr = np.array(weights, dtype=float).reshape(-1)
    if arr.shape != (n,):
        raise ValidationError(f'expected {n} weights, got {arr.size}')
    if not np.all(np.isfinite(arr)):
        raise ValidationError('weights must be finite')
    return arr


def validate_target_areas(box: Box, target_areas: Optional[Sequence[float]], n: int) -> np.ndarray:
    if target_areas is None:
        return np.full(n, box.area / n)
    arr = np.array(target_areas, dtype=float).reshape(-1)
    if arr.shape != (n,):
        raise ValidationError(f'expected {n} target areas, got {arr.size}')
    if not np.all(np.isfinite(arr)) or np.any(arr <= 0.0):
        raise ValidationError('target areas must be finite and strictly positive')
    total = float(arr.sum())
    if abs(total - box.area) > TARGET_SUM_RTOL * box.area:
        raise ValidationError(f'target areas sum to {total:.12g}, box area is {box.area:.12g}')
    return arr


def validate_threshold(area_threshold: Optional[float]) -> Optional[float]:
    if area_threshold is None:
        return None
    value = float(area_threshold)
    if not np.isfinite(value) or value <= 0.0:
        raise ValidationError('area threshold must be a positive number')
    return value


def validate_problem(
    box: BoxLike,
    seeds: Sequence[Sequence[float]],
    target_areas: Optional[Sequence[float]] = None,
) -> Tuple[Box, np.ndarray, np.ndarray]:
    bx = validate_box(box)
    z = validate_seeds(seeds)
    return bx, z, validate_target_areas(bx, target_areas, z.shape[0])
