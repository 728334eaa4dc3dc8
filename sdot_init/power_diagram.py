"""Laguerre cells of a rectangular domain under per-axis periodicity.

A seed ``z_i`` with weight ``w_i`` owns the points of the box where
``c(x, z_i) - w_i`` is smallest, ``c`` being the squared distance measured
periodically along the periodic axes.  Along a periodic axis the box spans one
full period, so after wrapping the seeds into the box only the images at
offsets ``-L, 0, +L`` can be closest to a point of the box.  Each image gets
its own convex cell (the box clipped by power bisectors) and the cell of a seed
is the union of the cells of its images.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Set, Tuple

import numpy as np
from scipy import sparse
from scipy.spatial import ConvexHull, QhullError

from .logging_utils import apply_debug_logging
from .model import Box, BoxLike, MassMapDerivatives

logger = logging.getLogger(__name__)

BOX_EDGE = -1
Point2D = Tuple[float, float]

# Below this many images every pair is tested; Qhull also needs >= 4 sites.
ALL_PAIRS_MAX_SITES = 16
LOWER_FACET_TOL = 1e-12


@dataclass
class LaguerreCell:
    """Convex piece of a Laguerre cell generated by one periodic image.

    ``labels[k]`` names the constraint along the edge from ``vertices[k]`` to
    ``vertices[k + 1]``: the index of the neighbouring image, or ``BOX_EDGE``.
    """

    image: int
    owner: int
    site: Point2D
    vertices: List[Point2D]
    labels: List[int]

    @property
    def area(self) -> float:
        return _polygon_area(self.vertices)

    def edges(self):
        """Yield ``(label, start, end)`` for every edge of the polygon."""

        count = len(self.vertices)
        for k in range(count):
            yield self.labels[k], self.vertices[k], self.vertices[(k + 1) % count]


def _polygon_area(vertices: Sequence[Point2D]) -> float:
    if len(vertices) < 3:
        return 0.0
    total = 0.0
    x_prev, y_prev = vertices[-1]
    for x, y in vertices:
        total += x_prev * y - x * y_prev
        x_prev, y_prev = x, y
    return 0.5 * abs(total)


def _clip(
    vertices: List[Point2D],
    labels: List[int],
    normal: Point2D,
    offset: float,
    label: int,
) -> Tuple[List[Point2D], List[int]]:
    """Clip a convex polygon to the half-plane ``normal . x <= offset``."""

    nx, ny = normal
    sides = [nx * x + ny * y - offset for x, y in vertices]
    if max(sides) <= 0.0:
        return vertices, labels
    if min(sides) > 0.0:
        return [], []

    out_vertices: List[Point2D] = []
    out_labels: List[int] = []
    count = len(vertices)
    for k in range(count):
        nxt = (k + 1) % count
        cur_in = sides[k] <= 0.0
        nxt_in = sides[nxt] <= 0.0
        if cur_in:
            out_vertices.append(vertices[k])
            out_labels.append(labels[k])
        if cur_in != nxt_in:
            t = sides[k] / (sides[k] - sides[nxt])
            (x0, y0), (x1, y1) = vertices[k], vertices[nxt]
            out_vertices.append((x0 + t * (x1 - x0), y0 + t * (y1 - y0)))
            # Leaving the half-plane the new edge runs along the clip line;
            # entering it the edge is the rest of the original one.
            out_labels.append(label if cur_in else labels[k])

    if len(out_vertices) < 3:
        return [], []
    return out_vertices, out_labels


def periodic_images(
    box: BoxLike,
    seeds: np.ndarray,
    per_x: bool,
    per_y: bool,
) -> Tuple[np.ndarray, np.ndarray]:
    """Return image positions and their owning seed index.

    Seeds are wrapped into the box along periodic axes first.  Images are laid
    out offset-major, so ``positions[k * n + i]`` is an image of seed ``i``.
    """

    bx = Box.coerce(box)
    z = np.array(seeds, dtype=float).reshape(-1, 2)
    shifts: List[List[float]] = []
    for axis, periodic in enumerate((per_x, per_y)):
        if periodic:
            lower, length = bx.lower(axis), bx.extent(axis)
            z[:, axis] = lower + np.mod(z[:, axis] - lower, length)
            shifts.append([-length, 0.0, length])
        else:
            shifts.append([0.0])

    offsets = np.array([(sx, sy) for sx in shifts[0] for sy in shifts[1]], dtype=float)
    n = z.shape[0]
    positions = (offsets[:, None, :] + z[None, :, :]).reshape(-1, 2)
    owners = np.tile(np.arange(n), offsets.shape[0])
    return positions, owners


def _lower_hull_neighbours(positions: np.ndarray, heights: np.ndarray) -> Optional[List[Set[int]]]:
    count = positions.shape[0]
    if count <= ALL_PAIRS_MAX_SITES:
        return None
    lifted = np.column_stack([positions, heights])
    try:
        hull = ConvexHull(lifted)
    except QhullError as exc:
        logger.debug("Lifted hull failed for %d sites, testing all pairs: %s", count, exc)
        return None

    neighbours: List[Set[int]] = [set() for _ in range(count)]
    lower = hull.simplices[hull.equations[:, 2] < -LOWER_FACET_TOL]
    for a, b, c in lower:
        neighbours[a].update((b, c))
        neighbours[b].update((a, c))
        neighbours[c].update((a, b))
    return neighbours


def laguerre_cells(
    box: BoxLike,
    seeds: np.ndarray,
    weights: np.ndarray,
    per_x: bool,
    per_y: bool,
) -> List[LaguerreCell]:
    """Return the non-empty cell pieces of every periodic image."""

    bx = Box.coerce(box)
    positions, owners = periodic_images(bx, seeds, per_x, per_y)
    image_weights = np.asarray(weights, dtype=float).reshape(-1)[owners]
    # Power of x w.r.t. image p is |x|^2 - 2 p.x + heights[p].
    heights = np.einsum("ij,ij->i", positions, positions) - image_weights
    neighbours = _lower_hull_neighbours(positions, heights)

    pos = positions.tolist()
    hts = heights.tolist()
    corners = [tuple(c) for c in bx.corners().tolist()]
    count = len(pos)
    cells: List[LaguerreCell] = []

    for p in range(count):
        if neighbours is None:
            candidates = [q for q in range(count) if q != p]
        else:
            candidates = sorted(neighbours[p])
            if not candidates:
                continue
        px, py = pos[p]
        vertices: List[Point2D] = list(corners)
        labels = [BOX_EDGE] * 4
        for q in candidates:
            qx, qy = pos[q]
            if qx == px and qy == py:
                # Coincident images: the lower weight is dominated, ties go to the lower index.
                if hts[q] < hts[p] or (hts[q] == hts[p] and q < p):
                    vertices = []
                    break
                continue
            # |x - p|^2 - w_p <= |x - q|^2 - w_q  <=>  2 (q - p) . x <= h_q - h_p
            normal = (2.0 * (qx - px), 2.0 * (qy - py))
            vertices, labels = _clip(vertices, labels, normal, hts[q] - hts[p], q)
            if not vertices:
                break
        if vertices:
            cells.append(
                LaguerreCell(
                    image=p,
                    owner=int(owners[p]),
                    site=(px, py),
                    vertices=vertices,
                    labels=labels,
                )
            )

    logger.debug("Built %d non-empty cell pieces from %d images", len(cells), count)
    return cells


def cell_areas(
    box: BoxLike,
    seeds: np.ndarray,
    weights: np.ndarray,
    per_x: bool,
    per_y: bool,
) -> np.ndarray:
    """Return the area of the Laguerre cell of each seed."""

    n = np.asarray(seeds).reshape(-1, 2).shape[0]
    areas = np.zeros(n, dtype=float)
    for cell in laguerre_cells(box, seeds, weights, per_x, per_y):
        areas[cell.owner] += cell.area
    return areas


def mass_map_derivatives(
    box: BoxLike,
    seeds: np.ndarray,
    weights: np.ndarray,
    per_x: bool,
    per_y: bool,
) -> MassMapDerivatives:
    """Return cell areas with their derivatives w.r.t. weights and seed coordinates.

    Only edges between images of different seeds move with the parameters;
    box sides are fixed and an edge between two images of the same seed lies
    inside that seed's cell.
    """

    bx = Box.coerce(box)
    positions, owners = periodic_images(bx, seeds, per_x, per_y)
    pos = positions.tolist()
    n = np.asarray(seeds).reshape(-1, 2).shape[0]
    areas = np.zeros(n, dtype=float)

    rows: List[int] = []
    cols: List[int] = []
    dw: List[float] = []
    dzx: List[float] = []
    dzy: List[float] = []

    for cell in laguerre_cells(bx, seeds, weights, per_x, per_y):
        i = cell.owner
        areas[i] += cell.area
        px, py = cell.site
        for label, (x0, y0), (x1, y1) in cell.edges():
            if label == BOX_EDGE:
                continue
            j = int(owners[label])
            if j == i:
                continue
            length = math.hypot(x1 - x0, y1 - y0)
            if length == 0.0:
                continue
            qx, qy = pos[label]
            dist = math.hypot(qx - px, qy - py)
            cx, cy = 0.5 * (x0 + x1), 0.5 * (y0 + y1)
            ratio = length / dist

            rows.extend((i, i))
            cols.extend((i, j))
            dw.extend((0.5 * ratio, -0.5 * ratio))
            dzx.extend((ratio * (cx - px), -ratio * (cx - qx)))
            dzy.extend((ratio * (cy - py), -ratio * (cy - qy)))

    def assemble(values: List[float]) -> sparse.csr_matrix:
        # Duplicate (row, col) entries are summed by the COO -> CSR conversion.
        return sparse.coo_matrix((values, (rows, cols)), shape=(n, n)).tocsr()

    return MassMapDerivatives(
        areas=areas,
        d_weights=assemble(dw),
        d_seeds_x=assemble(dzx),
        d_seeds_y=assemble(dzy),
    )


apply_debug_logging(globals(), logger=logger, skip={"LaguerreCell"})


__all__ = [
    "BOX_EDGE",
    "LaguerreCell",
    "cell_areas",
    "laguerre_cells",
    "mass_map_derivatives",
    "periodic_images",
]
