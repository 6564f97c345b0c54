"""Coarse meshes of boxes."""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from .errors import PreconditionError, check
from .geometry import vertex_bits
from .triangulation import Triangulation

log = logging.getLogger(__name__)


def _grid_index(multi: Sequence[int], shape: Sequence[int]) -> int:
    """Flat index of a lattice point, first direction fastest."""
    index, stride = 0, 1
    for i, n in zip(multi, shape):
        index += i * stride
        stride *= n
    return index


def subdivided_hyper_rectangle(
    repetitions: Sequence[int],
    lower: Sequence[float],
    upper: Sequence[float],
    colorize: bool = False,
) -> Triangulation:
    """Box ``[lower, upper]`` split into ``repetitions[d]`` cells per direction.

    With ``colorize`` the boundary face with normal direction ``d`` on side
    ``s`` gets boundary indicator ``2 * d + s``; otherwise all boundary faces
    keep indicator 0.
    """
    dim = len(repetitions)
    check(
        len(lower) == dim and len(upper) == dim,
        PreconditionError,
        f"lower/upper must have {dim} entries",
    )
    check(all(r >= 1 for r in repetitions), PreconditionError, f"Invalid repetitions {repetitions}")
    lower = np.asarray(lower, dtype=np.float64)
    upper = np.asarray(upper, dtype=np.float64)
    check(bool(np.all(upper > lower)), PreconditionError, "upper must exceed lower in every direction")

    shape = [r + 1 for r in repetitions]
    axes = [np.linspace(lower[d], upper[d], shape[d]) for d in range(dim)]
    n_points = int(np.prod(shape))
    vertices = np.empty((n_points, dim))
    for p in range(n_points):
        multi = [(p // int(np.prod(shape[:d]))) % shape[d] for d in range(dim)]
        vertices[p] = [axes[d][multi[d]] for d in range(dim)]

    n_cells = int(np.prod(repetitions))
    cell_indices = []
    cells = np.empty((n_cells, 2**dim), dtype=np.int64)
    for c in range(n_cells):
        multi = [(c // int(np.prod(repetitions[:d]))) % repetitions[d] for d in range(dim)]
        cell_indices.append(multi)
        for v in range(2**dim):
            corner = [m + b for m, b in zip(multi, vertex_bits(v, dim))]
            cells[c, v] = _grid_index(corner, shape)

    tria = Triangulation(dim)
    tria.create(vertices, cells)
    if colorize:
        for cell, multi in zip(tria.active_cells(), cell_indices):
            for d in range(dim):
                if multi[d] == 0:
                    tria.set_boundary_indicator(cell, 2 * d, 2 * d)
                if multi[d] == repetitions[d] - 1:
                    tria.set_boundary_indicator(cell, 2 * d + 1, 2 * d + 1)
    log.debug(f"Generated {'x'.join(map(str, repetitions))} box mesh")
    return tria


def hyper_cube(dim: int, left: float = 0.0, right: float = 1.0, colorize: bool = False) -> Triangulation:
    """A single cell ``[left, right]^dim``."""
    return subdivided_hyper_rectangle([1] * dim, [left] * dim, [right] * dim, colorize)
