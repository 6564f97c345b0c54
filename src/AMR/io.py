"""Conversion between triangulations and meshio meshes."""

from __future__ import annotations

import logging
from pathlib import Path

import meshio
import numpy as np
from numpy.typing import NDArray

from .errors import InvalidMesh, check, fail
from .triangulation import Triangulation

log = logging.getLogger(__name__)

CELL_TYPES = {1: "line", 2: "quad", 3: "hexahedron"}

# lexicographic <-> VTK vertex order; each is its own inverse
VERTEX_ORDER = {
    1: np.array([0, 1]),
    2: np.array([0, 1, 3, 2]),
    3: np.array([0, 1, 3, 2, 4, 5, 7, 6]),
}


def to_meshio(
    tria: Triangulation, point_data: dict[str, NDArray[np.float64]] | None = None
) -> meshio.Mesh:
    """Active cells as a meshio mesh with ``level``, ``material`` and ``subdomain`` cell data.

    All vertices (used or not) are written so that vertex-indexed
    ``point_data`` lines up with the triangulation's numbering.
    """
    points = tria.vertices
    if points.shape[1] < 3:
        points = np.column_stack([points, np.zeros((len(points), 3 - points.shape[1]))])
    cells = list(tria.active_cells())
    connectivity = np.array([c.vertices for c in cells], dtype=np.int64)[:, VERTEX_ORDER[tria.dim]]
    cell_data = {
        "level": [np.array([c.level for c in cells], dtype=np.int64)],
        "material": [np.array([c.material_id for c in cells], dtype=np.int64)],
        "subdomain": [np.array([c.subdomain_id for c in cells], dtype=np.int64)],
    }
    return meshio.Mesh(
        points=points,
        cells=[(CELL_TYPES[tria.dim], connectivity)],
        point_data=point_data or {},
        cell_data=cell_data,
    )


def from_meshio(mesh: meshio.Mesh | str | Path, dim: int | None = None) -> Triangulation:
    """Coarse triangulation from the highest-dimensional hypercube block of ``mesh``."""
    if isinstance(mesh, (str, Path)):
        mesh = meshio.read(mesh)

    candidates = [d for d in (3, 2, 1) if dim in (None, d)]
    for d in candidates:
        blocks = [(i, b) for i, b in enumerate(mesh.cells) if b.type == CELL_TYPES[d]]
        if blocks:
            break
    else:
        fail(InvalidMesh, f"No {' / '.join(CELL_TYPES[d] for d in candidates)} cells found in mesh")

    block_index, block = blocks[0]
    connectivity = np.asarray(block.data, dtype=np.int64)[:, VERTEX_ORDER[d]]
    points = np.asarray(mesh.points, dtype=np.float64)
    check(points.shape[1] >= d, InvalidMesh, f"Points of shape {points.shape} cannot carry {d}D cells")
    if points.shape[1] > d and np.allclose(points[:, d:], 0.0):
        points = points[:, :d]

    material_ids = None
    if "material" in mesh.cell_data:
        material_ids = np.asarray(mesh.cell_data["material"][block_index], dtype=np.int64)

    tria = Triangulation(d)
    tria.create(points, connectivity, material_ids)
    log.info(f"Read {len(connectivity)} {block.type} cells and {len(points)} points")
    return tria


def write(tria: Triangulation, path: str | Path, point_data: dict[str, NDArray[np.float64]] | None = None) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    to_meshio(tria, point_data).write(path)
    log.info(f"Saved mesh to {path}")
    return path
