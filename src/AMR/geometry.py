"""Reference hypercube numbering.

All local numbering is lexicographic. Vertex ``v`` of a ``dim``-cube sits at
the unit coordinates ``((v >> 0) & 1, (v >> 1) & 1, ...)``. Face
``f = 2*d + s`` is the face normal to direction ``d`` on side ``s``; its
vertices are the cell vertices with bit ``d`` equal to ``s``, listed in
ascending order, which is again a lexicographic frame of the face. Children
of an isotropically refined cell are numbered the same way: child ``c``
occupies the sub-box whose lower corner is ``bits(c) / 2``.

Lines in 3D follow the ordering used by the face numbering: the four lines of
the bottom face, the four lines of the top face, then the four vertical ones.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from functools import lru_cache

import numpy as np
from numpy.typing import NDArray

from .errors import PreconditionError, UnsupportedOperation, check, fail


class RefinementCase(IntEnum):
    """Bit mask of the coordinate directions a cell is cut in."""

    NO_REFINEMENT = 0
    CUT_X = 1
    CUT_Y = 2
    CUT_XY = 3
    CUT_Z = 4
    CUT_XZ = 5
    CUT_YZ = 6
    CUT_XYZ = 7

    @classmethod
    def isotropic(cls, dim: int) -> "RefinementCase":
        return cls((1 << dim) - 1)


def vertex_bits(v: int, dim: int) -> tuple[int, ...]:
    return tuple((v >> d) & 1 for d in range(dim))


def _lines_3d() -> list[tuple[int, ...]]:
    bottom = [(0, 2), (1, 3), (0, 1), (2, 3)]
    top = [(a + 4, b + 4) for a, b in bottom]
    vertical = [(v, v + 4) for v in range(4)]
    return bottom + top + vertical


def _face_vertices(dim: int) -> list[tuple[int, ...]]:
    return [
        tuple(v for v in range(1 << dim) if (v >> d) & 1 == s)
        for d in range(dim)
        for s in (0, 1)
    ]


def _object_vertices(dim: int, k: int) -> list[tuple[int, ...]]:
    if k == 0:
        return [(v,) for v in range(1 << dim)]
    if k == dim:
        return [tuple(range(1 << dim))]
    if k == dim - 1:
        return _face_vertices(dim)
    # only remaining case: lines of a hexahedron
    return _lines_3d()


@dataclass(frozen=True)
class GeometryInfo:
    """Constants and index arithmetic of the ``dim``-dimensional unit cube."""

    dim: int
    vertices_per_cell: int = field(init=False)
    faces_per_cell: int = field(init=False)
    children_per_cell: int = field(init=False)
    vertices_per_face: int = field(init=False)
    subfaces_per_face: int = field(init=False)
    lines_per_cell: int = field(init=False)
    quads_per_cell: int = field(init=False)
    face_vertices: tuple[tuple[int, ...], ...] = field(init=False, repr=False)
    object_vertex_table: tuple[tuple[tuple[int, ...], ...], ...] = field(
        init=False, repr=False
    )

    def __post_init__(self) -> None:
        dim = self.dim
        check(0 <= dim <= 3, PreconditionError, f"Unsupported dimension {dim}")
        table = tuple(tuple(_object_vertices(dim, k)) for k in range(dim + 1))
        set_ = object.__setattr__
        set_(self, "vertices_per_cell", 1 << dim)
        set_(self, "faces_per_cell", 2 * dim)
        set_(self, "children_per_cell", 1 << dim)
        set_(self, "vertices_per_face", 1 << max(dim - 1, 0))
        set_(self, "subfaces_per_face", 1 << max(dim - 1, 0))
        set_(self, "lines_per_cell", len(table[1]) if dim >= 1 else 0)
        set_(self, "quads_per_cell", len(table[2]) if dim >= 2 else 0)
        set_(self, "face_vertices", tuple(_face_vertices(dim)) if dim >= 1 else ())
        set_(self, "object_vertex_table", table)

    # ------------------------------------------------------------------
    # Objects (vertices, lines, quads, hexes)
    # ------------------------------------------------------------------

    def objects_per_cell(self, k: int) -> int:
        check(0 <= k <= self.dim, PreconditionError, f"No {k}-objects in {self.dim}D")
        return len(self.object_vertex_table[k])

    def object_vertices(self, k: int, e: int) -> tuple[int, ...]:
        """Local vertices of the ``e``-th ``k``-dimensional object, in its frame."""
        n = self.objects_per_cell(k)
        check(0 <= e < n, PreconditionError, f"Object index {e} out of range [0, {n})")
        return self.object_vertex_table[k][e]

    def objects(self) -> list[tuple[int, int]]:
        """All ``(k, e)`` pairs in DoF order: vertices, lines, quads, interior."""
        return [(k, e) for k in range(self.dim + 1) for e in range(self.objects_per_cell(k))]

    def object_axes(self, k: int, e: int) -> tuple[int, ...]:
        """Coordinate directions spanned by an object."""
        verts = self.object_vertices(k, e)
        v0 = verts[0]
        return tuple(d for d in range(self.dim) if any((v >> d) & 1 != (v0 >> d) & 1 for v in verts))

    # ------------------------------------------------------------------
    # Faces and children
    # ------------------------------------------------------------------

    def face_normal_direction(self, face: int) -> int:
        self.check_face(face)
        return face // 2

    def face_side(self, face: int) -> int:
        self.check_face(face)
        return face % 2

    def opposite_face(self, face: int) -> int:
        self.check_face(face)
        return face ^ 1

    def face_vertex(self, face: int, i: int) -> int:
        self.check_face(face)
        check(0 <= i < self.vertices_per_face, PreconditionError, f"Face vertex {i} out of range")
        return self.face_vertices[face][i]

    def child_cell_on_face(
        self, face: int, subface: int, refinement_case: RefinementCase | None = None
    ) -> int:
        """Index of the child adjacent to ``subface`` of ``face``.

        Subfaces are numbered lexicographically in the face's own frame, which
        makes this the ``subface``-th child (ascending) touching the face.
        """
        if refinement_case is None:
            refinement_case = RefinementCase.isotropic(self.dim)
        if refinement_case != RefinementCase.isotropic(self.dim):
            raise UnsupportedOperation(
                f"Only isotropic refinement is supported, got {RefinementCase(refinement_case).name}"
            )
        self.check_face(face)
        check(
            0 <= subface < self.subfaces_per_face,
            PreconditionError,
            f"Subface {subface} out of range [0, {self.subfaces_per_face})",
        )
        d, s = divmod(face, 2)
        on_face = [c for c in range(self.children_per_cell) if (c >> d) & 1 == s]
        return on_face[subface]

    def check_face(self, face: int) -> None:
        if not 0 <= face < self.faces_per_cell:
            fail(PreconditionError, f"Face {face} out of range [0, {self.faces_per_cell})")

    # ------------------------------------------------------------------
    # Unit cell geometry
    # ------------------------------------------------------------------

    def unit_cell_vertex(self, v: int) -> NDArray[np.float64]:
        check(0 <= v < self.vertices_per_cell, PreconditionError, f"Vertex {v} out of range")
        return np.array(vertex_bits(v, self.dim), dtype=np.float64)

    def unit_cell_vertices(self) -> NDArray[np.float64]:
        return np.array(
            [vertex_bits(v, self.dim) for v in range(self.vertices_per_cell)], dtype=np.float64
        ).reshape(self.vertices_per_cell, self.dim)

    def child_vertex_grid_points(self, child: int) -> list[tuple[int, ...]]:
        """Points of the ``3^dim`` refinement grid forming the child's vertices."""
        c = vertex_bits(child, self.dim)
        return [
            tuple(c[d] + a[d] for d in range(self.dim))
            for a in (vertex_bits(v, self.dim) for v in range(self.vertices_per_cell))
        ]


@lru_cache(maxsize=None)
def geometry_info(dim: int) -> GeometryInfo:
    return GeometryInfo(dim)


def subface_grid_points(dim: int, subface: int) -> list[tuple[int, ...]]:
    """Grid points (in a ``3^dim`` grid) of the vertices of sub-box ``subface``."""
    return geometry_info(dim).child_vertex_grid_points(subface)


def d_linear_shape_values(dim: int, points: NDArray[np.float64]) -> NDArray[np.float64]:
    """Values of the ``2^dim`` d-linear vertex functions at ``points`` (n, dim)."""
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))
    n = points.shape[0]
    values = np.ones((n, 1 << dim))
    for v in range(1 << dim):
        for d, b in enumerate(vertex_bits(v, dim)):
            values[:, v] *= points[:, d] if b else 1.0 - points[:, d]
    return values


def d_linear_shape_grads(dim: int, points: NDArray[np.float64]) -> NDArray[np.float64]:
    """Gradients of the d-linear vertex functions, shape (n, 2^dim, dim)."""
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))
    n = points.shape[0]
    grads = np.ones((n, 1 << dim, dim))
    for v in range(1 << dim):
        bits = vertex_bits(v, dim)
        for i in range(dim):
            for d in range(dim):
                if d == i:
                    grads[:, v, i] *= 1.0 if bits[d] else -1.0
                else:
                    grads[:, v, i] *= points[:, d] if bits[d] else 1.0 - points[:, d]
    return grads


def tensor_gauss_rule(dim: int, n: int) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Tensor-product Gauss-Legendre rule with ``n`` points per direction on [0, 1]^dim.

    Points are ordered lexicographically, first coordinate fastest.
    """
    x, w = np.polynomial.legendre.leggauss(n)
    x, w = 0.5 * (x + 1.0), 0.5 * w
    idx = np.array([[(q // n**d) % n for d in range(dim)] for q in range(n**dim)], dtype=np.int64)
    idx = idx.reshape(n**dim, dim)
    return x[idx], np.prod(w[idx], axis=1)
