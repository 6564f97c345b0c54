"""Finite-element capability interface.

A small flat family of element descriptions consumed by the DoF and
constraint engines:

- ``FE_Q``: continuous tensor-product Lagrange element on equispaced nodes.
- ``FE_DGQ``: discontinuous Lagrange element, all DoFs in the cell interior.
- ``FESystem``: composite of other elements, each with a multiplicity.
- ``DoFLayout``: DoF counts only, for numbering without shape functions.
- ``FECollection``: per-cell choice among several elements.

Local DoF order on a cell is object-major: all vertex DoFs (vertex order),
then lines, then quads (3D faces), then the interior. Within the block of one
object an ``FESystem`` lists base elements in order and, inside each base,
its copies. Blocks on lines and quads are laid out in the object's
lexicographic frame; ``line_dof_permutation`` and ``quad_dof_permutation``
translate a block between two frames of the same object.
"""

from __future__ import annotations

from enum import Enum
from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from .errors import PreconditionError, UnsupportedOperation, check
from .geometry import geometry_info, vertex_bits
from .lagrange import equispaced_nodes, lagrange_derivatives, lagrange_values


class Continuity(Enum):
    CONTINUOUS = "continuous"
    DISCONTINUOUS = "discontinuous"


class FiniteElement:
    """Base capability set.

    Parameters
    ----------
    dim : reference cell dimension
    dofs_per_object : DoFs on each vertex, line, quad, hex (length dim + 1)
    n_components : number of vector components
    continuity : inter-element continuity class
    degree : polynomial degree (informational)
    """

    def __init__(
        self,
        dim: int,
        dofs_per_object: Sequence[int],
        n_components: int = 1,
        continuity: Continuity = Continuity.CONTINUOUS,
        degree: int = 0,
    ):
        check(dim in (0, 1, 2, 3), PreconditionError, f"Unsupported dimension {dim}")
        check(
            len(dofs_per_object) == dim + 1 and all(n >= 0 for n in dofs_per_object),
            PreconditionError,
            f"Expected {dim + 1} non-negative DoF counts, got {list(dofs_per_object)}",
        )
        self.dim = dim
        self.dofs_per_object = tuple(int(n) for n in dofs_per_object)
        self.n_components = n_components
        self.continuity = continuity
        self.degree = degree
        self.geometry = geometry_info(dim)
        self._interpolation_cache: dict[int, NDArray[np.float64]] = {}

        self.object_offsets: dict[tuple[int, int], int] = {}
        offset = 0
        for k, e in self.geometry.objects():
            self.object_offsets[(k, e)] = offset
            offset += self.dofs_per_object[k]
        self.dofs_per_cell = offset

        if dim >= 1:
            face_geometry = geometry_info(dim - 1)
            self.dofs_per_face = sum(
                face_geometry.objects_per_cell(k) * self.dofs_per_object[k] for k in range(dim)
            )
        else:
            self.dofs_per_face = 0

    # ------------------------------------------------------------------
    # Counts
    # ------------------------------------------------------------------

    def _count(self, k: int) -> int:
        return self.dofs_per_object[k] if k <= self.dim else 0

    @property
    def dofs_per_vertex(self) -> int:
        return self._count(0)

    @property
    def dofs_per_line(self) -> int:
        return self._count(1)

    @property
    def dofs_per_quad(self) -> int:
        return self._count(2)

    @property
    def dofs_per_hex(self) -> int:
        return self._count(3)

    @property
    def name(self) -> str:
        return f"{type(self).__name__}<{self.dim}>({self.degree})"

    def __repr__(self) -> str:
        return self.name

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def block_components(self, k: int) -> list[int]:
        """Component of each DoF in the block of one ``k``-dimensional object."""
        check(self.n_components == 1, UnsupportedOperation, f"{self.name} has no component layout")
        return [0] * self.dofs_per_object[k]

    def dof_components(self) -> NDArray[np.int64]:
        return np.array(
            [c for k, _ in self.geometry.objects() for c in self.block_components(k)],
            dtype=np.int64,
        )

    def system_to_component(self, i: int) -> tuple[int, int]:
        """(component, index within that component) of local DoF ``i``."""
        check(0 <= i < self.dofs_per_cell, PreconditionError, f"DoF {i} out of range")
        comps = self.dof_components()
        return int(comps[i]), int(np.count_nonzero(comps[:i] == comps[i]))

    def face_components(self) -> NDArray[np.int64]:
        """Component of each face DoF, in face-local order."""
        if self.dim == 0:
            return np.zeros(0, dtype=np.int64)
        face_geometry = geometry_info(self.dim - 1)
        return np.array(
            [c for k, _ in face_geometry.objects() for c in self.block_components(k)],
            dtype=np.int64,
        )

    # ------------------------------------------------------------------
    # Frame permutations (index only)
    # ------------------------------------------------------------------

    def line_dof_permutation(self) -> NDArray[np.int64]:
        """Line block seen from the reversed frame: ``block[perm]``."""
        return np.arange(self.dofs_per_line, dtype=np.int64)

    def quad_dof_permutation(self, vertex_permutation: Sequence[int]) -> NDArray[np.int64]:
        """Quad block seen from another frame of the same quad.

        ``vertex_permutation[j]`` is the position, in the canonical frame, of
        vertex ``j`` of the other frame. The block in the other frame is
        ``block[perm]``.
        """
        return np.arange(self.dofs_per_quad, dtype=np.int64)

    # ------------------------------------------------------------------
    # Shape functions (not available for every element)
    # ------------------------------------------------------------------

    @property
    def has_support_points(self) -> bool:
        return False

    def unit_support_points(self) -> NDArray[np.float64]:
        raise UnsupportedOperation(f"{self.name} has no support points")

    def shape_values(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        raise UnsupportedOperation(f"{self.name} has no shape functions")

    def shape_grads(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        raise UnsupportedOperation(f"{self.name} has no shape functions")

    def face_element(self) -> FiniteElement:
        """Element describing the restriction to a face."""
        raise UnsupportedOperation(f"{self.name} has no face element")

    def face_support_points(self) -> NDArray[np.float64]:
        return self.face_element().unit_support_points()

    def face_shape_values(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        return self.face_element().shape_values(points)

    def subface_interpolation_matrix(self, subface: int) -> NDArray[np.float64]:
        """Interpolation from the coarse face onto one of its subfaces.

        Row ``r`` expresses fine face DoF ``r`` of ``subface`` as a linear
        combination of the coarse face DoFs (columns), both in face-local
        order: ``fine = M @ coarse``.
        """
        if subface in self._interpolation_cache:
            return self._interpolation_cache[subface]
        if self.continuity is Continuity.DISCONTINUOUS or self.dofs_per_face == 0:
            raise UnsupportedOperation(f"{self.name} has no face DoFs to constrain")
        check(self.dim >= 2, UnsupportedOperation, "Faces of 1D cells have no subfaces")
        face = self.face_element()
        face_geometry = geometry_info(self.dim - 1)
        check(
            0 <= subface < face_geometry.children_per_cell,
            PreconditionError,
            f"Subface {subface} out of range",
        )
        points = face.unit_support_points()
        offset = 0.5 * face_geometry.unit_cell_vertex(subface)
        values = face.shape_values(offset + 0.5 * points)
        comps = face.dof_components()
        matrix = values * (comps[:, None] == comps[None, :])
        matrix[np.abs(matrix) < 1e-13] = 0.0
        self._interpolation_cache[subface] = matrix
        return matrix


class DoFLayout(FiniteElement):
    """DoF counts without shape functions."""

    def __init__(self, dim: int, dofs_per_object: Sequence[int], n_components: int = 1):
        super().__init__(dim, dofs_per_object, n_components=n_components)

    def block_components(self, k: int) -> list[int]:
        # components interleaved within a block, one DoF per component
        n = self.dofs_per_object[k]
        return [i % self.n_components for i in range(n)]

    @property
    def name(self) -> str:
        return f"DoFLayout<{self.dim}>{self.dofs_per_object}"


def _interior_indices(k: int, n: int):
    """All k-tuples over range(n), first index fastest."""
    for q in range(n**k):
        yield tuple((q // n**m) % n for m in range(k))


class _TensorLagrange(FiniteElement):
    """Shared evaluation of tensor-product Lagrange elements."""

    _nodes: NDArray[np.float64]
    _lattice: NDArray[np.int64]

    @property
    def has_support_points(self) -> bool:
        return True

    def unit_support_points(self) -> NDArray[np.float64]:
        return self._nodes[self._lattice].reshape(self.dofs_per_cell, self.dim)

    def _points(self, points) -> NDArray[np.float64]:
        points = np.asarray(points, dtype=np.float64)
        return points.reshape(-1, self.dim)

    def shape_values(self, points) -> NDArray[np.float64]:
        points = self._points(points)
        values = np.ones((points.shape[0], self.dofs_per_cell))
        for d in range(self.dim):
            values *= lagrange_values(self._nodes, points[:, d])[:, self._lattice[:, d]]
        return values

    def shape_grads(self, points) -> NDArray[np.float64]:
        points = self._points(points)
        n = points.shape[0]
        vals = [lagrange_values(self._nodes, points[:, d])[:, self._lattice[:, d]] for d in range(self.dim)]
        ders = [lagrange_derivatives(self._nodes, points[:, d])[:, self._lattice[:, d]] for d in range(self.dim)]
        grads = np.ones((n, self.dofs_per_cell, self.dim))
        for i in range(self.dim):
            for d in range(self.dim):
                grads[:, :, i] *= ders[d] if d == i else vals[d]
        return grads


class FE_Q(_TensorLagrange):
    """Continuous Lagrange element of degree ``degree`` >= 1."""

    def __init__(self, dim: int, degree: int):
        check(degree >= 1, PreconditionError, f"FE_Q needs degree >= 1, got {degree}")
        super().__init__(
            dim,
            [(degree - 1) ** k for k in range(dim + 1)],
            continuity=Continuity.CONTINUOUS,
            degree=degree,
        )
        self._nodes = equispaced_nodes(degree)
        self._lattice = self._build_lattice().reshape(self.dofs_per_cell, dim)

    def _build_lattice(self) -> NDArray[np.int64]:
        p = self.degree
        gi = self.geometry
        lattice = []
        for k, e in gi.objects():
            verts = gi.object_vertices(k, e)
            g0 = np.array(vertex_bits(verts[0], self.dim))
            axes = [np.array(vertex_bits(verts[1 << m], self.dim)) - g0 for m in range(k)]
            for idx in _interior_indices(k, p - 1):
                point = p * g0 + sum((i + 1) * a for i, a in zip(idx, axes))
                lattice.append(np.asarray(point, dtype=np.int64).reshape(self.dim))
        return np.array(lattice, dtype=np.int64)

    def block_components(self, k: int) -> list[int]:
        return [0] * self.dofs_per_object[k]

    def line_dof_permutation(self) -> NDArray[np.int64]:
        return np.arange(self.dofs_per_line, dtype=np.int64)[::-1].copy()

    def quad_dof_permutation(self, vertex_permutation: Sequence[int]) -> NDArray[np.int64]:
        n = self.degree - 1
        if n <= 0:
            return np.zeros(0, dtype=np.int64)
        perm = np.empty(n * n, dtype=np.int64)
        for q, (i, j) in enumerate(_interior_indices(2, n)):
            u, v = (i + 1) / self.degree, (j + 1) / self.degree
            frame_weights = [(1 - u) * (1 - v), u * (1 - v), (1 - u) * v, u * v]
            weights = np.zeros(4)
            for vertex, w in enumerate(frame_weights):
                weights[vertex_permutation[vertex]] = w
            uc = weights[1] + weights[3]
            vc = weights[2] + weights[3]
            ic = int(round(uc * self.degree)) - 1
            jc = int(round(vc * self.degree)) - 1
            perm[q] = ic + n * jc
        return perm

    def face_element(self) -> FiniteElement:
        check(self.dim >= 2, UnsupportedOperation, "Faces of 1D cells are points")
        return FE_Q(self.dim - 1, self.degree)


class FE_DGQ(_TensorLagrange):
    """Discontinuous Lagrange element; all DoFs belong to the cell interior."""

    def __init__(self, dim: int, degree: int):
        check(degree >= 0, PreconditionError, f"FE_DGQ needs degree >= 0, got {degree}")
        super().__init__(
            dim,
            [0] * dim + [(degree + 1) ** dim],
            continuity=Continuity.DISCONTINUOUS,
            degree=degree,
        )
        self._nodes = equispaced_nodes(degree)
        self._lattice = np.array(
            list(_interior_indices(dim, degree + 1)), dtype=np.int64
        ).reshape(self.dofs_per_cell, dim)

    def block_components(self, k: int) -> list[int]:
        return [0] * self.dofs_per_object[k]


class FESystem(FiniteElement):
    """Composite element: ``FESystem((FE_Q(2, 2), 2), FE_Q(2, 1))``."""

    def __init__(self, *elements):
        bases: list[tuple[FiniteElement, int]] = []
        for item in elements:
            fe, multiplicity = item if isinstance(item, tuple) else (item, 1)
            check(multiplicity >= 1, PreconditionError, f"Multiplicity must be >= 1, got {multiplicity}")
            bases.append((fe, int(multiplicity)))
        check(len(bases) > 0, PreconditionError, "FESystem needs at least one base element")
        dim = bases[0][0].dim
        check(
            all(fe.dim == dim for fe, _ in bases),
            PreconditionError,
            "All base elements must share one dimension",
        )
        self.bases = bases
        continuous = any(fe.continuity is Continuity.CONTINUOUS for fe, _ in bases)
        super().__init__(
            dim,
            [sum(m * fe.dofs_per_object[k] for fe, m in bases) for k in range(dim + 1)],
            n_components=sum(m * fe.n_components for fe, m in bases),
            continuity=Continuity.CONTINUOUS if continuous else Continuity.DISCONTINUOUS,
            degree=max(fe.degree for fe, _ in bases),
        )
        self._component_offsets = []
        offset = 0
        for fe, m in bases:
            self._component_offsets.append([offset + c * fe.n_components for c in range(m)])
            offset += m * fe.n_components

        # (base, copy, base-local dof) of every system dof
        self._system_to_base: list[tuple[int, int, int]] = []
        for k, e in self.geometry.objects():
            for b, (fe, m) in enumerate(bases):
                start = fe.object_offsets[(k, e)]
                for c in range(m):
                    for i in range(fe.dofs_per_object[k]):
                        self._system_to_base.append((b, c, start + i))

    @property
    def name(self) -> str:
        parts = [f"{fe.name}^{m}" if m > 1 else fe.name for fe, m in self.bases]
        return f"FESystem<{self.dim}>[{'-'.join(parts)}]"

    def block_components(self, k: int) -> list[int]:
        comps = []
        for b, (fe, m) in enumerate(self.bases):
            for c in range(m):
                comps.extend(self._component_offsets[b][c] + x for x in fe.block_components(k))
        return comps

    def _segments(self, k: int):
        offset = 0
        for fe, m in self.bases:
            for _ in range(m):
                yield fe, offset
                offset += fe.dofs_per_object[k]

    def line_dof_permutation(self) -> NDArray[np.int64]:
        parts = [offset + fe.line_dof_permutation() for fe, offset in self._segments(1)]
        return np.concatenate(parts).astype(np.int64) if parts else np.zeros(0, dtype=np.int64)

    def quad_dof_permutation(self, vertex_permutation: Sequence[int]) -> NDArray[np.int64]:
        parts = [offset + fe.quad_dof_permutation(vertex_permutation) for fe, offset in self._segments(2)]
        return np.concatenate(parts).astype(np.int64) if parts else np.zeros(0, dtype=np.int64)

    @property
    def has_support_points(self) -> bool:
        return all(fe.has_support_points for fe, _ in self.bases)

    def unit_support_points(self) -> NDArray[np.float64]:
        base_points = [fe.unit_support_points() for fe, _ in self.bases]
        return np.array(
            [base_points[b][i] for b, _, i in self._system_to_base], dtype=np.float64
        ).reshape(self.dofs_per_cell, self.dim)

    def shape_values(self, points) -> NDArray[np.float64]:
        base_values = [fe.shape_values(points) for fe, _ in self.bases]
        return np.stack([base_values[b][:, i] for b, _, i in self._system_to_base], axis=1)

    def shape_grads(self, points) -> NDArray[np.float64]:
        base_grads = [fe.shape_grads(points) for fe, _ in self.bases]
        return np.stack([base_grads[b][:, i, :] for b, _, i in self._system_to_base], axis=1)

    def face_element(self) -> FiniteElement:
        faces = [(fe.face_element(), m) for fe, m in self.bases if fe.dofs_per_face > 0]
        check(len(faces) > 0, UnsupportedOperation, f"{self.name} has no face DoFs")
        return FESystem(*faces)


class FECollection:
    """Elements a ``DoFHandler`` picks from per cell through ``Cell.active_fe_index``.

    A vertex, line or quad shared by cells with different elements carries
    the largest block any of them asks for; each cell uses the leading DoFs
    of that block. This matches nested Lagrange families such as FE_Q(1)
    next to FE_Q(2). Constraints between different elements on a shared
    face are not generated.
    """

    def __init__(self, *elements: FiniteElement):
        check(len(elements) > 0, PreconditionError, "FECollection needs at least one element")
        dim = elements[0].dim
        check(
            all(fe.dim == dim for fe in elements),
            PreconditionError,
            "All elements of a collection must share one dimension",
        )
        self.elements = tuple(elements)
        self.dim = dim
        self.max_dofs_per_object = tuple(
            max(fe.dofs_per_object[k] for fe in elements) for k in range(dim + 1)
        )

    def __len__(self) -> int:
        return len(self.elements)

    def __getitem__(self, index: int) -> FiniteElement:
        check(
            0 <= index < len(self.elements),
            PreconditionError,
            f"Active FE index {index} out of range for {len(self.elements)} elements",
        )
        return self.elements[index]

    def __iter__(self):
        return iter(self.elements)

    @property
    def name(self) -> str:
        return f"FECollection[{', '.join(fe.name for fe in self.elements)}]"

    def __repr__(self) -> str:
        return self.name
