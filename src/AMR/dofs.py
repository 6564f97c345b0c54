"""Global DoF numbering.

Active cells are walked level-major, then by index. For every cell its
vertices, lines, quads and interior are visited in local order, and each
object that has no indices yet receives the next contiguous block. Because
objects are shared entities of the triangulation, adjacent cells see the
same block automatically. Line and quad blocks are stored in the entity's
canonical frame and permuted into each cell's frame on lookup.

With an element collection a shared object gets the largest block any
adjacent cell's element asks for, and each cell reads the leading part.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Sequence

import numpy as np
from numpy.typing import NDArray

from .datastructures import Cell, CellId
from .elements import DoFLayout, FECollection, FiniteElement
from .errors import (
    InternalError,
    PreconditionError,
    StaleNumbering,
    UnsupportedOperation,
    check,
    fail,
)
from .geometry import geometry_info

if TYPE_CHECKING:
    from .triangulation import Triangulation

log = logging.getLogger(__name__)

_EMPTY = np.zeros(0, dtype=np.int64)


def _frozen(array: NDArray[np.int64]) -> NDArray[np.int64]:
    array.setflags(write=False)
    return array


class DoFHandler:
    """Numbering of the DoFs of a finite element (or collection) on a triangulation.

    The numbering records the mesh generation it was computed for; every
    query made after the mesh changed raises ``StaleNumbering`` until
    :meth:`distribute_dofs` is called again.
    """

    def __init__(self, tria: Triangulation):
        self.tria = tria
        self.fe_collection: FECollection | None = None
        self.n_dofs = 0
        self.generation: int | None = None
        self._vertex_dofs: dict[int, NDArray[np.int64]] = {}
        self._entity_dofs: dict[tuple[int, int], NDArray[np.int64]] = {}
        self._entity_owner: dict[tuple[int, int], FiniteElement] = {}
        self._interior_dofs: dict[CellId, NDArray[np.int64]] = {}
        self._cell_dofs: dict[CellId, NDArray[np.int64]] = {}
        self._fe_indices: dict[CellId, int] = {}
        tria.connect("post_refinement", self._on_mesh_change)
        tria.connect("clear", self._on_mesh_change)

    @property
    def fe(self) -> FiniteElement | None:
        """The element of a numbering made with a single element."""
        if self.fe_collection is None:
            return None
        check(
            len(self.fe_collection) == 1,
            UnsupportedOperation,
            f"{self.fe_collection.name} has no single element, use get_fe(cell)",
        )
        return self.fe_collection[0]

    def get_fe(self, cell: Cell | CellId) -> FiniteElement:
        """Element the current numbering uses on an active cell."""
        self.check_current()
        cid = cell.id if isinstance(cell, Cell) else cell
        index = self._fe_indices.get(cid)
        if index is None:
            fail(PreconditionError, f"Cell {cid} is not active")
        return self.fe_collection[index]

    def _on_mesh_change(self, tria: Triangulation) -> None:
        if self.generation is not None:
            log.debug(
                f"DoF numbering of generation {self.generation} is stale "
                f"(mesh is at generation {tria.generation})"
            )

    @property
    def is_distributed(self) -> bool:
        return self.generation is not None and self.generation == self.tria.generation

    def check_current(self) -> None:
        if self.generation is None:
            fail(PreconditionError, "DoFs have not been distributed")
        if self.generation != self.tria.generation:
            fail(
                StaleNumbering,
                f"DoF numbering was computed for mesh generation {self.generation}, "
                f"mesh is at generation {self.tria.generation}",
            )

    # ------------------------------------------------------------------
    # Distribution
    # ------------------------------------------------------------------

    def distribute_dofs(self, fe: FiniteElement | FECollection) -> DoFHandler:
        """Number the DoFs of ``fe``.

        With an ``FECollection`` every active cell uses the element at its
        ``active_fe_index``.
        """
        tria = self.tria
        collection = fe if isinstance(fe, FECollection) else FECollection(fe)
        check(tria.is_created, PreconditionError, "Cannot number DoFs before the mesh is created")
        check(
            collection.dim == tria.dim,
            PreconditionError,
            f"Element dimension {collection.dim} does not match mesh dimension {tria.dim}",
        )
        with tria.lock:
            cells = list(tria.active_cells())
            fe_indices = {cell.id: cell.active_fe_index for cell in cells}
            cell_fes = {cell.id: collection[cell.active_fe_index] for cell in cells}

            # shared objects carry the largest block among adjacent elements
            vertex_sizes: dict[int, int] = {}
            entity_owner: dict[tuple[int, int], FiniteElement] = {}
            for cell in cells:
                cell_fe = cell_fes[cell.id]
                for v in cell.vertices:
                    vertex_sizes[v] = max(vertex_sizes.get(v, 0), cell_fe.dofs_per_vertex)
                for k in range(1, tria.dim):
                    for eid in cell.entities[k]:
                        owner = entity_owner.get((k, eid))
                        if owner is None or cell_fe.dofs_per_object[k] > owner.dofs_per_object[k]:
                            entity_owner[(k, eid)] = cell_fe

            vertex_dofs: dict[int, NDArray[np.int64]] = {}
            entity_dofs: dict[tuple[int, int], NDArray[np.int64]] = {}
            interior_dofs: dict[CellId, NDArray[np.int64]] = {}
            next_dof = 0

            def block(n: int) -> NDArray[np.int64]:
                nonlocal next_dof
                indices = _frozen(np.arange(next_dof, next_dof + n, dtype=np.int64))
                next_dof += n
                return indices

            for cell in cells:
                cell_fe = cell_fes[cell.id]
                for v in cell.vertices:
                    if vertex_sizes[v] and v not in vertex_dofs:
                        vertex_dofs[v] = block(vertex_sizes[v])
                for k in range(1, tria.dim):
                    if collection.max_dofs_per_object[k] == 0:
                        continue
                    for eid in cell.entities[k]:
                        if (k, eid) not in entity_dofs:
                            entity_dofs[(k, eid)] = block(entity_owner[(k, eid)].dofs_per_object[k])
                if cell_fe.dofs_per_object[tria.dim]:
                    interior_dofs[cell.id] = block(cell_fe.dofs_per_object[tria.dim])

            self.fe_collection = collection
            self.n_dofs = next_dof
            self._vertex_dofs = vertex_dofs
            self._entity_dofs = entity_dofs
            self._entity_owner = entity_owner
            self._interior_dofs = interior_dofs
            self._fe_indices = fe_indices
            self.generation = tria.generation
            self._cell_dofs = {
                cell.id: _frozen(self._gather_cell_dofs(cell, cell_fes[cell.id])) for cell in cells
            }
        log.info(f"Distributed {self.n_dofs} DoFs of {fe.name} on {len(cells)} active cells")
        return self

    def _entity_dofs_in_frame(self, k: int, eid: int, frame: Sequence[int]) -> NDArray[np.int64]:
        """DoFs of entity ``eid`` listed in the order seen from ``frame``."""
        if self.fe_collection.max_dofs_per_object[k] == 0:
            return _EMPTY
        block = self._entity_dofs.get((k, eid))
        if block is None:
            fail(InternalError, f"{k}-entity {eid} carries no DoFs")
        if len(block) == 0:
            return block
        owner = self._entity_owner[(k, eid)]
        canonical = self.tria.entity(k, eid).vertices
        if k == 1:
            if frame[0] == canonical[0]:
                return block
            return block[owner.line_dof_permutation()]
        vertex_permutation = [canonical.index(v) for v in frame]
        if vertex_permutation == list(range(len(frame))):
            return block
        return block[owner.quad_dof_permutation(vertex_permutation)]

    def _gather_cell_dofs(self, cell: Cell, fe: FiniteElement) -> NDArray[np.int64]:
        gi = self.tria.geometry
        dim = self.tria.dim
        parts = []
        for k, e in gi.objects():
            n = fe.dofs_per_object[k]
            if k == 0:
                parts.append(self._vertex_dofs.get(cell.vertices[e], _EMPTY)[:n])
            elif k < dim:
                frame = tuple(cell.vertices[v] for v in gi.object_vertices(k, e))
                parts.append(self._entity_dofs_in_frame(k, cell.entities[k][e], frame)[:n])
            else:
                parts.append(self._interior_dofs.get(cell.id, _EMPTY))
        return np.concatenate(parts).astype(np.int64)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def cell_dofs(self, cell: Cell | CellId) -> NDArray[np.int64]:
        """Local-to-global map of an active cell (read-only array)."""
        self.check_current()
        cid = cell.id if isinstance(cell, Cell) else cell
        dofs = self._cell_dofs.get(cid)
        if dofs is None:
            fail(PreconditionError, f"Cell {cid} is not active")
        return dofs

    def vertex_dofs(self, vertex: int) -> NDArray[np.int64]:
        self.check_current()
        return self._vertex_dofs.get(vertex, _EMPTY)

    def face_dofs_in_frame(self, frame: Sequence[int]) -> NDArray[np.int64]:
        """DoFs on the face (or subface) with global vertices ``frame``.

        The result follows the face-local order of the element's face DoFs,
        read in the lexicographic frame ``frame``.
        """
        self.check_current()
        tria = self.tria
        face_geometry = geometry_info(tria.dim - 1)
        parts = []
        for k, e in face_geometry.objects():
            verts = tuple(frame[v] for v in face_geometry.object_vertices(k, e))
            if k == 0:
                parts.append(self._vertex_dofs.get(verts[0], _EMPTY))
                continue
            eid = tria.lookup_entity(k, verts)
            if eid is None:
                fail(PreconditionError, f"No {k}-entity with vertices {verts}")
            parts.append(self._entity_dofs_in_frame(k, eid, verts))
        return np.concatenate(parts).astype(np.int64)

    def face_dofs(self, cell: Cell | CellId, face: int) -> NDArray[np.int64]:
        return self.face_dofs_in_frame(self.tria.face_frame(cell, face))

    def active_cell_dofs(self):
        """Yield ``(cell, dofs)`` for all active cells in numbering order."""
        self.check_current()
        for cell in self.tria.active_cells():
            yield cell, self._cell_dofs[cell.id]

    # ------------------------------------------------------------------
    # Renumbering
    # ------------------------------------------------------------------

    def renumber(self, new_numbers: Sequence[int]) -> None:
        """Relabel every DoF ``i`` as ``new_numbers[i]``. Must be a bijection."""
        self.check_current()
        perm = np.asarray(new_numbers, dtype=np.int64)
        check(
            perm.shape == (self.n_dofs,),
            PreconditionError,
            f"Permutation must have length {self.n_dofs}, got shape {perm.shape}",
        )
        check(
            np.array_equal(np.sort(perm), np.arange(self.n_dofs)),
            PreconditionError,
            "Renumbering is not a bijection of [0, n_dofs)",
        )
        with self.tria.lock:
            self._vertex_dofs = {v: _frozen(perm[d]) for v, d in self._vertex_dofs.items()}
            self._entity_dofs = {key: _frozen(perm[d]) for key, d in self._entity_dofs.items()}
            self._interior_dofs = {c: _frozen(perm[d]) for c, d in self._interior_dofs.items()}
            self._cell_dofs = {c: _frozen(perm[d]) for c, d in self._cell_dofs.items()}
        log.info(f"Renumbered {self.n_dofs} DoFs")


def distribute_dofs(
    tria: Triangulation,
    dofs_per_vertex: int,
    dofs_per_line: int = 0,
    dofs_per_quad: int = 0,
    dofs_per_hex: int = 0,
) -> DoFHandler:
    """Number DoFs from per-object counts alone.

    The counts beyond the mesh dimension must be zero: in 2D the quad count
    is the cell interior, in 1D the line count is.
    """
    counts = [dofs_per_vertex, dofs_per_line, dofs_per_quad, dofs_per_hex]
    check(
        all(n == 0 for n in counts[tria.dim + 1 :]),
        PreconditionError,
        f"A {tria.dim}D mesh has no objects of dimension > {tria.dim}",
    )
    return DoFHandler(tria).distribute_dofs(DoFLayout(tria.dim, counts[: tria.dim + 1]))
