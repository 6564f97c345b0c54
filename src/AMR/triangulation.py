"""Hierarchical mesh of hypercube cells.

Cells live in per-level arenas addressed by :class:`CellId`; freed slots are
reused smallest-index first. Lines (and quads in 3D, points in 1D) are shared
:class:`Entity` objects keyed by their sorted global vertex tuple, so two
cells touching the same geometric object always resolve to the same entity.

Every cell and entity describes itself in a lexicographic *frame*: the tuple
of its global vertex ids in local lexicographic order. An entity's canonical
frame is the frame of the cell that created it; any other cell may see the
same entity through a permuted frame. In 3D this is the face-orientation
problem: ``face.children[s]`` is the ``s``-th subface in the face's canonical
frame, which is *not* the ``s``-th subface seen by a cell with non-standard
orientation. Every subface query below therefore resolves subfaces through
vertex identity in the calling cell's frame.
"""

from __future__ import annotations

import heapq
import inspect
import logging
import threading
import weakref
from typing import Callable, Iterator, Sequence

import numpy as np
from numpy.typing import NDArray

from . import refinement
from .datastructures import (
    DEFAULT_BOUNDARY_ID,
    INTERIOR,
    Cell,
    CellId,
    Entity,
    MeshStatistics,
)
from .errors import (
    InternalError,
    InvalidMesh,
    PreconditionError,
    UnsupportedOperation,
    check,
    fail,
)
from .geometry import (
    RefinementCase,
    d_linear_shape_grads,
    geometry_info,
    subface_grid_points,
    tensor_gauss_rule,
)

log = logging.getLogger(__name__)

EVENTS = ("create", "pre_refinement", "post_refinement", "clear")


class _EntityStore:
    """Entities of one dimension, keyed by their sorted vertex tuple."""

    def __init__(self, dim: int):
        self.dim = dim
        self.items: dict[int, Entity] = {}
        self._ids_by_key: dict[tuple[int, ...], int] = {}
        self._next_index = 0

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, eid: int) -> Entity:
        return self.items[eid]

    def __iter__(self) -> Iterator[Entity]:
        return iter(self.items.values())

    def lookup(self, vertices: Sequence[int]) -> int | None:
        return self._ids_by_key.get(tuple(sorted(vertices)))

    def get_or_create(
        self,
        vertices: Sequence[int],
        parent: int | None = None,
        boundary_id: int = INTERIOR,
    ) -> int:
        key = tuple(sorted(vertices))
        eid = self._ids_by_key.get(key)
        if eid is None:
            eid = self._next_index
            self._next_index += 1
            self.items[eid] = Entity(
                self.dim, eid, tuple(vertices), parent=parent, boundary_id=boundary_id
            )
            self._ids_by_key[key] = eid
        return eid

    def remove(self, eid: int) -> None:
        ent = self.items.pop(eid)
        del self._ids_by_key[tuple(sorted(ent.vertices))]


class Triangulation:
    """Cells of all refinement levels plus their shared lower-dimensional entities.

    Parameters
    ----------
    dim : topological dimension of the cells (1, 2 or 3)

    Notes
    -----
    Structural changes happen only through :meth:`create`, :meth:`clear` and
    :meth:`execute_coarsening_and_refinement`. Each of them bumps
    :attr:`generation`, which DoF numberings compare against. ``lock`` is a
    re-entrant lock held for the duration of every structural change.
    """

    def __init__(self, dim: int):
        check(dim in (1, 2, 3), PreconditionError, f"Unsupported dimension {dim}")
        self.dim = dim
        self.geometry = geometry_info(dim)
        self.spacedim = dim
        self.generation = 0
        self.lock = threading.RLock()
        self._listeners: dict[str, list[Callable[[], Callable | None]]] = {
            event: [] for event in EVENTS
        }
        self._reset()

    def _reset(self) -> None:
        self._points: list[NDArray[np.float64]] = []
        self._refcount: list[int] = []
        self._free_vertices: list[int] = []
        self._levels: list[list[Cell | None]] = []
        self._free_slots: list[list[int]] = []
        entity_dims = sorted(set(range(1, self.dim)) | {self.dim - 1})
        self._stores = {k: _EntityStore(k) for k in entity_dims}
        self._created = False

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def connect(self, event: str, callback: Callable[[Triangulation], None]):
        """Call ``callback(tria)`` whenever ``event`` happens.

        Bound methods are held through a weak reference: once their object
        is garbage collected the listener is dropped.
        """
        check(event in self._listeners, PreconditionError, f"Unknown event '{event}'")
        if inspect.ismethod(callback):
            self._listeners[event].append(weakref.WeakMethod(callback))
        else:
            self._listeners[event].append(lambda: callback)
        return callback

    def disconnect(self, event: str, callback: Callable[[Triangulation], None]) -> None:
        check(event in self._listeners, PreconditionError, f"Unknown event '{event}'")
        refs = self._listeners[event]
        matches = [i for i, ref in enumerate(refs) if ref() == callback]
        check(len(matches) > 0, PreconditionError, f"Callback is not connected to '{event}'")
        del refs[matches[0]]

    def _live_listeners(self, event: str) -> list[Callable[[Triangulation], None]]:
        live = [(ref, ref()) for ref in self._listeners[event]]
        live = [(ref, callback) for ref, callback in live if callback is not None]
        self._listeners[event] = [ref for ref, _ in live]
        return [callback for _, callback in live]

    def n_listeners(self, event: str) -> int:
        check(event in self._listeners, PreconditionError, f"Unknown event '{event}'")
        return len(self._live_listeners(event))

    def _notify(self, event: str) -> None:
        for callback in self._live_listeners(event):
            callback(self)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, vertices, cells, material_ids=None) -> None:
        """Build level 0 from vertex coordinates and cell connectivity.

        Parameters
        ----------
        vertices : (n_vertices, spacedim) coordinates, ``spacedim >= dim``
        cells : (n_cells, 2**dim) vertex indices in lexicographic order
        material_ids : optional per-cell material ids
        """
        with self.lock:
            check(
                not self._created,
                PreconditionError,
                "Triangulation already holds a mesh; call clear() first",
            )
            points = np.asarray(vertices, dtype=np.float64)
            if points.ndim == 1:
                points = points[:, None]
            check(
                points.ndim == 2 and points.shape[1] >= self.dim,
                InvalidMesh,
                f"Vertices must have shape (n, >={self.dim}), got {points.shape}",
            )
            conn = np.asarray(cells, dtype=np.int64)
            nv = self.geometry.vertices_per_cell
            check(
                conn.ndim == 2 and conn.shape[1] == nv and len(conn) > 0,
                InvalidMesh,
                f"Cell connectivity must have shape (n_cells, {nv}), got {conn.shape}",
            )
            if material_ids is not None:
                material_ids = np.asarray(material_ids, dtype=np.int64)
                check(
                    material_ids.shape == (len(conn),),
                    InvalidMesh,
                    f"Expected {len(conn)} material ids, got {material_ids.shape}",
                )
            self._validate_cells(points, conn)

            self.spacedim = points.shape[1]
            self._points = [p.copy() for p in points]
            self._refcount = [0] * len(points)
            self._levels = [[]]
            self._free_slots = [[]]
            try:
                for i, verts in enumerate(conn.tolist()):
                    cell = self._new_cell(0, tuple(verts), None)
                    if material_ids is not None:
                        cell.material_id = int(material_ids[i])
                self._assign_initial_boundary_ids()
            except InvalidMesh:
                self._reset()
                raise

            self._created = True
            self.generation += 1
            log.info(
                f"Created {self.dim}D triangulation: {len(conn)} cells, {len(points)} vertices"
            )
        self._notify("create")

    def _validate_cells(self, points: NDArray[np.float64], conn: NDArray[np.int64]) -> None:
        n = len(points)
        bad = np.flatnonzero(((conn < 0) | (conn >= n)).any(axis=1))
        check(bad.size == 0, InvalidMesh, f"Cell {bad[0] if bad.size else -1} references a vertex outside [0, {n})")

        for i, verts in enumerate(conn.tolist()):
            check(len(set(verts)) == len(verts), InvalidMesh, f"Cell {i} repeats a vertex: {verts}")

        keys = [tuple(sorted(verts)) for verts in conn.tolist()]
        check(len(set(keys)) == len(keys), InvalidMesh, "Connectivity contains duplicate cells")

        if points.shape[1] == self.dim:
            grads = d_linear_shape_grads(self.dim, np.full((1, self.dim), 0.5))[0]
            for i, verts in enumerate(conn):
                det = np.linalg.det(points[verts].T @ grads)
                check(
                    det > 0,
                    InvalidMesh,
                    f"Cell {i} has Jacobian {det:.3e} at its center; "
                    "vertices must be listed in lexicographic order",
                )

    def _assign_initial_boundary_ids(self) -> None:
        faces = self._stores[self.dim - 1]
        for face in faces:
            check(
                len(face.cells) <= 2,
                InvalidMesh,
                f"Face {face.vertices} is shared by {len(face.cells)} cells",
            )
            face.boundary_id = DEFAULT_BOUNDARY_ID if len(face.cells) == 1 else INTERIOR

        if self.dim == 3:
            lines = self._stores[1]
            face_geometry = geometry_info(2)
            for face in faces:
                if not face.at_boundary:
                    continue
                for e in range(face_geometry.lines_per_cell):
                    frame = [face.vertices[v] for v in face_geometry.object_vertices(1, e)]
                    lines[lines.lookup(frame)].boundary_id = DEFAULT_BOUNDARY_ID

    def clear(self) -> None:
        """Drop all cells and entities. Bumps the generation."""
        with self.lock:
            self._reset()
            self.generation += 1
        log.info("Cleared triangulation")
        self._notify("clear")

    # ------------------------------------------------------------------
    # Cell and vertex storage
    # ------------------------------------------------------------------

    def _add_vertex(self, point: NDArray[np.float64]) -> int:
        if self._free_vertices:
            v = heapq.heappop(self._free_vertices)
            self._points[v] = point
            self._refcount[v] = 0
        else:
            v = len(self._points)
            self._points.append(point)
            self._refcount.append(0)
        return v

    def _new_cell(self, level: int, vertices: tuple[int, ...], parent: CellId | None) -> Cell:
        while len(self._levels) <= level:
            self._levels.append([])
            self._free_slots.append([])
        slots = self._levels[level]
        free = self._free_slots[level]
        if free:
            index = heapq.heappop(free)
        else:
            index = len(slots)
            slots.append(None)
        cid = CellId(level, index)

        gi = self.geometry
        entities: dict[int, list[int]] = {}
        for k in range(1, self.dim):
            store = self._stores[k]
            ids = []
            for e in range(gi.objects_per_cell(k)):
                frame = tuple(vertices[v] for v in gi.object_vertices(k, e))
                eid = store.get_or_create(frame)
                store[eid].cells.append((cid, e))
                ids.append(eid)
            entities[k] = ids

        if self.dim == 1:
            points = self._stores[0]
            faces = []
            for f in range(gi.faces_per_cell):
                eid = points.get_or_create((vertices[f],))
                points[eid].cells.append((cid, f))
                faces.append(eid)
        else:
            faces = list(entities[self.dim - 1])

        for v in vertices:
            self._refcount[v] += 1

        cell = Cell(level, index, vertices, faces, entities, parent=parent)
        slots[index] = cell
        return cell

    def _remove_cell(self, cid: CellId) -> list[tuple[int, int]]:
        cell = self.cell(cid)
        touched = []
        for k, ids in cell.entities.items():
            for e, eid in enumerate(ids):
                self._stores[k][eid].cells.remove((cid, e))
                touched.append((k, eid))
        if self.dim == 1:
            for f, eid in enumerate(cell.faces):
                self._stores[0][eid].cells.remove((cid, f))
                touched.append((0, eid))

        for v in cell.vertices:
            self._refcount[v] -= 1
            if self._refcount[v] == 0:
                heapq.heappush(self._free_vertices, v)

        self._levels[cid.level][cid.index] = None
        heapq.heappush(self._free_slots[cid.level], cid.index)
        return touched

    def _release_entities(self, touched: list[tuple[int, int]]) -> None:
        """Delete entities no cell references any more, un-refining their parents."""
        work = list(dict.fromkeys(touched))
        while work:
            k, eid = work.pop()
            store = self._stores[k]
            ent = store.items.get(eid)
            if ent is None or ent.cells or ent.children:
                continue
            if ent.parent is None:
                store.remove(eid)
                continue
            parent = store[ent.parent]
            siblings = [store.items.get(c) for c in parent.children]
            if all(s is None or not (s.cells or s.children) for s in siblings):
                for s in siblings:
                    if s is not None:
                        store.remove(s.index)
                parent.children = []
                parent.center = None
                work.append((k, parent.index))

    def _trim_levels(self) -> None:
        while len(self._levels) > 1 and all(c is None for c in self._levels[-1]):
            self._levels.pop()
            self._free_slots.pop()

    # ------------------------------------------------------------------
    # Refinement primitives (driven by the refinement module)
    # ------------------------------------------------------------------

    def _grid_vertex(
        self, frame: Sequence[int], g: Sequence[int], top_center: int | None = None
    ) -> int:
        """Global vertex at point ``g`` of the 3x3(x3) grid over a refined frame.

        A coordinate equal to 1 means "midpoint" in that direction, so the
        point is the center vertex of the sub-object spanned by those axes.
        """
        m = len(g)
        axes = [d for d in range(m) if g[d] == 1]
        if not axes:
            return frame[sum((g[d] // 2) << d for d in range(m))]
        if len(axes) == m and top_center is not None:
            return top_center
        sub = [
            frame[v]
            for v in range(1 << m)
            if all((v >> d) & 1 == g[d] // 2 for d in range(m) if g[d] != 1)
        ]
        store = self._stores[len(axes)]
        eid = store.lookup(sub)
        center = store[eid].center if eid is not None else None
        if center is None:
            fail(InternalError, f"Object {tuple(sub)} is not refined")
        return center

    def _refine_entity(self, k: int, eid: int) -> None:
        store = self._stores[k]
        ent = store[eid]
        if ent.children:
            return
        sub_geometry = geometry_info(k)
        if k == 2:
            for e in range(sub_geometry.lines_per_cell):
                line = [ent.vertices[v] for v in sub_geometry.object_vertices(1, e)]
                self._refine_entity(1, self._stores[1].lookup(line))

        ent.center = self._add_vertex(
            np.mean([self._points[v] for v in ent.vertices], axis=0)
        )
        for c in range(sub_geometry.children_per_cell):
            frame = tuple(
                self._grid_vertex(ent.vertices, g, ent.center)
                for g in subface_grid_points(k, c)
            )
            child = store.get_or_create(frame, parent=eid, boundary_id=ent.boundary_id)
            ent.children.append(child)

        if k == 2:
            # lines through the quad center inherit the quad's boundary indicator
            lines = self._stores[1]
            for child in ent.children:
                frame = store[child].vertices
                for e in range(sub_geometry.lines_per_cell):
                    line = [frame[v] for v in sub_geometry.object_vertices(1, e)]
                    if lines.lookup(line) is None:
                        lines.get_or_create(line, boundary_id=ent.boundary_id)

    def _refine_cell(self, cell: Cell) -> None:
        check(cell.is_active, InternalError, f"Refining inactive cell {cell.id}")
        for k in range(1, self.dim):
            for eid in cell.entities[k]:
                self._refine_entity(k, eid)

        center = self._add_vertex(
            np.mean([self._points[v] for v in cell.vertices], axis=0)
        )
        children = []
        for c in range(self.geometry.children_per_cell):
            frame = tuple(
                self._grid_vertex(cell.vertices, g, center)
                for g in self.geometry.child_vertex_grid_points(c)
            )
            child = self._new_cell(cell.level + 1, frame, cell.id)
            child.material_id = cell.material_id
            child.subdomain_id = cell.subdomain_id
            child.active_fe_index = cell.active_fe_index
            children.append(child.id)
        cell.children = children
        cell.refine_flag = RefinementCase.NO_REFINEMENT

    def _coarsen_cell(self, cell: Cell) -> None:
        touched = []
        for cid in cell.children:
            check(self.cell(cid).is_active, InternalError, f"Coarsening {cell.id} across inactive child {cid}")
            touched.extend(self._remove_cell(cid))
        cell.children = []
        cell.coarsen_flag = False
        self._release_entities(touched)

    # ------------------------------------------------------------------
    # Cell queries
    # ------------------------------------------------------------------

    def _as_cell(self, cell: Cell | CellId) -> Cell:
        return self.cell(cell) if isinstance(cell, CellId) else cell

    def cell(self, cid: CellId) -> Cell:
        level, index = cid.level, cid.index
        if not (0 <= level < len(self._levels) and 0 <= index < len(self._levels[level])):
            fail(PreconditionError, f"No cell {cid}")
        cell = self._levels[level][index]
        if cell is None:
            fail(PreconditionError, f"Cell {cid} has been removed")
        return cell

    @property
    def n_levels(self) -> int:
        return len(self._levels)

    def cells(self, level: int | None = None) -> Iterator[Cell]:
        """All cells in level-major, index order."""
        levels = range(self.n_levels) if level is None else [level]
        for lvl in levels:
            check(0 <= lvl < self.n_levels, PreconditionError, f"No level {lvl}")
            for cell in self._levels[lvl]:
                if cell is not None:
                    yield cell

    def active_cells(self, level: int | None = None) -> Iterator[Cell]:
        """Leaf cells in level-major, index order."""
        for cell in self.cells(level):
            if cell.is_active:
                yield cell

    def n_cells(self, level: int | None = None) -> int:
        return sum(1 for _ in self.cells(level))

    def n_active_cells(self, level: int | None = None) -> int:
        return sum(1 for _ in self.active_cells(level))

    def is_ancestor(self, ancestor: Cell | CellId, cell: Cell | CellId) -> bool:
        """True if ``ancestor`` is a strict ancestor of ``cell``."""
        a = ancestor.id if isinstance(ancestor, Cell) else ancestor
        c = self._as_cell(cell)
        while c.parent is not None and c.level > a.level:
            if c.parent == a:
                return True
            c = self.cell(c.parent)
        return False

    @property
    def is_created(self) -> bool:
        return self._created

    # ------------------------------------------------------------------
    # Vertices and geometry
    # ------------------------------------------------------------------

    @property
    def n_vertices(self) -> int:
        return len(self._points)

    @property
    def n_used_vertices(self) -> int:
        return sum(1 for r in self._refcount if r > 0)

    @property
    def vertices(self) -> NDArray[np.float64]:
        if not self._points:
            return np.empty((0, self.spacedim))
        return np.array(self._points)

    def used_vertices(self) -> NDArray[np.bool_]:
        return np.array(self._refcount, dtype=np.int64) > 0

    def vertex(self, v: int) -> NDArray[np.float64]:
        check(0 <= v < len(self._points), PreconditionError, f"Vertex {v} out of range")
        return self._points[v]

    def cell_vertices(self, cell: Cell | CellId) -> NDArray[np.float64]:
        cell = self._as_cell(cell)
        return np.array([self._points[v] for v in cell.vertices])

    def cell_center(self, cell: Cell | CellId) -> NDArray[np.float64]:
        return self.cell_vertices(cell).mean(axis=0)

    def cell_measure(self, cell: Cell | CellId) -> float:
        """Volume of the d-linear cell, integrated with a 2-point Gauss rule."""
        points, weights = tensor_gauss_rule(self.dim, 2)
        coords = self.cell_vertices(cell)
        grads = d_linear_shape_grads(self.dim, points)
        measure = 0.0
        for q in range(len(points)):
            jac = coords.T @ grads[q]
            measure += weights[q] * np.sqrt(abs(np.linalg.det(jac.T @ jac)))
        return float(measure)

    # ------------------------------------------------------------------
    # Entities and faces
    # ------------------------------------------------------------------

    def entity(self, k: int, eid: int) -> Entity:
        check(k in self._stores, PreconditionError, f"No {k}-dimensional entities in {self.dim}D")
        store = self._stores[k]
        check(eid in store.items, PreconditionError, f"No {k}-entity {eid}")
        return store[eid]

    def entities(self, k: int) -> Iterator[Entity]:
        check(k in self._stores, PreconditionError, f"No {k}-dimensional entities in {self.dim}D")
        return iter(self._stores[k])

    def lookup_entity(self, k: int, vertices: Sequence[int]) -> int | None:
        """Id of the ``k``-entity with exactly these global vertices, if any."""
        check(k in self._stores, PreconditionError, f"No {k}-dimensional entities in {self.dim}D")
        return self._stores[k].lookup(vertices)

    def face(self, cell: Cell | CellId, face: int) -> Entity:
        cell = self._as_cell(cell)
        self.geometry.check_face(face)
        return self._stores[self.dim - 1][cell.faces[face]]

    def face_frame(self, cell: Cell | CellId, face: int) -> tuple[int, ...]:
        """Global vertices of ``face`` in the cell's lexicographic order."""
        cell = self._as_cell(cell)
        return tuple(cell.vertices[v] for v in self.geometry.face_vertices[face])

    def subface_frame(self, cell: Cell | CellId, face: int, subface: int) -> tuple[int, ...]:
        """Global vertices of ``subface`` of a refined face, in the cell's frame."""
        cell = self._as_cell(cell)
        gi = self.geometry
        check(
            0 <= subface < gi.subfaces_per_face,
            PreconditionError,
            f"Subface {subface} out of range [0, {gi.subfaces_per_face})",
        )
        frame = self.face_frame(cell, face)
        if self.dim == 1:
            return frame
        check(
            self.face(cell, face).has_children,
            PreconditionError,
            f"Face {face} of cell {cell.id} is not refined",
        )
        return tuple(
            self._grid_vertex(frame, g) for g in subface_grid_points(self.dim - 1, subface)
        )

    def at_boundary(self, cell: Cell | CellId, face: int) -> bool:
        return self.face(cell, face).at_boundary

    def boundary_indicator(self, cell: Cell | CellId, face: int) -> int:
        return self.face(cell, face).boundary_id

    def face_vertex_permutation(self, cell: Cell | CellId, face: int) -> tuple[int, ...]:
        """Position in the face's canonical frame of each local face vertex."""
        canonical = self.face(cell, face).vertices
        return tuple(canonical.index(v) for v in self.face_frame(cell, face))

    def face_orientation(self, cell: Cell | CellId, face: int) -> bool:
        """True when the cell sees ``face`` in its canonical (standard) orientation."""
        perm = self.face_vertex_permutation(cell, face)
        return perm == tuple(range(len(perm)))

    # ------------------------------------------------------------------
    # Neighbors
    # ------------------------------------------------------------------

    def neighbor(self, cell: Cell | CellId, face: int) -> Cell | None:
        """Cell across ``face``: same level if it exists, else the coarser one.

        Returns None at the boundary. A returned same-level neighbor may have
        children; use :meth:`neighbor_child_on_subface` to descend.
        """
        cell = self._as_cell(cell)
        ent = self.face(cell, face)
        if ent.at_boundary:
            return None
        store = self._stores[self.dim - 1]
        cid = cell.id
        while ent is not None:
            best = None
            for other, _ in ent.cells:
                if other == cid or other.level > cid.level:
                    continue
                if self.is_ancestor(other, cid):
                    continue
                if best is None or other.level > best.level:
                    best = other
            if best is not None:
                return self.cell(best)
            ent = store[ent.parent] if ent.parent is not None else None
        return None

    def neighbor_child_on_subface(self, cell: Cell | CellId, face: int, subface: int) -> Cell:
        """Child of the refined neighbor adjacent to ``subface`` of ``face``.

        ``subface`` is counted in the calling cell's frame, so the returned
        child's face is the geometric subface even when the shared face has
        non-standard orientation. In that case it is in general a different
        entity than ``self.face(cell, face).children[subface]``.
        """
        cell = self._as_cell(cell)
        n = self.neighbor(cell, face)
        check(
            n is not None and n.level == cell.level and n.has_children,
            PreconditionError,
            f"Neighbor of {cell.id} across face {face} is not refined",
        )
        frame = self.subface_frame(cell, face, subface)
        eid = self._stores[self.dim - 1].lookup(frame)
        if eid is None:
            fail(InternalError, f"Subface {frame} of {cell.id} has no entity")
        for other, _ in self._stores[self.dim - 1][eid].cells:
            candidate = self.cell(other)
            if candidate.parent == n.id:
                return candidate
        fail(InternalError, f"No child of {n.id} is adjacent to subface {frame}")

    def neighbor_of_neighbor(self, cell: Cell | CellId, face: int) -> int:
        """Face index, seen from the same-level neighbor, of the shared face."""
        cell = self._as_cell(cell)
        n = self.neighbor(cell, face)
        check(
            n is not None and n.level == cell.level,
            PreconditionError,
            f"Cell {cell.id} has no same-level neighbor across face {face}",
        )
        return n.faces.index(cell.faces[face])

    def neighbor_of_coarser_neighbor(self, cell: Cell | CellId, face: int) -> tuple[int, int]:
        """(face, subface) of the coarser neighbor that ``face`` of ``cell`` lies on."""
        cell = self._as_cell(cell)
        n = self.neighbor(cell, face)
        check(
            n is not None and n.level < cell.level,
            PreconditionError,
            f"Cell {cell.id} has no coarser neighbor across face {face}",
        )
        store = self._stores[self.dim - 1]
        ent = self.face(cell, face)
        while ent.index not in n.faces:
            check(ent.parent is not None, InternalError, f"Face {ent.vertices} does not lie on {n.id}")
            ent = store[ent.parent]
        nf = n.faces.index(ent.index)
        target = sorted(self.face_frame(cell, face))
        for s in range(self.geometry.subfaces_per_face):
            if sorted(self.subface_frame(n, nf, s)) == target:
                return nf, s
        fail(InternalError, f"Face {face} of {cell.id} is not a subface of {n.id}")

    # ------------------------------------------------------------------
    # Mutators without structural effect
    # ------------------------------------------------------------------

    def set_boundary_indicator(self, cell: Cell | CellId, face: int, boundary_id: int) -> None:
        """Tag a boundary face (and its existing descendants)."""
        ent = self.face(cell, face)
        check(ent.at_boundary, PreconditionError, "Only boundary faces carry a boundary indicator")
        check(
            0 <= boundary_id < INTERIOR,
            PreconditionError,
            f"Boundary indicator must be in [0, {INTERIOR}), got {boundary_id}",
        )
        store = self._stores[self.dim - 1]
        stack = [ent]
        while stack:
            e = stack.pop()
            e.boundary_id = boundary_id
            stack.extend(store[c] for c in e.children)

    def _active(self, cell: Cell | CellId) -> Cell:
        cell = self._as_cell(cell)
        check(cell.is_active, PreconditionError, f"Cell {cell.id} is not active")
        return cell

    def set_refine_flag(self, cell: Cell | CellId, refinement_case: RefinementCase | None = None) -> None:
        """Flag an active cell for isotropic refinement.

        Raises UnsupportedOperation for anisotropic cases; the cell then keeps
        its previous flags.
        """
        cell = self._active(cell)
        iso = RefinementCase.isotropic(self.dim)
        if refinement_case is None:
            refinement_case = iso
        if refinement_case == RefinementCase.NO_REFINEMENT:
            cell.refine_flag = RefinementCase.NO_REFINEMENT
            return
        if refinement_case != iso:
            raise UnsupportedOperation(
                f"Anisotropic refinement {RefinementCase(refinement_case).name} is not supported"
            )
        cell.refine_flag = iso
        cell.coarsen_flag = False

    def clear_refine_flag(self, cell: Cell | CellId) -> None:
        self._active(cell).refine_flag = RefinementCase.NO_REFINEMENT

    def set_coarsen_flag(self, cell: Cell | CellId) -> None:
        self._active(cell).coarsen_flag = True

    def clear_coarsen_flag(self, cell: Cell | CellId) -> None:
        self._active(cell).coarsen_flag = False

    def clear_flags(self) -> None:
        for cell in self.active_cells():
            cell.refine_flag = RefinementCase.NO_REFINEMENT
            cell.coarsen_flag = False

    def set_material_id(self, cell: Cell | CellId, material_id: int) -> None:
        self._as_cell(cell).material_id = int(material_id)

    def set_subdomain_id(self, cell: Cell | CellId, subdomain_id: int) -> None:
        self._active(cell).subdomain_id = int(subdomain_id)

    def set_active_fe_index(self, cell: Cell | CellId, index: int) -> None:
        """Select element ``index`` of an ``FECollection`` for ``cell``.

        Takes effect at the next ``DoFHandler.distribute_dofs``.
        """
        check(index >= 0, PreconditionError, f"Active FE index must be >= 0, got {index}")
        self._active(cell).active_fe_index = int(index)

    # ------------------------------------------------------------------
    # Refinement entry points
    # ------------------------------------------------------------------

    def prepare_coarsening_and_refinement(self) -> bool:
        return refinement.fix_coarsening_and_refinement_flags(self)

    def execute_coarsening_and_refinement(self) -> None:
        refinement.execute_coarsening_and_refinement(self)

    def refine_global(self, times: int = 1) -> None:
        refinement.refine_global(self, times)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def statistics(self) -> MeshStatistics:
        return MeshStatistics(
            dim=self.dim,
            n_levels=self.n_levels,
            n_cells=self.n_cells(),
            n_active_cells=self.n_active_cells(),
            n_used_vertices=self.n_used_vertices,
            generation=self.generation,
            n_active_cells_per_level=[self.n_active_cells(lvl) for lvl in range(self.n_levels)],
        )

    def __repr__(self) -> str:
        return (
            f"Triangulation(dim={self.dim}, levels={self.n_levels}, "
            f"active_cells={self.n_active_cells()}, generation={self.generation})"
        )
