"""Tools built on a DoF numbering.

Hanging-node and boundary constraints, sparsity patterns, support points,
component and subdomain bookkeeping.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Sequence

import numpy as np
from numpy.typing import NDArray
from scipy import sparse

from .constraints import ConstraintMatrix
from .dofs import DoFHandler
from .elements import Continuity
from .errors import PreconditionError, UnsupportedOperation, check
from .geometry import d_linear_shape_values

log = logging.getLogger(__name__)

# weights below this magnitude are not entered into hanging-node constraints
WEIGHT_TOL = 1e-12


def _hanging_faces(dof_handler: DoFHandler):
    """Yield (cell, face) for every active cell face whose neighbor is refined."""
    tria = dof_handler.tria
    for cell in tria.active_cells():
        for f in range(tria.geometry.faces_per_cell):
            if tria.face(cell, f).has_children:
                yield cell, f


def _needs_hanging_constraints(dof_handler: DoFHandler) -> bool:
    fe = dof_handler.fe
    return (
        dof_handler.tria.dim > 1
        and fe.continuity is Continuity.CONTINUOUS
        and fe.dofs_per_face > 0
    )


def make_hanging_node_constraints(
    dof_handler: DoFHandler, constraints: ConstraintMatrix
) -> int:
    """Constrain DoFs on refined faces to the interpolant of the coarse side.

    For every active cell with a refined face, each fine DoF on the subfaces
    that is neither a coarse DoF nor already constrained becomes
    ``x_fine = sum_j M[r, j] x_coarse_j``, with ``M`` the element's subface
    interpolation matrix. Returns the number of lines added.
    """
    dof_handler.check_current()
    if not _needs_hanging_constraints(dof_handler):
        return 0
    tria, fe = dof_handler.tria, dof_handler.fe
    n_added = 0
    for cell, f in _hanging_faces(dof_handler):
        coarse = dof_handler.face_dofs_in_frame(tria.face_frame(cell, f))
        coarse_set = set(coarse.tolist())
        for s in range(tria.geometry.subfaces_per_face):
            fine = dof_handler.face_dofs_in_frame(tria.subface_frame(cell, f, s))
            matrix = fe.subface_interpolation_matrix(s)
            for r, dof in enumerate(fine.tolist()):
                if dof in coarse_set or constraints.is_constrained(dof):
                    continue
                constraints.add_line(dof)
                for j in np.flatnonzero(np.abs(matrix[r]) > WEIGHT_TOL):
                    constraints.add_entry(dof, coarse[j], matrix[r, j])
                n_added += 1
    log.info(f"Added {n_added} hanging-node constraints")
    return n_added


def extract_hanging_node_dofs(dof_handler: DoFHandler) -> NDArray[np.bool_]:
    """Mask of the DoFs that hanging-node constraints would constrain."""
    dof_handler.check_current()
    mask = np.zeros(dof_handler.n_dofs, dtype=bool)
    if not _needs_hanging_constraints(dof_handler):
        return mask
    tria = dof_handler.tria
    for cell, f in _hanging_faces(dof_handler):
        coarse = set(dof_handler.face_dofs_in_frame(tria.face_frame(cell, f)).tolist())
        for s in range(tria.geometry.subfaces_per_face):
            fine = dof_handler.face_dofs_in_frame(tria.subface_frame(cell, f, s))
            mask[[d for d in fine.tolist() if d not in coarse]] = True
    return mask


def _boundary_faces(dof_handler: DoFHandler, boundary_ids: Iterable[int] | None):
    tria = dof_handler.tria
    ids = None if boundary_ids is None else set(boundary_ids)
    for cell in tria.active_cells():
        for f in range(tria.geometry.faces_per_cell):
            face = tria.face(cell, f)
            if face.at_boundary and (ids is None or face.boundary_id in ids):
                yield cell, f, face.boundary_id


def _component_selection(dof_handler: DoFHandler, component_mask: Sequence[bool] | None):
    fe = dof_handler.fe
    comps = fe.face_components()
    if component_mask is None:
        return comps, np.ones(comps.shape[0], dtype=bool)
    component_mask = np.asarray(component_mask, dtype=bool)
    check(
        component_mask.shape == (fe.n_components,),
        PreconditionError,
        f"Component mask needs {fe.n_components} entries, got {component_mask.shape}",
    )
    return comps, component_mask[comps]


def extract_boundary_dofs(
    dof_handler: DoFHandler,
    boundary_ids: Iterable[int] | None = None,
    component_mask: Sequence[bool] | None = None,
) -> NDArray[np.bool_]:
    """Mask of DoFs on boundary faces (all boundary ids when ``boundary_ids`` is None)."""
    dof_handler.check_current()
    mask = np.zeros(dof_handler.n_dofs, dtype=bool)
    _, selected = _component_selection(dof_handler, component_mask)
    for cell, f, _ in _boundary_faces(dof_handler, boundary_ids):
        dofs = dof_handler.face_dofs(cell, f)
        mask[dofs[selected]] = True
    return mask


def make_zero_boundary_constraints(
    dof_handler: DoFHandler,
    constraints: ConstraintMatrix,
    boundary_ids: Iterable[int] | None = None,
    component_mask: Sequence[bool] | None = None,
) -> int:
    """Add ``x[i] = 0`` for every boundary DoF not constrained yet."""
    mask = extract_boundary_dofs(dof_handler, boundary_ids, component_mask)
    n_added = 0
    for dof in np.flatnonzero(mask):
        if not constraints.is_constrained(dof):
            constraints.add_line(dof)
            n_added += 1
    return n_added


def map_dofs_to_support_points(dof_handler: DoFHandler) -> NDArray[np.float64]:
    """Real-space support point of every DoF, shape (n_dofs, spacedim)."""
    dof_handler.check_current()
    fe, tria = dof_handler.fe, dof_handler.tria
    if not fe.has_support_points:
        raise UnsupportedOperation(f"{fe.name} has no support points")
    mapping = d_linear_shape_values(tria.dim, fe.unit_support_points())
    points = np.full((dof_handler.n_dofs, tria.spacedim), np.nan)
    for cell, dofs in dof_handler.active_cell_dofs():
        points[dofs] = mapping @ tria.cell_vertices(cell)
    return points


def interpolate_boundary_values(
    dof_handler: DoFHandler,
    boundary_functions: dict[int, Callable[[NDArray[np.float64]], NDArray[np.float64]]],
    component_mask: Sequence[bool] | None = None,
) -> dict[int, float]:
    """Nodal values of boundary functions on the DoFs of matching boundary faces.

    ``boundary_functions`` maps a boundary id to a function of points
    ``(n, spacedim)`` returning ``(n,)`` values, or ``(n, n_components)``
    for vector-valued elements.
    """
    support = map_dofs_to_support_points(dof_handler)
    comps, selected = _component_selection(dof_handler, component_mask)
    values: dict[int, float] = {}
    for cell, f, boundary_id in _boundary_faces(dof_handler, boundary_functions.keys()):
        dofs = dof_handler.face_dofs(cell, f)
        result = np.asarray(boundary_functions[boundary_id](support[dofs]), dtype=np.float64)
        if result.ndim == 2:
            result = result[np.arange(len(dofs)), comps]
        for dof, value, keep in zip(dofs.tolist(), result.tolist(), selected):
            if keep:
                values[dof] = value
    return values


def make_boundary_value_constraints(
    dof_handler: DoFHandler,
    constraints: ConstraintMatrix,
    boundary_functions: dict[int, Callable[[NDArray[np.float64]], NDArray[np.float64]]],
    component_mask: Sequence[bool] | None = None,
) -> int:
    """Add ``x[i] = g(x_i)`` for every boundary DoF not constrained yet.

    DoFs that already carry a line (for instance hanging nodes lying on the
    boundary) are left alone.
    """
    values = interpolate_boundary_values(dof_handler, boundary_functions, component_mask)
    n_added = 0
    for dof in sorted(values):
        if constraints.is_constrained(dof):
            continue
        constraints.add_line(dof)
        constraints.set_inhomogeneity(dof, values[dof])
        n_added += 1
    return n_added


def make_sparsity_pattern(
    dof_handler: DoFHandler, constraints: ConstraintMatrix | None = None
) -> sparse.csr_matrix:
    """Boolean pattern coupling all DoFs of each cell, condensed if constraints are given."""
    dof_handler.check_current()
    rows, cols = [], []
    for _, dofs in dof_handler.active_cell_dofs():
        n = dofs.shape[0]
        rows.append(np.repeat(dofs, n))
        cols.append(np.tile(dofs, n))
    n_dofs = dof_handler.n_dofs
    if rows:
        rows, cols = np.concatenate(rows), np.concatenate(cols)
    else:
        rows = cols = np.zeros(0, dtype=np.int64)
    pattern = sparse.csr_matrix(
        (np.ones(rows.shape[0]), (rows, cols)), shape=(n_dofs, n_dofs)
    )
    if constraints is not None:
        return constraints.condense_sparsity_pattern(pattern)
    return pattern.astype(bool)


def dof_components(dof_handler: DoFHandler) -> NDArray[np.int64]:
    """Vector component of every DoF."""
    dof_handler.check_current()
    local = dof_handler.fe.dof_components()
    comps = np.zeros(dof_handler.n_dofs, dtype=np.int64)
    for _, dofs in dof_handler.active_cell_dofs():
        comps[dofs] = local
    return comps


def count_dofs_per_component(dof_handler: DoFHandler) -> NDArray[np.int64]:
    return np.bincount(dof_components(dof_handler), minlength=dof_handler.fe.n_components)


def get_subdomain_association(dof_handler: DoFHandler) -> NDArray[np.int64]:
    """Subdomain of every DoF.

    DoFs on interfaces between subdomains go to the subdomain of the last
    active cell (in numbering order) that touches them.
    """
    dof_handler.check_current()
    owner = np.full(dof_handler.n_dofs, -1, dtype=np.int64)
    for cell, dofs in dof_handler.active_cell_dofs():
        owner[dofs] = cell.subdomain_id
    return owner


def count_dofs_with_subdomain_association(dof_handler: DoFHandler, subdomain_id: int) -> int:
    return int(np.count_nonzero(get_subdomain_association(dof_handler) == subdomain_id))


def locally_owned_dofs(dof_handler: DoFHandler, subdomain_id: int) -> NDArray[np.int64]:
    return np.flatnonzero(get_subdomain_association(dof_handler) == subdomain_id)


def index_ranges(dof_handler: DoFHandler) -> dict[int, range | NDArray[np.int64]]:
    """Owned DoFs per subdomain, as a ``range`` where they are contiguous."""
    owner = get_subdomain_association(dof_handler)
    ranges: dict[int, range | NDArray[np.int64]] = {}
    for subdomain in np.unique(owner).tolist():
        owned = np.flatnonzero(owner == subdomain)
        if owned[-1] - owned[0] + 1 == owned.size:
            ranges[subdomain] = range(int(owned[0]), int(owned[-1]) + 1)
        else:
            ranges[subdomain] = owned
    return ranges
