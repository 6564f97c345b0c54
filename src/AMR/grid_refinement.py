"""Cell marking strategies and the adaptive refinement loop.

Criteria arrays hold one value per active cell, in
``Triangulation.active_cells()`` order.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

import numpy as np
from numpy.typing import NDArray

from .constraints import ConstraintMatrix
from .dof_tools import make_hanging_node_constraints
from .dofs import DoFHandler
from .elements import FiniteElement
from .errors import PreconditionError, check
from .triangulation import Triangulation

log = logging.getLogger(__name__)


def _criteria(tria: Triangulation, criteria) -> NDArray[np.float64]:
    criteria = np.asarray(criteria, dtype=np.float64)
    n = tria.n_active_cells()
    check(
        criteria.shape == (n,),
        PreconditionError,
        f"Need one criterion per active cell ({n}), got shape {criteria.shape}",
    )
    check(bool(np.all(criteria >= 0)), PreconditionError, "Criteria must be non-negative")
    return criteria


def refine(tria: Triangulation, criteria, threshold: float) -> int:
    """Flag every active cell with ``criterion >= threshold``. Returns the count."""
    criteria = _criteria(tria, criteria)
    n_flagged = 0
    for cell, value in zip(list(tria.active_cells()), criteria):
        if value >= threshold:
            tria.set_refine_flag(cell)
            n_flagged += 1
    return n_flagged


def coarsen(tria: Triangulation, criteria, threshold: float) -> int:
    """Flag cells with ``criterion <= threshold`` for coarsening, unless flagged for refinement."""
    criteria = _criteria(tria, criteria)
    n_flagged = 0
    for cell, value in zip(list(tria.active_cells()), criteria):
        if value <= threshold and not cell.refine_flag:
            tria.set_coarsen_flag(cell)
            n_flagged += 1
    return n_flagged


def _check_fractions(top_fraction: float, bottom_fraction: float) -> None:
    check(
        0.0 <= top_fraction <= 1.0 and 0.0 <= bottom_fraction <= 1.0,
        PreconditionError,
        f"Fractions must lie in [0, 1], got {top_fraction}, {bottom_fraction}",
    )
    check(
        top_fraction + bottom_fraction <= 1.0,
        PreconditionError,
        "Refine and coarsen fractions may not add up to more than 1",
    )


def _apply_thresholds(tria: Triangulation, criteria, top: float, bottom: float) -> tuple[int, int]:
    # the same cell must never be flagged both ways
    if bottom >= top:
        bottom = 0.999 * top
    n_refine = refine(tria, criteria, top) if np.isfinite(top) else 0
    n_coarsen = coarsen(tria, criteria, bottom) if np.isfinite(bottom) else 0
    log.debug(f"Flagged {n_refine} cells for refinement, {n_coarsen} for coarsening")
    return n_refine, n_coarsen


def refine_and_coarsen_fixed_number(
    tria: Triangulation,
    criteria,
    top_fraction: float,
    bottom_fraction: float,
    max_n_cells: int | None = None,
) -> tuple[int, int]:
    """Refine the ``top_fraction`` of cells with the largest criteria, coarsen the smallest."""
    criteria = _criteria(tria, criteria)
    _check_fractions(top_fraction, bottom_fraction)
    n = criteria.shape[0]
    n_refine = int(top_fraction * n)
    n_coarsen = int(bottom_fraction * n)
    if max_n_cells is not None:
        children = tria.geometry.children_per_cell
        allowed = max(0, (max_n_cells - n) // (children - 1))
        if n_refine > allowed:
            log.debug(f"Limiting refinement from {n_refine} to {allowed} cells (max {max_n_cells})")
            n_refine = allowed
    descending = np.sort(criteria)[::-1]
    top = descending[n_refine - 1] if n_refine > 0 else np.inf
    bottom = descending[n - n_coarsen] if n_coarsen > 0 else -np.inf
    return _apply_thresholds(tria, criteria, top, bottom)


def refine_and_coarsen_fixed_fraction(
    tria: Triangulation,
    criteria,
    top_fraction: float,
    bottom_fraction: float,
) -> tuple[int, int]:
    """Refine the largest cells that together carry ``top_fraction`` of the total criterion.

    Likewise, the smallest cells that together carry ``bottom_fraction`` are
    flagged for coarsening.
    """
    criteria = _criteria(tria, criteria)
    _check_fractions(top_fraction, bottom_fraction)
    total = criteria.sum()
    if total == 0.0:
        return 0, 0
    descending = np.sort(criteria)[::-1]
    cumulative = np.cumsum(descending)
    top, bottom = np.inf, -np.inf
    if top_fraction > 0:
        index = min(int(np.searchsorted(cumulative, top_fraction * total)), descending.size - 1)
        top = descending[index]
    if bottom_fraction > 0:
        ascending = descending[::-1]
        reached = np.flatnonzero(np.cumsum(ascending) <= bottom_fraction * total)
        if reached.size:
            bottom = ascending[reached[-1]]
    return _apply_thresholds(tria, criteria, top, bottom)


def interpolation_error_indicator(
    tria: Triangulation, func: Callable[[NDArray[np.float64]], NDArray[np.float64]]
) -> NDArray[np.float64]:
    """Per-cell estimate of the d-linear interpolation error of ``func``.

    Difference between ``func`` at the cell center and the mean of its
    vertex values, scaled by the square root of the cell measure.
    """
    cells = list(tria.active_cells())
    nv = tria.geometry.vertices_per_cell
    corners = np.concatenate([tria.cell_vertices(c) for c in cells])
    centers = corners.reshape(len(cells), nv, -1).mean(axis=1)
    at_corners = np.asarray(func(corners), dtype=np.float64).reshape(len(cells), nv)
    at_centers = np.asarray(func(centers), dtype=np.float64)
    measures = np.array([tria.cell_measure(c) for c in cells])
    return np.abs(at_centers - at_corners.mean(axis=1)) * np.sqrt(measures)


def mark_cells(errors: NDArray[np.float64], alpha: float = 0.5, tol: float | None = None) -> NDArray[np.int64]:
    """Indices of cells whose error exceeds ``alpha`` times ``tol`` (default: the max error)."""
    errors = np.asarray(errors)
    if errors.size == 0:
        return np.zeros(0, dtype=np.int64)
    threshold = alpha * (tol if tol is not None else np.max(errors))
    return np.where(errors > threshold)[0]


def run_adaptive_cycle(
    dof_handler: DoFHandler,
    fe: FiniteElement,
    estimator_fn: Callable[[DoFHandler, NDArray[np.float64] | None], NDArray[np.float64]],
    n_cycles: int,
    solve_fn: Callable[[DoFHandler], NDArray[np.float64]] | None = None,
    marking: str = "fixed_number",
    refine_fraction: float = 0.3,
    coarsen_fraction: float = 0.0,
    max_dofs: int | None = None,
    renumber_fn: Callable[[DoFHandler], None] | None = None,
) -> tuple[NDArray[np.float64] | None, list[dict]]:
    """Distribute, constrain, (solve), estimate, mark and refine, ``n_cycles`` times.

    Returns the last solution (None without ``solve_fn``) and one statistics
    dict per cycle.
    """
    check(n_cycles >= 1, PreconditionError, f"n_cycles must be >= 1, got {n_cycles}")
    check(
        marking in ("fixed_number", "fixed_fraction"),
        PreconditionError,
        f"Unknown marking strategy '{marking}'",
    )
    tria = dof_handler.tria
    stats: list[dict] = []
    u = None

    for cycle in range(n_cycles):
        start = time.perf_counter()
        dof_handler.distribute_dofs(fe)
        if renumber_fn is not None:
            renumber_fn(dof_handler)
        constraints = ConstraintMatrix()
        make_hanging_node_constraints(dof_handler, constraints)
        constraints.close()

        u = solve_fn(dof_handler) if solve_fn is not None else None
        estimates = np.asarray(estimator_fn(dof_handler, u), dtype=np.float64)

        entry = {
            "cycle": cycle,
            "n_levels": tria.n_levels,
            "n_active_cells": tria.n_active_cells(),
            "n_dofs": dof_handler.n_dofs,
            "n_hanging_constraints": len(constraints),
            "error_est": float(np.linalg.norm(estimates)),
            "time": time.perf_counter() - start,
        }
        stats.append(entry)

        reached_dof = max_dofs is not None and dof_handler.n_dofs >= max_dofs
        if cycle == n_cycles - 1 or reached_dof:
            log.info(f"Cycle {cycle}: {entry['n_dofs']} DoFs, stopping")
            break

        if marking == "fixed_number":
            refine_and_coarsen_fixed_number(tria, estimates, refine_fraction, coarsen_fraction)
        else:
            refine_and_coarsen_fixed_fraction(tria, estimates, refine_fraction, coarsen_fraction)
        tria.execute_coarsening_and_refinement()
        log.info(
            f"Cycle {cycle}: {entry['n_active_cells']} cells, {entry['n_dofs']} DoFs, "
            f"{entry['n_hanging_constraints']} hanging constraints, est={entry['error_est']:.3e}"
        )

    return u, stats
