"""Refinement engine.

Refine and coarsen flags set by the caller are first made consistent so that
face-adjacent active cells never differ by more than one level, then
executed: eligible families are coarsened first, flagged cells are refined,
flags are cleared and the mesh generation is bumped.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .errors import InvalidMesh, PreconditionError, check, fail
from .geometry import RefinementCase

if TYPE_CHECKING:
    from .datastructures import Cell
    from .triangulation import Triangulation

log = logging.getLogger(__name__)


def _flag_state(tria: Triangulation) -> list:
    return [(c.id, c.refine_flag, c.coarsen_flag) for c in tria.active_cells()]


def _drop_invalid_coarsen_flags(tria: Triangulation) -> None:
    for cell in tria.active_cells():
        if cell.coarsen_flag and (cell.refine_flag or cell.parent is None):
            cell.coarsen_flag = False


def _restrict_coarsening_to_families(tria: Triangulation) -> None:
    """A cell may only be coarsened together with all of its siblings."""
    seen = set()
    for cell in tria.active_cells():
        if not cell.coarsen_flag or cell.parent in seen:
            continue
        seen.add(cell.parent)
        family = [tria.cell(c) for c in tria.cell(cell.parent).children]
        if not all(c.is_active and c.coarsen_flag for c in family):
            for c in family:
                c.coarsen_flag = False


def _propagate_refinement(tria: Triangulation) -> None:
    """Refine coarser neighbors of cells that are about to be refined."""
    iso = RefinementCase.isotropic(tria.dim)
    for cell in list(tria.active_cells()):
        if not cell.refine_flag:
            continue
        for f in range(tria.geometry.faces_per_cell):
            n = tria.neighbor(cell, f)
            if n is not None and n.level < cell.level and n.is_active and not n.refine_flag:
                n.refine_flag = iso
                n.coarsen_flag = False


def _coarsening_families(tria: Triangulation) -> list[Cell]:
    """Parents whose children are all active and flagged for coarsening."""
    parents = sorted({c.parent for c in tria.active_cells() if c.coarsen_flag and c.parent is not None})
    families = []
    for pid in parents:
        parent = tria.cell(pid)
        children = [tria.cell(c) for c in parent.children]
        if all(c.is_active and c.coarsen_flag for c in children):
            families.append(parent)
    return families


def _can_coarsen(tria: Triangulation, parent: Cell) -> bool:
    """Coarsening ``parent`` must not put it next to grandchildren of a neighbor."""
    gi = tria.geometry
    for f in range(gi.faces_per_cell):
        n = tria.neighbor(parent, f)
        if n is None or n.level < parent.level or not n.has_children:
            continue
        for s in range(gi.subfaces_per_face):
            child = tria.neighbor_child_on_subface(parent, f, s)
            if child.has_children or child.refine_flag:
                return False
    return True


def _limit_coarsening(tria: Triangulation) -> None:
    for parent in _coarsening_families(tria):
        if not _can_coarsen(tria, parent):
            for cid in parent.children:
                tria.cell(cid).coarsen_flag = False


def fix_coarsening_and_refinement_flags(tria: Triangulation) -> bool:
    """Make refine/coarsen flags consistent with 2:1 balance.

    Iterates to a fixed point. Returns True if any flag was changed.
    """
    initial = _flag_state(tria)
    n_passes = 0
    while True:
        n_passes += 1
        state = _flag_state(tria)
        _drop_invalid_coarsen_flags(tria)
        _restrict_coarsening_to_families(tria)
        _propagate_refinement(tria)
        _limit_coarsening(tria)
        if _flag_state(tria) == state:
            break
    log.debug(f"Flag fixing converged after {n_passes} passes")
    return _flag_state(tria) != initial


def check_level_balance(tria: Triangulation) -> None:
    """Raise InvalidMesh if two face-adjacent active cells differ by more than one level."""
    gi = tria.geometry
    for cell in tria.active_cells():
        for f in range(gi.faces_per_cell):
            n = tria.neighbor(cell, f)
            if n is None:
                continue
            if n.level < cell.level - 1:
                fail(
                    InvalidMesh,
                    f"Cell {cell.id} (level {cell.level}) borders cell {n.id} (level {n.level})",
                )
            if n.level == cell.level and n.has_children:
                for s in range(gi.subfaces_per_face):
                    child = tria.neighbor_child_on_subface(cell, f, s)
                    if child.has_children:
                        fail(
                            InvalidMesh,
                            f"Cell {cell.id} (level {cell.level}) borders refined cell {child.id}",
                        )


def execute_coarsening_and_refinement(tria: Triangulation) -> None:
    """Fix flags, coarsen eligible families, refine flagged cells, clear flags."""
    with tria.lock:
        check(tria.is_created, PreconditionError, "Triangulation has no mesh")
        fix_coarsening_and_refinement_flags(tria)
        tria._notify("pre_refinement")

        families = _coarsening_families(tria)
        to_refine = [c for c in tria.active_cells() if c.refine_flag]
        for parent in families:
            tria._coarsen_cell(parent)
        for cell in to_refine:
            tria._refine_cell(cell)
        tria._trim_levels()
        tria.clear_flags()
        tria.generation += 1

        check_level_balance(tria)
        log.info(
            f"Coarsened {len(families)} families, refined {len(to_refine)} cells: "
            f"{tria.n_active_cells()} active cells on {tria.n_levels} levels"
        )
    tria._notify("post_refinement")


def refine_global(tria: Triangulation, times: int = 1) -> None:
    check(times >= 0, PreconditionError, f"times must be non-negative, got {times}")
    for _ in range(times):
        for cell in tria.active_cells():
            tria.set_refine_flag(cell)
        execute_coarsening_and_refinement(tria)


def coarsen_global(tria: Triangulation, times: int = 1) -> None:
    """Flag every active cell for coarsening and execute, ``times`` times."""
    check(times >= 0, PreconditionError, f"times must be non-negative, got {times}")
    for _ in range(times):
        for cell in tria.active_cells():
            tria.set_coarsen_flag(cell)
        execute_coarsening_and_refinement(tria)
