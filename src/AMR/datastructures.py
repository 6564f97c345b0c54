from __future__ import annotations

from dataclasses import asdict, dataclass, field

import pandas as pd

from .geometry import RefinementCase

# Boundary indicator of faces between two cells
INTERIOR = 255

# Boundary indicator given to every boundary face of a new mesh
DEFAULT_BOUNDARY_ID = 0


@dataclass(frozen=True, order=True)
class CellId:
    """Address of a cell in the level arenas."""

    level: int
    index: int

    def __str__(self) -> str:
        return f"{self.level}.{self.index}"


@dataclass(eq=False)
class Entity:
    """A line, quad (3D face) or point (1D face) shared between cells.

    ``vertices`` holds the canonical frame of the entity: the lexicographic
    vertex order seen by the cell that created it. DoFs living on the entity
    are stored in this frame.
    """

    dim: int
    index: int
    vertices: tuple[int, ...]
    parent: int | None = None
    children: list[int] = field(default_factory=list)
    center: int | None = None
    boundary_id: int = INTERIOR
    # (cell, local object index) of every cell referencing this entity
    cells: list[tuple[CellId, int]] = field(default_factory=list)

    @property
    def has_children(self) -> bool:
        return bool(self.children)

    @property
    def at_boundary(self) -> bool:
        return self.boundary_id != INTERIOR


@dataclass(eq=False)
class Cell:
    """One mesh cell at a given refinement level."""

    level: int
    index: int
    vertices: tuple[int, ...]
    faces: list[int]
    # entity ids of the sub-objects of dimension 1..dim-1, in local order
    entities: dict[int, list[int]]
    parent: CellId | None = None
    children: list[CellId] = field(default_factory=list)
    refine_flag: RefinementCase = RefinementCase.NO_REFINEMENT
    coarsen_flag: bool = False
    material_id: int = 0
    subdomain_id: int = 0
    active_fe_index: int = 0

    @property
    def id(self) -> CellId:
        return CellId(self.level, self.index)

    @property
    def is_active(self) -> bool:
        return not self.children

    @property
    def has_children(self) -> bool:
        return bool(self.children)

    def __repr__(self) -> str:
        state = "active" if self.is_active else f"{len(self.children)} children"
        return f"Cell({self.id}, vertices={self.vertices}, {state})"


@dataclass
class MeshStatistics:
    """Summary of a triangulation, e.g. one row of an adaptive-cycle table."""

    dim: int = 0
    n_levels: int = 0
    n_cells: int = 0
    n_active_cells: int = 0
    n_used_vertices: int = 0
    generation: int = 0
    n_active_cells_per_level: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    def to_dataframe(self) -> pd.DataFrame:
        row = self.to_dict()
        row["n_active_cells_per_level"] = ",".join(map(str, self.n_active_cells_per_level))
        return pd.DataFrame([row])
