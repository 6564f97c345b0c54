"""Adaptive mesh refinement on hypercube meshes.

Hierarchical quadrilateral/hexahedral meshes with 2:1 balanced refinement,
global DoF numbering for Lagrange-type elements and the hanging-node
constraints that keep solutions continuous across refinement interfaces.

Main components:
- Triangulation: cells of all levels, shared lines/quads, neighbor queries
- refinement: flag fixing and execution of coarsening/refinement
- DoFHandler: global numbering of element DoFs on the active cells
- ConstraintMatrix: linear constraints x_i = sum_j a_ij x_j + b_i
- dof_tools: hanging-node and boundary constraints, sparsity patterns
"""

from .errors import (
    AMRError,
    PreconditionError,
    StaleNumbering,
    InvalidMesh,
    InvalidConstraint,
    CyclicConstraint,
    UnsupportedOperation,
    InternalError,
    abort_on_violation,
    set_abort_on_violation,
)
from .geometry import GeometryInfo, RefinementCase, geometry_info
from .datastructures import INTERIOR, CellId, Cell, Entity, MeshStatistics
from .triangulation import Triangulation
from .refinement import check_level_balance, coarsen_global, refine_global
from .elements import FE_DGQ, FE_Q, DoFLayout, FECollection, FESystem, FiniteElement
from .dofs import DoFHandler, distribute_dofs
from .constraints import ConstraintLine, ConstraintMatrix
from .dof_tools import (
    make_hanging_node_constraints,
    make_zero_boundary_constraints,
    make_boundary_value_constraints,
    make_sparsity_pattern,
    extract_boundary_dofs,
    map_dofs_to_support_points,
)
from .assembly import assemble_laplace_system, run_work_stream, solve_poisson
from .grid_generator import hyper_cube, subdivided_hyper_rectangle
from .grid_refinement import (
    refine_and_coarsen_fixed_fraction,
    refine_and_coarsen_fixed_number,
    run_adaptive_cycle,
)
from .io import from_meshio, to_meshio

__all__ = [
    # Errors
    "AMRError",
    "PreconditionError",
    "StaleNumbering",
    "InvalidMesh",
    "InvalidConstraint",
    "CyclicConstraint",
    "UnsupportedOperation",
    "InternalError",
    "abort_on_violation",
    "set_abort_on_violation",
    # Geometry
    "GeometryInfo",
    "RefinementCase",
    "geometry_info",
    # Mesh
    "INTERIOR",
    "CellId",
    "Cell",
    "Entity",
    "MeshStatistics",
    "Triangulation",
    "check_level_balance",
    "coarsen_global",
    "refine_global",
    "hyper_cube",
    "subdivided_hyper_rectangle",
    # Elements and DoFs
    "FE_Q",
    "FE_DGQ",
    "FESystem",
    "DoFLayout",
    "FECollection",
    "FiniteElement",
    "DoFHandler",
    "distribute_dofs",
    # Constraints
    "ConstraintLine",
    "ConstraintMatrix",
    "make_hanging_node_constraints",
    "make_zero_boundary_constraints",
    "make_boundary_value_constraints",
    "make_sparsity_pattern",
    "extract_boundary_dofs",
    "map_dofs_to_support_points",
    # Assembly and solvers
    "assemble_laplace_system",
    "run_work_stream",
    "solve_poisson",
    # Adaptivity
    "refine_and_coarsen_fixed_fraction",
    "refine_and_coarsen_fixed_number",
    "run_adaptive_cycle",
    # I/O
    "from_meshio",
    "to_meshio",
]
