"""DoF renumbering strategies.

Each ``compute_*`` function returns ``new_numbers`` with ``new_numbers[old]
= new``; the matching plain function applies it to the handler.
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray
from scipy.sparse.csgraph import reverse_cuthill_mckee

from .constraints import ConstraintMatrix
from .dof_tools import dof_components, get_subdomain_association, make_sparsity_pattern
from .dofs import DoFHandler

log = logging.getLogger(__name__)


def _order_to_numbers(order: NDArray[np.int64]) -> NDArray[np.int64]:
    numbers = np.empty_like(order)
    numbers[order] = np.arange(order.shape[0], dtype=np.int64)
    return numbers


def compute_cuthill_mckee(
    dof_handler: DoFHandler,
    reverse: bool = False,
    constraints: ConstraintMatrix | None = None,
) -> NDArray[np.int64]:
    """Bandwidth-reducing order of the DoF coupling graph."""
    pattern = make_sparsity_pattern(dof_handler, constraints)
    if pattern.shape[0] == 0:
        return np.zeros(0, dtype=np.int64)
    order = reverse_cuthill_mckee(pattern.astype(np.int32).tocsr(), symmetric_mode=True)
    order = np.asarray(order, dtype=np.int64)
    if not reverse:
        order = order[::-1]
    return _order_to_numbers(order)


def cuthill_mckee(
    dof_handler: DoFHandler,
    reverse: bool = False,
    constraints: ConstraintMatrix | None = None,
) -> None:
    numbers = compute_cuthill_mckee(dof_handler, reverse, constraints)
    dof_handler.renumber(numbers)
    log.info(f"Applied {'reverse ' if reverse else ''}Cuthill-McKee ordering")


def compute_component_wise(dof_handler: DoFHandler) -> NDArray[np.int64]:
    """All DoFs of component 0 first, then component 1, ... (stable within a component)."""
    order = np.argsort(dof_components(dof_handler), kind="stable")
    return _order_to_numbers(order.astype(np.int64))


def component_wise(dof_handler: DoFHandler) -> None:
    dof_handler.renumber(compute_component_wise(dof_handler))


def compute_subdomain_wise(dof_handler: DoFHandler) -> NDArray[np.int64]:
    """DoFs sorted by owning subdomain, relative order kept inside each subdomain."""
    order = np.argsort(get_subdomain_association(dof_handler), kind="stable")
    return _order_to_numbers(order.astype(np.int64))


def subdomain_wise(dof_handler: DoFHandler) -> None:
    dof_handler.renumber(compute_subdomain_wise(dof_handler))
