"""Run configuration: structured schema for Hydra and builders from it."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Callable, List, Optional

import pandas as pd
from omegaconf import DictConfig, OmegaConf
from omegaconf.errors import OmegaConfBaseException

from . import renumbering
from .dofs import DoFHandler
from .elements import FE_DGQ, FE_Q, FESystem, FiniteElement
from .errors import PreconditionError, check, set_abort_on_violation
from .grid_generator import subdivided_hyper_rectangle
from .triangulation import Triangulation

log = logging.getLogger(__name__)

ELEMENTS = ("FE_Q", "FE_DGQ")
MARKINGS = ("fixed_number", "fixed_fraction")
RENUMBERINGS = ("none", "cuthill_mckee", "reverse_cuthill_mckee", "subdomain_wise", "component_wise")


@dataclass
class Parameters:
    """Mesh, element and adaptive-loop settings."""

    dim: int = 2
    repetitions: List[int] = field(default_factory=lambda: [2, 2])
    lower: List[float] = field(default_factory=lambda: [0.0, 0.0])
    upper: List[float] = field(default_factory=lambda: [1.0, 1.0])
    element: str = "FE_Q"
    degree: int = 1
    n_components: int = 1
    n_global_refinements: int = 1
    n_cycles: int = 4
    refine_fraction: float = 0.3
    coarsen_fraction: float = 0.0
    marking: str = "fixed_number"
    max_dofs: Optional[int] = None
    renumbering: str = "none"
    n_workers: int = 1
    solve: bool = True
    abort_on_violation: bool = False
    plot: bool = False
    output_dir: str = "figures"

    def to_dict(self) -> dict:
        return {k: (str(v) if isinstance(v, list) else v) for k, v in asdict(self).items()}

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([self.to_dict()])


def validate(params: Parameters) -> Parameters:
    dim = params.dim
    check(dim in (1, 2, 3), PreconditionError, f"dim must be 1, 2 or 3, got {dim}")
    for name in ("repetitions", "lower", "upper"):
        value = getattr(params, name)
        check(len(value) == dim, PreconditionError, f"{name} needs {dim} entries, got {list(value)}")
    check(all(r >= 1 for r in params.repetitions), PreconditionError, "repetitions must be >= 1")
    check(
        all(u > l for l, u in zip(params.lower, params.upper)),
        PreconditionError,
        "upper must exceed lower in every direction",
    )
    check(params.element in ELEMENTS, PreconditionError, f"element must be one of {ELEMENTS}")
    min_degree = 1 if params.element == "FE_Q" else 0
    check(params.degree >= min_degree, PreconditionError, f"{params.element} needs degree >= {min_degree}")
    check(params.n_components >= 1, PreconditionError, "n_components must be >= 1")
    check(params.n_global_refinements >= 0, PreconditionError, "n_global_refinements must be >= 0")
    check(params.n_cycles >= 1, PreconditionError, "n_cycles must be >= 1")
    check(
        0.0 <= params.refine_fraction <= 1.0
        and 0.0 <= params.coarsen_fraction <= 1.0
        and params.refine_fraction + params.coarsen_fraction <= 1.0,
        PreconditionError,
        "refine/coarsen fractions must lie in [0, 1] and add up to at most 1",
    )
    check(params.marking in MARKINGS, PreconditionError, f"marking must be one of {MARKINGS}")
    check(params.renumbering in RENUMBERINGS, PreconditionError, f"renumbering must be one of {RENUMBERINGS}")
    check(params.n_workers >= 1, PreconditionError, "n_workers must be >= 1")
    check(params.max_dofs is None or params.max_dofs > 0, PreconditionError, "max_dofs must be positive")
    return params


def load_parameters(cfg: DictConfig | dict | None = None) -> Parameters:
    """Merge ``cfg`` onto the defaults and validate the result."""
    schema = OmegaConf.structured(Parameters)
    try:
        merged = OmegaConf.merge(schema, cfg if cfg is not None else {})
    except OmegaConfBaseException as exc:
        raise PreconditionError(f"Invalid configuration: {exc}") from exc
    return validate(OmegaConf.to_object(merged))


def make_element(params: Parameters) -> FiniteElement:
    base = FE_Q(params.dim, params.degree) if params.element == "FE_Q" else FE_DGQ(params.dim, params.degree)
    if params.n_components == 1:
        return base
    return FESystem((base, params.n_components))


def make_triangulation(params: Parameters) -> Triangulation:
    """Colorized box mesh, globally refined ``n_global_refinements`` times."""
    tria = subdivided_hyper_rectangle(params.repetitions, params.lower, params.upper, colorize=True)
    tria.refine_global(params.n_global_refinements)
    return tria


def make_renumbering(params: Parameters) -> Callable[[DoFHandler], None] | None:
    if params.renumbering == "none":
        return None
    if params.renumbering == "cuthill_mckee":
        return renumbering.cuthill_mckee
    if params.renumbering == "reverse_cuthill_mckee":
        return lambda dof_handler: renumbering.cuthill_mckee(dof_handler, reverse=True)
    if params.renumbering == "subdomain_wise":
        return renumbering.subdomain_wise
    return renumbering.component_wise


def apply_parameters(params: Parameters) -> bool:
    """Install process-wide settings. Returns the previous abort mode."""
    previous = set_abort_on_violation(params.abort_on_violation)
    log.debug(f"abort_on_violation={params.abort_on_violation}")
    return previous
