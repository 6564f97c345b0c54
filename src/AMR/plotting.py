"""Mesh and convergence plots."""

from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pyvista as pv
import seaborn as sns
from matplotlib.collections import PolyCollection

from .constraints import ConstraintMatrix
from .dof_tools import map_dofs_to_support_points
from .dofs import DoFHandler
from .errors import UnsupportedOperation
from .io import to_meshio
from .triangulation import Triangulation

log = logging.getLogger(__name__)

STYLE_PATH = Path(__file__).resolve().parent / "amr.mplstyle"


def setup_style():
    """Apply shared matplotlib style."""
    sns.set_theme(style="whitegrid")
    if STYLE_PATH.exists():
        plt.style.use(STYLE_PATH)
    plt.rcParams.setdefault("savefig.bbox", "tight")


def save_figure(fig, filename: str | Path):
    filepath = Path(filename)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(filepath, bbox_inches="tight")
    log.info(f"Saved: {filepath}")
    return filepath


def plot_mesh(
    tria: Triangulation,
    ax=None,
    dof_handler: DoFHandler | None = None,
    constraints: ConstraintMatrix | None = None,
):
    """Draw the active cells colored by level.

    With a DoF handler the support points are drawn on top, constrained
    ones (when ``constraints`` is given) highlighted.
    """
    if tria.dim != 2:
        raise UnsupportedOperation(f"plot_mesh draws 2D meshes only, got dim={tria.dim}")
    if ax is None:
        _, ax = plt.subplots()
    cells = list(tria.active_cells())
    # lexicographic to counter-clockwise
    polygons = [tria.cell_vertices(c)[[0, 1, 3, 2], :2] for c in cells]
    levels = np.array([c.level for c in cells])
    collection = PolyCollection(polygons, array=levels, cmap="viridis", edgecolors="k", linewidths=0.5)
    ax.add_collection(collection)
    ax.autoscale_view()
    ax.set_aspect("equal")
    ax.set_xlabel("$x$")
    ax.set_ylabel("$y$")

    if dof_handler is not None:
        points = map_dofs_to_support_points(dof_handler)
        constrained = np.zeros(dof_handler.n_dofs, dtype=bool)
        if constraints is not None:
            constrained[[i for i in constraints.constrained_dofs() if i < dof_handler.n_dofs]] = True
        ax.scatter(points[~constrained, 0], points[~constrained, 1], s=8, c="k", zorder=3)
        ax.scatter(points[constrained, 0], points[constrained, 1], s=14, c="r", zorder=4, label="constrained")
        if constrained.any():
            ax.legend(loc="upper right")
    return ax


def plot_convergence(stats, ax=None, x: str = "n_dofs", y: str = "error_est"):
    """Log-log convergence history of an adaptive run.

    Parameters
    ----------
    stats : list of dict or pandas.DataFrame
        Per-cycle records as returned by ``run_adaptive_cycle``.
    """
    df = pd.DataFrame(stats)
    if ax is None:
        _, ax = plt.subplots()
    sns.lineplot(data=df, x=x, y=y, marker="o", ax=ax)
    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("Number of DoFs" if x == "n_dofs" else x)
    ax.set_ylabel(r"$\|\eta\|$" if y == "error_est" else y)
    return ax


def plot_mesh_3d(tria: Triangulation, filename: str | Path):
    """Off-screen PyVista rendering of the active cells colored by level."""
    pv.set_plot_theme("paraview")
    grid = pv.from_meshio(to_meshio(tria))
    plotter = pv.Plotter(off_screen=True)
    plotter.add_mesh(grid, scalars="level", show_edges=True, cmap="viridis")
    plotter.add_axes()
    filepath = Path(filename)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    plotter.screenshot(str(filepath))
    plotter.close()
    log.info(f"Saved: {filepath}")
    return filepath
