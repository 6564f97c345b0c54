"""
Adaptive refinement driver.

Usage:
    uv run python main.py
    uv run python main.py dim=3 repetitions=[1,1,1] lower=[0,0,0] upper=[1,1,1] degree=2
    uv run python main.py element=FE_DGQ degree=1 solve=false plot=true
"""

import logging
from pathlib import Path

import hydra
import numpy as np
import pandas as pd
from hydra.core.hydra_config import HydraConfig
from omegaconf import DictConfig

from AMR import DoFHandler, solve_poisson
from AMR.config import (
    apply_parameters,
    load_parameters,
    make_element,
    make_renumbering,
    make_triangulation,
)
from AMR.grid_refinement import interpolation_error_indicator, run_adaptive_cycle

log = logging.getLogger(__name__)


def peak(points: np.ndarray) -> np.ndarray:
    """Smooth bump centered at 0.3 in every direction."""
    r2 = np.sum((points - 0.3) ** 2, axis=1)
    return np.exp(-50.0 * r2)


@hydra.main(config_path="conf", config_name="config", version_base=None)
def main(cfg: DictConfig) -> None:
    params = load_parameters(cfg)
    apply_parameters(params)
    log.info(f"dim={params.dim}, element={params.element}({params.degree}), cycles={params.n_cycles}")

    tria = make_triangulation(params)
    fe = make_element(params)
    dof_handler = DoFHandler(tria)

    solve_fn = None
    if params.solve and fe.n_components == 1 and params.element == "FE_Q":
        solve_fn = lambda dh: solve_poisson(dh, None, peak, n_workers=params.n_workers)[0]

    u, stats = run_adaptive_cycle(
        dof_handler,
        fe,
        lambda dh, _: interpolation_error_indicator(dh.tria, peak),
        params.n_cycles,
        solve_fn=solve_fn,
        marking=params.marking,
        refine_fraction=params.refine_fraction,
        coarsen_fraction=params.coarsen_fraction,
        max_dofs=params.max_dofs,
        renumber_fn=make_renumbering(params),
    )

    log.info("\n" + pd.DataFrame(stats).to_string(index=False))
    log.info(f"Final mesh: {tria}")
    if u is not None:
        log.info(f"max u = {u.max():.6f}, min u = {u.min():.6f}")

    if params.plot:
        from AMR.plotting import plot_convergence, plot_mesh, plot_mesh_3d, save_figure, setup_style

        setup_style()
        out = Path(HydraConfig.get().runtime.output_dir) / params.output_dir
        if tria.dim == 2:
            ax = plot_mesh(tria, dof_handler=dof_handler)
            ax.set_title(f"{fe.name}, {dof_handler.n_dofs} DoFs")
            save_figure(ax.figure, out / "mesh.png")
        else:
            plot_mesh_3d(tria, out / "mesh.png")
        ax = plot_convergence(stats)
        save_figure(ax.figure, out / "convergence.png")


if __name__ == "__main__":
    main()
