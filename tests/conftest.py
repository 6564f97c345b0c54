"""Shared meshes for the AMR tests.

Run with: uv run pytest tests -v
"""

import numpy as np
import pytest

from AMR import Triangulation


def make_two_cells():
    """Cells [0,1]x[0,1] and [1,2]x[0,1]; vertex i is (i % 3, i // 3)."""
    vertices = [(0, 0), (1, 0), (2, 0), (0, 1), (1, 1), (2, 1)]
    cells = [[0, 1, 3, 4], [1, 2, 4, 5]]
    tria = Triangulation(2)
    tria.create(vertices, cells)
    return tria


def make_rotated_hexes():
    """Unit cube A plus a cube B = [1,2]x[0,1]x[0,1] listed in a rotated vertex order.

    Local vertex (a, b, c) of B sits at (1 + a, 1 - c, b), so B sees the
    shared face x = 1 through the vertex permutation (1, 3, 0, 2).
    """
    cube = [(a, b, c) for c in (0, 1) for b in (0, 1) for a in (0, 1)]
    far = [(2, y, z) for z in (0, 1) for y in (0, 1)]
    vertices = np.array(cube + far, dtype=float)
    A = list(range(8))
    B = [3, 9, 7, 11, 1, 8, 5, 10]
    tria = Triangulation(3)
    tria.create(vertices, [A, B])
    return tria


@pytest.fixture
def two_cells():
    return make_two_cells()


@pytest.fixture
def rotated_hexes():
    return make_rotated_hexes()
