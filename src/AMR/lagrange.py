"""1D Lagrange polynomials on equispaced nodes."""

import numpy as np
from numba import njit


def equispaced_nodes(degree: int) -> np.ndarray:
    """Nodes j/degree, j = 0..degree (the midpoint for degree 0)."""
    if degree == 0:
        return np.array([0.5])
    return np.linspace(0.0, 1.0, degree + 1)


@njit
def lagrange_values(nodes, x):
    """L_j(x_i) for all points x_i and nodes j. Shape (len(x), len(nodes))."""
    n = nodes.shape[0]
    m = x.shape[0]
    out = np.ones((m, n))
    for i in range(m):
        for j in range(n):
            for k in range(n):
                if k != j:
                    out[i, j] *= (x[i] - nodes[k]) / (nodes[j] - nodes[k])
    return out


@njit
def lagrange_derivatives(nodes, x):
    """L_j'(x_i), via the product rule. Shape (len(x), len(nodes))."""
    n = nodes.shape[0]
    m = x.shape[0]
    out = np.zeros((m, n))
    for i in range(m):
        for j in range(n):
            total = 0.0
            for k in range(n):
                if k == j:
                    continue
                term = 1.0 / (nodes[j] - nodes[k])
                for l in range(n):
                    if l != j and l != k:
                        term *= (x[i] - nodes[l]) / (nodes[j] - nodes[l])
                total += term
            out[i, j] = total
    return out
