"""
Standard test objectives.

All take a 1-D array and return a Python float.  They are used by the CLI,
the examples and the test-suite.
"""

from __future__ import annotations

import math

import numpy as np

from boundcma.core._types import Float64Array

__all__ = ["sphere", "rosenbrock", "rastrigin", "OBJECTIVES"]


def sphere(x: Float64Array) -> float:
    """Σ xᵢ²; minimum 0 at the origin."""
    x = np.asarray(x, dtype=np.float64)
    return float(x @ x)


def rosenbrock(x: Float64Array) -> float:
    """Σ 100 (xᵢ₊₁ − xᵢ²)² + (1 − xᵢ)²; minimum 0 at (1, …, 1)."""
    x = np.asarray(x, dtype=np.float64)
    if x.size < 2:
        return float((1.0 - x[0]) ** 2) if x.size else 0.0
    return float(np.sum(100.0 * (x[1:] - x[:-1] ** 2) ** 2 + (1.0 - x[:-1]) ** 2))


def rastrigin(x: Float64Array) -> float:
    """10 n + Σ (xᵢ² − 10 cos 2πxᵢ); minimum 0 at the origin, highly multimodal."""
    x = np.asarray(x, dtype=np.float64)
    return float(10.0 * x.size + np.sum(x * x - 10.0 * np.cos(2.0 * math.pi * x)))


OBJECTIVES = {
    "sphere": sphere,
    "rosenbrock": rosenbrock,
    "rastrigin": rastrigin,
}
