"""
Incrementally updated Cholesky factor of a covariance matrix.

The factor is stored as an upper-triangular matrix ``U`` with covariance
``C = Uᵀ U``.  Sampling uses ``x = m + Uᵀ z`` and whitening solves
``Uᵀ t = y``; both are O(n²) and no eigendecomposition is ever needed.
"""

from __future__ import annotations

import math

import numpy as np
import scipy.linalg

from boundcma.core._types import Float64Array
from boundcma.core.errors import ConfigurationError, NumericalError

__all__ = ["CholeskyFactor", "CONDITION_TOLERANCE"]

CONDITION_TOLERANCE: float = 1.0e16
"""Condition number above which a triangular solve is considered singular."""


class CholeskyFactor:
    """
    Upper-triangular Cholesky factor supporting scaling and rank-one updates.

    Attributes
    ----------
    upper : Float64Array
        Read-only view of the (n × n) upper factor ``U``.
    """

    __slots__ = ("_u",)

    def __init__(self, upper: Float64Array) -> None:
        self._u = upper

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def identity(cls, dim: int) -> CholeskyFactor:
        """Factor of the identity covariance."""
        if dim <= 0:
            raise ConfigurationError(f"dim must be positive, got {dim}")
        return cls(np.eye(dim, dtype=np.float64))

    @classmethod
    def from_factor(cls, upper: Float64Array) -> CholeskyFactor:
        """
        Wrap an existing upper-triangular factor.

        Only the upper triangle of ``upper`` is read.  Rows with a negative
        diagonal entry are sign-flipped, which leaves ``Uᵀ U`` unchanged.

        Raises
        ------
        ConfigurationError
            If ``upper`` is not square, not finite, or has a zero diagonal.
        """
        u = np.triu(np.array(upper, dtype=np.float64, copy=True))
        if u.ndim != 2 or u.shape[0] != u.shape[1] or u.shape[0] == 0:
            raise ConfigurationError(
                f"Cholesky factor must be a non-empty square matrix, got shape {u.shape}"
            )
        if not np.all(np.isfinite(u)):
            raise ConfigurationError("Cholesky factor contains non-finite entries.")
        diag = np.diag(u)
        if np.any(diag == 0.0):
            raise ConfigurationError("Cholesky factor is singular (zero on diagonal).")
        u[diag < 0.0, :] *= -1.0
        return cls(u)

    @classmethod
    def from_covariance(cls, cov: Float64Array) -> CholeskyFactor:
        """Factorise a symmetric positive-definite covariance matrix."""
        c = np.asarray(cov, dtype=np.float64)
        if c.ndim != 2 or c.shape[0] != c.shape[1]:
            raise ConfigurationError(f"covariance must be square, got shape {c.shape}")
        try:
            lower = np.linalg.cholesky(c)
        except np.linalg.LinAlgError as exc:
            raise ConfigurationError("covariance is not positive definite") from exc
        return cls(np.ascontiguousarray(lower.T))

    def copy(self) -> CholeskyFactor:
        return CholeskyFactor(self._u.copy())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def dim(self) -> int:
        return int(self._u.shape[0])

    @property
    def upper(self) -> Float64Array:
        view = self._u.view()
        view.flags.writeable = False
        return view

    def covariance(self) -> Float64Array:
        """Reconstruct ``C = Uᵀ U``."""
        return self._u.T @ self._u

    def log_det(self) -> float:
        """``log det C = 2 Σ log U_ii``."""
        with np.errstate(divide="ignore"):
            return float(2.0 * np.sum(np.log(np.abs(np.diag(self._u)))))

    def transform(self, z: Float64Array) -> Float64Array:
        """
        Map standard-normal draws to correlated ones: ``Uᵀ z``.

        ``z`` may be a single vector of length n or a (k × n) batch.
        """
        return np.asarray(z, dtype=np.float64) @ self._u

    def solve_transpose(self, b: Float64Array) -> Float64Array:
        """
        Solve ``Uᵀ t = b`` for ``t``.

        Raises
        ------
        NumericalError
            If the factor is singular or the ratio of its largest to smallest
            diagonal entry exceeds :data:`CONDITION_TOLERANCE`.
        """
        diag = np.diag(self._u)
        if not np.all(np.isfinite(diag)) or np.any(diag == 0.0):
            raise NumericalError("triangular solve: factor is singular")
        abs_diag = np.abs(diag)
        # Diagonal ratio: an O(n) lower bound on the condition number of U.
        cond = float(np.max(abs_diag) / np.min(abs_diag))
        if not math.isfinite(cond) or cond > CONDITION_TOLERANCE:
            raise NumericalError(f"triangular solve: condition number {cond:.3e}")
        try:
            t = scipy.linalg.solve_triangular(
                self._u, np.asarray(b, dtype=np.float64), trans="T", lower=False
            )
        except (np.linalg.LinAlgError, ValueError) as exc:
            raise NumericalError(f"triangular solve failed: {exc}") from exc
        if not np.all(np.isfinite(t)):
            raise NumericalError("triangular solve produced non-finite values")
        return t

    # ------------------------------------------------------------------
    # In-place updates
    # ------------------------------------------------------------------
    def scale(self, c: float) -> None:
        """Replace ``C`` by ``c·C`` (``c`` must be positive)."""
        if not c > 0.0:
            raise ValueError(f"scale factor must be positive, got {c}")
        self._u *= math.sqrt(c)

    def sym_rank_one(self, alpha: float, x: Float64Array) -> None:
        """
        Replace ``C`` by ``C + alpha · x xᵀ`` for ``alpha ≥ 0``.

        Each step rotates row ``k`` of ``U`` against ``x`` with a Givens
        rotation (``|c|, |s| ≤ 1``), so a factor scaled down to the
        subnormal floor is rebuilt without cancellation.  O(n²); the diagonal
        stays strictly positive.
        """
        if alpha < 0.0:
            raise ValueError(f"alpha must be non-negative, got {alpha}")
        if alpha == 0.0:
            return
        u = self._u
        n = u.shape[0]
        w = math.sqrt(alpha) * np.array(x, dtype=np.float64, copy=True)
        if w.shape != (n,):
            raise ValueError(f"x must have shape ({n},), got {w.shape}")
        for k in range(n):
            ukk = u[k, k]
            r = math.hypot(ukk, w[k])
            c = ukk / r
            s = w[k] / r
            u[k, k] = r
            if k + 1 < n:
                row = u[k, k + 1 :].copy()
                u[k, k + 1 :] = c * row + s * w[k + 1 :]
                w[k + 1 :] = c * w[k + 1 :] - s * row
