"""
regression.py

Ridge regression objective, gradient, local fit and significance tests.

All functions are pure and operate on a biased design matrix X (n × k, bias
column included), a response vector y (n,) and a coefficient vector W (k,).

Conventions
-----------
• objective(W) = Σ (y − X·W)² + λ·(W·W)/2
• gradient(W)  = −2·Xᵀ(y − X·W) + λ·W
• The exact ridge solution is therefore (XᵀX + λ/2·I)·W = Xᵀy.
• Degrees of freedom are n − k everywhere (k counts the bias column).
"""

from __future__ import annotations

import logging
from typing import Optional, Union

import numpy as np
import scipy.linalg as la
from scipy import stats
from scipy.optimize import minimize

from .blocks.aux import ValidationError

Array = np.ndarray
Lambda = Optional[float]


# ------------------------------- utilities -------------------------------- #


def _as_problem(W, X, y=None):
    W = np.asarray(W, dtype=float).ravel()
    X = np.atleast_2d(np.asarray(X, dtype=float))
    if y is None:
        return W, X, None
    return W, X, np.asarray(y, dtype=float).ravel()


def _lambda(lam: Lambda) -> float:
    return 0.0 if lam is None else float(lam)


def apply_model(W, X) -> Array:
    """Predictions X·W."""
    W, X, _ = _as_problem(W, X)
    return X @ W


def residual_sum_of_squares(X, y, W) -> float:
    W, X, y = _as_problem(W, X, y)
    r = y - X @ W
    return float(r @ r)


def total_sum_of_squares(y, mean_y: Optional[float] = None) -> float:
    """Σ (y − ȳ)², ȳ being ``mean_y`` when given (e.g. a cross-site mean)."""
    y = np.asarray(y, dtype=float).ravel()
    m = float(np.mean(y)) if mean_y is None else float(mean_y)
    d = y - m
    return float(d @ d)


def feature_variance(X) -> Array:
    """diag(XᵀX): per-column sum of squares."""
    X = np.atleast_2d(np.asarray(X, dtype=float))
    return np.einsum("ij,ij->j", X, X)


def degrees_of_freedom(n_obs: int, n_features: int) -> int:
    return int(n_obs) - int(n_features)


# ------------------------------ objective --------------------------------- #


def objective(W, X, y, lam: Lambda = None) -> float:
    """Sum of squared residuals plus the L2 penalty λ·(W·W)/2."""
    W, X, y = _as_problem(W, X, y)
    r = y - X @ W
    return float(r @ r + 0.5 * _lambda(lam) * (W @ W))


def gradient(W, X, y, lam: Lambda = None) -> Array:
    """∇objective: −2·Xᵀ(y − X·W) + λ·W."""
    W, X, y = _as_problem(W, X, y)
    return -2.0 * (X.T @ (y - X @ W)) + _lambda(lam) * W


# ------------------------------ local fit --------------------------------- #


def _require_full_rank(X: Array) -> None:
    k = X.shape[1]
    if X.shape[0] < k or np.linalg.matrix_rank(X) < k:
        raise ValidationError(
            "XᵀX is singular: features are collinear or there are fewer rows "
            f"({X.shape[0]}) than coefficients ({k})",
            {"n_obs": int(X.shape[0]), "n_features": int(k)},
        )


def _xtx_inverse(X: Array) -> Array:
    _require_full_rank(X)
    try:
        return la.inv(X.T @ X)
    except la.LinAlgError as e:
        raise ValidationError(f"XᵀX is singular: {e}", {"n_features": int(X.shape[1])}) from e


def closed_form_fit(
    X,
    y,
    lam: Lambda = None,
    method: str = "exact",
    w0=None,
    tol: float = 1e-8,
    rng: Union[None, int, np.random.Generator] = None,
) -> Array:
    """
    Minimise ``objective`` on a single dataset.

    method="exact" solves the ridge normal equations; method="bfgs" runs an
    unconstrained quasi-Newton minimiser from ``w0`` (random in [0, 1) when
    not given). Both reach the same optimum up to ``tol``.
    """
    _, X, y = _as_problem(np.zeros(1), X, y)
    lam_v = _lambda(lam)
    k = X.shape[1]

    if method == "exact":
        A = X.T @ X + 0.5 * lam_v * np.eye(k)
        if lam_v <= 0.0:
            # unpenalised: the system is only solvable at full column rank
            _require_full_rank(X)
        try:
            return la.solve(A, X.T @ y, assume_a="sym")
        except la.LinAlgError as e:
            raise ValidationError(f"Ridge system is singular: {e}", {"n_features": int(k)}) from e

    if method == "bfgs":
        if w0 is None:
            w0 = np.random.default_rng(rng).random(k)
        res = minimize(
            objective,
            np.asarray(w0, dtype=float),
            args=(X, y, lam_v),
            jac=gradient,
            method="BFGS",
            options={"gtol": tol, "maxiter": 1000 * k},
        )
        if not res.success:
            logging.debug(f"[Regression] BFGS local fit stopped early: {res.message}")
        return np.asarray(res.x, dtype=float)

    raise ValueError(f"Unknown fit method: {method}")


# --------------------------- goodness of fit ------------------------------ #


def r_squared(X, y, W, mean_y: Optional[float] = None) -> float:
    """1 − SSresidual/SStotal; SStotal is taken about ``mean_y`` when given."""
    sse = residual_sum_of_squares(X, y, W)
    sst = total_sum_of_squares(y, mean_y)
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(1.0 - np.float64(sse) / np.float64(sst))


def t_values(X, y, W) -> Array:
    """
    Per-coefficient t statistics.

    varError = SSE/(n − k), varBeta = (XᵀX)⁻¹·varError, t_i = W_i/sqrt(varBeta_ii).
    """
    W, X, y = _as_problem(W, X, y)
    n, k = X.shape
    dof = degrees_of_freedom(n, k)
    if dof <= 0:
        raise ValidationError(
            f"Need more observations than coefficients for t-tests (n={n}, k={k})",
            {"n_obs": int(n), "n_features": int(k)},
        )
    var_error = residual_sum_of_squares(X, y, W) / dof
    var_beta = _xtx_inverse(X) * var_error
    with np.errstate(divide="ignore", invalid="ignore"):
        return W / np.sqrt(np.diag(var_beta))


def p_values(dof: int, tvals) -> Array:
    """Two-tailed Student-t p-values: 2·(1 − CDF(|t|))."""
    t = np.asarray(tvals, dtype=float)
    return 2.0 * stats.t.sf(np.abs(t), dof)
