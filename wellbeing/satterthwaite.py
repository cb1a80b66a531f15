# -*- coding: utf-8 -*-
"""
Degrees of Freedom for Random-Intercept Models

Satterthwaite and between-within approximations for linear contrasts of the
fixed effects of a model y = X b + u_group + e with var(u) = s2_u and
var(e) = s2_e.

The Satterthwaite df of a contrast L is

    df = 2 * (L' V L)^2 / (g' A g)

where V(theta) = (X' W(theta) X)^-1 is the fixed-effect covariance as a
function of theta = (s2_u, s2_e), g is the gradient of L' V L with respect to
theta, and A is the asymptotic covariance of theta, taken as twice the inverse
Hessian of the REML deviance. Both derivatives are central finite
differences. The per-group inverse covariance has the closed form

    W_i = (I - c_i J) / s2_e,   c_i = s2_u / (s2_e + n_i s2_u)

so everything reduces to per-group sums of X and y.
"""

from dataclasses import dataclass
from typing import Optional
import logging

import numpy as np

logger = logging.getLogger(__name__)

_REL_STEP = 1e-4


@dataclass(frozen=True)
class GroupedDesign:
    """Per-group sufficient statistics of (X, y)."""

    XtX: np.ndarray
    Xty: np.ndarray
    yty: float
    S: np.ndarray       # (G, p) column sums of X within each group
    t: np.ndarray       # (G,) sums of y within each group
    n: np.ndarray       # (G,) group sizes
    between: np.ndarray  # (p,) True where the column is constant within every group

    @property
    def n_obs(self) -> int:
        return int(self.n.sum())

    @property
    def n_groups(self) -> int:
        return len(self.n)

    @classmethod
    def from_arrays(cls, X: np.ndarray, y: np.ndarray, groups: np.ndarray) -> 'GroupedDesign':
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float)
        labels, inverse = np.unique(np.asarray(groups), return_inverse=True)
        G, p = len(labels), X.shape[1]

        S = np.zeros((G, p))
        np.add.at(S, inverse, X)
        t = np.bincount(inverse, weights=y, minlength=G)
        n = np.bincount(inverse, minlength=G).astype(float)

        # Column is between-group when it equals its group mean on every row
        group_means = S / n[:, None]
        between = np.all(np.isclose(X, group_means[inverse]), axis=0)

        return cls(XtX=X.T @ X, Xty=X.T @ y, yty=float(y @ y), S=S, t=t, n=n, between=between)


def _weights(theta, design: GroupedDesign) -> np.ndarray:
    s2_u, s2_e = theta
    return s2_u / (s2_e + design.n * s2_u)


def _information(theta, design: GroupedDesign) -> np.ndarray:
    """X' W X."""
    c = _weights(theta, design)
    return (design.XtX - design.S.T @ (c[:, None] * design.S)) / theta[1]


def fixed_effect_covariance(theta, design: GroupedDesign) -> np.ndarray:
    """V(theta) = (X' W X)^-1."""
    return np.linalg.inv(_information(theta, design))


def reml_deviance(theta, design: GroupedDesign) -> float:
    """-2 x REML log-likelihood, up to an additive constant."""
    s2_u, s2_e = theta
    c = _weights(theta, design)

    XtWX = _information(theta, design)
    XtWy = (design.Xty - design.S.T @ (c * design.t)) / s2_e
    ytWy = (design.yty - np.sum(c * design.t ** 2)) / s2_e
    beta = np.linalg.solve(XtWX, XtWy)

    logdet_sigma = np.sum(design.n * np.log(s2_e) + np.log1p(design.n * s2_u / s2_e))
    _, logdet_info = np.linalg.slogdet(XtWX)
    return float(logdet_sigma + logdet_info + ytWy - beta @ XtWy)


def _steps(theta) -> np.ndarray:
    return _REL_STEP * np.asarray(theta, dtype=float)


def _gradient(func, theta) -> np.ndarray:
    theta = np.asarray(theta, dtype=float)
    h = _steps(theta)
    grad = np.zeros(len(theta))
    for k in range(len(theta)):
        e = np.zeros(len(theta))
        e[k] = h[k]
        grad[k] = (func(theta + e) - func(theta - e)) / (2 * h[k])
    return grad


def _hessian(func, theta) -> np.ndarray:
    theta = np.asarray(theta, dtype=float)
    h = _steps(theta)
    k = len(theta)
    H = np.zeros((k, k))
    f0 = func(theta)
    for i in range(k):
        ei = np.zeros(k)
        ei[i] = h[i]
        H[i, i] = (func(theta + ei) - 2 * f0 + func(theta - ei)) / h[i] ** 2
        for j in range(i + 1, k):
            ej = np.zeros(k)
            ej[j] = h[j]
            H[i, j] = H[j, i] = (
                func(theta + ei + ej) - func(theta + ei - ej)
                - func(theta - ei + ej) + func(theta - ei - ej)
            ) / (4 * h[i] * h[j])
    return H


def satterthwaite_df(L: np.ndarray, theta, design: GroupedDesign) -> Optional[float]:
    """
    Satterthwaite df for the contrast L' b.

    Returns None when the approximation is not defined at theta (variance
    component on the boundary, or a non positive-definite REML Hessian);
    callers fall back to the between-within df.
    """
    theta = np.asarray(theta, dtype=float)
    L = np.asarray(L, dtype=float)

    if np.any(theta <= 1e-10 * max(theta[1], 1e-300)):
        logger.debug("Satterthwaite df undefined: variance component on the boundary")
        return None

    try:
        phi = float(L @ fixed_effect_covariance(theta, design) @ L)
        grad = _gradient(lambda th: float(L @ fixed_effect_covariance(th, design) @ L), theta)
        H = _hessian(lambda th: reml_deviance(th, design), theta)
    except np.linalg.LinAlgError:
        return None

    if not np.all(np.isfinite(H)) or np.any(np.linalg.eigvalsh(H) <= 0):
        logger.debug("Satterthwaite df undefined: REML Hessian not positive definite")
        return None

    A = 2.0 * np.linalg.inv(H)
    denom = float(grad @ A @ grad)
    if not np.isfinite(denom) or denom <= 0 or phi <= 0:
        return None
    return 2.0 * phi ** 2 / denom


def between_within_df(L: np.ndarray, design: GroupedDesign, X: np.ndarray) -> float:
    """
    Between-within df.

    Contrasts involving any within-participant column get the within df
    N - G - rank(X_within); purely between-participant contrasts get
    G - rank(X_between).
    """
    L = np.asarray(L, dtype=float)
    X = np.asarray(X, dtype=float)
    between = design.between

    rank_between = np.linalg.matrix_rank(X[:, between]) if between.any() else 0
    rank_within = np.linalg.matrix_rank(X[:, ~between]) if (~between).any() else 0

    if np.any(np.abs(L[~between]) > 1e-12):
        return float(design.n_obs - design.n_groups - rank_within)
    return float(design.n_groups - rank_between)
