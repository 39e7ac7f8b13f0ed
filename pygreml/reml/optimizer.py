"""
Average-Information REML estimation of variance components.

Model: y = X b + sum_i g_i + e, with g_i ~ N(0, theta_i G_i) and
e ~ N(0, theta_e I). The residual identity kernel is appended to the user
kernels as the last component.

Each iteration:
1. V = sum_i theta_i G_i, inverted through its Cholesky factor
2. P = V^-1 - V^-1 X (X' V^-1 X)^-1 X' V^-1
3. u_i = G_i P y, AI[i, j] = 0.5 u_i' P u_j
4. score s_i = -0.5 (tr(G_i P) - u_i' P y)
5. theta <- theta + AI^-1 s, negative values floored at safeguard_min

Iteration stops when max |theta_new - theta| <= tol or after max_iter steps.

Reference:
Lee, S. H. & van der Werf, J. H. J. (2006) "An efficient variance component
approach implementing an average information REML suitable for combined
LD and linkage mapping with a general complex pedigree", GSE 38:25.
"""

from __future__ import annotations
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy import linalg

from ..exceptions import InputShapeError, NumericalFailure, NonConvergenceWarning
from ..utils import as_phenotype, as_design, as_kernels, check_full_rank


@dataclass
class REMLOptions:
    """
    Configuration options for the AI-REML estimator.

    Attributes
    ----------
    max_iter : int, default=100
        Maximum number of REML iterations
    tol : float, default=1e-5
        Convergence tolerance on the maximum absolute change in theta
    verbose : bool, default=False
        If True, print iteration progress
    safeguard_min : float, default=1e-9
        Floor applied to variance components that an update drives negative
    rel_tol : float, default=1e-3
        Relative change allowed, at convergence, for components smaller than
        ``tol``; a component leaving the floor keeps the iteration going
    """
    max_iter: int = 100
    tol: float = 1e-5
    verbose: bool = False
    safeguard_min: float = 1e-9
    rel_tol: float = 1e-3

    def __post_init__(self):
        if self.max_iter < 1:
            raise ValueError("max_iter must be at least 1")
        if self.tol <= 0:
            raise ValueError("tol must be positive")
        if self.rel_tol <= 0:
            raise ValueError("rel_tol must be positive")


@dataclass
class REMLResult:
    """
    REML estimation result.

    Attributes
    ----------
    theta : np.ndarray
        Variance components, residual variance last
    theta_cov : np.ndarray
        Asymptotic covariance of theta (inverse AI matrix)
    llik : float
        REML log-likelihood at the final theta
    b : np.ndarray
        Fixed effect estimates (empty without X)
    b_cov : np.ndarray
        Covariance of the fixed effect estimates, (X' V^-1 X)^-1
    u : np.ndarray
        Random effect predictions, one column per genetic component
    fitted : np.ndarray
        X b
    predicted : np.ndarray
        fitted + sum of random effects
    residuals : np.ndarray
        y - predicted
    Py, Vy : np.ndarray
        P y and V^-1 y
    yVy : float
        y' V^-1 y
    trPG, trVG : np.ndarray
        tr(P G_i) and tr(V^-1 G_i) for every component including the residual
    n_iter : int or None
        Iterations performed (None when the estimator does not report it)
    converged : bool or None
        Whether the tolerance was met
    delta : float
        Final convergence metric
    names : list of str
        Component names, residual last ("E")
    ids : np.ndarray, optional
        Individual identifiers taken from y
    log : list of dict
        Per-iteration diagnostics
    """
    theta: np.ndarray
    theta_cov: np.ndarray
    llik: float
    b: np.ndarray
    b_cov: np.ndarray
    u: np.ndarray
    fitted: np.ndarray
    predicted: np.ndarray
    residuals: np.ndarray
    Py: np.ndarray
    Vy: np.ndarray
    yVy: float
    trPG: np.ndarray
    trVG: np.ndarray
    n_iter: Optional[int]
    converged: Optional[bool]
    delta: float
    names: List[str]
    ids: Optional[np.ndarray] = None
    log: List[Dict] = field(default_factory=list)

    @property
    def variance_components(self) -> Dict[str, float]:
        return dict(zip(self.names, self.theta.tolist()))

    @property
    def asd(self) -> np.ndarray:
        """Asymptotic standard deviations of theta."""
        return np.sqrt(np.abs(np.diag(self.theta_cov)))


class Estimator(ABC):
    """Variance component estimator returning a :class:`REMLResult`."""

    @abstractmethod
    def fit(self, y, X, kernels, theta: Optional[np.ndarray] = None) -> REMLResult:
        pass


def _cholesky_inverse(A: np.ndarray, what: str) -> Tuple[np.ndarray, float]:
    """Inverse and log-determinant of a symmetric positive definite matrix."""
    if not np.all(np.isfinite(A)):
        raise NumericalFailure(f"{what} contains non-finite values")
    try:
        c, lower = linalg.cho_factor(A)
    except linalg.LinAlgError as e:
        raise NumericalFailure(f"{what} is not positive definite: {e}") from e
    inv = linalg.cho_solve((c, lower), np.eye(A.shape[0]))
    logdet = 2.0 * float(np.sum(np.log(np.diag(c))))
    return inv, logdet


def _combine(G: List[np.ndarray], theta: np.ndarray) -> np.ndarray:
    V = np.zeros_like(G[0])
    for Gi, ti in zip(G, theta):
        V += ti * Gi
    return V


def projection(G: List[np.ndarray], theta: np.ndarray, X: Optional[np.ndarray]):
    """
    Projection matrix removing fixed effects from V^-1.

    Returns
    -------
    tuple
        (P, V^-1, (X'V^-1X)^-1 or None, log|V|, log|X'V^-1X|)
    """
    Vi, ldV = _cholesky_inverse(_combine(G, theta), "V")
    if X is None:
        return Vi, Vi, None, ldV, 0.0
    ViX = Vi @ X
    XViXi, ldXVX = _cholesky_inverse(X.T @ ViX, "X'V^-1X")
    P = Vi - ViX @ XViXi @ ViX.T
    return P, Vi, XViXi, ldV, ldXVX


def ai_reml_step(
    y: np.ndarray,
    X: Optional[np.ndarray],
    G: List[np.ndarray],
    theta: np.ndarray,
    safeguard_min: float = 1e-9
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    One AI-REML update.

    Parameters
    ----------
    y : np.ndarray
        Phenotypes
    X : np.ndarray or None
        Fixed effect design
    G : list of np.ndarray
        Kernels including the residual identity as the last element
    theta : np.ndarray
        Current variance components

    Returns
    -------
    tuple
        (updated theta, AI matrix, score vector)
    """
    k = len(G)
    P = projection(G, theta, X)[0]
    Py = P @ y

    u = np.empty((y.size, k))
    for i in range(k - 1):
        u[:, i] = G[i] @ Py
    u[:, -1] = Py
    Pu = P @ u

    ai = 0.5 * (u.T @ Pu)
    ai = 0.5 * (ai + ai.T)

    score = np.empty(k)
    for i in range(k - 1):
        score[i] = -0.5 * (np.sum(G[i] * P) - u[:, i] @ Py)
    score[-1] = -0.5 * (np.trace(P) - Py @ Py)

    try:
        step = np.linalg.solve(ai, score)
    except np.linalg.LinAlgError as e:
        raise NumericalFailure(f"Average information matrix is singular: {e}") from e

    theta_new = theta + step
    theta_new[theta_new < safeguard_min] = safeguard_min
    return theta_new, ai, score


def has_converged(theta_new: np.ndarray, theta: np.ndarray, tol: float, rel_tol: float) -> bool:
    """
    Convergence test for one AI-REML update.

    The largest absolute change must not exceed ``tol``. Components below
    ``tol`` must also change by at most ``rel_tol`` of their value, so a
    component doubling away from the floor is not taken as converged.
    """
    change = np.abs(theta_new - theta)
    if np.max(change) > tol:
        return False
    small = theta_new <= tol
    return bool(np.all(change[small] <= rel_tol * theta_new[small]))


def fit_reml(
    y,
    X,
    kernels,
    theta: Optional[np.ndarray] = None,
    options: Optional[REMLOptions] = None
) -> REMLResult:
    """
    Estimate variance components by AI-REML.

    Parameters
    ----------
    y : array-like or pd.Series
        Phenotypes (n)
    X : array-like or None
        Fixed effect design (n x p), full column rank
    kernels : np.ndarray, list or dict of np.ndarray
        Relationship kernels (n x n) for the genetic components
    theta : array-like, optional
        Starting values (k + 1, residual last); default sd(y) / (k + 1)
    options : REMLOptions, optional
        Iteration control

    Returns
    -------
    REMLResult
        Estimates at convergence or at the iteration ceiling

    Raises
    ------
    InputShapeError
        If dimensions disagree
    NumericalFailure
        If V, X'V^-1X or the AI matrix cannot be factorized

    Examples
    --------
    >>> res = fit_reml(y, X, [G], options=REMLOptions(max_iter=50))
    >>> res.theta, res.llik
    """
    options = options or REMLOptions()
    y, ids = as_phenotype(y)
    n = y.size
    X = as_design(X, n)
    kernels, names = as_kernels(kernels, n)
    if X is not None:
        check_full_rank(X)

    G = kernels + [np.eye(n)]
    k = len(G)
    names = names + ["E"]

    if theta is None:
        theta = np.full(k, np.std(y, ddof=1) / k)
    else:
        theta = np.asarray(theta, dtype=float).ravel().copy()
        if theta.size != k:
            raise InputShapeError(f"theta must have {k} values (one per kernel plus residual), got {theta.size}")
        if np.any(theta < 0):
            raise ValueError("Starting values for theta must be non-negative")

    log = []
    ai = None
    it = 0
    delta = np.inf
    converged = False
    while not converged:
        if it == options.max_iter:
            break
        it += 1
        theta_new, ai, score = ai_reml_step(y, X, G, theta, options.safeguard_min)
        delta = float(np.max(np.abs(theta_new - theta)))
        converged = has_converged(theta_new, theta, options.tol, options.rel_tol)
        log.append({"iter": it, "theta": theta_new.copy(), "score": score, "delta": delta})

        if options.verbose:
            values = " ".join(f"{name}={t:.5f}" for name, t in zip(names, theta_new))
            print(f"[REML iter {it:3d}] delta={delta:.3e} {values}")

        theta = theta_new

    if converged:
        if options.verbose:
            print(f"[REML] Converged at iteration {it}")
    else:
        warnings.warn(
            f"REML did not converge in {options.max_iter} iterations (delta={delta:.3e})",
            NonConvergenceWarning
        )

    return _finalize(y, X, G, theta, ai, it, converged, delta, names, ids, log)


def _finalize(y, X, G, theta, ai, n_iter, converged, delta, names, ids, log) -> REMLResult:
    """Likelihood, fixed and random effects and trace diagnostics at the final theta."""
    P, Vi, XViXi, ldV, ldXVX = projection(G, theta, X)

    if X is not None:
        b = XViXi @ (X.T @ (Vi @ y))
        b_cov = XViXi
        fitted = X @ b
    else:
        b = np.zeros(0)
        b_cov = np.zeros((0, 0))
        fitted = np.zeros(y.size)

    Py = P @ y
    Vy = Vi @ y
    yPy = float(y @ Py)
    llik = -0.5 * (ldV + ldXVX + yPy)

    trPG = np.array([np.sum(P * Gi) for Gi in G])
    trVG = np.array([np.sum(Vi * Gi) for Gi in G])

    u = np.column_stack([theta[i] * (G[i] @ Py) for i in range(len(G) - 1)])
    predicted = fitted + u.sum(axis=1)

    try:
        theta_cov = np.linalg.inv(ai)
    except np.linalg.LinAlgError as e:
        raise NumericalFailure(f"Average information matrix is singular: {e}") from e

    return REMLResult(
        theta=theta,
        theta_cov=theta_cov,
        llik=float(llik),
        b=b,
        b_cov=b_cov,
        u=u,
        fitted=fitted,
        predicted=predicted,
        residuals=y - predicted,
        Py=Py,
        Vy=Vy,
        yVy=float(y @ Vy),
        trPG=trPG,
        trVG=trVG,
        n_iter=n_iter,
        converged=converged,
        delta=delta,
        names=names,
        ids=ids,
        log=log
    )


class AIREMLEstimator(Estimator):
    """In-process AI-REML estimator."""

    def __init__(self, options: Optional[REMLOptions] = None):
        self.options = options or REMLOptions()

    def fit(self, y, X, kernels, theta: Optional[np.ndarray] = None) -> REMLResult:
        return fit_reml(y, X, kernels, theta=theta, options=self.options)

    def __repr__(self):
        return f"AIREMLEstimator(options={self.options})"
