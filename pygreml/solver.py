"""
Gauss-Seidel (block coordinate descent) solver for marker effects.

Minimises ||y - X b - W s||^2 + sum_j lambda_j s_j^2 one block of markers
at a time. The residual e = y - X b - W s is kept up to date incrementally
after every block instead of being recomputed from scratch.
"""

import warnings
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import linalg, stats

from .exceptions import InputShapeError, NumericalFailure, NonConvergenceWarning
from .utils import as_phenotype, as_design, ols


@dataclass
class SolverOptions:
    """
    Configuration options for the marker effect solvers.

    Attributes
    ----------
    max_iter : int, default=500
        Maximum number of sweeps over all marker blocks
    tol : float, default=1e-7
        Convergence tolerance on ||s - s_old||^2 / sqrt(m)
    verbose : bool, default=False
        If True, print sweep progress
    """
    max_iter: int = 500
    tol: float = 1e-7
    verbose: bool = False

    def __post_init__(self):
        if self.max_iter < 1:
            raise ValueError("max_iter must be at least 1")


@dataclass
class SolverState:
    """
    Working state of one solve: marker effects and the current residual.

    Owned by a single solve; never shared between folds or calls.
    """
    s: np.ndarray
    e: np.ndarray
    n_iter: int = 0
    delta: float = np.inf


@dataclass
class MarkerSolveResult:
    """
    Marker effect solver result.

    Attributes
    ----------
    s : np.ndarray
        Marker effects
    b : np.ndarray or None
        Fixed effect estimates (None without X)
    g : np.ndarray
        Genetic values W s
    yhat : np.ndarray
        g + X b
    e : np.ndarray
        y - yhat
    n_iter : int
        Number of sweeps performed
    delta : float
        Convergence metric of the last sweep
    converged : bool
        Whether delta <= tol was reached within max_iter sweeps
    marker_ids : np.ndarray, optional
        Identifier of each effect
    lambda_ : np.ndarray, optional
        Per-marker penalties used (after adaptive weighting)
    n_dropped : int
        Requested markers that were not found
    ids : np.ndarray, optional
        Individual identifiers of the fitted rows
    """
    s: np.ndarray
    b: Optional[np.ndarray]
    g: np.ndarray
    yhat: np.ndarray
    e: np.ndarray
    n_iter: int
    delta: float
    converged: bool
    marker_ids: Optional[np.ndarray] = None
    lambda_: Optional[np.ndarray] = None
    n_dropped: int = 0
    ids: Optional[np.ndarray] = None

    @property
    def effects(self) -> pd.Series:
        index = self.marker_ids if self.marker_ids is not None else np.arange(self.s.size)
        return pd.Series(self.s, index=index, name="effect")


def as_lambda(lambda_, m: int) -> np.ndarray:
    """Broadcast a scalar penalty to m markers and validate a vector one."""
    lam = np.asarray(lambda_, dtype=float)
    if lam.ndim == 0:
        lam = np.full(m, float(lam))
    lam = lam.ravel()
    if lam.size != m:
        raise InputShapeError(f"lambda must be a scalar or have {m} values, got {lam.size}")
    if np.any(lam < 0) or np.any(np.isnan(lam)):
        raise ValueError("lambda must be non-negative")
    return lam


def as_sets(sets, m: int) -> List[np.ndarray]:
    """Marker blocks as index arrays; one block per marker when sets is None."""
    if sets is None:
        return [np.array([j]) for j in range(m)]
    if isinstance(sets, dict):
        sets = list(sets.values())
    out = []
    for rws in sets:
        rws = np.atleast_1d(np.asarray(rws, dtype=int))
        if rws.size == 0:
            continue
        if rws.min() < 0 or rws.max() >= m:
            raise InputShapeError(f"Marker set indices must lie in [0, {m})")
        out.append(rws)
    return out


def zero_variance(W: np.ndarray) -> np.ndarray:
    """Columns of W without any variation."""
    return np.all(W == W[:1, :], axis=0)


def correlation_pvalues(W: np.ndarray, e: np.ndarray) -> np.ndarray:
    """
    Two-sided p-values of the correlation test between each column of W and e.

    Columns without variation get a p-value of 1.
    """
    n = e.size
    if n < 3:
        raise InputShapeError("At least 3 observations are needed for correlation tests")
    Wc = W - W.mean(axis=0)
    ec = e - e.mean()
    den = np.sqrt(np.sum(Wc ** 2, axis=0) * (ec @ ec))
    with np.errstate(divide="ignore", invalid="ignore"):
        r = np.where(den > 0, (Wc.T @ ec) / den, 0.0)
    r = np.clip(r, -1.0 + 1e-15, 1.0 - 1e-15)
    df = n - 2
    t = r * np.sqrt(df / (1.0 - r ** 2))
    return 2.0 * stats.t.sf(np.abs(t), df)


def reweight_lambda(lambda_: np.ndarray, pvalues: np.ndarray) -> np.ndarray:
    """
    Adaptive penalties: markers associated with the residual are shrunk less.

    lambda_j / ((logP_j / sum(logP)) * m), logP = -log10(p)
    """
    logp = -np.log10(np.maximum(pvalues, np.finfo(float).tiny))
    total = logp.sum()
    if total <= 0:
        return lambda_.copy()
    scale = logp / total * lambda_.size
    with np.errstate(divide="ignore"):
        return np.where(scale > 0, lambda_ / scale, np.inf)


def initial_residual(y: np.ndarray, X: Optional[np.ndarray]) -> Tuple[Optional[np.ndarray], np.ndarray]:
    """OLS fixed effects and the residual they leave (y itself without X)."""
    if X is None:
        return None, y.copy()
    b = ols(X, y)
    return b, y - X @ b


def initial_state(W: np.ndarray, dww: np.ndarray, e: np.ndarray) -> SolverState:
    """
    Marginal starting effects s_j = W_j'e / dww_j / m and the residual they leave.

    The returned residual is e - W s, so every later block update starts
    from e = y - Xb - W s.
    """
    m = W.shape[1]
    with np.errstate(divide="ignore", invalid="ignore"):
        s = np.where(dww > 0, (W.T @ e) / dww / m, 0.0)
    return SolverState(s=s, e=e - W @ s)


def block_update(
    W_rws: np.ndarray,
    dww_rws: np.ndarray,
    lambda_rws: np.ndarray,
    s_rws: np.ndarray,
    e: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Update the effects of one marker block.

    Pure transition (s_rws, e) -> (s_rws', e'): the residual is corrected
    only by the change in this block's effects. Markers with dww == 0 keep
    a zero effect and leave e untouched.

    Parameters
    ----------
    W_rws : np.ndarray
        Genotypes of the block (n x k)
    dww_rws : np.ndarray
        Diagonal of W'W for the block
    lambda_rws : np.ndarray
        Penalties of the block
    s_rws : np.ndarray
        Current effects of the block
    e : np.ndarray
        Current residual

    Returns
    -------
    tuple
        (new block effects, new residual)
    """
    lhs = dww_rws + lambda_rws
    rhs = W_rws.T @ e + dww_rws * s_rws
    with np.errstate(divide="ignore", invalid="ignore"):
        s_new = np.where(dww_rws > 0, rhs / lhs, 0.0)
    e_new = e - W_rws @ (s_new - s_rws)
    return s_new, e_new


def iterate(state: SolverState, sweep: Callable[[SolverState], None], m: int,
            options: SolverOptions) -> SolverState:
    """
    Repeat sweeps until ||s - s_old||^2 / sqrt(m) <= tol or max_iter sweeps.

    ``sweep`` updates ``state`` in place, visiting blocks in a fixed order.
    """
    s_old = np.zeros(m)
    while state.delta > options.tol:
        if state.n_iter == options.max_iter:
            break
        state.n_iter += 1
        sweep(state)
        state.delta = float(np.sum((state.s - s_old) ** 2) / np.sqrt(m))
        s_old = state.s.copy()
        if options.verbose:
            print(f"Iteration {state.n_iter} delta {state.delta:.6e}")

    if state.delta > options.tol:
        warnings.warn(
            f"Marker solver did not converge in {options.max_iter} sweeps (delta={state.delta:.3e})",
            NonConvergenceWarning
        )
    return state


def finish(y: np.ndarray, X: Optional[np.ndarray], g: np.ndarray, state: SolverState,
           options: SolverOptions, **extra) -> MarkerSolveResult:
    """Re-estimate fixed effects given the genetic values and assemble the result."""
    if X is not None:
        b = ols(X, y - g)
        yhat = g + X @ b
    else:
        b = None
        yhat = g.copy()
    return MarkerSolveResult(
        s=state.s,
        b=b,
        g=g,
        yhat=yhat,
        e=y - yhat,
        n_iter=state.n_iter,
        delta=state.delta,
        converged=state.delta <= options.tol,
        **extra
    )


def _as_markers(W, n: int) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    marker_ids = None
    if isinstance(W, pd.DataFrame):
        marker_ids = W.columns.to_numpy()
        W = W.to_numpy()
    W = np.asarray(W, dtype=float)
    if W.ndim != 2 or W.shape[0] != n:
        raise InputShapeError(f"W must have {n} rows, got shape {W.shape}")
    if W.shape[1] == 0:
        raise InputShapeError("W has no markers")
    return W, marker_ids


def gsru(
    y,
    W,
    X=None,
    sets=None,
    lambda_: Union[float, np.ndarray] = 1.0,
    weights: bool = False,
    options: Optional[SolverOptions] = None,
    marker_ids: Optional[Sequence] = None
) -> MarkerSolveResult:
    """
    Marker effects by Gauss-Seidel with residual updating.

    Parameters
    ----------
    y : array-like or pd.Series
        Phenotypes (n)
    W : array-like or pd.DataFrame
        Marker matrix (n x m), usually centred and scaled
    X : array-like, optional
        Fixed effect design (n x p)
    sets : list of array-like, optional
        Marker blocks updated jointly; one block per marker by default
    lambda_ : float or array-like, default=1.0
        Ridge penalty, scalar or per marker
    weights : bool, default=False
        Scale penalties by the markers' association with the initial residual
    options : SolverOptions, optional
        Iteration control
    marker_ids : sequence, optional
        Marker identifiers (taken from DataFrame columns when W is a DataFrame)

    Returns
    -------
    MarkerSolveResult
        Effects, fixed effects, genetic values, predictions and diagnostics

    Examples
    --------
    >>> fit = gsru(y, W, X=np.ones((len(y), 1)), lambda_=m * (1 - h2) / h2)
    >>> fit.s, fit.n_iter
    """
    options = options or SolverOptions()
    y, ids = as_phenotype(y)
    n = y.size
    W, columns = _as_markers(W, n)
    if marker_ids is None:
        marker_ids = columns
    m = W.shape[1]
    X = as_design(X, n)
    lam = as_lambda(lambda_, m)
    sets = as_sets(sets, m)

    dww = np.sum(W ** 2, axis=0)
    dww[zero_variance(W)] = 0.0

    _, e = initial_residual(y, X)
    if weights:
        lam = reweight_lambda(lam, correlation_pvalues(W, e))

    def sweep(state: SolverState) -> None:
        for rws in sets:
            state.s[rws], state.e = block_update(W[:, rws], dww[rws], lam[rws], state.s[rws], state.e)

    state = iterate(initial_state(W, dww, e), sweep, m, options)

    return finish(y, X, W @ state.s, state, options,
                  marker_ids=None if marker_ids is None else np.asarray(marker_ids),
                  lambda_=lam, ids=ids)


def qr_sets(W: np.ndarray, sets=None, msets: int = 100) -> Tuple[np.ndarray, List[np.ndarray], List[np.ndarray]]:
    """
    Orthogonalise marker blocks.

    Parameters
    ----------
    W : np.ndarray
        Marker matrix (n x m)
    sets : list of array-like, optional
        Disjoint marker blocks; consecutive blocks of ``msets`` markers by default
    msets : int, default=100
        Block size when ``sets`` is not given

    Returns
    -------
    tuple
        (Q with each block replaced by its orthonormal basis, list of R
        factors, list of blocks)

    Markers without variation are left out of their block before the
    factorisation: their columns of Q are zero and the returned blocks
    list only the remaining markers. Blocks left empty are dropped.
    """
    W = np.asarray(W, dtype=float)
    n, m = W.shape
    if sets is None:
        sets = [np.arange(start, min(start + msets, m)) for start in range(0, m, msets)]
    else:
        sets = as_sets(sets, m)
    flat = np.concatenate(sets) if sets else np.array([], dtype=int)
    if len(np.unique(flat)) != len(flat):
        raise ValueError("Marker sets must be disjoint for QR orthogonalisation")

    Q = W.copy()
    Q[:, zero_variance(W)] = 0.0
    R, blocks = [], []
    for rws in sets:
        rws = rws[~zero_variance(W[:, rws])]
        if rws.size == 0:
            continue
        if len(rws) > n:
            raise InputShapeError(f"Marker set of size {len(rws)} exceeds the number of individuals ({n})")
        q, r = np.linalg.qr(W[:, rws])
        Q[:, rws] = q
        R.append(r)
        blocks.append(rws)
    return Q, R, blocks


def gsqr(
    y,
    W,
    X=None,
    sets=None,
    msets: int = 100,
    lambda_: Union[float, np.ndarray] = 1.0,
    weights: bool = False,
    options: Optional[SolverOptions] = None,
    marker_ids: Optional[Sequence] = None
) -> MarkerSolveResult:
    """
    Gauss-Seidel on QR-orthogonalised marker blocks.

    Each block of W is replaced by its orthonormal basis Q before solving,
    which removes within-block collinearity. Effects on the original scale
    are recovered per block by back-substitution, s = R^-1 s_Q. The
    genetic values and residuals are unchanged by the back-transformation.
    Markers without variation get a zero effect, as in :func:`gsru`.

    Parameters are as for :func:`gsru`, plus ``msets``, the block size used
    when ``sets`` is not given.
    """
    if isinstance(W, pd.DataFrame):
        if marker_ids is None:
            marker_ids = W.columns.to_numpy()
        W = W.to_numpy()
    Q, R, sets = qr_sets(W, sets=sets, msets=msets)
    fit = gsru(y, Q, X=X, sets=sets, lambda_=lambda_, weights=weights,
               options=options, marker_ids=marker_ids)

    s = fit.s.copy()
    for rws, r in zip(sets, R):
        try:
            s[rws] = linalg.solve_triangular(r, fit.s[rws])
        except linalg.LinAlgError as e:
            raise NumericalFailure(f"R factor of a marker set is singular (collinear markers): {e}") from e
    fit.s = s
    return fit
