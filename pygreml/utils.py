"""
Utility functions for pyGREML package.
"""

import numpy as np
import pandas as pd
from scipy import linalg, stats
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .exceptions import InputShapeError, NumericalFailure


def as_phenotype(y: Union[np.ndarray, pd.Series, Sequence[float]]) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Convert a phenotype input to a float vector.

    Parameters
    ----------
    y : array-like or pd.Series
        Phenotypes, one per individual. The index of a Series is taken as
        the individual identifiers.

    Returns
    -------
    tuple
        (y as 1-D float array, individual ids or None)
    """
    ids = None
    if isinstance(y, pd.Series):
        ids = y.index.to_numpy()
        y = y.to_numpy()
    y = np.asarray(y, dtype=float)
    if y.ndim == 2 and 1 in y.shape:
        y = y.ravel()
    if y.ndim != 1:
        raise InputShapeError(f"y must be a vector, got shape {y.shape}")
    if y.size == 0:
        raise InputShapeError("y is empty")
    if not np.all(np.isfinite(y)):
        raise ValueError("y contains missing or non-finite values")
    return y, ids


def as_design(X, n: int) -> Optional[np.ndarray]:
    """Convert a fixed-effect design to an n x p float matrix (None stays None)."""
    if X is None:
        return None
    if isinstance(X, (pd.DataFrame, pd.Series)):
        X = X.to_numpy()
    X = np.asarray(X, dtype=float)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    if X.ndim != 2 or X.shape[0] != n:
        raise InputShapeError(f"X must have {n} rows, got shape {X.shape}")
    if X.shape[1] == 0:
        return None
    return X


def as_kernels(kernels, n: int) -> Tuple[List[np.ndarray], List[str]]:
    """
    Validate relationship kernels.

    Parameters
    ----------
    kernels : np.ndarray, list of np.ndarray or dict[str, np.ndarray]
        One or more symmetric n x n matrices
    n : int
        Number of individuals

    Returns
    -------
    tuple
        (list of kernels, list of component names)
    """
    if isinstance(kernels, dict):
        names = [str(k) for k in kernels.keys()]
        mats = list(kernels.values())
    else:
        if isinstance(kernels, np.ndarray) and kernels.ndim == 2:
            kernels = [kernels]
        mats = list(kernels)
        names = [f"G{i + 1}" for i in range(len(mats))]

    if not mats:
        raise InputShapeError("At least one relationship kernel is required")

    out = []
    for name, G in zip(names, mats):
        G = np.asarray(G, dtype=float)
        if G.shape != (n, n):
            raise InputShapeError(f"Kernel '{name}' must be {n} x {n}, got {G.shape}")
        if not np.allclose(G, G.T, atol=1e-8):
            raise InputShapeError(f"Kernel '{name}' is not symmetric")
        out.append(G)
    return out, names


def check_full_rank(X: np.ndarray) -> None:
    """Raise NumericalFailure if X is not of full column rank."""
    rank = np.linalg.matrix_rank(X)
    if rank < X.shape[1]:
        raise NumericalFailure(
            f"Fixed-effect design is not full column rank (rank {rank} < {X.shape[1]} columns)"
        )


def ols(X: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Ordinary least squares coefficients via a Cholesky solve of X'X."""
    check_full_rank(X)
    try:
        factor = linalg.cho_factor(X.T @ X)
    except linalg.LinAlgError as e:
        raise NumericalFailure(f"X'X is not positive definite: {e}") from e
    return linalg.cho_solve(factor, X.T @ y)


def accuracy(yobs: np.ndarray, ypred: np.ndarray) -> Dict[str, float]:
    """
    Predictive accuracy of predicted against observed phenotypes.

    The regression is of observed on predicted, so a slope of 1 and an
    intercept of 0 indicate unbiased predictions.

    Parameters
    ----------
    yobs : np.ndarray
        Observed phenotypes
    ypred : np.ndarray
        Predicted phenotypes

    Returns
    -------
    dict
        corr, r2, intercept, slope and mspe (mean squared prediction error)
    """
    yobs = np.asarray(yobs, dtype=float).ravel()
    ypred = np.asarray(ypred, dtype=float).ravel()
    if yobs.shape != ypred.shape:
        raise InputShapeError(f"yobs and ypred differ in length: {yobs.size} vs {ypred.size}")

    mspe = float(np.mean((ypred - yobs) ** 2))
    if yobs.size < 3 or np.ptp(ypred) == 0 or np.ptp(yobs) == 0:
        # Regression undefined for constant inputs
        return {"corr": np.nan, "r2": np.nan, "intercept": np.nan,
                "slope": np.nan, "mspe": mspe}

    fit = stats.linregress(ypred, yobs)
    return {
        "corr": float(fit.rvalue),
        "r2": float(fit.rvalue ** 2),
        "intercept": float(fit.intercept),
        "slope": float(fit.slope),
        "mspe": mspe,
    }


def get_heritability(theta: np.ndarray, component: int = 0) -> float:
    """
    Proportion of phenotypic variance explained by one variance component.

    Parameters
    ----------
    theta : array-like
        Variance components, residual last
    component : int, default=0
        Index of the genetic component

    Returns
    -------
    float
        theta[component] / sum(theta)
    """
    theta = np.asarray(theta, dtype=float)
    if theta.size < 2:
        raise ValueError("theta must contain at least one genetic and the residual component")
    if not 0 <= component < theta.size - 1:
        raise ValueError(f"component must be in [0, {theta.size - 2}]")
    total = theta.sum()
    if total <= 0:
        raise ValueError("Sum of variance components must be positive")
    return float(theta[component] / total)
