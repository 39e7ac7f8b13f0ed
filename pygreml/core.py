"""
Public entry points for genomic REML and marker effect estimation.
"""

import numpy as np
import pandas as pd
from typing import Optional, Union, Sequence

from .control import GREMLControl
from .genotypes import GenotypeStore
from .reml import AIREMLEstimator, Estimator, ExternalREML, REMLOptions, REMLResult
from .solver import SolverOptions, MarkerSolveResult, gsru, gsqr
from .streaming import rsolve
from .validation import (
    CVResult,
    cross_validate,
    marker_fold,
    reml_fold,
    streamed_fold,
)
from .utils import get_heritability
from . import plotting


def make_estimator(control: Optional[GREMLControl] = None) -> Estimator:
    """
    Estimator selected by a control object.

    The in-process AI-REML is used unless ``control.bin`` names an external
    REML executable.
    """
    control = control or GREMLControl()
    options = REMLOptions(max_iter=control.max_iter, tol=control.tolerance,
                          verbose=control.monitoring)
    if control.external:
        return ExternalREML(control.bin, nthreads=control.nthreads, wkdir=control.wkdir,
                            options=options)
    return AIREMLEstimator(options)


def estimate_variance_components(
    y,
    X,
    kernels,
    theta: Optional[np.ndarray] = None,
    max_iter: int = 100,
    tol: float = 1e-5,
    verbose: bool = False,
    control: Optional[GREMLControl] = None
) -> REMLResult:
    """
    Estimate variance components of y = X b + sum_i g_i + e.

    Parameters
    ----------
    y : array-like or pd.Series
        Phenotypes (n)
    X : array-like or None
        Fixed effect design (n x p)
    kernels : np.ndarray, list or dict of np.ndarray
        Relationship kernels (n x n)
    theta : array-like, optional
        Starting values, residual last
    max_iter, tol, verbose
        Iteration control; ignored when ``control`` is given
    control : GREMLControl, optional
        Full control object, also selecting an external executable

    Returns
    -------
    REMLResult
    """
    if control is None:
        control = GREMLControl(tolerance=tol, max_iter=max_iter, monitoring=verbose)
    return make_estimator(control).fit(y, X, kernels, theta=theta)


def solve_marker_effects(
    y,
    W,
    X=None,
    sets=None,
    lambda_: Union[float, np.ndarray] = 1.0,
    weights: bool = False,
    max_iter: int = 500,
    tol: float = 1e-7,
    method: str = "gsru",
    msets: int = 100,
    verbose: bool = False
) -> MarkerSolveResult:
    """
    Marker effects from a resident marker matrix.

    ``method`` is "gsru" (plain Gauss-Seidel) or "gsqr" (QR-orthogonalised
    blocks of ``msets`` markers unless ``sets`` is given).
    """
    options = SolverOptions(max_iter=max_iter, tol=tol, verbose=verbose)
    if method == "gsru":
        return gsru(y, W, X=X, sets=sets, lambda_=lambda_, weights=weights, options=options)
    elif method == "gsqr":
        return gsqr(y, W, X=X, sets=sets, msets=msets, lambda_=lambda_, weights=weights,
                    options=options)
    else:
        raise ValueError(f"Unknown method: {method}. Use 'gsru' or 'gsqr'")


def solve_marker_effects_streamed(
    y,
    store: GenotypeStore,
    marker_ids: Optional[Sequence] = None,
    X=None,
    individual_ids: Optional[Sequence] = None,
    lambda_: Union[float, np.ndarray] = 1.0,
    weights: bool = False,
    max_iter: int = 500,
    tol: float = 1e-5,
    verbose: bool = False
) -> MarkerSolveResult:
    """Marker effects with genotypes streamed from a genotype store."""
    options = SolverOptions(max_iter=max_iter, tol=tol, verbose=verbose)
    return rsolve(y, store, marker_ids=marker_ids, X=X, individual_ids=individual_ids,
                  lambda_=lambda_, weights=weights, options=options)


def greml(
    y,
    X,
    kernels,
    theta: Optional[np.ndarray] = None,
    validate=None,
    control: Optional[GREMLControl] = None,
    verbose: bool = False
) -> Union[REMLResult, CVResult]:
    """
    Genomic REML: a single fit, or cross-validation when ``validate`` is given.

    Parameters
    ----------
    y, X, kernels, theta
        As for :func:`estimate_variance_components`
    validate : 2-D array or list of array-like, optional
        Validation row indices, one column (or list element) per fold
    control : GREMLControl, optional
        Estimator control
    verbose : bool, default=False
        Print accuracy after each fold

    Returns
    -------
    REMLResult or CVResult

    Examples
    --------
    >>> fit = greml(y, np.ones((len(y), 1)), {"G": G})
    >>> cv = greml(y, np.ones((len(y), 1)), {"G": G}, validate=make_partitions(len(y), 5, seed=1))
    """
    estimator = make_estimator(control)
    if validate is None:
        return estimator.fit(y, X, kernels, theta=theta)
    return cross_validate(reml_fold, y, X, kernels, validate, verbose=verbose,
                          estimator=estimator, theta=theta)


def gsolve(
    y,
    W=None,
    X=None,
    store: Optional[GenotypeStore] = None,
    marker_ids: Optional[Sequence] = None,
    individual_ids: Optional[Sequence] = None,
    sets=None,
    lambda_: Union[float, np.ndarray] = 1.0,
    weights: bool = False,
    method: str = "gsru",
    msets: int = 100,
    max_iter: int = 500,
    tol: Optional[float] = None,
    validate=None,
    verbose: bool = False
) -> Union[MarkerSolveResult, CVResult]:
    """
    Marker effects from a resident matrix ``W`` or a genotype ``store``,
    as a single fit or cross-validated when ``validate`` is given.

    The default tolerance is 1e-7 for the resident solvers and 1e-5 when
    streaming from a store.
    """
    if (W is None) == (store is None):
        raise ValueError("Exactly one of W or store must be given")

    if store is not None:
        options = SolverOptions(max_iter=max_iter, tol=1e-5 if tol is None else tol, verbose=verbose)
        if validate is None:
            return rsolve(y, store, marker_ids=marker_ids, X=X, individual_ids=individual_ids,
                          lambda_=lambda_, weights=weights, options=options)
        return cross_validate(streamed_fold, y, X, store, validate, verbose=verbose,
                              individual_ids=individual_ids, marker_ids=marker_ids,
                              lambda_=lambda_, weights=weights, options=options)

    options = SolverOptions(max_iter=max_iter, tol=1e-7 if tol is None else tol, verbose=verbose)
    if validate is None:
        return solve_marker_effects(y, W, X=X, sets=sets, lambda_=lambda_, weights=weights,
                                    max_iter=options.max_iter, tol=options.tol, method=method,
                                    msets=msets, verbose=verbose)
    return cross_validate(marker_fold, y, X, W, validate, verbose=verbose, method=method,
                          sets=sets, msets=msets, lambda_=lambda_, weights=weights,
                          options=options)


class GREML:
    """
    Genomic REML model.

    Fits a linear mixed model with one or more genomic relationship kernels
    when constructed.

    Parameters
    ----------
    y : array-like or pd.Series
        Phenotypes; a Series index supplies individual identifiers
    kernels : np.ndarray, list or dict of np.ndarray
        Relationship kernels (n x n)
    X : array-like, optional
        Fixed effect design; an intercept column when omitted
    theta : array-like, optional
        Starting values, residual last
    control : GREMLControl, optional
        Algorithm control parameters

    Attributes
    ----------
    result : REMLResult
        Full estimation result
    var_comp : dict
        Variance component estimates by name
    llik : float
        REML log-likelihood
    fitted_values : np.ndarray
        X b + sum of genetic effects
    residuals : np.ndarray
        y - fitted_values
    """

    def __init__(
        self,
        y,
        kernels,
        X=None,
        theta: Optional[np.ndarray] = None,
        control: Optional[GREMLControl] = None
    ):
        self.control = control or GREMLControl()
        n = len(y)
        self.X = np.ones((n, 1)) if X is None else X
        self.y = y
        self.kernels = kernels
        self.result = make_estimator(self.control).fit(y, self.X, kernels, theta=theta)

        self.var_comp = self.result.variance_components
        self.llik = self.result.llik
        self.fitted_values = self.result.predicted
        self.residuals = self.result.residuals
        self.n_obs = n
        self.n_iterations = self.result.n_iter

    def get_heritability(self, component: Union[int, str] = 0) -> float:
        """
        Proportion of phenotypic variance explained by a genetic component.

        Parameters
        ----------
        component : int or str, default=0
            Index or name of the genetic component

        Returns
        -------
        float
            theta_component / sum(theta)
        """
        if isinstance(component, str):
            if component not in self.result.names[:-1]:
                raise ValueError(f"Unknown genetic component: {component}")
            component = self.result.names.index(component)
        return get_heritability(self.result.theta, component)

    @property
    def heritability(self) -> float:
        """Heritability of the first genetic component."""
        return self.get_heritability(0)

    @property
    def random_effects(self) -> pd.DataFrame:
        """Predicted genetic effects, one column per kernel."""
        return pd.DataFrame(self.result.u, columns=self.result.names[:-1], index=self.result.ids)

    def cross_validate(self, partitions, verbose: bool = False) -> CVResult:
        """Refit the same model over validation sets."""
        return cross_validate(reml_fold, self.y, self.X, self.kernels, partitions, verbose=verbose,
                              estimator=make_estimator(self.control))

    def summary(self):
        """Print model summary."""
        print("GREML Model Summary")
        print("=" * 50)
        print(f"Observations: {self.n_obs}")
        print(f"Log-likelihood: {self.llik:.4f}")
        if self.n_iterations is not None:
            print(f"Iterations: {self.n_iterations}")
            if not self.result.converged:
                print("Warning: REML did not converge")

        print("\nVariance Components:")
        for (name, var), sd in zip(self.var_comp.items(), self.result.asd):
            print(f"  {name}: {var:.6f} (asd {sd:.6f})")

        print("\nFixed Effects:")
        for i, (b, sd) in enumerate(zip(self.result.b, np.sqrt(np.diag(self.result.b_cov)))):
            print(f"  b{i}: {b:.6f} (se {sd:.6f})")

        print(f"\nHeritability ({self.result.names[0]}): {self.heritability:.4f}")

    def plot_cv(self, partitions, figsize=(12, 10), show: bool = True):
        """Cross-validate and plot the fold statistics."""
        fig = plotting.plot_cv(self.cross_validate(partitions), figsize=figsize)
        if show:
            import matplotlib.pyplot as plt
            plt.show()
        return fig

    def __repr__(self):
        """String representation of GREML model."""
        return (f"GREML(n_obs={self.n_obs}, components={self.result.names}, "
                f"llik={self.llik:.4f})")
