"""
Cross-validation of variance component and marker effect models.

Each fold refits the model on the rows outside the validation set and
predicts the validation rows. Fold functions share one signature::

    fit_fn(y_train, X, inputs, train, valid, **kwargs) -> FoldPrediction

where ``X`` and ``inputs`` cover all n individuals and ``train`` / ``valid``
are row indices. Held-out phenotypes are never passed to ``fit_fn``.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from sklearn.model_selection import KFold

from .exceptions import InputShapeError
from .genotypes import GenotypeStore
from .reml import AIREMLEstimator, Estimator
from .solver import SolverOptions, gsru, gsqr
from .streaming import genomic_score, rsolve
from .utils import accuracy, as_design, as_kernels, as_phenotype


@dataclass
class FoldPrediction:
    """Predictions for the validation rows of one fold."""
    predicted: np.ndarray
    llik: float = np.nan
    theta: Optional[Dict[str, float]] = None


@dataclass
class CVResult:
    """
    Cross-validation result.

    Attributes
    ----------
    folds : pd.DataFrame
        One row per fold: fold, n_train, n_valid, corr, r2, intercept,
        slope, mspe, llik and one column per variance component (REML folds)
    observed : np.ndarray
        Observed phenotypes of all validation rows, fold after fold
    predicted : np.ndarray
        Matching predictions
    index : np.ndarray
        Row index of every pooled observation
    ids : np.ndarray, optional
        Individual identifiers of the pooled observations
    """
    folds: pd.DataFrame
    observed: np.ndarray
    predicted: np.ndarray
    index: np.ndarray
    ids: Optional[np.ndarray] = None
    fold: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))

    def pooled_accuracy(self) -> Dict[str, float]:
        """Accuracy statistics over all validation rows pooled."""
        return accuracy(self.observed, self.predicted)

    def to_frame(self) -> pd.DataFrame:
        """Pooled observations as a DataFrame with fold, observed and predicted columns."""
        frame = pd.DataFrame({
            "fold": self.fold,
            "row": self.index,
            "observed": self.observed,
            "predicted": self.predicted,
        })
        if self.ids is not None:
            frame.insert(1, "id", self.ids)
        return frame


def as_partitions(partitions, n: int) -> List[np.ndarray]:
    """
    Validation sets as a list of integer index arrays.

    A 2-D array is read column by column; a list is taken set by set.
    """
    if isinstance(partitions, pd.DataFrame):
        partitions = partitions.to_numpy()
    if isinstance(partitions, np.ndarray):
        if partitions.ndim == 1:
            partitions = partitions.reshape(-1, 1)
        if partitions.ndim != 2:
            raise InputShapeError(f"partitions must be 2-D, got shape {partitions.shape}")
        sets = [partitions[:, j] for j in range(partitions.shape[1])]
    else:
        sets = list(partitions)
    if not sets:
        raise InputShapeError("At least one validation set is required")

    out = []
    for i, valid in enumerate(sets):
        valid = np.atleast_1d(np.asarray(valid))
        if valid.size == 0:
            raise InputShapeError(f"Validation set {i + 1} is empty")
        if not np.issubdtype(valid.dtype, np.integer):
            if not np.all(valid == np.round(valid)):
                raise InputShapeError(f"Validation set {i + 1} holds non-integer indices")
            valid = valid.astype(int)
        if valid.min() < 0 or valid.max() >= n:
            raise InputShapeError(f"Validation set {i + 1} has indices outside [0, {n})")
        if len(np.unique(valid)) != valid.size:
            raise InputShapeError(f"Validation set {i + 1} contains duplicate indices")
        if valid.size == n:
            raise InputShapeError(f"Validation set {i + 1} leaves no training rows")
        out.append(valid)
    return out


def make_partitions(n: int, nfolds: int = 5, seed: Optional[int] = None) -> List[np.ndarray]:
    """
    Disjoint validation sets covering all n rows (k-fold).

    Parameters
    ----------
    n : int
        Number of individuals
    nfolds : int, default=5
        Number of folds
    seed : int, optional
        Seed for the shuffle

    Returns
    -------
    list of np.ndarray
        Sorted validation row indices, one array per fold
    """
    if nfolds < 2 or nfolds > n:
        raise ValueError(f"nfolds must be between 2 and n ({n})")
    kf = KFold(n_splits=nfolds, shuffle=True, random_state=seed)
    return [np.sort(valid) for _, valid in kf.split(np.arange(n))]


def sample_partitions(n: int, nsets: int = 5, fold: int = 10, seed: Optional[int] = None) -> np.ndarray:
    """
    Independent random validation sets of n // fold rows each.

    Sets are drawn without replacement within a set but may overlap
    between sets. Returns a (n // fold) x nsets matrix, one set per column.
    """
    size = n // fold
    if size < 1:
        raise ValueError(f"fold={fold} leaves no validation rows for n={n}")
    rng = np.random.default_rng(seed)
    return np.column_stack([np.sort(rng.choice(n, size=size, replace=False)) for _ in range(nsets)])


def _fixed(X: Optional[np.ndarray], rows: np.ndarray) -> Optional[np.ndarray]:
    return None if X is None else X[rows]


def reml_fold(
    y_train: np.ndarray,
    X: Optional[np.ndarray],
    kernels,
    train: np.ndarray,
    valid: np.ndarray,
    estimator: Optional[Estimator] = None,
    theta: Optional[np.ndarray] = None
) -> FoldPrediction:
    """
    REML fold: fit variance components on the training rows and predict
    the validation rows by X_v b + sum_j theta_j G_j[v, t] P y.
    """
    estimator = estimator or AIREMLEstimator()
    mats, names = as_kernels(kernels, train.size + valid.size)

    train_kernels = {name: G[np.ix_(train, train)] for name, G in zip(names, mats)}
    fit = estimator.fit(y_train, _fixed(X, train), train_kernels, theta=theta)

    predicted = np.zeros(valid.size)
    if X is not None:
        predicted += X[valid] @ fit.b
    for t, G in zip(fit.theta[:-1], mats):
        predicted += t * (G[np.ix_(valid, train)] @ fit.Py)
    return FoldPrediction(predicted=predicted, llik=fit.llik, theta=fit.variance_components)


def marker_fold(
    y_train: np.ndarray,
    X: Optional[np.ndarray],
    W,
    train: np.ndarray,
    valid: np.ndarray,
    method: str = "gsru",
    sets=None,
    msets: int = 100,
    lambda_: Union[float, np.ndarray] = 1.0,
    weights: bool = False,
    options: Optional[SolverOptions] = None
) -> FoldPrediction:
    """Dense marker fold: solve effects on the training rows, predict W_v s + X_v b."""
    if isinstance(W, pd.DataFrame):
        W = W.to_numpy()
    W = np.asarray(W, dtype=float)
    if method == "gsru":
        fit = gsru(y_train, W[train], X=_fixed(X, train), sets=sets, lambda_=lambda_,
                   weights=weights, options=options)
    elif method == "gsqr":
        fit = gsqr(y_train, W[train], X=_fixed(X, train), sets=sets, msets=msets,
                   lambda_=lambda_, weights=weights, options=options)
    else:
        raise ValueError(f"Unknown method: {method}. Use 'gsru' or 'gsqr'")

    predicted = W[valid] @ fit.s
    if X is not None:
        predicted = predicted + X[valid] @ fit.b
    return FoldPrediction(predicted=predicted)


def streamed_fold(
    y_train: np.ndarray,
    X: Optional[np.ndarray],
    store: GenotypeStore,
    train: np.ndarray,
    valid: np.ndarray,
    individual_ids: Optional[Sequence] = None,
    marker_ids: Optional[Sequence] = None,
    lambda_: Union[float, np.ndarray] = 1.0,
    weights: bool = False,
    options: Optional[SolverOptions] = None,
    msize: int = 100
) -> FoldPrediction:
    """
    Streamed marker fold: solve from the genotype store on the training
    rows and score the validation rows with the fitted effects.

    ``individual_ids`` maps every row of y to the store (the store's own
    order when omitted).
    """
    all_ids = store.ids if individual_ids is None else np.asarray(individual_ids)
    fit = rsolve(y_train, store, marker_ids=marker_ids, X=_fixed(X, train),
                 individual_ids=all_ids[train], lambda_=lambda_, weights=weights,
                 options=options)
    predicted = genomic_score(store, fit.effects, ids=all_ids[valid], msize=msize).to_numpy()
    if X is not None:
        predicted = predicted + X[valid] @ fit.b
    return FoldPrediction(predicted=predicted)


def cross_validate(
    fit_fn: Callable[..., FoldPrediction],
    y,
    X,
    inputs,
    partitions,
    verbose: bool = False,
    **kwargs
) -> CVResult:
    """
    Refit a model once per validation set and collect predictive accuracy.

    Folds run one after another; each owns its own solver state.

    Parameters
    ----------
    fit_fn : callable
        Fold function, e.g. :func:`reml_fold`, :func:`marker_fold` or
        :func:`streamed_fold`
    y : array-like or pd.Series
        Phenotypes (n)
    X : array-like or None
        Fixed effect design (n x p)
    inputs : object
        Kernels, marker matrix or genotype store covering all n individuals
    partitions : 2-D array or list of array-like
        Validation row indices, one column (or list element) per fold
    verbose : bool, default=False
        Print accuracy after each fold
    **kwargs
        Passed to ``fit_fn``

    Returns
    -------
    CVResult
        Per-fold statistics and pooled predictions

    Examples
    --------
    >>> parts = make_partitions(len(y), nfolds=5, seed=1)
    >>> cv = cross_validate(marker_fold, y, X, W, parts, lambda_=10.0)
    >>> cv.folds[["corr", "mspe"]]
    """
    y, ids = as_phenotype(y)
    n = y.size
    X = as_design(X, n)
    sets = as_partitions(partitions, n)
    rows = np.arange(n)

    records = []
    observed, predicted, index, fold_of = [], [], [], []
    for i, valid in enumerate(sets):
        train = np.setdiff1d(rows, valid)
        pred = fit_fn(y[train], X, inputs, train, valid, **kwargs)
        yhat = np.asarray(pred.predicted, dtype=float).ravel()
        if yhat.size != valid.size:
            raise InputShapeError(
                f"Fold {i + 1}: {yhat.size} predictions for {valid.size} validation rows"
            )
        stats = accuracy(y[valid], yhat)
        record = {"fold": i + 1, "n_train": train.size, "n_valid": valid.size}
        record.update(stats)
        record["llik"] = pred.llik
        if pred.theta:
            record.update(pred.theta)
        records.append(record)

        observed.append(y[valid])
        predicted.append(yhat)
        index.append(valid)
        fold_of.append(np.full(valid.size, i + 1))

        if verbose:
            print(f"[CV fold {i + 1}/{len(sets)}] n_valid={valid.size} "
                  f"corr={stats['corr']:.4f} mspe={stats['mspe']:.4f}")

    index = np.concatenate(index)
    return CVResult(
        folds=pd.DataFrame.from_records(records),
        observed=np.concatenate(observed),
        predicted=np.concatenate(predicted),
        index=index,
        ids=None if ids is None else ids[index],
        fold=np.concatenate(fold_of)
    )
