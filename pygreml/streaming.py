"""
Marker effects and genomic scores computed directly from a genotype store.

The solver follows :func:`pygreml.solver.gsru` marker by marker, but never
holds the marker matrix in memory: every pass over the markers (the
initialisation pass, each Gauss-Seidel sweep and the final prediction
pass) opens the file once and fetches marker vectors in ascending file
order through relative seeks.
"""

from __future__ import annotations
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd

from .exceptions import InputShapeError
from .genotypes import GenotypeStore
from .solver import (
    SolverOptions,
    SolverState,
    MarkerSolveResult,
    as_lambda,
    block_update,
    correlation_pvalues,
    finish,
    initial_residual,
    iterate,
    reweight_lambda,
)
from .utils import as_phenotype, as_design


def _rows_for(store: GenotypeStore, n: int, individual_ids: Optional[Sequence]) -> np.ndarray:
    if individual_ids is None:
        if n != store.n:
            raise InputShapeError(
                f"y has {n} values but the genotype store holds {store.n} individuals; "
                "pass individual_ids to select rows"
            )
        return np.arange(store.n)
    rows = store.match_individuals(individual_ids)
    if rows.size != n:
        raise InputShapeError(f"individual_ids has {rows.size} entries, y has {n}")
    return rows


def rsolve(
    y,
    store: GenotypeStore,
    marker_ids: Optional[Sequence] = None,
    X=None,
    individual_ids: Optional[Sequence] = None,
    lambda_: Union[float, np.ndarray] = 1.0,
    weights: bool = False,
    options: Optional[SolverOptions] = None
) -> MarkerSolveResult:
    """
    Marker effects by Gauss-Seidel with genotypes streamed from disk.

    Parameters
    ----------
    y : array-like or pd.Series
        Phenotypes (n)
    store : GenotypeStore
        Genotype file handle
    marker_ids : sequence, optional
        Markers to fit (all markers when omitted). Ids not in the store are
        dropped with a :class:`DataCompletenessWarning`.
    X : array-like, optional
        Fixed effect design (n x p)
    individual_ids : sequence, optional
        Store identifiers of the individuals in y, in the order of y.
        Required unless y covers every individual in file order.
    lambda_ : float or array-like, default=1.0
        Ridge penalty, scalar or one per found marker
    weights : bool, default=False
        Scale penalties by the markers' association with the initial residual
    options : SolverOptions, optional
        Iteration control (default tolerance 1e-5)

    Returns
    -------
    MarkerSolveResult
        Effects in ascending file order with their marker ids; ``n_dropped``
        counts the requested markers that were not found
    """
    options = options or SolverOptions(tol=1e-5)
    y, ids = as_phenotype(y)
    n = y.size
    rows = _rows_for(store, n, individual_ids)
    X = as_design(X, n)

    cols, missing = store.select_markers(marker_ids)
    m = cols.size
    if m == 0:
        raise InputShapeError("None of the requested markers are in the genotype store")
    lam = as_lambda(lambda_, m)

    _, e = initial_residual(y, X)
    s = np.zeros(m)
    dww = np.zeros(m)
    pvalues = np.ones(m)
    ws = np.zeros(n)
    with store.open_pass() as reader:
        for k, j in enumerate(cols):
            w = reader.read(int(j), rows)
            if np.all(w == w[0]):
                continue
            dww[k] = w @ w
            s[k] = (w @ e) / dww[k] / m
            ws += w * s[k]
            if weights:
                pvalues[k] = correlation_pvalues(w[:, None], e)[0]
    e = e - ws

    if weights:
        lam = reweight_lambda(lam, pvalues)

    def sweep(state: SolverState) -> None:
        with store.open_pass() as reader:
            for k, j in enumerate(cols):
                if dww[k] == 0:
                    continue
                w = reader.read(int(j), rows)
                s_k, state.e = block_update(w[:, None], dww[k:k + 1], lam[k:k + 1],
                                            state.s[k:k + 1], state.e)
                state.s[k] = s_k[0]

    state = iterate(SolverState(s=s, e=e), sweep, m, options)

    g = np.zeros(n)
    with store.open_pass() as reader:
        for k, j in enumerate(cols):
            if dww[k] == 0:
                continue
            g += reader.read(int(j), rows) * state.s[k]

    if ids is None:
        ids = store.ids[rows]
    return finish(y, X, g, state, options,
                  marker_ids=store.marker_ids[cols],
                  lambda_=lam,
                  n_dropped=len(missing),
                  ids=ids)


def genomic_score(
    store: GenotypeStore,
    effects: Union[pd.Series, pd.DataFrame],
    ids: Optional[Sequence] = None,
    msize: int = 100
) -> Union[pd.Series, pd.DataFrame]:
    """
    Genomic scores W S for one or more sets of marker effects.

    Markers are read in chunks of ``msize``, so the full marker matrix is
    never in memory.

    Parameters
    ----------
    store : GenotypeStore
        Genotype file handle
    effects : pd.Series or pd.DataFrame
        Marker effects indexed by marker id, one column per score
    ids : sequence, optional
        Individuals to score (all individuals when omitted)
    msize : int, default=100
        Markers per chunk

    Returns
    -------
    pd.Series or pd.DataFrame
        Scores indexed by individual id, shaped like ``effects``

    Examples
    --------
    >>> fit = rsolve(y, store, lambda_=10.0)
    >>> prs = genomic_score(store, fit.effects)
    """
    if msize < 1:
        raise ValueError("msize must be at least 1")
    as_series = isinstance(effects, pd.Series)
    S = effects.to_frame() if as_series else effects
    if not isinstance(S, pd.DataFrame):
        raise TypeError("effects must be a pandas Series or DataFrame indexed by marker id")
    if not S.index.is_unique:
        raise ValueError("Marker ids in effects must be unique")

    cols, _ = store.select_markers(S.index.to_numpy())
    rows = store.match_individuals(ids)
    Smat = S.loc[store.marker_ids[cols]].to_numpy(dtype=float)

    score = np.zeros((rows.size, Smat.shape[1]))
    start = 0
    for chunk, W in store.iter_chunks(cols, rows, msize=msize):
        score += W @ Smat[start:start + chunk.size]
        start += chunk.size

    index = pd.Index(store.ids[rows], name="id")
    if as_series:
        return pd.Series(score[:, 0], index=index, name=effects.name or "score")
    return pd.DataFrame(score, index=index, columns=S.columns)
