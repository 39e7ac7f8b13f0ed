"""
Genomic relationship matrices.

G = W W' / m for a centred and scaled marker matrix W, either from a
resident matrix or accumulated chunk by chunk from a genotype store.
"""

from __future__ import annotations
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

from .exceptions import InputShapeError
from .genotypes import GenotypeStore


def compute_grm(W: np.ndarray) -> np.ndarray:
    """
    Genomic relationship matrix from a standardised marker matrix.

    Parameters
    ----------
    W : np.ndarray
        Marker matrix (n x m)

    Returns
    -------
    np.ndarray
        Symmetric (n x n) matrix W W' / m
    """
    W = np.asarray(W, dtype=float)
    if W.ndim != 2 or W.shape[1] == 0:
        raise InputShapeError(f"W must be an (n x m) matrix with m > 0, got shape {W.shape}")
    G = W @ W.T / W.shape[1]
    return 0.5 * (G + G.T)


def compute_grm_sets(W: np.ndarray, sets: Union[Dict[str, Sequence[int]], List[Sequence[int]]]) -> Dict[str, np.ndarray]:
    """One relationship matrix per marker set, keyed by set name."""
    W = np.asarray(W, dtype=float)
    if not isinstance(sets, dict):
        sets = {f"G{i + 1}": rws for i, rws in enumerate(sets)}
    out = {}
    for name, rws in sets.items():
        rws = np.atleast_1d(np.asarray(rws, dtype=int))
        if rws.size == 0:
            raise InputShapeError(f"Marker set {name!r} is empty")
        out[name] = compute_grm(W[:, rws])
    return out


def compute_grm_from_store(
    store: GenotypeStore,
    marker_ids: Optional[Sequence] = None,
    ids: Optional[Sequence] = None,
    msize: int = 100,
    verbose: bool = False
) -> np.ndarray:
    """
    Genomic relationship matrix accumulated from a genotype store.

    Parameters
    ----------
    store : GenotypeStore
        Genotype file handle
    marker_ids : sequence, optional
        Markers to use (all when omitted); unknown ids are warned about and skipped
    ids : sequence, optional
        Individuals, in the order of the returned matrix (all when omitted)
    msize : int, default=100
        Markers read per chunk
    verbose : bool, default=False
        Print progress per chunk

    Returns
    -------
    np.ndarray
        (n x n) matrix W W' / m
    """
    cols, _ = store.select_markers(marker_ids)
    if cols.size == 0:
        raise InputShapeError("No markers available to compute a relationship matrix")
    rows = store.match_individuals(ids)

    G = np.zeros((rows.size, rows.size))
    done = 0
    for chunk, W in store.iter_chunks(cols, rows, msize=msize):
        G += W @ W.T
        done += chunk.size
        if verbose:
            print(f"[GRM] {done}/{cols.size} markers")
    G /= cols.size
    return 0.5 * (G + G.T)
