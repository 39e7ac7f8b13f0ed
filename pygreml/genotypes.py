"""
Binary genotype store with chunked, relative-seek access.

The genotype file holds one marker after another. Each marker occupies
``n`` bytes, one raw code per individual, so marker ``j`` starts at byte
``j * n``. Raw codes are translated to standardised genotypes on read:

- ``missing_code`` (default 0) is left raw: it is never centred and maps
  to 0 in the standardised vector, i.e. it contributes nothing.
- any other code ``c`` is the allele dosage ``c - code_offset`` (default
  codes 1, 2, 3 for dosages 0, 1, 2) and becomes
  ``(dosage - 2p) / sqrt(2p(1-p))`` with ``p`` the marker's allele frequency.

Markers are read through a scoped reader that remembers the last marker it
visited and seeks relative to it, so a pass over ascending markers never
rescans the file from the start.
"""

from __future__ import annotations
import os
import warnings
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .exceptions import InputShapeError, DataCompletenessWarning

MISSING_CODE = 0
CODE_OFFSET = 1


class GenotypeReader:
    """
    Reader for one pass over a genotype file.

    Obtained from :meth:`GenotypeStore.open_pass`; do not construct directly.
    """

    def __init__(self, store: "GenotypeStore", handle):
        self.store = store
        self._handle = handle
        # File position expressed in markers
        self._current = 0

    def read_raw(self, j: int) -> np.ndarray:
        """Raw byte codes of marker ``j`` for all individuals."""
        n = self.store.n
        if not 0 <= j < self.store.m:
            raise IndexError(f"Marker index {j} out of range [0, {self.store.m})")
        offset = (j - self._current) * n
        if offset:
            self._handle.seek(offset, os.SEEK_CUR)
        buf = self._handle.read(n)
        if len(buf) != n:
            raise IOError(f"Short read for marker {j} in {self.store.path}")
        self._current = j + 1
        return np.frombuffer(buf, dtype=np.uint8)

    def read(self, j: int, rows: Optional[np.ndarray] = None) -> np.ndarray:
        """Standardised genotypes of marker ``j`` for ``rows`` (all rows when None)."""
        w = self.store.standardize(self.read_raw(j), j)
        if rows is not None:
            w = w[rows]
        return w


class GenotypeStore:
    """
    Read-only handle on a marker-major, byte-per-genotype binary file.

    Parameters
    ----------
    path : str or Path
        Location of the genotype file
    ids : sequence
        Individual identifiers in file order (length n)
    marker_ids : sequence
        Marker identifiers in file order (length m)
    freq : array-like, optional
        Allele frequency per marker used for centring and scaling. Computed
        from the file when omitted.
    missing_code : int, default=0
        Raw code that is left uncentred (treated as missing)
    code_offset : int, default=1
        Subtracted from every other raw code to obtain the allele dosage
    """

    def __init__(
        self,
        path: Union[str, Path],
        ids: Sequence,
        marker_ids: Sequence,
        freq: Optional[np.ndarray] = None,
        missing_code: int = MISSING_CODE,
        code_offset: int = CODE_OFFSET
    ):
        self.path = Path(path)
        self.ids = np.asarray(ids)
        self.marker_ids = np.asarray(marker_ids)
        self.missing_code = int(missing_code)
        self.code_offset = int(code_offset)

        if not self.path.exists():
            raise FileNotFoundError(f"Genotype file not found: {self.path}")
        if len(pd.unique(self.marker_ids)) != self.m:
            raise ValueError("Marker identifiers must be unique")

        expected = self.n * self.m
        size = self.path.stat().st_size
        if size != expected:
            raise InputShapeError(
                f"{self.path} holds {size} bytes, expected n*m = {self.n}*{self.m} = {expected}"
            )

        self._row_index = pd.Index(self.ids)
        self._marker_index = pd.Index(self.marker_ids)

        if freq is None:
            freq = self.compute_allele_frequencies()
        freq = np.asarray(freq, dtype=float)
        if freq.shape != (self.m,):
            raise InputShapeError(f"freq must have length {self.m}, got {freq.shape}")
        self.freq = freq
        self._mean = 2.0 * freq
        self._sd = np.sqrt(2.0 * freq * (1.0 - freq))

    @property
    def n(self) -> int:
        """Number of individuals."""
        return len(self.ids)

    @property
    def m(self) -> int:
        """Number of markers."""
        return len(self.marker_ids)

    @contextmanager
    def open_pass(self) -> Iterator[GenotypeReader]:
        """
        Open the file for one pass over the markers.

        The file is closed when the block exits, including on error or when
        the pass is abandoned early.

        Examples
        --------
        >>> with store.open_pass() as reader:
        ...     for j in cols:
        ...         w = reader.read(j, rows)
        """
        handle = open(self.path, "rb")
        try:
            yield GenotypeReader(self, handle)
        finally:
            handle.close()

    def standardize(self, raw: np.ndarray, j: int) -> np.ndarray:
        """Translate raw codes of marker ``j`` to centred and scaled genotypes."""
        w = np.zeros(raw.shape, dtype=float)
        sd = self._sd[j]
        if sd == 0:
            # Monomorphic marker
            return w
        called = raw != self.missing_code
        w[called] = (raw[called].astype(float) - self.code_offset - self._mean[j]) / sd
        return w

    def read_chunk(self, cols: Sequence[int], rows: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Standardised genotypes for a set of markers.

        Parameters
        ----------
        cols : sequence of int
            Marker column indices (read in ascending order)
        rows : np.ndarray, optional
            Row indices of the individuals to return

        Returns
        -------
        np.ndarray
            Matrix of shape (len(rows), len(cols)), columns in the order of ``cols``
        """
        cols = np.asarray(cols, dtype=int)
        nr = self.n if rows is None else len(rows)
        W = np.empty((nr, len(cols)))
        order = np.argsort(cols, kind="stable")
        with self.open_pass() as reader:
            for k in order:
                W[:, k] = reader.read(int(cols[k]), rows)
        return W

    def iter_chunks(self, cols: Sequence[int], rows: Optional[np.ndarray] = None,
                    msize: int = 100) -> Iterator[Tuple[np.ndarray, np.ndarray]]:
        """Yield (column indices, genotype matrix) for consecutive chunks of ``msize`` markers."""
        cols = np.sort(np.asarray(cols, dtype=int))
        nr = self.n if rows is None else len(rows)
        with self.open_pass() as reader:
            for start in range(0, len(cols), msize):
                chunk = cols[start:start + msize]
                W = np.empty((nr, len(chunk)))
                for k, j in enumerate(chunk):
                    W[:, k] = reader.read(int(j), rows)
                yield chunk, W

    def compute_allele_frequencies(self) -> np.ndarray:
        """Allele frequency per marker, p = mean(dosage) / 2 over called genotypes."""
        freq = np.zeros(self.m)
        with self.open_pass() as reader:
            for j in range(self.m):
                raw = reader.read_raw(j)
                called = raw != self.missing_code
                if called.any():
                    dosage = raw[called].astype(float) - self.code_offset
                    freq[j] = dosage.mean() / 2.0
        return freq

    def match_markers(self, marker_ids: Optional[Sequence] = None) -> Tuple[np.ndarray, List]:
        """
        Locate markers in the file.

        Returns
        -------
        tuple
            (ascending column indices of the markers found, list of ids not found)
        """
        if marker_ids is None:
            return np.arange(self.m), []
        marker_ids = np.asarray(marker_ids)
        pos = self._marker_index.get_indexer(marker_ids)
        missing = list(marker_ids[pos < 0])
        cols = np.unique(pos[pos >= 0])
        return cols, missing

    def match_individuals(self, ids: Optional[Sequence] = None) -> np.ndarray:
        """Row indices of individuals in file order (all rows when ``ids`` is None)."""
        if ids is None:
            return np.arange(self.n)
        ids = np.asarray(ids)
        rows = self._row_index.get_indexer(ids)
        if np.any(rows < 0):
            unknown = list(ids[rows < 0][:5])
            raise InputShapeError(
                f"{int(np.sum(rows < 0))} individuals not found in genotype store, e.g. {unknown}"
            )
        return rows

    def select_markers(self, marker_ids: Optional[Sequence] = None) -> Tuple[np.ndarray, List]:
        """Like :meth:`match_markers` but warns when markers are missing."""
        cols, missing = self.match_markers(marker_ids)
        if missing:
            warnings.warn(
                f"{len(missing)} of {len(missing) + len(cols)} markers not found in genotype store; "
                f"using {len(cols)}",
                DataCompletenessWarning
            )
        return cols, missing

    def save_metadata(self, path: Union[str, Path]) -> Path:
        """Store the handle description next to the genotype file as compressed .npz."""
        path = Path(path)
        np.savez_compressed(
            path,
            genotype_file=str(self.path),
            ids=self.ids.astype(str),
            marker_ids=self.marker_ids.astype(str),
            freq=self.freq,
            missing_code=self.missing_code,
            code_offset=self.code_offset
        )
        return path

    @classmethod
    def from_metadata(cls, path: Union[str, Path]) -> "GenotypeStore":
        """Recreate a store from a file written by :meth:`save_metadata`."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Metadata file not found: {path}")
        meta = np.load(path, allow_pickle=False)
        return cls(
            path=str(meta["genotype_file"]),
            ids=meta["ids"],
            marker_ids=meta["marker_ids"],
            freq=meta["freq"],
            missing_code=int(meta["missing_code"]),
            code_offset=int(meta["code_offset"])
        )

    def __repr__(self):
        return f"GenotypeStore(path='{self.path}', n={self.n}, m={self.m})"


def write_genotype_file(
    path: Union[str, Path],
    dosages: np.ndarray,
    ids: Optional[Sequence] = None,
    marker_ids: Optional[Sequence] = None,
    missing_code: int = MISSING_CODE,
    code_offset: int = CODE_OFFSET
) -> GenotypeStore:
    """
    Write an individuals x markers dosage matrix in the genotype store layout.

    Parameters
    ----------
    path : str or Path
        Output file
    dosages : np.ndarray
        Matrix of shape (n, m) with allele dosages 0, 1, 2; NaN marks missing
    ids, marker_ids : sequence, optional
        Identifiers (default "1".."n" and "m1".."mm")

    Returns
    -------
    GenotypeStore
        Handle on the written file
    """
    dosages = np.asarray(dosages, dtype=float)
    if dosages.ndim != 2:
        raise InputShapeError(f"dosages must be a matrix, got shape {dosages.shape}")
    n, m = dosages.shape
    if ids is None:
        ids = [str(i + 1) for i in range(n)]
    if marker_ids is None:
        marker_ids = [f"m{j + 1}" for j in range(m)]
    if len(ids) != n or len(marker_ids) != m:
        raise InputShapeError("ids / marker_ids do not match the dosage matrix")

    missing = np.isnan(dosages)
    called = dosages[~missing]
    if called.size and (np.any(called < 0) or np.any(called > 2) or np.any(called != np.round(called))):
        raise ValueError("dosages must be 0, 1, 2 or NaN")

    codes = np.where(missing, missing_code, np.nan_to_num(dosages) + code_offset)
    if np.any(~missing & (codes == missing_code)):
        raise ValueError("code_offset maps a called dosage onto missing_code")
    if codes.max(initial=0) > 255:
        raise ValueError("Codes do not fit in one byte")

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # Marker-major: transpose so each marker's n bytes are contiguous
    np.ascontiguousarray(codes.T, dtype=np.uint8).tofile(path)

    return GenotypeStore(path, ids, marker_ids, missing_code=missing_code, code_offset=code_offset)


def standardize_dosages(dosages: np.ndarray, freq: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Centre and scale an in-memory dosage matrix the way the store does.

    Parameters
    ----------
    dosages : np.ndarray
        Matrix of shape (n, m) with dosages 0, 1, 2; NaN marks missing
    freq : np.ndarray, optional
        Allele frequencies; estimated from the called genotypes when omitted

    Returns
    -------
    np.ndarray
        (dosage - 2p) / sqrt(2p(1-p)), 0 for missing genotypes and
        monomorphic markers
    """
    D = np.asarray(dosages, dtype=float)
    if D.ndim != 2:
        raise InputShapeError(f"dosages must be a matrix, got shape {D.shape}")
    missing = np.isnan(D)
    if freq is None:
        with np.errstate(invalid="ignore"):
            freq = np.nan_to_num(np.nanmean(D, axis=0) / 2.0)
    freq = np.asarray(freq, dtype=float)
    sd = np.sqrt(2.0 * freq * (1.0 - freq))
    with np.errstate(divide="ignore", invalid="ignore"):
        W = np.where(sd > 0, (D - 2.0 * freq) / sd, 0.0)
    W[missing] = 0.0
    return W
