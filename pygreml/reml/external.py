"""
REML through an external executable.

The executable is driven through files in a working directory:

Inputs written before the call
- ``y``: phenotypes, little-endian float64
- ``X``: fixed effect design, row by row, float64
- ``G1`` .. ``Gk``: kernels, upper triangle packed row by row, float64
- ``indxg.txt``: n followed by the 1-based row index of every individual
- ``param.txt``: ``n nf nr maxit nthreads``, the starting theta, the
  tolerance and the quoted kernel file names, one per line

The program reads ``param.txt`` on stdin and writes the result files listed
in :data:`OUTPUT_FILES`, which are parsed into a :class:`REMLResult`.
"""

from __future__ import annotations
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional

import numpy as np

from ..exceptions import ExternalEstimatorError, InputShapeError
from ..utils import as_phenotype, as_design, as_kernels, check_full_rank
from .optimizer import Estimator, REMLOptions, REMLResult

OUTPUT_FILES = (
    "llik.qgg", "theta.qgg", "thetaASD.qgg", "beta.qgg", "betaASD.qgg",
    "uhat.qgg", "residuals.qgg", "Vy.qgg", "Py.qgg", "trPG.qgg", "trVG.qgg",
)


def write_inputs(workdir: Path, y: np.ndarray, X: np.ndarray, kernels: List[np.ndarray]) -> List[str]:
    """Write y, X and packed kernels; return the kernel file names."""
    y.astype("<f8").tofile(workdir / "y")
    np.ascontiguousarray(X, dtype="<f8").tofile(workdir / "X")
    n = y.size
    upper = np.triu_indices(n)
    fnames = []
    for i, G in enumerate(kernels):
        fname = f"G{i + 1}"
        G[upper].astype("<f8").tofile(workdir / fname)
        fnames.append(fname)
    return fnames


def write_params(workdir: Path, n: int, nf: int, theta: np.ndarray, fnames: List[str],
                 max_iter: int, tol: float, nthreads: int) -> Path:
    """Write indxg.txt and param.txt."""
    np.savetxt(workdir / "indxg.txt", np.r_[n, np.arange(1, n + 1)], fmt="%d")
    path = workdir / "param.txt"
    with open(path, "w") as fh:
        fh.write(f"{n} {nf} {len(theta)} {max_iter} {nthreads}\n")
        fh.write(" ".join(repr(float(t)) for t in theta) + "\n")
        fh.write(f"{tol!r}\n")
        for fname in fnames:
            fh.write(f'"{fname}"\n')
    return path


def _read(workdir: Path, name: str, ndmin: int = 1) -> np.ndarray:
    path = workdir / name
    if not path.exists():
        raise ExternalEstimatorError(f"External REML did not write {name}")
    try:
        return np.loadtxt(path, ndmin=ndmin)
    except ValueError as e:
        raise ExternalEstimatorError(f"Could not parse {name}: {e}") from e


def read_outputs(workdir: Path, y: np.ndarray, X: np.ndarray, names: List[str], ids=None) -> REMLResult:
    """Parse the executable's result files."""
    theta = _read(workdir, "theta.qgg").ravel()
    if theta.size != len(names):
        raise ExternalEstimatorError(
            f"theta.qgg holds {theta.size} components, expected {len(names)}"
        )
    b = _read(workdir, "beta.qgg").ravel()
    u = _read(workdir, "uhat.qgg", ndmin=2)
    if u.shape != (y.size, len(names) - 1):
        raise ExternalEstimatorError(f"uhat.qgg has shape {u.shape}, expected {(y.size, len(names) - 1)}")
    Vy = _read(workdir, "Vy.qgg").ravel()
    fitted = X @ b

    return REMLResult(
        theta=theta,
        theta_cov=_read(workdir, "thetaASD.qgg", ndmin=2),
        llik=float(_read(workdir, "llik.qgg").ravel()[0]),
        b=b,
        b_cov=_read(workdir, "betaASD.qgg", ndmin=2),
        u=u,
        fitted=fitted,
        predicted=fitted + u.sum(axis=1),
        residuals=_read(workdir, "residuals.qgg").ravel(),
        Py=_read(workdir, "Py.qgg").ravel(),
        Vy=Vy,
        yVy=float(y @ Vy),
        trPG=_read(workdir, "trPG.qgg", ndmin=2)[:, 0],
        trVG=_read(workdir, "trVG.qgg", ndmin=2)[:, 0],
        n_iter=None,
        converged=None,
        delta=np.nan,
        names=names,
        ids=ids
    )


def clean_outputs(workdir: Path) -> None:
    for name in OUTPUT_FILES:
        (workdir / name).unlink(missing_ok=True)


class ExternalREML(Estimator):
    """
    Variance component estimation delegated to an external REML program.

    Parameters
    ----------
    bin : str
        Path to the executable
    nthreads : int, default=1
        Thread count passed to the program
    wkdir : str, optional
        Directory for the exchange files; a temporary directory when omitted
    options : REMLOptions, optional
        Iteration ceiling and tolerance passed to the program
    """

    def __init__(self, bin: str, nthreads: int = 1, wkdir: Optional[str] = None,
                 options: Optional[REMLOptions] = None):
        self.bin = bin
        self.nthreads = nthreads
        self.wkdir = wkdir
        self.options = options or REMLOptions()

    def fit(self, y, X, kernels, theta: Optional[np.ndarray] = None) -> REMLResult:
        y, ids = as_phenotype(y)
        n = y.size
        X = as_design(X, n)
        if X is None:
            raise InputShapeError("The external REML program requires a fixed effect design")
        check_full_rank(X)
        kernels, names = as_kernels(kernels, n)
        names = names + ["E"]
        nr = len(names)
        if theta is None:
            theta = np.full(nr, np.std(y, ddof=1) / nr)
        theta = np.asarray(theta, dtype=float).ravel()
        if theta.size != nr:
            raise InputShapeError(f"theta must have {nr} values, got {theta.size}")

        if self.wkdir is None:
            with tempfile.TemporaryDirectory(prefix="pygreml_") as tmp:
                return self._run(Path(tmp), y, X, kernels, theta, names, ids)
        workdir = Path(self.wkdir)
        workdir.mkdir(parents=True, exist_ok=True)
        return self._run(workdir, y, X, kernels, theta, names, ids)

    def _run(self, workdir: Path, y, X, kernels, theta, names, ids) -> REMLResult:
        fnames = write_inputs(workdir, y, X, kernels)
        params = write_params(workdir, y.size, X.shape[1], theta, fnames,
                              self.options.max_iter, self.options.tol, self.nthreads)
        self.execute(workdir, params)
        try:
            return read_outputs(workdir, y, X, names, ids)
        finally:
            clean_outputs(workdir)

    def execute(self, workdir: Path, params: Path) -> None:
        """Run the program with param.txt on stdin and reml.lst as stdout; blocks until it exits."""
        if self.options.verbose:
            print(f"[REML] Running {self.bin} in {workdir} with {self.nthreads} thread(s)")
        try:
            with open(params, "r") as stdin, open(workdir / "reml.lst", "w") as stdout:
                proc = subprocess.run([str(self.bin)], stdin=stdin, stdout=stdout,
                                      stderr=subprocess.PIPE, cwd=workdir)
        except OSError as e:
            raise ExternalEstimatorError(f"Could not run external REML program {self.bin}: {e}") from e
        if proc.returncode != 0:
            stderr = proc.stderr.decode(errors="replace").strip() if proc.stderr else ""
            raise ExternalEstimatorError(
                f"External REML program exited with status {proc.returncode}: {stderr}"
            )

    def __repr__(self):
        return f"ExternalREML(bin={self.bin!r}, nthreads={self.nthreads})"
