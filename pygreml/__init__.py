"""
pyGREML: Genomic REML and marker effect prediction

Variance component estimation with Average-Information REML on genomic
relationship kernels, and ridge prediction of marker effects by
Gauss-Seidel, in memory or streamed from a binary genotype file.
"""

from .core import (
    GREML,
    greml,
    gsolve,
    estimate_variance_components,
    solve_marker_effects,
    solve_marker_effects_streamed,
    make_estimator,
)
from .control import GREMLControl
from .exceptions import (
    InputShapeError,
    NumericalFailure,
    ExternalEstimatorError,
    NonConvergenceWarning,
    DataCompletenessWarning,
)
from .genotypes import GenotypeStore, write_genotype_file, standardize_dosages
from .kernels import compute_grm, compute_grm_sets, compute_grm_from_store
from .reml import fit_reml, REMLOptions, REMLResult, AIREMLEstimator, ExternalREML
from .solver import gsru, gsqr, qr_sets, SolverOptions, MarkerSolveResult
from .streaming import rsolve, genomic_score
from .validation import (
    cross_validate,
    make_partitions,
    sample_partitions,
    reml_fold,
    marker_fold,
    streamed_fold,
    CVResult,
)
from .plotting import plot_cv, plot_effects
from .utils import accuracy, get_heritability

__version__ = "0.1.0"
__author__ = "Python GREML Implementation"

__all__ = [
    "GREML",
    "GREMLControl",
    "greml",
    "gsolve",
    "estimate_variance_components",
    "solve_marker_effects",
    "solve_marker_effects_streamed",
    "make_estimator",
    "InputShapeError",
    "NumericalFailure",
    "ExternalEstimatorError",
    "NonConvergenceWarning",
    "DataCompletenessWarning",
    "GenotypeStore",
    "write_genotype_file",
    "standardize_dosages",
    "compute_grm",
    "compute_grm_sets",
    "compute_grm_from_store",
    "fit_reml",
    "REMLOptions",
    "REMLResult",
    "AIREMLEstimator",
    "ExternalREML",
    "gsru",
    "gsqr",
    "qr_sets",
    "SolverOptions",
    "MarkerSolveResult",
    "rsolve",
    "genomic_score",
    "cross_validate",
    "make_partitions",
    "sample_partitions",
    "reml_fold",
    "marker_fold",
    "streamed_fold",
    "CVResult",
    "plot_cv",
    "plot_effects",
    "accuracy",
    "get_heritability",
]
